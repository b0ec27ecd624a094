"""RowValidator: field constraints, business rules, summaries and cleanup."""

from app.services.row_validator import RowValidator

from tests.factories import TODAY, employee_row


class TestValidateRow:
    def test_valid_row(self, validator):
        result = validator.validate_row(employee_row(1))

        assert result.valid
        assert result.to_dict() == {"valid": True, "errors": {}}

    def test_missing_fields_are_each_reported(self, validator):
        result = validator.validate_row(employee_row(1, first_name="", salary=None))

        assert result.errors["first_name"] == ["The first_name field is required."]
        assert result.errors["salary"] == ["The salary field is required."]

    def test_employee_number_pattern(self, validator):
        result = validator.validate_row(employee_row(1, employee_number="E-12"))

        assert result.errors["employee_number"] == [
            "Employee number must be in format EMP-XXXXXXXX (8 digits)"
        ]

    def test_lowercase_employee_number_is_accepted(self, validator):
        assert validator.validate_row(employee_row(1, employee_number="emp-00000001")).valid

    def test_layers_are_merged_not_short_circuited(self, validator):
        row = employee_row(1, email="someone@gmail.com", salary="-5")

        result = validator.validate_row(row)

        assert result.errors["salary"] == ["Salary cannot be negative"]
        assert result.errors["email"] == [
            "Email domain not allowed. Must be one of: workmail.co, company.africa, mail.test"
        ]

    def test_field_can_carry_several_messages(self, validator):
        result = validator.validate_row(employee_row(1, first_name="3"))

        assert result.errors["first_name"] == [
            "First name must be at least 2 characters long",
            "First name contains invalid characters",
        ]

    def test_name_character_set(self, validator):
        result = validator.validate_row(employee_row(1, last_name="Otieno3"))

        assert result.errors["last_name"] == ["Last name contains invalid characters"]

    def test_apostrophes_and_hyphens_in_names(self, validator):
        assert validator.validate_row(employee_row(1, last_name="O'Neil-Wanjiru")).valid

    def test_malformed_email(self, validator):
        result = validator.validate_row(employee_row(1, email="not-an-email"))

        assert result.errors["email"] == ["The email field must be a valid email address."]

    def test_salary_must_be_numeric(self, validator):
        result = validator.validate_row(employee_row(1, salary="lots"))

        assert result.errors["salary"] == ["The salary field must be a number."]

    def test_salary_upper_bound(self, validator):
        result = validator.validate_row(employee_row(1, salary="10000000.01"))

        assert result.errors["salary"] == ["Salary seems unreasonably high"]

    def test_closed_enumerations(self, validator):
        result = validator.validate_row(
            employee_row(1, currency="JPY", country_code="JP", department="Legal")
        )

        assert result.errors["currency"][0].startswith("Invalid currency code")
        assert result.errors["country_code"][0].startswith("Invalid country code")
        assert result.errors["department"][0].startswith("Invalid department")

    def test_start_date_rules(self, validator):
        future = validator.validate_row(employee_row(1, start_date="2024-06-02"))
        ancient = validator.validate_row(employee_row(1, start_date="1899-12-31"))
        garbage = validator.validate_row(employee_row(1, start_date="yesterday"))

        assert future.errors["start_date"] == ["Start date cannot be in the future"]
        assert ancient.errors["start_date"] == ["Start date cannot be before 1900"]
        assert garbage.errors["start_date"] == ["The start_date field must be a valid date."]

    def test_alternative_date_formats(self, validator):
        assert validator.validate_row(employee_row(1, start_date="2020/01/15")).valid
        assert validator.validate_row(employee_row(1, start_date="01/15/2020")).valid

    def test_custom_domain_allow_list(self):
        validator = RowValidator(allowed_email_domains=["Example.ORG"], today=TODAY)

        assert validator.validate_row(employee_row(1, email="a.b@example.org")).valid
        assert not validator.validate_row(employee_row(1)).valid


class TestBatchSummary:
    def test_summary_counts_and_ranks_messages(self, validator):
        rows = [
            employee_row(1),
            employee_row(2, currency="JPY"),
            employee_row(3, currency="JPY", salary="-1"),
            employee_row(4, salary="-1"),
            employee_row(5, salary="-1"),
        ]

        summary = validator.get_validation_summary(validator.validate_batch(rows))

        assert summary["total_rows"] == 5
        assert summary["valid_rows"] == 1
        assert summary["invalid_rows"] == 4
        assert summary["validation_rate"] == 20.0
        assert summary["most_common_errors"][0] == {
            "message": "Salary cannot be negative",
            "count": 3,
        }

    def test_empty_summary(self, validator):
        summary = validator.get_validation_summary([])

        assert summary["validation_rate"] == 0
        assert summary["most_common_errors"] == []


class TestSanitizeAndQuality:
    def test_sanitize_row(self, validator):
        row = employee_row(
            1,
            employee_number=" emp-00000001 ",
            email=" Amina.Otieno@WorkMail.co",
            currency="kes",
            country_code="ke ",
            first_name="  Amina ",
        )

        clean = validator.sanitize_row(row)

        assert clean["employee_number"] == "EMP-00000001"
        assert clean["email"] == "amina.otieno@workmail.co"
        assert clean["currency"] == "KES"
        assert clean["country_code"] == "KE"
        assert clean["first_name"] == "Amina"

    def test_quality_warnings_do_not_invalidate(self, validator):
        row = employee_row(
            1, salary="500", start_date="1960-01-01", first_name="Kamau", last_name="Kamau"
        )

        warnings = validator.check_data_quality(row)

        assert validator.validate_row(row).valid
        assert "Salary seems unusually low" in warnings
        assert "Start date is more than 50 years ago" in warnings
        assert "First name and last name are identical" in warnings

    def test_clean_row_has_no_warnings(self, validator):
        assert validator.check_data_quality(employee_row(1)) == []
