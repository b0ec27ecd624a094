"""Celery application for the import workers."""

import ssl

from celery import Celery
from celery.signals import setup_logging

from app.core.config import get_settings
from app.core.logging import configure_logging

settings = get_settings()

IMPORT_QUEUE = "imports"

broker_url = settings.celery_broker_url or settings.redis_url
backend_url = settings.celery_result_url or settings.redis_url

# Managed Redis (Upstash) only accepts TLS connections
if ".upstash.io" in broker_url and broker_url.startswith("redis://"):
    broker_url = broker_url.replace("redis://", "rediss://", 1)
if ".upstash.io" in backend_url and backend_url.startswith("redis://"):
    backend_url = backend_url.replace("redis://", "rediss://", 1)
is_ssl = broker_url.startswith("rediss://") or backend_url.startswith("rediss://")


def _with_cert_param(url: str) -> str:
    # the redis result backend reads ssl options from the URL at init time
    if not url.startswith("rediss://") or "ssl_cert_reqs" in url:
        return url
    separator = "&" if "?" in url else "?"
    return f"{url}{separator}ssl_cert_reqs=none"


celery_app = Celery(
    "employee_importer",
    broker=_with_cert_param(broker_url),
    backend=_with_cert_param(backend_url),
)

celery_config = {
    "task_serializer": "json",
    "accept_content": ["json"],
    "result_serializer": "json",
    "timezone": "UTC",
    "enable_utc": True,
    "task_acks_late": True,  # a crashed worker's job is redelivered and resumed
    "task_reject_on_worker_lost": True,
    "worker_prefetch_multiplier": 1,
    "task_time_limit": settings.import_task_time_limit,
    "task_soft_time_limit": max(settings.import_task_time_limit - 60, 60),
    "result_expires": 3600,
    "broker_connection_retry_on_startup": True,
    "worker_hijack_root_logger": False,
    "result_backend_always_retry": True,
    "result_backend_max_retries": 3,
    "task_default_queue": IMPORT_QUEUE,
    "task_routes": {
        "app.workers.tasks.run_import": {"queue": IMPORT_QUEUE},
        "app.workers.tasks.retry_failed_rows": {"queue": IMPORT_QUEUE},
    },
}

if is_ssl:
    ssl_dict = {"ssl_cert_reqs": ssl.CERT_NONE}
    celery_config["broker_use_ssl"] = ssl_dict
    celery_config["redis_backend_use_ssl"] = ssl_dict
    celery_config["broker_transport_options"] = ssl_dict.copy()
    celery_config["result_backend_transport_options"] = ssl_dict.copy()

celery_app.conf.update(celery_config)


@setup_logging.connect
def _configure_worker_logging(**kwargs):
    configure_logging(settings.log_level)


# Register tasks with the app
from app.workers.tasks import import_jobs  # noqa: E402,F401
