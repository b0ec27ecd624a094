#!/usr/bin/env python3
"""Start the import worker with settings suited to containerized environments."""

import sys
import warnings

# Containers commonly run as root; Celery warns about it on every start
warnings.filterwarnings("ignore", category=UserWarning, message=".*superuser privileges.*")
warnings.filterwarnings("ignore", category=RuntimeWarning, message=".*superuser privileges.*")

from app.workers.celery_app import IMPORT_QUEUE, celery_app  # noqa: E402

if __name__ == "__main__":
    # One job at a time per process keeps the memory guard meaningful
    celery_app.worker_main(
        argv=[
            "worker",
            "--loglevel=info",
            f"--queues={IMPORT_QUEUE}",
            "--pool=solo",
            "--without-mingle",
            "--without-gossip",
        ]
        + sys.argv[1:]
    )
