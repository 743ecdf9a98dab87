# celery_app.py  ─────────────────────────────────────────────────────────
import logging
import logging.config
import os

from celery import Celery
from celery.schedules import crontab

# ── 1.  Broker / backend  ────────────────────────────────────
CELERY_BROKER_URL = os.getenv("CELERY_BROKER_URL", "redis://redis:6379/0")
CELERY_RESULT_BACKEND = os.getenv("CELERY_RESULT_BACKEND", "redis://redis:6379/0")

celery_app = Celery(
    "timeboost_tasks",
    broker=CELERY_BROKER_URL,
    backend=CELERY_RESULT_BACKEND,
)

# ── 2.  Core config, Beat & routing ──────────────────────────
celery_app.conf.update(
    task_serializer='json',
    result_serializer='json',
    accept_content=['json'],
    timezone='UTC',
    enable_utc=True,

    # --- RedBeat keeps the schedule in Redis
    beat_scheduler="redbeat.RedBeatScheduler",
    redbeat_redis_url=CELERY_BROKER_URL,

    # --- recycle workers to avoid long-lived memory creep
    worker_max_tasks_per_child=20,

    # a round is only marked done once the worker finishes it
    task_acks_late=True,
)

# ── 3.  Beat schedule: backfill dispatcher every 10 minutes ──
celery_app.conf.beat_schedule = {
    "backfill-dispatch": {
        "task": "dispatch_backfill",
        "schedule": crontab(minute="*/10"),
        "options": {"queue": "dispatch"},
    }
}

# ── 4.  Logging ──────────────────────────────────────────────
LOGGING_CONFIG = {
    "version": 1,
    "filters": {
        "shortname": {"()": "tbindexer.utils.shortname.ShortNameFilter"},
    },
    "formatters": {
        "custom": {
            "format": "[%(asctime)s] [%(levelname)s] %(shortname)s: %(message)s",
            "datefmt": "%Y-%m-%d %H:%M:%S",
        }
    },
    "handlers": {
        "console": {"class": "logging.StreamHandler", "formatter": "custom", "filters": ["shortname"]},
    },
    "loggers": {
        "httpx": {"level": "WARNING"},
    },
    "root": {"level": "INFO", "handlers": ["console"]},
}
celery_app.conf.worker_hijack_root_logger = False
logging.config.dictConfig(LOGGING_CONFIG)

# ── 5.  Task modules, imported so Celery registers them ──────
import tbindexer.sources.timeboost_pipeline.ingestion.schedule_ingest  # noqa: E402,F401
import tbindexer.scheduler.dispatcher  # noqa: E402,F401
