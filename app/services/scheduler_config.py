import logging
from datetime import timedelta

from app.config import settings

logger = logging.getLogger(__name__)


def get_celery_config() -> dict:
    broker = settings.celery_broker_url or settings.redis_url
    backend = settings.celery_result_backend or settings.redis_url
    return {
        "broker_url": broker,
        "result_backend": backend,
        "timezone": settings.celery_timezone or "UTC",
        "task_acks_late": True,
    }


def build_beat_schedule() -> dict:
    interval_minutes = max(settings.billing_expiry_interval_minutes, 1)
    logger.info("Subscription expiry sweep every %d minutes", interval_minutes)
    return {
        "billing_expire_subscriptions": {
            "task": "app.tasks.billing.expire_subscriptions",
            "schedule": timedelta(minutes=interval_minutes),
        },
    }
