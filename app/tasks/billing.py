import logging
import time

from app.celery_app import celery_app
from app.db import SessionLocal
from app.metrics import observe_job
from app.services import billing as billing_service

logger = logging.getLogger(__name__)


@celery_app.task(name="app.tasks.billing.expire_subscriptions")
def expire_subscriptions():
    session = SessionLocal()
    started = time.monotonic()
    status = "success"
    try:
        return billing_service.lifecycle.expire_due(session)
    except Exception:
        status = "error"
        session.rollback()
        logger.exception("Subscription expiry sweep failed")
        raise
    finally:
        observe_job("expire_subscriptions", status, time.monotonic() - started)
        session.close()
