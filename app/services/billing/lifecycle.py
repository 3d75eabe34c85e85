"""Cancellation, provider linking and period-end expiry.

These transitions share the subscription lock with activation, so a renewal
and a cancellation for the same subscription never interleave.
"""

from __future__ import annotations

import logging
from datetime import datetime

from sqlalchemy.orm import Session

from app.db import end_read, unit_of_work
from app.models.billing import SubscriptionHistoryAction, SubscriptionStatus
from app.schemas.billing import ActivationResult
from app.services.billing.repository import (
    SubscriptionHistoryRepository,
    SubscriptionRepository,
)
from app.services.common import as_utc, utcnow
from app.services.distributed_lock import hold_lock, subscription_lock_key
from app.services.errors import LockContentionError

logger = logging.getLogger(__name__)


def _outcome(subscription, subscription_id, *, success: bool, reason: str) -> ActivationResult:
    return ActivationResult(
        success=success,
        reason=reason,
        subscription_id=subscription.id if subscription else subscription_id,
        status=subscription.status if subscription else None,
    )


class SubscriptionLifecycle:
    @staticmethod
    def link_provider(
        db: Session,
        subscription_id,
        *,
        code: str,
        customer_code: str | None = None,
        email_token: str | None = None,
        source: str = "webhook",
        resume: bool = False,
    ) -> ActivationResult:
        """Record the provider's subscription code and email token.

        The email token is what Paystack asks for when a subscription is
        disabled. ``resume`` also withdraws a scheduled cancellation, for
        providers re-enabling a subscription.
        """
        with hold_lock(subscription_lock_key(subscription_id)):
            try:
                return SubscriptionLifecycle._link_locked(
                    db,
                    subscription_id,
                    code=code,
                    customer_code=customer_code,
                    email_token=email_token,
                    source=source,
                    resume=resume,
                )
            finally:
                end_read(db)

    @staticmethod
    def _link_locked(
        db: Session, subscription_id, *, code, customer_code, email_token, source, resume
    ) -> ActivationResult:
        subscription = SubscriptionRepository.get_for_update(db, subscription_id)
        if subscription is None:
            return _outcome(None, subscription_id, success=False, reason="not_found")
        if subscription.status == SubscriptionStatus.cancelled:
            return _outcome(subscription, None, success=False, reason="invalid_status")

        changed = False
        with unit_of_work(db):
            if customer_code and not subscription.provider_customer_id:
                subscription.provider_customer_id = customer_code
            if subscription.provider_subscription_id != code:
                if subscription.provider_subscription_id:
                    logger.warning(
                        "Replacing provider code %s with %s on subscription %s",
                        subscription.provider_subscription_id,
                        code,
                        subscription.id,
                    )
                subscription.provider_subscription_id = code
                changed = True
            if email_token and subscription.provider_email_token != email_token:
                subscription.provider_email_token = email_token
            if resume and subscription.cancel_at_period_end:
                subscription.cancel_at_period_end = False
                changed = True
            if changed:
                SubscriptionHistoryRepository.append(
                    db,
                    subscription,
                    SubscriptionHistoryAction.provider_linked,
                    old_status=subscription.status,
                    reason="enabled" if resume else code,
                    source=source,
                )
        return _outcome(
            subscription, None, success=True, reason="linked" if changed else "unchanged"
        )

    @staticmethod
    def schedule_cancellation(
        db: Session, subscription_id, *, source: str, reason: str | None = None
    ) -> ActivationResult:
        """Stop renewal at period end; an unpaid subscription is cancelled outright."""
        with hold_lock(subscription_lock_key(subscription_id)):
            try:
                return SubscriptionLifecycle._schedule_locked(
                    db, subscription_id, source=source, reason=reason
                )
            finally:
                end_read(db)

    @staticmethod
    def _schedule_locked(db: Session, subscription_id, *, source, reason) -> ActivationResult:
        subscription = SubscriptionRepository.get_for_update(db, subscription_id)
        if subscription is None:
            return _outcome(None, subscription_id, success=False, reason="not_found")
        old_status = subscription.status
        if old_status == SubscriptionStatus.cancelled:
            return _outcome(subscription, None, success=False, reason="already_cancelled")

        if old_status == SubscriptionStatus.incomplete:
            with unit_of_work(db):
                subscription.status = SubscriptionStatus.cancelled
                subscription.cancel_at_period_end = False
                subscription.grace_period_end = None
                SubscriptionHistoryRepository.append(
                    db,
                    subscription,
                    SubscriptionHistoryAction.cancelled,
                    old_status=old_status,
                    reason=reason,
                    source=source,
                )
            logger.info("Subscription %s cancelled before activation", subscription.id)
            return _outcome(subscription, None, success=True, reason="cancelled")

        if subscription.cancel_at_period_end:
            return _outcome(subscription, None, success=True, reason="already_scheduled")

        with unit_of_work(db):
            subscription.cancel_at_period_end = True
            SubscriptionHistoryRepository.append(
                db,
                subscription,
                SubscriptionHistoryAction.cancel_scheduled,
                old_status=old_status,
                reason=reason,
                source=source,
            )
        logger.info(
            "Subscription %s will cancel at %s",
            subscription.id,
            subscription.current_period_end,
        )
        return _outcome(subscription, None, success=True, reason="cancel_scheduled")

    @staticmethod
    def cancel_now(
        db: Session,
        subscription_id,
        *,
        source: str,
        reason: str | None = None,
        action: SubscriptionHistoryAction = SubscriptionHistoryAction.cancelled,
    ) -> ActivationResult:
        with hold_lock(subscription_lock_key(subscription_id)):
            try:
                subscription = SubscriptionRepository.get_for_update(db, subscription_id)
                if subscription is None:
                    return _outcome(None, subscription_id, success=False, reason="not_found")
                return SubscriptionLifecycle._cancel_locked(
                    db, subscription, source=source, reason=reason, action=action
                )
            finally:
                end_read(db)

    @staticmethod
    def _cancel_locked(db: Session, subscription, *, source, reason, action) -> ActivationResult:
        old_status = subscription.status
        if old_status == SubscriptionStatus.cancelled:
            return _outcome(subscription, None, success=False, reason="already_cancelled")
        with unit_of_work(db):
            subscription.status = SubscriptionStatus.cancelled
            subscription.cancel_at_period_end = False
            subscription.grace_period_end = None
            SubscriptionHistoryRepository.append(
                db,
                subscription,
                action,
                old_status=old_status,
                reason=reason,
                source=source,
            )
        logger.info(
            "Subscription %s %s -> cancelled (%s)",
            subscription.id,
            old_status.value,
            reason or action.value,
        )
        return _outcome(subscription, None, success=True, reason="cancelled")

    @staticmethod
    def expire_due(db: Session, now: datetime | None = None) -> dict[str, int]:
        """Cancel subscriptions past a scheduled period end or an exhausted grace period.

        A subscription whose lock is busy is skipped and picked up by the next run.
        """
        now = now or utcnow()
        candidate_ids = [sub.id for sub in SubscriptionRepository.due_for_expiry(db, now)]
        expired = 0
        skipped = 0
        for subscription_id in candidate_ids:
            try:
                with hold_lock(subscription_lock_key(subscription_id), attempts=1):
                    try:
                        if SubscriptionLifecycle._expire_locked(db, subscription_id, now):
                            expired += 1
                    finally:
                        end_read(db)
            except LockContentionError:
                logger.info("Skipping busy subscription %s during expiry sweep", subscription_id)
                skipped += 1
        if expired or skipped:
            logger.info("Expiry sweep cancelled %d, skipped %d", expired, skipped)
        return {"expired": expired, "skipped": skipped}

    @staticmethod
    def _expire_locked(db: Session, subscription_id, now: datetime) -> bool:
        subscription = SubscriptionRepository.get_for_update(db, subscription_id)
        if subscription is None:
            return False
        reason = _expiry_reason(subscription, now)
        if reason is None:
            return False
        SubscriptionLifecycle._cancel_locked(
            db,
            subscription,
            source="lifecycle",
            reason=reason,
            action=SubscriptionHistoryAction.expired,
        )
        return True


def _expiry_reason(subscription, now: datetime) -> str | None:
    # Re-checked under the lock; a renewal may have landed since the query
    if subscription.status not in (SubscriptionStatus.active, SubscriptionStatus.past_due):
        return None
    period_end = as_utc(subscription.current_period_end)
    if subscription.cancel_at_period_end and period_end is not None and period_end <= now:
        return "period_ended"
    grace_end = as_utc(subscription.grace_period_end)
    if (
        subscription.status == SubscriptionStatus.past_due
        and grace_end is not None
        and grace_end <= now
    ):
        return "grace_period_expired"
    return None
