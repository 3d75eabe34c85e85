"""Subscription activation, renewal and failed-renewal transitions.

Every entry point (webhook, status check, recovery) funnels through
``ActivationService`` so the state machine lives in one place. Work on a
subscription happens under its distributed lock, and the payment upsert, the
link and the status change commit together.
"""

from __future__ import annotations

import logging
from datetime import timedelta

from sqlalchemy.orm import Session

from app.config import settings
from app.db import end_read, unit_of_work
from app.metrics import ACTIVATIONS
from app.models.billing import (
    PaymentStatus,
    Subscription,
    SubscriptionHistoryAction,
    SubscriptionStatus,
)
from app.schemas.billing import ActivationRequest, ActivationResult, FailedRenewalRequest
from app.services.billing.amounts import validate_payment_amount
from app.services.billing.repository import (
    PaymentRepository,
    SubscriptionHistoryRepository,
    SubscriptionRepository,
)
from app.services.common import add_interval, as_utc, utcnow
from app.services.distributed_lock import hold_lock, subscription_lock_key

logger = logging.getLogger(__name__)


def _result(
    subscription: Subscription | None,
    request_id,
    *,
    success: bool,
    reason: str,
    source: str,
) -> ActivationResult:
    ACTIVATIONS.labels(source=source, reason=reason).inc()
    return ActivationResult(
        success=success,
        reason=reason,
        subscription_id=subscription.id if subscription else request_id,
        status=subscription.status if subscription else None,
    )


def _link_provider_ids(
    db: Session,
    subscription: Subscription,
    provider_subscription_id: str | None,
    provider_customer_id: str | None,
    provider_email_token: str | None,
    source: str,
) -> None:
    if provider_customer_id and not subscription.provider_customer_id:
        subscription.provider_customer_id = provider_customer_id
    if not provider_subscription_id:
        return
    if subscription.provider_subscription_id == provider_subscription_id:
        if provider_email_token and not subscription.provider_email_token:
            subscription.provider_email_token = provider_email_token
        return
    if subscription.provider_subscription_id:
        logger.warning(
            "Subscription %s already linked to %s, ignoring %s",
            subscription.id,
            subscription.provider_subscription_id,
            provider_subscription_id,
        )
        return
    subscription.provider_subscription_id = provider_subscription_id
    if provider_email_token:
        subscription.provider_email_token = provider_email_token
    SubscriptionHistoryRepository.append(
        db,
        subscription,
        SubscriptionHistoryAction.provider_linked,
        old_status=subscription.status,
        reason=provider_subscription_id,
        source=source,
    )


class ActivationService:
    @staticmethod
    def activate(db: Session, request: ActivationRequest) -> ActivationResult:
        """Apply a successful payment to a subscription.

        ``incomplete`` becomes ``active`` with a fresh period; ``active`` and
        ``past_due`` renew by one plan interval. Replaying a payment that was
        already applied changes nothing.

        Raises:
            LockContentionError: another worker holds the subscription lock
            ConflictError: the payment belongs to a different subscription or user
            InternalError: the database write failed
        """
        with hold_lock(subscription_lock_key(request.subscription_id)):
            try:
                return ActivationService._activate_locked(db, request)
            finally:
                end_read(db)

    @staticmethod
    def _activate_locked(db: Session, request: ActivationRequest) -> ActivationResult:
        source = request.source
        payment_data = request.payment_data
        subscription = SubscriptionRepository.get_for_update(db, request.subscription_id)
        if subscription is None:
            logger.warning(
                "Activation skipped, subscription %s not found", request.subscription_id
            )
            return _result(
                None, request.subscription_id, success=False, reason="not_found", source=source
            )

        if subscription.status == SubscriptionStatus.cancelled:
            logger.warning(
                "Activation refused for cancelled subscription %s (ref %s)",
                subscription.id,
                payment_data.reference,
            )
            return _result(
                subscription, None, success=False, reason="invalid_status", source=source
            )

        now = utcnow()
        existing = PaymentRepository.get_by_reference(db, payment_data.reference)
        applied = (
            existing is not None
            and existing.subscription_id == subscription.id
            and existing.status == PaymentStatus.succeeded
        )
        if applied and subscription.status != SubscriptionStatus.incomplete:
            period_end = as_utc(subscription.current_period_end)
            is_current = period_end is not None and period_end > now
            if subscription.status == SubscriptionStatus.active and is_current:
                reason = "already_active"
            else:
                reason = "already_processed"
            logger.info(
                "Payment %s already applied to subscription %s",
                payment_data.reference,
                subscription.id,
            )
            return _result(subscription, None, success=True, reason=reason, source=source)

        check = validate_payment_amount(
            expected_amount=subscription.committed_price,
            expected_currency=subscription.committed_currency,
            paid_amount=payment_data.amount,
            paid_currency=payment_data.currency,
        )
        if not check.valid:
            logger.warning(
                "Amount check failed for subscription %s (ref %s): %s",
                subscription.id,
                payment_data.reference,
                check.reason,
            )
            return _result(
                subscription, None, success=False, reason="amount_mismatch", source=source
            )

        with unit_of_work(db):
            payment = PaymentRepository.upsert_by_reference(
                db,
                reference=payment_data.reference,
                user_id=subscription.user_id,
                amount=payment_data.amount,
                currency=payment_data.currency,
                status=PaymentStatus.succeeded,
                provider_payment_id=payment_data.payment_id,
                authorization_code=payment_data.authorization_code,
                description="Subscription payment",
            )
            PaymentRepository.link(db, payment, subscription)

            old_status = subscription.status
            interval = subscription.plan.interval
            if old_status == SubscriptionStatus.incomplete:
                subscription.current_period_start = now
                subscription.current_period_end = add_interval(now, interval)
                action = SubscriptionHistoryAction.activated
                reason = "activated"
            else:
                previous_end = as_utc(subscription.current_period_end)
                start = previous_end if previous_end and previous_end > now else now
                subscription.current_period_start = start
                subscription.current_period_end = add_interval(start, interval)
                action = SubscriptionHistoryAction.renewed
                reason = "renewed"

            subscription.status = SubscriptionStatus.active
            subscription.cancel_at_period_end = False
            subscription.retry_count = 0
            subscription.grace_period_end = None
            subscription.last_payment_attempt_at = now
            _link_provider_ids(
                db,
                subscription,
                request.provider_subscription_id,
                request.provider_customer_id,
                request.provider_email_token,
                source,
            )
            SubscriptionHistoryRepository.append(
                db,
                subscription,
                action,
                old_status=old_status,
                source=source,
                payment_ref=payment_data.reference,
            )

        logger.info(
            "Subscription %s %s -> %s via %s (ref %s)",
            subscription.id,
            old_status.value,
            subscription.status.value,
            source,
            payment_data.reference,
        )
        return _result(subscription, None, success=True, reason=reason, source=source)

    @staticmethod
    def record_failed_renewal(db: Session, request: FailedRenewalRequest) -> ActivationResult:
        """Count a failed renewal charge and move the subscription along.

        Each failure increments ``retry_count``. Below the ceiling the
        subscription is ``past_due`` inside a grace period; at the ceiling it
        is cancelled.
        """
        with hold_lock(subscription_lock_key(request.subscription_id)):
            try:
                return ActivationService._record_failed_locked(db, request)
            finally:
                end_read(db)

    @staticmethod
    def _record_failed_locked(db: Session, request: FailedRenewalRequest) -> ActivationResult:
        source = request.source
        subscription = SubscriptionRepository.get_for_update(db, request.subscription_id)
        if subscription is None:
            return _result(
                None, request.subscription_id, success=False, reason="not_found", source=source
            )
        if subscription.status == SubscriptionStatus.cancelled:
            return _result(
                subscription, None, success=False, reason="already_cancelled", source=source
            )

        if request.reference:
            existing = PaymentRepository.get_by_reference(db, request.reference)
            if existing is not None and existing.status == PaymentStatus.failed:
                logger.info("Failed renewal %s already recorded", request.reference)
                return _result(subscription, None, success=True, reason="duplicate", source=source)
            if existing is not None and existing.status == PaymentStatus.succeeded:
                logger.warning(
                    "Ignoring failure event for succeeded payment %s", request.reference
                )
                return _result(
                    subscription, None, success=False, reason="payment_succeeded", source=source
                )

        now = utcnow()
        with unit_of_work(db):
            if request.reference:
                payment = PaymentRepository.upsert_by_reference(
                    db,
                    reference=request.reference,
                    user_id=subscription.user_id,
                    amount=(
                        request.amount
                        if request.amount is not None
                        else subscription.committed_price
                    ),
                    currency=request.currency or subscription.committed_currency,
                    status=PaymentStatus.failed,
                    description=request.reason or "Renewal charge failed",
                )
                PaymentRepository.link(db, payment, subscription)

            old_status = subscription.status
            subscription.last_payment_attempt_at = now
            if old_status == SubscriptionStatus.incomplete:
                # Nothing to renew yet; the failed charge is kept for the record
                reason = "payment_failed"
                action = SubscriptionHistoryAction.renewal_failed
            else:
                subscription.retry_count = (subscription.retry_count or 0) + 1
                if subscription.retry_count >= settings.billing_max_payment_retries:
                    subscription.status = SubscriptionStatus.cancelled
                    subscription.grace_period_end = None
                    subscription.cancel_at_period_end = False
                    reason = "cancelled"
                    action = SubscriptionHistoryAction.cancelled
                else:
                    subscription.status = SubscriptionStatus.past_due
                    grace_end = as_utc(subscription.grace_period_end)
                    if grace_end is None or grace_end <= now:
                        subscription.grace_period_end = now + timedelta(
                            days=settings.billing_grace_period_days
                        )
                        action = SubscriptionHistoryAction.grace_period_started
                    else:
                        action = SubscriptionHistoryAction.renewal_failed
                    reason = "past_due"

            SubscriptionHistoryRepository.append(
                db,
                subscription,
                action,
                old_status=old_status,
                reason=request.reason or f"retry {subscription.retry_count}",
                source=source,
                payment_ref=request.reference,
            )

        logger.info(
            "Renewal failure on subscription %s: %s -> %s (retry %d)",
            subscription.id,
            old_status.value,
            subscription.status.value,
            subscription.retry_count,
        )
        return _result(subscription, None, success=True, reason=reason, source=source)
