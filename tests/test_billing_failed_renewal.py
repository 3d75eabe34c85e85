import uuid
from datetime import datetime, timedelta, timezone

from app.models.billing import (
    Payment,
    PaymentStatus,
    SubscriptionHistoryAction,
    SubscriptionStatus,
)
from app.schemas.billing import FailedRenewalRequest
from app.services import billing as billing_service
from app.services.billing.repository import SubscriptionHistoryRepository
from app.services.common import as_utc


def _failure(subscription_id, reference, **kwargs):
    return FailedRenewalRequest(
        subscription_id=subscription_id,
        reference=reference,
        amount=kwargs.get("amount", 500000),
        currency="NGN",
        reason=kwargs.get("reason", "Insufficient Funds"),
    )


def test_failures_escalate_to_cancellation(db_session, active_subscription):
    before = datetime.now(timezone.utc)
    reasons = []
    grace_ends = []
    for attempt in range(1, 4):
        result = billing_service.activation.record_failed_renewal(
            db_session, _failure(active_subscription.id, f"INV-fail-{attempt}")
        )
        reasons.append(result.reason)
        db_session.refresh(active_subscription)
        grace_ends.append(active_subscription.grace_period_end)

    assert reasons == ["past_due", "past_due", "cancelled"]
    assert active_subscription.status == SubscriptionStatus.cancelled
    assert active_subscription.retry_count == 3
    assert active_subscription.grace_period_end is None
    first_grace = as_utc(grace_ends[0])
    assert before + timedelta(days=7) <= first_grace
    assert first_grace <= datetime.now(timezone.utc) + timedelta(days=7)
    assert grace_ends[1] == grace_ends[0]

    actions = [
        entry.action
        for entry in SubscriptionHistoryRepository.list_for_subscription(
            db_session, active_subscription.id
        )
    ]
    assert actions == [
        SubscriptionHistoryAction.grace_period_started,
        SubscriptionHistoryAction.renewal_failed,
        SubscriptionHistoryAction.cancelled,
    ]
    failed = db_session.query(Payment).filter_by(status=PaymentStatus.failed).count()
    assert failed == 3


def test_lapsed_grace_restarts(db_session, active_subscription):
    active_subscription.status = SubscriptionStatus.past_due
    active_subscription.retry_count = 1
    active_subscription.grace_period_end = datetime.now(timezone.utc) - timedelta(hours=1)
    db_session.commit()

    billing_service.activation.record_failed_renewal(
        db_session, _failure(active_subscription.id, "INV-fail-late")
    )

    db_session.refresh(active_subscription)
    assert active_subscription.status == SubscriptionStatus.past_due
    assert as_utc(active_subscription.grace_period_end) > datetime.now(timezone.utc)


def test_retry_ceiling_is_configurable(db_session, active_subscription, override_settings):
    override_settings(billing_max_payment_retries=1)

    result = billing_service.activation.record_failed_renewal(
        db_session, _failure(active_subscription.id, "INV-fail-once")
    )

    assert result.reason == "cancelled"


def test_duplicate_failure_counts_once(db_session, active_subscription):
    billing_service.activation.record_failed_renewal(
        db_session, _failure(active_subscription.id, "INV-dup")
    )
    result = billing_service.activation.record_failed_renewal(
        db_session, _failure(active_subscription.id, "INV-dup")
    )

    assert result.reason == "duplicate"
    db_session.refresh(active_subscription)
    assert active_subscription.retry_count == 1


def test_failure_before_activation_keeps_incomplete(db_session, subscription):
    result = billing_service.activation.record_failed_renewal(
        db_session, _failure(subscription.id, "SUB-first-charge")
    )

    assert result.reason == "payment_failed"
    db_session.refresh(subscription)
    assert subscription.status == SubscriptionStatus.incomplete
    assert subscription.retry_count == 0


def test_failure_for_succeeded_payment_is_ignored(db_session, active_subscription, make_payment):
    make_payment(active_subscription.user_id, "INV-paid", subscription=active_subscription)

    result = billing_service.activation.record_failed_renewal(
        db_session, _failure(active_subscription.id, "INV-paid")
    )

    assert result.success is False
    assert result.reason == "payment_succeeded"
    db_session.refresh(active_subscription)
    assert active_subscription.status == SubscriptionStatus.active


def test_failure_on_cancelled_subscription(db_session, active_subscription):
    active_subscription.status = SubscriptionStatus.cancelled
    db_session.commit()

    result = billing_service.activation.record_failed_renewal(
        db_session, _failure(active_subscription.id, "INV-late")
    )

    assert result.reason == "already_cancelled"


def test_failure_for_unknown_subscription(db_session):
    result = billing_service.activation.record_failed_renewal(
        db_session, _failure(uuid.uuid4(), "INV-ghost")
    )

    assert result.success is False
    assert result.reason == "not_found"
