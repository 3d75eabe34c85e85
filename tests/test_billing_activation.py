import threading
import uuid
from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy.orm import Session

from app.models.billing import (
    Payment,
    PaymentStatus,
    SubscriptionHistoryAction,
    SubscriptionStatus,
)
from app.schemas.billing import ActivationRequest, PaymentData
from app.services import billing as billing_service
from app.services import distributed_lock
from app.services.billing.repository import (
    SubscriptionHistoryRepository,
    SubscriptionRepository,
)
from app.services.common import add_months, as_utc
from app.services.errors import ConflictError, LockContentionError


def _request(subscription_id, reference="SUB-ref-0001", amount=500000, **kwargs):
    return ActivationRequest(
        subscription_id=subscription_id,
        payment_data=PaymentData(
            reference=reference,
            payment_id=kwargs.pop("payment_id", "4099260516"),
            amount=amount,
            currency=kwargs.pop("currency", "NGN"),
            authorization_code=kwargs.pop("authorization_code", "AUTH_72btv547"),
        ),
        source=kwargs.pop("source", "webhook"),
        **kwargs,
    )


def _actions(db_session, subscription):
    return [
        entry.action
        for entry in SubscriptionHistoryRepository.list_for_subscription(
            db_session, subscription.id
        )
    ]


def test_activate_incomplete_subscription(db_session, subscription):
    result = billing_service.activation.activate(db_session, _request(subscription.id))

    assert result.success is True
    assert result.reason == "activated"
    assert result.status == SubscriptionStatus.active
    db_session.refresh(subscription)
    assert subscription.status == SubscriptionStatus.active
    start = as_utc(subscription.current_period_start)
    assert as_utc(subscription.current_period_end) == add_months(start, 1)
    assert subscription.retry_count == 0
    assert subscription.last_payment_attempt_at is not None

    payment = db_session.query(Payment).filter_by(provider_payment_ref="SUB-ref-0001").one()
    assert payment.status == PaymentStatus.succeeded
    assert payment.subscription_id == subscription.id
    assert payment.authorization_code == "AUTH_72btv547"

    history = SubscriptionHistoryRepository.list_for_subscription(db_session, subscription.id)
    assert history[-1].action == SubscriptionHistoryAction.activated
    assert history[-1].old_status == SubscriptionStatus.incomplete
    assert history[-1].new_status == SubscriptionStatus.active
    assert history[-1].payment_ref == "SUB-ref-0001"
    assert history[-1].source == "webhook"


def test_activate_completes_pending_checkout_payment(db_session, subscription, make_payment):
    make_payment(
        subscription.user_id,
        "SUB-checkout-1",
        subscription=subscription,
        status=PaymentStatus.pending,
    )

    result = billing_service.activation.activate(
        db_session, _request(subscription.id, reference="SUB-checkout-1")
    )

    assert result.reason == "activated"
    payments = db_session.query(Payment).filter_by(subscription_id=subscription.id).all()
    assert len(payments) == 1
    assert payments[0].status == PaymentStatus.succeeded


def test_replayed_payment_is_a_no_op(db_session, subscription):
    first = billing_service.activation.activate(db_session, _request(subscription.id))
    db_session.refresh(subscription)
    period_end = subscription.current_period_end

    second = billing_service.activation.activate(db_session, _request(subscription.id))

    assert first.reason == "activated"
    assert second.success is True
    assert second.reason == "already_active"
    db_session.refresh(subscription)
    assert subscription.current_period_end == period_end
    assert _actions(db_session, subscription).count(SubscriptionHistoryAction.activated) == 1
    assert db_session.query(Payment).filter_by(subscription_id=subscription.id).count() == 1


def test_renewal_extends_from_current_period_end(db_session, active_subscription):
    old_end = as_utc(active_subscription.current_period_end)

    result = billing_service.activation.activate(
        db_session, _request(active_subscription.id, reference="SUB-renew-1")
    )

    assert result.reason == "renewed"
    db_session.refresh(active_subscription)
    assert as_utc(active_subscription.current_period_start) == old_end
    assert as_utc(active_subscription.current_period_end) == add_months(old_end, 1)
    assert _actions(db_session, active_subscription)[-1] == SubscriptionHistoryAction.renewed


def test_renewal_after_lapse_starts_now(db_session, active_subscription):
    now = datetime.now(timezone.utc)
    active_subscription.status = SubscriptionStatus.past_due
    active_subscription.current_period_end = now - timedelta(days=3)
    active_subscription.retry_count = 2
    active_subscription.grace_period_end = now + timedelta(days=4)
    active_subscription.cancel_at_period_end = True
    db_session.commit()

    result = billing_service.activation.activate(
        db_session, _request(active_subscription.id, reference="SUB-renew-2")
    )

    assert result.reason == "renewed"
    db_session.refresh(active_subscription)
    assert active_subscription.status == SubscriptionStatus.active
    assert as_utc(active_subscription.current_period_start) >= now
    assert active_subscription.retry_count == 0
    assert active_subscription.grace_period_end is None
    assert active_subscription.cancel_at_period_end is False


def test_replay_on_lapsed_subscription_reports_processed(db_session, active_subscription):
    billing_service.activation.activate(
        db_session, _request(active_subscription.id, reference="SUB-renew-3")
    )
    active_subscription.status = SubscriptionStatus.past_due
    db_session.commit()

    result = billing_service.activation.activate(
        db_session, _request(active_subscription.id, reference="SUB-renew-3")
    )

    assert result.success is True
    assert result.reason == "already_processed"
    db_session.refresh(active_subscription)
    assert active_subscription.status == SubscriptionStatus.past_due


def test_yearly_plan_gets_twelve_month_period(db_session, yearly_plan, user_id):
    subscription = SubscriptionRepository.create(db_session, user_id=user_id, plan=yearly_plan)
    db_session.commit()

    result = billing_service.activation.activate(
        db_session, _request(subscription.id, amount=5000000)
    )

    assert result.reason == "activated"
    db_session.refresh(subscription)
    start = as_utc(subscription.current_period_start)
    assert as_utc(subscription.current_period_end) == add_months(start, 12)


def test_underpayment_is_rejected(db_session, subscription):
    result = billing_service.activation.activate(
        db_session, _request(subscription.id, amount=100000)
    )

    assert result.success is False
    assert result.reason == "amount_mismatch"
    db_session.refresh(subscription)
    assert subscription.status == SubscriptionStatus.incomplete
    assert db_session.query(Payment).count() == 0


def test_currency_mismatch_is_rejected(db_session, subscription):
    result = billing_service.activation.activate(
        db_session, _request(subscription.id, currency="USD")
    )

    assert result.reason == "amount_mismatch"


def test_cancelled_subscription_is_not_reactivated(db_session, subscription):
    subscription.status = SubscriptionStatus.cancelled
    db_session.commit()

    result = billing_service.activation.activate(db_session, _request(subscription.id))

    assert result.success is False
    assert result.reason == "invalid_status"
    db_session.refresh(subscription)
    assert subscription.status == SubscriptionStatus.cancelled


def test_missing_subscription(db_session):
    missing_id = uuid.uuid4()

    result = billing_service.activation.activate(db_session, _request(missing_id))

    assert result.success is False
    assert result.reason == "not_found"
    assert result.subscription_id == missing_id


def test_payment_linked_elsewhere_conflicts(db_session, plan, subscription, make_payment):
    other = SubscriptionRepository.create(db_session, user_id=subscription.user_id, plan=plan)
    db_session.commit()
    make_payment(subscription.user_id, "SUB-taken-1", subscription=other)

    with pytest.raises(ConflictError):
        billing_service.activation.activate(
            db_session, _request(subscription.id, reference="SUB-taken-1")
        )

    db_session.refresh(subscription)
    assert subscription.status == SubscriptionStatus.incomplete
    payment = db_session.query(Payment).filter_by(provider_payment_ref="SUB-taken-1").one()
    assert payment.subscription_id == other.id


def test_payment_of_other_user_conflicts(db_session, subscription, make_payment):
    make_payment(uuid.uuid4(), "SUB-foreign-1")

    with pytest.raises(ConflictError):
        billing_service.activation.activate(
            db_session, _request(subscription.id, reference="SUB-foreign-1")
        )


def test_provider_ids_are_recorded(db_session, subscription):
    billing_service.activation.activate(
        db_session,
        _request(
            subscription.id,
            provider_subscription_id="SUB_vsyqdmlzble3uii",
            provider_customer_id="CUS_xnxdt6s1zg1f4nx",
        ),
    )

    db_session.refresh(subscription)
    assert subscription.provider_subscription_id == "SUB_vsyqdmlzble3uii"
    assert subscription.provider_customer_id == "CUS_xnxdt6s1zg1f4nx"
    assert SubscriptionHistoryAction.provider_linked in _actions(db_session, subscription)


def test_lock_contention_then_single_activation(db_session, subscription, override_settings):
    override_settings(billing_lock_attempts=1)
    lock_key = f"lock:subscription:{subscription.id}"
    backend = distributed_lock._memory_backend
    backend.acquire(lock_key, "other-worker", 60000)

    with pytest.raises(LockContentionError):
        billing_service.activation.activate(db_session, _request(subscription.id))

    db_session.refresh(subscription)
    assert subscription.status == SubscriptionStatus.incomplete

    backend.release(lock_key, "other-worker")
    first = billing_service.activation.activate(db_session, _request(subscription.id))
    second = billing_service.activation.activate(db_session, _request(subscription.id))

    assert first.reason == "activated"
    assert second.reason == "already_active"
    assert not backend.is_locked(lock_key)


def test_concurrent_activations_apply_once(db_session, subscription, override_settings):
    override_settings(billing_lock_attempts=200, billing_lock_backoff_seconds=0.001)
    subscription_id = subscription.id
    barrier = threading.Barrier(2)
    results, errors = [], []

    def worker():
        # Each worker is its own request with its own session on the test connection
        session = Session(
            bind=db_session.bind, autoflush=False, join_transaction_mode="create_savepoint"
        )
        barrier.wait()
        try:
            results.append(
                billing_service.activation.activate(session, _request(subscription_id))
            )
        except Exception as exc:
            errors.append(exc)
        finally:
            session.close()

    threads = [threading.Thread(target=worker) for _ in range(2)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=10)

    assert errors == []
    assert all(result.success for result in results)
    assert sorted(result.reason for result in results) == ["activated", "already_active"]
    assert _actions(db_session, subscription).count(SubscriptionHistoryAction.activated) == 1
    assert db_session.query(Payment).filter_by(provider_payment_ref="SUB-ref-0001").count() == 1


def test_refused_activation_releases_row_lock(db_session, subscription):
    first = billing_service.activation.activate(db_session, _request(subscription.id))
    assert first.reason == "activated"

    replay = billing_service.activation.activate(db_session, _request(subscription.id))
    assert replay.reason == "already_active"
    assert not db_session.in_transaction()

    missing = billing_service.activation.activate(db_session, _request(uuid.uuid4()))
    assert missing.reason == "not_found"
    assert not db_session.in_transaction()
