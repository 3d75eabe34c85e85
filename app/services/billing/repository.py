"""Persistence helpers for subscriptions, payments and their history.

Repository methods only add and flush; committing is the caller's unit of
work. The one rule enforced here rather than by callers is the payment link:
``subscription_id`` goes from null to a value once and never changes again.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta

from sqlalchemy import select
from sqlalchemy.orm import Session

from app.models.billing import (
    BillingPlan,
    Payment,
    PaymentStatus,
    Subscription,
    SubscriptionHistory,
    SubscriptionHistoryAction,
    SubscriptionStatus,
)
from app.services.common import coerce_uuid, get_by_id, utcnow
from app.services.errors import ConflictError

logger = logging.getLogger(__name__)

OPEN_STATUSES = (
    SubscriptionStatus.incomplete,
    SubscriptionStatus.active,
    SubscriptionStatus.past_due,
)


class SubscriptionRepository:
    @staticmethod
    def get(db: Session, subscription_id) -> Subscription | None:
        return get_by_id(db, Subscription, subscription_id)

    @staticmethod
    def get_for_update(db: Session, subscription_id) -> Subscription | None:
        """Load with a row lock where the database supports it (no-op on SQLite)."""
        return (
            db.query(Subscription)
            .filter(Subscription.id == coerce_uuid(subscription_id))
            .with_for_update()
            .first()
        )

    @staticmethod
    def get_for_user(db: Session, user_id, subscription_id) -> Subscription | None:
        return (
            db.query(Subscription)
            .filter(Subscription.id == coerce_uuid(subscription_id))
            .filter(Subscription.user_id == coerce_uuid(user_id))
            .first()
        )

    @staticmethod
    def get_by_provider_code(db: Session, code: str) -> Subscription | None:
        return (
            db.query(Subscription)
            .filter(Subscription.provider_subscription_id == code)
            .order_by(Subscription.created_at.desc())
            .first()
        )

    @staticmethod
    def get_by_customer_code(db: Session, customer_code: str) -> Subscription | None:
        return (
            db.query(Subscription)
            .filter(Subscription.provider_customer_id == customer_code)
            .filter(Subscription.status.in_(OPEN_STATUSES))
            .order_by(Subscription.created_at.desc())
            .first()
        )

    @staticmethod
    def latest_for_user(
        db: Session, user_id, statuses=OPEN_STATUSES
    ) -> Subscription | None:
        return (
            db.query(Subscription)
            .filter(Subscription.user_id == coerce_uuid(user_id))
            .filter(Subscription.status.in_(statuses))
            .order_by(Subscription.created_at.desc())
            .first()
        )

    @staticmethod
    def create(db: Session, *, user_id, plan: BillingPlan) -> Subscription:
        subscription = Subscription(
            user_id=coerce_uuid(user_id),
            plan_id=plan.id,
            status=SubscriptionStatus.incomplete,
            committed_price=plan.price,
            committed_currency=plan.currency,
        )
        db.add(subscription)
        db.flush()
        return subscription

    @staticmethod
    def due_for_expiry(db: Session, now: datetime) -> list[Subscription]:
        """Subscriptions whose scheduled cancellation or grace period has lapsed."""
        ending = (
            db.query(Subscription)
            .filter(
                Subscription.status.in_(
                    [SubscriptionStatus.active, SubscriptionStatus.past_due]
                )
            )
            .filter(Subscription.cancel_at_period_end.is_(True))
            .filter(Subscription.current_period_end <= now)
            .all()
        )
        lapsed = (
            db.query(Subscription)
            .filter(Subscription.status == SubscriptionStatus.past_due)
            .filter(Subscription.grace_period_end.is_not(None))
            .filter(Subscription.grace_period_end <= now)
            .all()
        )
        seen = {sub.id for sub in ending}
        return ending + [sub for sub in lapsed if sub.id not in seen]


    @staticmethod
    def incomplete_with_succeeded_payment(db: Session) -> list[Subscription]:
        """Incomplete subscriptions that already have a linked successful payment."""
        paid = (
            select(Payment.subscription_id)
            .where(Payment.subscription_id.is_not(None))
            .where(Payment.status == PaymentStatus.succeeded)
        )
        return (
            db.query(Subscription)
            .filter(Subscription.status == SubscriptionStatus.incomplete)
            .filter(Subscription.id.in_(paid))
            .order_by(Subscription.created_at.asc())
            .all()
        )

    @staticmethod
    def count_incomplete(db: Session) -> int:
        return (
            db.query(Subscription)
            .filter(Subscription.status == SubscriptionStatus.incomplete)
            .count()
        )


class PaymentRepository:
    @staticmethod
    def get_by_reference(db: Session, reference: str) -> Payment | None:
        return (
            db.query(Payment)
            .filter(Payment.provider_payment_ref == reference)
            .first()
        )

    @staticmethod
    def upsert_by_reference(
        db: Session,
        *,
        reference: str,
        user_id,
        amount: int,
        currency: str,
        status: PaymentStatus,
        provider_payment_id: str | None = None,
        authorization_code: str | None = None,
        description: str | None = None,
    ) -> Payment:
        """Insert or update the payment keyed by provider reference.

        A succeeded payment is never downgraded by a late failure event.
        """
        payment = PaymentRepository.get_by_reference(db, reference)
        if payment is None:
            payment = Payment(
                user_id=coerce_uuid(user_id),
                provider_payment_ref=reference,
                amount=amount,
                currency=currency,
                status=status,
                provider_payment_id=provider_payment_id,
                authorization_code=authorization_code,
                description=description,
            )
            db.add(payment)
            db.flush()
            return payment

        if payment.status == PaymentStatus.succeeded and status != PaymentStatus.succeeded:
            logger.info(
                "Ignoring %s update for already succeeded payment %s",
                status.value,
                reference,
            )
            return payment
        payment.status = status
        payment.amount = amount
        payment.currency = currency
        if provider_payment_id:
            payment.provider_payment_id = provider_payment_id
        if authorization_code:
            payment.authorization_code = authorization_code
        if description and not payment.description:
            payment.description = description
        db.flush()
        return payment

    @staticmethod
    def link(db: Session, payment: Payment, subscription: Subscription) -> Payment:
        """Attach an orphaned payment to a subscription.

        Raises:
            ConflictError: payment already belongs to another subscription or
                to another user
        """
        if payment.user_id != subscription.user_id:
            raise ConflictError(
                "Payment belongs to a different user",
                details={"reference": payment.provider_payment_ref},
            )
        if payment.subscription_id is not None:
            if payment.subscription_id == subscription.id:
                return payment
            raise ConflictError(
                "Payment is already linked to a different subscription",
                details={"reference": payment.provider_payment_ref},
            )
        payment.subscription_id = subscription.id
        db.flush()
        return payment

    @staticmethod
    def linked_succeeded(
        db: Session, subscription_id, *, since: datetime | None = None
    ) -> Payment | None:
        query = (
            db.query(Payment)
            .filter(Payment.subscription_id == coerce_uuid(subscription_id))
            .filter(Payment.status == PaymentStatus.succeeded)
        )
        if since is not None:
            query = query.filter(Payment.created_at >= since)
        return query.order_by(Payment.created_at.desc()).first()

    @staticmethod
    def linked_pending(db: Session, subscription_id, *, since: datetime) -> list[Payment]:
        """Pending payments on a subscription, newest first."""
        return (
            db.query(Payment)
            .filter(Payment.subscription_id == coerce_uuid(subscription_id))
            .filter(Payment.status == PaymentStatus.pending)
            .filter(Payment.created_at >= since)
            .order_by(Payment.created_at.desc())
            .all()
        )

    @staticmethod
    def orphaned_succeeded(
        db: Session, user_id, *, lookback_days: int, now: datetime | None = None
    ) -> list[Payment]:
        """Unlinked successful payments for a user, newest first."""
        cutoff = (now or utcnow()) - timedelta(days=lookback_days)
        return (
            db.query(Payment)
            .filter(Payment.user_id == coerce_uuid(user_id))
            .filter(Payment.subscription_id.is_(None))
            .filter(Payment.status == PaymentStatus.succeeded)
            .filter(Payment.created_at >= cutoff)
            .order_by(Payment.created_at.desc())
            .all()
        )

    @staticmethod
    def recent_for_subscription(db: Session, subscription_id, limit: int = 5) -> list[Payment]:
        return (
            db.query(Payment)
            .filter(Payment.subscription_id == coerce_uuid(subscription_id))
            .order_by(Payment.created_at.desc())
            .limit(limit)
            .all()
        )


class SubscriptionHistoryRepository:
    @staticmethod
    def append(
        db: Session,
        subscription: Subscription,
        action: SubscriptionHistoryAction,
        *,
        old_status: SubscriptionStatus | None = None,
        reason: str | None = None,
        source: str | None = None,
        payment_ref: str | None = None,
    ) -> SubscriptionHistory:
        entry = SubscriptionHistory(
            subscription_id=subscription.id,
            action=action,
            old_status=old_status,
            new_status=subscription.status,
            reason=reason,
            source=source,
            payment_ref=payment_ref,
        )
        db.add(entry)
        db.flush()
        return entry

    @staticmethod
    def list_for_subscription(db: Session, subscription_id) -> list[SubscriptionHistory]:
        return (
            db.query(SubscriptionHistory)
            .filter(SubscriptionHistory.subscription_id == coerce_uuid(subscription_id))
            .order_by(SubscriptionHistory.created_at.asc())
            .all()
        )
