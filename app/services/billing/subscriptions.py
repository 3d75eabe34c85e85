"""Checkout, current-subscription lookup and user cancellation."""

from __future__ import annotations

import logging

from sqlalchemy.orm import Session

from app.db import unit_of_work
from app.models.billing import (
    PaymentStatus,
    SubscriptionHistoryAction,
    SubscriptionStatus,
)
from app.services import paystack
from app.services.billing.lifecycle import SubscriptionLifecycle
from app.services.billing.plans import BillingPlans
from app.services.billing.repository import (
    PaymentRepository,
    SubscriptionHistoryRepository,
    SubscriptionRepository,
)
from app.services.errors import NotFoundError, UpstreamError, ValidationError

logger = logging.getLogger(__name__)

_PAID_STATUSES = (SubscriptionStatus.active, SubscriptionStatus.past_due)


class Subscriptions:
    @staticmethod
    def create_checkout(db: Session, user_id, email: str, plan_id) -> dict:
        """Start a subscription and return the provider payment link.

        The subscription stays ``incomplete`` until the payment webhook (or a
        recovery call) activates it. Retrying checkout reuses the incomplete
        subscription instead of creating another.

        Raises:
            NotFoundError: plan missing or inactive
            ValidationError: the user already has a paid subscription
            UpstreamError: Paystack could not initialise the transaction
        """
        plan = BillingPlans.get(db, plan_id)
        if not plan.is_active:
            raise NotFoundError("Billing plan not found")
        if SubscriptionRepository.latest_for_user(db, user_id, _PAID_STATUSES):
            raise ValidationError("You already have an active subscription")

        with unit_of_work(db):
            subscription = SubscriptionRepository.latest_for_user(
                db, user_id, (SubscriptionStatus.incomplete,)
            )
            if subscription is None:
                subscription = SubscriptionRepository.create(db, user_id=user_id, plan=plan)
                SubscriptionHistoryRepository.append(
                    db,
                    subscription,
                    SubscriptionHistoryAction.created,
                    reason=plan.name,
                    source="checkout",
                )
            elif subscription.plan_id != plan.id:
                subscription.plan_id = plan.id
                subscription.committed_price = plan.price
                subscription.committed_currency = plan.currency

        reference = paystack.generate_reference(str(subscription.id))
        transaction = paystack.initialize_transaction(
            email=email,
            amount=subscription.committed_price,
            currency=subscription.committed_currency,
            reference=reference,
            metadata={
                "type": "subscription_setup",
                "subscription_id": str(subscription.id),
                "user_id": str(subscription.user_id),
                "plan_id": str(plan.id),
            },
        )
        payment_link = transaction.get("authorization_url")
        if not payment_link:
            raise UpstreamError("Paystack returned no authorization URL")

        with unit_of_work(db):
            payment = PaymentRepository.upsert_by_reference(
                db,
                reference=transaction.get("reference") or reference,
                user_id=subscription.user_id,
                amount=subscription.committed_price,
                currency=subscription.committed_currency,
                status=PaymentStatus.pending,
                description=f"Subscription to {plan.name}",
            )
            PaymentRepository.link(db, payment, subscription)

        logger.info(
            "Checkout started for user %s on plan %s (subscription %s, ref %s)",
            user_id,
            plan.id,
            subscription.id,
            payment.provider_payment_ref,
        )
        return {
            "payment_link": payment_link,
            "reference": payment.provider_payment_ref,
            "subscription": subscription,
        }

    @staticmethod
    def get_current(db: Session, user_id) -> dict:
        subscription = SubscriptionRepository.latest_for_user(db, user_id)
        if subscription is None:
            return {"subscription": None, "plan": None, "payments": []}
        return {
            "subscription": subscription,
            "plan": subscription.plan,
            "payments": PaymentRepository.recent_for_subscription(db, subscription.id),
        }

    @staticmethod
    def cancel(db: Session, user_id) -> dict:
        """Cancel the user's subscription.

        A paid subscription keeps running until its period ends and the
        provider is told to stop renewing. An unpaid one is cancelled at once.
        """
        subscription = SubscriptionRepository.latest_for_user(db, user_id)
        if subscription is None:
            raise NotFoundError("No subscription to cancel")

        result = SubscriptionLifecycle.schedule_cancellation(
            db, subscription.id, source="user", reason="user_requested"
        )
        db.refresh(subscription)

        if result.reason == "cancel_scheduled" and subscription.provider_subscription_id:
            Subscriptions._disable_provider_subscription(db, subscription)
        return {
            "subscription": subscription,
            "cancelled_immediately": subscription.status == SubscriptionStatus.cancelled,
        }

    @staticmethod
    def _disable_provider_subscription(db: Session, subscription) -> None:
        """Tell Paystack to stop renewing; failures are logged, not raised.

        Paystack needs the subscription's email token. When the webhook never
        delivered one it is fetched from Paystack and kept for next time.
        """
        code = subscription.provider_subscription_id
        try:
            token = subscription.provider_email_token
            if not token:
                token = paystack.fetch_subscription(code).get("email_token")
                if token:
                    with unit_of_work(db):
                        subscription.provider_email_token = token
            if not token:
                logger.error("No email token for Paystack subscription %s, not disabled", code)
                return
            paystack.disable_subscription(code, token)
        except (UpstreamError, ValueError) as exc:
            logger.warning("Could not disable Paystack subscription %s: %s", code, exc)
