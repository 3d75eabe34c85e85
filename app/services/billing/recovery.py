"""Reconciliation for subscriptions whose webhook never landed.

Payment evidence is taken, in order, from a successful payment already linked
to the subscription, a live provider lookup of a reference the user supplies,
a provider lookup of the subscription's own pending checkout payments, or the
user's newest orphaned payment. Every path ends in
``ActivationService.activate``.
"""

from __future__ import annotations

import logging
from datetime import timedelta
from typing import Any

from sqlalchemy.orm import Session

from app.models.billing import Payment, Subscription, SubscriptionStatus
from app.schemas.billing import (
    ActivationRequest,
    ActivationSource,
    PaymentData,
    ReconcileCounts,
    ReconcileItem,
    ReconcileSummary,
    RecoveryResult,
)
from app.services import paystack
from app.services.billing.activation import ActivationService
from app.services.billing.matcher import PaymentMatcher
from app.services.billing.repository import PaymentRepository, SubscriptionRepository
from app.services.common import as_utc, utcnow
from app.services.errors import BillingError, ConflictError, NotFoundError, UpstreamError
from app.services.idempotency import generate_idempotency_key, with_idempotency

logger = logging.getLogger(__name__)

# Payments older than this are not treated as a missed activation
STATUS_CHECK_WINDOW_DAYS = 7

_RECOVERABLE = (SubscriptionStatus.incomplete, SubscriptionStatus.past_due)
_APPLIED = ("activated", "renewed")


def _is_current(subscription: Subscription) -> bool:
    period_end = as_utc(subscription.current_period_end)
    return (
        subscription.status == SubscriptionStatus.active
        and period_end is not None
        and period_end > utcnow()
    )


def _already_active(subscription: Subscription) -> RecoveryResult:
    return RecoveryResult(
        success=True,
        reason="already_active",
        message="Subscription is already active",
        subscription_id=subscription.id,
    )


def _no_payment(subscription: Subscription) -> RecoveryResult:
    return RecoveryResult(
        success=False,
        reason="no_payment",
        message="No successful payment found for this subscription",
        subscription_id=subscription.id,
    )


def _from_activation(
    subscription: Subscription, method: str, reason: str, success: bool, payment_id=None
) -> RecoveryResult:
    if success:
        message = "Subscription activated successfully"
    elif reason == "amount_mismatch":
        message = "Payment amount does not match the subscription price"
    else:
        message = f"Payment could not be applied ({reason})"
    return RecoveryResult(
        success=success,
        method=method,
        reason=reason,
        message=message,
        payment_id=payment_id,
        subscription_id=subscription.id,
    )


def _stored_payment_request(
    subscription_id, payment: Payment, source: ActivationSource
) -> ActivationRequest:
    return ActivationRequest(
        subscription_id=subscription_id,
        payment_data=PaymentData(
            reference=payment.provider_payment_ref,
            payment_id=payment.provider_payment_id,
            amount=payment.amount,
            currency=payment.currency,
            authorization_code=payment.authorization_code,
        ),
        source=source,
    )


def _window_start():
    return utcnow() - timedelta(days=STATUS_CHECK_WINDOW_DAYS)


class RecoveryService:
    @staticmethod
    def check_status(
        db: Session, user_id, payment_reference: str | None = None
    ) -> RecoveryResult:
        """Re-run activation for a payment that succeeded without taking effect.

        A reference from the client's payment callback is verified first. Then
        a succeeded payment linked within the window, then the subscription's
        pending payments are looked up with Paystack.

        Raises:
            NotFoundError: the user has no open subscription
            UpstreamError: Paystack could not be reached to verify a payment
            ConflictError: the reference belongs to another subscription
        """
        subscription = SubscriptionRepository.latest_for_user(db, user_id)
        if subscription is None:
            raise NotFoundError("No subscription found")
        if _is_current(subscription):
            return _already_active(subscription)
        if subscription.status not in _RECOVERABLE:
            return _no_payment(subscription)

        reference_result = None
        if payment_reference:
            reference_result = RecoveryService._recover_by_reference(
                db, subscription, payment_reference, source="manual_check"
            )
            if reference_result.success:
                return reference_result

        since = _window_start()
        if subscription.status == SubscriptionStatus.incomplete:
            payment = PaymentRepository.linked_succeeded(db, subscription.id, since=since)
            if payment is not None:
                payment_id = payment.id
                result = ActivationService.activate(
                    db, _stored_payment_request(subscription.id, payment, "manual_check")
                )
                return _from_activation(
                    subscription, "linked_payment", result.reason, result.success, payment_id
                )

        pending_result = RecoveryService._verify_pending(
            db, subscription, source="manual_check", skip_reference=payment_reference
        )
        return pending_result or reference_result or _no_payment(subscription)

    @staticmethod
    def recover(
        db: Session, user_id, subscription_id, payment_reference: str | None = None
    ) -> RecoveryResult:
        """Recover an incomplete or past-due subscription.

        Raises:
            NotFoundError: the subscription is not the user's, or is cancelled
            UpstreamError: the provider could not be reached to verify a reference
            ConflictError: the reference belongs to another subscription
        """
        subscription = SubscriptionRepository.get_for_user(db, user_id, subscription_id)
        if subscription is None:
            raise NotFoundError("Subscription not found")
        if _is_current(subscription):
            return _already_active(subscription)
        if subscription.status not in _RECOVERABLE:
            raise NotFoundError("Subscription is not eligible for recovery")

        key = generate_idempotency_key(
            "recover_subscription",
            {
                "subscription_id": str(subscription.id),
                "amount": subscription.committed_price,
                "reference": payment_reference,
            },
        )
        outcome = with_idempotency(
            key,
            lambda: RecoveryService._recover(db, subscription, payment_reference).model_dump(
                mode="json"
            ),
            should_cache=lambda result: bool(result.get("success")),
        )
        return RecoveryResult.model_validate(outcome.result)

    @staticmethod
    def _recover(
        db: Session, subscription: Subscription, payment_reference: str | None
    ) -> RecoveryResult:
        # A linked success on an incomplete subscription means activation never ran.
        # On past_due every linked success has already been applied.
        if subscription.status == SubscriptionStatus.incomplete:
            linked = PaymentRepository.linked_succeeded(db, subscription.id)
            if linked is not None:
                payment_id = linked.id
                result = ActivationService.activate(
                    db, _stored_payment_request(subscription.id, linked, "recovery")
                )
                if result.reason in _APPLIED:
                    return _from_activation(
                        subscription, "linked_payment", result.reason, True, payment_id
                    )

        if payment_reference:
            return RecoveryService._recover_by_reference(
                db, subscription, payment_reference, source="recovery"
            )

        pending_result = RecoveryService._verify_pending(db, subscription, source="recovery")
        if pending_result is not None and pending_result.success:
            return pending_result

        matched = PaymentMatcher.match_and_activate(db, subscription)
        if not matched.success and pending_result is not None:
            return pending_result
        return matched

    @staticmethod
    def _recover_by_reference(
        db: Session, subscription: Subscription, reference: str, *, source: ActivationSource
    ) -> RecoveryResult:
        transaction = paystack.verify_transaction(reference)
        status = transaction.get("status")
        if status == "not_found":
            return RecoveryResult(
                success=False,
                method="payment_reference",
                reason="not_found",
                message="Payment reference was not found",
                subscription_id=subscription.id,
            )
        if status != "success":
            logger.info(
                "Recovery reference %s for subscription %s has provider status %s",
                reference,
                subscription.id,
                status,
            )
            return RecoveryResult(
                success=False,
                method="payment_reference",
                reason="payment_not_successful",
                message=f"Payment has not completed (status: {status or 'unknown'})",
                subscription_id=subscription.id,
            )
        return RecoveryService._apply_transaction(
            db, subscription, transaction, reference, source=source, method="payment_reference"
        )

    @staticmethod
    def _verify_pending(
        db: Session,
        subscription: Subscription,
        *,
        source: ActivationSource,
        skip_reference: str | None = None,
    ) -> RecoveryResult | None:
        """Ask Paystack about the subscription's recent pending payments.

        Returns the activation outcome for the first payment Paystack reports
        as successful, or None when none has gone through. An unreachable
        provider is raised only when no other payment could be applied.
        """
        pending = PaymentRepository.linked_pending(db, subscription.id, since=_window_start())
        candidates = [
            (payment.provider_payment_ref, payment.amount, payment.currency)
            for payment in pending
            if payment.provider_payment_ref != skip_reference
        ]
        refused = None
        upstream_error = None
        for reference, amount, currency in candidates:
            try:
                transaction = paystack.verify_transaction(reference)
            except UpstreamError as exc:
                logger.warning("Could not verify pending payment %s: %s", reference, exc.message)
                upstream_error = exc
                continue
            status = transaction.get("status")
            if status != "success":
                logger.info(
                    "Pending payment %s for subscription %s has provider status %s",
                    reference,
                    subscription.id,
                    status,
                )
                continue
            transaction.setdefault("amount", amount)
            transaction.setdefault("currency", currency)
            result = RecoveryService._apply_transaction(
                db, subscription, transaction, reference, source=source, method="linked_payment"
            )
            if result.success:
                return result
            refused = result
        if refused is None and upstream_error is not None:
            raise upstream_error
        return refused

    @staticmethod
    def _apply_transaction(
        db: Session,
        subscription: Subscription,
        transaction: dict[str, Any],
        reference: str,
        *,
        source: ActivationSource,
        method: str,
    ) -> RecoveryResult:
        metadata = transaction.get("metadata")
        claimed = metadata.get("subscription_id") if isinstance(metadata, dict) else None
        if claimed and str(claimed) != str(subscription.id):
            raise ConflictError(
                "Payment reference belongs to a different subscription",
                details={"reference": reference},
            )

        authorization = transaction.get("authorization") or {}
        customer = transaction.get("customer") or {}
        provider_id = transaction.get("id")
        result = ActivationService.activate(
            db,
            ActivationRequest(
                subscription_id=subscription.id,
                payment_data=PaymentData(
                    reference=transaction.get("reference") or reference,
                    payment_id=str(provider_id) if provider_id is not None else None,
                    amount=int(transaction.get("amount") or 0),
                    currency=transaction.get("currency") or subscription.committed_currency,
                    authorization_code=authorization.get("authorization_code"),
                ),
                source=source,
                provider_customer_id=customer.get("customer_code"),
            ),
        )
        payment = PaymentRepository.get_by_reference(db, reference)
        return _from_activation(
            subscription,
            method,
            result.reason,
            result.success,
            payment.id if payment else None,
        )

    @staticmethod
    def reconcile_incomplete(db: Session) -> ReconcileSummary:
        """Activate every incomplete subscription that already holds a successful payment.

        Each subscription is handled on its own; a failure is reported in the
        summary and does not stop the run.
        """
        candidates = [
            (subscription.id, subscription.user_id)
            for subscription in SubscriptionRepository.incomplete_with_succeeded_payment(db)
        ]
        results: list[ReconcileItem] = []
        for subscription_id, user_id in candidates:
            item = ReconcileItem(subscription_id=subscription_id, user_id=user_id, success=False)
            try:
                payment = PaymentRepository.linked_succeeded(db, subscription_id)
                if payment is None:
                    item.reason = "no_payment"
                else:
                    item.payment_id = payment.id
                    result = ActivationService.activate(
                        db, _stored_payment_request(subscription_id, payment, "manual_check")
                    )
                    item.success = result.success
                    item.reason = result.reason
            except BillingError as exc:
                logger.warning(
                    "Reconciling subscription %s failed: %s", subscription_id, exc.message
                )
                item.reason = exc.code
                item.error = exc.message
            results.append(item)

        succeeded = sum(1 for item in results if item.success)
        logger.info(
            "Reconciled %d incomplete subscriptions: %d activated, %d failed",
            len(results),
            succeeded,
            len(results) - succeeded,
        )
        return ReconcileSummary(
            total=len(results),
            succeeded=succeeded,
            failed=len(results) - succeeded,
            results=results,
        )

    @staticmethod
    def reconcile_counts(db: Session) -> ReconcileCounts:
        return ReconcileCounts(
            total_incomplete=SubscriptionRepository.count_incomplete(db),
            reconcilable=len(SubscriptionRepository.incomplete_with_succeeded_payment(db)),
        )
