"""Match orphaned successful payments to a user's unactivated subscription."""

from __future__ import annotations

import logging

from sqlalchemy.orm import Session

from app.config import settings
from app.models.billing import Subscription
from app.schemas.billing import ActivationRequest, PaymentData, RecoveryResult
from app.services.billing.activation import ActivationService
from app.services.billing.repository import PaymentRepository

logger = logging.getLogger(__name__)


class PaymentMatcher:
    @staticmethod
    def match_and_activate(db: Session, subscription: Subscription) -> RecoveryResult:
        """Activate ``subscription`` from the user's most recent unlinked payment.

        Only successful payments with no subscription, created within the
        recovery lookback window, are candidates. When several qualify the
        newest wins.
        """
        candidates = PaymentRepository.orphaned_succeeded(
            db,
            subscription.user_id,
            lookback_days=settings.billing_recovery_lookback_days,
        )
        if not candidates:
            return RecoveryResult(
                success=False,
                method="unlinked_payment",
                reason="not_found",
                message="No unlinked successful payment found",
                subscription_id=subscription.id,
            )

        payment = candidates[0]
        if len(candidates) > 1:
            logger.info(
                "%d orphaned payments for user %s, using newest %s",
                len(candidates),
                subscription.user_id,
                payment.provider_payment_ref,
            )
        payment_id = payment.id
        result = ActivationService.activate(
            db,
            ActivationRequest(
                subscription_id=subscription.id,
                payment_data=PaymentData(
                    reference=payment.provider_payment_ref,
                    payment_id=payment.provider_payment_id,
                    amount=payment.amount,
                    currency=payment.currency,
                    authorization_code=payment.authorization_code,
                ),
                source="recovery",
            ),
        )
        if not result.success:
            return RecoveryResult(
                success=False,
                method="unlinked_payment",
                reason=result.reason,
                message=f"Found payment could not be applied ({result.reason})",
                payment_id=payment_id,
                subscription_id=subscription.id,
            )
        return RecoveryResult(
            success=True,
            method="unlinked_payment",
            reason=result.reason,
            message="Subscription activated successfully",
            payment_id=payment_id,
            subscription_id=subscription.id,
        )
