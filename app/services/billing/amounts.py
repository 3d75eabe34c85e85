"""Paid-amount checks against a subscription's committed price."""

from __future__ import annotations

import logging
from dataclasses import dataclass

from app.config import settings

logger = logging.getLogger(__name__)


@dataclass
class AmountCheck:
    valid: bool
    reason: str | None = None
    difference: int = 0


def tolerance_for(expected: int) -> int:
    """Accepted shortfall in minor units: the larger of the percentage and the floor."""
    by_percent = int(expected * settings.billing_amount_tolerance_percent)
    return max(by_percent, settings.billing_amount_tolerance_minor)


def validate_payment_amount(
    *,
    expected_amount: int,
    expected_currency: str,
    paid_amount: int,
    paid_currency: str | None,
) -> AmountCheck:
    """Compare a paid amount with what the subscription committed to.

    Overpayment is accepted. Underpayment beyond the tolerance and any
    currency mismatch are rejected.
    """
    if not settings.billing_amount_validation_enabled:
        return AmountCheck(valid=True)

    if paid_currency and paid_currency.upper() != expected_currency.upper():
        return AmountCheck(
            valid=False,
            reason=f"Currency mismatch: expected {expected_currency}, got {paid_currency}",
        )

    difference = paid_amount - expected_amount
    if difference >= 0:
        if difference:
            logger.info(
                "Overpayment accepted: expected %d, paid %d", expected_amount, paid_amount
            )
        return AmountCheck(valid=True, difference=difference)

    if -difference <= tolerance_for(expected_amount):
        return AmountCheck(valid=True, difference=difference)

    return AmountCheck(
        valid=False,
        reason=f"Underpayment: expected {expected_amount}, paid {paid_amount}",
        difference=difference,
    )
