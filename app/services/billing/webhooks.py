"""Paystack webhook orchestration.

Paystack redelivers until it sees a 2xx, and may deliver the same event
several times or out of order. Only a bad signature or an unreadable payload
is answered with 4xx; everything else is acknowledged with 200 after being
logged. Each event runs once per idempotency key. Retryable failures drop
the key so the next delivery runs again.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Callable

from fastapi.responses import JSONResponse
from pydantic import ValidationError as PydanticValidationError
from sqlalchemy.orm import Session

from app.db import unit_of_work
from app.metrics import WEBHOOK_EVENTS
from app.models.billing import PaymentStatus
from app.schemas.billing import (
    ActivationRequest,
    FailedRenewalRequest,
    PaymentData,
    PaystackEventData,
    PaystackWebhookEvent,
)
from app.services.billing.activation import ActivationService
from app.services.billing.lifecycle import SubscriptionLifecycle
from app.services.billing.repository import PaymentRepository, SubscriptionRepository
from app.services.common import coerce_uuid
from app.services.errors import BillingError, ValidationError
from app.services.idempotency import webhook_idempotency_key, with_idempotency
from app.services.paystack import verify_webhook_signature

logger = logging.getLogger(__name__)


def _resolve_subscription_id(db: Session, data: PaystackEventData):
    """Find the subscription an event refers to, or None."""
    raw_id = data.metadata.get("subscription_id")
    if raw_id:
        try:
            subscription = SubscriptionRepository.get(db, raw_id)
        except ValidationError:
            subscription = None
        if subscription is not None:
            return subscription.id
        logger.info("Event metadata names unknown subscription %s", raw_id)
    reference = data.payment_reference
    if reference:
        payment = PaymentRepository.get_by_reference(db, reference)
        if payment is not None and payment.subscription_id is not None:
            return payment.subscription_id
    code = data.provider_subscription_code
    if code:
        subscription = SubscriptionRepository.get_by_provider_code(db, code)
        if subscription is not None:
            return subscription.id
    return None


def _payment_data(data: PaystackEventData) -> PaymentData:
    return PaymentData(
        reference=data.payment_reference,
        payment_id=data.id,
        amount=data.amount or 0,
        currency=(data.currency or "NGN").upper(),
        authorization_code=data.authorization_code,
    )


def _ignored(reason: str) -> dict:
    return {"outcome": "ignored", "reason": reason, "subscription_id": None}


def _from_result(result) -> dict:
    return {
        "outcome": result.reason,
        "reason": result.reason,
        "subscription_id": str(result.subscription_id) if result.subscription_id else None,
    }


def _record_orphan_payment(db: Session, data: PaystackEventData) -> dict:
    try:
        user_id = coerce_uuid(data.metadata.get("user_id"))
    except ValidationError:
        user_id = None
    if not user_id or not data.payment_reference:
        logger.info(
            "charge.success %s has no subscription or user, nothing to record",
            data.payment_reference,
        )
        return _ignored("unresolved")
    if PaymentRepository.get_by_reference(db, data.payment_reference) is not None:
        return _ignored("already_recorded")
    with unit_of_work(db):
        payment = PaymentRepository.upsert_by_reference(
            db,
            reference=data.payment_reference,
            user_id=user_id,
            amount=data.amount or 0,
            currency=(data.currency or "NGN").upper(),
            status=PaymentStatus.succeeded,
            provider_payment_id=data.id,
            authorization_code=data.authorization_code,
            description="Unmatched payment",
        )
    logger.warning(
        "Recorded orphaned payment %s for user %s",
        payment.provider_payment_ref,
        user_id,
    )
    return {"outcome": "orphan_recorded", "reason": "unresolved", "subscription_id": None}


def handle_charge_success(db: Session, data: PaystackEventData) -> dict:
    subscription_id = _resolve_subscription_id(db, data)
    if subscription_id is None:
        return _record_orphan_payment(db, data)
    if not data.payment_reference:
        return _ignored("missing_reference")
    result = ActivationService.activate(
        db,
        ActivationRequest(
            subscription_id=subscription_id,
            payment_data=_payment_data(data),
            source="webhook",
            provider_subscription_id=data.provider_subscription_code,
            provider_customer_id=data.customer_code,
            provider_email_token=data.provider_email_token,
        ),
    )
    return _from_result(result)


def handle_invoice_payment_succeeded(db: Session, data: PaystackEventData) -> dict:
    subscription_id = _resolve_subscription_id(db, data)
    if subscription_id is None:
        return _ignored("unresolved")
    if not data.payment_reference:
        return _ignored("missing_reference")
    result = ActivationService.activate(
        db,
        ActivationRequest(
            subscription_id=subscription_id,
            payment_data=_payment_data(data),
            source="webhook",
            provider_subscription_id=data.provider_subscription_code,
            provider_customer_id=data.customer_code,
            provider_email_token=data.provider_email_token,
        ),
    )
    return _from_result(result)


def handle_invoice_payment_failed(db: Session, data: PaystackEventData) -> dict:
    subscription_id = _resolve_subscription_id(db, data)
    if subscription_id is None:
        return _ignored("unresolved")
    result = ActivationService.record_failed_renewal(
        db,
        FailedRenewalRequest(
            subscription_id=subscription_id,
            reference=data.payment_reference or data.invoice_code,
            amount=data.amount,
            currency=(data.currency or "").upper() or None,
            reason=data.gateway_response,
        ),
    )
    return _from_result(result)


def handle_charge_failed(db: Session, data: PaystackEventData) -> dict:
    reference = data.payment_reference
    payment = PaymentRepository.get_by_reference(db, reference) if reference else None
    if payment is None:
        return _ignored("unknown_payment")
    if payment.status == PaymentStatus.succeeded:
        logger.warning("charge.failed for succeeded payment %s ignored", reference)
        return _ignored("payment_succeeded")
    with unit_of_work(db):
        payment.status = PaymentStatus.failed
        if data.gateway_response and not payment.description:
            payment.description = data.gateway_response
    subscription_id = payment.subscription_id
    return {
        "outcome": "payment_failed",
        "reason": data.gateway_response,
        "subscription_id": str(subscription_id) if subscription_id else None,
    }


def handle_subscription_create(db: Session, data: PaystackEventData) -> dict:
    return _link_provider(db, data, resume=False)


def handle_subscription_enable(db: Session, data: PaystackEventData) -> dict:
    return _link_provider(db, data, resume=True)


def _link_provider(db: Session, data: PaystackEventData, *, resume: bool) -> dict:
    code = data.provider_subscription_code
    subscription_id = _resolve_subscription_id(db, data)
    if subscription_id is None and data.customer_code:
        subscription = SubscriptionRepository.get_by_customer_code(db, data.customer_code)
        subscription_id = subscription.id if subscription else None
    if subscription_id is None or not code:
        return _ignored("unresolved")
    result = SubscriptionLifecycle.link_provider(
        db,
        subscription_id,
        code=code,
        customer_code=data.customer_code,
        email_token=data.provider_email_token,
        resume=resume,
    )
    return _from_result(result)


def handle_subscription_not_renew(db: Session, data: PaystackEventData) -> dict:
    subscription_id = _resolve_subscription_id(db, data)
    if subscription_id is None:
        return _ignored("unresolved")
    result = SubscriptionLifecycle.schedule_cancellation(
        db, subscription_id, source="webhook", reason="provider_not_renewing"
    )
    return _from_result(result)


def handle_subscription_disable(db: Session, data: PaystackEventData) -> dict:
    subscription_id = _resolve_subscription_id(db, data)
    if subscription_id is None:
        return _ignored("unresolved")
    result = SubscriptionLifecycle.cancel_now(
        db, subscription_id, source="webhook", reason="provider_disabled"
    )
    return _from_result(result)


EVENT_HANDLERS: dict[str, Callable[[Session, PaystackEventData], dict]] = {
    "charge.success": handle_charge_success,
    "charge.failed": handle_charge_failed,
    "invoice.payment_succeeded": handle_invoice_payment_succeeded,
    "invoice.payment_failed": handle_invoice_payment_failed,
    "subscription.create": handle_subscription_create,
    "subscription.enable": handle_subscription_enable,
    "subscription.not_renew": handle_subscription_not_renew,
    "subscription.disable": handle_subscription_disable,
}


def dispatch_event(db: Session, event: PaystackWebhookEvent) -> dict:
    """Run the handler for ``event``; non-retryable billing errors become outcomes."""
    handler = EVENT_HANDLERS.get(event.event)
    if handler is None:
        logger.info("Unhandled Paystack event type: %s", event.event)
        return _ignored("unhandled_event")
    try:
        return handler(db, event.data)
    except BillingError as exc:
        if exc.retryable:
            raise
        logger.error(
            "Paystack %s (ref %s) rejected: %s",
            event.event,
            event.data.payment_reference,
            exc.message,
        )
        return {"outcome": "rejected", "reason": exc.code, "subscription_id": None}


def process_paystack_webhook(*, db: Session, body: bytes, signature: str | None) -> JSONResponse:
    if not verify_webhook_signature(body, signature):
        logger.warning("Invalid Paystack webhook signature")
        WEBHOOK_EVENTS.labels(event="unknown", outcome="invalid_signature").inc()
        return JSONResponse({"status": "invalid signature"}, status_code=400)

    try:
        payload = json.loads(body)
    except (json.JSONDecodeError, UnicodeDecodeError):
        return JSONResponse({"status": "invalid JSON"}, status_code=400)

    try:
        event = PaystackWebhookEvent.model_validate(payload)
    except PydanticValidationError as exc:
        logger.warning("Malformed Paystack webhook payload: %s", exc.errors()[:3])
        return JSONResponse({"status": "invalid payload"}, status_code=400)

    data = event.data
    logger.info("Paystack webhook: %s (ref %s)", event.event, data.payment_reference)
    key = webhook_idempotency_key(
        event.event,
        data.id,
        data.payment_reference or data.invoice_code or data.provider_subscription_code,
    )

    try:
        outcome = with_idempotency(key, lambda: dispatch_event(db, event))
    except BillingError as exc:
        logger.warning(
            "Paystack %s (ref %s) failed, awaiting redelivery: %s",
            event.event,
            data.payment_reference,
            exc.message,
        )
        WEBHOOK_EVENTS.labels(event=event.event, outcome="retry").inc()
        return JSONResponse(
            {"status": "ok", "outcome": "retry", "from_cache": False}, status_code=200
        )
    except Exception:
        db.rollback()
        logger.exception("Paystack webhook processing error for %s", event.event)
        WEBHOOK_EVENTS.labels(event=event.event, outcome="error").inc()
        return JSONResponse(
            {"status": "ok", "outcome": "error", "from_cache": False}, status_code=200
        )

    result = outcome.result or {}
    label = "duplicate" if outcome.from_cache else result.get("outcome") or "unknown"
    WEBHOOK_EVENTS.labels(event=event.event, outcome=label).inc()
    return JSONResponse(
        {
            "status": "ok",
            "outcome": result.get("outcome"),
            "from_cache": outcome.from_cache,
        },
        status_code=200,
    )
