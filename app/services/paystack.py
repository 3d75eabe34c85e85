"""Paystack payment gateway integration service."""

from __future__ import annotations

import hashlib
import hmac
import logging
import uuid
from typing import Any

import httpx

from app.config import settings
from app.services.errors import UpstreamError

logger = logging.getLogger(__name__)

# Paystack answers an unknown reference with 400 or 404 and a failed envelope
_UNKNOWN_REFERENCE_STATUSES = (400, 404)


def _get_secret_key() -> str:
    settings.validate_paystack_config()
    return settings.paystack_secret_key


def _headers() -> dict[str, str]:
    return {"Authorization": f"Bearer {_get_secret_key()}"}


def generate_reference(subscription_id: str | None = None) -> str:
    """Generate a unique payment reference.

    Format: SUB-{first 8 of subscription id}-{short_uuid} or SUB-{short_uuid}
    """
    short = uuid.uuid4().hex[:8]
    if subscription_id:
        return f"SUB-{str(subscription_id)[:8]}-{short}"
    return f"SUB-{short}"


def _envelope(resp: httpx.Response, action: str) -> dict[str, Any]:
    try:
        data = resp.json()
    except ValueError as exc:
        logger.error("Paystack %s returned a non-JSON body (HTTP %s)", action, resp.status_code)
        raise UpstreamError(f"Paystack {action} returned an unreadable response") from exc
    if not isinstance(data, dict):
        raise UpstreamError(f"Paystack {action} returned an unreadable response")
    return data


def _unwrap(resp: httpx.Response, action: str) -> dict[str, Any]:
    resp.raise_for_status()
    data = _envelope(resp, action)
    if not data.get("status"):
        logger.error("Paystack %s failed: %s", action, data.get("message"))
        raise UpstreamError(data.get("message") or f"Paystack {action} failed")
    return data.get("data") or {}


def initialize_transaction(
    *,
    email: str,
    amount: int,
    reference: str,
    currency: str = "NGN",
    callback_url: str | None = None,
    metadata: dict[str, Any] | None = None,
) -> dict[str, Any]:
    """Initialize a Paystack transaction.

    Args:
        email: Customer email address.
        amount: Amount in minor units (kobo for NGN).
        reference: Unique transaction reference.
        currency: ISO currency code.
        callback_url: URL Paystack redirects to after payment.
        metadata: Optional metadata dict attached to the transaction.

    Returns:
        Dict with ``authorization_url``, ``access_code``, ``reference``.

    Raises:
        UpstreamError: On transport failure or a non-success response.
    """
    payload: dict[str, Any] = {
        "email": email,
        "amount": amount,
        "currency": currency,
        "reference": reference,
        "callback_url": callback_url or settings.paystack_callback_url,
    }
    if metadata:
        payload["metadata"] = metadata

    try:
        resp = httpx.post(
            f"{settings.paystack_base_url}/transaction/initialize",
            json=payload,
            headers=_headers(),
            timeout=settings.paystack_timeout_seconds,
        )
        return _unwrap(resp, "initialize")
    except httpx.HTTPError as exc:
        logger.error("Paystack initialize request failed for %s: %s", reference, exc)
        raise UpstreamError("Payment provider is unavailable") from exc


def verify_transaction(reference: str) -> dict[str, Any]:
    """Verify a Paystack transaction by reference.

    The returned ``status`` field is the transaction state (``success``,
    ``failed``, ``abandoned`` ...). A transaction that exists but did not
    succeed is returned normally. A reference Paystack does not know (a 4xx
    with a failed envelope) comes back with status ``not_found``.

    Raises:
        UpstreamError: On transport failure, a 5xx or an unreadable response.
    """
    try:
        resp = httpx.get(
            f"{settings.paystack_base_url}/transaction/verify/{reference}",
            headers=_headers(),
            timeout=settings.paystack_timeout_seconds,
        )
        if resp.status_code in _UNKNOWN_REFERENCE_STATUSES:
            envelope = _envelope(resp, "verify")
            if not envelope.get("status"):
                message = envelope.get("message") or "Transaction reference not found"
                logger.info("Paystack has no transaction %s: %s", reference, message)
                return {"reference": reference, "status": "not_found", "message": message}
        return _unwrap(resp, "verify")
    except httpx.HTTPError as exc:
        logger.error("Paystack verify request failed for %s: %s", reference, exc)
        raise UpstreamError("Payment provider is unavailable") from exc


def fetch_subscription(code: str) -> dict[str, Any]:
    """Fetch a Paystack subscription; the result carries its ``email_token``."""
    try:
        resp = httpx.get(
            f"{settings.paystack_base_url}/subscription/{code}",
            headers=_headers(),
            timeout=settings.paystack_timeout_seconds,
        )
        return _unwrap(resp, "fetch subscription")
    except httpx.HTTPError as exc:
        logger.error("Paystack fetch subscription failed for %s: %s", code, exc)
        raise UpstreamError("Payment provider is unavailable") from exc


def disable_subscription(code: str, email_token: str) -> dict[str, Any]:
    """Stop a Paystack subscription from renewing.

    Paystack requires both the subscription code and its email token.
    """
    payload: dict[str, Any] = {"code": code, "token": email_token}
    try:
        resp = httpx.post(
            f"{settings.paystack_base_url}/subscription/disable",
            json=payload,
            headers=_headers(),
            timeout=settings.paystack_timeout_seconds,
        )
        return _unwrap(resp, "disable subscription")
    except httpx.HTTPError as exc:
        logger.error("Paystack disable request failed for %s: %s", code, exc)
        raise UpstreamError("Payment provider is unavailable") from exc


def verify_webhook_signature(body: bytes, signature: str | None) -> bool:
    """Verify Paystack webhook HMAC-SHA512 signature.

    Args:
        body: Raw request body bytes.
        signature: Value of the X-Paystack-Signature header.

    Returns:
        True if the signature is valid.
    """
    secret_key = settings.paystack_secret_key
    if not secret_key or not signature:
        return False

    expected = hmac.new(
        secret_key.encode(),
        body,
        hashlib.sha512,
    ).hexdigest()

    return hmac.compare_digest(expected, signature)
