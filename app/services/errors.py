"""Billing error taxonomy.

Every service-layer failure that reaches an HTTP caller is one of these.
``retryable`` tells callers (and the webhook processor) whether a redelivery
of the same request may succeed later.
"""

from __future__ import annotations

from typing import Any


class BillingError(Exception):
    """Base class for billing failures surfaced to callers."""

    status_code = 500
    code = "billing_error"
    retryable = False

    def __init__(self, message: str, *, details: Any | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details


class ValidationError(BillingError):
    """Malformed or semantically invalid request."""

    status_code = 400
    code = "validation_error"


class NotFoundError(BillingError):
    """Subscription, plan or payment is absent."""

    status_code = 404
    code = "not_found"


class ConflictError(BillingError):
    """State conflict, e.g. a payment already linked elsewhere."""

    status_code = 409
    code = "conflict"


class UpstreamError(BillingError):
    """Payment provider call failed."""

    status_code = 502
    code = "upstream_error"
    retryable = True


class LockContentionError(BillingError):
    """Another request holds the resource lock."""

    status_code = 409
    code = "lock_contention"
    retryable = True

    def __init__(self, resource_key: str, attempts: int) -> None:
        super().__init__(
            f"Resource {resource_key} is busy, retry shortly",
            details={"resource": resource_key, "attempts": attempts},
        )
        self.resource_key = resource_key


class InternalError(BillingError):
    """Persistence failure."""

    status_code = 500
    code = "internal_error"
    retryable = True
