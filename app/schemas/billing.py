from __future__ import annotations

import json
from datetime import datetime
from typing import Any, Literal
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from app.models.billing import BillingInterval, PaymentStatus, SubscriptionStatus

ActivationSource = Literal["webhook", "manual_check", "recovery"]


class BillingPlanBase(BaseModel):
    name: str = Field(min_length=1, max_length=120)
    description: str | None = None
    price: int = Field(ge=0)
    currency: str = Field(default="NGN", min_length=3, max_length=3)
    interval: BillingInterval = BillingInterval.monthly
    max_portals: int = Field(default=1, ge=0)
    max_storage_gb: int = Field(default=1, ge=0)
    max_uploads_month: int = Field(default=100, ge=0)
    is_active: bool = True


class BillingPlanCreate(BillingPlanBase):
    pass


class BillingPlanUpdate(BaseModel):
    name: str | None = Field(default=None, min_length=1, max_length=120)
    description: str | None = None
    price: int | None = Field(default=None, ge=0)
    currency: str | None = Field(default=None, min_length=3, max_length=3)
    interval: BillingInterval | None = None
    max_portals: int | None = Field(default=None, ge=0)
    max_storage_gb: int | None = Field(default=None, ge=0)
    max_uploads_month: int | None = Field(default=None, ge=0)
    is_active: bool | None = None


class BillingPlanRead(BillingPlanBase):
    model_config = ConfigDict(from_attributes=True)
    id: UUID
    created_at: datetime
    updated_at: datetime


class SubscriptionRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)
    id: UUID
    user_id: UUID
    plan_id: UUID
    status: SubscriptionStatus
    current_period_start: datetime | None = None
    current_period_end: datetime | None = None
    cancel_at_period_end: bool = False
    retry_count: int = 0
    grace_period_end: datetime | None = None
    provider_subscription_id: str | None = None
    committed_price: int
    committed_currency: str
    created_at: datetime
    updated_at: datetime


class PaymentRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)
    id: UUID
    user_id: UUID
    subscription_id: UUID | None = None
    amount: int
    currency: str
    status: PaymentStatus
    provider_payment_ref: str
    provider_payment_id: str | None = None
    description: str | None = None
    created_at: datetime


class CheckoutRequest(BaseModel):
    plan_id: UUID
    email: str = Field(min_length=3, max_length=255)


class CheckoutResponse(BaseModel):
    payment_link: str
    reference: str
    subscription: SubscriptionRead


class CurrentSubscriptionResponse(BaseModel):
    subscription: SubscriptionRead | None = None
    plan: BillingPlanRead | None = None
    payments: list[PaymentRead] = Field(default_factory=list)


class RecoverRequest(BaseModel):
    subscription_id: UUID
    payment_reference: str | None = Field(default=None, min_length=1, max_length=160)


class StatusCheckRequest(BaseModel):
    payment_reference: str | None = Field(default=None, min_length=1, max_length=160)


class ReconcileItem(BaseModel):
    subscription_id: UUID
    user_id: UUID
    success: bool
    reason: str | None = None
    payment_id: UUID | None = None
    error: str | None = None


class ReconcileSummary(BaseModel):
    total: int
    succeeded: int
    failed: int
    results: list[ReconcileItem] = Field(default_factory=list)


class ReconcileCounts(BaseModel):
    total_incomplete: int
    reconcilable: int


class PaymentData(BaseModel):
    """Evidence of a successful (or failed) charge, in minor units."""

    reference: str = Field(min_length=1, max_length=160)
    payment_id: str | None = None
    amount: int = Field(ge=0)
    currency: str = Field(default="NGN", min_length=3, max_length=3)
    authorization_code: str | None = None


class ActivationRequest(BaseModel):
    subscription_id: UUID
    payment_data: PaymentData
    source: ActivationSource
    provider_subscription_id: str | None = None
    provider_customer_id: str | None = None
    provider_email_token: str | None = None


class FailedRenewalRequest(BaseModel):
    subscription_id: UUID
    reference: str | None = None
    amount: int | None = Field(default=None, ge=0)
    currency: str | None = None
    reason: str | None = None
    source: ActivationSource = "webhook"


class ActivationResult(BaseModel):
    success: bool
    reason: str
    subscription_id: UUID | None = None
    status: SubscriptionStatus | None = None


class RecoveryResult(BaseModel):
    success: bool
    method: Literal["linked_payment", "payment_reference", "unlinked_payment"] | None = None
    reason: str | None = None
    message: str
    payment_id: UUID | None = None
    subscription_id: UUID | None = None


class CancelResponse(BaseModel):
    subscription: SubscriptionRead
    cancelled_immediately: bool


class PaystackEventData(BaseModel):
    """The ``data`` object of a Paystack webhook. Unknown keys are ignored."""

    model_config = ConfigDict(extra="ignore")

    id: str | None = None
    reference: str | None = None
    status: str | None = None
    amount: int | None = None
    currency: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)
    subscription_code: str | None = None
    invoice_code: str | None = None
    email_token: str | None = None
    transaction: dict[str, Any] | None = None
    subscription: dict[str, Any] | None = None
    authorization: dict[str, Any] | None = None
    customer: dict[str, Any] | None = None
    gateway_response: str | None = None

    @field_validator("id", mode="before")
    @classmethod
    def _coerce_id(cls, value: Any) -> Any:
        if isinstance(value, int):
            return str(value)
        return value

    @field_validator("metadata", mode="before")
    @classmethod
    def _parse_metadata(cls, value: Any) -> dict[str, Any]:
        # Paystack sends metadata as an object, a JSON string, or an empty string
        if isinstance(value, str):
            try:
                value = json.loads(value) if value.strip() else {}
            except json.JSONDecodeError:
                return {}
        return value if isinstance(value, dict) else {}

    @property
    def provider_subscription_code(self) -> str | None:
        if self.subscription and self.subscription.get("subscription_code"):
            return str(self.subscription["subscription_code"])
        return self.subscription_code

    @property
    def provider_email_token(self) -> str | None:
        """Token Paystack needs to disable the subscription."""
        if self.subscription and self.subscription.get("email_token"):
            return str(self.subscription["email_token"])
        return self.email_token

    @property
    def payment_reference(self) -> str | None:
        """Charge reference; invoice events carry it on the nested transaction."""
        if self.transaction and self.transaction.get("reference"):
            return str(self.transaction["reference"])
        return self.reference

    @property
    def authorization_code(self) -> str | None:
        if self.authorization:
            code = self.authorization.get("authorization_code")
            return str(code) if code else None
        return None

    @property
    def customer_code(self) -> str | None:
        if self.customer:
            code = self.customer.get("customer_code")
            return str(code) if code else None
        return None


class PaystackWebhookEvent(BaseModel):
    model_config = ConfigDict(extra="ignore")

    event: str = Field(min_length=1)
    data: PaystackEventData

    @model_validator(mode="after")
    def _require_identity(self) -> "PaystackWebhookEvent":
        data = self.data
        if not (
            data.id
            or data.payment_reference
            or data.invoice_code
            or data.provider_subscription_code
        ):
            raise ValueError("webhook data carries no id, reference or subscription code")
        return self
