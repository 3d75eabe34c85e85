from fastapi import APIRouter, Depends, Header, Query, status
from sqlalchemy.orm import Session

from app.api.deps import get_current_user_id, get_db, get_raw_body, require_admin
from app.schemas.billing import (
    BillingPlanCreate,
    BillingPlanRead,
    BillingPlanUpdate,
    CancelResponse,
    CheckoutRequest,
    CheckoutResponse,
    CurrentSubscriptionResponse,
    ReconcileCounts,
    ReconcileSummary,
    RecoverRequest,
    RecoveryResult,
    StatusCheckRequest,
)
from app.services import billing as billing_service
from app.services.billing.webhooks import process_paystack_webhook

router = APIRouter(prefix="/billing")


# --- Plans ---


@router.get("/plans", response_model=list[BillingPlanRead], tags=["plans"])
def list_plans(
    order_by: str = Query(default="price"),
    order_dir: str = Query(default="asc", pattern="^(asc|desc)$"),
    limit: int = Query(default=100, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    db: Session = Depends(get_db),
):
    return billing_service.plans.list(
        db, is_active=True, order_by=order_by, order_dir=order_dir, limit=limit, offset=offset
    )


@router.post(
    "/plans",
    response_model=BillingPlanRead,
    status_code=status.HTTP_201_CREATED,
    tags=["plans"],
    dependencies=[Depends(require_admin)],
)
def create_plan(payload: BillingPlanCreate, db: Session = Depends(get_db)):
    return billing_service.plans.create(db, payload)


@router.patch(
    "/plans/{plan_id}",
    response_model=BillingPlanRead,
    tags=["plans"],
    dependencies=[Depends(require_admin)],
)
def update_plan(plan_id: str, payload: BillingPlanUpdate, db: Session = Depends(get_db)):
    return billing_service.plans.update(db, plan_id, payload)


# --- Subscription ---


@router.post(
    "/subscription",
    response_model=CheckoutResponse,
    status_code=status.HTTP_201_CREATED,
    tags=["subscription"],
)
def create_subscription(
    payload: CheckoutRequest,
    user_id=Depends(get_current_user_id),
    db: Session = Depends(get_db),
):
    return billing_service.subscriptions.create_checkout(
        db, user_id, payload.email, payload.plan_id
    )


@router.get(
    "/subscription",
    response_model=CurrentSubscriptionResponse,
    tags=["subscription"],
)
def get_subscription(user_id=Depends(get_current_user_id), db: Session = Depends(get_db)):
    return billing_service.subscriptions.get_current(db, user_id)


@router.delete("/subscription", response_model=CancelResponse, tags=["subscription"])
def cancel_subscription(user_id=Depends(get_current_user_id), db: Session = Depends(get_db)):
    return billing_service.subscriptions.cancel(db, user_id)


@router.post(
    "/subscription/status",
    response_model=RecoveryResult,
    tags=["subscription"],
)
def check_subscription_status(
    payload: StatusCheckRequest | None = None,
    user_id=Depends(get_current_user_id),
    db: Session = Depends(get_db),
):
    reference = payload.payment_reference if payload else None
    return billing_service.recovery.check_status(db, user_id, reference)


@router.post(
    "/subscription/recover",
    response_model=RecoveryResult,
    tags=["subscription"],
)
def recover_subscription(
    payload: RecoverRequest,
    user_id=Depends(get_current_user_id),
    db: Session = Depends(get_db),
):
    return billing_service.recovery.recover(
        db, user_id, payload.subscription_id, payload.payment_reference
    )


# --- Admin reconciliation ---


@router.get(
    "/admin/reconcile",
    response_model=ReconcileCounts,
    tags=["billing-admin"],
    dependencies=[Depends(require_admin)],
)
def count_reconcilable(db: Session = Depends(get_db)):
    return billing_service.recovery.reconcile_counts(db)


@router.post(
    "/admin/reconcile",
    response_model=ReconcileSummary,
    tags=["billing-admin"],
    dependencies=[Depends(require_admin)],
)
def reconcile_incomplete(db: Session = Depends(get_db)):
    return billing_service.recovery.reconcile_incomplete(db)


# --- Provider webhooks ---


@router.post("/webhook", tags=["payment-events"])
def paystack_webhook(
    body: bytes = Depends(get_raw_body),
    x_paystack_signature: str | None = Header(default=None),
    db: Session = Depends(get_db),
):
    return process_paystack_webhook(db=db, body=body, signature=x_paystack_signature)
