"""Billing plan management service."""

from sqlalchemy.orm import Session

from app.models.billing import BillingPlan
from app.schemas.billing import BillingPlanCreate, BillingPlanUpdate
from app.services.common import apply_ordering, apply_pagination, get_by_id
from app.services.errors import NotFoundError


class BillingPlans:
    @staticmethod
    def create(db: Session, payload: BillingPlanCreate):
        data = payload.model_dump()
        data["currency"] = data["currency"].upper()
        plan = BillingPlan(**data)
        db.add(plan)
        db.commit()
        db.refresh(plan)
        return plan

    @staticmethod
    def get(db: Session, plan_id: str):
        plan = get_by_id(db, BillingPlan, plan_id)
        if not plan:
            raise NotFoundError("Billing plan not found")
        return plan

    @staticmethod
    def list(
        db: Session,
        is_active: bool | None = True,
        order_by: str = "price",
        order_dir: str = "asc",
        limit: int = 100,
        offset: int = 0,
    ):
        query = db.query(BillingPlan)
        if is_active is not None:
            query = query.filter(BillingPlan.is_active == is_active)
        query = apply_ordering(
            query,
            order_by,
            order_dir,
            {
                "created_at": BillingPlan.created_at,
                "name": BillingPlan.name,
                "price": BillingPlan.price,
            },
        )
        return apply_pagination(query, limit, offset).all()

    @staticmethod
    def update(db: Session, plan_id: str, payload: BillingPlanUpdate):
        # Subscriptions keep the price they committed to at checkout
        plan = BillingPlans.get(db, plan_id)
        for key, value in payload.model_dump(exclude_unset=True).items():
            if key == "currency" and value:
                value = value.upper()
            setattr(plan, key, value)
        db.commit()
        db.refresh(plan)
        return plan

    @staticmethod
    def deactivate(db: Session, plan_id: str):
        plan = BillingPlans.get(db, plan_id)
        plan.is_active = False
        db.commit()
        db.refresh(plan)
        return plan
