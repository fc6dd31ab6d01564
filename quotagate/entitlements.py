import logging
from dataclasses import dataclass
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError
from sqlalchemy.orm import Session

from quotagate.errors import NoActiveSubscription, NoEntitlement
from quotagate.models import Plan, PlanEntitlement, Subscription, SubscriptionStatus

logger = logging.getLogger(__name__)


class Entitlement(BaseModel):
    """Typed view of one PlanEntitlement blob. Required limits have no default."""
    model_config = ConfigDict(extra="ignore")

    max_processors_per_job: int = Field(ge=0)
    max_weight_per_job: int = Field(ge=0)
    daily_weight_quota: int = Field(ge=0)
    max_video_sec: int = Field(ge=0)
    max_resolution: str
    watermark: Optional[bool] = None
    concurrency: Optional[int] = Field(default=None, ge=1)


@dataclass
class ResolvedEntitlement:
    plan: Plan
    version: int
    entitlement: Entitlement


def active_subscription(db: Session, user_id: str) -> Optional[Subscription]:
    return (
        db.query(Subscription)
        .filter(
            Subscription.user_id == user_id,
            Subscription.status == SubscriptionStatus.ACTIVE,
            Subscription.current_end.is_(None),
        )
        .order_by(Subscription.current_start.desc())
        .first()
    )


def latest_entitlement(db: Session, plan_id: int) -> Optional[PlanEntitlement]:
    return (
        db.query(PlanEntitlement)
        .filter(PlanEntitlement.plan_id == plan_id)
        .order_by(PlanEntitlement.version.desc())
        .first()
    )


def resolve(db: Session, user_id: str) -> ResolvedEntitlement:
    """Find the user's active plan and its current entitlement version"""
    subscription = active_subscription(db, user_id)
    if subscription is None:
        raise NoActiveSubscription(user_id)

    plan = subscription.plan
    row = latest_entitlement(db, plan.id)
    if row is None:
        raise NoEntitlement(plan.code)

    try:
        entitlement = Entitlement.model_validate(row.entitlements or {})
    except ValidationError as e:
        fields = ", ".join(".".join(str(p) for p in err["loc"]) for err in e.errors())
        logger.error(f"Plan {plan.code} entitlement v{row.version} is invalid: {fields}")
        raise NoEntitlement(plan.code, f"entitlement v{row.version} invalid or missing: {fields}")

    return ResolvedEntitlement(plan=plan, version=row.version, entitlement=entitlement)
