"""
Per-user daily usage counters.

The counter row is the only shared mutable state that admission depends on.
Charging is a single conditional UPDATE, so the ceiling check and the write
cannot be split by a concurrent admission:

    UPDATE usage_counters SET jobs_total = jobs_total + :w
    WHERE id = :id AND jobs_total + :w <= :quota
"""

import logging
from datetime import date, timedelta
from typing import Optional, Tuple

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from quotagate import entitlements
from quotagate.errors import NoActiveSubscription
from quotagate.models import UsageCounter, utcnow

logger = logging.getLogger(__name__)

Period = Tuple[date, date]


def usage_period(day: Optional[date] = None) -> Period:
    """The UTC calendar day containing ``day`` (default: today)"""
    start = day or utcnow().date()
    return start, start + timedelta(days=1)


def _find_counter(db: Session, user_id: str, period: Period) -> Optional[UsageCounter]:
    start, end = period
    return (
        db.query(UsageCounter)
        .filter(
            UsageCounter.user_id == user_id,
            UsageCounter.period_start == start,
            UsageCounter.period_end == end,
        )
        .first()
    )


def ensure_counter(db: Session, user_id: str, period: Period) -> UsageCounter:
    """Load the period's counter, creating it at zero on first use"""
    counter = _find_counter(db, user_id, period)
    if counter is not None:
        return counter

    start, end = period
    try:
        db.add(UsageCounter(user_id=user_id, period_start=start, period_end=end, jobs_total=0))
        db.commit()
    except IntegrityError:
        # Another request created it first
        db.rollback()
    return _find_counter(db, user_id, period)


def current_usage(db: Session, user_id: str, period: Optional[Period] = None) -> int:
    counter = _find_counter(db, user_id, period or usage_period())
    return counter.jobs_total if counter else 0


def try_charge(db: Session, counter_id: int, weight: int, quota: int) -> bool:
    """
    Add ``weight`` to the counter if the result stays within ``quota``.

    Runs inside the caller's transaction and does not commit. Returns False
    when the ceiling would be crossed, in which case nothing was written.
    """
    result = db.execute(
        update(UsageCounter)
        .where(UsageCounter.id == counter_id, UsageCounter.jobs_total + weight <= quota)
        .values(jobs_total=UsageCounter.jobs_total + weight, updated_at=utcnow())
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


def quota_summary(db: Session, user_id: str) -> dict:
    """Active plan, today's consumption and what is left of the daily quota"""
    start, end = usage_period()
    summary = {
        "plan": None,
        "period": {"start": start.isoformat(), "end": end.isoformat()},
        "used": current_usage(db, user_id, (start, end)),
        "limit": None,
        "remaining": None,
    }

    try:
        resolved = entitlements.resolve(db, user_id)
    except NoActiveSubscription:
        return summary

    limit = resolved.entitlement.daily_weight_quota
    summary["plan"] = {"code": resolved.plan.code, "name": resolved.plan.name, "version": resolved.version}
    summary["limit"] = limit
    summary["remaining"] = max(0, limit - summary["used"])
    return summary
