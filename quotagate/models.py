import uuid
from datetime import datetime, timezone

from sqlalchemy import (
    JSON, Column, Date, DateTime, ForeignKey, Integer, String, Text, UniqueConstraint,
)
from sqlalchemy.orm import relationship

from quotagate.deps import Base


def utcnow() -> datetime:
    """Naive UTC timestamp, as stored in every DateTime column"""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def new_id() -> str:
    return str(uuid.uuid4())


class JobStatus:
    QUEUED = "QUEUED"
    RUNNING = "RUNNING"
    SUCCEEDED = "SUCCEEDED"
    FAILED = "FAILED"

    ALL = (QUEUED, RUNNING, SUCCEEDED, FAILED)


class SubscriptionStatus:
    ACTIVE = "ACTIVE"
    CANCELLED = "CANCELLED"
    PAST_DUE = "PAST_DUE"


class FeatureType:
    PROCESSOR = "processor"
    PROCESSOR_OPTION = "processor_option"
    FEATURE = "feature"


class FeatureStatus:
    ACTIVE = "ACTIVE"
    INACTIVE = "INACTIVE"


class Plan(Base):
    """Subscription tier"""
    __tablename__ = "plans"

    id = Column(Integer, primary_key=True, index=True)
    code = Column(String(30), unique=True, index=True)  # FREE, PREMIUM, PRO
    name = Column(String(100))
    priority = Column(Integer, default=1)

    entitlements = relationship("PlanEntitlement", back_populates="plan")


class PlanEntitlement(Base):
    """Versioned limits blob for a plan. Rows are appended, never edited."""
    __tablename__ = "plan_entitlements"
    __table_args__ = (UniqueConstraint("plan_id", "version", name="uq_plan_entitlement_version"),)

    id = Column(Integer, primary_key=True, index=True)
    plan_id = Column(Integer, ForeignKey("plans.id"), index=True, nullable=False)
    version = Column(Integer, nullable=False)
    entitlements = Column(JSON, nullable=False, default=dict)
    created_at = Column(DateTime, default=utcnow)

    plan = relationship("Plan", back_populates="entitlements")


class Subscription(Base):
    """A user's membership of a plan"""
    __tablename__ = "subscriptions"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(String(36), index=True, nullable=False)
    plan_id = Column(Integer, ForeignKey("plans.id"), nullable=False)
    status = Column(String(20), default=SubscriptionStatus.ACTIVE)
    current_start = Column(DateTime, default=utcnow)
    current_end = Column(DateTime, nullable=True)  # null while active

    plan = relationship("Plan")


class Feature(Base):
    """Catalog entry. Only active processors carry job weight."""
    __tablename__ = "features"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(100), unique=True, index=True, nullable=False)
    type = Column(String(30), default=FeatureType.PROCESSOR)
    weight = Column(Integer, default=1, nullable=False)
    status = Column(String(20), default=FeatureStatus.ACTIVE)


class UsageCounter(Base):
    """Weight consumed by a user within one quota period"""
    __tablename__ = "usage_counters"
    __table_args__ = (
        UniqueConstraint("user_id", "period_start", "period_end", name="uq_usage_counter_period"),
    )

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(String(36), index=True, nullable=False)
    period_start = Column(Date, nullable=False)
    period_end = Column(Date, nullable=False)
    jobs_total = Column(Integer, default=0, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)


class MediaAsset(Base):
    """Reference to media bytes held in object storage"""
    __tablename__ = "media_assets"
    __table_args__ = (UniqueConstraint("job_id", "object_key", name="uq_media_asset_job_output"),)

    id = Column(String(36), primary_key=True, default=new_id)
    user_id = Column(String(36), index=True, nullable=False)
    job_id = Column(String(36), nullable=True, index=True)  # set for job outputs only
    bucket = Column(String(100))
    object_key = Column(String(512), nullable=False)
    mime_type = Column(String(100), nullable=True)
    width = Column(Integer, nullable=True)
    height = Column(Integer, nullable=True)
    duration_sec = Column(Integer, nullable=True)
    created_at = Column(DateTime, default=utcnow)


class Job(Base):
    """A processing request admitted against the user's quota"""
    __tablename__ = "jobs"

    id = Column(String(36), primary_key=True, default=new_id)
    user_id = Column(String(36), index=True, nullable=False)
    status = Column(String(20), default=JobStatus.QUEUED, index=True)
    processors = Column(JSON, nullable=False, default=list)
    options = Column(JSON, nullable=False, default=dict)
    weight_used = Column(Integer, nullable=False)  # fixed at admission
    progress_pct = Column(Integer, default=0, nullable=False)
    error_code = Column(String(50), nullable=True)
    error_message = Column(Text, nullable=True)
    source_asset_id = Column(String(36), ForeignKey("media_assets.id"), nullable=True)
    target_asset_id = Column(String(36), ForeignKey("media_assets.id"), nullable=True)
    audio_asset_id = Column(String(36), ForeignKey("media_assets.id"), nullable=True)
    output_asset_id = Column(String(36), ForeignKey("media_assets.id"), nullable=True)
    dispatch_count = Column(Integer, default=0, nullable=False)
    created_at = Column(DateTime, default=utcnow)
    started_at = Column(DateTime, nullable=True)
    finished_at = Column(DateTime, nullable=True)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    output_asset = relationship("MediaAsset", foreign_keys=[output_asset_id])
    events = relationship("JobEvent", back_populates="job", order_by="JobEvent.id")


class JobEvent(Base):
    """Audit row written for every job state transition"""
    __tablename__ = "job_events"

    id = Column(Integer, primary_key=True, autoincrement=True)
    job_id = Column(String(36), ForeignKey("jobs.id"), index=True, nullable=False)
    from_status = Column(String(20), nullable=True)  # null for creation
    to_status = Column(String(20), nullable=False)
    message = Column(Text, nullable=True)
    created_at = Column(DateTime, default=utcnow)

    job = relationship("Job", back_populates="events")
