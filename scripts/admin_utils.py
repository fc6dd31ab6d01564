#!/usr/bin/env python
"""
Operator utilities: inspect jobs, sweep stuck ones, seed the catalog and plans.
"""

import argparse
from datetime import timedelta

from quotagate.config import get_settings
from quotagate.deps import SessionLocal
from quotagate.jobs import JobStore
from quotagate.models import (
    Feature, FeatureType, Job, Plan, PlanEntitlement, Subscription, SubscriptionStatus, utcnow,
)

DEFAULT_PLANS = {
    "FREE": ("Free", 1, {
        "max_processors_per_job": 1, "max_weight_per_job": 3, "daily_weight_quota": 10,
        "max_video_sec": 30, "max_resolution": "480p", "watermark": True, "concurrency": 1,
    }),
    "PREMIUM": ("Premium", 2, {
        "max_processors_per_job": 2, "max_weight_per_job": 8, "daily_weight_quota": 60,
        "max_video_sec": 120, "max_resolution": "720p", "watermark": False, "concurrency": 2,
    }),
    "PRO": ("Pro", 3, {
        "max_processors_per_job": 4, "max_weight_per_job": 16, "daily_weight_quota": 300,
        "max_video_sec": 600, "max_resolution": "1080p", "watermark": False, "concurrency": 4,
    }),
}

DEFAULT_PROCESSORS = {
    "face_swapper": 3,
    "face_enhancer": 2,
    "frame_enhancer": 4,
    "lip_syncer": 3,
    "age_modifier": 2,
    "expression_restorer": 2,
    "frame_colorizer": 3,
    "face_debugger": 1,
}


def list_jobs(db, status=None):
    """List jobs, optionally filtered by status"""
    query = db.query(Job).order_by(Job.created_at.desc())
    if status:
        query = query.filter(Job.status == status.upper())
    jobs = query.all()
    if not jobs:
        print("No jobs found in the database.")
        return

    print(f"Found {len(jobs)} jobs:")
    print("--------------------------------------------------")
    for job in jobs:
        print(f"ID: {job.id}")
        print(f"User: {job.user_id}")
        print(f"Status: {job.status} ({job.progress_pct}%)")
        print(f"Processors: {', '.join(job.processors or [])} (weight {job.weight_used})")
        print(f"Created: {job.created_at}")
        if job.error_code:
            print(f"Error: {job.error_code}: {job.error_message}")
        print("--------------------------------------------------")


def show_events(db, job_id):
    """Print the transition history of one job"""
    for event in JobStore(db).events(job_id):
        print(f"{event.created_at}  {event.from_status or '-':>9} -> {event.to_status:<9}  {event.message or ''}")


def sweep(db):
    """Fail jobs stuck in QUEUED/RUNNING past the configured timeout"""
    settings = get_settings()
    swept = JobStore(db).sweep_stale(timedelta(seconds=settings.job_timeout_seconds))
    print(f"Swept {len(swept)} stale job(s).")
    for job in swept:
        print(f"  {job.id}: {job.error_message}")


def seed(db):
    """Create default plans, entitlements and processors if missing"""
    for code, (name, priority, limits) in DEFAULT_PLANS.items():
        plan = db.query(Plan).filter(Plan.code == code).first()
        if plan is None:
            plan = Plan(code=code, name=name, priority=priority)
            db.add(plan)
            db.flush()
        if not db.query(PlanEntitlement).filter(PlanEntitlement.plan_id == plan.id).first():
            db.add(PlanEntitlement(plan_id=plan.id, version=1, entitlements=limits))

    for name, weight in DEFAULT_PROCESSORS.items():
        if not db.query(Feature).filter(Feature.name == name).first():
            db.add(Feature(name=name, type=FeatureType.PROCESSOR, weight=weight))

    db.commit()
    print("Plans, entitlements and processors seeded.")


def subscribe(db, user_id, plan_code):
    """Put a user on a plan, closing any active subscription"""
    plan = db.query(Plan).filter(Plan.code == plan_code.upper()).first()
    if plan is None:
        print(f"Plan {plan_code} not found.")
        return False

    now = utcnow()
    active = db.query(Subscription).filter(
        Subscription.user_id == user_id,
        Subscription.status == SubscriptionStatus.ACTIVE,
        Subscription.current_end.is_(None),
    ).all()
    for sub in active:
        sub.status = SubscriptionStatus.CANCELLED
        sub.current_end = now

    db.add(Subscription(user_id=user_id, plan_id=plan.id, status=SubscriptionStatus.ACTIVE, current_start=now))
    db.commit()
    print(f"User {user_id} subscribed to {plan.code}.")
    return True


def main():
    """Main function for command-line usage"""
    parser = argparse.ArgumentParser(description="Operator utilities for the job admission service")
    subparsers = parser.add_subparsers(dest="command", help="Command to run")

    list_parser = subparsers.add_parser("list", help="List jobs")
    list_parser.add_argument("--status", help="Only jobs in this status")

    events_parser = subparsers.add_parser("events", help="Show a job's transition history")
    events_parser.add_argument("job_id", help="ID of the job")

    subparsers.add_parser("sweep", help="Fail jobs stuck past the timeout")
    subparsers.add_parser("seed", help="Create default plans and processors")

    subscribe_parser = subparsers.add_parser("subscribe", help="Put a user on a plan")
    subscribe_parser.add_argument("user_id")
    subscribe_parser.add_argument("plan_code")

    args = parser.parse_args()

    db = SessionLocal()
    try:
        if args.command == "list":
            list_jobs(db, args.status)
        elif args.command == "events":
            show_events(db, args.job_id)
        elif args.command == "sweep":
            sweep(db)
        elif args.command == "seed":
            seed(db)
        elif args.command == "subscribe":
            subscribe(db, args.user_id, args.plan_code)
        else:
            parser.print_help()
    finally:
        db.close()


if __name__ == "__main__":
    main()
