from typing import Optional

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import event
from sqlalchemy.orm import sessionmaker

from quotagate import models  # noqa: F401
from quotagate.config import Settings, get_settings
from quotagate.deps import Base, create_access_token, get_b2, get_db, make_engine
from quotagate.dispatcher import Dispatcher
from quotagate.ledger import usage_period
from quotagate.main import app
from quotagate.models import (
    Feature, FeatureStatus, FeatureType, MediaAsset, Plan, PlanEntitlement, Subscription, UsageCounter,
)
from quotagate.routes.api import get_publisher

WORKER_SECRET = "test-worker-secret"
USER_ID = "user-1"

CATALOG = {
    "face_swapper": 3,
    "face_enhancer": 2,
    "frame_enhancer": 4,
    "deep_swapper": 5,
    "lip_syncer": 3,
    "age_modifier": 1,
}

LIMITS = {
    "max_processors_per_job": 2,
    "max_weight_per_job": 8,
    "daily_weight_quota": 10,
    "max_video_sec": 60,
    "max_resolution": "1080p",
    "watermark": False,
    "concurrency": 2,
}


class FakePublisher:
    def __init__(self):
        self.published = []
        self.fail_with: Optional[Exception] = None

    async def publish(self, descriptor, dedupe_key):
        if self.fail_with is not None:
            raise self.fail_with
        self.published.append((dedupe_key, descriptor))


class FakeBucket:
    def __init__(self, name):
        self.name = name

    def get_download_authorization(self, file_name_prefix, valid_duration_in_seconds):
        return f"token-{valid_duration_in_seconds}"


class FakeB2:
    def get_bucket_by_name(self, name):
        return FakeBucket(name)

    def get_download_url_for_file_name(self, bucket_name, file_name):
        return f"https://b2.example/file/{bucket_name}/{file_name}"


@pytest.fixture
def settings(tmp_path):
    return Settings(
        database_url=f"sqlite:///{tmp_path / 'test.db'}",
        worker_shared_secret=WORKER_SECRET,
        jwt_secret="test-jwt-secret",
        b2_output_bucket="test-output",
        job_timeout_seconds=600,
    )


@pytest.fixture
def engine(settings):
    engine = make_engine(settings.database_url)
    Base.metadata.create_all(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture
def locking_session_factory(settings, engine):
    """Sessions whose transactions take the SQLite write lock up front, like a row lock would"""
    locking = make_engine(settings.database_url)

    @event.listens_for(locking, "connect")
    def _no_implicit_begin(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(locking, "begin")
    def _begin_immediate(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")

    yield sessionmaker(autocommit=False, autoflush=False, bind=locking)
    locking.dispose()


@pytest.fixture
def db(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def publisher():
    return FakePublisher()


@pytest.fixture
def dispatcher(db, settings, publisher):
    return Dispatcher(db, settings, publisher)


@pytest.fixture
def client(settings, session_factory, publisher):
    def override_get_db():
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_settings] = lambda: settings
    app.dependency_overrides[get_publisher] = lambda: publisher
    app.dependency_overrides[get_b2] = lambda: FakeB2()
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


def auth_headers(settings, user_id=USER_ID):
    return {"Authorization": f"Bearer {create_access_token(user_id, settings)}"}


def worker_headers(secret=WORKER_SECRET):
    return {"X-Worker-Secret": secret}


def add_catalog(db, weights=None):
    for name, weight in (weights or CATALOG).items():
        db.add(Feature(name=name, type=FeatureType.PROCESSOR, weight=weight))
    # Entries that must never count as processors
    db.add(Feature(name="retired_swapper", type=FeatureType.PROCESSOR, weight=1, status=FeatureStatus.INACTIVE))
    db.add(Feature(name="face_swapper_model", type=FeatureType.PROCESSOR_OPTION, weight=0))
    db.commit()


def add_plan(db, code="PREMIUM", limits=None, version=1):
    plan = Plan(code=code, name=code.title(), priority=2)
    db.add(plan)
    db.flush()
    if limits is not False:
        db.add(PlanEntitlement(plan_id=plan.id, version=version, entitlements=dict(LIMITS, **(limits or {}))))
    db.commit()
    return plan


def subscribe(db, plan, user_id=USER_ID, **kwargs):
    sub = Subscription(user_id=user_id, plan_id=plan.id, **kwargs)
    db.add(sub)
    db.commit()
    return sub


def set_usage(db, used, user_id=USER_ID):
    start, end = usage_period()
    db.add(UsageCounter(user_id=user_id, period_start=start, period_end=end, jobs_total=used))
    db.commit()


def add_asset(db, user_id=USER_ID, **kwargs):
    asset = MediaAsset(user_id=user_id, bucket="input", object_key=kwargs.pop("object_key", "video/src.mp4"), **kwargs)
    db.add(asset)
    db.commit()
    return asset


@pytest.fixture
def world(db):
    """Catalog, a PREMIUM plan and an active subscription for USER_ID"""
    add_catalog(db)
    plan = add_plan(db)
    subscribe(db, plan)
    return plan
