from datetime import timedelta

import pytest

from conftest import USER_ID, add_asset
from quotagate.errors import InvalidTransition, NotFound
from quotagate.jobs import TIMEOUT_ERROR_CODE, JobStore, can_transition
from quotagate.models import JobStatus, utcnow


@pytest.fixture
def store(db):
    return JobStore(db)


@pytest.fixture
def job(db, store):
    job = store.create_queued(USER_ID, ["face_swapper"], 3)
    db.commit()
    return job


def statuses(store, job):
    return [(e.from_status, e.to_status) for e in store.events(job.id)]


def test_allowed_transitions():
    assert can_transition(JobStatus.QUEUED, JobStatus.RUNNING)
    assert can_transition(JobStatus.RUNNING, JobStatus.SUCCEEDED)
    assert can_transition(JobStatus.RUNNING, JobStatus.FAILED)
    assert can_transition(JobStatus.QUEUED, JobStatus.FAILED)
    assert can_transition(JobStatus.FAILED, JobStatus.QUEUED)


def test_succeeded_is_terminal():
    for target in JobStatus.ALL:
        assert not can_transition(JobStatus.SUCCEEDED, target)


def test_queued_cannot_succeed_directly():
    assert not can_transition(JobStatus.QUEUED, JobStatus.SUCCEEDED)
    assert not can_transition(JobStatus.FAILED, JobStatus.RUNNING)


def test_create_queued_records_creation_event(store, job):
    assert job.status == JobStatus.QUEUED
    assert job.progress_pct == 0
    assert statuses(store, job) == [(None, JobStatus.QUEUED)]


def test_run_to_success(db, store, job):
    target = add_asset(db, object_key="video/target.mp4", mime_type="video/mp4", width=1280, height=720,
                       duration_sec=12)
    job.target_asset_id = target.id
    db.commit()

    store.mark_running(job, 10)
    assert job.started_at is not None
    assert job.progress_pct == 10

    store.mark_succeeded(job, "out/result.mp4", "test-output")
    assert job.status == JobStatus.SUCCEEDED
    assert job.progress_pct == 100
    assert job.finished_at is not None

    output = job.output_asset
    assert output.object_key == "out/result.mp4"
    assert output.bucket == "test-output"
    assert output.job_id == job.id
    assert (output.mime_type, output.width, output.height, output.duration_sec) == ("video/mp4", 1280, 720, 12)

    assert statuses(store, job) == [
        (None, JobStatus.QUEUED),
        (JobStatus.QUEUED, JobStatus.RUNNING),
        (JobStatus.RUNNING, JobStatus.SUCCEEDED),
    ]


def test_succeeded_job_rejects_further_transitions(store, job):
    store.mark_running(job)
    store.mark_succeeded(job, "out/a.mp4", "test-output")

    with pytest.raises(InvalidTransition):
        store.mark_failed(job, "WorkerError", "late failure")
    with pytest.raises(InvalidTransition):
        store.reset_for_requeue(job)
    with pytest.raises(InvalidTransition):
        store.record_progress(job, 50)
    assert job.status == JobStatus.SUCCEEDED


def test_mark_running_without_commit_stays_in_transaction(db, store, job):
    store.mark_running(job, commit=False)
    assert job.status == JobStatus.RUNNING

    db.rollback()
    assert job.status == JobStatus.QUEUED
    assert statuses(store, job) == [(None, JobStatus.QUEUED)]


def test_mark_running_twice(store, job):
    store.mark_running(job)
    with pytest.raises(InvalidTransition):
        store.mark_running(job)


def test_progress_only_moves_forward(store, job):
    store.mark_running(job, 20)
    assert store.record_progress(job, 50) is True
    assert store.record_progress(job, 30) is False
    assert store.record_progress(job, 50) is False
    assert store.record_progress(job, None) is False
    assert job.progress_pct == 50
    # creation, start, one progress step
    assert len(store.events(job.id)) == 3


def test_requeue_resets_failure(store, job):
    store.mark_running(job, 60)
    store.mark_failed(job, "WorkerError", "gpu oom")
    assert job.error_code == "WorkerError"

    store.reset_for_requeue(job)
    assert job.status == JobStatus.QUEUED
    assert job.progress_pct == 0
    assert job.error_code is None
    assert job.error_message is None
    assert job.started_at is None
    assert job.finished_at is None
    assert job.weight_used == 3


def test_get_for_user_hides_other_users_jobs(store, job):
    assert store.get_for_user(job.id, USER_ID).id == job.id
    with pytest.raises(NotFound):
        store.get_for_user(job.id, "someone-else")
    with pytest.raises(NotFound):
        store.get("no-such-job")


def test_list_for_user(db, store, job):
    store.create_queued("someone-else", ["face_enhancer"], 2)
    db.commit()
    assert [j.id for j in store.list_for_user(USER_ID)] == [job.id]


def test_sweep_fails_stale_jobs(db, store, job):
    running = store.create_queued(USER_ID, ["face_enhancer"], 2)
    fresh = store.create_queued(USER_ID, ["age_modifier"], 1)
    db.commit()
    store.mark_running(running)

    old = utcnow() - timedelta(hours=2)
    job.updated_at = old
    running.updated_at = old
    db.commit()

    swept = store.sweep_stale(timedelta(hours=1))
    assert {j.id for j in swept} == {job.id, running.id}

    for stale in (job, running):
        assert stale.status == JobStatus.FAILED
        assert stale.error_code == TIMEOUT_ERROR_CODE
    assert fresh.status == JobStatus.QUEUED
    assert statuses(store, running)[-1] == (JobStatus.RUNNING, JobStatus.FAILED)


def test_sweep_leaves_finished_jobs(db, store, job):
    store.mark_running(job)
    store.mark_succeeded(job, "out/a.mp4", "test-output")
    job.updated_at = utcnow() - timedelta(days=1)
    db.commit()

    assert store.sweep_stale(timedelta(hours=1)) == []
    assert job.status == JobStatus.SUCCEEDED
