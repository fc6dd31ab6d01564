"""
Job persistence and the job state machine.

Lifecycle: QUEUED -> RUNNING -> SUCCEEDED | FAILED, plus FAILED -> QUEUED on an
explicit requeue. SUCCEEDED is terminal. Every transition appends exactly one
JobEvent in the same transaction as the status change.
"""

import logging
from datetime import timedelta
from typing import Any, Dict, List, Optional, Sequence, Set, Tuple

from sqlalchemy.orm import Session

from quotagate.errors import InvalidTransition, NotFound
from quotagate.models import Job, JobEvent, JobStatus, MediaAsset, utcnow

logger = logging.getLogger(__name__)

TIMEOUT_ERROR_CODE = "Timeout"

_TRANSITIONS: Set[Tuple[str, str]] = {
    (JobStatus.QUEUED, JobStatus.RUNNING),
    (JobStatus.RUNNING, JobStatus.RUNNING),
    (JobStatus.RUNNING, JobStatus.SUCCEEDED),
    (JobStatus.RUNNING, JobStatus.FAILED),
    # Dispatch failure and the stale-job sweep
    (JobStatus.QUEUED, JobStatus.FAILED),
    # Explicit requeue
    (JobStatus.FAILED, JobStatus.QUEUED),
}


def can_transition(from_status: str, to_status: str) -> bool:
    return (from_status, to_status) in _TRANSITIONS


def validate_transition(job: Job, to_status: str) -> None:
    if not can_transition(job.status, to_status):
        raise InvalidTransition(job.id, job.status, to_status)


class JobStore:
    """Reads and state changes for Job rows. Transition methods commit."""

    def __init__(self, db: Session):
        self.db = db

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get(self, job_id: str, for_update: bool = False) -> Job:
        query = self.db.query(Job).filter(Job.id == job_id)
        if for_update:
            query = query.with_for_update()
        job = query.first()
        if job is None:
            raise NotFound("Job", job_id)
        return job

    def get_for_user(self, job_id: str, user_id: str) -> Job:
        job = self.get(job_id)
        if job.user_id != user_id:
            raise NotFound("Job", job_id)
        return job

    def list_for_user(self, user_id: str, limit: int = 50) -> List[Job]:
        return (
            self.db.query(Job)
            .filter(Job.user_id == user_id)
            .order_by(Job.created_at.desc())
            .limit(limit)
            .all()
        )

    def events(self, job_id: str) -> List[JobEvent]:
        return self.db.query(JobEvent).filter(JobEvent.job_id == job_id).order_by(JobEvent.id).all()

    # ------------------------------------------------------------------
    # Creation
    # ------------------------------------------------------------------

    def create_queued(
        self,
        user_id: str,
        processors: Sequence[str],
        weight: int,
        options: Optional[Dict[str, Any]] = None,
        source_asset_id: Optional[str] = None,
        target_asset_id: Optional[str] = None,
        audio_asset_id: Optional[str] = None,
    ) -> Job:
        """Add a QUEUED job and its creation event. The caller commits."""
        job = Job(
            user_id=user_id,
            status=JobStatus.QUEUED,
            processors=list(processors),
            options=dict(options or {}),
            weight_used=weight,
            progress_pct=0,
            source_asset_id=source_asset_id,
            target_asset_id=target_asset_id,
            audio_asset_id=audio_asset_id,
        )
        self.db.add(job)
        self.db.flush()
        self.db.add(JobEvent(job_id=job.id, from_status=None, to_status=JobStatus.QUEUED, message="Job admitted"))
        return job

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    def _transition(self, job: Job, to_status: str, message: Optional[str] = None) -> None:
        validate_transition(job, to_status)
        from_status = job.status
        job.status = to_status
        job.updated_at = utcnow()
        self.db.add(JobEvent(job_id=job.id, from_status=from_status, to_status=to_status, message=message))
        logger.info(f"Job {job.id}: {from_status} -> {to_status}")

    def mark_running(self, job: Job, progress_pct: Optional[int] = None, commit: bool = True) -> Job:
        """
        QUEUED -> RUNNING. With ``commit=False`` the change stays in the
        caller's transaction, so the row lock is held until the caller commits.
        """
        if job.status != JobStatus.QUEUED:
            raise InvalidTransition(job.id, job.status, JobStatus.RUNNING, "job already started")
        self._transition(job, JobStatus.RUNNING, "Worker started")
        job.started_at = utcnow()
        if progress_pct is not None:
            job.progress_pct = max(job.progress_pct or 0, progress_pct)
        if commit:
            self.db.commit()
        return job

    def record_progress(self, job: Job, progress_pct: Optional[int]) -> bool:
        """Raise progress on a RUNNING job. Returns False for stale or duplicate updates."""
        validate_transition(job, JobStatus.RUNNING)
        if progress_pct is None or progress_pct <= (job.progress_pct or 0):
            return False
        job.progress_pct = progress_pct
        self._transition(job, JobStatus.RUNNING, f"Progress {progress_pct}%")
        self.db.commit()
        return True

    def mark_succeeded(self, job: Job, output_key: str, bucket: str) -> Job:
        validate_transition(job, JobStatus.SUCCEEDED)
        asset = self.output_asset(job.id, output_key)
        if asset is None:
            asset = self._create_output_asset(job, output_key, bucket)
        job.output_asset_id = asset.id
        job.progress_pct = 100
        job.finished_at = utcnow()
        job.error_code = None
        job.error_message = None
        self._transition(job, JobStatus.SUCCEEDED, f"Worker finished: {output_key}")
        self.db.commit()
        return job

    def mark_failed(self, job: Job, error_code: str, error_message: str) -> Job:
        self._transition(job, JobStatus.FAILED, (error_message or "")[:500])
        job.error_code = error_code
        job.error_message = error_message
        job.finished_at = utcnow()
        self.db.commit()
        return job

    def reset_for_requeue(self, job: Job) -> Job:
        self._transition(job, JobStatus.QUEUED, "Requeued by owner")
        job.error_code = None
        job.error_message = None
        job.progress_pct = 0
        job.started_at = None
        job.finished_at = None
        job.output_asset_id = None
        self.db.commit()
        return job

    def sweep_stale(self, older_than: timedelta) -> List[Job]:
        """Fail QUEUED/RUNNING jobs with no activity for ``older_than``"""
        cutoff = utcnow() - older_than
        stale = (
            self.db.query(Job)
            .filter(Job.status.in_([JobStatus.QUEUED, JobStatus.RUNNING]), Job.updated_at < cutoff)
            .with_for_update()
            .all()
        )
        for job in stale:
            message = f"No worker activity since {job.updated_at.isoformat()}"
            self._transition(job, JobStatus.FAILED, message)
            job.error_code = TIMEOUT_ERROR_CODE
            job.error_message = message
            job.finished_at = utcnow()
        if stale:
            self.db.commit()
            logger.warning(f"Swept {len(stale)} stale job(s)")
        return stale

    # ------------------------------------------------------------------
    # Output assets
    # ------------------------------------------------------------------

    def output_asset(self, job_id: str, output_key: str) -> Optional[MediaAsset]:
        return (
            self.db.query(MediaAsset)
            .filter(MediaAsset.job_id == job_id, MediaAsset.object_key == output_key)
            .first()
        )

    def _create_output_asset(self, job: Job, output_key: str, bucket: str) -> MediaAsset:
        # Output inherits the target's shape; the worker reports only the key
        target = self.db.get(MediaAsset, job.target_asset_id) if job.target_asset_id else None
        asset = MediaAsset(
            user_id=job.user_id,
            job_id=job.id,
            bucket=bucket,
            object_key=output_key,
            mime_type=target.mime_type if target else None,
            width=target.width if target else None,
            height=target.height if target else None,
            duration_sec=target.duration_sec if target else None,
        )
        self.db.add(asset)
        self.db.flush()
        return asset
