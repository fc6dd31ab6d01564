"""
Queue dispatch and the worker callback protocol.

Admission is provisional: a QUEUED job has been charged and handed to the
queue, nothing more. Terminal states only arrive through authenticated worker
callbacks, which may be duplicated or arrive out of order, so every handler
here is idempotent and progress only moves forward.
"""

import hmac
import logging
from typing import Tuple

from arq import create_pool
from arq.connections import RedisSettings
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from quotagate.config import Settings
from quotagate.errors import AuthError, DispatchError, GateError, InvalidTransition
from quotagate.jobs import JobStore
from quotagate.models import Job, JobStatus
from quotagate.schemas import CallbackPayload

logger = logging.getLogger(__name__)

# Name of the arq function the relay worker registers
RELAY_FUNCTION = "process_job"
WORKER_ERROR_CODE = "WorkerError"


class ArqPublisher:
    """Publishes job descriptors to the arq queue named by ``jobs_topic``"""

    def __init__(self, settings: Settings):
        self.settings = settings

    async def publish(self, descriptor: dict, dedupe_key: str) -> None:
        pool = await create_pool(RedisSettings.from_dsn(self.settings.redis_url))
        try:
            queued = await pool.enqueue_job(
                RELAY_FUNCTION,
                descriptor,
                _job_id=dedupe_key,
                _queue_name=self.settings.jobs_topic,
            )
        finally:
            await pool.close()

        if queued is None:
            # Same dispatch already on the queue
            logger.info(f"Descriptor {dedupe_key} already queued on {self.settings.jobs_topic}")
        else:
            logger.info(f"Queued {dedupe_key} on {self.settings.jobs_topic}")


def job_descriptor(job: Job) -> dict:
    """The message body the worker pool consumes"""
    descriptor = {
        "jobId": job.id,
        "userId": job.user_id,
        "sourceAssetId": job.source_asset_id,
        "targetAssetId": job.target_asset_id,
        "processors": list(job.processors or []),
        "options": dict(job.options or {}),
    }
    if job.audio_asset_id:
        descriptor["audioAssetId"] = job.audio_asset_id
    return descriptor


class Dispatcher:
    def __init__(self, db: Session, settings: Settings, publisher):
        self.db = db
        self.settings = settings
        self.publisher = publisher
        self.store = JobStore(db)

    async def publish(self, job: Job) -> Job:
        """
        Hand a QUEUED job to the queue.

        On failure the job is compensated to FAILED (error_code DispatchError)
        and DispatchError is raised. The quota charge stays.
        """
        dedupe_key = f"{job.id}:{job.dispatch_count + 1}"
        try:
            await self.publisher.publish(job_descriptor(job), dedupe_key)
        except Exception as e:
            logger.error(f"Publishing job {job.id} to {self.settings.jobs_topic} failed: {e}")
            self.store.mark_failed(job, DispatchError.code, f"dispatch failed: {e}")
            raise DispatchError(job.id, str(e)) from e

        job.dispatch_count += 1
        self.db.commit()
        return job

    def authenticate(self, secret: str) -> None:
        expected = self.settings.worker_shared_secret
        # An unset secret rejects every callback
        if not expected or not secret or not hmac.compare_digest(secret.encode(), expected.encode()):
            raise AuthError()

    def handle_callback(self, job_id: str, secret: str, payload: CallbackPayload) -> Tuple[Job, bool]:
        """
        Apply a worker callback. Returns the job and whether anything changed.

        Rejections (bad secret, unknown job, invalid transition) leave every
        row untouched.
        """
        self.authenticate(secret)
        try:
            return self._route(job_id, payload)
        except IntegrityError:
            # A concurrent delivery of the same success created the output first
            self.db.rollback()
            job = self.store.get(job_id)
            if payload.status == JobStatus.SUCCEEDED and self._has_output(job, payload.output_key):
                return job, False
            raise
        except (GateError, SQLAlchemyError):
            self.db.rollback()
            raise

    def _route(self, job_id: str, payload: CallbackPayload) -> Tuple[Job, bool]:
        job = self.store.get(job_id, for_update=True)
        status = payload.status

        if status == JobStatus.QUEUED:
            # Receipt acknowledgement only
            if job.status != JobStatus.QUEUED:
                raise InvalidTransition(job.id, job.status, status, "queued acknowledgement")
            return job, False

        if status == JobStatus.RUNNING:
            if job.status == JobStatus.QUEUED:
                return self.store.mark_running(job, payload.progress_pct), True
            return job, self.store.record_progress(job, payload.progress_pct)

        if status == JobStatus.SUCCEEDED:
            if job.status == JobStatus.SUCCEEDED:
                if self._has_output(job, payload.output_key):
                    logger.info(f"Duplicate success callback for job {job.id}, ignoring")
                    return job, False
                raise InvalidTransition(job.id, job.status, status, "already succeeded with another output")
            self._start_if_queued(job)
            return self.store.mark_succeeded(job, payload.output_key, self.settings.b2_output_bucket), True

        message = payload.error_message or "Worker reported failure"
        if job.status == JobStatus.FAILED and job.error_code == WORKER_ERROR_CODE and job.error_message == message:
            logger.info(f"Duplicate failure callback for job {job.id}, ignoring")
            return job, False
        self._start_if_queued(job)
        return self.store.mark_failed(job, WORKER_ERROR_CODE, message), True

    def _start_if_queued(self, job: Job) -> None:
        # A terminal callback for a QUEUED job means the start ack was lost.
        # The terminal transition commits both steps together.
        if job.status == JobStatus.QUEUED:
            self.store.mark_running(job, commit=False)

    def _has_output(self, job: Job, output_key: str) -> bool:
        asset = self.store.output_asset(job.id, output_key)
        return asset is not None and job.output_asset_id == asset.id

    async def requeue(self, job_id: str, user_id: str) -> Job:
        """Return the caller's FAILED job to QUEUED and publish it again. No re-charge."""
        job = self.store.get(job_id, for_update=True)
        try:
            if job.user_id != user_id:
                raise InvalidTransition(job.id, job.status, JobStatus.QUEUED, "job belongs to another user")
            if job.status != JobStatus.FAILED:
                raise InvalidTransition(job.id, job.status, JobStatus.QUEUED, "only FAILED jobs can be requeued")
        except GateError:
            self.db.rollback()
            raise

        self.store.reset_for_requeue(job)
        logger.info(f"Job {job.id} requeued by {user_id}")
        return await self.publish(job)
