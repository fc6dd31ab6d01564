import logging
from datetime import timedelta

import httpx
from arq import Retry, cron
from arq.connections import RedisSettings

from quotagate.config import get_settings
from quotagate.deps import SessionLocal
from quotagate.jobs import JobStore

# Configure logging
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

MAX_TRIES = 5
RETRY_DEFER_SECONDS = 30
HTTP_TIMEOUT_SECONDS = 10


async def post_callback(http: httpx.AsyncClient, settings, job_id: str, body: dict) -> httpx.Response:
    """Report job state through the API's worker callback endpoint"""
    return await http.post(
        f"{settings.callback_base_url}/jobs/{job_id}/callback",
        json=body,
        headers={"X-Worker-Secret": settings.worker_shared_secret},
    )


async def process_job(ctx, descriptor: dict):
    """Acknowledge a queued job as RUNNING and forward it to the GPU worker"""
    settings = ctx.get("settings") or get_settings()
    http: httpx.AsyncClient = ctx["http"]
    job_id = descriptor["jobId"]
    logger.info(f"Relaying job {job_id} (try {ctx.get('job_try', 1)})")

    ack = await post_callback(http, settings, job_id, {"status": "RUNNING", "progressPct": 0})
    if ack.status_code == 409:
        # Finished, swept or requeued since this message was published
        logger.warning(f"Job {job_id} no longer accepts a start ack, dropping message")
        return {"status": "skipped", "job_id": job_id}
    ack.raise_for_status()

    try:
        response = await http.post(
            settings.worker_url,
            json=descriptor,
            headers={"X-Worker-Secret": settings.worker_shared_secret},
        )
        response.raise_for_status()
    except httpx.HTTPError as e:
        logger.error(f"Forwarding job {job_id} to {settings.worker_url} failed: {e}")
        if ctx.get("job_try", 1) < MAX_TRIES:
            raise Retry(defer=RETRY_DEFER_SECONDS)
        failed = await post_callback(
            http, settings, job_id, {"status": "FAILED", "errorMessage": f"worker unreachable: {e}"}
        )
        failed.raise_for_status()
        return {"status": "failed", "job_id": job_id}

    logger.info(f"Job {job_id} handed to worker, waiting for callback")
    return {"status": "forwarded", "job_id": job_id}


async def sweep_stale_jobs(ctx):
    """Fail jobs with no worker activity past the configured timeout"""
    settings = ctx.get("settings") or get_settings()
    db = SessionLocal()
    try:
        swept = JobStore(db).sweep_stale(timedelta(seconds=settings.job_timeout_seconds))
    finally:
        db.close()
    return {"swept": [job.id for job in swept]}


async def startup(ctx):
    ctx["settings"] = get_settings()
    ctx["http"] = httpx.AsyncClient(timeout=HTTP_TIMEOUT_SECONDS)


async def shutdown(ctx):
    await ctx["http"].aclose()


# ARQ Worker settings - this must be at the end of the file
class WorkerSettings:
    """Settings for ARQ worker"""
    redis_settings = RedisSettings.from_dsn(get_settings().redis_url)
    queue_name = get_settings().jobs_topic

    # Register functions
    functions = [process_job]
    cron_jobs = [cron(sweep_stale_jobs, minute={0, 15, 30, 45})]
    on_startup = startup
    on_shutdown = shutdown

    # Worker configuration
    max_jobs = 10
    max_tries = MAX_TRIES
