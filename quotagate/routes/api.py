import logging
from typing import List, Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Query
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from jose import JWTError
from sqlalchemy.orm import Session

from quotagate import catalog, ledger
from quotagate.admission import AdmissionController
from quotagate.config import Settings, get_settings
from quotagate.deps import get_db, get_b2, decode_token
from quotagate.dispatcher import ArqPublisher, Dispatcher
from quotagate.jobs import JobStore
from quotagate.models import Job, JobStatus
from quotagate.schemas import (
    CallbackPayload, CallbackResult, JobCreate, JobEventResponse, JobResponse, ProcessorResponse,
)

logger = logging.getLogger(__name__)

router = APIRouter()
security = HTTPBearer()


def get_current_user(
    credentials: HTTPAuthorizationCredentials = Depends(security),
    settings: Settings = Depends(get_settings),
) -> str:
    """Get the caller's user id from the bearer token"""
    try:
        payload = decode_token(credentials.credentials, settings)
    except JWTError:
        raise HTTPException(status_code=401, detail="Invalid authentication token")

    user_id = payload.get("sub")
    if not user_id or not isinstance(user_id, str):
        raise HTTPException(status_code=401, detail="Invalid authentication credentials")
    return user_id


def get_publisher(settings: Settings = Depends(get_settings)):
    return ArqPublisher(settings)


def get_dispatcher(
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_settings),
    publisher=Depends(get_publisher),
) -> Dispatcher:
    return Dispatcher(db, settings, publisher)


def signed_download_url(b2_api, bucket_name: str, file_name: str, ttl: int) -> str:
    """Time-limited B2 download link for one object"""
    bucket = b2_api.get_bucket_by_name(bucket_name)
    token = bucket.get_download_authorization(file_name_prefix=file_name, valid_duration_in_seconds=ttl)
    url = b2_api.get_download_url_for_file_name(bucket_name, file_name)
    return f"{url}?Authorization={token}"


def _job_response(job: Job, download_url: Optional[str] = None) -> JobResponse:
    response = JobResponse.model_validate(job)
    if download_url:
        response.download_url = download_url
    return response


@router.get("/processors", response_model=List[ProcessorResponse])
def list_processors(db: Session = Depends(get_db)):
    """Active processors and their weights"""
    return catalog.list_processors(db)


@router.get("/quota")
def get_quota(user_id: str = Depends(get_current_user), db: Session = Depends(get_db)):
    """Today's quota consumption for the caller"""
    return ledger.quota_summary(db, user_id)


@router.post("/jobs", response_model=JobResponse, status_code=201)
async def create_job(
    req: JobCreate,
    user_id: str = Depends(get_current_user),
    db: Session = Depends(get_db),
    dispatcher: Dispatcher = Depends(get_dispatcher),
):
    """Admit a job against the caller's plan and queue it"""
    controller = AdmissionController(db, dispatcher)
    job = await controller.admit(
        user_id,
        req.processors,
        source_asset_id=req.source_asset_id,
        target_asset_id=req.target_asset_id,
        audio_asset_id=req.audio_asset_id,
        options=req.options,
    )
    return _job_response(job)


@router.get("/jobs", response_model=List[JobResponse])
def list_jobs(
    limit: int = Query(50, ge=1, le=200),
    user_id: str = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    """The caller's jobs, newest first"""
    return [_job_response(job) for job in JobStore(db).list_for_user(user_id, limit=limit)]


@router.get("/jobs/{job_id}", response_model=JobResponse)
def get_job(
    job_id: str,
    user_id: str = Depends(get_current_user),
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_settings),
    b2_api=Depends(get_b2),
):
    """Job status, with a download link once it has succeeded"""
    job = JobStore(db).get_for_user(job_id, user_id)

    download_url = None
    if job.status == JobStatus.SUCCEEDED and job.output_asset is not None:
        asset = job.output_asset
        try:
            download_url = signed_download_url(
                b2_api, asset.bucket or settings.b2_output_bucket, asset.object_key, settings.download_url_ttl
            )
        except Exception as e:
            # Status stays readable when storage is down
            logger.error(f"Error generating B2 download URL for job {job.id}: {e}")

    return _job_response(job, download_url)


@router.get("/jobs/{job_id}/events", response_model=List[JobEventResponse])
def get_job_events(job_id: str, user_id: str = Depends(get_current_user), db: Session = Depends(get_db)):
    """State transition history of a job"""
    store = JobStore(db)
    job = store.get_for_user(job_id, user_id)
    return store.events(job.id)


@router.post("/jobs/{job_id}/requeue", response_model=JobResponse)
async def requeue_job(
    job_id: str,
    user_id: str = Depends(get_current_user),
    dispatcher: Dispatcher = Depends(get_dispatcher),
):
    """Send a FAILED job back to the queue without charging it again"""
    job = await dispatcher.requeue(job_id, user_id)
    return _job_response(job)


@router.post("/jobs/{job_id}/callback", response_model=CallbackResult)
def job_callback(
    job_id: str,
    payload: CallbackPayload,
    x_worker_secret: Optional[str] = Header(None),
    dispatcher: Dispatcher = Depends(get_dispatcher),
):
    """Progress and completion reports from the worker pool"""
    job, changed = dispatcher.handle_callback(job_id, x_worker_secret or "", payload)
    return CallbackResult(job_id=job.id, status=job.status, changed=changed)
