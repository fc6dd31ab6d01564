from datetime import datetime
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from quotagate.models import JobStatus


class CamelModel(BaseModel):
    """Accepts and emits camelCase keys, as the worker protocol does"""
    model_config = ConfigDict(populate_by_name=True, from_attributes=True)


class JobCreate(CamelModel):
    processors: List[str] = Field(min_length=1)
    options: Dict[str, Any] = Field(default_factory=dict)
    source_asset_id: Optional[str] = Field(default=None, alias="sourceAssetId")
    target_asset_id: Optional[str] = Field(default=None, alias="targetAssetId")
    audio_asset_id: Optional[str] = Field(default=None, alias="audioAssetId")

    @field_validator("processors")
    @classmethod
    def _dedupe(cls, value: List[str]) -> List[str]:
        names = [name.strip() for name in value if name and name.strip()]
        if not names:
            raise ValueError("at least one processor name is required")
        return list(dict.fromkeys(names))


class CallbackPayload(CamelModel):
    status: Literal["QUEUED", "RUNNING", "SUCCEEDED", "FAILED"]
    progress_pct: Optional[int] = Field(default=None, ge=0, le=100, alias="progressPct")
    output_key: Optional[str] = Field(default=None, alias="outputKey")
    error_message: Optional[str] = Field(default=None, alias="errorMessage")

    @model_validator(mode="after")
    def _output_key_on_success(self):
        if self.status == JobStatus.SUCCEEDED and not self.output_key:
            raise ValueError("outputKey is required for SUCCEEDED callbacks")
        return self


class JobResponse(CamelModel):
    id: str
    user_id: str = Field(serialization_alias="userId")
    status: str
    processors: List[str]
    options: Dict[str, Any]
    weight_used: int = Field(serialization_alias="weightUsed")
    progress_pct: int = Field(serialization_alias="progressPct")
    error_code: Optional[str] = Field(default=None, serialization_alias="errorCode")
    error_message: Optional[str] = Field(default=None, serialization_alias="errorMessage")
    source_asset_id: Optional[str] = Field(default=None, serialization_alias="sourceAssetId")
    target_asset_id: Optional[str] = Field(default=None, serialization_alias="targetAssetId")
    audio_asset_id: Optional[str] = Field(default=None, serialization_alias="audioAssetId")
    output_asset_id: Optional[str] = Field(default=None, serialization_alias="outputAssetId")
    created_at: Optional[datetime] = Field(default=None, serialization_alias="createdAt")
    started_at: Optional[datetime] = Field(default=None, serialization_alias="startedAt")
    finished_at: Optional[datetime] = Field(default=None, serialization_alias="finishedAt")
    download_url: Optional[str] = Field(default=None, serialization_alias="downloadUrl")


class JobEventResponse(CamelModel):
    id: int
    from_status: Optional[str] = Field(default=None, serialization_alias="fromStatus")
    to_status: str = Field(serialization_alias="toStatus")
    message: Optional[str] = None
    created_at: datetime = Field(serialization_alias="createdAt")


class ProcessorResponse(CamelModel):
    name: str
    weight: int


class CallbackResult(CamelModel):
    ok: bool = True
    job_id: str = Field(serialization_alias="jobId")
    status: str
    changed: bool
