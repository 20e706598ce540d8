from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field


# Stage request bodies
class StageRequest(BaseModel):
    model_config = ConfigDict(extra="ignore")

    project_id: str = Field(min_length=1)


class OnboardingRequest(StageRequest):
    model_config = ConfigDict(
        extra="ignore",
        json_schema_extra={"example": {"project_id": "b1f4c2d0-0000-4000-8000-000000000001"}},
    )


class AuditRequest(StageRequest):
    job_id: str = Field(min_length=1)
    url: Optional[str] = None


class JobScopedRequest(StageRequest):
    job_id: Optional[str] = None


# AI output schemas
class PageCritique(BaseModel):
    critique: str
    recommendations: List[str] = []


# Job API responses
class JobStatusResponse(BaseModel):
    job_id: str
    project_id: Optional[str] = None
    type: Optional[str] = None
    status: str
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    error_message: Optional[str] = None
    next_stage: Optional[str] = None
    cursor: Optional[Dict[str, Any]] = None
    progress: Optional[Dict[str, Any]] = None
    created_at: Optional[datetime] = None


class ExecutionLogResponse(BaseModel):
    job_id: str
    function_name: str
    level: str
    message: str
    meta: Optional[Dict[str, Any]] = None
    created_at: Optional[datetime] = None
