"""
Pydantic schemas for request/response validation
"""
from pydantic import BaseModel, Field
from typing import Optional, List, Dict, Any

# ===== Common Schemas =====

class HealthResponse(BaseModel):
    status: str
    service: str

# ===== Submission Schemas =====

class AiGenerateRequest(BaseModel):
    title: str = Field(min_length=1, max_length=300)
    description: str = ""
    voice_type: str = "male_arabic"
    scene_count: int = Field(default=3, ge=1)
    duration: int = Field(default=60, ge=5, le=600)
    callback_url: Optional[str] = None

class MergeMediaRequest(BaseModel):
    images: List[str] = []
    videos: List[str] = []
    audio: str = Field(min_length=1)
    output_format: str = "mp4"
    callback_url: Optional[str] = None

class JobCreatedResponse(BaseModel):
    job_id: str
    status: str
    type: str

# ===== Job Control Schemas =====

class CancelJobRequest(BaseModel):
    job_id: Optional[str] = None
    jobId: Optional[str] = None

    def resolved_id(self) -> Optional[str]:
        return self.job_id or self.jobId

class CancelJobResponse(BaseModel):
    success: bool
    message: str
    job_id: str
    cancelled_at: str

class StepLog(BaseModel):
    step: str
    status: str
    message: str
    duration_ms: Optional[int] = None
    started_at: Optional[str] = None
    completed_at: Optional[str] = None
    output_data: Optional[Dict[str, Any]] = None
    error: Optional[str] = None

class JobSnapshot(BaseModel):
    job_id: str
    type: str
    status: str
    progress: int
    output_url: Optional[str] = None
    error_message: Optional[str] = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None
    logs: List[StepLog]
    is_stuck: bool
    stuck_warning: Optional[str] = None
    is_complete: bool
    is_failed: bool
    is_cancelled: bool
    can_cancel: bool

class ProviderHealthResponse(BaseModel):
    healthy: bool
    is_sleeping: bool
    status: Optional[int] = None
    response_time_ms: int
    error: Optional[str] = None
