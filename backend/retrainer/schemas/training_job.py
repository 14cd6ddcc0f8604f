"""
Training job Pydantic schemas for request/response validation.
"""

from typing import Any, Optional

from pydantic import BaseModel, Field

from retrainer.models.job_history import JobSource, JobState


class AdmissionDecision(BaseModel):
    """Result of asking whether a (subject, variant) may be trained."""

    allowed: bool = Field(..., description="Whether a submission would be admitted")
    reason: str = Field(..., description="Human-readable reason")
    cooldown_remaining_ms: Optional[int] = Field(None, description="Remaining cooldown")
    cooldown_remaining_minutes: Optional[int] = Field(None, description="Rounded minutes")
    job_id: Optional[str] = Field(None, description="In-flight job blocking admission")
    queue_position: Optional[int] = Field(None, description="Expected queue position")


class ActiveJobInfo(BaseModel):
    id: str
    subject: str
    variant: str
    source: JobSource
    state: JobState
    priority: int
    attempts: int
    started_at: Optional[int] = None
    duration_ms: int = 0
    cancel_requested: bool = False


class QueuedJobInfo(BaseModel):
    id: str
    subject: str
    variant: str
    source: JobSource
    priority: int
    attempts: int
    queue_position: int
    enqueued_at: int
    queued_for_ms: int
    retry_at: Optional[int] = None


class RetiredJobInfo(BaseModel):
    id: str
    subject: str
    variant: str
    source: JobSource
    state: JobState
    attempts: int
    enqueued_at: int
    started_at: Optional[int] = None
    completed_at: Optional[int] = None
    duration_ms: Optional[int] = None
    error: Optional[str] = None
    cancel_reason: Optional[str] = None


class CooldownInfo(BaseModel):
    subject: str
    variant: str
    last_completed_at: int
    cooldown_remaining_ms: int
    cooldown_remaining_minutes: int


class ActiveSection(BaseModel):
    count: int
    max_concurrent: int
    jobs: list[ActiveJobInfo]


class QueuedSection(BaseModel):
    count: int
    jobs: list[QueuedJobInfo]


class HistorySection(BaseModel):
    total: int
    recent: list[RetiredJobInfo]


class QueueStatus(BaseModel):
    """Point-in-time snapshot of the scheduler."""

    active: ActiveSection
    queued: QueuedSection
    history: HistorySection
    cooldowns: list[CooldownInfo]
    is_running: bool


class EmergencyStopResult(BaseModel):
    queued_jobs_cancelled: int = Field(..., description="Pending jobs removed")
    active_jobs_marked: int = Field(..., description="Active jobs flagged for cancellation")
    periodic_training_stopped: bool = False


class TrainRequest(BaseModel):
    """Schema for a manual training request."""

    priority: Optional[int] = Field(None, description="Requested priority (1-7)")
    max_attempts: Optional[int] = Field(None, ge=1, le=10, description="Retry budget")
    config: dict[str, Any] = Field(default_factory=dict, description="Passed to the trainer")


class TrainSubmission(BaseModel):
    """Outcome of one variant within a training request."""

    subject: str
    variant: str
    status: str = Field(..., description="queued or rejected")
    job_id: Optional[str] = None
    priority: Optional[int] = None
    source: JobSource = JobSource.MANUAL
    reason: Optional[str] = None
    cooldown_remaining_ms: Optional[int] = None


class TrainResponse(BaseModel):
    subject: str
    results: list[TrainSubmission]
    queue_status: QueueStatus


class CancelRequest(BaseModel):
    reason: str = Field("User requested cancellation", description="Cancellation reason")


class ClearCooldownsRequest(BaseModel):
    subject: Optional[str] = Field(None, description="Subject; omit to clear all")
    variant: Optional[str] = Field(None, description="Variant; omit to clear all")


class ClearCooldownsResponse(BaseModel):
    message: str
    cleared: int


class PeriodicCycleResult(BaseModel):
    """Summary of one periodic training cycle."""

    cycle_id: str
    started_at: int
    duration_ms: int = 0
    skipped_cycle: bool = False
    skip_reason: Optional[str] = None
    subjects_processed: int = 0
    queued: int = 0
    skipped: int = 0
    failed: int = 0
    results: list[dict[str, Any]] = Field(default_factory=list)
