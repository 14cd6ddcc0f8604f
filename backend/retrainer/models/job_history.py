"""
Training job history database model.

Represents a retired training job (completed, failed or cancelled).
Queued and active jobs live only in the scheduler's memory.
"""

from datetime import datetime
from enum import Enum

from sqlalchemy import String, Integer, BigInteger, DateTime, Text, func
from sqlalchemy.orm import Mapped, mapped_column

from retrainer.core.database import Base


class JobState(str, Enum):
    """Training job state enumeration."""

    QUEUED = "queued"
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class JobSource(str, Enum):
    """Who submitted a training job."""

    MANUAL = "manual"
    PERIODIC = "periodic"


class TrainingJobRecord(Base):
    """
    Persisted snapshot of a retired training job.

    Attributes:
        id: Row identifier.
        job_id: Scheduler job identifier ("{SUBJECT}_{variant}_{epoch_ms}").
        subject: Upper-cased subject identifier.
        variant: Lower-cased model variant.
        source: manual or periodic.
        state: Terminal job state.
        priority: Priority at retirement (1 = highest).
        attempts: Number of execution attempts made.
        error_message: Last error if the job failed.
        cancel_reason: Reason given when the job was cancelled.
        enqueued_at / started_at / completed_at: Epoch milliseconds.
        duration_ms: Duration of the last attempt.
        created_at: Timestamp when the row was written.
    """

    __tablename__ = "training_job_history"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    job_id: Mapped[str] = mapped_column(String(160), nullable=False, index=True)
    subject: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    variant: Mapped[str] = mapped_column(String(64), nullable=False)
    source: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        default=JobSource.MANUAL.value,
    )
    state: Mapped[str] = mapped_column(String(20), nullable=False, index=True)
    priority: Mapped[int] = mapped_column(Integer, nullable=False)
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    cancel_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    enqueued_at: Mapped[int] = mapped_column(BigInteger, nullable=False)
    started_at: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    completed_at: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    duration_ms: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )

    def __repr__(self) -> str:
        return f"<TrainingJobRecord(job_id='{self.job_id}', state='{self.state}')>"
