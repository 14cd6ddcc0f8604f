"""
Training job queue.

In-memory priority queue of pending training jobs. Lower priority numbers
run first; jobs of equal priority run in submission order.
"""

import itertools
from dataclasses import dataclass, field
from typing import Any, Optional

from retrainer.models.job_history import JobSource, JobState
from retrainer.services.model_runtime import TrainFunction


def make_job_id(subject: str, variant: str, enqueued_at: int) -> str:
    return f"{subject.upper()}_{variant.lower()}_{enqueued_at}"


@dataclass
class TrainingJob:
    """
    One unit of training work for a (subject, variant).

    Attributes:
        id: "{SUBJECT}_{variant}_{epoch_ms}".
        priority: 1 is the highest priority.
        sequence: Submission order, breaks priority ties.
        not_before: Epoch ms before which the job must not start (retry delay).
        cancel_requested: Set when an active job was asked to stop.
    """

    id: str
    subject: str
    variant: str
    train_fn: TrainFunction
    priority: int
    source: JobSource = JobSource.MANUAL
    config: dict[str, Any] = field(default_factory=dict)
    state: JobState = JobState.QUEUED
    attempts: int = 0
    max_attempts: int = 2
    enqueued_at: int = 0
    started_at: Optional[int] = None
    completed_at: Optional[int] = None
    duration_ms: Optional[int] = None
    sequence: int = 0
    not_before: int = 0
    error: Optional[str] = None
    cancel_reason: Optional[str] = None
    cancel_requested: bool = False

    @property
    def key(self) -> tuple[str, str]:
        return self.subject, self.variant

    def sort_key(self) -> tuple[int, int]:
        return self.priority, self.sequence


class JobQueue:
    """
    Priority-ordered pending list.

    Not thread-safe; the scheduler guards every call with its lock.
    """

    def __init__(self):
        self._jobs: list[TrainingJob] = []
        self._sequence = itertools.count()

    def __len__(self) -> int:
        return len(self._jobs)

    def push(self, job: TrainingJob) -> int:
        """
        Insert a job at its priority position.

        Args:
            job: Job to insert.

        Returns:
            Zero-based position of the job in the queue.
        """
        job.sequence = next(self._sequence)
        job.state = JobState.QUEUED

        position = len(self._jobs)
        for i, queued in enumerate(self._jobs):
            if job.sort_key() < queued.sort_key():
                position = i
                break
        self._jobs.insert(position, job)
        return position

    def pop_eligible(self, now: int) -> TrainingJob | None:
        """Remove and return the first job whose retry delay has elapsed."""
        for i, job in enumerate(self._jobs):
            if job.not_before <= now:
                return self._jobs.pop(i)
        return None

    def find_key(self, subject: str, variant: str) -> TrainingJob | None:
        for job in self._jobs:
            if job.key == (subject, variant):
                return job
        return None

    def remove(self, job_id: str) -> TrainingJob | None:
        for i, job in enumerate(self._jobs):
            if job.id == job_id:
                return self._jobs.pop(i)
        return None

    def drain(self) -> list[TrainingJob]:
        """Remove and return every pending job."""
        jobs, self._jobs = self._jobs, []
        return jobs

    def snapshot(self) -> list[TrainingJob]:
        return list(self._jobs)
