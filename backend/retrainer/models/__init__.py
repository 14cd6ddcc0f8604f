"""
SQLAlchemy database models.

This module exports all database models used in the application.
"""

from retrainer.models.cooldown import CooldownRecord
from retrainer.models.job_history import JobSource, JobState, TrainingJobRecord

__all__ = [
    "CooldownRecord",
    "JobSource",
    "JobState",
    "TrainingJobRecord",
]
