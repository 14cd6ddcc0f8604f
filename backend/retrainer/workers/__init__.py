"""
Training scheduler implementation.

This module exports the scheduler, its job queue and the periodic trainer.
"""

from retrainer.workers.job_queue import JobQueue, TrainingJob
from retrainer.workers.periodic_trainer import PeriodicTrainer
from retrainer.workers.scheduler import AdmissionDenied, TrainingScheduler

__all__ = [
    "AdmissionDenied",
    "JobQueue",
    "PeriodicTrainer",
    "TrainingJob",
    "TrainingScheduler",
]
