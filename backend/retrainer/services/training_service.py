"""
Training service.

Entry point used by the HTTP layer: validates manual training requests,
hands them to the scheduler, and exposes the scheduler and periodic
cycle controls.
"""

import logging
from typing import TYPE_CHECKING

from retrainer.core.config import settings
from retrainer.models.job_history import JobSource
from retrainer.schemas.training_job import (
    AdmissionDecision,
    ClearCooldownsRequest,
    ClearCooldownsResponse,
    EmergencyStopResult,
    PeriodicCycleResult,
    QueueStatus,
    TrainRequest,
    TrainResponse,
    TrainSubmission,
)
from retrainer.services.asset_storage import ConsolidatedStorage
from retrainer.services.model_runtime import TrainFunction
from retrainer.workers.scheduler import AdmissionDenied, TrainingScheduler

if TYPE_CHECKING:
    from retrainer.workers.periodic_trainer import PeriodicTrainer

logger = logging.getLogger(__name__)


class TrainingServiceError(Exception):
    """Base exception for training service errors."""
    pass


class TrainingUnavailable(TrainingServiceError):
    """Raised when no training function or periodic trainer is configured."""
    pass


class UnknownVariantError(TrainingServiceError, ValueError):
    """Raised when a request names a variant that is not enabled."""
    pass


class TrainingService:
    """
    Facade over the scheduler, the storage and the periodic cycle.

    Attributes:
        scheduler: Training job scheduler.
        storage: Consolidated persistence engine.
        train_fn: Training function used for manual requests.
        periodic: Periodic trainer, if configured.
    """

    def __init__(
        self,
        scheduler: TrainingScheduler,
        storage: ConsolidatedStorage,
        train_fn: TrainFunction | None = None,
        periodic: "PeriodicTrainer | None" = None,
        variants: list[str] | None = None,
    ):
        self.scheduler = scheduler
        self.storage = storage
        self.train_fn = train_fn
        self.periodic = periodic
        self.variants = [v.lower() for v in (variants or settings.enabled_variants)]

    def _check_variant(self, variant: str) -> str:
        variant = variant.lower()
        if variant not in self.variants:
            raise UnknownVariantError(
                f"Unknown variant '{variant}'. Enabled variants: {', '.join(self.variants)}"
            )
        return variant

    def can_train(self, subject: str, variant: str) -> AdmissionDecision:
        return self.scheduler.can_admit(subject, self._check_variant(variant))

    def request_training(
        self,
        subject: str,
        request: TrainRequest,
        variant: str | None = None,
    ) -> TrainResponse:
        """
        Queue manual training for one variant, or for every enabled variant.

        Rejected variants are reported per variant instead of failing the
        whole request.

        Raises:
            TrainingUnavailable: If no training function is configured.
            UnknownVariantError: If ``variant`` is not enabled.
        """
        if self.train_fn is None:
            raise TrainingUnavailable("No training function configured")

        subject = subject.upper()
        variants = [self._check_variant(variant)] if variant else list(self.variants)

        results = []
        for name in variants:
            try:
                job_id = self.scheduler.submit(
                    subject,
                    name,
                    self.train_fn,
                    config=request.config,
                    source=JobSource.MANUAL,
                    priority=request.priority,
                    max_attempts=request.max_attempts,
                )
            except AdmissionDenied as e:
                results.append(
                    TrainSubmission(
                        subject=subject,
                        variant=name,
                        status="rejected",
                        job_id=e.decision.job_id,
                        reason=e.decision.reason,
                        cooldown_remaining_ms=e.decision.cooldown_remaining_ms,
                    )
                )
                continue

            results.append(
                TrainSubmission(
                    subject=subject,
                    variant=name,
                    status="queued",
                    job_id=job_id,
                    priority=self.scheduler.resolve_priority(JobSource.MANUAL, request.priority),
                )
            )

        queued = sum(1 for r in results if r.status == "queued")
        logger.info(f"TrainingService: {subject} - {queued}/{len(results)} variants queued")
        return TrainResponse(subject=subject, results=results, queue_status=self.scheduler.get_status())

    def get_status(self) -> QueueStatus:
        return self.scheduler.get_status()

    def cancel_job(self, job_id: str, reason: str) -> bool:
        return self.scheduler.cancel(job_id, reason)

    def emergency_stop(self) -> EmergencyStopResult:
        """Stop the periodic cycle, then cancel everything queued or active."""
        periodic_stopped = self.periodic.stop() if self.periodic else False
        result = self.scheduler.emergency_stop()
        result.periodic_training_stopped = periodic_stopped
        return result

    def clear_cooldowns(self, request: ClearCooldownsRequest) -> ClearCooldownsResponse:
        if request.subject and request.variant:
            cleared = int(self.scheduler.clear_cooldown(request.subject, request.variant))
            return ClearCooldownsResponse(
                message=f"Cooldown cleared for {request.subject.upper()}:{request.variant.lower()}"
                if cleared else f"No cooldown for {request.subject.upper()}:{request.variant.lower()}",
                cleared=cleared,
            )

        cleared = self.scheduler.clear_all_cooldowns()
        return ClearCooldownsResponse(message=f"Cleared {cleared} cooldowns", cleared=cleared)

    def run_periodic_now(self) -> PeriodicCycleResult:
        if self.periodic is None:
            raise TrainingUnavailable("Periodic training is not configured")
        return self.periodic.run_now()
