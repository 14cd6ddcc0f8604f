"""
Periodic training cycle.

On a fixed interval, queues low-priority training jobs for a bounded
number of subjects, backing off whenever manual training is running or
the scheduler is already busy.
"""

import logging
import threading
from typing import Any, Callable, Iterable

from retrainer.core.clock import Clock, now_ms
from retrainer.core.config import settings
from retrainer.models.job_history import JobSource
from retrainer.schemas.training_job import PeriodicCycleResult
from retrainer.services.model_runtime import TrainFunction
from retrainer.workers.scheduler import AdmissionDenied, TrainingScheduler

logger = logging.getLogger(__name__)

SubjectProvider = Callable[[], Iterable[str]]

DEFAULT_PERIODIC_CONFIG: dict[str, Any] = {
    "epochs": 10,
    "batch_size": 32,
    "learning_rate": 0.002,
    "patience": 5,
    "verbose": 0,
}


class PeriodicTrainer:
    """
    Background thread that runs one training cycle per interval.

    Attributes:
        interval_ms: Time between cycles.
        variants: Model variants queued for every subject.
        max_subjects: Subjects considered per cycle.
        max_in_flight: Queued plus active jobs above which nothing new is queued.
    """

    def __init__(
        self,
        scheduler: TrainingScheduler,
        train_fn: TrainFunction,
        subject_provider: SubjectProvider,
        variants: list[str] | None = None,
        interval_ms: int | None = None,
        max_subjects: int | None = None,
        max_in_flight: int | None = None,
        training_config: dict[str, Any] | None = None,
        clock: Clock = now_ms,
    ):
        self.scheduler = scheduler
        self.train_fn = train_fn
        self.subject_provider = subject_provider
        self.variants = [v.lower() for v in (variants or settings.enabled_variants)]
        self.interval_ms = interval_ms or settings.periodic_training_interval_ms
        self.max_subjects = max_subjects or settings.periodic_max_subjects
        self.max_in_flight = max_in_flight or settings.periodic_max_in_flight
        self.training_config = dict(training_config or DEFAULT_PERIODIC_CONFIG)

        self._clock = clock
        self._cycle_lock = threading.Lock()
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None
        self.last_result: PeriodicCycleResult | None = None

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        if self.is_running:
            return

        self._stop_event.clear()
        self._thread = threading.Thread(
            target=self._run_loop,
            name="periodic-training",
            daemon=True,
        )
        self._thread.start()
        logger.info(f"PeriodicTrainer: Started (every {self.interval_ms / 60_000:.0f} minutes)")

    def _run_loop(self) -> None:
        while not self._stop_event.wait(self.interval_ms / 1000):
            try:
                self.run_cycle()
            except Exception:
                logger.exception("PeriodicTrainer: Cycle failed")

    def stop(self) -> bool:
        """Stop the loop. Returns True if it was running."""
        was_running = self.is_running
        self._stop_event.set()
        if self._thread:
            self._thread.join(timeout=5)
            self._thread = None
        if was_running:
            logger.info("PeriodicTrainer: Stopped")
        return was_running

    def run_now(self) -> PeriodicCycleResult:
        """Run one cycle synchronously, outside the interval."""
        return self.run_cycle()

    def run_cycle(self) -> PeriodicCycleResult:
        """
        Run one periodic cycle.

        Never overlaps with itself: a cycle started while another is in
        progress returns immediately as skipped.
        """
        started_at = self._clock()
        result = PeriodicCycleResult(cycle_id=f"periodic_{started_at}", started_at=started_at)

        if not self._cycle_lock.acquire(blocking=False):
            logger.warning("PeriodicTrainer: Cycle already running, skipping duplicate cycle")
            result.skipped_cycle = True
            result.skip_reason = "Cycle already running"
            return result

        try:
            self._run_cycle(result)
        finally:
            self._cycle_lock.release()

        result.duration_ms = self._clock() - started_at
        self.last_result = result
        logger.info(
            f"PeriodicTrainer: Cycle {result.cycle_id} finished - {result.queued} queued, "
            f"{result.skipped} skipped, {result.failed} failed "
            f"({result.subjects_processed} subjects)"
        )
        return result

    def _run_cycle(self, result: PeriodicCycleResult) -> None:
        active, queued = self.scheduler.in_flight()
        if active > 0:
            logger.info(
                f"PeriodicTrainer: Training active ({active} active, {queued} queued), "
                f"skipping periodic cycle"
            )
            result.skipped_cycle = True
            result.skip_reason = "Training already active"
            return

        subjects = [s.upper() for s in self.subject_provider()][: self.max_subjects]
        if not subjects:
            logger.info("PeriodicTrainer: No subjects available for periodic training")
            result.skipped_cycle = True
            result.skip_reason = "No subjects available"
            return

        logger.info(
            f"PeriodicTrainer: Cycle {result.cycle_id} for {len(subjects)} subjects: "
            f"{', '.join(subjects)}"
        )

        for subject in subjects:
            if self.scheduler.has_active(JobSource.MANUAL):
                logger.warning(
                    f"PeriodicTrainer: Manual training detected, skipping remaining subjects "
                    f"({result.subjects_processed}/{len(subjects)} processed)"
                )
                break

            result.subjects_processed += 1
            models: dict[str, dict[str, Any]] = {}
            for variant in self.variants:
                models[variant] = self._queue_variant(subject, variant, result)
            result.results.append(
                {"subject": subject, "models": models, "processed_at": self._clock()}
            )

    def _queue_variant(
        self,
        subject: str,
        variant: str,
        result: PeriodicCycleResult,
    ) -> dict[str, Any]:
        active, queued = self.scheduler.in_flight()
        if active + queued >= self.max_in_flight:
            result.skipped += 1
            return {
                "status": "skipped",
                "reason": "Queue capacity reached",
                "queue_capacity": f"{active + queued}/{self.max_in_flight}",
            }

        decision = self.scheduler.can_admit(subject, variant)
        if not decision.allowed:
            logger.debug(f"PeriodicTrainer: Skipping {subject}:{variant} - {decision.reason}")
            result.skipped += 1
            return {
                "status": "skipped",
                "reason": decision.reason,
                "cooldown_remaining_minutes": decision.cooldown_remaining_minutes,
            }

        config = {**self.training_config, "source": JobSource.PERIODIC.value, "cycle_id": result.cycle_id}
        try:
            job_id = self.scheduler.submit(
                subject,
                variant,
                self.train_fn,
                config=config,
                source=JobSource.PERIODIC,
            )
        except AdmissionDenied as e:
            logger.warning(f"PeriodicTrainer: Failed to queue {subject}:{variant} - {e}")
            result.failed += 1
            return {"status": "failed", "error": str(e)}

        result.queued += 1
        logger.info(f"PeriodicTrainer: Queued {subject}:{variant} (job={job_id})")
        return {"status": "queued", "job_id": job_id}
