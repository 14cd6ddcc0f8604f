"""
Training job scheduler.

Admission control, priority queuing, cooldown enforcement and retries
for training jobs. A background loop starts queued jobs whenever a slot
under the concurrency ceiling is free; each job runs on its own thread.
"""

import logging
import threading
from collections import deque
from typing import Any, Callable

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from retrainer.core.clock import Clock, now_ms
from retrainer.core.config import settings
from retrainer.models.job_history import JobSource, JobState, TrainingJobRecord
from retrainer.schemas.training_job import (
    ActiveJobInfo,
    ActiveSection,
    AdmissionDecision,
    CooldownInfo,
    EmergencyStopResult,
    HistorySection,
    QueuedJobInfo,
    QueuedSection,
    QueueStatus,
    RetiredJobInfo,
)
from retrainer.services.asset_storage import ConsolidatedStorage
from retrainer.services.cooldown_registry import CooldownRegistry, cooldown_key
from retrainer.services.model_runtime import TrainFunction, TrainingOutcome, as_outcome
from retrainer.workers.job_queue import JobQueue, TrainingJob, make_job_id

logger = logging.getLogger(__name__)

LOWEST_PRIORITY = 10
RETRY_PRIORITY_STEP = 2
COOLDOWN_PRIORITY_STEP = 1
RECENT_HISTORY_SIZE = 10
HISTORY_CLEANUP_INTERVAL_MS = 60 * 60 * 1000
MS_PER_MINUTE = 60_000


class SchedulerError(Exception):
    """Base exception for scheduler errors."""
    pass


class AdmissionDenied(SchedulerError):
    """Raised when a job for a (subject, variant) cannot be admitted."""

    def __init__(self, decision: AdmissionDecision):
        super().__init__(decision.reason)
        self.decision = decision


class JobExecutionFailure(SchedulerError):
    """Raised (and recorded) when a training function or its persistence fails."""

    def __init__(self, job_id: str, cause: Exception):
        super().__init__(f"{type(cause).__name__}: {cause}")
        self.job_id = job_id
        self.cause = cause


def _minutes(ms: int) -> int:
    return round(ms / MS_PER_MINUTE)


class TrainingScheduler:
    """
    Single owner of all queue, active-job, history and cooldown state.

    Every mutation happens under one lock. Training functions and
    persistence writes run outside of it, so get_status() never waits on
    training work.

    Attributes:
        max_concurrent: Ceiling on simultaneously active jobs.
        processing_interval_ms: Loop tick.
        storage: Where successful results are written, if attached.
    """

    def __init__(
        self,
        max_concurrent: int | None = None,
        cooldown_ms: int | None = None,
        processing_interval_ms: int | None = None,
        default_max_attempts: int | None = None,
        retry_delay_seconds: float | None = None,
        job_timeout_seconds: float | None = None,
        history_limit: int | None = None,
        storage: ConsolidatedStorage | None = None,
        db_session_factory: Callable[[], Session] | None = None,
        clock: Clock = now_ms,
    ):
        """
        Initialize the scheduler.

        Args default to the values in :mod:`retrainer.core.config`. The
        loop is not started here; call start().

        Args:
            storage: Persistence engine for weights and training history.
            db_session_factory: Factory for DB sessions used to persist
                cooldowns and retired jobs; None keeps both in memory.
            clock: Returns the current epoch ms.
        """
        self.max_concurrent = max_concurrent or settings.max_concurrent_training
        self.processing_interval_ms = processing_interval_ms or settings.processing_interval_ms
        self.default_max_attempts = default_max_attempts or settings.default_max_attempts
        self.retry_delay_ms = int(
            (settings.retry_delay_seconds if retry_delay_seconds is None else retry_delay_seconds)
            * 1000
        )
        self.job_timeout_ms = int(
            (settings.job_timeout_seconds if job_timeout_seconds is None else job_timeout_seconds)
            * 1000
        )
        self.storage = storage

        self._clock = clock
        self._db_session_factory = db_session_factory
        self._cooldowns = CooldownRegistry(
            settings.training_cooldown_ms if cooldown_ms is None else cooldown_ms,
            db_session_factory=db_session_factory,
            clock=clock,
        )

        self._lock = threading.Lock()
        self._idle = threading.Condition(self._lock)
        self._queue = JobQueue()
        self._active: dict[str, TrainingJob] = {}
        self._history: deque[TrainingJob] = deque(
            maxlen=history_limit or settings.job_history_limit
        )
        self._unmirrored: list[TrainingJob] = []

        self._stop_event = threading.Event()
        self._wake = threading.Event()
        self._thread: threading.Thread | None = None
        self._last_history_cleanup = clock()

        logger.info(
            f"Scheduler: initialized (max_concurrent={self.max_concurrent}, "
            f"cooldown={_minutes(self._cooldowns.cooldown_ms)} minutes, "
            f"interval={self.processing_interval_ms}ms)"
        )

    # ------------------------------------------------------------------
    # Admission
    # ------------------------------------------------------------------

    @property
    def cooldown_ms(self) -> int:
        return self._cooldowns.cooldown_ms

    def _find_in_flight(self, subject: str, variant: str) -> TrainingJob | None:
        for job in self._active.values():
            if job.key == (subject, variant):
                return job
        return self._queue.find_key(subject, variant)

    def _decide(self, subject: str, variant: str) -> AdmissionDecision:
        existing = self._find_in_flight(subject, variant)
        if existing is not None:
            return AdmissionDecision(
                allowed=False,
                reason=f"Already {existing.state.value}",
                job_id=existing.id,
            )

        remaining = self._cooldowns.remaining_ms(subject, variant)
        if remaining > 0:
            return AdmissionDecision(
                allowed=False,
                reason="Cooldown active",
                cooldown_remaining_ms=remaining,
                cooldown_remaining_minutes=_minutes(remaining),
            )

        if len(self._active) >= self.max_concurrent or len(self._queue) > 0:
            return AdmissionDecision(
                allowed=True,
                reason="Will be queued",
                queue_position=len(self._queue) + 1,
            )

        return AdmissionDecision(allowed=True, reason="Can start immediately")

    def can_admit(self, subject: str, variant: str) -> AdmissionDecision:
        """Answer whether a job for (subject, variant) would be admitted now."""
        subject, variant = cooldown_key(subject, variant)
        with self._lock:
            return self._decide(subject, variant)

    def resolve_priority(self, source: JobSource, priority: int | None) -> int:
        """
        Map a requested priority into the band of its source.

        Manual requests outside 1-7 fall back to the manual default;
        periodic requests are clamped into 8-10.
        """
        if source == JobSource.PERIODIC:
            if priority is None:
                return settings.periodic_priority_default
            return min(
                settings.periodic_priority_max,
                max(settings.periodic_priority_min, priority),
            )

        if priority is None or not (
            settings.manual_priority_min <= priority <= settings.manual_priority_max
        ):
            return settings.manual_priority_default
        return priority

    def submit(
        self,
        subject: str,
        variant: str,
        train_fn: TrainFunction,
        config: dict[str, Any] | None = None,
        source: JobSource = JobSource.MANUAL,
        priority: int | None = None,
        max_attempts: int | None = None,
    ) -> str:
        """
        Queue a training job.

        Args:
            subject: Subject identifier (upper-cased).
            variant: Model variant (lower-cased).
            train_fn: Called as ``train_fn(subject, variant, config)``.
            config: Passed through to ``train_fn``.
            source: manual or periodic; selects the priority band.
            priority: Requested priority, see resolve_priority().
            max_attempts: Retry budget; defaults to default_max_attempts.

        Returns:
            The job id.

        Raises:
            AdmissionDenied: If a job for the pair is already queued or
                active, or its cooldown is running.
        """
        subject, variant = cooldown_key(subject, variant)
        with self._lock:
            decision = self._decide(subject, variant)
            if not decision.allowed:
                logger.info(f"Scheduler: Rejected {subject}:{variant} - {decision.reason}")
                raise AdmissionDenied(decision)

            now = self._clock()
            job = TrainingJob(
                id=make_job_id(subject, variant, now),
                subject=subject,
                variant=variant,
                train_fn=train_fn,
                priority=self.resolve_priority(source, priority),
                source=source,
                config=dict(config or {}),
                max_attempts=max_attempts or self.default_max_attempts,
                enqueued_at=now,
            )
            position = self._queue.push(job)
            queue_size = len(self._queue)

        logger.info(
            f"Scheduler: Job queued {job.id} (priority={job.priority}, "
            f"position={position + 1}/{queue_size}, source={source.value})"
        )
        self._wake.set()
        return job.id

    # ------------------------------------------------------------------
    # Dispatch and completion
    # ------------------------------------------------------------------

    def process_queue(self) -> int:
        """
        Start as many eligible jobs as free slots allow.

        Also retires active jobs that exceeded the watchdog timeout.

        Returns:
            Number of jobs started.
        """
        started: list[TrainingJob] = []
        with self._lock:
            now = self._clock()
            self._reap_timed_out(now)

            deferred: list[TrainingJob] = []
            while len(self._active) < self.max_concurrent:
                job = self._queue.pop_eligible(now)
                if job is None:
                    break

                if self._cooldowns.is_in_cooldown(job.subject, job.variant):
                    job.priority = min(LOWEST_PRIORITY, job.priority + COOLDOWN_PRIORITY_STEP)
                    deferred.append(job)
                    logger.warning(
                        f"Scheduler: Job {job.id} skipped due to cooldown, "
                        f"priority lowered to {job.priority}"
                    )
                    continue

                job.state = JobState.ACTIVE
                job.started_at = now
                job.attempts += 1
                self._active[job.id] = job
                started.append(job)

            for job in deferred:
                self._queue.push(job)

        self._mirror_retired()

        for job in started:
            logger.info(
                f"Scheduler: Starting training {job.subject}:{job.variant} "
                f"(job={job.id}, attempt {job.attempts}/{job.max_attempts}, "
                f"queued for {job.started_at - job.enqueued_at}ms)"
            )
            thread = threading.Thread(
                target=self._run_job,
                args=(job,),
                name=f"train-{job.id}",
                daemon=True,
            )
            thread.start()

        return len(started)

    def _reap_timed_out(self, now: int) -> None:
        if self.job_timeout_ms <= 0:
            return
        for job in list(self._active.values()):
            if job.started_at is not None and now - job.started_at >= self.job_timeout_ms:
                del self._active[job.id]
                job.duration_ms = now - job.started_at
                job.error = f"Timed out after {self.job_timeout_ms / 1000:.0f}s"
                self._retire(job, JobState.FAILED, now)
                logger.error(f"Scheduler: Job {job.id} timed out, slot reclaimed")
        self._idle.notify_all()

    def _is_current(self, job: TrainingJob) -> bool:
        return self._active.get(job.id) is job

    def _run_job(self, job: TrainingJob) -> None:
        try:
            outcome = as_outcome(job.train_fn(job.subject, job.variant, dict(job.config)))
        except Exception as e:
            self._finish_failed(job, JobExecutionFailure(job.id, e))
            return

        with self._lock:
            discard = not self._is_current(job) or job.cancel_requested
        if discard:
            self._finish_discarded(job)
            return

        finished_at = self._clock()
        try:
            self._persist_outcome(job, outcome, finished_at)
        except Exception as e:
            self._finish_failed(job, JobExecutionFailure(job.id, e))
            return

        self._finish_completed(job, finished_at)

    def _persist_outcome(self, job: TrainingJob, outcome: TrainingOutcome, finished_at: int) -> None:
        if self.storage is None:
            return

        weights_saved = False
        if outcome.model is not None:
            self.storage.save_model_weights(job.subject, job.variant, outcome.model)
            weights_saved = True

        self.storage.save_training_history(
            job.subject,
            {
                **outcome.details,
                "job_id": job.id,
                "variant": job.variant,
                "source": job.source.value,
                "attempts": job.attempts,
                "timestamp": finished_at,
                "duration_ms": finished_at - (job.started_at or finished_at),
                "metrics": outcome.metrics,
                "weights_saved": weights_saved,
            },
        )

    def _finish_completed(self, job: TrainingJob, finished_at: int) -> None:
        with self._lock:
            if not self._is_current(job):
                logger.info(f"Scheduler: Result of {job.id} discarded, job no longer active")
                return
            del self._active[job.id]
            job.duration_ms = finished_at - (job.started_at or finished_at)
            self._cooldowns.record_completion(job.subject, job.variant, finished_at)
            self._retire(job, JobState.COMPLETED, finished_at)
            self._idle.notify_all()

        logger.info(
            f"Scheduler: Training completed {job.subject}:{job.variant} "
            f"(job={job.id}, duration={job.duration_ms / 1000:.1f}s)"
        )
        self._after_finish()

    def _finish_discarded(self, job: TrainingJob) -> None:
        now = self._clock()
        with self._lock:
            if not self._is_current(job):
                logger.info(f"Scheduler: Result of {job.id} discarded, job no longer active")
                return
            del self._active[job.id]
            job.duration_ms = now - (job.started_at or now)
            self._retire(job, JobState.CANCELLED, now)
            self._idle.notify_all()

        logger.warning(
            f"Scheduler: Result of cancelled job {job.id} discarded ({job.cancel_reason})"
        )
        self._after_finish()

    def _finish_failed(self, job: TrainingJob, failure: JobExecutionFailure) -> None:
        now = self._clock()
        with self._lock:
            if not self._is_current(job):
                logger.info(f"Scheduler: Failure of {job.id} ignored, job no longer active")
                return
            del self._active[job.id]
            job.duration_ms = now - (job.started_at or now)
            job.error = str(failure)

            if job.cancel_requested:
                self._retire(job, JobState.CANCELLED, now)
                retry = False
            elif job.attempts < job.max_attempts:
                job.priority = min(LOWEST_PRIORITY, job.priority + RETRY_PRIORITY_STEP)
                job.not_before = now + self.retry_delay_ms
                self._queue.push(job)
                retry = True
            else:
                self._retire(job, JobState.FAILED, now)
                retry = False
            self._idle.notify_all()

        logger.error(
            f"Scheduler: Training failed {job.subject}:{job.variant} "
            f"(job={job.id}, attempt {job.attempts}/{job.max_attempts}) - {failure}"
        )
        if retry:
            logger.info(
                f"Scheduler: Job {job.id} requeued for retry in {self.retry_delay_ms}ms "
                f"with priority {job.priority}"
            )
        self._after_finish()

    def _after_finish(self) -> None:
        self._mirror_retired()
        self._cooldowns.flush(self._lock)
        self._wake.set()

    # ------------------------------------------------------------------
    # History
    # ------------------------------------------------------------------

    def _retire(self, job: TrainingJob, state: JobState, now: int) -> None:
        """Move a job into the trailing history. Caller holds the lock."""
        job.state = state
        job.completed_at = now
        self._history.append(job)
        if self._db_session_factory:
            self._unmirrored.append(job)

    def _mirror_retired(self) -> None:
        with self._lock:
            jobs, self._unmirrored = self._unmirrored, []
        if not jobs:
            return

        db = self._db_session_factory()
        try:
            for job in jobs:
                db.add(
                    TrainingJobRecord(
                        job_id=job.id,
                        subject=job.subject,
                        variant=job.variant,
                        source=job.source.value,
                        state=job.state.value,
                        priority=job.priority,
                        attempts=job.attempts,
                        error_message=job.error,
                        cancel_reason=job.cancel_reason,
                        enqueued_at=job.enqueued_at,
                        started_at=job.started_at,
                        completed_at=job.completed_at,
                        duration_ms=job.duration_ms,
                    )
                )
            db.commit()
        except SQLAlchemyError as e:
            db.rollback()
            logger.error(f"Scheduler: Failed to record {len(jobs)} retired jobs - {e}")
        finally:
            db.close()

    def cleanup_history(self, max_age_ms: int = 7 * 24 * 60 * 60 * 1000) -> int:
        """
        Drop retired jobs older than ``max_age_ms`` from the in-memory history.

        Returns:
            Number of entries removed.
        """
        cutoff = self._clock() - max_age_ms
        with self._lock:
            kept = [j for j in self._history if (j.completed_at or j.enqueued_at) >= cutoff]
            removed = len(self._history) - len(kept)
            self._history.clear()
            self._history.extend(kept)

        if removed:
            logger.info(f"Scheduler: Cleaned up {removed} old history entries, {len(kept)} remaining")
        return removed

    # ------------------------------------------------------------------
    # Cancellation and cooldown administration
    # ------------------------------------------------------------------

    def cancel(self, job_id: str, reason: str = "User requested") -> bool:
        """
        Cancel a queued or active job.

        Queued jobs are removed at once. Active jobs cannot be interrupted;
        they are flagged and their result is discarded when they finish.

        Returns:
            False if no queued or active job has this id.
        """
        with self._lock:
            job = self._queue.remove(job_id)
            if job is not None:
                job.cancel_reason = reason
                self._retire(job, JobState.CANCELLED, self._clock())
                found = "queued"
            elif job_id in self._active:
                job = self._active[job_id]
                job.cancel_requested = True
                job.cancel_reason = reason
                found = "active"
            else:
                found = None

        if found == "queued":
            logger.info(f"Scheduler: Job {job_id} cancelled from queue ({reason})")
            self._mirror_retired()
            return True
        if found == "active":
            logger.warning(
                f"Scheduler: Active job {job_id} marked for cancellation ({reason}), "
                f"its result will be discarded"
            )
            return True

        logger.warning(f"Scheduler: Job {job_id} not found for cancellation")
        return False

    def emergency_stop(self) -> EmergencyStopResult:
        """Cancel every queued job and flag every active one."""
        logger.warning("Scheduler: Emergency stop activated")
        with self._lock:
            now = self._clock()
            dropped = self._queue.drain()
            for job in dropped:
                job.cancel_reason = "Emergency stop"
                self._retire(job, JobState.CANCELLED, now)
            for job in self._active.values():
                job.cancel_requested = True
                job.cancel_reason = "Emergency stop"
            marked = len(self._active)

        self._mirror_retired()
        logger.warning(
            f"Scheduler: Emergency stop completed - {len(dropped)} queued jobs cancelled, "
            f"{marked} active jobs marked"
        )
        return EmergencyStopResult(queued_jobs_cancelled=len(dropped), active_jobs_marked=marked)

    def clear_cooldown(self, subject: str, variant: str) -> bool:
        with self._lock:
            cleared = self._cooldowns.clear(subject, variant)
        self._cooldowns.flush(self._lock)
        return cleared

    def clear_all_cooldowns(self) -> int:
        with self._lock:
            cleared = self._cooldowns.clear_all()
        self._cooldowns.flush(self._lock)
        return cleared

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    def in_flight(self) -> tuple[int, int]:
        """(active, queued) job counts."""
        with self._lock:
            return len(self._active), len(self._queue)

    def has_active(self, source: JobSource | None = None) -> bool:
        with self._lock:
            return any(source is None or j.source == source for j in self._active.values())

    def get_status(self) -> QueueStatus:
        """Snapshot of active, queued and retired jobs plus running cooldowns."""
        with self._lock:
            now = self._clock()
            active = [
                ActiveJobInfo(
                    id=job.id,
                    subject=job.subject,
                    variant=job.variant,
                    source=job.source,
                    state=job.state,
                    priority=job.priority,
                    attempts=job.attempts,
                    started_at=job.started_at,
                    duration_ms=now - (job.started_at or now),
                    cancel_requested=job.cancel_requested,
                )
                for job in self._active.values()
            ]
            queued = [
                QueuedJobInfo(
                    id=job.id,
                    subject=job.subject,
                    variant=job.variant,
                    source=job.source,
                    priority=job.priority,
                    attempts=job.attempts,
                    queue_position=index + 1,
                    enqueued_at=job.enqueued_at,
                    queued_for_ms=now - job.enqueued_at,
                    retry_at=job.not_before if job.not_before > now else None,
                )
                for index, job in enumerate(self._queue.snapshot())
            ]
            recent = sorted(
                self._history,
                key=lambda j: j.completed_at or j.enqueued_at,
                reverse=True,
            )[:RECENT_HISTORY_SIZE]
            history = HistorySection(
                total=len(self._history),
                recent=[
                    RetiredJobInfo(
                        id=job.id,
                        subject=job.subject,
                        variant=job.variant,
                        source=job.source,
                        state=job.state,
                        attempts=job.attempts,
                        enqueued_at=job.enqueued_at,
                        started_at=job.started_at,
                        completed_at=job.completed_at,
                        duration_ms=job.duration_ms,
                        error=job.error,
                        cancel_reason=job.cancel_reason,
                    )
                    for job in recent
                ],
            )
            cooldowns = [
                CooldownInfo(
                    subject=subject,
                    variant=variant,
                    last_completed_at=last,
                    cooldown_remaining_ms=remaining,
                    cooldown_remaining_minutes=_minutes(remaining),
                )
                for subject, variant, last, remaining in self._cooldowns.active()
            ]

        return QueueStatus(
            active=ActiveSection(count=len(active), max_concurrent=self.max_concurrent, jobs=active),
            queued=QueuedSection(count=len(queued), jobs=queued),
            history=history,
            cooldowns=cooldowns,
            is_running=self.is_running,
        )

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        """Start the background loop."""
        if self.is_running:
            return

        self._stop_event.clear()
        self._thread = threading.Thread(
            target=self._run_loop,
            name="training-scheduler",
            daemon=True,
        )
        self._thread.start()
        logger.info("Scheduler: Queue processor started")

    def _run_loop(self) -> None:
        while not self._stop_event.is_set():
            try:
                self.process_queue()
                if self._clock() - self._last_history_cleanup >= HISTORY_CLEANUP_INTERVAL_MS:
                    self._last_history_cleanup = self._clock()
                    self.cleanup_history()
            except Exception:
                logger.exception("Scheduler: Queue processing error")
            self._wake.wait(self.processing_interval_ms / 1000)
            self._wake.clear()

    def stop(self) -> None:
        """Stop the background loop; active jobs keep running."""
        self._stop_event.set()
        self._wake.set()
        if self._thread:
            self._thread.join(timeout=5)
            self._thread = None
            logger.info("Scheduler: Queue processor stopped")

    def wait_until_idle(self, timeout: float | None = None) -> bool:
        """
        Block until no job is active.

        Returns:
            False if ``timeout`` seconds elapsed first.
        """
        with self._idle:
            return self._idle.wait_for(lambda: not self._active, timeout)

    def shutdown(self, wait_seconds: float = 60.0) -> None:
        """
        Stop the loop, wait for active jobs, then clear everything.

        Jobs still active after ``wait_seconds`` are abandoned; their
        results are discarded when they finish.
        """
        logger.info("Scheduler: Shutting down...")
        self.stop()

        if not self.wait_until_idle(wait_seconds):
            logger.warning(f"Scheduler: Forced shutdown with {len(self._active)} active jobs")

        with self._lock:
            now = self._clock()
            for job in self._queue.drain():
                job.cancel_reason = "Scheduler shutdown"
                self._retire(job, JobState.CANCELLED, now)
            self._active.clear()
            self._idle.notify_all()

        self._mirror_retired()
        logger.info("Scheduler: Shutdown completed")
