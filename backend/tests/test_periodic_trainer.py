"""
Tests for the periodic training cycle.
"""

import threading
from unittest.mock import patch

import pytest

from retrainer.models.job_history import JobSource
from retrainer.workers.periodic_trainer import PeriodicTrainer
from retrainer.workers.scheduler import TrainingScheduler

from helpers import FakeClock

SUBJECTS = ["BTCUSDT", "ETHUSDT", "SOLUSDT", "ADAUSDT", "XRPUSDT"]


def noop_train(subject: str, variant: str, config: dict) -> dict:
    return {"accuracy": 0.5}


@pytest.fixture
def scheduler(clock: FakeClock) -> TrainingScheduler:
    instance = TrainingScheduler(
        max_concurrent=1,
        cooldown_ms=30 * 60 * 1000,
        processing_interval_ms=10,
        job_timeout_seconds=0,
        clock=clock,
    )
    yield instance
    instance.stop()


def make_trainer(scheduler, subjects=SUBJECTS, **kwargs) -> PeriodicTrainer:
    options = {
        "variants": ["lstm", "gru"],
        "interval_ms": 60_000,
        "max_subjects": 2,
        "max_in_flight": 10,
    }
    options.update(kwargs)
    return PeriodicTrainer(
        scheduler,
        noop_train,
        lambda: list(subjects),
        **options,
    )


class TestRunCycle:
    """Tests for run_cycle()."""

    def test_queues_every_variant_for_leading_subjects(self, scheduler: TrainingScheduler):
        """Test a cycle queues all variants for the first max_subjects subjects."""
        trainer = make_trainer(scheduler)

        result = trainer.run_cycle()

        assert result.skipped_cycle is False
        assert result.subjects_processed == 2
        assert result.queued == 4
        queued = scheduler.get_status().queued.jobs
        assert {job.subject for job in queued} == {"BTCUSDT", "ETHUSDT"}
        assert all(job.source == JobSource.PERIODIC for job in queued)
        assert all(job.priority == 8 for job in queued)
        assert trainer.last_result is result

    def test_in_flight_cap_limits_queueing(self, scheduler: TrainingScheduler):
        """Test nothing new is queued once queued plus active reaches the cap."""
        trainer = make_trainer(scheduler, max_in_flight=3)

        result = trainer.run_cycle()

        assert result.queued == 3
        assert result.skipped == 1
        skipped = result.results[1]["models"]["gru"]
        assert skipped["status"] == "skipped"
        assert skipped["reason"] == "Queue capacity reached"

    def test_already_queued_pairs_are_skipped(self, scheduler: TrainingScheduler):
        """Test a second cycle does not duplicate queued jobs."""
        trainer = make_trainer(scheduler)
        trainer.run_cycle()

        result = trainer.run_cycle()

        assert result.queued == 0
        assert result.skipped == 4
        assert scheduler.get_status().queued.count == 4

    def test_cooldown_pairs_are_skipped(self, scheduler: TrainingScheduler):
        """Test pairs trained recently are not queued again."""
        scheduler.submit("BTCUSDT", "lstm", noop_train)
        scheduler.process_queue()
        assert scheduler.wait_until_idle(timeout=5)
        trainer = make_trainer(scheduler, subjects=["BTCUSDT"], variants=["lstm"])

        result = trainer.run_cycle()

        assert result.queued == 0
        model = result.results[0]["models"]["lstm"]
        assert model["reason"] == "Cooldown active"
        assert model["cooldown_remaining_minutes"] == 30

    def test_cycle_skipped_while_training_active(self, scheduler: TrainingScheduler):
        """Test a cycle backs off entirely when any job is active."""
        started = threading.Event()
        release = threading.Event()

        def blocking_train(subject, variant, config):
            started.set()
            release.wait(timeout=10)

        scheduler.submit("BTCUSDT", "lstm", blocking_train)
        scheduler.process_queue()
        assert started.wait(timeout=5)
        trainer = make_trainer(scheduler)

        try:
            result = trainer.run_cycle()
        finally:
            release.set()

        assert result.skipped_cycle is True
        assert result.skip_reason == "Training already active"
        assert scheduler.wait_until_idle(timeout=5)

    def test_manual_training_stops_remaining_subjects(self, scheduler: TrainingScheduler):
        """Test manual training appearing mid-cycle ends the cycle early."""
        trainer = make_trainer(scheduler, max_subjects=3)

        with patch.object(scheduler, "has_active", side_effect=[False, True]):
            result = trainer.run_cycle()

        assert result.subjects_processed == 1
        assert result.queued == 2

    def test_no_subjects(self, scheduler: TrainingScheduler):
        """Test an empty subject list skips the cycle."""
        trainer = make_trainer(scheduler, subjects=[])

        result = trainer.run_cycle()

        assert result.skipped_cycle is True
        assert result.skip_reason == "No subjects available"

    def test_overlapping_cycle_is_skipped(self, scheduler: TrainingScheduler):
        """Test a cycle started during another cycle returns immediately."""
        nested = []
        trainer = None

        def provider():
            nested.append(trainer.run_cycle())
            return ["BTCUSDT"]

        trainer = PeriodicTrainer(
            scheduler,
            noop_train,
            provider,
            variants=["lstm"],
            interval_ms=60_000,
            max_subjects=1,
            max_in_flight=10,
        )

        result = trainer.run_cycle()

        assert result.queued == 1
        assert nested[0].skipped_cycle is True
        assert nested[0].skip_reason == "Cycle already running"
        assert trainer.last_result is result

    def test_job_config_marks_periodic_source(self, scheduler: TrainingScheduler):
        """Test queued jobs carry the cycle id and periodic source."""
        calls = []

        def recording_train(subject, variant, config):
            calls.append(config)

        trainer = PeriodicTrainer(
            scheduler,
            recording_train,
            lambda: ["BTCUSDT"],
            variants=["lstm"],
            interval_ms=60_000,
            max_subjects=1,
            max_in_flight=10,
            training_config={"epochs": 3},
        )
        result = trainer.run_cycle()

        scheduler.process_queue()
        assert scheduler.wait_until_idle(timeout=5)

        assert calls == [{"epochs": 3, "source": "periodic", "cycle_id": result.cycle_id}]


class TestLifecycle:
    """Tests for start() and stop()."""

    def test_stop_when_not_running(self, scheduler: TrainingScheduler):
        """Test stop() reports that nothing was running."""
        assert make_trainer(scheduler).stop() is False

    def test_start_and_stop(self, scheduler: TrainingScheduler):
        """Test the loop thread starts and stops."""
        trainer = make_trainer(scheduler)

        trainer.start()
        assert trainer.is_running is True

        assert trainer.stop() is True
        assert trainer.is_running is False
