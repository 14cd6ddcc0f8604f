"""
Tests for the cooldown registry.
"""

import pytest
from sqlalchemy.orm import Session

from retrainer.models.cooldown import CooldownRecord
from retrainer.services.cooldown_registry import CooldownRegistry

from helpers import FakeClock

COOLDOWN_MS = 30 * 60 * 1000


class TestCooldownRegistry:
    """Tests for in-memory cooldown bookkeeping."""

    @pytest.fixture
    def registry(self, clock: FakeClock) -> CooldownRegistry:
        return CooldownRegistry(COOLDOWN_MS, clock=clock)

    def test_unknown_pair_not_in_cooldown(self, registry: CooldownRegistry):
        """Test a pair never trained has no cooldown."""
        assert registry.is_in_cooldown("BTCUSDT", "lstm") is False
        assert registry.remaining_ms("BTCUSDT", "lstm") == 0

    def test_remaining_decreases_monotonically(self, registry: CooldownRegistry, clock: FakeClock):
        """Test the remaining cooldown only shrinks as time passes."""
        registry.record_completion("BTCUSDT", "lstm")

        previous = registry.remaining_ms("BTCUSDT", "lstm")
        assert previous == COOLDOWN_MS
        for _ in range(5):
            clock.advance(5 * 60 * 1000)
            remaining = registry.remaining_ms("BTCUSDT", "lstm")
            assert remaining < previous
            previous = remaining

        clock.advance(COOLDOWN_MS)
        assert registry.is_in_cooldown("BTCUSDT", "lstm") is False

    def test_keys_are_case_normalized(self, registry: CooldownRegistry):
        """Test subject and variant casing does not matter."""
        registry.record_completion("btcusdt", "LSTM")
        assert registry.is_in_cooldown("BTCUSDT", "lstm") is True

    def test_clear(self, registry: CooldownRegistry):
        """Test clearing one pair leaves the others."""
        registry.record_completion("BTCUSDT", "lstm")
        registry.record_completion("BTCUSDT", "gru")

        assert registry.clear("BTCUSDT", "lstm") is True
        assert registry.clear("BTCUSDT", "lstm") is False
        assert registry.is_in_cooldown("BTCUSDT", "lstm") is False
        assert registry.is_in_cooldown("BTCUSDT", "gru") is True

    def test_clear_all(self, registry: CooldownRegistry):
        """Test clear_all reports how many entries were removed."""
        registry.record_completion("BTCUSDT", "lstm")
        registry.record_completion("ETHUSDT", "cnn")

        assert registry.clear_all() == 2
        assert registry.active() == []

    def test_active_lists_running_cooldowns_only(self, registry: CooldownRegistry, clock: FakeClock):
        """Test expired cooldowns are not reported."""
        registry.record_completion("BTCUSDT", "lstm")
        clock.advance(COOLDOWN_MS)
        registry.record_completion("ETHUSDT", "gru")

        active = registry.active()

        assert [(s, v) for s, v, _, _ in active] == [("ETHUSDT", "gru")]


class TestCooldownPersistence:
    """Tests for cooldowns mirrored to the database."""

    @pytest.fixture
    def registry_without_db(self, clock: FakeClock) -> CooldownRegistry:
        return CooldownRegistry(COOLDOWN_MS, clock=clock)

    def test_record_is_persisted(self, session_factory, test_db_session: Session, clock: FakeClock):
        """Test a completion creates a row."""
        registry = CooldownRegistry(COOLDOWN_MS, db_session_factory=session_factory, clock=clock)
        registry.record_completion("BTCUSDT", "lstm")
        assert registry.flush() == 1

        row = test_db_session.query(CooldownRecord).filter_by(subject="BTCUSDT", variant="lstm").one()
        assert row.last_completed_at == clock.now

    def test_cooldowns_survive_restart(self, session_factory, clock: FakeClock):
        """Test a new registry loads persisted cooldowns."""
        first = CooldownRegistry(COOLDOWN_MS, db_session_factory=session_factory, clock=clock)
        first.record_completion("BTCUSDT", "lstm")
        first.flush()
        clock.advance(60_000)

        second = CooldownRegistry(COOLDOWN_MS, db_session_factory=session_factory, clock=clock)

        assert second.remaining_ms("BTCUSDT", "lstm") == COOLDOWN_MS - 60_000

    def test_clear_deletes_rows(self, session_factory, test_db_session: Session, clock: FakeClock):
        """Test clearing removes persisted rows."""
        registry = CooldownRegistry(COOLDOWN_MS, db_session_factory=session_factory, clock=clock)
        registry.record_completion("BTCUSDT", "lstm")
        registry.record_completion("ETHUSDT", "gru")
        registry.flush()

        registry.clear("BTCUSDT", "lstm")
        registry.flush()
        assert test_db_session.query(CooldownRecord).count() == 1

        registry.clear_all()
        registry.flush()
        assert test_db_session.query(CooldownRecord).count() == 0

    def test_changes_wait_for_flush(self, session_factory, test_db_session: Session, clock: FakeClock):
        """Test nothing is written until flush() and then in order."""
        registry = CooldownRegistry(COOLDOWN_MS, db_session_factory=session_factory, clock=clock)
        registry.record_completion("BTCUSDT", "lstm")
        registry.clear_all()
        registry.record_completion("ETHUSDT", "gru")

        assert test_db_session.query(CooldownRecord).count() == 0
        assert registry.flush() == 3
        assert [r.subject for r in test_db_session.query(CooldownRecord).all()] == ["ETHUSDT"]
        assert registry.flush() == 0

    def test_memory_only_registry_queues_nothing(self, registry_without_db: CooldownRegistry):
        """Test a registry without a database never has pending writes."""
        registry_without_db.record_completion("BTCUSDT", "lstm")

        assert registry_without_db.flush() == 0
