"""
Cooldown registry.

Tracks the last successful training completion per (subject, variant)
and answers whether a new training would still fall inside the cooldown.
Entries are mirrored to the database so cooldowns survive restarts.
"""

from __future__ import annotations

import logging
import threading
from typing import Callable

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from retrainer.core.clock import Clock, now_ms
from retrainer.models.cooldown import CooldownRecord

logger = logging.getLogger(__name__)


def cooldown_key(subject: str, variant: str) -> tuple[str, str]:
    return subject.upper(), variant.lower()


class CooldownRegistry:
    """
    Per (subject, variant) last-completion timestamps.

    Not thread-safe on its own; the scheduler calls it under its lock.
    Changes are queued in memory and written by flush(), which the
    scheduler calls after releasing its lock.

    Attributes:
        cooldown_ms: Minimum interval between successful trainings.
    """

    def __init__(
        self,
        cooldown_ms: int,
        db_session_factory: Callable[[], Session] | None = None,
        clock: Clock = now_ms,
    ):
        """
        Initialize the registry and load persisted entries.

        Args:
            cooldown_ms: Cooldown duration in milliseconds.
            db_session_factory: Factory for DB sessions; None keeps the
                registry in memory only.
            clock: Returns the current epoch ms.
        """
        self.cooldown_ms = cooldown_ms
        self._db_session_factory = db_session_factory
        self._clock = clock
        self._last_completed: dict[tuple[str, str], int] = {}
        self._pending: list[tuple[tuple[str, str] | None, int | None]] = []
        self._flush_lock = threading.Lock()
        self._load()

    def _load(self) -> None:
        if not self._db_session_factory:
            return
        db = self._db_session_factory()
        try:
            for row in db.query(CooldownRecord).all():
                self._last_completed[(row.subject, row.variant)] = row.last_completed_at
            logger.info(f"CooldownRegistry: Loaded {len(self._last_completed)} persisted cooldowns")
        except SQLAlchemyError as e:
            logger.error(f"CooldownRegistry: Failed to load persisted cooldowns - {e}")
        finally:
            db.close()

    def last_completed(self, subject: str, variant: str) -> int | None:
        return self._last_completed.get(cooldown_key(subject, variant))

    def remaining_ms(self, subject: str, variant: str) -> int:
        last = self.last_completed(subject, variant)
        if last is None:
            return 0
        return max(0, self.cooldown_ms - (self._clock() - last))

    def is_in_cooldown(self, subject: str, variant: str) -> bool:
        return self.remaining_ms(subject, variant) > 0

    def record_completion(self, subject: str, variant: str, completed_at: int | None = None) -> None:
        key = cooldown_key(subject, variant)
        completed_at = completed_at if completed_at is not None else self._clock()
        self._last_completed[key] = completed_at
        self._queue_write(key, completed_at)

    def clear(self, subject: str, variant: str) -> bool:
        key = cooldown_key(subject, variant)
        removed = self._last_completed.pop(key, None) is not None
        if removed:
            self._queue_write(key, None)
            logger.info(f"CooldownRegistry: Cooldown cleared for {key[0]}:{key[1]}")
        return removed

    def clear_all(self) -> int:
        count = len(self._last_completed)
        self._last_completed.clear()
        self._queue_write(None, None)
        logger.info(f"CooldownRegistry: All cooldowns cleared ({count})")
        return count

    def _queue_write(self, key: tuple[str, str] | None, completed_at: int | None) -> None:
        if self._db_session_factory:
            self._pending.append((key, completed_at))

    def active(self) -> list[tuple[str, str, int, int]]:
        """(subject, variant, last_completed_at, remaining_ms) for running cooldowns."""
        entries = []
        for (subject, variant), last in self._last_completed.items():
            remaining = self.remaining_ms(subject, variant)
            if remaining > 0:
                entries.append((subject, variant, last, remaining))
        return entries

    def flush(self, state_lock: threading.Lock | None = None) -> int:
        """
        Write pending changes to the database.

        Args:
            state_lock: Lock guarding the in-memory map; held only while
                the pending changes are taken, never during database I/O.

        Returns:
            Number of changes written.
        """
        with self._flush_lock:
            if state_lock is not None:
                with state_lock:
                    pending, self._pending = self._pending, []
            else:
                pending, self._pending = self._pending, []
            if not pending:
                return 0
            self._write(pending)
            return len(pending)

    def _write(self, pending: list[tuple[tuple[str, str] | None, int | None]]) -> None:
        db = self._db_session_factory()
        try:
            for key, completed_at in pending:
                if key is None:
                    db.query(CooldownRecord).delete()
                    continue
                row = (
                    db.query(CooldownRecord)
                    .filter(CooldownRecord.subject == key[0], CooldownRecord.variant == key[1])
                    .first()
                )
                if completed_at is None:
                    if row:
                        db.delete(row)
                elif row:
                    row.last_completed_at = completed_at
                else:
                    db.add(CooldownRecord(subject=key[0], variant=key[1], last_completed_at=completed_at))
                db.flush()
            db.commit()
        except SQLAlchemyError as e:
            db.rollback()
            logger.error(f"CooldownRegistry: Failed to persist {len(pending)} cooldown changes - {e}")
        finally:
            db.close()
