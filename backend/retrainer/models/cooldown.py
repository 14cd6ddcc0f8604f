"""
Training cooldown database model.

Stores the last successful training completion per (subject, variant)
so cooldowns survive a process restart.
"""

from datetime import datetime

from sqlalchemy import String, BigInteger, DateTime, UniqueConstraint, func
from sqlalchemy.orm import Mapped, mapped_column

from retrainer.core.database import Base


class CooldownRecord(Base):
    """
    Last successful training completion for one (subject, variant).

    Attributes:
        id: Row identifier.
        subject: Upper-cased subject identifier (e.g. "BTCUSDT").
        variant: Lower-cased model variant (e.g. "lstm").
        last_completed_at: Completion time in epoch milliseconds.
        updated_at: Timestamp when the row was last written.
    """

    __tablename__ = "training_cooldowns"
    __table_args__ = (
        UniqueConstraint("subject", "variant", name="uq_cooldown_subject_variant"),
    )

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    subject: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    variant: Mapped[str] = mapped_column(String(64), nullable=False)
    last_completed_at: Mapped[int] = mapped_column(BigInteger, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
    )

    def __repr__(self) -> str:
        return (
            f"<CooldownRecord(subject='{self.subject}', variant='{self.variant}', "
            f"last_completed_at={self.last_completed_at})>"
        )
