"""
Global Control Plane - ORM Models.

============================================================
PURPOSE
============================================================
SQLAlchemy ORM models for persisting:
- Current state per target (indexed by scope + target id)
- The append-only decision log (audit trail)
- The fleet-wide GLOBAL KILL flag

DECISION ROWS ARE NEVER UPDATED OR DELETED.

============================================================
"""

from datetime import datetime, timezone
from typing import Optional, List, Dict, Any

from sqlalchemy import (
    Integer,
    String,
    DateTime,
    Boolean,
    Text,
    JSON,
    Index,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, declarative_base


Base = declarative_base()


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ============================================================
# CURRENT STATE MODEL
# ============================================================

class ControlStateModel(Base):
    """
    Materialized current state of one target.

    ``version`` is bumped on every decision and used for
    optimistic concurrency control.
    """

    __tablename__ = "control_states"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)

    scope: Mapped[str] = mapped_column(
        String(16),
        nullable=False,
    )
    """STRATEGY / USER / BROKER / GLOBAL."""

    target_id: Mapped[str] = mapped_column(
        String(128),
        nullable=False,
    )
    """Target identifier within the scope."""

    state: Mapped[str] = mapped_column(
        String(16),
        nullable=False,
        index=True,
    )
    """Current control state."""

    last_transition_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
    )
    """When the current state was entered."""

    last_decision_id: Mapped[str] = mapped_column(
        String(64),
        nullable=False,
    )
    """Decision that produced the current state."""

    requires_manual_reset: Mapped[bool] = mapped_column(
        Boolean,
        default=False,
        nullable=False,
    )

    version: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        default=1,
    )
    """Optimistic concurrency version."""

    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=_utcnow,
        nullable=False,
    )

    __table_args__ = (
        UniqueConstraint("scope", "target_id", name="uq_control_states_scope_target"),
    )


# ============================================================
# DECISION MODEL
# ============================================================

class ControlDecisionModel(Base):
    """
    Persisted control decision.

    The autoincrement primary key is the decision sequence.
    """

    __tablename__ = "control_decisions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    """Monotonic sequence number."""

    decision_id: Mapped[str] = mapped_column(
        String(64),
        unique=True,
        nullable=False,
        index=True,
    )

    scope: Mapped[str] = mapped_column(String(16), nullable=False)

    target_id: Mapped[str] = mapped_column(String(128), nullable=False)

    previous_state: Mapped[str] = mapped_column(String(16), nullable=False)

    new_state: Mapped[str] = mapped_column(String(16), nullable=False, index=True)

    reason: Mapped[str] = mapped_column(Text, nullable=False)

    signals: Mapped[List[Dict[str, Any]]] = mapped_column(
        JSON,
        nullable=False,
    )
    """Signals consumed by the decision."""

    decided_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
    )

    requires_manual_reset: Mapped[bool] = mapped_column(Boolean, nullable=False)

    global_kill_override: Mapped[bool] = mapped_column(Boolean, nullable=False)

    admin_id: Mapped[Optional[str]] = mapped_column(
        String(128),
        nullable=True,
    )
    """Administrator (manual resets only)."""

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=_utcnow,
        nullable=False,
    )

    __table_args__ = (
        Index("ix_control_decisions_decided_at", "decided_at"),
        Index("ix_control_decisions_target_time", "scope", "target_id", "decided_at"),
    )


# ============================================================
# GLOBAL KILL FLAG MODEL
# ============================================================

class GlobalKillFlagModel(Base):
    """
    Fleet-wide kill override.

    Single row keyed by ``name``. Kept apart from control_states
    so the override can be read and locked on its own.
    """

    __tablename__ = "control_global_flags"

    name: Mapped[str] = mapped_column(String(32), primary_key=True)

    active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    activated_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )

    decision_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)

    reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=_utcnow,
        nullable=False,
    )
