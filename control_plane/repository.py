"""
Global Control Plane - SQL Repository.

============================================================
PURPOSE
============================================================
Durable ControlStateStore on SQLAlchemy.

Every commit is ONE transaction:
1. Conditional update of the target's state row
   (version check = optimistic concurrency)
2. Insert of the decision row (append-only audit log)
3. For GLOBAL: update of the kill flag row

Any failure rolls back all three.

============================================================
"""

import logging
from datetime import datetime, timezone
from typing import Optional, List, Tuple

from sqlalchemy import select, update, and_, func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import sessionmaker

from .types import (
    ControlState,
    ControlTarget,
    ControlSignal,
    ControlDecision,
    GlobalKillStatus,
    TargetStateRecord,
    ConflictError,
    ValidationError,
    parse_scope,
    parse_state,
)
from .models import (
    ControlStateModel,
    ControlDecisionModel,
    GlobalKillFlagModel,
)
from .database import transaction_scope, read_scope
from .store import ControlStateStore


logger = logging.getLogger(__name__)


GLOBAL_KILL_FLAG = "global_kill"


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Normalize to aware UTC (SQLite returns naive datetimes)."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


# ============================================================
# REPOSITORY
# ============================================================

class SqlControlStateStore(ControlStateStore):
    """
    SQL-backed control plane store.

    The gate reads the state row and the kill flag row on every
    call; nothing is cached in-process.
    """

    def __init__(self, session_factory: sessionmaker):
        """
        Initialize repository.

        Args:
            session_factory: Sync session factory
        """
        self._session_factory = session_factory

    # --------------------------------------------------------
    # INDEX
    # --------------------------------------------------------

    def get_record(self, target: ControlTarget) -> Optional[TargetStateRecord]:
        with read_scope(self._session_factory) as sess:
            row = sess.execute(
                select(ControlStateModel).where(
                    and_(
                        ControlStateModel.scope == target.scope.value,
                        ControlStateModel.target_id == target.id,
                    )
                )
            ).scalar_one_or_none()
            return self._to_record(row) if row is not None else None

    def commit(
        self,
        decision: ControlDecision,
        expected_version: Optional[int],
    ) -> ControlDecision:
        target = decision.target
        decided_at = _as_utc(decision.decided_at)

        with transaction_scope(self._session_factory) as sess:
            row = sess.execute(
                select(ControlStateModel).where(
                    and_(
                        ControlStateModel.scope == target.scope.value,
                        ControlStateModel.target_id == target.id,
                    )
                )
            ).scalar_one_or_none()

            actual_version = row.version if row is not None else None
            if actual_version != expected_version:
                raise ConflictError(
                    f"Concurrent update on {target}",
                    context={
                        "expected_version": expected_version,
                        "actual_version": actual_version,
                    },
                )

            if row is None:
                sess.add(ControlStateModel(
                    scope=target.scope.value,
                    target_id=target.id,
                    state=decision.new_state.value,
                    last_transition_at=decided_at,
                    last_decision_id=decision.decision_id,
                    requires_manual_reset=decision.requires_manual_reset,
                    version=1,
                    updated_at=decided_at,
                ))
                try:
                    sess.flush()
                except IntegrityError as e:
                    raise ConflictError(
                        f"Concurrent creation of {target}",
                        cause=e,
                    ) from e
            else:
                entered_at = (
                    row.last_transition_at
                    if row.state == decision.new_state.value
                    else decided_at
                )
                result = sess.execute(
                    update(ControlStateModel)
                    .where(
                        and_(
                            ControlStateModel.id == row.id,
                            ControlStateModel.version == expected_version,
                        )
                    )
                    .values(
                        state=decision.new_state.value,
                        last_transition_at=entered_at,
                        last_decision_id=decision.decision_id,
                        requires_manual_reset=decision.requires_manual_reset,
                        version=expected_version + 1,
                        updated_at=decided_at,
                    )
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount != 1:
                    raise ConflictError(
                        f"Concurrent update on {target}",
                        context={"expected_version": expected_version},
                    )

            model = ControlDecisionModel(
                decision_id=decision.decision_id,
                scope=target.scope.value,
                target_id=target.id,
                previous_state=decision.previous_state.value,
                new_state=decision.new_state.value,
                reason=decision.reason,
                signals=[signal.to_dict() for signal in decision.signals],
                decided_at=decided_at,
                requires_manual_reset=decision.requires_manual_reset,
                global_kill_override=decision.global_kill_override,
                admin_id=decision.admin_id,
            )
            sess.add(model)
            sess.flush()
            sequence = model.id

            if target.is_global:
                self._write_kill_flag(sess, decision, decided_at)

        logger.info(
            f"Committed decision {decision.decision_id} (seq={sequence}): "
            f"{target} {decision.previous_state.value} -> {decision.new_state.value}"
        )

        return ControlDecision(
            decision_id=decision.decision_id,
            target=target,
            previous_state=decision.previous_state,
            new_state=decision.new_state,
            reason=decision.reason,
            signals=decision.signals,
            decided_at=decided_at,
            requires_manual_reset=decision.requires_manual_reset,
            global_kill_override=decision.global_kill_override,
            admin_id=decision.admin_id,
            sequence=sequence,
        )

    # --------------------------------------------------------
    # KILL FLAG
    # --------------------------------------------------------

    def is_global_kill_active(self) -> bool:
        return self.get_global_kill_status().active

    def get_global_kill_status(self) -> GlobalKillStatus:
        with read_scope(self._session_factory) as sess:
            flag = sess.get(GlobalKillFlagModel, GLOBAL_KILL_FLAG)
            return self._to_kill_status(flag)

    def snapshot(self) -> Tuple[List[TargetStateRecord], GlobalKillStatus]:
        with read_scope(self._session_factory) as sess:
            rows = sess.execute(select(ControlStateModel)).scalars().all()
            flag = sess.get(GlobalKillFlagModel, GLOBAL_KILL_FLAG)
            return [self._to_record(row) for row in rows], self._to_kill_status(flag)

    # --------------------------------------------------------
    # AUDIT LOG
    # --------------------------------------------------------

    def query_decisions(
        self,
        target: Optional[ControlTarget] = None,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        limit: int = 100,
        newest_first: bool = False,
    ) -> List[ControlDecision]:
        if limit < 1:
            raise ValidationError(f"Audit limit must be >= 1, got {limit}")

        stmt = select(ControlDecisionModel)

        if target is not None:
            stmt = stmt.where(
                and_(
                    ControlDecisionModel.scope == target.scope.value,
                    ControlDecisionModel.target_id == target.id,
                )
            )
        if start is not None:
            stmt = stmt.where(ControlDecisionModel.decided_at >= _as_utc(start))
        if end is not None:
            stmt = stmt.where(ControlDecisionModel.decided_at <= _as_utc(end))

        if newest_first:
            stmt = stmt.order_by(ControlDecisionModel.id.desc())
        else:
            stmt = stmt.order_by(ControlDecisionModel.id.asc())

        stmt = stmt.limit(limit)

        with read_scope(self._session_factory) as sess:
            rows = sess.execute(stmt).scalars().all()
            return [self._to_decision(row) for row in rows]

    def count_decisions(self) -> int:
        with read_scope(self._session_factory) as sess:
            return int(sess.execute(select(func.count(ControlDecisionModel.id))).scalar_one())

    # --------------------------------------------------------
    # HELPERS
    # --------------------------------------------------------

    def _write_kill_flag(self, sess, decision: ControlDecision, decided_at: datetime) -> None:
        """Keep the kill flag in lock-step with the GLOBAL state."""
        active = decision.new_state == ControlState.KILLED
        flag = sess.get(GlobalKillFlagModel, GLOBAL_KILL_FLAG)

        if flag is None:
            flag = GlobalKillFlagModel(name=GLOBAL_KILL_FLAG, active=False)
            sess.add(flag)

        if active and not flag.active:
            flag.activated_at = decided_at
            flag.decision_id = decision.decision_id
            flag.reason = decision.reason
            logger.critical(f"GLOBAL KILL flag set by decision {decision.decision_id}")
        elif not active:
            if flag.active:
                logger.warning(f"GLOBAL KILL flag cleared by decision {decision.decision_id}")
            flag.activated_at = None
            flag.decision_id = None
            flag.reason = None

        flag.active = active
        flag.updated_at = decided_at

    @staticmethod
    def _to_record(row: ControlStateModel) -> TargetStateRecord:
        return TargetStateRecord(
            target=ControlTarget(scope=parse_scope(row.scope), id=row.target_id),
            state=parse_state(row.state),
            last_transition_at=_as_utc(row.last_transition_at),
            last_decision_id=row.last_decision_id,
            requires_manual_reset=row.requires_manual_reset,
            version=row.version,
        )

    @staticmethod
    def _to_decision(row: ControlDecisionModel) -> ControlDecision:
        return ControlDecision(
            decision_id=row.decision_id,
            target=ControlTarget(scope=parse_scope(row.scope), id=row.target_id),
            previous_state=parse_state(row.previous_state),
            new_state=parse_state(row.new_state),
            reason=row.reason,
            signals=tuple(ControlSignal.from_dict(data) for data in (row.signals or [])),
            decided_at=_as_utc(row.decided_at),
            requires_manual_reset=row.requires_manual_reset,
            global_kill_override=row.global_kill_override,
            admin_id=row.admin_id,
            sequence=row.id,
        )

    @staticmethod
    def _to_kill_status(flag: Optional[GlobalKillFlagModel]) -> GlobalKillStatus:
        if flag is None or not flag.active:
            return GlobalKillStatus(active=False)
        return GlobalKillStatus(
            active=True,
            activated_at=_as_utc(flag.activated_at),
            activated_by_decision=flag.decision_id,
            reason=flag.reason,
        )
