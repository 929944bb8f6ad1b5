"""
Global Control Plane - State Store.

============================================================
PURPOSE
============================================================
Two structures, always updated together:

1. Current-state index: (scope, id) -> TargetStateRecord
   O(1) lookups for the execution gate.

2. Decision log: append-only sequence of ControlDecision
   with monotonically increasing sequence numbers and a
   time index for audit range queries.

Plus the fleet-wide GLOBAL KILL flag, held in its own
independently lockable GlobalKillSwitch.

============================================================
ATOMICITY
============================================================
``commit`` either appends the decision, swaps the index
entry and (for GLOBAL) flips the kill flag, or does
nothing at all. No partial state is ever visible.

============================================================
"""

import bisect
import logging
import threading
from abc import ABC, abstractmethod
from dataclasses import replace
from datetime import datetime
from typing import Optional, List, Dict, Tuple

from .types import (
    ControlState,
    ControlTarget,
    ControlDecision,
    GlobalKillStatus,
    TargetStateRecord,
    ConflictError,
    ValidationError,
)


logger = logging.getLogger(__name__)


# ============================================================
# GLOBAL KILL SWITCH
# ============================================================

class GlobalKillSwitch:
    """
    Fleet-wide kill override.

    The one piece of shared mutable state spanning all targets.
    Guarded by its own lock and read through on every gate call.
    Once activated it stays active until ``clear``.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._active = False
        self._activated_at: Optional[datetime] = None
        self._decision_id: Optional[str] = None
        self._reason: Optional[str] = None

    def is_active(self) -> bool:
        with self._lock:
            return self._active

    def activate(self, decision: ControlDecision) -> bool:
        """
        Set the override from a GLOBAL KILLED decision.

        Returns True when newly activated.
        """
        with self._lock:
            if self._active:
                return False
            self._active = True
            self._activated_at = decision.decided_at
            self._decision_id = decision.decision_id
            self._reason = decision.reason
        logger.critical(f"GLOBAL KILL ACTIVE (decision {decision.decision_id})")
        return True

    def clear(self) -> bool:
        """Clear the override. Returns True when it was active."""
        with self._lock:
            was_active = self._active
            self._active = False
            self._activated_at = None
            self._decision_id = None
            self._reason = None
        if was_active:
            logger.warning("GLOBAL KILL cleared")
        return was_active

    def status(self) -> GlobalKillStatus:
        with self._lock:
            return GlobalKillStatus(
                active=self._active,
                activated_at=self._activated_at,
                activated_by_decision=self._decision_id,
                reason=self._reason,
            )


# ============================================================
# STORE INTERFACE
# ============================================================

class ControlStateStore(ABC):
    """
    Durable per-target state index plus append-only decision log.
    """

    @abstractmethod
    def get_record(self, target: ControlTarget) -> Optional[TargetStateRecord]:
        """Current index entry for ``target`` (None if never decided)."""
        pass

    @abstractmethod
    def commit(
        self,
        decision: ControlDecision,
        expected_version: Optional[int],
    ) -> ControlDecision:
        """
        Atomically append ``decision`` and update the index.

        Args:
            decision: Unsequenced decision
            expected_version: Version of the index entry the decision
                was computed from (None for a new target)

        Returns:
            The decision with its sequence number assigned

        Raises:
            ConflictError: the index entry changed since it was read
            PersistenceError: the write failed (nothing was written)
        """
        pass

    @abstractmethod
    def is_global_kill_active(self) -> bool:
        """Read-through check of the fleet-wide override."""
        pass

    @abstractmethod
    def get_global_kill_status(self) -> GlobalKillStatus:
        pass

    @abstractmethod
    def snapshot(self) -> Tuple[List[TargetStateRecord], GlobalKillStatus]:
        """
        Consistent view of all index entries and the kill flag.

        Returns:
            (records, global_kill_status)
        """
        pass

    @abstractmethod
    def query_decisions(
        self,
        target: Optional[ControlTarget] = None,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        limit: int = 100,
        newest_first: bool = False,
    ) -> List[ControlDecision]:
        """
        Bounded audit query.

        Ordered by sequence ascending unless ``newest_first``.
        ``start`` / ``end`` are inclusive bounds on ``decided_at``.
        """
        pass

    @abstractmethod
    def count_decisions(self) -> int:
        pass


# ============================================================
# IN-MEMORY STORE
# ============================================================

class InMemoryControlStateStore(ControlStateStore):
    """
    Process-local store.

    The index lock is held only to swap an index entry and
    append to the log, so gate reads never wait on evaluation.
    """

    def __init__(self, kill_switch: Optional[GlobalKillSwitch] = None):
        self._index_lock = threading.RLock()
        self._index: Dict[Tuple[str, str], TargetStateRecord] = {}
        self._log: List[ControlDecision] = []
        self._by_target: Dict[Tuple[str, str], List[int]] = {}
        # (decided_at, sequence) kept sorted for range queries
        self._timeline: List[Tuple[datetime, int]] = []
        self._kill_switch = kill_switch or GlobalKillSwitch()

    @property
    def kill_switch(self) -> GlobalKillSwitch:
        return self._kill_switch

    # --------------------------------------------------------
    # INDEX
    # --------------------------------------------------------

    def get_record(self, target: ControlTarget) -> Optional[TargetStateRecord]:
        with self._index_lock:
            return self._index.get(target.key)

    def commit(
        self,
        decision: ControlDecision,
        expected_version: Optional[int],
    ) -> ControlDecision:
        key = decision.target.key

        with self._index_lock:
            existing = self._index.get(key)
            current_version = existing.version if existing else None
            if current_version != expected_version:
                raise ConflictError(
                    f"Concurrent update on {decision.target}",
                    context={
                        "expected_version": expected_version,
                        "actual_version": current_version,
                    },
                )

            sequence = len(self._log) + 1
            committed = replace(decision, sequence=sequence)

            if existing is not None and existing.state == committed.new_state:
                entered_at = existing.last_transition_at
            else:
                entered_at = committed.decided_at

            record = TargetStateRecord(
                target=committed.target,
                state=committed.new_state,
                last_transition_at=entered_at,
                last_decision_id=committed.decision_id,
                requires_manual_reset=committed.requires_manual_reset,
                version=(current_version or 0) + 1,
            )

            # Everything above is side-effect free; mutate only now.
            self._log.append(committed)
            self._by_target.setdefault(key, []).append(sequence)
            bisect.insort(self._timeline, (committed.decided_at, sequence))
            self._index[key] = record

            if committed.target.is_global:
                if committed.new_state == ControlState.KILLED:
                    self._kill_switch.activate(committed)
                else:
                    self._kill_switch.clear()

        return committed

    # --------------------------------------------------------
    # KILL FLAG
    # --------------------------------------------------------

    def is_global_kill_active(self) -> bool:
        return self._kill_switch.is_active()

    def get_global_kill_status(self) -> GlobalKillStatus:
        return self._kill_switch.status()

    def snapshot(self) -> Tuple[List[TargetStateRecord], GlobalKillStatus]:
        with self._index_lock:
            return list(self._index.values()), self._kill_switch.status()

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

        with self._index_lock:
            if start is not None or end is not None:
                lo = 0 if start is None else bisect.bisect_left(self._timeline, (start, 0))
                hi = (
                    len(self._timeline)
                    if end is None
                    else bisect.bisect_right(self._timeline, (end, len(self._log) + 1))
                )
                sequences = sorted(seq for _, seq in self._timeline[lo:hi])
                if target is not None:
                    wanted = set(self._by_target.get(target.key, ()))
                    sequences = [seq for seq in sequences if seq in wanted]
            elif target is not None:
                sequences = self._by_target.get(target.key, [])
            else:
                sequences = range(1, len(self._log) + 1)

            # Slices touch at most ``limit`` entries.
            if newest_first:
                selected = sequences[-limit:][::-1]
            else:
                selected = sequences[:limit]

            return [self._log[seq - 1] for seq in selected]

    def count_decisions(self) -> int:
        with self._index_lock:
            return len(self._log)
