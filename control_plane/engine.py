"""
Global Control Plane - Engine.

============================================================
PURPOSE
============================================================
The single authority deciding whether a strategy, user,
broker connection, or the whole system may submit orders.

Operations:
- evaluate       : consume risk signals, escalate state
- can_execute    : pre-trade gate (read-only, fail-closed)
- manual_reset   : privileged return to ACTIVE
- get_state      : current state of one target
- get_status     : aggregate dashboard view
- get_audit      : bounded query of the decision log

============================================================
CONCURRENCY
============================================================
- evaluate / manual_reset hold a per-target RLock for
  read -> decide -> commit
- The store rejects stale writes with ConflictError and
  the whole evaluation is retried
- can_execute takes no per-target lock

============================================================
FAIL-CLOSED
============================================================
If the gate cannot determine state, it DENIES.

============================================================
"""

import asyncio
import functools
import logging
import threading
from typing import Optional, Any, Callable, Dict, List, Tuple

from .types import (
    ControlScope,
    ControlState,
    ControlTarget,
    ControlDecision,
    ControlStatus,
    ExecutionCheck,
    GlobalKillStatus,
    TargetStateRecord,
    ControlPlaneError,
    ValidationError,
    AuthorizationError,
    ConflictError,
    ExecutionDeniedError,
    parse_timestamp,
)
from .config import ControlPlaneConfig, get_default_config
from .clock import Clock, SystemClock
from .state_machine import SignalEvaluator
from .store import ControlStateStore, InMemoryControlStateStore
from .authorization import AdminAuthorizer, DenyAllAuthorizer
from .producers import global_kill_signal


logger = logging.getLogger(__name__)


GLOBAL_KILL_REASON = "global kill active"
ALL_CHECKS_PASSED = "All checks passed"


# Callback invoked with every committed decision
OnDecisionCallback = Callable[[ControlDecision], None]


# ============================================================
# CONTROL PLANE
# ============================================================

class ControlPlane:
    """
    Global Control Plane facade.

    Usage:
    ```python
    plane = ControlPlane(config, store=SqlControlStateStore(session_factory))

    plane.evaluate(ControlTarget.strategy("S1"), [signal])

    check = plane.can_execute("S1", "U1")
    if not check.can_execute:
        reject_order(check.reason)
    ```
    """

    def __init__(
        self,
        config: Optional[ControlPlaneConfig] = None,
        store: Optional[ControlStateStore] = None,
        authorizer: Optional[AdminAuthorizer] = None,
        clock: Optional[Clock] = None,
        on_decision: Optional[OnDecisionCallback] = None,
    ):
        """
        Initialize the control plane.

        Args:
            config: Configuration (validated here)
            store: State store (in-memory if None)
            authorizer: Manual reset authority (deny-all if None)
            clock: Time source
            on_decision: Callback for committed decisions
        """
        self._config = (config or get_default_config()).validate()
        self._store = store or InMemoryControlStateStore()
        self._authorizer = authorizer or DenyAllAuthorizer()
        self._clock = clock or SystemClock()
        self._on_decision = on_decision

        self._evaluator = SignalEvaluator(self._config, self._clock)

        # Per-target write locks, created lazily
        self._registry_lock = threading.Lock()
        self._target_locks: Dict[Tuple[str, str], threading.RLock] = {}

        logger.info(
            f"ControlPlane initialized (store={type(self._store).__name__}, "
            f"authorizer={type(self._authorizer).__name__})"
        )

    # --------------------------------------------------------
    # PROPERTIES
    # --------------------------------------------------------

    @property
    def config(self) -> ControlPlaneConfig:
        return self._config

    @property
    def store(self) -> ControlStateStore:
        return self._store

    @property
    def evaluator(self) -> SignalEvaluator:
        return self._evaluator

    # --------------------------------------------------------
    # EVALUATION
    # --------------------------------------------------------

    def evaluate(self, target: Any, signals: Any) -> ControlDecision:
        """
        Consume a batch of signals for one target.

        Args:
            target: ControlTarget (or mapping with scope/id)
            signals: Non-empty list of ControlSignal (or mappings)

        Returns:
            The committed, sequenced decision

        Raises:
            ValidationError: malformed input, nothing written
            ConflictError: lost every optimistic retry
            PersistenceError: the write failed, nothing written
        """
        target = self._coerce_target(target)
        batch = self._evaluator.validate_signals(signals)

        def _decide(record: Optional[TargetStateRecord], kill_active: bool) -> ControlDecision:
            return self._evaluator.decide(target, record, batch, kill_active)

        return self._commit_with_retry(target, _decide)

    def activate_global_kill(self, reason: str, operator: Optional[str] = None) -> ControlDecision:
        """Kill the whole system. Only manual_reset on GLOBAL undoes it."""
        logger.critical(f"Global kill requested by {operator or 'unknown'}: {reason}")
        return self.evaluate(ControlTarget.global_target(), [global_kill_signal(reason, operator)])

    # --------------------------------------------------------
    # EXECUTION GATE
    # --------------------------------------------------------

    def can_execute(
        self,
        strategy_id: Any,
        user_id: Any,
        broker_id: Any = None,
    ) -> ExecutionCheck:
        """
        Pre-trade gate.

        Order: global kill flag, GLOBAL state, STRATEGY, USER,
        BROKER (if given). The most severe state governs.

        Never raises. Any failure denies.
        """
        try:
            return self._check_execution(strategy_id, user_id, broker_id)
        except ValidationError as e:
            logger.warning(f"Execution denied, invalid request: {e.message}")
            return ExecutionCheck(
                can_execute=False,
                reason=f"Invalid request: {e.message}",
            )
        except Exception as e:
            logger.error(f"Execution denied, control state unavailable: {e}", exc_info=True)
            return ExecutionCheck(
                can_execute=False,
                reason=f"Control state unavailable: {e}",
            )

    def _check_execution(
        self,
        strategy_id: Any,
        user_id: Any,
        broker_id: Any,
    ) -> ExecutionCheck:
        if self._store.is_global_kill_active():
            logger.warning(f"Execution denied for {strategy_id}/{user_id}: {GLOBAL_KILL_REASON}")
            return ExecutionCheck(
                can_execute=False,
                reason=GLOBAL_KILL_REASON,
                governing_state=ControlState.KILLED,
            )

        targets = [
            ControlTarget.global_target(),
            ControlTarget.strategy(strategy_id),
            ControlTarget.user(user_id),
        ]
        if broker_id is not None:
            targets.append(ControlTarget.broker(broker_id))

        states: List[Tuple[ControlTarget, ControlState]] = []
        for target in targets:
            record = self._store.get_record(target)
            states.append((target, record.state if record else ControlState.ACTIVE))

        governing = ControlState.most_severe(*(state for _, state in states))

        if not governing.allows_execution():
            blocked = [f"{target} is {state.value}" for target, state in states if state == governing]
            reason = "; ".join(blocked)
            logger.warning(f"Execution denied for {strategy_id}/{user_id}: {reason}")
            return ExecutionCheck(can_execute=False, reason=reason, governing_state=governing)

        if governing == ControlState.THROTTLED:
            throttled = [str(target) for target, state in states if state == ControlState.THROTTLED]
            return ExecutionCheck(
                can_execute=True,
                reason=f"Throttled: {', '.join(throttled)}",
                governing_state=governing,
                throttled=True,
            )

        return ExecutionCheck(
            can_execute=True,
            reason=ALL_CHECKS_PASSED,
            governing_state=ControlState.ACTIVE,
        )

    # --------------------------------------------------------
    # MANUAL RESET
    # --------------------------------------------------------

    def manual_reset(self, target: Any, admin_id: Any, reason: Any) -> ControlDecision:
        """
        Return a target to ACTIVE.

        The only way out of FROZEN or KILLED. Resetting GLOBAL
        clears the fleet-wide kill override.

        Raises:
            ValidationError: empty reason or malformed target
            AuthorizationError: admin not verified
        """
        target = self._coerce_target(target)

        if not isinstance(reason, str) or not reason.strip():
            raise ValidationError("Manual reset requires a non-empty reason")
        if not isinstance(admin_id, str) or not admin_id.strip():
            raise AuthorizationError("Manual reset requires an admin_id")

        admin_id = admin_id.strip()
        reason = reason.strip()

        try:
            authorized = self._authorizer.is_authorized(admin_id)
        except Exception as e:
            logger.error(f"Authorizer failed for {admin_id}, denying reset: {e}")
            raise AuthorizationError(
                f"Could not verify privileges of {admin_id}",
                context={"target": str(target)},
                cause=e,
            ) from e

        if not authorized:
            logger.warning(f"Unauthorized manual reset of {target} by {admin_id}")
            raise AuthorizationError(
                f"{admin_id} is not authorized to reset {target}",
                context={"target": str(target), "admin_id": admin_id},
            )

        def _decide(record: Optional[TargetStateRecord], kill_active: bool) -> ControlDecision:
            return self._evaluator.reset_decision(target, record, admin_id, reason, kill_active)

        decision = self._commit_with_retry(target, _decide)
        logger.info(
            f"Manual reset of {target} by {admin_id}: "
            f"{decision.previous_state.value} -> ACTIVE ({reason})"
        )
        return decision

    # --------------------------------------------------------
    # QUERIES
    # --------------------------------------------------------

    def get_state(self, target: Any) -> ControlState:
        """Current state; ACTIVE for targets never decided."""
        target = self._coerce_target(target)
        record = self._store.get_record(target)
        return record.state if record else ControlState.ACTIVE

    def get_global_kill_status(self) -> GlobalKillStatus:
        return self._store.get_global_kill_status()

    def get_status(self) -> ControlStatus:
        """Aggregate view over the current-state index."""
        records, kill_status = self._store.snapshot()

        by_state: Dict[ControlState, int] = {state: 0 for state in ControlState}
        by_scope: Dict[ControlScope, Dict[ControlState, int]] = {
            scope: {state: 0 for state in ControlState} for scope in ControlScope
        }
        global_state = ControlState.ACTIVE

        for record in records:
            by_state[record.state] += 1
            by_scope[record.target.scope][record.state] += 1
            if record.target.is_global:
                global_state = record.state

        return ControlStatus(
            global_killed=kill_status.active or global_state == ControlState.KILLED,
            global_kill=kill_status,
            total_targets=len(records),
            by_state=by_state,
            by_scope=by_scope,
            last_updated=self._clock.now(),
        )

    def get_audit(
        self,
        target: Any = None,
        start: Any = None,
        end: Any = None,
        limit: Optional[int] = None,
        newest_first: bool = False,
    ) -> List[ControlDecision]:
        """
        Query the decision log.

        Args:
            target: Restrict to one target
            start: Inclusive lower bound on decided_at
            end: Inclusive upper bound on decided_at
            limit: 1..max_limit (default from config)
            newest_first: Most recent first

        Raises:
            ValidationError: limit out of range or start after end
        """
        audit = self._config.audit
        if limit is None:
            limit = audit.default_limit
        if isinstance(limit, bool) or not isinstance(limit, int) or not 1 <= limit <= audit.max_limit:
            raise ValidationError(
                f"Audit limit must be within [1, {audit.max_limit}], got {limit!r}"
            )

        parsed_target = self._coerce_target(target) if target is not None else None
        parsed_start = parse_timestamp(start) if start is not None else None
        parsed_end = parse_timestamp(end) if end is not None else None

        if parsed_start and parsed_end and parsed_start > parsed_end:
            raise ValidationError("Audit start must not be after end")

        return self._store.query_decisions(
            target=parsed_target,
            start=parsed_start,
            end=parsed_end,
            limit=limit,
            newest_first=newest_first,
        )

    # --------------------------------------------------------
    # INTERNAL
    # --------------------------------------------------------

    def _target_lock(self, target: ControlTarget) -> threading.RLock:
        with self._registry_lock:
            lock = self._target_locks.get(target.key)
            if lock is None:
                lock = threading.RLock()
                self._target_locks[target.key] = lock
            return lock

    def _commit_with_retry(
        self,
        target: ControlTarget,
        decide: Callable[[Optional[TargetStateRecord], bool], ControlDecision],
    ) -> ControlDecision:
        """Read -> decide -> commit under the target lock, retrying lost writes."""
        attempts = self._config.max_conflict_retries + 1

        with self._target_lock(target):
            for attempt in range(1, attempts + 1):
                record = self._store.get_record(target)
                kill_active = self._store.is_global_kill_active()
                decision = decide(record, kill_active)

                try:
                    committed = self._store.commit(
                        decision,
                        expected_version=record.version if record else None,
                    )
                except ConflictError:
                    if attempt >= attempts:
                        logger.error(f"Giving up on {target} after {attempts} conflicting writes")
                        raise
                    logger.warning(f"Write conflict on {target}, retrying ({attempt}/{attempts})")
                    continue

                self._notify(committed)
                return committed

        # Unreachable: the loop either returns or raises
        raise ConflictError(f"Could not commit decision for {target}")

    def _notify(self, decision: ControlDecision) -> None:
        if self._on_decision is None:
            return
        try:
            self._on_decision(decision)
        except Exception as e:
            logger.error(f"Decision callback failed for {decision.decision_id}: {e}")

    @staticmethod
    def _coerce_target(target: Any) -> ControlTarget:
        if isinstance(target, ControlTarget):
            return ControlTarget.of(target.scope, target.id)
        if isinstance(target, dict):
            return ControlTarget.of(
                target.get("scope"),
                target.get("id", target.get("target_id")),
            )
        raise ValidationError(f"Unsupported target: {target!r}")


# ============================================================
# SINGLETON ACCESS
# ============================================================

_control_plane: Optional[ControlPlane] = None


def get_control_plane() -> ControlPlane:
    """
    Get the global ControlPlane instance.

    Raises:
        ControlPlaneError: If not initialized
    """
    if _control_plane is None:
        raise ControlPlaneError("ControlPlane not initialized")
    return _control_plane


def init_control_plane(
    config: Optional[ControlPlaneConfig] = None,
    store: Optional[ControlStateStore] = None,
    authorizer: Optional[AdminAuthorizer] = None,
    clock: Optional[Clock] = None,
    on_decision: Optional[OnDecisionCallback] = None,
) -> ControlPlane:
    """
    Initialize the global ControlPlane instance.

    Returns:
        ControlPlane instance
    """
    global _control_plane

    if _control_plane is not None:
        logger.warning("ControlPlane already initialized, replacing")

    _control_plane = ControlPlane(
        config=config,
        store=store,
        authorizer=authorizer,
        clock=clock,
        on_decision=on_decision,
    )

    return _control_plane


def reset_control_plane() -> None:
    """Drop the global instance (tests and shutdown)."""
    global _control_plane
    _control_plane = None


# ============================================================
# DECORATOR FOR ORDER SUBMISSION
# ============================================================

def _gate(kwargs: Dict[str, Any]) -> ExecutionCheck:
    check = get_control_plane().can_execute(
        kwargs.get("strategy_id"),
        kwargs.get("user_id"),
        kwargs.get("broker_id"),
    )
    if not check.can_execute:
        raise ExecutionDeniedError(
            f"Execution not allowed: {check.reason}",
            context=check.to_dict(),
        )
    return check


def require_execution_allowed(func):
    """
    Decorator that gates order submission.

    The wrapped function must be called with ``strategy_id``
    and ``user_id`` keyword arguments (``broker_id`` optional).

    Usage:
    ```python
    @require_execution_allowed
    async def submit_order(order, *, strategy_id, user_id, broker_id=None):
        ...
    ```
    """
    if asyncio.iscoroutinefunction(func):
        @functools.wraps(func)
        async def async_wrapper(*args, **kwargs):
            _gate(kwargs)
            return await func(*args, **kwargs)
        return async_wrapper

    @functools.wraps(func)
    def wrapper(*args, **kwargs):
        _gate(kwargs)
        return func(*args, **kwargs)
    return wrapper
