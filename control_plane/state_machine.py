"""
Global Control Plane - Signal Evaluator.

============================================================
PURPOSE
============================================================
Pure decision logic:

    (current state, incoming signals) -> ControlDecision

No I/O and no locking here. The engine serializes calls per
target and the store persists the result.

============================================================
TRANSITION RULES
============================================================
- aggregate = max(floor(current state), max(weighted severity))
- aggregate maps to a state through configured thresholds
- Non-manual signals NEVER lower the state
- MANUAL signals may lower THROTTLED -> ACTIVE once the
  cooldown has elapsed
- FROZEN / KILLED are NEVER lowered by a signal.
  Only manual reset leaves them.
- MANUAL + {"action": "global_kill"} on GLOBAL forces KILLED
  and sets the fleet-wide override

============================================================
"""

import logging
from typing import Optional, List, Iterable, Tuple, Any, Dict

from .types import (
    ControlState,
    ControlTarget,
    ControlSignal,
    ControlDecision,
    SignalSource,
    TargetStateRecord,
    ValidationError,
    RESET_ACTION,
    generate_decision_id,
)
from .config import ControlPlaneConfig
from .clock import Clock, SystemClock


logger = logging.getLogger(__name__)


# ============================================================
# REASON FORMATTING
# ============================================================

def aggregate_reason(
    signals: Iterable[ControlSignal],
    weighted_severity: float,
    config: ControlPlaneConfig,
) -> str:
    """
    Summarize signals, most severe first.

    Example:
        Max weighted severity: 0.80 | [RISK] drawdown breach (severity=0.80, weighted=0.80)
    """
    ordered = sorted(signals, key=lambda s: s.severity, reverse=True)
    parts = []
    for signal in ordered:
        weighted = signal.severity * config.source_weights.weight_for(signal.source)
        parts.append(
            f"[{signal.source.value}] {signal.reason} "
            f"(severity={signal.severity:.2f}, weighted={weighted:.2f})"
        )
    return f"Max weighted severity: {weighted_severity:.2f} | " + "; ".join(parts)


# ============================================================
# SIGNAL EVALUATOR
# ============================================================

class SignalEvaluator:
    """
    Maps the current state of a target plus a batch of signals
    to the next decision.

    Usage:
    ```python
    evaluator = SignalEvaluator(config)
    signals = evaluator.validate_signals(raw_signals)
    decision = evaluator.decide(target, record, signals, kill_active=False)
    ```
    """

    def __init__(
        self,
        config: ControlPlaneConfig,
        clock: Optional[Clock] = None,
    ):
        self._config = config
        self._clock = clock or SystemClock()

    @property
    def config(self) -> ControlPlaneConfig:
        return self._config

    # --------------------------------------------------------
    # VALIDATION
    # --------------------------------------------------------

    def validate_signals(self, signals: Any) -> Tuple[ControlSignal, ...]:
        """
        Validate a signal batch.

        Accepts ControlSignal instances or mappings.

        Raises:
            ValidationError: empty batch or any malformed signal
        """
        if signals is None or isinstance(signals, (str, bytes, dict)):
            raise ValidationError("Signals must be a non-empty list")

        try:
            items = list(signals)
        except TypeError as e:
            raise ValidationError(
                f"Signals must be a list, got {type(signals).__name__}"
            ) from e

        validated: List[ControlSignal] = []
        for index, raw in enumerate(items):
            if isinstance(raw, ControlSignal):
                # Directly constructed signals skip create() checks.
                signal = ControlSignal.create(
                    source=raw.source,
                    severity=raw.severity,
                    reason=raw.reason,
                    timestamp=raw.timestamp,
                    metadata=raw.metadata,
                )
            elif isinstance(raw, dict):
                signal = ControlSignal.from_dict(raw)
            else:
                raise ValidationError(
                    f"Signal #{index} has unsupported type {type(raw).__name__}"
                )
            validated.append(signal)

        if not validated:
            raise ValidationError("At least one signal is required")

        return tuple(validated)

    # --------------------------------------------------------
    # SEVERITY
    # --------------------------------------------------------

    def weighted_severity(self, signals: Iterable[ControlSignal]) -> float:
        """Maximum severity after source weighting."""
        weights = self._config.source_weights
        return max(
            signal.severity * weights.weight_for(signal.source)
            for signal in signals
        )

    def state_for_severity(self, severity: float) -> ControlState:
        return self._config.thresholds.state_for(severity)

    # --------------------------------------------------------
    # DECISIONS
    # --------------------------------------------------------

    def decide(
        self,
        target: ControlTarget,
        record: Optional[TargetStateRecord],
        signals: Tuple[ControlSignal, ...],
        kill_active: bool,
    ) -> ControlDecision:
        """
        Compute the next decision for ``target``.

        Args:
            target: Target being evaluated
            record: Current index entry (None for a new target)
            signals: Validated signal batch
            kill_active: Whether the fleet-wide override is set

        Returns:
            Unsequenced ControlDecision
        """
        now = self._clock.now()
        current = record.state if record else ControlState.ACTIVE

        if target.is_global and any(signal.is_global_kill for signal in signals):
            weighted = self.weighted_severity(signals)
            logger.critical(
                f"GLOBAL KILL requested: {current.value} -> KILLED "
                f"({len(signals)} signal(s))"
            )
            return ControlDecision(
                decision_id=generate_decision_id(),
                target=target,
                previous_state=current,
                new_state=ControlState.KILLED,
                reason="GLOBAL KILL SWITCH ACTIVATED | " + aggregate_reason(signals, weighted, self._config),
                signals=signals,
                decided_at=now,
                requires_manual_reset=True,
                global_kill_override=True,
            )

        weighted = self.weighted_severity(signals)
        has_manual = any(signal.is_manual for signal in signals)
        reason = aggregate_reason(signals, weighted, self._config)

        if has_manual:
            new_state = self._manual_next_state(current, record, weighted)
        else:
            floor = self._config.thresholds.floor_for(current)
            aggregate = max(floor, weighted)
            new_state = ControlState.most_severe(current, self.state_for_severity(aggregate))

        if new_state == current and has_manual and self.state_for_severity(weighted).severity_rank < current.severity_rank:
            reason = f"{reason} | {current.value} held (manual downgrade not permitted yet)"

        global_override = kill_active or (target.is_global and new_state == ControlState.KILLED)

        if kill_active and not target.is_global:
            reason = f"{reason} | global kill override in force"

        if new_state != current:
            logger.info(f"Decision {target}: {current.value} -> {new_state.value} ({reason})")
        else:
            logger.debug(f"Decision {target}: {current.value} unchanged ({reason})")

        return ControlDecision(
            decision_id=generate_decision_id(),
            target=target,
            previous_state=current,
            new_state=new_state,
            reason=reason,
            signals=signals,
            decided_at=now,
            requires_manual_reset=new_state.requires_manual_reset(),
            global_kill_override=global_override,
        )

    def reset_decision(
        self,
        target: ControlTarget,
        record: Optional[TargetStateRecord],
        admin_id: str,
        reason: str,
        kill_active: bool,
    ) -> ControlDecision:
        """
        Build the decision for a manual reset to ACTIVE.

        Authorization is checked by the caller.
        """
        now = self._clock.now()
        current = record.state if record else ControlState.ACTIVE
        message = f"Manual reset by {admin_id}: {reason}"

        signal = ControlSignal(
            source=SignalSource.MANUAL,
            severity=0.0,
            reason=message,
            timestamp=now,
            metadata={"admin_id": admin_id, "action": RESET_ACTION},
        )

        # Resetting GLOBAL clears the override; any other reset leaves it as is.
        global_override = False if target.is_global else kill_active

        return ControlDecision(
            decision_id=generate_decision_id(),
            target=target,
            previous_state=current,
            new_state=ControlState.ACTIVE,
            reason=message,
            signals=(signal,),
            decided_at=now,
            requires_manual_reset=False,
            global_kill_override=global_override,
            admin_id=admin_id,
        )

    # --------------------------------------------------------
    # INTERNAL
    # --------------------------------------------------------

    def _manual_next_state(
        self,
        current: ControlState,
        record: Optional[TargetStateRecord],
        weighted: float,
    ) -> ControlState:
        """Next state for a batch containing a MANUAL signal."""
        proposed = self.state_for_severity(weighted)

        if not proposed.severity_rank < current.severity_rank:
            return proposed

        if current.requires_manual_reset():
            return current

        if record is not None:
            held_for = self._clock.seconds_since(record.last_transition_at)
            required = self._config.cooldown.min_duration(current)
            if held_for < required:
                logger.info(
                    f"Cooldown active for {record.target}: {current.value} held "
                    f"{held_for:.0f}s of {required:.0f}s"
                )
                return current

        return proposed


def describe_transition_rules(config: ControlPlaneConfig) -> Dict[str, Any]:
    """Human-readable summary of the active policy (status endpoints)."""
    th = config.thresholds
    return {
        "bands": {
            ControlState.ACTIVE.value: f"< {th.throttle}",
            ControlState.THROTTLED.value: f">= {th.throttle}",
            ControlState.FROZEN.value: f">= {th.freeze}",
            ControlState.KILLED.value: f">= {th.kill}",
        },
        "manual_reset_required": [
            state.value for state in ControlState if state.requires_manual_reset()
        ],
        "cooldown_seconds": {
            state.value: seconds
            for state, seconds in config.cooldown.min_state_duration_seconds.items()
        },
    }
