"""
Global Control Plane - Producer Contracts.

============================================================
PURPOSE
============================================================
Output contracts of the upstream producers and their
translation into ControlSignals:

- Strategy health monitor  -> STRATEGY_HEALTH signals
- Reconciliation engine    -> RECONCILIATION signals
- Behavior anomaly detector -> BEHAVIOR signals
- Operators                -> MANUAL global kill signal

The control plane depends only on these shapes, never on
how the producers compute them.

============================================================
HEALTH ACTION MAPPING (defaults)
============================================================
    ALLOW             -> 0.0  (ACTIVE)
    THROTTLE          -> 0.5  (THROTTLED)
    REVIEW_REQUIRED   -> 0.6  (THROTTLED)
    EXECUTION_FREEZE  -> 0.8  (FROZEN)

A CRITICAL health status is never mapped below 0.8.

============================================================
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Optional, List, Dict, Any

from .types import (
    ControlSignal,
    SignalSource,
    ValidationError,
    GLOBAL_KILL_ACTION,
)
from .config import HealthMappingConfig, ControlPlaneConfig


# ============================================================
# STRATEGY HEALTH
# ============================================================

class StrategyHealthStatus(str, Enum):
    HEALTHY = "HEALTHY"
    DEGRADED = "DEGRADED"
    UNSTABLE = "UNSTABLE"
    CRITICAL = "CRITICAL"
    UNKNOWN = "UNKNOWN"


class RecommendedAction(str, Enum):
    ALLOW = "ALLOW"
    THROTTLE = "THROTTLE"
    REVIEW_REQUIRED = "REVIEW_REQUIRED"
    EXECUTION_FREEZE = "EXECUTION_FREEZE"


def _check_unit(name: str, value: float) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)) or not 0.0 <= value <= 1.0:
        raise ValidationError(f"{name} must be within [0, 1], got {value!r}")
    return float(value)


@dataclass(frozen=True)
class ExecutionRiskBreakdown:
    """Execution risk components, each in [0, 1]."""

    overall_risk: float = 0.0
    slippage_risk: float = 0.0
    liquidity_risk: float = 0.0
    partial_fill_risk: float = 0.0

    def __post_init__(self):
        for name in ("overall_risk", "slippage_risk", "liquidity_risk", "partial_fill_risk"):
            _check_unit(name, getattr(self, name))

    def to_dict(self) -> Dict[str, float]:
        return {
            "overall_risk": self.overall_risk,
            "slippage_risk": self.slippage_risk,
            "liquidity_risk": self.liquidity_risk,
            "partial_fill_risk": self.partial_fill_risk,
        }


@dataclass(frozen=True)
class StrategyHealthReport:
    """Output of the strategy-health monitor."""

    strategy_id: str
    user_id: str
    health_score: float
    """Overall health in [0, 100]."""

    health_status: StrategyHealthStatus
    recommended_action: RecommendedAction
    degradation_reasons: List[str] = field(default_factory=list)
    execution_risk_breakdown: ExecutionRiskBreakdown = field(default_factory=ExecutionRiskBreakdown)
    logic_stability_score: float = 1.0
    """Stability of strategy logic across regimes, in [0, 1]."""

    generated_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def __post_init__(self):
        if not self.strategy_id:
            raise ValidationError("Health report requires a strategy_id")
        if (
            isinstance(self.health_score, bool)
            or not isinstance(self.health_score, (int, float))
            or not 0.0 <= self.health_score <= 100.0
        ):
            raise ValidationError(f"health_score must be within [0, 100], got {self.health_score!r}")
        if not isinstance(self.health_status, StrategyHealthStatus):
            raise ValidationError(f"Unknown health status: {self.health_status!r}")
        if not isinstance(self.recommended_action, RecommendedAction):
            raise ValidationError(f"Unknown recommended action: {self.recommended_action!r}")
        _check_unit("logic_stability_score", self.logic_stability_score)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "StrategyHealthReport":
        """Build from the health engine's JSON payload."""
        try:
            status = StrategyHealthStatus(str(data.get("health_status", "UNKNOWN")).upper())
            action = RecommendedAction(str(data.get("recommended_action")).upper())
        except ValueError as e:
            raise ValidationError(f"Invalid health report: {e}") from e

        breakdown = data.get("execution_risk_breakdown") or {}
        return cls(
            strategy_id=data.get("strategy_id", ""),
            user_id=data.get("user_id", ""),
            health_score=data.get("health_score"),
            health_status=status,
            recommended_action=action,
            degradation_reasons=list(data.get("degradation_reasons") or []),
            execution_risk_breakdown=ExecutionRiskBreakdown(
                overall_risk=breakdown.get("overall_risk", 0.0),
                slippage_risk=breakdown.get("slippage_risk", 0.0),
                liquidity_risk=breakdown.get("liquidity_risk", 0.0),
                partial_fill_risk=breakdown.get("partial_fill_risk", 0.0),
            ),
            logic_stability_score=data.get("logic_stability_score", 1.0),
        )


def health_report_to_signal(
    report: StrategyHealthReport,
    mapping: Optional[HealthMappingConfig] = None,
) -> ControlSignal:
    """
    Translate a health report into a STRATEGY_HEALTH signal.

    Severity comes from the recommended action; a CRITICAL
    status is floored at ``critical_status_min_severity``.
    """
    mapping = mapping or HealthMappingConfig()
    severity = mapping.action_severity[report.recommended_action.value]

    if report.health_status == StrategyHealthStatus.CRITICAL:
        severity = max(severity, mapping.critical_status_min_severity)

    reasons = ", ".join(report.degradation_reasons) or "no degradation reasons"
    return ControlSignal.create(
        source=SignalSource.STRATEGY_HEALTH,
        severity=min(1.0, severity),
        reason=(
            f"Strategy health {report.health_status.value} "
            f"(score={report.health_score:.1f}, action={report.recommended_action.value}): {reasons}"
        ),
        timestamp=report.generated_at,
        metadata={
            "strategy_id": report.strategy_id,
            "user_id": report.user_id,
            "health_score": report.health_score,
            "recommended_action": report.recommended_action.value,
            "execution_risk": report.execution_risk_breakdown.to_dict(),
            "logic_stability_score": report.logic_stability_score,
        },
    )


# ============================================================
# RECONCILIATION
# ============================================================

class ReconciliationSeverity(str, Enum):
    """Severity of a reconciliation diff."""

    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"
    CRITICAL = "CRITICAL"


RECONCILIATION_SEVERITY: Dict[ReconciliationSeverity, float] = {
    ReconciliationSeverity.LOW: 0.2,
    ReconciliationSeverity.MEDIUM: 0.45,
    ReconciliationSeverity.HIGH: 0.8,
    ReconciliationSeverity.CRITICAL: 1.0,
}
"""HIGH freezes the target, CRITICAL kills it."""


def reconciliation_signal(
    severity: Any,
    description: str,
    strategy_id: Optional[str] = None,
    confidence: Optional[float] = None,
    metadata: Optional[Dict[str, Any]] = None,
) -> ControlSignal:
    """Translate a reconciliation diff into a RECONCILIATION signal."""
    try:
        level = ReconciliationSeverity(str(getattr(severity, "value", severity)).upper())
    except ValueError:
        raise ValidationError(f"Unknown reconciliation severity: {severity!r}")

    details = dict(metadata or {})
    details["diff_severity"] = level.value
    if strategy_id:
        details["strategy_id"] = strategy_id
    if confidence is not None:
        details["confidence"] = _check_unit("confidence", confidence)

    return ControlSignal.create(
        source=SignalSource.RECONCILIATION,
        severity=RECONCILIATION_SEVERITY[level],
        reason=f"{level.value} reconciliation mismatch: {description}",
        metadata=details,
    )


# ============================================================
# BEHAVIOR
# ============================================================

HIGH_RISK_BEHAVIORS = frozenset({
    "REVENGE_TRADING",
    "OVERTRADING",
    "STRATEGY_DRIFT",
    "IMPULSE_TRADING",
    "LOSS_CHASING",
})


def behavior_signal(
    behavior: str,
    strength: float,
    confidence: float,
    config: Optional[ControlPlaneConfig] = None,
) -> ControlSignal:
    """
    Translate a detected behavior into a BEHAVIOR signal.

    severity = strength * confidence; high-risk behaviors are
    floored at the throttle threshold.
    """
    config = config or ControlPlaneConfig()
    strength = _check_unit("strength", strength)
    confidence = _check_unit("confidence", confidence)
    name = str(behavior).upper()

    severity = strength * confidence
    if name in HIGH_RISK_BEHAVIORS and severity > 0.0:
        severity = max(severity, config.thresholds.throttle)

    return ControlSignal.create(
        source=SignalSource.BEHAVIOR,
        severity=min(1.0, severity),
        reason=f"Behavior {name} detected (strength={strength:.2f}, confidence={confidence:.2f})",
        metadata={"behavior": name, "strength": strength, "confidence": confidence},
    )


# ============================================================
# MANUAL
# ============================================================

def global_kill_signal(reason: str, operator: Optional[str] = None) -> ControlSignal:
    """MANUAL signal carrying the global-kill intent."""
    if not reason or not reason.strip():
        raise ValidationError("Global kill requires a reason")
    metadata: Dict[str, Any] = {"action": GLOBAL_KILL_ACTION}
    if operator:
        metadata["operator"] = operator
    return ControlSignal.create(
        source=SignalSource.MANUAL,
        severity=1.0,
        reason=f"GLOBAL KILL: {reason.strip()}",
        metadata=metadata,
    )
