"""
Global Control Plane - Configuration.

============================================================
PURPOSE
============================================================
Severity thresholds, source weights, cooldowns and audit
bounds for the control plane.

Thresholds are POLICY, not law. They are configurable but
must preserve the state order:

    throttle < freeze < kill

============================================================
CONFIGURATION PHILOSOPHY
============================================================
1. All thresholds are explicit and documented
2. Defaults keep the plain "take the maximum severity" rule
3. Invalid configuration fails at startup, not at runtime
4. No auto-tuning

============================================================
"""

import os
from dataclasses import dataclass, field
from typing import Dict, Any, Optional

from dotenv import load_dotenv

from .types import ControlState, SignalSource, ValidationError


# ============================================================
# SEVERITY THRESHOLDS
# ============================================================

@dataclass
class SeverityThresholdConfig:
    """
    Lower bounds of each severity band.

    aggregate >= kill     -> KILLED
    aggregate >= freeze   -> FROZEN
    aggregate >= throttle -> THROTTLED
    otherwise             -> ACTIVE
    """

    throttle: float = 0.4
    """Lower bound of THROTTLED."""

    freeze: float = 0.7
    """Lower bound of FROZEN."""

    kill: float = 0.95
    """Lower bound of KILLED."""

    def validate(self) -> None:
        """Thresholds must be strictly increasing within (0, 1]."""
        if not (0.0 < self.throttle < self.freeze < self.kill <= 1.0):
            raise ValidationError(
                "Severity thresholds must satisfy 0 < throttle < freeze < kill <= 1",
                context={
                    "throttle": self.throttle,
                    "freeze": self.freeze,
                    "kill": self.kill,
                },
            )

    def state_for(self, severity: float) -> ControlState:
        """Map an aggregate severity to a control state."""
        if severity >= self.kill:
            return ControlState.KILLED
        if severity >= self.freeze:
            return ControlState.FROZEN
        if severity >= self.throttle:
            return ControlState.THROTTLED
        return ControlState.ACTIVE

    def floor_for(self, state: ControlState) -> float:
        """Lowest severity that maps to ``state``."""
        floors = {
            ControlState.ACTIVE: 0.0,
            ControlState.THROTTLED: self.throttle,
            ControlState.FROZEN: self.freeze,
            ControlState.KILLED: self.kill,
        }
        return floors[state]


# ============================================================
# SOURCE WEIGHTS
# ============================================================

def _unit_weights() -> Dict[SignalSource, float]:
    return {source: 1.0 for source in SignalSource}


@dataclass
class SourceWeightConfig:
    """
    Per-source multipliers applied to signal severity.

    Default weights are 1.0 for every source so the aggregate
    is exactly the maximum raw severity.
    """

    weights: Dict[SignalSource, float] = field(default_factory=_unit_weights)

    @classmethod
    def original_weights(cls) -> "SourceWeightConfig":
        """
        Institutional weighting.

        Ground-truth sources (reconciliation, hard risk limits,
        humans) count fully; derived and pattern-based sources
        are discounted. Validation then requires a health mapping
        whose EXECUTION_FREEZE severity still reaches the freeze
        threshold at the 0.8 STRATEGY_HEALTH weight.
        """
        return cls(weights={
            SignalSource.RECONCILIATION: 1.0,
            SignalSource.RISK: 1.0,
            SignalSource.EXECUTION: 0.9,
            SignalSource.STRATEGY_HEALTH: 0.8,
            SignalSource.BEHAVIOR: 0.7,
            SignalSource.MANUAL: 1.0,
        })

    def weight_for(self, source: SignalSource) -> float:
        return self.weights.get(source, 1.0)

    def validate(self) -> None:
        for source, weight in self.weights.items():
            if not isinstance(source, SignalSource):
                raise ValidationError(f"Unknown signal source in weights: {source!r}")
            if weight < 0.0 or weight > 1.0:
                raise ValidationError(
                    f"Source weight for {source.value} must be within [0, 1], got {weight}"
                )


# ============================================================
# COOLDOWN
# ============================================================

def _default_min_durations() -> Dict[ControlState, float]:
    return {
        ControlState.ACTIVE: 0.0,
        ControlState.THROTTLED: 300.0,
    }


@dataclass
class CooldownConfig:
    """
    Minimum dwell time before a MANUAL signal may lower a state.

    FROZEN and KILLED never leave through a signal, only
    through manual reset, so they carry no cooldown here.
    """

    min_state_duration_seconds: Dict[ControlState, float] = field(
        default_factory=_default_min_durations
    )
    """Seconds a state must be held before a manual downgrade."""

    def min_duration(self, state: ControlState) -> float:
        return self.min_state_duration_seconds.get(state, 0.0)


# ============================================================
# AUDIT
# ============================================================

@dataclass
class AuditConfig:
    """Bounds on audit queries."""

    default_limit: int = 100
    """Limit applied when the caller gives none."""

    max_limit: int = 1000
    """Hard cap; larger limits are rejected."""

    def validate(self) -> None:
        if self.default_limit < 1 or self.max_limit < self.default_limit:
            raise ValidationError(
                "Audit limits must satisfy 1 <= default_limit <= max_limit"
            )


# ============================================================
# STRATEGY HEALTH MAPPING
# ============================================================

def _default_action_severity() -> Dict[str, float]:
    return {
        "ALLOW": 0.0,
        "THROTTLE": 0.5,
        "REVIEW_REQUIRED": 0.6,
        "EXECUTION_FREEZE": 0.8,
    }


@dataclass
class HealthMappingConfig:
    """
    Severity emitted for each strategy-health recommended action.

    After the STRATEGY_HEALTH source weight is applied, EXECUTION_FREEZE
    must reach the freeze threshold and THROTTLE the throttle threshold.
    """

    action_severity: Dict[str, float] = field(default_factory=_default_action_severity)

    critical_status_min_severity: float = 0.8
    """Severity floor for reports whose status is CRITICAL."""

    def validate(
        self,
        thresholds: SeverityThresholdConfig,
        weights: Optional[SourceWeightConfig] = None,
    ) -> None:
        missing = set(_default_action_severity()) - set(self.action_severity)
        if missing:
            raise ValidationError(f"Missing health action severities: {sorted(missing)}")

        weight = weights.weight_for(SignalSource.STRATEGY_HEALTH) if weights else 1.0
        required = {
            "EXECUTION_FREEZE": thresholds.freeze,
            "THROTTLE": thresholds.throttle,
        }
        for action, threshold in required.items():
            effective = self.action_severity[action] * weight
            if effective < threshold:
                raise ValidationError(
                    f"{action} severity must reach its threshold after weighting",
                    context={
                        "severity": self.action_severity[action],
                        "strategy_health_weight": weight,
                        "effective_severity": effective,
                        "threshold": threshold,
                    },
                )


# ============================================================
# ALERTING
# ============================================================

@dataclass
class AlertingConfig:
    """Configuration for decision alerting."""

    enabled: bool = True
    """Whether alerting is enabled."""

    telegram_enabled: bool = False
    """Whether to send Telegram alerts."""

    telegram_bot_token: Optional[str] = None
    telegram_chat_id: Optional[str] = None

    alert_on_throttle: bool = False
    """Alert when a target becomes THROTTLED."""

    dedup_window_seconds: int = 60
    """Identical alerts inside this window are dropped."""


# ============================================================
# MASTER CONFIGURATION
# ============================================================

@dataclass
class ControlPlaneConfig:
    """
    Master configuration for the Global Control Plane.
    """

    thresholds: SeverityThresholdConfig = field(
        default_factory=SeverityThresholdConfig
    )
    """Severity band thresholds."""

    source_weights: SourceWeightConfig = field(
        default_factory=SourceWeightConfig
    )
    """Per-source severity weights."""

    cooldown: CooldownConfig = field(
        default_factory=CooldownConfig
    )
    """Manual downgrade cooldowns."""

    audit: AuditConfig = field(
        default_factory=AuditConfig
    )
    """Audit query bounds."""

    health_mapping: HealthMappingConfig = field(
        default_factory=HealthMappingConfig
    )
    """Strategy-health action to severity mapping."""

    alerting: AlertingConfig = field(
        default_factory=AlertingConfig
    )
    """Alerting configuration."""

    max_conflict_retries: int = 3
    """Evaluation retries after a lost optimistic write."""

    def validate(self) -> "ControlPlaneConfig":
        """Validate all sections. Returns self for chaining."""
        self.thresholds.validate()
        self.source_weights.validate()
        self.audit.validate()
        self.health_mapping.validate(self.thresholds, self.source_weights)
        if self.max_conflict_retries < 0:
            raise ValidationError("max_conflict_retries must be >= 0")
        return self

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "thresholds": {
                "throttle": self.thresholds.throttle,
                "freeze": self.thresholds.freeze,
                "kill": self.thresholds.kill,
            },
            "source_weights": {
                source.value: weight
                for source, weight in self.source_weights.weights.items()
            },
            "cooldown": {
                state.value: seconds
                for state, seconds in self.cooldown.min_state_duration_seconds.items()
            },
            "audit": {
                "default_limit": self.audit.default_limit,
                "max_limit": self.audit.max_limit,
            },
            "health_mapping": dict(self.health_mapping.action_severity),
            "max_conflict_retries": self.max_conflict_retries,
        }


# ============================================================
# PRESET FACTORIES
# ============================================================

def get_default_config() -> ControlPlaneConfig:
    """
    Get default configuration.

    Plain maximum-severity aggregation, THROTTLED cooldown of 5 minutes.
    """
    return ControlPlaneConfig()


def get_strict_config() -> ControlPlaneConfig:
    """
    Get strict configuration.

    Lower thresholds and longer cooldowns for high-risk periods.
    """
    config = ControlPlaneConfig()

    config.thresholds.throttle = 0.3
    config.thresholds.freeze = 0.6
    config.thresholds.kill = 0.9

    config.cooldown.min_state_duration_seconds[ControlState.THROTTLED] = 1800.0

    config.audit.max_limit = 500

    return config


def get_testing_config() -> ControlPlaneConfig:
    """
    Get testing configuration.

    No cooldowns and no alerting.
    NOT FOR PRODUCTION.
    """
    config = ControlPlaneConfig()

    config.cooldown.min_state_duration_seconds = {
        ControlState.ACTIVE: 0.0,
        ControlState.THROTTLED: 0.0,
    }

    config.alerting.enabled = False

    return config


def load_config_from_dict(data: Dict[str, Any]) -> ControlPlaneConfig:
    """
    Load configuration from dictionary.

    Unknown state or source names raise ValidationError.

    Args:
        data: Configuration dictionary (shape of ``to_dict``)

    Returns:
        Validated ControlPlaneConfig
    """
    config = get_default_config()

    if "thresholds" in data:
        th = data["thresholds"]
        config.thresholds.throttle = float(th.get("throttle", config.thresholds.throttle))
        config.thresholds.freeze = float(th.get("freeze", config.thresholds.freeze))
        config.thresholds.kill = float(th.get("kill", config.thresholds.kill))

    if "source_weights" in data:
        for name, weight in data["source_weights"].items():
            try:
                source = SignalSource(str(name).upper())
            except ValueError:
                raise ValidationError(f"Unknown signal source in config: {name!r}")
            config.source_weights.weights[source] = float(weight)

    if "cooldown" in data:
        for name, seconds in data["cooldown"].items():
            try:
                state = ControlState(str(name).upper())
            except ValueError:
                raise ValidationError(f"Unknown control state in config: {name!r}")
            config.cooldown.min_state_duration_seconds[state] = float(seconds)

    if "audit" in data:
        au = data["audit"]
        config.audit.default_limit = int(au.get("default_limit", config.audit.default_limit))
        config.audit.max_limit = int(au.get("max_limit", config.audit.max_limit))

    if "health_mapping" in data:
        for action, severity in data["health_mapping"].items():
            config.health_mapping.action_severity[str(action).upper()] = float(severity)

    if "max_conflict_retries" in data:
        config.max_conflict_retries = int(data["max_conflict_retries"])

    return config.validate()


def load_config_from_env() -> ControlPlaneConfig:
    """
    Load configuration from environment (``.env`` supported).

    Variables:
        CONTROL_PLANE_THROTTLE_THRESHOLD
        CONTROL_PLANE_FREEZE_THRESHOLD
        CONTROL_PLANE_KILL_THRESHOLD
        CONTROL_PLANE_THROTTLE_COOLDOWN_SECONDS
        CONTROL_PLANE_AUDIT_MAX_LIMIT
        CONTROL_PLANE_MAX_CONFLICT_RETRIES
        CONTROL_PLANE_TELEGRAM_BOT_TOKEN
        CONTROL_PLANE_TELEGRAM_CHAT_ID
    """
    load_dotenv()

    config = get_default_config()

    def _float(name: str, default: float) -> float:
        raw = os.getenv(name)
        if raw is None or raw == "":
            return default
        try:
            return float(raw)
        except ValueError:
            raise ValidationError(f"Environment variable {name} must be a number, got {raw!r}")

    config.thresholds.throttle = _float("CONTROL_PLANE_THROTTLE_THRESHOLD", config.thresholds.throttle)
    config.thresholds.freeze = _float("CONTROL_PLANE_FREEZE_THRESHOLD", config.thresholds.freeze)
    config.thresholds.kill = _float("CONTROL_PLANE_KILL_THRESHOLD", config.thresholds.kill)

    config.cooldown.min_state_duration_seconds[ControlState.THROTTLED] = _float(
        "CONTROL_PLANE_THROTTLE_COOLDOWN_SECONDS",
        config.cooldown.min_duration(ControlState.THROTTLED),
    )

    config.audit.max_limit = int(_float("CONTROL_PLANE_AUDIT_MAX_LIMIT", config.audit.max_limit))
    config.max_conflict_retries = int(
        _float("CONTROL_PLANE_MAX_CONFLICT_RETRIES", config.max_conflict_retries)
    )

    token = os.getenv("CONTROL_PLANE_TELEGRAM_BOT_TOKEN")
    chat_id = os.getenv("CONTROL_PLANE_TELEGRAM_CHAT_ID")
    if token and chat_id:
        config.alerting.telegram_enabled = True
        config.alerting.telegram_bot_token = token
        config.alerting.telegram_chat_id = chat_id

    return config.validate()
