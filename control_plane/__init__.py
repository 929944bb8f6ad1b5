"""
Global Control Plane - Package.

============================================================
                    ⚠️  WARNING  ⚠️
============================================================

THIS MODULE DECIDES WHETHER ANY ORDER MAY BE SUBMITTED.

It can:
- THROTTLE a strategy, user or broker connection
- FREEZE any of them until an administrator intervenes
- KILL the whole system with one signal

Every order submission MUST pass ``can_execute`` first.

============================================================
                    CRITICAL PRINCIPLE
============================================================

    "If the control state cannot be determined,
     execution is DENIED."

============================================================
                      CONTROL STATES
============================================================

ACTIVE:
    Execution allowed.

THROTTLED:
    Execution allowed. Callers reduce size/frequency.

FROZEN:
    Execution denied. MANUAL RESET REQUIRED.

KILLED:
    Execution denied. MANUAL RESET REQUIRED.

============================================================
                         SCOPES
============================================================

STRATEGY, USER, BROKER:
    Individual targets, keyed by id.

GLOBAL:
    The whole system. A MANUAL signal with
    {"action": "global_kill"} sets the fleet-wide override.

============================================================
                        USAGE
============================================================

```python
from control_plane import (
    ControlPlane,
    ControlSignal,
    ControlTarget,
    SignalSource,
    StaticAdminAuthorizer,
    init_control_plane,
)

plane = init_control_plane(authorizer=StaticAdminAuthorizer(["A1"]))

# Producers submit signals
plane.evaluate(
    ControlTarget.strategy("S1"),
    [ControlSignal.create(SignalSource.RISK, 0.8, "drawdown breach")],
)

# Execution asks before every order
check = plane.can_execute("S1", "U1")
if not check.can_execute:
    ...

# Only an administrator resumes a frozen target
plane.manual_reset(ControlTarget.strategy("S1"), "A1", "drawdown reviewed")
```

============================================================
"""

# Types
from .types import (
    ControlScope,
    ControlState,
    SignalSource,
    ControlTarget,
    ControlSignal,
    ControlDecision,
    ExecutionCheck,
    GlobalKillStatus,
    TargetStateRecord,
    ControlStatus,
    ControlPlaneError,
    ValidationError,
    AuthorizationError,
    ConflictError,
    PersistenceError,
    ExecutionDeniedError,
    GLOBAL_TARGET_ID,
    GLOBAL_KILL_ACTION,
)

# Configuration
from .config import (
    SeverityThresholdConfig,
    SourceWeightConfig,
    CooldownConfig,
    AuditConfig,
    HealthMappingConfig,
    AlertingConfig,
    ControlPlaneConfig,
    get_default_config,
    get_strict_config,
    get_testing_config,
    load_config_from_dict,
    load_config_from_env,
)

# Clock
from .clock import Clock, SystemClock, MockClock

# State Machine
from .state_machine import SignalEvaluator, aggregate_reason

# Store
from .store import (
    ControlStateStore,
    InMemoryControlStateStore,
    GlobalKillSwitch,
)

# Authorization
from .authorization import (
    AdminAuthorizer,
    DenyAllAuthorizer,
    StaticAdminAuthorizer,
    CallableAuthorizer,
)

# Producers
from .producers import (
    StrategyHealthStatus,
    RecommendedAction,
    ExecutionRiskBreakdown,
    StrategyHealthReport,
    ReconciliationSeverity,
    health_report_to_signal,
    reconciliation_signal,
    behavior_signal,
    global_kill_signal,
)

# Engine
from .engine import (
    ControlPlane,
    get_control_plane,
    init_control_plane,
    reset_control_plane,
    require_execution_allowed,
)

# Alerting
from .alerting import (
    Alert,
    AlertPriority,
    AlertSender,
    TelegramAlertSender,
    ConsoleAlertSender,
    AlertingService,
)

# Repository
from .repository import SqlControlStateStore

# Models
from .models import (
    ControlStateModel,
    ControlDecisionModel,
    GlobalKillFlagModel,
)


__all__ = [
    # Types
    "ControlScope",
    "ControlState",
    "SignalSource",
    "ControlTarget",
    "ControlSignal",
    "ControlDecision",
    "ExecutionCheck",
    "GlobalKillStatus",
    "TargetStateRecord",
    "ControlStatus",
    "ControlPlaneError",
    "ValidationError",
    "AuthorizationError",
    "ConflictError",
    "PersistenceError",
    "ExecutionDeniedError",
    "GLOBAL_TARGET_ID",
    "GLOBAL_KILL_ACTION",
    # Configuration
    "SeverityThresholdConfig",
    "SourceWeightConfig",
    "CooldownConfig",
    "AuditConfig",
    "HealthMappingConfig",
    "AlertingConfig",
    "ControlPlaneConfig",
    "get_default_config",
    "get_strict_config",
    "get_testing_config",
    "load_config_from_dict",
    "load_config_from_env",
    # Clock
    "Clock",
    "SystemClock",
    "MockClock",
    # State Machine
    "SignalEvaluator",
    "aggregate_reason",
    # Store
    "ControlStateStore",
    "InMemoryControlStateStore",
    "GlobalKillSwitch",
    # Authorization
    "AdminAuthorizer",
    "DenyAllAuthorizer",
    "StaticAdminAuthorizer",
    "CallableAuthorizer",
    # Producers
    "StrategyHealthStatus",
    "RecommendedAction",
    "ExecutionRiskBreakdown",
    "StrategyHealthReport",
    "ReconciliationSeverity",
    "health_report_to_signal",
    "reconciliation_signal",
    "behavior_signal",
    "global_kill_signal",
    # Engine
    "ControlPlane",
    "get_control_plane",
    "init_control_plane",
    "reset_control_plane",
    "require_execution_allowed",
    # Alerting
    "Alert",
    "AlertPriority",
    "AlertSender",
    "TelegramAlertSender",
    "ConsoleAlertSender",
    "AlertingService",
    # Repository
    "SqlControlStateStore",
    # Models
    "ControlStateModel",
    "ControlDecisionModel",
    "GlobalKillFlagModel",
]
