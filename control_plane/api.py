"""
FastAPI Router for the Global Control Plane.

Provides REST API for:
- Submitting risk signals
- The pre-trade execution gate
- Manual resets and the global kill
- State, status and audit queries
- A single-endpoint action dispatcher for dashboards
"""

import logging
from typing import Any, Dict, Optional

from fastapi import APIRouter, BackgroundTasks, Depends, FastAPI, HTTPException, Query
from fastapi.responses import JSONResponse

from control_plane.types import (
    ControlPlaneError,
    ValidationError,
    AuthorizationError,
    ConflictError,
    PersistenceError,
    ControlDecision,
    ControlTarget,
)
from control_plane.engine import ControlPlane, get_control_plane
from control_plane.alerting import AlertingService
from control_plane.state_machine import describe_transition_rules
from control_plane.schemas import (
    TargetSchema,
    EvaluateRequest,
    ResetRequest,
    GlobalKillRequest,
    ActionRequest,
    DecisionResponse,
    ExecutionCheckResponse,
    StateResponse,
    StatusResponse,
    AuditResponse,
    ActionResponse,
)


logger = logging.getLogger(__name__)

router = APIRouter(prefix="/control", tags=["Control Plane"])


# =============================================================
# HELPER: Dependencies
# =============================================================

_alerting_service: Optional[AlertingService] = None


def set_alerting_service(service: Optional[AlertingService]) -> None:
    global _alerting_service
    _alerting_service = service


def get_plane() -> ControlPlane:
    try:
        return get_control_plane()
    except ControlPlaneError as e:
        raise HTTPException(status_code=503, detail=e.message)


def get_alerting() -> Optional[AlertingService]:
    return _alerting_service


# =============================================================
# HELPER: Error mapping
# =============================================================

def status_code_for(error: ControlPlaneError) -> int:
    if isinstance(error, ValidationError):
        return 400
    if isinstance(error, AuthorizationError):
        return 403
    if isinstance(error, ConflictError):
        return 409
    if isinstance(error, PersistenceError):
        return 503
    return 500


def _http_error(error: ControlPlaneError) -> HTTPException:
    code = status_code_for(error)
    if code >= 500:
        logger.error(f"Control plane request failed: {error.message}")
    return HTTPException(status_code=code, detail=error.message)


def _decision_response(decision: ControlDecision) -> DecisionResponse:
    return DecisionResponse.model_validate(decision.to_dict())


def _target_dict(target: Optional[TargetSchema]) -> Optional[Dict[str, Any]]:
    return target.model_dump() if target is not None else None


def _schedule_alert(
    background_tasks: BackgroundTasks,
    alerting: Optional[AlertingService],
    decision: ControlDecision,
) -> None:
    if alerting is not None:
        background_tasks.add_task(alerting.alert_decision, decision)


# =============================================================
# SIGNAL ENDPOINTS
# =============================================================

@router.post("/evaluate", response_model=DecisionResponse)
def evaluate(
    request: EvaluateRequest,
    background_tasks: BackgroundTasks,
    plane: ControlPlane = Depends(get_plane),
    alerting: Optional[AlertingService] = Depends(get_alerting),
):
    """
    Evaluate risk signals for one target.

    Escalates the target's state; never lowers it except for
    manual downgrades out of THROTTLED.
    """
    try:
        decision = plane.evaluate(
            request.target.model_dump(),
            [signal.model_dump() for signal in request.signals],
        )
    except ControlPlaneError as e:
        raise _http_error(e)

    _schedule_alert(background_tasks, alerting, decision)
    return _decision_response(decision)


@router.get("/can-execute", response_model=ExecutionCheckResponse)
def can_execute(
    strategy_id: str = Query(..., description="Strategy submitting the order"),
    user_id: str = Query(..., description="Owning user"),
    broker_id: Optional[str] = Query(None, description="Broker connection"),
    plane: ControlPlane = Depends(get_plane),
):
    """Pre-trade gate. Denies on any uncertainty."""
    return ExecutionCheckResponse(**plane.can_execute(strategy_id, user_id, broker_id).to_dict())


# =============================================================
# ADMIN ENDPOINTS
# =============================================================

@router.post("/reset", response_model=DecisionResponse)
def manual_reset(
    request: ResetRequest,
    background_tasks: BackgroundTasks,
    plane: ControlPlane = Depends(get_plane),
    alerting: Optional[AlertingService] = Depends(get_alerting),
):
    """Return a target to ACTIVE. Requires an authorized admin."""
    try:
        decision = plane.manual_reset(request.target.model_dump(), request.admin_id, request.reason)
    except ControlPlaneError as e:
        raise _http_error(e)

    _schedule_alert(background_tasks, alerting, decision)
    return _decision_response(decision)


@router.post("/global-kill", response_model=DecisionResponse)
def global_kill(
    request: GlobalKillRequest,
    background_tasks: BackgroundTasks,
    plane: ControlPlane = Depends(get_plane),
    alerting: Optional[AlertingService] = Depends(get_alerting),
):
    """Kill all execution until GLOBAL is manually reset."""
    try:
        decision = plane.activate_global_kill(request.reason, request.operator)
    except ControlPlaneError as e:
        raise _http_error(e)

    _schedule_alert(background_tasks, alerting, decision)
    return _decision_response(decision)


# =============================================================
# QUERY ENDPOINTS
# =============================================================

@router.get("/state/{scope}/{target_id}", response_model=StateResponse)
def get_state(
    scope: str,
    target_id: str,
    plane: ControlPlane = Depends(get_plane),
):
    """Current state of one target (ACTIVE if never evaluated)."""
    try:
        target = ControlTarget.of(scope, target_id)
        state = plane.get_state(target)
    except ControlPlaneError as e:
        raise _http_error(e)

    return StateResponse(target=TargetSchema(**target.to_dict()), state=state.value)


@router.get("/status", response_model=StatusResponse)
def get_status(plane: ControlPlane = Depends(get_plane)):
    """Counts per state and scope plus the global kill flag."""
    try:
        return StatusResponse(**_status_payload(plane))
    except ControlPlaneError as e:
        raise _http_error(e)


@router.get("/audit", response_model=AuditResponse)
def get_audit(
    scope: Optional[str] = Query(None, description="Target scope filter"),
    target_id: Optional[str] = Query(None, description="Target id filter"),
    start: Optional[str] = Query(None, description="Inclusive ISO start"),
    end: Optional[str] = Query(None, description="Inclusive ISO end"),
    limit: Optional[int] = Query(None, description="Max records"),
    newest_first: bool = Query(False),
    plane: ControlPlane = Depends(get_plane),
):
    """
    Query the decision log.

    Ordered oldest first unless ``newest_first`` is set.
    """
    try:
        target = _audit_target(scope, target_id)
        decisions = plane.get_audit(
            target=target,
            start=start,
            end=end,
            limit=limit,
            newest_first=newest_first,
        )
    except ControlPlaneError as e:
        raise _http_error(e)

    return AuditResponse(
        decisions=[_decision_response(d) for d in decisions],
        count=len(decisions),
    )


def _audit_target(scope: Optional[str], target_id: Optional[str]) -> Optional[ControlTarget]:
    if scope is None and target_id is None:
        return None
    if scope is None or target_id is None:
        raise ValidationError("Audit target filter needs both scope and target_id")
    return ControlTarget.of(scope, target_id)


def _status_payload(plane: ControlPlane) -> Dict[str, Any]:
    payload = plane.get_status().to_dict()
    payload["rules"] = describe_transition_rules(plane.config)
    return payload


# =============================================================
# ACTION DISPATCHER
# =============================================================

@router.post("/action", response_model=ActionResponse)
def dispatch_action(
    request: ActionRequest,
    background_tasks: BackgroundTasks,
    plane: ControlPlane = Depends(get_plane),
    alerting: Optional[AlertingService] = Depends(get_alerting),
):
    """
    Single endpoint for dashboards.

    Returns ``{success, result}`` or ``{success: false, error}``.
    """
    try:
        result = _run_action(request, plane, background_tasks, alerting)
    except ControlPlaneError as e:
        logger.warning(f"Action {request.action} failed: {e.message}")
        return JSONResponse(
            status_code=status_code_for(e),
            content={"success": False, "result": None, "error": e.message},
        )

    return ActionResponse(success=True, result=result)


def _run_action(
    request: ActionRequest,
    plane: ControlPlane,
    background_tasks: BackgroundTasks,
    alerting: Optional[AlertingService],
) -> Any:
    action = request.action

    if action == "evaluate":
        if request.target is None or not request.signals:
            raise ValidationError("evaluate requires target and signals")
        decision = plane.evaluate(
            _target_dict(request.target),
            [signal.model_dump() for signal in request.signals],
        )
        _schedule_alert(background_tasks, alerting, decision)
        return _decision_response(decision).model_dump(mode="json")

    if action == "can_execute":
        return plane.can_execute(request.strategy_id, request.user_id, request.broker_id).to_dict()

    if action == "manual_reset":
        if request.target is None:
            raise ValidationError("manual_reset requires target")
        decision = plane.manual_reset(_target_dict(request.target), request.admin_id, request.reason)
        _schedule_alert(background_tasks, alerting, decision)
        return _decision_response(decision).model_dump(mode="json")

    if action == "get_state":
        if request.target is None:
            raise ValidationError("get_state requires target")
        return {
            "target": request.target.model_dump(),
            "state": plane.get_state(_target_dict(request.target)).value,
        }

    if action == "get_status":
        return StatusResponse(**_status_payload(plane)).model_dump(mode="json")

    if action == "get_audit":
        decisions = plane.get_audit(
            target=_target_dict(request.target),
            start=request.start,
            end=request.end,
            limit=request.limit,
            newest_first=request.newest_first,
        )
        return [_decision_response(d).model_dump(mode="json") for d in decisions]

    raise ValidationError(f"Unknown action: {action}")


# =============================================================
# APPLICATION
# =============================================================

def create_app(
    plane: Optional[ControlPlane] = None,
    alerting: Optional[AlertingService] = None,
) -> FastAPI:
    """
    Build a FastAPI app serving the control plane router.

    Args:
        plane: Instance to serve (the global instance if None)
        alerting: Decision alerting service
    """
    app = FastAPI(title="Global Control Plane")
    app.include_router(router)

    if plane is not None:
        app.dependency_overrides[get_plane] = lambda: plane
    if alerting is not None:
        app.dependency_overrides[get_alerting] = lambda: alerting

    return app
