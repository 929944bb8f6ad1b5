"""
Tests for the ControlPlane engine.

============================================================
TEST SCENARIOS
============================================================
1. High RISK on a strategy freezes it and the gate denies
2. Global kill denies every gate call
3. Manual reset of GLOBAL lets the gate resume
4. Concurrent 0.5 / 0.9 settle on the state implied by 0.9

Plus: fail-closed gate, authorization, audit bounds,
conflict retries, decorator, singleton.

============================================================
"""

import asyncio
from concurrent.futures import ThreadPoolExecutor
from datetime import timedelta
from unittest.mock import MagicMock

import pytest

from control_plane import engine as engine_module
from control_plane.authorization import CallableAuthorizer, DenyAllAuthorizer
from control_plane.engine import (
    ControlPlane,
    init_control_plane,
    get_control_plane,
    reset_control_plane,
    require_execution_allowed,
)
from control_plane.producers import global_kill_signal
from control_plane.store import InMemoryControlStateStore
from control_plane.types import (
    ControlScope,
    ControlState,
    ControlTarget,
    ControlSignal,
    SignalSource,
    ControlPlaneError,
    ValidationError,
    AuthorizationError,
    ConflictError,
    PersistenceError,
    ExecutionDeniedError,
)


# ============================================================
# HELPERS
# ============================================================

def risk(severity, reason="risk signal"):
    return ControlSignal.create(SignalSource.RISK, severity, reason)


def manual(severity, reason="operator"):
    return ControlSignal.create(SignalSource.MANUAL, severity, reason)


S1 = ControlTarget.strategy("S1")
U1 = ControlTarget.user("U1")
B1 = ControlTarget.broker("B1")
GLOBAL = ControlTarget.global_target()


class InterleavingStore(InMemoryControlStateStore):
    """Runs a hook once, right after the next snapshot is taken."""

    def __init__(self):
        super().__init__()
        self.after_snapshot = None

    def snapshot(self):
        result = super().snapshot()
        hook, self.after_snapshot = self.after_snapshot, None
        if hook is not None:
            hook()
        return result


@pytest.fixture(params=["memory", "sql"])
def any_plane(request, plane, sql_plane):
    return plane if request.param == "memory" else sql_plane


# ============================================================
# TEST: CIRCUIT BREAKER FLOWS
# ============================================================

class TestCircuitBreakerFlows:

    def test_high_risk_freezes_strategy(self, any_plane):
        decision = any_plane.evaluate(S1, [risk(0.8, "drawdown breach")])

        assert decision.new_state == ControlState.FROZEN
        assert decision.requires_manual_reset
        assert "drawdown breach" in decision.reason

        check = any_plane.can_execute("S1", "U1")
        assert not check.can_execute
        assert check.governing_state == ControlState.FROZEN

    def test_global_kill_denies_every_order(self, any_plane):
        any_plane.evaluate(S1, [risk(0.1)])
        decision = any_plane.evaluate(GLOBAL, [global_kill_signal("exchange compromised")])

        assert decision.new_state == ControlState.KILLED
        assert decision.global_kill_override

        for strategy_id, user_id in [("S1", "U1"), ("S2", "U2"), ("fresh", "new")]:
            check = any_plane.can_execute(strategy_id, user_id)
            assert not check.can_execute
            assert check.reason == "global kill active"

    def test_global_reset_resumes_execution(self, any_plane):
        any_plane.evaluate(GLOBAL, [global_kill_signal("halt")])
        decision = any_plane.manual_reset(GLOBAL, "A1", "resolved")

        assert decision.new_state == ControlState.ACTIVE
        assert not decision.global_kill_override
        assert decision.admin_id == "A1"
        assert any_plane.can_execute("S1", "U1").can_execute
        assert not any_plane.get_global_kill_status().active

    def test_global_reset_keeps_target_states(self, any_plane):
        any_plane.evaluate(S1, [risk(0.8)])
        any_plane.evaluate(GLOBAL, [global_kill_signal("halt")])
        any_plane.manual_reset(GLOBAL, "A1", "resolved")

        assert not any_plane.can_execute("S1", "U1").can_execute
        assert any_plane.can_execute("S2", "U1").can_execute

    @pytest.mark.parametrize("order", [(0.5, 0.9), (0.9, 0.5)])
    def test_severity_order_does_not_matter(self, any_plane, order):
        for severity in order:
            any_plane.evaluate(S1, [risk(severity)])
        assert any_plane.get_state(S1) == ControlState.FROZEN

    def test_concurrent_signals_settle_on_highest(self, any_plane):
        for round_index in range(10):
            target = ControlTarget.strategy(f"race-{round_index}")
            with ThreadPoolExecutor(max_workers=2) as pool:
                futures = [
                    pool.submit(any_plane.evaluate, target, [risk(severity)])
                    for severity in (0.5, 0.9)
                ]
                for future in futures:
                    future.result()
            assert any_plane.get_state(target) == ControlState.FROZEN


# ============================================================
# TEST: INVARIANTS
# ============================================================

class TestInvariants:

    def test_monotonic_under_non_manual_signals(self, plane):
        severities = [0.5, 0.1, 0.75, 0.0, 0.3, 0.96, 0.2]
        previous = ControlState.ACTIVE
        for severity in severities:
            decision = plane.evaluate(S1, [risk(severity)])
            assert decision.new_state.severity_rank >= previous.severity_rank
            previous = decision.new_state
        assert previous == ControlState.KILLED

    def test_one_decision_per_call(self, plane):
        ids = set()
        for index in range(20):
            decision = plane.evaluate(ControlTarget.strategy(f"S{index % 3}"), [risk(0.1)])
            ids.add(decision.decision_id)
        assert len(ids) == 20
        assert plane.store.count_decisions() == 20

    def test_validation_error_leaves_no_trace(self, plane):
        with pytest.raises(ValidationError):
            plane.evaluate(S1, [])
        with pytest.raises(ValidationError):
            plane.evaluate(S1, [{"source": "RISK", "severity": 1.2, "reason": "x"}])
        with pytest.raises(ValidationError):
            plane.evaluate({"scope": "STRATEGY", "id": ""}, [risk(0.5)])
        with pytest.raises(ValidationError):
            plane.evaluate(S1, 5)
        assert plane.store.count_decisions() == 0

    def test_override_dominates_every_target(self, plane):
        plane.evaluate(GLOBAL, [global_kill_signal("halt")])
        decision = plane.evaluate(U1, [risk(0.0)])

        assert decision.new_state == ControlState.ACTIVE
        assert decision.global_kill_override
        assert not plane.can_execute("S9", "U1", "B1").can_execute

    def test_frozen_leaves_only_through_reset(self, plane):
        plane.evaluate(S1, [risk(0.8)])
        plane.evaluate(S1, [manual(0.0, "all clear")])
        assert plane.get_state(S1) == ControlState.FROZEN

        plane.manual_reset(S1, "A1", "reviewed")
        assert plane.get_state(S1) == ControlState.ACTIVE

    def test_targets_accepted_as_mappings(self, plane):
        plane.evaluate({"scope": "user", "id": "U1"}, [risk(0.5)])
        assert plane.get_state(U1) == ControlState.THROTTLED

    def test_global_kill_via_helper(self, plane):
        decision = plane.activate_global_kill("exchange down", operator="ops")
        assert decision.target == GLOBAL
        assert decision.signals[0].metadata["operator"] == "ops"
        assert plane.get_global_kill_status().active


# ============================================================
# TEST: EXECUTION GATE
# ============================================================

class TestExecutionGate:

    def test_unknown_targets_pass(self, plane):
        check = plane.can_execute("S1", "U1", "B1")
        assert check.can_execute
        assert check.reason == "All checks passed"
        assert check.governing_state == ControlState.ACTIVE

    def test_throttled_allows_with_reason(self, plane):
        plane.evaluate(U1, [risk(0.5)])
        check = plane.can_execute("S1", "U1")
        assert check.can_execute
        assert check.throttled
        assert "USER:U1" in check.reason

    @pytest.mark.parametrize("target,args", [
        (S1, ("S1", "U1")),
        (U1, ("S1", "U1")),
        (B1, ("S1", "U1", "B1")),
    ])
    def test_each_scope_can_block(self, plane, target, args):
        plane.evaluate(target, [risk(0.75)])
        check = plane.can_execute(*args)
        assert not check.can_execute
        assert str(target) in check.reason

    def test_broker_ignored_when_not_given(self, plane):
        plane.evaluate(B1, [risk(0.99)])
        assert plane.can_execute("S1", "U1").can_execute

    def test_global_state_checked(self, plane):
        plane.evaluate(GLOBAL, [risk(0.8)])
        check = plane.can_execute("S1", "U1")
        assert not check.can_execute
        assert "GLOBAL:GLOBAL" in check.reason

    def test_most_severe_governs(self, plane):
        plane.evaluate(S1, [risk(0.5)])
        plane.evaluate(U1, [risk(0.96)])
        check = plane.can_execute("S1", "U1")
        assert check.governing_state == ControlState.KILLED

    @pytest.mark.parametrize("strategy_id,user_id", [("", "U1"), ("S1", None), (None, None)])
    def test_invalid_ids_fail_closed(self, plane, strategy_id, user_id):
        check = plane.can_execute(strategy_id, user_id)
        assert not check.can_execute
        assert check.reason.startswith("Invalid request")

    def test_kill_reason_wins_over_invalid_ids(self, plane):
        plane.activate_global_kill("halt")
        check = plane.can_execute("", None)
        assert not check.can_execute
        assert check.reason == "global kill active"

    def test_store_failure_fails_closed(self, config):
        store = MagicMock(spec=InMemoryControlStateStore)
        store.is_global_kill_active.return_value = False
        store.get_record.side_effect = PersistenceError("database unreachable")
        plane = ControlPlane(config=config, store=store)

        check = plane.can_execute("S1", "U1")
        assert not check.can_execute
        assert "unavailable" in check.reason

    def test_kill_flag_read_failure_fails_closed(self, config):
        store = MagicMock(spec=InMemoryControlStateStore)
        store.is_global_kill_active.side_effect = RuntimeError("lock poisoned")
        plane = ControlPlane(config=config, store=store)
        assert not plane.can_execute("S1", "U1").can_execute

    def test_gate_does_not_take_target_lock(self, plane):
        lock = plane._target_lock(S1)
        released = []

        def hold_and_check():
            with lock:
                with ThreadPoolExecutor(max_workers=1) as pool:
                    released.append(pool.submit(plane.can_execute, "S1", "U1").result(timeout=5))

        hold_and_check()
        assert released[0].can_execute


# ============================================================
# TEST: MANUAL RESET
# ============================================================

class TestManualReset:

    def test_reset_records_admin(self, plane):
        plane.evaluate(S1, [risk(0.96)])
        decision = plane.manual_reset(S1, "A1", "false positive")

        assert decision.previous_state == ControlState.KILLED
        assert decision.new_state == ControlState.ACTIVE
        assert decision.reason == "Manual reset by A1: false positive"
        assert decision.signals[0].metadata == {"admin_id": "A1", "action": "reset"}

    def test_unauthorized_admin(self, plane):
        plane.evaluate(S1, [risk(0.8)])
        with pytest.raises(AuthorizationError):
            plane.manual_reset(S1, "mallory", "let me trade")
        assert plane.get_state(S1) == ControlState.FROZEN
        assert plane.store.count_decisions() == 1

    @pytest.mark.parametrize("admin_id", ["", "  ", None])
    def test_missing_admin(self, plane, admin_id):
        with pytest.raises(AuthorizationError):
            plane.manual_reset(S1, admin_id, "reason")

    @pytest.mark.parametrize("reason", ["", "   ", None])
    def test_missing_reason(self, plane, reason):
        with pytest.raises(ValidationError):
            plane.manual_reset(S1, "A1", reason)

    def test_default_authorizer_denies(self, config):
        plane = ControlPlane(config=config)
        assert isinstance(plane._authorizer, DenyAllAuthorizer)
        with pytest.raises(AuthorizationError):
            plane.manual_reset(S1, "A1", "reason")

    def test_authorizer_failure_denies(self, config):
        def broken(admin_id):
            raise ConnectionError("role service down")

        plane = ControlPlane(config=config, authorizer=CallableAuthorizer(broken))
        with pytest.raises(AuthorizationError):
            plane.manual_reset(S1, "A1", "reason")
        assert plane.store.count_decisions() == 0

    def test_reset_during_kill_keeps_override(self, plane):
        plane.evaluate(GLOBAL, [global_kill_signal("halt")])
        decision = plane.manual_reset(S1, "A1", "unrelated")
        assert decision.global_kill_override
        assert not plane.can_execute("S1", "U1").can_execute


# ============================================================
# TEST: COOLDOWN
# ============================================================

class TestCooldown:

    def test_manual_downgrade_waits_for_cooldown(self, default_config, store, authorizer, clock):
        plane = ControlPlane(config=default_config, store=store, authorizer=authorizer, clock=clock)
        plane.evaluate(S1, [risk(0.5)])

        clock.advance(seconds=120)
        plane.evaluate(S1, [manual(0.0, "looks fine")])
        assert plane.get_state(S1) == ControlState.THROTTLED

        clock.advance(seconds=200)
        plane.evaluate(S1, [manual(0.0, "looks fine")])
        assert plane.get_state(S1) == ControlState.ACTIVE

    def test_repeated_throttle_does_not_restart_cooldown(self, default_config, store, authorizer, clock):
        plane = ControlPlane(config=default_config, store=store, authorizer=authorizer, clock=clock)
        plane.evaluate(S1, [risk(0.5)])
        clock.advance(seconds=250)
        plane.evaluate(S1, [risk(0.5)])
        clock.advance(seconds=60)

        plane.evaluate(S1, [manual(0.0)])
        assert plane.get_state(S1) == ControlState.ACTIVE


# ============================================================
# TEST: STATUS AND AUDIT
# ============================================================

class TestStatusAndAudit:

    def test_status_counts(self, any_plane):
        any_plane.evaluate(S1, [risk(0.5)])
        any_plane.evaluate(ControlTarget.strategy("S2"), [risk(0.8)])
        any_plane.evaluate(U1, [risk(0.1)])

        status = any_plane.get_status()
        assert status.total_targets == 3
        assert status.by_state[ControlState.THROTTLED] == 1
        assert status.by_state[ControlState.FROZEN] == 1
        assert status.by_state[ControlState.ACTIVE] == 1
        assert status.by_scope[ControlScope.STRATEGY][ControlState.FROZEN] == 1
        assert status.by_scope[ControlScope.BROKER][ControlState.ACTIVE] == 0
        assert not status.global_killed

    def test_status_reports_global_kill(self, any_plane):
        any_plane.evaluate(GLOBAL, [global_kill_signal("halt")])
        assert any_plane.get_status().global_killed

    def test_status_kill_fields_share_one_snapshot(self, config, authorizer, clock):
        store = InterleavingStore()
        plane = ControlPlane(config=config, store=store, authorizer=authorizer, clock=clock)
        plane.activate_global_kill("halt")

        store.after_snapshot = lambda: plane.manual_reset(GLOBAL, "A1", "resolved")
        status = plane.get_status()

        assert status.global_killed
        assert status.global_kill.active
        assert status.to_dict()["global_kill"]["active"] is True
        assert not plane.get_global_kill_status().active

    def test_unknown_target_is_active(self, any_plane):
        assert any_plane.get_state(ControlTarget.broker("never-seen")) == ControlState.ACTIVE

    def test_audit_defaults(self, plane):
        for _ in range(3):
            plane.evaluate(S1, [risk(0.1)])
        plane.evaluate(U1, [risk(0.1)])

        assert len(plane.get_audit()) == 4
        assert len(plane.get_audit(target=S1)) == 3
        assert [d.sequence for d in plane.get_audit(limit=2, newest_first=True)] == [4, 3]

    @pytest.mark.parametrize("limit", [0, -1, 1001, True, "10"])
    def test_audit_limit_bounds(self, plane, limit):
        with pytest.raises(ValidationError):
            plane.get_audit(limit=limit)

    def test_audit_max_limit_accepted(self, plane):
        assert plane.get_audit(limit=1000) == []

    def test_audit_time_range(self, plane, clock):
        start = clock.now()
        plane.evaluate(S1, [risk(0.1)])
        clock.advance(minutes=10)
        plane.evaluate(S1, [risk(0.1)])
        clock.advance(minutes=10)
        plane.evaluate(S1, [risk(0.1)])

        window = plane.get_audit(start=start + timedelta(minutes=10), end=start + timedelta(minutes=20))
        assert [d.sequence for d in window] == [2, 3]

        iso = plane.get_audit(start=(start + timedelta(minutes=5)).isoformat())
        assert len(iso) == 2

    def test_audit_rejects_inverted_range(self, plane, clock):
        with pytest.raises(ValidationError):
            plane.get_audit(start=clock.now(), end=clock.now() - timedelta(seconds=1))


# ============================================================
# TEST: CONFLICT RETRIES
# ============================================================

class TestConflictRetries:

    def test_conflict_retried(self, config, authorizer, clock):
        store = InMemoryControlStateStore()
        real_commit = store.commit
        calls = {"count": 0}

        def flaky_commit(decision, expected_version):
            calls["count"] += 1
            if calls["count"] == 1:
                raise ConflictError("lost race")
            return real_commit(decision, expected_version)

        store.commit = flaky_commit
        plane = ControlPlane(config=config, store=store, authorizer=authorizer, clock=clock)

        decision = plane.evaluate(S1, [risk(0.8)])
        assert decision.new_state == ControlState.FROZEN
        assert calls["count"] == 2
        assert store.count_decisions() == 1

    def test_conflict_surfaced_after_retries(self, config):
        store = MagicMock(spec=InMemoryControlStateStore)
        store.get_record.return_value = None
        store.is_global_kill_active.return_value = False
        store.commit.side_effect = ConflictError("always")

        plane = ControlPlane(config=config, store=store)
        with pytest.raises(ConflictError):
            plane.evaluate(S1, [risk(0.5)])
        assert store.commit.call_count == config.max_conflict_retries + 1

    def test_persistence_error_not_retried(self, config):
        store = MagicMock(spec=InMemoryControlStateStore)
        store.get_record.return_value = None
        store.is_global_kill_active.return_value = False
        store.commit.side_effect = PersistenceError("disk full")

        plane = ControlPlane(config=config, store=store)
        with pytest.raises(PersistenceError):
            plane.evaluate(S1, [risk(0.5)])
        assert store.commit.call_count == 1


# ============================================================
# TEST: CALLBACKS, SINGLETON AND DECORATOR
# ============================================================

class TestCallbacks:

    def test_on_decision_called(self, config):
        seen = []
        plane = ControlPlane(config=config, on_decision=seen.append)
        decision = plane.evaluate(S1, [risk(0.5)])
        assert seen == [decision]

    def test_callback_failure_does_not_fail_evaluate(self, config):
        def broken(decision):
            raise RuntimeError("alert pipe down")

        plane = ControlPlane(config=config, on_decision=broken)
        assert plane.evaluate(S1, [risk(0.5)]).new_state == ControlState.THROTTLED


@pytest.fixture
def global_plane(config, authorizer, clock):
    plane = init_control_plane(config=config, authorizer=authorizer, clock=clock)
    yield plane
    reset_control_plane()


class TestSingleton:

    def test_uninitialized_raises(self):
        reset_control_plane()
        with pytest.raises(ControlPlaneError):
            get_control_plane()

    def test_init_and_get(self, global_plane):
        assert get_control_plane() is global_plane
        assert engine_module._control_plane is global_plane


class TestDecorator:

    def test_sync_function_allowed(self, global_plane):
        @require_execution_allowed
        def submit(order, *, strategy_id, user_id, broker_id=None):
            return f"sent {order}"

        assert submit("o1", strategy_id="S1", user_id="U1") == "sent o1"
        assert submit.__name__ == "submit"

    def test_sync_function_denied(self, global_plane):
        global_plane.evaluate(S1, [risk(0.8)])

        @require_execution_allowed
        def submit(order, *, strategy_id, user_id):
            return "sent"

        with pytest.raises(ExecutionDeniedError) as exc_info:
            submit("o1", strategy_id="S1", user_id="U1")
        assert exc_info.value.context["can_execute"] is False

    def test_missing_ids_denied(self, global_plane):
        @require_execution_allowed
        def submit(order):
            return "sent"

        with pytest.raises(ExecutionDeniedError):
            submit("o1")

    @pytest.mark.asyncio
    async def test_async_function(self, global_plane):
        @require_execution_allowed
        async def submit(order, *, strategy_id, user_id, broker_id=None):
            await asyncio.sleep(0)
            return "sent"

        assert await submit("o1", strategy_id="S1", user_id="U1", broker_id="B1") == "sent"

        global_plane.evaluate(GLOBAL, [global_kill_signal("halt")])
        with pytest.raises(ExecutionDeniedError):
            await submit("o1", strategy_id="S1", user_id="U1")
