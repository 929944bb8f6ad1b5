"""
Tests for server wiring.
"""

from unittest.mock import patch

import pytest
from fastapi.testclient import TestClient

from control_plane import server
from control_plane.api import set_alerting_service
from control_plane.authorization import DenyAllAuthorizer, StaticAdminAuthorizer
from control_plane.engine import reset_control_plane


@pytest.fixture(autouse=True)
def clean_globals():
    yield
    reset_control_plane()
    set_alerting_service(None)


class TestAuthorizerFromEnv:

    def test_admin_ids(self, monkeypatch):
        monkeypatch.setenv("CONTROL_PLANE_ADMIN_IDS", "A1, A2,,")
        authorizer = server.authorizer_from_env()
        assert isinstance(authorizer, StaticAdminAuthorizer)
        assert authorizer.admin_ids == frozenset({"A1", "A2"})

    def test_no_admins_denies(self, monkeypatch):
        monkeypatch.delenv("CONTROL_PLANE_ADMIN_IDS", raising=False)
        assert isinstance(server.authorizer_from_env(), DenyAllAuthorizer)


class TestBuildApp:

    def test_serves_sql_backed_plane(self, monkeypatch):
        monkeypatch.setenv("CONTROL_PLANE_ADMIN_IDS", "A1")
        client = TestClient(server.build_app("sqlite:///:memory:"))

        frozen = client.post("/control/evaluate", json={
            "target": {"scope": "USER", "id": "U1"},
            "signals": [{"source": "RECONCILIATION", "severity": 0.8, "reason": "position mismatch"}],
        })
        assert frozen.json()["new_state"] == "FROZEN"

        gate = client.get("/control/can-execute", params={"strategy_id": "S1", "user_id": "U1"})
        assert gate.json()["can_execute"] is False

        reset = client.post("/control/reset", json={
            "target": {"scope": "USER", "id": "U1"}, "admin_id": "A1", "reason": "reconciled",
        })
        assert reset.status_code == 200

    def test_main_runs_uvicorn(self, monkeypatch):
        monkeypatch.setenv("CONTROL_PLANE_DATABASE_URL", "sqlite:///:memory:")
        monkeypatch.setenv("CONTROL_PLANE_PORT", "9123")

        with patch("control_plane.server.uvicorn.run") as run:
            server.main()

        assert run.call_args.kwargs["port"] == 9123

    def test_main_exits_on_bad_config(self, monkeypatch):
        monkeypatch.setenv("CONTROL_PLANE_THROTTLE_THRESHOLD", "0.9")
        with patch("control_plane.server.uvicorn.run") as run:
            with pytest.raises(SystemExit):
                server.main()
        run.assert_not_called()
