"""
Shared fixtures for control plane tests.
"""

import pytest

from control_plane.config import get_testing_config, get_default_config
from control_plane.clock import MockClock
from control_plane.store import InMemoryControlStateStore
from control_plane.authorization import StaticAdminAuthorizer
from control_plane.engine import ControlPlane
from control_plane.database import (
    create_database_engine,
    create_session_factory,
    create_all_tables,
)
from control_plane.repository import SqlControlStateStore


# ============================================================
# CORE FIXTURES
# ============================================================

@pytest.fixture
def clock():
    """Manually driven clock at 2024-01-01 UTC."""
    return MockClock()


@pytest.fixture
def config():
    """Default thresholds, no cooldowns, no alerting."""
    return get_testing_config()


@pytest.fixture
def default_config():
    return get_default_config()


@pytest.fixture
def store():
    return InMemoryControlStateStore()


@pytest.fixture
def authorizer():
    return StaticAdminAuthorizer(["A1", "admin"])


@pytest.fixture
def plane(config, store, authorizer, clock):
    """Control plane on the in-memory store."""
    return ControlPlane(config=config, store=store, authorizer=authorizer, clock=clock)


# ============================================================
# SQL FIXTURES
# ============================================================

@pytest.fixture
def sql_engine():
    """In-memory SQLite engine with control plane tables."""
    engine = create_database_engine("sqlite:///:memory:")
    create_all_tables(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(sql_engine):
    return create_session_factory(sql_engine)


@pytest.fixture
def sql_store(session_factory):
    return SqlControlStateStore(session_factory)


@pytest.fixture
def sql_plane(config, sql_store, authorizer, clock):
    """Control plane on the SQL store."""
    return ControlPlane(config=config, store=sql_store, authorizer=authorizer, clock=clock)

