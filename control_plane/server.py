"""
Control Plane API Server Runner.

Usage:
    python -m control_plane.server

Environment:
    CONTROL_PLANE_HOST / CONTROL_PLANE_PORT   bind address
    CONTROL_PLANE_DATABASE_URL                state store
    CONTROL_PLANE_ADMIN_IDS                   comma-separated reset admins
    CONTROL_PLANE_*                           policy (see config.py)
"""

import os
import sys
import logging
from typing import Optional

import uvicorn
from fastapi import FastAPI

from control_plane.api import create_app, set_alerting_service
from control_plane.alerting import AlertingService
from control_plane.authorization import AdminAuthorizer, DenyAllAuthorizer, StaticAdminAuthorizer
from control_plane.config import load_config_from_env
from control_plane.database import (
    create_database_engine,
    create_session_factory,
    create_all_tables,
    verify_database_connection,
)
from control_plane.engine import init_control_plane
from control_plane.repository import SqlControlStateStore


logger = logging.getLogger(__name__)


def authorizer_from_env() -> AdminAuthorizer:
    raw = os.getenv("CONTROL_PLANE_ADMIN_IDS", "")
    admin_ids = [part for part in raw.split(",") if part.strip()]
    if not admin_ids:
        logger.warning("CONTROL_PLANE_ADMIN_IDS not set, manual resets will be denied")
        return DenyAllAuthorizer()
    return StaticAdminAuthorizer(admin_ids)


def build_app(database_url: Optional[str] = None) -> FastAPI:
    """
    Wire config, SQL store, authorizer and alerting into an app.

    Raises:
        ValidationError: invalid configuration
        PersistenceError: database unreachable
    """
    config = load_config_from_env()

    engine = create_database_engine(database_url)
    verify_database_connection(engine)
    create_all_tables(engine)

    alerting = AlertingService(config.alerting)
    set_alerting_service(alerting)

    plane = init_control_plane(
        config=config,
        store=SqlControlStateStore(create_session_factory(engine)),
        authorizer=authorizer_from_env(),
    )

    return create_app(plane, alerting)


def main():
    """Run the control plane API server."""
    logging.basicConfig(
        level=logging.INFO,
        format='%(asctime)s | %(levelname)s | %(name)s | %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S'
    )

    host = os.getenv("CONTROL_PLANE_HOST", "0.0.0.0")
    port = int(os.getenv("CONTROL_PLANE_PORT", os.getenv("PORT", "8000")))

    logger.info(f"Starting Control Plane API on {host}:{port}")

    try:
        app = build_app()
        uvicorn.run(
            app,
            host=host,
            port=port,
            log_level="info",
            access_log=True,
        )
    except Exception as e:
        logger.error(f"Failed to start control plane: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
