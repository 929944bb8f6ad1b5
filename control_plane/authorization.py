"""
Global Control Plane - Authorization.

============================================================
PURPOSE
============================================================
Interface to the external collaborator that verifies an
administrator holds elevated privilege before a manual reset.

The default authorizer DENIES everyone. A deployment must
wire a real one explicitly.

============================================================
"""

import logging
from abc import ABC, abstractmethod
from typing import Callable, Iterable, Optional, FrozenSet


logger = logging.getLogger(__name__)


class AdminAuthorizer(ABC):
    """Verifies elevated privilege for manual resets."""

    @abstractmethod
    def is_authorized(self, admin_id: str) -> bool:
        """Return True only if ``admin_id`` holds elevated privilege."""
        pass


class DenyAllAuthorizer(AdminAuthorizer):
    """Fail-closed default: nobody may reset."""

    def is_authorized(self, admin_id: str) -> bool:
        logger.warning(f"Manual reset by {admin_id} denied: no authorizer configured")
        return False


class StaticAdminAuthorizer(AdminAuthorizer):
    """Allow-list of administrator ids (configuration or tests)."""

    def __init__(self, admin_ids: Iterable[str]):
        self._admin_ids: FrozenSet[str] = frozenset(
            admin_id.strip() for admin_id in admin_ids if admin_id and admin_id.strip()
        )

    @property
    def admin_ids(self) -> FrozenSet[str]:
        return self._admin_ids

    def is_authorized(self, admin_id: str) -> bool:
        return admin_id in self._admin_ids


class CallableAuthorizer(AdminAuthorizer):
    """
    Adapter for an external role check.

    Usage:
    ```python
    authorizer = CallableAuthorizer(lambda admin_id: roles.has(admin_id, "admin"))
    ```
    """

    def __init__(self, check: Callable[[str], bool], name: Optional[str] = None):
        self._check = check
        self._name = name or getattr(check, "__name__", "callable")

    def is_authorized(self, admin_id: str) -> bool:
        return bool(self._check(admin_id))

    def __repr__(self) -> str:
        return f"CallableAuthorizer({self._name})"
