"""
Caller identity

The gateway in front of the services authenticates end users and forwards
who they are in headers. Service-to-service calls carry x-internal-service
instead, which is how internal-only endpoints tell them apart from users.
"""

from dataclasses import dataclass

from fastapi import Header

from .errors import Forbidden, Unauthorized

USER_ID_HEADER = "x-user-id"
USER_ROLE_HEADER = "x-user-role"
INTERNAL_SERVICE_HEADER = "x-internal-service"


@dataclass(frozen=True)
class Caller:
    user_id: str | None = None
    role: str | None = None
    service: str | None = None

    @property
    def actor(self) -> str:
        """Identifier recorded in audit trails."""
        return self.user_id or "system"

    @property
    def is_admin(self) -> bool:
        return self.role == "admin"


def require_user(
    x_user_id: str | None = Header(default=None),
    x_user_role: str | None = Header(default=None),
) -> Caller:
    if not x_user_id:
        raise Unauthorized("Authentication required")
    return Caller(user_id=x_user_id, role=x_user_role)


def require_admin(
    x_user_id: str | None = Header(default=None),
    x_user_role: str | None = Header(default=None),
) -> Caller:
    caller = require_user(x_user_id, x_user_role)
    if not caller.is_admin:
        raise Forbidden("Admin access required")
    return caller


def require_internal_service(*allowed: str):
    """Dependency factory rejecting callers that are not one of the allowed services."""

    def dependency(
        x_user_id: str | None = Header(default=None),
        x_internal_service: str | None = Header(default=None),
    ) -> Caller:
        if not x_internal_service or x_internal_service not in allowed:
            raise Forbidden("Forbidden: Internal service access only")
        return Caller(user_id=x_user_id, service=x_internal_service)

    return dependency


def internal_headers(service: str, user_id: str | None = None) -> dict[str, str]:
    """Headers a service sends when calling another service."""
    headers = {INTERNAL_SERVICE_HEADER: service}
    if user_id:
        headers[USER_ID_HEADER] = user_id
    return headers
