"""
Caller identity.

  auth_mode = "introspection"  Authorization: Bearer <token>, verified against
                               the identity provider; the token's `sub` is the
                               caller's user id.
  auth_mode = "header"         X-User-Id: <user id> is trusted as-is
                               (local runs and tests).

WebSocket clients that cannot set headers may pass `access_token` (or
`user_id` in header mode) as a query parameter instead.
"""
import logging
from typing import Optional

from fastapi import Depends
from fastapi.requests import HTTPConnection

from cliphub.dependencies import Services, get_services
from cliphub.errors import Forbidden, Unauthenticated

logger = logging.getLogger(__name__)


def _bearer(conn: HTTPConnection) -> Optional[str]:
    header = conn.headers.get("authorization", "")
    scheme, _, token = header.partition(" ")
    if scheme.lower() == "bearer" and token.strip():
        return token.strip()
    return conn.query_params.get("access_token")


async def get_caller(
    conn: HTTPConnection,
    services: Services = Depends(get_services),
) -> str:
    if services.settings.auth_mode == "header":
        user_id = conn.headers.get("x-user-id") or conn.query_params.get("user_id")
        if not user_id:
            raise Unauthenticated("Missing X-User-Id header")
        return user_id

    token = _bearer(conn)
    if not token:
        raise Unauthenticated("Missing bearer token")
    subject = await services.identity.introspect(token)
    if subject is None:
        raise Unauthenticated("Token is not active")
    return subject


def ensure_same_user(caller: str, user_id: Optional[str]) -> None:
    """A body that names a user must name the caller."""
    if user_id is not None and user_id != caller:
        raise Forbidden("Cannot act on behalf of another user")


async def require_admin(
    caller: str = Depends(get_caller),
    services: Services = Depends(get_services),
) -> str:
    if caller not in services.settings.admin_user_ids:
        logger.warning("Non-admin %s attempted an admin operation", caller)
        raise Forbidden("Admin privileges required")
    return caller
