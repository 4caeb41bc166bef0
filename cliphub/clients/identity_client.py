"""
Identity provider client.

Bearer tokens are verified with OAuth2 token introspection (RFC 7662): the
API posts the token to the provider with its own client credentials and gets
back `{"active": bool, "sub": "<user id>", ...}`. Active results are cached
for a short TTL so a burst of requests costs one round trip.
"""
import logging
from typing import Optional

import httpx

from cliphub.config import Settings
from cliphub.errors import Unavailable
from cliphub.services.cache import LRUCache

logger = logging.getLogger(__name__)


class IdentityClient:
    def __init__(self, settings: Settings, transport: Optional[httpx.AsyncBaseTransport] = None) -> None:
        self._settings = settings
        self._transport = transport
        self._http: Optional[httpx.AsyncClient] = None
        self._cache: LRUCache[str] = LRUCache(maxsize=10_000, ttl=settings.auth_cache_ttl_seconds)

    async def start(self) -> None:
        self._http = httpx.AsyncClient(timeout=2.0, transport=self._transport)

    async def stop(self) -> None:
        if self._http:
            await self._http.aclose()
            self._http = None

    async def introspect(self, token: str) -> Optional[str]:
        """Subject of an active token, or None when the token is not active."""
        cached = self._cache.get(token)
        if cached is not None:
            return cached
        if self._http is None:
            await self.start()

        try:
            resp = await self._http.post(
                self._settings.identity_introspection_url,
                data={"token": token, "token_type_hint": "access_token"},
                auth=(self._settings.identity_client_id, self._settings.identity_client_secret),
            )
            resp.raise_for_status()
            body = resp.json()
        except (httpx.HTTPError, ValueError) as exc:
            logger.warning("Token introspection failed: %s", exc)
            raise Unavailable("Identity provider unavailable") from exc

        if not body.get("active") or not body.get("sub"):
            return None
        subject = str(body["sub"])
        self._cache.set(token, subject)
        return subject
