"""
Opaque continuation cursors for keyset-paginated listings.

A cursor is URL-safe base64 of `payload.signature`, where payload is compact
JSON:

    {"v": 1, "s": "<listing scope>", "k": ["<created_at iso>", "<id>"], "t": <issued at>}

and signature is HMAC-SHA256(secret, payload). Clients cannot read or forge
positions; a cursor only continues the listing it was issued for and only
until it expires.
"""
import base64
import binascii
import hashlib
import hmac
import json
import time
from datetime import datetime
from typing import Callable, Optional

from cliphub.errors import InvalidCursor

VERSION = 1


def _b64encode(raw: bytes) -> str:
    return base64.urlsafe_b64encode(raw).decode("ascii").rstrip("=")


def _b64decode(value: str) -> bytes:
    padding = "=" * (-len(value) % 4)
    return base64.urlsafe_b64decode(value + padding)


class CursorCodec:
    def __init__(
        self,
        secret: str,
        ttl_seconds: int,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._secret = secret.encode("utf-8")
        self._ttl = ttl_seconds
        self._clock = clock

    def _sign(self, payload: bytes) -> bytes:
        return hmac.new(self._secret, payload, hashlib.sha256).digest()

    def encode(self, scope: str, keys: tuple[datetime, str]) -> str:
        created_at, ident = keys
        payload = json.dumps(
            {"v": VERSION, "s": scope, "k": [created_at.isoformat(), ident], "t": int(self._clock())},
            separators=(",", ":"),
        ).encode("utf-8")
        return f"{_b64encode(payload)}.{_b64encode(self._sign(payload))}"

    def decode(self, cursor: Optional[str], scope: str) -> Optional[tuple[datetime, str]]:
        """Position encoded in `cursor`, or None for the first page."""
        if not cursor:
            return None
        try:
            body, _, sig = cursor.partition(".")
            payload = _b64decode(body)
            signature = _b64decode(sig)
        except (binascii.Error, ValueError) as exc:
            raise InvalidCursor("Cursor is malformed") from exc
        if not sig or not hmac.compare_digest(signature, self._sign(payload)):
            raise InvalidCursor("Cursor signature does not match")

        try:
            data = json.loads(payload)
            version, issued_at = data["v"], data["t"]
            cursor_scope = data["s"]
            created_raw, ident = data["k"]
            created_at = datetime.fromisoformat(created_raw)
        except (KeyError, TypeError, ValueError) as exc:
            raise InvalidCursor("Cursor is malformed") from exc

        if version != VERSION:
            raise InvalidCursor("Cursor version is not supported")
        if cursor_scope != scope:
            raise InvalidCursor("Cursor belongs to a different listing")
        if self._clock() - issued_at > self._ttl:
            raise InvalidCursor("Cursor has expired")
        return created_at, str(ident)
