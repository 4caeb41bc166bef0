"""
Realtime push — WS /realtime

Client frames:
  {"action": "subscribe",   "resource": "post:<id>"}
  {"action": "unsubscribe", "resource": "post:<id>"}

Server frames:
  {"type": "subscribed" | "unsubscribed" | "error" | "ping" | <event type>,
   "resource": ..., "seq": ..., "payload": {...}}

Events of one resource arrive in `seq` order. A connection that cannot keep
up is closed (code 4008); the client refetches through the REST listings and
resubscribes. Nothing is replayed across reconnects.
"""
import asyncio
import json
import logging
from typing import Any, Optional

import anyio
from fastapi import APIRouter, WebSocket, WebSocketDisconnect

from cliphub.auth import get_caller
from cliphub.errors import CliphubError
from cliphub.services.notifier import Subscriber, is_valid_resource

logger = logging.getLogger(__name__)
router = APIRouter()

CLOSE_UNAUTHENTICATED = 4401
CLOSE_OVERFLOW = 4008


def _frame(kind: str, resource: Optional[str] = None, payload: Optional[dict] = None) -> dict[str, Any]:
    return {"type": kind, "resource": resource, "seq": None, "payload": payload or {}}


@router.websocket("/realtime")
async def realtime(websocket: WebSocket):
    services = websocket.app.state.services
    try:
        caller = await get_caller(websocket, services)
    except CliphubError as exc:
        await websocket.close(code=CLOSE_UNAUTHENTICATED, reason=exc.message)
        return

    await websocket.accept()
    notifier = services.notifier
    sub = notifier.connect()
    send_lock = asyncio.Lock()
    logger.info("Realtime connection %s opened for %s", sub.id, caller)

    async def send(message: dict[str, Any]) -> None:
        async with send_lock:
            await websocket.send_json(message)

    async def pump() -> None:
        keepalive = services.settings.realtime_keepalive_seconds
        while True:
            try:
                event = await sub.next_event(timeout=keepalive)
            except asyncio.TimeoutError:
                await send(_frame("ping"))
                continue
            if event is None:
                return
            await send(event.to_message())

    async def read() -> None:
        while True:
            raw = await websocket.receive_text()
            try:
                frame = json.loads(raw)
            except ValueError:
                await send(_frame("error", payload={"message": "Frames must be JSON"}))
                continue
            if not isinstance(frame, dict):
                await send(_frame("error", payload={"message": "Frames must be JSON objects"}))
                continue
            await _handle(frame)

    async def _handle(frame: dict[str, Any]) -> None:
        action, name = frame.get("action"), frame.get("resource")
        if not isinstance(name, str) or not is_valid_resource(name):
            await send(_frame("error", name if isinstance(name, str) else None, {"message": "Unknown resource"}))
        elif action == "subscribe":
            notifier.subscribe(sub, name)
            await send(_frame("subscribed", name))
        elif action == "unsubscribe":
            notifier.unsubscribe(sub, name)
            await send(_frame("unsubscribed", name))
        else:
            await send(_frame("error", name, {"message": f"Unknown action {action!r}"}))

    try:
        async with anyio.create_task_group() as tg:

            async def run(step) -> None:
                try:
                    await step()
                except WebSocketDisconnect:
                    pass
                except RuntimeError as exc:
                    # Send raced the socket closing
                    logger.debug("Realtime connection %s send failed: %s", sub.id, exc)
                tg.cancel_scope.cancel()

            tg.start_soon(run, pump)
            tg.start_soon(run, read)

        if sub.closed:
            # Subscriber closed by the hub (overflow / shutdown)
            await _close(websocket, sub)
    finally:
        notifier.disconnect(sub)
        logger.info("Realtime connection %s closed (%s)", sub.id, sub.close_reason)


async def _close(websocket: WebSocket, sub: Subscriber) -> None:
    code = CLOSE_OVERFLOW if sub.close_reason == "overflow" else 1001
    try:
        await websocket.close(code=code, reason=sub.close_reason or "")
    except RuntimeError:
        pass  # client already gone
