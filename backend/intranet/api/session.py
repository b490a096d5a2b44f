"""
Live session stream.

One websocket is one ``SessionContext``. The server pushes a ``session``
frame (snapshot plus routing decision for the client's current path) every
time the snapshot changes, and answers client commands:

* ``{"type": "sign_in", "token": ...}``
* ``{"type": "sign_out"}``
* ``{"type": "navigate", "path": ...}``
* ``{"type": "reload"}``
* ``{"type": "redeem", "dni": ..., "code": ...}``
"""

import asyncio
import logging
from typing import Any, Optional

from fastapi import APIRouter, WebSocket, WebSocketDisconnect, status

from intranet.api.dependencies import (
    ConnectivityDep,
    DirectoryStoreDep,
    RedeemerDep,
    StoreStatus,
)
from intranet.exceptions import AccessControlError, ErrorKind
from intranet.services.redemption_service import RedemptionResult
from intranet.services.session_context import SessionContext

router = APIRouter(prefix="/session", tags=["Session"])
logger = logging.getLogger(__name__)


def _session_frame(context: SessionContext) -> dict[str, Any]:
    return {"type": "session", **context.route().to_response().model_dump(mode="json")}


def _error_frame(error: AccessControlError) -> dict[str, Any]:
    return {
        "type": "error",
        "kind": error.kind.value,
        "message": error.message,
        "error_id": error.error_id,
    }


def _invalid_frame(message: str) -> dict[str, Any]:
    return {"type": "error", "kind": ErrorKind.INVALID_ARGUMENT.value, "message": message}


def _redeem_frame(result: RedemptionResult) -> dict[str, Any]:
    frame: dict[str, Any] = {"type": "redeem_result", "ok": result.ok}
    if result.ok:
        frame.update(
            role=result.role,
            invitation_id=str(result.invitation_id),
            roles=list(result.roles),
        )
    else:
        frame.update(
            kind=result.error_kind.value,
            message=result.message,
            error_id=result.error.error_id,
        )
    return frame


async def _handle(context: SessionContext, message: dict[str, Any]) -> Optional[dict[str, Any]]:
    kind = message.get("type")
    if kind == "sign_in":
        await context.sign_in(message.get("token") or "")
    elif kind == "sign_out":
        await context.sign_out()
    elif kind == "navigate":
        context.route(message.get("path") or "/")
        return _session_frame(context)
    elif kind == "reload":
        await context.reload()
        return _session_frame(context)
    elif kind == "redeem":
        result = await context.redeem_invitation(message.get("dni", ""), message.get("code", ""))
        return _redeem_frame(result)
    else:
        return _invalid_frame(f"Unknown message type {kind!r}")
    return None


@router.websocket("/ws")
async def session_stream(
    websocket: WebSocket,
    directory: DirectoryStoreDep,
    redeemer: RedeemerDep,
    connectivity: ConnectivityDep,
    token: Optional[str] = None,
) -> None:
    if websocket.app.state.store_status == StoreStatus.ERROR:
        await websocket.close(code=status.WS_1013_TRY_AGAIN_LATER)
        return

    await websocket.accept()
    context = SessionContext(directory, redeemer, connectivity)
    # Single writer: every outgoing frame goes through the outbox, in order
    outbox: asyncio.Queue[dict[str, Any]] = asyncio.Queue()
    context.observer.on_snapshot(lambda _snapshot: outbox.put_nowait(_session_frame(context)))

    async def pump() -> None:
        while True:
            await websocket.send_json(await outbox.get())

    sender = asyncio.create_task(pump())
    try:
        await context.open(token)
        while True:
            try:
                message = await websocket.receive_json()
            except ValueError:
                outbox.put_nowait(_invalid_frame("Messages must be JSON objects"))
                continue
            if not isinstance(message, dict):
                outbox.put_nowait(_invalid_frame("Messages must be JSON objects"))
                continue
            try:
                reply = await _handle(context, message)
            except AccessControlError as e:
                reply = _error_frame(e)
            if reply is not None:
                outbox.put_nowait(reply)
    except WebSocketDisconnect:
        logger.debug("Session websocket disconnected")
    finally:
        await context.close()
        sender.cancel()
        try:
            await sender
        except asyncio.CancelledError:
            pass
        except (WebSocketDisconnect, RuntimeError) as e:
            logger.debug("Session websocket writer stopped: %s", e)
