"""WebSocket client for the WhatsApp bridge sidecar."""
from __future__ import annotations

import asyncio
import json
import logging
import uuid
from collections.abc import Awaitable, Callable
from typing import Any, Optional

import websockets
from websockets.asyncio.client import ClientConnection

from ..config import Settings
from ..errors import BridgeCommandError

logger = logging.getLogger(__name__)

IncomingHandler = Callable[[dict[str, Any]], Awaitable[None]]
ClosedHandler = Callable[[], Awaitable[None]]


class BridgeWebSocketClient:
    """Maintains one bridge websocket and correlates command responses.

    Events other than ``response`` and ``ping`` are handed to the handler in
    order, on the listener task.
    """

    def __init__(self, settings: Settings) -> None:
        self.settings = settings
        self._conn: Optional[ClientConnection] = None
        self._listener_task: Optional[asyncio.Task[None]] = None
        self._handler: Optional[IncomingHandler] = None
        self._on_closed: Optional[ClosedHandler] = None
        self._pending: dict[str, asyncio.Future[dict[str, Any]]] = {}
        self._send_lock = asyncio.Lock()
        self._closing = False

    @property
    def connected(self) -> bool:
        return self._conn is not None

    async def connect(self, handler: IncomingHandler, *, on_closed: Optional[ClosedHandler] = None) -> None:
        try:
            await self.disconnect()
            uri = self.settings.bridge_ws_url
            logger.info("Connecting to WhatsApp bridge %s", uri)
            self._closing = False
            self._handler = handler
            self._on_closed = on_closed
            self._conn = await websockets.connect(uri, ping_interval=20, ping_timeout=20)
            self._listener_task = asyncio.create_task(self._listen(), name="wa-bridge-listener")
        except Exception as e:
            logger.error("Failed to connect to WhatsApp bridge: %s", e)
            raise

    async def disconnect(self) -> None:
        self._closing = True
        task = self._listener_task
        # close() may be reached from a handler running on the listener itself
        if task and task is not asyncio.current_task():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
            except Exception as e:
                logger.warning("Error during listener task cleanup: %s", e)
            self._listener_task = None
        if self._conn:
            try:
                await self._conn.close()
            except Exception as e:
                logger.warning("Error closing bridge connection: %s", e)
            self._conn = None
        self._fail_pending("Bridge connection closed")
        self._handler = None
        self._on_closed = None

    async def send(self, message: dict[str, Any]) -> bool:
        """Fire-and-forget frame; returns ``False`` when it could not be written."""
        if not self._conn:
            logger.warning("Cannot send message - bridge websocket not connected")
            return False
        try:
            async with self._send_lock:
                await self._conn.send(json.dumps(message))
            return True
        except websockets.ConnectionClosed:
            logger.warning("Cannot send message - bridge websocket closed")
        except Exception as e:
            logger.error("Failed to send bridge message: %s", e)
        return False

    async def request(self, command: str, payload: dict[str, Any], *, timeout: float) -> dict[str, Any]:
        """Send a command and wait for its ``response`` frame."""
        if not self._conn:
            raise ConnectionError("Bridge websocket not connected")

        request_id = uuid.uuid4().hex
        future: asyncio.Future[dict[str, Any]] = asyncio.get_running_loop().create_future()
        self._pending[request_id] = future
        try:
            async with self._send_lock:
                await self._conn.send(json.dumps({"type": command, "requestId": request_id, "payload": payload}))
            return await asyncio.wait_for(future, timeout=timeout)
        finally:
            self._pending.pop(request_id, None)

    async def _listen(self) -> None:
        assert self._conn is not None
        try:
            async for message in self._conn:
                try:
                    payload = json.loads(message)
                except json.JSONDecodeError:
                    logger.warning("Invalid JSON from bridge: %s", message)
                    continue
                if not isinstance(payload, dict):
                    logger.warning("Invalid bridge frame shape: %s", message)
                    continue
                await self._dispatch(payload)
        except asyncio.CancelledError:
            raise
        except websockets.ConnectionClosedOK:
            logger.info("Bridge websocket closed cleanly")
        except websockets.ConnectionClosedError as exc:
            logger.warning("Bridge websocket closed: %s", exc)
        except Exception:
            logger.exception("Bridge websocket listener crashed")
        finally:
            self._listener_task = None
            conn, self._conn = self._conn, None
            if conn:
                try:
                    await conn.close()
                except Exception as e:
                    logger.debug("Error closing bridge connection after listener exit: %s", e)
            self._fail_pending("Bridge connection closed")
            on_closed = self._on_closed
            if not self._closing and on_closed:
                self._closing = True
                try:
                    await on_closed()
                except Exception as e:
                    logger.exception("Error in bridge close handler: %s", e)

    async def _dispatch(self, payload: dict[str, Any]) -> None:
        message_type = payload.get("type")
        if message_type == "ping":
            await self.send({"type": "pong"})
            return
        if message_type == "response":
            self._resolve_pending(payload)
            return
        if self._handler:
            try:
                await self._handler(payload)
            except Exception as e:
                logger.exception("Error in bridge event handler: %s", e)

    def _resolve_pending(self, payload: dict[str, Any]) -> None:
        request_id = payload.get("requestId")
        future = self._pending.get(request_id) if isinstance(request_id, str) else None
        if not future or future.done():
            logger.debug("Unmatched bridge response %s", request_id)
            return
        if payload.get("ok"):
            result = payload.get("result")
            future.set_result(result if isinstance(result, dict) else {})
            return
        error = payload.get("error") if isinstance(payload.get("error"), dict) else {}
        future.set_exception(
            BridgeCommandError(str(error.get("code") or "ERR_INTERNAL"), str(error.get("message") or "Bridge command failed"))
        )

    def _fail_pending(self, reason: str) -> None:
        for future in self._pending.values():
            if not future.done():
                future.set_exception(ConnectionError(reason))
        self._pending.clear()
