"""WhatsApp sessions hosted by the Baileys bridge sidecar.

Wire protocol (JSON text frames):

* commands ``{"type", "requestId", "payload"}``: ``connect``, ``send_text``,
  ``presence``; answered by ``{"type": "response", "requestId", "ok",
  "result" | "error"}``
* ``end`` and ``pong`` are fire-and-forget
* events: ``qr``, ``connection``, ``creds``, ``message``, ``error``, ``ping``

Listener callbacks run in order on a per-session task, never on the
websocket listener, so tearing the socket down from another task cannot
interrupt the supervisor halfway through handling an event.
"""
from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import Any, Dict, Optional, Tuple

from ..config import Settings
from ..credentials import CredentialStore
from ..errors import HandshakeFailed
from ..session import SessionListener
from ..state import DisconnectReason
from .http_client import WaVersionClient
from .ws_client import BridgeWebSocketClient

logger = logging.getLogger(__name__)

ClientFactory = Callable[[Settings], BridgeWebSocketClient]
Notice = Tuple[Callable[..., Awaitable[None]], Tuple[Any, ...]]


class BridgeSession:
    """``SessionHandle`` backed by one bridge websocket."""

    def __init__(
        self,
        settings: Settings,
        client: BridgeWebSocketClient,
        store: CredentialStore,
        listener: SessionListener,
    ) -> None:
        self.settings = settings
        self._client = client
        self._store = store
        self._listener = listener
        self._me: Optional[Dict[str, Any]] = None
        self._closed = False
        self._released = False
        self._notices: asyncio.Queue[Optional[Notice]] = asyncio.Queue()
        self._notifier: Optional[asyncio.Task[None]] = None

    @property
    def me(self) -> Optional[Dict[str, Any]]:
        return self._me

    @property
    def closed(self) -> bool:
        return self._closed

    async def send_text(self, recipient: str, text: str) -> Optional[str]:
        result = await self._client.request(
            "send_text",
            {"to": recipient, "text": text},
            timeout=self.settings.bridge_request_timeout,
        )
        message_id = result.get("messageId")
        return str(message_id) if message_id else None

    async def send_presence(self, state: str) -> None:
        await self._client.request("presence", {"state": state}, timeout=self.settings.bridge_request_timeout)

    async def close(self) -> None:
        """Release the bridge connection. Safe to call more than once, from any task."""
        if self._released:
            return
        self._released = True
        self._closed = True
        if self._notifier is not None:
            # notices already queued are still delivered
            self._notices.put_nowait(None)
        await self._client.send({"type": "end", "payload": {}})
        await self._client.disconnect()

    async def drain(self) -> None:
        """Wait until every queued listener callback has run."""
        await self._notices.join()

    def _notify(self, callback: Callable[..., Awaitable[None]], *args: Any) -> None:
        if self._released:
            logger.debug("Session released - dropping %s", getattr(callback, "__name__", callback))
            return
        self._notices.put_nowait((callback, args))
        if self._notifier is None:
            self._notifier = asyncio.create_task(self._deliver_notices(), name="wa-session-events")

    async def _deliver_notices(self) -> None:
        while True:
            notice = await self._notices.get()
            try:
                if notice is None:
                    return
                callback, args = notice
                try:
                    await callback(*args)
                except Exception as exc:
                    logger.exception("Session listener failed: %s", exc)
            finally:
                self._notices.task_done()

    async def handle_event(self, event: dict[str, Any]) -> None:
        event_type = event.get("type")

        if event_type == "qr":
            qr = event.get("qr")
            if isinstance(qr, str) and qr:
                self._notify(self._listener.on_qr_challenge, qr)
            else:
                logger.warning("Bridge sent an empty QR event")
            return

        if event_type == "connection":
            self._handle_connection(event)
            return

        if event_type == "creds":
            files = event.get("files")
            if not isinstance(files, dict):
                logger.warning("Bridge sent malformed creds update")
                return
            try:
                await self._store.save(files)
            except Exception as exc:
                logger.exception("Failed to persist credentials: %s", exc)
            return

        if event_type == "message":
            if not event.get("fromMe"):
                logger.info("Received message from %s", event.get("remoteJid"))
            return

        if event_type == "error":
            logger.error("WhatsApp bridge error: %s", event.get("message") or event.get("error"))
            return

        logger.debug("Ignoring bridge event %s", event_type)

    def _handle_connection(self, event: dict[str, Any]) -> None:
        connection = event.get("connection")
        if connection == "open":
            me = event.get("me")
            self._me = me if isinstance(me, dict) else None
            self._notify(self._listener.on_connection_open, self)
            return

        if connection == "close":
            if self._closed:
                return
            self._closed = True
            status_code = event.get("statusCode")
            reason = DisconnectReason.from_status_code(status_code if isinstance(status_code, int) else None)
            logger.info(
                "Bridge reported close (status=%s, reason=%s)",
                status_code,
                event.get("reason") or "Unknown",
            )
            self._notify(self._listener.on_connection_close, reason)
            return

        logger.debug("Connection update: %s", connection)

    async def on_transport_closed(self) -> None:
        """Bridge socket dropped without a close event."""
        if self._closed:
            return
        self._closed = True
        logger.warning("Bridge websocket dropped - treating as unknown disconnect")
        self._notify(self._listener.on_connection_close, DisconnectReason.UNKNOWN)


class BridgeSessionFactory:
    """``SessionFactory`` that opens a fresh bridge connection per handshake."""

    def __init__(
        self,
        settings: Settings,
        *,
        version_client: Optional[WaVersionClient] = None,
        client_factory: ClientFactory = BridgeWebSocketClient,
    ) -> None:
        self.settings = settings
        self._versions = version_client or WaVersionClient(settings)
        self._client_factory = client_factory

    async def create_session(self, store: CredentialStore, listener: SessionListener) -> BridgeSession:
        version = await self._versions.latest_version()
        creds = await store.load()
        client = self._client_factory(self.settings)
        session = BridgeSession(self.settings, client, store, listener)
        try:
            await client.connect(session.handle_event, on_closed=session.on_transport_closed)
            await client.request(
                "connect",
                {"version": version, "browser": self.settings.browser, "creds": creds or None},
                timeout=self.settings.bridge_request_timeout,
            )
        except Exception as exc:
            await session.close()
            raise HandshakeFailed(
                "Could not start a WhatsApp session on the bridge",
                log_message=f"bridge handshake failed: {type(exc).__name__}: {exc}",
            ) from exc
        logger.info("Bridge accepted session (saved credentials: %s)", "yes" if creds else "no")
        return session

    async def aclose(self) -> None:
        await self._versions.aclose()


__all__ = ["BridgeSession", "BridgeSessionFactory"]
