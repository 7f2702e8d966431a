"""Connection lifecycle supervisor for the WhatsApp session."""
from __future__ import annotations

import logging
import time
from typing import Any, Dict, Optional

from .config import Settings, get_settings
from .credentials import CredentialStore
from .errors import HandshakeFailed, LoggedOut, NotConnected, classify_send_error
from .scheduler import AsyncioScheduler, ScheduledCall, Scheduler, cancel_quietly
from .session import SessionFactory, SessionHandle
from .state import (
    ACTIVE_PHASES,
    ConnectionPhase,
    DisconnectReason,
    SendReceipt,
    StatusSnapshot,
    SupervisorState,
)

logger = logging.getLogger(__name__)


class _GenerationListener:
    """Forwards library events only while its session is still the current one."""

    def __init__(self, supervisor: "ConnectionSupervisor", generation: int) -> None:
        self._supervisor = supervisor
        self._generation = generation

    def _stale(self, event: str) -> bool:
        if self._generation != self._supervisor.generation:
            logger.debug("Dropping %s from superseded session #%d", event, self._generation)
            return True
        return False

    async def on_qr_challenge(self, blob: str) -> None:
        if not self._stale("qr"):
            await self._supervisor.on_qr_challenge(blob)

    async def on_connection_open(self, handle: SessionHandle) -> None:
        if not self._stale("open"):
            await self._supervisor.on_connection_open(handle)

    async def on_connection_close(self, reason: DisconnectReason) -> None:
        if not self._stale("close"):
            await self._supervisor.on_connection_close(reason)


class ConnectionSupervisor:
    """Owns the session handle and drives connect, QR, reconnect and logout handling.

    Everything runs on one event loop. ``start`` flips the phase before its
    first ``await`` so overlapping calls cannot open a second handshake.
    """

    def __init__(
        self,
        *,
        session_factory: SessionFactory,
        credential_store: CredentialStore,
        settings: Optional[Settings] = None,
        scheduler: Optional[Scheduler] = None,
    ) -> None:
        self.settings = settings or get_settings()
        self._policy = self.settings.reconnect
        self._factory = session_factory
        self._store = credential_store
        self._scheduler: Scheduler = scheduler or AsyncioScheduler()
        self._state = SupervisorState()
        self._generation = 0
        self._handle: Optional[SessionHandle] = None
        self._retry_call: Optional[ScheduledCall] = None
        self._keepalive_call: Optional[ScheduledCall] = None
        self._running = False

    @property
    def phase(self) -> ConnectionPhase:
        return self._state.phase

    @property
    def state(self) -> SupervisorState:
        return self._state

    @property
    def generation(self) -> int:
        return self._generation

    @property
    def qr_challenge(self) -> Optional[str]:
        return self._state.qr_challenge

    @property
    def retry_pending(self) -> bool:
        return self._retry_call is not None and not self._retry_call.done()

    # ============================================================
    # Host lifecycle
    # ============================================================

    async def launch(self) -> None:
        """Called once by the host at startup."""
        logger.info("Starting connection supervisor")
        self._running = True
        try:
            if await self._store.exists():
                logger.info("Saved credentials found - resuming linked session")
            else:
                logger.info("No saved credentials - a QR code will be issued")
        except Exception as exc:
            logger.warning("Could not inspect credential store: %s", exc)
        self._schedule_keepalive()
        await self.start()

    async def shutdown(self) -> None:
        logger.info("Stopping connection supervisor")
        self._running = False
        cancel_quietly(self._retry_call)
        cancel_quietly(self._keepalive_call)
        self._retry_call = None
        self._keepalive_call = None

        self._generation += 1
        handle = self._state.session_handle or self._handle
        self._handle = None
        self._state.session_handle = None
        self._state.qr_challenge = None
        self._set_phase(ConnectionPhase.IDLE)
        await self._release(handle)

        aclose = getattr(self._scheduler, "aclose", None)
        if aclose is not None:
            await aclose()
        try:
            await self._factory.aclose()
        except Exception as exc:
            logger.warning("Error closing session factory: %s", exc)
        logger.info("Connection supervisor stopped")

    # ============================================================
    # Commands
    # ============================================================

    async def start(self) -> bool:
        """Begin a handshake unless one is outstanding or already open.

        Returns ``True`` when a new handshake was started.
        """
        state = self._state
        if state.phase in ACTIVE_PHASES:
            logger.info("Start ignored - connection already %s", state.phase.value)
            return False

        cancel_quietly(self._retry_call)
        self._retry_call = None
        if state.exhausted:
            logger.info("Manual start after exhausted retries - resetting attempt counter")
            state.exhausted = False
            state.reconnect_attempts = 0

        self._generation += 1
        generation = self._generation
        state.qr_challenge = None
        state.last_error = None
        self._set_phase(ConnectionPhase.INITIALIZING)
        logger.info("Initializing WhatsApp session #%d", generation)

        try:
            handle = await self._factory.create_session(self._store, _GenerationListener(self, generation))
        except Exception as exc:
            if generation != self._generation:
                logger.debug("Handshake #%d failed after being superseded: %s", generation, exc)
                return False
            await self._handle_init_failure(exc)
            return True

        if generation != self._generation or state.phase not in ACTIVE_PHASES:
            # shut down or closed while the handshake was being set up
            await self._release(handle)
            return True
        self._handle = handle
        logger.info("Waiting for connection...")
        return True

    async def send_message(self, recipient: str, body: str) -> SendReceipt:
        """Deliver ``body`` to a canonical recipient id. Never retried."""
        handle = self._state.session_handle
        if self._state.phase != ConnectionPhase.READY or handle is None:
            raise NotConnected("WhatsApp not connected. Please scan QR code first.")

        try:
            message_id = await handle.send_text(recipient, body)
        except Exception as exc:
            error = classify_send_error(exc)
            logger.error("Send to %s failed (%s): %s", recipient, type(error).__name__, exc)
            if error is exc:
                raise
            raise error from exc

        logger.info("Sent message to %s", recipient)
        return SendReceipt(recipient=recipient, message_id=message_id)

    def status(self) -> StatusSnapshot:
        state = self._state
        device = None
        if state.phase == ConnectionPhase.READY and state.session_handle is not None:
            device = _describe_device(state.session_handle.me)
        return StatusSnapshot(
            phase=state.phase,
            has_qr_challenge=state.qr_challenge is not None,
            reconnect_attempts=state.reconnect_attempts,
            exhausted=state.exhausted,
            last_disconnect_reason=state.last_disconnect_reason,
            last_error=state.last_error,
            device=device,
        )

    # ============================================================
    # Library events
    # ============================================================

    async def on_qr_challenge(self, blob: str) -> None:
        state = self._state
        if state.phase not in {ConnectionPhase.INITIALIZING, ConnectionPhase.AWAITING_SCAN}:
            logger.debug("Ignoring QR challenge in phase %s", state.phase.value)
            return
        state.qr_challenge = blob
        self._set_phase(ConnectionPhase.AWAITING_SCAN)
        logger.info("QR code generated - open /qr to scan it")

    async def on_connection_open(self, handle: SessionHandle) -> None:
        state = self._state
        cancel_quietly(self._retry_call)
        self._retry_call = None
        self._handle = handle
        state.session_handle = handle
        state.qr_challenge = None
        state.reconnect_attempts = 0
        state.exhausted = False
        state.last_error = None
        self._set_phase(ConnectionPhase.READY)
        logger.info("WhatsApp connected successfully - ready to send messages")

    async def on_connection_close(self, reason: DisconnectReason) -> None:
        state = self._state
        handle = state.session_handle or self._handle
        self._handle = None
        state.session_handle = None
        state.qr_challenge = None
        state.last_disconnect_reason = reason
        # late events from the dropped session must not touch the next one
        self._generation += 1
        self._set_phase(ConnectionPhase.CLOSED)
        logger.warning("Connection closed (reason=%s)", reason.value)
        await self._release(handle)

        if reason == DisconnectReason.LOGGED_OUT:
            state.last_error = str(LoggedOut("Device logged out - scan a new QR code"))
            logger.error("Device logged out - clearing auth data")
            try:
                await self._store.purge()
            except Exception as exc:
                logger.exception("Failed to purge credential store: %s", exc)
            self._schedule_retry(self._policy.logged_out_delay, "Reinitializing for a new QR code")
        elif reason == DisconnectReason.RESTART_REQUIRED:
            self._schedule_retry(self._policy.restart_delay, "Restart required, reconnecting")
        elif reason == DisconnectReason.TIMED_OUT:
            self._schedule_counted_retry(self._policy.timeout_delay, "Connection timed out")
        else:
            self._schedule_counted_retry(self._policy.unknown_delay, "Connection lost")

    # ============================================================
    # Internals
    # ============================================================

    async def _handle_init_failure(self, exc: BaseException) -> None:
        error = exc if isinstance(exc, HandshakeFailed) else HandshakeFailed(
            "WhatsApp initialization failed", log_message=f"{type(exc).__name__}: {exc}"
        )
        logger.error("Error initializing WhatsApp: %s", error)
        # events still queued by the failed session must not revive it
        self._generation += 1
        state = self._state
        state.session_handle = None
        state.qr_challenge = None
        state.last_error = str(error)
        state.last_disconnect_reason = DisconnectReason.UNKNOWN
        self._handle = None
        self._set_phase(ConnectionPhase.CLOSED)
        self._schedule_counted_retry(self._policy.init_failure_delay, "Initialization failed")

    def _schedule_counted_retry(self, delay: float, cause: str) -> None:
        state = self._state
        state.reconnect_attempts += 1
        limit = self._policy.max_attempts
        if state.reconnect_attempts > limit:
            cancel_quietly(self._retry_call)
            self._retry_call = None
            state.exhausted = True
            logger.error(
                "%s - max reconnection attempts reached (%d); waiting for POST /init",
                cause,
                limit,
            )
            return
        logger.warning("%s - attempt %d/%d", cause, state.reconnect_attempts, limit)
        self._schedule_retry(delay, cause)

    def _schedule_retry(self, delay: float, cause: str) -> None:
        cancel_quietly(self._retry_call)
        logger.info("%s in %.1fs", cause, delay)
        self._retry_call = self._scheduler.call_later(delay, self._retry_start, name="wa-reconnect")

    async def _retry_start(self) -> None:
        self._retry_call = None
        await self.start()

    def _schedule_keepalive(self) -> None:
        if not self._running:
            return
        self._keepalive_call = self._scheduler.call_later(
            self._policy.keepalive_interval, self._keepalive_tick, name="wa-keepalive"
        )

    async def _keepalive_tick(self) -> None:
        self._keepalive_call = None
        try:
            await self._send_keepalive()
        finally:
            self._schedule_keepalive()

    async def _send_keepalive(self) -> None:
        handle = self._state.session_handle
        if self._state.phase != ConnectionPhase.READY or handle is None:
            return
        generation = self._generation
        try:
            await handle.send_presence("available")
        except Exception as exc:
            if generation != self._generation:
                return
            logger.error("Heartbeat failed: %s", exc)
            await self.on_connection_close(DisconnectReason.UNKNOWN)
            return
        logger.info("Heartbeat - presence sent")

    def _set_phase(self, phase: ConnectionPhase) -> None:
        previous = self._state.phase
        self._state.phase = phase
        self._state.phase_changed_at = time.time()
        if previous != phase:
            logger.info("Connection phase %s -> %s", previous.value, phase.value)

    async def _release(self, handle: Optional[SessionHandle]) -> None:
        if handle is None:
            return
        try:
            await handle.close()
        except Exception as exc:
            logger.warning("Error closing WhatsApp session: %s", exc)


def _describe_device(me: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    me = me or {}
    jid = str(me.get("id") or "")
    phone = jid.split("@", 1)[0].split(":", 1)[0] or "Unknown"
    return {"phone": phone, "name": me.get("name") or "Business Account"}


__all__ = ["ConnectionSupervisor"]
