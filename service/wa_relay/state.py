"""Connection lifecycle state definitions."""
from __future__ import annotations

import enum
import time
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Dict, Optional

if TYPE_CHECKING:
    from .session import SessionHandle


class ConnectionPhase(str, enum.Enum):
    """
    Lifecycle phases of the WhatsApp connection:

    1. IDLE            - Nothing running (process start, after shutdown)
    2. INITIALIZING    - Handshake requested from the bridge
    3. AWAITING_SCAN   - QR challenge issued, waiting for the phone
    4. READY           - Session open, messages can be sent
    5. CLOSED          - Connection dropped; a retry is usually scheduled
    """
    IDLE = "idle"
    INITIALIZING = "initializing"
    AWAITING_SCAN = "awaiting_scan"
    READY = "ready"
    CLOSED = "closed"


class DisconnectReason(str, enum.Enum):
    """Why the bridge reported a closed connection."""
    LOGGED_OUT = "logged_out"
    RESTART_REQUIRED = "restart_required"
    TIMED_OUT = "timed_out"
    UNKNOWN = "unknown"

    @classmethod
    def from_status_code(cls, status_code: Optional[int]) -> "DisconnectReason":
        """Map a Baileys ``DisconnectReason`` status code."""
        return _STATUS_CODES.get(status_code, cls.UNKNOWN)


_STATUS_CODES: Dict[Optional[int], DisconnectReason] = {
    401: DisconnectReason.LOGGED_OUT,
    515: DisconnectReason.RESTART_REQUIRED,
    408: DisconnectReason.TIMED_OUT,
}

# Phases in which a handshake is outstanding or already done.
ACTIVE_PHASES = frozenset({ConnectionPhase.INITIALIZING, ConnectionPhase.AWAITING_SCAN, ConnectionPhase.READY})


@dataclass
class SupervisorState:
    phase: ConnectionPhase = ConnectionPhase.IDLE
    qr_challenge: Optional[str] = None
    reconnect_attempts: int = 0
    session_handle: Optional["SessionHandle"] = None
    exhausted: bool = False
    last_disconnect_reason: Optional[DisconnectReason] = None
    last_error: Optional[str] = None
    phase_changed_at: float = field(default_factory=time.time)


@dataclass(frozen=True)
class StatusSnapshot:
    """Read-only view handed to the HTTP layer."""

    phase: ConnectionPhase
    has_qr_challenge: bool
    reconnect_attempts: int
    exhausted: bool = False
    last_disconnect_reason: Optional[DisconnectReason] = None
    last_error: Optional[str] = None
    device: Optional[Dict[str, Any]] = None

    @property
    def ready(self) -> bool:
        return self.phase == ConnectionPhase.READY

    @property
    def initializing(self) -> bool:
        return self.phase in {ConnectionPhase.INITIALIZING, ConnectionPhase.AWAITING_SCAN}

    def as_dict(self) -> Dict[str, Any]:
        return {
            "phase": self.phase.value,
            "has_qr_challenge": self.has_qr_challenge,
            "reconnect_attempts": self.reconnect_attempts,
            "exhausted": self.exhausted,
            "last_disconnect_reason": self.last_disconnect_reason.value if self.last_disconnect_reason else None,
            "last_error": self.last_error,
        }


@dataclass(frozen=True)
class SendReceipt:
    recipient: str
    message_id: Optional[str] = None
    sent_at: float = field(default_factory=time.time)


__all__ = [
    "ACTIVE_PHASES",
    "ConnectionPhase",
    "DisconnectReason",
    "SendReceipt",
    "StatusSnapshot",
    "SupervisorState",
]
