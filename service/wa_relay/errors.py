"""Error taxonomy for the relay."""
from __future__ import annotations

import asyncio
from typing import Optional


class RelayError(RuntimeError):
    """Base class; ``user_message`` is safe to return to HTTP callers."""

    status_code: int = 500

    def __init__(self, user_message: str, *, log_message: Optional[str] = None) -> None:
        super().__init__(log_message or user_message)
        self.user_message = user_message


class NotConnected(RelayError):
    status_code = 503


class HandshakeFailed(RelayError):
    """Session setup raised before any QR or connection event arrived."""


class LoggedOut(RelayError):
    """Linked device was removed; only a fresh QR scan recovers."""


class TransportError(RelayError):
    """Catch-all for failures talking to WhatsApp through the bridge."""


class TransportTimeout(TransportError):
    status_code = 504


class TransportUnknown(TransportError):
    pass


class RateLimited(RelayError):
    status_code = 429


class InvalidRecipient(RelayError):
    status_code = 400


class BridgeCommandError(RuntimeError):
    """Bridge answered a command with ``ok: false``."""

    def __init__(self, code: str, message: str) -> None:
        super().__init__(f"{code}: {message}")
        self.code = code
        self.message = message


_NOT_REGISTERED_MARKERS = ("not_registered", "not registered", "not on whatsapp", "invalid_jid")
_RATE_LIMIT_MARKERS = ("rate_limit", "rate limit", "rate-overlimit", "too many requests", "429")


def classify_send_error(exc: BaseException) -> RelayError:
    """Map a transport exception from ``send_text`` onto the taxonomy."""
    if isinstance(exc, RelayError):
        return exc
    if isinstance(exc, (asyncio.TimeoutError, TimeoutError)):
        return TransportTimeout("WhatsApp did not confirm the message in time", log_message=repr(exc))

    code = getattr(exc, "code", "") or ""
    text = f"{code} {exc}".lower()
    if any(marker in text for marker in _NOT_REGISTERED_MARKERS):
        return InvalidRecipient("Phone number is not registered on WhatsApp", log_message=str(exc))
    if any(marker in text for marker in _RATE_LIMIT_MARKERS):
        return RateLimited("Rate limit exceeded. Please try again later.", log_message=str(exc))
    return TransportUnknown(str(exc) or "Failed to send WhatsApp message", log_message=repr(exc))


__all__ = [
    "BridgeCommandError",
    "HandshakeFailed",
    "InvalidRecipient",
    "LoggedOut",
    "NotConnected",
    "RateLimited",
    "RelayError",
    "TransportError",
    "TransportTimeout",
    "TransportUnknown",
    "classify_send_error",
]
