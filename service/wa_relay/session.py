"""Contracts between the supervisor and the messaging library."""
from __future__ import annotations

from typing import Any, Dict, Optional, Protocol

from .credentials import CredentialStore
from .state import DisconnectReason


class SessionHandle(Protocol):
    """An authenticated (or authenticating) connection to WhatsApp."""

    @property
    def me(self) -> Optional[Dict[str, Any]]: ...

    async def send_text(self, recipient: str, text: str) -> Optional[str]:
        """Send ``text``; returns the message id when the library reports one."""
        ...

    async def send_presence(self, state: str) -> None: ...

    async def close(self) -> None: ...


class SessionListener(Protocol):
    async def on_qr_challenge(self, blob: str) -> None: ...

    async def on_connection_open(self, handle: SessionHandle) -> None: ...

    async def on_connection_close(self, reason: DisconnectReason) -> None: ...


class SessionFactory(Protocol):
    async def create_session(self, store: CredentialStore, listener: SessionListener) -> SessionHandle:
        """Begin a handshake. Raises if setup fails; later progress arrives via ``listener``."""
        ...

    async def aclose(self) -> None: ...


__all__ = ["SessionFactory", "SessionHandle", "SessionListener"]
