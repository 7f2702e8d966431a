"""Shared fakes: a manual clock, an in-memory session library and credential store."""
from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, List, Optional

import pytest

from wa_relay.config import ReconnectSettings, Settings
from wa_relay.supervisor import ConnectionSupervisor


@dataclass
class _ManualCall:
    name: str
    when: float
    callback: Callable[[], Awaitable[None]]
    cancelled: bool = False
    fired: bool = False

    def cancel(self) -> None:
        self.cancelled = True

    def done(self) -> bool:
        return self.cancelled or self.fired


class ManualScheduler:
    """Virtual-time scheduler; ``advance`` fires due callbacks in order."""

    def __init__(self) -> None:
        self.now = 0.0
        self.calls: List[_ManualCall] = []

    def call_later(self, delay: float, callback, *, name: str) -> _ManualCall:
        call = _ManualCall(name=name, when=self.now + delay, callback=callback)
        self.calls.append(call)
        return call

    def pending(self, name: Optional[str] = None) -> List[_ManualCall]:
        return [c for c in self.calls if not c.done() and (name is None or c.name == name)]

    async def advance(self, seconds: float) -> None:
        target = self.now + seconds
        while True:
            due = [c for c in self.pending() if c.when <= target]
            if not due:
                break
            call = min(due, key=lambda c: c.when)
            self.now = call.when
            call.fired = True
            await call.callback()
        self.now = target


class FakeSession:
    def __init__(self, listener, journal: List[str], me: Optional[Dict[str, Any]] = None) -> None:
        self.listener = listener
        self.journal = journal
        self._me = me or {"id": "923001234567:7@s.whatsapp.net", "name": "Expirel"}
        self.sent: List[tuple[str, str]] = []
        self.presences: List[str] = []
        self.send_error: Optional[BaseException] = None
        self.presence_error: Optional[BaseException] = None
        self.closed = False

    @property
    def me(self) -> Optional[Dict[str, Any]]:
        return self._me

    async def send_text(self, recipient: str, text: str) -> Optional[str]:
        if self.send_error is not None:
            raise self.send_error
        self.sent.append((recipient, text))
        return f"MSG{len(self.sent)}"

    async def send_presence(self, state: str) -> None:
        if self.presence_error is not None:
            raise self.presence_error
        self.presences.append(state)

    async def close(self) -> None:
        self.closed = True

    # helpers that play the library's part
    async def emit_qr(self, blob: str) -> None:
        await self.listener.on_qr_challenge(blob)

    async def emit_open(self) -> None:
        await self.listener.on_connection_open(self)

    async def emit_close(self, reason) -> None:
        await self.listener.on_connection_close(reason)


class FakeSessionFactory:
    def __init__(self, journal: List[str]) -> None:
        self.journal = journal
        self.sessions: List[FakeSession] = []
        self.fail_with: Optional[BaseException] = None
        self.closed = False

    @property
    def calls(self) -> int:
        return len([entry for entry in self.journal if entry == "create_session"])

    @property
    def last(self) -> FakeSession:
        return self.sessions[-1]

    async def create_session(self, store, listener) -> FakeSession:
        self.journal.append("create_session")
        if self.fail_with is not None:
            raise self.fail_with
        session = FakeSession(listener, self.journal)
        self.sessions.append(session)
        return session

    async def aclose(self) -> None:
        self.closed = True


class FakeCredentialStore:
    def __init__(self, journal: List[str]) -> None:
        self.journal = journal
        self.files: Dict[str, Any] = {}
        self.purge_calls = 0

    async def exists(self) -> bool:
        return "creds.json" in self.files

    async def load(self) -> Dict[str, Any]:
        return dict(self.files)

    async def save(self, files: Dict[str, Any]) -> None:
        self.files.update(files)

    async def purge(self) -> None:
        self.journal.append("purge")
        self.purge_calls += 1
        self.files.clear()


@dataclass
class Harness:
    supervisor: ConnectionSupervisor
    factory: FakeSessionFactory
    store: FakeCredentialStore
    scheduler: ManualScheduler
    journal: List[str] = field(default_factory=list)

    async def connect(self) -> FakeSession:
        """Drive the supervisor to READY through the public event path."""
        await self.supervisor.start()
        session = self.factory.last
        await session.emit_open()
        return session


@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    return Settings(
        auth_dir=tmp_path / "auth",
        log_directory=tmp_path / "logs",
        reconnect=ReconnectSettings(),
    )


@pytest.fixture
def harness(settings: Settings) -> Harness:
    journal: List[str] = []
    factory = FakeSessionFactory(journal)
    store = FakeCredentialStore(journal)
    scheduler = ManualScheduler()
    supervisor = ConnectionSupervisor(
        settings=settings,
        session_factory=factory,
        credential_store=store,
        scheduler=scheduler,
    )
    return Harness(supervisor=supervisor, factory=factory, store=store, scheduler=scheduler, journal=journal)


@pytest.fixture
def manual_scheduler() -> ManualScheduler:
    return ManualScheduler()
