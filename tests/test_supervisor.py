import asyncio

import pytest

from wa_relay.errors import (
    BridgeCommandError,
    InvalidRecipient,
    NotConnected,
    RateLimited,
    TransportError,
    TransportTimeout,
)
from wa_relay.messages import canonicalize_recipient
from wa_relay.state import ConnectionPhase, DisconnectReason


@pytest.mark.asyncio
async def test_start_from_idle_begins_handshake(harness):
    started = await harness.supervisor.start()

    assert started is True
    assert harness.supervisor.phase == ConnectionPhase.INITIALIZING
    assert harness.factory.calls == 1


@pytest.mark.asyncio
async def test_start_is_idempotent_while_active(harness):
    sup = harness.supervisor
    await sup.start()
    assert await sup.start() is False

    await harness.factory.last.emit_qr("Q1")
    assert await sup.start() is False

    await harness.factory.last.emit_open()
    assert await sup.start() is False

    assert harness.factory.calls == 1
    assert sup.phase == ConnectionPhase.READY


@pytest.mark.asyncio
async def test_qr_then_open_then_timeout_schedules_one_counted_retry(harness):
    sup = harness.supervisor
    await sup.start()
    session = harness.factory.last

    await session.emit_qr("Q1")
    snap = sup.status()
    assert (snap.phase, snap.has_qr_challenge, snap.reconnect_attempts) == (ConnectionPhase.AWAITING_SCAN, True, 0)

    await session.emit_open()
    snap = sup.status()
    assert (snap.phase, snap.has_qr_challenge, snap.reconnect_attempts) == (ConnectionPhase.READY, False, 0)

    await session.emit_close(DisconnectReason.TIMED_OUT)
    snap = sup.status()
    assert snap.phase == ConnectionPhase.CLOSED
    assert snap.reconnect_attempts == 1
    assert snap.last_disconnect_reason == DisconnectReason.TIMED_OUT
    assert session.closed
    assert len(harness.scheduler.pending("wa-reconnect")) == 1

    await harness.scheduler.advance(4)
    assert sup.phase == ConnectionPhase.CLOSED

    await harness.scheduler.advance(1)
    assert sup.phase == ConnectionPhase.INITIALIZING
    assert harness.factory.calls == 2


@pytest.mark.asyncio
async def test_newer_qr_replaces_older_and_open_clears_it(harness):
    sup = harness.supervisor
    await sup.start()
    session = harness.factory.last

    await session.emit_qr("Q1")
    await session.emit_qr("Q2")
    assert sup.qr_challenge == "Q2"

    await session.emit_open()
    assert sup.qr_challenge is None


@pytest.mark.asyncio
async def test_qr_ignored_outside_handshake(harness):
    session = await harness.connect()
    await session.emit_qr("late")

    assert harness.supervisor.phase == ConnectionPhase.READY
    assert harness.supervisor.qr_challenge is None


@pytest.mark.asyncio
async def test_open_resets_attempt_counter(harness):
    sup = harness.supervisor
    await sup.start()
    for _ in range(2):
        await harness.factory.last.emit_close(DisconnectReason.TIMED_OUT)
        await harness.scheduler.advance(5)
    assert sup.state.reconnect_attempts == 2

    await harness.factory.last.emit_open()
    assert sup.state.reconnect_attempts == 0
    assert sup.retry_pending is False


@pytest.mark.asyncio
async def test_six_consecutive_timeouts_exhaust_retries(harness):
    sup = harness.supervisor
    await sup.start()

    for _ in range(5):
        await harness.factory.last.emit_close(DisconnectReason.TIMED_OUT)
        await harness.scheduler.advance(5)

    assert harness.factory.calls == 6
    await harness.factory.last.emit_close(DisconnectReason.TIMED_OUT)

    snap = sup.status()
    assert snap.exhausted is True
    assert snap.reconnect_attempts == 6
    assert snap.phase == ConnectionPhase.CLOSED
    assert harness.scheduler.pending("wa-reconnect") == []

    await harness.scheduler.advance(3600)
    assert harness.factory.calls == 6


@pytest.mark.asyncio
async def test_unknown_closes_count_toward_exhaustion(harness):
    sup = harness.supervisor
    await sup.start()
    for _ in range(5):
        await harness.factory.last.emit_close(DisconnectReason.UNKNOWN)
        await harness.scheduler.advance(5)
    await harness.factory.last.emit_close(DisconnectReason.UNKNOWN)

    assert sup.status().exhausted is True
    assert sup.retry_pending is False


@pytest.mark.asyncio
async def test_manual_start_after_exhaustion_resets_counter(harness):
    sup = harness.supervisor
    sup.settings.reconnect.max_attempts = 0
    await sup.start()
    await harness.factory.last.emit_close(DisconnectReason.TIMED_OUT)
    assert sup.status().exhausted is True

    assert await sup.start() is True
    snap = sup.status()
    assert snap.exhausted is False
    assert snap.reconnect_attempts == 0
    assert snap.phase == ConnectionPhase.INITIALIZING


@pytest.mark.asyncio
async def test_logged_out_purges_credentials_before_restart(harness):
    sup = harness.supervisor
    session = await harness.connect()
    harness.store.files["creds.json"] = {"me": "x"}

    await session.emit_close(DisconnectReason.LOGGED_OUT)

    assert harness.store.purge_calls == 1
    assert harness.store.files == {}
    snap = sup.status()
    assert snap.phase == ConnectionPhase.CLOSED
    assert snap.reconnect_attempts == 0
    assert snap.last_disconnect_reason == DisconnectReason.LOGGED_OUT
    assert "logged out" in snap.last_error

    await harness.scheduler.advance(5)
    assert harness.journal == ["create_session", "purge", "create_session"]
    assert sup.phase == ConnectionPhase.INITIALIZING


@pytest.mark.asyncio
async def test_restart_required_is_not_counted(harness):
    sup = harness.supervisor
    await sup.start()
    for _ in range(8):
        await harness.factory.last.emit_close(DisconnectReason.RESTART_REQUIRED)
        await harness.scheduler.advance(2)
        assert sup.phase == ConnectionPhase.CLOSED
        await harness.scheduler.advance(1)
        assert sup.phase == ConnectionPhase.INITIALIZING

    assert sup.state.reconnect_attempts == 0
    assert sup.state.exhausted is False


@pytest.mark.asyncio
async def test_init_failure_waits_longer_and_counts(harness):
    sup = harness.supervisor
    harness.factory.fail_with = RuntimeError("bridge unreachable")

    assert await sup.start() is True
    snap = sup.status()
    assert snap.phase == ConnectionPhase.CLOSED
    assert snap.reconnect_attempts == 1
    assert snap.last_error

    harness.factory.fail_with = None
    await harness.scheduler.advance(29)
    assert harness.factory.calls == 1

    await harness.scheduler.advance(1)
    assert harness.factory.calls == 2
    assert sup.phase == ConnectionPhase.INITIALIZING


@pytest.mark.asyncio
async def test_events_from_superseded_session_are_ignored(harness):
    sup = harness.supervisor
    await sup.start()
    stale = harness.factory.last
    await stale.emit_close(DisconnectReason.TIMED_OUT)
    await harness.scheduler.advance(5)
    current = harness.factory.last
    assert current is not stale

    await stale.emit_qr("old")
    await stale.emit_open()
    await stale.emit_close(DisconnectReason.LOGGED_OUT)

    assert sup.phase == ConnectionPhase.INITIALIZING
    assert sup.qr_challenge is None
    assert harness.store.purge_calls == 0

    await current.emit_qr("new")
    assert sup.qr_challenge == "new"


@pytest.mark.asyncio
async def test_send_rejected_when_not_ready(harness):
    with pytest.raises(NotConnected):
        await harness.supervisor.send_message("923001234567@s.whatsapp.net", "hi")
    # a failed send never kicks off a connection attempt
    assert harness.factory.calls == 0

    await harness.supervisor.start()
    await harness.factory.last.emit_qr("Q1")
    with pytest.raises(NotConnected):
        await harness.supervisor.send_message("923001234567@s.whatsapp.net", "hi")
    assert harness.factory.last.sent == []


@pytest.mark.asyncio
async def test_send_when_ready_returns_receipt(harness):
    session = await harness.connect()
    recipient = canonicalize_recipient("+92 300 1234567")

    receipt = await harness.supervisor.send_message(recipient, "hello")

    assert receipt.recipient == recipient == "923001234567@s.whatsapp.net"
    assert receipt.message_id == "MSG1"
    assert session.sent == [(recipient, "hello")]


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "raised, expected",
    [
        (BridgeCommandError("not_registered", "number is not on WhatsApp"), InvalidRecipient),
        (BridgeCommandError("rate_limit", "rate-overlimit"), RateLimited),
        (asyncio.TimeoutError(), TransportTimeout),
        (ConnectionError("socket closed"), TransportError),
    ],
)
async def test_send_failures_are_classified_and_not_retried(harness, raised, expected):
    session = await harness.connect()
    session.send_error = raised

    with pytest.raises(expected):
        await harness.supervisor.send_message("923001234567@s.whatsapp.net", "hi")

    assert harness.supervisor.phase == ConnectionPhase.READY
    assert harness.factory.calls == 1
    assert harness.scheduler.pending("wa-reconnect") == []


@pytest.mark.asyncio
async def test_status_reports_device_when_ready(harness):
    await harness.connect()
    snap = harness.supervisor.status()

    assert snap.ready is True
    assert snap.device == {"phone": "923001234567", "name": "Expirel"}


@pytest.mark.asyncio
async def test_keepalive_pings_and_reconnects_on_failure(harness):
    sup = harness.supervisor
    await sup.launch()
    session = harness.factory.last
    await session.emit_open()

    await harness.scheduler.advance(300)
    assert session.presences == ["available"]

    session.presence_error = ConnectionError("connection closed")
    await harness.scheduler.advance(300)

    snap = sup.status()
    assert snap.phase == ConnectionPhase.CLOSED
    assert snap.last_disconnect_reason == DisconnectReason.UNKNOWN
    assert snap.reconnect_attempts == 1
    assert session.closed
    assert len(harness.scheduler.pending("wa-keepalive")) == 1
    assert len(harness.scheduler.pending("wa-reconnect")) == 1


@pytest.mark.asyncio
async def test_keepalive_skipped_while_not_ready(harness):
    await harness.supervisor.launch()
    await harness.factory.last.emit_qr("Q1")

    await harness.scheduler.advance(300)

    assert harness.factory.last.presences == []
    assert harness.supervisor.phase == ConnectionPhase.AWAITING_SCAN


@pytest.mark.asyncio
async def test_shutdown_cancels_timers_and_releases_session(harness):
    sup = harness.supervisor
    await sup.launch()
    session = harness.factory.last
    await session.emit_open()

    await sup.shutdown()

    assert sup.phase == ConnectionPhase.IDLE
    assert session.closed
    assert harness.factory.closed
    assert harness.scheduler.pending() == []


@pytest.mark.asyncio
async def test_shutdown_drops_pending_retry(harness):
    sup = harness.supervisor
    await sup.launch()
    await harness.factory.last.emit_close(DisconnectReason.TIMED_OUT)
    assert sup.retry_pending

    await sup.shutdown()
    await harness.scheduler.advance(60)

    assert harness.factory.calls == 1
    assert sup.phase == ConnectionPhase.IDLE
