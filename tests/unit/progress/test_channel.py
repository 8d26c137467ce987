from __future__ import annotations

import json

import pytest

from bulk_ingest.exceptions import ConnectionRejectedError
from bulk_ingest.loading.events import CancelledEvent, ErrorEvent, LifecycleQueue
from bulk_ingest.progress import ChannelConfig, ProgressChannel
from bulk_ingest.progress.messages import CancelledMessage
from bulk_ingest.testing import RecordingConnection


# ── Connections ──────────────────────────────────────────────────────


class TestConnect:
    async def test_connected_message(self, channel: ProgressChannel) -> None:
        conn = RecordingConnection()
        subscriber = await channel.connect(conn, "s1", "user-1")

        assert subscriber.session_id == "s1"
        assert conn.types() == ["connected"]
        assert conn.messages[0]["sessionId"] == "s1"
        assert channel.total_connections == 1

    @pytest.mark.parametrize(("session_id", "principal"), [(None, "u"), ("s1", ""), ("", None)])
    async def test_missing_identifiers_are_rejected(
        self, channel: ProgressChannel, session_id: str | None, principal: str | None
    ) -> None:
        conn = RecordingConnection()
        with pytest.raises(ConnectionRejectedError):
            await channel.connect(conn, session_id, principal)
        assert conn.closed_with is not None
        assert conn.closed_with[0] == 1008
        assert channel.total_connections == 0

    async def test_disconnect(self, channel: ProgressChannel) -> None:
        conn = RecordingConnection()
        await channel.connect(conn, "s1", "u")
        channel.disconnect(conn)
        channel.disconnect(conn)
        assert channel.total_connections == 0
        assert channel.stats().active_sessions == 0


# ── Broadcast ────────────────────────────────────────────────────────


class TestBroadcast:
    async def test_no_subscribers_is_a_noop(self, channel: ProgressChannel) -> None:
        assert await channel.broadcast("nobody", CancelledMessage(session_id="nobody")) == 0

    async def test_only_the_session_is_reached(self, channel: ProgressChannel) -> None:
        first, second, other = RecordingConnection(), RecordingConnection(), RecordingConnection()
        await channel.connect(first, "s1", "a")
        await channel.connect(second, "s1", "b")
        await channel.connect(other, "s2", "c")

        sent = await channel.publish(CancelledEvent(session_id="s1"))

        assert sent == 2
        assert first.types() == ["connected", "cancelled"]
        assert second.types() == ["connected", "cancelled"]
        assert other.types() == ["connected"]

    async def test_failed_send_drops_subscriber(self, channel: ProgressChannel) -> None:
        healthy = RecordingConnection()
        broken = RecordingConnection()
        await channel.connect(healthy, "s1", "a")
        await channel.connect(broken, "s1", "b")
        broken.fail_on_send = True

        sent = await channel.publish(ErrorEvent(session_id="s1", error="boom"))

        assert sent == 1
        assert channel.total_connections == 1
        assert healthy.types()[-1] == "error"

    async def test_closed_connection_is_pruned_on_broadcast(
        self, channel: ProgressChannel
    ) -> None:
        conn = RecordingConnection()
        await channel.connect(conn, "s1", "a")
        conn.drop()

        assert await channel.publish(CancelledEvent(session_id="s1")) == 0
        assert channel.total_connections == 0

    async def test_messages_keep_emission_order(self, channel: ProgressChannel) -> None:
        conn = RecordingConnection()
        await channel.connect(conn, "s1", "a")
        for error in ("one", "two", "three"):
            await channel.publish(ErrorEvent(session_id="s1", error=error))
        assert [m["data"]["error"] for m in conn.messages[1:]] == ["one", "two", "three"]


# ── Client frames ────────────────────────────────────────────────────


class TestClientMessages:
    async def test_ping_gets_pong(self, channel: ProgressChannel) -> None:
        conn = RecordingConnection()
        await channel.connect(conn, "s1", "a")
        await channel.handle_message(conn, json.dumps({"type": "ping"}))
        assert conn.types() == ["connected", "pong"]

    async def test_subscribe_moves_session(self, channel: ProgressChannel) -> None:
        conn = RecordingConnection()
        await channel.connect(conn, "s1", "a")
        await channel.handle_message(conn, b'{"type": "subscribe", "sessionId": "s2"}')

        assert await channel.publish(CancelledEvent(session_id="s1")) == 0
        assert await channel.publish(CancelledEvent(session_id="s2")) == 1
        assert [s.session_id for s in channel.stats().sessions] == ["s2"]

    @pytest.mark.parametrize("raw", ["not json", "[1, 2]", '{"type": "dance"}'])
    async def test_bad_frames_are_ignored(self, channel: ProgressChannel, raw: str) -> None:
        conn = RecordingConnection()
        await channel.connect(conn, "s1", "a")
        await channel.handle_message(conn, raw)
        assert conn.types() == ["connected"]
        assert channel.total_connections == 1

    async def test_unregistered_connection_is_ignored(self, channel: ProgressChannel) -> None:
        conn = RecordingConnection()
        await channel.handle_message(conn, '{"type": "ping"}')
        assert conn.sent == []


# ── Heartbeat ────────────────────────────────────────────────────────


async def test_heartbeat_prunes_stale_connections(channel: ProgressChannel) -> None:
    live, stale = RecordingConnection(), RecordingConnection()
    await channel.connect(live, "s1", "a")
    await channel.connect(stale, "s1", "b")
    stale.drop()

    remaining = await channel.heartbeat()

    assert remaining == 1
    assert live.pings == 1
    assert live.messages[-1]["type"] == "heartbeat"
    assert live.messages[-1]["connections"] == 1
    assert stale.pings == 0


# ── Lifecycle ────────────────────────────────────────────────────────


async def test_relay_drains_events_on_stop() -> None:
    events = LifecycleQueue()
    channel = ProgressChannel(ChannelConfig(heartbeat_interval=3600), events)
    await channel.start()
    conn = RecordingConnection()
    await channel.connect(conn, "s1", "a")

    events.put(ErrorEvent(session_id="s1", error="late"))
    events.put(CancelledEvent(session_id="s1"))
    await channel.stop()

    assert conn.types() == ["connected", "error", "cancelled"]
    assert conn.closed_with == (1001, "Server shutting down")
    assert channel.health() == "error"


async def test_health_and_stats(channel: ProgressChannel) -> None:
    assert channel.health() == "degraded"
    await channel.connect(RecordingConnection(), "s1", "a")
    await channel.connect(RecordingConnection(), "s1", "b")

    stats = channel.stats()

    assert channel.health() == "healthy"
    assert stats.total_connections == 2
    assert stats.active_sessions == 1
    assert stats.sessions[0].clients == 2
    assert stats.started_at is not None
