"""Tests for HostConnection."""

import logging

import pytest


@pytest.fixture
def conn():
    from tavern_bridge.connection import HostConnection

    return HostConnection()


class TestHostConnection:
    async def test_send_without_socket(self, conn):
        from tavern_bridge.errors import HostUnavailableError

        assert not conn.is_connected
        with pytest.raises(HostUnavailableError):
            await conn.send({"type": "ping"})

    async def test_send_uses_socket(self, conn, host):
        conn.attach(host)
        await conn.send({"type": "user_message"})

        assert host.sent == [{"type": "user_message"}]

    async def test_send_failure_wrapped(self, conn, host):
        from tavern_bridge.errors import HostUnavailableError

        host.fail = True
        conn.attach(host)
        with pytest.raises(HostUnavailableError, match="socket closed"):
            await conn.send({"type": "user_message"})

    async def test_loss_runs_listeners_in_order(self, conn, host):
        calls = []

        async def first():
            calls.append("first")

        async def second():
            calls.append("second")

        conn.on_lost(first)
        conn.on_lost(second)
        conn.attach(host)

        assert await conn.handle_loss(host) is True
        assert calls == ["first", "second"]
        assert not conn.is_connected

    async def test_stale_socket_loss_ignored(self, conn, host, make_host):
        calls = []

        async def listener():
            calls.append("lost")

        conn.on_lost(listener)
        old = make_host()
        conn.attach(old)
        conn.attach(host)

        assert await conn.handle_loss(old) is False
        assert calls == []
        assert conn.is_connected

    async def test_failing_listener_does_not_block_others(self, conn, host, caplog):
        calls = []

        async def broken():
            raise RuntimeError("boom")

        async def healthy():
            calls.append("ok")

        conn.on_lost(broken)
        conn.on_lost(healthy)
        conn.attach(host)

        with caplog.at_level(logging.ERROR):
            await conn.handle_loss(host)

        assert calls == ["ok"]
        assert "listener failed" in caplog.text

    async def test_bridge_disconnect_drains_queue_and_streams(
        self, registry, bots, make_job, make_host, wait_until
    ):
        """Scenario: 1 active + 2 queued jobs and an open stream, host drops."""
        from tavern_bridge.connection import HostConnection
        from tavern_bridge.job_queue import JobQueue
        from tavern_bridge.streaming import StreamRelay

        socket = make_host()
        conn = HostConnection()
        queue = JobQueue(conn, registry)
        relay = StreamRelay(registry, throttle_seconds=0.05)
        conn.on_lost(relay.reset)
        conn.on_lost(queue.handle_disconnect)
        socket.respond = lambda p: p.get("isQueuedSwitch") and queue.confirm_switch()
        conn.attach(socket)

        for bot in bots:
            queue.enqueue(make_job(bot))
        await wait_until(lambda: socket.of_type("user_message"))
        await relay.handle_chunk("111", 1, "partial")

        await conn.handle_loss(socket)

        assert relay.session_count == 0
        assert queue.pending_count == 0
        assert not queue.is_processing
        notices = [t for bot in bots for t in registry.gateway(bot.id).texts()]
        assert len([n for n in notices if "lost" in n]) == 3
