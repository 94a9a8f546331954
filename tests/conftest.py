"""Shared test fixtures for tavern-bridge tests."""

import asyncio

import pytest


class FakeHost:
    """Stands in for the generation host's WebSocket.

    Records every payload the bridge sends. ``respond`` (if set) is called
    with each payload, letting a test script the host's behaviour.
    """

    def __init__(self) -> None:
        self.sent: list[dict] = []
        self.respond = None
        self.fail = False

    async def send_json(self, data, mode="text"):
        if self.fail:
            raise ConnectionError("socket closed")
        self.sent.append(data)
        if self.respond is not None:
            self.respond(data)

    def of_type(self, event_type: str) -> list[dict]:
        return [p for p in self.sent if p["type"] == event_type]

    def commands(self) -> list[str]:
        return [p["command"] for p in self.sent if p["type"] == "execute_command"]


@pytest.fixture
def wait_until():
    """Poll a predicate until it holds (fails the test after ``timeout``)."""

    async def _wait(predicate, timeout: float = 1.0) -> None:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while not predicate():
            if loop.time() > deadline:
                pytest.fail("condition not met in time")
            await asyncio.sleep(0.005)

    return _wait


@pytest.fixture
def bots():
    """Three personas; Bob also switches connection profile."""
    from tavern_bridge.models import Bot

    return (
        Bot(id="111", character_name="Alice"),
        Bot(id="222", character_name="Bob", connection_profile="fast-profile"),
        Bot(id="333", character_name="Carol"),
    )


@pytest.fixture
def registry(bots):
    """BotRegistry with a MemoryGateway per bot."""
    from tavern_bridge.bots import BotRegistry
    from tavern_bridge.gateway import MemoryGateway

    registry = BotRegistry()
    for bot in bots:
        registry.register(bot, MemoryGateway())
    return registry


@pytest.fixture
def make_host():
    """Factory for extra fake host sockets."""
    return FakeHost


@pytest.fixture
def host():
    return FakeHost()


@pytest.fixture
def connection(host):
    """HostConnection with the fake host attached."""
    from tavern_bridge.connection import HostConnection

    connection = HostConnection()
    connection.attach(host)
    return connection


@pytest.fixture
async def queue(connection, registry):
    """JobQueue with short switch deadlines."""
    from tavern_bridge.job_queue import JobQueue

    queue = JobQueue(
        connection,
        registry,
        character_switch_timeout=0.2,
        profile_switch_timeout=0.2,
    )
    yield queue
    await queue.close()


@pytest.fixture
async def relay(registry):
    """StreamRelay with millisecond timings."""
    from tavern_bridge.streaming import StreamRelay

    relay = StreamRelay(registry, throttle_seconds=0.1, chat_action_interval=0.02)
    yield relay
    await relay.close()


@pytest.fixture
def auto_confirm(host, queue):
    """Make the fake host confirm every switch request immediately."""

    def _respond(payload):
        if payload.get("isQueuedSwitch"):
            queue.confirm_switch()

    host.respond = _respond
    return host


@pytest.fixture
def make_job():
    """Build message Jobs for a bot."""
    from tavern_bridge.models import Job, MessageEntry, MessagePayload

    def _make(bot, chat_id=1, text="hello", attachments=()):
        entry = MessageEntry(text=text, attachments=tuple(attachments))
        return Job(
            bot=bot,
            chat_id=chat_id,
            user_id=7,
            payload=MessagePayload(entries=(entry,), text=text),
        )

    return _make
