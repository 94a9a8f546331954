"""Tests for StreamRelay: placeholder, throttled edits, finalize, presence."""

import asyncio
import base64
import logging

import pytest


@pytest.fixture
def gateway(registry):
    return registry.gateway("111")


async def _open_session(relay, gateway, wait_until, text="Hello"):
    await relay.handle_chunk("111", 1, text)
    await wait_until(lambda: gateway.sent_messages)
    return gateway.sent_messages[0].message_id


class _HeldEdits:
    """Make ``edit_message`` wait on ``release`` and record overlap."""

    def __init__(self, gateway):
        self.release = asyncio.Event()
        self.started: list[str] = []
        self.in_flight = 0
        self.max_in_flight = 0
        self._edit = gateway.edit_message
        gateway.edit_message = self._held_edit

    async def _held_edit(self, chat_id, message_id, text):
        self.started.append(text)
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            await self.release.wait()
            await self._edit(chat_id, message_id, text)
        finally:
            self.in_flight -= 1


class TestStreaming:
    async def test_first_chunk_sends_placeholder(self, relay, gateway, wait_until):
        await _open_session(relay, gateway, wait_until)

        assert gateway.texts() == ["Thinking..."]
        assert relay.session_count == 1

    async def test_edits_are_throttled(self, registry, gateway, wait_until):
        from tavern_bridge.streaming import StreamRelay

        relay = StreamRelay(registry, throttle_seconds=0.3)
        await _open_session(relay, gateway, wait_until, "He")
        for text in ("Hel", "Hell", "Hello", "Hello wor", "Hello world\nnext part"):
            await relay.handle_chunk("111", 1, text)
            await asyncio.sleep(0.01)

        assert len(gateway.edits) <= 1

        await asyncio.sleep(0.4)
        assert len(gateway.edits) == 1
        assert gateway.edits[0]["text"] == "Hello world ..."

    async def test_stream_end_cancels_pending_edit(self, relay, gateway, wait_until):
        await _open_session(relay, gateway, wait_until)
        await relay.handle_chunk("111", 1, "Hello again")
        await relay.handle_end("111", 1)
        await asyncio.sleep(0.2)

        assert gateway.edits == []
        assert relay.session_count == 1

    async def test_edit_waits_for_the_one_in_flight(self, relay, gateway, wait_until):
        held = _HeldEdits(gateway)
        await _open_session(relay, gateway, wait_until, "Hello")
        await wait_until(lambda: held.started)

        await relay.handle_chunk("111", 1, "Hello world")
        await asyncio.sleep(0.35)

        assert held.started == ["Hello ..."]
        assert gateway.edits == []

        held.release.set()
        await wait_until(lambda: len(gateway.edits) == 2)

        assert [edit["text"] for edit in gateway.edits] == [
            "Hello ...",
            "Hello world ...",
        ]
        assert held.max_in_flight == 1

    async def test_stream_end_without_session(self, relay, caplog):
        with caplog.at_level(logging.WARNING):
            await relay.handle_end("111", 1)
        assert "no session" in caplog.text

    async def test_unknown_bot_is_logged(self, relay, caplog):
        with caplog.at_level(logging.ERROR):
            await relay.handle_chunk("999", 1, "hi")
        assert "unknown bot: 999" in caplog.text
        assert relay.session_count == 0


class TestFinalize:
    async def test_anchor_edits_placeholder_and_rest_sent_new(
        self, relay, gateway, wait_until
    ):
        placeholder = await _open_session(relay, gateway, wait_until, "A")

        await relay.finalize("111", 1, "A\nB\n")

        assert gateway.edits == [{"chat_id": 1, "message_id": placeholder, "text": "A"}]
        assert gateway.texts() == ["Thinking...", "B"]
        assert relay.session_count == 0

    async def test_waits_for_edit_in_flight(self, relay, gateway, wait_until):
        held = _HeldEdits(gateway)
        placeholder = await _open_session(relay, gateway, wait_until, "Hello")
        await wait_until(lambda: held.started)

        final = asyncio.create_task(relay.finalize("111", 1, "Hello world"))
        await asyncio.sleep(0.05)

        assert not final.done()
        assert held.started == ["Hello ..."]

        held.release.set()
        await final

        assert held.started == ["Hello ...", "Hello world"]
        assert held.max_in_flight == 1
        assert gateway.edits[-1] == {
            "chat_id": 1,
            "message_id": placeholder,
            "text": "Hello world",
        }

    async def test_without_session_anchor_is_new_message(self, relay, gateway):
        await relay.finalize("111", 1, "\nA\n\nB")

        assert gateway.texts() == ["A", "B"]
        assert gateway.edits == []

    async def test_blank_text_sends_nothing(self, relay, gateway, caplog):
        with caplog.at_level(logging.WARNING):
            await relay.finalize("111", 1, " \n \n")

        assert gateway.sent_messages == []
        assert "empty or whitespace" in caplog.text

    async def test_unchanged_edit_is_not_an_error(
        self, relay, gateway, wait_until, caplog
    ):
        await _open_session(relay, gateway, wait_until)

        with caplog.at_level(logging.ERROR):
            await relay.finalize("111", 1, "Thinking...")

        assert gateway.edits == []
        assert not [r for r in caplog.records if r.levelno >= logging.ERROR]

    async def test_failed_placeholder_sends_anchor_new(
        self, relay, gateway, wait_until
    ):
        gateway.failing.add("send_message")
        await relay.handle_chunk("111", 1, "Hi")
        session = relay.session("111", 1)
        await wait_until(lambda: session.message_id.done())
        gateway.failing.clear()

        await relay.finalize("111", 1, "Hi there")

        assert gateway.texts() == ["Hi there"]
        assert gateway.edits == []

    async def test_images_sent_before_text(self, relay, gateway):
        calls = []
        gateway.on_call = lambda method, *args: calls.append(method)
        images = [
            {"base64": base64.b64encode(b"png").decode(), "mimeType": "image/png"},
            {"base64": "not base64!", "mimeType": "image/png"},
        ]

        await relay.finalize("111", 1, "caption", images)

        assert calls == ["send_photo", "send_message"]
        assert gateway.photos[0]["data"] == b"png"

    async def test_failed_part_does_not_stop_others(self, relay, gateway):
        sent = []

        def _on_call(method, chat_id=None, text=None, *rest):
            if method == "send_message":
                sent.append(text)
                if text == "B":
                    gateway.failing.add("send_message")
                else:
                    gateway.failing.discard("send_message")

        gateway.on_call = _on_call
        await relay.finalize("111", 1, "A\nB\nC")

        assert sent == ["A", "B", "C"]
        assert gateway.texts() == ["A", "C"]

    async def test_ai_reply_sends_every_part_new(self, relay, gateway):
        await relay.reply("111", 1, "one\n\ntwo\n")

        assert gateway.texts() == ["one", "two"]
        assert gateway.edits == []

    async def test_split_disabled(self, registry, gateway):
        from tavern_bridge.streaming import StreamRelay

        relay = StreamRelay(registry, split_char="")
        await relay.reply("111", 1, "one\ntwo")

        assert gateway.texts() == ["one\ntwo"]

    async def test_error_message_discards_session(self, relay, gateway, wait_until):
        await _open_session(relay, gateway, wait_until)

        await relay.error("111", 1, "Generation failed")

        assert gateway.texts() == ["Thinking...", "Generation failed"]
        assert relay.session_count == 0


class TestHistory:
    async def test_history_sent_as_document(self, relay, gateway):
        data = base64.b64encode(b"<html></html>").decode()
        await relay.send_history("111", 1, data, "chat.html")

        [document] = gateway.documents
        assert document["data"] == b"<html></html>"
        assert document["file_name"] == "chat.html"
        assert document["mime_type"] == "text/html"

    async def test_history_failure_notifies(self, relay, gateway):
        gateway.failing.add("send_document")
        await relay.send_history("111", 1, base64.b64encode(b"x").decode(), "c.html")

        assert gateway.texts() == ["Failed to send chat history file."]


class TestPresence:
    async def test_typing_once(self, relay, gateway):
        await relay.typing("111", 1)
        assert gateway.chat_actions == [(1, "typing")]

    async def test_chat_action_repeats_until_finalized(self, relay, gateway):
        relay.start_presence("111", 1, "upload_photo")
        await asyncio.sleep(0.07)
        assert len(gateway.chat_actions) >= 2
        assert {action for _, action in gateway.chat_actions} == {"upload_photo"}

        await relay.finalize("111", 1, "done")
        count = len(gateway.chat_actions)
        await asyncio.sleep(0.06)

        assert len(gateway.chat_actions) == count
        assert relay.presence_count == 0

    async def test_presence_stops_on_gateway_failure(self, relay, gateway, wait_until):
        gateway.failing.add("send_chat_action")
        relay.start_presence("111", 1, "upload_photo")

        await wait_until(lambda: relay.presence_count == 0)


class TestReset:
    async def test_reset_drops_sessions_and_presence(self, relay, gateway, wait_until):
        await _open_session(relay, gateway, wait_until)
        await relay.handle_chunk("111", 1, "more text")
        relay.start_presence("111", 1, "typing")

        await relay.reset()
        await asyncio.sleep(0.15)

        assert relay.session_count == 0
        assert relay.presence_count == 0
        assert gateway.edits == []

    async def test_reset_resolves_pending_placeholder(self, relay):
        # Placeholder send still in flight when the host goes away.
        await relay.handle_chunk("111", 1, "Hi")
        session = relay.session("111", 1)

        await relay.reset()

        assert session.message_id.done()
