"""Tests for ResponseStreamer termination paths and flush throttling."""
from __future__ import annotations

import asyncio

import pytest

from agent_module.indicators import INDICATOR_CLEAR, AIState
from agent_module.streamer import ResponseStreamer
from agent_module.transport import LocalChatHub

from tests.helpers import FakeClock, RecordingTransport, fragments, wait_for


async def _setup(items, **kwargs):
    hub = LocalChatHub()
    transport = RecordingTransport(hub)
    message = await transport.send_message("general", "")
    disposed = []
    streamer = ResponseStreamer(
        fragments(items),
        transport,
        message,
        on_dispose=disposed.append,
        **kwargs,
    )
    return hub, transport, message, streamer, disposed


@pytest.mark.asyncio
async def test_completion_writes_full_text_then_clears():
    hub, transport, message, streamer, disposed = await _setup(["Sum", "mary: ", "..."])

    text = await streamer.start()

    assert text == "Summary: ..."
    assert hub.get_message(message.id).text == "Summary: ..."
    assert transport.writes[-1] == (message.id, "Summary: ...")
    assert transport.sent_events[-1] == {
        "type": INDICATOR_CLEAR,
        "cid": "messaging:general",
        "message_id": message.id,
    }
    assert streamer.done is True
    assert disposed == [streamer]
    assert hub.subscriber_count == 0


@pytest.mark.asyncio
async def test_flush_is_throttled_but_final_text_is_complete():
    clock = FakeClock()
    hub = LocalChatHub()
    transport = RecordingTransport(hub)
    message = await transport.send_message("general", "")

    async def timed():
        for delay, text in [(0.0, "a"), (0.3, "b"), (0.3, "c"), (0.5, "d"), (0.4, "e")]:
            clock.advance(delay)
            yield text

    streamer = ResponseStreamer(timed(), transport, message, flush_interval=1.0, clock=clock)
    text = await streamer.start()

    assert text == "abcde"
    assert [written for _, written in transport.writes] == ["a", "abcd", "abcde"]


@pytest.mark.asyncio
async def test_empty_fragments_are_skipped():
    _, transport, _, streamer, _ = await _setup(["", "Hi", ""])

    assert await streamer.start() == "Hi"
    assert [written for _, written in transport.writes] == ["Hi", "Hi"]


@pytest.mark.asyncio
async def test_upstream_error_reports_error_state_and_text():
    hub, transport, message, streamer, disposed = await _setup(
        ["partial", RuntimeError("upstream exploded")], flush_interval=10.0
    )

    text = await streamer.start()

    assert text == "partial"
    assert transport.event_kinds() == [AIState.ERROR.value]
    assert hub.get_message(message.id).text == "upstream exploded"
    assert disposed == [streamer]


@pytest.mark.asyncio
async def test_upstream_error_without_description_uses_fallback():
    hub, _, message, streamer, _ = await _setup([RuntimeError()])

    assert await streamer.start() == ""
    assert hub.get_message(message.id).text == "Error generating the message"


@pytest.mark.asyncio
async def test_stop_signal_for_other_message_is_ignored():
    gate = asyncio.Event()
    hub, transport, message, streamer, _ = await _setup(["Hello", gate, " world"])
    task = asyncio.create_task(streamer.start())
    await wait_for(lambda: streamer.text == "Hello")
    writes_before = list(transport.writes)

    await hub.stop_generating("general", "some-other-message")

    assert streamer.done is False
    assert transport.writes == writes_before
    assert transport.sent_events == []

    gate.set()
    assert await task == "Hello world"


@pytest.mark.asyncio
async def test_stop_signal_finalizes_early_with_accumulated_text():
    gate = asyncio.Event()
    hub, transport, message, streamer, disposed = await _setup(
        ["Hello", gate, " never"], flush_interval=10.0
    )
    task = asyncio.create_task(streamer.start())
    await wait_for(lambda: streamer.text == "Hello")

    await hub.stop_generating("general", message.id)
    text = await asyncio.wait_for(task, timeout=1.0)

    assert text == "Hello"
    assert hub.get_message(message.id).text == "Hello"
    assert transport.event_kinds() == [INDICATOR_CLEAR]
    assert disposed == [streamer]
    assert hub.subscriber_count == 0


@pytest.mark.asyncio
async def test_stop_before_any_text_skips_the_write():
    gate = asyncio.Event()
    hub, transport, message, streamer, _ = await _setup([gate, "late"])
    task = asyncio.create_task(streamer.start())
    await asyncio.sleep(0)

    await hub.stop_generating("general", message.id)
    assert await asyncio.wait_for(task, timeout=1.0) == ""

    assert transport.writes == []
    assert transport.event_kinds() == [INDICATOR_CLEAR]


@pytest.mark.asyncio
async def test_forced_dispose_makes_no_further_writes():
    gate = asyncio.Event()
    _, transport, _, streamer, disposed = await _setup(["Hello", gate, " world"], flush_interval=10.0)
    task = asyncio.create_task(streamer.start())
    await wait_for(lambda: streamer.text == "Hello")
    assert streamer.disposed is False
    writes_before = list(transport.writes)

    streamer.dispose()
    streamer.dispose()
    assert streamer.disposed is True
    text = await asyncio.wait_for(task, timeout=1.0)

    assert text == "Hello"
    assert transport.writes == writes_before
    assert transport.sent_events == []
    assert disposed == [streamer]


@pytest.mark.asyncio
async def test_dispose_after_completion_is_a_no_op():
    _, transport, _, streamer, disposed = await _setup(["done"])
    await streamer.start()
    writes, events = list(transport.writes), list(transport.sent_events)
    assert streamer.disposed is True

    streamer.dispose()
    await streamer.cancel()
    streamer.dispose()

    assert transport.writes == writes
    assert transport.sent_events == events
    assert disposed == [streamer]


@pytest.mark.asyncio
async def test_write_failures_are_contained():
    _, transport, _, streamer, disposed = await _setup(["a", "b"])
    transport.fail_updates = True

    assert await streamer.start() == "ab"
    assert transport.event_kinds() == [INDICATOR_CLEAR]
    assert disposed == [streamer]
