"""Fakes shared by the test modules."""
from __future__ import annotations

import asyncio
from typing import Any, AsyncIterator, Dict, List, Tuple

from agent_module.errors import TransportError
from agent_module.llm_client import CompletionClient, CompletionRequest
from agent_module.transport import LocalChatHub, LocalChatTransport


class FakeClock:
    def __init__(self, now: float = 0.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class RecordingTransport(LocalChatTransport):
    """Local transport that remembers every write it was asked to make."""

    def __init__(self, hub: LocalChatHub, user_id: str = "ai-assistant-test") -> None:
        super().__init__(hub, user_id)
        self.writes: List[Tuple[str, str]] = []
        self.sent_events: List[Dict[str, Any]] = []
        self.fail_updates = False

    async def update_message(self, message_id: str, text: str) -> None:
        self.writes.append((message_id, text))
        if self.fail_updates:
            raise TransportError("update rejected")
        await super().update_message(message_id, text)

    async def send_event(self, channel_id: str, event: Dict[str, Any]) -> None:
        self.sent_events.append(event)
        await super().send_event(channel_id, event)

    def event_kinds(self) -> List[str]:
        return [event.get("ai_state", event["type"]) for event in self.sent_events]


async def fragments(items: List[Any]) -> AsyncIterator[str]:
    """Yield strings; raise exceptions; wait on asyncio.Event gates."""
    for item in items:
        if isinstance(item, BaseException):
            raise item
        if isinstance(item, asyncio.Event):
            await item.wait()
            continue
        yield item


class FakeCompletionClient(CompletionClient):
    """Plays back one scripted response per upstream call.

    A response is either an exception (raised when the call is started) or a
    list of items for :func:`fragments`.
    """

    def __init__(self, *responses: Any) -> None:
        self.responses = list(responses)
        self.requests: List[CompletionRequest] = []

    async def open_stream(self, request: CompletionRequest) -> AsyncIterator[str]:
        self.requests.append(request)
        response = self.responses.pop(0) if self.responses else ["ok"]
        if isinstance(response, BaseException):
            raise response
        return fragments(response)

    @property
    def prompts(self) -> List[str]:
        return [request.turns[-1].text for request in self.requests]


async def wait_for(predicate, timeout: float = 2.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.001)
