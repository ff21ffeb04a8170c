"""Tests for Agent wiring: credentials, filtering, prompt and disposal."""
from __future__ import annotations

import asyncio

import pytest

from agent_module.agent import Agent
from agent_module.config import PROVIDER_CHAT_COMPLETIONS, AgentConfig, AgentLLMConfig
from agent_module.errors import AgentConfigurationError
from agent_module.indicators import INDICATOR_CLEAR, AIState
from agent_module.llm_client import ChatLLMClient
from agent_module.transport import LocalChatHub

from tests.helpers import FakeCompletionClient, RecordingTransport, wait_for


def _config(**overrides) -> AgentConfig:
    overrides.setdefault("min_call_spacing", 0.0)
    return AgentConfig(**overrides)


async def _started_agent(client, **overrides):
    hub = LocalChatHub()
    transport = RecordingTransport(hub, user_id="ai-assistant-general")
    agent = Agent(transport, "general", _config(**overrides), client=client)
    await agent.init()
    return hub, transport, agent


def _replies(hub, agent):
    return [m for m in hub.messages("general") if m.author_id == agent.user_id]


@pytest.mark.asyncio
async def test_init_without_credentials_fails_and_does_not_listen(monkeypatch):
    monkeypatch.delenv("GOOGLE_API_KEY", raising=False)
    hub = LocalChatHub()
    agent = Agent(hub.connect("ai-assistant-general"), "general", _config())

    with pytest.raises(AgentConfigurationError) as excinfo:
        await agent.init()

    assert excinfo.value.setting == "GOOGLE_API_KEY"
    assert hub.subscriber_count == 0


@pytest.mark.asyncio
async def test_init_builds_client_from_environment(monkeypatch):
    monkeypatch.setenv("OPENAI_API_KEY", "sk-test")
    hub = LocalChatHub()
    config = _config(llm=AgentLLMConfig(provider=PROVIDER_CHAT_COMPLETIONS, model="gpt-4o-mini"))
    agent = Agent(hub.connect("ai-assistant-general"), "general", config)

    await agent.init()

    assert isinstance(agent.client, ChatLLMClient)
    assert hub.subscriber_count == 1
    await agent.dispose()


@pytest.mark.asyncio
async def test_end_to_end_reply_is_streamed_into_the_channel():
    client = FakeCompletionClient(["Sum", "mary: ", "..."])
    hub, transport, agent = await _started_agent(client)

    await hub.post_message("general", "alice", "Summarize this paragraph")
    await agent.scheduler.join()

    (reply,) = _replies(hub, agent)
    assert reply.text == "Summary: ..."
    assert transport.event_kinds() == [AIState.THINKING.value, AIState.GENERATING.value, INDICATOR_CLEAR]
    assert [turn.to_dict() for turn in agent.history] == [
        {"role": "user", "text": "Summarize this paragraph"},
        {"role": "model", "text": "Summary: ..."},
    ]
    assert agent.handlers == set()


@pytest.mark.asyncio
async def test_second_message_waits_for_the_first_reply():
    gate = asyncio.Event()
    client = FakeCompletionClient(["Sum", gate, "mary"], ["Second"])
    hub, _, agent = await _started_agent(client)

    await hub.post_message("general", "alice", "Summarize this paragraph")
    await wait_for(lambda: len(agent.handlers) == 1)
    await hub.post_message("general", "alice", "And another")

    assert len(client.requests) == 1
    assert agent.scheduler.pending == 1

    gate.set()
    await agent.scheduler.join()

    assert client.prompts == ["Summarize this paragraph", "And another"]
    assert [m.text for m in _replies(hub, agent)] == ["Summary", "Second"]


@pytest.mark.asyncio
async def test_ignores_own_ai_generated_empty_and_foreign_messages():
    client = FakeCompletionClient()
    hub, _, agent = await _started_agent(client)
    before = agent.get_last_interaction_time()

    await hub.post_message("general", agent.user_id, "talking to myself")
    await hub.post_message("general", "other-bot", "generated", ai_generated=True)
    await hub.post_message("general", "alice", "   ")
    await hub.post_message("random", "alice", "wrong channel")
    await agent.scheduler.join()

    assert client.requests == []
    assert agent.history == []
    assert agent.get_last_interaction_time() == before


@pytest.mark.asyncio
async def test_accepted_message_updates_last_interaction(monkeypatch):
    client = FakeCompletionClient()
    hub, _, agent = await _started_agent(client)
    monkeypatch.setattr("agent_module.agent.time.time", lambda: 12345.0)

    await hub.post_message("general", "alice", "hi")
    await agent.scheduler.join()

    assert agent.get_last_interaction_time() == 12345.0


@pytest.mark.asyncio
async def test_system_prompt_includes_writing_task():
    client = FakeCompletionClient()
    hub, _, agent = await _started_agent(client)

    await hub.post_message("general", "alice", "Draft it", custom={"writingTask": "Cover letter"})
    await hub.post_message("general", "alice", "Anything")
    await agent.scheduler.join()

    first, second = client.requests
    assert "**Writing Context**: Writing Task: Cover letter" in first.system_instruction
    assert "**Writing Context**: General writing assistance." in second.system_instruction
    assert "Today's date is" in first.system_instruction


@pytest.mark.asyncio
async def test_dispose_mid_stream_tears_everything_down():
    gate = asyncio.Event()
    client = FakeCompletionClient(["partial", gate, "never"])
    hub, transport, agent = await _started_agent(client, flush_interval=10.0)

    await hub.post_message("general", "alice", "one")
    await wait_for(lambda: len(agent.handlers) == 1)
    await hub.post_message("general", "alice", "two")
    (streamer,) = agent.handlers
    events_before = list(transport.sent_events)

    await agent.dispose()

    assert streamer.disposed is True
    assert agent.handlers == set()
    assert agent.history == []
    assert agent.scheduler.processing is False
    assert agent.scheduler.pending == 0
    assert transport.connected is False
    assert hub.subscriber_count == 0
    assert transport.sent_events == events_before
    assert len(client.requests) == 1


@pytest.mark.asyncio
async def test_dispose_is_safe_when_idle_and_repeated():
    hub = LocalChatHub()
    agent = Agent(hub.connect("ai-assistant-general"), "general", _config(), client=FakeCompletionClient())

    await agent.dispose()
    await agent.dispose()

    assert hub.subscriber_count == 0
