"""FastAPI control plane for starting and stopping channel agents.

Besides the agent lifecycle endpoints, the app exposes the local chat hub so
the service can be driven end-to-end over HTTP: users post messages and stop
signals to a channel and read back the streamed replies and indicator events.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import time
from typing import Any, Callable, Dict, List, Optional

from fastapi import FastAPI, HTTPException
from pydantic import BaseModel, Field, validator

from .agent import Agent
from .config import AgentConfig, AgentLLMConfig
from .errors import AgentError, AgentNotFoundError
from .llm_client import CompletionClient
from .transport import DEFAULT_CHANNEL_TYPE, LocalChatHub
from .utils import setup_logging

logger = logging.getLogger(__name__)

DEFAULT_REAP_INTERVAL_SECONDS = 60.0


# ---------- Request Models ----------
class StartAgentRequest(BaseModel):
    channel_id: str = Field(..., description="Channel the agent should join.")
    channel_type: str = DEFAULT_CHANNEL_TYPE

    @validator("channel_id")
    def _not_empty(cls, value: str) -> str:
        if not value or not value.strip():
            raise ValueError("field must not be empty")
        return value


class StopAgentRequest(BaseModel):
    channel_id: str

    @validator("channel_id")
    def _not_empty(cls, value: str) -> str:
        if not value or not value.strip():
            raise ValueError("field must not be empty")
        return value


class PostMessageRequest(BaseModel):
    user_id: str = Field(..., description="Author of the message.")
    text: str = ""
    custom: Dict[str, Any] = Field(default_factory=dict)

    @validator("user_id")
    def _not_empty(cls, value: str) -> str:
        if not value or not value.strip():
            raise ValueError("field must not be empty")
        return value


class StopGeneratingRequest(BaseModel):
    message_id: str


# ---------- Registry ----------
class AgentRegistry:
    """Owns the running agents, keyed by channel id."""

    def __init__(
        self,
        hub: LocalChatHub,
        config: Optional[AgentConfig] = None,
        *,
        client_factory: Optional[Callable[[AgentLLMConfig], CompletionClient]] = None,
    ) -> None:
        self.hub = hub
        self.config = config or AgentConfig()
        self._client_factory = client_factory
        self._agents: Dict[str, Agent] = {}

    def __contains__(self, channel_id: str) -> bool:
        return channel_id in self._agents

    def __len__(self) -> int:
        return len(self._agents)

    def get(self, channel_id: str) -> Agent:
        agent = self._agents.get(channel_id)
        if agent is None:
            raise AgentNotFoundError(channel_id)
        return agent

    async def start(self, channel_id: str, channel_type: str = DEFAULT_CHANNEL_TYPE) -> bool:
        """Start an agent for ``channel_id``; False if one is already running."""
        if channel_id in self._agents:
            return False

        self.hub.ensure_channel(channel_id, channel_type)
        transport = self.hub.connect(f"ai-assistant-{channel_id}")
        client = self._client_factory(self.config.llm) if self._client_factory else None
        agent = Agent(transport, channel_id, self.config, client=client)
        try:
            await agent.init()
        except Exception:
            await transport.disconnect()
            raise
        self._agents[channel_id] = agent
        logger.info("AI agent started for channel: %s", channel_id)
        return True

    async def stop(self, channel_id: str) -> bool:
        agent = self._agents.pop(channel_id, None)
        if agent is None:
            return False
        await agent.dispose()
        logger.info("AI agent stopped for channel: %s", channel_id)
        return True

    async def reap_idle(self, max_idle_seconds: float, now: Optional[float] = None) -> List[str]:
        """Stop agents whose last interaction is older than ``max_idle_seconds``."""
        now = time.time() if now is None else now
        idle = [
            channel_id
            for channel_id, agent in self._agents.items()
            if now - agent.get_last_interaction_time() > max_idle_seconds
        ]
        for channel_id in idle:
            logger.info("Disposing idle agent for channel %s", channel_id)
            await self.stop(channel_id)
        return idle

    async def dispose_all(self) -> None:
        for channel_id in list(self._agents):
            try:
                await self.stop(channel_id)
            except Exception:
                logger.exception("Failed to stop agent for channel %s", channel_id)


async def _reap_forever(registry: AgentRegistry, max_idle_seconds: float, interval: float) -> None:
    while True:
        await asyncio.sleep(interval)
        try:
            await registry.reap_idle(max_idle_seconds)
        except Exception:
            logger.exception("Idle agent cleanup failed")


# ---------- FastAPI Factory ----------
def create_app(
    config: Optional[AgentConfig] = None,
    *,
    hub: Optional[LocalChatHub] = None,
    client_factory: Optional[Callable[[AgentLLMConfig], CompletionClient]] = None,
    log_dir: Optional[str] = None,
    reap_interval: float = DEFAULT_REAP_INTERVAL_SECONDS,
) -> FastAPI:
    if log_dir:
        setup_logging(log_dir, logging.INFO)

    config = config or AgentConfig()
    registry = AgentRegistry(hub or LocalChatHub(), config, client_factory=client_factory)

    @contextlib.asynccontextmanager
    async def lifespan(app: FastAPI):
        reaper = None
        if config.idle_timeout > 0 and reap_interval > 0:
            reaper = asyncio.create_task(_reap_forever(registry, config.idle_timeout, reap_interval))
        try:
            yield
        finally:
            if reaper is not None:
                reaper.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await reaper
            await registry.dispose_all()

    app = FastAPI(title="AI Chat Relay", version="0.1.0", lifespan=lifespan)
    app.state.registry = registry
    app.state.hub = registry.hub

    @app.get("/health")
    async def health() -> Dict[str, str]:
        return {"status": "ok"}

    @app.post("/start-ai-agent")
    async def start_ai_agent(request: StartAgentRequest) -> Dict[str, str]:
        try:
            started = await registry.start(request.channel_id, request.channel_type)
        except AgentError as exc:
            logger.error("Error starting AI agent for channel %s: %s", request.channel_id, exc)
            raise HTTPException(status_code=500, detail=str(exc)) from exc
        except Exception as exc:
            logger.exception("Error starting AI agent for channel %s", request.channel_id)
            raise HTTPException(status_code=500, detail="Failed to start AI agent") from exc
        if not started:
            return {"message": "Agent already running for this channel"}
        return {"message": "AI agent started successfully"}

    @app.post("/stop-ai-agent")
    async def stop_ai_agent(request: StopAgentRequest) -> Dict[str, str]:
        try:
            stopped = await registry.stop(request.channel_id)
        except Exception as exc:
            logger.exception("Error stopping AI agent for channel %s", request.channel_id)
            raise HTTPException(status_code=500, detail="Failed to stop AI agent") from exc
        if not stopped:
            return {"message": "No agent running for this channel"}
        return {"message": "AI agent stopped successfully"}

    @app.get("/agent-status")
    async def agent_status(channel_id: str) -> Dict[str, str]:
        return {"status": "connected" if channel_id in registry else "disconnected"}

    @app.get("/agent-history/{channel_id}")
    async def agent_history(channel_id: str) -> Dict[str, Any]:
        try:
            agent = registry.get(channel_id)
        except AgentNotFoundError as exc:
            raise HTTPException(status_code=404, detail=str(exc)) from exc
        return {
            "channel_id": channel_id,
            "messages": [turn.to_dict() for turn in agent.history],
            "last_interaction": agent.get_last_interaction_time(),
        }

    @app.post("/channels/{channel_id}/messages")
    async def post_message(channel_id: str, request: PostMessageRequest) -> Dict[str, Any]:
        message = await registry.hub.post_message(
            channel_id,
            request.user_id,
            request.text,
            custom=request.custom,
        )
        return message.to_dict()

    @app.get("/channels/{channel_id}/messages")
    async def list_messages(channel_id: str) -> Dict[str, Any]:
        return {"messages": [message.to_dict() for message in registry.hub.messages(channel_id)]}

    @app.post("/channels/{channel_id}/stop-generating")
    async def stop_generating(channel_id: str, request: StopGeneratingRequest) -> Dict[str, str]:
        await registry.hub.stop_generating(channel_id, request.message_id)
        return {"status": "ok"}

    @app.get("/channels/{channel_id}/events")
    async def list_events(channel_id: str) -> Dict[str, Any]:
        return {"events": registry.hub.events(channel_id)}

    return app
