"""Per-channel AI agents that stream model replies into a chat channel.

Each :class:`~agent_module.agent.Agent` listens to one channel, queues
inbound messages through a :class:`~agent_module.scheduler.CallScheduler`
(one upstream call in flight, minimum spacing between calls, exponential
backoff on rate limits) and writes each streamed completion into a chat
message with a :class:`~agent_module.streamer.ResponseStreamer`. The primary
entry points are ``agent_module.api.create_app`` for running the HTTP
control plane and :class:`Agent` for embedding an agent directly.
"""

from .agent import Agent
from .config import AgentConfig, AgentLLMConfig
from .scheduler import CallScheduler
from .streamer import ResponseStreamer

__all__ = ["Agent", "AgentConfig", "AgentLLMConfig", "CallScheduler", "ResponseStreamer"]
