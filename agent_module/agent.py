"""Per-channel agent binding a chat channel to a call scheduler."""

from __future__ import annotations

import logging
import time
from datetime import date
from typing import List, Optional, Set

from .config import AgentConfig
from .errors import AgentConfigurationError
from .llm_client import CompletionClient, Turn, create_client
from .scheduler import CallScheduler
from .streamer import ResponseStreamer
from .transport import MESSAGE_NEW, ChatTransport, InboundMessage, Subscription

logger = logging.getLogger(__name__)


class Agent:
    """Relays one channel's messages to the completion service.

    The agent owns its conversation history, its :class:`CallScheduler` and
    every live :class:`ResponseStreamer`. The transport is shared: the agent
    only subscribes to it on :meth:`init` and tears its subscription down on
    :meth:`dispose`.
    """

    def __init__(
        self,
        transport: ChatTransport,
        channel_id: str,
        config: Optional[AgentConfig] = None,
        *,
        client: Optional[CompletionClient] = None,
    ) -> None:
        self.transport = transport
        self.channel_id = channel_id
        self.config = config or AgentConfig()
        self.client = client
        self.history: List[Turn] = []
        self.handlers: Set[ResponseStreamer] = set()
        self.scheduler: Optional[CallScheduler] = None
        self._subscription: Optional[Subscription] = None
        self._last_interaction = time.time()
        self._disposed = False

    @property
    def user_id(self) -> str:
        return self.transport.user_id

    def get_last_interaction_time(self) -> float:
        return self._last_interaction

    async def init(self) -> None:
        llm = self.config.llm
        if self.client is None:
            if not llm.resolve_api_key():
                raise AgentConfigurationError(
                    llm.api_key_env_var,
                    f"API key is required for the {llm.provider} provider",
                )
            self.client = create_client(llm)

        self.scheduler = CallScheduler(
            self.transport,
            self.channel_id,
            self.client,
            self.history,
            self.handlers,
            config=self.config,
            system_prompt=self.build_system_prompt,
        )
        self._subscription = self.transport.subscribe(MESSAGE_NEW, self._handle_message)
        logger.info("Agent %s listening on channel %s", self.user_id, self.channel_id)

    async def dispose(self) -> None:
        if self._disposed:
            return
        self._disposed = True
        if self._subscription is not None:
            self._subscription.unsubscribe()
            self._subscription = None
        for handler in list(self.handlers):
            handler.dispose()
        self.handlers.clear()
        if self.scheduler is not None:
            await self.scheduler.dispose()
        try:
            await self.transport.disconnect()
        except Exception:
            logger.exception("Failed to disconnect agent %s", self.user_id)
        self.history.clear()
        logger.info("Agent %s disposed for channel %s", self.user_id, self.channel_id)

    def build_system_prompt(self, event: InboundMessage) -> str:
        writing_task = (event.custom or {}).get("writingTask")
        context = f"Writing Task: {writing_task}" if writing_task else self.config.default_context
        current_date = date.today()
        return self.config.system_prompt.format(
            current_date=f"{current_date:%B} {current_date.day}, {current_date.year}",
            context=context,
        )

    async def _handle_message(self, event: InboundMessage) -> None:
        if event.channel_id != self.channel_id:
            return
        if event.author_id == self.user_id or event.ai_generated:
            return
        if not event.text or not event.text.strip():
            return
        if self.scheduler is None:
            logger.warning("Agent %s received a message before init", self.user_id)
            return

        logger.info(
            "Received message %r from user %s in channel %s",
            event.text[:50],
            event.author_id,
            self.channel_id,
        )
        self._last_interaction = time.time()
        self.scheduler.submit(event)
