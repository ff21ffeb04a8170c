"""Serialize inbound chat messages into sequential upstream calls.

One :class:`CallScheduler` exists per agent. Messages are drained in arrival
order by a single worker task, so at most one completion is in flight for a
channel and the conversation history is never interleaved. Messages that
arrive while a call is running wait in an unbounded FIFO queue.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections import deque
from typing import AsyncIterator, Awaitable, Callable, Deque, List, Optional, Set

from . import indicators
from .config import AgentConfig
from .errors import is_rate_limit_error
from .llm_client import ROLE_MODEL, ROLE_USER, CompletionClient, CompletionRequest, Turn
from .streamer import ResponseStreamer
from .transport import ChatMessage, ChatTransport, InboundMessage

logger = logging.getLogger(__name__)


class CallScheduler:
    def __init__(
        self,
        transport: ChatTransport,
        channel_id: str,
        client: CompletionClient,
        history: List[Turn],
        handlers: Set[ResponseStreamer],
        *,
        config: Optional[AgentConfig] = None,
        system_prompt: Optional[Callable[[InboundMessage], str]] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.transport = transport
        self.channel_id = channel_id
        self.client = client
        self.history = history
        self.handlers = handlers
        self.config = config or AgentConfig()
        self._system_prompt = system_prompt or (lambda event: "")
        self._sleep = sleep
        self._clock = clock

        self.last_call_at: Optional[float] = None
        self._pending: Deque[InboundMessage] = deque()
        self._processing = False
        self._disposed = False
        self._worker: Optional[asyncio.Task] = None

    @property
    def processing(self) -> bool:
        return self._processing

    @property
    def pending(self) -> int:
        return len(self._pending)

    def submit(self, event: InboundMessage) -> None:
        """Queue ``event`` and start draining if no call is in flight."""
        if self._disposed:
            logger.debug("Scheduler for channel %s is disposed, ignoring message %s", self.channel_id, event.message_id)
            return
        self._pending.append(event)
        if self._processing:
            logger.info(
                "Call in flight for channel %s, queued message %s (%d pending)",
                self.channel_id,
                event.message_id,
                len(self._pending),
            )
            return
        self._processing = True
        self._worker = asyncio.get_running_loop().create_task(self._drain())

    async def join(self) -> None:
        """Wait until the queue is drained and no call is in flight."""
        while self._worker is not None:
            await asyncio.wait({self._worker})

    async def dispose(self) -> None:
        self._disposed = True
        self._pending.clear()
        worker = self._worker
        if worker is None or worker.done() or worker is asyncio.current_task():
            return
        worker.cancel()
        await asyncio.wait({worker})
        # A worker cancelled before its first step never reaches its finally block.
        self._processing = False
        self._worker = None

    async def _drain(self) -> None:
        try:
            while self._pending and not self._disposed:
                event = self._pending.popleft()
                try:
                    await self._process(event)
                except Exception:
                    logger.exception("Unhandled failure processing message %s", event.message_id)
        finally:
            self._processing = False
            self._worker = None

    async def _process(self, event: InboundMessage) -> None:
        self.history.append(Turn(ROLE_USER, event.text))
        try:
            message = await self.transport.send_message(self.channel_id, "", ai_generated=True)
        except Exception:
            logger.exception("Failed to create response message in channel %s", self.channel_id)
            return

        stream: Optional[AsyncIterator[str]] = None
        streamer: Optional[ResponseStreamer] = None
        try:
            await self.transport.send_event(self.channel_id, indicators.thinking(message.cid, message.id))
            await self._respect_spacing()
            await self.transport.send_event(self.channel_id, indicators.generating(message.cid, message.id))

            request = CompletionRequest(
                turns=list(self.history),
                system_instruction=self._system_prompt(event),
                temperature=self.config.llm.temperature,
            )
            logger.info("Calling completion service with %d turn(s) for channel %s", len(request.turns), self.channel_id)
            stream = await self._open_with_retry(request)

            streamer = ResponseStreamer(
                stream,
                self.transport,
                message,
                on_dispose=self.handlers.discard,
                flush_interval=self.config.flush_interval,
                stream_error_fallback=self.config.stream_error_fallback,
                clock=self._clock,
            )
            self.handlers.add(streamer)
            text = await streamer.start()
            logger.info("Response complete for message %s, length: %d", message.id, len(text))
            if text:
                self.history.append(Turn(ROLE_MODEL, text))
        except Exception:
            logger.exception("Error calling completion service for channel %s", self.channel_id)
            if stream is not None and streamer is None:
                await self._close_unowned(stream)
            await self._report_failure(message)

    async def _respect_spacing(self) -> None:
        if self.last_call_at is None:
            return
        remaining = self.config.min_call_spacing - (self._clock() - self.last_call_at)
        if remaining > 0:
            logger.debug("Spacing upstream calls for channel %s, waiting %.2fs", self.channel_id, remaining)
            await self._sleep(remaining)

    async def _open_with_retry(self, request: CompletionRequest) -> AsyncIterator[str]:
        attempt = 0
        while True:
            started_at = self._clock()
            try:
                stream = await self.client.open_stream(request)
            except Exception as exc:
                if attempt >= self.config.max_retries or not is_rate_limit_error(exc):
                    raise
                attempt += 1
                delay = self.config.retry_backoff_base ** attempt
                logger.warning(
                    "Rate limited in channel %s (attempt %d/%d), retrying in %.1fs",
                    self.channel_id,
                    attempt,
                    self.config.max_retries,
                    delay,
                )
                await self._sleep(delay)
                continue
            self.last_call_at = started_at
            return stream

    async def _close_unowned(self, stream: AsyncIterator[str]) -> None:
        aclose = getattr(stream, "aclose", None)
        if aclose is None:
            return
        try:
            await aclose()
        except Exception:
            logger.exception("Failed to close completion stream for channel %s", self.channel_id)

    async def _report_failure(self, message: ChatMessage) -> None:
        try:
            await self.transport.send_event(self.channel_id, indicators.error(message.cid, message.id))
            await self.transport.update_message(message.id, self.config.error_notice)
        except Exception:
            logger.exception("Failed to update error message %s", message.id)
