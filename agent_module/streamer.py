"""Write one streamed completion into one chat message.

A :class:`ResponseStreamer` owns the target message for the duration of a
single upstream call. Fragments are accumulated and written back with a
throttle (``flush_interval``), so intermediate states may be skipped but the
final text is always written in full. The streamer terminates exactly once,
through one of:

* stream exhausted: final write, then ``ai_indicator.clear``;
* upstream error: ``AI_STATE_ERROR`` indicator, then the error text;
* stop signal for this message: write what has accumulated, then clear;
* forced :meth:`ResponseStreamer.dispose`: no further writes.
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import AsyncIterator, Callable, Dict, Optional

from . import indicators
from .transport import STOP_GENERATING, ChatMessage, ChatTransport, StopGenerating

logger = logging.getLogger(__name__)


class ResponseStreamer:
    def __init__(
        self,
        stream: AsyncIterator[str],
        transport: ChatTransport,
        message: ChatMessage,
        *,
        on_dispose: Optional[Callable[["ResponseStreamer"], None]] = None,
        flush_interval: float = 1.0,
        stream_error_fallback: str = "Error generating the message",
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._stream = stream
        self.transport = transport
        self.message = message
        self.flush_interval = flush_interval
        self.stream_error_fallback = stream_error_fallback
        self._on_dispose = on_dispose
        self._clock = clock

        self.text = ""
        self.done = False
        self.last_flush_at: Optional[float] = None
        self._disposed = False
        self._cancelled = asyncio.Event()
        self._pending_fetch: Optional[asyncio.Future] = None
        self._subscription = transport.subscribe(STOP_GENERATING, self.handle_stop)

    @property
    def disposed(self) -> bool:
        return self._disposed

    async def start(self) -> str:
        """Consume the stream and return the accumulated text."""
        message_id = self.message.id
        fragment_count = 0
        try:
            while not self.done:
                fragment = await self._next_fragment()
                if fragment is None:
                    break
                fragment_count += 1
                if not fragment:
                    continue
                self.text += fragment
                now = self._clock()
                if self.last_flush_at is None or now - self.last_flush_at >= self.flush_interval:
                    await self._write(self.text)
                    self.last_flush_at = now

            logger.info(
                "Stream done for message %s: %d fragment(s), %d char(s)",
                message_id,
                fragment_count,
                len(self.text),
            )
            if not self.done:
                self.done = True
                # The last throttled flush may be stale, always persist the final text.
                await self._write(self.text)
                await self._emit(indicators.indicator_clear(self.message.cid, message_id))
        except Exception as exc:
            logger.exception("Error during completion stream for message %s", message_id)
            await self._handle_error(exc)
        finally:
            self.dispose()
            await self._close_stream()
        return self.text

    async def handle_stop(self, event: StopGenerating) -> None:
        if self.done or event.message_id != self.message.id:
            return
        logger.info("Stop generating for message %s", self.message.id)
        await self.cancel()

    async def cancel(self) -> None:
        """Finish early, keeping whatever text has been produced so far."""
        if self.done:
            return
        self.done = True
        self._cancelled.set()
        if self.text:
            await self._write(self.text)
        await self._emit(indicators.indicator_clear(self.message.cid, self.message.id))
        self.dispose()

    def dispose(self) -> None:
        self.done = True
        self._cancelled.set()
        if self._disposed:
            return
        self._disposed = True
        self._subscription.unsubscribe()
        if self._on_dispose:
            self._on_dispose(self)

    async def _handle_error(self, exc: Exception) -> None:
        if self.done:
            return
        self.done = True
        await self._emit(indicators.error(self.message.cid, self.message.id))
        await self._write(str(exc) or self.stream_error_fallback)
        self.dispose()

    async def _next_fragment(self) -> Optional[str]:
        """Return the next fragment, or None once exhausted or cancelled."""
        fetch = asyncio.ensure_future(self._read())
        self._pending_fetch = fetch
        cancelled = asyncio.ensure_future(self._cancelled.wait())
        try:
            await asyncio.wait({fetch, cancelled}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            cancelled.cancel()
            if not fetch.done():
                fetch.cancel()

        if not fetch.done() or fetch.cancelled():
            return None
        if self._cancelled.is_set():
            # Retrieve so a late upstream error is not reported as unhandled.
            fetch.exception()
            return None
        return fetch.result()

    async def _read(self) -> Optional[str]:
        try:
            return await self._stream.__anext__()
        except StopAsyncIteration:
            return None

    async def _close_stream(self) -> None:
        if self._pending_fetch is not None and not self._pending_fetch.done():
            # Cancelling the pending fetch finalizes the iterator once it yields control.
            return
        aclose = getattr(self._stream, "aclose", None)
        if aclose is None:
            return
        try:
            await aclose()
        except Exception:
            logger.debug("Failed to close completion stream for message %s", self.message.id, exc_info=True)

    async def _write(self, text: str) -> None:
        try:
            await self.transport.update_message(self.message.id, text)
        except Exception:
            logger.exception("Failed to update message %s", self.message.id)

    async def _emit(self, event: Dict[str, str]) -> None:
        try:
            await self.transport.send_event(self.message.channel_id, event)
        except Exception:
            logger.exception("Failed to send %s for message %s", event.get("type"), self.message.id)
