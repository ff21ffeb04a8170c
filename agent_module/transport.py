"""Chat transport contract and an in-process implementation.

The orchestration core only talks to the chat layer through
:class:`ChatTransport`: it subscribes to inbound ``message.new`` and
``ai_indicator.stop`` events and writes back by creating messages,
overwriting their text and sending indicator events.

:class:`LocalChatHub` keeps channels, messages and indicator events in
process memory. Each agent connects to it as its own bot user through
:class:`LocalChatTransport`, mirroring a per-user client connection of a
hosted chat service. The control plane uses the hub directly to inject user
messages and stop signals.
"""

from __future__ import annotations

import logging
import time
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional

from .errors import TransportError
from .indicators import INDICATOR_STOP, channel_cid

logger = logging.getLogger(__name__)

MESSAGE_NEW = "message.new"
STOP_GENERATING = INDICATOR_STOP
DEFAULT_CHANNEL_TYPE = "messaging"

EventHandler = Callable[[Any], Awaitable[None]]


@dataclass
class ChatMessage:
    id: str
    channel_id: str
    channel_type: str = DEFAULT_CHANNEL_TYPE
    author_id: str = ""
    text: str = ""
    ai_generated: bool = False
    custom: Dict[str, Any] = field(default_factory=dict)
    created_at: float = field(default_factory=time.time)
    updated_at: float = field(default_factory=time.time)

    @property
    def cid(self) -> str:
        return channel_cid(self.channel_type, self.channel_id)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "cid": self.cid,
            "channel_id": self.channel_id,
            "author_id": self.author_id,
            "text": self.text,
            "ai_generated": self.ai_generated,
            "custom": dict(self.custom),
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }


@dataclass
class InboundMessage:
    """A ``message.new`` event as seen by subscribers."""

    channel_id: str
    message_id: str
    author_id: str
    text: str
    ai_generated: bool = False
    custom: Dict[str, Any] = field(default_factory=dict)


@dataclass
class StopGenerating:
    """An ``ai_indicator.stop`` request for one streamed message."""

    channel_id: str
    message_id: str


class Subscription:
    """Handle returned by :meth:`ChatTransport.subscribe`."""

    def __init__(
        self,
        event_type: str,
        handler: EventHandler,
        on_cancel: Optional[Callable[["Subscription"], None]] = None,
    ) -> None:
        self.event_type = event_type
        self.handler = handler
        self._on_cancel = on_cancel
        self.active = True

    def unsubscribe(self) -> None:
        if not self.active:
            return
        self.active = False
        if self._on_cancel:
            self._on_cancel(self)


class ChatTransport(ABC):
    """Operations the orchestration core needs from the chat layer."""

    @property
    @abstractmethod
    def user_id(self) -> str:
        """Identity the agent posts as."""

    @abstractmethod
    def subscribe(self, event_type: str, handler: EventHandler) -> Subscription:
        """Register ``handler`` for ``event_type`` events."""

    @abstractmethod
    async def send_message(self, channel_id: str, text: str, *, ai_generated: bool = True) -> ChatMessage:
        """Create a message in the channel and return it."""

    @abstractmethod
    async def update_message(self, message_id: str, text: str) -> None:
        """Overwrite the text of an existing message."""

    @abstractmethod
    async def send_event(self, channel_id: str, event: Dict[str, Any]) -> None:
        """Send an out-of-band event (e.g. an AI indicator) to the channel."""

    @abstractmethod
    async def disconnect(self) -> None:
        """Drop every subscription and release the connection."""


class LocalChatHub:
    """In-memory channels, messages and events shared by local transports."""

    def __init__(self) -> None:
        self._messages: Dict[str, ChatMessage] = {}
        self._channel_messages: Dict[str, List[str]] = {}
        self._channel_events: Dict[str, List[Dict[str, Any]]] = {}
        self._channel_types: Dict[str, str] = {}
        self._subscriptions: List[Subscription] = []

    def connect(self, user_id: str) -> "LocalChatTransport":
        return LocalChatTransport(self, user_id)

    def ensure_channel(self, channel_id: str, channel_type: str = DEFAULT_CHANNEL_TYPE) -> None:
        self._channel_types.setdefault(channel_id, channel_type)
        self._channel_messages.setdefault(channel_id, [])
        self._channel_events.setdefault(channel_id, [])

    def subscribe(self, event_type: str, handler: EventHandler) -> Subscription:
        subscription = Subscription(event_type, handler, on_cancel=self._remove_subscription)
        self._subscriptions.append(subscription)
        return subscription

    @property
    def subscriber_count(self) -> int:
        return len(self._subscriptions)

    async def post_message(
        self,
        channel_id: str,
        author_id: str,
        text: str,
        *,
        custom: Optional[Dict[str, Any]] = None,
        ai_generated: bool = False,
    ) -> ChatMessage:
        """Store a message and deliver ``message.new`` to subscribers."""
        message = self._store(channel_id, author_id, text, custom=custom, ai_generated=ai_generated)
        await self._dispatch(
            MESSAGE_NEW,
            InboundMessage(
                channel_id=channel_id,
                message_id=message.id,
                author_id=author_id,
                text=text,
                ai_generated=ai_generated,
                custom=dict(message.custom),
            ),
        )
        return message

    async def stop_generating(self, channel_id: str, message_id: str) -> None:
        logger.info("Stop requested for message %s in channel %s", message_id, channel_id)
        await self._dispatch(STOP_GENERATING, StopGenerating(channel_id=channel_id, message_id=message_id))

    def update_message(self, message_id: str, text: str) -> ChatMessage:
        message = self._messages.get(message_id)
        if message is None:
            raise TransportError(f"Unknown message '{message_id}'")
        message.text = text
        message.updated_at = time.time()
        return message

    def record_event(self, channel_id: str, event: Dict[str, Any]) -> None:
        self.ensure_channel(channel_id)
        self._channel_events[channel_id].append(dict(event))

    def get_message(self, message_id: str) -> Optional[ChatMessage]:
        return self._messages.get(message_id)

    def messages(self, channel_id: str) -> List[ChatMessage]:
        return [self._messages[mid] for mid in self._channel_messages.get(channel_id, [])]

    def events(self, channel_id: str) -> List[Dict[str, Any]]:
        return list(self._channel_events.get(channel_id, []))

    def _store(
        self,
        channel_id: str,
        author_id: str,
        text: str,
        *,
        custom: Optional[Dict[str, Any]] = None,
        ai_generated: bool = False,
    ) -> ChatMessage:
        self.ensure_channel(channel_id)
        message = ChatMessage(
            id=uuid.uuid4().hex,
            channel_id=channel_id,
            channel_type=self._channel_types[channel_id],
            author_id=author_id,
            text=text,
            ai_generated=ai_generated,
            custom=dict(custom or {}),
        )
        self._messages[message.id] = message
        self._channel_messages[channel_id].append(message.id)
        return message

    async def _dispatch(self, event_type: str, event: Any) -> None:
        for subscription in list(self._subscriptions):
            if not subscription.active or subscription.event_type != event_type:
                continue
            try:
                await subscription.handler(event)
            except Exception:
                logger.exception("Subscriber failed handling %s event", event_type)

    def _remove_subscription(self, subscription: Subscription) -> None:
        try:
            self._subscriptions.remove(subscription)
        except ValueError:
            pass


class LocalChatTransport(ChatTransport):
    """One bot user's connection to a :class:`LocalChatHub`."""

    def __init__(self, hub: LocalChatHub, user_id: str) -> None:
        self.hub = hub
        self._user_id = user_id
        self._subscriptions: List[Subscription] = []
        self.connected = True

    @property
    def user_id(self) -> str:
        return self._user_id

    def subscribe(self, event_type: str, handler: EventHandler) -> Subscription:
        self._ensure_connected()
        subscription = self.hub.subscribe(event_type, handler)
        self._subscriptions.append(subscription)
        return subscription

    async def send_message(self, channel_id: str, text: str, *, ai_generated: bool = True) -> ChatMessage:
        self._ensure_connected()
        return await self.hub.post_message(channel_id, self._user_id, text, ai_generated=ai_generated)

    async def update_message(self, message_id: str, text: str) -> None:
        self._ensure_connected()
        self.hub.update_message(message_id, text)

    async def send_event(self, channel_id: str, event: Dict[str, Any]) -> None:
        self._ensure_connected()
        self.hub.record_event(channel_id, event)

    async def disconnect(self) -> None:
        for subscription in self._subscriptions:
            subscription.unsubscribe()
        self._subscriptions.clear()
        self.connected = False
        logger.debug("User %s disconnected from local chat hub", self._user_id)

    def _ensure_connected(self) -> None:
        if not self.connected:
            raise TransportError(f"User '{self._user_id}' is disconnected")
