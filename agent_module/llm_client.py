"""Streaming completion clients for the supported providers."""

from __future__ import annotations

import json
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import AsyncIterator, Dict, List, Optional

import requests
from fastapi.concurrency import run_in_threadpool
from google import genai
from google.genai import types

from .config import PROVIDER_CHAT_COMPLETIONS, PROVIDER_GEMINI, AgentLLMConfig
from .errors import AgentConfigurationError

logger = logging.getLogger(__name__)

ROLE_USER = "user"
ROLE_MODEL = "model"


@dataclass
class Turn:
    role: str
    text: str

    def to_dict(self) -> Dict[str, str]:
        return {"role": self.role, "text": self.text}


@dataclass
class CompletionRequest:
    turns: List[Turn] = field(default_factory=list)
    system_instruction: str = ""
    temperature: float = 0.7


class CompletionClient(ABC):
    """Starts a streamed completion and hands back its text fragments."""

    @abstractmethod
    async def open_stream(self, request: CompletionRequest) -> AsyncIterator[str]:
        """Start the upstream call.

        Errors raised while the call is being started propagate from this
        coroutine (they are what the scheduler retries on); errors raised
        later surface while iterating the returned fragments.
        """


class ChatLLMClient(CompletionClient):
    """Thin wrapper around a chat-completions endpoint with streaming support."""

    def __init__(self, config: AgentLLMConfig) -> None:
        self.config = config

    async def open_stream(self, request: CompletionRequest) -> AsyncIterator[str]:
        payload: Dict[str, object] = {
            "model": self.config.model,
            "messages": self._to_messages(request),
            "temperature": request.temperature,
            "stream": True,
        }
        headers = {}
        api_key = self.config.resolve_api_key()
        if api_key:
            headers["Authorization"] = f"Bearer {api_key}"

        logger.info("Streaming chat completion to %s using model %s", self.config.endpoint, self.config.model)
        response = await run_in_threadpool(
            requests.post,
            self.config.endpoint,
            json=payload,
            headers=headers,
            stream=True,
            timeout=self.config.request_timeout,
        )
        try:
            response.raise_for_status()
        except requests.HTTPError:
            response.close()
            raise
        return self._iter_tokens(response)

    async def _iter_tokens(self, response: requests.Response) -> AsyncIterator[str]:
        lines = response.iter_lines()
        try:
            while True:
                raw_line = await run_in_threadpool(next, lines, None)
                if raw_line is None:
                    break
                token = self._parse_line(raw_line)
                if token:
                    yield token
        finally:
            response.close()

    @classmethod
    def _parse_line(cls, raw_line: bytes) -> str:
        if not raw_line:
            return ""
        line = raw_line.decode("utf-8").strip()
        if line.startswith("data:"):
            line = line[5:].strip()
        if not line or line == "[DONE]":
            return ""

        try:
            payload = json.loads(line)
        except json.JSONDecodeError:
            logger.debug("Skipping non-JSON stream line: %s", line)
            return ""
        return cls._extract_delta(payload)

    @staticmethod
    def _extract_delta(payload: Dict[str, object]) -> str:
        try:
            choices = payload.get("choices") or []
            if not choices:
                return ""
            delta = choices[0].get("delta") or {}
            content = delta.get("content") or ""
            return str(content)
        except (AttributeError, IndexError, TypeError):
            logger.debug("Failed to parse stream payload: %s", payload, exc_info=True)
            return ""

    @staticmethod
    def _to_messages(request: CompletionRequest) -> List[Dict[str, str]]:
        messages: List[Dict[str, str]] = []
        if request.system_instruction:
            messages.append({"role": "system", "content": request.system_instruction})
        for turn in request.turns:
            role = "assistant" if turn.role == ROLE_MODEL else "user"
            messages.append({"role": role, "content": turn.text})
        return messages


class GeminiLLMClient(CompletionClient):
    """Streams content from Gemini through the google-genai async client."""

    def __init__(self, config: AgentLLMConfig, client: Optional[genai.Client] = None) -> None:
        self.config = config
        self._client = client or genai.Client(api_key=config.resolve_api_key())

    async def open_stream(self, request: CompletionRequest) -> AsyncIterator[str]:
        contents = [
            types.Content(role=turn.role, parts=[types.Part(text=turn.text)])
            for turn in request.turns
        ]
        logger.info("Calling Gemini model %s with %d turn(s)", self.config.model, len(contents))
        stream = await self._client.aio.models.generate_content_stream(
            model=self.config.model,
            contents=contents,
            config=types.GenerateContentConfig(
                system_instruction=request.system_instruction or None,
                temperature=request.temperature,
            ),
        )
        # The SDK sends the request on the first __anext__, so pull it here to
        # surface start-up errors (e.g. 429) from this coroutine.
        try:
            first = await stream.__anext__()
        except StopAsyncIteration:
            first = None
        return self._iter_text(first, stream)

    @staticmethod
    async def _iter_text(
        first: Optional[types.GenerateContentResponse],
        stream: AsyncIterator[types.GenerateContentResponse],
    ) -> AsyncIterator[str]:
        try:
            if first is None:
                return
            if first.text:
                yield first.text
            async for chunk in stream:
                text = chunk.text
                if text:
                    yield text
        finally:
            aclose = getattr(stream, "aclose", None)
            if aclose is not None:
                await aclose()


def create_client(config: AgentLLMConfig) -> CompletionClient:
    if config.provider == PROVIDER_GEMINI:
        return GeminiLLMClient(config)
    if config.provider == PROVIDER_CHAT_COMPLETIONS:
        return ChatLLMClient(config)
    raise AgentConfigurationError("provider", f"Unknown completion provider '{config.provider}'")
