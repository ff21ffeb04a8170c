"""Configuration objects for the agent module."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from typing import Dict, Optional

from .errors import AgentConfigurationError

PROVIDER_GEMINI = "gemini"
PROVIDER_CHAT_COMPLETIONS = "chat-completions"

# Environment variable consulted for each provider when no api_key is set.
API_KEY_ENV_VARS: Dict[str, str] = {
    PROVIDER_GEMINI: "GOOGLE_API_KEY",
    PROVIDER_CHAT_COMPLETIONS: "OPENAI_API_KEY",
}


@dataclass
class AgentLLMConfig:
    """Completion service connection details."""

    provider: str = PROVIDER_GEMINI
    model: str = "gemini-2.0-flash-lite"
    endpoint: str = "https://api.openai.com/v1/chat/completions"
    api_key: Optional[str] = None
    temperature: float = 0.7
    request_timeout: int = 60

    @property
    def api_key_env_var(self) -> str:
        try:
            return API_KEY_ENV_VARS[self.provider]
        except KeyError:
            raise AgentConfigurationError("provider", f"Unknown completion provider '{self.provider}'") from None

    def resolve_api_key(self) -> Optional[str]:
        return self.api_key or os.environ.get(self.api_key_env_var) or None


@dataclass
class AgentConfig:
    """Runtime controls for per-channel response orchestration."""

    llm: AgentLLMConfig = field(default_factory=AgentLLMConfig)
    channel_type: str = "messaging"
    flush_interval: float = 1.0
    min_call_spacing: float = 4.0
    max_retries: int = 3
    retry_backoff_base: float = 2.0
    idle_timeout: float = 8 * 60 * 60
    error_notice: str = "Sorry, I encountered an error. Please try again."
    stream_error_fallback: str = "Error generating the message"
    default_context: str = "General writing assistance."
    system_prompt: str = (
        "You are an expert AI Writing Assistant. Your primary purpose is to be a "
        "collaborative writing partner.\n\n"
        "**Your Core Capabilities:**\n"
        "- Content Creation, Improvement, Style Adaptation, Brainstorming, and Writing Coaching.\n"
        "- **Current Date**: Today's date is {current_date}. Please use this for any "
        "time-sensitive queries.\n\n"
        "**Response Format:**\n"
        "- Be direct and production-ready.\n"
        "- Use clear formatting with markdown when appropriate.\n"
        "- Never begin responses with phrases like \"Here's the edit:\", \"Here are the "
        "changes:\", or similar introductory statements.\n"
        "- Provide responses directly and professionally without unnecessary preambles.\n\n"
        "**Writing Context**: {context}\n\n"
        "Your goal is to provide accurate, current, and helpful written content."
    )
