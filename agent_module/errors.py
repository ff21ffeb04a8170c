"""Exception hierarchy and upstream error classification."""

from __future__ import annotations

from typing import Optional

# Lower-cased fragments that identify a rate-limited or quota-exhausted call.
RATE_LIMIT_SIGNATURES = (
    "429",
    "quota",
    "too many requests",
    "resource exhausted",
    "resource_exhausted",
)


class AgentError(Exception):
    """Base exception for agent orchestration errors."""


class AgentConfigurationError(AgentError):
    """Required settings (e.g. upstream credentials) are missing."""

    def __init__(self, setting: str, reason: str):
        self.setting = setting
        self.reason = reason
        super().__init__(f"{reason} ({setting})")


class AgentNotFoundError(AgentError):
    """No agent is running for the requested channel."""

    def __init__(self, channel_id: str):
        self.channel_id = channel_id
        super().__init__(f"No agent running for channel '{channel_id}'")


class TransportError(AgentError):
    """A chat transport operation could not be carried out."""


def _status_code(exc: BaseException) -> Optional[int]:
    # google-genai APIError carries .code, requests HTTPError carries .response
    for attr in ("status_code", "code"):
        value = getattr(exc, attr, None)
        if isinstance(value, int):
            return value
    response = getattr(exc, "response", None)
    value = getattr(response, "status_code", None)
    return value if isinstance(value, int) else None


def is_rate_limit_error(exc: BaseException) -> bool:
    """Return True when ``exc`` signals upstream rate limiting."""
    if _status_code(exc) == 429:
        return True
    lower = str(exc).lower()
    return any(signature in lower for signature in RATE_LIMIT_SIGNATURES)
