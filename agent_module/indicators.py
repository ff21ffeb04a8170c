"""Out-of-band AI indicator events that drive UI feedback in the channel."""

from __future__ import annotations

from enum import Enum
from typing import Dict

INDICATOR_UPDATE = "ai_indicator.update"
INDICATOR_CLEAR = "ai_indicator.clear"
INDICATOR_STOP = "ai_indicator.stop"


class AIState(str, Enum):
    THINKING = "AI_STATE_THINKING"
    GENERATING = "AI_STATE_GENERATING"
    ERROR = "AI_STATE_ERROR"


def channel_cid(channel_type: str, channel_id: str) -> str:
    return f"{channel_type}:{channel_id}"


def indicator_update(state: AIState, cid: str, message_id: str) -> Dict[str, str]:
    return {
        "type": INDICATOR_UPDATE,
        "ai_state": AIState(state).value,
        "cid": cid,
        "message_id": message_id,
    }


def indicator_clear(cid: str, message_id: str) -> Dict[str, str]:
    return {"type": INDICATOR_CLEAR, "cid": cid, "message_id": message_id}


def thinking(cid: str, message_id: str) -> Dict[str, str]:
    return indicator_update(AIState.THINKING, cid, message_id)


def generating(cid: str, message_id: str) -> Dict[str, str]:
    return indicator_update(AIState.GENERATING, cid, message_id)


def error(cid: str, message_id: str) -> Dict[str, str]:
    return indicator_update(AIState.ERROR, cid, message_id)
