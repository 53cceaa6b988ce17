# skillhost/schemas/messages.py
from __future__ import annotations
import time
import uuid
from enum import Enum
from typing import Any, Dict

from pydantic import BaseModel, Field, field_validator

from skillhost.runtime.values import ensure_script_value


class ChannelType(str, Enum):
    TOPIC = "topic"
    EVENT = "event"


def new_message_id() -> str:
    return uuid.uuid4().hex


class Message(BaseModel):
    """A published topic/event message. Lives only for the duration of one dispatch."""

    message_id: str = Field(default_factory=new_message_id)
    channel_type: ChannelType
    channel_name: str = Field(min_length=1)
    payload: Any = None
    sender: Dict[str, Any] = Field(default_factory=dict)
    published_at: float = Field(default_factory=time.time)

    model_config = {"extra": "forbid", "frozen": True}

    @field_validator("payload")
    @classmethod
    def _payload_is_script_value(cls, v: Any) -> Any:
        try:
            return ensure_script_value(v, "payload")
        except TypeError as e:
            raise ValueError(str(e)) from e
