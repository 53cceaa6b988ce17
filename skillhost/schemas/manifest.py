# skillhost/schemas/manifest.py
from __future__ import annotations
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from .messages import ChannelType

SKILL_ID_PATTERN = r"^[A-Za-z0-9][A-Za-z0-9_.\-]{0,63}$"


class SubscriptionSpec(BaseModel):
    """Declarative subscription: deliver `channel_name` messages to the skill method `handler`."""

    channel_type: ChannelType = ChannelType.TOPIC
    channel_name: str = Field(min_length=1)
    handler: str = Field(min_length=1)

    model_config = {"extra": "forbid"}


class SkillManifest(BaseModel):
    skill_id: str = Field(pattern=SKILL_ID_PATTERN)
    # name of the registered skill class; defaults to skill_id
    entry: Optional[str] = None
    version: str = "0.0.0"
    description: str = ""
    constants: Dict[str, Any] = Field(default_factory=dict)
    subscriptions: List[SubscriptionSpec] = Field(default_factory=list)
    flush_on_stop: bool = False
    start_timeout_seconds: Optional[float] = Field(default=None, gt=0)
    handler_timeout_seconds: Optional[float] = Field(default=None, gt=0)

    model_config = {"extra": "forbid"}

    @property
    def entry_name(self) -> str:
        return self.entry or self.skill_id
