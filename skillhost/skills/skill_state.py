# skillhost/skills/skill_state.py
from __future__ import annotations
from dataclasses import dataclass
from enum import Enum
from typing import Dict, FrozenSet, Optional

from pydantic import BaseModel, Field

from skillhost.errors import LifecycleFailure


class SkillState(str, Enum):
    UNINITIALIZED = "uninitialized"
    STARTING = "starting"
    ACTIVE = "active"
    FAILED = "failed"
    SHUTTING_DOWN = "shutting_down"
    STOPPED = "stopped"


TRANSITIONS: Dict[SkillState, FrozenSet[SkillState]] = {
    SkillState.UNINITIALIZED: frozenset({SkillState.STARTING}),
    SkillState.STARTING: frozenset({SkillState.ACTIVE, SkillState.FAILED}),
    SkillState.ACTIVE: frozenset({SkillState.SHUTTING_DOWN}),
    SkillState.FAILED: frozenset({SkillState.STARTING, SkillState.STOPPED}),
    SkillState.SHUTTING_DOWN: frozenset({SkillState.STOPPED}),
    SkillState.STOPPED: frozenset({SkillState.STARTING}),
}


def can_transition(current: SkillState, target: SkillState) -> bool:
    return target in TRANSITIONS[current]


class SkillStatus(BaseModel):
    """
    Read-only snapshot of one skill, used by diagnostics and list_skills().
    """
    skill_id: str
    entry: str
    version: str = "0.0.0"
    state: SkillState = SkillState.UNINITIALIZED
    subscriptions: int = 0
    started_at: Optional[float] = None
    stopped_at: Optional[float] = None
    last_error: Optional[str] = Field(None, description="Reason of the most recent start/end hook failure")

    model_config = {"extra": "forbid"}


@dataclass(frozen=True)
class LifecycleResult:
    skill_id: str
    state: SkillState
    # for stop() this is the logged end-hook failure; the skill is Stopped regardless
    error: Optional[LifecycleFailure] = None

    @property
    def ok(self) -> bool:
        return self.state is not SkillState.FAILED
