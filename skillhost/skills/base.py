# skillhost/skills/base.py
"""
BaseSkill - canonical base class for all skills.

A skill is:
 - started and stopped by the SkillManager (on_start / on_end hooks),
 - driven by topic/event messages it subscribed to during on_start,
 - able to keep state in the Context Store and hold multi-turn dialogues
   through its SkillContext.
"""

from __future__ import annotations
from typing import Any, Iterable, Tuple, Union

from skillhost.schemas.manifest import SubscriptionSpec
from .context import SkillContext


class BaseSkill:
    """
    Core skill contract. Subclass this to implement a skill.

      - on_start()  runs once per start; returning False fails the start.
                    ctx.subscribe(...) is only accepted here.
      - on_end()    runs once per stop; failures are logged, never block the stop
      - handlers    any method taking (payload, sender)

    Hooks and handlers may be plain functions or coroutines.
    """

    NAME: str = "base_skill"
    DESCRIPTION: str = "Base skill - override"
    # declarative subscriptions installed alongside those made in on_start:
    # SubscriptionSpec, dicts, or ("weather.*", "on_weather") pairs meaning topic subscriptions
    SUBSCRIPTIONS: Iterable[Union[SubscriptionSpec, dict, Tuple[str, str]]] = ()
    # manifest constants that must be present for the skill to start
    REQUIRED_CONSTANTS: Iterable[str] = ()

    def __init__(self, ctx: SkillContext):
        self.ctx = ctx
        self.logger = ctx.logger

    @property
    def skill_id(self) -> str:
        return self.ctx.skill_id

    def on_start(self) -> Any:
        """Called once when the SkillManager starts the skill (override if needed)."""
        self.logger.debug("Skill %s started", self.skill_id)

    def on_end(self) -> None:
        """Called once when the SkillManager is stopping the skill."""
        self.logger.debug("Skill %s stopped", self.skill_id)


def subscription_specs(skill_cls: type) -> list:
    specs = []
    for item in getattr(skill_cls, "SUBSCRIPTIONS", ()) or ():
        if isinstance(item, SubscriptionSpec):
            specs.append(item)
        elif isinstance(item, dict):
            specs.append(SubscriptionSpec(**item))
        else:
            channel_name, handler = item
            specs.append(SubscriptionSpec(channel_name=channel_name, handler=handler))
    return specs
