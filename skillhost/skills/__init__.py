# skillhost/skills/__init__.py
from .skill_state import LifecycleResult, SkillState, SkillStatus
from .context import SkillContext
from .base import BaseSkill
from .registry import SkillCatalog
from .manager import SkillManager

__all__ = [
    "BaseSkill",
    "LifecycleResult",
    "SkillCatalog",
    "SkillContext",
    "SkillManager",
    "SkillState",
    "SkillStatus",
]
