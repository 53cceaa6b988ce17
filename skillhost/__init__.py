# skillhost/__init__.py
__version__ = "0.1.0"

from .config import RuntimeConfig
from .kernel import Kernel
from .skills import BaseSkill, SkillState

__all__ = ["BaseSkill", "Kernel", "RuntimeConfig", "SkillState", "__version__"]
