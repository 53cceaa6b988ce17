# skillhost/skills/registry.py
from __future__ import annotations
import importlib
import inspect
import logging
from typing import Dict, List, Optional, Type

from .base import BaseSkill

logger = logging.getLogger("skillhost.skills.registry")


class SkillCatalog:
    """
    Skill classes known to one runtime, by NAME. Manifests refer to them through `entry`.
    """

    def __init__(self) -> None:
        self._classes: Dict[str, Type[BaseSkill]] = {}

    def register(self, skill_cls: Type[BaseSkill], name: Optional[str] = None) -> Type[BaseSkill]:
        """
        Register a skill class. Also usable as a decorator:
            @catalog.register
            class Weather(BaseSkill): ...
        """
        if not (inspect.isclass(skill_cls) and issubclass(skill_cls, BaseSkill)):
            raise TypeError(f"{skill_cls!r} is not a BaseSkill subclass")
        name = name or getattr(skill_cls, "NAME", skill_cls.__name__)
        previous = self._classes.get(name)
        if previous is not None and previous is not skill_cls:
            logger.warning("skill class %s replaces %s", skill_cls, previous)
        self._classes[name] = skill_cls
        logger.debug("registered %s -> %s", name, skill_cls)
        return skill_cls

    def get(self, name: str) -> Optional[Type[BaseSkill]]:
        return self._classes.get(name)

    def names(self) -> List[str]:
        return list(self._classes.keys())

    def __contains__(self, name: str) -> bool:
        return name in self._classes

    def register_from_module(self, module_name: str) -> List[str]:
        """
        Import `module_name` and register every BaseSkill subclass defined in it.
        Useful for dynamic discovery (e.g. 'myskills.weather').
        """
        m = importlib.import_module(module_name)
        found = []
        for attr in dir(m):
            obj = getattr(m, attr)
            if inspect.isclass(obj) and issubclass(obj, BaseSkill) and obj is not BaseSkill and obj.__module__ == m.__name__:
                self.register(obj)
                found.append(getattr(obj, "NAME", obj.__name__))
        logger.info("registered %d skill class(es) from %s", len(found), module_name)
        return found
