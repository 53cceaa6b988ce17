# skillhost/sandbox/handlers.py
from __future__ import annotations
import itertools
import logging
import threading
from dataclasses import dataclass
from typing import Any, Callable, Dict, List

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class HandlerRef:
    """Stable identifier for a skill entry point. The core passes these around, never the callables."""
    handler_id: str
    skill_id: str
    name: str

    def __str__(self) -> str:
        return self.handler_id


class HandlerTable:
    """
    Indirection table: handler id -> sandbox-invocable entry point.

    Ids carry a process-wide sequence number, so a ref issued to an earlier
    incarnation of a skill stops resolving once that incarnation is dropped.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._entries: Dict[str, Callable[..., Any]] = {}
        self._by_skill: Dict[str, List[str]] = {}
        self._seq = itertools.count(1)

    def register(self, skill_id: str, name: str, entry: Callable[..., Any]) -> HandlerRef:
        if not callable(entry):
            raise TypeError(f"handler '{name}' of skill '{skill_id}' is not callable")
        with self._lock:
            handler_id = f"{skill_id}:{name}#{next(self._seq)}"
            self._entries[handler_id] = entry
            self._by_skill.setdefault(skill_id, []).append(handler_id)
        logger.debug("registered handler %s", handler_id, extra={"skill_id": skill_id})
        return HandlerRef(handler_id=handler_id, skill_id=skill_id, name=name)

    def resolve(self, ref: HandlerRef) -> Callable[..., Any]:
        with self._lock:
            entry = self._entries.get(ref.handler_id)
        if entry is None:
            raise KeyError(f"handler {ref.handler_id} is not registered")
        return entry

    def contains(self, ref: HandlerRef) -> bool:
        with self._lock:
            return ref.handler_id in self._entries

    def drop(self, ref: HandlerRef) -> bool:
        """Forget one entry point. Returns False if it was already gone."""
        with self._lock:
            if self._entries.pop(ref.handler_id, None) is None:
                return False
            ids = self._by_skill.get(ref.skill_id)
            if ids is not None:
                ids.remove(ref.handler_id)
                if not ids:
                    del self._by_skill[ref.skill_id]
        return True

    def drop_skill(self, skill_id: str) -> int:
        with self._lock:
            ids = self._by_skill.pop(skill_id, [])
            for handler_id in ids:
                self._entries.pop(handler_id, None)
        if ids:
            logger.debug("dropped %d handlers", len(ids), extra={"skill_id": skill_id})
        return len(ids)

    def count(self, skill_id: str) -> int:
        with self._lock:
            return len(self._by_skill.get(skill_id, ()))
