# skillhost/kernel/diagnostics.py
from __future__ import annotations
import logging
import time
from threading import RLock
from typing import Any, Dict

from .app_context import AppContext

logger = logging.getLogger(__name__)


class KernelDiagnostics:
    """
    Diagnostics helper for the Kernel. Tolerates services missing during early
    boot or after shutdown; a section that cannot be read is reported as empty.
    """

    def __init__(self, app_context: AppContext):
        self.app = app_context
        self._lock = RLock()
        self.boot_time = time.time()

    def _skills(self) -> Dict[str, Any]:
        manager = self.app.get("skill_manager", None)
        if manager is None:
            return {}
        return {s.skill_id: s.model_dump(mode="json") for s in manager.list_skills()}

    def _dispatch(self) -> Dict[str, Any]:
        dispatcher = self.app.get("dispatcher", None)
        if dispatcher is None:
            return {}
        subs = dispatcher.subscriptions()
        return {
            "subscriptions": len(subs),
            "channels": sorted({f"{s.channel_type.value}:{s.channel_name}" for s in subs}),
            "pending": dispatcher.pending(),
        }

    def system_health(self) -> Dict[str, Any]:
        """
        Return a basic system health dictionary.
        """
        with self._lock:
            out: Dict[str, Any] = {
                "uptime_seconds": time.time() - self.boot_time,
                "registered_services": self.app.names(),
            }
            sections = {
                "skills": self._skills,
                "dispatch": self._dispatch,
                "context": lambda: self.app.get("context_store").stats(),
                "pending_dialogues": lambda: len(self.app.get("dialogue")),
                "metrics": lambda: self.app.get("metrics").snapshot(),
            }
            for name, read in sections.items():
                try:
                    out[name] = read()
                except Exception:
                    logger.exception("Failed to read %s diagnostics", name)
                    out[name] = None
            return out
