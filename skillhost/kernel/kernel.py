# skillhost/kernel/kernel.py
from __future__ import annotations
import logging
import time
from typing import Any, Callable, Dict, Mapping, Optional, Type, Union

from skillhost.config import RuntimeConfig
from skillhost.observability.logging import configure_logging
from skillhost.runtime.dialogue import ReplySubmission
from skillhost.runtime.storage import StorageAdapter
from skillhost.schemas.manifest import SkillManifest
from skillhost.schemas.messages import ChannelType
from skillhost.skills.base import BaseSkill
from skillhost.skills.skill_state import LifecycleResult
from .app_context import AppContext
from .diagnostics import KernelDiagnostics
from .dispatcher import PublishReceipt
from .lifecycle import Lifecycle
from .startup import perform_kernel_startup

logger = logging.getLogger(__name__)


class Kernel:
    """
    One skill runtime: its own AppContext, services, lanes and durable store.

        with Kernel({"storage_backend": "memory"}) as k:
            k.register(WeatherSkill)
            k.start_skill("weather", {"skill_id": "weather", "entry": "weather"})
            k.publish("weather.today", {"city": "Oslo"}).wait()
    """

    def __init__(
        self,
        cfg: Union[RuntimeConfig, Mapping[str, Any], None] = None,
        storage: Optional[StorageAdapter] = None,
        clock: Callable[[], float] = time.time,
        setup_logging: bool = False,
    ):
        self.app = AppContext()
        self.config = perform_kernel_startup(self.app, cfg=cfg, storage=storage, clock=clock)
        if setup_logging:
            configure_logging(self.config.log_level, self.config.log_file, self.config.json_logs)
        self.lifecycle = Lifecycle(self.app)
        self.diagnostics = KernelDiagnostics(self.app)

    def start(self) -> "Kernel":
        logger.info("[Kernel] Starting skill runtime")
        self.lifecycle.startup()
        return self

    def shutdown(self) -> None:
        logger.info("[Kernel] Shutting down skill runtime")
        self.lifecycle.shutdown()

    def __enter__(self) -> "Kernel":
        return self.start()

    def __exit__(self, exc_type, exc, tb) -> None:
        self.shutdown()

    def health(self) -> Dict[str, Any]:
        return self.diagnostics.system_health()

    # -------------------------
    # Services
    # -------------------------
    @property
    def skills(self):
        return self.app.get("skill_manager")

    @property
    def dispatcher(self):
        return self.app.get("dispatcher")

    @property
    def context_store(self):
        return self.app.get("context_store")

    @property
    def dialogue(self):
        return self.app.get("dialogue")

    # -------------------------
    # Convenience
    # -------------------------
    def register(self, skill_cls: Type[BaseSkill]) -> Type[BaseSkill]:
        return self.skills.register(skill_cls)

    def start_skill(self, skill_id: str, manifest: Union[SkillManifest, Mapping[str, Any], None] = None) -> LifecycleResult:
        return self.skills.start(skill_id, manifest)

    def stop_skill(self, skill_id: str) -> LifecycleResult:
        return self.skills.stop(skill_id)

    def publish(self, topic: str, payload: Any = None, sender_info: Optional[Dict[str, Any]] = None) -> PublishReceipt:
        return self.dispatcher.publish(ChannelType.TOPIC, topic, payload, sender_info)

    def emit(self, event_name: str, payload: Any = None, sender_info: Optional[Dict[str, Any]] = None) -> PublishReceipt:
        return self.dispatcher.publish(ChannelType.EVENT, event_name, payload, sender_info)

    def submit_reply(self, session_id: str, raw_input: Any) -> ReplySubmission:
        return self.dialogue.submit_reply(session_id, raw_input)
