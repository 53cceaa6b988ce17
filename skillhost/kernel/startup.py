# skillhost/kernel/startup.py
from __future__ import annotations
import logging
import time
from typing import Any, Callable, Mapping, Optional, Union

from skillhost.config import RuntimeConfig
from skillhost.observability.metrics import MetricsRegistry
from skillhost.runtime.context_store import ContextStore
from skillhost.runtime.dialogue import DialogueTable
from skillhost.runtime.retry import RetryEngine
from skillhost.runtime.storage import TRANSIENT_ERRORS, StorageAdapter, make_storage_adapter
from skillhost.sandbox.handlers import HandlerTable
from skillhost.sandbox.sandbox_runner import SandboxRunner
from skillhost.skills.manager import SkillManager
from skillhost.skills.registry import SkillCatalog
from .app_context import AppContext
from .dispatcher import Dispatcher

logger = logging.getLogger(__name__)


def perform_kernel_startup(
    app: AppContext,
    cfg: Union[RuntimeConfig, Mapping[str, Any], None] = None,
    storage: Optional[StorageAdapter] = None,
    clock: Callable[[], float] = time.time,
) -> RuntimeConfig:
    """
    Kernel startup wiring. Registers, in dependency order:

      config, metrics, storage, context_store, handlers, sandbox,
      dispatcher, dialogue, catalog, skill_manager

    `storage` overrides the adapter named by the config (tests share one
    MemoryStorageAdapter between kernels to simulate a restart).
    `clock` drives TTL and reply-window expiry.
    """
    config = cfg if isinstance(cfg, RuntimeConfig) else RuntimeConfig.from_mapping(cfg)
    app.register("config", config)

    metrics = MetricsRegistry()
    app.register("metrics", metrics)

    # 1) Durable tier + Context Store
    if storage is None:
        storage = make_storage_adapter(config.storage_backend, config.storage_path)
    app.register("storage", storage)

    retry = RetryEngine(
        attempts=config.storage_retry_attempts,
        backoff_seconds=config.storage_retry_backoff_seconds,
        retry_on=TRANSIENT_ERRORS,
    )
    context_store = ContextStore(
        storage=storage,
        retry=retry,
        clock=clock,
        sweep_interval_seconds=config.context_sweep_interval_seconds,
        metrics=metrics,
    )
    app.register("context_store", context_store)

    # 2) Sandbox boundary
    handlers = HandlerTable()
    app.register("handlers", handlers)
    sandbox = SandboxRunner(handlers, max_workers=config.sandbox_workers, default_timeout=config.handler_timeout_seconds)
    app.register("sandbox", sandbox)

    # 3) Dispatcher
    dispatcher = Dispatcher(
        sandbox,
        max_workers=config.lane_workers,
        handler_timeout=config.handler_timeout_seconds,
        metrics=metrics,
    )
    app.register("dispatcher", dispatcher)

    # 4) Dialogue sessions; accepted replies run on the owning skill's lane
    dialogue = DialogueTable(
        invoker=lambda skill_id, ref, args: dispatcher.invoke(skill_id, ref, args),
        context_store=context_store,
        reply_window_seconds=config.reply_window_seconds,
        clock=clock,
        sweep_interval_seconds=config.dialogue_sweep_interval_seconds,
        metrics=metrics,
        handlers=handlers,
    )
    app.register("dialogue", dialogue)

    # 5) Skills
    catalog = SkillCatalog()
    app.register("catalog", catalog)
    skill_manager = SkillManager(
        catalog=catalog,
        context_store=context_store,
        handlers=handlers,
        dispatcher=dispatcher,
        dialogue=dialogue,
        start_timeout=config.start_timeout_seconds,
        end_timeout=config.end_timeout_seconds,
        metrics=metrics,
    )
    app.register("skill_manager", skill_manager)

    logger.info(
        "kernel wired (storage=%s, lanes=%d, sandbox=%d)",
        type(storage).__name__, config.lane_workers, config.sandbox_workers,
    )
    return config

