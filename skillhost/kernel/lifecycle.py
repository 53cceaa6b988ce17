# skillhost/kernel/lifecycle.py
from __future__ import annotations
import logging

from .app_context import AppContext

logger = logging.getLogger(__name__)


class Lifecycle:
    """
    Orchestrates runtime startup/shutdown.
    Handles:
      - context store and dialogue sweepers
      - stopping every skill before the lanes are drained
      - dispatcher and sandbox pool shutdown
      - closing the durable tier last
    """

    def __init__(self, app: AppContext):
        self.app = app
        self.running = False
        self.closed = False

    def startup(self) -> None:
        if self.running:
            return
        if self.closed:
            raise RuntimeError("runtime was shut down; build a new Kernel")
        logger.info("[Lifecycle] startup beginning")

        self.app.get("context_store").start()
        logger.info("[Lifecycle] context sweeper started")

        self.app.get("dialogue").start()
        logger.info("[Lifecycle] dialogue sweeper started")

        self.running = True
        logger.info("[Lifecycle] startup complete")

    def shutdown(self, drain_timeout: float = 10.0) -> None:
        if self.closed:
            return
        logger.info("[Lifecycle] shutdown beginning")

        # 1. Stop skills (runs every on_end once)
        try:
            results = self.app.get("skill_manager").stop_all()
            logger.info("[Lifecycle] %d skill(s) stopped", len(results))
        except Exception:
            logger.exception("Failed to stop skills during shutdown")

        # 2. Shutdown tasks registered by the embedding host
        for task in self.app.shutdown_tasks():
            try:
                task()
            except Exception:
                logger.exception("Shutdown task %s failed", getattr(task, "__name__", task))

        # 3. Drain lanes, then release the worker pools
        try:
            self.app.get("dispatcher").shutdown(wait=True, timeout=drain_timeout)
            self.app.get("sandbox").shutdown(wait=False)
            logger.info("[Lifecycle] dispatcher drained")
        except Exception:
            logger.exception("Failed dispatcher shutdown")

        # 4. Sweepers and durable tier
        try:
            self.app.get("dialogue").stop()
            self.app.get("context_store").close()
            logger.info("[Lifecycle] context store closed")
        except Exception:
            logger.exception("Failed closing context store")

        self.running = False
        self.closed = True
        logger.info("[Lifecycle] shutdown complete")
