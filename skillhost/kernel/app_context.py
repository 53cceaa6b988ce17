# skillhost/kernel/app_context.py
from __future__ import annotations
import inspect
import logging
import threading
from typing import Any, Callable, Dict, List, Optional, Tuple

from skillhost.errors import SkillhostError

logger = logging.getLogger(__name__)

# Sentinel object to distinguish "None passed as default" vs "No default passed"
_SENTINEL = object()


class ServiceNotRegistered(SkillhostError, KeyError):
    pass


class AppContext:
    """
    Runtime handle / service registry for one Kernel.

    - register(name, service_or_factory): factories are instantiated lazily on
      first get(); a factory may take the AppContext as its single argument
    - services are listed in registration order; shutdown tasks run most recent first
    - nothing here is module-global: two kernels never share registries
    """

    def __init__(self) -> None:
        self._lock = threading.RLock()
        # name -> (provider_or_instance, instance_or_None, metadata)
        self._services: Dict[str, Tuple[Any, Any, Dict[str, Any]]] = {}
        self._shutdown_tasks: List[Callable[[], Any]] = []

    # -----------------------
    # REGISTER
    # -----------------------
    def register(
        self,
        name: str,
        service: Any,
        metadata: Optional[Dict[str, Any]] = None,
        replace: bool = False,
        lazy: bool = False,
    ) -> None:
        """
        Register a service instance, or a factory when lazy=True.
        If replace is False and the name is taken -> KeyError.
        """
        with self._lock:
            if name in self._services and not replace:
                raise KeyError(f"Service '{name}' already registered")
            if lazy and not callable(service):
                raise TypeError(f"lazy service '{name}' needs a factory")
            instance = None if lazy else service
            self._services[name] = (service, instance, dict(metadata or {}))
            logger.debug("Registered service %s (lazy=%s)", name, lazy)

    # -----------------------
    # UNREGISTER
    # -----------------------
    def unregister(self, name: str) -> None:
        with self._lock:
            if name not in self._services:
                raise ServiceNotRegistered(name)
            del self._services[name]
            logger.debug("Unregistered service %s", name)

    # -----------------------
    # GET
    # -----------------------
    def get(self, name: str, default: Any = _SENTINEL) -> Any:
        with self._lock:
            if name not in self._services:
                if default is not _SENTINEL:
                    return default
                raise ServiceNotRegistered(f"AppContext: service '{name}' not registered")

            provider, instance, metadata = self._services[name]
            if instance is not None:
                return instance

            if len(inspect.signature(provider).parameters) == 0:
                instance = provider()
            else:
                instance = provider(self)
            self._services[name] = (provider, instance, metadata)
            logger.debug("AppContext: instantiated lazy service %s", name)
            return instance

    def __getitem__(self, name: str) -> Any:
        return self.get(name)

    # -----------------------
    # HAS / LIST
    # -----------------------
    def has(self, name: str) -> bool:
        with self._lock:
            return name in self._services

    def names(self) -> List[str]:
        with self._lock:
            return list(self._services.keys())

    def list_services(self) -> Dict[str, Dict[str, Any]]:
        with self._lock:
            return {
                name: {"materialized": (instance is not None), "metadata": dict(metadata)}
                for name, (_, instance, metadata) in self._services.items()
            }

    # -----------------------
    # SHUTDOWN TASKS
    # -----------------------
    def add_shutdown_task(self, fn: Callable[[], Any]) -> None:
        with self._lock:
            self._shutdown_tasks.append(fn)
            logger.debug("AppContext: added shutdown task %s", getattr(fn, "__name__", str(fn)))

    def shutdown_tasks(self) -> List[Callable[[], Any]]:
        """Registered shutdown tasks, most recent first."""
        with self._lock:
            return list(self._shutdown_tasks)[::-1]
