# skillhost/sandbox/sandbox_runner.py
from __future__ import annotations
import asyncio
import concurrent.futures
import logging
import threading
import time
from dataclasses import dataclass
from typing import Any, Optional, Sequence

from skillhost.errors import ConfigurationMissing, ScriptAssertion
from .handlers import HandlerRef, HandlerTable

logger = logging.getLogger(__name__)

# InvocationResult.kind values
OK = "ok"
ASSERTION = "assertion"
CONFIGURATION = "configuration"
ERROR = "error"
TIMEOUT = "timeout"
UNRESOLVED = "unresolved"


@dataclass(frozen=True)
class InvocationResult:
    """Outcome of one call across the sandbox boundary. Never raised, always returned."""
    ref: HandlerRef
    success: bool
    kind: str = OK
    value: Any = None
    error: Optional[str] = None
    exception: Optional[BaseException] = None
    duration: float = 0.0


class SandboxRunner:
    """
    Executes skill entry points resolved from the HandlerTable on a dedicated pool.

    - the caller waits at most `timeout` seconds; a handler that overruns is
      abandoned (reported as TIMEOUT), its thread is not interrupted
    - ScriptAssertion and ConfigurationMissing become typed results; anything else
      raised by skill code, SystemExit included, is an ERROR result
    - coroutine handlers are run to completion on a private event loop
    """

    def __init__(self, handlers: HandlerTable, max_workers: int = 16, default_timeout: float = 10.0):
        self.handlers = handlers
        self.default_timeout = default_timeout
        self._pool = concurrent.futures.ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="sandbox")
        self._local = threading.local()

    def current_skill(self) -> Optional[str]:
        """skill_id whose code is running on the calling thread, if any."""
        return getattr(self._local, "skill_id", None)

    def _run(self, skill_id: str, entry, args: Sequence[Any]) -> Any:
        previous = getattr(self._local, "skill_id", None)
        self._local.skill_id = skill_id
        try:
            res = entry(*args)
            if asyncio.iscoroutine(res):
                res = asyncio.run(res)
            return res
        finally:
            self._local.skill_id = previous

    def _classify(self, ref: HandlerRef, exc: BaseException, started: float) -> InvocationResult:
        if isinstance(exc, ScriptAssertion):
            kind = ASSERTION
        elif isinstance(exc, ConfigurationMissing):
            kind = CONFIGURATION
        else:
            kind = ERROR
        return InvocationResult(
            ref=ref, success=False, kind=kind,
            error=f"{type(exc).__name__}: {exc}", exception=exc,
            duration=time.monotonic() - started,
        )

    def invoke(self, ref: HandlerRef, args: Sequence[Any] = (), timeout: Optional[float] = None) -> InvocationResult:
        started = time.monotonic()
        try:
            entry = self.handlers.resolve(ref)
        except KeyError as e:
            return InvocationResult(ref=ref, success=False, kind=UNRESOLVED, error=str(e))

        timeout = self.default_timeout if timeout is None else timeout
        try:
            fut = self._pool.submit(self._run, ref.skill_id, entry, tuple(args))
        except RuntimeError as e:
            # pool already shut down
            return InvocationResult(ref=ref, success=False, kind=ERROR, error=str(e), exception=e)

        try:
            value = fut.result(timeout=timeout)
        except concurrent.futures.TimeoutError:
            logger.warning("handler %s abandoned after %.2fs", ref.handler_id, timeout, extra={"skill_id": ref.skill_id})
            return InvocationResult(
                ref=ref, success=False, kind=TIMEOUT,
                error=f"timed out after {timeout:.2f}s", duration=time.monotonic() - started,
            )
        except KeyboardInterrupt:
            raise
        except BaseException as e:
            return self._classify(ref, e, started)
        return InvocationResult(ref=ref, success=True, value=value, duration=time.monotonic() - started)

    def invoke_inline(self, ref: HandlerRef, args: Sequence[Any] = ()) -> InvocationResult:
        """Run on the calling thread. Used when a skill's own code re-enters the runtime for itself."""
        started = time.monotonic()
        try:
            entry = self.handlers.resolve(ref)
        except KeyError as e:
            return InvocationResult(ref=ref, success=False, kind=UNRESOLVED, error=str(e))
        try:
            value = self._run(ref.skill_id, entry, tuple(args))
        except KeyboardInterrupt:
            raise
        except BaseException as e:
            return self._classify(ref, e, started)
        return InvocationResult(ref=ref, success=True, value=value, duration=time.monotonic() - started)

    def shutdown(self, wait: bool = True) -> None:
        self._pool.shutdown(wait=wait)
