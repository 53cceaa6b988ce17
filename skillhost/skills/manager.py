# skillhost/skills/manager.py
"""
SkillManager - the lifecycle controller.

 - skills are Python classes (subclasses of BaseSkill) named by a SkillManifest
 - start runs on_start on the skill's lane under a bounded timeout; the
   subscriptions staged by the hook are installed all at once, only on success
 - stop removes subscriptions first, then runs on_end exactly once, however
   many callers ask for the stop concurrently
 - the dispatcher asks is_active() before every delivery
"""

from __future__ import annotations
import asyncio
import concurrent.futures
import logging
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Type, Union

from skillhost.errors import InvalidTransition, LifecycleFailure, SkillhostError, StorageFailure, UnknownSkill
from skillhost.kernel.dispatcher import Dispatcher
from skillhost.observability.metrics import MetricsRegistry
from skillhost.runtime.context_store import ContextStore
from skillhost.runtime.dialogue import DialogueTable
from skillhost.sandbox.handlers import HandlerTable
from skillhost.schemas.manifest import SkillManifest
from .base import BaseSkill, subscription_specs
from .context import SkillContext
from .registry import SkillCatalog
from .skill_state import LifecycleResult, SkillState, SkillStatus, can_transition

logger = logging.getLogger("skillhost.skills.manager")

_RUNNING = (SkillState.STARTING, SkillState.ACTIVE, SkillState.SHUTTING_DOWN)


@dataclass
class _SkillRecord:
    manifest: SkillManifest
    skill_cls: Type[BaseSkill]
    state: SkillState = SkillState.UNINITIALIZED
    lock: threading.Lock = field(default_factory=threading.Lock)
    instance: Optional[BaseSkill] = None
    ctx: Optional[SkillContext] = None
    start_future: Optional[concurrent.futures.Future] = None
    stop_future: Optional[concurrent.futures.Future] = None
    last_error: Optional[LifecycleFailure] = None
    started_at: Optional[float] = None
    stopped_at: Optional[float] = None

    @property
    def skill_id(self) -> str:
        return self.manifest.skill_id


def _settle(value: Any) -> Any:
    if asyncio.iscoroutine(value):
        return asyncio.run(value)
    return value


class SkillManager:
    def __init__(
        self,
        *,
        catalog: SkillCatalog,
        context_store: ContextStore,
        handlers: HandlerTable,
        dispatcher: Dispatcher,
        dialogue: DialogueTable,
        start_timeout: float = 5.0,
        end_timeout: float = 5.0,
        metrics: Optional[MetricsRegistry] = None,
    ):
        self.catalog = catalog
        self.context_store = context_store
        self.handlers = handlers
        self.dispatcher = dispatcher
        self.dialogue = dialogue
        self.start_timeout = start_timeout
        self.end_timeout = end_timeout
        self.metrics = metrics or MetricsRegistry()

        self._records: Dict[str, _SkillRecord] = {}
        self._lock = threading.Lock()

        self.dispatcher.bind_lifecycle(self.is_active)

    # -------------------------
    # Registration / loading
    # -------------------------
    def register(self, skill_cls: Type[BaseSkill]) -> Type[BaseSkill]:
        return self.catalog.register(skill_cls)

    def load(self, manifest: Union[SkillManifest, Mapping[str, Any]]) -> SkillStatus:
        """Make a skill known (Uninitialized), or swap the manifest of a skill that is not running."""
        if not isinstance(manifest, SkillManifest):
            manifest = SkillManifest.model_validate(manifest)
        skill_cls = self.catalog.get(manifest.entry_name)
        if skill_cls is None:
            raise UnknownSkill(manifest.entry_name)

        with self._lock:
            record = self._records.get(manifest.skill_id)
            if record is None:
                record = _SkillRecord(manifest=manifest, skill_cls=skill_cls)
                self._records[manifest.skill_id] = record
                logger.info("loaded skill %s (%s)", manifest.skill_id, manifest.entry_name, extra={"skill_id": manifest.skill_id})
            else:
                with record.lock:
                    if record.state in _RUNNING:
                        raise InvalidTransition(manifest.skill_id, record.state.value, "reload")
                    record.manifest = manifest
                    record.skill_cls = skill_cls
                logger.info("reloaded manifest", extra={"skill_id": manifest.skill_id})
        return self.status(manifest.skill_id)

    def unload(self, skill_id: str) -> LifecycleResult:
        """Stop the skill if needed, then forget it. Durable context entries are kept."""
        result = self.stop(skill_id)
        with self._lock:
            self._records.pop(skill_id, None)
        self.dispatcher.drop_lane(skill_id)
        self.context_store.evict(skill_id)
        logger.info("unloaded skill", extra={"skill_id": skill_id})
        return result

    def _record(self, skill_id: str) -> _SkillRecord:
        with self._lock:
            record = self._records.get(skill_id)
        if record is None:
            raise UnknownSkill(skill_id)
        return record

    def _transition(self, record: _SkillRecord, target: SkillState) -> None:
        # caller holds record.lock
        if not can_transition(record.state, target):
            raise InvalidTransition(record.skill_id, record.state.value, target.value)
        logger.info("%s -> %s", record.state.value, target.value, extra={"skill_id": record.skill_id, "state": target.value})
        record.state = target

    # -------------------------
    # Start
    # -------------------------
    def start(self, skill_id: str, manifest: Union[SkillManifest, Mapping[str, Any], None] = None) -> LifecycleResult:
        if manifest is not None:
            if not isinstance(manifest, SkillManifest):
                manifest = SkillManifest.model_validate(manifest)
            if manifest.skill_id != skill_id:
                raise ValueError(f"manifest is for '{manifest.skill_id}', not '{skill_id}'")
            with self._lock:
                existing = self._records.get(skill_id)
            if existing is None or existing.state not in _RUNNING:
                self.load(manifest)

        record = self._record(skill_id)
        while True:
            with record.lock:
                state = record.state
                if state is SkillState.ACTIVE:
                    return LifecycleResult(skill_id, SkillState.ACTIVE)
                if state is SkillState.STARTING:
                    waiter = record.start_future
                elif state is SkillState.SHUTTING_DOWN:
                    waiter = record.stop_future
                else:
                    self._transition(record, SkillState.STARTING)
                    record.start_future = concurrent.futures.Future()
                    break
            outcome = waiter.result()
            if state is SkillState.STARTING:
                return outcome
            # a stop was in flight; start again once it is done

        future = record.start_future
        try:
            result = self._do_start(record)
        except BaseException as e:
            failure = LifecycleFailure(skill_id, "start", repr(e), kind="internal")
            with record.lock:
                record.state = SkillState.FAILED
                record.last_error = failure
            future.set_result(LifecycleResult(skill_id, SkillState.FAILED, failure))
            raise
        future.set_result(result)
        return result

    def _do_start(self, record: _SkillRecord) -> LifecycleResult:
        skill_id = record.skill_id
        manifest = record.manifest
        ctx = SkillContext(manifest, self.context_store, self.handlers, self.dispatcher, self.dialogue)

        try:
            self.context_store.load(skill_id)
        except StorageFailure as e:
            return self._start_failed(record, ctx, LifecycleFailure(skill_id, "start", str(e), kind="storage"))

        boot_ref = self.handlers.register(skill_id, "on_start", lambda: self._boot(record, ctx))
        timeout = manifest.start_timeout_seconds or self.start_timeout
        with self.metrics.timer("lifecycle.start_latency"):
            outcome = self.dispatcher.invoke(skill_id, boot_ref, (), timeout=timeout).result()

        if not outcome.success:
            return self._start_failed(record, ctx, LifecycleFailure(skill_id, "start", outcome.error or "failed", kind=outcome.kind))
        if outcome.value is False:
            return self._start_failed(record, ctx, LifecycleFailure(skill_id, "start", "on_start returned False", kind="rejected"))

        staged = ctx.seal()
        with record.lock:
            self.dispatcher.install(skill_id, staged, handler_timeout=manifest.handler_timeout_seconds)
            record.ctx = ctx
            record.last_error = None
            record.started_at = time.time()
            record.stopped_at = None
            self._transition(record, SkillState.ACTIVE)
        self.metrics.counter("lifecycle.started").inc()
        return LifecycleResult(skill_id, SkillState.ACTIVE)

    def _boot(self, record: _SkillRecord, ctx: SkillContext) -> Any:
        """Runs inside the sandbox on the skill's lane."""
        ctx.begin_staging()
        skill_cls = record.skill_cls
        for name in getattr(skill_cls, "REQUIRED_CONSTANTS", ()) or ():
            ctx.const(name)

        instance = skill_cls(ctx)
        with record.lock:
            # a boot abandoned after a timeout must not replace a later incarnation
            if ctx.closed:
                raise SkillhostError(f"start of '{record.skill_id}' was abandoned")
            record.instance = instance
        for spec in list(record.manifest.subscriptions) + subscription_specs(skill_cls):
            handler = getattr(instance, spec.handler, None)
            if not callable(handler):
                raise SkillhostError(f"skill '{record.skill_id}' has no handler '{spec.handler}'")
            ctx.subscribe(spec.channel_name, handler, spec.channel_type)
        return _settle(instance.on_start())

    def _start_failed(self, record: _SkillRecord, ctx: Optional[SkillContext], failure: LifecycleFailure) -> LifecycleResult:
        if ctx is not None:
            ctx.close()
        self.dialogue.drop_skill(record.skill_id)
        self.handlers.drop_skill(record.skill_id)
        with record.lock:
            record.instance = None
            record.ctx = None
            record.last_error = failure
            self._transition(record, SkillState.FAILED)
        self.metrics.counter("lifecycle.start_failed").inc()
        logger.error("start failed: %s", failure, extra={"skill_id": record.skill_id, "phase": "start"})
        return LifecycleResult(record.skill_id, SkillState.FAILED, failure)

    # -------------------------
    # Stop
    # -------------------------
    def stop(self, skill_id: str) -> LifecycleResult:
        record = self._record(skill_id)
        while True:
            with record.lock:
                state = record.state
                if state in (SkillState.UNINITIALIZED, SkillState.STOPPED):
                    return LifecycleResult(skill_id, state)
                if state is SkillState.FAILED:
                    self._transition(record, SkillState.STOPPED)
                    record.stopped_at = time.time()
                    return LifecycleResult(skill_id, SkillState.STOPPED)
                if state is SkillState.SHUTTING_DOWN:
                    waiter = record.stop_future
                elif state is SkillState.STARTING:
                    waiter = record.start_future
                else:
                    self._transition(record, SkillState.SHUTTING_DOWN)
                    record.stop_future = concurrent.futures.Future()
                    break
            outcome = waiter.result()
            if state is SkillState.SHUTTING_DOWN:
                return outcome
            # start finished (Active or Failed); decide again

        future = record.stop_future
        try:
            result = self._do_stop(record)
        except BaseException:
            with record.lock:
                record.state = SkillState.STOPPED
                record.stopped_at = time.time()
            future.set_result(LifecycleResult(skill_id, SkillState.STOPPED))
            raise
        future.set_result(result)
        return result

    def _do_stop(self, record: _SkillRecord) -> LifecycleResult:
        skill_id = record.skill_id
        self.dispatcher.uninstall(skill_id)
        dropped = self.dialogue.drop_skill(skill_id)
        if dropped:
            logger.debug("discarded %d pending repl(ies)", dropped, extra={"skill_id": skill_id})

        failure: Optional[LifecycleFailure] = None
        end_ref = self.handlers.register(skill_id, "on_end", lambda: self._end(record))
        # queued behind whatever is still in the skill's lane
        outcome = self.dispatcher.invoke(skill_id, end_ref, (), timeout=self.end_timeout).result()
        if not outcome.success:
            failure = LifecycleFailure(skill_id, "end", outcome.error or "failed", kind=outcome.kind)
            logger.error("end hook failed: %s", failure, extra={"skill_id": skill_id, "phase": "end"})

        if record.manifest.flush_on_stop:
            try:
                self.context_store.flush(skill_id)
            except StorageFailure as e:
                logger.error("flush on stop failed: %s", e, extra={"skill_id": skill_id, "phase": "end"})
                failure = failure or LifecycleFailure(skill_id, "end", str(e), kind="storage")

        if record.ctx is not None:
            record.ctx.close()
        self.handlers.drop_skill(skill_id)

        with record.lock:
            record.instance = None
            record.ctx = None
            record.stopped_at = time.time()
            if failure is not None:
                record.last_error = failure
            self._transition(record, SkillState.STOPPED)
        self.metrics.counter("lifecycle.stopped").inc()
        return LifecycleResult(skill_id, SkillState.STOPPED, failure)

    def _end(self, record: _SkillRecord) -> Any:
        instance = record.instance
        if instance is None:
            return None
        return _settle(instance.on_end())

    def stop_all(self) -> Dict[str, LifecycleResult]:
        with self._lock:
            skill_ids = list(self._records)
        results = {}
        for skill_id in skill_ids:
            try:
                results[skill_id] = self.stop(skill_id)
            except UnknownSkill:
                continue
        logger.info("stopped %d skill(s)", len(results))
        return results

    # -------------------------
    # Introspection
    # -------------------------
    def is_active(self, skill_id: str) -> bool:
        record = self._records.get(skill_id)
        return record is not None and record.state is SkillState.ACTIVE

    def state(self, skill_id: str) -> SkillState:
        return self._record(skill_id).state

    def status(self, skill_id: str) -> SkillStatus:
        record = self._record(skill_id)
        with record.lock:
            return SkillStatus(
                skill_id=record.skill_id,
                entry=record.manifest.entry_name,
                version=record.manifest.version,
                state=record.state,
                subscriptions=len(self.dispatcher.subscriptions(record.skill_id)),
                started_at=record.started_at,
                stopped_at=record.stopped_at,
                last_error=str(record.last_error) if record.last_error else None,
            )

    def list_skills(self) -> List[SkillStatus]:
        with self._lock:
            skill_ids = list(self._records)
        out = []
        for skill_id in skill_ids:
            try:
                out.append(self.status(skill_id))
            except UnknownSkill:
                continue
        return out
