# skillhost/kernel/dispatcher.py
from __future__ import annotations
import collections
import concurrent.futures
import logging
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Deque, Dict, Iterable, List, Mapping, Optional, Tuple, Union

from skillhost.errors import DispatchFailure
from skillhost.observability.metrics import MetricsRegistry
from skillhost.schemas.messages import ChannelType, Message
from skillhost.sandbox.sandbox_runner import TIMEOUT, InvocationResult, SandboxRunner
from skillhost.sandbox.handlers import HandlerRef

logger = logging.getLogger(__name__)

# sender "from" for messages published by the embedding host rather than a skill
HOST_SENDER = "host"

ChannelKey = Tuple[ChannelType, str]


@dataclass(frozen=True)
class Subscription:
    skill_id: str
    channel_type: ChannelType
    channel_name: str
    handler_ref: HandlerRef
    binding_id: str

    @property
    def key(self) -> ChannelKey:
        return (self.channel_type, self.channel_name)


@dataclass
class PublishReceipt:
    message: Message
    # (skill_id, future); each future resolves to the handler's return value or a DispatchFailure
    deliveries: List[Tuple[str, concurrent.futures.Future]] = field(default_factory=list)

    @property
    def message_id(self) -> str:
        return self.message.message_id

    @property
    def recipients(self) -> List[str]:
        return [skill_id for skill_id, _ in self.deliveries]

    def wait(self, timeout: Optional[float] = None) -> List[Any]:
        return [f.result(timeout=timeout) for _, f in self.deliveries]


class _Registry:
    """Immutable snapshot of all subscriptions. Replaced wholesale on every change."""

    __slots__ = ("by_channel", "by_skill")

    def __init__(self, by_skill: Mapping[str, Tuple[Subscription, ...]]):
        self.by_skill: Dict[str, Tuple[Subscription, ...]] = dict(by_skill)
        by_channel: Dict[ChannelKey, List[Subscription]] = {}
        for subs in self.by_skill.values():
            for s in subs:
                by_channel.setdefault(s.key, []).append(s)
        self.by_channel: Dict[ChannelKey, Tuple[Subscription, ...]] = {k: tuple(v) for k, v in by_channel.items()}

    def match(self, channel_type: ChannelType, channel_name: str) -> List[Subscription]:
        found: List[Subscription] = list(self.by_channel.get((channel_type, channel_name), ()))
        if channel_type is ChannelType.TOPIC:
            # 'weather.*' matches 'weather.rain' and 'weather.rain.heavy'; '*' matches every topic
            parts = channel_name.split(".")
            for i in range(1, len(parts)):
                found.extend(self.by_channel.get((channel_type, ".".join(parts[:i]) + ".*"), ()))
            if channel_name != "*":
                found.extend(self.by_channel.get((channel_type, "*"), ()))
        seen = set()
        out = []
        for s in found:
            if s.handler_ref.handler_id not in seen:
                seen.add(s.handler_ref.handler_id)
                out.append(s)
        return out

    def contains(self, sub: Subscription) -> bool:
        return sub in self.by_skill.get(sub.skill_id, ())


class _Lane:
    """
    Serial executor for one skill. Work items run one at a time, in submission
    order, on a thread borrowed from the shared pool.
    """

    def __init__(self, skill_id: str, pool: concurrent.futures.ThreadPoolExecutor):
        self.skill_id = skill_id
        self._pool = pool
        self._queue: Deque[Tuple[Callable[[], Any], concurrent.futures.Future]] = collections.deque()
        self._lock = threading.Lock()
        self._idle = threading.Condition(self._lock)
        self._active = False

    def submit(self, fn: Callable[[], Any]) -> concurrent.futures.Future:
        fut: concurrent.futures.Future = concurrent.futures.Future()
        with self._lock:
            self._queue.append((fn, fut))
            if not self._active:
                self._active = True
                try:
                    self._pool.submit(self._drain)
                except RuntimeError:
                    self._active = False
                    self._queue.pop()
                    raise
        return fut

    def _drain(self) -> None:
        while True:
            with self._lock:
                if not self._queue:
                    self._active = False
                    self._idle.notify_all()
                    return
                fn, fut = self._queue.popleft()
            if not fut.set_running_or_notify_cancel():
                continue
            # fn returns once the sandbox gives up on a handler; a timed-out handler
            # keeps running on its sandbox thread while the next item starts
            try:
                fut.set_result(fn())
            except BaseException as e:
                fut.set_exception(e)

    def pending(self) -> int:
        with self._lock:
            return len(self._queue) + (1 if self._active else 0)

    def wait_idle(self, timeout: Optional[float] = None) -> bool:
        with self._lock:
            return self._idle.wait_for(lambda: not self._active and not self._queue, timeout=timeout)


class Dispatcher:
    """
    Topic/event dispatcher.

    - publish() fans a message out to every matching subscription of an Active skill
    - each delivery is isolated: failures and timeouts are logged, never propagated
    - every invocation for a skill (handlers, hooks, replies) goes through that
      skill's lane, so one skill never runs two invocations at once while
      different skills run in parallel
    - per-subscriber FIFO follows from lanes being FIFO
    - subscription changes swap an immutable registry snapshot; publish reads it without locking
    """

    def __init__(
        self,
        sandbox: SandboxRunner,
        max_workers: int = 8,
        handler_timeout: float = 10.0,
        metrics: Optional[MetricsRegistry] = None,
    ):
        self.sandbox = sandbox
        self.handler_timeout = handler_timeout
        self.metrics = metrics or MetricsRegistry()
        self._pool = concurrent.futures.ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="lane")
        self._registry = _Registry({})
        self._registry_lock = threading.Lock()
        self._lanes: Dict[str, _Lane] = {}
        self._lanes_lock = threading.Lock()
        self._timeouts: Dict[str, float] = {}
        self._is_active: Callable[[str], bool] = lambda skill_id: True
        self._shutdown = False

    def bind_lifecycle(self, is_active: Callable[[str], bool]) -> None:
        """Install the lifecycle controller's view of which skills may receive messages."""
        self._is_active = is_active

    # ------------------------
    # Subscription registry
    # ------------------------
    def install(self, skill_id: str, subscriptions: Iterable[Subscription], handler_timeout: Optional[float] = None) -> int:
        """Atomically replace the whole subscription set of a skill."""
        unique: Dict[ChannelKey, Subscription] = {}
        for s in subscriptions:
            if s.skill_id != skill_id:
                raise ValueError(f"subscription for '{s.skill_id}' installed under '{skill_id}'")
            # re-subscribing to the same channel replaces the earlier handler
            unique[s.key] = s
        with self._registry_lock:
            by_skill = dict(self._registry.by_skill)
            if unique:
                by_skill[skill_id] = tuple(unique.values())
            else:
                by_skill.pop(skill_id, None)
            self._registry = _Registry(by_skill)
            self.metrics.gauge("dispatch.subscriptions").set(sum(len(v) for v in by_skill.values()))
            if handler_timeout is not None:
                self._timeouts[skill_id] = handler_timeout
        logger.info("installed %d subscription(s)", len(unique), extra={"skill_id": skill_id})
        return len(unique)

    def uninstall(self, skill_id: str) -> int:
        with self._registry_lock:
            by_skill = dict(self._registry.by_skill)
            removed = by_skill.pop(skill_id, ())
            self._registry = _Registry(by_skill)
            self.metrics.gauge("dispatch.subscriptions").set(sum(len(v) for v in by_skill.values()))
            self._timeouts.pop(skill_id, None)
        if removed:
            logger.info("removed %d subscription(s)", len(removed), extra={"skill_id": skill_id})
        return len(removed)

    def subscriptions(self, skill_id: Optional[str] = None) -> List[Subscription]:
        registry = self._registry
        if skill_id is not None:
            return list(registry.by_skill.get(skill_id, ()))
        return [s for subs in registry.by_skill.values() for s in subs]

    def subscribers(self, channel_type: Union[ChannelType, str], channel_name: str) -> List[str]:
        return [s.skill_id for s in self._registry.match(ChannelType(channel_type), channel_name)
                if self._is_active(s.skill_id)]

    # ------------------------
    # Lanes
    # ------------------------
    def _lane(self, skill_id: str) -> _Lane:
        with self._lanes_lock:
            lane = self._lanes.get(skill_id)
            if lane is None:
                lane = _Lane(skill_id, self._pool)
                self._lanes[skill_id] = lane
            return lane

    def drop_lane(self, skill_id: str) -> None:
        with self._lanes_lock:
            self._lanes.pop(skill_id, None)

    def invoke(self, skill_id: str, ref: HandlerRef, args: Tuple[Any, ...] = (), timeout: Optional[float] = None) -> concurrent.futures.Future:
        """
        Run one entry point of `skill_id` on its lane; resolves to an InvocationResult.
        When called from code of the same skill, runs inline instead of queueing behind itself.
        """
        if self.sandbox.current_skill() == skill_id:
            fut: concurrent.futures.Future = concurrent.futures.Future()
            fut.set_result(self.sandbox.invoke_inline(ref, args))
            return fut
        return self._lane(skill_id).submit(lambda: self.sandbox.invoke(ref, args, timeout=timeout))

    # ------------------------
    # Publishing
    # ------------------------
    def publish(
        self,
        channel_type: Union[ChannelType, str],
        channel_name: str,
        payload: Any = None,
        sender_info: Optional[Dict[str, Any]] = None,
    ) -> PublishReceipt:
        message = Message(
            channel_type=ChannelType(channel_type),
            channel_name=channel_name,
            payload=payload,
            sender=dict(sender_info or {}),
        )
        receipt = PublishReceipt(message=message)
        if self._shutdown:
            logger.warning("dispatcher is shut down, dropping %s", channel_name, extra={"message_id": message.message_id})
            return receipt

        self.metrics.counter("dispatch.published").inc()
        registry = self._registry
        targets = [s for s in registry.match(message.channel_type, channel_name) if self._is_active(s.skill_id)]
        logger.debug(
            "published %s %s to %d subscriber(s)", message.channel_type.value, channel_name, len(targets),
            extra={"message_id": message.message_id, "channel": channel_name},
        )
        if not targets:
            self.metrics.counter("dispatch.unrouted").inc()
            return receipt

        for sub in targets:
            try:
                fut = self._lane(sub.skill_id).submit(lambda sub=sub: self._deliver(sub, message))
            except RuntimeError:
                logger.warning("could not queue delivery", extra={"skill_id": sub.skill_id, "channel": channel_name})
                continue
            receipt.deliveries.append((sub.skill_id, fut))
        return receipt

    def _deliver(self, sub: Subscription, message: Message) -> Any:
        # the skill may have been stopped while this delivery sat in its lane
        if not self._registry.contains(sub) or not self._is_active(sub.skill_id):
            self.metrics.counter("dispatch.skipped").inc()
            return DispatchFailure(sub.skill_id, sub.channel_name, "subscription no longer active", kind="skipped")

        sender = dict(message.sender)
        sender.setdefault("from", HOST_SENDER)
        sender.setdefault("message_id", message.message_id)
        sender.setdefault("channel", message.channel_name)
        timeout = self._timeouts.get(sub.skill_id, self.handler_timeout)

        with self.metrics.timer("dispatch.latency"):
            result = self.sandbox.invoke(sub.handler_ref, (message.payload, sender), timeout=timeout)
        if result.success:
            self.metrics.counter("dispatch.delivered").inc()
            return result.value
        return self._failed(sub, message, result)

    def _failed(self, sub: Subscription, message: Message, result: InvocationResult) -> DispatchFailure:
        failure = DispatchFailure(sub.skill_id, sub.channel_name, result.error or "unknown error", kind=result.kind)
        self.metrics.counter("dispatch.timeout" if result.kind == TIMEOUT else "dispatch.failed").inc()
        exc = result.exception
        logger.error(
            "handler %s failed on %s (%s): %s", sub.handler_ref.name, sub.channel_name, result.kind, result.error,
            exc_info=(type(exc), exc, exc.__traceback__) if exc is not None else None,
            extra={"skill_id": sub.skill_id, "channel": sub.channel_name, "message_id": message.message_id},
        )
        return failure

    # ------------------------
    # Draining / shutdown
    # ------------------------
    def pending(self) -> Dict[str, int]:
        with self._lanes_lock:
            lanes = list(self._lanes.values())
        return {lane.skill_id: lane.pending() for lane in lanes if lane.pending()}

    def wait_idle(self, timeout: Optional[float] = None, skill_id: Optional[str] = None) -> bool:
        deadline = None if timeout is None else time.monotonic() + timeout
        with self._lanes_lock:
            lanes = [self._lanes[skill_id]] if skill_id in self._lanes else ([] if skill_id else list(self._lanes.values()))
        for lane in lanes:
            remaining = None if deadline is None else max(0.0, deadline - time.monotonic())
            if not lane.wait_idle(remaining):
                return False
        return True

    def shutdown(self, wait: bool = True, timeout: Optional[float] = 10.0) -> None:
        self._shutdown = True
        if wait and not self.wait_idle(timeout):
            logger.warning("dispatcher shutdown with deliveries still pending: %s", self.pending())
        self._pool.shutdown(wait=wait)
        logger.info("dispatcher shutdown complete")
