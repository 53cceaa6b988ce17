# skillhost/skills/context.py
"""
SkillContext - the only surface a skill's code sees.

Every call is bound to the owning skill_id, so a skill can neither read
another skill's context entries nor register handlers on its behalf:

  - get / set / has / remove / keys      Context Store, scoped to the skill
  - const / require / assert_that        manifest constants and script assertions
  - subscribe                            staged during on_start only
  - on_reply / confirm / cancel_reply    dialogue sessions
  - publish / emit                       topic and event messages
"""

from __future__ import annotations
import threading
import uuid
from typing import Any, Callable, Dict, List, Optional, Union

from skillhost.errors import ConfigurationMissing, ScriptAssertion, SkillhostError
from skillhost.kernel.dispatcher import Dispatcher, PublishReceipt, Subscription
from skillhost.observability.logging import skill_logger
from skillhost.runtime.context_store import ContextStore
from skillhost.runtime.dialogue import DialogueSession, DialogueTable
from skillhost.runtime.validators import ValidatorSpec
from skillhost.sandbox.handlers import HandlerTable
from skillhost.schemas.manifest import SkillManifest
from skillhost.schemas.messages import ChannelType

_REQUIRED = object()


class SkillContext:
    def __init__(
        self,
        manifest: SkillManifest,
        context_store: ContextStore,
        handlers: HandlerTable,
        dispatcher: Dispatcher,
        dialogue: DialogueTable,
    ):
        self.manifest = manifest
        self.skill_id = manifest.skill_id
        self.logger = skill_logger(self.skill_id)
        self._store = context_store
        self._handlers = handlers
        self._dispatcher = dispatcher
        self._dialogue = dialogue

        self._lock = threading.Lock()
        self._staged: Dict[tuple, Subscription] = {}
        self._staging = False
        self._closed = False

    # -------------------------
    # Context Store
    # -------------------------
    def get(self, key: str, default: Any = None) -> Any:
        return self._store.get(self.skill_id, key, default)

    def set(self, key: str, value: Any, ttl_seconds: float = 0, persist: bool = False) -> None:
        self._store.set(self.skill_id, key, value, ttl_seconds=ttl_seconds, persist=persist)

    def has(self, key: str) -> bool:
        return self._store.has(self.skill_id, key)

    def remove(self, key: str) -> None:
        self._store.remove(self.skill_id, key)

    def keys(self) -> List[str]:
        return self._store.keys(self.skill_id)

    # -------------------------
    # Constants / assertions
    # -------------------------
    def const(self, name: str, default: Any = _REQUIRED) -> Any:
        if name in self.manifest.constants:
            return self.manifest.constants[name]
        if default is _REQUIRED:
            raise ConfigurationMissing(name)
        return default

    def require(self, value: Any, message: str = "requirement failed") -> Any:
        if value is None or value is False:
            raise ScriptAssertion(message)
        return value

    def assert_that(self, condition: Any, message: str = "assertion failed") -> None:
        if not condition:
            raise ScriptAssertion(message)

    # -------------------------
    # Subscriptions
    # -------------------------
    def begin_staging(self) -> None:
        with self._lock:
            self._staged.clear()
            self._staging = True

    def seal(self) -> List[Subscription]:
        """Stop accepting subscriptions and hand the staged set to the lifecycle controller."""
        with self._lock:
            self._staging = False
            return list(self._staged.values())

    def subscribe(
        self,
        channel_name: str,
        handler: Callable[..., Any],
        channel_type: Union[ChannelType, str] = ChannelType.TOPIC,
    ) -> Subscription:
        ctype = ChannelType(channel_type)
        if not channel_name:
            raise ValueError("channel_name must not be empty")
        with self._lock:
            if not self._staging:
                raise SkillhostError(f"skill '{self.skill_id}' can only subscribe during on_start")
            name = getattr(handler, "__name__", "handler")
            ref = self._handlers.register(self.skill_id, name, handler)
            sub = Subscription(
                skill_id=self.skill_id,
                channel_type=ctype,
                channel_name=channel_name,
                handler_ref=ref,
                binding_id=uuid.uuid4().hex,
            )
            self._staged[sub.key] = sub
        self.logger.debug("staged %s subscription %s", ctype.value, channel_name, extra={"channel": channel_name})
        return sub

    def on_event(self, event_name: str, handler: Callable[..., Any]) -> Subscription:
        return self.subscribe(event_name, handler, ChannelType.EVENT)

    # -------------------------
    # Dialogue
    # -------------------------
    def _reply_ref(self, handler: Callable[..., Any]):
        if self._closed:
            raise SkillhostError(f"skill '{self.skill_id}' is not running")
        return self._handlers.register(self.skill_id, "reply:" + getattr(handler, "__name__", "handler"), handler)

    def on_reply(
        self,
        session_id: str,
        handler: Callable[..., Any],
        validator: ValidatorSpec = None,
        carry: Optional[Dict[str, Any]] = None,
        window_seconds: Optional[float] = None,
    ) -> DialogueSession:
        """Wait for the next reply in `session_id`; `handler(value, carry)` runs once it validates."""
        ref = self._reply_ref(handler)
        return self._dialogue.register_reply(session_id, self.skill_id, ref, validator, carry, window_seconds)

    register_reply = on_reply

    def confirm(
        self,
        session_id: str,
        handler: Callable[..., Any],
        fuzzy: bool = True,
        carry: Optional[Dict[str, Any]] = None,
        window_seconds: Optional[float] = None,
    ) -> DialogueSession:
        ref = self._reply_ref(handler)
        return self._dialogue.confirm(session_id, self.skill_id, ref, fuzzy, carry, window_seconds)

    def cancel_reply(self, session_id: str) -> bool:
        pending = self._dialogue.pending(session_id)
        if pending is None or pending.skill_id != self.skill_id:
            return False
        return self._dialogue.cancel(session_id)

    # -------------------------
    # Publishing
    # -------------------------
    def publish(self, topic: str, payload: Any = None) -> PublishReceipt:
        return self._dispatcher.publish(ChannelType.TOPIC, topic, payload, sender_info={"from": self.skill_id})

    def emit(self, event_name: str, payload: Any = None) -> PublishReceipt:
        return self._dispatcher.publish(ChannelType.EVENT, event_name, payload, sender_info={"from": self.skill_id})

    @property
    def closed(self) -> bool:
        return self._closed

    def close(self) -> None:
        with self._lock:
            self._staging = False
            self._staged.clear()
            self._closed = True
