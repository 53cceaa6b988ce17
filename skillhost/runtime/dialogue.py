# skillhost/runtime/dialogue.py
from __future__ import annotations
import concurrent.futures
import logging
import threading
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Tuple

from skillhost.sandbox.handlers import HandlerRef, HandlerTable
from skillhost.observability.metrics import MetricsRegistry
from .context_store import ContextStore
from .validators import BooleanValidator, Validator, ValidatorSpec, build_validator
from .values import ensure_script_value

logger = logging.getLogger(__name__)

# context store key holding carry-over state for a pending reply
CARRY_KEY_PREFIX = "__dialogue__:"

# invoker(skill_id, handler_ref, args) -> Future resolving once the handler ran
ReplyInvoker = Callable[[str, HandlerRef, Tuple[Any, ...]], concurrent.futures.Future]


class DialogueState(str, Enum):
    IDLE = "idle"
    AWAITING_REPLY = "awaiting_reply"


class ReplyOutcome(str, Enum):
    ACCEPTED = "accepted"
    REJECTED = "rejected"
    UNMATCHED = "unmatched"


@dataclass
class DialogueSession:
    session_id: str
    skill_id: str
    handler_ref: HandlerRef
    validator: Validator
    created_at: float
    expires_at: float
    carry_key: Optional[str] = None
    rejections: int = 0

    def expired(self, now: float) -> bool:
        return now >= self.expires_at


@dataclass(frozen=True)
class ReplySubmission:
    outcome: ReplyOutcome
    session_id: str
    value: Any = None
    reason: Optional[str] = None
    # resolves to the handler's InvocationResult; only set for ACCEPTED
    future: Optional[concurrent.futures.Future] = None

    @property
    def accepted(self) -> bool:
        return self.outcome is ReplyOutcome.ACCEPTED


class DialogueTable:
    """
    Pending multi-turn replies, at most one per session id.

      Idle --register_reply--> AwaitingReply
      AwaitingReply --submit_reply(accepted)--> Idle      (handler invoked once)
      AwaitingReply --submit_reply(rejected)--> AwaitingReply
      AwaitingReply --window elapsed--> Idle              (handler discarded)

    A second register_reply on the same session replaces the pending one.
    """

    def __init__(
        self,
        invoker: ReplyInvoker,
        context_store: Optional[ContextStore] = None,
        reply_window_seconds: float = 300.0,
        clock: Callable[[], float] = time.time,
        sweep_interval_seconds: float = 5.0,
        metrics: Optional[MetricsRegistry] = None,
        handlers: Optional[HandlerTable] = None,
    ):
        if reply_window_seconds <= 0:
            raise ValueError("reply_window_seconds must be > 0")
        self._invoke = invoker
        self.context_store = context_store
        self.reply_window = reply_window_seconds
        self.clock = clock
        self.sweep_interval = sweep_interval_seconds
        self.metrics = metrics or MetricsRegistry()
        # reply entry points are released once their session leaves the table
        self.handlers = handlers

        self._sessions: Dict[str, DialogueSession] = {}
        self._lock = threading.RLock()

        self._sweeper_thread: Optional[threading.Thread] = None
        self._sweeper_stop = threading.Event()

    # -------------------------
    # Lifecycle
    # -------------------------
    def start(self) -> None:
        if self._sweeper_thread and self._sweeper_thread.is_alive():
            return
        self._sweeper_stop.clear()
        self._sweeper_thread = threading.Thread(target=self._sweeper_loop, daemon=True, name="DialogueSweeper")
        self._sweeper_thread.start()

    def stop(self) -> None:
        self._sweeper_stop.set()
        if self._sweeper_thread and self._sweeper_thread.is_alive():
            self._sweeper_thread.join(timeout=2.0)
        self._sweeper_thread = None

    def _sweeper_loop(self) -> None:
        while not self._sweeper_stop.wait(self.sweep_interval):
            try:
                self.sweep()
            except Exception:
                logger.exception("dialogue sweep failed")

    # -------------------------
    # Carry-over state
    # -------------------------
    def _store_carry(self, skill_id: str, session_id: str, carry: Optional[Dict[str, Any]], window: float) -> Optional[str]:
        if carry is None:
            return None
        if self.context_store is None:
            raise RuntimeError("carry-over state needs a context store")
        key = CARRY_KEY_PREFIX + session_id
        self.context_store.set(skill_id, key, ensure_script_value(carry), ttl_seconds=window, persist=False)
        return key

    def _take_carry(self, session: DialogueSession) -> Optional[Dict[str, Any]]:
        if session.carry_key is None or self.context_store is None:
            return None
        carry = self.context_store.get(session.skill_id, session.carry_key)
        self.context_store.remove(session.skill_id, session.carry_key)
        return carry

    def _release(self, ref: HandlerRef) -> None:
        if self.handlers is not None:
            self.handlers.drop(ref)

    def _discard(self, session: DialogueSession, reason: str, keep_carry: bool = False, release: bool = True) -> None:
        if release:
            self._release(session.handler_ref)
        if not keep_carry and session.carry_key is not None and self.context_store is not None:
            self.context_store.remove(session.skill_id, session.carry_key)
        logger.debug(
            "discarded pending reply %s (%s)", session.handler_ref.handler_id, reason,
            extra={"session_id": session.session_id, "skill_id": session.skill_id},
        )

    # -------------------------
    # API
    # -------------------------
    def register_reply(
        self,
        session_id: str,
        skill_id: str,
        handler_ref: HandlerRef,
        validator: ValidatorSpec = None,
        carry: Optional[Dict[str, Any]] = None,
        window_seconds: Optional[float] = None,
    ) -> DialogueSession:
        window = self.reply_window if window_seconds is None else min(window_seconds, self.reply_window)
        if window <= 0:
            raise ValueError("reply window must be > 0")
        checked = build_validator(validator)
        carry_key = self._store_carry(skill_id, session_id, carry, window)

        now = self.clock()
        session = DialogueSession(
            session_id=session_id,
            skill_id=skill_id,
            handler_ref=handler_ref,
            validator=checked,
            created_at=now,
            expires_at=now + window,
            carry_key=carry_key,
        )
        with self._lock:
            previous = self._sessions.get(session_id)
            self._sessions[session_id] = session

        if previous is not None:
            self.metrics.counter("dialogue.replaced").inc()
            # same skill + same session share the carry key, which now belongs to the new session
            self._discard(
                previous, "replaced",
                keep_carry=previous.skill_id == skill_id and carry_key is not None,
                release=previous.handler_ref != handler_ref,
            )
        self.metrics.counter("dialogue.registered").inc()
        logger.debug(
            "awaiting reply via %s (%s)", handler_ref.handler_id, checked.kind,
            extra={"session_id": session_id, "skill_id": skill_id},
        )
        return session

    def confirm(
        self,
        session_id: str,
        skill_id: str,
        handler_ref: HandlerRef,
        fuzzy: bool = True,
        carry: Optional[Dict[str, Any]] = None,
        window_seconds: Optional[float] = None,
    ) -> DialogueSession:
        """Yes/no question: the handler receives True or False."""
        return self.register_reply(session_id, skill_id, handler_ref, BooleanValidator(fuzzy=fuzzy), carry, window_seconds)

    def submit_reply(self, session_id: str, raw_input: Any) -> ReplySubmission:
        expired: Optional[DialogueSession] = None
        with self._lock:
            session = self._sessions.get(session_id)
            if session is not None and session.expired(self.clock()):
                expired = self._sessions.pop(session_id)
                session = None
            if session is None:
                verdict = None
            else:
                verdict = session.validator(raw_input)
                if verdict.accepted:
                    # consumed here, under the lock: a concurrent submit cannot invoke it again
                    del self._sessions[session_id]
                else:
                    session.rejections += 1

        if expired is not None:
            self.metrics.counter("dialogue.expired").inc()
            self._discard(expired, "expired")

        if session is None:
            self.metrics.counter("dialogue.unmatched").inc()
            logger.debug("reply discarded, nothing pending", extra={"session_id": session_id})
            return ReplySubmission(ReplyOutcome.UNMATCHED, session_id)

        if not verdict.accepted:
            self.metrics.counter("dialogue.rejected").inc()
            logger.debug("reply rejected: %s", verdict.reason, extra={"session_id": session_id, "skill_id": session.skill_id})
            return ReplySubmission(ReplyOutcome.REJECTED, session_id, reason=verdict.reason)

        carry = self._take_carry(session)
        self.metrics.counter("dialogue.accepted").inc()
        future = self._invoke(session.skill_id, session.handler_ref, (verdict.value, carry))
        future.add_done_callback(lambda _f, ref=session.handler_ref: self._release(ref))
        return ReplySubmission(ReplyOutcome.ACCEPTED, session_id, value=verdict.value, future=future)

    def state(self, session_id: str) -> DialogueState:
        return DialogueState.AWAITING_REPLY if self.pending(session_id) is not None else DialogueState.IDLE

    def pending(self, session_id: str) -> Optional[DialogueSession]:
        expired = None
        with self._lock:
            session = self._sessions.get(session_id)
            if session is not None and session.expired(self.clock()):
                expired = self._sessions.pop(session_id)
                session = None
        if expired is not None:
            self.metrics.counter("dialogue.expired").inc()
            self._discard(expired, "expired")
        return session

    def cancel(self, session_id: str) -> bool:
        with self._lock:
            session = self._sessions.pop(session_id, None)
        if session is None:
            return False
        self._discard(session, "cancelled")
        return True

    def drop_skill(self, skill_id: str) -> int:
        """Forget every pending reply owned by a skill (used when it stops)."""
        with self._lock:
            dropped = [s for s in self._sessions.values() if s.skill_id == skill_id]
            for s in dropped:
                del self._sessions[s.session_id]
        for s in dropped:
            self._discard(s, "skill stopped")
        return len(dropped)

    def sweep(self, now: Optional[float] = None) -> int:
        now = self.clock() if now is None else now
        with self._lock:
            expired: List[DialogueSession] = [s for s in self._sessions.values() if s.expired(now)]
            for s in expired:
                del self._sessions[s.session_id]
        for s in expired:
            self.metrics.counter("dialogue.expired").inc()
            self._discard(s, "expired")
        return len(expired)

    def __len__(self) -> int:
        with self._lock:
            return len(self._sessions)

    def sessions(self) -> List[DialogueSession]:
        with self._lock:
            return list(self._sessions.values())
