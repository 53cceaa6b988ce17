# skillhost/errors.py
"""
Error taxonomy for the skill runtime.

Propagation:
  - LifecycleFailure    surfaced to whoever triggered start/stop, recorded on the skill
  - StorageFailure      raised synchronously from ContextStore.set for durable writes
  - DispatchFailure     contained by the dispatcher; only ever logged / attached to results
  - ConfigurationMissing, ScriptAssertion   raised inside skill code, mapped at the sandbox boundary
"""

from __future__ import annotations
from typing import Optional


class SkillhostError(Exception):
    """Base class for every runtime error."""


class UnknownSkill(SkillhostError, KeyError):
    def __init__(self, skill_id: str):
        super().__init__(skill_id)
        self.skill_id = skill_id

    def __str__(self) -> str:
        return f"unknown skill '{self.skill_id}'"


class InvalidTransition(SkillhostError):
    def __init__(self, skill_id: str, current: str, target: str):
        super().__init__(f"skill '{skill_id}' cannot move from {current} to {target}")
        self.skill_id = skill_id
        self.current = current
        self.target = target


class LifecycleFailure(SkillhostError):
    """A start/end hook failed, raised or timed out."""

    def __init__(self, skill_id: str, phase: str, reason: str, kind: str = "error"):
        super().__init__(f"{phase} hook of '{skill_id}' failed ({kind}): {reason}")
        self.skill_id = skill_id
        self.phase = phase
        self.reason = reason
        self.kind = kind


class StorageFailure(SkillhostError):
    """Durable tier fault that survived every retry."""

    def __init__(self, skill_id: str, key: Optional[str], attempts: int, cause: Optional[BaseException] = None):
        where = f"{skill_id}/{key}" if key is not None else skill_id
        super().__init__(f"durable storage failed for {where} after {attempts} attempt(s): {cause!r}")
        self.skill_id = skill_id
        self.key = key
        self.attempts = attempts
        self.cause = cause


class DispatchFailure(SkillhostError):
    def __init__(self, skill_id: str, channel_name: str, reason: str, kind: str = "error"):
        super().__init__(f"handler of '{skill_id}' on '{channel_name}' failed ({kind}): {reason}")
        self.skill_id = skill_id
        self.channel_name = channel_name
        self.reason = reason
        self.kind = kind


class ConfigurationMissing(SkillhostError):
    """A skill asked for a manifest constant that was never provided."""

    def __init__(self, name: str):
        super().__init__(f"missing required constant '{name}'")
        self.name = name


class ScriptAssertion(SkillhostError):
    """Raised by ctx.require / ctx.assert_that inside skill code."""
