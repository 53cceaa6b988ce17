# skillhost/runtime/validators.py
"""
Reply validators for dialogue sessions.

A validator is a pure function  raw_input -> Verdict(accepted, value).
The set of kinds is closed; skills pick one by name (or by declarative spec)
so the dialogue table never has to hold skill-supplied code:

    build_validator({"kind": "boolean", "fuzzy": True})
    build_validator({"kind": "optional", "inner": {"kind": "mapped", "mapping": {"red": 1}}})
"""

from __future__ import annotations
import difflib
import re
import string
from dataclasses import dataclass, field
from typing import Any, Dict, Mapping, Optional, Sequence, Tuple, Union

from .values import ensure_script_value

TRUE_WORDS: Tuple[str, ...] = ("yes", "y", "yeah", "yep", "yup", "sure", "ok", "okay", "true", "1", "on", "affirmative", "correct")
FALSE_WORDS: Tuple[str, ...] = ("no", "n", "nope", "nah", "false", "0", "off", "negative", "cancel")

FUZZY_CUTOFF = 0.75

KINDS: Sequence[str] = ("any", "boolean", "mapped", "allow_list", "optional")

_WS = re.compile(r"\s+")
_PUNCT = str.maketrans("", "", string.punctuation)


def normalize(raw: Any) -> str:
    if raw is None:
        return ""
    return _WS.sub(" ", str(raw)).strip().casefold()


@dataclass(frozen=True)
class Verdict:
    accepted: bool
    value: Any = None
    reason: Optional[str] = None

    @classmethod
    def accept(cls, value: Any) -> "Verdict":
        return cls(True, value)

    @classmethod
    def reject(cls, reason: str) -> "Verdict":
        return cls(False, None, reason)


class Validator:
    kind: str = "abstract"

    def __call__(self, raw_input: Any) -> Verdict:
        raise NotImplementedError()

    def to_spec(self) -> Dict[str, Any]:
        return {"kind": self.kind}


@dataclass(frozen=True)
class AnyValidator(Validator):
    kind = "any"

    def __call__(self, raw_input: Any) -> Verdict:
        return Verdict.accept("" if raw_input is None else str(raw_input))


@dataclass(frozen=True)
class BooleanValidator(Validator):
    """
    Accepts yes/no style answers. With fuzzy=True, punctuation is ignored,
    only the first word counts ("yes please") and near misses ("yess", "noo") match.
    """
    kind = "boolean"

    fuzzy: bool = False
    true_words: Tuple[str, ...] = TRUE_WORDS
    false_words: Tuple[str, ...] = FALSE_WORDS

    def _lookup(self, word: str) -> Optional[bool]:
        if word in self.true_words:
            return True
        if word in self.false_words:
            return False
        return None

    def __call__(self, raw_input: Any) -> Verdict:
        text = normalize(raw_input)
        if not text:
            return Verdict.reject("empty")

        hit = self._lookup(text)
        if hit is not None:
            return Verdict.accept(hit)
        if not self.fuzzy:
            return Verdict.reject("not a yes/no answer")

        text = text.translate(_PUNCT).strip()
        hit = self._lookup(text)
        if hit is None and text:
            hit = self._lookup(text.split(" ", 1)[0])
        if hit is None and text:
            close = difflib.get_close_matches(text, self.true_words + self.false_words, n=1, cutoff=FUZZY_CUTOFF)
            if close:
                hit = self._lookup(close[0])
        if hit is None:
            return Verdict.reject("not a yes/no answer")
        return Verdict.accept(hit)

    def to_spec(self) -> Dict[str, Any]:
        return {"kind": self.kind, "fuzzy": self.fuzzy}


@dataclass(frozen=True)
class MappedValidator(Validator):
    """Dictionary lookup by normalised input: {"red": 1, "green": 2}."""
    kind = "mapped"

    mapping: Mapping[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        normalized = {normalize(k): ensure_script_value(v) for k, v in self.mapping.items()}
        object.__setattr__(self, "mapping", normalized)

    def __call__(self, raw_input: Any) -> Verdict:
        key = normalize(raw_input)
        if key in self.mapping:
            return Verdict.accept(self.mapping[key])
        return Verdict.reject("no mapping")

    def to_spec(self) -> Dict[str, Any]:
        return {"kind": self.kind, "mapping": dict(self.mapping)}


@dataclass(frozen=True)
class AllowListValidator(Validator):
    """
    Accepts input found in the allow list and returns the list's spelling of it.
    An empty allow list places no restriction: any non-empty input is accepted.
    """
    kind = "allow_list"

    allowed: Tuple[str, ...] = ()

    def __post_init__(self):
        object.__setattr__(self, "allowed", tuple(str(a) for a in self.allowed))

    def __call__(self, raw_input: Any) -> Verdict:
        text = normalize(raw_input)
        if not text:
            return Verdict.reject("empty")
        if not self.allowed:
            return Verdict.accept(str(raw_input).strip())
        for candidate in self.allowed:
            if normalize(candidate) == text:
                return Verdict.accept(candidate)
        return Verdict.reject("not in allow list")

    def to_spec(self) -> Dict[str, Any]:
        return {"kind": self.kind, "allowed": list(self.allowed)}


@dataclass(frozen=True)
class OptionalValidator(Validator):
    """Wraps another validator; empty input is additionally accepted as None."""
    kind = "optional"

    inner: Validator = field(default_factory=AnyValidator)

    def __call__(self, raw_input: Any) -> Verdict:
        if not normalize(raw_input):
            return Verdict.accept(None)
        return self.inner(raw_input)

    def to_spec(self) -> Dict[str, Any]:
        return {"kind": self.kind, "inner": self.inner.to_spec()}


ValidatorSpec = Union[None, str, Mapping[str, Any], Validator]


def build_validator(spec: ValidatorSpec) -> Validator:
    """Turn a declarative spec (None, kind name, dict or Validator) into a Validator."""
    if spec is None:
        return AnyValidator()
    if isinstance(spec, Validator):
        return spec
    if isinstance(spec, str):
        spec = {"kind": spec}
    if not isinstance(spec, Mapping):
        raise TypeError(f"unsupported validator spec {spec!r}")

    kind = spec.get("kind", "any")
    if kind == "any":
        return AnyValidator()
    if kind == "boolean":
        return BooleanValidator(fuzzy=bool(spec.get("fuzzy", False)))
    if kind == "mapped":
        return MappedValidator(mapping=dict(spec.get("mapping") or {}))
    if kind == "allow_list":
        return AllowListValidator(allowed=tuple(spec.get("allowed") or ()))
    if kind == "optional":
        return OptionalValidator(inner=build_validator(spec.get("inner")))
    raise ValueError(f"unknown validator kind '{kind}' (expected one of {', '.join(KINDS)})")
