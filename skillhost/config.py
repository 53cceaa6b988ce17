# skillhost/config.py
from __future__ import annotations
import logging
import os
from dataclasses import dataclass, fields
from typing import Any, Dict, Mapping, Optional

logger = logging.getLogger(__name__)

ENV_PREFIX = "SKILLHOST_"


@dataclass
class RuntimeConfig:
    # durable tier
    storage_backend: str = "sqlite"  # "sqlite" | "memory"
    storage_path: str = "data/context.db"
    storage_retry_attempts: int = 4
    storage_retry_backoff_seconds: float = 0.05

    # dispatch
    lane_workers: int = 8
    sandbox_workers: int = 16
    handler_timeout_seconds: float = 10.0

    # lifecycle
    start_timeout_seconds: float = 5.0
    end_timeout_seconds: float = 5.0

    # context store
    context_sweep_interval_seconds: float = 30.0

    # dialogue
    reply_window_seconds: float = 300.0
    dialogue_sweep_interval_seconds: float = 5.0

    # logging
    log_level: str = "INFO"
    log_file: Optional[str] = None
    json_logs: bool = True

    @classmethod
    def from_mapping(cls, cfg: Optional[Mapping[str, Any]] = None, environ: Optional[Mapping[str, str]] = None) -> "RuntimeConfig":
        """
        Build a config from an optional dict, then apply SKILLHOST_* environment overrides.
        Unknown keys in `cfg` are ignored with a warning.
        """
        cfg = dict(cfg or {})
        environ = os.environ if environ is None else environ
        known = {f.name: f for f in fields(cls)}
        values: Dict[str, Any] = {}

        for key, raw in cfg.items():
            if key not in known:
                logger.warning("Ignoring unknown runtime config key %s", key)
                continue
            values[key] = raw

        for name, f in known.items():
            env_key = ENV_PREFIX + name.upper()
            if env_key in environ:
                values[name] = _coerce(environ[env_key], f.type)

        return cls(**values)


def _coerce(raw: str, type_name: Any) -> Any:
    t = str(type_name)
    if "bool" in t:
        return raw.strip().lower() in ("1", "true", "yes", "on")
    if "int" in t:
        return int(raw)
    if "float" in t:
        return float(raw)
    if "Optional" in t and raw == "":
        return None
    return raw
