# skillhost/observability/logging.py
from __future__ import annotations
import json
import logging
import os
import time
from typing import Any, Dict, Optional

# record attributes passed through `extra=` that are worth keeping in structured output
CONTEXT_FIELDS = ("skill_id", "channel", "channel_type", "message_id", "session_id", "key", "state", "phase")


class JsonFormatter(logging.Formatter):
    """
    One JSON object per log line.
    Context passed via `extra={...}` (skill_id, channel, ...) is lifted to top-level fields.
    """

    def format(self, record: logging.LogRecord) -> str:
        base: Dict[str, Any] = {
            "timestamp": time.time(),
            "level": record.levelname,
            "logger": record.name,
            "thread": record.threadName,
            "message": record.getMessage(),
        }

        for attr in CONTEXT_FIELDS:
            if hasattr(record, attr):
                base[attr] = getattr(record, attr)

        if record.exc_info:
            base["exception"] = self.formatException(record.exc_info)

        return json.dumps(base, ensure_ascii=False, default=str)


def configure_logging(
    level: int | str = logging.INFO,
    log_to_file: Optional[str] = None,
    json_logs: bool = True,
    extra_modules: Optional[Dict[str, int]] = None,
) -> None:
    """
    Configure root logging for a host process.
    - JSON (or plain) console output
    - optional file handler
    - per-module level overrides
    """
    root = logging.getLogger()
    root.setLevel(level)

    for h in list(root.handlers):
        root.removeHandler(h)

    if json_logs:
        formatter: logging.Formatter = JsonFormatter()
    else:
        formatter = logging.Formatter("%(asctime)s %(levelname)s %(name)s [%(threadName)s] %(message)s")

    ch = logging.StreamHandler()
    ch.setFormatter(formatter)
    root.addHandler(ch)

    if log_to_file:
        os.makedirs(os.path.dirname(log_to_file) or ".", exist_ok=True)
        fh = logging.FileHandler(log_to_file, encoding="utf-8")
        fh.setFormatter(formatter)
        root.addHandler(fh)

    if extra_modules:
        for mod, lvl in extra_modules.items():
            logging.getLogger(mod).setLevel(lvl)

    logging.getLogger(__name__).debug("Logging configured (json=%s, file=%s)", json_logs, log_to_file)


def skill_logger(skill_id: str) -> logging.Logger:
    return logging.getLogger(f"skillhost.skills.{skill_id}")
