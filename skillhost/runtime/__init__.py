# skillhost/runtime/__init__.py
from .values import ensure_script_value
from .retry import RetryEngine
from .storage import MemoryStorageAdapter, SQLiteStorageAdapter, StorageAdapter, make_storage_adapter
from .context_store import ContextEntry, ContextStore
from .validators import Verdict, build_validator
from .dialogue import DialogueState, DialogueTable, ReplyOutcome, ReplySubmission

__all__ = [
    "ContextEntry",
    "ContextStore",
    "DialogueState",
    "DialogueTable",
    "MemoryStorageAdapter",
    "ReplyOutcome",
    "ReplySubmission",
    "RetryEngine",
    "SQLiteStorageAdapter",
    "StorageAdapter",
    "Verdict",
    "build_validator",
    "ensure_script_value",
    "make_storage_adapter",
]
