# skillhost/kernel/__init__.py
"""
Skill runtime kernel. Coordinates:

- Context Store (per-skill state, TTL, durable tier)
- Dispatcher (topic/event routing onto per-skill lanes)
- Sandbox boundary (handler table + bounded invocation)
- Dialogue sessions
- Skill lifecycle
- Diagnostics
"""

from .app_context import AppContext, ServiceNotRegistered
from .dispatcher import Dispatcher, PublishReceipt, Subscription
from .kernel import Kernel
from .startup import perform_kernel_startup
from .diagnostics import KernelDiagnostics

__all__ = [
    "AppContext",
    "Dispatcher",
    "Kernel",
    "KernelDiagnostics",
    "PublishReceipt",
    "ServiceNotRegistered",
    "Subscription",
    "perform_kernel_startup",
]
