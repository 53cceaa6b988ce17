from .handlers import HandlerRef, HandlerTable
from .sandbox_runner import InvocationResult, SandboxRunner

__all__ = ["HandlerRef", "HandlerTable", "InvocationResult", "SandboxRunner"]
