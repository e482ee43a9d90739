from __future__ import annotations

from .registry import available_backends, get_backend, list_backends, register_backend
from .types import Backend, RunOptions, RunResult


_LOADED = False


def load_builtin_backends() -> None:
    global _LOADED
    if _LOADED:
        return
    from .claude import ClaudeBackend
    from .copilot import CopilotBackend
    from .cursor import CursorBackend
    from .opencode import OpenCodeBackend

    register_backend(ClaudeBackend())
    register_backend(CursorBackend())
    register_backend(OpenCodeBackend())
    register_backend(CopilotBackend())
    _LOADED = True


load_builtin_backends()

__all__ = [
    "Backend",
    "RunOptions",
    "RunResult",
    "available_backends",
    "get_backend",
    "list_backends",
    "load_builtin_backends",
    "register_backend",
]
