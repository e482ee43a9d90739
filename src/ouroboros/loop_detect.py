"""Detect an agent repeating itself without making progress.

Two bounded windows are kept: a hash of every ``(tool, args)`` call, and the
error text of every failing call. A successful call clears the error window
but not the call window, since re-issuing the exact same call is suspicious
even when it trivially "succeeds".
"""

from __future__ import annotations

import hashlib
import json
from collections import deque
from dataclasses import dataclass
from typing import Any

from .events import ToolCallEvent

DEFAULT_WINDOW_SIZE = 10
DEFAULT_THRESHOLD = 3

_ERROR_KEYS = ("error", "error_message", "stderr")


@dataclass(frozen=True)
class ToolCallRecord:
    hash: str
    error_message: str | None = None


@dataclass(frozen=True)
class LoopVerdict:
    should_abort: bool
    reason: str = ""


def hash_tool_call(tool_name: str, args: Any) -> str:
    """Content hash that ignores the key order of ``args``."""
    normalized = json.dumps(
        [tool_name, args], sort_keys=True, separators=(",", ":"), default=str
    )
    return hashlib.sha256(normalized.encode("utf-8")).hexdigest()


def extract_error(result: Any) -> str | None:
    """Error text when ``result`` looks like a failed tool call, else None."""
    if result is None:
        return None
    if isinstance(result, BaseException):
        return str(result) or type(result).__name__
    if isinstance(result, dict):
        if result.get("is_error") is True or result.get("success") is False:
            for key in (*_ERROR_KEYS, "content", "output"):
                value = result.get(key)
                if value:
                    return str(value)
            return "error"
        for key in _ERROR_KEYS:
            value = result.get(key)
            if value:
                return str(value)
        exit_code = result.get("exit_code")
        if isinstance(exit_code, int) and exit_code != 0:
            return str(result.get("output") or f"exit {exit_code}")
    return None


def _repeats(window: deque[str], threshold: int) -> bool:
    if threshold <= 0 or len(window) < threshold:
        return False
    tail = list(window)[-threshold:]
    return all(item == tail[0] for item in tail)


class LoopDetector:
    def __init__(
        self,
        *,
        window_size: int = DEFAULT_WINDOW_SIZE,
        threshold: int = DEFAULT_THRESHOLD,
    ) -> None:
        if threshold < 2:
            raise ValueError("loop threshold must be at least 2")
        if window_size < threshold:
            raise ValueError("loop window must be at least as large as the threshold")
        self.window_size = window_size
        self.threshold = threshold
        self._calls: deque[str] = deque(maxlen=window_size)
        self._errors: deque[str] = deque(maxlen=window_size)
        self.records: deque[ToolCallRecord] = deque(maxlen=window_size)
        self.triggered: LoopVerdict | None = None

    def reset(self) -> None:
        self._calls.clear()
        self._errors.clear()
        self.records.clear()
        self.triggered = None

    def observe(self, tool_name: str, args: Any, result: Any = None) -> LoopVerdict:
        call_hash = hash_tool_call(tool_name, args)
        error = extract_error(result)
        self._calls.append(call_hash)
        self.records.append(ToolCallRecord(hash=call_hash, error_message=error))
        if error is None:
            self._errors.clear()
        else:
            self._errors.append(error)

        if _repeats(self._calls, self.threshold):
            verdict = LoopVerdict(
                True, f"{tool_name} called {self.threshold}x in a row with identical arguments"
            )
        elif _repeats(self._errors, self.threshold):
            verdict = LoopVerdict(
                True, f"same error {self.threshold}x in a row: {error[:200]}"
            )
        else:
            return LoopVerdict(False)

        if self.triggered is None:
            self.triggered = verdict
        return verdict

    def observe_event(self, event: ToolCallEvent) -> LoopVerdict:
        # The formatter already decided success; a successful payload may still carry stderr.
        if not event.is_error:
            return self.observe(event.tool_name, event.args, None)
        result = {"is_error": True, "error": event.error_message or event.result}
        return self.observe(event.tool_name, event.args, result)
