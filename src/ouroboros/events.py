"""Pipeline events and the append-only JSONL log they are written to."""

from __future__ import annotations

import json
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any, Callable

from .util import utc_now_iso

EVENT_VERSION = 1
LOGS_DIR = Path(".ouroboros") / "logs"


@dataclass(frozen=True)
class PipelineEvent:
    type: str
    timestamp: str
    phase: int | None = None
    step: str | None = None
    payload: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class ToolCallEvent:
    """One completed tool invocation parsed from an agent's output stream."""

    tool_name: str
    args: dict[str, Any] = field(default_factory=dict)
    result: Any = None
    is_error: bool = False
    error_message: str | None = None


EventSink = Callable[[PipelineEvent], None]
ToolEventSink = Callable[[ToolCallEvent], None]


def make_event(
    event_type: str,
    *,
    phase: int | None = None,
    step: str | None = None,
    payload: dict[str, Any] | None = None,
) -> PipelineEvent:
    return PipelineEvent(
        type=event_type,
        timestamp=utc_now_iso(),
        phase=phase,
        step=step,
        payload=dict(payload or {}),
    )


class EventLog:
    """Append-only JSONL event log; usable directly as an ``EventSink``."""

    def __init__(self, path: Path) -> None:
        self.path = path

    @classmethod
    def from_repo_root(cls, repo_root: Path) -> "EventLog":
        return cls(ensure_logs_dir(repo_root) / "events.jsonl")

    def __call__(self, event: PipelineEvent) -> None:
        row = {"v": EVENT_VERSION, **asdict(event)}
        line = json.dumps(row, separators=(",", ":"), ensure_ascii=False, default=str)
        self.path.parent.mkdir(parents=True, exist_ok=True)
        with self.path.open("a", encoding="utf-8") as f:
            f.write(line + "\n")


def ensure_logs_dir(repo_root: Path) -> Path:
    """Create ``.ouroboros/logs`` with a catch-all .gitignore.

    Keeps step logs out of ``git add -A`` and out of reach of ``git clean -fd``
    during a rollback.
    """
    logs = Path(repo_root) / LOGS_DIR
    logs.mkdir(parents=True, exist_ok=True)
    ignore = logs / ".gitignore"
    if not ignore.exists():
        ignore.write_text("*\n", encoding="utf-8")
    return logs
