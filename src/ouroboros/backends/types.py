from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import IO, TYPE_CHECKING, Protocol

from ..events import ToolCallEvent
from ..usage import TokenUsage

if TYPE_CHECKING:
    from ..loop_detect import LoopDetector


@dataclass(frozen=True)
class RunOptions:
    cwd: Path
    model: str | None = None
    verbose: bool = False
    output_path: Path | None = None


@dataclass
class RunResult:
    success: bool
    exit_code: int
    duration_ms: int = 0
    events: list[ToolCallEvent] = field(default_factory=list)
    token_usage: TokenUsage | None = None
    cost_usd: float | None = None
    loop_detected: bool = False
    loop_reason: str = ""
    output_path: Path | None = None


class Backend(Protocol):
    name: str
    display_name: str
    supports_token_tracking: bool

    def build_argv(self, prompt: str, options: RunOptions) -> list[str]:
        ...

    def is_available(self) -> bool:
        ...

    def run(
        self,
        prompt: str,
        options: RunOptions,
        *,
        loop_detector: "LoopDetector | None" = None,
        stdout: IO[str] | None = None,
        stderr: IO[str] | None = None,
    ) -> RunResult:
        ...
