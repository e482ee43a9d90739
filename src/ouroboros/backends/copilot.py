from __future__ import annotations

from dataclasses import dataclass
from typing import IO, TYPE_CHECKING

from ..usage import TokenUsage
from .base import StreamBackend
from .stream_helpers import StreamFormatter
from .types import RunOptions

if TYPE_CHECKING:
    from ..events import ToolEventSink


@dataclass
class _CopilotTextFormatter:
    """Copilot has no structured output: echo text, report no tool calls."""

    stdout: IO[str]
    stderr: IO[str]
    processed_lines: int = 0
    token_usage: TokenUsage | None = None
    cost_usd: float | None = None

    def process_line(self, line: str) -> None:
        if not line:
            return
        self.processed_lines += 1
        self.stdout.write(line)

    def finish(self) -> int:
        if self.processed_lines == 0:
            self.stderr.write("⚠ No output received from copilot\n")
            return 1
        return 0


@dataclass
class CopilotBackend(StreamBackend):
    name: str = "copilot"
    display_name: str = "GitHub Copilot"
    executable: str = "copilot"

    def build_argv(self, prompt: str, options: RunOptions) -> list[str]:
        argv = [self.executable, "-p", prompt, "--allow-all"]
        if options.model:
            argv += ["--model", options.model]
        return argv

    def create_formatter(
        self,
        *,
        options: RunOptions,
        stdout: IO[str],
        stderr: IO[str],
        tool_sink: "ToolEventSink | None",
    ) -> StreamFormatter:
        return _CopilotTextFormatter(stdout=stdout, stderr=stderr)
