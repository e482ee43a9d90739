from __future__ import annotations

from dataclasses import dataclass
from typing import IO, TYPE_CHECKING

from ..format_stream import OpenCodeJsonFormatter
from .base import StreamBackend
from .types import RunOptions

if TYPE_CHECKING:
    from ..events import ToolEventSink


@dataclass
class OpenCodeBackend(StreamBackend):
    name: str = "opencode"
    display_name: str = "OpenCode"
    executable: str = "opencode"
    supports_token_tracking: bool = True

    def build_argv(self, prompt: str, options: RunOptions) -> list[str]:
        argv = [self.executable, "run", "--format", "json"]
        if options.model:
            argv += ["--model", options.model]
        argv.append(prompt)
        return argv

    def create_formatter(
        self,
        *,
        options: RunOptions,
        stdout: IO[str],
        stderr: IO[str],
        tool_sink: "ToolEventSink | None",
    ) -> OpenCodeJsonFormatter:
        return OpenCodeJsonFormatter(
            stdout=stdout,
            stderr=stderr,
            repo_root=options.cwd,
            verbose=options.verbose,
            tool_sink=tool_sink,
        )
