from __future__ import annotations

from dataclasses import dataclass
from typing import IO, TYPE_CHECKING

from ..format_stream import CursorStreamJsonFormatter
from .base import StreamBackend
from .types import RunOptions

if TYPE_CHECKING:
    from ..events import ToolEventSink


@dataclass
class CursorBackend(StreamBackend):
    name: str = "cursor"
    display_name: str = "Cursor Agent"
    executable: str = "cursor-agent"

    def build_argv(self, prompt: str, options: RunOptions) -> list[str]:
        argv = [
            self.executable,
            "-p",
            "--output-format",
            "stream-json",
            "--force",
        ]
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
    ) -> CursorStreamJsonFormatter:
        return CursorStreamJsonFormatter(
            stdout=stdout,
            stderr=stderr,
            repo_root=options.cwd,
            verbose=options.verbose,
            tool_sink=tool_sink,
        )
