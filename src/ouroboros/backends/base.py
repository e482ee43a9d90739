from __future__ import annotations

import sys
import time
from typing import IO, TYPE_CHECKING

from ..events import ToolCallEvent
from ..util import which
from .stream_helpers import StreamFormatter, run_stream_backend
from .types import RunOptions, RunResult

if TYPE_CHECKING:
    from ..events import ToolEventSink
    from ..loop_detect import LoopDetector, LoopVerdict


class StreamBackend:
    """Shared driver: spawn the agent CLI, parse its stream, watch for loops."""

    name: str
    display_name: str
    executable: str
    supports_token_tracking: bool = False

    def build_argv(self, prompt: str, options: RunOptions) -> list[str]:
        raise NotImplementedError

    def create_formatter(
        self,
        *,
        options: RunOptions,
        stdout: IO[str],
        stderr: IO[str],
        tool_sink: "ToolEventSink | None",
    ) -> StreamFormatter:
        raise NotImplementedError

    def run_env(self, options: RunOptions) -> dict[str, str] | None:
        return None

    def is_available(self) -> bool:
        return which(self.executable) is not None

    def run(
        self,
        prompt: str,
        options: RunOptions,
        *,
        loop_detector: "LoopDetector | None" = None,
        stdout: IO[str] | None = None,
        stderr: IO[str] | None = None,
    ) -> RunResult:
        events: list[ToolCallEvent] = []
        tripped: list["LoopVerdict"] = []

        def on_tool(event: ToolCallEvent) -> None:
            events.append(event)
            if loop_detector is None or tripped:
                return
            verdict = loop_detector.observe_event(event)
            if verdict.should_abort:
                tripped.append(verdict)

        formatter = self.create_formatter(
            options=options,
            stdout=stdout or sys.stdout,
            stderr=stderr or sys.stderr,
            tool_sink=on_tool,
        )
        started = time.monotonic()
        exec_result = run_stream_backend(
            argv=self.build_argv(prompt, options),
            formatter=formatter,
            cwd=options.cwd,
            env=self.run_env(options),
            tee_path=options.output_path,
            should_stop=lambda: bool(tripped),
        )
        duration_ms = int((time.monotonic() - started) * 1000)

        loop_detected = bool(tripped)
        return RunResult(
            success=exec_result.returncode == 0 and not loop_detected,
            exit_code=exec_result.returncode,
            duration_ms=duration_ms,
            events=events,
            token_usage=formatter.token_usage,
            cost_usd=formatter.cost_usd,
            loop_detected=loop_detected,
            loop_reason=tripped[0].reason if tripped else "",
            output_path=options.output_path,
        )
