from __future__ import annotations

from pathlib import Path
from typing import Callable, Protocol

from ..usage import TokenUsage
from ..util import ExecResult, stream_process


class StreamFormatter(Protocol):
    token_usage: TokenUsage | None
    cost_usd: float | None

    def process_line(self, line: str) -> None:
        ...

    def finish(self) -> int:
        ...


def run_stream_backend(
    *,
    argv: list[str],
    formatter: StreamFormatter,
    cwd: Path,
    env: dict[str, str] | None,
    tee_path: Path | None,
    should_stop: Callable[[], bool] | None = None,
) -> ExecResult:
    result = stream_process(
        argv,
        cwd=cwd,
        env=env,
        on_line=formatter.process_line,
        tee_path=tee_path,
        should_stop=should_stop,
    )
    formatter.finish()
    return result
