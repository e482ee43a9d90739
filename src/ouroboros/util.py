from __future__ import annotations

import os
import re
import subprocess
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def format_duration_ms(ms: int | float) -> str:
    seconds = int(ms // 1000)
    minutes = seconds // 60
    if minutes > 0:
        return f"{minutes}m {seconds % 60}s"
    return f"{ms / 1000:.1f}s"


def format_cost(cost: float) -> str:
    return f"${cost:.4f}"


_SLUG_RE = re.compile(r"[^a-z0-9]+")


def slugify(text: str, max_len: int = 60) -> str:
    slug = _SLUG_RE.sub("-", text.lower()).strip("-")
    return slug[:max_len].rstrip("-") or "step"


def env_flag(name: str) -> bool:
    value = os.environ.get(name, "").strip().lower()
    return value in {"1", "true", "yes", "on"}


def env_str(name: str) -> str | None:
    raw = os.environ.get(name, "").strip()
    return raw or None


@dataclass(frozen=True)
class CommandResult:
    returncode: int
    stdout: str
    stderr: str

    @property
    def ok(self) -> bool:
        return self.returncode == 0


def run_command(argv: list[str], *, cwd: Path | None = None) -> CommandResult:
    """Run ``argv`` to completion and capture its output; never raises on exit status."""
    try:
        proc = subprocess.run(
            argv,
            cwd=str(cwd) if cwd else None,
            text=True,
            capture_output=True,
            check=False,
        )
    except FileNotFoundError as exc:
        return CommandResult(returncode=127, stdout="", stderr=str(exc))
    return CommandResult(
        returncode=proc.returncode,
        stdout=proc.stdout.strip(),
        stderr=proc.stderr.strip(),
    )


def which(cmd: str) -> str | None:
    for p in os.environ.get("PATH", "").split(os.pathsep):
        candidate = Path(p) / cmd
        if candidate.exists() and os.access(candidate, os.X_OK):
            return str(candidate)
    return None


@dataclass(frozen=True)
class ExecResult:
    returncode: int
    killed: bool = False


def stream_process(
    argv: list[str],
    *,
    cwd: Path,
    env: dict[str, str] | None,
    on_line: Callable[[str], None] | None,
    tee_path: Path | None,
    should_stop: Callable[[], bool] | None = None,
) -> ExecResult:
    """Run ``argv``, feeding each output line to ``on_line``.

    When ``should_stop`` turns true after a line the child is killed at once
    and reaped before returning.
    """
    try:
        proc = subprocess.Popen(
            argv,
            cwd=str(cwd),
            env=env,
            text=True,
            encoding="utf-8",
            errors="replace",
            stdin=subprocess.DEVNULL,
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
            bufsize=1,
        )
    except FileNotFoundError as exc:
        if on_line:
            on_line(f"{exc}\n")
        return ExecResult(returncode=127)

    killed = False
    with proc:
        assert proc.stdout is not None
        tee_f = None
        try:
            if tee_path:
                tee_path.parent.mkdir(parents=True, exist_ok=True)
                tee_f = tee_path.open("w", encoding="utf-8")
            for line in proc.stdout:
                if tee_f:
                    tee_f.write(line)
                    tee_f.flush()
                if on_line:
                    on_line(line)
                else:
                    print(line, end="")
                if should_stop is not None and should_stop():
                    proc.kill()
                    killed = True
                    break
        except BaseException:
            # Never leave the agent running behind a failed reader.
            proc.kill()
            raise
        finally:
            if tee_f:
                tee_f.close()

        return ExecResult(returncode=proc.wait(), killed=killed)
