"""Parse agent CLI output streams into tool-call events and token usage.

Each formatter consumes one line at a time, prints a one-line summary per
tool call through rich, and hands every *completed* call (arguments plus
result) to ``tool_sink``; the loop detector sits behind that sink.
"""

from __future__ import annotations

import json
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import IO, Any

from rich.console import Console
from rich.markdown import Markdown
from rich.markup import escape

from .events import ToolCallEvent, ToolEventSink
from .usage import TokenUsage


def _shorten_path(path: str, repo_root: Path | None) -> str:
    if not repo_root:
        return path
    try:
        return str(Path(path).resolve().relative_to(repo_root.resolve()))
    except (OSError, ValueError):
        return path


_SHELL_LC_RE = re.compile(r'^(?:.*/)?(?:ba|z)?sh\s+-lc\s+"(?P<body>.*)"$')

_TOOL_SUMMARY_MAX = 160
_TOOL_VALUE_MAX = 80
_TOOL_ITEMS_MAX = 4
_ERROR_MAX = 200
_BULKY_TOOL_KEYS = {
    "content",
    "contents",
    "diff",
    "new_string",
    "newString",
    "old_string",
    "oldString",
    "patch",
    "prompt",
    "streamContent",
    "text",
}
_PATH_KEYS = ("file_path", "filePath", "path", "target_file", "targetFile")


def _truncate_text(text: str, max_len: int) -> str:
    if max_len <= 0:
        return ""
    if len(text) <= max_len:
        return text
    return text[: max_len - 1] + "…"


def _inline_text(text: str, max_len: int) -> str:
    cleaned = text.replace("\r", "").replace("\n", "\\n").strip()
    return _truncate_text(cleaned, max_len)


def _shorten_shell_command(cmd: str) -> str:
    cmd = cmd.strip()
    m = _SHELL_LC_RE.match(cmd)
    if m:
        cmd = m.group("body")
    # Common: cd <dir> && <rest>
    if "&&" in cmd:
        head, rest = (p.strip() for p in cmd.split("&&", 1))
        if head.startswith("cd "):
            cmd = rest
    return cmd


def _summarize_value(value: Any, *, key: str | None) -> str:
    if isinstance(value, str):
        if key in _BULKY_TOOL_KEYS:
            return f"<{len(value)} chars>"
        return _inline_text(value, _TOOL_VALUE_MAX)
    if isinstance(value, dict):
        return f"{{{len(value)} keys}}"
    if isinstance(value, list):
        return f"[{len(value)} items]"
    if value is None:
        return "null"
    return _truncate_text(str(value), _TOOL_VALUE_MAX)


def summarize_tool_args(args: Any, repo_root: Path | None = None) -> str:
    """Short display form of a tool's arguments."""
    if not isinstance(args, dict):
        return _truncate_text(_summarize_value(args, key=None), _TOOL_SUMMARY_MAX)

    command = args.get("command") or args.get("cmd")
    if isinstance(command, str) and command.strip():
        return "$ " + _inline_text(_shorten_shell_command(command), _TOOL_SUMMARY_MAX)
    for key in _PATH_KEYS:
        value = args.get(key)
        if isinstance(value, str) and value:
            return _inline_text(_shorten_path(value, repo_root), _TOOL_SUMMARY_MAX)
    pattern = args.get("pattern")
    if isinstance(pattern, str) and pattern:
        return _inline_text(f"/{pattern}/", _TOOL_SUMMARY_MAX)

    parts: list[str] = []
    for idx, (key, value) in enumerate(args.items()):
        if idx >= _TOOL_ITEMS_MAX:
            parts.append("…")
            break
        parts.append(f"{key}={_summarize_value(value, key=str(key))}")
    return _truncate_text(" ".join(parts), _TOOL_SUMMARY_MAX)


def _as_int(value: Any) -> int:
    if isinstance(value, bool):
        return 0
    if isinstance(value, (int, float)):
        return int(value)
    return 0


def _result_text(content: Any) -> str:
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        chunks = []
        for block in content:
            if isinstance(block, dict) and isinstance(block.get("text"), str):
                chunks.append(block["text"])
            elif isinstance(block, str):
                chunks.append(block)
        return "\n".join(chunks)
    if content is None:
        return ""
    return json.dumps(content, sort_keys=True, default=str)


# ---------------------------------------------------------------------------
# Base class
# ---------------------------------------------------------------------------


@dataclass
class BaseFormatter:
    stdout: IO[str]
    stderr: IO[str]
    repo_root: Path | None = None
    verbose: bool = False
    tool_sink: ToolEventSink | None = None
    processed_events: int = 0
    tool_calls: int = 0
    token_usage: TokenUsage | None = None
    cost_usd: float | None = None

    console: Console = field(init=False)
    err_console: Console = field(init=False)

    def __post_init__(self) -> None:
        self.console = Console(file=self.stdout, highlight=False, markup=True)
        self.err_console = Console(
            file=self.stderr, highlight=False, markup=True, stderr=True
        )

    def _parse_json_line(self, line: str) -> dict[str, Any] | None:
        raw = line.strip()
        if not raw:
            return None
        try:
            data = json.loads(raw)
        except json.JSONDecodeError:
            self.err_console.print(f"[yellow][stderr][/yellow] {escape(raw)}")
            return None
        if not isinstance(data, dict):
            return None
        if self.verbose:
            self.console.print(f"[dim]{escape(raw)}[/dim]")
        return data

    def process_line(self, line: str) -> None:
        raise NotImplementedError

    def finish(self) -> int:
        if self.processed_events == 0:
            self.err_console.print(self._empty_stream_warning())
            return 1
        return 0

    def _empty_stream_warning(self) -> str:
        return "[yellow]⚠ No events received[/yellow]"

    def _print_text(self, text: str) -> None:
        if text.strip():
            self.console.print(Markdown(text))

    def _print_tool(self, name: str, args: Any) -> None:
        summary = summarize_tool_args(args, self.repo_root)
        line = f"[cyan]⚡ {escape(name)}[/cyan]"
        if summary:
            line += f" [dim]{escape(summary)}[/dim]"
        self.console.print(line)

    def _print_tool_error(self, message: str) -> None:
        self.console.print(f"  [red]✗ {escape(_inline_text(message, _ERROR_MAX))}[/red]")

    def _emit_tool(self, event: ToolCallEvent) -> None:
        self.tool_calls += 1
        if event.is_error:
            self._print_tool_error(event.error_message or "tool error")
        if self.tool_sink:
            self.tool_sink(event)

    def _add_usage(self, usage: TokenUsage, cost: Any = None) -> None:
        if self.token_usage is None:
            self.token_usage = TokenUsage()
        self.token_usage.add(usage)
        if isinstance(cost, (int, float)) and not isinstance(cost, bool):
            self.cost_usd = (self.cost_usd or 0.0) + float(cost)


# ---------------------------------------------------------------------------
# Claude
# ---------------------------------------------------------------------------


@dataclass
class ClaudeStreamJsonFormatter(BaseFormatter):
    """``claude -p --output-format stream-json --verbose`` (complete messages)."""

    _pending: dict[str, tuple[str, dict[str, Any]]] = field(default_factory=dict)

    def _empty_stream_warning(self) -> str:
        return "[yellow]⚠ No valid stream events received - Claude may have failed to start[/yellow]"

    def process_line(self, line: str) -> None:
        event = self._parse_json_line(line)
        if event is None:
            return
        self.processed_events += 1

        ev_type = event.get("type")
        if ev_type == "assistant":
            self._on_assistant(event.get("message") or {})
        elif ev_type == "user":
            self._on_user(event.get("message") or {})
        elif ev_type == "result":
            self._on_result(event)

    def _on_assistant(self, message: dict[str, Any]) -> None:
        for block in message.get("content") or []:
            if not isinstance(block, dict):
                continue
            if block.get("type") == "text":
                self._print_text(str(block.get("text") or ""))
            elif block.get("type") == "tool_use":
                name = str(block.get("name") or "unknown")
                args = block.get("input")
                if not isinstance(args, dict):
                    args = {}
                self._pending[str(block.get("id") or "")] = (name, args)
                self._print_tool(name, args)

    def _on_user(self, message: dict[str, Any]) -> None:
        content = message.get("content")
        if not isinstance(content, list):
            return
        for block in content:
            if not isinstance(block, dict) or block.get("type") != "tool_result":
                continue
            pending = self._pending.pop(str(block.get("tool_use_id") or ""), None)
            if pending is None:
                continue
            name, args = pending
            text = _result_text(block.get("content"))
            is_error = block.get("is_error") is True
            self._emit_tool(
                ToolCallEvent(
                    tool_name=name,
                    args=args,
                    result=text,
                    is_error=is_error,
                    error_message=(text or "tool error") if is_error else None,
                )
            )

    def _on_result(self, event: dict[str, Any]) -> None:
        usage = event.get("usage")
        if isinstance(usage, dict):
            self._add_usage(
                TokenUsage(
                    input_tokens=_as_int(usage.get("input_tokens")),
                    output_tokens=_as_int(usage.get("output_tokens")),
                    cache_read_tokens=_as_int(usage.get("cache_read_input_tokens")),
                    cache_creation_tokens=_as_int(usage.get("cache_creation_input_tokens")),
                ),
                event.get("total_cost_usd"),
            )
        if event.get("is_error") is True:
            detail = event.get("result") or event.get("subtype") or "error"
            self.err_console.print(f"[red]✗ {escape(_inline_text(str(detail), _ERROR_MAX))}[/red]")


# ---------------------------------------------------------------------------
# Cursor
# ---------------------------------------------------------------------------


def _cursor_tool(tool_call: Any) -> tuple[str, dict[str, Any], Any]:
    """(name, args, result) from a cursor ``tool_call`` payload."""
    if not isinstance(tool_call, dict) or not tool_call:
        return "unknown", {}, None
    key, body = next(iter(tool_call.items()))
    if not isinstance(body, dict):
        return str(key), {}, None
    if key == "function":
        name = str(body.get("name") or "function")
        raw_args = body.get("arguments")
        if isinstance(raw_args, str):
            try:
                parsed = json.loads(raw_args)
            except json.JSONDecodeError:
                parsed = {"arguments": raw_args}
            args = parsed if isinstance(parsed, dict) else {"arguments": parsed}
        else:
            args = raw_args if isinstance(raw_args, dict) else {}
        return name, args, body.get("result")
    name = str(key).removesuffix("ToolCall") or str(key)
    args = body.get("args")
    return name, args if isinstance(args, dict) else {}, body.get("result")


def _cursor_error(result: Any) -> str | None:
    if not isinstance(result, dict):
        return None
    for key in ("error", "rejected"):
        if key in result:
            detail = result[key]
            if isinstance(detail, dict):
                detail = detail.get("errorMessage") or detail.get("message") or detail.get("reason") or detail
            return _result_text(detail) or key
    success = result.get("success")
    if isinstance(success, dict):
        exit_code = success.get("exitCode")
        if isinstance(exit_code, int) and exit_code != 0:
            return _result_text(success.get("stderr")) or f"exit {exit_code}"
    return None


@dataclass
class CursorStreamJsonFormatter(BaseFormatter):
    """``cursor-agent -p --output-format stream-json``."""

    _started: dict[str, tuple[str, dict[str, Any]]] = field(default_factory=dict)

    def _empty_stream_warning(self) -> str:
        return "[yellow]⚠ No valid stream events received - cursor-agent may have failed to start[/yellow]"

    def process_line(self, line: str) -> None:
        event = self._parse_json_line(line)
        if event is None:
            return
        self.processed_events += 1

        ev_type = event.get("type")
        if ev_type == "assistant":
            message = event.get("message") or {}
            for block in message.get("content") or []:
                if isinstance(block, dict) and block.get("type") == "text":
                    self._print_text(str(block.get("text") or ""))
            return

        if ev_type == "tool_call":
            call_id = str(event.get("call_id") or "")
            name, args, result = _cursor_tool(event.get("tool_call"))
            subtype = event.get("subtype")
            if subtype == "started":
                self._started[call_id] = (name, args)
                self._print_tool(name, args)
            elif subtype == "completed":
                if call_id in self._started:
                    name, started_args = self._started.pop(call_id)
                    args = args or started_args
                else:
                    self._print_tool(name, args)
                error = _cursor_error(result)
                success = result.get("success") if isinstance(result, dict) else result
                self._emit_tool(
                    ToolCallEvent(
                        tool_name=name,
                        args=args,
                        result=success,
                        is_error=error is not None,
                        error_message=error,
                    )
                )
            return

        if ev_type == "result" and event.get("is_error") is True:
            detail = event.get("result") or event.get("subtype") or "error"
            self.err_console.print(f"[red]✗ {escape(_inline_text(str(detail), _ERROR_MAX))}[/red]")


# ---------------------------------------------------------------------------
# OpenCode
# ---------------------------------------------------------------------------


@dataclass
class OpenCodeJsonFormatter(BaseFormatter):
    """``opencode run --format json``."""

    def _empty_stream_warning(self) -> str:
        return "[yellow]⚠ No JSON events received - opencode may have failed to start[/yellow]"

    def process_line(self, line: str) -> None:
        event = self._parse_json_line(line)
        if event is None:
            return
        self.processed_events += 1

        ev_type = event.get("type")
        part = event.get("part")
        if not isinstance(part, dict):
            part = {}

        if ev_type == "text":
            self._print_text(str(part.get("text") or ""))
        elif ev_type == "tool_use":
            self._on_tool(part)
        elif ev_type == "step_finish":
            self._on_step_finish(part)
        elif ev_type == "error":
            error = event.get("error")
            if isinstance(error, dict):
                data = error.get("data")
                detail = (data.get("message") if isinstance(data, dict) else None) or error.get("name")
            else:
                detail = error
            self.err_console.print(f"[red]✗ {escape(_inline_text(str(detail or 'error'), _ERROR_MAX))}[/red]")

    def _on_tool(self, part: dict[str, Any]) -> None:
        state = part.get("state")
        if not isinstance(state, dict):
            return
        status = state.get("status")
        if status not in {"completed", "error"}:
            return
        name = str(part.get("tool") or "unknown")
        args = state.get("input")
        if not isinstance(args, dict):
            args = {}
        self._print_tool(name, args)
        if status == "error":
            message = _result_text(state.get("error")) or "tool error"
            event = ToolCallEvent(
                tool_name=name, args=args, result=None, is_error=True, error_message=message
            )
        else:
            event = ToolCallEvent(tool_name=name, args=args, result=state.get("output"))
        self._emit_tool(event)

    def _on_step_finish(self, part: dict[str, Any]) -> None:
        tokens = part.get("tokens")
        if not isinstance(tokens, dict):
            return
        cache = tokens.get("cache")
        if not isinstance(cache, dict):
            cache = {}
        self._add_usage(
            TokenUsage(
                input_tokens=_as_int(tokens.get("input")),
                output_tokens=_as_int(tokens.get("output")),
                cache_read_tokens=_as_int(cache.get("read")),
                cache_creation_tokens=_as_int(cache.get("write")),
            ),
            part.get("cost"),
        )
