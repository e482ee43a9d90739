from __future__ import annotations

import io
import json

import pytest

from ouroboros.events import ToolCallEvent
from ouroboros.format_stream import CursorStreamJsonFormatter
from ouroboros.loop_detect import LoopDetector, extract_error, hash_tool_call


def test_hash_ignores_argument_key_order() -> None:
    assert hash_tool_call("Read", {"a": 1, "b": 2}) == hash_tool_call("Read", {"b": 2, "a": 1})
    assert hash_tool_call("Read", {"a": 1}) != hash_tool_call("Write", {"a": 1})
    assert hash_tool_call("Read", {"a": 1}) != hash_tool_call("Read", {"a": 2})


def test_trips_on_third_identical_call() -> None:
    detector = LoopDetector()
    args = {"file_path": "/src/app.py"}

    assert not detector.observe("Read", args).should_abort
    assert not detector.observe("Read", args).should_abort
    verdict = detector.observe("Read", args)

    assert verdict.should_abort
    assert verdict.reason == "Read called 3x in a row with identical arguments"
    assert detector.triggered == verdict


def test_different_call_breaks_the_run() -> None:
    detector = LoopDetector()
    for args in ({"p": 1}, {"p": 1}, {"p": 2}, {"p": 1}, {"p": 1}):
        assert not detector.observe("Read", args).should_abort


def test_repeated_error_with_varying_args_trips() -> None:
    detector = LoopDetector()
    failure = {"is_error": True, "error": "permission denied"}

    assert not detector.observe("Bash", {"command": "a"}, failure).should_abort
    assert not detector.observe("Bash", {"command": "b"}, failure).should_abort
    verdict = detector.observe("Bash", {"command": "c"}, failure)

    assert verdict.should_abort
    assert "same error 3x in a row" in verdict.reason
    assert "permission denied" in verdict.reason


def test_success_clears_error_window() -> None:
    detector = LoopDetector()
    failure = {"exit_code": 1, "output": "boom"}

    detector.observe("Bash", {"command": "a"}, failure)
    detector.observe("Bash", {"command": "b"}, failure)
    detector.observe("Bash", {"command": "ok"}, {"exit_code": 0})
    assert not detector.observe("Bash", {"command": "c"}, failure).should_abort


def test_custom_threshold() -> None:
    detector = LoopDetector(threshold=2, window_size=4)
    detector.observe("Grep", {"pattern": "x"})
    assert detector.observe("Grep", {"pattern": "x"}).should_abort


def test_invalid_configuration() -> None:
    with pytest.raises(ValueError):
        LoopDetector(threshold=1)
    with pytest.raises(ValueError):
        LoopDetector(threshold=5, window_size=3)


def test_reset_clears_state() -> None:
    detector = LoopDetector()
    for _ in range(3):
        detector.observe("Read", {"p": 1})
    assert detector.triggered is not None

    detector.reset()
    assert detector.triggered is None
    assert not detector.observe("Read", {"p": 1}).should_abort


def test_observe_event_uses_error_flag() -> None:
    detector = LoopDetector()
    events = [
        ToolCallEvent("Edit", {"file_path": f"/f{i}"}, is_error=True, error_message="old_string not found")
        for i in range(3)
    ]
    verdicts = [detector.observe_event(e) for e in events]
    assert [v.should_abort for v in verdicts] == [False, False, True]


def test_extract_error() -> None:
    assert extract_error(None) is None
    assert extract_error("plain output") is None
    assert extract_error({"success": False, "stderr": "bad"}) == "bad"
    assert extract_error({"exit_code": 2}) == "exit 2"
    assert extract_error({"exit_code": 0, "output": "fine"}) is None
    assert extract_error(ValueError("nope")) == "nope"


def test_successful_cursor_shell_calls_with_stderr_do_not_trip(
    stdout: io.StringIO, stderr: io.StringIO
) -> None:
    detector = LoopDetector()
    verdicts = []

    def sink(event: ToolCallEvent) -> None:
        verdicts.append((event.is_error, detector.observe_event(event).should_abort))

    f = CursorStreamJsonFormatter(stdout=stdout, stderr=stderr, tool_sink=sink)
    for i, command in enumerate(["npm install", "npm run build", "npm test"]):
        call = {
            "shellToolCall": {
                "args": {"command": command},
                "result": {"success": {"exitCode": 0, "stdout": "ok", "stderr": "npm WARN deprecated"}},
            }
        }
        f.process_line(
            json.dumps({"type": "tool_call", "subtype": "completed", "call_id": f"c{i}", "tool_call": call})
        )

    assert verdicts == [(False, False), (False, False), (False, False)]
    assert detector.triggered is None
