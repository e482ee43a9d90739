from __future__ import annotations

import json
from pathlib import Path

import pytest
from conftest import EpicBuilder
from test_executor import FakeBackend

from ouroboros import __version__, cli, executor


@pytest.fixture
def in_repo(epic: EpicBuilder, monkeypatch: pytest.MonkeyPatch) -> EpicBuilder:
    monkeypatch.chdir(epic.root)
    return epic


def _run(argv: list[str]) -> int:
    with pytest.raises(SystemExit) as raised:
        cli.main(argv)
    code = raised.value.code
    return 0 if code is None else int(code)


def test_main_without_command_prints_help(capsys: pytest.CaptureFixture[str]) -> None:
    assert _run([]) == 0
    out = capsys.readouterr().out
    assert "ouroboros implement [EPIC]" in out
    assert "ouroboros status [EPIC]" in out


def test_version(capsys: pytest.CaptureFixture[str]) -> None:
    assert _run(["--version"]) == 0
    assert f"ouroboros {__version__}" in capsys.readouterr().out


def test_unknown_command(capsys: pytest.CaptureFixture[str]) -> None:
    assert _run(["frobnicate"]) == 2
    assert "unknown command: frobnicate" in capsys.readouterr().out


def test_implement_help(capsys: pytest.CaptureFixture[str]) -> None:
    assert _run(["implement", "--help"]) == 0
    out = capsys.readouterr().out
    assert "--loop-threshold" in out
    assert "--open-pr" in out


def test_status_reports_resume_point(in_repo: EpicBuilder, capsys: pytest.CaptureFixture[str]) -> None:
    in_repo.requirements()
    in_repo.feature("01", "auth", tasks=True, groups=[("setup", True), ("api", False)])
    in_repo.feature("02", "billing")
    in_repo.index()

    assert _run(["status"]) == 0
    out = capsys.readouterr().out
    assert "2025-01-21-user-auth" in out
    assert "Phase 4: Create Tasks" in out
    assert "01-auth" in out
    assert "1/2" in out


def test_status_json(in_repo: EpicBuilder, capsys: pytest.CaptureFixture[str]) -> None:
    in_repo.requirements()
    in_repo.feature("01", "auth", tasks=True, groups=[("setup", False)])
    in_repo.index()

    assert _run(["status", in_repo.name, "--json"]) == 0
    payload = json.loads(capsys.readouterr().out)
    assert payload["epic"] == in_repo.name
    assert payload["resume"]["phase"] == 6
    assert payload["resume"]["resume_task_group"] == {"feature_index": 0, "task_group_index": 0}
    assert payload["features"][0]["task_groups_total"] == 1


def test_status_structural_error(in_repo: EpicBuilder, capsys: pytest.CaptureFixture[str]) -> None:
    in_repo.requirements()
    in_repo.feature("01", "auth")
    in_repo.index([("02", "billing")])

    assert _run(["status", "--json"]) == 1
    payload = json.loads(capsys.readouterr().out)
    assert payload["error"] == "feature validation failed"
    assert len(payload["errors"]) == 2


def test_status_without_epics(in_repo: EpicBuilder, capsys: pytest.CaptureFixture[str]) -> None:
    assert _run(["status"]) == 1
    assert "no epics found" in capsys.readouterr().out


def test_epics_json(in_repo: EpicBuilder, capsys: pytest.CaptureFixture[str]) -> None:
    in_repo.requirements()
    EpicBuilder(root=in_repo.root, name="2024-12-01-older").requirements()

    assert _run(["epics", "--json"]) == 0
    rows = json.loads(capsys.readouterr().out)
    assert [r["slug"] for r in rows] == ["user-auth", "older"]
    assert rows[0]["status"] == "Starting from Phase 3: Create Features"


def test_runtimes_json(capsys: pytest.CaptureFixture[str]) -> None:
    assert _run(["runtimes", "--json"]) == 0
    rows = json.loads(capsys.readouterr().out)
    assert [r["name"] for r in rows] == ["claude", "copilot", "cursor", "opencode"]
    assert {r["name"]: r["token_tracking"] for r in rows}["claude"] is True


def test_implement_unknown_runtime(in_repo: EpicBuilder, capsys: pytest.CaptureFixture[str]) -> None:
    in_repo.requirements()
    assert _run(["implement", "--impl-runtime", "codex"]) == 1
    assert "unknown implementation runtime 'codex'" in capsys.readouterr().out


def test_implement_open_pr_needs_branch(in_repo: EpicBuilder, capsys: pytest.CaptureFixture[str]) -> None:
    in_repo.requirements()
    assert _run(["implement", "--open-pr"]) == 1
    assert "requires creating a branch" in capsys.readouterr().out


def test_implement_runs_pipeline(
    in_repo: EpicBuilder,
    monkeypatch: pytest.MonkeyPatch,
    capsys: pytest.CaptureFixture[str],
) -> None:
    in_repo.requirements()
    fake = FakeBackend()
    monkeypatch.setattr(cli, "list_backends", lambda: ["fake"])
    monkeypatch.setattr(cli, "get_backend", lambda name: fake)
    monkeypatch.setattr(executor, "get_backend", lambda name: fake)

    code = _run(
        [
            "implement",
            "--planning-runtime",
            "fake",
            "--impl-runtime",
            "fake",
            "--no-commit",
            "--yes",
            "--json",
        ]
    )

    captured = capsys.readouterr()
    assert code == 0, captured.err
    payload = json.loads(captured.out)
    assert payload["epic"] == in_repo.name
    assert payload["exit_code"] == 0
    assert payload["usage"]["step_count"] == 10
    assert (in_repo.path / "verification-guide.md").exists()
    assert (Path(in_repo.root) / ".ouroboros" / "logs" / "events.jsonl").exists()
