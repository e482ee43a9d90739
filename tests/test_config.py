from __future__ import annotations

from pathlib import Path

import pytest
from conftest import EpicBuilder

from ouroboros.config import (
    ConfigOverrides,
    ConfigValidationError,
    load_config,
    resolve_config,
    resolve_epic,
)

KNOWN = ["claude", "copilot", "cursor", "opencode"]


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch: pytest.MonkeyPatch) -> None:
    for name in (
        "OUROBOROS_PLANNING_RUNTIME",
        "OUROBOROS_PLANNING_MODEL",
        "OUROBOROS_IMPL_RUNTIME",
        "OUROBOROS_IMPL_MODEL",
        "OUROBOROS_LOOP_THRESHOLD",
        "OUROBOROS_HEADLESS",
        "OUROBOROS_VERBOSE",
    ):
        monkeypatch.delenv(name, raising=False)


def _write_config(root: Path, text: str) -> None:
    path = root / ".ouroboros" / "ouroboros.toml"
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(text, encoding="utf-8")


def test_defaults(epic: EpicBuilder) -> None:
    epic.requirements()
    cfg = resolve_config(epic.root, known_runtimes=KNOWN)

    assert cfg.epic.name == epic.name
    assert cfg.planning.runtime == "claude"
    assert cfg.planning.model is None
    assert cfg.implementation.runtime == "claude"
    assert cfg.commit_each
    assert not cfg.create_branch
    assert not cfg.open_pr
    assert cfg.loop_threshold == 3
    assert cfg.loop_window == 10


def test_precedence_cli_over_env_over_file(epic: EpicBuilder, monkeypatch: pytest.MonkeyPatch) -> None:
    epic.requirements()
    _write_config(
        epic.root,
        """
[planning]
runtime = "cursor"
model = "file-model"

[implementation]
runtime = "opencode"

[loop]
threshold = 4
""",
    )
    monkeypatch.setenv("OUROBOROS_PLANNING_MODEL", "env-model")
    monkeypatch.setenv("OUROBOROS_IMPL_RUNTIME", "copilot")

    cfg = resolve_config(
        epic.root,
        ConfigOverrides(impl_runtime="claude", impl_model="sonnet"),
        known_runtimes=KNOWN,
    )

    assert cfg.planning.runtime == "cursor"
    assert cfg.planning.model == "env-model"
    assert cfg.implementation.runtime == "claude"
    assert cfg.implementation.model == "sonnet"
    assert cfg.loop_threshold == 4


def test_env_threshold_must_be_integer(epic: EpicBuilder, monkeypatch: pytest.MonkeyPatch) -> None:
    epic.requirements()
    monkeypatch.setenv("OUROBOROS_LOOP_THRESHOLD", "lots")
    with pytest.raises(ConfigValidationError, match="OUROBOROS_LOOP_THRESHOLD"):
        resolve_config(epic.root)


def test_threshold_below_two_rejected(epic: EpicBuilder) -> None:
    epic.requirements()
    with pytest.raises(ConfigValidationError, match="at least 2"):
        resolve_config(epic.root, ConfigOverrides(loop_threshold=1))


def test_window_grows_with_threshold(epic: EpicBuilder) -> None:
    epic.requirements()
    cfg = resolve_config(epic.root, ConfigOverrides(loop_threshold=12))
    assert cfg.loop_window == 12


def test_unknown_runtime_rejected(epic: EpicBuilder) -> None:
    epic.requirements()
    with pytest.raises(ConfigValidationError, match="unknown planning runtime 'codex'"):
        resolve_config(epic.root, ConfigOverrides(planning_runtime="codex"), known_runtimes=KNOWN)


def test_open_pr_requires_branch(epic: EpicBuilder) -> None:
    epic.requirements()
    with pytest.raises(ConfigValidationError, match="requires creating a branch"):
        resolve_config(epic.root, ConfigOverrides(open_pr=True))
    cfg = resolve_config(epic.root, ConfigOverrides(open_pr=True, create_branch=True))
    assert cfg.open_pr and cfg.create_branch


def test_invalid_toml_reported(tmp_path: Path) -> None:
    _write_config(tmp_path, "[planning\n")
    fc = load_config(tmp_path)
    assert fc.exists
    assert fc.error is not None
    assert "invalid TOML" in fc.error


def test_wrong_types_reported(tmp_path: Path) -> None:
    _write_config(tmp_path, "[pipeline]\ncommit_each = \"yes\"\n")
    fc = load_config(tmp_path)
    assert fc.error is not None
    assert "[pipeline].commit_each must be true or false" in fc.error

    with pytest.raises(ConfigValidationError):
        resolve_config(tmp_path)


def test_missing_config_is_fine(tmp_path: Path) -> None:
    fc = load_config(tmp_path)
    assert not fc.exists
    assert fc.error is None


def test_resolve_epic_by_name_path_and_latest(tmp_path: Path) -> None:
    older = EpicBuilder(root=tmp_path, name="2025-01-01-older").requirements()
    newer = EpicBuilder(root=tmp_path, name="2025-02-01-newer").requirements()

    assert resolve_epic(tmp_path, None).name == newer.name
    assert resolve_epic(tmp_path, older.name).name == older.name
    assert resolve_epic(tmp_path, str(older.path)).path == older.path.resolve()

    with pytest.raises(ConfigValidationError, match="epic not found"):
        resolve_epic(tmp_path, "nope")


def test_resolve_epic_without_epics(tmp_path: Path) -> None:
    with pytest.raises(ConfigValidationError, match="no epics found"):
        resolve_epic(tmp_path, None)


def test_headless_flag(epic: EpicBuilder) -> None:
    epic.requirements()
    assert resolve_config(epic.root, ConfigOverrides(headless=True)).headless
