from __future__ import annotations

from pathlib import Path

from conftest import EpicBuilder

from ouroboros.epic import (
    count_prompt_files,
    discover_features,
    epic_from_path,
    find_task_prompt_file,
    get_epic,
    is_feature_complete,
    is_last_task_group,
    latest_epic,
    list_epics,
    task_group_count,
    validate_features,
)


def test_list_epics_newest_first(tmp_path: Path) -> None:
    root = tmp_path / "ouroboros" / "epics"
    for name in ("2025-01-02-older", "2025-03-01-newer", "notes", ".hidden-2025-01-01-x"):
        (root / name).mkdir(parents=True)
    (root / "2025-04-01-file").write_text("", encoding="utf-8")

    epics = list_epics(tmp_path)
    assert [e.name for e in epics] == ["2025-03-01-newer", "2025-01-02-older"]
    assert epics[0].slug == "newer"
    assert epics[0].date == "2025-03-01"
    assert latest_epic(tmp_path) == epics[0]
    assert get_epic("2025-01-02-older", tmp_path) == epics[1]
    assert get_epic("missing", tmp_path) is None


def test_no_epics_dir(tmp_path: Path) -> None:
    assert list_epics(tmp_path) == []
    assert latest_epic(tmp_path) is None


def test_epic_from_path_without_date(tmp_path: Path) -> None:
    epic = epic_from_path(tmp_path / "scratch")
    assert epic.slug == "scratch"
    assert epic.date == ""


def test_discover_features_sorted_with_flags(epic: EpicBuilder) -> None:
    epic.feature("02", "ui")
    epic.feature("01", "auth", tasks=True, groups=[("setup", False)])
    (epic.path / "features" / "misc").mkdir()

    features = discover_features(epic.path)
    assert [f.folder_name for f in features] == ["01-auth", "02-ui"]
    auth, ui = features
    assert auth.has_tasks and auth.has_progress and auth.has_prd
    assert not ui.has_tasks and not ui.has_progress


def test_validate_features_reports_every_mismatch(epic: EpicBuilder) -> None:
    epic.feature("01", "auth")
    epic.feature("03", "extra")
    epic.index([("01", "auth"), ("02", "billing")])

    validation = validate_features(epic.path)
    assert not validation.valid
    assert "Feature 02-billing in features-index.yml not found in features/ directory" in validation.errors
    assert "Feature folder 03-extra not found in features-index.yml" in validation.errors


def test_validate_features_count_mismatch(epic: EpicBuilder) -> None:
    epic.feature("01", "auth")
    epic.index([("01", "auth"), ("02", "billing")])

    errors = validate_features(epic.path).errors
    assert errors[0] == (
        "Feature count mismatch: features-index.yml has 2 features, but directory has 1 folders"
    )


def test_validate_features_matching(epic: EpicBuilder) -> None:
    epic.feature("01", "auth")
    epic.feature("02", "billing")
    epic.index()
    assert validate_features(epic.path).valid


def test_validate_features_without_index(epic: EpicBuilder) -> None:
    epic.feature("01", "auth")
    assert validate_features(epic.path).errors == ["features-index.yml not found or unreadable"]


def test_find_task_prompt_file_matches_by_number(epic: EpicBuilder) -> None:
    path = epic.feature("01", "auth", groups=[("setup", True), ("api", False)])
    renamed = path / "prompts" / "2-api-endpoints.md"
    (path / "prompts" / "2-api.md").rename(renamed)

    assert find_task_prompt_file(path, 0) == path / "prompts" / "1-setup.md"
    assert find_task_prompt_file(path, 1) == renamed
    assert find_task_prompt_file(path, 2) is None
    assert count_prompt_files(path) == 2


def test_task_group_helpers(epic: EpicBuilder) -> None:
    path = epic.feature("01", "auth", groups=[("setup", True), ("api", True)])
    assert task_group_count(path) == 2
    assert is_last_task_group(path, 1)
    assert not is_last_task_group(path, 0)
    assert is_feature_complete(path)

    other = epic.feature("02", "ui")
    assert task_group_count(other) == 0
    assert not is_feature_complete(other)
