from __future__ import annotations

import pytest
from conftest import EpicBuilder, write_groups

from ouroboros.errors import StructuralValidationError
from ouroboros.progress import PipelinePhase, TaskGroupPosition, detect_progress


def test_missing_requirements_is_a_structural_error(epic: EpicBuilder) -> None:
    epic.path.mkdir(parents=True)
    with pytest.raises(StructuralValidationError, match="requirements.md"):
        detect_progress(epic.path)


def test_fresh_epic_starts_at_create_features(epic: EpicBuilder) -> None:
    epic.requirements()
    resume = detect_progress(epic.path)
    assert resume.phase == PipelinePhase.CREATE_FEATURES
    assert resume.description == "Starting from Phase 3: Create Features"
    assert not resume.complete


def test_index_without_feature_folders_restarts_features(epic: EpicBuilder) -> None:
    epic.requirements().index([("01", "auth")])
    assert detect_progress(epic.path).phase == PipelinePhase.CREATE_FEATURES


def test_mismatched_index_lists_all_errors(epic: EpicBuilder) -> None:
    epic.requirements()
    epic.feature("01", "auth")
    epic.feature("03", "extra")
    epic.index([("01", "auth"), ("02", "billing")])

    with pytest.raises(StructuralValidationError) as raised:
        detect_progress(epic.path)
    assert len(raised.value.errors) == 2
    assert "02-billing" in str(raised.value)
    assert "03-extra" in str(raised.value)


def test_resumes_at_first_feature_without_tasks(epic: EpicBuilder) -> None:
    epic.requirements()
    epic.feature("01", "auth", tasks=True)
    epic.feature("02", "billing")
    epic.feature("03", "ui")
    epic.index()

    resume = detect_progress(epic.path)
    assert resume.phase == PipelinePhase.CREATE_TASKS
    assert resume.resume_feature_index == 1
    assert "resuming at feature 02-billing" in resume.description


def test_resumes_at_first_feature_without_ledger(epic: EpicBuilder) -> None:
    epic.requirements()
    epic.feature("01", "auth", tasks=True, groups=[("setup", False)])
    epic.feature("02", "billing", tasks=True)
    epic.index()

    resume = detect_progress(epic.path)
    assert resume.phase == PipelinePhase.CREATE_TASK_PROMPTS
    assert resume.resume_feature_index == 1


def test_corrupt_ledger_is_treated_as_missing(epic: EpicBuilder) -> None:
    epic.requirements()
    path = epic.feature("01", "auth", tasks=True, groups=[("setup", False)])
    (path / "prompts" / "progress.yml").write_text("task_groups: {oops\n", encoding="utf-8")
    epic.index()

    resume = detect_progress(epic.path)
    assert resume.phase == PipelinePhase.CREATE_TASK_PROMPTS
    assert resume.resume_feature_index == 0


@pytest.mark.parametrize("done", [0, 1, 2])
def test_resumes_at_first_incomplete_task_group(epic: EpicBuilder, done: int) -> None:
    epic.requirements()
    names = ["setup", "api", "ui"]
    groups = [(name, i < done) for i, name in enumerate(names)]
    epic.feature("01", "auth", tasks=True, groups=groups)
    epic.index()

    resume = detect_progress(epic.path)
    assert resume.phase == PipelinePhase.IMPLEMENT
    assert resume.resume_task_group == TaskGroupPosition(0, done)
    assert resume.description.endswith(f"task group {names[done]})")


def test_completed_feature_rolls_over_to_next(epic: EpicBuilder) -> None:
    epic.requirements()
    epic.feature("01", "auth", tasks=True, groups=[("setup", True), ("api", True)])
    epic.feature("02", "billing", tasks=True, groups=[("stripe", False)])
    epic.index()

    resume = detect_progress(epic.path)
    assert resume.resume_task_group == TaskGroupPosition(1, 0)
    assert resume.resume_feature_index == 1


def test_all_groups_done_without_guide_is_finalize(epic: EpicBuilder) -> None:
    epic.requirements()
    epic.feature("01", "auth", tasks=True, groups=[("setup", True)])
    epic.index()

    resume = detect_progress(epic.path)
    assert resume.phase == PipelinePhase.FINALIZE
    assert not resume.complete


def test_everything_done_is_complete(epic: EpicBuilder) -> None:
    epic.requirements()
    epic.feature("01", "auth", tasks=True, groups=[("setup", True)])
    epic.index().guide()

    resume = detect_progress(epic.path)
    assert resume.complete
    assert resume.description == "All phases complete"
    assert resume.to_dict() == {"phase": 7, "complete": True, "description": "All phases complete"}


def test_detection_is_idempotent_and_read_only(epic: EpicBuilder) -> None:
    epic.requirements()
    feature = epic.feature("01", "auth", tasks=True)
    write_groups(feature, [("setup", True), ("api", False)])
    epic.index()

    before = {p: p.read_bytes() for p in epic.path.rglob("*") if p.is_file()}
    first = detect_progress(epic.path)
    second = detect_progress(epic.path)
    after = {p: p.read_bytes() for p in epic.path.rglob("*") if p.is_file()}

    assert first == second
    assert before == after
