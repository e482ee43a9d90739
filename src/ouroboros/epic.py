"""Epic and feature discovery from the planning directory tree."""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from pathlib import Path

from .manifest import (
    FeatureIndexEntry,
    progress_path,
    read_features_index,
    read_progress,
)

REQUIREMENTS_FILE = "requirements.md"
VERIFICATION_GUIDE_FILE = "verification-guide.md"
FEATURES_DIR = "features"

_EPIC_RE = re.compile(r"^(\d{4}-\d{2}-\d{2})-(.+)$")
_FEATURE_RE = re.compile(r"^(\d{2})-(.+)$")
_PROMPT_FILE_RE = re.compile(r"^\d+-.*\.md$")


@dataclass(frozen=True)
class Epic:
    name: str  # full folder name, e.g. 2025-01-21-user-authentication
    date: str
    slug: str
    path: Path


@dataclass(frozen=True)
class Feature:
    folder_name: str
    number: str
    name: str
    path: Path
    has_prd: bool
    has_tasks: bool
    has_progress: bool


@dataclass(frozen=True)
class FeatureValidation:
    errors: list[str] = field(default_factory=list)
    index_features: list[FeatureIndexEntry] = field(default_factory=list)
    directory_features: list[Feature] = field(default_factory=list)

    @property
    def valid(self) -> bool:
        return not self.errors


def epics_dir(project_root: Path) -> Path:
    return Path(project_root) / "ouroboros" / "epics"


def list_epics(project_root: Path) -> list[Epic]:
    """All epics under ``ouroboros/epics``, newest date first."""
    root = epics_dir(project_root)
    if not root.is_dir():
        return []
    epics: list[Epic] = []
    for entry in root.iterdir():
        if not entry.is_dir() or entry.name.startswith("."):
            continue
        match = _EPIC_RE.match(entry.name)
        if not match:
            continue
        epics.append(Epic(name=entry.name, date=match.group(1), slug=match.group(2), path=entry))
    epics.sort(key=lambda e: (e.date, e.name), reverse=True)
    return epics


def get_epic(name: str, project_root: Path) -> Epic | None:
    for epic in list_epics(project_root):
        if epic.name == name:
            return epic
    return None


def latest_epic(project_root: Path) -> Epic | None:
    epics = list_epics(project_root)
    return epics[0] if epics else None


def epic_from_path(path: Path) -> Epic:
    path = Path(path)
    match = _EPIC_RE.match(path.name)
    if match:
        return Epic(name=path.name, date=match.group(1), slug=match.group(2), path=path)
    return Epic(name=path.name, date="", slug=path.name, path=path)


def has_requirements(epic_path: Path) -> bool:
    return (Path(epic_path) / REQUIREMENTS_FILE).is_file()


def has_verification_guide(epic_path: Path) -> bool:
    return (Path(epic_path) / VERIFICATION_GUIDE_FILE).is_file()


def discover_features(epic_path: Path) -> list[Feature]:
    features_dir = Path(epic_path) / FEATURES_DIR
    if not features_dir.is_dir():
        return []
    out: list[Feature] = []
    for entry in features_dir.iterdir():
        if not entry.is_dir() or entry.name.startswith("."):
            continue
        match = _FEATURE_RE.match(entry.name)
        if not match:
            continue
        out.append(
            Feature(
                folder_name=entry.name,
                number=match.group(1),
                name=match.group(2),
                path=entry,
                has_prd=(entry / "prd.md").is_file(),
                has_tasks=(entry / "tasks.md").is_file(),
                has_progress=progress_path(entry).is_file(),
            )
        )
    # Two-digit prefixes make string order numeric order.
    out.sort(key=lambda f: (f.number, f.name))
    return out


def validate_features(epic_path: Path) -> FeatureValidation:
    """Check that features-index.yml and the features/ tree describe the same set."""
    directory_features = discover_features(epic_path)
    index = read_features_index(epic_path)
    if index is None:
        return FeatureValidation(
            errors=["features-index.yml not found or unreadable"],
            directory_features=directory_features,
        )

    errors: list[str] = []
    index_features = index.features
    if len(index_features) != len(directory_features):
        errors.append(
            f"Feature count mismatch: features-index.yml has {len(index_features)} features, "
            f"but directory has {len(directory_features)} folders"
        )

    on_disk = {(f.number, f.name) for f in directory_features}
    in_index = {(f.number, f.name) for f in index_features}

    for entry in index_features:
        if (entry.number, entry.name) not in on_disk:
            errors.append(
                f"Feature {entry.folder_name} in features-index.yml not found in features/ directory"
            )
    for feature in directory_features:
        if (feature.number, feature.name) not in in_index:
            errors.append(f"Feature folder {feature.folder_name} not found in features-index.yml")

    return FeatureValidation(
        errors=errors,
        index_features=index_features,
        directory_features=directory_features,
    )


def find_task_prompt_file(feature_path: Path, task_group_index: int) -> Path | None:
    """First ``prompts/{index+1}-*.md`` file; naming after the number may vary."""
    prompts_dir = Path(feature_path) / "prompts"
    if not prompts_dir.is_dir():
        return None
    prefix = f"{task_group_index + 1}-"
    for entry in sorted(prompts_dir.iterdir()):
        if entry.is_file() and entry.name.startswith(prefix) and entry.suffix == ".md":
            return entry
    return None


def count_prompt_files(feature_path: Path) -> int:
    prompts_dir = Path(feature_path) / "prompts"
    if not prompts_dir.is_dir():
        return 0
    return sum(1 for e in prompts_dir.iterdir() if _PROMPT_FILE_RE.match(e.name))


def is_feature_complete(feature_path: Path) -> bool:
    ledger = read_progress(feature_path)
    if ledger is None:
        return False
    return all(tg.completed for tg in ledger.task_groups)


def task_group_count(feature_path: Path) -> int:
    ledger = read_progress(feature_path)
    return len(ledger.task_groups) if ledger else 0


def is_last_task_group(feature_path: Path, task_group_index: int) -> bool:
    return task_group_index == task_group_count(feature_path) - 1
