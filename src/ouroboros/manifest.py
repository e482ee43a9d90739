"""Typed access to the two on-disk manifests.

``features-index.yml`` lives at the epic root and lists the epic's features;
``prompts/progress.yml`` lives in each feature folder and tracks its task
groups. Readers return ``None`` for a missing *or* malformed file: callers
treat both as "cannot trust this state".
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

FEATURES_INDEX_FILE = "features-index.yml"
PROGRESS_FILE = Path("prompts") / "progress.yml"


@dataclass
class FeatureIndexEntry:
    number: str
    name: str
    path: str = ""
    description: str = ""
    completed: bool = False

    @property
    def folder_name(self) -> str:
        return f"{self.number}-{self.name}"

    def to_dict(self) -> dict[str, Any]:
        return {
            "number": self.number,
            "name": self.name,
            "path": self.path,
            "description": self.description,
            "completed": self.completed,
        }


@dataclass
class FeaturesIndex:
    epic_name: str
    epic_path: str
    generated: str
    total_features: int
    features: list[FeatureIndexEntry] = field(default_factory=list)
    # Optional keys (technical_overview, notes, ...) carried through untouched.
    extra: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {
            "epic_name": self.epic_name,
            "epic_path": self.epic_path,
            "generated": self.generated,
            "total_features": self.total_features,
            "features": [f.to_dict() for f in self.features],
        }
        out.update(self.extra)
        return out


@dataclass
class TaskGroup:
    name: str
    completed: bool = False


@dataclass
class ProgressLedger:
    task_groups: list[TaskGroup] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "task_groups": [
                {"name": tg.name, "completed": tg.completed} for tg in self.task_groups
            ]
        }


def _load_yaml(path: Path) -> Any:
    if not path.is_file():
        return None
    try:
        return yaml.safe_load(path.read_text(encoding="utf-8"))
    except (OSError, UnicodeDecodeError, yaml.YAMLError):
        return None


def _write_yaml(path: Path, data: dict[str, Any]) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_suffix(path.suffix + ".tmp")
    text = yaml.safe_dump(data, sort_keys=False, allow_unicode=True, width=10_000)
    tmp.write_text(text, encoding="utf-8")
    os.replace(tmp, path)


def _as_number(value: object) -> str | None:
    # YAML happily turns an unquoted 01 into the integer 1.
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return f"{value:02d}"
    if isinstance(value, str) and value.strip():
        return value.strip()
    return None


def _as_text(value: object) -> str:
    if value is None:
        return ""
    return str(value)


def _parse_feature_entry(raw: object) -> FeatureIndexEntry | None:
    if not isinstance(raw, dict):
        return None
    number = _as_number(raw.get("number"))
    name = raw.get("name")
    if number is None or not isinstance(name, str) or not name.strip():
        return None
    return FeatureIndexEntry(
        number=number,
        name=name.strip(),
        path=_as_text(raw.get("path")),
        description=_as_text(raw.get("description")),
        completed=raw.get("completed") is True,
    )


_INDEX_KEYS = {"epic_name", "epic_path", "generated", "total_features", "features"}


def parse_features_index(raw: object) -> FeaturesIndex | None:
    if not isinstance(raw, dict):
        return None
    features_raw = raw.get("features")
    if not isinstance(features_raw, list):
        return None
    features: list[FeatureIndexEntry] = []
    for item in features_raw:
        entry = _parse_feature_entry(item)
        if entry is None:
            return None
        features.append(entry)

    total = raw.get("total_features")
    if isinstance(total, bool) or not isinstance(total, int):
        total = len(features)

    return FeaturesIndex(
        epic_name=_as_text(raw.get("epic_name")),
        epic_path=_as_text(raw.get("epic_path")),
        generated=_as_text(raw.get("generated")),
        total_features=total,
        features=features,
        extra={k: v for k, v in raw.items() if k not in _INDEX_KEYS},
    )


def parse_progress(raw: object) -> ProgressLedger | None:
    if not isinstance(raw, dict):
        return None
    groups_raw = raw.get("task_groups")
    if not isinstance(groups_raw, list):
        return None
    groups: list[TaskGroup] = []
    for item in groups_raw:
        if not isinstance(item, dict):
            return None
        name = item.get("name")
        if not isinstance(name, str) or not name.strip():
            return None
        groups.append(TaskGroup(name=name.strip(), completed=item.get("completed") is True))
    return ProgressLedger(task_groups=groups)


def features_index_path(epic_path: Path) -> Path:
    return Path(epic_path) / FEATURES_INDEX_FILE


def progress_path(feature_path: Path) -> Path:
    return Path(feature_path) / PROGRESS_FILE


def read_features_index(epic_path: Path) -> FeaturesIndex | None:
    return parse_features_index(_load_yaml(features_index_path(epic_path)))


def write_features_index(epic_path: Path, index: FeaturesIndex) -> None:
    _write_yaml(features_index_path(epic_path), index.to_dict())


def read_progress(feature_path: Path) -> ProgressLedger | None:
    return parse_progress(_load_yaml(progress_path(feature_path)))


def write_progress(feature_path: Path, ledger: ProgressLedger) -> None:
    _write_yaml(progress_path(feature_path), ledger.to_dict())


def first_incomplete_task_group(ledger: ProgressLedger) -> int:
    for idx, tg in enumerate(ledger.task_groups):
        if not tg.completed:
            return idx
    return -1


def all_task_groups_complete(ledger: ProgressLedger) -> bool:
    return all(tg.completed for tg in ledger.task_groups)


def mark_task_group_complete(feature_path: Path, name: str) -> bool:
    ledger = read_progress(feature_path)
    if ledger is None:
        return False
    for tg in ledger.task_groups:
        if tg.name == name:
            tg.completed = True
            try:
                write_progress(feature_path, ledger)
            except OSError:
                return False
            return True
    return False


def mark_feature_complete(epic_path: Path, number: str) -> bool:
    index = read_features_index(epic_path)
    if index is None:
        return False
    for entry in index.features:
        if entry.number == number:
            entry.completed = True
            try:
                write_features_index(epic_path, index)
            except OSError:
                return False
            return True
    return False
