from __future__ import annotations

import io
import shutil
import subprocess
from dataclasses import dataclass
from pathlib import Path

import pytest
import yaml


@pytest.fixture
def stdout() -> io.StringIO:
    return io.StringIO()


@pytest.fixture
def stderr() -> io.StringIO:
    return io.StringIO()


def git(root: Path, *args: str) -> str:
    proc = subprocess.run(
        ["git", *args], cwd=root, text=True, capture_output=True, check=True
    )
    return proc.stdout.strip()


@pytest.fixture
def git_repo(tmp_path: Path) -> Path:
    if shutil.which("git") is None:
        pytest.skip("git not installed")
    git(tmp_path, "init", "-q")
    git(tmp_path, "checkout", "-q", "-b", "main")
    git(tmp_path, "config", "user.email", "dev@example.com")
    git(tmp_path, "config", "user.name", "Dev")
    git(tmp_path, "config", "commit.gpgsign", "false")
    (tmp_path / "README.md").write_text("hello\n", encoding="utf-8")
    git(tmp_path, "add", "-A")
    git(tmp_path, "commit", "-q", "-m", "init")
    return tmp_path


@dataclass
class EpicBuilder:
    """Lay out an epic planning tree on disk."""

    root: Path
    name: str = "2025-01-21-user-auth"

    @property
    def path(self) -> Path:
        return self.root / "ouroboros" / "epics" / self.name

    def requirements(self) -> "EpicBuilder":
        self.path.mkdir(parents=True, exist_ok=True)
        (self.path / "requirements.md").write_text("# Requirements\n", encoding="utf-8")
        return self

    def feature(
        self,
        number: str,
        name: str,
        *,
        tasks: bool = False,
        groups: list[tuple[str, bool]] | None = None,
    ) -> Path:
        path = self.path / "features" / f"{number}-{name}"
        path.mkdir(parents=True, exist_ok=True)
        (path / "prd.md").write_text(f"# {name}\n", encoding="utf-8")
        if tasks:
            (path / "tasks.md").write_text("- [ ] task\n", encoding="utf-8")
        if groups is not None:
            write_groups(path, groups)
        return path

    def index(self, features: list[tuple[str, str]] | None = None) -> "EpicBuilder":
        if features is None:
            features_dir = self.path / "features"
            features = []
            if features_dir.is_dir():
                features = [
                    (p.name[:2], p.name[3:]) for p in sorted(features_dir.iterdir()) if p.is_dir()
                ]
        data = {
            "epic_name": self.name,
            "epic_path": str(self.path),
            "generated": "2025-01-21",
            "total_features": len(features),
            "features": [
                {
                    "number": number,
                    "name": name,
                    "path": f"features/{number}-{name}",
                    "description": f"{name} feature",
                    "completed": False,
                }
                for number, name in features
            ],
        }
        self.path.mkdir(parents=True, exist_ok=True)
        (self.path / "features-index.yml").write_text(
            yaml.safe_dump(data, sort_keys=False), encoding="utf-8"
        )
        return self

    def guide(self) -> "EpicBuilder":
        (self.path / "verification-guide.md").write_text("# Verify\n", encoding="utf-8")
        return self


def write_groups(feature_path: Path, groups: list[tuple[str, bool]]) -> None:
    prompts = feature_path / "prompts"
    prompts.mkdir(parents=True, exist_ok=True)
    ledger = {"task_groups": [{"name": n, "completed": done} for n, done in groups]}
    (prompts / "progress.yml").write_text(yaml.safe_dump(ledger, sort_keys=False), encoding="utf-8")
    for i, (n, _) in enumerate(groups):
        (prompts / f"{i + 1}-{n}.md").write_text(f"# {n}\n", encoding="utf-8")


@pytest.fixture
def epic(tmp_path: Path) -> EpicBuilder:
    return EpicBuilder(root=tmp_path)


@pytest.fixture
def repo_epic(git_repo: Path) -> EpicBuilder:
    return EpicBuilder(root=git_repo)
