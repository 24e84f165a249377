"""Repository acquisition: clone, reuse or create the working copy of a repository.

This module provides two implementations with the same public surface:

- `GitClient`: the real implementation that shells out to `git` via `subprocess`.
- `DryRunGitClient`: a no-op implementation used by `--dry-run` so the orchestration
  logic can be exercised without touching the filesystem or the network.

Acquisition rules (`acquire_repository`)
- The target directory already exists and is not empty: it is used as-is (`existing`).
  multirepo never deletes or re-clones a populated directory; resolving conflicts with an
  existing checkout is an operator decision.
- The repository has a URL: `git clone [--branch <branch>] <url> <dest>` (`cloned`).
- No URL: an empty directory is created (`created`), for projects that are bootstrapped
  by their post-clone hooks.

Git failures surface as `subprocess.CalledProcessError`; callers decide whether that is
fatal for the run.
"""

from __future__ import annotations

import subprocess
from dataclasses import dataclass
from enum import Enum
from pathlib import Path

from .config import RepoDescriptor


class AcquisitionKind(str, Enum):
    CLONED = "cloned"
    EXISTING = "existing"
    CREATED = "created"


@dataclass(frozen=True)
class Acquisition:
    kind: AcquisitionKind
    path: Path
    source: str | None = None


class GitClient:
    def __init__(self, *, control_root: Path) -> None:
        self.control_root = control_root

    def clone(self, url: str, dest: Path, *, branch: str | None = None) -> None:
        dest.parent.mkdir(parents=True, exist_ok=True)
        args = ["clone"]
        if branch:
            args += ["--branch", branch]
        self._git([*args, url, str(dest)], cwd=self.control_root)

    def create_directory(self, dest: Path) -> None:
        dest.mkdir(parents=True, exist_ok=True)

    def _git(self, args: list[str], *, cwd: Path) -> None:
        subprocess.run(
            ["git", *args],
            cwd=cwd,
            text=True,
            check=True,
            capture_output=True,
        )


class DryRunGitClient(GitClient):
    """A no-op Git client for previewing a run."""

    def clone(self, url: str, dest: Path, *, branch: str | None = None) -> None:  # type: ignore[override]
        return

    def create_directory(self, dest: Path) -> None:  # type: ignore[override]
        return


def _is_populated(path: Path) -> bool:
    return path.is_dir() and any(path.iterdir())


def planned_acquisition(repo: RepoDescriptor, repo_path: Path) -> Acquisition:
    if _is_populated(repo_path):
        return Acquisition(kind=AcquisitionKind.EXISTING, path=repo_path)
    if repo.url:
        return Acquisition(kind=AcquisitionKind.CLONED, path=repo_path, source=repo.url)
    return Acquisition(kind=AcquisitionKind.CREATED, path=repo_path)


def acquire_repository(repo: RepoDescriptor, repo_path: Path, *, git: GitClient) -> Acquisition:
    plan = planned_acquisition(repo, repo_path)
    if plan.kind == AcquisitionKind.CLONED:
        assert plan.source is not None
        git.clone(plan.source, repo_path, branch=repo.branch)
    elif plan.kind == AcquisitionKind.CREATED:
        git.create_directory(repo_path)
    return plan
