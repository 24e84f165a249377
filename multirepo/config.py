"""Configuration layer: repository descriptors, cache flags and control-root paths.

Repository configuration (`repos.yaml`)
The document is a YAML mapping with a single `repos` mapping of repository name to
settings. Settings are all optional:

    repos:
      api:
        url: git@example.com:acme/api.git
        branch: main
        traits: [node, docker]
        preClone: echo preparing
        postClone: bootstrap.py

- `traits`: a single name or a list of names.
- `preClone` / `postClone`: inline hooks. A value ending in a script suffix refers to a
  custom script under `<custom_dir>/<repo>/`; anything else is a shell command.
- Unknown keys are preserved on `RepoDescriptor.extra`.

Repository names become directory names under the packages directory, so characters
that are invalid in directory names are rejected up front.

Cache flags
`CacheOptions` is immutable and passed explicitly to the change-detection manager and
the orchestrator; nothing reads flags from module globals.
"""

from __future__ import annotations

import os
import re
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Iterable, Mapping, Sequence

import yaml

from .errors import CacheOptionsError, RepositoryConfigError

_INVALID_NAME = re.compile(r'[<>:"/\\|?*]')


class Phase(str, Enum):
    PRE_CLONE = "preClone"
    POST_CLONE = "postClone"


def normalize_traits(value: Any) -> list[str]:
    if value is None:
        return []
    if isinstance(value, str):
        return [value] if value.strip() else []
    if isinstance(value, (list, tuple)):
        out: list[str] = []
        for item in value:
            if not isinstance(item, str):
                raise ValueError(f"Trait names must be strings, got {item!r}")
            out.append(item)
        return out
    raise ValueError(f"traits must be a string or a list of strings, got {type(value).__name__}")


@dataclass(frozen=True)
class RepoDescriptor:
    name: str
    traits: list[str] = field(default_factory=list)
    pre_clone: str | None = None
    post_clone: str | None = None
    url: str | None = None
    branch: str | None = None
    extra: dict[str, Any] = field(default_factory=dict, repr=False)

    def hook_value(self, phase: Phase) -> str | None:
        return self.pre_clone if phase == Phase.PRE_CLONE else self.post_clone

    @staticmethod
    def from_dict(name: str, d: Mapping[str, Any] | None) -> "RepoDescriptor":
        if _INVALID_NAME.search(name) or not name.strip():
            raise RepositoryConfigError(f"Invalid repository name {name!r}: must be usable as a directory name")
        if d is None:
            d = {}
        if not isinstance(d, Mapping):
            raise RepositoryConfigError(f"Settings for repository '{name}' must be a mapping")

        known: dict[str, Any] = {}
        extra: dict[str, Any] = {}
        for k, v in d.items():
            if k in {"url", "branch", "traits", "preClone", "postClone"}:
                known[k] = v
            else:
                extra[k] = v

        try:
            traits = normalize_traits(known.get("traits"))
        except ValueError as exc:
            raise RepositoryConfigError(f"Repository '{name}': {exc}") from exc

        for key in ("preClone", "postClone", "url", "branch"):
            value = known.get(key)
            if value is not None and not isinstance(value, str):
                raise RepositoryConfigError(f"Repository '{name}': {key} must be a string")

        return RepoDescriptor(
            name=name,
            traits=traits,
            pre_clone=known.get("preClone") or None,
            post_clone=known.get("postClone") or None,
            url=known.get("url") or None,
            branch=known.get("branch") or None,
            extra=extra,
        )


def load_repos_config(path: Path) -> list[RepoDescriptor]:
    try:
        raw = yaml.safe_load(path.read_text(encoding="utf-8"))
    except FileNotFoundError as exc:
        raise RepositoryConfigError(f"Repository configuration not found: {path}") from exc
    except yaml.YAMLError as exc:
        raise RepositoryConfigError(f"Invalid YAML in {path}: {exc}") from exc

    if not isinstance(raw, dict):
        raise RepositoryConfigError(f"{path} must contain a mapping with a 'repos' key")
    repos = raw.get("repos")
    if not repos:
        raise RepositoryConfigError(f"No repositories defined in {path}")
    if not isinstance(repos, dict):
        raise RepositoryConfigError(f"'repos' in {path} must be a mapping of name -> settings")
    return [RepoDescriptor.from_dict(str(name), settings) for name, settings in repos.items()]


def select_repositories(repos: Sequence[RepoDescriptor], names: Iterable[str] | None) -> list[RepoDescriptor]:
    if names is None:
        return list(repos)
    wanted = [n for n in names if n]
    by_name = {r.name: r for r in repos}
    unknown = [n for n in wanted if n not in by_name]
    if unknown:
        raise RepositoryConfigError(f"Unknown repositories: {', '.join(unknown)}")
    chosen = set(wanted)
    return [r for r in repos if r.name in chosen]


@dataclass(frozen=True)
class CacheOptions:
    force_pre_clone: bool = False
    force_post_clone: bool = False
    force_all: bool = False
    skip_cache: bool = False
    update_lock: bool = False
    clear_lock: bool = False
    dry_run: bool = False

    def validate(self) -> list[str]:
        errors: list[str] = []
        if self.skip_cache and self.update_lock:
            errors.append("Cannot use --skip-cache and --update-lock together")
        if self.force_all and (self.force_pre_clone or self.force_post_clone):
            errors.append("--force-all cannot be used with --force-preclone or --force-postclone")
        if self.dry_run and self.clear_lock:
            errors.append("Cannot clear lock file in dry-run mode")
        return errors

    def ensure_valid(self) -> None:
        errors = self.validate()
        if errors:
            raise CacheOptionsError(errors)

    def forces(self, phase: Phase) -> bool:
        if self.force_all or self.update_lock:
            return True
        if phase == Phase.PRE_CLONE:
            return self.force_pre_clone
        return self.force_post_clone

    def describe(self) -> str:
        active: list[str] = []
        if self.force_all:
            active.append("force-all")
        else:
            if self.force_pre_clone:
                active.append("force-preclone")
            if self.force_post_clone:
                active.append("force-postclone")
        if self.skip_cache:
            active.append("skip-cache")
        if self.update_lock:
            active.append("update-lock")
        if self.clear_lock:
            active.append("clear-lock")
        return ", ".join(active) if active else "smart caching enabled"


@dataclass(frozen=True)
class SetupPaths:
    control_root: Path
    repos_file: Path
    packages_dir: Path
    traits_dir: Path
    custom_dir: Path
    lock_file: Path

    @staticmethod
    def from_root(
        control_root: Path,
        *,
        repos_file: str = "repos.yaml",
        packages_dir: str = "packages",
        traits_dir: str = "traits",
        custom_dir: str = "custom",
        lock_file: str = "multirepo.lock",
    ) -> "SetupPaths":
        root = control_root.resolve()
        return SetupPaths(
            control_root=root,
            repos_file=(root / repos_file).resolve(),
            packages_dir=(root / packages_dir).resolve(),
            traits_dir=(root / traits_dir).resolve(),
            custom_dir=(root / custom_dir).resolve(),
            lock_file=(root / lock_file).resolve(),
        )

    def repo_path(self, name: str) -> Path:
        return self.packages_dir / name


def control_root_from_env() -> Path:
    env = os.environ.get("MULTIREPO_CONTROL_ROOT")
    return (Path(env) if env else Path.cwd()).resolve()
