"""Trait resolution: expand a repository's traits into an ordered list of hooks.

A trait lives in its own directory under the traits root:

    traits/
      node/
        config.yaml      # traits: [...], hasCheckFunction: ..., description: ...
        preClone.py      # optional, one script per phase
        postClone.py

`config.yaml` fields (all optional):
- `traits`: names of traits this one depends on (a single name or a list).
- `hasCheckFunction`: whether the phase scripts export a `check(context)` callable that
  can run in-process. Either a bool for every phase or a mapping such as
  `{preClone: false, postClone: true}`.
- `description`: human-readable label used in progress output.

Resolution order
Dependencies are expanded depth-first in declaration order and every trait contributes at
most one hook, emitted after all of its dependencies (post-order). For

    repo.traits = [a]    a -> [b, c]    b -> [c]

the hooks are `c, b, a`. A trait already emitted is never emitted again, so diamonds
collapse to a single occurrence at the first position they were reached.

The expansion uses an explicit work stack rather than recursion. The names on that stack
are the "currently being processed" chain; reaching one of them again is a cycle and
raises `CycleError` naming the chain. A trait whose `config.yaml` is missing or malformed
is dropped with a warning and expansion continues with its siblings.

A repository's own inline hook for the phase, if any, is appended after every trait hook:
a value ending in `.py` or `.sh` is a custom script under `<custom_dir>/<repo name>/`,
anything else is a shell command.
"""

from __future__ import annotations

import sys
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Iterator, Union

import yaml

from .config import Phase, RepoDescriptor, normalize_traits
from .errors import ConfigLoadError, CycleError

SCRIPT_SUFFIXES = (".py", ".sh")
TRAIT_CONFIG = "config.yaml"


@dataclass(frozen=True)
class Trait:
    name: str
    directory: Path
    dependencies: list[str] = field(default_factory=list)
    has_check_function: dict[Phase, bool] = field(default_factory=dict)
    description: str | None = None

    def script_path(self, phase: Phase) -> Path:
        return self.directory / f"{phase.value}.py"

    def label(self, phase: Phase) -> str:
        return self.description or f"{self.name} {phase.value}"


@dataclass(frozen=True)
class TraitHook:
    trait: str
    script: Path
    has_check_function: bool
    dependencies: list[str]
    description: str


@dataclass(frozen=True)
class CustomHook:
    script: Path
    exists: bool
    description: str


@dataclass(frozen=True)
class CommandHook:
    command: str
    description: str


Hook = Union[TraitHook, CustomHook, CommandHook]


@dataclass(frozen=True)
class Resolution:
    hooks: list[Hook]
    warnings: list[str] = field(default_factory=list)


def _check_flags(raw: Any, *, trait: str, path: Path) -> dict[Phase, bool]:
    if raw is None:
        return {phase: False for phase in Phase}
    if isinstance(raw, bool):
        return {phase: raw for phase in Phase}
    if isinstance(raw, dict):
        flags = {phase: False for phase in Phase}
        for key, value in raw.items():
            try:
                phase = Phase(str(key))
            except ValueError:
                raise ConfigLoadError(trait=trait, path=path, reason=f"unknown phase {key!r} in hasCheckFunction")
            if not isinstance(value, bool):
                raise ConfigLoadError(trait=trait, path=path, reason=f"hasCheckFunction.{key} must be a boolean")
            flags[phase] = value
        return flags
    raise ConfigLoadError(trait=trait, path=path, reason="hasCheckFunction must be a boolean or a phase mapping")


def load_trait(traits_dir: Path, name: str) -> Trait:
    directory = traits_dir / name
    path = directory / TRAIT_CONFIG
    try:
        raw = yaml.safe_load(path.read_text(encoding="utf-8"))
    except FileNotFoundError:
        raise ConfigLoadError(trait=name, path=path, reason="config file not found")
    except (OSError, UnicodeDecodeError) as exc:
        raise ConfigLoadError(trait=name, path=path, reason=str(exc)) from exc
    except yaml.YAMLError as exc:
        raise ConfigLoadError(trait=name, path=path, reason=f"invalid YAML: {exc}") from exc

    if raw is None:
        raw = {}
    if not isinstance(raw, dict):
        raise ConfigLoadError(trait=name, path=path, reason="top level must be a mapping")
    try:
        dependencies = normalize_traits(raw.get("traits"))
    except ValueError as exc:
        raise ConfigLoadError(trait=name, path=path, reason=str(exc)) from exc
    description = raw.get("description")

    return Trait(
        name=name,
        directory=directory,
        dependencies=dependencies,
        has_check_function=_check_flags(raw.get("hasCheckFunction"), trait=name, path=path),
        description=str(description) if description else None,
    )


@dataclass
class _Frame:
    trait: Trait
    pending: Iterator[str]


class TraitResolver:
    def __init__(self, *, traits_dir: Path, custom_dir: Path) -> None:
        self.traits_dir = traits_dir
        self.custom_dir = custom_dir

    def resolve(self, repo: RepoDescriptor, phase: Phase) -> Resolution:
        hooks: list[Hook] = []
        warnings: list[str] = []
        for trait in self._expand(repo.traits, warnings):
            script = trait.script_path(phase)
            if script.is_file():
                hooks.append(
                    TraitHook(
                        trait=trait.name,
                        script=script,
                        has_check_function=trait.has_check_function.get(phase, False),
                        dependencies=list(trait.dependencies),
                        description=trait.label(phase),
                    )
                )
            elif not trait.dependencies:
                self._warn(
                    warnings,
                    f"trait '{trait.name}' has neither a '{phase.value}' script nor any dependencies; skipping",
                )

        inline = self.inline_hook(repo, phase)
        if inline is not None:
            hooks.append(inline)
        return Resolution(hooks=hooks, warnings=warnings)

    def closure(self, repo: RepoDescriptor) -> list[str]:
        """Every loadable trait reachable from `repo`, in resolution order."""
        return [t.name for t in self._expand(repo.traits, [], echo=False)]

    def inline_hook(self, repo: RepoDescriptor, phase: Phase) -> Hook | None:
        value = repo.hook_value(phase)
        if not value or not value.strip():
            return None
        value = value.strip()
        if value.endswith(SCRIPT_SUFFIXES):
            script = self.custom_dir / repo.name / value
            return CustomHook(script=script, exists=script.is_file(), description=f"custom {phase.value} script {value}")
        return CommandHook(command=value, description=f"{phase.value} command: {value}")

    def custom_script(self, repo: RepoDescriptor, phase: Phase) -> Path | None:
        hook = self.inline_hook(repo, phase)
        return hook.script if isinstance(hook, CustomHook) else None

    def _expand(self, roots: list[str], warnings: list[str], *, echo: bool = True) -> list[Trait]:
        ordered: list[Trait] = []
        processed: set[str] = set()
        path: list[_Frame] = []
        on_path: set[str] = set()

        def enter(name: str) -> None:
            try:
                trait = load_trait(self.traits_dir, name)
            except ConfigLoadError as exc:
                self._warn(warnings, f"{exc}; trait skipped", echo=echo)
                processed.add(name)
                return
            path.append(_Frame(trait=trait, pending=iter(trait.dependencies)))
            on_path.add(name)

        for root in roots:
            if root in processed:
                continue
            enter(root)
            while path:
                frame = path[-1]
                dep = next(frame.pending, None)
                if dep is None:
                    path.pop()
                    on_path.discard(frame.trait.name)
                    processed.add(frame.trait.name)
                    ordered.append(frame.trait)
                    continue
                if dep in on_path:
                    raise CycleError(stack=[f.trait.name for f in path], trait=dep)
                if dep in processed:
                    continue
                enter(dep)
        return ordered

    @staticmethod
    def _warn(warnings: list[str], message: str, *, echo: bool = True) -> None:
        warnings.append(message)
        if echo:
            print(f"[multirepo] warning: {message}", file=sys.stderr)
