"""Change detection: decide whether a phase can be skipped for a repository.

A phase is skipped only when every tracked input is provably unchanged since the phase
last succeeded. Checks run in this order and the first one that fails decides:

1. `--skip-cache` bypasses the cache entirely (always execute, never record).
2. `--force-all`, `--update-lock` or the phase-specific force flag: execute.
3. No record for the repository, or the stored status for the phase is not `success`.
4. The `repos.yaml` hash differs from what the phase last ran against, or from the global
   hash loaded at startup.
5. The trait set changed, or the hash of any active trait's phase script or
   `config.yaml` differs. "Active" means the full dependency closure, so editing a
   dependency trait invalidates every repository that pulls it in.
6. Post-clone only: no stored content hash, or the repository content hash differs.
7. The repository's custom script for the phase differs, disappeared, or was removed
   from the configuration.
8. Post-clone only: the set of dependency manifests or any of their hashes differs.

Missing evidence never counts as equivalence, and a hashing failure
(`CacheIntegrityError`) or a trait cycle makes the decision "execute".

Global hashes are compared against a snapshot taken when the lock file is loaded, so a
repository that records new hashes mid-run does not mask the same change for the
repositories processed after it.

Every decision taken by `explain` is remembered for the run, and `stats`/`summary` count
those decisions instead of hashing the working trees a second time.
"""

from __future__ import annotations

import sys
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Callable, Sequence, TypeVar

from .config import CacheOptions, Phase, RepoDescriptor, SetupPaths
from .errors import CacheIntegrityError, CycleError
from .lockfile import (
    DEPENDENCY_MANIFESTS,
    CacheRecord,
    CacheStatus,
    GlobalChecksums,
    LockStore,
    hash_directory,
    hash_file,
    utc_now,
)
from .traits import TRAIT_CONFIG, TraitResolver

T = TypeVar("T")


@dataclass(frozen=True)
class SkipDecision:
    skip: bool
    reason: str


@dataclass(frozen=True)
class CacheStats:
    total: int
    pre_clone_skippable: int
    post_clone_skippable: int
    pre_clone_forced: int
    post_clone_forced: int

    @property
    def operations_saved(self) -> int:
        return self.pre_clone_skippable + self.post_clone_skippable

    @property
    def hit_rate(self) -> int:
        possible = self.total * 2
        return round(self.operations_saved * 100 / possible) if possible else 0


def _log(message: str) -> None:
    print(f"[multirepo] {message}", file=sys.stderr)


class CacheManager:
    def __init__(
        self,
        *,
        store: LockStore,
        options: CacheOptions,
        paths: SetupPaths,
        resolver: TraitResolver,
    ) -> None:
        self.store = store
        self.options = options
        self.paths = paths
        self.resolver = resolver
        self._baseline = GlobalChecksums()
        self._rebuilt: set[str] = set()
        self._decisions: dict[tuple[str, Phase], SkipDecision] = {}

    def initialize(self) -> "CacheManager":
        if self.options.clear_lock:
            if self.options.dry_run:
                _log(f"would clear lock file {self.store.path}")
            elif self.store.clear():
                _log(f"cleared lock file {self.store.path}")
            else:
                _log("no lock file to clear")
        self.store.load()
        self._baseline = replace(
            self.store.global_checksums,
            trait_scripts=dict(self.store.global_checksums.trait_scripts),
        )
        for problem in self.store.validate():
            _log(f"warning: lock file integrity: {problem}")
        return self

    def can_skip(self, phase: Phase, repo: RepoDescriptor, repo_path: Path) -> bool:
        return self.explain(phase, repo, repo_path).skip

    def explain(self, phase: Phase, repo: RepoDescriptor, repo_path: Path) -> SkipDecision:
        decision = self._decide(phase, repo, repo_path)
        self._decisions[(repo.name, phase)] = decision
        return decision

    def _decide(self, phase: Phase, repo: RepoDescriptor, repo_path: Path) -> SkipDecision:
        if self.options.skip_cache:
            return SkipDecision(False, "cache bypassed (--skip-cache)")
        if self.options.forces(phase):
            return SkipDecision(False, f"forced ({self.options.describe()})")

        record = self.store.get(repo.name)
        if record is None:
            return SkipDecision(False, "no previous run recorded")
        status = record.status_for(phase.value)
        if status != CacheStatus.SUCCESS:
            return SkipDecision(False, f"previous {phase.value} status is {status.value}")

        try:
            return self._compare(phase, repo, repo_path, record)
        except CacheIntegrityError as exc:
            return SkipDecision(False, f"could not verify inputs: {exc}")
        except CycleError as exc:
            return SkipDecision(False, str(exc))

    def _compare(self, phase: Phase, repo: RepoDescriptor, repo_path: Path, record: CacheRecord) -> SkipDecision:
        inputs = record.inputs.get(phase.value) or {}

        config_hash = hash_file(self.paths.repos_file)
        if config_hash is None or config_hash != inputs.get("reposYaml") or config_hash != self._baseline.repos_yaml:
            return SkipDecision(False, "repos.yaml changed")

        if list(record.traits) != list(repo.traits):
            return SkipDecision(False, "trait list changed")
        current = self.trait_script_hashes(self.resolver.closure(repo), phases=[phase])
        stored = inputs.get("traitScripts")
        if not isinstance(stored, dict) or current != stored:
            return SkipDecision(False, "trait scripts changed")
        for key, digest in current.items():
            if self._baseline.trait_scripts.get(key) != digest:
                return SkipDecision(False, f"trait script changed: {key}")

        if phase == Phase.POST_CLONE:
            if record.content_checksum is None:
                return SkipDecision(False, "no content checksum recorded")
            if hash_directory(repo_path) != record.content_checksum:
                return SkipDecision(False, "repository content changed")

        script = self.resolver.custom_script(repo, phase)
        if script is not None:
            digest = hash_file(script)
            if digest is None:
                return SkipDecision(False, f"custom script missing: {script}")
            if digest != record.custom_scripts.get(phase.value):
                return SkipDecision(False, "custom script changed")
        elif phase.value in record.custom_scripts:
            return SkipDecision(False, "custom script removed")

        if phase == Phase.POST_CLONE and self.dependency_hashes(repo_path) != record.dependency_files:
            return SkipDecision(False, "dependency manifests changed")

        return SkipDecision(True, "no changes detected")

    def trait_script_hashes(self, traits: Sequence[str], *, phases: Sequence[Phase] = tuple(Phase)) -> dict[str, str]:
        hashes: dict[str, str] = {}
        for trait in traits:
            directory = self.paths.traits_dir / trait
            for phase in phases:
                digest = hash_file(directory / f"{phase.value}.py")
                if digest is not None:
                    hashes[f"{trait}/{phase.value}.py"] = digest
            digest = hash_file(directory / TRAIT_CONFIG)
            if digest is not None:
                hashes[f"{trait}/{TRAIT_CONFIG}"] = digest
        return hashes

    @staticmethod
    def dependency_hashes(repo_path: Path) -> dict[str, str]:
        hashes: dict[str, str] = {}
        if not repo_path.is_dir():
            return hashes
        for name in DEPENDENCY_MANIFESTS:
            digest = hash_file(repo_path / name)
            if digest is not None:
                hashes[name] = digest
        return hashes

    def record_outcome(self, phase: Phase, repo: RepoDescriptor, repo_path: Path, *, success: bool) -> None:
        if self.options.skip_cache:
            return
        if self.options.update_lock and repo.name not in self._rebuilt:
            self.store.put(repo.name, CacheRecord())
            self._rebuilt.add(repo.name)

        try:
            traits = self.resolver.closure(repo)
        except CycleError:
            traits = list(repo.traits)
        config_hash = self._try_hash(lambda: hash_file(self.paths.repos_file))
        phase_scripts = self._try_hash(lambda: self.trait_script_hashes(traits, phases=[phase])) or {}
        all_scripts = self._try_hash(lambda: self.trait_script_hashes(traits)) or {}

        record = self.store.get(repo.name) or CacheRecord()
        inputs = dict(record.inputs)
        inputs[phase.value] = {"reposYaml": config_hash, "traitScripts": phase_scripts}
        custom = dict(record.custom_scripts)
        script = self.resolver.custom_script(repo, phase)
        digest = self._try_hash(lambda: hash_file(script)) if script is not None else None
        if digest is not None:
            custom[phase.value] = digest
        else:
            custom.pop(phase.value, None)

        status = CacheStatus.SUCCESS if success else CacheStatus.FAILED
        now = utc_now()
        if phase == Phase.PRE_CLONE:
            self.store.set(
                repo.name,
                pre_clone_status=status,
                pre_clone_timestamp=now,
                traits=list(repo.traits),
                inputs=inputs,
                custom_scripts=custom,
            )
        else:
            self.store.set(
                repo.name,
                post_clone_status=status,
                post_clone_timestamp=now,
                traits=list(repo.traits),
                inputs=inputs,
                custom_scripts=custom,
                content_checksum=self._try_hash(lambda: hash_directory(repo_path)),
                dependency_files=self._try_hash(lambda: self.dependency_hashes(repo_path)) or {},
            )
        self.store.update_global(repos_yaml=config_hash, trait_scripts=all_scripts)

    @staticmethod
    def _try_hash(compute: Callable[[], T]) -> T | None:
        try:
            return compute()
        except CacheIntegrityError as exc:
            _log(f"warning: {exc}; the next run will not skip this phase")
            return None

    def prune(self, repos: Sequence[RepoDescriptor]) -> list[str]:
        if not self.options.update_lock or self.options.dry_run:
            return []
        dropped = self.store.prune(r.name for r in repos)
        for name in dropped:
            _log(f"dropped lock record for '{name}' (no longer configured)")
        return dropped

    def save(self) -> bool:
        if self.options.skip_cache:
            _log("skipping lock file save (--skip-cache)")
            return False
        if self.options.dry_run:
            _log("would save lock file (dry-run)")
            return False
        self.store.save()
        _log(f"lock file saved: {self.store.path}")
        return True

    def stats(self, repos: Sequence[RepoDescriptor]) -> CacheStats:
        """Counts over the decisions taken so far; phases never evaluated count as neither."""
        counts = {(phase, skip): 0 for phase in Phase for skip in (True, False)}
        forced = {phase: 0 for phase in Phase}
        for repo in repos:
            for phase in Phase:
                decision = self._decisions.get((repo.name, phase))
                if decision is None:
                    continue
                counts[(phase, decision.skip)] += 1
                if self.options.skip_cache or self.options.forces(phase):
                    forced[phase] += 1
        return CacheStats(
            total=len(repos),
            pre_clone_skippable=counts[(Phase.PRE_CLONE, True)],
            post_clone_skippable=counts[(Phase.POST_CLONE, True)],
            pre_clone_forced=forced[Phase.PRE_CLONE],
            post_clone_forced=forced[Phase.POST_CLONE],
        )

    def describe(self) -> list[str]:
        if self.options.skip_cache:
            return ["cache disabled (--skip-cache)"]
        lock = self.store.stats()
        return [
            f"cache mode: {self.options.describe()}",
            f"lock file: {self.store.path}",
            f"repositories tracked: {lock.repositories}",
            f"trait scripts monitored: {lock.trait_scripts}",
            f"last cache update: {lock.generated or 'never'}",
        ]

    def summary(self, repos: Sequence[RepoDescriptor]) -> list[str]:
        if self.options.skip_cache:
            return []
        stats = self.stats(repos)
        lines = [f"phases skipped: {stats.operations_saved} (hit rate {stats.hit_rate}%)"]
        if stats.pre_clone_forced or stats.post_clone_forced:
            lines.append(
                f"forced phases: preClone {stats.pre_clone_forced}/{stats.total}, "
                f"postClone {stats.post_clone_forced}/{stats.total}"
            )
        return lines
