"""multirepo orchestrator: pre-clone -> acquire -> post-clone over every selected repository.

Control flow
1. Pre-clone, for every repository in configuration order:
   - ask the change-detection manager whether the phase can be skipped;
   - otherwise resolve the trait hooks, run them, and record the outcome in the lock store.
   Any failure here (a failing hook or a trait dependency cycle) is recorded as `failed`,
   the lock store is saved, and the whole run stops with `SetupAborted`. Pre-clone hooks
   prepare the environment every later step relies on, so nothing else is attempted.
2. Acquisition, for every repository: clone it, reuse a populated directory, or create an
   empty one (`multirepo.git_ops`). A repository whose acquisition fails is reported and
   skipped by the post-clone phase; the others continue.
3. Post-clone, for every acquired repository, with the same skip/resolve/run/record flow.
   A failure is recorded as `failed` for that repository only and the loop moves on.
4. The lock store is saved once at the end (subject to `--skip-cache` and `--dry-run`).

Interrupts
`KeyboardInterrupt` (SIGINT, and SIGTERM which the CLI maps onto it) reaches the
orchestrator after the process runner has stopped the in-flight child. The running phase
is recorded as failed, the lock store is saved, and the interrupt is re-raised.

Working directory for hooks
Hooks run inside the repository directory. Before acquisition that directory usually does
not exist yet, in which case pre-clone hooks run from the control root; the repository path
is always available to them as `MULTIREPO_REPO_PATH`.

Dry-run
No acquisition, no hook execution and no lock writes. The returned report lists, per
repository and phase, the cache decision and the hooks that would run.
"""

from __future__ import annotations

import subprocess
import sys
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Sequence

from .cache import CacheManager
from .config import CacheOptions, Phase, RepoDescriptor, SetupPaths
from .errors import CycleError, HookExecutionError, SetupAborted
from .git_ops import Acquisition, GitClient, acquire_repository, planned_acquisition
from .hooks import HookContext, HookRunner, ProgressCounter
from .traits import TraitResolver


def _log(message: str) -> None:
    print(f"[multirepo] {message}", file=sys.stderr)


@dataclass(frozen=True)
class SetupConfig:
    paths: SetupPaths
    options: CacheOptions
    resolver: TraitResolver
    hook_runner: HookRunner
    cache: CacheManager
    git: GitClient

    @property
    def dry_run(self) -> bool:
        return self.options.dry_run


class PhaseStatus(str, Enum):
    NOT_RUN = "not-run"
    EXECUTED = "executed"
    CACHED = "cached"
    FAILED = "failed"
    WOULD_EXECUTE = "would-execute"


@dataclass
class PhaseReport:
    status: PhaseStatus = PhaseStatus.NOT_RUN
    reason: str | None = None
    hooks: list[str] = field(default_factory=list)
    error: str | None = None
    warnings: list[str] = field(default_factory=list)


@dataclass
class RepoReport:
    repo: RepoDescriptor
    path: Path
    pre_clone: PhaseReport = field(default_factory=PhaseReport)
    post_clone: PhaseReport = field(default_factory=PhaseReport)
    acquisition: Acquisition | None = None
    acquisition_error: str | None = None

    def phase(self, phase: Phase) -> PhaseReport:
        return self.pre_clone if phase == Phase.PRE_CLONE else self.post_clone

    @property
    def failed(self) -> bool:
        return (
            self.pre_clone.status == PhaseStatus.FAILED
            or self.post_clone.status == PhaseStatus.FAILED
            or self.acquisition_error is not None
        )


@dataclass
class SetupReport:
    repos: list[RepoReport]
    dry_run: bool = False
    aborted: bool = False
    interrupted: bool = False

    def count(self, phase: Phase, status: PhaseStatus) -> int:
        return sum(1 for r in self.repos if r.phase(phase).status == status)

    @property
    def success(self) -> bool:
        return not (self.aborted or self.interrupted or any(r.failed for r in self.repos))

    def get(self, name: str) -> RepoReport:
        for entry in self.repos:
            if entry.repo.name == name:
                return entry
        raise KeyError(f"Repository not in report: {name}")


class SetupOrchestrator:
    def __init__(self, cfg: SetupConfig) -> None:
        self.cfg = cfg
        self._progress = ProgressCounter()

    def run(self, repos: Sequence[RepoDescriptor], *, configured: Sequence[RepoDescriptor] | None = None) -> SetupReport:
        report = SetupReport(
            repos=[RepoReport(repo=r, path=self.cfg.paths.repo_path(r.name)) for r in repos],
            dry_run=self.cfg.dry_run,
        )
        self._progress = ProgressCounter()
        for line in self.cfg.cache.describe():
            _log(line)
        self.cfg.cache.prune(configured if configured is not None else repos)

        try:
            for entry in report.repos:
                try:
                    self._run_phase(Phase.PRE_CLONE, entry)
                except (HookExecutionError, CycleError) as exc:
                    report.aborted = True
                    _log(f"preClone failed for '{entry.repo.name}'; aborting setup")
                    self.cfg.cache.save()
                    raise SetupAborted(report=report, cause=exc) from exc

            for entry in report.repos:
                self._acquire(entry)

            for entry in report.repos:
                if entry.acquisition_error is not None:
                    continue
                try:
                    self._run_phase(Phase.POST_CLONE, entry)
                except (HookExecutionError, CycleError) as exc:
                    _log(f"postClone failed for '{entry.repo.name}': {exc}; continuing with remaining repositories")
        except KeyboardInterrupt:
            report.interrupted = True
            _log("interrupted; saving lock file")
            self.cfg.cache.save()
            raise

        self.cfg.cache.save()
        for line in self.cfg.cache.summary(repos):
            _log(line)
        return report

    def _acquire(self, entry: RepoReport) -> None:
        if self.cfg.dry_run:
            entry.acquisition = planned_acquisition(entry.repo, entry.path)
            return
        try:
            entry.acquisition = acquire_repository(entry.repo, entry.path, git=self.cfg.git)
        except (subprocess.CalledProcessError, OSError) as exc:
            detail = exc.stderr.strip() if isinstance(exc, subprocess.CalledProcessError) and exc.stderr else str(exc)
            entry.acquisition_error = detail
            _log(f"could not acquire '{entry.repo.name}': {detail}")
            return
        _log(f"{entry.repo.name}: {entry.acquisition.kind.value} {entry.path}")

    def _run_phase(self, phase: Phase, entry: RepoReport) -> None:
        repo = entry.repo
        result = entry.phase(phase)

        decision = self.cfg.cache.explain(phase, repo, entry.path)
        result.reason = decision.reason
        if decision.skip:
            result.status = PhaseStatus.CACHED
            _log(f"{repo.name} {phase.value}: skipped ({decision.reason})")
            return
        _log(f"{repo.name} {phase.value}: running ({decision.reason})")

        try:
            resolution = self.cfg.resolver.resolve(repo, phase)
        except CycleError as exc:
            self._fail(phase, entry, str(exc))
            raise
        result.hooks = [h.description for h in resolution.hooks]
        result.warnings.extend(resolution.warnings)

        context = HookContext(
            cwd=entry.path if entry.path.is_dir() else self.cfg.paths.control_root,
            repo=repo,
            phase=phase,
            repo_path=entry.path,
            progress=self._progress,
            dry_run=self.cfg.dry_run,
        )
        try:
            outcome = self.cfg.hook_runner.run(resolution.hooks, context)
        except KeyboardInterrupt:
            self._fail(phase, entry, "interrupted")
            raise

        result.warnings.extend(outcome.warnings)
        if outcome.dry_run:
            result.status = PhaseStatus.WOULD_EXECUTE
            return
        failure = outcome.failure
        if failure is not None:
            self._fail(phase, entry, f"{failure.description}: {failure.error}")
            outcome.raise_for_failure(repo=repo.name, phase=phase)

        result.status = PhaseStatus.EXECUTED
        self.cfg.cache.record_outcome(phase, repo, entry.path, success=True)

    def _fail(self, phase: Phase, entry: RepoReport, error: str) -> None:
        result = entry.phase(phase)
        result.status = PhaseStatus.FAILED
        result.error = error
        if not self.cfg.dry_run:
            self.cfg.cache.record_outcome(phase, entry.repo, entry.path, success=False)
