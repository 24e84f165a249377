"""Error taxonomy for multirepo.

Every failure the orchestration core can produce is one of the classes below. They
subclass the builtin exception that best describes them, so callers that only care about
"bad data" (`ValueError`) or "operation failed" (`RuntimeError`) can keep catching builtins.

Propagation policy (who catches what)
- `ConfigLoadError`: caught per trait by the resolver; the trait is dropped with a warning.
- `CycleError`: never caught inside resolution; the orchestrator treats it as a phase
  failure for the repository (fatal in pre-clone, isolated in post-clone).
- `HookExecutionError`: raised for the first failing hook of a phase; same phase policy.
- `LockStoreParseError`: fatal at startup, surfaced by the CLI.
- `CacheIntegrityError`: caught by the change-detection manager and turned into
  "cannot prove equivalence, execute".
- `SetupAborted`: raised by the orchestrator after a pre-clone failure has been recorded
  and the lock store saved; carries the partial report.
- `RepositoryConfigError` / `CacheOptionsError`: input validation, surfaced by the CLI
  before any work starts.
"""

from __future__ import annotations

from pathlib import Path
from typing import Any, Sequence


class CycleError(RuntimeError):
    def __init__(self, *, stack: Sequence[str], trait: str) -> None:
        self.stack = tuple(stack)
        self.trait = trait
        chain = " -> ".join([*self.stack, trait])
        super().__init__(f"Trait dependency cycle detected: {chain}")


class ConfigLoadError(ValueError):
    def __init__(self, *, trait: str, path: Path, reason: str) -> None:
        self.trait = trait
        self.path = path
        self.reason = reason
        super().__init__(f"Could not load config for trait '{trait}' ({path}): {reason}")


class HookExecutionError(RuntimeError):
    def __init__(
        self,
        *,
        repo: str,
        phase: str,
        hook: str,
        message: str,
        exit_code: int | None = None,
        outcome: Any = None,
    ) -> None:
        self.repo = repo
        self.phase = phase
        self.hook = hook
        self.exit_code = exit_code
        self.message = message
        self.outcome = outcome
        code = f" (exit code {exit_code})" if exit_code is not None else ""
        super().__init__(f"{phase} failed for '{repo}' in {hook}{code}: {message}")


class LockStoreParseError(ValueError):
    def __init__(self, *, path: Path, reason: str) -> None:
        self.path = path
        self.reason = reason
        super().__init__(f"Lock file {path} is unreadable: {reason}")


class CacheIntegrityError(OSError):
    def __init__(self, *, path: Path, reason: str) -> None:
        self.path = path
        self.reason = reason
        super().__init__(f"Could not hash {path}: {reason}")


class RepositoryConfigError(ValueError):
    pass


class CacheOptionsError(ValueError):
    def __init__(self, errors: Sequence[str]) -> None:
        self.errors = list(errors)
        super().__init__("; ".join(self.errors))


class SetupAborted(RuntimeError):
    """A pre-clone failure stopped the whole run; `report` holds what ran before it."""

    def __init__(self, *, report: Any, cause: BaseException) -> None:
        self.report = report
        self.cause = cause
        super().__init__(f"Setup aborted: {cause}")
