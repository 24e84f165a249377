"""Hook execution: run a resolved hook list for one repository and phase.

Hooks run strictly one after another in list order, and the first failure stops the
phase: later hooks are not started. Each hook is dispatched by its type:

- `TraitHook` with `has_check_function`: the phase script is imported in-process with
  `importlib` and its `check(context)` callable is invoked with the `HookContext`.
  Coroutine results are driven to completion with `asyncio.run`. Raising, calling
  `sys.exit` with a non-zero code, or returning `False` counts as failure.
  If the script defines no callable `check`, a warning is recorded on the result
  (`fallback=True`) and the script is executed as an external process instead.
- `TraitHook` without a check function, and `CustomHook`: the script runs as an external
  process (`.py` with the current interpreter, `.sh` with `sh`, anything else directly).
  A custom script that does not exist is a failure, never a silent no-op.
- `CommandHook`: `sh -c <command>`.

External processes inherit stdout/stderr, run in `context.cwd`, and receive the repository
context through environment variables:

    MULTIREPO_REPO_NAME   MULTIREPO_REPO_URL   MULTIREPO_TRAITS (JSON list)
    MULTIREPO_CWD         MULTIREPO_REPO_PATH  MULTIREPO_PHASE
    MULTIREPO_STEP        MULTIREPO_SCRIPT (script hooks only)

A trait script that is run as a process can rebuild its context with
`HookContext.from_environ()`, which keeps one `check(context)` entry point usable both ways.

Interrupts: `SubprocessRunner` terminates the in-flight child (then kills it after a grace
period) before re-raising `KeyboardInterrupt`; `HookRunner` never swallows it, so the
orchestrator can record the phase as failed and persist the lock store.

Dry-run: nothing is imported or spawned; every hook is reported as `would-execute`.
"""

from __future__ import annotations

import asyncio
import importlib.util
import inspect
import json
import os
import re
import subprocess
import sys
from collections.abc import Awaitable, Callable, Mapping, Sequence
from dataclasses import dataclass, field, replace
from enum import Enum
from pathlib import Path
from typing import Any, Protocol

from .config import Phase, RepoDescriptor
from .errors import HookExecutionError
from .traits import CommandHook, CustomHook, Hook, TraitHook


class ProgressCounter:
    """Monotonic hook counter shared by every phase of a run."""

    def __init__(self, start: int = 0) -> None:
        self.value = start

    def advance(self) -> int:
        self.value += 1
        return self.value


@dataclass
class HookContext:
    cwd: Path
    repo: RepoDescriptor
    phase: Phase
    repo_path: Path
    progress: ProgressCounter = field(default_factory=ProgressCounter)
    dry_run: bool = False
    extra: dict[str, Any] = field(default_factory=dict)

    @property
    def step(self) -> int:
        return self.progress.value

    def environ(self, *, script: Path | None = None, base: Mapping[str, str] | None = None) -> dict[str, str]:
        env = dict(os.environ if base is None else base)
        env.update(
            {
                "MULTIREPO_REPO_NAME": self.repo.name,
                "MULTIREPO_REPO_URL": self.repo.url or "",
                "MULTIREPO_TRAITS": json.dumps(list(self.repo.traits)),
                "MULTIREPO_CWD": str(self.cwd),
                "MULTIREPO_REPO_PATH": str(self.repo_path),
                "MULTIREPO_PHASE": self.phase.value,
                "MULTIREPO_STEP": str(self.step),
            }
        )
        if script is not None:
            env["MULTIREPO_SCRIPT"] = str(script)
        return env

    @staticmethod
    def from_environ(env: Mapping[str, str] | None = None) -> "HookContext":
        env = os.environ if env is None else env
        name = env.get("MULTIREPO_REPO_NAME")
        if not name:
            raise RuntimeError("MULTIREPO_REPO_NAME is not set; not running under multirepo")
        traits = json.loads(env.get("MULTIREPO_TRAITS") or "[]")
        cwd = Path(env.get("MULTIREPO_CWD") or os.getcwd())
        return HookContext(
            cwd=cwd,
            repo=RepoDescriptor(name=name, traits=[str(t) for t in traits], url=env.get("MULTIREPO_REPO_URL") or None),
            phase=Phase(env.get("MULTIREPO_PHASE", Phase.POST_CLONE.value)),
            repo_path=Path(env.get("MULTIREPO_REPO_PATH") or cwd),
            progress=ProgressCounter(int(env.get("MULTIREPO_STEP") or 0)),
        )


class HookStatus(str, Enum):
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    WOULD_EXECUTE = "would-execute"


@dataclass(frozen=True)
class HookResult:
    hook: Hook
    status: HookStatus
    description: str
    step: int = 0
    exit_code: int | None = None
    error: str | None = None
    warnings: list[str] = field(default_factory=list)
    fallback: bool = False


@dataclass(frozen=True)
class HookRunOutcome:
    results: list[HookResult]
    dry_run: bool = False

    @property
    def failure(self) -> HookResult | None:
        for result in self.results:
            if result.status == HookStatus.FAILED:
                return result
        return None

    @property
    def success(self) -> bool:
        return self.failure is None

    @property
    def warnings(self) -> list[str]:
        return [w for r in self.results for w in r.warnings]

    def raise_for_failure(self, *, repo: str, phase: Phase) -> None:
        failure = self.failure
        if failure is None:
            return
        raise HookExecutionError(
            repo=repo,
            phase=phase.value,
            hook=failure.description,
            exit_code=failure.exit_code,
            message=failure.error or "hook failed",
            outcome=self,
        )


class ProcessRunner(Protocol):
    def run(self, argv: Sequence[str], *, cwd: Path, env: Mapping[str, str]) -> int: ...


class SubprocessRunner:
    def __init__(self, *, grace_period: float = 5.0) -> None:
        self.grace_period = grace_period

    def run(self, argv: Sequence[str], *, cwd: Path, env: Mapping[str, str]) -> int:
        p = subprocess.Popen(list(argv), cwd=str(cwd), env=dict(env))
        try:
            return int(p.wait())
        except KeyboardInterrupt:
            self._stop(p)
            raise

    def _stop(self, p: subprocess.Popen) -> None:
        if p.poll() is not None:
            return
        p.terminate()
        try:
            p.wait(timeout=self.grace_period)
        except subprocess.TimeoutExpired:
            pass
        finally:
            # Reached on timeout and on a second interrupt during the grace period.
            if p.poll() is None:
                p.kill()
                p.wait()


def script_argv(script: Path) -> list[str]:
    if script.suffix == ".py":
        return [sys.executable, str(script)]
    if script.suffix == ".sh":
        return ["sh", str(script)]
    return [str(script)]


def load_check_function(script: Path, *, module_name: str) -> Callable[..., Any] | None:
    spec = importlib.util.spec_from_file_location(module_name, script)
    if spec is None or spec.loader is None:
        raise ImportError(f"cannot load {script}")
    module = importlib.util.module_from_spec(spec)
    sys.modules[module_name] = module
    try:
        spec.loader.exec_module(module)
    except BaseException:
        sys.modules.pop(module_name, None)
        raise
    check = getattr(module, "check", None)
    return check if callable(check) else None


async def _drive(awaitable: Awaitable[Any]) -> Any:
    return await awaitable


class HookRunner:
    def __init__(self, *, process_runner: ProcessRunner | None = None) -> None:
        self.process_runner = process_runner or SubprocessRunner()

    def run(self, hooks: Sequence[Hook], context: HookContext) -> HookRunOutcome:
        if context.dry_run:
            return HookRunOutcome(
                results=[HookResult(hook=h, status=HookStatus.WOULD_EXECUTE, description=h.description) for h in hooks],
                dry_run=True,
            )

        results: list[HookResult] = []
        for hook in hooks:
            step = context.progress.advance()
            print(f"[multirepo] [{step}] {context.repo.name} {context.phase.value}: {hook.description}", file=sys.stderr)
            result = self._execute(hook, context, step=step)
            results.append(result)
            if result.status == HookStatus.FAILED:
                print(f"[multirepo] [{step}] failed: {result.error}", file=sys.stderr)
                break
        return HookRunOutcome(results=results)

    def _execute(self, hook: Hook, context: HookContext, *, step: int) -> HookResult:
        if isinstance(hook, TraitHook):
            return self._run_trait(hook, context, step=step)
        if isinstance(hook, CustomHook):
            if not hook.script.is_file():
                return self._failed(hook, step, error=f"custom script not found: {hook.script}")
            return self._spawn(hook, script_argv(hook.script), context, step=step, script=hook.script)
        if isinstance(hook, CommandHook):
            return self._spawn(hook, ["sh", "-c", hook.command], context, step=step)
        raise TypeError(f"Unsupported hook type: {type(hook).__name__}")

    def _run_trait(self, hook: TraitHook, context: HookContext, *, step: int) -> HookResult:
        if not hook.has_check_function:
            return self._spawn(hook, script_argv(hook.script), context, step=step, script=hook.script)

        module_name = "multirepo_trait_" + re.sub(r"\W", "_", f"{hook.trait}_{context.phase.value}")
        try:
            check = load_check_function(hook.script, module_name=module_name)
        except Exception as exc:
            return self._failed(hook, step, error=f"could not import {hook.script}: {type(exc).__name__}: {exc}")

        if check is None:
            warning = (
                f"trait '{hook.trait}' is marked as having a check function but {hook.script.name} "
                "defines no callable check(); running it as a script"
            )
            print(f"[multirepo] warning: {warning}", file=sys.stderr)
            result = self._spawn(hook, script_argv(hook.script), context, step=step, script=hook.script)
            return replace(result, warnings=[*result.warnings, warning], fallback=True)

        try:
            value = check(context)
            if inspect.isawaitable(value):
                value = asyncio.run(_drive(value))
        except SystemExit as exc:
            if exc.code not in (0, None):
                return self._failed(hook, step, error=f"check() exited with {exc.code}")
            value = None
        except Exception as exc:
            return self._failed(hook, step, error=f"check() raised {type(exc).__name__}: {exc}")
        if value is False:
            return self._failed(hook, step, error="check() returned False")
        return HookResult(hook=hook, status=HookStatus.SUCCEEDED, description=hook.description, step=step)

    def _spawn(
        self,
        hook: Hook,
        argv: list[str],
        context: HookContext,
        *,
        step: int,
        script: Path | None = None,
    ) -> HookResult:
        env = context.environ(script=script)
        try:
            code = self.process_runner.run(argv, cwd=context.cwd, env=env)
        except OSError as exc:
            return self._failed(hook, step, error=f"could not start {argv[0]}: {exc}")
        if code != 0:
            return self._failed(hook, step, error=f"exited with code {code}", exit_code=code)
        return HookResult(hook=hook, status=HookStatus.SUCCEEDED, description=hook.description, step=step, exit_code=0)

    @staticmethod
    def _failed(hook: Hook, step: int, *, error: str, exit_code: int | None = None) -> HookResult:
        return HookResult(
            hook=hook,
            status=HookStatus.FAILED,
            description=hook.description,
            step=step,
            exit_code=exit_code,
            error=error,
        )
