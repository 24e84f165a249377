"""multirepo.cli

Command-line entrypoint for multirepo, which sets up a collection of repositories from a
single `repos.yaml`:
1) runs each repository's pre-clone hooks,
2) clones (or creates) each repository under the packages directory,
3) runs each repository's post-clone hooks,
skipping any phase whose inputs are unchanged since it last succeeded (`multirepo.lock`).

Entry points
- `multirepo.cli:main`
- `python3 -m multirepo ...` (delegates to this module)

Flags (surface area)
- `--config <path>`: repository configuration (default: `repos.yaml`).
- `--packages-dir <path>`: where repositories are checked out (default: `packages`).
- `--traits-dir <path>` / `--custom-dir <path>`: trait and custom script roots
  (defaults: `traits`, `custom`).
- `--lock-file <path>`: lock store location (default: `multirepo.lock`).
- `--only <name>[,<name>...]`: restrict the run to the named repositories (repeatable).
- `--dry-run`: print the execution plan as YAML; nothing is cloned, executed or written.
- Cache control:
  - `--force-preclone` / `--force-postclone`: always run that phase.
  - `--force-all`: always run both phases.
  - `--skip-cache`: ignore the lock file entirely; nothing is read for decisions or written.
  - `--update-lock`: run every phase and rebuild the lock records from scratch, dropping
    records of repositories that are no longer configured.
  - `--clear-lock`: delete the lock file before starting.
  Contradictory combinations (`--skip-cache` with `--update-lock`, `--force-all` with a
  phase force flag, `--clear-lock` with `--dry-run`) are rejected before any work starts.

Control root and path resolution
All relative paths are resolved against the control root: `$MULTIREPO_CONTROL_ROOT` when
set, otherwise the current working directory.

Exit status
- 0: every selected repository completed (or was skipped as cached).
- 1: a repository failed, a pre-clone failure aborted the run, or the configuration or
  lock file could not be read.
- 2: invalid arguments or cache flag combination.
- 130: interrupted (SIGINT or SIGTERM); the lock file is still saved.
"""

from __future__ import annotations

import argparse
import signal
import sys
from typing import Any

from .cache import CacheManager
from .config import (
    CacheOptions,
    SetupPaths,
    control_root_from_env,
    load_repos_config,
    select_repositories,
)
from .errors import LockStoreParseError, RepositoryConfigError, SetupAborted
from .git_ops import DryRunGitClient, GitClient
from .hooks import HookRunner
from .lockfile import LockStore
from .orchestrator import SetupConfig, SetupOrchestrator
from .render import render_plan, render_summary
from .traits import TraitResolver


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="multirepo", description="Set up a multi-repository workspace from repos.yaml.")
    p.add_argument("--config", default="repos.yaml", help="Repository configuration file (default: ./repos.yaml).")
    p.add_argument("--packages-dir", default="packages", help="Checkout directory (default: ./packages).")
    p.add_argument("--traits-dir", default="traits", help="Trait definitions directory (default: ./traits).")
    p.add_argument("--custom-dir", default="custom", help="Per-repository custom scripts (default: ./custom).")
    p.add_argument("--lock-file", default="multirepo.lock", help="Lock file path (default: ./multirepo.lock).")
    p.add_argument(
        "--only",
        action="append",
        default=None,
        metavar="NAME[,NAME]",
        help="Only set up the named repositories. May be repeated.",
    )
    p.add_argument("--dry-run", action="store_true", help="Show the execution plan without changing anything.")

    cache = p.add_argument_group("cache control")
    cache.add_argument("--force-preclone", action="store_true", help="Always run preClone hooks.")
    cache.add_argument("--force-postclone", action="store_true", help="Always run postClone hooks.")
    cache.add_argument("--force-all", action="store_true", help="Always run every phase.")
    cache.add_argument("--skip-cache", action="store_true", help="Ignore the lock file entirely.")
    cache.add_argument("--update-lock", action="store_true", help="Run every phase and rebuild the lock records.")
    cache.add_argument("--clear-lock", action="store_true", help="Delete the lock file before starting.")
    return p


def _split_names(values: list[str] | None) -> list[str] | None:
    if values is None:
        return None
    return [name.strip() for value in values for name in value.split(",") if name.strip()]


def _raise_interrupt(signum: int, frame: Any) -> None:
    raise KeyboardInterrupt(f"signal {signum}")


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(list(sys.argv[1:] if argv is None else argv))

    options = CacheOptions(
        force_pre_clone=bool(args.force_preclone),
        force_post_clone=bool(args.force_postclone),
        force_all=bool(args.force_all),
        skip_cache=bool(args.skip_cache),
        update_lock=bool(args.update_lock),
        clear_lock=bool(args.clear_lock),
        dry_run=bool(args.dry_run),
    )
    errors = options.validate()
    if errors:
        for error in errors:
            print(f"[multirepo] error: {error}", file=sys.stderr)
        return 2

    paths = SetupPaths.from_root(
        control_root_from_env(),
        repos_file=args.config,
        packages_dir=args.packages_dir,
        traits_dir=args.traits_dir,
        custom_dir=args.custom_dir,
        lock_file=args.lock_file,
    )
    try:
        configured = load_repos_config(paths.repos_file)
        repos = select_repositories(configured, _split_names(args.only))
    except RepositoryConfigError as exc:
        print(f"[multirepo] error: {exc}", file=sys.stderr)
        return 1

    resolver = TraitResolver(traits_dir=paths.traits_dir, custom_dir=paths.custom_dir)
    cache = CacheManager(store=LockStore(paths.lock_file), options=options, paths=paths, resolver=resolver)
    try:
        cache.initialize()
    except LockStoreParseError as exc:
        print(f"[multirepo] error: {exc}", file=sys.stderr)
        print("[multirepo] fix or remove the lock file, or rerun with --clear-lock", file=sys.stderr)
        return 1

    git = DryRunGitClient(control_root=paths.control_root) if options.dry_run else GitClient(control_root=paths.control_root)
    cfg = SetupConfig(
        paths=paths,
        options=options,
        resolver=resolver,
        hook_runner=HookRunner(),
        cache=cache,
        git=git,
    )
    orch = SetupOrchestrator(cfg)

    print(f"[multirepo] setting up {len(repos)} repositories ({options.describe()})", file=sys.stderr)
    previous = signal.signal(signal.SIGTERM, _raise_interrupt)
    try:
        report = orch.run(repos, configured=configured)
    except SetupAborted as exc:
        print(render_summary(exc.report), end="")
        print(f"[multirepo] error: {exc.cause}", file=sys.stderr)
        return 1
    except KeyboardInterrupt:
        print("[multirepo] interrupted", file=sys.stderr)
        return 130
    finally:
        signal.signal(signal.SIGTERM, previous if previous is not None else signal.SIG_DFL)

    print(render_plan(report) if report.dry_run else render_summary(report), end="")
    return 0 if report.success else 1
