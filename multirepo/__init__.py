"""multirepo: trait-driven setup for a workspace made of many repositories.

This package implements a command-line tool (`multirepo.cli:main`, runnable via
`python -m multirepo`) that reads a `repos.yaml`, and for each declared repository runs its
pre-clone hooks, clones it into the packages directory, and runs its post-clone hooks.
Hooks come from reusable "traits" (directories of per-phase scripts that may depend on other
traits) plus an optional per-repository command or custom script.

What multirepo provides
- Trait resolution (`multirepo.traits`): depth-first expansion of trait dependencies into an
  ordered, de-duplicated hook list, with cycle detection.
- Hook execution (`multirepo.hooks`): sequential, fail-fast execution of in-process
  `check(context)` callbacks, external scripts and shell commands, with the repository
  context injected as `MULTIREPO_*` environment variables.
- Change detection (`multirepo.cache`) backed by a lock store (`multirepo.lockfile`,
  default `multirepo.lock`): a phase is skipped only when the configuration, the trait
  scripts, the custom script, and (after cloning) the repository content and dependency
  manifests are all unchanged since the phase last succeeded.
- An orchestrator (`multirepo.orchestrator.SetupOrchestrator`) that drives the phases and
  reports per-repository outcomes, and a dry-run plan / summary renderer (`multirepo.render`).

What multirepo intentionally does not do
- Validate a project's structure itself; that is what trait scripts are for.
- Retry failed hooks or run repositories in parallel.
- Prompt interactively; repository selection is done with `--only`.

Key exports from this module
- `__version__`: the package version string. (`__all__` is intentionally limited to this.)

Important invariants and conventions
- A pre-clone failure aborts the whole run; a post-clone failure only affects its repository.
- The lock file is rewritten atomically and a malformed lock file is an error, never reset
  silently.
- Phase identifiers are `preClone` and `postClone` everywhere: trait script names, the
  `MULTIREPO_PHASE` variable and lock file keys.
"""

from __future__ import annotations

__all__ = ["__version__"]

__version__ = "0.1.0"
