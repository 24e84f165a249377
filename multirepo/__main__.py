"""Module entrypoint for ``python -m multirepo``.

Running ``python -m multirepo ...`` executes this module, a thin wrapper around
:func:`multirepo.cli.main`. It raises ``SystemExit(main())`` so that the CLI return code is
used as the process exit status. This is equivalent to the ``multirepo`` console script.

Inputs
------
- Command-line arguments (see ``python -m multirepo --help``).
- ``MULTIREPO_CONTROL_ROOT``: directory that relative paths are resolved against
  (default: the current working directory).
- On-disk state under the control root: ``repos.yaml``, ``traits/``, ``custom/`` and
  ``multirepo.lock``.

Outputs and side effects
------------------------
- Progress lines on stderr, prefixed with ``[multirepo]``; hook output is passed through.
- The run summary (or, with ``--dry-run``, the YAML execution plan) on stdout.
- Repositories cloned or created under ``packages/``, and ``multirepo.lock`` updated.
"""

from __future__ import annotations

from .cli import main

if __name__ == "__main__":
    raise SystemExit(main())
