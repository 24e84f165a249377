"""Reporting for multirepo runs.

Two views of a `SetupReport` are produced:

- `render_plan(report)`: the dry-run execution plan, as YAML. One entry per repository, in
  run order, with its traits, whether it uses custom scripts, and for each phase the cache
  decision and the hooks that would run. The acquisition step shows the operation that
  would be performed (`clone`, `use-existing` or `create`), its source and destination.
- `render_summary(report)`: the plain-text end-of-run summary: executed / cached / failed
  counts per phase, the failures that need attention with their context, and the overall
  success rate over the phases that were attempted.
"""

from __future__ import annotations

from typing import Any

import yaml

from .config import Phase
from .git_ops import AcquisitionKind
from .orchestrator import PhaseReport, PhaseStatus, RepoReport, SetupReport

_OPERATIONS = {
    AcquisitionKind.CLONED: "clone",
    AcquisitionKind.EXISTING: "use-existing",
    AcquisitionKind.CREATED: "create",
}


def _phase_view(phase: PhaseReport) -> dict[str, Any]:
    view: dict[str, Any] = {"status": phase.status.value}
    if phase.reason:
        view["reason"] = phase.reason
    if phase.status != PhaseStatus.CACHED:
        view["hooks"] = list(phase.hooks)
    if phase.error:
        view["error"] = phase.error
    if phase.warnings:
        view["warnings"] = list(phase.warnings)
    return view


def _repo_view(entry: RepoReport) -> dict[str, Any]:
    repo = entry.repo
    view: dict[str, Any] = {
        "name": repo.name,
        "traits": list(repo.traits),
        "customScripts": {
            "preClone": bool(repo.pre_clone),
            "postClone": bool(repo.post_clone),
        },
        Phase.PRE_CLONE.value: _phase_view(entry.pre_clone),
    }
    if entry.acquisition is not None:
        view["acquisition"] = {
            "operation": _OPERATIONS[entry.acquisition.kind],
            "source": entry.acquisition.source,
            "destination": str(entry.acquisition.path),
        }
    view[Phase.POST_CLONE.value] = _phase_view(entry.post_clone)
    return view


def render_plan(report: SetupReport) -> str:
    plan = {
        "dryRun": report.dry_run,
        "repositories": [_repo_view(entry) for entry in report.repos],
    }
    return yaml.safe_dump(plan, sort_keys=False, default_flow_style=False)


def render_summary(report: SetupReport) -> str:
    lines = ["# multirepo setup summary", ""]
    attempted = succeeded = 0
    for phase in Phase:
        executed = report.count(phase, PhaseStatus.EXECUTED)
        cached = report.count(phase, PhaseStatus.CACHED)
        failed = report.count(phase, PhaseStatus.FAILED)
        attempted += executed + cached + failed
        succeeded += executed + cached
        lines.append(f"- {phase.value}: {executed} executed, {cached} cached, {failed} failed")

    failures: list[str] = []
    for entry in report.repos:
        for phase in Phase:
            result = entry.phase(phase)
            if result.status == PhaseStatus.FAILED:
                failures.append(f"- {entry.repo.name} {phase.value}: {result.error}")
        if entry.acquisition_error is not None:
            failures.append(f"- {entry.repo.name} acquisition: {entry.acquisition_error}")

    if failures:
        lines += ["", "## Needs attention", *failures]
    if report.aborted:
        lines += ["", "Setup aborted after a preClone failure; later steps were not run."]
    if report.interrupted:
        lines += ["", "Setup interrupted."]

    rate = round(succeeded * 100 / attempted) if attempted else 100
    lines += ["", f"Success rate: {rate}% ({succeeded}/{attempted} phases)"]
    return "\n".join(lines) + "\n"
