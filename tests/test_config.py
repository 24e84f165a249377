from __future__ import annotations

from pathlib import Path

import pytest

from multirepo.config import (
    CacheOptions,
    Phase,
    RepoDescriptor,
    SetupPaths,
    load_repos_config,
    normalize_traits,
    select_repositories,
)
from multirepo.errors import CacheOptionsError, RepositoryConfigError


def write_config(tmp_path: Path, text: str) -> Path:
    path = tmp_path / "repos.yaml"
    path.write_text(text, encoding="utf-8")
    return path


def test_load_repos_config_preserves_order_and_normalizes_fields(tmp_path: Path) -> None:
    path = write_config(
        tmp_path,
        "\n".join(
            [
                "repos:",
                "  web:",
                "    url: git@example.com:acme/web.git",
                "    traits: node",
                "    postClone: npm ci",
                "    owner: frontend",
                "  api:",
                "    url: git@example.com:acme/api.git",
                "    branch: develop",
                "    traits: [python, docker]",
                "    preClone: prepare.sh",
                "  scratch:",
                "",
            ]
        ),
    )

    repos = load_repos_config(path)

    assert [r.name for r in repos] == ["web", "api", "scratch"]
    web, api, scratch = repos
    assert web.traits == ["node"]
    assert web.post_clone == "npm ci"
    assert web.extra == {"owner": "frontend"}
    assert api.branch == "develop"
    assert api.hook_value(Phase.PRE_CLONE) == "prepare.sh"
    assert api.hook_value(Phase.POST_CLONE) is None
    assert scratch == RepoDescriptor(name="scratch")


@pytest.mark.parametrize(
    ("text", "message"),
    [
        ("repos: [unclosed\n", "Invalid YAML"),
        ("- a\n- b\n", "mapping"),
        ("other: 1\n", "No repositories"),
        ("repos:\n  - web\n", "must be a mapping"),
        ("repos:\n  'bad/name': {}\n", "Invalid repository name"),
        ("repos:\n  web: {traits: [1]}\n", "Trait names must be strings"),
        ("repos:\n  web: {postClone: [a, b]}\n", "postClone must be a string"),
        ("repos:\n  web: 3\n", "must be a mapping"),
    ],
)
def test_load_repos_config_rejects_malformed_documents(tmp_path: Path, text: str, message: str) -> None:
    with pytest.raises(RepositoryConfigError, match=message):
        load_repos_config(write_config(tmp_path, text))


def test_load_repos_config_missing_file(tmp_path: Path) -> None:
    with pytest.raises(RepositoryConfigError, match="not found"):
        load_repos_config(tmp_path / "nope.yaml")


@pytest.mark.parametrize(
    ("value", "expected"),
    [
        (None, []),
        ("node", ["node"]),
        ("", []),
        (["a", "b"], ["a", "b"]),
        ((), []),
    ],
)
def test_normalize_traits(value: object, expected: list[str]) -> None:
    assert normalize_traits(value) == expected


def test_select_repositories_keeps_configuration_order() -> None:
    repos = [RepoDescriptor(name=n) for n in ["a", "b", "c"]]

    assert [r.name for r in select_repositories(repos, ["c", "a"])] == ["a", "c"]
    assert select_repositories(repos, None) == repos
    with pytest.raises(RepositoryConfigError, match="Unknown repositories: x"):
        select_repositories(repos, ["a", "x"])


@pytest.mark.parametrize(
    ("options", "message"),
    [
        (CacheOptions(skip_cache=True, update_lock=True), "--skip-cache and --update-lock"),
        (CacheOptions(force_all=True, force_pre_clone=True), "--force-all cannot be used"),
        (CacheOptions(force_all=True, force_post_clone=True), "--force-all cannot be used"),
        (CacheOptions(dry_run=True, clear_lock=True), "dry-run"),
    ],
)
def test_cache_options_reject_contradictions(options: CacheOptions, message: str) -> None:
    assert any(message in e for e in options.validate())
    with pytest.raises(CacheOptionsError, match=message):
        options.ensure_valid()


def test_cache_options_forces_and_describe() -> None:
    assert CacheOptions().describe() == "smart caching enabled"
    assert CacheOptions().forces(Phase.PRE_CLONE) is False

    pre_only = CacheOptions(force_pre_clone=True, clear_lock=True)
    assert pre_only.forces(Phase.PRE_CLONE) is True
    assert pre_only.forces(Phase.POST_CLONE) is False
    assert pre_only.describe() == "force-preclone, clear-lock"

    assert CacheOptions(force_all=True).forces(Phase.POST_CLONE) is True
    assert CacheOptions(update_lock=True).forces(Phase.PRE_CLONE) is True
    assert CacheOptions(force_all=True, skip_cache=True).describe() == "force-all, skip-cache"


def test_setup_paths_resolve_relative_to_control_root(tmp_path: Path) -> None:
    elsewhere = tmp_path / "elsewhere" / "state.lock"

    paths = SetupPaths.from_root(tmp_path, lock_file=str(elsewhere), packages_dir="checkouts")

    assert paths.repos_file == (tmp_path / "repos.yaml").resolve()
    assert paths.lock_file == elsewhere.resolve()
    assert paths.repo_path("api") == (tmp_path / "checkouts" / "api").resolve()
