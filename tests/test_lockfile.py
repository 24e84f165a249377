from __future__ import annotations

import hashlib
import json
import os
from pathlib import Path

import pytest

from multirepo import lockfile
from multirepo.errors import CacheIntegrityError, LockStoreParseError
from multirepo.lockfile import CacheRecord, CacheStatus, LockStore, hash_directory, hash_file


def test_missing_lock_file_loads_as_empty_store(tmp_path: Path) -> None:
    store = LockStore(tmp_path / "multirepo.lock").load()

    assert store.repositories == {}
    assert store.global_checksums.repos_yaml is None
    assert store.version == "1.0.0"
    assert store.validate() == []


@pytest.mark.parametrize(
    "content",
    [
        "{not json",
        "[]",
        '{"repositories": []}',
        '{"repositories": {"a": 1}}',
        '{"globalChecksums": "nope"}',
    ],
)
def test_malformed_lock_file_is_fatal_and_left_untouched(tmp_path: Path, content: str) -> None:
    path = tmp_path / "multirepo.lock"
    path.write_text(content, encoding="utf-8")

    with pytest.raises(LockStoreParseError):
        LockStore(path).load()

    assert path.read_text(encoding="utf-8") == content


def test_round_trip_preserves_records_and_unknown_keys(tmp_path: Path) -> None:
    path = tmp_path / "multirepo.lock"
    doc = {
        "version": "1.0.0",
        "generated": "2026-01-01T00:00:00+00:00",
        "owner": "platform-team",
        "repositories": {
            "api": {
                "preCloneStatus": "success",
                "preCloneTimestamp": "2026-01-01T00:00:00+00:00",
                "postCloneStatus": "failed",
                "postCloneTimestamp": None,
                "contentChecksum": "abc",
                "dependencyFiles": {"package.json": "def"},
                "customScripts": {"postClone": "123"},
                "traits": ["node"],
                "lastProcessed": None,
                "inputs": {"preClone": {"reposYaml": "y", "traitScripts": {"node/preClone.py": "n"}}},
                "hooks": {"legacy": True},
            }
        },
        "globalChecksums": {"reposYaml": "y", "traitScripts": {"node/config.yaml": "c"}},
    }
    path.write_text(json.dumps(doc), encoding="utf-8")

    store = LockStore(path).load()
    record = store.get("api")
    assert record is not None
    assert record.pre_clone_status == CacheStatus.SUCCESS
    assert record.post_clone_status == CacheStatus.FAILED
    assert record.dependency_files == {"package.json": "def"}
    assert record.extra == {"hooks": {"legacy": True}}

    store.save()
    saved = json.loads(path.read_text(encoding="utf-8"))
    assert saved["owner"] == "platform-team"
    assert saved["repositories"]["api"]["hooks"] == {"legacy": True}
    assert saved["repositories"]["api"]["inputs"] == doc["repositories"]["api"]["inputs"]  # type: ignore[index]
    assert saved["globalChecksums"] == doc["globalChecksums"]
    assert path.read_text(encoding="utf-8").endswith("\n")


def test_unknown_status_values_fall_back_to_unknown() -> None:
    record = CacheRecord.from_dict({"preCloneStatus": "weird", "postCloneStatus": None})

    assert record.pre_clone_status == CacheStatus.UNKNOWN
    assert record.post_clone_status == CacheStatus.UNKNOWN


def test_set_merges_into_existing_record(tmp_path: Path) -> None:
    store = LockStore(tmp_path / "multirepo.lock").load()

    store.set("api", pre_clone_status=CacheStatus.SUCCESS, traits=["node"])
    record = store.set("api", post_clone_status=CacheStatus.FAILED)

    assert record.pre_clone_status == CacheStatus.SUCCESS
    assert record.post_clone_status == CacheStatus.FAILED
    assert record.traits == ["node"]
    assert record.last_processed is not None
    with pytest.raises(KeyError, match="bogus"):
        store.set("api", bogus=1)


def test_save_is_atomic_and_leaves_no_temp_file(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    path = tmp_path / "multirepo.lock"
    store = LockStore(path).load()
    store.set("api", pre_clone_status=CacheStatus.SUCCESS)
    store.save()
    before = path.read_text(encoding="utf-8")
    assert not (tmp_path / "multirepo.lock.tmp").exists()

    def boom(src: object, dst: object) -> None:
        raise OSError("disk full")

    monkeypatch.setattr(lockfile.os, "replace", boom)
    store.set("web", pre_clone_status=CacheStatus.FAILED)
    with pytest.raises(OSError, match="disk full"):
        store.save()

    assert path.read_text(encoding="utf-8") == before


def test_prune_remove_and_stats(tmp_path: Path) -> None:
    store = LockStore(tmp_path / "multirepo.lock").load()
    for name in ["a", "b", "c"]:
        store.set(name, traits=[])
    store.update_global(repos_yaml="y", trait_scripts={"t/config.yaml": "1", "t/preClone.py": "2"})
    store.update_global(trait_scripts={"t/preClone.py": None})

    assert store.prune(["a", "c"]) == ["b"]
    assert store.remove("c") is True
    assert store.remove("c") is False
    stats = store.stats()
    assert (stats.repositories, stats.trait_scripts) == (1, 1)
    assert store.global_checksums.repos_yaml == "y"


def test_clear_deletes_file(tmp_path: Path) -> None:
    path = tmp_path / "multirepo.lock"
    store = LockStore(path).load()
    store.set("a")
    store.save()

    assert store.clear() is True
    assert not path.exists()
    assert store.repositories == {}
    assert store.clear() is False


def test_validate_reports_structural_gaps(tmp_path: Path) -> None:
    path = tmp_path / "multirepo.lock"
    path.write_text(json.dumps({"version": "0.9", "repositories": {}}), encoding="utf-8")

    problems = LockStore(path).load().validate()

    assert "unsupported version '0.9' (expected 1.0.0)" in problems
    assert "missing generated timestamp" in problems
    assert "missing globalChecksums section" in problems


def test_hash_file(tmp_path: Path) -> None:
    f = tmp_path / "a.txt"
    f.write_bytes(b"hello")

    assert hash_file(f) == hashlib.sha256(b"hello").hexdigest()
    assert hash_file(tmp_path / "missing.txt") is None
    with pytest.raises(CacheIntegrityError):
        hash_file(tmp_path)


def _populate(root: Path, files: dict[str, str]) -> None:
    for rel, content in files.items():
        p = root / rel
        p.parent.mkdir(parents=True, exist_ok=True)
        p.write_text(content, encoding="utf-8")


def test_hash_directory_is_independent_of_creation_order(tmp_path: Path) -> None:
    files = {"src/main.py": "print(1)\n", "README.md": "hi\n", "src/util/x.py": "x = 1\n"}
    first = tmp_path / "first"
    second = tmp_path / "second"
    _populate(first, files)
    _populate(second, dict(reversed(list(files.items()))))

    assert hash_directory(first) == hash_directory(second)
    assert hash_directory(first) is not None


def test_hash_directory_ignores_noise_but_sees_content(tmp_path: Path) -> None:
    repo = tmp_path / "repo"
    _populate(repo, {"src/app.py": "a\n"})
    baseline = hash_directory(repo)

    _populate(
        repo,
        {
            "node_modules/pkg/index.js": "x",
            ".git/HEAD": "ref",
            "debug.log": "noise",
            "src/__pycache__/app.pyc": "bytes",
            "build/out.txt": "artifact",
        },
    )
    assert hash_directory(repo) == baseline

    _populate(repo, {"builder.py": "kept\n"})
    with_new_file = hash_directory(repo)
    assert with_new_file != baseline

    _populate(repo, {"src/app.py": "b\n"})
    assert hash_directory(repo) != with_new_file


def test_hash_directory_missing_or_empty_is_none(tmp_path: Path) -> None:
    (tmp_path / "empty").mkdir()
    _populate(tmp_path / "noise", {"x.log": "1"})

    assert hash_directory(tmp_path / "nope") is None
    assert hash_directory(tmp_path / "empty") is None
    assert hash_directory(tmp_path / "noise") is None


def test_hash_directory_propagates_unreadable_files(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    _populate(tmp_path / "repo", {"a.txt": "1"})

    def unreadable(path: Path) -> str | None:
        raise CacheIntegrityError(path=path, reason="Permission denied")

    monkeypatch.setattr(lockfile, "hash_file", unreadable)

    with pytest.raises(CacheIntegrityError, match="Permission denied"):
        hash_directory(tmp_path / "repo")


def test_hash_directory_sees_repointed_directory_links(tmp_path: Path) -> None:
    repo = tmp_path / "repo"
    _populate(repo, {"app.py": "a\n"})
    _populate(tmp_path, {"prod/settings.ini": "env=prod\n", "dev/settings.ini": "env=dev\n"})
    without_link = hash_directory(repo)

    (repo / "config").symlink_to(tmp_path / "prod", target_is_directory=True)
    to_prod = hash_directory(repo)
    (repo / "config").unlink()
    (repo / "config").symlink_to(tmp_path / "dev", target_is_directory=True)
    to_dev = hash_directory(repo)

    assert len({without_link, to_prod, to_dev}) == 3


def test_hash_directory_does_not_follow_directory_links(tmp_path: Path) -> None:
    repo = tmp_path / "repo"
    _populate(repo, {"app.py": "a\n"})
    _populate(tmp_path, {"shared/big.bin": "1"})
    (repo / "shared").symlink_to(tmp_path / "shared", target_is_directory=True)
    before = hash_directory(repo)

    _populate(tmp_path, {"shared/big.bin": "2"})

    assert hash_directory(repo) == before


@pytest.mark.skipif(not hasattr(os, "mkfifo"), reason="named pipes not available")
def test_special_files_are_rejected_instead_of_read(tmp_path: Path) -> None:
    repo = tmp_path / "repo"
    _populate(repo, {"app.py": "a\n"})
    os.mkfifo(repo / "events.pipe")

    with pytest.raises(CacheIntegrityError, match="not a regular file"):
        hash_file(repo / "events.pipe")
    with pytest.raises(CacheIntegrityError, match="not a regular file"):
        hash_directory(repo)


def test_dangling_link_is_an_integrity_error(tmp_path: Path) -> None:
    link = tmp_path / "gone.txt"
    link.symlink_to(tmp_path / "missing-target.txt")

    with pytest.raises(CacheIntegrityError, match="dangling symlink"):
        hash_file(link)
