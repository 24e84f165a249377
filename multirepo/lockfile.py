"""Lock store: the persisted evidence behind change detection (`multirepo.lock`).

The lock file is a single JSON document owned by multirepo:

    {
      "version": "1.0.0",
      "generated": "<ISO-8601 timestamp>",
      "repositories": {
        "<repo name>": {
          "preCloneStatus": "success" | "failed" | "unknown",
          "preCloneTimestamp": "<ISO-8601>" | null,
          "postCloneStatus": ...,
          "postCloneTimestamp": ...,
          "contentChecksum": "<sha256 hex>" | null,
          "dependencyFiles": {"<manifest name>": "<sha256 hex>"},
          "customScripts": {"preClone" | "postClone": "<sha256 hex>"},
          "traits": ["<trait>", ...],
          "lastProcessed": "<ISO-8601>" | null,
          "inputs": {"<phase>": {"reposYaml": "<sha256 hex>", "traitScripts": {...}}}
        }
      },
      "globalChecksums": {
        "reposYaml": "<sha256 hex>" | null,
        "traitScripts": {"<trait>/<phase>.py": "<sha256 hex>", "<trait>/config.yaml": "..."}
      }
    }

`inputs` snapshots, per phase, the configuration and trait-script hashes a phase last ran
against. `globalChecksums` holds the most recent values seen by any repository.

Parsing follows the same forgiving-but-lossless rules as the rest of the package: known
keys are coerced into dataclass fields, unknown keys are kept in `extra` and written back
on save. A document that is not valid JSON, or whose top-level shape is wrong, is not
silently reset: `LockStoreParseError` is raised so the operator decides what to do.

Persistence is atomic: the document is written to `<lock>.tmp` and moved into place with
`os.replace`, so an interrupted save leaves the previous file intact.

Hashing primitives
- `hash_file(path)`: SHA-256 hex of the content, `None` when the file does not exist.
- `hash_directory(path)`: SHA-256 over the sorted `"<relpath>:<file hash>"` entries of
  every non-excluded file, joined with `|`. Paths use forward slashes so the digest does not
  depend on the platform or on traversal order. `None` for a missing or empty directory.
  Symlinks, to files or to directories, are recorded by their target and never followed.
Both raise `CacheIntegrityError` when something exists but cannot be read or is not a
regular file (FIFOs, sockets, devices).
"""

from __future__ import annotations

import fnmatch
import hashlib
import json
import os
import stat
from dataclasses import dataclass, field, fields, replace
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Iterable, Mapping

from .errors import CacheIntegrityError, LockStoreParseError

LOCK_VERSION = "1.0.0"

EXCLUDED_NAMES = (
    ".git",
    "node_modules",
    "vendor",
    ".idea",
    ".vscode",
    "dist",
    "build",
    "coverage",
    ".DS_Store",
    "Thumbs.db",
    "*.log",
    "*.tmp",
    ".env",
    ".cache",
    "__pycache__",
    ".venv",
)

DEPENDENCY_MANIFESTS = (
    "package.json",
    "package-lock.json",
    "yarn.lock",
    "pnpm-lock.yaml",
    "composer.json",
    "composer.lock",
    "requirements.txt",
    "Pipfile.lock",
    "Gemfile.lock",
    "go.mod",
    "go.sum",
    "pyproject.toml",
    "poetry.lock",
    "uv.lock",
)

_CHUNK = 64 * 1024


def utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


class CacheStatus(str, Enum):
    UNKNOWN = "unknown"
    SUCCESS = "success"
    FAILED = "failed"


def _status(raw: Any) -> CacheStatus:
    if raw is None:
        return CacheStatus.UNKNOWN
    try:
        return CacheStatus(str(raw))
    except ValueError:
        return CacheStatus.UNKNOWN


def _opt_str(raw: Any) -> str | None:
    return str(raw) if raw is not None else None


def _str_map(raw: Any) -> dict[str, str]:
    if not isinstance(raw, dict):
        return {}
    return {str(k): str(v) for k, v in raw.items() if v is not None}


def _inputs(raw: Any) -> dict[str, dict[str, Any]]:
    if not isinstance(raw, dict):
        return {}
    return {str(k): dict(v) for k, v in raw.items() if isinstance(v, dict)}


_RECORD_KEYS = {
    "preCloneStatus": "pre_clone_status",
    "preCloneTimestamp": "pre_clone_timestamp",
    "postCloneStatus": "post_clone_status",
    "postCloneTimestamp": "post_clone_timestamp",
    "contentChecksum": "content_checksum",
    "dependencyFiles": "dependency_files",
    "customScripts": "custom_scripts",
    "traits": "traits",
    "lastProcessed": "last_processed",
    "inputs": "inputs",
}


@dataclass
class CacheRecord:
    pre_clone_status: CacheStatus = CacheStatus.UNKNOWN
    pre_clone_timestamp: str | None = None
    post_clone_status: CacheStatus = CacheStatus.UNKNOWN
    post_clone_timestamp: str | None = None
    content_checksum: str | None = None
    dependency_files: dict[str, str] = field(default_factory=dict)
    custom_scripts: dict[str, str] = field(default_factory=dict)
    traits: list[str] = field(default_factory=list)
    last_processed: str | None = None
    inputs: dict[str, dict[str, Any]] = field(default_factory=dict)
    extra: dict[str, Any] = field(default_factory=dict, repr=False)

    def status_for(self, phase: str) -> CacheStatus:
        return self.pre_clone_status if phase == "preClone" else self.post_clone_status

    @staticmethod
    def from_dict(d: Mapping[str, Any]) -> "CacheRecord":
        known: dict[str, Any] = {}
        extra: dict[str, Any] = {}
        for k, v in d.items():
            if k in _RECORD_KEYS:
                known[_RECORD_KEYS[k]] = v
            else:
                extra[k] = v

        traits_raw = known.get("traits")
        return CacheRecord(
            pre_clone_status=_status(known.get("pre_clone_status")),
            pre_clone_timestamp=_opt_str(known.get("pre_clone_timestamp")),
            post_clone_status=_status(known.get("post_clone_status")),
            post_clone_timestamp=_opt_str(known.get("post_clone_timestamp")),
            content_checksum=_opt_str(known.get("content_checksum")),
            dependency_files=_str_map(known.get("dependency_files")),
            custom_scripts=_str_map(known.get("custom_scripts")),
            traits=[str(t) for t in traits_raw] if isinstance(traits_raw, list) else [],
            last_processed=_opt_str(known.get("last_processed")),
            inputs=_inputs(known.get("inputs")),
            extra=extra,
        )

    def to_dict(self) -> dict[str, Any]:
        d: dict[str, Any] = {
            "preCloneStatus": self.pre_clone_status.value,
            "preCloneTimestamp": self.pre_clone_timestamp,
            "postCloneStatus": self.post_clone_status.value,
            "postCloneTimestamp": self.post_clone_timestamp,
            "contentChecksum": self.content_checksum,
            "dependencyFiles": dict(self.dependency_files),
            "customScripts": dict(self.custom_scripts),
            "traits": list(self.traits),
            "lastProcessed": self.last_processed,
            "inputs": {phase: dict(snapshot) for phase, snapshot in self.inputs.items()},
        }
        d.update(self.extra)
        return d


@dataclass
class GlobalChecksums:
    repos_yaml: str | None = None
    trait_scripts: dict[str, str] = field(default_factory=dict)
    extra: dict[str, Any] = field(default_factory=dict, repr=False)

    @staticmethod
    def from_dict(d: Mapping[str, Any]) -> "GlobalChecksums":
        extra = {k: v for k, v in d.items() if k not in {"reposYaml", "traitScripts"}}
        return GlobalChecksums(
            repos_yaml=_opt_str(d.get("reposYaml")),
            trait_scripts=_str_map(d.get("traitScripts")),
            extra=extra,
        )

    def to_dict(self) -> dict[str, Any]:
        d: dict[str, Any] = {"reposYaml": self.repos_yaml, "traitScripts": dict(self.trait_scripts)}
        d.update(self.extra)
        return d


@dataclass(frozen=True)
class LockStats:
    repositories: int
    trait_scripts: int
    version: str
    generated: str | None


class LockStore:
    def __init__(self, path: Path) -> None:
        self.path = path
        self.version = LOCK_VERSION
        self.generated: str | None = None
        self.repositories: dict[str, CacheRecord] = {}
        self.global_checksums = GlobalChecksums()
        self.extra: dict[str, Any] = {}
        self._raw: dict[str, Any] = {}

    def load(self) -> "LockStore":
        self.version = LOCK_VERSION
        self.generated = utc_now()
        self.repositories = {}
        self.global_checksums = GlobalChecksums()
        self.extra = {}
        self._raw = {}
        if not self.path.exists():
            return self

        try:
            raw = json.loads(self.path.read_text(encoding="utf-8"))
        except json.JSONDecodeError as exc:
            raise LockStoreParseError(path=self.path, reason=f"invalid JSON ({exc})") from exc
        except (OSError, UnicodeDecodeError) as exc:
            raise LockStoreParseError(path=self.path, reason=str(exc)) from exc

        if not isinstance(raw, dict):
            raise LockStoreParseError(path=self.path, reason=f"expected a JSON object, got {type(raw).__name__}")
        repos = raw.get("repositories", {})
        if repos is None:
            repos = {}
        if not isinstance(repos, dict) or not all(isinstance(v, dict) for v in repos.values()):
            raise LockStoreParseError(path=self.path, reason="'repositories' must map names to objects")
        global_raw = raw.get("globalChecksums", {})
        if global_raw is None:
            global_raw = {}
        if not isinstance(global_raw, dict):
            raise LockStoreParseError(path=self.path, reason="'globalChecksums' must be an object")

        self._raw = raw
        self.version = str(raw.get("version") or LOCK_VERSION)
        self.generated = _opt_str(raw.get("generated"))
        self.repositories = {str(name): CacheRecord.from_dict(rec) for name, rec in repos.items()}
        self.global_checksums = GlobalChecksums.from_dict(global_raw)
        self.extra = {
            k: v for k, v in raw.items() if k not in {"version", "generated", "repositories", "globalChecksums"}
        }
        return self

    def to_dict(self) -> dict[str, Any]:
        d: dict[str, Any] = {
            "version": self.version,
            "generated": self.generated,
            "repositories": {name: rec.to_dict() for name, rec in self.repositories.items()},
            "globalChecksums": self.global_checksums.to_dict(),
        }
        d.update(self.extra)
        return d

    def save(self) -> None:
        self.generated = utc_now()
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self.path.with_name(self.path.name + ".tmp")
        tmp.write_text(json.dumps(self.to_dict(), indent=2, ensure_ascii=True) + "\n", encoding="utf-8")
        os.replace(tmp, self.path)

    def clear(self) -> bool:
        """Delete the lock file. Returns whether a file was removed."""
        existed = self.path.exists()
        if existed:
            self.path.unlink()
        self.load()
        return existed

    def get(self, repo_name: str) -> CacheRecord | None:
        return self.repositories.get(repo_name)

    def set(self, repo_name: str, **changes: Any) -> CacheRecord:
        valid = {f.name for f in fields(CacheRecord)}
        unknown = set(changes) - valid
        if unknown:
            raise KeyError(f"Unknown cache record fields: {sorted(unknown)}")
        current = self.repositories.get(repo_name) or CacheRecord()
        updated = replace(current, **{**changes, "last_processed": utc_now()})
        self.repositories[repo_name] = updated
        return updated

    def put(self, repo_name: str, record: CacheRecord) -> None:
        self.repositories[repo_name] = replace(record, last_processed=utc_now())

    def remove(self, repo_name: str) -> bool:
        return self.repositories.pop(repo_name, None) is not None

    def prune(self, keep: Iterable[str]) -> list[str]:
        keep_set = set(keep)
        dropped = [name for name in self.repositories if name not in keep_set]
        for name in dropped:
            del self.repositories[name]
        return dropped

    def update_global(self, *, repos_yaml: str | None = None, trait_scripts: Mapping[str, str | None] | None = None) -> None:
        if repos_yaml is not None:
            self.global_checksums.repos_yaml = repos_yaml
        for key, value in (trait_scripts or {}).items():
            if value is None:
                self.global_checksums.trait_scripts.pop(key, None)
            else:
                self.global_checksums.trait_scripts[key] = value

    def stats(self) -> LockStats:
        return LockStats(
            repositories=len(self.repositories),
            trait_scripts=len(self.global_checksums.trait_scripts),
            version=self.version,
            generated=self.generated,
        )

    def validate(self) -> list[str]:
        """Structural problems in the document as last loaded (empty when healthy)."""
        if not self._raw:
            return []
        errors: list[str] = []
        if "version" not in self._raw:
            errors.append("missing version field")
        elif str(self._raw["version"]) != LOCK_VERSION:
            errors.append(f"unsupported version {self._raw['version']!r} (expected {LOCK_VERSION})")
        if "generated" not in self._raw:
            errors.append("missing generated timestamp")
        if "repositories" not in self._raw:
            errors.append("missing repositories section")
        if "globalChecksums" not in self._raw:
            errors.append("missing globalChecksums section")
        return errors


def hash_file(path: Path) -> str | None:
    try:
        st = path.stat()
    except FileNotFoundError:
        if not path.is_symlink():
            return None
        raise CacheIntegrityError(path=path, reason="dangling symlink")
    except OSError as exc:
        raise CacheIntegrityError(path=path, reason=exc.strerror or str(exc)) from exc
    # Opening a FIFO or device would block or never end.
    if not stat.S_ISREG(st.st_mode):
        raise CacheIntegrityError(path=path, reason="not a regular file")
    h = hashlib.sha256()
    try:
        with open(path, "rb") as f:
            for chunk in iter(lambda: f.read(_CHUNK), b""):
                h.update(chunk)
    except OSError as exc:
        raise CacheIntegrityError(path=path, reason=exc.strerror or str(exc)) from exc
    return h.hexdigest()


def _link_digest(path: Path) -> str:
    try:
        target = os.readlink(path)
    except OSError as exc:
        raise CacheIntegrityError(path=path, reason=exc.strerror or str(exc)) from exc
    return hashlib.sha256(target.encode("utf-8")).hexdigest()


def is_excluded(name: str, patterns: Iterable[str] = EXCLUDED_NAMES) -> bool:
    for pattern in patterns:
        if "*" in pattern or "?" in pattern:
            if fnmatch.fnmatchcase(name, pattern):
                return True
        elif name == pattern:
            return True
    return False


def hash_directory(path: Path, *, exclude: Iterable[str] = EXCLUDED_NAMES) -> str | None:
    if not path.is_dir():
        return None
    patterns = tuple(exclude)

    def fail(exc: OSError) -> None:
        raise CacheIntegrityError(path=Path(exc.filename or path), reason=exc.strerror or str(exc))

    entries: list[str] = []
    for dirpath, dirnames, filenames in os.walk(path, onerror=fail, followlinks=False):
        base = Path(dirpath)
        descend: list[str] = []
        for name in dirnames:
            if is_excluded(name, patterns):
                continue
            full = base / name
            if full.is_symlink():
                # Links to directories are recorded by target like file links.
                entries.append(f"{full.relative_to(path).as_posix()}:{_link_digest(full)}")
            else:
                descend.append(name)
        dirnames[:] = descend

        for name in filenames:
            if is_excluded(name, patterns):
                continue
            full = base / name
            rel = full.relative_to(path).as_posix()
            if full.is_symlink():
                # Links are recorded by target, never followed.
                digest: str | None = _link_digest(full)
            else:
                digest = hash_file(full)
            if digest is not None:
                entries.append(f"{rel}:{digest}")

    if not entries:
        return None
    entries.sort()
    return hashlib.sha256("|".join(entries).encode("utf-8")).hexdigest()
