# cache.py
from __future__ import annotations

import fnmatch
import hashlib
import json
import re
import tarfile
import time
import uuid
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Tuple

from .model import CachePolicy, ExpandedJob, TriggerContext
from .variables import expand, predefined_variables

# ---------------------------------------------------------------------
# Core idea
# ---------------------------------------------------------------------
# Key-scoped caching:
#   key = the job's cache key template with $VARS interpolated
#         (e.g. "$CI_BUILD_STAGE-$CI_BUILD_REF_NAME" -> "build-master")
#
# Every job resolving to the same key shares one entry: any of them may
# restore it, and the last successful job to save overwrites it.
#
# Cache entry:
#   <root>/<safe key>.tar.gz          declared paths, relative to workspace
#   <root>/<safe key>.manifest.json   key, job, file digests, saved_at
#
# A miss is never an error; the job simply starts with an empty cache.
# ---------------------------------------------------------------------


DEFAULT_CACHE_DIR = ".stageci/cache"
DEFAULT_CACHE_EXCLUDES = [
    ".git/**",
    ".stageci/**",
    "**/__pycache__/**",
    "**/*.pyc",
    "**/.DS_Store",
]


@dataclass(frozen=True)
class CacheHit:
    hit: bool
    key: str
    reason: str  # human readable
    manifest: Dict


@dataclass(frozen=True)
class CacheEntry:
    key: str
    job: Optional[str]
    saved_at: float
    files: List[Tuple[str, str, int]] = field(default_factory=list)
    skipped: List[str] = field(default_factory=list)

    @classmethod
    def from_manifest(cls, manifest: Dict) -> CacheEntry:
        return cls(
            key=manifest["key"],
            job=manifest.get("job"),
            saved_at=float(manifest.get("saved_at", 0)),
            files=[tuple(f) for f in manifest.get("files", [])],
            skipped=list(manifest.get("skipped", [])),
        )


def resolve_cache_key(policy: CachePolicy, job: ExpandedJob, ctx: TriggerContext) -> str:
    """
    Interpolate the key template for this job and ref.

    Job variables are visible too, but the stock `stage-ref` template makes
    all jobs of a stage share one entry.
    """
    variables = predefined_variables(ctx, job_name=job.name, stage=job.stage, image=job.image)
    variables.update(job.variables)
    key = expand(policy.key, variables).strip()
    return key or "default"


def _sha256_bytes(data: bytes) -> str:
    h = hashlib.sha256()
    h.update(data)
    return h.hexdigest()


def _sha256_str(s: str) -> str:
    return _sha256_bytes(s.encode("utf-8"))


def safe_name(key: str) -> str:
    # readable prefix + digest so distinct keys never share a file
    readable = re.sub(r"[^A-Za-z0-9._-]+", "_", key)[:64]
    return f"{readable}-{_sha256_str(key)[:12]}"


def _relpath(p: Path, root: Path) -> str:
    return str(p.resolve().relative_to(root.resolve())).replace("\\", "/")


def _is_within(p: Path, root: Path) -> bool:
    try:
        p.resolve().relative_to(root)
    except ValueError:
        return False
    return True


def _iter_files_under(root: Path) -> Iterable[Path]:
    # deterministic traversal
    for p in sorted(root.rglob("*")):
        if p.is_file():
            yield p


def _matches_any_glob(rel: str, globs: List[str]) -> bool:
    # fnmatch "*" crosses "/"; a leading "**/" also matches at the top level
    for g in globs:
        if fnmatch.fnmatch(rel, g):
            return True
        if g.startswith("**/") and fnmatch.fnmatch(rel, g[3:]):
            return True
    return False


def _hash_file_contents(path: Path) -> str:
    h = hashlib.sha256()
    with path.open("rb") as f:
        while True:
            chunk = f.read(1024 * 1024)
            if not chunk:
                break
            h.update(chunk)
    return h.hexdigest()


def resolve_paths(workspace: Path, patterns: Iterable[str]) -> Tuple[List[Path], List[str]]:
    """
    Expand path globs relative to the workspace.

    Supports:
      - file path: "Cargo.lock"
      - dir path:  "target/"
      - glob:      "target/**/*.rlib"

    Returns (paths inside the workspace, patterns skipped because they point
    outside of it or matched nothing).
    """
    root = workspace.resolve()
    out: List[Path] = []
    skipped: List[str] = []
    for pat in patterns:
        pat = pat.strip()
        if not pat:
            continue

        candidate = Path(pat)
        if candidate.is_absolute():
            matches = [candidate] if candidate.exists() else []
        else:
            p = root / pat
            if p.exists():
                matches = [p]
            else:
                matches = [m for m in sorted(root.glob(pat)) if m.exists()]

        # "../x", absolute paths and symlinks may all land outside the workspace
        inside = [m for m in matches if _is_within(m, root)]
        if not inside:
            skipped.append(pat)
        out.extend(inside)

    # De-dupe while preserving order
    seen = set()
    uniq: List[Path] = []
    for p in out:
        rp = str(p.resolve())
        if rp not in seen:
            seen.add(rp)
            uniq.append(p)
    return uniq, skipped


def collect_files(workspace: Path, paths: List[Path], excludes: List[str]) -> List[Tuple[str, Path]]:
    """Flatten files/dirs into sorted (relpath, absolute path) pairs."""
    root = workspace.resolve()
    found: Dict[str, Path] = {}
    for src in paths:
        src = src.resolve()
        files = [src] if src.is_file() else list(_iter_files_under(src))
        for f in files:
            if not _is_within(f, root):
                continue
            rel = _relpath(f, root)
            if _matches_any_glob(rel, excludes):
                continue
            found[rel] = f
    return sorted(found.items())


def write_archive(archive: Path, files: List[Tuple[str, Path]]) -> None:
    """Build a tar.gz next to `archive`, then atomically move it into place."""
    tmp = archive.with_name(f"{archive.name}.{uuid.uuid4().hex}.tmp")
    try:
        with tarfile.open(str(tmp), mode="w:gz") as tar:
            for rel, src in files:
                tar.add(str(src), arcname=rel, recursive=False)
        tmp.replace(archive)
    finally:
        if tmp.exists():
            tmp.unlink(missing_ok=True)


def _write_json(path: Path, payload: Dict) -> None:
    tmp = path.with_name(f"{path.name}.{uuid.uuid4().hex}.tmp")
    try:
        tmp.write_text(json.dumps(payload, sort_keys=True, indent=2, ensure_ascii=False), encoding="utf-8")
        tmp.replace(path)
    finally:
        if tmp.exists():
            tmp.unlink(missing_ok=True)


class CacheStore:
    """
    File-based cache store, shared across jobs and runs:
      root/
        <safe key>.tar.gz
        <safe key>.manifest.json

    Passed explicitly to whoever needs it; there is no global instance.
    """

    def __init__(self, root: str | Path = DEFAULT_CACHE_DIR, *, excludes: Optional[List[str]] = None):
        self.root = Path(root).resolve()
        self.root.mkdir(parents=True, exist_ok=True)
        self.excludes = list(DEFAULT_CACHE_EXCLUDES) + list(excludes or [])

    def archive_path(self, key: str) -> Path:
        return self.root / f"{safe_name(key)}.tar.gz"

    def manifest_path(self, key: str) -> Path:
        return self.root / f"{safe_name(key)}.manifest.json"

    def entry(self, key: str) -> Optional[CacheEntry]:
        man = self.manifest_path(key)
        if not man.exists():
            return None
        return CacheEntry.from_manifest(json.loads(man.read_text(encoding="utf-8")))

    def entries(self) -> List[CacheEntry]:
        out = []
        for man in sorted(self.root.glob("*.manifest.json")):
            out.append(CacheEntry.from_manifest(json.loads(man.read_text(encoding="utf-8"))))
        return out

    def restore(self, key: str, *, workspace: str | Path = ".") -> CacheHit:
        """
        Extract the entry for `key` into the workspace.

        Restore is "overwrite by extraction"; files not in the archive are
        left alone.
        """
        root = Path(workspace).resolve()
        art = self.archive_path(key)
        man = self.manifest_path(key)

        if not art.exists() or not man.exists():
            return CacheHit(hit=False, key=key, reason="cache miss", manifest={})

        try:
            with tarfile.open(str(art), mode="r:gz") as tar:
                tar.extractall(path=str(root), filter="data")
        except (OSError, tarfile.TarError) as e:
            return CacheHit(hit=False, key=key, reason=f"cache exists but restore failed: {e}", manifest={})
        except TypeError as e:
            # interpreters without tar extraction filters reject filter="data"
            return CacheHit(hit=False, key=key, reason=f"cache restore unsupported: {e}", manifest={})

        try:
            stored = json.loads(man.read_text(encoding="utf-8"))
        except (OSError, ValueError):
            stored = {}

        return CacheHit(hit=True, key=key, reason="cache hit: restored", manifest=stored)

    def save(
        self,
        key: str,
        paths: Iterable[str],
        *,
        workspace: str | Path = ".",
        job: Optional[str] = None,
    ) -> CacheEntry:
        """
        Store the given path globs under `key`, replacing any previous entry.

        Concurrent savers of one key each build a private temp file; whichever
        rename lands last wins.
        """
        root = Path(workspace).resolve()
        resolved, skipped = resolve_paths(root, paths)
        files = collect_files(root, resolved, self.excludes)

        manifest = {
            "v": 1,
            "key": key,
            "job": job,
            "files": [(rel, _hash_file_contents(src), src.stat().st_size) for rel, src in files],
            "skipped": skipped,
            "saved_at": time.time(),
        }

        write_archive(self.archive_path(key), files)
        _write_json(self.manifest_path(key), manifest)
        return CacheEntry.from_manifest(manifest)

    def delete(self, key: str) -> bool:
        existed = self.manifest_path(key).exists()
        self.archive_path(key).unlink(missing_ok=True)
        self.manifest_path(key).unlink(missing_ok=True)
        return existed
