# artifacts.py
from __future__ import annotations

import uuid
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Callable, Iterable, List, Optional

from pydantic import BaseModel, Field

from .cache import DEFAULT_CACHE_EXCLUDES, collect_files, resolve_paths, safe_name, write_archive
from .errors import ArtifactNotFound

DEFAULT_ARTIFACT_DIR = ".stageci/artifacts"


def now_utc() -> datetime:
    return datetime.now(timezone.utc)


class ArtifactRecord(BaseModel):
    """
    Metadata for one stored artifact.

    Outlives the archive itself: once expired the download is gone but the
    record stays for audit.
    """
    name: str
    job: Optional[str] = None
    stage: Optional[str] = None
    files: List[str] = Field(default_factory=list)
    skipped: List[str] = Field(default_factory=list)
    created_at: datetime
    expires_at: Optional[datetime] = None
    expired: bool = False

    def is_expired(self, now: datetime) -> bool:
        # exclusive boundary: at expires_at the artifact is already gone
        if self.expired:
            return True
        return self.expires_at is not None and now >= self.expires_at


class ArtifactStore:
    """
    File-based artifact store:
      root/
        <safe name>.tar.gz
        <safe name>.json      ArtifactRecord

    `clock` is injectable so retention can be checked deterministically.
    """

    def __init__(self, root: str | Path = DEFAULT_ARTIFACT_DIR, *, clock: Callable[[], datetime] = now_utc):
        self.root = Path(root).resolve()
        self.root.mkdir(parents=True, exist_ok=True)
        self.clock = clock

    def archive_path(self, name: str) -> Path:
        return self.root / f"{safe_name(name)}.tar.gz"

    def record_path(self, name: str) -> Path:
        return self.root / f"{safe_name(name)}.json"

    def _write_record(self, record: ArtifactRecord) -> None:
        path = self.record_path(record.name)
        tmp = path.with_name(f"{path.name}.{uuid.uuid4().hex}.tmp")
        tmp.write_text(record.model_dump_json(indent=2), encoding="utf-8")
        tmp.replace(path)

    def put(
        self,
        name: str,
        paths: Iterable[str],
        *,
        workspace: str | Path = ".",
        expire_in: Optional[timedelta] = None,
        job: Optional[str] = None,
        stage: Optional[str] = None,
    ) -> ArtifactRecord:
        """Archive `paths` under `name`. A later put with the same name replaces it."""
        root = Path(workspace).resolve()
        resolved, skipped = resolve_paths(root, paths)
        files = collect_files(root, resolved, DEFAULT_CACHE_EXCLUDES)

        created = self.clock()
        record = ArtifactRecord(
            name=name,
            job=job,
            stage=stage,
            files=[rel for rel, _ in files],
            skipped=skipped,
            created_at=created,
            expires_at=created + expire_in if expire_in is not None else None,
        )

        write_archive(self.archive_path(name), files)
        self._write_record(record)
        return record

    def metadata(self, name: str) -> ArtifactRecord:
        """Record for `name`, expired or not."""
        path = self.record_path(name)
        if not path.exists():
            raise ArtifactNotFound(name=name, reason="no such artifact")
        return ArtifactRecord.model_validate_json(path.read_text(encoding="utf-8"))

    def records(self) -> List[ArtifactRecord]:
        out = [
            ArtifactRecord.model_validate_json(p.read_text(encoding="utf-8"))
            for p in self.root.glob("*.json")
        ]
        return sorted(out, key=lambda r: (r.created_at, r.name))

    def get(self, name: str) -> Path:
        """Path of the downloadable archive; ArtifactNotFound when missing or expired."""
        record = self.metadata(name)
        if record.is_expired(self.clock()):
            raise ArtifactNotFound(name=name, reason=f"expired at {record.expires_at.isoformat() if record.expires_at else 'unknown'}")
        archive = self.archive_path(name)
        if not archive.exists():
            raise ArtifactNotFound(name=name, reason="archive missing")
        return archive

    def expire(self) -> List[ArtifactRecord]:
        """Drop archives past retention; records are kept and flagged."""
        now = self.clock()
        dropped: List[ArtifactRecord] = []
        for record in self.records():
            if record.expired or not record.is_expired(now):
                continue
            self.archive_path(record.name).unlink(missing_ok=True)
            record.expired = True
            self._write_record(record)
            dropped.append(record)
        return dropped
