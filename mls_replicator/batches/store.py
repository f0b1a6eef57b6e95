"""
On-disk batch store.

Every fetched page is persisted as one JSON file before it is applied to
any destination, so a crashed or failed run resumes from the files still
pending. Layout::

    <batch_dir>/<source>/<resource>/<type>_batch_<batchId>_seq_<n>
    <batch_dir>/<source>/<resource>/done/...      (applied, when retained)

Pending files are listed in natural filename order (``seq_2`` before
``seq_10``), which is the order they must be applied in.
"""

from __future__ import annotations

import json
import logging
import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from mls_replicator.config import settings
from mls_replicator.utils import natural_sort

logger = logging.getLogger(__name__)

BATCH_TYPES = ("sync", "purge")

DONE_DIR = "done"

_BATCH_NAME_RE = re.compile(r"^(?P<type>sync|purge)_batch_(?P<batch_id>.+)_seq_(?P<seq>\d+)$")


def batch_filename(batch_type: str, batch_id: str, seq: int) -> str:
    return f"{batch_type}_batch_{batch_id}_seq_{seq}"


@dataclass(frozen=True)
class BatchFile:
    """A batch file on disk, identified by its path components."""

    path: Path
    source: str
    resource: str
    batch_type: str
    batch_id: str
    seq: int

    @classmethod
    def from_path(cls, path: Path) -> BatchFile | None:
        """Parse a batch path; None for files that are not batches."""
        match = _BATCH_NAME_RE.match(path.name)
        if match is None:
            return None
        return cls(
            path=path,
            source=path.parent.parent.name,
            resource=path.parent.name,
            batch_type=match["type"],
            batch_id=match["batch_id"],
            seq=int(match["seq"]),
        )

    @property
    def name(self) -> str:
        return self.path.name


@dataclass
class Batch:
    """One page of records for a (source, resource, type, batch id, seq)."""

    source: str
    resource: str
    batch_type: str
    batch_id: str
    seq: int
    records: list[dict[str, Any]] = field(default_factory=list)
    # Server reported total (@odata.count), purge batches only
    count: int | None = None

    @property
    def filename(self) -> str:
        return batch_filename(self.batch_type, self.batch_id, self.seq)

    def to_json(self) -> dict[str, Any]:
        body: dict[str, Any] = {"value": self.records}
        if self.count is not None:
            body["@odata.count"] = self.count
        return body


class BatchStore:
    """
    Batch files under one root directory.

    All methods do blocking file IO; async callers run them with
    ``asyncio.to_thread``.
    """

    def __init__(self, root: str | Path | None = None, retention: str | None = None) -> None:
        self.root = Path(root or settings.batch_dir)
        self.retention = retention or settings.batch_retention
        if self.retention not in ("move", "delete"):
            raise ValueError(f"Unknown batch retention mode: {self.retention}")

    def resource_dir(self, source: str, resource: str) -> Path:
        return self.root / source / resource

    def write(self, batch: Batch) -> BatchFile:
        """
        Write a batch atomically.

        The body goes to a hidden temp file which is then renamed into
        place, so readers see either no file or the complete file.
        """
        directory = self.resource_dir(batch.source, batch.resource)
        directory.mkdir(parents=True, exist_ok=True)
        path = directory / batch.filename
        temp_path = directory / f".{batch.filename}.tmp"

        try:
            with open(temp_path, "w", encoding="utf-8") as f:
                json.dump(batch.to_json(), f, default=str)
                f.flush()
                os.fsync(f.fileno())
            os.replace(temp_path, path)
        except BaseException:
            temp_path.unlink(missing_ok=True)
            raise

        logger.debug("Wrote %s (%d records)", path, len(batch.records))
        return BatchFile(
            path=path,
            source=batch.source,
            resource=batch.resource,
            batch_type=batch.batch_type,
            batch_id=batch.batch_id,
            seq=batch.seq,
        )

    def list(
        self,
        source: str,
        resource: str,
        batch_type: str | None = None,
        batch_id: str | None = None,
    ) -> list[BatchFile]:
        """Pending batches of a resource in natural filename order."""
        directory = self.resource_dir(source, resource)
        if not directory.is_dir():
            return []

        batch_files = []
        for path in directory.iterdir():
            if not path.is_file() or path.name.startswith("."):
                continue
            batch_file = BatchFile.from_path(path)
            if batch_file is None:
                continue
            if batch_type is not None and batch_file.batch_type != batch_type:
                continue
            if batch_id is not None and batch_file.batch_id != batch_id:
                continue
            batch_files.append(batch_file)
        return natural_sort(batch_files, key=lambda batch_file: batch_file.name)

    def list_resources(self, source: str) -> list[str]:
        """Resources of a source that have a batch directory."""
        directory = self.root / source
        if not directory.is_dir():
            return []
        return natural_sort(p.name for p in directory.iterdir() if p.is_dir())

    def read(self, batch_file: BatchFile) -> Batch:
        with open(batch_file.path, encoding="utf-8") as f:
            body = json.load(f)
        return Batch(
            source=batch_file.source,
            resource=batch_file.resource,
            batch_type=batch_file.batch_type,
            batch_id=batch_file.batch_id,
            seq=batch_file.seq,
            records=body.get("value", []),
            count=body.get("@odata.count"),
        )

    def mark_done(self, batch_file: BatchFile) -> None:
        """
        Retire an applied batch so it is no longer listed.

        Safe to call again for an already retired batch.
        """
        path = batch_file.path
        if self.retention == "delete":
            path.unlink(missing_ok=True)
            return

        if not path.exists():
            return
        done_dir = path.parent / DONE_DIR
        done_dir.mkdir(exist_ok=True)
        os.replace(path, done_dir / path.name)

    def oldest_batch_id(
        self, source: str, resource: str, batch_type: str | None = None
    ) -> str | None:
        """Batch id of the oldest pending batch, if any."""
        batch_files = self.list(source, resource, batch_type=batch_type)
        if not batch_files:
            return None
        return min(batch_file.batch_id for batch_file in batch_files)
