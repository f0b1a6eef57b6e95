"""
Reconcile diff.

Compares the source's (primary key, timestamps) listing with a
destination's and returns the keys the destination is missing or holds a
stale version of. Runs in an executor (a process pool by default) so a
diff over hundreds of thousands of rows never blocks the event loop.
"""

import asyncio
import logging
from concurrent.futures import Executor, ProcessPoolExecutor, ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Any

from mls_replicator.config import settings
from mls_replicator.errors import DiffError
from mls_replicator.utils import natural_sort_key, parse_timestamp

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DiffRequest:
    """Two listings sorted by natural_sort_key of the primary key."""

    primary_key: str
    timestamp_fields: tuple[str, ...]
    source_rows: list[dict[str, Any]]
    destination_rows: list[dict[str, Any]]


@dataclass(frozen=True)
class DiffResult:
    missing_ids: list[Any] = field(default_factory=list)
    stale_ids: list[Any] = field(default_factory=list)

    @property
    def ids(self) -> list[Any]:
        """Missing and stale ids together, ascending."""
        return sorted(self.missing_ids + self.stale_ids, key=natural_sort_key)


def _timestamp_value(value: Any) -> Any:
    # Epoch numbers compare as they are
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return value
    return parse_timestamp(value)


def _is_stale(source_row: dict[str, Any], destination_row: dict[str, Any], fields: tuple[str, ...]) -> bool:
    for name in fields:
        source_value = _timestamp_value(source_row.get(name))
        if source_value is None:
            continue
        destination_value = _timestamp_value(destination_row.get(name))
        if destination_value is None or source_value > destination_value:
            return True
    return False


def compute_missing_ids(request: DiffRequest) -> DiffResult:
    """
    Merge-walk both listings.

    A key only in the source is missing; a key in both is stale when any
    timestamp field is strictly newer in the source. Keys only in the
    destination are the purger's business and are ignored here.
    """
    source_rows = request.source_rows
    destination_rows = request.destination_rows
    missing: list[Any] = []
    stale: list[Any] = []

    i = j = 0
    while i < len(source_rows):
        source_row = source_rows[i]
        source_key = natural_sort_key(source_row[request.primary_key])
        if j >= len(destination_rows):
            missing.append(source_row[request.primary_key])
            i += 1
            continue

        destination_row = destination_rows[j]
        destination_key = natural_sort_key(destination_row[request.primary_key])
        if source_key < destination_key:
            missing.append(source_row[request.primary_key])
            i += 1
        elif source_key > destination_key:
            j += 1
        else:
            if _is_stale(source_row, destination_row, request.timestamp_fields):
                stale.append(source_row[request.primary_key])
            i += 1
            j += 1

    return DiffResult(missing_ids=missing, stale_ids=stale)


def build_diff_executor() -> Executor:
    """Executor for diff tasks, per settings.diff_executor."""
    if settings.diff_executor == "thread":
        return ThreadPoolExecutor(max_workers=settings.diff_max_workers, thread_name_prefix="diff")
    return ProcessPoolExecutor(max_workers=settings.diff_max_workers)


async def run_diff_task(request: DiffRequest, executor: Executor | None = None) -> DiffResult:
    """
    Run compute_missing_ids off the event loop.

    Raises:
        DiffError: The diff failed; nothing partial is returned.
    """
    loop = asyncio.get_running_loop()
    try:
        return await loop.run_in_executor(executor, compute_missing_ids, request)
    except Exception as e:
        raise DiffError(f"Diff on {request.primary_key} failed: {e}") from e
