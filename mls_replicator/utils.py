"""
Replication utility functions

Natural sorting, batch id <-> timestamp conversion, timestamp parsing and
expanded resource flattening.
"""

import re
from datetime import datetime, timezone
from typing import Any, Callable, Iterable, Sequence, TypeVar

T = TypeVar("T")

BATCH_ID_FORMAT = "%Y-%m-%d-T-%H-%M-%S"

_NUMBER_RE = re.compile(r"([0-9]+)")
_PUNCTUATION_RE = re.compile(r"[\W_]+")


def natural_sort_key(value: Any) -> tuple[tuple[tuple[int, int, str], ...], str]:
    """
    Build a numeric-aware, case- and punctuation-insensitive sort key.

    ``seq_2`` sorts before ``seq_10``. The raw string is appended as a
    tie-breaker so that distinct values never compare equal, which keeps the
    order total. The same key orders batch files and primary keys during
    reconciliation.
    """
    text = str(value)
    parts: list[tuple[int, int, str]] = []
    for chunk in _NUMBER_RE.split(text):
        if not chunk:
            continue
        if chunk.isdigit():
            parts.append((0, int(chunk), ""))
        else:
            word = _PUNCTUATION_RE.sub("", chunk).casefold()
            if word:
                parts.append((1, 0, word))
    return tuple(parts), text


def natural_sort(
    items: Iterable[T],
    key: Callable[[T], Any] | None = None,
    reverse: bool = False,
) -> list[T]:
    """Return items sorted with natural_sort_key (optionally on a selected value)."""
    selector = key or (lambda item: item)
    return sorted(items, key=lambda item: natural_sort_key(selector(item)), reverse=reverse)


def batch_id_from_timestamp(timestamp: datetime) -> str:
    """Format a run start time as a sortable batch id (millisecond precision)."""
    if timestamp.tzinfo is not None:
        timestamp = timestamp.astimezone(timezone.utc)
    millis = timestamp.microsecond // 1000
    return f"{timestamp.strftime(BATCH_ID_FORMAT)}-{millis:03d}Z"


def timestamp_from_batch_id(batch_id: str) -> datetime:
    """Inverse of batch_id_from_timestamp."""
    base, _, millis = batch_id.rstrip("Z").rpartition("-")
    parsed = datetime.strptime(base, BATCH_ID_FORMAT)
    return parsed.replace(microsecond=int(millis) * 1000, tzinfo=timezone.utc)


def new_batch_id() -> str:
    """Batch id for a run starting now."""
    return batch_id_from_timestamp(datetime.now(timezone.utc))


def parse_timestamp(value: Any) -> datetime | None:
    """
    Parse an MLS or destination timestamp into an aware UTC datetime.

    Accepts datetimes (naive ones are taken as UTC), ISO 8601 strings with
    ``Z`` or offsets, and ``YYYY-MM-DD HH:MM:SS.fff`` strings.
    Returns None for empty or unparseable values.
    """
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, str):
        try:
            parsed = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
        except ValueError:
            return None
    else:
        return None
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def format_odata_timestamp(value: datetime) -> str:
    """Format a datetime as an OData DateTimeOffset literal."""
    value = value.astimezone(timezone.utc)
    return value.strftime("%Y-%m-%dT%H:%M:%S.") + f"{value.microsecond // 1000:03d}Z"


def flatten_expanded_resources(resources: Sequence[Any]) -> list[Any]:
    """
    Flatten a resource tree into a list, unique by name, parents first.

    Recurses through nested ``expand`` lists. The objects are kept whole, so
    callers still see each resource's own ``expand`` list; callers only look
    one level deep.
    """
    flattened: list[Any] = []
    for resource in resources:
        flattened.append(resource)
        expand = getattr(resource, "expand", None)
        if expand:
            flattened.extend(flatten_expanded_resources(expand))

    seen: set[str] = set()
    unique = []
    for resource in flattened:
        if resource.name in seen:
            continue
        seen.add(resource.name)
        unique.append(resource)
    return unique


def chunked(items: Sequence[T], size: int) -> list[Sequence[T]]:
    """Split a sequence into consecutive chunks of at most ``size`` items."""
    return [items[i : i + size] for i in range(0, len(items), size)]
