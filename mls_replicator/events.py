"""
Redis Event Emission Module

Publishes run lifecycle events to a Redis Pub/Sub channel so other services
can react when a sync, purge or reconcile run finishes.

Event Types:
- run:started - A run for one source/operation started
- run:completed - The run finished
- run:failed - The run raised
"""

import json
import logging
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any

import redis.asyncio as redis

from mls_replicator.config import settings

logger = logging.getLogger(__name__)


class EventType(str, Enum):
    RUN_STARTED = "run:started"
    RUN_COMPLETED = "run:completed"
    RUN_FAILED = "run:failed"


@dataclass
class RunEvent:
    """Payload published for every lifecycle event."""

    event_type: str
    source_name: str
    operation: str
    timestamp: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())
    batch_id: str | None = None
    duration_seconds: float | None = None
    resources: list[str] | None = None
    records: int | None = None
    error: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    def to_json(self) -> str:
        data = {k: v for k, v in asdict(self).items() if v is not None}
        if isinstance(self.event_type, EventType):
            data["event_type"] = self.event_type.value
        return json.dumps(data, default=str)


class EventEmitter:
    """
    Emits run events to Redis Pub/Sub.

    Emission failures are logged and never fail the run.

    Usage:
        async with EventEmitter() as emitter:
            await emitter.emit_run_started("utahRealEstate", "sync", batch_id)
    """

    CHANNEL_RUNS = "mls_replicator:runs"

    def __init__(self, redis_url: str | None = None, enabled: bool = True) -> None:
        self.redis_url = redis_url or settings.redis_url
        self.enabled = enabled and settings.events_enabled
        self._client: redis.Redis | None = None

    async def __aenter__(self) -> "EventEmitter":
        if self.enabled:
            try:
                self._client = redis.from_url(
                    self.redis_url,
                    encoding="utf-8",
                    decode_responses=True,
                )
                await self._client.ping()
                logger.info("Event emitter connected to Redis")
            except (redis.RedisError, OSError) as e:
                logger.warning("Event emitter disabled: %s", e)
                self._client = None
                self.enabled = False
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        if self._client:
            await self._client.aclose()
            self._client = None

    async def _publish(self, event: RunEvent) -> None:
        if not self.enabled or not self._client:
            return

        try:
            await self._client.publish(self.CHANNEL_RUNS, event.to_json())
        except (redis.RedisError, OSError) as e:
            logger.warning("Failed to emit event %s: %s", event.event_type, e)

    async def emit_run_started(
        self, source_name: str, operation: str, batch_id: str | None = None
    ) -> None:
        await self._publish(
            RunEvent(
                event_type=EventType.RUN_STARTED,
                source_name=source_name,
                operation=operation,
                batch_id=batch_id,
            )
        )

    async def emit_run_completed(
        self,
        source_name: str,
        operation: str,
        duration_seconds: float,
        batch_id: str | None = None,
        resources: list[str] | None = None,
        records: int | None = None,
    ) -> None:
        await self._publish(
            RunEvent(
                event_type=EventType.RUN_COMPLETED,
                source_name=source_name,
                operation=operation,
                batch_id=batch_id,
                duration_seconds=duration_seconds,
                resources=resources,
                records=records,
            )
        )

    async def emit_run_failed(
        self,
        source_name: str,
        operation: str,
        error: str,
        duration_seconds: float | None = None,
        batch_id: str | None = None,
    ) -> None:
        await self._publish(
            RunEvent(
                event_type=EventType.RUN_FAILED,
                source_name=source_name,
                operation=operation,
                batch_id=batch_id,
                duration_seconds=duration_seconds,
                error=error,
            )
        )


# Global emitter instance (lazy initialization)
_emitter: EventEmitter | None = None


async def get_emitter() -> EventEmitter:
    """Get or create the global event emitter."""
    global _emitter
    if _emitter is None:
        _emitter = EventEmitter()
        await _emitter.__aenter__()
    return _emitter


async def close_emitter() -> None:
    """Close the global event emitter."""
    global _emitter
    if _emitter:
        await _emitter.__aexit__(None, None, None)
        _emitter = None
