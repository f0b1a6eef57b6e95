"""
Tests for run event emission.
"""

import json
from unittest.mock import AsyncMock, patch

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from mls_replicator.config import settings
from mls_replicator.events import EventEmitter, EventType, RunEvent


class TestRunEvent:
    def test_json_drops_empty_fields(self) -> None:
        event = RunEvent(
            event_type=EventType.RUN_COMPLETED,
            source_name="ure",
            operation="sync",
            records=12,
        )

        data = json.loads(event.to_json())

        assert data["event_type"] == "run:completed"
        assert data["records"] == 12
        assert "error" not in data
        assert "batch_id" not in data


class TestEventEmitter:
    """Tests for publishing to Redis."""

    @pytest.mark.asyncio
    async def test_disabled_by_settings(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setattr(settings, "events_enabled", False)

        with patch("mls_replicator.events.redis.from_url") as from_url:
            async with EventEmitter() as emitter:
                await emitter.emit_run_started("ure", "sync", "b1")

        from_url.assert_not_called()

    @pytest.mark.asyncio
    async def test_publishes_to_runs_channel(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setattr(settings, "events_enabled", True)
        client = AsyncMock()

        with patch("mls_replicator.events.redis.from_url", return_value=client):
            async with EventEmitter() as emitter:
                await emitter.emit_run_failed("ure", "purge", "HTTP 500", batch_id="b1")

        channel, payload = client.publish.await_args.args
        assert channel == EventEmitter.CHANNEL_RUNS
        assert json.loads(payload)["error"] == "HTTP 500"
        client.aclose.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_unreachable_redis_disables(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setattr(settings, "events_enabled", True)
        client = AsyncMock()
        client.ping.side_effect = RedisConnectionError("refused")

        with patch("mls_replicator.events.redis.from_url", return_value=client):
            async with EventEmitter() as emitter:
                assert not emitter.enabled
                await emitter.emit_run_started("ure", "sync")

        client.publish.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_publish_error_is_logged(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setattr(settings, "events_enabled", True)
        client = AsyncMock()
        client.publish.side_effect = RedisConnectionError("gone")

        with patch("mls_replicator.events.redis.from_url", return_value=client):
            async with EventEmitter() as emitter:
                await emitter.emit_run_completed("ure", "sync", 1.5)
