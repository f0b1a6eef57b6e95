"""Replication pipeline: collector, loader, reconciler, purger."""

from mls_replicator.sync.orchestrator import ReplicationOrchestrator, RunResult

__all__ = ["ReplicationOrchestrator", "RunResult"]
