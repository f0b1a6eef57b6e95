"""Durable batch files between the collector and the loader."""

from mls_replicator.batches.store import BATCH_TYPES, Batch, BatchFile, BatchStore, batch_filename

__all__ = ["BATCH_TYPES", "Batch", "BatchFile", "BatchStore", "batch_filename"]
