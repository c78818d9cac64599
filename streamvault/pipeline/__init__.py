"""Durable work queue and its drainer."""

from streamvault.pipeline.cleanup import SourceCleaner, SourceCleanupReport
from streamvault.pipeline.drainer import DrainResult, ItemOutcome, QueueDrainer
from streamvault.pipeline.locks import AssetLock, AssetLockManager
from streamvault.pipeline.operations import QueueAction

__all__ = [
    "AssetLock",
    "AssetLockManager",
    "DrainResult",
    "ItemOutcome",
    "QueueAction",
    "QueueDrainer",
    "SourceCleaner",
    "SourceCleanupReport",
]
