"""Open banking connections and feed synchronisation."""

from .orchestrator import ConnectionOrchestrator
from .providers import ProviderAdapter, build_adapters
from .scheduler import SyncScheduler

__all__ = [
    "ConnectionOrchestrator",
    "ProviderAdapter",
    "SyncScheduler",
    "build_adapters",
]
