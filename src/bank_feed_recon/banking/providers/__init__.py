"""Open banking aggregator adapters."""

from typing import Optional

from .base import ProviderAdapter
from .gocardless import GoCardlessAdapter
from .plaid import PlaidAdapter
from ...config import ReconConfig

ADAPTER_CLASSES: dict[str, type[ProviderAdapter]] = {
    GoCardlessAdapter.key: GoCardlessAdapter,
    PlaidAdapter.key: PlaidAdapter,
}


def build_adapters(config: Optional[ReconConfig] = None) -> dict[str, ProviderAdapter]:
    """Instantiate every known adapter, configured or not."""
    config = config or ReconConfig()
    return {key: cls(config) for key, cls in ADAPTER_CLASSES.items()}


__all__ = [
    "ProviderAdapter",
    "GoCardlessAdapter",
    "PlaidAdapter",
    "ADAPTER_CLASSES",
    "build_adapters",
]
