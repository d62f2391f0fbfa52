"""Statement and feed import."""

from .fingerprint import compute_fingerprint
from .pipeline import ImportPipeline

__all__ = ["compute_fingerprint", "ImportPipeline"]
