"""Reconciliation of bank transactions."""

from .coordinator import ReconciliationCoordinator

__all__ = ["ReconciliationCoordinator"]
