"""Bank statement ingestion, bank feed sync and transaction reconciliation engine."""

__version__ = "0.1.0"
