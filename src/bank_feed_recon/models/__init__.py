"""Data models."""

from .transaction import (
    BankAccount,
    BankTransaction,
    ImportResult,
    ParsedTransaction,
    StatementFormat,
    StatementPreview,
    TransactionSourceKind,
    normalize_reference,
)
from .matching import (
    CandidateMatch,
    CandidateType,
    Direction,
    MatchSelection,
    MatchTier,
    OpenItem,
    ReconciliationLine,
    ReconciliationResult,
    RecurringModelRule,
)
from .connection import (
    AuthorizationModel,
    ConnectionGrant,
    ConnectionInfo,
    ConnectionStatus,
    FlowState,
    InitiationResult,
    Institution,
    PendingFlow,
    ProviderInfo,
    SyncOutcome,
    SyncRunSummary,
)

__all__ = [
    "BankAccount",
    "BankTransaction",
    "ImportResult",
    "ParsedTransaction",
    "StatementFormat",
    "StatementPreview",
    "TransactionSourceKind",
    "normalize_reference",
    "CandidateMatch",
    "CandidateType",
    "Direction",
    "MatchSelection",
    "MatchTier",
    "OpenItem",
    "ReconciliationLine",
    "ReconciliationResult",
    "RecurringModelRule",
    "AuthorizationModel",
    "ConnectionGrant",
    "ConnectionInfo",
    "ConnectionStatus",
    "FlowState",
    "InitiationResult",
    "Institution",
    "PendingFlow",
    "ProviderInfo",
    "SyncOutcome",
    "SyncRunSummary",
]
