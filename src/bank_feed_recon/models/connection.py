"""Data models for bank feed connections and the connection handshake."""

from dataclasses import dataclass, field
from datetime import date, datetime
from enum import Enum
from typing import Any, Optional

from .transaction import ParsedTransaction


class ConnectionStatus(Enum):
    """Lifecycle status of a persisted bank connection."""

    PENDING = "pending"
    ACTIVE = "active"
    EXPIRED = "expired"
    ERROR = "error"
    REVOKED = "revoked"


class AuthorizationModel(Enum):
    """How a provider hands control back after the user authorizes access."""

    REDIRECT = "redirect"  # user visits a bank URL, callback carries requisition id
    TOKEN = "token"  # embedded widget returns a public token


class FlowState(Enum):
    """Step of a pending connection handshake."""

    PROVIDER_SELECTED = "provider_selected"
    COUNTRY_SELECTED = "country_selected"
    INSTITUTION_SELECTED = "institution_selected"
    ACCOUNT_SELECTED = "account_selected"
    INITIATING = "initiating"
    AWAITING_REDIRECT_AUTHORIZATION = "awaiting_redirect_authorization"
    LINK_PENDING = "link_pending"
    ACTIVE = "active"
    ERROR = "error"


# Steps a caller may legally move to from each state
FLOW_TRANSITIONS: dict[FlowState, frozenset[FlowState]] = {
    FlowState.PROVIDER_SELECTED: frozenset(
        {FlowState.COUNTRY_SELECTED, FlowState.ERROR}
    ),
    FlowState.COUNTRY_SELECTED: frozenset(
        {FlowState.COUNTRY_SELECTED, FlowState.INSTITUTION_SELECTED, FlowState.ERROR}
    ),
    FlowState.INSTITUTION_SELECTED: frozenset(
        {FlowState.INSTITUTION_SELECTED, FlowState.ACCOUNT_SELECTED, FlowState.ERROR}
    ),
    FlowState.ACCOUNT_SELECTED: frozenset(
        {FlowState.ACCOUNT_SELECTED, FlowState.INITIATING, FlowState.ERROR}
    ),
    FlowState.INITIATING: frozenset(
        {
            FlowState.AWAITING_REDIRECT_AUTHORIZATION,
            FlowState.LINK_PENDING,
            FlowState.ACCOUNT_SELECTED,
            FlowState.ERROR,
        }
    ),
    FlowState.AWAITING_REDIRECT_AUTHORIZATION: frozenset(
        {FlowState.ACTIVE, FlowState.ERROR}
    ),
    FlowState.LINK_PENDING: frozenset({FlowState.ACTIVE, FlowState.ERROR}),
    FlowState.ACTIVE: frozenset(),
    FlowState.ERROR: frozenset(),
}


def can_transition(current: FlowState, target: FlowState) -> bool:
    return target in FLOW_TRANSITIONS.get(current, frozenset())


@dataclass
class ProviderInfo:
    """Aggregator description for provider discovery."""

    key: str
    display_name: str
    countries: list[str]
    authorization_model: AuthorizationModel
    configured: bool


@dataclass
class Institution:
    """Bank available through an aggregator."""

    id: str
    name: str
    logo: Optional[str] = None
    bic: Optional[str] = None
    countries: list[str] = field(default_factory=list)
    transaction_total_days: Optional[int] = None


@dataclass
class InitiationResult:
    """What the aggregator returned when an authorization request was started."""

    requisition_id: Optional[str] = None
    authorization_url: Optional[str] = None
    link_token: Optional[str] = None
    expires_at: Optional[datetime] = None
    extra: dict[str, Any] = field(default_factory=dict)


@dataclass
class ConnectionGrant:
    """Credentials obtained once the user completed authorization."""

    credentials: dict[str, Any]
    expires_at: Optional[datetime] = None
    institution_name: Optional[str] = None


@dataclass
class PendingFlow:
    """Snapshot of a pending connection handshake."""

    request_token: str
    organization_id: str
    state: FlowState
    provider: str
    expires_at: datetime
    country: Optional[str] = None
    institution_id: Optional[str] = None
    institution_name: Optional[str] = None
    institution_logo: Optional[str] = None
    account_id: Optional[int] = None
    connection_id: Optional[int] = None
    requisition_id: Optional[str] = None
    authorization_url: Optional[str] = None
    link_token: Optional[str] = None
    last_error: Optional[str] = None


@dataclass
class ConnectionInfo:
    """Persisted connection, detached from the database session."""

    id: int
    organization_id: str
    account_id: int
    provider: str
    status: ConnectionStatus
    sync_enabled: bool
    sync_interval_hours: int
    institution_id: Optional[str] = None
    institution_name: Optional[str] = None
    institution_logo: Optional[str] = None
    last_sync_at: Optional[datetime] = None
    next_sync_at: Optional[datetime] = None
    expires_at: Optional[datetime] = None
    error_message: Optional[str] = None

    @property
    def is_active(self) -> bool:
        return self.status == ConnectionStatus.ACTIVE


@dataclass
class FetchedTransactions:
    """Transactions returned by a provider for one sync window."""

    transactions: list[ParsedTransaction]
    since: date
    pending_skipped: int = 0


@dataclass
class SyncOutcome:
    """Result of syncing a single connection."""

    connection_id: int
    success: bool
    imported: int = 0
    skipped: int = 0
    error: Optional[str] = None


@dataclass
class SyncRunSummary:
    """Aggregated result of a scheduler pass."""

    outcomes: list[SyncOutcome] = field(default_factory=list)

    @property
    def succeeded(self) -> int:
        return sum(1 for o in self.outcomes if o.success)

    @property
    def failed(self) -> int:
        return sum(1 for o in self.outcomes if not o.success)

    @property
    def imported(self) -> int:
        return sum(o.imported for o in self.outcomes)
