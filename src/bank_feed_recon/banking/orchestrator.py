"""
Connection handshake and lifecycle for open banking feeds.

A pending connection walks through provider, country, institution and
account selection before the aggregator is asked to start authorization.
Aggregator calls are always made outside a database session so that no
write lock is held while waiting on the network.
"""

from datetime import timedelta
from typing import Optional
import logging
import secrets

from sqlalchemy import select
from sqlalchemy.orm import Session

from .providers.base import ProviderAdapter
from ..config import ReconConfig
from ..models.connection import (
    AuthorizationModel,
    ConnectionInfo,
    ConnectionStatus,
    FlowState,
    Institution,
    PendingFlow,
    ProviderInfo,
    can_transition,
)
from ..storage.database import Database, utc_now
from ..storage.tables import BankConnectionRow, PendingConnectionRow
from ..storage.transaction_store import TransactionStore
from ..utils.exceptions import (
    ConnectionInitiationError,
    ConnectionNotActiveError,
    ConnectionNotFoundError,
    FlowExpiredError,
    FlowNotFoundError,
    InputError,
    InvalidFlowTransitionError,
    ProviderError,
    ProviderNotConfiguredError,
    UnsupportedCountryError,
)

logger = logging.getLogger(__name__)


def to_connection(row: BankConnectionRow) -> ConnectionInfo:
    return ConnectionInfo(
        id=row.id,
        organization_id=row.organization_id,
        account_id=row.account_id,
        provider=row.provider,
        status=ConnectionStatus(row.status),
        sync_enabled=bool(row.sync_enabled),
        sync_interval_hours=row.sync_interval_hours,
        institution_id=row.institution_id,
        institution_name=row.institution_name,
        institution_logo=row.institution_logo,
        last_sync_at=row.last_sync_at,
        next_sync_at=row.next_sync_at,
        expires_at=row.expires_at,
        error_message=row.error_message,
    )


def to_flow(row: PendingConnectionRow) -> PendingFlow:
    return PendingFlow(
        request_token=row.request_token,
        organization_id=row.organization_id,
        state=FlowState(row.state),
        provider=row.provider,
        expires_at=row.expires_at,
        country=row.country,
        institution_id=row.institution_id,
        institution_name=row.institution_name,
        institution_logo=row.institution_logo,
        account_id=row.account_id,
        connection_id=row.connection_id,
        requisition_id=row.requisition_id,
        authorization_url=row.authorization_url,
        link_token=row.link_token,
        last_error=row.last_error,
    )


def load_connection(
    session: Session, organization_id: str, connection_id: int
) -> BankConnectionRow:
    """
    Load a connection row scoped to the organization.

    Raises:
        ConnectionNotFoundError: If missing or owned by another organization
    """
    row = session.get(BankConnectionRow, connection_id)
    if row is None or row.organization_id != organization_id:
        raise ConnectionNotFoundError(f"Bank connection {connection_id} not found")
    return row


class ConnectionOrchestrator:
    """
    Drives the multi-step connection flow and connection lifecycle.

    Flow state lives in the pending_connections table keyed by an
    unguessable request token, so a flow survives process restarts until
    its TTL lapses.
    """

    def __init__(
        self,
        database: Database,
        store: TransactionStore,
        adapters: dict[str, ProviderAdapter],
        config: Optional[ReconConfig] = None,
    ):
        self.database = database
        self.store = store
        self.adapters = adapters
        self.config = config or ReconConfig()

    # Discovery

    def list_providers(self) -> list[ProviderInfo]:
        return [adapter.info() for adapter in self.adapters.values()]

    def adapter_for(self, provider: str) -> ProviderAdapter:
        adapter = self.adapters.get(provider)
        if adapter is None:
            raise ProviderNotConfiguredError(f"Unknown provider '{provider}'")
        return adapter

    # Flow steps

    def select_provider(
        self,
        organization_id: str,
        provider: str,
        account_id: Optional[int] = None,
    ) -> PendingFlow:
        """
        Start a connection flow.

        Args:
            organization_id: Acting organization
            provider: Provider key, e.g. "gocardless"
            account_id: Bank account to connect, may also be chosen later

        Returns:
            PendingFlow carrying the request token for the next steps

        Raises:
            ProviderNotConfiguredError: If the provider is unknown or lacks credentials
            InvalidAccountError: If account_id is not in the organization
        """
        self.adapter_for(provider).require_configured()
        return self._start_flow(organization_id, provider, account_id, None)

    def select_country(self, request_token: str, country: str) -> PendingFlow:
        country = country.upper()
        with self.database.session_scope() as session:
            row = self._load_flow(session, request_token)
            if not self.adapter_for(row.provider).supports_country(country):
                raise UnsupportedCountryError(
                    f"Provider '{row.provider}' does not support country {country}"
                )
            self._advance(row, FlowState.COUNTRY_SELECTED)
            row.country = country
            return to_flow(row)

    def list_institutions(self, request_token: str) -> list[Institution]:
        flow = self.get_flow(request_token)
        if not flow.country:
            raise InvalidFlowTransitionError("Select a country before listing institutions")
        return self.adapter_for(flow.provider).list_institutions(flow.country)

    def select_institution(self, request_token: str, institution_id: str) -> PendingFlow:
        flow = self.get_flow(request_token)
        if not can_transition(flow.state, FlowState.INSTITUTION_SELECTED):
            raise InvalidFlowTransitionError(
                f"Cannot select an institution from state {flow.state.value}"
            )

        institutions = self.adapter_for(flow.provider).list_institutions(flow.country)
        institution = next((i for i in institutions if i.id == institution_id), None)
        if institution is None:
            raise InputError(
                f"Institution {institution_id} is not available in {flow.country}"
            )

        with self.database.session_scope() as session:
            row = self._load_flow(session, request_token)
            self._advance(row, FlowState.INSTITUTION_SELECTED)
            row.institution_id = institution.id
            row.institution_name = institution.name
            row.institution_logo = institution.logo
            return to_flow(row)

    def select_account(self, request_token: str, account_id: int) -> PendingFlow:
        with self.database.session_scope() as session:
            row = self._load_flow(session, request_token)
            self.store.load_account(session, row.organization_id, account_id)
            self._advance(row, FlowState.ACCOUNT_SELECTED)
            row.account_id = account_id
            return to_flow(row)

    def initiate(self, request_token: str, redirect_uri: str) -> PendingFlow:
        """
        Ask the aggregator to start authorization.

        Redirect providers return an authorization URL for the user to
        visit; token providers return a link token for the embedded widget.

        Raises:
            ConnectionInitiationError: If the aggregator refused; the flow
                returns to account selection so the user can retry
        """
        with self.database.session_scope() as session:
            row = self._load_flow(session, request_token)
            if row.account_id is None:
                raise InvalidFlowTransitionError("Select an account before initiating")
            self._advance(row, FlowState.INITIATING)
            flow = to_flow(row)

        adapter = self.adapter_for(flow.provider)
        try:
            result = adapter.initiate_connection(
                flow.institution_id,
                account_reference=f"account-{flow.account_id}",
                redirect_uri=redirect_uri,
            )
        except ProviderError as e:
            logger.error(f"Initiating {flow.provider} connection failed: {e}")
            with self.database.session_scope() as session:
                row = self._load_flow(session, request_token)
                row.last_error = str(e)
                self._advance(row, FlowState.ACCOUNT_SELECTED)
            raise ConnectionInitiationError(
                str(e), e.status_code, e.error_type
            ) from e

        if adapter.authorization_model == AuthorizationModel.REDIRECT:
            target = FlowState.AWAITING_REDIRECT_AUTHORIZATION
        else:
            target = FlowState.LINK_PENDING

        with self.database.session_scope() as session:
            row = self._load_flow(session, request_token)
            connection = self._pending_connection(session, row)
            self._advance(row, target)
            row.connection_id = connection.id
            row.requisition_id = result.requisition_id
            row.authorization_url = result.authorization_url
            row.link_token = result.link_token
            row.last_error = None
            flow = to_flow(row)

        logger.info(
            f"Connection {flow.connection_id} awaiting authorization at {flow.provider}"
        )
        return flow

    def confirm(
        self, request_token: str, authorization_code: Optional[str] = None
    ) -> ConnectionInfo:
        """
        Complete authorization after the user returns from the aggregator.

        Args:
            request_token: Flow token
            authorization_code: Requisition reference from the redirect
                callback, or the public token from the embedded widget

        Returns:
            The now active connection

        Raises:
            InvalidFlowTransitionError: If the flow is not awaiting authorization
            ProviderError: If the aggregator did not grant access
        """
        flow = self.get_flow(request_token)
        if not can_transition(flow.state, FlowState.ACTIVE):
            raise InvalidFlowTransitionError(
                f"Flow is not awaiting authorization (state {flow.state.value})"
            )

        try:
            grant = self.adapter_for(flow.provider).complete_connection(
                flow.requisition_id, authorization_code
            )
        except ProviderError as e:
            logger.error(f"Completing {flow.provider} connection failed: {e}")
            with self.database.session_scope() as session:
                row = self._load_flow(session, request_token)
                row.last_error = str(e)
                self._advance(row, FlowState.ERROR)
                if row.connection_id is not None:
                    connection = session.get(BankConnectionRow, row.connection_id)
                    connection.status = ConnectionStatus.ERROR.value
                    connection.error_message = str(e)
            raise

        now = utc_now()
        with self.database.session_scope() as session:
            row = self._load_flow(session, request_token)
            self._advance(row, FlowState.ACTIVE)
            connection = session.get(BankConnectionRow, row.connection_id)
            connection.credentials = grant.credentials
            connection.expires_at = grant.expires_at
            connection.status = ConnectionStatus.ACTIVE.value
            connection.sync_enabled = True
            connection.next_sync_at = now
            connection.error_message = None
            if grant.institution_name:
                connection.institution_name = grant.institution_name
            self.store.set_feed_source(session, connection.account_id, connection.provider)
            info = to_connection(connection)

        logger.info(f"Connection {info.id} is active for account {info.account_id}")
        return info

    def reauthorize(self, organization_id: str, connection_id: int) -> PendingFlow:
        """Start a new flow that re-authorizes an existing connection."""
        with self.database.session_scope() as session:
            connection = load_connection(session, organization_id, connection_id)
            provider = connection.provider
            account_id = connection.account_id

        self.adapter_for(provider).require_configured()
        return self._start_flow(organization_id, provider, account_id, connection_id)

    def get_flow(self, request_token: str) -> PendingFlow:
        with self.database.session_scope() as session:
            return to_flow(self._load_flow(session, request_token))

    def purge_expired_flows(self) -> int:
        """Delete pending flows past their TTL. Returns the number removed."""
        with self.database.session_scope() as session:
            rows = session.scalars(
                select(PendingConnectionRow).where(
                    PendingConnectionRow.expires_at < utc_now()
                )
            ).all()
            for row in rows:
                session.delete(row)
            return len(rows)

    # Lifecycle

    def get_connection(self, organization_id: str, connection_id: int) -> ConnectionInfo:
        with self.database.session_scope() as session:
            return to_connection(load_connection(session, organization_id, connection_id))

    def list_connections(
        self, organization_id: str, account_id: Optional[int] = None
    ) -> list[ConnectionInfo]:
        with self.database.session_scope() as session:
            query = select(BankConnectionRow).where(
                BankConnectionRow.organization_id == organization_id
            )
            if account_id is not None:
                query = query.where(BankConnectionRow.account_id == account_id)
            rows = session.scalars(query.order_by(BankConnectionRow.id)).all()
            return [to_connection(r) for r in rows]

    def set_sync_enabled(
        self, organization_id: str, connection_id: int, enabled: bool
    ) -> ConnectionInfo:
        with self.database.session_scope() as session:
            row = load_connection(session, organization_id, connection_id)
            if enabled and row.status in (
                ConnectionStatus.PENDING.value,
                ConnectionStatus.REVOKED.value,
            ):
                raise ConnectionNotActiveError(
                    f"Connection {connection_id} is {row.status} and cannot sync"
                )
            row.sync_enabled = enabled
            if enabled and row.next_sync_at is None:
                row.next_sync_at = utc_now()
            return to_connection(row)

    def disconnect(self, organization_id: str, connection_id: int) -> ConnectionInfo:
        """
        Revoke a connection.

        Revocation at the aggregator is best effort; the connection is
        marked revoked locally either way.
        """
        with self.database.session_scope() as session:
            row = load_connection(session, organization_id, connection_id)
            provider = row.provider
            credentials = dict(row.credentials or {})

        if credentials and provider in self.adapters:
            if not self.adapters[provider].revoke(credentials):
                logger.warning(
                    f"Provider {provider} did not confirm revocation of connection "
                    f"{connection_id}"
                )

        with self.database.session_scope() as session:
            row = load_connection(session, organization_id, connection_id)
            row.status = ConnectionStatus.REVOKED.value
            row.sync_enabled = False
            row.next_sync_at = None
            row.credentials = None
            info = to_connection(row)

        logger.info(f"Disconnected connection {connection_id}")
        return info

    # Internals

    def _start_flow(
        self,
        organization_id: str,
        provider: str,
        account_id: Optional[int],
        connection_id: Optional[int],
    ) -> PendingFlow:
        ttl = timedelta(minutes=self.config.sync.pending_flow_ttl_minutes)
        with self.database.session_scope() as session:
            if account_id is not None:
                self.store.load_account(session, organization_id, account_id)
            row = PendingConnectionRow(
                request_token=secrets.token_urlsafe(32),
                organization_id=organization_id,
                state=FlowState.PROVIDER_SELECTED.value,
                provider=provider,
                account_id=account_id,
                connection_id=connection_id,
                expires_at=utc_now() + ttl,
            )
            session.add(row)
            session.flush()
            logger.info(f"Started {provider} connection flow for {organization_id}")
            return to_flow(row)

    def _load_flow(self, session: Session, request_token: str) -> PendingConnectionRow:
        row = session.get(PendingConnectionRow, request_token)
        if row is None:
            raise FlowNotFoundError("Unknown connection request token")
        if row.expires_at < utc_now():
            raise FlowExpiredError("Connection request has expired, start again")
        return row

    @staticmethod
    def _advance(row: PendingConnectionRow, target: FlowState) -> None:
        current = FlowState(row.state)
        if not can_transition(current, target):
            raise InvalidFlowTransitionError(
                f"Cannot move connection flow from {current.value} to {target.value}"
            )
        row.state = target.value

    def _pending_connection(
        self, session: Session, flow: PendingConnectionRow
    ) -> BankConnectionRow:
        """Create the connection row for a flow, or reuse the one being re-authorized."""
        if flow.connection_id is not None:
            row = load_connection(session, flow.organization_id, flow.connection_id)
            row.account_id = flow.account_id
        else:
            row = BankConnectionRow(
                organization_id=flow.organization_id,
                account_id=flow.account_id,
                provider=flow.provider,
                sync_interval_hours=self.config.sync.default_interval_hours,
            )
            session.add(row)

        row.status = ConnectionStatus.PENDING.value
        row.sync_enabled = False
        row.institution_id = flow.institution_id
        row.institution_name = flow.institution_name
        row.institution_logo = flow.institution_logo
        row.error_message = None
        session.flush()
        return row
