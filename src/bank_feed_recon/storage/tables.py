"""
ORM table models.

Tables:
- bank_accounts: accounts owned by an organization
- bank_transactions: imported statement lines, one row per fingerprint
- bank_import_history: one row per file import
- counterparts: open invoices and payments available for matching
- recurring_models: recurring allocation rules
- reconciliations / reconciliation_lines: committed matches
- bank_connections / bank_connection_sync_logs: aggregator feeds
- pending_connections: server-side connection handshake state
"""

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    Date,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import relationship

from .database import Base, utc_now


class BankAccountRow(Base):
    __tablename__ = "bank_accounts"

    id = Column(Integer, primary_key=True, autoincrement=True)
    organization_id = Column(String(64), nullable=False, index=True)
    name = Column(String(255), nullable=False)
    account_number = Column(String(64), nullable=True)
    currency_code = Column(String(3), nullable=False, default="EUR")
    opening_balance = Column(Numeric(14, 2), nullable=False, default=0)
    bank_feeds_source = Column(String(32), nullable=False, default="manual")
    created_at = Column(DateTime, nullable=False, default=utc_now)

    transactions = relationship("BankTransactionRow", back_populates="account")


class BankTransactionRow(Base):
    """
    Imported bank transaction.

    Amount and date never change after insert. Reconciliation only flips
    is_reconciled, guarded by a conditional update.
    """

    __tablename__ = "bank_transactions"

    id = Column(Integer, primary_key=True, autoincrement=True)
    account_id = Column(Integer, ForeignKey("bank_accounts.id"), nullable=False)

    date = Column(Date, nullable=False)
    amount = Column(Numeric(14, 2), nullable=False)
    currency_code = Column(String(3), nullable=False)
    payment_ref = Column(Text, nullable=False, default="")
    partner_name = Column(String(255), nullable=True)
    account_number = Column(String(64), nullable=True)
    transaction_type = Column(String(64), nullable=True)
    external_id = Column(String(255), nullable=True)
    source = Column(String(32), nullable=False, default="file")
    details = Column(JSON, nullable=True)

    sequence = Column(Integer, nullable=False, default=0)
    running_balance = Column(Numeric(14, 2), nullable=True)
    fingerprint = Column(String(64), nullable=False)

    is_reconciled = Column(Boolean, nullable=False, default=False)
    checked = Column(Boolean, nullable=False, default=False)
    notes = Column(Text, nullable=True)
    import_id = Column(Integer, ForeignKey("bank_import_history.id"), nullable=True)
    created_at = Column(DateTime, nullable=False, default=utc_now)

    account = relationship("BankAccountRow", back_populates="transactions")

    __table_args__ = (
        UniqueConstraint("account_id", "fingerprint", name="uq_bank_transactions_fingerprint"),
        Index("ix_bank_transactions_account_date", "account_id", "date", "sequence"),
    )


class ImportHistoryRow(Base):
    __tablename__ = "bank_import_history"

    id = Column(Integer, primary_key=True, autoincrement=True)
    account_id = Column(Integer, ForeignKey("bank_accounts.id"), nullable=False, index=True)
    filename = Column(String(255), nullable=True)
    format = Column(String(16), nullable=True)
    source = Column(String(32), nullable=False, default="file")
    status = Column(String(16), nullable=False, default="processing")
    transactions_count = Column(Integer, nullable=False, default=0)
    imported = Column(Integer, nullable=False, default=0)
    skipped = Column(Integer, nullable=False, default=0)
    total_amount = Column(Numeric(14, 2), nullable=False, default=0)
    error_message = Column(Text, nullable=True)
    created_at = Column(DateTime, nullable=False, default=utc_now)
    completed_at = Column(DateTime, nullable=True)


class CounterpartRow(Base):
    """
    Open invoice or payment.

    version is the optimistic lock column: every claim bumps it, and a claim
    only applies if the version read earlier is still current.
    """

    __tablename__ = "counterparts"

    id = Column(Integer, primary_key=True, autoincrement=True)
    organization_id = Column(String(64), nullable=False, index=True)
    kind = Column(String(16), nullable=False)  # invoice | payment
    reference = Column(String(128), nullable=False, default="")
    partner_name = Column(String(255), nullable=True)
    amount = Column(Numeric(14, 2), nullable=False)
    open_amount = Column(Numeric(14, 2), nullable=False)
    currency_code = Column(String(3), nullable=False)
    direction = Column(String(16), nullable=False)  # inbound | outbound
    date = Column(Date, nullable=True)
    due_date = Column(Date, nullable=True)
    active = Column(Boolean, nullable=False, default=True)
    version = Column(Integer, nullable=False, default=1)


class RecurringModelRow(Base):
    __tablename__ = "recurring_models"

    id = Column(Integer, primary_key=True, autoincrement=True)
    organization_id = Column(String(64), nullable=False, index=True)
    name = Column(String(255), nullable=False)
    partner_name = Column(String(255), nullable=True)
    amount = Column(Numeric(14, 2), nullable=True)
    currency_code = Column(String(3), nullable=False)
    match_nature = Column(String(20), nullable=False, default="both")
    amount_condition = Column(String(10), nullable=True)
    amount_min = Column(Numeric(14, 2), nullable=True)
    amount_max = Column(Numeric(14, 2), nullable=True)
    label_match = Column(String(20), nullable=True)
    label_param = Column(String(255), nullable=True)
    next_date = Column(Date, nullable=True)
    active = Column(Boolean, nullable=False, default=True)


class ReconciliationRow(Base):
    """One record per reconciled transaction; the primary key forbids a second."""

    __tablename__ = "reconciliations"

    transaction_id = Column(Integer, ForeignKey("bank_transactions.id"), primary_key=True)
    organization_id = Column(String(64), nullable=False, index=True)
    total_allocated = Column(Numeric(14, 2), nullable=False)
    residual = Column(Numeric(14, 2), nullable=False)
    created_at = Column(DateTime, nullable=False, default=utc_now)

    lines = relationship(
        "ReconciliationLineRow",
        back_populates="reconciliation",
        cascade="all, delete-orphan",
        order_by="ReconciliationLineRow.id",
    )


class ReconciliationLineRow(Base):
    __tablename__ = "reconciliation_lines"

    id = Column(Integer, primary_key=True, autoincrement=True)
    transaction_id = Column(
        Integer, ForeignKey("reconciliations.transaction_id"), nullable=False, index=True
    )
    counterpart_type = Column(String(20), nullable=False)
    counterpart_id = Column(Integer, nullable=False)
    allocated_amount = Column(Numeric(14, 2), nullable=False)

    reconciliation = relationship("ReconciliationRow", back_populates="lines")


class BankConnectionRow(Base):
    __tablename__ = "bank_connections"

    id = Column(Integer, primary_key=True, autoincrement=True)
    organization_id = Column(String(64), nullable=False, index=True)
    account_id = Column(Integer, ForeignKey("bank_accounts.id"), nullable=False, index=True)
    provider = Column(String(32), nullable=False)
    institution_id = Column(String(128), nullable=True)
    institution_name = Column(String(255), nullable=True)
    institution_logo = Column(String(512), nullable=True)
    status = Column(String(16), nullable=False, default="pending")
    sync_enabled = Column(Boolean, nullable=False, default=False)
    sync_interval_hours = Column(Integer, nullable=False, default=6)
    last_sync_at = Column(DateTime, nullable=True)
    next_sync_at = Column(DateTime, nullable=True)
    expires_at = Column(DateTime, nullable=True)
    error_message = Column(Text, nullable=True)
    credentials = Column(JSON, nullable=True)
    created_at = Column(DateTime, nullable=False, default=utc_now)
    updated_at = Column(DateTime, nullable=False, default=utc_now, onupdate=utc_now)

    sync_logs = relationship(
        "ConnectionSyncLogRow",
        back_populates="connection",
        order_by="ConnectionSyncLogRow.id",
    )


class ConnectionSyncLogRow(Base):
    __tablename__ = "bank_connection_sync_logs"

    id = Column(Integer, primary_key=True, autoincrement=True)
    connection_id = Column(
        Integer, ForeignKey("bank_connections.id"), nullable=False, index=True
    )
    status = Column(String(16), nullable=False)  # success | error
    manual = Column(Boolean, nullable=False, default=False)
    since = Column(Date, nullable=True)
    transactions_count = Column(Integer, nullable=False, default=0)
    imported = Column(Integer, nullable=False, default=0)
    error_message = Column(Text, nullable=True)
    created_at = Column(DateTime, nullable=False, default=utc_now)

    connection = relationship("BankConnectionRow", back_populates="sync_logs")


class PendingConnectionRow(Base):
    """Connection handshake in progress, keyed by an unguessable request token."""

    __tablename__ = "pending_connections"

    request_token = Column(String(64), primary_key=True)
    organization_id = Column(String(64), nullable=False, index=True)
    state = Column(String(40), nullable=False)
    provider = Column(String(32), nullable=False)
    country = Column(String(2), nullable=True)
    institution_id = Column(String(128), nullable=True)
    institution_name = Column(String(255), nullable=True)
    institution_logo = Column(String(512), nullable=True)
    account_id = Column(Integer, ForeignKey("bank_accounts.id"), nullable=True)
    connection_id = Column(Integer, ForeignKey("bank_connections.id"), nullable=True)
    requisition_id = Column(String(128), nullable=True)
    authorization_url = Column(Text, nullable=True)
    link_token = Column(String(255), nullable=True)
    last_error = Column(Text, nullable=True)
    expires_at = Column(DateTime, nullable=False)
    created_at = Column(DateTime, nullable=False, default=utc_now)
    updated_at = Column(DateTime, nullable=False, default=utc_now, onupdate=utc_now)
