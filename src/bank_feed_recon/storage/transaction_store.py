"""
Persistence for bank accounts and bank transactions.
"""

from datetime import date
from decimal import Decimal
from typing import Iterable, Optional
import logging

from sqlalchemy import func, select, update
from sqlalchemy.orm import Session

from .database import Database
from .tables import BankAccountRow, BankTransactionRow, ImportHistoryRow
from ..models.transaction import BankAccount, BankTransaction
from ..utils.exceptions import (
    InvalidAccountError,
    TransactionNotFoundError,
    TransactionReconciledError,
)

logger = logging.getLogger(__name__)


def to_account(row: BankAccountRow) -> BankAccount:
    return BankAccount(
        id=row.id,
        organization_id=row.organization_id,
        name=row.name,
        currency_code=row.currency_code,
        account_number=row.account_number,
        opening_balance=Decimal(row.opening_balance or 0),
        bank_feeds_source=row.bank_feeds_source,
    )


def to_transaction(row: BankTransactionRow) -> BankTransaction:
    return BankTransaction(
        id=row.id,
        account_id=row.account_id,
        date=row.date,
        amount=Decimal(row.amount),
        currency_code=row.currency_code,
        payment_ref=row.payment_ref or "",
        partner_name=row.partner_name,
        account_number=row.account_number,
        transaction_type=row.transaction_type,
        external_id=row.external_id,
        source=row.source,
        sequence=row.sequence,
        running_balance=(
            Decimal(row.running_balance) if row.running_balance is not None else None
        ),
        fingerprint=row.fingerprint,
        is_reconciled=bool(row.is_reconciled),
        checked=bool(row.checked),
        notes=row.notes,
    )


class TransactionStore:
    """
    Owns bank accounts and their transactions.

    Methods taking a session participate in the caller's database transaction;
    the rest open their own.
    """

    def __init__(self, database: Database):
        self.database = database

    # Accounts

    def create_account(
        self,
        organization_id: str,
        name: str,
        currency_code: str = "EUR",
        account_number: Optional[str] = None,
        opening_balance: Decimal = Decimal("0"),
    ) -> BankAccount:
        with self.database.session_scope() as session:
            row = BankAccountRow(
                organization_id=organization_id,
                name=name,
                currency_code=currency_code.upper(),
                account_number=account_number,
                opening_balance=opening_balance,
            )
            session.add(row)
            session.flush()
            logger.info(f"Created bank account {row.id} '{name}' for {organization_id}")
            return to_account(row)

    def get_account(self, organization_id: str, account_id: int) -> BankAccount:
        with self.database.session_scope() as session:
            return to_account(self.load_account(session, organization_id, account_id))

    def list_accounts(self, organization_id: str) -> list[BankAccount]:
        with self.database.session_scope() as session:
            rows = session.scalars(
                select(BankAccountRow)
                .where(BankAccountRow.organization_id == organization_id)
                .order_by(BankAccountRow.id)
            ).all()
            return [to_account(r) for r in rows]

    def rename_account(self, organization_id: str, account_id: int, name: str) -> BankAccount:
        with self.database.session_scope() as session:
            row = self.load_account(session, organization_id, account_id)
            row.name = name
            return to_account(row)

    def load_account(
        self, session: Session, organization_id: str, account_id: int
    ) -> BankAccountRow:
        """
        Load an account row scoped to the organization.

        Raises:
            InvalidAccountError: If the account is missing or belongs elsewhere
        """
        row = session.get(BankAccountRow, account_id)
        if row is None or row.organization_id != organization_id:
            raise InvalidAccountError(
                f"Bank account {account_id} not found for organization {organization_id}"
            )
        return row

    # Transactions

    def get_transaction(self, organization_id: str, transaction_id: int) -> BankTransaction:
        with self.database.session_scope() as session:
            return to_transaction(
                self.load_transaction(session, organization_id, transaction_id)
            )

    def load_transaction(
        self, session: Session, organization_id: str, transaction_id: int
    ) -> BankTransactionRow:
        """
        Load a transaction row scoped to the organization.

        Raises:
            TransactionNotFoundError: If missing or owned by another organization
        """
        row = session.execute(
            select(BankTransactionRow)
            .join(BankAccountRow, BankAccountRow.id == BankTransactionRow.account_id)
            .where(
                BankTransactionRow.id == transaction_id,
                BankAccountRow.organization_id == organization_id,
            )
        ).scalar_one_or_none()
        if row is None:
            raise TransactionNotFoundError(f"Bank transaction {transaction_id} not found")
        return row

    def list_transactions(
        self,
        organization_id: str,
        account_id: int,
        reconciled: Optional[bool] = None,
        limit: Optional[int] = None,
    ) -> list[BankTransaction]:
        with self.database.session_scope() as session:
            self.load_account(session, organization_id, account_id)
            query = select(BankTransactionRow).where(
                BankTransactionRow.account_id == account_id
            )
            if reconciled is not None:
                query = query.where(BankTransactionRow.is_reconciled == reconciled)
            query = query.order_by(
                BankTransactionRow.date, BankTransactionRow.sequence, BankTransactionRow.id
            )
            if limit:
                query = query.limit(limit)
            return [to_transaction(r) for r in session.scalars(query).all()]

    def update_metadata(
        self,
        organization_id: str,
        transaction_id: int,
        partner_name: Optional[str] = None,
        notes: Optional[str] = None,
        checked: Optional[bool] = None,
    ) -> BankTransaction:
        """Correct descriptive fields. Allowed on reconciled transactions too."""
        with self.database.session_scope() as session:
            row = self.load_transaction(session, organization_id, transaction_id)
            if partner_name is not None:
                row.partner_name = partner_name
            if notes is not None:
                row.notes = notes
            if checked is not None:
                row.checked = checked
            return to_transaction(row)

    def delete_transaction(self, organization_id: str, transaction_id: int) -> None:
        """
        Delete an unreconciled transaction and rebalance the account.

        Raises:
            TransactionNotFoundError: If the transaction does not exist
            TransactionReconciledError: If the transaction is reconciled
        """
        with self.database.session_scope() as session:
            row = self.load_transaction(session, organization_id, transaction_id)
            if row.is_reconciled:
                raise TransactionReconciledError(
                    f"Bank transaction {transaction_id} is reconciled and cannot be deleted"
                )
            account_id, txn_date = row.account_id, row.date
            session.delete(row)
            session.flush()
            self.recompute_running_balances(session, account_id, txn_date)
            logger.info(f"Deleted bank transaction {transaction_id}")

    def existing_fingerprints(
        self, session: Session, account_id: int, fingerprints: Iterable[str]
    ) -> set[str]:
        wanted = list(set(fingerprints))
        if not wanted:
            return set()
        found: set[str] = set()
        # Chunked to stay under SQLite's bound parameter limit
        for start in range(0, len(wanted), 500):
            chunk = wanted[start : start + 500]
            found.update(
                session.scalars(
                    select(BankTransactionRow.fingerprint).where(
                        BankTransactionRow.account_id == account_id,
                        BankTransactionRow.fingerprint.in_(chunk),
                    )
                ).all()
            )
        return found

    def has_transactions(self, session: Session, account_id: int) -> bool:
        count = session.scalar(
            select(func.count(BankTransactionRow.id)).where(
                BankTransactionRow.account_id == account_id
            )
        )
        return bool(count)

    def next_sequence(self, session: Session, account_id: int) -> int:
        current = session.scalar(
            select(func.max(BankTransactionRow.sequence)).where(
                BankTransactionRow.account_id == account_id
            )
        )
        return (current or 0) + 1

    def recompute_running_balances(
        self, session: Session, account_id: int, from_date: date
    ) -> int:
        """
        Recompute running balances from a date onward.

        Starts from the balance of the last transaction dated before from_date,
        or from the account opening balance.

        Returns:
            Number of transactions updated
        """
        anchor = session.execute(
            select(BankTransactionRow.running_balance)
            .where(
                BankTransactionRow.account_id == account_id,
                BankTransactionRow.date < from_date,
            )
            .order_by(
                BankTransactionRow.date.desc(),
                BankTransactionRow.sequence.desc(),
                BankTransactionRow.id.desc(),
            )
            .limit(1)
        ).first()

        if anchor is not None and anchor[0] is not None:
            balance = Decimal(anchor[0])
        else:
            account = session.get(BankAccountRow, account_id)
            balance = Decimal(account.opening_balance or 0)

        rows = session.scalars(
            select(BankTransactionRow)
            .where(
                BankTransactionRow.account_id == account_id,
                BankTransactionRow.date >= from_date,
            )
            .order_by(
                BankTransactionRow.date,
                BankTransactionRow.sequence,
                BankTransactionRow.id,
            )
        ).all()

        for row in rows:
            balance += Decimal(row.amount)
            row.running_balance = balance

        return len(rows)

    def account_balance(self, organization_id: str, account_id: int) -> Decimal:
        """Opening balance plus every transaction."""
        with self.database.session_scope() as session:
            account = self.load_account(session, organization_id, account_id)
            total = session.scalar(
                select(func.coalesce(func.sum(BankTransactionRow.amount), 0)).where(
                    BankTransactionRow.account_id == account_id
                )
            )
            return Decimal(account.opening_balance or 0) + Decimal(str(total))

    def mark_reconciled(self, session: Session, transaction_id: int) -> bool:
        """
        Flip is_reconciled from false to true.

        Returns:
            False if another caller already reconciled the transaction
        """
        result = session.execute(
            update(BankTransactionRow)
            .where(
                BankTransactionRow.id == transaction_id,
                BankTransactionRow.is_reconciled.is_(False),
            )
            .values(is_reconciled=True, checked=True)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    # Import history

    def list_import_history(
        self, organization_id: str, account_id: int, limit: int = 20
    ) -> list[dict]:
        with self.database.session_scope() as session:
            self.load_account(session, organization_id, account_id)
            rows = session.scalars(
                select(ImportHistoryRow)
                .where(ImportHistoryRow.account_id == account_id)
                .order_by(ImportHistoryRow.id.desc())
                .limit(limit)
            ).all()
            return [
                {
                    "id": r.id,
                    "filename": r.filename,
                    "format": r.format,
                    "source": r.source,
                    "status": r.status,
                    "transactions_count": r.transactions_count,
                    "imported": r.imported,
                    "skipped": r.skipped,
                    "total_amount": Decimal(r.total_amount or 0),
                    "error_message": r.error_message,
                    "created_at": r.created_at,
                    "completed_at": r.completed_at,
                }
                for r in rows
            ]

    def set_feed_source(self, session: Session, account_id: int, source: str) -> None:
        account = session.get(BankAccountRow, account_id)
        if account is not None:
            account.bank_feeds_source = source
            logger.debug(f"Account {account_id} feed source set to {source}")
