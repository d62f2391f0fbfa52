"""
Import pipeline: parse, deduplicate and persist bank transactions.
"""

from decimal import Decimal
from typing import Optional
import logging
import threading

from .fingerprint import compute_fingerprint
from ..config import ReconConfig
from ..models.transaction import (
    ImportResult,
    ParsedTransaction,
    StatementPreview,
    TransactionSourceKind,
)
from ..parsers import parse_statement
from ..storage.database import Database, utc_now
from ..storage.tables import BankTransactionRow, ImportHistoryRow
from ..storage.transaction_store import TransactionStore
from ..utils.exceptions import (
    ImportLockTimeoutError,
    OperationCancelledError,
    PersistenceError,
)

logger = logging.getLogger(__name__)


class ImportPipeline:
    """
    Turns statement files and provider batches into stored transactions.

    Every batch is written in a single database transaction. Commits for one
    account are serialized with a per-account lock; different accounts import
    concurrently.
    """

    def __init__(
        self,
        database: Database,
        store: TransactionStore,
        config: Optional[ReconConfig] = None,
    ):
        self.database = database
        self.store = store
        self.config = config or ReconConfig()
        self._account_locks: dict[int, threading.Lock] = {}
        self._locks_guard = threading.Lock()

    def preview(
        self,
        organization_id: str,
        account_id: int,
        content: bytes,
        filename: Optional[str] = None,
        format_hint: Optional[str] = None,
    ) -> StatementPreview:
        """
        Parse a statement for display without persisting anything.

        Args:
            organization_id: Acting organization
            account_id: Target bank account
            content: Raw file bytes
            filename: Original file name
            format_hint: Explicit format, skips detection

        Returns:
            StatementPreview

        Raises:
            InvalidAccountError: If the account is not in the organization
            FormatDetectionError: If the format is unsupported or ambiguous
            ParseError: If the file cannot be decoded
        """
        self.store.get_account(organization_id, account_id)
        return parse_statement(content, filename, format_hint, self.config)

    def commit(
        self,
        organization_id: str,
        account_id: int,
        content: bytes,
        filename: Optional[str] = None,
        format_hint: Optional[str] = None,
        preview: Optional[StatementPreview] = None,
        cancel_event: Optional[threading.Event] = None,
    ) -> ImportResult:
        """
        Import a statement file.

        A preview obtained earlier for the same content can be passed to skip
        re-parsing.

        Returns:
            ImportResult with imported and skipped counts

        Raises:
            InvalidAccountError: If the account is not in the organization
            FormatDetectionError / ParseError: If the file cannot be read
            ImportLockTimeoutError: If another import of the account is running
            OperationCancelledError: If cancel_event was set before the write
            PersistenceError: If the batch could not be written
        """
        if preview is None:
            preview = self.preview(
                organization_id, account_id, content, filename, format_hint
            )

        return self.commit_transactions(
            organization_id,
            account_id,
            preview.transactions,
            source=TransactionSourceKind.FILE.value,
            opening_balance=preview.opening_balance,
            cancel_event=cancel_event,
            filename=filename or preview.filename,
            statement_format=preview.format.value,
        )

    def commit_transactions(
        self,
        organization_id: str,
        account_id: int,
        transactions: list[ParsedTransaction],
        source: str,
        opening_balance: Optional[Decimal] = None,
        cancel_event: Optional[threading.Event] = None,
        filename: Optional[str] = None,
        statement_format: Optional[str] = None,
    ) -> ImportResult:
        """
        Deduplicate and persist already-normalized transactions.

        Shared by file imports and provider sync.

        Args:
            organization_id: Acting organization
            account_id: Target bank account
            transactions: Normalized transactions in source order
            source: "file" or the provider key
            opening_balance: Statement opening balance, applied to empty accounts
            cancel_event: Set by the caller to abandon the import
            filename: Original file name, for the import history
            statement_format: Statement format, for the import history

        Returns:
            ImportResult
        """
        self.store.get_account(organization_id, account_id)

        lock = self._lock_for(account_id)
        timeout = self.config.importing.lock_timeout_seconds
        if not lock.acquire(timeout=timeout):
            raise ImportLockTimeoutError(
                f"Another import for account {account_id} is still running"
            )

        try:
            if cancel_event is not None and cancel_event.is_set():
                logger.info(f"Import into account {account_id} cancelled before write")
                raise OperationCancelledError("Import cancelled")

            history_id = self._start_history(
                account_id, filename, statement_format, source, len(transactions)
            )
            try:
                result = self._write_batch(
                    organization_id,
                    account_id,
                    transactions,
                    source,
                    opening_balance,
                    history_id,
                )
            except Exception as e:
                # session_scope already rolled the batch back
                self._fail_history(history_id, str(e))
                raise
        finally:
            lock.release()

        logger.info(
            f"Imported {result.imported} of {result.total_count} transactions into "
            f"account {account_id} ({result.skipped} skipped)"
        )
        return result

    def _write_batch(
        self,
        organization_id: str,
        account_id: int,
        transactions: list[ParsedTransaction],
        source: str,
        opening_balance: Optional[Decimal],
        history_id: int,
    ) -> ImportResult:
        imported = 0
        skipped = 0
        total_amount = Decimal("0")

        with self.database.session_scope() as session:
            account = self.store.load_account(session, organization_id, account_id)

            if opening_balance is not None and not self.store.has_transactions(
                session, account_id
            ):
                account.opening_balance = opening_balance

            fingerprints = [
                compute_fingerprint(account_id, t.date, t.amount, t.payment_ref)
                for t in transactions
            ]
            seen = self.store.existing_fingerprints(session, account_id, fingerprints)
            sequence = self.store.next_sequence(session, account_id)

            new_rows: list[BankTransactionRow] = []
            for txn, fingerprint in zip(transactions, fingerprints):
                if fingerprint in seen:
                    skipped += 1
                    continue
                seen.add(fingerprint)

                if txn.currency and txn.currency.upper() != account.currency_code:
                    logger.warning(
                        f"Transaction currency {txn.currency} differs from account "
                        f"currency {account.currency_code}"
                    )

                new_rows.append(
                    BankTransactionRow(
                        account_id=account_id,
                        date=txn.date,
                        amount=txn.amount,
                        currency_code=(txn.currency or account.currency_code).upper(),
                        payment_ref=txn.payment_ref or "",
                        partner_name=txn.partner_name,
                        account_number=txn.account_number,
                        transaction_type=txn.transaction_type,
                        external_id=txn.external_id,
                        source=source,
                        details=_json_safe(txn.raw),
                        sequence=sequence,
                        fingerprint=fingerprint,
                        is_reconciled=False,
                        checked=False,
                        import_id=history_id,
                    )
                )
                sequence += 1
                imported += 1
                total_amount += txn.amount

            if new_rows:
                session.add_all(new_rows)
                session.flush()
                self.store.recompute_running_balances(
                    session, account_id, min(r.date for r in new_rows)
                )

            history = session.get(ImportHistoryRow, history_id)
            history.status = "completed"
            history.imported = imported
            history.skipped = skipped
            history.total_amount = total_amount
            history.completed_at = utc_now()

        return ImportResult(
            account_id=account_id,
            total_count=len(transactions),
            imported=imported,
            skipped=skipped,
            total_amount=total_amount,
            import_id=history_id,
        )

    def _start_history(
        self,
        account_id: int,
        filename: Optional[str],
        statement_format: Optional[str],
        source: str,
        count: int,
    ) -> int:
        with self.database.session_scope() as session:
            row = ImportHistoryRow(
                account_id=account_id,
                filename=filename,
                format=statement_format,
                source=source,
                status="processing",
                transactions_count=count,
            )
            session.add(row)
            session.flush()
            return row.id

    def _fail_history(self, history_id: int, message: str) -> None:
        try:
            with self.database.session_scope() as session:
                history = session.get(ImportHistoryRow, history_id)
                if history is not None:
                    history.status = "failed"
                    history.error_message = message[:2000]
                    history.completed_at = utc_now()
        except PersistenceError as e:
            logger.error(f"Could not record failed import {history_id}: {e}")

    def _lock_for(self, account_id: int) -> threading.Lock:
        with self._locks_guard:
            lock = self._account_locks.get(account_id)
            if lock is None:
                lock = threading.Lock()
                self._account_locks[account_id] = lock
            return lock


def _json_safe(raw: dict) -> dict:
    """Stringify values the JSON column cannot store."""
    safe = {}
    for key, value in (raw or {}).items():
        if value is None or isinstance(value, (str, int, float, bool)):
            safe[str(key)] = value
        elif isinstance(value, (list, tuple)):
            safe[str(key)] = [str(v) for v in value]
        else:
            safe[str(key)] = str(value)
    return safe
