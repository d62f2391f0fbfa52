"""
Counterpart service: open invoices, payments and recurring models.

The engine only needs the matching fields of these documents. SqlCounterpartService
keeps them in local tables; another implementation can front an accounting system
as long as it honours the CounterpartService protocol.
"""

from datetime import date
from decimal import Decimal
from typing import Optional, Protocol
import logging

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from .database import Database
from .tables import CounterpartRow, RecurringModelRow
from ..models.matching import CandidateType, Direction, OpenItem, RecurringModelRule
from ..utils.exceptions import (
    InvalidMatchSelectionError,
    MatchAlreadyClaimedError,
    MatchNotFoundError,
)

logger = logging.getLogger(__name__)


class CounterpartService(Protocol):
    """Source of matchable documents and owner of their open balances."""

    def list_open(
        self,
        session: Session,
        organization_id: str,
        currency_code: Optional[str] = None,
        direction: Optional[Direction] = None,
        since: Optional[date] = None,
    ) -> list[OpenItem]: ...

    def list_recurring_models(
        self,
        session: Session,
        organization_id: str,
        currency_code: Optional[str] = None,
    ) -> list[RecurringModelRule]: ...

    def get_open_item(
        self, session: Session, organization_id: str, kind: CandidateType, item_id: int
    ) -> OpenItem: ...

    def get_recurring_model(
        self, session: Session, organization_id: str, model_id: int
    ) -> RecurringModelRule: ...

    def claim(self, session: Session, item: OpenItem, allocated: Decimal) -> None: ...


def to_open_item(row: CounterpartRow) -> OpenItem:
    return OpenItem(
        kind=CandidateType(row.kind),
        id=row.id,
        organization_id=row.organization_id,
        reference=row.reference or "",
        amount=Decimal(row.amount),
        open_amount=Decimal(row.open_amount),
        currency_code=row.currency_code,
        direction=Direction(row.direction),
        date=row.date,
        due_date=row.due_date,
        partner_name=row.partner_name,
        version=row.version,
    )


def to_rule(row: RecurringModelRow) -> RecurringModelRule:
    return RecurringModelRule(
        id=row.id,
        organization_id=row.organization_id,
        name=row.name,
        currency_code=row.currency_code,
        partner_name=row.partner_name,
        amount=Decimal(row.amount) if row.amount is not None else None,
        match_nature=row.match_nature,
        amount_condition=row.amount_condition,
        amount_min=Decimal(row.amount_min) if row.amount_min is not None else None,
        amount_max=Decimal(row.amount_max) if row.amount_max is not None else None,
        label_match=row.label_match,
        label_param=row.label_param,
        next_date=row.next_date,
    )


class SqlCounterpartService:
    """CounterpartService over the counterparts and recurring_models tables."""

    def __init__(self, database: Database):
        self.database = database

    def add_counterpart(
        self,
        organization_id: str,
        kind: CandidateType,
        reference: str,
        amount: Decimal,
        currency_code: str,
        direction: Direction,
        partner_name: Optional[str] = None,
        doc_date: Optional[date] = None,
        due_date: Optional[date] = None,
        open_amount: Optional[Decimal] = None,
    ) -> OpenItem:
        if kind == CandidateType.RECURRING_MODEL:
            raise InvalidMatchSelectionError("Recurring models are added with add_recurring_model")

        with self.database.session_scope() as session:
            row = CounterpartRow(
                organization_id=organization_id,
                kind=kind.value,
                reference=reference,
                partner_name=partner_name,
                amount=amount,
                open_amount=amount if open_amount is None else open_amount,
                currency_code=currency_code.upper(),
                direction=direction.value,
                date=doc_date,
                due_date=due_date,
                active=True,
                version=1,
            )
            session.add(row)
            session.flush()
            return to_open_item(row)

    def add_recurring_model(
        self,
        organization_id: str,
        name: str,
        currency_code: str,
        partner_name: Optional[str] = None,
        amount: Optional[Decimal] = None,
        match_nature: str = "both",
        amount_condition: Optional[str] = None,
        amount_min: Optional[Decimal] = None,
        amount_max: Optional[Decimal] = None,
        label_match: Optional[str] = None,
        label_param: Optional[str] = None,
        next_date: Optional[date] = None,
    ) -> RecurringModelRule:
        with self.database.session_scope() as session:
            row = RecurringModelRow(
                organization_id=organization_id,
                name=name,
                partner_name=partner_name,
                amount=amount,
                currency_code=currency_code.upper(),
                match_nature=match_nature,
                amount_condition=amount_condition,
                amount_min=amount_min,
                amount_max=amount_max,
                label_match=label_match,
                label_param=label_param,
                next_date=next_date,
                active=True,
            )
            session.add(row)
            session.flush()
            return to_rule(row)

    def deactivate(self, organization_id: str, kind: CandidateType, item_id: int) -> None:
        with self.database.session_scope() as session:
            if kind == CandidateType.RECURRING_MODEL:
                row = session.get(RecurringModelRow, item_id)
            else:
                row = session.get(CounterpartRow, item_id)
            if row is None or row.organization_id != organization_id:
                raise MatchNotFoundError(f"{kind.value} {item_id} not found")
            row.active = False

    def list_open(
        self,
        session: Session,
        organization_id: str,
        currency_code: Optional[str] = None,
        direction: Optional[Direction] = None,
        since: Optional[date] = None,
    ) -> list[OpenItem]:
        """
        Active invoices and payments with an open balance.

        Args:
            session: Active database session
            organization_id: Acting organization
            currency_code: Only documents in this currency
            direction: Only inbound or outbound documents
            since: Only documents dated on or after this day (undated always kept)

        Returns:
            List of open items
        """
        query = select(CounterpartRow).where(
            CounterpartRow.organization_id == organization_id,
            CounterpartRow.active.is_(True),
            CounterpartRow.open_amount > 0,
        )
        if currency_code:
            query = query.where(CounterpartRow.currency_code == currency_code.upper())
        if direction is not None:
            query = query.where(CounterpartRow.direction == direction.value)
        if since is not None:
            query = query.where(
                (CounterpartRow.date.is_(None)) | (CounterpartRow.date >= since)
            )
        return [to_open_item(r) for r in session.scalars(query.order_by(CounterpartRow.id))]

    def list_recurring_models(
        self,
        session: Session,
        organization_id: str,
        currency_code: Optional[str] = None,
    ) -> list[RecurringModelRule]:
        query = select(RecurringModelRow).where(
            RecurringModelRow.organization_id == organization_id,
            RecurringModelRow.active.is_(True),
        )
        if currency_code:
            query = query.where(RecurringModelRow.currency_code == currency_code.upper())
        return [to_rule(r) for r in session.scalars(query.order_by(RecurringModelRow.id))]

    def get_open_item(
        self, session: Session, organization_id: str, kind: CandidateType, item_id: int
    ) -> OpenItem:
        """
        Load an invoice or payment for reconciliation.

        Raises:
            MatchNotFoundError: If unknown, owned by another organization, of a
                different kind, or inactive
        """
        row = session.get(CounterpartRow, item_id)
        if (
            row is None
            or row.organization_id != organization_id
            or row.kind != kind.value
            or not row.active
        ):
            raise MatchNotFoundError(f"{kind.value} {item_id} not found")
        return to_open_item(row)

    def get_recurring_model(
        self, session: Session, organization_id: str, model_id: int
    ) -> RecurringModelRule:
        row = session.get(RecurringModelRow, model_id)
        if row is None or row.organization_id != organization_id or not row.active:
            raise MatchNotFoundError(f"recurring_model {model_id} not found")
        return to_rule(row)

    def claim(self, session: Session, item: OpenItem, allocated: Decimal) -> None:
        """
        Reduce an item's open balance if nobody changed it since it was read.

        Args:
            session: Active database session, committed by the caller
            item: Item as read earlier, carrying the version seen
            allocated: Amount to take from the open balance

        Raises:
            MatchAlreadyClaimedError: If the version moved on in the meantime
        """
        remaining = item.open_amount - allocated
        result = session.execute(
            update(CounterpartRow)
            .where(
                CounterpartRow.id == item.id,
                CounterpartRow.version == item.version,
            )
            .values(open_amount=remaining, version=item.version + 1)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise MatchAlreadyClaimedError(
                f"{item.kind.value} {item.id} was claimed by another reconciliation"
            )
        logger.debug(
            f"Claimed {allocated} from {item.kind.value} {item.id}, {remaining} left open"
        )
