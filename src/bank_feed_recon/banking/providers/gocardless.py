"""
GoCardless Bank Account Data adapter.

API Documentation: https://bankaccountdata.gocardless.com/docs/

Authorization is redirect based: an end-user agreement and a requisition are
created, the user visits the requisition link, and the bank redirects back
with the requisition id.
"""

from datetime import date, timedelta
from decimal import Decimal, InvalidOperation
from typing import Any, Optional
import logging
import threading
import time
import uuid

from .base import ProviderAdapter
from ...models.connection import (
    AuthorizationModel,
    ConnectionGrant,
    FetchedTransactions,
    InitiationResult,
    Institution,
)
from ...models.transaction import ParsedTransaction
from ...storage.database import utc_now
from ...utils.exceptions import AuthorizationExpiredError, ProviderError

logger = logging.getLogger(__name__)

# Requisition statuses meaning the user must authorize again
EXPIRED_REQUISITION_STATUSES = {"EX", "RJ", "SU"}
LINKED_STATUS = "LN"

# Error types returned once the end-user agreement has lapsed
EXPIRED_ERROR_TYPES = {"AccessExpiredError", "AccountInactiveError", "EUAExpired"}

# Refresh the access token this many seconds before it lapses
TOKEN_REFRESH_MARGIN = 60


class GoCardlessAdapter(ProviderAdapter):
    """Adapter for GoCardless Bank Account Data (formerly Nordigen)."""

    key = "gocardless"
    display_name = "GoCardless Bank Account Data"
    supported_countries = (
        "AT", "BE", "BG", "HR", "CY", "CZ", "DK", "EE", "FI", "FR",
        "DE", "GR", "HU", "IS", "IE", "IT", "LV", "LI", "LT", "LU",
        "MT", "NL", "NO", "PL", "PT", "RO", "SK", "SI", "ES", "SE",
        "GB", "CH",
    )
    authorization_model = AuthorizationModel.REDIRECT

    def __init__(self, config=None, session=None):
        super().__init__(config, session)
        self.credentials = self.config.providers.gocardless
        self._token: Optional[str] = None
        self._token_expires_at = 0.0
        self._token_lock = threading.Lock()
        self._institutions_cache: dict[str, list[Institution]] = {}

    @property
    def base_url(self) -> str:
        return self.credentials.base_url.rstrip("/")

    def is_configured(self) -> bool:
        return bool(self.credentials.secret_id and self.credentials.secret_key)

    def _access_token(self) -> str:
        """Obtain or reuse an API access token."""
        with self._token_lock:
            if self._token and time.monotonic() < self._token_expires_at:
                return self._token

            self.require_configured()
            data = self._request(
                "POST",
                "/token/new/",
                json={
                    "secret_id": self.credentials.secret_id,
                    "secret_key": self.credentials.secret_key,
                },
            )
            token = data.get("access")
            if not token:
                raise ProviderError("GoCardless did not return an access token")

            lifetime = int(data.get("access_expires", 86400))
            self._token = token
            self._token_expires_at = time.monotonic() + max(0, lifetime - TOKEN_REFRESH_MARGIN)
            logger.debug("Obtained new GoCardless access token")
            return token

    def _api(
        self,
        method: str,
        endpoint: str,
        params: Optional[dict] = None,
        json: Optional[dict] = None,
    ) -> Any:
        headers = {
            "Authorization": f"Bearer {self._access_token()}",
            "Accept": "application/json",
        }
        try:
            return self._request(method, endpoint, params=params, json=json, headers=headers)
        except AuthorizationExpiredError:
            # Token may have been revoked server side; drop it for the next call
            self._token = None
            raise
        except ProviderError as e:
            if e.error_type in EXPIRED_ERROR_TYPES:
                raise AuthorizationExpiredError(e.message, e.status_code, e.error_type)
            raise

    def list_institutions(self, country: str) -> list[Institution]:
        country = country.upper()
        if country in self._institutions_cache:
            return self._institutions_cache[country]

        data = self._api("GET", "/institutions/", params={"country": country})
        institutions = [
            Institution(
                id=self._require(item, "id", "institution"),
                name=item.get("name") or item["id"],
                logo=item.get("logo"),
                bic=item.get("bic"),
                countries=item.get("countries", []),
                transaction_total_days=_to_int(item.get("transaction_total_days")),
            )
            for item in data or []
        ]
        self._institutions_cache[country] = institutions
        logger.info(f"Loaded {len(institutions)} GoCardless institutions for {country}")
        return institutions

    def initiate_connection(
        self,
        institution_id: Optional[str],
        account_reference: str,
        redirect_uri: str,
    ) -> InitiationResult:
        if not institution_id:
            raise ProviderError("GoCardless requires an institution", error_type="validation")

        sync = self.config.sync
        agreement = self._api(
            "POST",
            "/agreements/enduser/",
            json={
                "institution_id": institution_id,
                "max_historical_days": sync.max_historical_days,
                "access_valid_for_days": sync.access_valid_for_days,
                "access_scope": ["balances", "details", "transactions"],
            },
        )
        agreement_id = self._require(agreement, "id", "agreement")

        requisition = self._api(
            "POST",
            "/requisitions/",
            json={
                "redirect": redirect_uri,
                "institution_id": institution_id,
                "agreement": agreement_id,
                "reference": f"{account_reference}-{uuid.uuid4().hex[:12]}",
                "user_language": "EN",
            },
        )

        link = requisition.get("link")
        if not link:
            raise ProviderError("GoCardless requisition has no authorization link")

        requisition_id = self._require(requisition, "id", "requisition")
        logger.info(f"Created GoCardless requisition {requisition_id}")
        return InitiationResult(
            requisition_id=requisition_id,
            authorization_url=link,
            extra={"agreement_id": agreement_id},
        )

    def complete_connection(
        self,
        requisition_id: Optional[str],
        authorization_code: Optional[str] = None,
    ) -> ConnectionGrant:
        # The redirect callback carries the requisition id (GoCardless "ref")
        requisition_id = authorization_code or requisition_id
        if not requisition_id:
            raise ProviderError("No requisition to complete", error_type="validation")

        data = self._api("GET", f"/requisitions/{requisition_id}/")
        status = data.get("status")

        if status in EXPIRED_REQUISITION_STATUSES:
            raise AuthorizationExpiredError(
                f"Requisition {requisition_id} is no longer valid (status {status})",
                error_type=status,
            )
        if status != LINKED_STATUS or not data.get("accounts"):
            raise ProviderError(
                f"Requisition {requisition_id} is not linked yet (status {status})",
                error_type="not_linked",
            )

        return ConnectionGrant(
            credentials={
                "requisition_id": requisition_id,
                "agreement_id": data.get("agreement"),
                "institution_id": data.get("institution_id"),
                "accounts": list(data["accounts"]),
            },
            expires_at=utc_now() + timedelta(days=self.config.sync.access_valid_for_days),
        )

    def fetch_transactions(
        self, credentials: dict[str, Any], since: date
    ) -> FetchedTransactions:
        include_pending = self.config.sync.include_pending
        transactions: list[ParsedTransaction] = []
        pending_skipped = 0

        for account_id in credentials.get("accounts", []):
            data = self._api(
                "GET",
                f"/accounts/{account_id}/transactions/",
                params={"date_from": since.isoformat()},
            )
            if not isinstance(data, dict):
                raise ProviderError(
                    "GoCardless transactions response is not an object",
                    error_type="invalid_response",
                )
            booked = data.get("transactions", {}).get("booked", [])
            pending = data.get("transactions", {}).get("pending", [])

            for raw in booked:
                txn = self._normalize(raw)
                if txn is not None:
                    transactions.append(txn)

            if include_pending:
                for raw in pending:
                    txn = self._normalize(raw)
                    if txn is not None:
                        transactions.append(txn)
            else:
                pending_skipped += len(pending)

        # Oldest first so running balances follow booking order
        transactions.sort(key=lambda t: t.date)
        logger.info(
            f"Fetched {len(transactions)} GoCardless transactions since {since} "
            f"({pending_skipped} pending skipped)"
        )
        return FetchedTransactions(
            transactions=transactions, since=since, pending_skipped=pending_skipped
        )

    def revoke(self, credentials: dict[str, Any]) -> bool:
        requisition_id = credentials.get("requisition_id")
        if not requisition_id:
            return False
        try:
            self._api("DELETE", f"/requisitions/{requisition_id}/")
            return True
        except ProviderError as e:
            logger.error(f"Failed to revoke GoCardless requisition {requisition_id}: {e}")
            return False

    def _normalize(self, raw: dict) -> Optional[ParsedTransaction]:
        amount_info = raw.get("transactionAmount") or {}
        booking_date = raw.get("bookingDate") or raw.get("valueDate")
        try:
            amount = Decimal(str(amount_info.get("amount")))
            txn_date = date.fromisoformat(booking_date[:10])
        except (InvalidOperation, TypeError, ValueError):
            logger.warning(f"Skipping malformed GoCardless transaction: {raw}")
            return None

        unstructured = raw.get("remittanceInformationUnstructuredArray") or []
        payment_ref = (
            raw.get("remittanceInformationUnstructured")
            or (unstructured[0] if unstructured else None)
            or raw.get("additionalInformation")
            or raw.get("endToEndId")
            or ""
        )
        if amount < 0:
            partner = raw.get("creditorName") or raw.get("debtorName")
            account = (raw.get("creditorAccount") or {}).get("iban")
        else:
            partner = raw.get("debtorName") or raw.get("creditorName")
            account = (raw.get("debtorAccount") or {}).get("iban")

        return ParsedTransaction(
            date=txn_date,
            amount=amount,
            payment_ref=payment_ref,
            partner_name=partner,
            account_number=account,
            transaction_type=raw.get("proprietaryBankTransactionCode"),
            currency=amount_info.get("currency"),
            external_id=raw.get("transactionId") or raw.get("internalTransactionId"),
            raw={"end_to_end_id": raw.get("endToEndId")},
        )


def _to_int(value: Any) -> Optional[int]:
    try:
        return int(value)
    except (TypeError, ValueError):
        return None
