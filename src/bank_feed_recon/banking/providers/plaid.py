"""
Plaid adapter.

API Documentation: https://plaid.com/docs/

Authorization is token based: a link token initializes Plaid Link in the
browser, which returns a public token that is exchanged for an access token.
"""

from datetime import date, datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Any, Optional
import logging

from .base import ProviderAdapter
from ...models.connection import (
    AuthorizationModel,
    ConnectionGrant,
    FetchedTransactions,
    InitiationResult,
    Institution,
)
from ...models.transaction import ParsedTransaction
from ...utils.exceptions import AuthorizationExpiredError, ProviderError

logger = logging.getLogger(__name__)

ENVIRONMENTS = {
    "sandbox": "https://sandbox.plaid.com",
    "development": "https://development.plaid.com",
    "production": "https://production.plaid.com",
}

# Item errors that require the user to go through Link again
EXPIRED_ERROR_CODES = {
    "ITEM_LOGIN_REQUIRED",
    "ACCESS_NOT_GRANTED",
    "ITEM_NOT_FOUND",
    "INVALID_ACCESS_TOKEN",
    "PENDING_EXPIRATION",
}

PAGE_SIZE = 500


def _parse_timestamp(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed


class PlaidAdapter(ProviderAdapter):
    """Adapter for Plaid (US, Canada, UK and parts of the EU)."""

    key = "plaid"
    display_name = "Plaid"
    supported_countries = ("US", "CA", "GB", "IE", "FR", "ES", "NL", "DE")
    authorization_model = AuthorizationModel.TOKEN

    def __init__(self, config=None, session=None):
        super().__init__(config, session)
        self.credentials = self.config.providers.plaid

    @property
    def base_url(self) -> str:
        return ENVIRONMENTS.get(self.credentials.environment, ENVIRONMENTS["sandbox"])

    def is_configured(self) -> bool:
        return bool(self.credentials.client_id and self.credentials.secret)

    def _post(
        self,
        endpoint: str,
        body: Optional[dict] = None,
        access_token: Optional[str] = None,
    ) -> dict:
        self.require_configured()
        payload = {
            "client_id": self.credentials.client_id,
            "secret": self.credentials.secret,
        }
        payload.update(body or {})
        if access_token:
            payload["access_token"] = access_token

        try:
            return self._request("POST", endpoint, json=payload)
        except ProviderError as e:
            if e.error_type in EXPIRED_ERROR_CODES and not isinstance(
                e, AuthorizationExpiredError
            ):
                raise AuthorizationExpiredError(e.message, e.status_code, e.error_type)
            raise

    def _error_type(self, response) -> Optional[str]:
        try:
            body = response.json()
        except ValueError:
            return None
        if isinstance(body, dict):
            return body.get("error_code") or body.get("error_type")
        return None

    def list_institutions(self, country: str) -> list[Institution]:
        data = self._post(
            "/institutions/get",
            {"count": PAGE_SIZE, "offset": 0, "country_codes": [country.upper()]},
        )
        return [
            Institution(
                id=self._require(item, "institution_id", "institution"),
                name=item.get("name") or item["institution_id"],
                logo=item.get("logo"),
                countries=item.get("country_codes", []),
            )
            for item in data.get("institutions", [])
        ]

    def initiate_connection(
        self,
        institution_id: Optional[str],
        account_reference: str,
        redirect_uri: str,
    ) -> InitiationResult:
        body: dict[str, Any] = {
            "user": {"client_user_id": account_reference},
            "client_name": self.credentials.client_name,
            "products": ["transactions"],
            "country_codes": list(self.supported_countries),
            "language": "en",
        }
        if redirect_uri:
            body["redirect_uri"] = redirect_uri

        data = self._post("/link/token/create", body)
        link_token = data.get("link_token")
        if not link_token:
            raise ProviderError("Plaid did not return a link token")

        logger.info("Created Plaid link token")
        return InitiationResult(
            link_token=link_token,
            expires_at=_parse_timestamp(data.get("expiration")),
            extra={"request_id": data.get("request_id")},
        )

    def complete_connection(
        self,
        requisition_id: Optional[str],
        authorization_code: Optional[str] = None,
    ) -> ConnectionGrant:
        if not authorization_code:
            raise ProviderError(
                "Plaid requires the public token returned by Link",
                error_type="validation",
            )

        exchange = self._post(
            "/item/public_token/exchange", {"public_token": authorization_code}
        )
        access_token = self._require(exchange, "access_token", "public token exchange")

        item = self._post("/item/get", access_token=access_token).get("item", {})
        accounts = self._post("/accounts/get", access_token=access_token).get("accounts", [])

        return ConnectionGrant(
            credentials={
                "access_token": access_token,
                "item_id": exchange.get("item_id"),
                "institution_id": item.get("institution_id"),
                "accounts": [a["account_id"] for a in accounts if a.get("account_id")],
            },
            expires_at=_parse_timestamp(item.get("consent_expiration_time")),
        )

    def fetch_transactions(
        self, credentials: dict[str, Any], since: date
    ) -> FetchedTransactions:
        access_token = credentials.get("access_token")
        if not access_token:
            raise AuthorizationExpiredError("Plaid connection has no access token")

        include_pending = self.config.sync.include_pending
        options: dict[str, Any] = {"count": PAGE_SIZE, "offset": 0}
        if credentials.get("accounts"):
            options["account_ids"] = list(credentials["accounts"])

        transactions: list[ParsedTransaction] = []
        pending_skipped = 0

        while True:
            data = self._post(
                "/transactions/get",
                {
                    "start_date": since.isoformat(),
                    "end_date": date.today().isoformat(),
                    "options": dict(options),
                },
                access_token=access_token,
            )
            page = data.get("transactions", [])

            for raw in page:
                if raw.get("pending") and not include_pending:
                    pending_skipped += 1
                    continue
                txn = self._normalize(raw)
                if txn is not None:
                    transactions.append(txn)

            options["offset"] += len(page)
            total = data.get("total_transactions", 0)
            if not page or options["offset"] >= total:
                break

        transactions.sort(key=lambda t: t.date)
        logger.info(
            f"Fetched {len(transactions)} Plaid transactions since {since} "
            f"({pending_skipped} pending skipped)"
        )
        return FetchedTransactions(
            transactions=transactions, since=since, pending_skipped=pending_skipped
        )

    def revoke(self, credentials: dict[str, Any]) -> bool:
        access_token = credentials.get("access_token")
        if not access_token:
            return False
        try:
            self._post("/item/remove", access_token=access_token)
            return True
        except ProviderError as e:
            logger.error(f"Failed to revoke Plaid item: {e}")
            return False

    def _normalize(self, raw: dict) -> Optional[ParsedTransaction]:
        try:
            # Plaid reports outflows as positive amounts
            amount = -Decimal(str(raw["amount"]))
            txn_date = date.fromisoformat(raw["date"])
        except (KeyError, InvalidOperation, TypeError, ValueError):
            logger.warning(f"Skipping malformed Plaid transaction: {raw}")
            return None

        categories = raw.get("category") or []
        return ParsedTransaction(
            date=txn_date,
            amount=amount,
            payment_ref=raw.get("name") or raw.get("merchant_name") or "",
            partner_name=raw.get("merchant_name") or raw.get("name"),
            transaction_type=" > ".join(categories) or None,
            currency=raw.get("iso_currency_code"),
            external_id=raw.get("transaction_id"),
            raw={"pending": bool(raw.get("pending"))},
        )
