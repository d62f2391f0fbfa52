"""
Base class for open banking aggregator adapters.
"""

from abc import ABC, abstractmethod
from datetime import date
from typing import Any, Optional
import logging

import requests

from ...config import ReconConfig
from ...models.connection import (
    AuthorizationModel,
    ConnectionGrant,
    FetchedTransactions,
    InitiationResult,
    Institution,
    ProviderInfo,
)
from ...utils.exceptions import (
    AuthorizationExpiredError,
    ProviderError,
    ProviderNotConfiguredError,
    ProviderTimeoutError,
)

logger = logging.getLogger(__name__)


class ProviderAdapter(ABC):
    """
    Contract every aggregator integration implements.

    Adapters talk HTTP through a requests.Session with an explicit timeout
    and translate failures into ProviderError subclasses.
    """

    key: str = ""
    display_name: str = ""
    supported_countries: tuple[str, ...] = ()
    authorization_model: AuthorizationModel = AuthorizationModel.REDIRECT

    def __init__(
        self,
        config: Optional[ReconConfig] = None,
        session: Optional[requests.Session] = None,
    ):
        self.config = config or ReconConfig()
        self.session = session or requests.Session()
        self.timeout = self.config.sync.request_timeout_seconds

    @property
    @abstractmethod
    def base_url(self) -> str:
        pass

    @abstractmethod
    def is_configured(self) -> bool:
        """True when credentials for the aggregator are present."""
        pass

    @abstractmethod
    def list_institutions(self, country: str) -> list[Institution]:
        pass

    @abstractmethod
    def initiate_connection(
        self,
        institution_id: Optional[str],
        account_reference: str,
        redirect_uri: str,
    ) -> InitiationResult:
        """
        Start an authorization request at the aggregator.

        Args:
            institution_id: Bank chosen by the user (optional for widget flows)
            account_reference: Opaque reference echoed back by the aggregator
            redirect_uri: Where the aggregator sends the user afterwards

        Returns:
            InitiationResult with an authorization URL or a link token
        """
        pass

    @abstractmethod
    def complete_connection(
        self,
        requisition_id: Optional[str],
        authorization_code: Optional[str] = None,
    ) -> ConnectionGrant:
        """Turn a completed authorization into stored credentials."""
        pass

    @abstractmethod
    def fetch_transactions(
        self, credentials: dict[str, Any], since: date
    ) -> FetchedTransactions:
        """Fetch booked transactions dated on or after `since`."""
        pass

    @abstractmethod
    def revoke(self, credentials: dict[str, Any]) -> bool:
        """Revoke access at the aggregator. Returns False if revocation failed."""
        pass

    def info(self) -> ProviderInfo:
        return ProviderInfo(
            key=self.key,
            display_name=self.display_name,
            countries=list(self.supported_countries),
            authorization_model=self.authorization_model,
            configured=self.is_configured(),
        )

    def supports_country(self, country: str) -> bool:
        return country.upper() in self.supported_countries

    def require_configured(self) -> None:
        if not self.is_configured():
            raise ProviderNotConfiguredError(
                f"Provider '{self.key}' has no credentials configured"
            )

    def _request(
        self,
        method: str,
        endpoint: str,
        params: Optional[dict] = None,
        json: Optional[dict] = None,
        headers: Optional[dict] = None,
    ) -> Any:
        """
        Make an API request.

        Raises:
            ProviderTimeoutError: If the aggregator did not answer in time
            AuthorizationExpiredError: On 401/403 responses
            ProviderError: On any other failure
        """
        url = f"{self.base_url}{endpoint}"

        try:
            response = self.session.request(
                method=method,
                url=url,
                params=params,
                json=json,
                headers=headers,
                timeout=self.timeout,
            )
        except requests.exceptions.Timeout:
            logger.error(f"{self.key} request to {endpoint} timed out")
            raise ProviderTimeoutError(
                f"{self.display_name} did not respond within {self.timeout}s",
                error_type="timeout",
            )
        except requests.exceptions.ConnectionError as e:
            logger.error(f"{self.key} connection error on {endpoint}: {e}")
            raise ProviderError(
                f"Could not reach {self.display_name}", error_type="connection_error"
            )
        except requests.exceptions.RequestException as e:
            logger.error(f"{self.key} request to {endpoint} failed: {e}")
            raise ProviderError(
                f"Request to {self.display_name} failed: {e}", error_type="request_error"
            )

        if response.status_code in (401, 403):
            message = self._error_message(response) or "Access denied"
            raise AuthorizationExpiredError(message, response.status_code, "authorization")

        if response.status_code == 429:
            raise ProviderError("Rate limit exceeded", 429, "rate_limit")

        if response.status_code >= 400:
            message = self._error_message(response) or f"API error: {response.status_code}"
            logger.error(
                f"{self.key} API error on {endpoint}: {response.status_code} {message}"
            )
            raise ProviderError(message, response.status_code, self._error_type(response))

        if not response.content:
            return {}
        try:
            return response.json()
        except ValueError:
            raise ProviderError(
                f"{self.display_name} returned a non-JSON response",
                response.status_code,
                "invalid_response",
            )

    def _require(self, body: Any, key: str, context: str) -> Any:
        """Value of a mandatory response field; a missing one is a provider failure."""
        if not isinstance(body, dict) or body.get(key) in (None, ""):
            raise ProviderError(
                f"{self.display_name} {context} response has no '{key}'",
                error_type="invalid_response",
            )
        return body[key]

    def _error_message(self, response: requests.Response) -> Optional[str]:
        try:
            body = response.json()
        except ValueError:
            return response.text[:500] or None
        if isinstance(body, dict):
            return body.get("detail") or body.get("summary") or body.get("error_message")
        return None

    def _error_type(self, response: requests.Response) -> Optional[str]:
        try:
            body = response.json()
        except ValueError:
            return None
        if isinstance(body, dict):
            return body.get("type") or body.get("error_type") or body.get("error_code")
        return None
