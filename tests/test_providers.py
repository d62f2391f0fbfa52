"""Tests for the aggregator adapters against a mocked HTTP session."""

import json
from datetime import date
from decimal import Decimal
from unittest.mock import MagicMock

import pytest
import requests

from bank_feed_recon.banking.providers import build_adapters
from bank_feed_recon.banking.providers.gocardless import GoCardlessAdapter
from bank_feed_recon.banking.providers.plaid import PlaidAdapter
from bank_feed_recon.config import ReconConfig
from bank_feed_recon.utils.exceptions import (
    AuthorizationExpiredError,
    ProviderError,
    ProviderNotConfiguredError,
    ProviderTimeoutError,
)


def response(body=None, status_code=200):
    """Build a stand-in for requests.Response."""
    resp = MagicMock()
    resp.status_code = status_code
    resp.content = json.dumps(body).encode() if body is not None else b""
    resp.json.return_value = body
    resp.text = json.dumps(body) if body is not None else ""
    return resp


def calls(session):
    return [(c.kwargs["method"], c.kwargs["url"]) for c in session.request.call_args_list]


@pytest.fixture
def provider_config():
    config = ReconConfig()
    config.providers.gocardless.secret_id = "sid"
    config.providers.gocardless.secret_key = "skey"
    config.providers.gocardless.base_url = "https://gc.invalid/api/v2"
    config.providers.plaid.client_id = "cid"
    config.providers.plaid.secret = "psecret"
    return config


@pytest.fixture
def session():
    return MagicMock()


@pytest.fixture
def gocardless(provider_config, session):
    return GoCardlessAdapter(provider_config, session=session)


@pytest.fixture
def plaid(provider_config, session):
    return PlaidAdapter(provider_config, session=session)


TOKEN = {"access": "gc-access", "access_expires": 86400}


class TestGoCardless:
    def test_token_is_cached_between_calls(self, gocardless, session):
        session.request.side_effect = [
            response(TOKEN),
            response([{"id": "BANK_DE", "name": "Bank", "transaction_total_days": "540"}]),
            response([{"id": "BANK_FR", "name": "Banque"}]),
        ]

        institutions = gocardless.list_institutions("de")
        gocardless.list_institutions("FR")
        gocardless.list_institutions("DE")

        assert institutions[0].transaction_total_days == 540
        assert [m for m, _ in calls(session)] == ["POST", "GET", "GET"]
        headers = session.request.call_args_list[1].kwargs["headers"]
        assert headers["Authorization"] == "Bearer gc-access"

    def test_initiate_creates_agreement_and_requisition(self, gocardless, session):
        session.request.side_effect = [
            response(TOKEN),
            response({"id": "agr-1"}),
            response({"id": "req-9", "link": "https://ob.invalid/start"}),
        ]

        result = gocardless.initiate_connection("BANK_DE", "account-3", "https://cb.invalid")

        assert result.requisition_id == "req-9"
        assert result.authorization_url == "https://ob.invalid/start"
        assert result.extra == {"agreement_id": "agr-1"}
        requisition_body = session.request.call_args_list[2].kwargs["json"]
        assert requisition_body["agreement"] == "agr-1"
        assert requisition_body["reference"].startswith("account-3-")

    def test_complete_linked_requisition(self, gocardless, session):
        session.request.side_effect = [
            response(TOKEN),
            response({"status": "LN", "accounts": ["a-1", "a-2"], "agreement": "agr-1"}),
        ]

        grant = gocardless.complete_connection("req-9", "req-9")

        assert grant.credentials["accounts"] == ["a-1", "a-2"]
        assert grant.expires_at is not None

    @pytest.mark.parametrize(
        "status,error",
        [("EX", AuthorizationExpiredError), ("CR", ProviderError)],
    )
    def test_complete_unlinked_requisition(self, gocardless, session, status, error):
        session.request.side_effect = [response(TOKEN), response({"status": status})]
        with pytest.raises(error):
            gocardless.complete_connection("req-9")

    def test_fetch_skips_pending(self, gocardless, session):
        session.request.side_effect = [
            response(TOKEN),
            response(
                {
                    "transactions": {
                        "booked": [
                            {
                                "transactionId": "t-2",
                                "bookingDate": "2024-05-03",
                                "transactionAmount": {"amount": "-12.30", "currency": "EUR"},
                                "creditorName": "Telco",
                                "remittanceInformationUnstructured": "Invoice 55",
                            },
                            {
                                "transactionId": "t-1",
                                "bookingDate": "2024-05-01",
                                "transactionAmount": {"amount": "500.00", "currency": "EUR"},
                                "debtorName": "Customer AG",
                                "remittanceInformationUnstructuredArray": ["RE-1001"],
                            },
                        ],
                        "pending": [
                            {"bookingDate": "2024-05-04", "transactionAmount": {"amount": "1"}}
                        ],
                    }
                }
            ),
        ]

        fetched = gocardless.fetch_transactions({"accounts": ["a-1"]}, date(2024, 5, 1))

        assert fetched.pending_skipped == 1
        first, second = fetched.transactions
        assert first.external_id == "t-1"
        assert first.payment_ref == "RE-1001"
        assert first.partner_name == "Customer AG"
        assert second.amount == Decimal("-12.30")
        assert second.partner_name == "Telco"
        assert session.request.call_args_list[1].kwargs["params"] == {"date_from": "2024-05-01"}

    def test_lapsed_agreement_maps_to_expired(self, gocardless, session):
        session.request.side_effect = [
            response(TOKEN),
            response({"summary": "EUA expired", "type": "AccessExpiredError"}, 400),
        ]
        with pytest.raises(AuthorizationExpiredError):
            gocardless.fetch_transactions({"accounts": ["a-1"]}, date(2024, 5, 1))

    def test_revoke_failure_returns_false(self, gocardless, session):
        session.request.side_effect = [response(TOKEN), response({"detail": "boom"}, 500)]
        assert gocardless.revoke({"requisition_id": "req-9"}) is False

    def test_unconfigured(self, session):
        adapter = GoCardlessAdapter(ReconConfig(), session=session)
        assert not adapter.is_configured()
        with pytest.raises(ProviderNotConfiguredError):
            adapter.list_institutions("DE")
        session.request.assert_not_called()


class TestPlaid:
    def test_link_token(self, plaid, session):
        session.request.return_value = response(
            {"link_token": "link-sandbox-1", "expiration": "2024-06-01T10:00:00Z"}
        )

        result = plaid.initiate_connection(None, "account-3", "https://cb.invalid")

        assert result.link_token == "link-sandbox-1"
        assert result.expires_at.hour == 10
        body = session.request.call_args.kwargs["json"]
        assert body["client_id"] == "cid"
        assert body["user"] == {"client_user_id": "account-3"}

    def test_complete_exchanges_public_token(self, plaid, session):
        session.request.side_effect = [
            response({"access_token": "access-1", "item_id": "item-1"}),
            response({"item": {"institution_id": "ins_1"}}),
            response({"accounts": [{"account_id": "acc-a"}]}),
        ]

        grant = plaid.complete_connection(None, "public-sandbox-1")

        assert grant.credentials == {
            "access_token": "access-1",
            "item_id": "item-1",
            "institution_id": "ins_1",
            "accounts": ["acc-a"],
        }

    def test_complete_requires_public_token(self, plaid):
        with pytest.raises(ProviderError):
            plaid.complete_connection("ignored")

    def test_fetch_paginates_and_flips_sign(self, plaid, session):
        first_page = [
            {"transaction_id": "p-1", "date": "2024-05-02", "amount": 25.5, "name": "Coffee"},
            {"transaction_id": "p-2", "date": "2024-05-01", "amount": -1000, "name": "Payroll"},
        ]
        second_page = [
            {"transaction_id": "p-3", "date": "2024-05-03", "amount": 9, "pending": True},
        ]
        session.request.side_effect = [
            response({"transactions": first_page, "total_transactions": 3}),
            response({"transactions": second_page, "total_transactions": 3}),
        ]

        fetched = plaid.fetch_transactions({"access_token": "access-1"}, date(2024, 5, 1))

        assert [t.external_id for t in fetched.transactions] == ["p-2", "p-1"]
        assert fetched.transactions[0].amount == Decimal("1000")
        assert fetched.transactions[1].amount == Decimal("-25.5")
        assert fetched.pending_skipped == 1
        offsets = [c.kwargs["json"]["options"]["offset"] for c in session.request.call_args_list]
        assert offsets == [0, 2]

    def test_login_required_maps_to_expired(self, plaid, session):
        session.request.return_value = response(
            {"error_code": "ITEM_LOGIN_REQUIRED", "error_message": "login required"}, 400
        )
        with pytest.raises(AuthorizationExpiredError):
            plaid.fetch_transactions({"access_token": "access-1"}, date(2024, 5, 1))


class TestTransportErrors:
    def test_timeout(self, plaid, session):
        session.request.side_effect = requests.exceptions.Timeout()
        with pytest.raises(ProviderTimeoutError):
            plaid.list_institutions("US")

    def test_unauthorized(self, plaid, session):
        session.request.return_value = response({"error_message": "bad secret"}, 401)
        with pytest.raises(AuthorizationExpiredError):
            plaid.list_institutions("US")

    def test_rate_limited(self, plaid, session):
        session.request.return_value = response({}, 429)
        with pytest.raises(ProviderError) as excinfo:
            plaid.list_institutions("US")
        assert excinfo.value.status_code == 429


def test_build_adapters_registers_every_provider():
    adapters = build_adapters(ReconConfig())
    assert set(adapters) == {"gocardless", "plaid"}
    assert not any(a.is_configured() for a in adapters.values())


class TestMalformedResponses:
    def test_other_request_failures_become_provider_errors(self, plaid, session):
        session.request.side_effect = requests.exceptions.TooManyRedirects("loop")
        with pytest.raises(ProviderError) as excinfo:
            plaid.fetch_transactions({"access_token": "access-1"}, date(2024, 5, 1))
        assert excinfo.value.error_type == "request_error"

    def test_exchange_without_access_token(self, plaid, session):
        session.request.return_value = response({"item_id": "item-1"})
        with pytest.raises(ProviderError) as excinfo:
            plaid.complete_connection(None, "public-sandbox-1")
        assert excinfo.value.error_type == "invalid_response"

    def test_institution_without_id(self, gocardless, session):
        session.request.side_effect = [response(TOKEN), response([{"name": "Nameless"}])]
        with pytest.raises(ProviderError):
            gocardless.list_institutions("DE")
