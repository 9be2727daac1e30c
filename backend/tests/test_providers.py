from datetime import date
from decimal import Decimal
from urllib.parse import parse_qs, urlparse

import httpx
import pytest

from slimminder.config import Settings
from slimminder.errors import ProviderResponseError, ProviderTransportError
from slimminder.models import AccountType, Provider
from slimminder.providers.mock import MockProvider
from slimminder.providers.registry import get_provider
from slimminder.providers.tink import TinkProvider, parse_amount


def make_tink(handler) -> TinkProvider:
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler), base_url="https://api.tink.test")
    return TinkProvider(
        client_id="cid",
        client_secret="secret",
        redirect_uri="https://app.test/callback",
        auth_base_url="https://link.tink.test",
        client=client,
    )


def test_parse_amount_keeps_sign_and_scale() -> None:
    amount, currency = parse_amount({"value": {"unscaledValue": "-2550", "scale": "2"}, "currencyCode": "EUR"})

    assert amount == Decimal("-25.50")
    assert currency == "EUR"


@pytest.mark.asyncio
async def test_tink_auth_url_carries_state_and_scopes() -> None:
    provider = make_tink(lambda request: httpx.Response(500))

    request = await provider.generate_auth_url("user-1", ["accounts", "transactions"])

    query = parse_qs(urlparse(request.auth_url).query)
    assert query["state"] == [request.state]
    assert query["scope"] == ["accounts:read,transactions:read"]
    assert query["client_id"] == ["cid"]
    assert len(request.state) >= 40


@pytest.mark.asyncio
async def test_tink_exchange_code() -> None:
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["body"] = parse_qs(request.content.decode())
        return httpx.Response(200, json={"access_token": "at", "refresh_token": "rt", "expires_in": 7200})

    provider = make_tink(handler)
    grant = await provider.exchange_code_for_token("the-code", "state")

    assert grant.access_token == "at"
    assert grant.refresh_token == "rt"
    assert grant.expires_in_seconds == 7200
    assert seen["body"]["grant_type"] == ["authorization_code"]
    assert seen["body"]["code"] == ["the-code"]


@pytest.mark.asyncio
async def test_tink_error_status_is_mapped() -> None:
    provider = make_tink(lambda request: httpx.Response(401, json={"errorCode": "token_expired"}))

    with pytest.raises(ProviderResponseError) as exc_info:
        await provider.get_accounts("stale-token")

    assert exc_info.value.status_code == 401
    assert exc_info.value.code == "token_expired"
    assert exc_info.value.is_auth_error


@pytest.mark.asyncio
async def test_tink_exchange_is_not_retried_on_transport_error() -> None:
    attempts = []

    def handler(request: httpx.Request) -> httpx.Response:
        attempts.append(request.url.path)
        raise httpx.ConnectError("reset", request=request)

    provider = make_tink(handler)
    with pytest.raises(ProviderTransportError):
        await provider.exchange_code_for_token("code", "state")

    assert len(attempts) == 1


@pytest.mark.asyncio
async def test_tink_reads_are_retried_once() -> None:
    attempts = []

    def handler(request: httpx.Request) -> httpx.Response:
        attempts.append(request.url.path)
        if len(attempts) == 1:
            raise httpx.ReadTimeout("slow", request=request)
        return httpx.Response(200, json={"accounts": []})

    provider = make_tink(handler)
    assert await provider.get_accounts("token") == []
    assert len(attempts) == 2


@pytest.mark.asyncio
async def test_tink_accounts_follow_pages() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        assert request.headers["Authorization"] == "Bearer token"
        if request.url.params.get("pageToken") == "p2":
            return httpx.Response(
                200,
                json={"accounts": [{"id": "a2", "name": "Savings", "type": "SAVINGS", "currencyCode": "EUR"}]},
            )
        return httpx.Response(
            200,
            json={
                "accounts": [
                    {
                        "id": "a1",
                        "name": "Main",
                        "type": "CHECKING",
                        "identifiers": {"iban": {"iban": "NL91ABNA0417164300"}},
                        "balances": {"booked": {"amount": {"value": {"unscaledValue": "125050", "scale": "2"}, "currencyCode": "EUR"}}},
                    }
                ],
                "nextPageToken": "p2",
            },
        )

    accounts = await make_tink(handler).get_accounts("token")

    assert [a.id for a in accounts] == ["a1", "a2"]
    assert accounts[0].balance == Decimal("1250.50")
    assert accounts[0].iban == "NL91ABNA0417164300"
    assert accounts[1].type == AccountType.savings


@pytest.mark.asyncio
async def test_tink_transactions_are_normalized() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        assert request.url.params["accountIdIn"] == "a1"
        assert request.url.params["bookedDateGte"] == "2024-03-01"
        return httpx.Response(
            200,
            json={
                "transactions": [
                    {
                        "id": "t1",
                        "accountId": "a1",
                        "amount": {"value": {"unscaledValue": "-4500", "scale": "2"}, "currencyCode": "EUR"},
                        "dates": {"booked": "2024-03-04"},
                        "descriptions": {"display": "Shell"},
                        "categories": {"pfm": {"name": "transport"}},
                    }
                ],
                "nextPageToken": "",
            },
        )

    rows = await make_tink(handler).get_transactions("token", "a1", from_date=date(2024, 3, 1))

    assert len(rows) == 1
    assert rows[0].amount == Decimal("-45.00")
    assert rows[0].date == date(2024, 3, 4)
    assert rows[0].description == "Shell"
    assert rows[0].category == "transport"


@pytest.mark.asyncio
async def test_tink_malformed_payload_raises() -> None:
    provider = make_tink(lambda request: httpx.Response(200, json={"unexpected": True}))

    with pytest.raises(ProviderResponseError):
        await provider.get_transactions("token", "a1")


@pytest.mark.asyncio
async def test_mock_provider_round_trip() -> None:
    provider = MockProvider()

    first = await provider.generate_auth_url("user-1")
    second = await provider.generate_auth_url("user-1")
    assert first.state != second.state

    grant = await provider.exchange_code_for_token("code", first.state)
    accounts = await provider.get_accounts(grant.access_token)
    assert [a.id for a in accounts] == ["mock-account-1", "mock-account-2"]

    rows = await provider.get_transactions(grant.access_token, "mock-account-1", to_date=date(2024, 3, 31))
    assert {r.category for r in rows} >= {"groceries", "income"}
    assert any(r.amount > 0 for r in rows) and any(r.amount < 0 for r in rows)

    await provider.revoke_token(grant.access_token)
    with pytest.raises(ProviderResponseError) as exc_info:
        await provider.get_accounts(grant.access_token)
    assert exc_info.value.is_auth_error


@pytest.mark.asyncio
async def test_mock_provider_rejects_empty_code() -> None:
    with pytest.raises(ProviderResponseError):
        await MockProvider().exchange_code_for_token("", "state")


def test_registry_selects_configured_provider() -> None:
    assert get_provider(Settings(ob_provider="mock")).name == Provider.mock
    assert isinstance(get_provider(Settings(ob_provider="tink")), TinkProvider)
    with pytest.raises(ValueError):
        get_provider(Settings(ob_provider="carrier-pigeon"))


@pytest.mark.asyncio
async def test_mock_provider_revoke_kills_refresh_token() -> None:
    provider = MockProvider()
    grant = await provider.exchange_code_for_token("code", "state")

    refreshed = await provider.refresh_token(grant.refresh_token)
    with pytest.raises(ProviderResponseError):
        await provider.get_accounts(grant.access_token)
    assert await provider.get_accounts(refreshed.access_token)

    await provider.revoke_token(refreshed.access_token)
    with pytest.raises(ProviderResponseError):
        await provider.refresh_token(grant.refresh_token)
    assert provider._grants == {}


@pytest.mark.asyncio
async def test_mock_provider_rejects_tokens_it_never_issued() -> None:
    provider = MockProvider()

    with pytest.raises(ProviderResponseError):
        await provider.get_accounts("mock-access-forged")
    with pytest.raises(ProviderResponseError):
        await provider.refresh_token("mock-refresh-forged")
