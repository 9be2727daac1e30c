import asyncio
from datetime import date, datetime, timedelta, timezone
from decimal import Decimal

import pytest

from slimminder.errors import ProviderResponseError, ProviderTransportError
from slimminder.models import (
    AccountType,
    AuthorizationRequest,
    BankAccount,
    Connection,
    ConnectionStatus,
    Provider,
    ProviderTransaction,
    RefreshedToken,
    TokenGrant,
)
from slimminder.persistence import InMemoryPersistence
from slimminder.providers.base import ProviderAdapter
from slimminder.services.connections import ConnectionManager

NOW = datetime(2024, 3, 15, 12, 0, tzinfo=timezone.utc)


class FakeClock:
    def __init__(self, now: datetime = NOW) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


class FakeProvider(ProviderAdapter):
    """Scriptable adapter that records every call."""

    name = Provider.tink

    def __init__(self) -> None:
        self.calls: list[str] = []
        self.fail_exchange = False
        self.fail_refresh = False
        self.fail_revoke = False
        self.accounts_status: int | None = None
        self.refresh_delay = 0.0
        self.exchange_delay = 0.0
        self.rotate_refresh_token = False
        self._counter = 0
        self.transactions: list[ProviderTransaction] = []

    def _next(self, prefix: str) -> str:
        self._counter += 1
        return f"{prefix}-{self._counter}"

    async def generate_auth_url(self, user_id, permissions=("accounts", "transactions")):
        self.calls.append("auth_url")
        state = self._next("state")
        return AuthorizationRequest(auth_url=f"https://bank.example/auth?state={state}", state=state)

    async def exchange_code_for_token(self, code, state):
        self.calls.append("exchange")
        if self.exchange_delay:
            await asyncio.sleep(self.exchange_delay)
        if self.fail_exchange:
            raise ProviderResponseError("bad code", status_code=400, code="invalid_grant")
        return TokenGrant(access_token=self._next("access"), refresh_token=self._next("refresh"), expires_in_seconds=3600)

    async def refresh_token(self, refresh_token):
        self.calls.append("refresh")
        if self.refresh_delay:
            await asyncio.sleep(self.refresh_delay)
        if self.fail_refresh:
            raise ProviderResponseError("refresh rejected", status_code=400, code="invalid_grant")
        return RefreshedToken(
            access_token=self._next("access"),
            expires_in_seconds=3600,
            refresh_token=self._next("refresh") if self.rotate_refresh_token else None,
        )

    async def revoke_token(self, access_token):
        self.calls.append("revoke")
        if self.fail_revoke:
            raise ProviderTransportError("connection reset")

    async def get_accounts(self, access_token):
        self.calls.append("accounts")
        if self.accounts_status:
            raise ProviderResponseError("rejected", status_code=self.accounts_status)
        return [
            BankAccount(id="acc-1", name="Checking", type=AccountType.checking, currency="EUR", iban="NL00TEST0000000001"),
        ]

    async def get_transactions(self, access_token, account_id, from_date=None, to_date=None):
        self.calls.append("transactions")
        return [t for t in self.transactions if t.account_id == account_id]


class YieldingPersistence(InMemoryPersistence):
    """In-memory store that gives up the event loop on every call, like a real database."""

    async def get_connection(self, connection_id):
        await asyncio.sleep(0)
        return await super().get_connection(connection_id)

    async def put_connection(self, connection):
        await asyncio.sleep(0)
        return await super().put_connection(connection)

    async def list_connections_by_user(self, user_id):
        await asyncio.sleep(0)
        return await super().list_connections_by_user(user_id)


def provider_tx(tx_id: str, amount: str, booked: date, category: str | None = "groceries", description: str = "Shop") -> ProviderTransaction:
    return ProviderTransaction(
        id=tx_id,
        account_id="acc-1",
        amount=Decimal(amount),
        currency="EUR",
        date=booked,
        description=description,
        category=category,
    )


def linked_connection(expires_in: timedelta, connection_id: str = "conn-1", user_id: str = "user-1") -> Connection:
    return Connection(
        id=connection_id,
        user_id=user_id,
        provider=Provider.tink,
        status=ConnectionStatus.linked,
        created_at=NOW - timedelta(days=1),
        updated_at=NOW - timedelta(days=1),
        access_token="access-initial",
        refresh_token="refresh-initial",
        expires_at=NOW + expires_in,
        permissions=["accounts", "transactions"],
    )


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def fake_provider() -> FakeProvider:
    return FakeProvider()


@pytest.fixture
def persistence() -> InMemoryPersistence:
    return InMemoryPersistence()


@pytest.fixture
def manager(persistence, fake_provider, clock) -> ConnectionManager:
    return ConnectionManager(
        persistence,
        {Provider.tink: fake_provider},
        call_timeout=0.5,
        clock=clock,
    )
