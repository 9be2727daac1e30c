from __future__ import annotations

import logging
import secrets
from datetime import date, timedelta
from decimal import Decimal
from typing import Optional, Sequence
from urllib.parse import urlencode

from ..errors import ProviderResponseError
from ..models import (
    AccountType,
    AuthorizationRequest,
    BankAccount,
    Provider,
    ProviderTransaction,
    RefreshedToken,
    TokenGrant,
)
from .base import DEFAULT_PERMISSIONS, ProviderAdapter, new_state

logger = logging.getLogger(__name__)

ACCESS_PREFIX = "mock-access-"
REFRESH_PREFIX = "mock-refresh-"
TOKEN_TTL_SECONDS = 3600

SANDBOX_ACCOUNTS = (
    BankAccount(
        id="mock-account-1",
        name="ING Bank - Hoofdrekening",
        type=AccountType.checking,
        currency="EUR",
        balance=Decimal("1250.50"),
        iban="NL91ABNA0417164300",
        account_number="1234567890",
    ),
    BankAccount(
        id="mock-account-2",
        name="ING Bank - Spaarrekening",
        type=AccountType.savings,
        currency="EUR",
        balance=Decimal("5000.00"),
        iban="NL91ABNA0417164301",
        account_number="1234567891",
    ),
)

# (id suffix, days before the window end, signed amount, description, merchant, category)
SANDBOX_TRANSACTIONS = (
    ("tx-1", 1, Decimal("-25.50"), "Albert Heijn - Boodschappen", "Albert Heijn", "groceries"),
    ("tx-2", 7, Decimal("1200.00"), "Salaris - Bedrijf BV", "Bedrijf BV", "income"),
    ("tx-3", 2, Decimal("-45.00"), "Tankstation - Benzine", "Shell", "transport"),
    ("tx-4", 3, Decimal("-89.99"), "Bol.com - Elektronica", "Bol.com", "shopping"),
    ("tx-5", 4, Decimal("-15.50"), "Restaurant - Lunch", "Restaurant XYZ", "food"),
)


class MockProvider(ProviderAdapter):
    """Sandbox provider with canned accounts and transactions.

    Selected explicitly with ``OB_PROVIDER=mock``. Only tokens issued by this
    instance are accepted. Revoking an access token also kills its refresh
    token, and refreshing retires the previous access token.
    """

    name = Provider.mock

    def __init__(
        self,
        client_id: str = "sandbox-client-id",
        redirect_uri: str = "http://localhost:4000/api/v1/bank/callback",
        auth_base_url: str = "https://sandbox.slim-minder.local",
    ) -> None:
        self.client_id = client_id
        self.redirect_uri = redirect_uri
        self.auth_base_url = auth_base_url.rstrip("/")
        # live access token -> its refresh token
        self._grants: dict[str, str] = {}

    async def generate_auth_url(self, user_id: str, permissions: Sequence[str] = DEFAULT_PERMISSIONS) -> AuthorizationRequest:
        state = new_state()
        query = urlencode(
            {
                "client_id": self.client_id,
                "redirect_uri": self.redirect_uri,
                "scope": " ".join(permissions),
                "state": state,
                "response_type": "code",
            }
        )
        logger.info("mock_provider: auth url issued user=%s", user_id)
        return AuthorizationRequest(auth_url=f"{self.auth_base_url}/auth?{query}", state=state)

    async def exchange_code_for_token(self, code: str, state: str) -> TokenGrant:
        if not code:
            raise ProviderResponseError("authorization code missing", status_code=400, code="invalid_grant")
        access_token = f"{ACCESS_PREFIX}{secrets.token_hex(12)}"
        refresh_token = f"{REFRESH_PREFIX}{secrets.token_hex(12)}"
        self._grants[access_token] = refresh_token
        return TokenGrant(access_token=access_token, refresh_token=refresh_token, expires_in_seconds=TOKEN_TTL_SECONDS)

    async def refresh_token(self, refresh_token: str) -> RefreshedToken:
        previous = next((a for a, r in self._grants.items() if r == refresh_token), None)
        if previous is None:
            raise ProviderResponseError("refresh token rejected", status_code=400, code="invalid_grant")
        del self._grants[previous]
        access_token = f"{ACCESS_PREFIX}{secrets.token_hex(12)}"
        self._grants[access_token] = refresh_token
        return RefreshedToken(access_token=access_token, expires_in_seconds=TOKEN_TTL_SECONDS)

    async def revoke_token(self, access_token: str) -> None:
        self._grants.pop(access_token, None)

    def _check(self, access_token: str) -> None:
        if access_token not in self._grants:
            raise ProviderResponseError("access token rejected", status_code=401, code="invalid_token")

    async def get_accounts(self, access_token: str) -> list[BankAccount]:
        self._check(access_token)
        return list(SANDBOX_ACCOUNTS)

    async def get_transactions(
        self,
        access_token: str,
        account_id: str,
        from_date: Optional[date] = None,
        to_date: Optional[date] = None,
    ) -> list[ProviderTransaction]:
        self._check(access_token)
        if account_id not in {a.id for a in SANDBOX_ACCOUNTS}:
            raise ProviderResponseError(f"unknown account: {account_id}", status_code=404, code="account_not_found")
        window_end = to_date or date.today()
        rows = []
        for suffix, days_back, amount, description, merchant, category in SANDBOX_TRANSACTIONS:
            booked = window_end - timedelta(days=days_back)
            if from_date and booked < from_date:
                continue
            rows.append(
                ProviderTransaction(
                    id=f"{account_id}-{suffix}",
                    account_id=account_id,
                    amount=amount,
                    currency="EUR",
                    date=booked,
                    description=description,
                    merchant=merchant,
                    category=category,
                )
            )
        return rows
