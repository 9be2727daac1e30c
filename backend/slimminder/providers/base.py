from __future__ import annotations

import secrets
from datetime import date
from typing import Optional, Sequence

from ..models import (
    AccountType,
    AuthorizationRequest,
    BankAccount,
    Provider,
    ProviderTransaction,
    RefreshedToken,
    TokenGrant,
)

DEFAULT_PERMISSIONS = ("accounts", "transactions")


def new_state() -> str:
    return secrets.token_urlsafe(32)


def map_account_type(raw: Optional[str]) -> AccountType:
    value = (raw or "").lower()
    if value in {"checking", "current"}:
        return AccountType.checking
    if value == "savings":
        return AccountType.savings
    if value in {"credit", "creditcard", "credit_card"}:
        return AccountType.credit
    if value in {"investment", "securities"}:
        return AccountType.investment
    return AccountType.checking


class ProviderAdapter:
    """Contract for one external open-banking provider.

    Implementations hold no connection state. Every method may raise
    ``ProviderTransportError`` or ``ProviderResponseError``; provider payloads
    are normalized into the dataclasses from ``slimminder.models`` before they
    are returned.
    """

    name: Provider

    async def generate_auth_url(self, user_id: str, permissions: Sequence[str] = DEFAULT_PERMISSIONS) -> AuthorizationRequest:
        raise NotImplementedError

    async def exchange_code_for_token(self, code: str, state: str) -> TokenGrant:
        raise NotImplementedError

    async def refresh_token(self, refresh_token: str) -> RefreshedToken:
        raise NotImplementedError

    async def revoke_token(self, access_token: str) -> None:
        raise NotImplementedError

    async def get_accounts(self, access_token: str) -> list[BankAccount]:
        raise NotImplementedError

    async def get_transactions(
        self,
        access_token: str,
        account_id: str,
        from_date: Optional[date] = None,
        to_date: Optional[date] = None,
    ) -> list[ProviderTransaction]:
        raise NotImplementedError

    async def aclose(self) -> None:
        return None
