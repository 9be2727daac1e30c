from __future__ import annotations

import logging
from datetime import date
from decimal import Decimal
from typing import Any, Optional, Sequence
from urllib.parse import urlencode

import httpx

from ..errors import ProviderResponseError, ProviderTransportError
from ..models import (
    AuthorizationRequest,
    BankAccount,
    Provider,
    ProviderTransaction,
    RefreshedToken,
    TokenGrant,
)
from .base import DEFAULT_PERMISSIONS, ProviderAdapter, map_account_type, new_state

logger = logging.getLogger(__name__)

SCOPES = {
    "accounts": "accounts:read",
    "transactions": "transactions:read",
    "balances": "balances:read",
}


def parse_amount(payload: dict[str, Any]) -> tuple[Decimal, str]:
    """Read a Tink ``{"value": {"unscaledValue", "scale"}, "currencyCode"}`` amount, keeping its sign."""
    value = payload["value"]
    amount = Decimal(str(value["unscaledValue"])).scaleb(-int(value["scale"]))
    return amount, payload.get("currencyCode") or "EUR"


class TinkProvider(ProviderAdapter):
    name = Provider.tink

    def __init__(
        self,
        client_id: str,
        client_secret: str,
        redirect_uri: str,
        auth_base_url: str = "https://link.tink.com",
        api_base_url: str = "https://api.tink.com",
        market: str = "NL",
        timeout: float = 10.0,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self.client_id = client_id
        self.client_secret = client_secret
        self.redirect_uri = redirect_uri
        self.auth_base_url = auth_base_url.rstrip("/")
        self.market = market
        self._client = client or httpx.AsyncClient(
            base_url=api_base_url,
            timeout=timeout,
            headers={"Accept": "application/json"},
        )

    async def aclose(self) -> None:
        await self._client.aclose()

    async def _request(
        self,
        method: str,
        path: str,
        *,
        retry: bool = False,
        expect_body: bool = True,
        **kwargs: Any,
    ) -> Any:
        attempts = 2 if retry else 1
        for attempt in range(1, attempts + 1):
            try:
                response = await self._client.request(method, path, **kwargs)
                break
            except httpx.TransportError as exc:
                if attempt < attempts:
                    logger.warning("tink_request_retry: %s %s error=%s", method, path, exc.__class__.__name__)
                    continue
                raise ProviderTransportError(f"{method} {path} failed: {exc.__class__.__name__}") from exc

        if response.status_code >= 400:
            code = None
            try:
                body = response.json()
                code = body.get("errorCode") or body.get("error") or body.get("errorMessage")
            except ValueError:
                pass
            raise ProviderResponseError(
                f"{method} {path} returned {response.status_code}",
                status_code=response.status_code,
                code=code,
            )
        if not expect_body:
            return None
        try:
            return response.json()
        except ValueError as exc:
            raise ProviderResponseError(f"{method} {path} returned malformed JSON", status_code=response.status_code) from exc

    async def generate_auth_url(self, user_id: str, permissions: Sequence[str] = DEFAULT_PERMISSIONS) -> AuthorizationRequest:
        state = new_state()
        scope = ",".join(SCOPES.get(p, p) for p in permissions)
        query = urlencode(
            {
                "client_id": self.client_id,
                "redirect_uri": self.redirect_uri,
                "scope": scope,
                "market": self.market,
                "state": state,
                "response_type": "code",
            }
        )
        return AuthorizationRequest(auth_url=f"{self.auth_base_url}/1.0/authorize/?{query}", state=state)

    async def exchange_code_for_token(self, code: str, state: str) -> TokenGrant:
        payload = await self._request(
            "POST",
            "/api/v1/oauth/token",
            data={
                "code": code,
                "client_id": self.client_id,
                "client_secret": self.client_secret,
                "grant_type": "authorization_code",
            },
        )
        try:
            return TokenGrant(
                access_token=payload["access_token"],
                refresh_token=payload["refresh_token"],
                expires_in_seconds=int(payload["expires_in"]),
            )
        except (KeyError, TypeError, ValueError) as exc:
            raise ProviderResponseError("unexpected token response", code="malformed_payload") from exc

    async def refresh_token(self, refresh_token: str) -> RefreshedToken:
        payload = await self._request(
            "POST",
            "/api/v1/oauth/token",
            data={
                "refresh_token": refresh_token,
                "client_id": self.client_id,
                "client_secret": self.client_secret,
                "grant_type": "refresh_token",
            },
        )
        try:
            return RefreshedToken(
                access_token=payload["access_token"],
                expires_in_seconds=int(payload["expires_in"]),
                refresh_token=payload.get("refresh_token"),
            )
        except (KeyError, TypeError, ValueError) as exc:
            raise ProviderResponseError("unexpected refresh response", code="malformed_payload") from exc

    async def revoke_token(self, access_token: str) -> None:
        await self._request(
            "POST",
            "/api/v1/oauth/revoke",
            expect_body=False,
            data={
                "token": access_token,
                "client_id": self.client_id,
                "client_secret": self.client_secret,
            },
        )

    async def _paged(self, path: str, key: str, access_token: str, params: dict[str, str]) -> list[dict[str, Any]]:
        items: list[dict[str, Any]] = []
        page_token: Optional[str] = None
        while True:
            query = dict(params)
            if page_token:
                query["pageToken"] = page_token
            payload = await self._request(
                "GET",
                path,
                retry=True,
                params=query,
                headers={"Authorization": f"Bearer {access_token}"},
            )
            if not isinstance(payload, dict) or not isinstance(payload.get(key), list):
                raise ProviderResponseError(f"GET {path} missing '{key}'", code="malformed_payload")
            items.extend(payload[key])
            page_token = payload.get("nextPageToken") or None
            if not page_token:
                return items

    async def get_accounts(self, access_token: str) -> list[BankAccount]:
        raw_accounts = await self._paged("/data/v2/accounts", "accounts", access_token, {})
        accounts = []
        try:
            for raw in raw_accounts:
                identifiers = raw.get("identifiers") or {}
                booked = ((raw.get("balances") or {}).get("booked") or {}).get("amount")
                balance, currency = parse_amount(booked) if booked else (None, raw.get("currencyCode") or "EUR")
                accounts.append(
                    BankAccount(
                        id=raw["id"],
                        name=raw.get("name") or "Unknown Account",
                        type=map_account_type(raw.get("type")),
                        currency=currency,
                        balance=balance,
                        iban=(identifiers.get("iban") or {}).get("iban"),
                        account_number=(identifiers.get("financialInstitution") or {}).get("accountNumber"),
                    )
                )
        except (KeyError, TypeError, ValueError, ArithmeticError) as exc:
            raise ProviderResponseError("unexpected account payload", code="malformed_payload") from exc
        logger.info("tink_accounts: count=%d", len(accounts))
        return accounts

    async def get_transactions(
        self,
        access_token: str,
        account_id: str,
        from_date: Optional[date] = None,
        to_date: Optional[date] = None,
    ) -> list[ProviderTransaction]:
        params = {"accountIdIn": account_id}
        if from_date:
            params["bookedDateGte"] = from_date.isoformat()
        if to_date:
            params["bookedDateLte"] = to_date.isoformat()
        raw_transactions = await self._paged("/data/v2/transactions", "transactions", access_token, params)
        transactions = []
        try:
            for raw in raw_transactions:
                amount, currency = parse_amount(raw["amount"])
                descriptions = raw.get("descriptions") or {}
                pfm = (raw.get("categories") or {}).get("pfm") or {}
                transactions.append(
                    ProviderTransaction(
                        id=raw["id"],
                        account_id=raw.get("accountId") or account_id,
                        amount=amount,
                        currency=currency,
                        date=date.fromisoformat(raw["dates"]["booked"]),
                        description=descriptions.get("display") or descriptions.get("original") or "Unknown transaction",
                        merchant=(raw.get("merchantInformation") or {}).get("merchantName"),
                        category=pfm.get("name"),
                    )
                )
        except (KeyError, TypeError, ValueError, ArithmeticError) as exc:
            raise ProviderResponseError("unexpected transaction payload", code="malformed_payload") from exc
        logger.info("tink_transactions: account=%s count=%d", account_id, len(transactions))
        return transactions
