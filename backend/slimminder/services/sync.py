import asyncio
import hashlib
import logging
from dataclasses import dataclass
from datetime import date
from typing import Awaitable, TypeVar

from ..errors import ConnectionUnavailableError, ProviderResponseError, ProviderTransportError
from ..models import Connection, ConnectionStatus, ProviderTransaction, StoredBankAccount, Transaction
from ..persistence import Persistence
from ..store import InMemoryStore
from .connections import ConnectionManager, status_message

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class SyncStats:
    created: int = 0
    updated: int = 0
    unchanged: int = 0

    def merge(self, other: "SyncStats") -> None:
        self.created += other.created
        self.updated += other.updated
        self.unchanged += other.unchanged


def compute_transaction_uid(provider: str, provider_account_id: str, provider_transaction_id: str) -> str:
    return f"{provider}:{provider_account_id}:{provider_transaction_id}"


def compute_transaction_hash(item: ProviderTransaction) -> str:
    payload = "|".join(
        [
            str(item.amount),
            item.currency,
            item.date.isoformat(),
            item.description,
            item.merchant or "",
            item.category or "",
        ]
    )
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()


class TransactionSyncService:
    """Pulls accounts and transactions for a linked connection into the store."""

    def __init__(self, manager: ConnectionManager, persistence: Persistence, timeout: float = 10.0) -> None:
        self.manager = manager
        self.persistence = persistence
        self.timeout = timeout

    async def _call(self, connection: Connection, call: Awaitable[T]) -> T:
        try:
            return await asyncio.wait_for(call, timeout=self.timeout)
        except asyncio.TimeoutError as exc:
            raise ProviderTransportError("provider call timed out") from exc
        except ProviderResponseError as exc:
            if exc.is_auth_error:
                await self.manager.mark_expired(connection.id)
                raise ConnectionUnavailableError(connection.id, status_message(ConnectionStatus.expired)) from exc
            raise

    async def _token(self, connection: Connection) -> str:
        token = await self.manager.get_valid_access_token(connection.id)
        if token is None:
            current = await self.manager.get_connection(connection.id)
            status = current.status if current else connection.status
            raise ConnectionUnavailableError(connection.id, status_message(status))
        return token

    async def import_accounts(self, connection: Connection) -> list[StoredBankAccount]:
        token = await self._token(connection)
        adapter = self.manager.adapter_for(connection.provider)
        accounts = await self._call(connection, adapter.get_accounts(token))
        now = InMemoryStore.now()
        stored = []
        for account in accounts:
            stored.append(
                await self.persistence.upsert_bank_account(
                    StoredBankAccount(
                        id=InMemoryStore.make_id(),
                        user_id=connection.user_id,
                        connection_id=connection.id,
                        provider=connection.provider,
                        provider_account_id=account.id,
                        display_name=account.name,
                        currency=account.currency,
                        iban=account.iban,
                        created_at=now,
                        updated_at=now,
                    )
                )
            )
        logger.info("accounts_imported: user=%s count=%d", connection.user_id, len(stored))
        return stored

    async def sync_account(
        self,
        connection: Connection,
        account: StoredBankAccount,
        from_date: date | None = None,
        to_date: date | None = None,
    ) -> SyncStats:
        token = await self._token(connection)
        adapter = self.manager.adapter_for(connection.provider)
        items = await self._call(
            connection,
            adapter.get_transactions(token, account.provider_account_id, from_date, to_date),
        )
        stats = SyncStats()
        for item in items:
            uid = compute_transaction_uid(connection.provider.value, account.provider_account_id, item.id)
            sync_hash = compute_transaction_hash(item)
            existing = await self.persistence.get_transaction_by_external_id(connection.user_id, uid)
            if existing is None:
                await self.persistence.save_transaction(
                    Transaction(
                        id=InMemoryStore.make_id(),
                        user_id=connection.user_id,
                        amount=item.amount,
                        currency=item.currency,
                        date=item.date,
                        category_id=item.category,
                        description=item.description,
                        merchant=item.merchant,
                        bank_account_id=account.id,
                        external_id=uid,
                        sync_hash=sync_hash,
                    )
                )
                stats.created += 1
                continue
            if existing.sync_hash == sync_hash:
                stats.unchanged += 1
                continue
            existing.amount = item.amount
            existing.currency = item.currency
            existing.date = item.date
            existing.description = item.description
            existing.merchant = item.merchant
            # a category the user picked wins over the provider hint
            existing.category_id = existing.category_id or item.category
            existing.sync_hash = sync_hash
            await self.persistence.save_transaction(existing)
            stats.updated += 1
        logger.info(
            "transactions_synced: account=%s created=%d updated=%d unchanged=%d",
            account.id,
            stats.created,
            stats.updated,
            stats.unchanged,
        )
        return stats

    async def sync_connection(
        self,
        connection: Connection,
        from_date: date | None = None,
        to_date: date | None = None,
    ) -> SyncStats:
        totals = SyncStats()
        for account in await self.import_accounts(connection):
            totals.merge(await self.sync_account(connection, account, from_date, to_date))
        return totals
