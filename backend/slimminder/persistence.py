from __future__ import annotations

from dataclasses import replace
from datetime import date
from decimal import Decimal
from typing import Any, Iterable, Optional

from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine

from .config import settings
from .errors import StorageError
from .models import (
    Budget,
    BudgetPeriod,
    Category,
    Connection,
    ConnectionStatus,
    Provider,
    StoredBankAccount,
    Transaction,
)
from .store import InMemoryStore


BUDGET_MUTABLE_FIELDS = {"limit", "currency", "starts_on", "active", "period"}
CATEGORY_MUTABLE_FIELDS = {"name", "icon", "archived"}


class Persistence:
    # connections
    async def get_connection(self, connection_id: str) -> Optional[Connection]:
        raise NotImplementedError

    async def put_connection(self, connection: Connection) -> Connection:
        raise NotImplementedError

    async def delete_connection(self, connection_id: str) -> bool:
        raise NotImplementedError

    async def list_connections_by_user(self, user_id: str) -> list[Connection]:
        raise NotImplementedError

    async def list_connections(self) -> list[Connection]:
        raise NotImplementedError

    # categories
    async def list_categories(self, user_id: str, include_archived: bool = False) -> list[Category]:
        raise NotImplementedError

    async def get_category(self, user_id: str, category_id: str) -> Optional[Category]:
        raise NotImplementedError

    async def create_category(self, category: Category) -> Category:
        raise NotImplementedError

    async def update_category(self, user_id: str, category_id: str, changes: dict[str, Any]) -> Optional[Category]:
        raise NotImplementedError

    # budgets
    async def list_budgets(self, user_id: str) -> list[Budget]:
        raise NotImplementedError

    async def get_budget(self, user_id: str, budget_id: str) -> Optional[Budget]:
        raise NotImplementedError

    async def create_budget(self, budget: Budget) -> Budget:
        raise NotImplementedError

    async def update_budget(self, user_id: str, budget_id: str, changes: dict[str, Any]) -> Optional[Budget]:
        raise NotImplementedError

    async def delete_budget(self, user_id: str, budget_id: str) -> bool:
        raise NotImplementedError

    # transactions
    async def list_transactions(
        self,
        user_id: str,
        from_date: Optional[date] = None,
        to_date: Optional[date] = None,
        category_ids: Optional[Iterable[str]] = None,
    ) -> list[Transaction]:
        raise NotImplementedError

    async def get_transaction_by_external_id(self, user_id: str, external_id: str) -> Optional[Transaction]:
        raise NotImplementedError

    async def save_transaction(self, transaction: Transaction) -> Transaction:
        raise NotImplementedError

    # bank accounts
    async def list_bank_accounts(self, user_id: str) -> list[StoredBankAccount]:
        raise NotImplementedError

    async def upsert_bank_account(self, account: StoredBankAccount) -> StoredBankAccount:
        raise NotImplementedError

    async def delete_bank_accounts_for_connection(self, connection_id: str) -> int:
        raise NotImplementedError


class InMemoryPersistence(Persistence):
    def __init__(self, store: Optional[InMemoryStore] = None) -> None:
        self.store = store or InMemoryStore()

    async def get_connection(self, connection_id: str) -> Optional[Connection]:
        row = self.store.connections.get(connection_id)
        return replace(row) if row else None

    async def put_connection(self, connection: Connection) -> Connection:
        self.store.connections[connection.id] = replace(connection)
        return connection

    async def delete_connection(self, connection_id: str) -> bool:
        return self.store.connections.pop(connection_id, None) is not None

    async def list_connections_by_user(self, user_id: str) -> list[Connection]:
        rows = [replace(c) for c in self.store.connections.values() if c.user_id == user_id]
        return sorted(rows, key=lambda c: c.created_at, reverse=True)

    async def list_connections(self) -> list[Connection]:
        return [replace(c) for c in self.store.connections.values()]

    async def list_categories(self, user_id: str, include_archived: bool = False) -> list[Category]:
        rows = [
            replace(c)
            for c in self.store.categories.values()
            if c.user_id == user_id and (include_archived or not c.archived)
        ]
        return sorted(rows, key=lambda c: c.created_at)

    async def get_category(self, user_id: str, category_id: str) -> Optional[Category]:
        row = self.store.categories.get(category_id)
        if not row or row.user_id != user_id:
            return None
        return replace(row)

    async def create_category(self, category: Category) -> Category:
        self.store.categories[category.id] = replace(category)
        return category

    async def update_category(self, user_id: str, category_id: str, changes: dict[str, Any]) -> Optional[Category]:
        row = self.store.categories.get(category_id)
        if not row or row.user_id != user_id:
            return None
        updates = {k: v for k, v in changes.items() if k in CATEGORY_MUTABLE_FIELDS and v is not None}
        updated = replace(row, **updates)
        self.store.categories[category_id] = updated
        return replace(updated)

    async def list_budgets(self, user_id: str) -> list[Budget]:
        return [replace(b) for b in self.store.budgets.values() if b.user_id == user_id]

    async def get_budget(self, user_id: str, budget_id: str) -> Optional[Budget]:
        row = self.store.budgets.get(budget_id)
        if not row or row.user_id != user_id:
            return None
        return replace(row)

    async def create_budget(self, budget: Budget) -> Budget:
        self.store.budgets[budget.id] = replace(budget)
        return budget

    async def update_budget(self, user_id: str, budget_id: str, changes: dict[str, Any]) -> Optional[Budget]:
        row = self.store.budgets.get(budget_id)
        if not row or row.user_id != user_id:
            return None
        updates = {k: v for k, v in changes.items() if k in BUDGET_MUTABLE_FIELDS and v is not None}
        updated = replace(row, **updates)
        self.store.budgets[budget_id] = updated
        return replace(updated)

    async def delete_budget(self, user_id: str, budget_id: str) -> bool:
        row = self.store.budgets.get(budget_id)
        if not row or row.user_id != user_id:
            return False
        del self.store.budgets[budget_id]
        return True

    async def list_transactions(
        self,
        user_id: str,
        from_date: Optional[date] = None,
        to_date: Optional[date] = None,
        category_ids: Optional[Iterable[str]] = None,
    ) -> list[Transaction]:
        wanted = set(category_ids) if category_ids is not None else None
        rows = []
        for t in self.store.transactions.values():
            if t.user_id != user_id:
                continue
            if from_date and t.date < from_date:
                continue
            if to_date and t.date > to_date:
                continue
            if wanted is not None and t.category_id not in wanted:
                continue
            rows.append(replace(t))
        return sorted(rows, key=lambda t: t.date, reverse=True)

    async def get_transaction_by_external_id(self, user_id: str, external_id: str) -> Optional[Transaction]:
        for t in self.store.transactions.values():
            if t.user_id == user_id and t.external_id == external_id:
                return replace(t)
        return None

    async def save_transaction(self, transaction: Transaction) -> Transaction:
        self.store.transactions[transaction.id] = replace(transaction)
        return transaction

    async def list_bank_accounts(self, user_id: str) -> list[StoredBankAccount]:
        rows = [replace(a) for a in self.store.bank_accounts.values() if a.user_id == user_id]
        return sorted(rows, key=lambda a: a.created_at, reverse=True)

    async def upsert_bank_account(self, account: StoredBankAccount) -> StoredBankAccount:
        for key, row in self.store.bank_accounts.items():
            if (
                row.user_id == account.user_id
                and row.provider == account.provider
                and row.provider_account_id == account.provider_account_id
            ):
                merged = replace(
                    account,
                    id=row.id,
                    created_at=row.created_at,
                )
                self.store.bank_accounts[key] = merged
                return replace(merged)
        self.store.bank_accounts[account.id] = replace(account)
        return account

    async def delete_bank_accounts_for_connection(self, connection_id: str) -> int:
        doomed = [k for k, a in self.store.bank_accounts.items() if a.connection_id == connection_id]
        for key in doomed:
            del self.store.bank_accounts[key]
        return len(doomed)


def _connection_from_row(row: dict[str, Any]) -> Connection:
    permissions = row.get("permissions") or ""
    return Connection(
        id=row["id"],
        user_id=row["user_id"],
        provider=Provider(row["provider"]),
        status=ConnectionStatus(row["status"]),
        access_token=row.get("access_token"),
        refresh_token=row.get("refresh_token"),
        expires_at=row.get("expires_at"),
        permissions=[p for p in permissions.split(",") if p],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


def _category_from_row(row: dict[str, Any]) -> Category:
    return Category(
        id=row["id"],
        user_id=row["user_id"],
        name=row["name"],
        icon=row.get("icon"),
        archived=row["archived"],
        created_at=row["created_at"],
    )


def _budget_from_row(row: dict[str, Any]) -> Budget:
    return Budget(
        id=row["id"],
        user_id=row["user_id"],
        category_id=row["category_id"],
        period=BudgetPeriod(row["period"]),
        limit=Decimal(row["limit_amount"]),
        currency=row["currency"],
        starts_on=row["starts_on"],
        active=row["active"],
    )


def _transaction_from_row(row: dict[str, Any]) -> Transaction:
    return Transaction(
        id=row["id"],
        user_id=row["user_id"],
        category_id=row.get("category_id"),
        amount=Decimal(row["amount"]),
        currency=row["currency"],
        date=row["booked_on"],
        description=row.get("description"),
        merchant=row.get("merchant"),
        bank_account_id=row.get("bank_account_id"),
        external_id=row.get("external_id"),
        sync_hash=row.get("sync_hash"),
    )


def _bank_account_from_row(row: dict[str, Any]) -> StoredBankAccount:
    return StoredBankAccount(
        id=row["id"],
        user_id=row["user_id"],
        connection_id=row["connection_id"],
        provider=Provider(row["provider"]),
        provider_account_id=row["provider_account_id"],
        display_name=row["display_name"],
        currency=row["currency"],
        iban=row.get("iban"),
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


CONNECTION_COLUMNS = "id, user_id, provider, status, access_token, refresh_token, expires_at, permissions, created_at, updated_at"
CATEGORY_COLUMNS = "id, user_id, name, icon, archived, created_at"
BUDGET_COLUMNS = "id, user_id, category_id, period, limit_amount, currency, starts_on, active"
TRANSACTION_COLUMNS = (
    "id, user_id, category_id, amount, currency, booked_on, description, merchant, bank_account_id, external_id, sync_hash"
)
BANK_ACCOUNT_COLUMNS = (
    "id, user_id, connection_id, provider, provider_account_id, display_name, currency, iban, created_at, updated_at"
)


class PostgresPersistence(Persistence):
    def __init__(self, database_url: str) -> None:
        self.engine: AsyncEngine = create_async_engine(database_url, pool_pre_ping=True)

    async def _run(self, sql: str, params: dict[str, Any] | None = None) -> list[dict[str, Any]]:
        try:
            async with self.engine.begin() as conn:
                result = await conn.execute(text(sql), params or {})
                if result.returns_rows:
                    return [dict(row._mapping) for row in result.fetchall()]
                return []
        except SQLAlchemyError as exc:
            raise StorageError(f"postgres error: {exc.__class__.__name__}") from exc

    async def get_connection(self, connection_id: str) -> Optional[Connection]:
        rows = await self._run(
            f"select {CONNECTION_COLUMNS} from bank_connections where id = :id limit 1",
            {"id": connection_id},
        )
        return _connection_from_row(rows[0]) if rows else None

    async def put_connection(self, connection: Connection) -> Connection:
        await self._run(
            """
            insert into bank_connections (id, user_id, provider, status, access_token, refresh_token, expires_at, permissions, created_at, updated_at)
            values (:id, :user_id, :provider, :status, :access_token, :refresh_token, :expires_at, :permissions, :created_at, :updated_at)
            on conflict (id) do update set
              status = excluded.status,
              access_token = excluded.access_token,
              refresh_token = excluded.refresh_token,
              expires_at = excluded.expires_at,
              permissions = excluded.permissions,
              updated_at = excluded.updated_at
            """,
            {
                "id": connection.id,
                "user_id": connection.user_id,
                "provider": connection.provider.value,
                "status": connection.status.value,
                "access_token": connection.access_token,
                "refresh_token": connection.refresh_token,
                "expires_at": connection.expires_at,
                "permissions": ",".join(connection.permissions),
                "created_at": connection.created_at,
                "updated_at": connection.updated_at,
            },
        )
        return connection

    async def delete_connection(self, connection_id: str) -> bool:
        rows = await self._run("delete from bank_connections where id = :id returning id", {"id": connection_id})
        return bool(rows)

    async def list_connections_by_user(self, user_id: str) -> list[Connection]:
        rows = await self._run(
            f"select {CONNECTION_COLUMNS} from bank_connections where user_id = :user_id order by created_at desc",
            {"user_id": user_id},
        )
        return [_connection_from_row(r) for r in rows]

    async def list_connections(self) -> list[Connection]:
        rows = await self._run(f"select {CONNECTION_COLUMNS} from bank_connections")
        return [_connection_from_row(r) for r in rows]

    async def list_categories(self, user_id: str, include_archived: bool = False) -> list[Category]:
        archived_clause = "" if include_archived else " and not archived"
        rows = await self._run(
            f"select {CATEGORY_COLUMNS} from categories where user_id = :user_id{archived_clause} order by created_at",
            {"user_id": user_id},
        )
        return [_category_from_row(r) for r in rows]

    async def get_category(self, user_id: str, category_id: str) -> Optional[Category]:
        rows = await self._run(
            f"select {CATEGORY_COLUMNS} from categories where id = :id and user_id = :user_id limit 1",
            {"id": category_id, "user_id": user_id},
        )
        return _category_from_row(rows[0]) if rows else None

    async def create_category(self, category: Category) -> Category:
        rows = await self._run(
            f"""
            insert into categories (id, user_id, name, icon, archived, created_at)
            values (:id, :user_id, :name, :icon, :archived, :created_at)
            returning {CATEGORY_COLUMNS}
            """,
            {
                "id": category.id,
                "user_id": category.user_id,
                "name": category.name,
                "icon": category.icon,
                "archived": category.archived,
                "created_at": category.created_at,
            },
        )
        return _category_from_row(rows[0])

    async def update_category(self, user_id: str, category_id: str, changes: dict[str, Any]) -> Optional[Category]:
        current = await self.get_category(user_id, category_id)
        if current is None:
            return None
        updates = {k: v for k, v in changes.items() if k in CATEGORY_MUTABLE_FIELDS and v is not None}
        merged = replace(current, **updates)
        rows = await self._run(
            f"""
            update categories
            set name = :name, icon = :icon, archived = :archived, updated_at = now()
            where id = :id and user_id = :user_id
            returning {CATEGORY_COLUMNS}
            """,
            {
                "id": category_id,
                "user_id": user_id,
                "name": merged.name,
                "icon": merged.icon,
                "archived": merged.archived,
            },
        )
        return _category_from_row(rows[0]) if rows else None

    async def list_budgets(self, user_id: str) -> list[Budget]:
        rows = await self._run(
            f"select {BUDGET_COLUMNS} from budgets where user_id = :user_id order by starts_on desc",
            {"user_id": user_id},
        )
        return [_budget_from_row(r) for r in rows]

    async def get_budget(self, user_id: str, budget_id: str) -> Optional[Budget]:
        rows = await self._run(
            f"select {BUDGET_COLUMNS} from budgets where id = :id and user_id = :user_id limit 1",
            {"id": budget_id, "user_id": user_id},
        )
        return _budget_from_row(rows[0]) if rows else None

    async def create_budget(self, budget: Budget) -> Budget:
        rows = await self._run(
            f"""
            insert into budgets (id, user_id, category_id, period, limit_amount, currency, starts_on, active)
            values (:id, :user_id, :category_id, :period, :limit_amount, :currency, :starts_on, :active)
            returning {BUDGET_COLUMNS}
            """,
            {
                "id": budget.id,
                "user_id": budget.user_id,
                "category_id": budget.category_id,
                "period": budget.period.value,
                "limit_amount": budget.limit,
                "currency": budget.currency,
                "starts_on": budget.starts_on,
                "active": budget.active,
            },
        )
        return _budget_from_row(rows[0])

    async def update_budget(self, user_id: str, budget_id: str, changes: dict[str, Any]) -> Optional[Budget]:
        current = await self.get_budget(user_id, budget_id)
        if current is None:
            return None
        updates = {k: v for k, v in changes.items() if k in BUDGET_MUTABLE_FIELDS and v is not None}
        merged = replace(current, **updates)
        rows = await self._run(
            f"""
            update budgets
            set limit_amount = :limit_amount, currency = :currency, starts_on = :starts_on,
                active = :active, period = :period, updated_at = now()
            where id = :id and user_id = :user_id
            returning {BUDGET_COLUMNS}
            """,
            {
                "id": budget_id,
                "user_id": user_id,
                "limit_amount": merged.limit,
                "currency": merged.currency,
                "starts_on": merged.starts_on,
                "active": merged.active,
                "period": merged.period.value,
            },
        )
        return _budget_from_row(rows[0]) if rows else None

    async def delete_budget(self, user_id: str, budget_id: str) -> bool:
        rows = await self._run(
            "delete from budgets where id = :id and user_id = :user_id returning id",
            {"id": budget_id, "user_id": user_id},
        )
        return bool(rows)

    async def list_transactions(
        self,
        user_id: str,
        from_date: Optional[date] = None,
        to_date: Optional[date] = None,
        category_ids: Optional[Iterable[str]] = None,
    ) -> list[Transaction]:
        clauses = ["user_id = :user_id"]
        params: dict[str, Any] = {"user_id": user_id}
        if from_date:
            clauses.append("booked_on >= :from_date")
            params["from_date"] = from_date
        if to_date:
            clauses.append("booked_on <= :to_date")
            params["to_date"] = to_date
        if category_ids is not None:
            ids = list(category_ids)
            if not ids:
                return []
            names = []
            for idx, category_id in enumerate(ids):
                params[f"cat_{idx}"] = category_id
                names.append(f":cat_{idx}")
            clauses.append(f"category_id in ({', '.join(names)})")
        rows = await self._run(
            f"select {TRANSACTION_COLUMNS} from transactions where {' and '.join(clauses)} order by booked_on desc",
            params,
        )
        return [_transaction_from_row(r) for r in rows]

    async def get_transaction_by_external_id(self, user_id: str, external_id: str) -> Optional[Transaction]:
        rows = await self._run(
            f"select {TRANSACTION_COLUMNS} from transactions where user_id = :user_id and external_id = :external_id limit 1",
            {"user_id": user_id, "external_id": external_id},
        )
        return _transaction_from_row(rows[0]) if rows else None

    async def save_transaction(self, transaction: Transaction) -> Transaction:
        await self._run(
            """
            insert into transactions (id, user_id, category_id, amount, currency, booked_on, description, merchant, bank_account_id, external_id, sync_hash)
            values (:id, :user_id, :category_id, :amount, :currency, :booked_on, :description, :merchant, :bank_account_id, :external_id, :sync_hash)
            on conflict (id) do update set
              category_id = excluded.category_id,
              amount = excluded.amount,
              currency = excluded.currency,
              booked_on = excluded.booked_on,
              description = excluded.description,
              merchant = excluded.merchant,
              bank_account_id = excluded.bank_account_id,
              sync_hash = excluded.sync_hash,
              updated_at = now()
            """,
            {
                "id": transaction.id,
                "user_id": transaction.user_id,
                "category_id": transaction.category_id,
                "amount": transaction.amount,
                "currency": transaction.currency,
                "booked_on": transaction.date,
                "description": transaction.description,
                "merchant": transaction.merchant,
                "bank_account_id": transaction.bank_account_id,
                "external_id": transaction.external_id,
                "sync_hash": transaction.sync_hash,
            },
        )
        return transaction

    async def list_bank_accounts(self, user_id: str) -> list[StoredBankAccount]:
        rows = await self._run(
            f"select {BANK_ACCOUNT_COLUMNS} from bank_accounts where user_id = :user_id order by created_at desc",
            {"user_id": user_id},
        )
        return [_bank_account_from_row(r) for r in rows]

    async def upsert_bank_account(self, account: StoredBankAccount) -> StoredBankAccount:
        rows = await self._run(
            f"""
            insert into bank_accounts (id, user_id, connection_id, provider, provider_account_id, display_name, currency, iban, created_at, updated_at)
            values (:id, :user_id, :connection_id, :provider, :provider_account_id, :display_name, :currency, :iban, :created_at, :updated_at)
            on conflict (user_id, provider, provider_account_id) do update set
              connection_id = excluded.connection_id,
              display_name = excluded.display_name,
              currency = excluded.currency,
              iban = excluded.iban,
              updated_at = excluded.updated_at
            returning {BANK_ACCOUNT_COLUMNS}
            """,
            {
                "id": account.id,
                "user_id": account.user_id,
                "connection_id": account.connection_id,
                "provider": account.provider.value,
                "provider_account_id": account.provider_account_id,
                "display_name": account.display_name,
                "currency": account.currency,
                "iban": account.iban,
                "created_at": account.created_at,
                "updated_at": account.updated_at,
            },
        )
        return _bank_account_from_row(rows[0])

    async def delete_bank_accounts_for_connection(self, connection_id: str) -> int:
        rows = await self._run(
            "delete from bank_accounts where connection_id = :connection_id returning id",
            {"connection_id": connection_id},
        )
        return len(rows)


def get_persistence() -> Persistence:
    if settings.storage_backend == "postgres":
        return PostgresPersistence(settings.database_url)
    return InMemoryPersistence()
