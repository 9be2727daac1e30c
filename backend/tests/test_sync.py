from datetime import date, timedelta
from decimal import Decimal

import pytest

from conftest import linked_connection, provider_tx
from slimminder.errors import ConnectionUnavailableError
from slimminder.models import ConnectionStatus, Provider
from slimminder.services.sync import TransactionSyncService, compute_transaction_hash, compute_transaction_uid


@pytest.fixture
def sync_service(manager, persistence) -> TransactionSyncService:
    return TransactionSyncService(manager, persistence, timeout=0.5)


def test_uid_and_hash_are_stable() -> None:
    item = provider_tx("t1", "-12.30", date(2024, 3, 2))

    assert compute_transaction_uid("tink", "acc-1", "t1") == "tink:acc-1:t1"
    assert compute_transaction_hash(item) == compute_transaction_hash(provider_tx("t1", "-12.30", date(2024, 3, 2)))
    assert compute_transaction_hash(item) != compute_transaction_hash(provider_tx("t1", "-12.31", date(2024, 3, 2)))


@pytest.mark.asyncio
async def test_sync_creates_then_skips_unchanged(sync_service, persistence, fake_provider) -> None:
    connection = linked_connection(timedelta(hours=1))
    await persistence.put_connection(connection)
    fake_provider.transactions = [
        provider_tx("t1", "-12.30", date(2024, 3, 2)),
        provider_tx("t2", "2500", date(2024, 3, 1), category="income"),
    ]

    first = await sync_service.sync_connection(connection)
    second = await sync_service.sync_connection(connection)

    assert (first.created, first.updated, first.unchanged) == (2, 0, 0)
    assert (second.created, second.updated, second.unchanged) == (0, 0, 2)
    rows = await persistence.list_transactions("user-1")
    assert {r.category_id for r in rows} == {"groceries", "income"}
    assert all(r.bank_account_id for r in rows)


@pytest.mark.asyncio
async def test_sync_updates_changed_rows_and_keeps_user_category(sync_service, persistence, fake_provider) -> None:
    connection = linked_connection(timedelta(hours=1))
    await persistence.put_connection(connection)
    fake_provider.transactions = [provider_tx("t1", "-12.30", date(2024, 3, 2), category=None)]
    await sync_service.sync_connection(connection)

    stored = (await persistence.list_transactions("user-1"))[0]
    stored.category_id = "eating-out"
    await persistence.save_transaction(stored)
    fake_provider.transactions = [provider_tx("t1", "-14.00", date(2024, 3, 2), category="groceries")]

    stats = await sync_service.sync_connection(connection)

    assert stats.updated == 1
    rows = await persistence.list_transactions("user-1")
    assert len(rows) == 1
    assert rows[0].amount == Decimal("-14.00")
    assert rows[0].category_id == "eating-out"


@pytest.mark.asyncio
async def test_import_accounts_is_idempotent(sync_service, persistence) -> None:
    connection = linked_connection(timedelta(hours=1))
    await persistence.put_connection(connection)

    first = await sync_service.import_accounts(connection)
    second = await sync_service.import_accounts(connection)

    assert first[0].id == second[0].id
    assert len(await persistence.list_bank_accounts("user-1")) == 1


@pytest.mark.asyncio
async def test_provider_auth_error_expires_connection(sync_service, persistence, fake_provider) -> None:
    connection = linked_connection(timedelta(hours=1))
    await persistence.put_connection(connection)
    fake_provider.accounts_status = 401

    with pytest.raises(ConnectionUnavailableError):
        await sync_service.import_accounts(connection)

    assert (await persistence.get_connection(connection.id)).status == ConnectionStatus.expired


@pytest.mark.asyncio
async def test_expired_connection_cannot_sync(sync_service, persistence, fake_provider) -> None:
    connection = linked_connection(timedelta(hours=1))
    connection.status = ConnectionStatus.expired
    await persistence.put_connection(connection)

    with pytest.raises(ConnectionUnavailableError) as exc_info:
        await sync_service.sync_connection(connection)

    assert str(exc_info.value) == "Reconnect your bank."
    assert fake_provider.calls == []


@pytest.mark.asyncio
async def test_connection_for_unconfigured_provider_is_rejected(sync_service, persistence, fake_provider) -> None:
    connection = linked_connection(timedelta(hours=1))
    connection.provider = Provider.nordigen
    await persistence.put_connection(connection)

    with pytest.raises(ValueError):
        await sync_service.import_accounts(connection)

    assert fake_provider.calls == []
