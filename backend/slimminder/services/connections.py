from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Awaitable, Callable, Mapping, Optional, Sequence, TypeVar

from ..errors import (
    AuthorizationStartError,
    AuthorizationStateError,
    ConnectionExistsError,
    ProviderError,
)
from ..models import Connection, ConnectionStatus, Provider
from ..persistence import Persistence
from ..providers.base import DEFAULT_PERMISSIONS, ProviderAdapter
from .locks import KeyedLock

logger = logging.getLogger(__name__)

T = TypeVar("T")

REFRESH_SKEW = timedelta(minutes=5)

STATUS_MESSAGES = {
    ConnectionStatus.pending: "Connection not finished, retry the authorization.",
    ConnectionStatus.linked: "Connected.",
    ConnectionStatus.expired: "Reconnect your bank.",
    ConnectionStatus.failed: "Connection failed, try again.",
}


def status_message(status: ConnectionStatus) -> str:
    return STATUS_MESSAGES[status]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _short(connection_id: str) -> str:
    return connection_id[:8]


@dataclass(frozen=True)
class PendingAuthorization:
    connection: Connection
    auth_url: str


class ConnectionManager:
    """Owns the bank-connection state machine.

    pending -> linked    code exchanged for tokens
    pending -> failed    exchange failed or the user cancelled at the provider
    linked  -> linked    token refreshed ahead of expiry
    linked  -> expired   refresh failed or the provider rejected the token
    any     -> deleted   revoke()

    Every write to a connection record happens under that record's lock, so
    there is at most one in-flight refresh per connection id. Creating and
    linking also hold a (user, provider) lock, taken first, so two callbacks
    cannot both link the same bank for one user.
    """

    def __init__(
        self,
        persistence: Persistence,
        providers: Mapping[Provider, ProviderAdapter],
        *,
        refresh_skew: timedelta = REFRESH_SKEW,
        call_timeout: float = 10.0,
        pending_ttl: timedelta = timedelta(hours=24),
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.persistence = persistence
        self.providers = dict(providers)
        self.refresh_skew = refresh_skew
        self.call_timeout = call_timeout
        self.pending_ttl = pending_ttl
        self._clock = clock
        self._locks = KeyedLock()

    def adapter_for(self, provider: Provider) -> ProviderAdapter:
        adapter = self.providers.get(provider)
        if adapter is None:
            raise ValueError(f"Provider not available: {provider.value}")
        return adapter

    async def _call(self, call: Awaitable[T]) -> T:
        return await asyncio.wait_for(call, timeout=self.call_timeout)

    async def _transition(self, connection: Connection, status: ConnectionStatus) -> Connection:
        previous = connection.status
        connection.status = status
        connection.updated_at = self._clock()
        await self.persistence.put_connection(connection)
        logger.info("connection_status: id=%s %s->%s", _short(connection.id), previous.value, status.value)
        return connection

    async def get_connection(self, connection_id: str) -> Optional[Connection]:
        return await self.persistence.get_connection(connection_id)

    async def list_connections_by_user(self, user_id: str) -> list[Connection]:
        return await self.persistence.list_connections_by_user(user_id)

    def _pair_key(self, user_id: str, provider: Provider) -> str:
        return f"{user_id}:{provider.value}"

    async def create_connection(
        self,
        user_id: str,
        provider: Provider,
        permissions: Optional[Sequence[str]] = None,
    ) -> PendingAuthorization:
        """Issue an authorization URL and store the matching pending connection.

        Earlier pending attempts for the same (user, provider) are dropped so
        retries never pile up orphaned rows; a linked connection blocks a new one.
        """
        adapter = self.adapter_for(provider)
        scopes = list(permissions or DEFAULT_PERMISSIONS)
        async with self._locks.hold(self._pair_key(user_id, provider)):
            existing = [c for c in await self.persistence.list_connections_by_user(user_id) if c.provider == provider]
            if any(c.status == ConnectionStatus.linked for c in existing):
                raise ConnectionExistsError(f"User already has an active connection with {provider.value}")

            try:
                request = await self._call(adapter.generate_auth_url(user_id, scopes))
            except (ProviderError, asyncio.TimeoutError) as exc:
                logger.warning("connection_start_failed: user=%s provider=%s error=%s", user_id, provider.value, exc.__class__.__name__)
                raise AuthorizationStartError("Failed to generate authorization URL") from exc

            for stale in existing:
                if stale.status != ConnectionStatus.pending:
                    continue
                async with self._locks.hold(stale.id):
                    current = await self.persistence.get_connection(stale.id)
                    if current is not None and current.status == ConnectionStatus.pending:
                        await self.persistence.delete_connection(stale.id)
                        logger.info("connection_pending_replaced: id=%s", _short(stale.id))

            now = self._clock()
            connection = Connection(
                id=request.state,
                user_id=user_id,
                provider=provider,
                status=ConnectionStatus.pending,
                created_at=now,
                updated_at=now,
                permissions=scopes,
            )
            await self.persistence.put_connection(connection)
        logger.info("connection_created: id=%s user=%s provider=%s", _short(connection.id), user_id, provider.value)
        return PendingAuthorization(connection=connection, auth_url=request.auth_url)

    async def complete_authorization(self, state: str, code: str) -> Optional[Connection]:
        # the (user, provider) lock is always taken before the per-state lock
        peek = await self.persistence.get_connection(state)
        if peek is None:
            return None
        async with self._locks.hold(self._pair_key(peek.user_id, peek.provider)), self._locks.hold(state):
            connection = await self.persistence.get_connection(state)
            if connection is None:
                return None
            if connection.status != ConnectionStatus.pending:
                raise AuthorizationStateError("Authorization state has already been used")

            adapter = self.adapter_for(connection.provider)
            try:
                grant = await self._call(adapter.exchange_code_for_token(code, state))
            except (ProviderError, asyncio.TimeoutError) as exc:
                logger.warning("code_exchange_failed: id=%s error=%s", _short(state), exc.__class__.__name__)
                return await self._transition(connection, ConnectionStatus.failed)

            siblings = await self.persistence.list_connections_by_user(connection.user_id)
            if any(
                c.id != connection.id and c.provider == connection.provider and c.status == ConnectionStatus.linked
                for c in siblings
            ):
                logger.warning("code_exchange_duplicate_link: id=%s", _short(state))
                return await self._transition(connection, ConnectionStatus.failed)

            now = self._clock()
            connection.access_token = grant.access_token
            connection.refresh_token = grant.refresh_token
            connection.expires_at = now + timedelta(seconds=grant.expires_in_seconds)
            return await self._transition(connection, ConnectionStatus.linked)

    async def fail_authorization(self, state: str, reason: str) -> Optional[Connection]:
        async with self._locks.hold(state):
            connection = await self.persistence.get_connection(state)
            if connection is None:
                return None
            if connection.status != ConnectionStatus.pending:
                raise AuthorizationStateError("Authorization state has already been used")
            logger.info("authorization_cancelled: id=%s reason=%s", _short(state), reason)
            return await self._transition(connection, ConnectionStatus.failed)

    def _needs_refresh(self, connection: Connection) -> bool:
        return connection.expires_at is None or connection.expires_at <= self._clock() + self.refresh_skew

    async def get_valid_access_token(self, connection_id: str) -> Optional[str]:
        """Return a token usable for at least the refresh skew, or None."""
        connection = await self.persistence.get_connection(connection_id)
        if connection is None or connection.status != ConnectionStatus.linked:
            return None
        if not self._needs_refresh(connection):
            return connection.access_token

        async with self._locks.hold(connection_id):
            # another caller may have refreshed while we waited
            connection = await self.persistence.get_connection(connection_id)
            if connection is None or connection.status != ConnectionStatus.linked:
                return None
            if not self._needs_refresh(connection):
                return connection.access_token
            return await self._refresh(connection)

    async def _refresh(self, connection: Connection) -> Optional[str]:
        if not connection.refresh_token:
            await self._transition(connection, ConnectionStatus.expired)
            return None
        adapter = self.adapter_for(connection.provider)
        try:
            refreshed = await self._call(adapter.refresh_token(connection.refresh_token))
        except (ProviderError, asyncio.TimeoutError) as exc:
            logger.warning("token_refresh_failed: id=%s error=%s", _short(connection.id), exc.__class__.__name__)
            await self._transition(connection, ConnectionStatus.expired)
            return None

        now = self._clock()
        connection.access_token = refreshed.access_token
        connection.expires_at = now + timedelta(seconds=refreshed.expires_in_seconds)
        if refreshed.refresh_token:
            connection.refresh_token = refreshed.refresh_token
        connection.updated_at = now
        await self.persistence.put_connection(connection)
        logger.info("token_refreshed: id=%s", _short(connection.id))
        return connection.access_token

    async def mark_expired(self, connection_id: str) -> Optional[Connection]:
        async with self._locks.hold(connection_id):
            connection = await self.persistence.get_connection(connection_id)
            if connection is None:
                return None
            if connection.status == ConnectionStatus.linked:
                return await self._transition(connection, ConnectionStatus.expired)
            return connection

    async def revoke(self, connection_id: str) -> bool:
        """Revoke at the provider when possible, then always delete locally."""
        async with self._locks.hold(connection_id):
            connection = await self.persistence.get_connection(connection_id)
            if connection is None:
                return False
            if connection.access_token:
                try:
                    adapter = self.adapter_for(connection.provider)
                    await self._call(adapter.revoke_token(connection.access_token))
                except (ProviderError, asyncio.TimeoutError, ValueError) as exc:
                    logger.warning("remote_revoke_failed: id=%s error=%s", _short(connection_id), exc.__class__.__name__)
            await self.persistence.delete_connection(connection_id)
            logger.info("connection_revoked: id=%s user=%s", _short(connection_id), connection.user_id)
            return True

    def _is_stale(self, connection: Connection, now: datetime) -> bool:
        if connection.expires_at is not None:
            return connection.expires_at < now
        return connection.status == ConnectionStatus.pending and connection.created_at < now - self.pending_ttl

    async def cleanup_expired(self) -> int:
        """Delete expired and abandoned connections along with their bank accounts.

        Nothing is revoked at the provider: the stored tokens are already dead.
        """
        now = self._clock()
        removed = 0
        for connection in await self.persistence.list_connections():
            if not self._is_stale(connection, now):
                continue
            async with self._locks.hold(connection.id):
                current = await self.persistence.get_connection(connection.id)
                if current is None or not self._is_stale(current, now):
                    continue
                await self.persistence.delete_connection(connection.id)
                await self.persistence.delete_bank_accounts_for_connection(connection.id)
                removed += 1
        if removed:
            logger.info("connections_cleaned: count=%d", removed)
        return removed
