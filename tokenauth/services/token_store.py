"""Refresh token persistence.

TokenStore is the contract the rotation engine depends on. Two backends
implement it:

- SqlTokenStore: the relational source of truth (async SQLAlchemy). Each
  operation runs in its own short transaction and commits before
  returning, so a stored record is durable before the caller moves on.
- InMemoryTokenStore: a dict-backed store for tests and local experiments.

Uniqueness of bind keys and secret hashes is enforced by the backend
(unique constraints for SQL), never by in-process locking, and collisions
surface as RecordExistsError. Stores do not retry: a blind retry of a
failed create could issue a duplicate credential.
"""

import logging
from collections.abc import Callable
from dataclasses import dataclass, replace
from datetime import UTC, datetime, timedelta
from typing import Any, Protocol

from sqlalchemy import select, update
from sqlalchemy.engine import CursorResult
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from tokenauth.models.refresh_token import RefreshToken
from tokenauth.services.errors import RecordExistsError, RecordNotFoundError, StorageError

logger = logging.getLogger(__name__)


def utc_now() -> datetime:
    return datetime.now(UTC)


@dataclass(frozen=True)
class RefreshRecord:
    """Snapshot of a stored refresh credential."""

    owner_id: str
    bind_key: str
    secret_hash: str
    created_at: datetime
    expires_at: datetime
    is_revoked: bool = False

    def is_expired(self, now: datetime) -> bool:
        return now >= self.expires_at


class TokenStore(Protocol):
    """Persistence contract for refresh credential records."""

    async def create(
        self, owner_id: str, bind_key: str, secret_hash: str, ttl: timedelta
    ) -> RefreshRecord:
        """Persist a new record expiring ``ttl`` after creation.

        Raises RecordExistsError on a bind key or hash collision and
        StorageError on any other backend failure.
        """
        ...

    async def get(self, bind_key: str) -> RefreshRecord:
        """Exact-match lookup. Raises RecordNotFoundError if absent.

        Revoked and expired records are returned as-is.
        """
        ...

    async def revoke(self, bind_key: str) -> None:
        """Mark a record revoked. Revoking twice is not an error.

        Raises RecordNotFoundError if no record has this bind key.
        """
        ...


class InMemoryTokenStore:
    """Dict-backed TokenStore."""

    def __init__(self, clock: Callable[[], datetime] = utc_now):
        self._clock = clock
        self._records: dict[str, RefreshRecord] = {}
        self._hashes: set[str] = set()

    async def create(
        self, owner_id: str, bind_key: str, secret_hash: str, ttl: timedelta
    ) -> RefreshRecord:
        if bind_key in self._records or secret_hash in self._hashes:
            raise RecordExistsError()
        now = self._clock()
        record = RefreshRecord(
            owner_id=owner_id,
            bind_key=bind_key,
            secret_hash=secret_hash,
            created_at=now,
            expires_at=now + ttl,
        )
        self._records[bind_key] = record
        self._hashes.add(secret_hash)
        return record

    async def get(self, bind_key: str) -> RefreshRecord:
        try:
            return self._records[bind_key]
        except KeyError:
            raise RecordNotFoundError() from None

    async def revoke(self, bind_key: str) -> None:
        record = await self.get(bind_key)
        if not record.is_revoked:
            self._records[bind_key] = replace(record, is_revoked=True)

    def __len__(self) -> int:
        return len(self._records)


def _as_utc(value: datetime) -> datetime:
    # SQLite drops tzinfo on the way back; stored values are always UTC
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def _to_record(row: RefreshToken) -> RefreshRecord:
    return RefreshRecord(
        owner_id=row.owner_id,
        bind_key=row.bind_key,
        secret_hash=row.secret_hash,
        created_at=_as_utc(row.created_at),
        expires_at=_as_utc(row.expires_at),
        is_revoked=row.is_revoked,
    )


class SqlTokenStore:
    """TokenStore backed by the ``refresh_tokens`` table."""

    def __init__(
        self,
        session_maker: async_sessionmaker[AsyncSession],
        clock: Callable[[], datetime] = utc_now,
    ):
        self._session_maker = session_maker
        self._clock = clock

    async def create(
        self, owner_id: str, bind_key: str, secret_hash: str, ttl: timedelta
    ) -> RefreshRecord:
        now = self._clock()
        row = RefreshToken(
            owner_id=owner_id,
            bind_key=bind_key,
            secret_hash=secret_hash,
            created_at=now,
            expires_at=now + ttl,
            is_revoked=False,
        )
        try:
            async with self._session_maker() as session:
                session.add(row)
                await session.commit()
        except IntegrityError as e:
            logger.warning("Refresh token unique constraint violated for owner %s", owner_id)
            raise RecordExistsError() from e
        except (SQLAlchemyError, OSError) as e:
            raise StorageError(f"Failed to save refresh token: {e}") from e

        return RefreshRecord(
            owner_id=owner_id,
            bind_key=bind_key,
            secret_hash=secret_hash,
            created_at=now,
            expires_at=now + ttl,
        )

    async def get(self, bind_key: str) -> RefreshRecord:
        try:
            async with self._session_maker() as session:
                result = await session.execute(
                    select(RefreshToken).where(RefreshToken.bind_key == bind_key)
                )
                row = result.scalar_one_or_none()
        except (SQLAlchemyError, OSError) as e:
            raise StorageError(f"Failed to load refresh token: {e}") from e

        if row is None:
            raise RecordNotFoundError()
        return _to_record(row)

    async def revoke(self, bind_key: str) -> None:
        try:
            async with self._session_maker() as session:
                result: CursorResult[Any] = await session.execute(  # type: ignore[assignment]
                    update(RefreshToken)
                    .where(RefreshToken.bind_key == bind_key)
                    .values(is_revoked=True)
                )
                await session.commit()
        except (SQLAlchemyError, OSError) as e:
            raise StorageError(f"Failed to revoke refresh token: {e}") from e

        if result.rowcount == 0:
            raise RecordNotFoundError()

    async def ping(self) -> bool:
        """Return True if the ``refresh_tokens`` table can be read."""
        try:
            async with self._session_maker() as session:
                await session.execute(select(RefreshToken.id).limit(1))
        except (SQLAlchemyError, OSError) as e:
            logger.warning("Refresh token table unavailable: %s", e)
            return False
        return True
