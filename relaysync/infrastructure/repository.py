"""
Relay store access for relaysync.

RelayRepository is the interface the synchronization core depends on;
PostgresRepository implements it over a psycopg async connection pool. Rows are
converted into the immutable domain records at this boundary, including the
JSON encoding of the relay whitelist column.
"""

from __future__ import annotations

import json
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict, List, Optional, Protocol, Sequence, runtime_checkable

import psycopg
from psycopg import AsyncConnection
from psycopg_pool import AsyncConnectionPool

from relaysync.domain.models import (
    SHARED_OWNER,
    ConnectionDescriptor,
    DomainRecord,
    RelayRecord,
    UserRecord,
)
from relaysync.errors import DataIntegrityError, StoreError, map_db_error
from relaysync.infrastructure.db_factory import build_dsn, open_async_pool
from relaysync.utils.logging import get_logger

log = get_logger(__name__)

# The first user ever created becomes admin.
FIRST_USER_ID = 1

USER_COLUMNS = "id, external_id, display_name, admin"
DOMAIN_COLUMNS = "id, name, owner_id"
RELAY_COLUMNS = "id, user_id, alias, destination, description, enabled, deleted, whitelist"

SCHEMA_STATEMENTS = (
    """
    CREATE TABLE IF NOT EXISTS users (
        id SERIAL PRIMARY KEY,
        external_id VARCHAR(128) NOT NULL UNIQUE,
        display_name VARCHAR(128) NOT NULL DEFAULT '',
        admin BOOLEAN NOT NULL DEFAULT FALSE
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS domains (
        id SERIAL PRIMARY KEY,
        name VARCHAR(255) NOT NULL UNIQUE,
        owner_id INTEGER NOT NULL DEFAULT -1
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS relays (
        id SERIAL PRIMARY KEY,
        user_id INTEGER REFERENCES users(id),
        alias VARCHAR(128) NOT NULL,
        destination VARCHAR(128) NOT NULL,
        description TEXT NOT NULL DEFAULT '',
        enabled BOOLEAN NOT NULL DEFAULT TRUE,
        deleted BOOLEAN NOT NULL DEFAULT FALSE,
        whitelist TEXT NOT NULL DEFAULT '[]'
    )
    """,
    "CREATE UNIQUE INDEX IF NOT EXISTS relays_live_alias ON relays (alias) WHERE NOT deleted",
)

INSERT_USER = (
    "INSERT INTO users (external_id, display_name) VALUES (%s, %s) "
    f"ON CONFLICT (external_id) DO NOTHING RETURNING {USER_COLUMNS}"
)
SELECT_USER_BY_EXTERNAL_ID = f"SELECT {USER_COLUMNS} FROM users WHERE external_id = %s"
SELECT_USER_BY_ID = f"SELECT {USER_COLUMNS} FROM users WHERE id = %s"
SELECT_ALL_USERS = f"SELECT {USER_COLUMNS} FROM users ORDER BY id"
UPDATE_USER_ADMIN = "UPDATE users SET admin = %s WHERE id = %s"
UPDATE_USER_DISPLAY_NAME = "UPDATE users SET display_name = %s WHERE id = %s"

SELECT_RELAYS_PAGE = f"SELECT {RELAY_COLUMNS} FROM relays WHERE id > %s ORDER BY id LIMIT %s"
SELECT_ACTIVE_RELAYS_PAGE = (
    f"SELECT {RELAY_COLUMNS} FROM relays "
    "WHERE id > %s AND enabled AND NOT deleted ORDER BY id LIMIT %s"
)
SELECT_ALL_RELAYS = f"SELECT {RELAY_COLUMNS} FROM relays ORDER BY id"
SELECT_ALL_ACTIVE_RELAYS = (
    f"SELECT {RELAY_COLUMNS} FROM relays WHERE enabled AND NOT deleted ORDER BY id"
)
SELECT_RELAY_BY_ALIAS = f"SELECT {RELAY_COLUMNS} FROM relays WHERE alias = %s AND NOT deleted"
SELECT_USERS_RELAYS = f"SELECT {RELAY_COLUMNS} FROM relays WHERE user_id = %s ORDER BY id"
INSERT_RELAY = (
    "INSERT INTO relays (user_id, alias, destination, description, enabled, whitelist) "
    f"VALUES (%s, %s, %s, %s, %s, %s) RETURNING {RELAY_COLUMNS}"
)
UPDATE_RELAY = (
    "UPDATE relays SET user_id = %s, alias = %s, destination = %s, description = %s, "
    f"enabled = %s, deleted = %s, whitelist = %s WHERE id = %s RETURNING {RELAY_COLUMNS}"
)
SOFT_DELETE_RELAY = "UPDATE relays SET deleted = TRUE WHERE id = %s AND NOT deleted"

SELECT_MY_DOMAINS = (
    f"SELECT {DOMAIN_COLUMNS} FROM domains WHERE owner_id = %s OR owner_id = %s ORDER BY name"
)
INSERT_DOMAIN = f"INSERT INTO domains (name, owner_id) VALUES (%s, %s) RETURNING {DOMAIN_COLUMNS}"
DELETE_DOMAIN = "DELETE FROM domains WHERE name = %s"


@runtime_checkable
class RelayRepository(Protocol):
    """
    Store operations used by relaysync and the tooling around it.

    Only get_relays is on the synchronization hot path; the rest serve the
    management surface (sign-in, relay and domain administration).
    """

    async def get_user_by_external_id(self, token: str, display_name: str = "") -> UserRecord: ...

    async def set_admin(self, user_id: int, is_admin: bool) -> int: ...

    async def set_display_name(self, user_id: int, display_name: str) -> int: ...

    async def get_all_relays(self, include_disabled: bool = False) -> List[RelayRecord]: ...

    async def get_relays(
        self, include_disabled: bool, after_id: int, page_size: int
    ) -> List[RelayRecord]: ...

    async def get_relay_by_alias(self, alias: str) -> Optional[RelayRecord]: ...

    async def create_relay(
        self,
        user_id: Optional[int],
        alias: str,
        destination: str,
        description: str = "",
        enabled: bool = True,
        whitelist: Sequence[str] = (),
    ) -> RelayRecord: ...

    async def update_relay(self, relay: RelayRecord) -> Optional[RelayRecord]: ...

    async def delete_relay(self, relay_id: int) -> bool: ...

    async def get_users_relays(self, user_id: int) -> List[RelayRecord]: ...

    async def get_my_domains(self, user_id: int) -> List[DomainRecord]: ...

    async def create_domain(self, name: str, owner_id: int = SHARED_OWNER) -> DomainRecord: ...

    async def delete_domain(self, name: str) -> bool: ...

    async def close(self) -> None: ...


def encode_whitelist(whitelist: Sequence[str]) -> str:
    return json.dumps(list(whitelist))


def decode_whitelist(raw: Any, relay_id: Any = None) -> tuple[str, ...]:
    if raw is None or raw == "":
        return ()
    try:
        value = json.loads(raw) if isinstance(raw, str) else raw
    except ValueError as exc:
        raise DataIntegrityError(f"Relay {relay_id} has a malformed whitelist: {exc}") from exc
    if not isinstance(value, list) or not all(isinstance(item, str) for item in value):
        raise DataIntegrityError(f"Relay {relay_id} whitelist is not a list of strings")
    return tuple(value)


def _relay_from_row(row: Dict[str, Any]) -> RelayRecord:
    values = dict(row)
    values["whitelist"] = decode_whitelist(values.get("whitelist"), values.get("id"))
    return RelayRecord(**values)


class PostgresRepository:
    """
    RelayRepository backed by PostgreSQL.

    Example
    -------
        repo = await PostgresRepository.connect(snapshot.connection)
        try:
            page = await repo.get_relays(False, 0, 100)
        finally:
            await repo.close()
    """

    def __init__(self, pool: AsyncConnectionPool) -> None:
        self._pool = pool

    @classmethod
    async def connect(
        cls,
        connection: ConnectionDescriptor,
        min_size: int = 1,
        max_size: int = 4,
        timeout: Optional[float] = 10.0,
    ) -> "PostgresRepository":
        """
        Open a pool against the store described by `connection`.

        Raises
        ------
        ConfigurationError
            If the descriptor is not a PostgreSQL URI.
        StoreError
            If the store is unreachable after retries.
        """
        dsn = build_dsn(connection)
        try:
            pool = await open_async_pool(dsn, min_size=min_size, max_size=max_size, timeout=timeout)
        except psycopg.Error as exc:
            raise StoreError(
                f"Cannot connect to relay store {connection.host}/{connection.database}: {exc}"
            ) from exc
        log.info(
            "Connected to relay store",
            extra={"host": connection.host, "database": connection.database},
        )
        return cls(pool)

    async def __aenter__(self) -> "PostgresRepository":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    @asynccontextmanager
    async def _connection(self) -> AsyncIterator[AsyncConnection]:
        try:
            async with self._pool.connection() as conn:
                yield conn
        except psycopg.Error as exc:
            raise map_db_error(exc) from exc

    async def _fetchall(self, sql: str, params: Sequence[Any] = ()) -> List[Dict[str, Any]]:
        async with self._connection() as conn:
            cur = await conn.execute(sql, params)
            return await cur.fetchall()

    async def _fetchone(self, sql: str, params: Sequence[Any] = ()) -> Optional[Dict[str, Any]]:
        async with self._connection() as conn:
            cur = await conn.execute(sql, params)
            return await cur.fetchone()

    async def _execute(self, sql: str, params: Sequence[Any] = ()) -> int:
        async with self._connection() as conn:
            cur = await conn.execute(sql, params)
            return cur.rowcount

    async def ensure_schema(self) -> None:
        """Create the relay tables if they do not exist yet."""
        async with self._connection() as conn:
            for statement in SCHEMA_STATEMENTS:
                await conn.execute(statement)
        log.info("Relay store schema ensured")

    # Users

    async def get_user_by_external_id(self, token: str, display_name: str = "") -> UserRecord:
        """
        Return the user for an external identity, creating it on first sign-in.

        The very first user created is promoted to admin. A changed display
        name reported by the identity provider is written back.
        """
        async with self._connection() as conn:
            cur = await conn.execute(INSERT_USER, (token, display_name))
            row = await cur.fetchone()
            if row is not None:
                if row["id"] == FIRST_USER_ID and not row["admin"]:
                    await conn.execute(UPDATE_USER_ADMIN, (True, row["id"]))
                    row = {**row, "admin": True}
                    log.info("Bootstrapped first user as admin", extra={"user_id": row["id"]})
                return UserRecord(**row)

            cur = await conn.execute(SELECT_USER_BY_EXTERNAL_ID, (token,))
            row = await cur.fetchone()
            if row is None:
                raise StoreError(f"User {token!r} vanished during sign-in")
            if display_name and row["display_name"] != display_name:
                await conn.execute(UPDATE_USER_DISPLAY_NAME, (display_name, row["id"]))
                row = {**row, "display_name": display_name}
            return UserRecord(**row)

    async def get_user_by_id(self, user_id: int) -> Optional[UserRecord]:
        row = await self._fetchone(SELECT_USER_BY_ID, (user_id,))
        return UserRecord(**row) if row is not None else None

    async def get_all_users(self) -> List[UserRecord]:
        return [UserRecord(**row) for row in await self._fetchall(SELECT_ALL_USERS)]

    async def set_admin(self, user_id: int, is_admin: bool) -> int:
        return await self._execute(UPDATE_USER_ADMIN, (is_admin, user_id))

    async def set_display_name(self, user_id: int, display_name: str) -> int:
        return await self._execute(UPDATE_USER_DISPLAY_NAME, (display_name, user_id))

    # Relays

    async def get_all_relays(self, include_disabled: bool = False) -> List[RelayRecord]:
        sql = SELECT_ALL_RELAYS if include_disabled else SELECT_ALL_ACTIVE_RELAYS
        return [_relay_from_row(row) for row in await self._fetchall(sql)]

    async def get_relays(
        self, include_disabled: bool, after_id: int, page_size: int
    ) -> List[RelayRecord]:
        """One page of relays with id > after_id, ascending, at most page_size rows."""
        sql = SELECT_RELAYS_PAGE if include_disabled else SELECT_ACTIVE_RELAYS_PAGE
        rows = await self._fetchall(sql, (after_id, page_size))
        return [_relay_from_row(row) for row in rows]

    async def get_relay_by_alias(self, alias: str) -> Optional[RelayRecord]:
        row = await self._fetchone(SELECT_RELAY_BY_ALIAS, (alias,))
        return _relay_from_row(row) if row is not None else None

    async def get_users_relays(self, user_id: int) -> List[RelayRecord]:
        return [_relay_from_row(row) for row in await self._fetchall(SELECT_USERS_RELAYS, (user_id,))]

    async def create_relay(
        self,
        user_id: Optional[int],
        alias: str,
        destination: str,
        description: str = "",
        enabled: bool = True,
        whitelist: Sequence[str] = (),
    ) -> RelayRecord:
        row = await self._fetchone(
            INSERT_RELAY,
            (user_id, alias, destination, description, enabled, encode_whitelist(whitelist)),
        )
        if row is None:
            raise StoreError(f"Insert of relay {alias!r} returned no row")
        return _relay_from_row(row)

    async def update_relay(self, relay: RelayRecord) -> Optional[RelayRecord]:
        row = await self._fetchone(
            UPDATE_RELAY,
            (
                relay.user_id,
                relay.alias,
                relay.destination,
                relay.description,
                relay.enabled,
                relay.deleted,
                encode_whitelist(relay.whitelist),
                relay.id,
            ),
        )
        return _relay_from_row(row) if row is not None else None

    async def delete_relay(self, relay_id: int) -> bool:
        """Soft-delete a relay; returns False if it was missing or already deleted."""
        return await self._execute(SOFT_DELETE_RELAY, (relay_id,)) > 0

    # Domains

    async def get_my_domains(self, user_id: int) -> List[DomainRecord]:
        rows = await self._fetchall(SELECT_MY_DOMAINS, (SHARED_OWNER, user_id))
        return [DomainRecord(**row) for row in rows]

    async def create_domain(self, name: str, owner_id: int = SHARED_OWNER) -> DomainRecord:
        row = await self._fetchone(INSERT_DOMAIN, (name, owner_id))
        if row is None:
            raise StoreError(f"Insert of domain {name!r} returned no row")
        return DomainRecord(**row)

    async def delete_domain(self, name: str) -> bool:
        return await self._execute(DELETE_DOMAIN, (name,)) > 0

    async def close(self) -> None:
        await self._pool.close()


__all__ = [
    "FIRST_USER_ID",
    "RelayRepository",
    "PostgresRepository",
    "encode_whitelist",
    "decode_whitelist",
]
