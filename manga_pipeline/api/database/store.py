"""Entity store: the durable key-value layer under every pipeline entity.

Items are plain dicts carrying their key attributes (PK, SK, GSI1PK, GSI1SK,
GSI2PK, GSI2SK), ``entityType``, the entity's camelCase fields and a
``version`` counter maintained by the store.

Status lives in two places (``status`` and ``GSI2PK``). The only way to
change it is the ``status=`` argument of ``update_fields``, which writes
both in the same statement.
"""

import copy
import json
from abc import ABC, abstractmethod
from typing import Any, Awaitable, Callable, Iterable, Optional, TypeVar

import asyncpg

from ...core.errors import AlreadyExistsError, InternalError
from ...core.resilience import RetryHandler
from ...core.types import utc_timestamp
from . import keys

T = TypeVar("T")

_INDEX_COLUMNS = {
    keys.GSI1: ("gsi1pk", "gsi1sk"),
    keys.GSI2: ("gsi2pk", "gsi2sk"),
}


def _check_fields(fields: dict[str, Any]) -> None:
    for reserved in ("status", keys.PK, keys.SK, keys.GSI2PK, "version"):
        if reserved in fields:
            raise ValueError(
                f"'{reserved}' cannot be set through the field map; "
                "use the status argument for status changes"
            )


class EntityStore(ABC):
    """Contract shared by the Postgres and in-memory stores."""

    @abstractmethod
    async def create(self, item: dict[str, Any]) -> None:
        """Insert ``item``. Raises AlreadyExistsError if (PK, SK) exists."""

    @abstractmethod
    async def get(self, pk: str, sk: str) -> Optional[dict[str, Any]]:
        """Fetch one item by primary key."""

    @abstractmethod
    async def query_by_prefix(
        self,
        pk: str,
        sk_prefix: str,
        *,
        scan_forward: bool = True,
        limit: Optional[int] = None,
    ) -> list[dict[str, Any]]:
        """Items under ``pk`` whose SK starts with ``sk_prefix``, ordered by SK."""

    @abstractmethod
    async def query_index(
        self,
        index_name: str,
        index_pk: str,
        index_sk: Optional[str] = None,
        *,
        scan_forward: bool = True,
        limit: Optional[int] = None,
    ) -> list[dict[str, Any]]:
        """Items on a secondary index, ordered by the index sort key."""

    @abstractmethod
    async def update_fields(
        self,
        pk: str,
        sk: str,
        fields: dict[str, Any],
        *,
        status: Optional[str] = None,
        status_not_in: Iterable[str] = (),
        expected_version: Optional[int] = None,
    ) -> bool:
        """Merge ``fields`` into an existing item.

        When ``status`` is given, ``status`` and ``GSI2PK`` change together.
        Returns False, without writing, when the item is missing, its current
        status is in ``status_not_in``, or its version differs from
        ``expected_version``.
        """

    async def close(self) -> None:
        return None


class MemoryEntityStore(EntityStore):
    """Process-local store with the same semantics as PostgresEntityStore.

    Used when DATABASE_URL is not configured and in tests.
    """

    def __init__(self):
        self._items: dict[tuple[str, str], dict[str, Any]] = {}

    async def create(self, item: dict[str, Any]) -> None:
        key = (item[keys.PK], item[keys.SK])
        if key in self._items:
            raise AlreadyExistsError(f"Item already exists: {key[0]} / {key[1]}")
        stored = copy.deepcopy(item)
        stored["version"] = 1
        self._items[key] = stored

    async def get(self, pk: str, sk: str) -> Optional[dict[str, Any]]:
        item = self._items.get((pk, sk))
        return copy.deepcopy(item) if item is not None else None

    async def query_by_prefix(self, pk, sk_prefix, *, scan_forward=True, limit=None):
        matches = [
            item for (item_pk, item_sk), item in self._items.items()
            if item_pk == pk and item_sk.startswith(sk_prefix)
        ]
        matches.sort(key=lambda item: item[keys.SK], reverse=not scan_forward)
        if limit is not None:
            matches = matches[:limit]
        return [copy.deepcopy(item) for item in matches]

    async def query_index(self, index_name, index_pk, index_sk=None, *, scan_forward=True, limit=None):
        if index_name not in _INDEX_COLUMNS:
            raise ValueError(f"Unknown index: {index_name}")
        pk_attr, sk_attr = f"{index_name}PK", f"{index_name}SK"
        matches = [
            item for item in self._items.values()
            if item.get(pk_attr) == index_pk and (index_sk is None or item.get(sk_attr) == index_sk)
        ]
        matches.sort(key=lambda item: item.get(sk_attr) or "", reverse=not scan_forward)
        if limit is not None:
            matches = matches[:limit]
        return [copy.deepcopy(item) for item in matches]

    async def update_fields(
        self,
        pk,
        sk,
        fields,
        *,
        status=None,
        status_not_in=(),
        expected_version=None,
    ):
        _check_fields(fields)
        item = self._items.get((pk, sk))
        if item is None:
            return False
        if item.get("status") in set(status_not_in):
            return False
        if expected_version is not None and item.get("version") != expected_version:
            return False

        item.update(copy.deepcopy(fields))
        if status is not None:
            item["status"] = status
            item[keys.GSI2PK] = keys.status_key(status)
        item["updatedAt"] = utc_timestamp()
        item["version"] = item.get("version", 1) + 1
        return True

    def all_items(self) -> list[dict[str, Any]]:
        """Snapshot of every stored item."""
        return [copy.deepcopy(item) for item in self._items.values()]


class PostgresEntityStore(EntityStore):
    """Entity store backed by the ``entities`` table through asyncpg."""

    def __init__(self, pool: asyncpg.Pool):
        self.pool = pool

    @staticmethod
    def _row_to_item(row) -> dict[str, Any]:
        data = row["data"]
        item = json.loads(data) if isinstance(data, str) else dict(data)
        item["version"] = row["version"]
        return item

    async def create(self, item: dict[str, Any]) -> None:
        body = {k: v for k, v in item.items() if k != "version"}
        async with self.pool.acquire() as conn:
            inserted = await conn.fetchval(
                """
                INSERT INTO entities (pk, sk, gsi1pk, gsi1sk, gsi2pk, gsi2sk, entity_type, data, version)
                VALUES ($1, $2, $3, $4, $5, $6, $7, $8::jsonb, 1)
                ON CONFLICT (pk, sk) DO NOTHING
                RETURNING pk
                """,
                item[keys.PK],
                item[keys.SK],
                item.get(keys.GSI1PK),
                item.get(keys.GSI1SK),
                item.get(keys.GSI2PK),
                item.get(keys.GSI2SK),
                item.get("entityType", "Unknown"),
                json.dumps(body),
            )
        if inserted is None:
            raise AlreadyExistsError(f"Item already exists: {item[keys.PK]} / {item[keys.SK]}")

    async def get(self, pk: str, sk: str) -> Optional[dict[str, Any]]:
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow(
                "SELECT data, version FROM entities WHERE pk = $1 AND sk = $2",
                pk,
                sk,
            )
        return self._row_to_item(row) if row else None

    async def query_by_prefix(self, pk, sk_prefix, *, scan_forward=True, limit=None):
        direction = "ASC" if scan_forward else "DESC"
        async with self.pool.acquire() as conn:
            rows = await conn.fetch(
                f"""
                SELECT data, version FROM entities
                WHERE pk = $1 AND starts_with(sk, $2)
                ORDER BY sk {direction}
                LIMIT $3
                """,
                pk,
                sk_prefix,
                limit,
            )
        return [self._row_to_item(row) for row in rows]

    async def query_index(self, index_name, index_pk, index_sk=None, *, scan_forward=True, limit=None):
        if index_name not in _INDEX_COLUMNS:
            raise ValueError(f"Unknown index: {index_name}")
        pk_column, sk_column = _INDEX_COLUMNS[index_name]
        direction = "ASC" if scan_forward else "DESC"
        async with self.pool.acquire() as conn:
            rows = await conn.fetch(
                f"""
                SELECT data, version FROM entities
                WHERE {pk_column} = $1 AND ($2::text IS NULL OR {sk_column} = $2)
                ORDER BY {sk_column} {direction}
                LIMIT $3
                """,
                index_pk,
                index_sk,
                limit,
            )
        return [self._row_to_item(row) for row in rows]

    async def update_fields(
        self,
        pk,
        sk,
        fields,
        *,
        status=None,
        status_not_in=(),
        expected_version=None,
    ):
        _check_fields(fields)
        patch = dict(fields)
        patch["updatedAt"] = utc_timestamp()
        status_index = None
        if status is not None:
            status_index = keys.status_key(status)
            patch["status"] = status
            patch[keys.GSI2PK] = status_index
        excluded = list(status_not_in) or None

        async with self.pool.acquire() as conn:
            version = await conn.fetchval(
                """
                UPDATE entities
                SET data = data || $3::jsonb,
                    gsi2pk = COALESCE($4, gsi2pk),
                    version = version + 1,
                    updated_at = now()
                WHERE pk = $1 AND sk = $2
                  AND ($5::text[] IS NULL OR COALESCE(data->>'status', '') <> ALL($5::text[]))
                  AND ($6::int IS NULL OR version = $6)
                RETURNING version
                """,
                pk,
                sk,
                json.dumps(patch),
                status_index,
                excluded,
                expected_version,
            )
        return version is not None

    async def close(self) -> None:
        await self.pool.close()


# Postgres failures that usually clear up on their own
TRANSIENT_STORE_ERRORS = (
    asyncpg.exceptions.PostgresConnectionError,
    asyncpg.exceptions.TooManyConnectionsError,
    asyncpg.exceptions.DeadlockDetectedError,
    asyncpg.exceptions.SerializationError,
    OSError,
)


class RetryingEntityStore(EntityStore):
    """Runs every call on ``inner`` through a RetryHandler.

    Transient Postgres errors are raised as retryable InternalErrors so the
    handler backs off and tries again. Anything else (AlreadyExistsError
    included) goes through the usual retryable decision, which fails fast
    for non-transient errors.
    """

    def __init__(self, inner: EntityStore, retry: RetryHandler):
        self.inner = inner
        self.retry = retry

    async def _run(self, operation: str, call: Callable[[], Awaitable[T]]) -> T:
        async def attempt() -> T:
            try:
                return await call()
            except TRANSIENT_STORE_ERRORS as e:
                raise InternalError(f"Entity store {operation} failed: {e}", retryable=True) from e

        return await self.retry.execute(attempt, operation_name=f"store.{operation}")

    async def create(self, item: dict[str, Any]) -> None:
        await self._run("create", lambda: self.inner.create(item))

    async def get(self, pk: str, sk: str) -> Optional[dict[str, Any]]:
        return await self._run("get", lambda: self.inner.get(pk, sk))

    async def query_by_prefix(
        self,
        pk: str,
        sk_prefix: str,
        *,
        scan_forward: bool = True,
        limit: Optional[int] = None,
    ) -> list[dict[str, Any]]:
        return await self._run(
            "query",
            lambda: self.inner.query_by_prefix(pk, sk_prefix, scan_forward=scan_forward, limit=limit),
        )

    async def query_index(
        self,
        index_name: str,
        index_pk: str,
        index_sk: Optional[str] = None,
        *,
        scan_forward: bool = True,
        limit: Optional[int] = None,
    ) -> list[dict[str, Any]]:
        return await self._run(
            "query_index",
            lambda: self.inner.query_index(
                index_name, index_pk, index_sk, scan_forward=scan_forward, limit=limit
            ),
        )

    async def update_fields(
        self,
        pk: str,
        sk: str,
        fields: dict[str, Any],
        *,
        status: Optional[str] = None,
        status_not_in: Iterable[str] = (),
        expected_version: Optional[int] = None,
    ) -> bool:
        status_not_in = tuple(status_not_in)
        return await self._run(
            "update",
            lambda: self.inner.update_fields(
                pk,
                sk,
                fields,
                status=status,
                status_not_in=status_not_in,
                expected_version=expected_version,
            ),
        )

    async def close(self) -> None:
        await self.inner.close()
