"""Pool store: the single source of truth for instance records.

Every other component reads and mutates records through ``PoolStore``.
The table layout is a fixed contract shared with existing deployments,
so it mirrors the ``provision`` table column for column.
"""

from __future__ import annotations

from collections.abc import AsyncIterator, Mapping
from contextlib import asynccontextmanager
from datetime import UTC, datetime
from typing import Any
from zoneinfo import ZoneInfo

from loguru import logger
from sqlalchemy import (
    Column,
    DateTime,
    Index,
    MetaData,
    String,
    Table,
    and_,
    delete,
    func,
    select,
    update,
)
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine, create_async_engine
from sqlalchemy.pool import NullPool

from neptune_broker.constants import COLUMN_LENGTH, TABLE_NAME, ClaimedFlag
from neptune_broker.exceptions import DuplicateNameError, StoreError
from neptune_broker.types import Credential, InstanceRecord

log = logger.bind(component="store")

metadata = MetaData()

provision = Table(
    TABLE_NAME,
    metadata,
    Column("name", String(COLUMN_LENGTH), primary_key=True),
    Column("plan", String(COLUMN_LENGTH)),
    Column("claimed", String(COLUMN_LENGTH)),
    Column("makedate", DateTime(timezone=False), server_default=func.now()),
    Column("billingcode", String(COLUMN_LENGTH)),
    Column("endpoint", String(COLUMN_LENGTH)),
    Column("accesskey", String(COLUMN_LENGTH)),
    Column("secretkey", String(COLUMN_LENGTH)),
    Index("name_pkey", "name", unique=True),
)

_unclaimed = provision.c.claimed == ClaimedFlag.NO.value
_claimable = and_(
    _unclaimed,
    provision.c.endpoint != "",
    provision.c.accesskey != "",
    provision.c.secretkey != "",
)


def _as_utc(moment: datetime) -> datetime:
    """Naive UTC, the form ``makedate`` is stored in. Naive input is taken as UTC."""
    if moment.tzinfo is None:
        return moment
    return moment.astimezone(UTC).replace(tzinfo=None)


class PoolStore:
    """Async access to the ``provision`` table.

    ``makedate`` is always written in UTC so that creation order survives
    daylight saving changes. Records report it in the configured zone.

    Database failures surface as :class:`StoreError`.

    Args:
        engine: SQLAlchemy async engine.
        timezone: IANA zone in which creation timestamps are reported.
    """

    def __init__(self, engine: AsyncEngine, timezone: str = "UTC") -> None:
        self._engine = engine
        self._zone = ZoneInfo(timezone)

    @classmethod
    def from_url(cls, url: str, timezone: str = "UTC") -> PoolStore:
        """Create a store with pool settings suited to the backend."""
        if url.startswith("sqlite"):
            engine = create_async_engine(url, poolclass=NullPool)
        else:
            engine = create_async_engine(
                url,
                pool_size=4,
                max_overflow=16,
                pool_recycle=3600,
                pool_pre_ping=True,
            )
        return cls(engine, timezone=timezone)

    async def initialize(self) -> None:
        """Create the table and its unique index if they do not exist."""
        async with self._begin("initialize") as conn:
            await conn.run_sync(metadata.create_all)
        log.debug("Store schema ready")

    async def close(self) -> None:
        await self._engine.dispose()

    def now(self) -> datetime:
        return datetime.now(UTC).replace(tzinfo=None)

    @asynccontextmanager
    async def _connect(self, operation: str) -> AsyncIterator[AsyncConnection]:
        try:
            async with self._engine.connect() as conn:
                yield conn
        except SQLAlchemyError as e:
            raise _store_error(operation, e) from e

    @asynccontextmanager
    async def _begin(self, operation: str) -> AsyncIterator[AsyncConnection]:
        try:
            async with self._engine.begin() as conn:
                yield conn
        except SQLAlchemyError as e:
            raise _store_error(operation, e) from e

    def _to_record(self, row: Mapping[str, Any]) -> InstanceRecord:
        created_at = row["makedate"]
        if created_at is not None:
            created_at = created_at.replace(tzinfo=UTC).astimezone(self._zone)
        return InstanceRecord(
            name=row["name"],
            plan=row["plan"] or "",
            claimed=ClaimedFlag(row["claimed"] or ClaimedFlag.NO),
            created_at=created_at,
            billing_code=row["billingcode"] or "",
            endpoint=row["endpoint"] or "",
            credential=Credential(
                access_key_id=row["accesskey"] or "",
                secret_access_key=row["secretkey"] or "",
            ),
        )

    # -------------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------------

    async def get(self, name: str) -> InstanceRecord | None:
        async with self._connect("get") as conn:
            result = await conn.execute(select(provision).where(provision.c.name == name))
            row = result.mappings().first()
        return self._to_record(row) if row else None

    async def exists(self, name: str) -> bool:
        async with self._connect("exists") as conn:
            result = await conn.execute(
                select(func.count()).select_from(provision).where(provision.c.name == name)
            )
            return result.scalar_one() > 0

    async def count_unclaimed(self, plan: str) -> int:
        """Records of ``plan`` in Provisioning or Available."""
        async with self._connect("count_unclaimed") as conn:
            result = await conn.execute(
                select(func.count())
                .select_from(provision)
                .where(provision.c.plan == plan, _unclaimed)
            )
            return result.scalar_one()

    async def has_available(self, plan: str) -> bool:
        async with self._connect("has_available") as conn:
            result = await conn.execute(
                select(func.count())
                .select_from(provision)
                .where(provision.c.plan == plan, _claimable)
            )
            return result.scalar_one() > 0

    async def list_records(self) -> list[InstanceRecord]:
        return await self._select()

    async def list_pending_endpoints(self) -> list[InstanceRecord]:
        """Unclaimed records that have no endpoint yet."""
        return await self._select(
            _unclaimed,
            (provision.c.endpoint == "") | provision.c.endpoint.is_(None),
        )

    async def list_missing_credentials(self) -> list[InstanceRecord]:
        """Unclaimed records whose credential issuance has not succeeded."""
        return await self._select(
            _unclaimed,
            (provision.c.accesskey == "") | provision.c.accesskey.is_(None),
        )

    async def list_deleting(self) -> list[InstanceRecord]:
        return await self._select(provision.c.claimed == ClaimedFlag.DELETING.value)

    async def names(self) -> set[str]:
        async with self._connect("names") as conn:
            result = await conn.execute(select(provision.c.name))
            return set(result.scalars().all())

    async def _select(self, *criteria: Any) -> list[InstanceRecord]:
        async with self._connect("select") as conn:
            result = await conn.execute(
                select(provision)
                .where(*criteria)
                .order_by(provision.c.makedate, provision.c.name)
            )
            return [self._to_record(row) for row in result.mappings().all()]

    # -------------------------------------------------------------------------
    # Writes
    # -------------------------------------------------------------------------

    async def insert(
        self,
        name: str,
        plan: str,
        credential: Credential,
        *,
        billing_code: str,
        created_at: datetime | None = None,
    ) -> InstanceRecord:
        """Insert a Provisioning record. The unique constraint guards ``name``."""
        values = {
            "name": name,
            "plan": plan,
            "claimed": ClaimedFlag.NO.value,
            "makedate": _as_utc(created_at) if created_at else self.now(),
            "billingcode": billing_code,
            "endpoint": "",
            "accesskey": credential.access_key_id,
            "secretkey": credential.secret_access_key,
        }
        async with self._begin("insert") as conn:
            try:
                result = await conn.execute(
                    provision.insert().values(**values).returning(*provision.c)
                )
            except IntegrityError as e:
                raise DuplicateNameError(name) from e
            row = result.mappings().one()
        log.bind(name=name, plan=plan).info("Recorded instance")
        return self._to_record(row)

    async def set_endpoint(self, name: str, endpoint: str) -> bool:
        """Persist the endpoint of an unclaimed record that has none."""
        return await self._update(
            (provision.c.name == name)
            & _unclaimed
            & ((provision.c.endpoint == "") | provision.c.endpoint.is_(None)),
            endpoint=endpoint,
        )

    async def set_credential(self, name: str, credential: Credential) -> bool:
        return await self._update(
            (provision.c.name == name) & _unclaimed,
            accesskey=credential.access_key_id,
            secretkey=credential.secret_access_key,
        )

    async def claim_oldest(self, plan: str, billing_code: str) -> InstanceRecord | None:
        """Atomically move the oldest Available record of ``plan`` to Claimed.

        Selection and transition are one conditional UPDATE: the row is
        only written while still unclaimed, and concurrent claimers skip
        rows another transaction has locked. Returns None when nothing was
        claimed, either because the pool is empty or a race was lost.
        """
        candidate = (
            select(provision.c.name)
            .where(provision.c.plan == plan, _claimable)
            .order_by(provision.c.makedate, provision.c.name)
            .limit(1)
            .with_for_update(skip_locked=True)
            .scalar_subquery()
        )
        stmt = (
            update(provision)
            .where(provision.c.name == candidate, _unclaimed)
            .values(claimed=ClaimedFlag.YES.value, billingcode=billing_code)
            .returning(*provision.c)
        )
        async with self._begin("claim") as conn:
            result = await conn.execute(stmt)
            row = result.mappings().first()
        return self._to_record(row) if row else None

    async def mark_deleting(self, name: str) -> InstanceRecord | None:
        """Move any record to Deleting. Returns None if it does not exist."""
        stmt = (
            update(provision)
            .where(provision.c.name == name)
            .values(claimed=ClaimedFlag.DELETING.value)
            .returning(*provision.c)
        )
        async with self._begin("mark_deleting") as conn:
            result = await conn.execute(stmt)
            row = result.mappings().first()
        return self._to_record(row) if row else None

    async def remove(self, name: str) -> bool:
        async with self._begin("remove") as conn:
            result = await conn.execute(delete(provision).where(provision.c.name == name))
            return result.rowcount > 0

    async def _update(self, criteria: Any, **values: str) -> bool:
        async with self._begin("update") as conn:
            result = await conn.execute(update(provision).where(criteria).values(**values))
            return result.rowcount > 0


def _store_error(operation: str, exc: SQLAlchemyError) -> StoreError:
    # Only the driver error: the statement and its bound parameters may hold secrets.
    kind = type(exc).__name__
    orig = getattr(exc, "orig", None)
    log.bind(operation=operation).warning("Database error: {}", kind)
    return StoreError(operation, f"{kind}: {orig}" if orig else kind)


__all__ = ["PoolStore", "metadata", "provision"]
