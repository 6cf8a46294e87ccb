"""Per-file delivery counters persisted through SQLAlchemy Core."""

from __future__ import annotations

from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

from sqlalchemy import BigInteger, Column, DateTime, Integer, MetaData, String, Table, create_engine, func, select
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.engine.url import make_url
from sqlalchemy.exc import IntegrityError

METADATA = MetaData()

DELIVERY_STATS = Table(
    "delivery_stats",
    METADATA,
    Column("file_name", String(1024), primary_key=True),
    Column("hits", Integer, nullable=False, default=0),
    Column("misses", Integer, nullable=False, default=0),
    Column("bytes_served", BigInteger, nullable=False, default=0),
    Column("last_cache_status", String(16), nullable=True),
    Column("last_access", DateTime(timezone=True), nullable=False),
)

_COLUMNS = (
    DELIVERY_STATS.c.file_name,
    DELIVERY_STATS.c.hits,
    DELIVERY_STATS.c.misses,
    DELIVERY_STATS.c.bytes_served,
    DELIVERY_STATS.c.last_cache_status,
    DELIVERY_STATS.c.last_access,
)


def _sqlite_parent_dirs(database_url: str) -> str:
    url = make_url(database_url)
    if not url.drivername.startswith("sqlite") or not url.database or url.database == ":memory:":
        return database_url
    db_path = Path(url.database).expanduser()
    if not db_path.is_absolute():
        db_path = (Path.cwd() / db_path).resolve()
    db_path.parent.mkdir(parents=True, exist_ok=True)
    return url.set(database=db_path.as_posix()).render_as_string(hide_password=False)


class DeliveryStats:
    """Hit, miss and byte counts per file, surfaced by ``/-/status``.

    Counters are advisory: callers log and drop ``SQLAlchemyError`` rather than
    failing the read that produced them.
    """

    def __init__(self, database_url: str):
        self._engine: Engine = create_engine(_sqlite_parent_dirs(database_url), future=True, pool_pre_ping=True)
        METADATA.create_all(self._engine)

    def record(self, file_name: str, *, hit: bool, bytes_served: int = 0, cache_status: Optional[str] = None) -> None:
        counter = DELIVERY_STATS.c.hits if hit else DELIVERY_STATS.c.misses
        now = datetime.now(timezone.utc)
        with self._engine.begin() as conn:
            if self._bump(conn, file_name, counter, bytes_served, cache_status, now):
                return
        try:
            with self._engine.begin() as conn:
                conn.execute(
                    DELIVERY_STATS.insert().values(
                        file_name=file_name,
                        hits=1 if hit else 0,
                        misses=0 if hit else 1,
                        bytes_served=bytes_served,
                        last_cache_status=cache_status,
                        last_access=now,
                    )
                )
        except IntegrityError:
            # another writer created the row first
            with self._engine.begin() as conn:
                self._bump(conn, file_name, counter, bytes_served, cache_status, now)

    @staticmethod
    def _bump(
        conn: Connection,
        file_name: str,
        counter: Column,
        bytes_served: int,
        cache_status: Optional[str],
        now: datetime,
    ) -> bool:
        result = conn.execute(
            DELIVERY_STATS.update()
            .where(DELIVERY_STATS.c.file_name == file_name)
            .values(
                {
                    counter: counter + 1,
                    DELIVERY_STATS.c.bytes_served: DELIVERY_STATS.c.bytes_served + bytes_served,
                    DELIVERY_STATS.c.last_cache_status: cache_status,
                    DELIVERY_STATS.c.last_access: now,
                }
            )
        )
        return result.rowcount > 0

    def top_entries(self, limit: int = 10) -> list[dict[str, object]]:
        query = (
            select(*_COLUMNS)
            .order_by(DELIVERY_STATS.c.hits.desc(), DELIVERY_STATS.c.file_name.asc())
            .limit(limit)
        )
        with self._engine.connect() as conn:
            return [dict(row) for row in conn.execute(query).mappings()]

    def get(self, file_name: str) -> dict[str, object] | None:
        query = select(*_COLUMNS).where(DELIVERY_STATS.c.file_name == file_name)
        with self._engine.connect() as conn:
            row = conn.execute(query).mappings().first()
        return dict(row) if row else None

    def total_entries(self) -> int:
        with self._engine.connect() as conn:
            return int(conn.execute(select(func.count()).select_from(DELIVERY_STATS)).scalar_one())

    def forget(self, file_name: str) -> None:
        with self._engine.begin() as conn:
            conn.execute(DELIVERY_STATS.delete().where(DELIVERY_STATS.c.file_name == file_name))
