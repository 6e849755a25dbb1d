from __future__ import annotations

import logging
import re
from datetime import datetime
from pathlib import Path
from typing import Callable, List, Optional, Union

import aiosqlite

from ..core.errors import StoreError
from ..core.timeutil import iso_utc, now_local
from ..domain.models import Stream, TimeSeriesRecord

logger = logging.getLogger(__name__)

PRAGMAS = (
    "PRAGMA journal_mode=WAL",
    "PRAGMA synchronous=NORMAL",
    "PRAGMA page_size=4096",
    "PRAGMA cache_size=-16000",
    "PRAGMA mmap_size=268435456",
    "PRAGMA temp_store=MEMORY",
)


def _schema(table: str) -> str:
    return f"""
        CREATE TABLE IF NOT EXISTS {table} (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            timestamp TEXT NOT NULL,
            year INTEGER NOT NULL,
            month INTEGER NOT NULL,
            day INTEGER NOT NULL,
            hour INTEGER NOT NULL,
            minute INTEGER NOT NULL,
            data TEXT NOT NULL,
            created_at TEXT NOT NULL,
            UNIQUE(year, month, day, hour, minute)
        )
    """


class TimeSeriesStore:
    """Sample streams kept in one SQLite file per calendar year.

    Only the current partition stays open. Older years are attached for the
    duration of a single range query and detached again before it returns.
    """

    def __init__(
        self,
        data_dir: Union[str, Path],
        prefix: str = "eta2weather",
        clock: Callable[[], datetime] = now_local,
    ) -> None:
        self._dir = Path(data_dir)
        self._prefix = prefix
        self._clock = clock
        self._db: Optional[aiosqlite.Connection] = None
        self._year: Optional[int] = None
        self._file_re = re.compile(rf"^{re.escape(prefix)}_(\d{{4}})\.db$")

    @property
    def current_year(self) -> Optional[int]:
        return self._year

    def partition_path(self, year: int) -> Path:
        return self._dir / f"{self._prefix}_{year}.db"

    async def initialize(self) -> None:
        if self._db is not None:
            return
        try:
            self._dir.mkdir(parents=True, exist_ok=True)
            await self._switch_to_year(self._clock().year)
        except (aiosqlite.Error, OSError) as e:
            raise StoreError(f"Cannot initialize store in {self._dir}: {e}") from e
        logger.info("Time series store ready (%s)", self.partition_path(self._year))

    async def _open(self, year: int) -> aiosqlite.Connection:
        db = await aiosqlite.connect(self.partition_path(year))
        for pragma in PRAGMAS:
            await db.execute(pragma)
        for stream in Stream:
            await db.execute(_schema(stream.table))
            await db.execute(
                f"CREATE INDEX IF NOT EXISTS idx_{stream.table}_ts ON {stream.table}(timestamp)"
            )
        await db.commit()
        return db

    async def _switch_to_year(self, year: int) -> None:
        if self._db is not None and self._year == year:
            return
        if self._db is not None:
            logger.info("Switching partition %s -> %s", self._year, year)
            await self._db.close()
            self._db = None
        self._db = await self._open(year)
        self._year = year

    async def insert(self, stream: Stream, record: TimeSeriesRecord) -> None:
        """Upsert one record into its minute bucket."""
        try:
            if self._db is None:
                self._dir.mkdir(parents=True, exist_ok=True)
            await self._switch_to_year(record.year)
            await self._db.execute(
                f"""
                INSERT INTO {stream.table}(timestamp,year,month,day,hour,minute,data,created_at)
                VALUES (?,?,?,?,?,?,?,?)
                ON CONFLICT(year,month,day,hour,minute) DO UPDATE SET
                    timestamp=excluded.timestamp,
                    data=excluded.data,
                    created_at=excluded.created_at
                """,
                (
                    iso_utc(record.timestamp),
                    record.year,
                    record.month,
                    record.day,
                    record.hour,
                    record.minute,
                    record.payload,
                    iso_utc(self._clock()),
                ),
            )
            await self._db.commit()
        except (aiosqlite.Error, OSError) as e:
            raise StoreError(f"Insert into {stream.table} failed: {e}") from e

    async def query_range(
        self, stream: Stream, start: datetime, end: datetime, sample_rate: int = 1
    ) -> List[TimeSeriesRecord]:
        """Records with start <= timestamp <= end across every touched year, oldest first.

        With sample_rate > 1 only rows whose id is a multiple of the rate are kept.
        """
        if self._db is None:
            await self.initialize()
        db = self._db

        sql_filter = "timestamp >= ? AND timestamp <= ?"
        params: list = [iso_utc(start), iso_utc(end)]
        if sample_rate > 1:
            sql_filter += " AND id % ? = 0"
            params.append(sample_rate)

        # partitions are keyed by the year on the store clock's wall time
        tz = self._clock().tzinfo
        first_year = start.astimezone(tz).year
        last_year = end.astimezone(tz).year

        out: List[TimeSeriesRecord] = []
        attached: List[str] = []
        try:
            for year in range(first_year, last_year + 1):
                if year == self._year:
                    schema = "main"
                else:
                    path = self.partition_path(year)
                    if not path.exists():
                        logger.warning("No partition for %s (%s), skipping", year, path)
                        continue
                    schema = f"db_{year}"
                    try:
                        await db.execute(f"ATTACH DATABASE ? AS {schema}", (str(path),))
                    except aiosqlite.Error as e:
                        logger.error("Cannot attach partition %s: %s", path, e)
                        continue
                    attached.append(schema)

                try:
                    cur = await db.execute(
                        f"SELECT timestamp,year,month,day,hour,minute,data "
                        f"FROM {schema}.{stream.table} WHERE {sql_filter} ORDER BY timestamp",
                        params,
                    )
                    rows = await cur.fetchall()
                except aiosqlite.Error as e:
                    logger.error("Query on %s.%s failed: %s", schema, stream.table, e)
                    continue

                for ts, y, mo, d, h, mi, data in rows:
                    out.append(
                        TimeSeriesRecord(
                            timestamp=datetime.fromisoformat(ts),
                            year=y,
                            month=mo,
                            day=d,
                            hour=h,
                            minute=mi,
                            payload=data,
                        )
                    )
        finally:
            for schema in attached:
                try:
                    await db.execute(f"DETACH DATABASE {schema}")
                except aiosqlite.Error as e:
                    logger.error("Cannot detach %s: %s", schema, e)

        out.sort(key=lambda r: r.timestamp)
        return out

    def available_years(self) -> List[int]:
        """Partition years present on disk, newest first."""
        if not self._dir.exists():
            return []
        years = []
        for p in self._dir.iterdir():
            m = self._file_re.match(p.name)
            if m:
                years.append(int(m.group(1)))
        return sorted(years, reverse=True)

    async def count_rows(self, stream: Stream) -> int:
        total = 0
        for year in self.available_years():
            try:
                async with aiosqlite.connect(self.partition_path(year)) as db:
                    cur = await db.execute(f"SELECT COUNT(*) FROM {stream.table}")
                    (n,) = await cur.fetchone()
                total += n
            except aiosqlite.Error as e:
                logger.error("Cannot count %s in partition %s: %s", stream.table, year, e)
        return total

    async def list_distinct_timestamps(self, stream: Stream) -> List[str]:
        seen = set()
        for year in self.available_years():
            try:
                async with aiosqlite.connect(self.partition_path(year)) as db:
                    cur = await db.execute(f"SELECT DISTINCT timestamp FROM {stream.table}")
                    rows = await cur.fetchall()
                seen.update(ts for (ts,) in rows)
            except aiosqlite.Error as e:
                logger.error("Cannot list timestamps of %s in partition %s: %s", stream.table, year, e)
        return sorted(seen)

    async def close(self) -> None:
        if self._db is not None:
            await self._db.close()
            self._db = None
            self._year = None
