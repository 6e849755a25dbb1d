import json
from datetime import datetime, timedelta, timezone
from zoneinfo import ZoneInfo

import pytest

from eta2weather.domain.models import Stream, TimeSeriesRecord
from eta2weather.storage.partitioned_repo import TimeSeriesStore

UTC = timezone.utc


def fixed_clock():
    return datetime(2024, 6, 1, 12, 0, tzinfo=UTC)


def rec(ts: datetime, **payload) -> TimeSeriesRecord:
    return TimeSeriesRecord.at(ts, json.dumps(payload))


@pytest.fixture
async def store(tmp_path):
    s = TimeSeriesStore(tmp_path / "db", clock=fixed_clock)
    await s.initialize()
    yield s
    await s.close()


@pytest.mark.asyncio
async def test_initialize_creates_current_partition(store, tmp_path):
    assert (tmp_path / "db" / "eta2weather_2024.db").exists()
    assert store.current_year == 2024
    await store.initialize()
    assert store.available_years() == [2024]


@pytest.mark.asyncio
async def test_upsert_same_minute_keeps_last_payload(store):
    t = datetime(2024, 6, 1, 10, 15, 5, tzinfo=UTC)
    await store.insert(Stream.ETA, rec(t, n=1))
    await store.insert(Stream.ETA, rec(t.replace(second=40), n=2))

    assert await store.count_rows(Stream.ETA) == 1
    rows = await store.query_range(Stream.ETA, t - timedelta(minutes=1), t + timedelta(minutes=1))
    assert [json.loads(r.payload)["n"] for r in rows] == [2]


@pytest.mark.asyncio
async def test_streams_are_separate_tables(store):
    t = datetime(2024, 6, 1, 10, 15, tzinfo=UTC)
    await store.insert(Stream.ETA, rec(t, s="eta"))
    await store.insert(Stream.ECOWITT, rec(t, s="ecowitt"))
    assert await store.count_rows(Stream.ETA) == 1
    assert await store.count_rows(Stream.ECOWITT) == 1
    assert await store.count_rows(Stream.CONTROL) == 0


@pytest.mark.asyncio
async def test_query_spans_two_years_in_order(store):
    old = [datetime(2023, 12, 31, 23, m, tzinfo=UTC) for m in (57, 58, 59)]
    new = [datetime(2024, 1, 1, 0, m, tzinfo=UTC) for m in (0, 1)]
    for ts in new + old:
        await store.insert(Stream.ECOWITT, rec(ts, at=ts.isoformat()))
    assert store.available_years() == [2024, 2023]

    start = datetime(2023, 12, 31, 0, 0, tzinfo=UTC)
    end = datetime(2024, 1, 1, 1, 0, tzinfo=UTC)
    rows = await store.query_range(Stream.ECOWITT, start, end)
    assert [r.timestamp for r in rows] == old + new

    # partitions attached for the query were detached again
    again = await store.query_range(Stream.ECOWITT, start, end)
    assert len(again) == 5


@pytest.mark.asyncio
async def test_query_skips_missing_years(store):
    t = datetime(2024, 2, 1, 8, 0, tzinfo=UTC)
    await store.insert(Stream.CONTROL, rec(t, ok=True))
    rows = await store.query_range(Stream.CONTROL, datetime(2020, 1, 1, tzinfo=UTC), datetime(2024, 12, 31, tzinfo=UTC))
    assert len(rows) == 1


@pytest.mark.asyncio
async def test_sample_rate_keeps_every_nth_row(store):
    base = datetime(2024, 3, 1, 0, 0, tzinfo=UTC)
    for i in range(6):
        await store.insert(Stream.ECOWITT, rec(base + timedelta(minutes=i), i=i))
    rows = await store.query_range(Stream.ECOWITT, base, base + timedelta(hours=1), sample_rate=3)
    assert [json.loads(r.payload)["i"] for r in rows] == [2, 5]


@pytest.mark.asyncio
async def test_unreadable_partition_contributes_nothing(store, tmp_path):
    await store.insert(Stream.ETA, rec(datetime(2024, 5, 1, 9, 0, tzinfo=UTC)))
    (tmp_path / "db" / "eta2weather_2022.db").write_bytes(b"this is not sqlite" * 100)

    assert await store.count_rows(Stream.ETA) == 1
    assert len(await store.list_distinct_timestamps(Stream.ETA)) == 1


@pytest.mark.asyncio
async def test_list_distinct_timestamps_merges_partitions(store):
    await store.insert(Stream.ETA, rec(datetime(2023, 7, 1, 9, 0, tzinfo=UTC)))
    await store.insert(Stream.ETA, rec(datetime(2024, 7, 1, 9, 0, tzinfo=UTC)))
    stamps = await store.list_distinct_timestamps(Stream.ETA)
    assert stamps == ["2023-07-01T09:00:00.000+00:00", "2024-07-01T09:00:00.000+00:00"]


@pytest.mark.asyncio
async def test_utc_window_finds_rows_in_next_local_year(tmp_path):
    berlin = ZoneInfo("Europe/Berlin")
    s = TimeSeriesStore(tmp_path / "db", clock=lambda: datetime(2025, 1, 2, 12, 0, tzinfo=berlin))
    await s.initialize()
    try:
        local = datetime(2025, 1, 1, 0, 30, tzinfo=berlin)
        await s.insert(Stream.ECOWITT, rec(local, at="new year"))
        assert s.available_years() == [2025]

        rows = await s.query_range(
            Stream.ECOWITT,
            datetime(2024, 12, 31, 23, 0, tzinfo=UTC),
            datetime(2024, 12, 31, 23, 59, tzinfo=UTC),
        )
        assert [json.loads(r.payload)["at"] for r in rows] == ["new year"]
        assert rows[0].timestamp == local
    finally:
        await s.close()
