from __future__ import annotations
import calendar
import json
import logging
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Tuple

from ..core.timeutil import now_local
from ..domain.interfaces import Repository
from ..domain.models import Stream, TimeSeriesRecord
from ..drivers.ecowitt_client import field_value

logger = logging.getLogger(__name__)

# range key -> keep every n-th row
SAMPLE_RATES = {"24h": 1, "7d": 3, "1m": 6}

CHART_CHANNELS = (1, 2, 3, 5, 6, 7, 8)


def _month_back(dt: datetime) -> datetime:
    year, month = (dt.year, dt.month - 1) if dt.month > 1 else (dt.year - 1, 12)
    day = min(dt.day, calendar.monthrange(year, month)[1])
    return dt.replace(year=year, month=month, day=day)


def range_window(range_key: str, now: Optional[datetime] = None) -> Tuple[datetime, datetime, int]:
    """(start, end, sample_rate) for a chart range key. Raises ValueError on unknown keys."""
    if range_key not in SAMPLE_RATES:
        raise ValueError(f"Unknown range {range_key!r}, expected one of {', '.join(SAMPLE_RATES)}")
    end = now or now_local()
    if range_key == "24h":
        start = end - timedelta(hours=24)
    elif range_key == "7d":
        start = end - timedelta(days=7)
    else:
        start = _month_back(end)
    return start, end, SAMPLE_RATES[range_key]


def decode_weather(record: TimeSeriesRecord) -> Optional[Dict[str, Any]]:
    try:
        data = json.loads(record.payload)
    except json.JSONDecodeError:
        logger.debug("Skipping undecodable weather row at %s", record.timestamp)
        return None
    if not isinstance(data, dict):
        return None

    outdoor = field_value(data, "outdoor", "temperature")
    if outdoor is None:
        return None

    row: Dict[str, Any] = {
        "timestamp": record.timestamp.isoformat(),
        "outdoor_temperature": outdoor,
        "pressure": field_value(data, "pressure", "relative"),
        "humidity": field_value(data, "outdoor", "humidity"),
        "indoor_temperature": field_value(data, "indoor", "temperature"),
        "indoor_humidity": field_value(data, "indoor", "humidity"),
    }
    for ch in CHART_CHANNELS:
        t = field_value(data, f"temp_and_humidity_ch{ch}", "temperature")
        h = field_value(data, f"temp_and_humidity_ch{ch}", "humidity")
        if t is not None and h is not None:
            row[f"ch{ch}_temperature"] = t
            row[f"ch{ch}_humidity"] = h
    return row


async def weather_history(repo: Repository, range_key: str, now: Optional[datetime] = None) -> List[Dict[str, Any]]:
    start, end, rate = range_window(range_key, now)
    records = await repo.query_range(Stream.ECOWITT, start, end, rate)
    rows = [r for r in (decode_weather(rec) for rec in records) if r is not None]
    logger.info("Weather history %s: %d of %d rows", range_key, len(rows), len(records))
    return rows
