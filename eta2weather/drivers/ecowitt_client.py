from __future__ import annotations

import json
import logging
import math
from typing import Any, Dict, Mapping, Optional

import httpx

from ..core.cancel import CancelToken, guarded
from ..core.errors import NetworkError, ParseError
from ..core.timeutil import now_utc
from ..domain.models import ChannelReading, WeatherSample

logger = logging.getLogger(__name__)

CHANNELS = range(1, 9)


def field_value(data: Mapping[str, Any], *keys: str) -> Optional[float]:
    """Follow keys into the nested payload and read its numeric ``value``."""
    node: Any = data
    for key in keys:
        if not isinstance(node, Mapping):
            return None
        node = node.get(key)
    if isinstance(node, Mapping):
        node = node.get("value")
    if node is None or node == "":
        return None
    try:
        f = float(node)
    except (TypeError, ValueError):
        return None
    return f if math.isfinite(f) else None


def extract_channels(data: Mapping[str, Any]) -> Dict[int, ChannelReading]:
    channels: Dict[int, ChannelReading] = {}
    for idx in CHANNELS:
        t = field_value(data, f"temp_and_humidity_ch{idx}", "temperature")
        h = field_value(data, f"temp_and_humidity_ch{idx}", "humidity")
        if t is not None and h is not None:
            channels[idx] = ChannelReading(temperature=t, humidity=h)
    return channels


def parse_weather(body: Mapping[str, Any]) -> WeatherSample:
    data = body.get("data") if isinstance(body.get("data"), Mapping) else body

    outdoor = field_value(data, "outdoor", "temperature")
    indoor = field_value(data, "indoor", "temperature")
    if outdoor is None or indoor is None:
        raise ParseError("Invalid temperature values in weather telemetry")

    return WeatherSample(
        indoor_temperature=indoor,
        outdoor_temperature=outdoor,
        humidity=field_value(data, "outdoor", "humidity"),
        pressure=field_value(data, "pressure", "relative"),
        indoor_humidity=field_value(data, "indoor", "humidity"),
        channels=extract_channels(data),
        captured_at=now_utc(),
        raw=dict(data),
    )


class EcowittClient:
    """Realtime telemetry from the Ecowitt cloud API (``/api/v3/device/real_time``)."""

    def __init__(
        self,
        server: str = "api.ecowitt.net",
        application_key: str = "",
        api_key: str = "",
        mac: str = "",
        timeout: float = 8.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self._url = f"https://{server}/api/v3/device/real_time"
        self._params = {
            "application_key": application_key,
            "api_key": api_key,
            "mac": mac,
            "call_back": "all",
            "temp_unitid": "1",
            "pressure_unitid": "3",
            "wind_speed_unitid": "7",
            "rainfall_unitid": "12",
            "solar_irradiance_unitid": "16",
        }
        self._client = httpx.AsyncClient(timeout=timeout, transport=transport)

    async def aclose(self) -> None:
        await self._client.aclose()

    async def fetch_weather_telemetry(self, token: Optional[CancelToken] = None) -> WeatherSample:
        try:
            resp = await guarded(token, self._client.get(self._url, params=self._params))
        except httpx.HTTPError as e:
            raise NetworkError(f"Weather request failed: {e}") from e
        if not resp.is_success:
            raise NetworkError(f"Weather request: HTTP error! Status: {resp.status_code}")

        if not resp.text.strip():
            raise ParseError("Empty response from weather API")
        try:
            body = json.loads(resp.text)
        except json.JSONDecodeError as e:
            raise ParseError(f"Invalid JSON response from weather API: {e}") from e
        if not isinstance(body, dict):
            raise ParseError("Weather response is not an object")

        code = body.get("code", 0)
        if code not in (0, "0"):
            raise NetworkError(f"Weather API error {code}: {body.get('msg', '')}")

        sample = parse_weather(body)
        logger.info(
            "Weather data updated: outdoor=%.1f indoor=%.1f",
            sample.outdoor_temperature,
            sample.indoor_temperature,
        )
        return sample
