"""Shared fakes for orchestrator and API tests."""

import asyncio
import json
from datetime import datetime
from typing import Dict, List, Optional

import pytest

from eta2weather.core.cancel import CancelToken, RetryPolicy, guarded
from eta2weather.core.errors import ConfigError
from eta2weather.core.timeutil import now_utc
from eta2weather.domain import variables as v
from eta2weather.domain.models import Mode, Stream, TimeSeriesRecord, TreeNode, VariableSample, WeatherSample
from eta2weather.storage.config_file import JsonConfigProvider


def make_sample(path: str, str_value: str, text: Optional[str] = None, captured_at: Optional[datetime] = None) -> VariableSample:
    try:
        scaled = float(str_value)
    except ValueError:
        scaled = None
    return VariableSample(
        path=path,
        raw_value=str_value,
        scaled_value=scaled,
        unit="",
        captured_at=captured_at or now_utc(),
        text=text if text is not None else str_value,
    )


def make_weather(indoor: float = 21.0, outdoor: float = 5.0) -> WeatherSample:
    return WeatherSample(
        indoor_temperature=indoor,
        outdoor_temperature=outdoor,
        humidity=80.0,
        pressure=1013.0,
        captured_at=now_utc(),
        raw={
            "outdoor": {"temperature": {"value": str(outdoor)}},
            "indoor": {"temperature": {"value": str(indoor)}},
        },
    )


def controller_values(active: Mode = Mode.AA, slider: str = "0") -> Dict[str, str]:
    values = {
        v.KNOWN_VARIABLES[v.ON_OFF_BUTTON].path: "Ein",
        v.KNOWN_VARIABLES[v.SWITCHING_STATE].path: "Ein",
        v.KNOWN_VARIABLES[v.SLIDER_POSITION].path: slider,
    }
    for mode, button in v.MODE_BUTTONS.items():
        values[button.path] = "Ein" if mode == active else "Aus"
    return values


class FakeEta:
    def __init__(self, values: Optional[Dict[str, str]] = None) -> None:
        self.values = values if values is not None else controller_values()
        self.tree_error: Optional[Exception] = None
        self.gate: Optional[asyncio.Event] = None
        self.block_from_call = 1
        self.tree_calls = 0
        self.active = 0
        self.max_active = 0
        self.requested_paths: List[List[str]] = []
        self.slider_writes: List[tuple] = []
        self.mode_writes: List[Mode] = []
        self.hosts: List[str] = []
        self.closed = False

    def set_host(self, host: str) -> None:
        self.hosts.append(host)

    async def fetch_controller_tree(self, token: Optional[CancelToken] = None) -> List[TreeNode]:
        self.tree_calls += 1
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        try:
            if self.gate is not None and self.tree_calls >= self.block_from_call:
                await guarded(token, self.gate.wait())
            if self.tree_error is not None:
                raise self.tree_error
            return [TreeNode("/120/10101", "Heizkreis", tuple(TreeNode(p, p) for p in self.values))]
        finally:
            self.active -= 1

    async def fetch_leaf_variables(self, paths, chunk_size=5, concurrency=1, token=None):
        paths = list(paths)
        self.requested_paths.append(paths)
        return {p: make_sample(p, self.values[p]) for p in paths if p in self.values}

    async def write_actuator_position(self, path: str, scaled_value: int, token=None) -> None:
        self.slider_writes.append((path, scaled_value))

    async def write_mode(self, target: Mode, buttons, token=None) -> None:
        self.mode_writes.append(target)

    async def aclose(self) -> None:
        self.closed = True


class FakeWeather:
    def __init__(self, sample: Optional[WeatherSample] = None) -> None:
        self.sample = sample or make_weather()
        self.error: Optional[Exception] = None
        self.closed = False

    async def fetch_weather_telemetry(self, token=None) -> WeatherSample:
        if self.error is not None:
            raise self.error
        return self.sample

    async def aclose(self) -> None:
        self.closed = True


class MemoryStore:
    def __init__(self) -> None:
        self.rows: List[tuple] = []
        self.initialized = False
        self.closed = False

    async def initialize(self) -> None:
        self.initialized = True

    async def insert(self, stream: Stream, record: TimeSeriesRecord) -> None:
        self.rows.append((stream, record))

    async def query_range(self, stream, start, end, sample_rate=1):
        return [r for s, r in self.rows if s == stream and start <= r.timestamp <= end][::sample_rate]

    async def close(self) -> None:
        self.closed = True

    def payloads(self, stream: Stream) -> List[dict]:
        return [json.loads(r.payload) for s, r in self.rows if s == stream]


@pytest.fixture
def fake_eta():
    return FakeEta()


@pytest.fixture
def fake_weather():
    return FakeWeather()


@pytest.fixture
def memory_store():
    return MemoryStore()


@pytest.fixture
def config_path(tmp_path):
    path = tmp_path / "config" / "f_etacfg.json"
    path.parent.mkdir()
    path.write_text(json.dumps({
        "t_soll": "22",
        "t_delta": "0",
        "s_eta": "192.168.8.100:8080",
        "t_update_timer": "300000",
        "t_min": "20",
        "t_override": "3600000",
    }))
    return path


@pytest.fixture
def config_provider(config_path):
    return JsonConfigProvider(config_path, retry=RetryPolicy(3, 0, (ConfigError,)))

