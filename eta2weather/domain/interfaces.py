from __future__ import annotations
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Protocol, runtime_checkable

from ..core.cancel import CancelToken
from .models import Mode, Stream, TimeSeriesRecord, TreeNode, VariableSample, WeatherSample


@runtime_checkable
class ControllerClient(Protocol):
    async def fetch_controller_tree(self, token: Optional[CancelToken] = None) -> List[TreeNode]:
        ...

    async def fetch_leaf_variables(
        self,
        paths: Iterable[str],
        chunk_size: int = 5,
        concurrency: int = 1,
        token: Optional[CancelToken] = None,
    ) -> Dict[str, VariableSample]:
        ...

    async def write_actuator_position(
        self, path: str, scaled_value: int, token: Optional[CancelToken] = None
    ) -> None:
        ...

    async def write_mode(
        self, target: Mode, buttons: Dict[Mode, str], token: Optional[CancelToken] = None
    ) -> None:
        ...

    def set_host(self, host: str) -> None:
        ...

    async def aclose(self) -> None:
        ...


@runtime_checkable
class WeatherClient(Protocol):
    async def fetch_weather_telemetry(self, token: Optional[CancelToken] = None) -> WeatherSample:
        ...

    async def aclose(self) -> None:
        ...


@runtime_checkable
class Repository(Protocol):
    async def initialize(self) -> None:
        ...

    async def insert(self, stream: Stream, record: TimeSeriesRecord) -> None:
        ...

    async def query_range(
        self, stream: Stream, start: datetime, end: datetime, sample_rate: int = 1
    ) -> List[TimeSeriesRecord]:
        ...

    async def close(self) -> None:
        ...


@runtime_checkable
class ConfigProvider(Protocol):
    path: Any

    async def read(self) -> Any:
        ...

    async def write_key(self, key: str, value: Any) -> Any:
        ...
