from __future__ import annotations

import asyncio
import json
import logging
from pathlib import Path
from typing import Any, Dict, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from ..core.cancel import RetryPolicy
from ..core.errors import ConfigError

logger = logging.getLogger(__name__)

DEFAULT_UPDATE_TIMER_MS = 300_000
DEFAULT_OVERRIDE_MS = 3_600_000


def _default_channel_names() -> Dict[str, str]:
    return {f"CH{i}": f"Channel {i}" for i in range(1, 9)}


class HeatingConfig(BaseModel):
    """The heating configuration file (f_etacfg.json).

    Values may be stored as strings or numbers; unknown keys are kept.
    """

    model_config = ConfigDict(extra="allow", populate_by_name=True)

    t_soll: float = 22.0  # target indoor temperature
    t_delta: float = 0.0  # offset added to the target
    t_slider: float = 0.0  # last computed slider position
    s_eta: str = "192.168.8.100:8080"  # controller host:port
    t_update_timer: int = DEFAULT_UPDATE_TIMER_MS  # polling interval, ms
    diff: float = 0.0  # last computed temperature error
    t_min: float = 16.0  # minimum indoor temperature (heat-now threshold)
    t_override: int = DEFAULT_OVERRIDE_MS  # manual override duration, ms
    channel_names: Dict[str, str] = Field(default_factory=_default_channel_names, alias="channelNames")

    @field_validator("t_update_timer", "t_override", mode="before")
    @classmethod
    def _lenient_ms(cls, v: Any, info) -> Any:
        # garbage or zero falls back to the field default
        try:
            ms = int(float(v))
        except (TypeError, ValueError):
            ms = 0
        if ms > 0:
            return ms
        return DEFAULT_UPDATE_TIMER_MS if info.field_name == "t_update_timer" else DEFAULT_OVERRIDE_MS

    def to_file_dict(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True)


class JsonConfigProvider:
    def __init__(
        self,
        path: Union[str, Path],
        retry: RetryPolicy = RetryPolicy(max_attempts=3, backoff_seconds=0.1, retry_on=(ConfigError,)),
    ) -> None:
        self.path = Path(path)
        self._retry = retry

    def _read_raw(self) -> Dict[str, Any]:
        try:
            text = self.path.read_text(encoding="utf-8")
        except OSError as e:
            raise ConfigError(f"Cannot read {self.path}: {e}") from e
        if not text.strip():
            raise ConfigError(f"Config file is empty: {self.path}")
        try:
            data = json.loads(text)
        except json.JSONDecodeError as e:
            raise ConfigError(f"Invalid JSON in {self.path}: {e}") from e
        if not isinstance(data, dict):
            raise ConfigError(f"Config root must be an object: {self.path}")
        return data

    def _write_raw(self, data: Dict[str, Any]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self.path.with_suffix(self.path.suffix + ".tmp")
        tmp.write_text(json.dumps(data, indent=2), encoding="utf-8")
        tmp.replace(self.path)

    async def _read_once(self) -> HeatingConfig:
        loop = asyncio.get_running_loop()
        data = await loop.run_in_executor(None, self._read_raw)
        try:
            return HeatingConfig.model_validate(data)
        except ValidationError as e:
            raise ConfigError(f"Invalid configuration in {self.path}: {e}") from e

    async def read(self) -> HeatingConfig:
        """Read and validate the file, retrying transient failures. Raises ConfigError."""
        if not self.path.exists():
            logger.info("Config file %s does not exist. Creating with default values.", self.path)
            defaults = HeatingConfig()
            loop = asyncio.get_running_loop()
            await loop.run_in_executor(None, self._write_raw, defaults.to_file_dict())
            return defaults
        config = await self._retry.run(self._read_once, what=f"config load from {self.path}")
        logger.info("Config loaded successfully from %s", self.path)
        return config

    async def write_key(self, key: str, value: Any) -> HeatingConfig:
        """Set a single key, keeping every other key as it is in the file."""
        loop = asyncio.get_running_loop()
        try:
            data = await loop.run_in_executor(None, self._read_raw)
        except ConfigError:
            if self.path.exists():
                raise
            data = HeatingConfig().to_file_dict()
        data[key] = value
        try:
            config = HeatingConfig.model_validate(data)
        except ValidationError as e:
            raise ConfigError(f"Invalid value for {key}: {e}") from e
        await loop.run_in_executor(None, self._write_raw, data)
        logger.info("Config key %s updated", key)
        return config
