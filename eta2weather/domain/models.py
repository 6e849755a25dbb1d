from __future__ import annotations
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional, Tuple


class Mode(str, Enum):
    """Mode buttons of the heating circuit."""

    HT = "HT"  # heat
    KT = "KT"  # come / heat now
    AA = "AA"  # automatic
    GT = "GT"  # go / descend
    DT = "DT"  # lower


class Stream(str, Enum):
    """Persisted sample streams, one table each per partition."""

    ECOWITT = "ecowitt"
    ETA = "eta"
    CONFIG = "config"
    CONTROL = "control"

    @property
    def table(self) -> str:
        return f"{self.value}_logs"


class ControlAction(str, Enum):
    NO_ACTION = "NO_ACTION"
    ENTER_OVERRIDE = "ENTER_OVERRIDE"
    SWITCH_MODE = "SWITCH_MODE"


@dataclass(frozen=True)
class TreeNode:
    uri: str
    name: str
    children: Tuple[TreeNode, ...] = ()


@dataclass(frozen=True)
class VariableSample:
    path: str
    raw_value: str
    scaled_value: Optional[float]
    unit: str
    captured_at: datetime
    text: str = ""
    scale_factor: int = 1
    dec_places: int = 0
    adv_text_offset: str = "0"
    attributes: Mapping[str, str] = field(default_factory=dict)

    def as_payload(self) -> Dict[str, Any]:
        return {
            "uri": self.path,
            "strValue": self.raw_value,
            "value": self.text,
            "scaledValue": self.scaled_value,
            "unit": self.unit,
            "scaleFactor": str(self.scale_factor),
            "decPlaces": str(self.dec_places),
            "advTextOffset": self.adv_text_offset,
        }


@dataclass(frozen=True)
class ChannelReading:
    temperature: float
    humidity: float


@dataclass(frozen=True)
class WeatherSample:
    indoor_temperature: float
    outdoor_temperature: float
    humidity: Optional[float]
    pressure: Optional[float]
    captured_at: datetime
    indoor_humidity: Optional[float] = None
    channels: Mapping[int, ChannelReading] = field(default_factory=dict)
    raw: Mapping[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class ControlState:
    """Three-flag state vector carried across cycles.

    manual_override_started_at is set iff manual_override_active.
    """

    was_below_threshold: bool = False
    was_actuator_negative: bool = False
    manual_override_active: bool = False
    manual_override_started_at: Optional[datetime] = None


@dataclass(frozen=True)
class ControlInput:
    indoor_temperature: float
    min_temperature: float
    actuator_position: float
    active_mode: Optional[Mode]
    state: ControlState
    override_duration_ms: int
    now: datetime


@dataclass(frozen=True)
class ControlDecision:
    action: ControlAction
    state: ControlState
    target_mode: Optional[Mode] = None
    trace: Tuple[str, ...] = ()


@dataclass(frozen=True)
class TimeSeriesRecord:
    timestamp: datetime
    year: int
    month: int
    day: int
    hour: int
    minute: int
    payload: str

    @classmethod
    def at(cls, timestamp: datetime, payload: str) -> TimeSeriesRecord:
        return cls(
            timestamp=timestamp,
            year=timestamp.year,
            month=timestamp.month,
            day=timestamp.day,
            hour=timestamp.hour,
            minute=timestamp.minute,
            payload=payload,
        )


@dataclass
class Snapshot:
    """Last-known state published once per cycle for readers of the service."""

    config: Dict[str, Any] = field(default_factory=dict)
    variables: Dict[str, VariableSample] = field(default_factory=dict)
    weather: Optional[WeatherSample] = None
    names: Dict[str, str] = field(default_factory=dict)
    control_state: ControlState = field(default_factory=ControlState)
    last_action: Optional[str] = None
    trace: List[str] = field(default_factory=list)
    temperature_error: Optional[float] = None
    actuator_position: Optional[float] = None
    last_cycle_utc: Optional[datetime] = None
    last_error: Optional[str] = None
