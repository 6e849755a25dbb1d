"""Pure numeric transforms from temperature error to actuator (slider) position.

No I/O here; everything is deterministic given its arguments.
"""
from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Optional

MAX_ERROR = 5.0
POWER = 1.25

FLOW_FULL_OPEN = 38.0
FLOW_CLOSED = 50.0

BUTTON_ON_TEXT = "Ein"
BUTTON_OFF_TEXT = "Aus"


def normalize(value: float, lo: float, hi: float) -> float:
    return round((value - lo) / (hi - lo), 4)


def round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def compute_position_from_error(
    error: float,
    power: float = POWER,
    max_error: float = MAX_ERROR,
    range_start: float = 0.0,
    range_end: float = 100.0,
) -> int:
    """Map a temperature error onto a signed position in [-range_end, range_end].

    Positive errors (too cold) follow a power curve, negative errors (too warm)
    a logarithmic one. The two curves are intentionally different.
    """
    span = range_end - range_start
    sign = -1.0 if error < 0.0 else 1.0
    magnitude = abs(error)

    if sign < 0:
        fraction = normalize(math.log(magnitude + 1.0), 0.0, math.log(max_error + 1.0))
    else:
        fraction = normalize(magnitude ** power, 0.0, max_error ** power)

    position = round_half_up(sign * span * fraction)
    return max(-int(range_end), min(int(range_end), position))


def flow_factor(flow_temperature: Optional[float]) -> float:
    if flow_temperature is None or math.isnan(flow_temperature):
        return 1.0
    if flow_temperature <= FLOW_FULL_OPEN:
        return 1.0
    if flow_temperature >= FLOW_CLOSED:
        return 0.0
    return (FLOW_CLOSED - flow_temperature) / (FLOW_CLOSED - FLOW_FULL_OPEN)


def compute_position_with_flow_scaling(base_position: float, flow_temperature: Optional[float]) -> float:
    """Dampen heating demand as the flow temperature climbs from 38 to 50 degrees.

    Negative positions are returned unchanged.
    """
    if base_position < 0:
        return base_position
    return max(0.0, min(100.0, base_position * flow_factor(flow_temperature)))


def compute_temperature_error(target: float, delta: float, indoor: float) -> float:
    return round(min(target + delta - indoor, MAX_ERROR), 1)


@dataclass(frozen=True)
class SwitchStates:
    """strValue texts of the controller's switch variables."""

    on_off: str = ""
    switching_state: str = ""
    heat_button: str = ""
    come_button: str = ""

    @property
    def heating_disabled(self) -> bool:
        overrides = self.heat_button == BUTTON_ON_TEXT or self.come_button == BUTTON_ON_TEXT
        return self.on_off == BUTTON_OFF_TEXT or (
            self.switching_state == BUTTON_OFF_TEXT and not overrides
        )


def compute_actuator_position(
    error: float,
    switches: SwitchStates,
    flow_temperature: Optional[float] = None,
) -> float:
    if switches.heating_disabled:
        return 0.0
    base = compute_position_from_error(error)
    return float(compute_position_with_flow_scaling(base, flow_temperature))
