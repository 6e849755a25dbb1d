from __future__ import annotations
from dataclasses import dataclass
from typing import Dict, Mapping, Optional

from .models import Mode, VariableSample


@dataclass(frozen=True)
class KnownVariable:
    path: str
    name: str


# Short keys for the controller variables the control loop reads or writes
HEATING_CURVE = "HK"
SLIDER_POSITION = "SP"
OUTDOOR_TEMPERATURE = "AT"
STOCK = "VR"
PELLET_CONTENT = "IP"
SWITCHING_STATE = "SZ"
ON_OFF_BUTTON = "EAT"
BOILER_TEMPERATURE = "KZ"
FLOW_TEMPERATURE = "VT"

KNOWN_VARIABLES: Dict[str, KnownVariable] = {
    HEATING_CURVE: KnownVariable("/120/10101/0/0/12111", "Heizkurve"),
    SLIDER_POSITION: KnownVariable("/120/10101/0/0/12240", "Schieber Position"),
    OUTDOOR_TEMPERATURE: KnownVariable("/120/10101/0/0/12197", "Außentemperatur"),
    STOCK: KnownVariable("/40/10201/0/0/12015", "Vorrat"),
    PELLET_CONTENT: KnownVariable("/40/10021/0/0/12011", "Inhalt Pelletsbehälter"),
    SWITCHING_STATE: KnownVariable("/120/10101/12113/0/1109", "Schaltzustand"),
    ON_OFF_BUTTON: KnownVariable("/120/10101/0/0/12080", "Ein/Aus Taste"),
    BOILER_TEMPERATURE: KnownVariable("/40/10021/0/11109/0", "Kessel Temperatur"),
    FLOW_TEMPERATURE: KnownVariable("/120/10101/0/0/12241", "Vorlauf Temperatur"),
}

MODE_BUTTONS: Dict[Mode, KnownVariable] = {
    Mode.HT: KnownVariable("/120/10101/0/0/12125", "Heizen Taste"),
    Mode.KT: KnownVariable("/120/10101/0/0/12218", "Kommen Taste"),
    Mode.AA: KnownVariable("/120/10101/0/0/12126", "Autotaste"),
    Mode.GT: KnownVariable("/120/10101/0/0/12219", "Gehen Taste"),
    Mode.DT: KnownVariable("/120/10101/0/0/12230", "Absenken Taste"),
}

# Order in which a pressed button is reported as the active mode
_MODE_PRIORITY = (Mode.GT, Mode.KT, Mode.AA, Mode.HT, Mode.DT)

BUTTON_PRESSED_TEXT = "Ein"
BUTTON_PRESSED_RAW = "1803"


def button_paths(buttons: Mapping[Mode, KnownVariable] = MODE_BUTTONS) -> Dict[Mode, str]:
    return {mode: v.path for mode, v in buttons.items()}


def required_paths(buttons: Mapping[Mode, KnownVariable] = MODE_BUTTONS) -> list[str]:
    return [v.path for v in KNOWN_VARIABLES.values()] + [v.path for v in buttons.values()]


def is_pressed(sample: Optional[VariableSample]) -> bool:
    if sample is None:
        return False
    return sample.raw_value == BUTTON_PRESSED_TEXT or sample.text.strip() == BUTTON_PRESSED_RAW


def active_mode(
    samples: Mapping[str, VariableSample],
    buttons: Mapping[Mode, KnownVariable] = MODE_BUTTONS,
) -> Optional[Mode]:
    """The mode whose button currently reads pressed, None if no button is known to be."""
    for mode in _MODE_PRIORITY:
        button = buttons.get(mode)
        if button is not None and is_pressed(samples.get(button.path)):
            return mode
    return None


def str_value(samples: Mapping[str, VariableSample], key: str) -> str:
    sample = samples.get(KNOWN_VARIABLES[key].path)
    return sample.raw_value if sample else ""


def scaled_value(samples: Mapping[str, VariableSample], key: str) -> Optional[float]:
    sample = samples.get(KNOWN_VARIABLES[key].path)
    return sample.scaled_value if sample else None
