from __future__ import annotations
import logging
from dataclasses import replace
from datetime import datetime, timedelta
from typing import List

from .models import ControlAction, ControlDecision, ControlInput, ControlState, Mode

logger = logging.getLogger(__name__)

# Once heating-now has been requested, indoor temperature must climb this far
# above the minimum before we call it "above" again.
HYSTERESIS = 0.2


def _is_below(indoor: float, minimum: float, was_below: bool) -> bool:
    if was_below:
        return indoor <= minimum + HYSTERESIS
    return indoor < minimum


def determine_control_action(inp: ControlInput) -> ControlDecision:
    """Decide which mode button the controller should be on.

    State vector: (was_below_threshold, was_actuator_negative, manual_override_active).

    1. override active and not expired  -> NO_ACTION
       override active and expired      -> clear override, continue
    2. expected = GT if position < 0, KT if below threshold, else AA
    3. state_changed  = either flag differs from the stored one
       button_mismatch = active mode != expected
    4. mismatch, no override, no state change -> ENTER_OVERRIDE (flags kept)
    5. no override and (state change or mismatch) -> SWITCH_MODE(expected), flags updated
    6. otherwise NO_ACTION

    The expiry check must stay ahead of the mismatch classification.
    """
    trace: List[str] = []
    state = inp.state

    if state.manual_override_active and state.manual_override_started_at is not None:
        elapsed = inp.now - state.manual_override_started_at
        duration = timedelta(milliseconds=inp.override_duration_ms)
        if elapsed > duration:
            trace.append("Manual override timeout expired")
            state = replace(state, manual_override_active=False, manual_override_started_at=None)
        else:
            trace.append(
                f"Manual override still active ({round(elapsed.total_seconds())}s / "
                f"{round(duration.total_seconds())}s)"
            )
            return ControlDecision(ControlAction.NO_ACTION, state, None, tuple(trace))

    is_below = _is_below(inp.indoor_temperature, inp.min_temperature, state.was_below_threshold)
    is_negative = inp.actuator_position < 0

    if is_negative:
        expected = Mode.GT
    elif is_below:
        expected = Mode.KT
    else:
        expected = Mode.AA

    state_changed = (
        state.was_below_threshold != is_below or state.was_actuator_negative != is_negative
    )
    # unknown active mode never counts as a mismatch
    button_mismatch = inp.active_mode is not None and inp.active_mode != expected

    active = inp.active_mode.value if inp.active_mode else "?"
    trace.append(f"Decision: expected={expected.value}, current={active}")
    trace.append(f"Checks: stateChanged={state_changed}, buttonMismatch={button_mismatch}")

    if button_mismatch and not state_changed:
        trace.append(
            f"Manual override detected: mode set to {active} (expected {expected.value}). "
            "Entering override mode."
        )
        state = replace(state, manual_override_active=True, manual_override_started_at=inp.now)
        return ControlDecision(ControlAction.ENTER_OVERRIDE, state, None, tuple(trace))

    if state_changed or button_mismatch:
        state = replace(state, was_below_threshold=is_below, was_actuator_negative=is_negative)
        return ControlDecision(ControlAction.SWITCH_MODE, state, expected, tuple(trace))

    return ControlDecision(ControlAction.NO_ACTION, state, None, tuple(trace))


class ModeController:
    """Holds the ControlState between cycles and applies the decision step."""

    def __init__(self) -> None:
        self.state = ControlState()
        self.last_decision: ControlDecision | None = None

    def decide(
        self,
        now_utc: datetime,
        indoor_temperature: float,
        min_temperature: float,
        actuator_position: float,
        active_mode: Mode | None,
        override_duration_ms: int,
    ) -> ControlDecision:
        decision = determine_control_action(
            ControlInput(
                indoor_temperature=indoor_temperature,
                min_temperature=min_temperature,
                actuator_position=actuator_position,
                active_mode=active_mode,
                state=self.state,
                override_duration_ms=override_duration_ms,
                now=now_utc,
            )
        )
        self.state = decision.state
        self.last_decision = decision
        for line in decision.trace:
            logger.info("decide: %s", line)
        logger.info(
            "decision: %s%s",
            decision.action.value,
            f" -> {decision.target_mode.value}" if decision.target_mode else "",
        )
        return decision
