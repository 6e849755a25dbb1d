from __future__ import annotations
import asyncio
import json
import logging
from datetime import timedelta
from pathlib import Path
from typing import Any, Callable, Dict, Mapping, Optional, Set

import psutil
from watchfiles import awatch

from ..core.cancel import CancelToken
from ..core.config import settings
from ..core.errors import Cancelled, ConfigError, NetworkError, ParseError, StoreError
from ..core.timeutil import now_local, now_utc
from ..domain.controller import ModeController
from ..domain.interfaces import ConfigProvider, ControllerClient, Repository, WeatherClient
from ..domain.models import ControlAction, Mode, Snapshot, Stream, TimeSeriesRecord, VariableSample
from ..domain.transform import (
    SwitchStates,
    compute_actuator_position,
    compute_temperature_error,
    round_half_up,
)
from ..domain import variables as v
from ..drivers.eta_xml import collect_uris
from ..storage.config_file import HeatingConfig

logger = logging.getLogger(__name__)

# Slider values travel as position * scaleFactor
SLIDER_SCALE = 10


def _rss_bytes() -> int:
    return psutil.Process().memory_info().rss


class Orchestrator:
    """Runs the fetch-compute-persist cycle on a timer and publishes a snapshot.

    Cycles never overlap: a cycle requested while another is running is skipped.
    """

    def __init__(
        self,
        eta: ControllerClient,
        weather: WeatherClient,
        store: Repository,
        config_provider: ConfigProvider,
        controller: Optional[ModeController] = None,
        buttons: Mapping[Mode, v.KnownVariable] = v.MODE_BUTTONS,
        min_interval_ms: int = settings.min_update_interval_ms,
        chunk_size: int = settings.fetch_chunk_size,
        concurrency: int = settings.fetch_concurrency,
        retention_seconds: int = settings.retention_seconds,
        memory_check_seconds: float = settings.memory_check_seconds,
        memory_ceiling_bytes: int = settings.memory_ceiling_bytes,
        config_debounce_ms: int = settings.config_debounce_ms,
        memory_probe: Callable[[], int] = _rss_bytes,
        watch_config: bool = True,
    ) -> None:
        self._eta = eta
        self._weather = weather
        self._store = store
        self._config_provider = config_provider
        self._controller = controller or ModeController()
        self._buttons = dict(buttons)

        self._min_interval_ms = min_interval_ms
        self._chunk_size = chunk_size
        self._concurrency = concurrency
        self._retention_seconds = retention_seconds
        self._memory_check_seconds = memory_check_seconds
        self._memory_ceiling_bytes = memory_ceiling_bytes
        self._config_debounce_ms = config_debounce_ms
        self._memory_probe = memory_probe
        self._watch_config = watch_config

        self.config = HeatingConfig()
        self.snapshot = Snapshot()
        self.cycle_in_flight = False
        self.cycles_run = 0
        self.cycles_skipped = 0

        self._running = False
        self._stop = asyncio.Event()
        self._token = CancelToken()
        self._timer_task: Optional[asyncio.Task] = None
        self._watch_task: Optional[asyncio.Task] = None
        self._memory_task: Optional[asyncio.Task] = None
        self._cycle_tasks: Set[asyncio.Task] = set()
        self._interval_ms: Optional[int] = None

    # ---- lifecycle -------------------------------------------------------

    @property
    def running(self) -> bool:
        return self._running

    @property
    def interval_ms(self) -> Optional[int]:
        return self._interval_ms

    def effective_interval_ms(self, config: HeatingConfig) -> int:
        return max(config.t_update_timer, self._min_interval_ms)

    async def start(self) -> None:
        if self._running:
            logger.info("Orchestrator is already running")
            return

        self._stop.clear()
        self._token = CancelToken()

        try:
            await self._store.initialize()
        except StoreError as e:
            logger.error("Store unavailable at startup: %s", e)

        try:
            self.config = await self._config_provider.read()
        except (ConfigError, OSError) as e:
            logger.error("Failed to load config after retries, using defaults: %s", e)
            self.config = HeatingConfig()
        self._eta.set_host(self.config.s_eta)
        self.snapshot.config = self.config.to_file_dict()
        await self._persist(Stream.CONFIG, self.snapshot.config)

        if self._watch_config:
            self._watch_task = asyncio.create_task(self._watch_config_file(), name="config_watch")
        self._memory_task = asyncio.create_task(self._memory_loop(), name="memory_check")

        await self.run_cycle("startup")

        self._start_timer()
        self._running = True
        logger.info("Orchestrator started (interval=%sms)", self._interval_ms)

    async def stop(self) -> None:
        if not self._running and self._timer_task is None and self._memory_task is None:
            return
        self._stop.set()
        self._token.cancel()

        for task in (self._timer_task, self._watch_task, self._memory_task, *self._cycle_tasks):
            if task is None:
                continue
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._timer_task = self._watch_task = self._memory_task = None
        self._cycle_tasks.clear()
        self.cycle_in_flight = False
        self._running = False

        for closer in (self._eta.aclose, self._weather.aclose, self._store.close):
            try:
                await closer()
            except Exception as e:
                logger.warning("Error while closing %s: %s", closer, e)
        logger.info("Orchestrator stopped")

    # ---- timer -----------------------------------------------------------

    def _start_timer(self) -> None:
        if self._timer_task is not None:
            self._timer_task.cancel()
        self._interval_ms = self.effective_interval_ms(self.config)
        self._timer_task = asyncio.create_task(
            self._timer_loop(self._interval_ms / 1000.0), name="update_timer"
        )

    async def _timer_loop(self, interval_s: float) -> None:
        logger.info("Update interval started with timer: %sms", int(interval_s * 1000))
        while not self._stop.is_set():
            try:
                await asyncio.wait_for(self._stop.wait(), timeout=interval_s)
            except asyncio.TimeoutError:
                self._spawn_cycle("timer")

    def _spawn_cycle(self, reason: str, sweep_seconds: Optional[float] = None) -> None:
        task = asyncio.create_task(self.run_cycle(reason, sweep_seconds), name=f"cycle_{reason}")
        self._cycle_tasks.add(task)
        task.add_done_callback(self._cycle_tasks.discard)

    # ---- cycle -----------------------------------------------------------

    async def run_cycle(self, reason: str = "manual", sweep_seconds: Optional[float] = None) -> bool:
        """Run one cycle unless another is in flight. Returns whether it ran."""
        if self.cycle_in_flight:
            self.cycles_skipped += 1
            logger.info("Previous update still running, skipping %s cycle", reason)
            return False

        self.cycle_in_flight = True
        try:
            logger.info("Starting %s cycle", reason)
            await self._cycle(self._retention_seconds if sweep_seconds is None else sweep_seconds)
            self.snapshot.last_error = None
        except Cancelled:
            logger.info("%s cycle cancelled", reason)
        except Exception as e:
            self.snapshot.last_error = str(e)
            logger.exception("Update cycle failed: %s", e)
        finally:
            self.cycle_in_flight = False
            self.cycles_run += 1
        return True

    def sweep(self, retention_seconds: float) -> int:
        """Drop snapshot entries older than the retention window. Returns how many went."""
        cutoff = now_utc() - timedelta(seconds=retention_seconds)
        stale = [p for p, s in self.snapshot.variables.items() if s.captured_at < cutoff]
        for path in stale:
            del self.snapshot.variables[path]
        dropped = len(stale)
        if self.snapshot.weather is not None and self.snapshot.weather.captured_at < cutoff:
            self.snapshot.weather = None
            dropped += 1
        if dropped:
            logger.info("Dropped %d outdated entries from snapshot", dropped)
        return dropped

    async def _cycle(self, sweep_seconds: float) -> None:
        token = CancelToken(self._token)
        config = self.config
        self.sweep(sweep_seconds)

        paths = self._wanted_paths()
        try:
            tree = await self._eta.fetch_controller_tree(token)
            self.snapshot.names = _names(tree)
            paths = list(dict.fromkeys(collect_uris(tree, leaves_only=True) + paths))
        except (NetworkError, ParseError) as e:
            logger.warning("ETA menu unavailable, fetching known variables only: %s", e)

        fetched, weather = await asyncio.gather(
            self._eta.fetch_leaf_variables(paths, self._chunk_size, self._concurrency, token),
            self._weather.fetch_weather_telemetry(token),
            return_exceptions=True,
        )
        for result in (fetched, weather):
            if isinstance(result, Cancelled):
                raise result
            if isinstance(result, BaseException) and not isinstance(result, Exception):
                raise result
        if isinstance(fetched, Exception):
            logger.warning("ETA data fetch failed: %s", fetched)
            fetched = {}
        if isinstance(weather, Exception):
            logger.warning("Weather fetch failed: %s", weather)
            weather = None

        self.snapshot.variables.update(fetched)
        if weather is not None:
            self.snapshot.weather = weather

        if weather is None:
            logger.warning("No indoor temperature available, skipping control step")
            control = None
        else:
            control = await self._control(config, self.snapshot.variables, weather.indoor_temperature,
                                          weather.outdoor_temperature, token)

        # samples are stored only once the decision for them is made
        if fetched:
            await self._persist(Stream.ETA, {p: s.as_payload() for p, s in fetched.items()})
        if weather is not None:
            await self._persist(Stream.ECOWITT, dict(weather.raw))
        if control is not None:
            await self._persist(Stream.CONTROL, control)

        self.snapshot.last_cycle_utc = now_utc()

    def _wanted_paths(self) -> list[str]:
        return v.required_paths(self._buttons)

    async def _control(
        self,
        config: HeatingConfig,
        samples: Dict[str, VariableSample],
        indoor: float,
        outdoor: float,
        token: CancelToken,
    ) -> Dict[str, Any]:
        """Decide, write mode and slider. Returns the control payload to store."""
        error = compute_temperature_error(config.t_soll, config.t_delta, indoor)
        heat = samples.get(self._buttons[Mode.HT].path) if Mode.HT in self._buttons else None
        come = samples.get(self._buttons[Mode.KT].path) if Mode.KT in self._buttons else None
        switches = SwitchStates(
            on_off=v.str_value(samples, v.ON_OFF_BUTTON),
            switching_state=v.str_value(samples, v.SWITCHING_STATE),
            heat_button=heat.raw_value if heat else "",
            come_button=come.raw_value if come else "",
        )
        position = compute_actuator_position(error, switches, v.scaled_value(samples, v.FLOW_TEMPERATURE))
        self.snapshot.temperature_error = error
        self.snapshot.actuator_position = position
        logger.info("Temperature error %.1f -> slider position %.1f (indoor=%.1f)", error, position, indoor)

        mode = v.active_mode(samples, self._buttons)
        decision = self._controller.decide(
            now_utc=now_utc(),
            indoor_temperature=indoor,
            min_temperature=config.t_min,
            actuator_position=position,
            active_mode=mode,
            override_duration_ms=config.t_override,
        )
        self.snapshot.control_state = decision.state
        self.snapshot.last_action = decision.action.value
        self.snapshot.trace = list(decision.trace)

        if decision.action == ControlAction.SWITCH_MODE and decision.target_mode is not None:
            try:
                await self._eta.write_mode(decision.target_mode, v.button_paths(self._buttons), token)
            except NetworkError as e:
                logger.error("Error updating button states: %s", e)

        await self._write_slider(samples, position, token)

        return {
            "diff": error,
            "sliderPosition": position,
            "indoor": indoor,
            "outdoor": outdoor,
            "activeMode": mode.value if mode else None,
            "action": decision.action.value,
            "targetMode": decision.target_mode.value if decision.target_mode else None,
            "wasBelowThreshold": decision.state.was_below_threshold,
            "wasActuatorNegative": decision.state.was_actuator_negative,
            "manualOverrideActive": decision.state.manual_override_active,
            "trace": list(decision.trace),
        }

    async def _write_slider(self, samples: Dict[str, VariableSample], position: float, token: CancelToken) -> None:
        slider_path = v.KNOWN_VARIABLES[v.SLIDER_POSITION].path
        current_sample = samples.get(slider_path)
        if current_sample is None:
            logger.info("Current slider position unknown, setting slider skipped")
            return
        current = _as_number(current_sample)
        recommended = round_half_up(position)
        if current is None or recommended == current:
            logger.info("Setting slider skipped (current=%s, recommended=%s)", current, recommended)
            return

        logger.info("Update slider position from %s to %s", current, recommended)
        try:
            await self._eta.write_actuator_position(slider_path, recommended * SLIDER_SCALE, token)
        except NetworkError as e:
            logger.error("Failed to update slider position: %s", e)

    async def _persist(self, stream: Stream, payload: Dict[str, Any]) -> None:
        record = TimeSeriesRecord.at(now_local(), json.dumps(payload, default=str))
        try:
            await self._store.insert(stream, record)
        except StoreError as e:
            logger.error("Dropping %s sample: %s", stream.value, e)

    # ---- configuration ---------------------------------------------------

    async def reload_config(self) -> None:
        """Apply a changed configuration file, keeping the previous one when it is unreadable."""
        try:
            new = await self._config_provider.read()
        except (ConfigError, OSError) as e:
            logger.error("Config reload failed, keeping previous configuration: %s", e)
            return

        old = self.config
        self.config = new
        self.snapshot.config = new.to_file_dict()
        await self._persist(Stream.CONFIG, self.snapshot.config)

        if new.s_eta != old.s_eta:
            logger.info("Controller address changed to %s", new.s_eta)
            self._eta.set_host(new.s_eta)
        if self._timer_task is not None and self.effective_interval_ms(new) != self._interval_ms:
            logger.info("Update timer changed to %sms, restarting interval", new.t_update_timer)
            self._start_timer()

        await self.run_cycle("config change")

    async def _watch_config_file(self) -> None:
        path = Path(self._config_provider.path)
        logger.info("Watching %s for changes", path)
        try:
            async for _ in awatch(
                path.parent,
                watch_filter=lambda _change, changed: Path(changed).name == path.name,
                debounce=self._config_debounce_ms,
                stop_event=self._stop,
            ):
                logger.info("Config file changed")
                await self.reload_config()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.exception("Config watch stopped: %s", e)

    # ---- memory ----------------------------------------------------------

    async def check_memory(self) -> bool:
        """Run the accelerated sweep when RSS is above the ceiling. Returns whether it did."""
        rss = self._memory_probe()
        logger.info("Memory usage - rss: %dMB", rss // (1024 * 1024))
        if rss <= self._memory_ceiling_bytes:
            return False
        logger.warning("High memory usage detected! Running emergency cleanup...")
        await self.run_cycle("memory cleanup", sweep_seconds=self._retention_seconds / 2)
        return True

    async def _memory_loop(self) -> None:
        while not self._stop.is_set():
            try:
                await asyncio.wait_for(self._stop.wait(), timeout=self._memory_check_seconds)
            except asyncio.TimeoutError:
                try:
                    await self.check_memory()
                except Exception as e:
                    logger.exception("Memory check failed: %s", e)

    # ---- status ----------------------------------------------------------

    def status(self) -> Dict[str, Any]:
        return {
            "running": self._running,
            "cycle_in_flight": self.cycle_in_flight,
            "interval_ms": self._interval_ms,
            "cycles_run": self.cycles_run,
            "cycles_skipped": self.cycles_skipped,
            "config_path": str(self._config_provider.path),
            "last_cycle_utc": self.snapshot.last_cycle_utc.isoformat() if self.snapshot.last_cycle_utc else None,
            "last_error": self.snapshot.last_error,
        }


def _names(tree) -> Dict[str, str]:
    out: Dict[str, str] = {}

    def walk(node) -> None:
        out[node.uri] = node.name
        for child in node.children:
            walk(child)

    for n in tree:
        walk(n)
    return out


def _as_number(sample: VariableSample) -> Optional[float]:
    try:
        return float(sample.raw_value)
    except (TypeError, ValueError):
        return sample.scaled_value
