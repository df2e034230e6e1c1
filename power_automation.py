"""
Power Automation Engine

Fleet-wide pass that switches each miner's bound smart outlet on or off from
the station's grid state, battery charge and solar generation, and from the
miner's overheat lock.

A pass is rate limited (one in flight, minimum interval between passes) and
every switch direction per miner is debounced so a slow outlet cloud does not
get the same command again while the first one is still propagating.
"""
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from threading import Lock
from typing import Callable, Dict, List, Optional, Tuple

import config
from alerts import NotificationManager
from models import FleetSettings, MinerPowerPolicy, MinerRecord, SwitchDevice
from station import GridStateCache, StationSnapshot

logger = logging.getLogger(__name__)


class Direction(Enum):
    ON = "ON"
    OFF = "OFF"


class OffReason(Enum):
    """Why an outlet should be off, in notification priority order"""
    CRITICAL_BATTERY = "critical_battery"
    OVERHEAT = "overheat"
    GRID_LOSS = "grid_loss"
    THRESHOLD = "threshold"


class CooldownRegistry:
    """Debounce expiry per (miner, direction)"""

    def __init__(self, seconds: float = config.POWER_AUTOMATION_DEBOUNCE):
        self.duration = timedelta(seconds=seconds)
        self._until: Dict[Tuple[str, Direction], datetime] = {}
        self._lock = Lock()

    def try_acquire(self, miner_id: str, direction: Direction, now: datetime) -> bool:
        """Claim the key if its cooldown has expired; atomic for concurrent callers"""
        key = (miner_id, direction)
        with self._lock:
            locked_until = self._until.get(key)
            if locked_until is not None and now < locked_until:
                return False
            self._until[key] = now + self.duration
            return True

    def locked_until(self, miner_id: str, direction: Direction) -> Optional[datetime]:
        with self._lock:
            return self._until.get((miner_id, direction))


@dataclass
class AutomationRuntimeState:
    """Process-wide automation memory; lives as long as the process"""
    running: bool = False
    last_run_at: Optional[datetime] = None
    prev_grid_online: Optional[bool] = None
    cooldowns: CooldownRegistry = field(default_factory=CooldownRegistry)
    threshold_auto_off_at: Dict[str, datetime] = field(default_factory=dict)
    grid_cache: GridStateCache = field(default_factory=GridStateCache)
    lock: Lock = field(default_factory=Lock, repr=False)

    def try_begin_pass(self, now: datetime, min_interval_seconds: float) -> bool:
        """Start a pass unless one is running or the last one started too recently"""
        with self.lock:
            if self.running:
                return False
            if self.last_run_at is not None:
                if (now - self.last_run_at).total_seconds() < min_interval_seconds:
                    return False
            self.running = True
            self.last_run_at = now
            return True

    def end_pass(self):
        with self.lock:
            self.running = False


@dataclass
class SwitchAction:
    """A switch command the engine executed"""
    miner_id: str
    device_id: str
    on: bool
    reason: str


def thresholds_breached(policy: MinerPowerPolicy, snapshot: StationSnapshot) -> Tuple[bool, bool]:
    """(battery below its off threshold, generation below its off threshold)"""
    soc = snapshot.battery_soc
    generation = snapshot.generation_kw
    battery = (
        policy.auto_power_off_battery_below_percent is not None
        and soc is not None
        and soc < policy.auto_power_off_battery_below_percent
    )
    gen = (
        policy.auto_power_off_generation_below_kw is not None
        and generation is not None
        and generation < policy.auto_power_off_generation_below_kw
    )
    return battery, gen


def evaluate_off_reasons(policy: MinerPowerPolicy, overheat_locked: bool,
                         snapshot: StationSnapshot, grid_lost: bool,
                         settings: FleetSettings) -> List[OffReason]:
    """
    Every reason the outlet should be off, highest priority first.

    Once any threshold is configured, losing the grid alone is not enough to
    cut power: every configured threshold has to be breached as well.
    """
    reasons = []
    grid_offline = snapshot.grid_online is False
    soc = snapshot.battery_soc

    if grid_offline and soc is not None and soc < settings.critical_battery_off_percent:
        reasons.append(OffReason.CRITICAL_BATTERY)

    if overheat_locked:
        reasons.append(OffReason.OVERHEAT)

    battery_configured = policy.auto_power_off_battery_below_percent is not None
    generation_configured = policy.auto_power_off_generation_below_kw is not None
    battery_breached, generation_breached = thresholds_breached(policy, snapshot)

    configured_breached = (
        (battery_breached or not battery_configured)
        and (generation_breached or not generation_configured)
    )
    if grid_lost and policy.auto_power_off_grid_loss and configured_breached:
        reasons.append(OffReason.GRID_LOSS)

    if (grid_offline and battery_breached
            and (generation_breached or not generation_configured)):
        reasons.append(OffReason.THRESHOLD)

    return reasons


def effective_battery_on_percent(policy: MinerPowerPolicy, settings: FleetSettings) -> float:
    """Auto-on battery floor, never below the miner's auto-off threshold"""
    on_percent = policy.auto_power_on_battery_above_percent
    if on_percent is None:
        on_percent = settings.auto_on_battery_default_percent
    off_percent = policy.auto_power_off_battery_below_percent
    if off_percent is not None and on_percent < off_percent:
        on_percent = off_percent
    return on_percent


def auto_on_blocked(policy: MinerPowerPolicy, snapshot: StationSnapshot,
                    settings: FleetSettings) -> bool:
    """
    Whether turning the outlet on should wait.

    Miners with a generation auto-on threshold only look at generation.
    Everyone else waits for the battery floor unless the grid wire is
    definitely carrying power.
    """
    generation_on = policy.auto_power_on_generation_above_kw
    if generation_on is not None:
        off_kw = policy.auto_power_off_generation_below_kw
        if off_kw is not None and generation_on < off_kw:
            generation_on = off_kw
        return snapshot.generation_kw is None or snapshot.generation_kw < generation_on

    soc = snapshot.battery_soc
    if soc is None:
        return False
    return soc < effective_battery_on_percent(policy, settings) and not snapshot.wire_power_nonzero


def describe_off_reason(reason: OffReason, policy: MinerPowerPolicy,
                        snapshot: StationSnapshot, settings: FleetSettings) -> str:
    if reason == OffReason.CRITICAL_BATTERY:
        return (f"battery at {snapshot.battery_soc:.0f}% is below the critical "
                f"{settings.critical_battery_off_percent:.0f}% while the grid is offline")
    if reason == OffReason.OVERHEAT:
        return "the miner is overheat-locked"
    if reason == OffReason.GRID_LOSS:
        return "grid power was lost"

    text = (f"battery at {snapshot.battery_soc:.0f}% is below "
            f"{policy.auto_power_off_battery_below_percent:.0f}%")
    if policy.auto_power_off_generation_below_kw is not None:
        text += (f" and generation {snapshot.generation_kw:.2f} kW is below "
                 f"{policy.auto_power_off_generation_below_kw:.2f} kW")
    return text + " while the grid is offline"


class PowerAutomationEngine:
    """Drive bound outlets from station state, one fleet pass at a time"""

    def __init__(self, runtime: AutomationRuntimeState,
                 station_source: Callable[[], StationSnapshot],
                 outlets, store, notifier: NotificationManager,
                 min_interval: float = config.POWER_AUTOMATION_MIN_RUN_INTERVAL):
        self.runtime = runtime
        self.station_source = station_source
        self.outlets = outlets
        self.store = store
        self.notifier = notifier
        self.min_interval = min_interval

    def run(self, now: Optional[datetime] = None) -> Optional[List[SwitchAction]]:
        """
        Run one fleet pass.

        Never raises: a failing station, outlet or store call abandons the
        pass and the next scheduled pass retries.

        Returns:
            The switch actions executed, or None when the pass was skipped
        """
        now = now or datetime.now()
        if not self.runtime.try_begin_pass(now, self.min_interval):
            logger.debug("Power automation pass skipped (running or too soon)")
            return None

        actions: List[SwitchAction] = []
        try:
            self._run_pass(now, actions)
        except Exception as e:
            logger.warning(f"Power automation pass abandoned: {e}")
        finally:
            self.runtime.end_pass()
        return actions

    def _run_pass(self, now: datetime, actions: List[SwitchAction]):
        snapshot = self.station_source()
        devices = self.outlets.fetch_switchable_devices()
        miners = self.store.find_miners_with_bound_outlet()
        settings = self.store.get_settings()

        runtime = self.runtime
        grid_now = snapshot.grid_online
        prev_grid = runtime.prev_grid_online
        grid_restored = prev_grid is False and grid_now is True
        initial_grid_online = prev_grid is None and grid_now is True
        grid_lost = prev_grid is True and grid_now is False
        if grid_now is not None:
            runtime.prev_grid_online = grid_now

        if grid_restored:
            logger.info("Grid power restored")
        elif grid_lost:
            logger.warning("Grid power lost")

        devices_by_id = {d.id: d for d in devices}

        for miner in miners:
            device = devices_by_id.get(miner.power.bound_outlet_id)
            if device is None or not device.online or not device.switch_code:
                continue
            self._evaluate_miner(
                miner, device, snapshot, settings, now,
                grid_restored or initial_grid_online, grid_lost, actions
            )

    def _evaluate_miner(self, miner: MinerRecord, device: SwitchDevice, snapshot: StationSnapshot,
                        settings: FleetSettings, now: datetime, grid_came_up: bool,
                        grid_lost: bool, actions: List[SwitchAction]):
        policy = miner.power
        marks = self.runtime.threshold_auto_off_at
        reasons = evaluate_off_reasons(
            policy, miner.thermal.overheat_locked, snapshot, grid_lost, settings
        )

        if reasons:
            if device.on is False:
                return
            primary = reasons[0]
            reason = describe_off_reason(primary, policy, snapshot, settings)
            if self._switch(miner, device, False, reason, now, actions):
                if primary == OffReason.THRESHOLD:
                    marks[miner.miner_id] = now
                else:
                    marks.pop(miner.miner_id, None)
            return

        if device.on is True:
            marks.pop(miner.miner_id, None)
            return

        blocked = auto_on_blocked(policy, snapshot, settings)
        if policy.auto_power_on_grid_restore and not blocked:
            if grid_came_up:
                reason = "grid power was restored"
            elif snapshot.grid_online is True:
                reason = "grid is available"
            else:
                reason = None
            if reason:
                if self._switch(miner, device, True, reason, now, actions):
                    marks.pop(miner.miner_id, None)
                return

        off_at = marks.get(miner.miner_id)
        if off_at is None or device.on is not False or blocked:
            return
        delay = max(policy.auto_power_restore_delay_minutes or 0, 0)
        if now - off_at < timedelta(minutes=delay):
            return
        reason = f"threshold recovery delay of {delay} min elapsed"
        if self._switch(miner, device, True, reason, now, actions):
            marks.pop(miner.miner_id, None)

    def _switch(self, miner: MinerRecord, device: SwitchDevice, on: bool, reason: str,
                now: datetime, actions: List[SwitchAction]) -> bool:
        """Debounced actuation; the cooldown is claimed before the outlet call"""
        direction = Direction.ON if on else Direction.OFF
        if not self.runtime.cooldowns.try_acquire(miner.miner_id, direction, now):
            logger.debug(f"{direction.value} for {miner.miner_id} still in cooldown")
            return False

        self.outlets.set_switch(device.id, on, device.switch_code)

        message = f"Auto {direction.value} requested for {device.name}: {reason}."
        self.notifier.notify_power_action(miner.miner_id, message)
        actions.append(SwitchAction(miner.miner_id, device.id, on, reason))
        return True
