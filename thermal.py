"""
Thermal & Hashrate Guard

Per-sample protection for ASIC miners. Locks a miner and puts it to sleep
when it overheats, and restarts (or asks to restart) a miner whose hashrate
has collapsed. Runs once for every telemetry sample an agent reports.
"""
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Dict, List, Optional

import config
from commands import CommandQueue
from alerts import NotificationManager
from models import (
    Command, CommandType, FleetSettings, MetricSample, MinerThermalState,
    Notification, to_float,
)

logger = logging.getLogger(__name__)


def normalize_hashrate_gh(value) -> Optional[float]:
    """
    Bring a reported hashrate to GH/s.

    Agents report either GH/s or MH/s without saying which. Anything above
    500 is taken as MH/s. The same rule applies to thresholds so both sides
    of a comparison agree.
    """
    number = to_float(value)
    if number is None:
        return None
    if abs(number) > config.HASHRATE_MHS_CUTOFF:
        return number / 1000.0
    return number


def max_temperature(sample: MetricSample) -> Optional[float]:
    """Hottest reading across chip, board and board outlet sensors"""
    readings = list(sample.board_temps) + list(sample.board_outlet_temps)
    if sample.temp is not None:
        readings.append(sample.temp)
    readings = [r for r in (to_float(r) for r in readings) if r is not None]
    return max(readings) if readings else None


def window_elapsed(since: Optional[datetime], minutes: float, now: datetime) -> bool:
    """True when there is no anchor or the anchor is at least `minutes` old"""
    if since is None:
        return True
    return now - since >= timedelta(minutes=max(minutes or 0, 0))


@dataclass
class GuardResult:
    """What one evaluation changed"""
    state_patch: Dict = field(default_factory=dict)
    commands: List[Command] = field(default_factory=list)
    notifications: List[Notification] = field(default_factory=list)

    @property
    def changed(self) -> bool:
        return bool(self.state_patch or self.commands or self.notifications)


class ThermalGuard:
    """Decide overheat locks and low hashrate restarts for one miner at a time"""

    def __init__(self, commands: CommandQueue, notifier: NotificationManager):
        self.commands = commands
        self.notifier = notifier

    def evaluate(self, miner_id: str, sample: MetricSample, prior: MinerThermalState,
                 settings: FleetSettings, now: Optional[datetime] = None) -> GuardResult:
        """
        Evaluate one telemetry sample against the miner's prior state.

        THERMAL PRIORITY:
        1. Overheat lock first; a locked miner gets no hashrate handling
        2. Low hashrate only for online, unlocked miners

        Returns:
            GuardResult with the state patch to persist and the commands and
            notifications that were created
        """
        now = now or datetime.now()
        result = GuardResult()

        locked = self._check_overheat(miner_id, sample, prior, now, result)

        if locked:
            logger.debug(f"{miner_id} is overheat-locked, holding")
        elif sample.online is not True:
            logger.debug(f"{miner_id} is not online, skipping hashrate check")
        else:
            self._check_hashrate(miner_id, sample, prior, settings, now, result)

        return result

    def _check_overheat(self, miner_id: str, sample: MetricSample, prior: MinerThermalState,
                        now: datetime, result: GuardResult) -> bool:
        """Lock and sleep a miner that crossed its shutdown temperature"""
        if prior.overheat_locked:
            return True
        if not prior.overheat_protection_enabled:
            return False

        temp = max_temperature(sample)
        threshold = prior.overheat_shutdown_temp_c or config.OVERHEAT_SHUTDOWN_TEMP_C
        if temp is None or temp < threshold:
            return False

        logger.warning(f"OVERHEAT LOCK triggered for {miner_id} "
                       f"(temp: {temp:.1f}°C, limit: {threshold:.1f}°C)")

        result.state_patch.update({
            'overheat_locked': True,
            'overheat_locked_at': now,
            'overheat_last_temp_c': temp,
        })

        command, created = self.commands.ensure_pending(miner_id, CommandType.SLEEP, now)
        if created:
            result.commands.append(command)

        result.notifications.append(
            self.notifier.notify_overheat_lock(miner_id, temp, threshold)
        )
        return True

    def _check_hashrate(self, miner_id: str, sample: MetricSample, prior: MinerThermalState,
                        settings: FleetSettings, now: datetime, result: GuardResult):
        """Restart or prompt for a miner hashing below its threshold"""
        reported = sample.hashrate_realtime if sample.hashrate_realtime is not None else sample.hashrate
        hashrate = normalize_hashrate_gh(reported)
        threshold = normalize_hashrate_gh(prior.low_hashrate_threshold_gh)
        if hashrate is None or threshold is None or hashrate >= threshold:
            return

        if prior.auto_restart_enabled:
            if not window_elapsed(prior.last_restart_at, prior.post_restart_grace_minutes, now):
                logger.debug(f"{miner_id} low hashrate ({hashrate:.2f} GH/s) inside restart grace window")
                return

            command, created = self.commands.ensure_pending(miner_id, CommandType.RESTART, now)
            if not created:
                return

            logger.info(f"Auto-restart for {miner_id}: {hashrate:.2f} GH/s < {threshold:.2f} GH/s")
            result.commands.append(command)
            result.state_patch['last_restart_at'] = now
            if settings.notify_auto_restart:
                result.notifications.append(self.notifier.notify_auto_restart(miner_id, hashrate))

        elif settings.notify_restart_prompt:
            if not window_elapsed(prior.last_low_hashrate_at, settings.restart_delay_minutes, now):
                return

            result.state_patch['last_low_hashrate_at'] = now
            result.notifications.append(self.notifier.notify_restart_prompt(miner_id, hashrate))
