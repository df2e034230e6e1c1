"""
Automation Core

Wires the store, the station and outlet clients, the thermal guard and the
power automation engine together. The HTTP layer and the background
scheduler talk to this class only.
"""
import logging
import time
from datetime import datetime
from threading import Lock, Thread
from typing import Dict, List, Optional, Tuple

import config
from alerts import NotificationManager
from commands import CommandQueue
from database import MinerNotFoundError, MinerStore
from models import (
    Command, CommandStatus, CommandType, FleetSettings, MetricSample, MinerRecord, SwitchDevice,
)
from power_automation import AutomationRuntimeState, PowerAutomationEngine, SwitchAction
from settings import clamp_power_thresholds, parse_fleet_settings_patch, parse_miner_settings_patch
from station import SignalFusion, StationSnapshot
from thermal import GuardResult, ThermalGuard

logger = logging.getLogger(__name__)


class AutomationCore:
    """Entry points for telemetry ingestion, power automation and miner control"""

    def __init__(self, store: MinerStore, station_client=None, outlet_client=None,
                 runtime: Optional[AutomationRuntimeState] = None):
        self.store = store
        self.station_client = station_client
        self.outlet_client = outlet_client

        # One runtime per core; fusion and the engine share its grid cache
        self.runtime = runtime or AutomationRuntimeState()
        self.fusion = SignalFusion(self.runtime.grid_cache)

        self.notifier = NotificationManager(store)
        self.commands = CommandQueue(store)
        self.guard = ThermalGuard(self.commands, self.notifier)
        # Serialises read, evaluate and write of thermal state
        self.guard_lock = Lock()
        self.engine = PowerAutomationEngine(
            self.runtime, self.get_station_snapshot, outlet_client, store, self.notifier
        )

        self.scheduler_thread = None
        self.scheduler_active = False

    # Telemetry and thermal protection

    def evaluate_thermal_and_hashrate(self, miner_id: str, sample: MetricSample,
                                      now: Optional[datetime] = None) -> GuardResult:
        """Run the thermal guard for one sample and persist what it changed"""
        with self.guard_lock:
            miner = self.store.get_miner(miner_id)
            if miner is None:
                raise MinerNotFoundError(miner_id)

            result = self.guard.evaluate(miner_id, sample, miner.thermal, self.store.get_settings(), now)
            if result.state_patch:
                self.store.update_miner(miner_id, result.state_patch)
            return result

    def ingest_metric(self, sample: MetricSample, now: Optional[datetime] = None,
                      background: bool = False) -> GuardResult:
        """
        Record an agent sample, evaluate it, then run a power automation pass.

        With ``background`` the power pass runs in a daemon thread so the
        agent's request is not held up by the station and outlet clouds.
        """
        self.store.record_metric(sample, now)
        result = self.evaluate_thermal_and_hashrate(sample.miner_id, sample, now)

        if background:
            Thread(target=self.run_power_automation, daemon=True).start()
        else:
            self.run_power_automation(now)
        return result

    def unlock_overheat(self, miner_id: str) -> MinerRecord:
        """Clear an overheat lock; the only way a lock is ever released"""
        with self.guard_lock:
            record = self.store.update_miner(miner_id, {
                'overheat_locked': False,
                'overheat_locked_at': None,
            })
        logger.info(f"Overheat lock cleared for {miner_id}")
        return record

    # Power automation

    def get_station_snapshot(self) -> StationSnapshot:
        if self.station_client is None:
            raise RuntimeError("No station client configured")
        return self.station_client.fetch_station_snapshot(self.fusion)

    def run_power_automation(self, now: Optional[datetime] = None) -> Optional[List[SwitchAction]]:
        """One engine pass; never raises"""
        if self.station_client is None or self.outlet_client is None:
            logger.debug("Power automation disabled: station or outlet client missing")
            return None
        return self.engine.run(now)

    def list_outlets(self) -> List[SwitchDevice]:
        if self.outlet_client is None:
            raise RuntimeError("No outlet client configured")
        return self.outlet_client.fetch_switchable_devices()

    def switch_outlet(self, device_id: str, on: bool, code: Optional[str] = None):
        """Manual switch; automation state and cooldowns are left alone"""
        if self.outlet_client is None:
            raise RuntimeError("No outlet client configured")
        self.outlet_client.set_switch(device_id, on, code)

    # Miner settings and bindings

    def get_bindings(self) -> Dict[str, str]:
        return {m.miner_id: m.power.bound_outlet_id for m in self.store.find_miners_with_bound_outlet()}

    def bind_outlet(self, miner_id: str, device_id: Optional[str]) -> MinerRecord:
        """Bind (or with an empty id, unbind) an outlet; last write wins"""
        device_id = device_id.strip() if isinstance(device_id, str) else None
        record = self.store.bind_outlet(miner_id, device_id or None)
        logger.info(f"Outlet binding for {miner_id}: {device_id or 'none'}")
        return record

    def sync_miners(self, roster: List[Tuple[str, Optional[float]]]) -> List[str]:
        """Match the stored miners to the agent's roster; returns removed ids"""
        removed = self.store.sync_miners(roster)
        if removed:
            with self.runtime.lock:
                for miner_id in removed:
                    self.runtime.threshold_auto_off_at.pop(miner_id, None)
            logger.info(f"Miner sync removed {len(removed)} miner(s): {', '.join(removed)}")
        return removed

    def update_miner_settings(self, miner_id: str, body: Dict) -> MinerRecord:
        miner = self.store.get_miner(miner_id)
        if miner is None:
            raise MinerNotFoundError(miner_id)

        patch = parse_miner_settings_patch(body)
        miner.apply_patch(patch)
        clamp_power_thresholds(miner.power)
        patch['auto_power_on_battery_above_percent'] = miner.power.auto_power_on_battery_above_percent
        patch['auto_power_on_generation_above_kw'] = miner.power.auto_power_on_generation_above_kw
        return self.store.update_miner(miner_id, patch)

    def get_settings(self) -> FleetSettings:
        return self.store.get_settings()

    def update_settings(self, body: Dict) -> FleetSettings:
        return self.store.update_settings(parse_fleet_settings_patch(body))

    # Agent commands

    def issue_command(self, miner_id: str, command_type: CommandType) -> Command:
        return self.commands.issue(miner_id, command_type)

    def poll_command(self, miner_id: str) -> Optional[Command]:
        return self.commands.poll(miner_id)

    def report_command_result(self, command_id: str, status: CommandStatus,
                              error: Optional[str] = None) -> Optional[Command]:
        return self.commands.report_result(command_id, status, error)

    # Scheduler

    def start_scheduler(self, interval: int = config.AUTOMATION_INTERVAL):
        """Start background power automation passes"""
        if self.scheduler_active:
            logger.warning("Scheduler already active")
            return

        self.scheduler_active = True

        def scheduler_loop():
            logger.info("Scheduler thread started")
            while self.scheduler_active:
                self.run_power_automation()

                # Sleep in small chunks to allow quick shutdown
                for _ in range(interval):
                    if not self.scheduler_active:
                        break
                    time.sleep(1)

            logger.info("Scheduler thread stopped")

        self.scheduler_thread = Thread(target=scheduler_loop, daemon=True)
        self.scheduler_thread.start()
        logger.info("Scheduler started")

    def stop_scheduler(self):
        """Stop background passes"""
        self.scheduler_active = False
        if self.scheduler_thread:
            self.scheduler_thread.join(timeout=5)
        logger.info("Scheduler stopped")
