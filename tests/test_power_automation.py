"""Tests for the power automation engine."""
from datetime import timedelta

from alerts import NotificationType
from automation import AutomationCore
from models import FleetSettings, MinerPowerPolicy
from power_automation import (
    AutomationRuntimeState,
    CooldownRegistry,
    Direction,
    OffReason,
    auto_on_blocked,
    effective_battery_on_percent,
    evaluate_off_reasons,
)
from station import GridSignalSource, StationSnapshot

from conftest import FakeOutlets, FakeStation, make_device, make_sample


def snapshot(grid_online=None, soc=None, generation=None, wire=None):
    return StationSnapshot(
        station_id="1", grid_online=grid_online, grid_signal_source=GridSignalSource.FLAG,
        battery_soc=soc, generation_kw=generation, wire_power_kw=wire,
    )


def build(store, payload, device, follow_commands=True, **policy):
    station = FakeStation(payload)
    outlets = FakeOutlets([device], follow_commands=follow_commands)
    core = AutomationCore(store, station, outlets)
    store.record_metric(make_sample("miner-1"))
    store.bind_outlet("miner-1", device.id)
    if policy:
        store.update_miner("miner-1", policy)
    return core, station, outlets


def power_notifications(store):
    return [n for n in store.list_notifications(100) if n.type == NotificationType.POWER_AUTOMATION.value]


# Decision helpers

def test_cooldown_registry_blocks_same_direction_only(now):
    registry = CooldownRegistry(seconds=45)
    assert registry.try_acquire("m", Direction.ON, now) is True
    assert registry.try_acquire("m", Direction.ON, now + timedelta(seconds=44)) is False
    assert registry.try_acquire("m", Direction.OFF, now) is True
    assert registry.try_acquire("m", Direction.ON, now + timedelta(seconds=45)) is True


def test_run_gate(now):
    runtime = AutomationRuntimeState()
    assert runtime.try_begin_pass(now, 15) is True
    assert runtime.try_begin_pass(now + timedelta(seconds=20), 15) is False  # still running
    runtime.end_pass()
    assert runtime.try_begin_pass(now + timedelta(seconds=10), 15) is False
    assert runtime.try_begin_pass(now + timedelta(seconds=15), 15) is True


def test_critical_battery_comes_first():
    policy = MinerPowerPolicy(auto_power_off_battery_below_percent=50)
    reasons = evaluate_off_reasons(policy, True, snapshot(False, soc=10), False, FleetSettings())
    assert reasons == [OffReason.CRITICAL_BATTERY, OffReason.OVERHEAT, OffReason.THRESHOLD]


def test_grid_loss_requires_configured_thresholds():
    policy = MinerPowerPolicy(auto_power_off_grid_loss=True, auto_power_off_battery_below_percent=40)
    settings = FleetSettings()
    assert evaluate_off_reasons(policy, False, snapshot(False, soc=80), True, settings) == []
    assert OffReason.GRID_LOSS in evaluate_off_reasons(policy, False, snapshot(False, soc=35), True, settings)

    no_thresholds = MinerPowerPolicy(auto_power_off_grid_loss=True)
    assert evaluate_off_reasons(no_thresholds, False, snapshot(False, soc=80), True, settings) == \
        [OffReason.GRID_LOSS]


def test_battery_low_but_generation_strong_keeps_power():
    policy = MinerPowerPolicy(auto_power_off_battery_below_percent=30,
                              auto_power_off_generation_below_kw=5)
    # 25% is under the default critical level; lower it so only the threshold rule applies
    settings = FleetSettings(critical_battery_off_percent=20)
    assert evaluate_off_reasons(policy, False, snapshot(False, soc=25, generation=6), False, settings) == []
    assert evaluate_off_reasons(policy, False, snapshot(False, soc=25, generation=1), False, settings) == \
        [OffReason.THRESHOLD]


def test_threshold_needs_grid_offline():
    policy = MinerPowerPolicy(auto_power_off_battery_below_percent=30)
    assert evaluate_off_reasons(policy, False, snapshot(True, soc=5), False, FleetSettings()) == []
    assert evaluate_off_reasons(policy, False, snapshot(None, soc=5), False, FleetSettings()) == []


def test_effective_battery_on_percent_never_below_off():
    settings = FleetSettings(auto_on_battery_default_percent=60)
    assert effective_battery_on_percent(MinerPowerPolicy(), settings) == 60
    assert effective_battery_on_percent(
        MinerPowerPolicy(auto_power_on_battery_above_percent=20, auto_power_off_battery_below_percent=35),
        settings) == 35
    assert effective_battery_on_percent(
        MinerPowerPolicy(auto_power_off_battery_below_percent=70), settings) == 70


def test_auto_on_blocked_rules():
    settings = FleetSettings()
    policy = MinerPowerPolicy()
    assert auto_on_blocked(policy, snapshot(True, soc=40), settings) is True
    assert auto_on_blocked(policy, snapshot(True, soc=40, wire=1.2), settings) is False
    assert auto_on_blocked(policy, snapshot(True, soc=65), settings) is False
    assert auto_on_blocked(policy, snapshot(True, soc=None), settings) is False

    solar = MinerPowerPolicy(auto_power_on_generation_above_kw=3)
    assert auto_on_blocked(solar, snapshot(True, soc=90, generation=2), settings) is True
    assert auto_on_blocked(solar, snapshot(True, soc=90, generation=None), settings) is True
    assert auto_on_blocked(solar, snapshot(True, soc=10, generation=3.5), settings) is False


# Full passes

def test_grid_restore_switches_once_and_debounces(store, now):
    device = make_device(on=False)
    core, station, outlets = build(store, {'gridOnline': False, 'batterySoc': 80}, device,
                                   follow_commands=False, auto_power_on_grid_restore=True)

    assert core.run_power_automation(now) == []
    assert outlets.switch_calls == []

    station.payload = {'gridOnline': True, 'batterySoc': 80}
    actions = core.run_power_automation(now + timedelta(seconds=20))
    assert [(a.miner_id, a.on) for a in actions] == [("miner-1", True)]
    assert "restored" in actions[0].reason
    assert outlets.switch_calls == [("plug-1", True, "switch_1")]
    assert len(power_notifications(store)) == 1

    # Too soon for another pass
    assert core.run_power_automation(now + timedelta(seconds=25)) is None

    # Outlet still reports off, but the ON cooldown holds
    assert core.run_power_automation(now + timedelta(seconds=40)) == []
    assert len(outlets.switch_calls) == 1

    actions = core.run_power_automation(now + timedelta(seconds=70))
    assert len(actions) == 1
    assert len(outlets.switch_calls) == 2


def test_initial_online_grid_switches_on(store, now):
    device = make_device(on=False)
    core, _, outlets = build(store, {'gridOnline': True, 'batterySoc': 90}, device,
                             auto_power_on_grid_restore=True)
    core.run_power_automation(now)
    assert outlets.switch_calls == [("plug-1", True, "switch_1")]


def test_no_auto_on_without_opt_in(store, now):
    device = make_device(on=False)
    core, _, outlets = build(store, {'gridOnline': True, 'batterySoc': 90}, device)
    core.run_power_automation(now)
    assert outlets.switch_calls == []


def test_low_battery_blocks_restore_unless_wire_power(store, now):
    device = make_device(on=False)
    core, station, outlets = build(store, {'gridOnline': False, 'batterySoc': 40}, device,
                                   auto_power_on_grid_restore=True)
    core.run_power_automation(now)

    station.payload = {'gridOnline': True, 'batterySoc': 40}
    core.run_power_automation(now + timedelta(seconds=20))
    assert outlets.switch_calls == []

    station.payload = {'wirePower': 1.2, 'batterySoc': 40}
    core.run_power_automation(now + timedelta(seconds=40))
    assert outlets.switch_calls == [("plug-1", True, "switch_1")]


def test_battery_25_generation_6kw_stays_on(store, now):
    # Below the default 30% critical level, so lower it to isolate the threshold rule
    store.update_settings({'critical_battery_off_percent': 20})
    device = make_device(on=True)
    core, _, outlets = build(
        store, {'gridOnline': False, 'batterySoc': 25, 'generationPower': 6000}, device,
        auto_power_off_battery_below_percent=30, auto_power_off_generation_below_kw=5,
    )
    assert core.run_power_automation(now) == []
    assert outlets.switch_calls == []


def test_threshold_off_then_delayed_recovery(store, now):
    store.update_settings({'critical_battery_off_percent': 20})
    device = make_device(on=True)
    core, station, outlets = build(
        store, {'gridOnline': False, 'batterySoc': 25, 'generationPower': 1000}, device,
        auto_power_off_battery_below_percent=30, auto_power_off_generation_below_kw=5,
        auto_power_restore_delay_minutes=10,
    )

    actions = core.run_power_automation(now)
    assert [a.on for a in actions] == [False]
    assert core.runtime.threshold_auto_off_at["miner-1"] == now

    station.payload = {'gridOnline': False, 'batterySoc': 70, 'generationPower': 5000}
    assert core.run_power_automation(now + timedelta(minutes=2)) == []
    assert outlets.switch_calls == [("plug-1", False, "switch_1")]

    actions = core.run_power_automation(now + timedelta(minutes=10))
    assert [a.on for a in actions] == [True]
    assert "10 min" in actions[0].reason
    assert "miner-1" not in core.runtime.threshold_auto_off_at


def test_delayed_recovery_waits_for_battery(store, now):
    store.update_settings({'critical_battery_off_percent': 20})
    device = make_device(on=True)
    core, station, outlets = build(
        store, {'gridOnline': False, 'batterySoc': 25}, device,
        auto_power_off_battery_below_percent=30, auto_power_restore_delay_minutes=10,
    )
    core.run_power_automation(now)

    station.payload = {'gridOnline': False, 'batterySoc': 45}
    assert core.run_power_automation(now + timedelta(minutes=15)) == []
    assert len(outlets.switch_calls) == 1


def test_critical_battery_does_not_mark_threshold(store, now):
    device = make_device(on=True)
    core, _, outlets = build(
        store, {'gridOnline': False, 'batterySoc': 15}, device,
        auto_power_off_battery_below_percent=30,
    )
    actions = core.run_power_automation(now)

    assert outlets.switch_calls == [("plug-1", False, "switch_1")]
    assert "critical" in actions[0].reason
    assert core.runtime.threshold_auto_off_at == {}


def test_overheat_lock_cuts_power_with_grid_up(store, now):
    device = make_device(on=True)
    core, _, outlets = build(store, {'gridOnline': True, 'batterySoc': 90}, device,
                             overheat_locked=True)
    actions = core.run_power_automation(now)
    assert outlets.switch_calls == [("plug-1", False, "switch_1")]
    assert "overheat" in actions[0].reason


def test_grid_loss_edge_turns_off(store, now):
    device = make_device(on=True)
    core, station, outlets = build(store, {'gridOnline': True, 'batterySoc': 80}, device,
                                   auto_power_off_grid_loss=True)
    core.run_power_automation(now)
    assert outlets.switch_calls == []

    station.payload = {'gridOnline': False, 'batterySoc': 80}
    actions = core.run_power_automation(now + timedelta(seconds=20))
    assert outlets.switch_calls == [("plug-1", False, "switch_1")]
    assert actions[0].reason == "grid power was lost"


def test_outlet_already_off_is_left_alone(store, now):
    device = make_device(on=False)
    core, _, outlets = build(store, {'gridOnline': False, 'batterySoc': 10}, device)
    core.run_power_automation(now)
    assert outlets.switch_calls == []


def test_offline_or_unbound_outlets_are_skipped(store, now):
    device = make_device(on=True, online=False)
    core, _, outlets = build(store, {'gridOnline': False, 'batterySoc': 10}, device)
    core.run_power_automation(now)
    assert outlets.switch_calls == []

    store.bind_outlet("miner-1", "plug-unknown")
    core.run_power_automation(now + timedelta(seconds=20))
    assert outlets.switch_calls == []


def test_failures_are_swallowed_and_next_pass_retries(store, now):
    device = make_device(on=True)
    core, station, outlets = build(store, {'gridOnline': False, 'batterySoc': 10}, device)

    def broken(fusion):
        raise RuntimeError("station cloud down")

    station.fetch_station_snapshot = broken
    assert core.run_power_automation(now) == []
    assert core.runtime.running is False

    del station.fetch_station_snapshot
    core.run_power_automation(now + timedelta(seconds=20))
    assert outlets.switch_calls == [("plug-1", False, "switch_1")]


def test_pass_skipped_while_running(store, now):
    device = make_device(on=True)
    core, _, outlets = build(store, {'gridOnline': False, 'batterySoc': 10}, device)
    core.runtime.running = True
    assert core.run_power_automation(now) is None
    assert outlets.switch_calls == []


def test_manual_switch_bypasses_automation(store, now):
    device = make_device(on=True)
    core, _, outlets = build(store, {'gridOnline': True}, device)
    core.switch_outlet("plug-1", False, "switch_1")
    assert outlets.switch_calls == [("plug-1", False, "switch_1")]
    assert core.runtime.cooldowns.locked_until("miner-1", Direction.OFF) is None
    assert core.runtime.last_run_at is None
