"""Tests for settings patch validation."""
import pytest

from models import MinerPowerPolicy
from settings import (
    clamp_power_thresholds,
    parse_fleet_settings_patch,
    parse_miner_roster,
    parse_miner_settings_patch,
)


def test_fleet_patch_keeps_valid_fields():
    patch = parse_fleet_settings_patch({
        'critical_battery_off_percent': 25,
        'notify_auto_restart': False,
        'restart_delay_minutes': 12.7,
        'auto_on_battery_default_percent': 65.5,
    })
    assert patch == {
        'critical_battery_off_percent': 25.0,
        'notify_auto_restart': False,
        'restart_delay_minutes': 12,
        'auto_on_battery_default_percent': 65.5,
    }


def test_fleet_patch_drops_invalid_fields():
    patch = parse_fleet_settings_patch({
        'critical_battery_off_percent': 140,
        'notify_restart_prompt': "yes",
        'restart_delay_minutes': -1,
        'auto_on_battery_default_percent': float('nan'),
        'unknown': 1,
    })
    assert patch == {}
    assert parse_fleet_settings_patch(None) == {}


def test_miner_patch_types_and_ranges():
    patch = parse_miner_settings_patch({
        'auto_restart_enabled': True,
        'post_restart_grace_minutes': 15.9,
        'low_hashrate_threshold_gh': 50,
        'overheat_shutdown_temp_c': 0,
        'auto_power_off_battery_below_percent': 101,
        'auto_power_on_generation_above_kw': 2.5,
        'auto_power_restore_delay_minutes': True,
    })
    assert patch == {
        'auto_restart_enabled': True,
        'post_restart_grace_minutes': 15,
        'low_hashrate_threshold_gh': 50.0,
        'auto_power_on_generation_above_kw': 2.5,
    }


def test_explicit_null_clears_thresholds():
    patch = parse_miner_settings_patch({
        'auto_power_off_battery_below_percent': None,
        'auto_power_off_generation_below_kw': None,
    })
    assert patch == {
        'auto_power_off_battery_below_percent': None,
        'auto_power_off_generation_below_kw': None,
    }
    # Absent fields are left untouched
    assert parse_miner_settings_patch({}) == {}


def test_clamp_raises_on_thresholds():
    policy = MinerPowerPolicy(
        auto_power_off_battery_below_percent=40, auto_power_on_battery_above_percent=30,
        auto_power_off_generation_below_kw=2, auto_power_on_generation_above_kw=1,
    )
    clamp_power_thresholds(policy)
    assert policy.auto_power_on_battery_above_percent == 40
    assert policy.auto_power_on_generation_above_kw == 2


def test_clamp_leaves_consistent_or_partial_policies():
    policy = MinerPowerPolicy(auto_power_off_battery_below_percent=40, auto_power_on_battery_above_percent=70)
    clamp_power_thresholds(policy)
    assert policy.auto_power_on_battery_above_percent == 70

    partial = MinerPowerPolicy(auto_power_off_generation_below_kw=2)
    clamp_power_thresholds(partial)
    assert partial.auto_power_on_generation_above_kw is None


def test_miner_roster_accepts_ids_and_objects():
    roster = parse_miner_roster({'minerIds': [
        "10.0.0.5", {'id': "10.0.0.6", 'expectedHashrate': 110}, {'id': "10.0.0.7", 'expectedHashrate': "fast"},
    ]})
    assert roster == [("10.0.0.5", None), ("10.0.0.6", 110.0), ("10.0.0.7", None)]
    assert parse_miner_roster({'miners': []}) == []


@pytest.mark.parametrize("body", [
    {},
    {'minerIds': "10.0.0.5"},
    {'miners': [{'expectedHashrate': 100}]},
    {'miners': [42]},
])
def test_miner_roster_rejects_malformed(body):
    with pytest.raises(ValueError):
        parse_miner_roster(body)
