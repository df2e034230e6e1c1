"""Tests for station signal fusion."""
import pytest

from station import (
    GridSignalSource,
    GridStateCache,
    SignalFusion,
    collect_candidates,
    fuse,
    parse_flag,
    parse_grid_text,
    to_kw,
)


@pytest.fixture
def fusion():
    return SignalFusion(GridStateCache())


def test_to_kw_treats_large_values_as_watts():
    assert to_kw(6500) == 6.5
    assert to_kw(-1200) == -1.2
    assert to_kw(3.2) == 3.2
    assert to_kw(None) is None


def test_collect_candidates_flattens_key_value_lists():
    payload = {'dataList': [{'key': 'SOC', 'value': '55'}, {'name': 'Grid-State', 'value': 'On Grid'}]}
    candidates = collect_candidates(payload)
    assert candidates['soc'] == '55'
    assert candidates['gridstate'] == 'On Grid'


def test_collect_candidates_first_occurrence_wins():
    candidates = collect_candidates({'gridOnline': True, 'nested': {'gridOnline': False}})
    assert candidates['gridonline'] is True


@pytest.mark.parametrize("value, expected", [
    (True, True),
    (False, False),
    ("connected", True),
    ("OFF", False),
    (1, True),
    (0, None),
    ("0", None),
    ("maybe", None),
    (float("nan"), None),
    (float("inf"), None),
])
def test_parse_flag(value, expected):
    assert parse_flag(value) is expected


def test_parse_grid_text_checks_offline_words_first():
    # "disconnected" also contains "connected"
    assert parse_grid_text("Grid Disconnected") is False
    assert parse_grid_text("Off-Grid") is False
    assert parse_grid_text("On Grid") is True
    assert parse_grid_text("Normal") is True
    assert parse_grid_text("standby") is None


def test_wire_power_preempts_flags(fusion):
    snapshot = fusion.fuse({'wirePower': 0.5, 'gridOnline': False}, 1)
    assert snapshot.grid_online is True
    assert snapshot.grid_signal_source == GridSignalSource.WIRE_POWER
    assert snapshot.grid_signal_key == 'wirePower'
    assert snapshot.wire_power_nonzero is True


def test_zero_wire_power_means_offline(fusion):
    snapshot = fusion.fuse({'wirePower': 0, 'gridOnline': True}, 1)
    assert snapshot.grid_online is False
    assert snapshot.grid_signal_source == GridSignalSource.WIRE_POWER
    assert snapshot.wire_power_nonzero is False


def test_zero_flags_fall_through_to_grid_power(fusion):
    snapshot = fusion.fuse({'gridOnline': 0, 'gridStatus': "0", 'gridPower': 1500}, 1)
    assert snapshot.grid_online is True
    assert snapshot.grid_signal_source == GridSignalSource.POWER
    assert snapshot.grid_signal_key == 'gridPower'
    assert snapshot.grid_power_kw == 1.5


def test_text_status_offline(fusion):
    snapshot = fusion.fuse({'gridState': 'Off-Grid', 'batterySoc': 64}, 1)
    assert snapshot.grid_online is False
    assert snapshot.grid_signal_source == GridSignalSource.TEXT
    assert snapshot.battery_soc == 64


def test_near_zero_grid_power_is_inconclusive(fusion):
    snapshot = fusion.fuse({'gridPower': 0.02}, 1)
    assert snapshot.grid_online is None
    assert snapshot.grid_signal_source == GridSignalSource.NONE


def test_purchase_power_inside_key_value_list(fusion):
    payload = {'dataList': [{'key': 'SOC', 'value': '55'}, {'key': 'PurchasePower', 'value': '2300'}]}
    snapshot = fusion.fuse(payload, 1)
    assert snapshot.grid_online is True
    assert snapshot.grid_signal_source == GridSignalSource.POWER
    assert snapshot.grid_signal_key == 'purchasePower'
    assert snapshot.battery_soc == 55.0


def test_charging_without_sun_means_grid(fusion):
    snapshot = fusion.fuse({'batteryPower': -800, 'pvPower': 0}, 1)
    assert snapshot.grid_online is True
    assert snapshot.grid_signal_source == GridSignalSource.CHARGING_FALLBACK
    assert snapshot.battery_status == 'charging'


def test_discharging_without_sun_means_no_grid(fusion):
    snapshot = fusion.fuse({'batteryPower': 1200, 'generationPower': 0.0}, 1)
    assert snapshot.grid_online is False
    assert snapshot.grid_signal_source == GridSignalSource.DISCHARGING_FALLBACK


def test_discharging_status_text_without_power(fusion):
    snapshot = fusion.fuse({'batteryStatus': 'Discharging'}, 1)
    assert snapshot.grid_online is False
    assert snapshot.grid_signal_source == GridSignalSource.DISCHARGING_FALLBACK


def test_discharging_with_sun_is_inconclusive(fusion):
    snapshot = fusion.fuse({'batteryPower': 1200, 'generationPower': 4000}, 1)
    assert snapshot.grid_online is None
    assert snapshot.generation_kw == 4.0


def test_cached_value_used_when_signal_disappears():
    cache = GridStateCache()
    first = fuse({'gridOnline': True}, 7, cache)
    assert first.grid_signal_source == GridSignalSource.FLAG

    second = fuse({'batterySoc': 80}, 7, cache)
    assert second.grid_online is True
    assert second.grid_signal_source == GridSignalSource.CACHED_PREVIOUS

    other_station = fuse({'batterySoc': 80}, 8, cache)
    assert other_station.grid_online is None
    assert other_station.grid_signal_source == GridSignalSource.NONE


def test_definite_value_overwrites_cache():
    cache = GridStateCache()
    fuse({'gridOnline': True}, 7, cache)
    fuse({'gridState': 'island mode'}, 7, cache)
    assert cache.get(7) is False


def test_nan_flag_does_not_touch_cache():
    cache = GridStateCache()
    fuse({'gridOnline': False}, 7, cache)

    snapshot = fuse({'gridOnline': float('nan')}, 7, cache)
    assert snapshot.grid_online is False
    assert snapshot.grid_signal_source == GridSignalSource.CACHED_PREVIOUS
    assert cache.get(7) is False


@pytest.mark.parametrize("payload", ["not a payload", None, 42, [1, 2, 3],
                                     {'gridPower': float('nan'), 'batterySoc': float('inf')}])
def test_odd_payloads_never_raise(fusion, payload):
    snapshot = fusion.fuse(payload, 1)
    assert snapshot.grid_online is None
    assert snapshot.battery_soc is None


def test_snapshot_to_dict(fusion):
    snapshot = fusion.fuse({'gridOnline': 'yes', 'batterySoc': '71.5'}, 3)
    data = snapshot.to_dict()
    assert data['grid_online'] is True
    assert data['grid_signal_source'] == 'flag'
    assert data['battery_soc'] == 71.5
    assert 'raw' not in data
    assert snapshot.to_dict(include_raw=True)['raw'] == {'gridOnline': 'yes', 'batterySoc': '71.5'}
