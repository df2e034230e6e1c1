"""
Settings validation

Turns JSON bodies from the HTTP layer into field patches for the fleet
settings and for a single miner, and reads the agents' miner roster. Patch
fields with the wrong type or out of range are dropped, not rejected.
"""
import math
from typing import Any, Dict, List, Optional, Tuple

from models import MinerPowerPolicy

FLEET_BOOL_FIELDS = ['notify_auto_restart', 'notify_restart_prompt']
FLEET_PERCENT_FIELDS = ['critical_battery_off_percent', 'auto_on_battery_default_percent']
FLEET_MINUTE_FIELDS = ['restart_delay_minutes']

MINER_BOOL_FIELDS = [
    'auto_restart_enabled', 'auto_power_on_grid_restore',
    'auto_power_off_grid_loss', 'overheat_protection_enabled',
]
MINER_MINUTE_FIELDS = ['post_restart_grace_minutes', 'auto_power_restore_delay_minutes']
# Optional thresholds: explicit null clears them
MINER_NULLABLE_KW_FIELDS = ['auto_power_off_generation_below_kw', 'auto_power_on_generation_above_kw']
MINER_NULLABLE_PERCENT_FIELDS = ['auto_power_off_battery_below_percent', 'auto_power_on_battery_above_percent']


def is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool) and math.isfinite(value)


def _percent(value: Any) -> bool:
    return is_number(value) and 0 <= value <= 100


def _non_negative(value: Any) -> bool:
    return is_number(value) and value >= 0


def parse_fleet_settings_patch(body: Dict) -> Dict:
    """Validated patch for FleetSettings"""
    body = body if isinstance(body, dict) else {}
    patch = {}

    for name in FLEET_BOOL_FIELDS:
        if isinstance(body.get(name), bool):
            patch[name] = body[name]
    for name in FLEET_PERCENT_FIELDS:
        if _percent(body.get(name)):
            patch[name] = float(body[name])
    for name in FLEET_MINUTE_FIELDS:
        if _non_negative(body.get(name)):
            patch[name] = int(math.floor(body[name]))

    return patch


def parse_miner_settings_patch(body: Dict) -> Dict:
    """Validated patch for a miner's thermal state and power policy"""
    body = body if isinstance(body, dict) else {}
    patch = {}

    for name in MINER_BOOL_FIELDS:
        if isinstance(body.get(name), bool):
            patch[name] = body[name]
    for name in MINER_MINUTE_FIELDS:
        if _non_negative(body.get(name)):
            patch[name] = int(math.floor(body[name]))

    if _non_negative(body.get('low_hashrate_threshold_gh')):
        patch['low_hashrate_threshold_gh'] = float(body['low_hashrate_threshold_gh'])

    temp = body.get('overheat_shutdown_temp_c')
    if is_number(temp) and temp > 0:
        patch['overheat_shutdown_temp_c'] = float(temp)

    nullable = {name: _non_negative for name in MINER_NULLABLE_KW_FIELDS}
    nullable.update({name: _percent for name in MINER_NULLABLE_PERCENT_FIELDS})
    for name, valid in nullable.items():
        if name not in body:
            continue
        if body[name] is None:
            patch[name] = None
        elif valid(body[name]):
            patch[name] = float(body[name])

    return patch


def clamp_power_thresholds(policy: MinerPowerPolicy) -> MinerPowerPolicy:
    """Raise each auto-on threshold to at least its auto-off partner (in place)"""
    battery_off = policy.auto_power_off_battery_below_percent
    battery_on = policy.auto_power_on_battery_above_percent
    if battery_off is not None and battery_on is not None and battery_on < battery_off:
        policy.auto_power_on_battery_above_percent = battery_off

    generation_off = policy.auto_power_off_generation_below_kw
    generation_on = policy.auto_power_on_generation_above_kw
    if generation_off is not None and generation_on is not None and generation_on < generation_off:
        policy.auto_power_on_generation_above_kw = generation_off

    return policy


def parse_miner_roster(body: Dict) -> List[Tuple[str, Optional[float]]]:
    """
    Read an agent roster from ``minerIds`` (or ``miners``).

    Entries are either a miner id or an object with an ``id`` and an optional
    numeric ``expectedHashrate``. Unlike settings patches, a malformed roster
    is rejected with ValueError since applying part of it would delete miners.
    """
    entries = (body or {}).get('minerIds')
    if entries is None:
        entries = (body or {}).get('miners')
    if not isinstance(entries, list):
        raise ValueError("minerIds must be an array of strings")

    roster = []
    for entry in entries:
        if isinstance(entry, str):
            roster.append((entry, None))
        elif isinstance(entry, dict) and isinstance(entry.get('id'), str):
            expected = entry.get('expectedHashrate')
            roster.append((entry['id'], float(expected) if is_number(expected) else None))
        else:
            raise ValueError("miners must be strings or objects with id")
    return roster
