"""
Data Models

Typed records shared by the automation core, the store and the HTTP layer.
"""
import math
import uuid
from dataclasses import dataclass, field, fields, asdict
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

import config


class CommandType(Enum):
    """Commands a miner agent can execute"""
    RESTART = "RESTART"
    SLEEP = "SLEEP"
    WAKE = "WAKE"
    RELOAD_CONFIG = "RELOAD_CONFIG"


class CommandStatus(Enum):
    """Command lifecycle"""
    PENDING = "PENDING"
    DONE = "DONE"
    FAILED = "FAILED"


def to_float(value: Any) -> Optional[float]:
    """Coerce a number or numeric string to a finite float, else None"""
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        number = float(value)
    elif isinstance(value, str):
        try:
            number = float(value.strip())
        except ValueError:
            return None
    else:
        return None
    return number if math.isfinite(number) else None


def to_float_list(value: Any) -> List[float]:
    """Keep only the finite numeric readings of a list"""
    if not isinstance(value, (list, tuple)):
        return []
    readings = []
    for item in value:
        number = to_float(item)
        if number is not None:
            readings.append(number)
    return readings


def isoformat(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def parse_datetime(value: Any) -> Optional[datetime]:
    """Parse a stored ISO timestamp"""
    if isinstance(value, datetime):
        return value
    if not value:
        return None
    try:
        return datetime.fromisoformat(str(value))
    except ValueError:
        return None


@dataclass
class MetricSample:
    """One telemetry sample reported by a miner agent"""
    miner_id: str
    timestamp: Optional[str] = None
    hashrate: Optional[float] = None
    hashrate_realtime: Optional[float] = None
    hashrate_average: Optional[float] = None
    expected_hashrate: Optional[float] = None
    temp: Optional[float] = None
    board_temps: List[float] = field(default_factory=list)
    board_inlet_temps: List[float] = field(default_factory=list)
    board_outlet_temps: List[float] = field(default_factory=list)
    fan_speeds: List[float] = field(default_factory=list)
    online: Optional[bool] = None
    ip: Optional[str] = None
    asic_type: Optional[str] = None
    firmware: Optional[str] = None
    read_status: Optional[str] = None
    error: Optional[str] = None
    raw: Dict = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: Dict) -> 'MetricSample':
        """Build a sample from the agent's camelCase JSON payload"""
        miner_id = str(data.get('minerId') or '').strip()
        if not miner_id:
            raise ValueError("minerId is required")

        online = data.get('online')
        return cls(
            miner_id=miner_id,
            timestamp=data.get('timestamp'),
            hashrate=to_float(data.get('hashrate')),
            hashrate_realtime=to_float(data.get('hashrateRealtime')),
            hashrate_average=to_float(data.get('hashrateAverage')),
            expected_hashrate=to_float(data.get('expectedHashrate')),
            temp=to_float(data.get('temp')),
            board_temps=to_float_list(data.get('boardTemps')),
            board_inlet_temps=to_float_list(data.get('boardInletTemps')),
            board_outlet_temps=to_float_list(data.get('boardOutletTemps')),
            fan_speeds=to_float_list(data.get('fanSpeeds')),
            online=online if isinstance(online, bool) else None,
            ip=data.get('ip'),
            asic_type=data.get('asicType'),
            firmware=data.get('firmware'),
            read_status=data.get('readStatus'),
            error=data.get('error'),
            raw=dict(data),
        )


@dataclass
class MinerThermalState:
    """Overheat lock and low hashrate bookkeeping for one miner"""
    overheat_locked: bool = False
    overheat_locked_at: Optional[datetime] = None
    overheat_last_temp_c: Optional[float] = None
    overheat_protection_enabled: bool = True
    overheat_shutdown_temp_c: float = config.OVERHEAT_SHUTDOWN_TEMP_C
    last_restart_at: Optional[datetime] = None
    last_low_hashrate_at: Optional[datetime] = None
    auto_restart_enabled: bool = False
    low_hashrate_threshold_gh: float = config.LOW_HASHRATE_THRESHOLD_GH
    post_restart_grace_minutes: int = config.POST_RESTART_GRACE_MINUTES


@dataclass
class MinerPowerPolicy:
    """How a miner's bound outlet follows grid, battery and solar"""
    bound_outlet_id: Optional[str] = None
    auto_power_on_grid_restore: bool = False
    auto_power_off_grid_loss: bool = False
    auto_power_off_generation_below_kw: Optional[float] = None
    auto_power_on_generation_above_kw: Optional[float] = None
    auto_power_off_battery_below_percent: Optional[float] = None
    auto_power_on_battery_above_percent: Optional[float] = None
    auto_power_restore_delay_minutes: int = config.AUTO_POWER_RESTORE_DELAY_MINUTES


MINER_FIELDS = [
    'miner_id', 'ip', 'asic_type', 'firmware', 'expected_hashrate', 'online',
    'last_seen', 'last_online_at', 'read_status', 'error', 'last_metric',
]
THERMAL_FIELDS = {f.name for f in fields(MinerThermalState)}
POWER_FIELDS = {f.name for f in fields(MinerPowerPolicy)}
DATETIME_FIELDS = {
    'overheat_locked_at', 'last_restart_at', 'last_low_hashrate_at',
    'last_seen', 'last_online_at',
}


@dataclass
class MinerRecord:
    """A miner with its liveness, thermal state and power policy"""
    miner_id: str
    ip: Optional[str] = None
    asic_type: Optional[str] = None
    firmware: Optional[str] = None
    expected_hashrate: Optional[float] = None
    online: Optional[bool] = None
    last_seen: Optional[datetime] = None
    last_online_at: Optional[datetime] = None
    read_status: Optional[str] = None
    error: Optional[str] = None
    last_metric: Optional[Dict] = None
    thermal: MinerThermalState = field(default_factory=MinerThermalState)
    power: MinerPowerPolicy = field(default_factory=MinerPowerPolicy)

    def apply_patch(self, patch: Dict):
        """Set flat field names on whichever part of the record owns them"""
        for key, value in patch.items():
            if key in THERMAL_FIELDS:
                setattr(self.thermal, key, value)
            elif key in POWER_FIELDS:
                setattr(self.power, key, value)
            elif key in MINER_FIELDS:
                setattr(self, key, value)
            else:
                raise KeyError(f"Unknown miner field: {key}")

    def to_flat(self) -> Dict:
        """Flatten into one column-per-field dict (datetimes kept as objects)"""
        flat = {
            name: getattr(self, name)
            for name in MINER_FIELDS
        }
        flat.update(asdict(self.thermal))
        flat.update(asdict(self.power))
        return flat

    @classmethod
    def from_flat(cls, row: Dict) -> 'MinerRecord':
        values = {}
        for key, value in row.items():
            if key in DATETIME_FIELDS:
                value = parse_datetime(value)
            values[key] = value
        record = cls(miner_id=values.pop('miner_id'))
        record.apply_patch({k: v for k, v in values.items() if k != 'miner_id'})
        return record

    def to_dict(self) -> Dict:
        """JSON view used by the HTTP layer"""
        data = {}
        for key, value in self.to_flat().items():
            data[key] = isoformat(value) if isinstance(value, datetime) else value
        return data


@dataclass
class Command:
    """A command queued for a miner agent"""
    miner_id: str
    type: CommandType
    status: CommandStatus = CommandStatus.PENDING
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    created_at: datetime = field(default_factory=datetime.now)
    executed_at: Optional[datetime] = None
    error: Optional[str] = None

    def to_dict(self) -> Dict:
        return {
            'id': self.id,
            'miner_id': self.miner_id,
            'type': self.type.value,
            'status': self.status.value,
            'created_at': isoformat(self.created_at),
            'executed_at': isoformat(self.executed_at),
            'error': self.error,
        }


@dataclass
class Notification:
    """A user-facing notification record"""
    type: str
    message: str
    miner_id: Optional[str] = None
    action: Optional[str] = None
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    created_at: datetime = field(default_factory=datetime.now)

    def to_dict(self) -> Dict:
        return {
            'id': self.id,
            'type': self.type,
            'message': self.message,
            'miner_id': self.miner_id,
            'action': self.action,
            'created_at': isoformat(self.created_at),
        }


@dataclass
class FleetSettings:
    """Fleet-wide automation settings"""
    critical_battery_off_percent: float = config.CRITICAL_BATTERY_OFF_PERCENT
    notify_auto_restart: bool = True
    notify_restart_prompt: bool = True
    restart_delay_minutes: int = config.RESTART_DELAY_MINUTES
    auto_on_battery_default_percent: float = config.AUTO_ON_BATTERY_DEFAULT_PERCENT

    def to_dict(self) -> Dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict) -> 'FleetSettings':
        known = {f.name for f in fields(cls)}
        return cls(**{k: v for k, v in (data or {}).items() if k in known})


@dataclass
class SwitchDevice:
    """A switch-capable smart outlet as reported by the outlet cloud"""
    id: str
    name: str
    online: bool
    on: Optional[bool]
    switch_code: Optional[str]
    power_w: Optional[float] = None
    category: Optional[str] = None
    product_name: Optional[str] = None

    def to_dict(self) -> Dict:
        return asdict(self)
