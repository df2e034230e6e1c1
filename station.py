"""
Station Signal Fusion

Turns a power station telemetry payload of unknown shape into one typed
snapshot: grid availability, battery state of charge, battery power flow and
solar generation.

Grid availability is resolved by an ordered chain of extractors. The first
extractor that produces a definite answer wins, and the snapshot records
which one it was (``grid_signal_source``) and which raw key it read
(``grid_signal_key``). When nothing resolves, the last definite value seen
for the same station is reused so callers get a best-effort answer.
"""
import logging
import math
import re
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from threading import Lock
from typing import Any, Callable, Dict, Iterable, List, Optional

import config
from models import to_float

logger = logging.getLogger(__name__)


class GridSignalSource(Enum):
    """Provenance of the grid availability decision"""
    WIRE_POWER = "wire_power"
    FLAG = "flag"
    TEXT = "text"
    POWER = "power"
    CHARGING_FALLBACK = "charging_fallback"
    DISCHARGING_FALLBACK = "discharging_fallback"
    CACHED_PREVIOUS = "cached_previous"
    NONE = "none"


# Raw key vocabularies (compared after normalize_key)
WIRE_POWER_KEYS = ["wirePower"]
GRID_FLAG_KEYS = [
    "gridOnline", "gridConnected", "isGridConnected", "onGrid", "gridStatus",
    "isOnGrid", "lineConnected", "mainsConnected", "gridAvail", "gridAvailable",
    "acConnected",
]
GRID_TEXT_KEYS = [
    "gridState", "gridStatusText", "gridMode", "lineState", "mainsState",
    "acInputStatus", "workMode",
]
GRID_POWER_KEYS = [
    "gridPower", "gridActivePower", "toGridPower", "fromGridPower",
    "gridImportPower", "gridExportPower", "purchasePower", "utilityPower",
    "linePower", "mainsPower", "loadFromGridPower",
]
BATTERY_SOC_KEYS = ["batterySoc", "batteryCapacitySoc", "soc", "batteryPercent", "batteryLevel"]
BATTERY_POWER_KEYS = ["batteryDischargePower", "batteryPower", "batPower", "essPower"]
BATTERY_STATUS_KEYS = ["batteryStatus", "batteryState", "chargeStatus", "batteryMode"]
GENERATION_KEYS = ["generationPower", "pvPower", "solarPower", "totalPvPower", "activePower"]
CONSUMPTION_KEYS = ["consumptionPower", "loadPower", "totalLoadPower"]

GRID_OFFLINE_HINTS = ["nogrid", "gridloss", "offgrid", "island", "disconnect", "absent", "fault"]
GRID_ONLINE_HINTS = ["ongrid", "gridon", "gridconnected", "connected", "normal", "online", "available", "present"]

FLAG_TRUE_WORDS = {"true", "on", "online", "connected", "yes", "1"}
FLAG_FALSE_WORDS = {"false", "off", "offline", "disconnected", "no"}


def normalize_key(key: str) -> str:
    """Lower-case a key and drop everything but letters and digits"""
    return re.sub(r'[^a-z0-9]', '', str(key).lower())


def to_kw(value: Optional[float]) -> Optional[float]:
    """Magnitudes of 100 and above are watts, smaller values are already kW"""
    if value is None:
        return None
    if abs(value) >= config.WATTS_CUTOFF:
        return value / 1000.0
    return value


def collect_candidates(payload: Any) -> Dict[str, Any]:
    """
    Flatten a nested payload into normalized key -> raw value.

    Handles plain nested objects as well as lists of ``{"key": ..., "value": ...}``
    (or ``name``/``code``) entries. The first occurrence of a key wins.
    """
    candidates: Dict[str, Any] = {}

    def remember(key: str, value: Any):
        normalized = normalize_key(key)
        if normalized and normalized not in candidates:
            candidates[normalized] = value

    def walk(value: Any):
        if isinstance(value, (list, tuple)):
            for item in value:
                walk(item)
            return
        if not isinstance(value, dict):
            return

        for label in ('key', 'name', 'code'):
            if isinstance(value.get(label), str) and 'value' in value:
                remember(value[label], value['value'])
                break

        for key, child in value.items():
            remember(key, child)
        for child in value.values():
            walk(child)

    walk(payload)
    return candidates


def parse_flag(value: Any) -> Optional[bool]:
    """
    Read a grid-connected style flag.

    A literal 0 or "0" means the station did not report the flag, so it is
    treated as missing rather than as "offline".
    """
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        if not math.isfinite(value):
            return None
        return True if value != 0 else None
    if isinstance(value, str):
        word = value.strip().lower()
        if word in FLAG_TRUE_WORDS:
            return True
        if word in FLAG_FALSE_WORDS:
            return False
    return None


def parse_grid_text(value: Any) -> Optional[bool]:
    """Match free-text grid status against offline then online vocabularies"""
    if not isinstance(value, str):
        return None
    text = normalize_key(value)
    if not text:
        return None
    if any(hint in text for hint in GRID_OFFLINE_HINTS):
        return False
    if any(hint in text for hint in GRID_ONLINE_HINTS):
        return True
    return None


@dataclass
class SignalMatch:
    """Which raw key produced a value, what it held, and how it was read"""
    key: str
    raw: Any
    value: Any


def pick_first(candidates: Dict[str, Any], keys: Iterable[str],
               parse: Callable[[Any], Any]) -> Optional[SignalMatch]:
    """Return the first key whose raw value parses to something other than None"""
    for key in keys:
        normalized = normalize_key(key)
        if normalized not in candidates:
            continue
        raw = candidates[normalized]
        value = parse(raw)
        if value is not None:
            return SignalMatch(key=key, raw=raw, value=value)
    return None


def pick_kw(candidates: Dict[str, Any], keys: Iterable[str]) -> Optional[SignalMatch]:
    return pick_first(candidates, keys, lambda raw: to_kw(to_float(raw)))


def pick_text(candidates: Dict[str, Any], keys: Iterable[str]) -> Optional[SignalMatch]:
    return pick_first(
        candidates, keys,
        lambda raw: raw.strip() if isinstance(raw, str) and raw.strip() else None
    )


@dataclass
class StationReadings:
    """Non-grid readings, parsed once and shared by every grid extractor"""
    candidates: Dict[str, Any]
    battery_soc: Optional[float] = None
    battery_power_kw: Optional[float] = None
    battery_status: Optional[str] = None
    generation_kw: Optional[float] = None
    consumption_kw: Optional[float] = None
    wire_power_kw: Optional[float] = None
    grid_power_kw: Optional[float] = None

    @classmethod
    def from_payload(cls, payload: Any) -> 'StationReadings':
        candidates = collect_candidates(payload)

        def value_of(match: Optional[SignalMatch]):
            return match.value if match else None

        battery_power_kw = value_of(pick_kw(candidates, BATTERY_POWER_KEYS))
        battery_status = value_of(pick_text(candidates, BATTERY_STATUS_KEYS))
        if battery_status is None and battery_power_kw is not None:
            if battery_power_kw > 0:
                battery_status = "discharging"
            elif battery_power_kw < 0:
                battery_status = "charging"
            else:
                battery_status = "idle"

        return cls(
            candidates=candidates,
            battery_soc=value_of(pick_first(candidates, BATTERY_SOC_KEYS, to_float)),
            battery_power_kw=battery_power_kw,
            battery_status=battery_status,
            generation_kw=value_of(pick_kw(candidates, GENERATION_KEYS)),
            consumption_kw=value_of(pick_kw(candidates, CONSUMPTION_KEYS)),
            wire_power_kw=value_of(pick_kw(candidates, WIRE_POWER_KEYS)),
            grid_power_kw=value_of(pick_kw(candidates, GRID_POWER_KEYS)),
        )

    @property
    def generation_near_zero(self) -> bool:
        return self.generation_kw is None or self.generation_kw < config.GENERATION_DEADBAND_KW

    @property
    def battery_charging(self) -> bool:
        if self.battery_power_kw is not None and self.battery_power_kw < -config.BATTERY_POWER_DEADBAND_KW:
            return True
        status = (self.battery_status or '').lower()
        return 'charg' in status and 'discharg' not in status

    @property
    def battery_discharging(self) -> bool:
        if self.battery_power_kw is not None and self.battery_power_kw > config.BATTERY_POWER_DEADBAND_KW:
            return True
        return 'discharg' in (self.battery_status or '').lower()


class GridExtractor:
    """One link of the grid availability priority chain"""
    source: GridSignalSource

    def extract(self, readings: StationReadings) -> Optional[SignalMatch]:
        raise NotImplementedError


class WirePowerExtractor(GridExtractor):
    """Any measurable flow on the grid wire means the grid is there"""
    source = GridSignalSource.WIRE_POWER

    def extract(self, readings):
        match = pick_kw(readings.candidates, WIRE_POWER_KEYS)
        if match is None:
            return None
        return SignalMatch(match.key, match.raw, abs(match.value) > config.WIRE_POWER_DEADBAND_KW)


class FlagExtractor(GridExtractor):
    source = GridSignalSource.FLAG

    def extract(self, readings):
        return pick_first(readings.candidates, GRID_FLAG_KEYS, parse_flag)


class TextExtractor(GridExtractor):
    source = GridSignalSource.TEXT

    def extract(self, readings):
        return pick_first(readings.candidates, GRID_TEXT_KEYS, parse_grid_text)


class GridPowerExtractor(GridExtractor):
    """Grid power above the deadband means online; near zero proves nothing"""
    source = GridSignalSource.POWER

    def extract(self, readings):
        def online_if_flowing(raw):
            kw = to_kw(to_float(raw))
            if kw is None or abs(kw) <= config.GRID_POWER_DEADBAND_KW:
                return None
            return True
        return pick_first(readings.candidates, GRID_POWER_KEYS, online_if_flowing)


class ChargingFallbackExtractor(GridExtractor):
    """Battery charging with no sun: the energy has to come from the grid"""
    source = GridSignalSource.CHARGING_FALLBACK

    def extract(self, readings):
        if readings.battery_charging and readings.generation_near_zero:
            return SignalMatch('batteryPower', readings.battery_power_kw, True)
        return None


class DischargingFallbackExtractor(GridExtractor):
    """Battery discharging with no sun: assume the grid is gone"""
    source = GridSignalSource.DISCHARGING_FALLBACK

    def extract(self, readings):
        if readings.battery_discharging and readings.generation_near_zero:
            return SignalMatch('batteryPower', readings.battery_power_kw, False)
        return None


GRID_EXTRACTORS: List[GridExtractor] = [
    WirePowerExtractor(),
    FlagExtractor(),
    TextExtractor(),
    GridPowerExtractor(),
    ChargingFallbackExtractor(),
    DischargingFallbackExtractor(),
]


class GridStateCache:
    """Last definite grid state per station, shared across polls"""

    def __init__(self):
        self._values: Dict[str, bool] = {}
        self._lock = Lock()

    def get(self, station_id) -> Optional[bool]:
        with self._lock:
            return self._values.get(str(station_id))

    def set(self, station_id, online: bool):
        with self._lock:
            self._values[str(station_id)] = online


@dataclass
class StationSnapshot:
    """Unit-consistent station state (all power values in kW)"""
    station_id: str
    grid_online: Optional[bool]
    grid_signal_source: GridSignalSource
    grid_signal_key: Optional[str] = None
    battery_soc: Optional[float] = None
    battery_power_kw: Optional[float] = None
    battery_status: Optional[str] = None
    generation_kw: Optional[float] = None
    consumption_kw: Optional[float] = None
    wire_power_kw: Optional[float] = None
    grid_power_kw: Optional[float] = None
    updated_at: datetime = field(default_factory=datetime.now)
    raw: Any = None

    @property
    def wire_power_nonzero(self) -> bool:
        """True only when the wire power reading definitely shows flow"""
        return self.wire_power_kw is not None and abs(self.wire_power_kw) > config.WIRE_POWER_DEADBAND_KW

    def to_dict(self, include_raw: bool = False) -> Dict:
        data = {
            'station_id': self.station_id,
            'grid_online': self.grid_online,
            'grid_signal_source': self.grid_signal_source.value,
            'grid_signal_key': self.grid_signal_key,
            'battery_soc': self.battery_soc,
            'battery_power_kw': self.battery_power_kw,
            'battery_status': self.battery_status,
            'generation_kw': self.generation_kw,
            'consumption_kw': self.consumption_kw,
            'wire_power_kw': self.wire_power_kw,
            'grid_power_kw': self.grid_power_kw,
            'updated_at': self.updated_at.isoformat(),
        }
        if include_raw:
            data['raw'] = self.raw
        return data


class SignalFusion:
    """Fuse raw station payloads into snapshots, remembering grid state per station"""

    def __init__(self, cache: Optional[GridStateCache] = None,
                 extractors: Optional[List[GridExtractor]] = None):
        self.cache = cache if cache is not None else GridStateCache()
        self.extractors = extractors if extractors is not None else GRID_EXTRACTORS

    def fuse(self, payload: Any, station_id) -> StationSnapshot:
        station_id = str(station_id)
        readings = StationReadings.from_payload(payload)

        grid_online = None
        source = GridSignalSource.NONE
        signal_key = None

        for extractor in self.extractors:
            match = extractor.extract(readings)
            if match is not None:
                grid_online = bool(match.value)
                source = extractor.source
                signal_key = match.key
                break

        if grid_online is not None:
            self.cache.set(station_id, grid_online)
        else:
            previous = self.cache.get(station_id)
            if previous is not None:
                grid_online = previous
                source = GridSignalSource.CACHED_PREVIOUS
            logger.debug(f"Station {station_id}: no grid signal in payload, "
                         f"using {source.value} ({grid_online})")

        return StationSnapshot(
            station_id=station_id,
            grid_online=grid_online,
            grid_signal_source=source,
            grid_signal_key=signal_key,
            battery_soc=readings.battery_soc,
            battery_power_kw=readings.battery_power_kw,
            battery_status=readings.battery_status,
            generation_kw=readings.generation_kw,
            consumption_kw=readings.consumption_kw,
            wire_power_kw=readings.wire_power_kw,
            grid_power_kw=readings.grid_power_kw,
            raw=payload,
        )


def fuse(payload: Any, station_id, cache: GridStateCache) -> StationSnapshot:
    """Fuse one payload using an explicit per-station cache"""
    return SignalFusion(cache).fuse(payload, station_id)
