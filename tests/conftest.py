"""
Shared fixtures: in-memory store and fake station / outlet clouds.
"""
from datetime import datetime
from typing import Dict, List, Optional

import pytest

from database import MemoryStore
from models import MetricSample, SwitchDevice


class FakeStation:
    """Station client returning whatever payload the test sets"""

    def __init__(self, payload: Optional[Dict] = None, station_id: str = "1001"):
        self.payload = payload or {}
        self.station_id = station_id
        self.calls = 0

    def fetch_station_snapshot(self, fusion):
        self.calls += 1
        return fusion.fuse(self.payload, self.station_id)


class FakeOutlets:
    """Outlet client that records switch calls"""

    def __init__(self, devices: Optional[List[SwitchDevice]] = None, follow_commands: bool = True):
        self.devices = {d.id: d for d in (devices or [])}
        self.follow_commands = follow_commands
        self.switch_calls = []

    def fetch_switchable_devices(self):
        return list(self.devices.values())

    def set_switch(self, device_id, on, code=None):
        self.switch_calls.append((device_id, on, code))
        if self.follow_commands and device_id in self.devices:
            self.devices[device_id].on = on


def make_device(device_id="plug-1", on=True, online=True, switch_code="switch_1"):
    return SwitchDevice(id=device_id, name=f"Plug {device_id}", online=online,
                        on=on, switch_code=switch_code)


def make_sample(miner_id="miner-1", **fields) -> MetricSample:
    data = {'minerId': miner_id, 'online': True, 'hashrate': 100.0, 'temp': 60.0}
    data.update(fields)
    return MetricSample.from_dict(data)


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def now():
    return datetime(2026, 6, 1, 12, 0, 0)
