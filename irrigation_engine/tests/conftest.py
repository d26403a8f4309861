"""Shared fixtures: a two-field registry, an engine with captured alerts, reading helpers."""
from datetime import datetime, timedelta, timezone
from typing import List, Optional

import pytest

from irrigation_engine.alerts import AlertCenter, MemoryNotifier
from irrigation_engine.engine import IrrigationEngine
from irrigation_engine.readings import Reading
from irrigation_engine.registry import InMemoryDeviceRegistry
from irrigation_engine.storage import InMemoryStore

BASE = datetime(2024, 7, 1, 6, 0, tzinfo=timezone.utc)

REGISTRY = {
    "fields": [
        {"field_id": "block-a", "area_acres": 2.0, "name": "Block A",
         "latitude": 38.5, "longitude": -122.4},
        {"field_id": "block-b", "area_acres": 1.0, "name": "Block B"},
    ],
    "devices": [
        {"device_id": "meter-1", "webhook_token": "tok-1",
         "zones": [{"zone_number": 1, "field_id": "block-a", "configured_flow_rate_gpm": 10.0}]},
        {"device_id": "meter-2", "webhook_token": "tok-2",
         "zones": [
             {"zone_number": 1, "field_id": "block-b", "configured_flow_rate_gpm": 4.0},
             {"zone_number": 2, "field_id": "block-b", "configured_flow_rate_gpm": 6.0,
              "method": "microsprinkler"},
         ]},
    ],
}


class FlakyStore(InMemoryStore):
    """In-memory store whose writes can be switched to fail."""

    def __init__(self):
        super().__init__()
        self.fail = False
        self.fail_only: Optional[str] = None

    def _check(self, operation: str):
        if self.fail and (self.fail_only is None or self.fail_only == operation):
            raise IOError(f"{operation}: database unavailable")

    def save_session(self, session):
        self._check("save_session")
        super().save_session(session)

    def clear_session(self, zone_id):
        self._check("clear_session")
        super().clear_session(zone_id)

    def append_event(self, event):
        self._check("append_event")
        super().append_event(event)

    def save_water_balance(self, state):
        self._check("save_water_balance")
        super().save_water_balance(state)


def make_reading(flow: float, minute: float, zone_id: str = "meter-1-z1",
                 cumulative: Optional[float] = None) -> Reading:
    return Reading(
        device_id="meter-1",
        zone_id=zone_id,
        zone_number=1,
        flow_rate_gpm=flow,
        timestamp=BASE + timedelta(minutes=minute),
        cumulative_gallons=cumulative,
    )


def payloads(flows: List[float], start_minute: float = 0.0, spacing_minutes: float = 2.0,
             **extra) -> List[dict]:
    return [
        {"flow_rate_gpm": flow,
         "timestamp": (BASE + timedelta(minutes=start_minute + i * spacing_minutes)).isoformat(),
         **extra}
        for i, flow in enumerate(flows)
    ]


def feed(engine: IrrigationEngine, token: str, flows: List[float], **kwargs):
    return [engine.ingest_reading(token, p) for p in payloads(flows, **kwargs)]


# Scenario A: 3 readings to open, 10 active, 5 low, all 2 minutes apart
SCENARIO_A = [0.6] * 3 + [0.6] * 10 + [0.1] * 5


@pytest.fixture
def registry():
    return InMemoryDeviceRegistry.from_dict(REGISTRY)


@pytest.fixture
def notifier():
    return MemoryNotifier()


@pytest.fixture
def store():
    return FlakyStore()


@pytest.fixture
def engine(registry, store, notifier):
    return IrrigationEngine(registry, store=store, alerts=AlertCenter(notifier))


@pytest.fixture
def zone(registry):
    return registry.zone("meter-1-z1")
