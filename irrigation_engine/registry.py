"""
Device / zone / field registry.

The registry is owned by an external service; the engine only reads it.
``DeviceRegistry`` is the contract the engine consumes, ``InMemoryDeviceRegistry``
is the implementation used by the CLI, the API app and the tests.
"""

import json
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional

from .config import DETECTOR, NOISE_FILTER, ALERTS, DetectorConfig, NoiseFilterConfig
from .errors import NotFound, ValidationError


@dataclass(frozen=True)
class FieldProfile:
    """A vineyard block the engine keeps a water balance for."""
    field_id: str
    area_acres: float
    name: str = ""
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    variety: str = "grape"


@dataclass(frozen=True)
class ZoneContext:
    """Resolved device+zone identity, read-only for the engine."""
    zone_id: str
    device_id: str
    zone_number: int
    field_id: str
    configured_flow_rate_gpm: float
    method: str = "drip"


@dataclass
class DeviceContext:
    device_id: str
    webhook_token: str
    name: str = ""
    detector: DetectorConfig = DETECTOR
    noise_filter: NoiseFilterConfig = NOISE_FILTER
    offline_threshold_minutes: float = ALERTS.offline_threshold_minutes
    zones: Dict[int, ZoneContext] = field(default_factory=dict)


class DeviceRegistry(ABC):
    """Contract for the external device registry."""

    @abstractmethod
    def device_for_token(self, device_token: str) -> DeviceContext:
        """Return the device owning a webhook token, or raise NotFound."""

    @abstractmethod
    def field(self, field_id: str) -> FieldProfile:
        """Return a field profile, or raise NotFound."""

    @abstractmethod
    def fields(self) -> List[FieldProfile]:
        """All registered fields."""

    @abstractmethod
    def zone(self, zone_id: str) -> ZoneContext:
        """Return a zone by id, or raise NotFound."""

    @abstractmethod
    def zones_for_field(self, field_id: str) -> List[ZoneContext]:
        """All zones irrigating a field."""

    @abstractmethod
    def devices(self) -> List[DeviceContext]:
        """All registered devices."""

    def resolve_device_zone(self, device_token: str, zone_number: Optional[int]) -> ZoneContext:
        """Map a webhook token and optional zone number to a zone.

        ``zone_number`` may only be omitted when the device drives a single zone.
        """
        device = self.device_for_token(device_token)
        if zone_number is None:
            if len(device.zones) == 1:
                return next(iter(device.zones.values()))
            if not device.zones:
                raise NotFound("zone", f"{device.device_id}/<none mapped>")
            raise ValidationError(
                "zone_number",
                f"required: device {device.device_id} drives {len(device.zones)} zones"
            )
        try:
            return device.zones[zone_number]
        except KeyError:
            raise NotFound("zone", f"{device.device_id}/{zone_number}") from None

    def device(self, device_id: str) -> DeviceContext:
        for device in self.devices():
            if device.device_id == device_id:
                return device
        raise NotFound("device", device_id)

    def field_flow_rate_gpm(self, field_id: str) -> float:
        """Combined configured flow of every zone on a field."""
        return sum(z.configured_flow_rate_gpm for z in self.zones_for_field(field_id))


class InMemoryDeviceRegistry(DeviceRegistry):
    """Dictionary-backed registry."""

    def __init__(self):
        self._lock = threading.Lock()
        self._devices: Dict[str, DeviceContext] = {}
        self._by_token: Dict[str, str] = {}
        self._fields: Dict[str, FieldProfile] = {}
        self._zones: Dict[str, ZoneContext] = {}

    # ── registration ────────────────────────────────────────────────────────
    def add_field(self, profile: FieldProfile) -> FieldProfile:
        with self._lock:
            self._fields[profile.field_id] = profile
        return profile

    def add_device(self, device: DeviceContext) -> DeviceContext:
        with self._lock:
            self._devices[device.device_id] = device
            self._by_token[device.webhook_token] = device.device_id
            for zone in device.zones.values():
                self._zones[zone.zone_id] = zone
        return device

    def add_zone(self, zone: ZoneContext) -> ZoneContext:
        with self._lock:
            device = self._devices.get(zone.device_id)
            if device is None:
                raise NotFound("device", zone.device_id)
            device.zones[zone.zone_number] = zone
            self._zones[zone.zone_id] = zone
        return zone

    # ── lookups ─────────────────────────────────────────────────────────────
    def device_for_token(self, device_token: str) -> DeviceContext:
        device_id = self._by_token.get(device_token)
        if device_id is None:
            raise NotFound("device token", device_token)
        return self._devices[device_id]

    def device(self, device_id: str) -> DeviceContext:
        try:
            return self._devices[device_id]
        except KeyError:
            raise NotFound("device", device_id) from None

    def field(self, field_id: str) -> FieldProfile:
        try:
            return self._fields[field_id]
        except KeyError:
            raise NotFound("field", field_id) from None

    def fields(self) -> List[FieldProfile]:
        return sorted(self._fields.values(), key=lambda f: f.field_id)

    def zone(self, zone_id: str) -> ZoneContext:
        try:
            return self._zones[zone_id]
        except KeyError:
            raise NotFound("zone", zone_id) from None

    def zones_for_field(self, field_id: str) -> List[ZoneContext]:
        return sorted(
            (z for z in self._zones.values() if z.field_id == field_id),
            key=lambda z: z.zone_id,
        )

    def devices(self) -> List[DeviceContext]:
        return list(self._devices.values())

    # ── loading ─────────────────────────────────────────────────────────────
    @classmethod
    def from_dict(cls, data: dict) -> "InMemoryDeviceRegistry":
        """Build a registry from ``{"fields": [...], "devices": [...]}``.

        Each device entry carries its ``zones`` list and optional
        ``detector`` / ``noise_filter`` overrides.
        """
        registry = cls()
        for f in data.get("fields", []):
            registry.add_field(FieldProfile(**f))

        for d in data.get("devices", []):
            device = DeviceContext(
                device_id=d["device_id"],
                webhook_token=d["webhook_token"],
                name=d.get("name", d["device_id"]),
                detector=DetectorConfig(**d.get("detector", {})),
                noise_filter=NoiseFilterConfig(**d.get("noise_filter", {})),
                offline_threshold_minutes=d.get(
                    "offline_threshold_minutes", ALERTS.offline_threshold_minutes
                ),
            )
            registry.add_device(device)
            for z in d.get("zones", []):
                zone_number = int(z["zone_number"])
                registry.add_zone(ZoneContext(
                    zone_id=z.get("zone_id", f"{device.device_id}-z{zone_number}"),
                    device_id=device.device_id,
                    zone_number=zone_number,
                    field_id=z["field_id"],
                    configured_flow_rate_gpm=float(z["configured_flow_rate_gpm"]),
                    method=z.get("method", "drip"),
                ))
        return registry

    @classmethod
    def load_json(cls, path) -> "InMemoryDeviceRegistry":
        return cls.from_dict(json.loads(Path(path).read_text(encoding="utf-8")))
