"""Reading ingest normalizer: raw webhook payloads to canonical readings."""
import math
import re
from dataclasses import dataclass
from datetime import datetime, timezone
from numbers import Real
from typing import Any, Mapping, Optional

import pandas as pd

from .errors import ValidationError
from .registry import DeviceRegistry, ZoneContext


@dataclass(frozen=True)
class Reading:
    """Canonical flow reading for one zone."""
    device_id: str
    zone_id: str
    zone_number: int
    flow_rate_gpm: float
    timestamp: datetime
    cumulative_gallons: Optional[float] = None
    battery_level: Optional[float] = None
    signal_strength: Optional[float] = None
    pulse_count: Optional[int] = None

    def to_dict(self) -> dict:
        return {
            "device_id": self.device_id,
            "zone_id": self.zone_id,
            "zone_number": self.zone_number,
            "flow_rate_gpm": self.flow_rate_gpm,
            "timestamp": self.timestamp.isoformat(),
            "cumulative_gallons": self.cumulative_gallons,
            "battery_level": self.battery_level,
            "signal_strength": self.signal_strength,
        }


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _number(payload: Mapping[str, Any], key: str, required: bool = False,
            minimum: Optional[float] = None) -> Optional[float]:
    value = payload.get(key)
    if value is None:
        if required:
            raise ValidationError(key, "missing required field")
        return None
    # bool is an int subclass; a device sending true/false is broken
    if isinstance(value, bool) or not isinstance(value, Real):
        raise ValidationError(key, f"must be numeric, got {type(value).__name__}")
    value = float(value)
    if not math.isfinite(value):
        raise ValidationError(key, "must be finite")
    if minimum is not None and value < minimum:
        raise ValidationError(key, f"must be >= {minimum:g}, got {value:g}")
    return value


def parse_timestamp(value: Any, received_at: Optional[datetime] = None) -> datetime:
    """Parse an ISO-8601 string or Unix epoch (s or ms) into an aware UTC datetime.

    Missing timestamps default to receipt time.
    """
    if value is None or value == "":
        return received_at or utc_now()
    try:
        if isinstance(value, bool):
            raise TypeError("bool is not a timestamp")
        if isinstance(value, Real):
            seconds = value / 1000.0 if value > 1e12 else float(value)
            return datetime.fromtimestamp(seconds, tz=timezone.utc)
        if isinstance(value, str):
            ts = pd.to_datetime(value, utc=True)
            if pd.isna(ts):
                raise ValueError("not a time")
            return ts.to_pydatetime()
    except (ValueError, TypeError, OverflowError, OSError) as e:
        raise ValidationError("timestamp", f"unparseable: {value!r} ({e})") from None
    raise ValidationError("timestamp", f"unsupported type {type(value).__name__}")


def _zone_number(payload: Mapping[str, Any]) -> Optional[int]:
    value = payload.get("zone_number")
    if value is None:
        return None
    number = _number(payload, "zone_number", minimum=0)
    if number != int(number):
        raise ValidationError("zone_number", f"must be an integer, got {value!r}")
    return int(number)


class ReadingNormalizer:
    """Validates payloads and resolves them against the device registry.

    Performs no I/O beyond the registry lookup.
    """

    def __init__(self, registry: DeviceRegistry):
        self.registry = registry

    def normalize(self, device_token: str, payload: Mapping[str, Any],
                  received_at: Optional[datetime] = None) -> Reading:
        if not isinstance(payload, Mapping):
            raise ValidationError("payload", "must be a JSON object")

        flow = _number(payload, "flow_rate_gpm", required=True, minimum=0)
        cumulative = _number(payload, "cumulative_gallons", minimum=0)
        battery = _number(payload, "battery_level", minimum=0)
        signal = _number(payload, "signal_strength")
        pulses = _number(payload, "pulse_count", minimum=0)
        timestamp = parse_timestamp(payload.get("timestamp"), received_at)

        zone: ZoneContext = self.registry.resolve_device_zone(device_token, _zone_number(payload))

        return Reading(
            device_id=zone.device_id,
            zone_id=zone.zone_id,
            zone_number=zone.zone_number,
            flow_rate_gpm=flow,
            timestamp=timestamp,
            cumulative_gallons=cumulative,
            battery_level=battery,
            signal_strength=signal,
            pulse_count=int(pulses) if pulses is not None else None,
        )


# ─────────────────────────────────────────────────────────────────────────────
# RECORDED READINGS (CSV exports from flow meters)
# ─────────────────────────────────────────────────────────────────────────────

def _norm(name: str) -> str:
    """Normalise column name to lowercase with underscores."""
    s = name.strip().lower()
    s = re.sub(r"[%()/ -]+", "_", s)
    return re.sub(r"_+", "_", s).strip("_")


_ALIASES = {
    "flow_rate_gpm": ("flow_rate_gpm", "flow_gpm", "flow_rate", "gpm"),
    "timestamp": ("timestamp", "reading_timestamp", "time", "datetime", "date"),
    "cumulative_gallons": ("cumulative_gallons", "total_gallons", "totalizer_gallons"),
    "zone_number": ("zone_number", "zone"),
}


def load_readings_csv(path: str) -> pd.DataFrame:
    """Load a flow-meter export into canonical columns, sorted by time."""
    df = pd.read_csv(path)
    if df.empty:
        return df

    nmap = {_norm(c): c for c in df.columns}
    renames = {}
    for target, aliases in _ALIASES.items():
        for alias in aliases:
            if alias in nmap:
                renames[nmap[alias]] = target
                break
    df = df.rename(columns=renames)

    for required in ("flow_rate_gpm", "timestamp"):
        if required not in df.columns:
            raise ValueError(f"Missing {required} column.")

    df["timestamp"] = pd.to_datetime(df["timestamp"], utc=True, errors="coerce")
    df["flow_rate_gpm"] = pd.to_numeric(df["flow_rate_gpm"], errors="coerce")
    df = df.dropna(subset=["timestamp", "flow_rate_gpm"])
    if "cumulative_gallons" in df.columns:
        df["cumulative_gallons"] = pd.to_numeric(df["cumulative_gallons"], errors="coerce")

    return df.sort_values("timestamp").reset_index(drop=True)


def frame_to_payloads(df: pd.DataFrame):
    """Yield webhook-style payloads from a loaded readings frame."""
    for row in df.itertuples(index=False):
        payload = {
            "flow_rate_gpm": float(row.flow_rate_gpm),
            "timestamp": row.timestamp.isoformat(),
        }
        cumulative = getattr(row, "cumulative_gallons", None)
        if cumulative is not None and not pd.isna(cumulative):
            payload["cumulative_gallons"] = float(cumulative)
        zone_number = getattr(row, "zone_number", None)
        if zone_number is not None and not pd.isna(zone_number):
            payload["zone_number"] = int(zone_number)
        yield payload
