"""Irrigation recommendations from the current water deficit."""
import logging
import math
from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional, Sequence, Tuple

from .config import RECOMMENDATION, RecommendationConfig
from .errors import ValidationError
from .vri import VRIZone
from .water_balance import mm_to_gallons

log = logging.getLogger(__name__)


class Urgency(Enum):
    LOW = "low"
    MODERATE = "moderate"
    HIGH = "high"
    CRITICAL = "critical"


MESSAGES = {
    Urgency.CRITICAL: "Irrigate immediately - critical water stress",
    Urgency.HIGH: "Irrigate within 24-48 hours",
    Urgency.MODERATE: "Irrigation recommended within 3-5 days",
    Urgency.LOW: "Irrigation can wait - moisture adequate for now",
}


@dataclass(frozen=True)
class ZoneRecommendation:
    """Recommended application for one VRI zone."""
    zone_name: str
    vigor_level: str
    irrigation_multiplier_pct: float
    amount_mm: float
    gallons: float
    runtime_hours: float
    split_required: bool

    def to_dict(self) -> dict:
        return {
            "zone_name": self.zone_name,
            "vigor_level": self.vigor_level,
            "irrigation_multiplier_pct": self.irrigation_multiplier_pct,
            "amount_mm": round(self.amount_mm, 2),
            "gallons": round(self.gallons, 1),
            "runtime_hours": round(self.runtime_hours, 2),
            "split_required": self.split_required,
        }


@dataclass(frozen=True)
class Recommendation:
    field_id: str
    deficit_mm: float
    amount_mm: float
    urgency: Urgency
    message: str
    runtime_hours: float
    gallons: float
    split_required: bool
    cycles: int
    interval_days: Tuple[int, int]
    forecast_et_mm: float
    projected_deficit_mm: float
    flow_rate_gpm: float
    area_acres: float
    notes: List[str] = field(default_factory=list)
    zones: List[ZoneRecommendation] = field(default_factory=list)

    @property
    def needs_irrigation(self) -> bool:
        return self.amount_mm > 0

    def to_dict(self) -> dict:
        return {
            "field_id": self.field_id,
            "deficit_mm": round(self.deficit_mm, 2),
            "amount_mm": round(self.amount_mm, 2),
            "urgency": self.urgency.value,
            "message": self.message,
            "needs_irrigation": self.needs_irrigation,
            "runtime_hours": round(self.runtime_hours, 2),
            "gallons": round(self.gallons, 1),
            "split_required": self.split_required,
            "cycles": self.cycles,
            "interval_days": list(self.interval_days),
            "forecast_et_mm": round(self.forecast_et_mm, 2),
            "projected_deficit_mm": round(self.projected_deficit_mm, 2),
            "flow_rate_gpm": self.flow_rate_gpm,
            "area_acres": self.area_acres,
            "notes": list(self.notes),
            "zones": [z.to_dict() for z in self.zones],
        }


def classify_urgency(deficit_mm: float, config: RecommendationConfig = RECOMMENDATION) -> Urgency:
    if deficit_mm > config.critical_deficit_mm:
        return Urgency.CRITICAL
    if deficit_mm > config.high_deficit_mm:
        return Urgency.HIGH
    if deficit_mm > config.moderate_deficit_mm:
        return Urgency.MODERATE
    return Urgency.LOW


def runtime_hours(amount_mm: float, area_acres: float, flow_rate_gpm: float) -> float:
    """Hours of run time to apply ``amount_mm`` over a field at a given flow."""
    return mm_to_gallons(amount_mm, area_acres) / flow_rate_gpm / 60.0


def advisory_notes(deficit_mm: float, projected_mm: float, urgency: Urgency,
                   cycles: int, config: RecommendationConfig = RECOMMENDATION) -> List[str]:
    """Short operator notes to go with a recommendation."""
    if deficit_mm <= 0:
        return ["No irrigation needed - soil moisture is adequate."]

    notes = []
    if deficit_mm > config.runoff_cap_mm:
        lo, hi = config.split_interval_days
        notes.append(
            f"Deficit {deficit_mm:.1f} mm exceeds the {config.runoff_cap_mm:g} mm per-application "
            f"limit: split into {cycles} cycles, {lo}-{hi} days apart."
        )
    if urgency is Urgency.CRITICAL:
        notes.append("Avoid over-stressing vines - critical deficit detected.")
    if projected_mm > deficit_mm:
        notes.append(f"Deficit projected to reach {projected_mm:.1f} mm over the forecast window.")
    notes.append("Irrigate early morning or evening to reduce evaporation.")
    return notes


class RecommendationEngine:
    """Turns a field's deficit into an amount, urgency and run time."""

    def __init__(self, config: RecommendationConfig = RECOMMENDATION):
        self.config = config

    def recommend(self, field_id: str, deficit_mm: float, flow_rate_gpm: float,
                  area_acres: float, forecast_et_mm: float = 0.0,
                  vri_zones: Optional[Sequence[VRIZone]] = None) -> Recommendation:
        cfg = self.config
        if deficit_mm is None or deficit_mm < 0:
            raise ValidationError("cumulative_deficit_mm", f"must be >= 0, got {deficit_mm!r}")
        if flow_rate_gpm is None or flow_rate_gpm <= 0:
            raise ValidationError("flow_rate_gpm", f"field {field_id} has no configured flow rate")
        if area_acres is None or area_acres <= 0:
            raise ValidationError("area_acres", f"field {field_id} has no area")
        forecast_et_mm = max(0.0, forecast_et_mm or 0.0)

        urgency = classify_urgency(deficit_mm, cfg)
        amount = min(deficit_mm, cfg.runoff_cap_mm)
        split = deficit_mm > cfg.runoff_cap_mm
        cycles = math.ceil(deficit_mm / cfg.runoff_cap_mm) if split else (1 if amount > 0 else 0)
        projected = deficit_mm + forecast_et_mm

        zones = [self._zone(z, amount, deficit_mm, flow_rate_gpm, area_acres)
                 for z in (vri_zones or [])]

        rec = Recommendation(
            field_id=field_id,
            deficit_mm=deficit_mm,
            amount_mm=amount,
            urgency=urgency,
            message=MESSAGES[urgency] if deficit_mm > 0 else "No irrigation needed",
            runtime_hours=runtime_hours(amount, area_acres, flow_rate_gpm),
            gallons=mm_to_gallons(amount, area_acres),
            split_required=split,
            cycles=cycles,
            interval_days=cfg.split_interval_days,
            forecast_et_mm=forecast_et_mm,
            projected_deficit_mm=projected,
            flow_rate_gpm=flow_rate_gpm,
            area_acres=area_acres,
            notes=advisory_notes(deficit_mm, projected, urgency, cycles, cfg),
            zones=zones,
        )
        log.info(f"Field {field_id}: deficit {deficit_mm:.1f} mm -> {amount:.1f} mm, "
                 f"{urgency.value}{' (split)' if split else ''}")
        return rec

    def _zone(self, zone: VRIZone, amount_mm: float, deficit_mm: float,
              flow_rate_gpm: float, area_acres: float) -> ZoneRecommendation:
        cap = self.config.runoff_cap_mm
        scale = zone.irrigation_multiplier_pct / 100.0
        zone_amount = min(amount_mm * scale, cap)
        # zone flow is the field flow pro-rated by area, so run time scales with depth only
        return ZoneRecommendation(
            zone_name=zone.zone_name,
            vigor_level=zone.vigor_level,
            irrigation_multiplier_pct=zone.irrigation_multiplier_pct,
            amount_mm=zone_amount,
            gallons=mm_to_gallons(zone_amount, zone.area_acres),
            runtime_hours=runtime_hours(zone_amount, area_acres, flow_rate_gpm),
            split_required=deficit_mm * scale > cap,
        )
