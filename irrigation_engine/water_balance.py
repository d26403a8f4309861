"""
ET / water-balance calculator.

Daily step per field:

    crop_ET  = reference_ET * Kc(stage)
    delta    = crop_ET - (irrigation + rainfall)
    deficit  = max(0, deficit + delta)      # excess water is reported as surplus

Soil moisture is tracked in three layers, each as % of field capacity and
clamped to [wilting point, field capacity]:

- surface: moves with the day's net water (inputs minus crop ET) over a shallow
  capacity, so it swings fastest;
- mid: the main root-zone buffer, a direct image of the cumulative deficit
  against the root-zone capacity;
- deep: an exponential moving average of the mid-layer level, so it only
  follows deficit trends that last several days.
"""

import logging
import math
from dataclasses import dataclass, replace
from datetime import date
from typing import Dict, Optional, Tuple

import pandas as pd

from .config import (
    GALLONS_PER_ACRE_INCH, KC_CALENDAR, KC_MID_JUNE_SPLIT, KC_STAGES, MM_PER_INCH,
    SOIL, SoilConfig,
)
from .errors import ValidationError

log = logging.getLogger(__name__)


def gallons_to_mm(gallons: float, area_acres: float) -> float:
    """Depth of water (mm) that a volume spreads to over an area."""
    if area_acres <= 0:
        raise ValidationError("area_acres", "must be positive")
    return gallons / (area_acres * GALLONS_PER_ACRE_INCH) * MM_PER_INCH


def mm_to_gallons(depth_mm: float, area_acres: float) -> float:
    return depth_mm / MM_PER_INCH * area_acres * GALLONS_PER_ACRE_INCH


class KcTable:
    """Crop coefficients by phenological stage, with a month calendar.

    Both mappings are data; pass your own for other varieties or regions.
    """

    def __init__(self, stages: Optional[Dict[str, float]] = None,
                 calendar: Optional[Dict[int, str]] = None,
                 mid_june_split: Optional[int] = KC_MID_JUNE_SPLIT):
        self.stages = dict(stages or KC_STAGES)
        self.calendar = dict(calendar or KC_CALENDAR)
        self.mid_june_split = mid_june_split
        unknown = set(self.calendar.values()) - set(self.stages)
        if unknown:
            raise ValueError(f"calendar uses stages without a Kc: {sorted(unknown)}")

    def stage_for(self, day: date) -> str:
        stage = self.calendar[day.month]
        if (day.month == 6 and self.mid_june_split is not None
                and day.day > self.mid_june_split and "fruit_set" in self.stages):
            return "fruit_set"
        return stage

    def kc(self, stage: str) -> float:
        try:
            return self.stages[stage]
        except KeyError:
            raise ValidationError("growth_stage", f"unknown stage {stage!r}") from None

    def kc_for(self, day: date) -> Tuple[str, float]:
        stage = self.stage_for(day)
        return stage, self.stages[stage]


@dataclass(frozen=True)
class WaterBalanceState:
    field_id: str
    layer_surface_pct: float
    layer_mid_pct: float
    layer_deep_pct: float
    cumulative_deficit_mm: float = 0.0
    last_updated: Optional[date] = None

    @staticmethod
    def layer_status(pct: float) -> str:
        if pct >= 70:
            return "Good"
        if pct >= 50:
            return "Moderate"
        return "Low"

    def to_dict(self) -> dict:
        return {
            "field_id": self.field_id,
            "layers": {
                name: {"moisture_pct": round(pct, 1), "status": self.layer_status(pct)}
                for name, pct in (
                    ("surface", self.layer_surface_pct),
                    ("mid", self.layer_mid_pct),
                    ("deep", self.layer_deep_pct),
                )
            },
            "cumulative_deficit_mm": round(self.cumulative_deficit_mm, 2),
            "last_updated": self.last_updated.isoformat() if self.last_updated else None,
        }


@dataclass(frozen=True)
class DailyBalance:
    """One day of the water-balance ledger."""
    field_id: str
    day: date
    growth_stage: str
    kc: float
    reference_et_mm: float
    crop_et_mm: float
    irrigation_mm: float
    rainfall_mm: float
    deficit_delta_mm: float
    surplus_mm: float
    cumulative_deficit_mm: float
    layer_surface_pct: float
    layer_mid_pct: float
    layer_deep_pct: float

    def to_dict(self) -> dict:
        d = {k: getattr(self, k) for k in self.__dataclass_fields__}
        d["day"] = self.day.isoformat()
        return {k: round(v, 3) if isinstance(v, float) else v for k, v in d.items()}


class WaterBalanceCalculator:
    """Daily ET-driven deficit and 3-layer soil moisture model."""

    def __init__(self, kc_table: Optional[KcTable] = None, soil: SoilConfig = SOIL):
        self.kc_table = kc_table or KcTable()
        self.soil = soil

    def initial_state(self, field_id: str) -> WaterBalanceState:
        fc = self.soil.field_capacity_pct
        return WaterBalanceState(field_id, fc, fc, fc, 0.0, None)

    def _clamp(self, pct: float) -> float:
        return min(self.soil.field_capacity_pct, max(self.soil.wilting_point_pct, pct))

    def _level_for_deficit(self, deficit_mm: float) -> float:
        soil = self.soil
        span = soil.field_capacity_pct - soil.wilting_point_pct
        return self._clamp(soil.field_capacity_pct - deficit_mm / soil.root_zone_capacity_mm * span)

    def apply_day(self, state: WaterBalanceState, day: date, reference_et_mm: float,
                  rainfall_mm: float = 0.0, irrigation_mm: float = 0.0
                  ) -> Tuple[WaterBalanceState, DailyBalance]:
        """Advance a field's balance by one day."""
        for name, value in (("reference_et_mm", reference_et_mm),
                            ("rainfall_mm", rainfall_mm),
                            ("irrigation_mm", irrigation_mm)):
            if value is None or not math.isfinite(value) or value < 0:
                raise ValidationError(name, f"must be a non-negative number, got {value!r}")
        if state.last_updated is not None and day <= state.last_updated:
            raise ValidationError(
                "day", f"{day} already applied to field {state.field_id} "
                       f"(last update {state.last_updated})"
            )

        stage, kc = self.kc_table.kc_for(day)
        crop_et = reference_et_mm * kc
        water_in = irrigation_mm + rainfall_mm
        delta = crop_et - water_in

        running = state.cumulative_deficit_mm + delta
        deficit = max(0.0, running)
        surplus = max(0.0, -running)

        soil = self.soil
        span = soil.field_capacity_pct - soil.wilting_point_pct
        surface = self._clamp(
            state.layer_surface_pct + (water_in - crop_et) / soil.surface_capacity_mm * span
        )
        mid = self._level_for_deficit(deficit)
        deep = self._clamp(
            state.layer_deep_pct + soil.deep_response_alpha * (mid - state.layer_deep_pct)
        )

        new_state = replace(
            state,
            layer_surface_pct=surface,
            layer_mid_pct=mid,
            layer_deep_pct=deep,
            cumulative_deficit_mm=deficit,
            last_updated=day,
        )
        balance = DailyBalance(
            field_id=state.field_id,
            day=day,
            growth_stage=stage,
            kc=kc,
            reference_et_mm=reference_et_mm,
            crop_et_mm=crop_et,
            irrigation_mm=irrigation_mm,
            rainfall_mm=rainfall_mm,
            deficit_delta_mm=delta,
            surplus_mm=surplus,
            cumulative_deficit_mm=deficit,
            layer_surface_pct=surface,
            layer_mid_pct=mid,
            layer_deep_pct=deep,
        )
        if surplus > 0:
            log.info(f"Field {state.field_id} {day}: surplus {surplus:.1f} mm not carried forward")
        return new_state, balance

    def run_ledger(self, field_id: str, frame: pd.DataFrame,
                   state: Optional[WaterBalanceState] = None
                   ) -> Tuple[WaterBalanceState, pd.DataFrame]:
        """Recompute a multi-day ledger.

        ``frame`` needs ``date`` and ``reference_et_mm``; ``rainfall_mm`` and
        ``irrigation_mm`` default to 0. Rows are applied in date order.
        """
        if "date" not in frame.columns or "reference_et_mm" not in frame.columns:
            raise ValueError("ledger frame needs date and reference_et_mm columns")

        df = frame.copy()
        df["date"] = pd.to_datetime(df["date"]).dt.date
        for col in ("rainfall_mm", "irrigation_mm"):
            df[col] = df[col].fillna(0.0) if col in df.columns else 0.0
        df = df.sort_values("date")

        state = state or self.initial_state(field_id)
        rows = []
        for row in df.itertuples(index=False):
            state, balance = self.apply_day(
                state, row.date, float(row.reference_et_mm),
                float(row.rainfall_mm), float(row.irrigation_mm),
            )
            rows.append(balance.to_dict())
        return state, pd.DataFrame(rows)
