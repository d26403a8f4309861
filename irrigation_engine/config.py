"""Engine configuration: detector thresholds, crop coefficients, soil model, bands."""
import os
from dataclasses import dataclass, field
from typing import Dict, Tuple

# ─────────────────────────────────────────────────────────────────────────────
# SESSION DETECTION
# ─────────────────────────────────────────────────────────────────────────────
@dataclass(frozen=True)
class DetectorConfig:
    start_threshold_gpm: float = 0.5   # flow at/above this opens a session
    end_threshold_gpm: float = 0.2     # flow below this counts toward closing it
    start_readings: int = 3            # N consecutive readings to open
    end_readings: int = 4              # M consecutive readings to close

    def __post_init__(self):
        if self.end_threshold_gpm > self.start_threshold_gpm:
            raise ValueError("end_threshold_gpm must not exceed start_threshold_gpm")
        if self.start_readings < 1 or self.end_readings < 1:
            raise ValueError("debounce counts must be at least 1")


@dataclass(frozen=True)
class NoiseFilterConfig:
    min_duration_minutes: float = 3.0
    min_gallons: float = 5.0


DETECTOR = DetectorConfig()
NOISE_FILTER = NoiseFilterConfig()

# ─────────────────────────────────────────────────────────────────────────────
# CROP COEFFICIENTS (wine grapes, UC Davis / FAO-56)
# ─────────────────────────────────────────────────────────────────────────────
KC_STAGES: Dict[str, float] = {
    "dormant": 0.30,
    "budbreak": 0.45,
    "flowering": 0.70,
    "fruit_set": 0.85,
    "veraison": 0.90,
    "harvest": 0.75,
    "post_harvest": 0.50,
}

# month -> stage; June is split on the 15th (see KC_MID_JUNE_SPLIT)
KC_CALENDAR: Dict[int, str] = {
    1: "dormant", 2: "dormant", 3: "dormant",
    4: "budbreak",
    5: "flowering", 6: "flowering",
    7: "fruit_set", 8: "fruit_set",
    9: "veraison",
    10: "harvest",
    11: "post_harvest",
    12: "dormant",
}
KC_MID_JUNE_SPLIT = 15  # day of June after which vines are in fruit set

# ─────────────────────────────────────────────────────────────────────────────
# SOIL MODEL
# ─────────────────────────────────────────────────────────────────────────────
@dataclass(frozen=True)
class SoilConfig:
    field_capacity_pct: float = 100.0
    wilting_point_pct: float = 30.0
    root_zone_capacity_mm: float = 150.0   # available water held by the root zone
    surface_capacity_mm: float = 50.0      # top 12" of the profile
    deep_response_alpha: float = 0.15      # EMA weight; deep layer follows multi-day trends


SOIL = SoilConfig()

# Unit conversions
GALLONS_PER_ACRE_INCH = 27154.0
MM_PER_INCH = 25.4
SQ_METERS_PER_ACRE = 4046.8564224

# ─────────────────────────────────────────────────────────────────────────────
# RECOMMENDATIONS
# ─────────────────────────────────────────────────────────────────────────────
@dataclass(frozen=True)
class RecommendationConfig:
    runoff_cap_mm: float = 25.0
    critical_deficit_mm: float = 30.0
    high_deficit_mm: float = 15.0
    moderate_deficit_mm: float = 8.0
    split_interval_days: Tuple[int, int] = (2, 3)
    forecast_window_days: int = 7


RECOMMENDATION = RecommendationConfig()

# ─────────────────────────────────────────────────────────────────────────────
# VRI VIGOR BANDS
# ─────────────────────────────────────────────────────────────────────────────
@dataclass
class VigorBandConfig:
    # lower edges of every band after the first; bands are half-open [lower, upper)
    edges: Tuple[float, ...] = (0.3, 0.5, 0.6, 0.7)
    levels: Tuple[str, ...] = ("low", "medium-low", "medium", "medium-high", "high")
    multipliers_pct: Dict[str, float] = field(default_factory=lambda: {
        "low": 120.0,
        "medium-low": 110.0,
        "medium": 100.0,
        "medium-high": 90.0,
        "high": 80.0,
    })
    min_zone_cells: int = 1  # smaller patches are pooled per band

    def __post_init__(self):
        if len(self.levels) != len(self.edges) + 1:
            raise ValueError("need exactly one more vigor level than band edges")
        if list(self.edges) != sorted(self.edges):
            raise ValueError("band edges must be ascending")
        missing = [lvl for lvl in self.levels if lvl not in self.multipliers_pct]
        if missing:
            raise ValueError(f"missing multipliers for: {', '.join(missing)}")


# ─────────────────────────────────────────────────────────────────────────────
# ALERTS
# ─────────────────────────────────────────────────────────────────────────────
@dataclass(frozen=True)
class AlertConfig:
    battery_warning_pct: float = 20.0
    battery_critical_pct: float = 10.0
    offline_threshold_minutes: float = 30.0
    webhook_url: str = os.getenv("IRRIGATION_ALERT_WEBHOOK_URL", "")


ALERTS = AlertConfig()

# ─────────────────────────────────────────────────────────────────────────────
# CLIMATE FEEDS
# ─────────────────────────────────────────────────────────────────────────────
@dataclass(frozen=True)
class ClimateConfig:
    openet_url: str = "https://openet-api.org/raster/timeseries/point"
    openet_api_key: str = os.getenv("OPENET_API_KEY", "")
    openet_model: str = "Ensemble"
    reference_et: str = "gridMET"
    timeout_seconds: int = 30
    max_retries: int = 3


CLIMATE = ClimateConfig()

# ─────────────────────────────────────────────────────────────────────────────
# API CONFIG
# ─────────────────────────────────────────────────────────────────────────────
@dataclass
class APIConfig:
    host: str = "0.0.0.0"
    port: int = int(os.getenv("IRRIGATION_API_PORT", "8000"))
    workers: int = 1  # zone state lives in-process
    registry_path: str = os.getenv("IRRIGATION_REGISTRY_PATH", "")
    climate_csv: str = os.getenv("IRRIGATION_CLIMATE_CSV", "")


API = APIConfig()

# ─────────────────────────────────────────────────────────────────────────────
# SCHEDULER CONFIG
# ─────────────────────────────────────────────────────────────────────────────
@dataclass
class SchedulerConfig:
    water_balance_time: str = "02:00"
    health_check_interval_minutes: int = 10
    max_parallel_fields: int = 4


SCHEDULER = SchedulerConfig()
