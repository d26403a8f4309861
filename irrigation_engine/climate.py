"""
Climate feeds: daily reference ET and rainfall per field.

``ClimateFeed`` is the collaborator contract (``FetchReferenceET`` /
``FetchRainfall``). Implementations:

- ``TableClimateFeed``: a pandas table (CSV export, weather station logs). Rows
  without reference ET but with daily min/max temperature fall back to the
  Hargreaves equation.
- ``OpenETClient``: OpenET point time series (gridMET reference ET).
- ``CompositeClimateFeed``: ET from one feed, rainfall from another.
"""

import logging
import time
from abc import ABC, abstractmethod
from datetime import date, timedelta
from typing import Dict, List, Optional, Tuple

import numpy as np
import pandas as pd
import requests

from .alerts import exponential_backoff
from .config import CLIMATE, ClimateConfig
from .errors import ClimateDataUnavailable
from .registry import FieldProfile

log = logging.getLogger(__name__)


# ─────────────────────────────────────────────────────────────────────────────
# HARGREAVES REFERENCE ET
# ─────────────────────────────────────────────────────────────────────────────

def extraterrestrial_radiation(lat_deg: float, day_of_year: int) -> float:
    """Extraterrestrial radiation Ra in MJ/m²/day (FAO-56 eq. 21)."""
    lat_rad = np.pi * lat_deg / 180
    declination = 0.409 * np.sin(2 * np.pi * day_of_year / 365 - 1.39)
    # clip keeps polar day/night finite
    ws = np.arccos(np.clip(-np.tan(lat_rad) * np.tan(declination), -1.0, 1.0))
    dr = 1 + 0.033 * np.cos(2 * np.pi * day_of_year / 365)
    gsc = 0.0820
    return float((24 * 60 / np.pi) * gsc * dr * (
        ws * np.sin(lat_rad) * np.sin(declination)
        + np.cos(lat_rad) * np.cos(declination) * np.sin(ws)
    ))


def hargreaves_et0(t_min_c: float, t_max_c: float, lat_deg: float, day_of_year: int) -> float:
    """Reference ET (mm/day) from daily temperature extremes (FAO-56 eq. 52)."""
    t_mean = (t_min_c + t_max_c) / 2
    ra = extraterrestrial_radiation(lat_deg, day_of_year)
    et0 = 0.0023 * (t_mean + 17.8) * np.sqrt(max(t_max_c - t_min_c, 0.0)) * ra / 2.45
    return max(0.0, float(et0))


# ─────────────────────────────────────────────────────────────────────────────
# FEEDS
# ─────────────────────────────────────────────────────────────────────────────

class ClimateFeed(ABC):
    name = "climate"

    @abstractmethod
    def reference_et_mm(self, field: FieldProfile, day: date) -> float:
        """Reference ET for a field on a day; raises ClimateDataUnavailable."""

    @abstractmethod
    def rainfall_mm(self, field: FieldProfile, day: date) -> float:
        """Rainfall for a field on a day; raises ClimateDataUnavailable."""

    def forecast_reference_et(self, field: FieldProfile, start: date, days: int) -> List[float]:
        """Daily reference ET for ``days`` days from ``start``; stops at the first gap."""
        values = []
        for offset in range(days):
            try:
                values.append(self.reference_et_mm(field, start + timedelta(days=offset)))
            except ClimateDataUnavailable:
                break
        return values


class TableClimateFeed(ClimateFeed):
    """Daily climate rows keyed by date and, optionally, field.

    Expected columns: ``date`` plus any of ``reference_et_mm``, ``rainfall_mm``,
    ``t_min_c``, ``t_max_c``. A ``field_id`` column scopes rows to one field;
    rows without it apply to every field.
    """

    name = "table"

    def __init__(self, frame: pd.DataFrame):
        df = frame.copy()
        df["date"] = pd.to_datetime(df["date"]).dt.date
        if "field_id" not in df.columns:
            df["field_id"] = None
        self._rows: Dict[Tuple[Optional[str], date], dict] = {
            (row["field_id"] if pd.notna(row["field_id"]) else None, row["date"]): row
            for row in df.to_dict("records")
        }

    @classmethod
    def from_csv(cls, path) -> "TableClimateFeed":
        return cls(pd.read_csv(path))

    def _row(self, field: FieldProfile, day: date) -> Optional[dict]:
        return self._rows.get((field.field_id, day)) or self._rows.get((None, day))

    @staticmethod
    def _value(row: Optional[dict], column: str) -> Optional[float]:
        if row is None:
            return None
        value = row.get(column)
        return None if value is None or pd.isna(value) else float(value)

    def reference_et_mm(self, field: FieldProfile, day: date) -> float:
        row = self._row(field, day)
        et0 = self._value(row, "reference_et_mm")
        if et0 is not None:
            return et0
        t_min, t_max = self._value(row, "t_min_c"), self._value(row, "t_max_c")
        if t_min is not None and t_max is not None and field.latitude is not None:
            return hargreaves_et0(t_min, t_max, field.latitude, day.timetuple().tm_yday)
        raise ClimateDataUnavailable("reference ET", field.field_id, day)

    def rainfall_mm(self, field: FieldProfile, day: date) -> float:
        rain = self._value(self._row(field, day), "rainfall_mm")
        if rain is None:
            raise ClimateDataUnavailable("rainfall", field.field_id, day)
        return rain


class OpenETClient(ClimateFeed):
    """OpenET point time-series client for daily reference ET (ETo)."""

    name = "openet"

    def __init__(self, config: ClimateConfig = CLIMATE, session: Optional[requests.Session] = None):
        self.config = config
        self.http = session or requests.Session()
        self._cache: Dict[Tuple[str, date], float] = {}

    def fetch_range(self, field: FieldProfile, start: date, end: date) -> Dict[date, float]:
        """Fetch daily ETo (mm) for an inclusive date range."""
        if field.latitude is None or field.longitude is None:
            raise ClimateDataUnavailable("openet (no coordinates)", field.field_id, start)
        if not self.config.openet_api_key:
            log.warning("No OpenET API key configured")
            raise ClimateDataUnavailable("openet (no API key)", field.field_id, start)

        body = {
            "date_range": [start.isoformat(), end.isoformat()],
            "interval": "daily",
            "geometry": [field.longitude, field.latitude],
            "model": self.config.openet_model,
            "variable": "ETo",
            "reference_et": self.config.reference_et,
            "units": "mm",
            "file_format": "JSON",
        }
        headers = {"Authorization": self.config.openet_api_key}

        for attempt in range(self.config.max_retries):
            try:
                resp = self.http.post(self.config.openet_url, json=body, headers=headers,
                                      timeout=self.config.timeout_seconds)
                if resp.status_code == 200:
                    series = {}
                    for item in resp.json():
                        value = item.get("eto", item.get("et"))
                        if value is not None:
                            series[pd.to_datetime(item["time"]).date()] = float(value)
                    for day, value in series.items():
                        self._cache[(field.field_id, day)] = value
                    return series
                if resp.status_code in (401, 403):
                    log.error("OpenET rejected the API key")
                    break
                log.warning(f"OpenET HTTP {resp.status_code}: {resp.text[:100]}")
            except requests.exceptions.RequestException as e:
                log.warning(f"OpenET request failed: {e} (attempt {attempt+1})")
            if attempt + 1 < self.config.max_retries:
                time.sleep(exponential_backoff(attempt))

        raise ClimateDataUnavailable("openet", field.field_id, start)

    def reference_et_mm(self, field: FieldProfile, day: date) -> float:
        key = (field.field_id, day)
        if key not in self._cache:
            self.fetch_range(field, day, day)
        if key not in self._cache:
            raise ClimateDataUnavailable("openet", field.field_id, day)
        return self._cache[key]

    def rainfall_mm(self, field: FieldProfile, day: date) -> float:
        raise ClimateDataUnavailable("openet (no rainfall)", field.field_id, day)

    def forecast_reference_et(self, field: FieldProfile, start: date, days: int) -> List[float]:
        try:
            series = self.fetch_range(field, start, start + timedelta(days=days - 1))
        except ClimateDataUnavailable:
            return []
        values = []
        for offset in range(days):
            day = start + timedelta(days=offset)
            if day not in series:
                break
            values.append(series[day])
        return values


class CompositeClimateFeed(ClimateFeed):
    """Reference ET from one feed, rainfall from another."""

    name = "composite"

    def __init__(self, et_feed: ClimateFeed, rain_feed: ClimateFeed):
        self.et_feed = et_feed
        self.rain_feed = rain_feed

    def reference_et_mm(self, field: FieldProfile, day: date) -> float:
        return self.et_feed.reference_et_mm(field, day)

    def rainfall_mm(self, field: FieldProfile, day: date) -> float:
        return self.rain_feed.rainfall_mm(field, day)

    def forecast_reference_et(self, field: FieldProfile, start: date, days: int) -> List[float]:
        return self.et_feed.forecast_reference_et(field, start, days)
