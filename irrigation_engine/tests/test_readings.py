"""Tests for payload normalization and recorded-reading loading."""
from datetime import datetime, timezone

import pandas as pd
import pytest

from irrigation_engine.errors import NotFound, ValidationError
from irrigation_engine.readings import (
    ReadingNormalizer, frame_to_payloads, load_readings_csv, parse_timestamp,
)


@pytest.fixture
def normalizer(registry):
    return ReadingNormalizer(registry)


class TestParseTimestamp:

    def test_iso_string(self):
        ts = parse_timestamp("2024-07-01T06:00:00Z")
        assert ts == datetime(2024, 7, 1, 6, 0, tzinfo=timezone.utc)

    def test_epoch_seconds_and_millis_agree(self):
        assert parse_timestamp(1719813600) == parse_timestamp(1719813600000)
        assert parse_timestamp(1719813600) == datetime(2024, 7, 1, 6, 0, tzinfo=timezone.utc)

    def test_missing_defaults_to_receipt_time(self):
        received = datetime(2024, 7, 1, 12, 0, tzinfo=timezone.utc)
        assert parse_timestamp(None, received) == received
        assert parse_timestamp("", received) == received

    def test_garbage_rejected(self):
        with pytest.raises(ValidationError) as exc:
            parse_timestamp("yesterday-ish")
        assert exc.value.field == "timestamp"

    def test_bool_rejected(self):
        with pytest.raises(ValidationError):
            parse_timestamp(True)


class TestReadingNormalizer:

    def test_minimal_payload(self, normalizer):
        r = normalizer.normalize("tok-1", {"flow_rate_gpm": 0.6, "timestamp": "2024-07-01T06:00:00Z"})
        assert r.zone_id == "meter-1-z1"
        assert r.device_id == "meter-1"
        assert r.flow_rate_gpm == 0.6
        assert r.cumulative_gallons is None

    def test_telemetry_carried(self, normalizer):
        r = normalizer.normalize("tok-1", {
            "flow_rate_gpm": 1, "cumulative_gallons": 120.5,
            "battery_level": 55, "signal_strength": -70, "pulse_count": 300,
        })
        assert r.cumulative_gallons == 120.5
        assert r.battery_level == 55
        assert r.signal_strength == -70
        assert r.pulse_count == 300

    @pytest.mark.parametrize("payload,field", [
        ({}, "flow_rate_gpm"),
        ({"flow_rate_gpm": "fast"}, "flow_rate_gpm"),
        ({"flow_rate_gpm": -1.0}, "flow_rate_gpm"),
        ({"flow_rate_gpm": float("nan")}, "flow_rate_gpm"),
        ({"flow_rate_gpm": True}, "flow_rate_gpm"),
        ({"flow_rate_gpm": 1.0, "cumulative_gallons": -5}, "cumulative_gallons"),
        ({"flow_rate_gpm": 1.0, "zone_number": 1.5}, "zone_number"),
    ])
    def test_malformed_payloads(self, normalizer, payload, field):
        with pytest.raises(ValidationError) as exc:
            normalizer.normalize("tok-1", payload)
        assert exc.value.field == field

    def test_non_mapping_payload(self, normalizer):
        with pytest.raises(ValidationError):
            normalizer.normalize("tok-1", [1, 2, 3])

    def test_unknown_token(self, normalizer):
        with pytest.raises(NotFound):
            normalizer.normalize("nope", {"flow_rate_gpm": 1.0})

    def test_multi_zone_device_needs_zone_number(self, normalizer):
        with pytest.raises(ValidationError) as exc:
            normalizer.normalize("tok-2", {"flow_rate_gpm": 1.0})
        assert exc.value.field == "zone_number"

        r = normalizer.normalize("tok-2", {"flow_rate_gpm": 1.0, "zone_number": 2})
        assert r.zone_id == "meter-2-z2"

    def test_unmapped_zone_number(self, normalizer):
        with pytest.raises(NotFound):
            normalizer.normalize("tok-2", {"flow_rate_gpm": 1.0, "zone_number": 9})


class TestRecordedReadings:

    def test_load_csv_with_aliases(self, tmp_path):
        path = tmp_path / "meter.csv"
        pd.DataFrame({
            "Time": ["2024-07-01 06:02", "2024-07-01 06:00", "bad"],
            "Flow (GPM)": [0.7, 0.6, 0.5],
            "Total Gallons": [101.4, 100.0, 102.0],
        }).to_csv(path, index=False)

        df = load_readings_csv(str(path))
        assert list(df["flow_rate_gpm"]) == [0.6, 0.7]
        assert "cumulative_gallons" in df.columns

        payloads = list(frame_to_payloads(df))
        assert payloads[0]["flow_rate_gpm"] == 0.6
        assert payloads[0]["cumulative_gallons"] == 100.0
        assert payloads[0]["timestamp"].startswith("2024-07-01T06:00:00")

    def test_missing_flow_column(self, tmp_path):
        path = tmp_path / "meter.csv"
        pd.DataFrame({"time": ["2024-07-01"], "pressure": [40]}).to_csv(path, index=False)
        with pytest.raises(ValueError, match="flow_rate_gpm"):
            load_readings_csv(str(path))
