"""Tests for irrigation recommendations."""
import pytest

from irrigation_engine.errors import ValidationError
from irrigation_engine.recommendation import RecommendationEngine, Urgency, classify_urgency
from irrigation_engine.vri import build_zones


@pytest.fixture
def rec():
    return RecommendationEngine()


class TestUrgency:

    @pytest.mark.parametrize("deficit,urgency", [
        (45.0, Urgency.CRITICAL),
        (30.1, Urgency.CRITICAL),
        (30.0, Urgency.HIGH),
        (20.0, Urgency.HIGH),
        (15.0, Urgency.MODERATE),
        (8.5, Urgency.MODERATE),
        (8.0, Urgency.LOW),
        (0.0, Urgency.LOW),
    ])
    def test_tiers(self, deficit, urgency):
        assert classify_urgency(deficit) is urgency


class TestAmount:

    def test_below_cap(self, rec):
        r = rec.recommend("f", 10.0, flow_rate_gpm=10.0, area_acres=1.0)
        assert r.amount_mm == 10.0
        assert r.split_required is False
        assert r.cycles == 1
        assert r.needs_irrigation

    def test_cap_and_split(self, rec):
        r = rec.recommend("f", 40.0, flow_rate_gpm=10.0, area_acres=1.0)
        assert r.amount_mm == 25.0
        assert r.split_required is True
        assert r.cycles == 2
        assert r.interval_days == (2, 3)
        assert any("split into 2 cycles" in n for n in r.notes)

    def test_exactly_cap_is_not_split(self, rec):
        r = rec.recommend("f", 25.0, flow_rate_gpm=10.0, area_acres=1.0)
        assert r.amount_mm == 25.0
        assert r.split_required is False

    @pytest.mark.parametrize("deficit", [0.0, 3.0, 24.9, 25.0, 26.0, 80.0, 500.0])
    def test_never_exceeds_cap(self, rec, deficit):
        r = rec.recommend("f", deficit, flow_rate_gpm=10.0, area_acres=1.0)
        assert r.amount_mm <= 25.0
        assert r.split_required == (deficit > 25.0)

    def test_no_deficit(self, rec):
        r = rec.recommend("f", 0.0, flow_rate_gpm=10.0, area_acres=1.0)
        assert r.amount_mm == 0.0
        assert not r.needs_irrigation
        assert r.runtime_hours == 0.0
        assert r.cycles == 0
        assert r.message == "No irrigation needed"

    def test_runtime_from_area_and_flow(self, rec):
        r = rec.recommend("f", 10.0, flow_rate_gpm=10.0, area_acres=1.0)
        gallons = 10.0 / 25.4 * 27154.0
        assert r.gallons == pytest.approx(gallons)
        assert r.runtime_hours == pytest.approx(gallons / 10.0 / 60.0)

    def test_forecast_only_projects(self, rec):
        r = rec.recommend("f", 10.0, flow_rate_gpm=10.0, area_acres=1.0, forecast_et_mm=30.0)
        assert r.amount_mm == 10.0
        assert r.projected_deficit_mm == pytest.approx(40.0)
        assert any("projected" in n for n in r.notes)

    @pytest.mark.parametrize("kwargs,field", [
        ({"deficit_mm": 10.0, "flow_rate_gpm": 0.0, "area_acres": 1.0}, "flow_rate_gpm"),
        ({"deficit_mm": 10.0, "flow_rate_gpm": 5.0, "area_acres": 0.0}, "area_acres"),
        ({"deficit_mm": -1.0, "flow_rate_gpm": 5.0, "area_acres": 1.0}, "cumulative_deficit_mm"),
    ])
    def test_invalid_inputs(self, rec, kwargs, field):
        with pytest.raises(ValidationError) as exc:
            rec.recommend("f", **kwargs)
        assert exc.value.field == field


class TestVRIScaling:

    def test_zone_amounts_scale_by_multiplier(self, rec):
        zones = build_zones([0.2, 0.55, 0.75], field_area_acres=3.0)
        r = rec.recommend("f", 10.0, flow_rate_gpm=10.0, area_acres=3.0, vri_zones=zones)
        assert [z.amount_mm for z in r.zones] == pytest.approx([12.0, 10.0, 8.0])
        assert r.zones[0].runtime_hours == pytest.approx(r.runtime_hours * 1.2)

    def test_zone_amounts_respect_cap(self, rec):
        zones = build_zones([0.2, 0.75], field_area_acres=2.0)
        r = rec.recommend("f", 24.0, flow_rate_gpm=10.0, area_acres=2.0, vri_zones=zones)
        low, high = r.zones
        assert low.amount_mm == 25.0
        assert low.split_required is True
        assert high.amount_mm == pytest.approx(19.2)
        assert high.split_required is False

    def test_to_dict(self, rec):
        zones = build_zones([0.2, 0.75], field_area_acres=2.0)
        d = rec.recommend("f", 40.0, flow_rate_gpm=10.0, area_acres=2.0, vri_zones=zones).to_dict()
        assert d["urgency"] == "critical"
        assert d["split_required"] is True
        assert len(d["zones"]) == 2
