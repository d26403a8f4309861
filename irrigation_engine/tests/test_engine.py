"""End-to-end tests through the engine facade."""
from datetime import date, timedelta

import pandas as pd
import pytest

from conftest import BASE, SCENARIO_A, feed, payloads
from irrigation_engine.alerts import AlertType, Severity
from irrigation_engine.climate import TableClimateFeed
from irrigation_engine.errors import (
    ClimateDataUnavailable, NotFound, PersistenceFailure, ValidationError,
)
from irrigation_engine.recommendation import Urgency
from irrigation_engine.sessions import SessionAction, ZoneState
from irrigation_engine.water_balance import gallons_to_mm

ZONE = "meter-1-z1"


class TestIngest:

    def test_scenario_a_end_to_end(self, engine, store):
        results = feed(engine, "tok-1", SCENARIO_A)
        assert all(r.ok and r.accepted for r in results)
        events = [r.event for r in results if r.event]
        assert len(events) == 1
        assert events[0].duration_minutes == pytest.approx(24.0)
        assert events[0].total_gallons == pytest.approx(15.2)
        assert store.list_events("block-a") == events
        assert store.load_session(ZONE) is None
        assert engine.zone_status(ZONE)["state"] == "idle"

    def test_scenario_b_no_session(self, engine, store):
        results = feed(engine, "tok-1", [0.6, 0.0])
        assert [r.state for r in results] == [ZoneState.RISING, ZoneState.IDLE]
        assert store.load_session(ZONE) is None
        assert store.list_events("block-a") == []

    def test_session_persisted_while_open(self, engine, store):
        feed(engine, "tok-1", [0.6] * 4)
        saved = store.load_session(ZONE)
        assert saved.state is ZoneState.ACTIVE
        assert saved.reading_count == 4

    def test_validation_error_propagates(self, engine):
        with pytest.raises(ValidationError):
            engine.ingest_reading("tok-1", {"flow_rate_gpm": "lots"})

    def test_unknown_token(self, engine):
        with pytest.raises(NotFound):
            engine.ingest_reading("missing", {"flow_rate_gpm": 1.0})

    def test_duplicate_reading_dropped_and_counted(self, engine):
        p = payloads([0.6])[0]
        first = engine.ingest_reading("tok-1", p)
        second = engine.ingest_reading("tok-1", p)
        assert first.accepted and not second.accepted
        assert second.ok
        assert second.state is ZoneState.RISING
        assert engine.dropped_readings(ZONE) == 1

    def test_zones_are_independent(self, engine):
        feed(engine, "tok-2", [0.6] * 3, zone_number=1)
        feed(engine, "tok-2", [0.0] * 3, zone_number=2)
        assert engine.zone_status("meter-2-z1")["state"] == "active"
        assert engine.zone_status("meter-2-z2")["state"] == "idle"

    def test_latest_reading(self, engine):
        feed(engine, "tok-1", [0.6, 0.7])
        assert engine.latest_reading("meter-1").flow_rate_gpm == 0.7
        assert engine.latest_reading("meter-2") is None

    def test_runtime_restored_from_store(self, engine, store, registry):
        from irrigation_engine.engine import IrrigationEngine
        feed(engine, "tok-1", [0.6] * 5)
        restarted = IrrigationEngine(registry, store=store)
        assert restarted.zone_status(ZONE)["state"] == "active"
        results = feed(restarted, "tok-1", [0.6] * 8 + [0.1] * 5, start_minute=10)
        assert sum(1 for r in results if r.event) == 1


class TestCounterReset:

    def test_reset_dropped_and_alerted(self, engine, notifier):
        for i, p in enumerate(payloads([0.6] * 3)):
            engine.ingest_reading("tok-1", {**p, "cumulative_gallons": 100.0 + i})
        bad = payloads([0.6], start_minute=6)[0]
        result = engine.ingest_reading("tok-1", {**bad, "cumulative_gallons": 2.0})
        assert not result.accepted
        assert result.state is ZoneState.ACTIVE
        assert engine.dropped_readings(ZONE) == 1
        alerts = notifier.of_type(AlertType.COUNTER_RESET)
        assert len(alerts) == 1

        # repeated low counters do not spam the operator
        again = payloads([0.6], start_minute=8)[0]
        engine.ingest_reading("tok-1", {**again, "cumulative_gallons": 3.0})
        assert len(notifier.of_type(AlertType.COUNTER_RESET)) == 1

    def test_stop_clears_reset_alert(self, engine):
        for i, p in enumerate(payloads([0.6] * 3)):
            engine.ingest_reading("tok-1", {**p, "cumulative_gallons": 100.0 + i})
        bad = payloads([0.6], start_minute=6)[0]
        engine.ingest_reading("tok-1", {**bad, "cumulative_gallons": 2.0})
        assert engine.alerts.is_open(AlertType.COUNTER_RESET, "meter-1", ZONE)
        engine.stop_session(ZONE)
        assert not engine.alerts.is_open(AlertType.COUNTER_RESET, "meter-1", ZONE)

    def test_reset_alerts_tracked_per_zone(self, engine, notifier):
        for number in (1, 2):
            for i, p in enumerate(payloads([0.6] * 3, zone_number=number)):
                engine.ingest_reading("tok-2", {**p, "cumulative_gallons": 100.0 + i})
        for number in (1, 2):
            bad = payloads([0.6], start_minute=6, zone_number=number)[0]
            assert not engine.ingest_reading("tok-2", {**bad, "cumulative_gallons": 1.0}).accepted

        alerts = notifier.of_type(AlertType.COUNTER_RESET)
        assert sorted(a.zone_id for a in alerts) == ["meter-2-z1", "meter-2-z2"]

        engine.stop_session("meter-2-z2")
        assert engine.alerts.is_open(AlertType.COUNTER_RESET, "meter-2", "meter-2-z1")
        assert not engine.alerts.is_open(AlertType.COUNTER_RESET, "meter-2", "meter-2-z2")


class TestPersistenceFailure:

    def test_decision_committed_then_flushed(self, engine, store):
        store.fail = True
        with pytest.raises(PersistenceFailure) as exc:
            engine.ingest_reading("tok-1", payloads([0.6])[0])
        assert exc.value.operation == "save_session"
        assert len(exc.value.pending) == 1
        assert engine.zone_status(ZONE)["state"] == "rising"
        assert store.load_session(ZONE) is None

        store.fail = False
        assert engine.flush_pending(ZONE) == 1
        assert store.load_session(ZONE).state is ZoneState.RISING
        assert engine.pending_writes() == []

    def test_next_reading_flushes_first(self, engine, store):
        store.fail = True
        with pytest.raises(PersistenceFailure):
            engine.ingest_reading("tok-1", payloads([0.6])[0])
        store.fail = False
        engine.ingest_reading("tok-1", payloads([0.6], start_minute=2)[0])
        assert engine.pending_writes(ZONE) == []
        assert store.load_session(ZONE).reading_count == 2

    def test_retry_of_failed_reading_is_not_reapplied(self, engine, store):
        p = payloads([0.6])[0]
        store.fail = True
        with pytest.raises(PersistenceFailure):
            engine.ingest_reading("tok-1", p)
        store.fail = False
        retry = engine.ingest_reading("tok-1", p)
        assert retry.accepted
        assert retry.state is ZoneState.RISING
        assert engine.dropped_readings(ZONE) == 0
        assert engine.pending_writes(ZONE) == []
        assert store.load_session(ZONE).reading_count == 1

    def test_retry_while_store_down_raises_again(self, engine, store):
        p = payloads([0.6])[0]
        store.fail = True
        with pytest.raises(PersistenceFailure):
            engine.ingest_reading("tok-1", p)
        with pytest.raises(PersistenceFailure):
            engine.ingest_reading("tok-1", p)
        assert engine.dropped_readings(ZONE) == 0
        assert len(engine.pending_writes(ZONE)) == 1

    def test_duplicate_after_flush_is_dropped(self, engine, store):
        p = payloads([0.6])[0]
        store.fail = True
        with pytest.raises(PersistenceFailure):
            engine.ingest_reading("tok-1", p)
        store.fail = False
        engine.flush_pending(ZONE)
        assert not engine.ingest_reading("tok-1", p).accepted
        assert engine.dropped_readings(ZONE) == 1

    def test_event_replayed_once(self, engine, store):
        store.fail, store.fail_only = True, "append_event"
        with pytest.raises(PersistenceFailure):
            feed(engine, "tok-1", SCENARIO_A[:-1])
        assert store.list_events("block-a") == []
        assert engine.zone_status(ZONE)["state"] == "idle"

        store.fail = False
        engine.flush_pending()
        engine.flush_pending()
        events = store.list_events("block-a")
        assert len(events) == 1
        assert events[0].total_gallons == pytest.approx(15.2)
        assert store.load_session(ZONE) is None

    def test_still_failing_keeps_queue(self, engine, store):
        store.fail = True
        with pytest.raises(PersistenceFailure):
            engine.ingest_reading("tok-1", payloads([0.6])[0])
        with pytest.raises(PersistenceFailure):
            engine.flush_pending()
        assert len(engine.pending_writes(ZONE)) == 1


class TestStopSession:

    def test_idle_stop_is_noop(self, engine, store):
        assert engine.stop_session(ZONE) is None
        assert engine.stop_session(ZONE) is None
        assert engine.pending_writes() == []

    def test_stop_active_emits_event(self, engine, store, notifier):
        feed(engine, "tok-1", [5.0] * 6)
        event = engine.stop_session(ZONE)
        assert event is not None
        assert event.total_gallons == pytest.approx(50.0)
        assert store.list_events("block-a") == [event]
        assert store.load_session(ZONE) is None
        assert len(notifier.of_type(AlertType.FLOW_STOPPED)) == 1
        assert engine.stop_session(ZONE) is None

    def test_stop_tiny_session_clears_without_event(self, engine, store):
        feed(engine, "tok-1", [1.0] * 3, spacing_minutes=0.5)
        assert engine.stop_session(ZONE) is None
        assert engine.zone_status(ZONE)["state"] == "idle"
        assert store.load_session(ZONE) is None
        assert store.list_events("block-a") == []

    def test_unknown_zone(self, engine):
        with pytest.raises(NotFound):
            engine.stop_session("nope")


class TestAlerts:

    def test_flow_alerts(self, engine, notifier):
        feed(engine, "tok-1", SCENARIO_A)
        started = notifier.of_type(AlertType.FLOW_STARTED)
        stopped = notifier.of_type(AlertType.FLOW_STOPPED)
        assert len(started) == 1 and len(stopped) == 1
        assert started[0].expected_flow_rate_gpm == 10.0

    def test_battery_low_deduplicated(self, engine, notifier):
        feed(engine, "tok-1", [0.0] * 3, battery_level=15)
        feed(engine, "tok-1", [0.0], start_minute=10, battery_level=8)
        alerts = notifier.of_type(AlertType.BATTERY_LOW)
        assert len(alerts) == 1
        assert alerts[0].severity is Severity.WARNING

        feed(engine, "tok-1", [0.0], start_minute=12, battery_level=90)
        feed(engine, "tok-1", [0.0], start_minute=14, battery_level=5)
        alerts = notifier.of_type(AlertType.BATTERY_LOW)
        assert len(alerts) == 2
        assert alerts[1].severity is Severity.CRITICAL

    def test_offline_device_keeps_active_session(self, engine, notifier):
        feed(engine, "tok-1", [5.0] * 3)
        offline = engine.check_device_health(now=BASE + timedelta(minutes=45))
        assert offline == ["meter-1"]
        assert engine.zone_status(ZONE)["state"] == "active"
        assert notifier.of_type(AlertType.DEVICE_OFFLINE)[0].severity is Severity.WARNING

        assert engine.check_device_health(now=BASE + timedelta(minutes=90)) == []
        feed(engine, "tok-1", [5.0], start_minute=100)
        assert not engine.alerts.is_open(AlertType.DEVICE_OFFLINE, "meter-1")

    def test_long_silence_is_critical(self, engine, notifier):
        feed(engine, "tok-1", [0.0])
        engine.check_device_health(now=BASE + timedelta(minutes=61))
        assert notifier.of_type(AlertType.DEVICE_OFFLINE)[0].severity is Severity.CRITICAL


class TestPerDeviceConfig:

    def test_detector_override(self, store):
        from irrigation_engine.engine import IrrigationEngine
        from irrigation_engine.registry import InMemoryDeviceRegistry

        registry = InMemoryDeviceRegistry.from_dict({
            "fields": [{"field_id": "f", "area_acres": 1.0}],
            "devices": [{
                "device_id": "quick", "webhook_token": "q",
                "detector": {"start_readings": 1, "end_readings": 1},
                "noise_filter": {"min_duration_minutes": 0, "min_gallons": 0},
                "zones": [{"zone_number": 1, "field_id": "f", "configured_flow_rate_gpm": 2.0}],
            }],
        })
        engine = IrrigationEngine(registry, store=store)
        results = feed(engine, "q", [1.0, 1.0, 0.0])
        assert results[0].action is SessionAction.STARTED
        assert results[2].action is SessionAction.ENDED
        assert results[2].event.total_gallons == pytest.approx(2.0)


class TestWaterBalance:

    def test_irrigation_events_feed_balance(self, engine):
        feed(engine, "tok-1", [10.0] * 31 + [0.0] * 4)
        event = engine.store.list_events("block-a")[0]
        day = BASE.date()

        balance = engine.update_water_balance("block-a", day, reference_et_mm=6.0, rainfall_mm=0.0)
        expected_mm = gallons_to_mm(event.total_gallons, 2.0)
        assert balance.irrigation_mm == pytest.approx(expected_mm)
        assert balance.cumulative_deficit_mm == pytest.approx(max(0.0, 5.1 - expected_mm))
        assert engine.water_balance("block-a").last_updated == day

    def test_climate_feed_used(self, registry, store):
        from irrigation_engine.engine import IrrigationEngine
        feed_ = TableClimateFeed(pd.DataFrame({
            "date": ["2024-07-01"], "reference_et_mm": [6.0], "rainfall_mm": [1.0],
        }))
        engine = IrrigationEngine(registry, store=store, climate=feed_)
        balance = engine.update_water_balance("block-b", date(2024, 7, 1))
        assert balance.reference_et_mm == 6.0
        assert balance.cumulative_deficit_mm == pytest.approx(4.1)
        assert store.load_water_balance("block-b").cumulative_deficit_mm == pytest.approx(4.1)

    def test_missing_reference_et(self, engine):
        with pytest.raises(ClimateDataUnavailable):
            engine.update_water_balance("block-a", date(2024, 7, 1))

    def test_balance_write_failure_is_retryable(self, engine, store):
        store.fail = True
        with pytest.raises(PersistenceFailure):
            engine.update_water_balance("block-a", date(2024, 7, 1), reference_et_mm=6.0)
        assert engine.water_balance("block-a").cumulative_deficit_mm == pytest.approx(5.1)
        store.fail = False
        engine.flush_pending()
        assert store.load_water_balance("block-a").cumulative_deficit_mm == pytest.approx(5.1)

    def test_unknown_field(self, engine):
        with pytest.raises(NotFound):
            engine.water_balance("nope")


class TestRecommendationFlow:

    def test_recommendation_from_balance(self, engine):
        day = date(2024, 7, 1)
        for i in range(8):
            engine.update_water_balance("block-a", day + timedelta(days=i),
                                        reference_et_mm=6.0, rainfall_mm=0.0)
        rec = engine.get_recommendation("block-a", forecast_et_mm=0.0)
        assert rec.deficit_mm == pytest.approx(40.8)
        assert rec.urgency is Urgency.CRITICAL
        assert rec.amount_mm == 25.0
        assert rec.split_required
        assert rec.flow_rate_gpm == 10.0
        assert rec.area_acres == 2.0

    def test_vri_zones_applied(self, engine):
        engine.update_water_balance("block-a", date(2024, 7, 1), reference_et_mm=12.0)
        engine.build_vri_zones("block-a", [0.2, 0.55, 0.75])
        rec = engine.get_recommendation("block-a", forecast_et_mm=0.0)
        assert [z.vigor_level for z in rec.zones] == ["low", "medium", "high"]
        assert rec.zones[0].amount_mm == pytest.approx(10.2 * 1.2)

    def test_operator_edits_multiplier(self, engine):
        engine.build_vri_zones("block-a", [0.2, 0.75])
        zone = engine.set_vri_multiplier("block-a", "Zone 2", 95)
        assert zone.irrigation_multiplier_pct == 95.0
        assert engine.vri_zones("block-a")[1].irrigation_multiplier_pct == 95.0
        with pytest.raises(NotFound):
            engine.set_vri_multiplier("block-a", "Zone 9", 95)

    def test_forecast_from_climate_feed(self, registry, store):
        from irrigation_engine.engine import IrrigationEngine
        feed_ = TableClimateFeed(pd.DataFrame({
            "date": ["2024-07-02", "2024-07-03"], "reference_et_mm": [5.0, 5.0],
        }))
        engine = IrrigationEngine(registry, store=store, climate=feed_)
        assert engine.forecast_crop_et("block-a", start=date(2024, 7, 2)) == pytest.approx(8.5)
