"""
Irrigation engine facade.

Wires the normalizer, per-zone session detection, storage, alerts, the water
balance and the recommendation/VRI builders behind the operations the API,
scheduler and CLI call:

    engine = IrrigationEngine(registry, store=InMemoryStore(), climate=feed)
    engine.ingest_reading(token, {"flow_rate_gpm": 0.6, "timestamp": "..."})
    engine.update_water_balance("block-a", date(2024, 7, 1))
    engine.get_recommendation("block-a")

Zone state transitions are serialized per zone and water-balance updates per
field; unrelated zones and fields never wait on each other. The transition is
decided and committed in memory first; store writes that fail are queued per
zone and replayed by ``flush_pending`` (or before the zone's next reading).
"""

import logging
import threading
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from typing import Any, Callable, Dict, List, Mapping, Optional

from .alerts import (
    Alert, AlertCenter, AlertType, DeviceHealthMonitor, LoggingNotifier, Severity, WebhookNotifier,
)
from .climate import ClimateFeed, CompositeClimateFeed, OpenETClient, TableClimateFeed
from .config import ALERTS, API, CLIMATE, RECOMMENDATION, VigorBandConfig
from .errors import (
    ClimateDataUnavailable, CounterReset, NotFound, OutOfOrderReading,
    PersistenceFailure, ValidationError,
)
from .locks import KeyedLock
from .readings import Reading, ReadingNormalizer, utc_now
from .recommendation import Recommendation, RecommendationEngine
from .registry import DeviceContext, DeviceRegistry, InMemoryDeviceRegistry, ZoneContext
from .sessions import (
    IrrigationEvent, SessionAction, SessionAggregator, SessionDetector, ZoneRuntime, ZoneState,
)
from .storage import EngineStore, InMemoryStore
from .vri import VRIZone, build_zones
from .water_balance import (
    DailyBalance, WaterBalanceCalculator, WaterBalanceState, gallons_to_mm,
)

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class PendingWrite:
    """A store write decided but not yet persisted.

    ``key`` is the reading timestamp (or day) the write belongs to; together
    with ``operation`` it makes replays idempotent.
    """
    key: str
    operation: str
    apply: Callable[[EngineStore], None]

    def __repr__(self) -> str:
        return f"PendingWrite({self.operation}@{self.key})"


@dataclass(frozen=True)
class IngestResult:
    ok: bool
    accepted: bool
    device_id: str
    zone_id: str
    timestamp: datetime
    state: ZoneState
    action: Optional[SessionAction] = None
    event: Optional[IrrigationEvent] = None
    dropped_reason: Optional[str] = None
    rejected_reason: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "ok": self.ok,
            "accepted": self.accepted,
            "device_id": self.device_id,
            "zone_id": self.zone_id,
            "timestamp": self.timestamp.isoformat(),
            "state": self.state.value,
            "action": self.action.value if self.action else None,
            "event": self.event.to_dict() if self.event else None,
            "dropped_reason": self.dropped_reason,
            "rejected_reason": self.rejected_reason,
        }


class IrrigationEngine:
    """Flow monitoring and water-balance engine for a set of fields."""

    def __init__(self, registry: DeviceRegistry, store: Optional[EngineStore] = None,
                 climate: Optional[ClimateFeed] = None, alerts: Optional[AlertCenter] = None,
                 calculator: Optional[WaterBalanceCalculator] = None,
                 recommender: Optional[RecommendationEngine] = None):
        self.registry = registry
        self.store = store or InMemoryStore()
        self.climate = climate
        self.alerts = alerts or AlertCenter()
        self.health = DeviceHealthMonitor(self.alerts)
        self.normalizer = ReadingNormalizer(registry)
        self.calculator = calculator or WaterBalanceCalculator()
        self.recommender = recommender or RecommendationEngine()

        self._zone_locks = KeyedLock()
        self._field_locks = KeyedLock()
        self._guard = threading.Lock()
        self._detectors: Dict[str, SessionDetector] = {}
        self._runtimes: Dict[str, ZoneRuntime] = {}
        self._balances: Dict[str, WaterBalanceState] = {}
        self._vri_zones: Dict[str, List[VRIZone]] = {}
        self._latest: Dict[str, Reading] = {}
        self._dropped: Dict[str, int] = {}
        self._pending: Dict[str, List[PendingWrite]] = {}

    # ─────────────────────────────────────────────────────────────────────────
    # INGEST
    # ─────────────────────────────────────────────────────────────────────────
    def ingest_reading(self, device_token: str, payload: Mapping[str, Any],
                       received_at: Optional[datetime] = None) -> IngestResult:
        """Webhook entry point: normalize a reading and advance its zone.

        Raises ValidationError / NotFound for rejected payloads and
        PersistenceFailure when the decision could not be stored. Out-of-order
        readings are dropped and reported with ``accepted=False``.
        """
        try:
            reading = self.normalizer.normalize(device_token, payload, received_at)
        except (ValidationError, NotFound) as e:
            log.warning(f"Rejected reading: {e}")
            raise

        zone = self.registry.zone(reading.zone_id)
        device = self.registry.device(reading.device_id)
        self.health.mark_seen(device.device_id, reading.timestamp)
        self.alerts.check_battery(device.device_id, zone.zone_id,
                                  reading.battery_level, reading.flow_rate_gpm)

        with self._zone_locks.hold(zone.zone_id):
            # a caller retrying after PersistenceFailure: its writes are still queued
            retry = any(w.key == reading.timestamp.isoformat()
                        for w in self.pending_writes(zone.zone_id))
            if retry:
                self._flush(zone.zone_id)
            else:
                self._try_flush(zone.zone_id)
            runtime = self._runtime(zone.zone_id)
            try:
                new_runtime, transition = self._detector(device).step(zone, runtime, reading)
            except OutOfOrderReading as e:
                if retry and reading.timestamp == runtime.last_timestamp:
                    log.info(f"Replayed pending writes for zone {zone.zone_id} "
                             f"at {reading.timestamp.isoformat()}")
                    return IngestResult(
                        ok=True,
                        accepted=True,
                        device_id=device.device_id,
                        zone_id=zone.zone_id,
                        timestamp=reading.timestamp,
                        state=runtime.state,
                    )
                return self._drop(zone, runtime, reading, e)

            self._runtimes[zone.zone_id] = new_runtime
            self._latest[device.device_id] = reading
            self._announce(zone, reading, transition.action, transition.event)

            writes = self._session_writes(runtime, new_runtime, transition.event,
                                          reading.timestamp.isoformat())
            self._persist(zone.zone_id, writes)

        outcome = transition.outcome
        return IngestResult(
            ok=True,
            accepted=True,
            device_id=device.device_id,
            zone_id=zone.zone_id,
            timestamp=reading.timestamp,
            state=transition.state,
            action=transition.action,
            event=transition.event,
            dropped_reason=outcome.dropped_reason if outcome else None,
        )

    def _drop(self, zone: ZoneContext, runtime: ZoneRuntime, reading: Reading,
              error: OutOfOrderReading) -> IngestResult:
        with self._guard:
            self._dropped[zone.zone_id] = self._dropped.get(zone.zone_id, 0) + 1
        log.warning(f"Dropped reading: {error}")
        if isinstance(error, CounterReset):
            self.alerts.raise_alert(Alert(
                alert_type=AlertType.COUNTER_RESET,
                severity=Severity.WARNING,
                message=(f"Cumulative volume on zone {zone.zone_id} went from "
                         f"{error.previous_gallons:.1f} to {error.cumulative_gallons:.1f} gal; "
                         f"check the meter and stop the session if needed"),
                device_id=zone.device_id,
                zone_id=zone.zone_id,
                flow_rate_gpm=reading.flow_rate_gpm,
            ))
        return IngestResult(
            ok=True,
            accepted=False,
            device_id=zone.device_id,
            zone_id=zone.zone_id,
            timestamp=reading.timestamp,
            state=runtime.state,
            rejected_reason=str(error),
        )

    def _announce(self, zone: ZoneContext, reading: Reading, action: SessionAction,
                  event: Optional[IrrigationEvent]) -> None:
        if action is SessionAction.STARTED:
            log.info(f"Irrigation started on zone {zone.zone_id} at {reading.flow_rate_gpm:.2f} gpm")
            self.alerts.raise_alert(Alert(
                alert_type=AlertType.FLOW_STARTED,
                severity=Severity.INFO,
                message=f"Irrigation started on zone {zone.zone_id}",
                device_id=zone.device_id,
                zone_id=zone.zone_id,
                flow_rate_gpm=reading.flow_rate_gpm,
                expected_flow_rate_gpm=zone.configured_flow_rate_gpm,
            ))
        if event is not None:
            self._announce_stop(zone, event)
        if action in (SessionAction.ENDED, SessionAction.DROPPED):
            self.alerts.resolve(AlertType.COUNTER_RESET, zone.device_id, zone.zone_id)

    def _announce_stop(self, zone: ZoneContext, event: IrrigationEvent) -> None:
        self.alerts.raise_alert(Alert(
            alert_type=AlertType.FLOW_STOPPED,
            severity=Severity.INFO,
            message=(f"Irrigation stopped on zone {zone.zone_id}: "
                     f"{event.total_gallons:.1f} gal in {event.duration_minutes:.0f} min"),
            device_id=zone.device_id,
            zone_id=zone.zone_id,
            flow_rate_gpm=event.avg_flow_gpm,
            expected_flow_rate_gpm=zone.configured_flow_rate_gpm,
        ))

    # ─────────────────────────────────────────────────────────────────────────
    # MANUAL STOP
    # ─────────────────────────────────────────────────────────────────────────
    def stop_session(self, zone_id: str, stopped_at: Optional[datetime] = None
                     ) -> Optional[IrrigationEvent]:
        """Operator stop. Idempotent: an idle zone returns None and changes nothing."""
        zone = self.registry.zone(zone_id)
        device = self.registry.device(zone.device_id)

        with self._zone_locks.hold(zone_id):
            self._try_flush(zone_id)
            runtime = self._runtime(zone_id)
            new_runtime, outcome = self._detector(device).stop(zone, runtime)
            if outcome is None:
                log.info(f"Stop on idle zone {zone_id}: nothing to do")
                return None

            self._runtimes[zone_id] = new_runtime
            self.alerts.resolve(AlertType.COUNTER_RESET, zone.device_id, zone.zone_id)
            if outcome.event is not None:
                self._announce_stop(zone, outcome.event)
            else:
                log.info(f"Stop on zone {zone_id}: {outcome.dropped_reason}")

            key = (stopped_at or outcome.session.last_reading_time).isoformat()
            self._persist(zone_id, self._session_writes(runtime, new_runtime, outcome.event, key))
        return outcome.event

    # ─────────────────────────────────────────────────────────────────────────
    # ZONE STATE & PERSISTENCE
    # ─────────────────────────────────────────────────────────────────────────
    def _detector(self, device: DeviceContext) -> SessionDetector:
        with self._guard:
            detector = self._detectors.get(device.device_id)
            if detector is None:
                detector = SessionDetector(device.detector, SessionAggregator(device.noise_filter))
                self._detectors[device.device_id] = detector
            return detector

    def _runtime(self, zone_id: str) -> ZoneRuntime:
        """Cached runtime, loaded from the store on first use (caller holds the zone lock)."""
        runtime = self._runtimes.get(zone_id)
        if runtime is None:
            try:
                session = self.store.load_session(zone_id)
            except Exception as e:
                raise PersistenceFailure("load_session", e) from e
            runtime = ZoneRuntime(
                zone_id=zone_id,
                session=session,
                last_timestamp=session.last_reading_time if session else None,
            )
            self._runtimes[zone_id] = runtime
        return runtime

    @staticmethod
    def _session_writes(before: ZoneRuntime, after: ZoneRuntime,
                        event: Optional[IrrigationEvent], key: str) -> List[PendingWrite]:
        writes = []
        if event is not None:
            writes.append(PendingWrite(key, "append_event", lambda s: s.append_event(event)))
        if after.session is not None:
            session = after.session
            writes.append(PendingWrite(key, "save_session", lambda s: s.save_session(session)))
        elif before.session is not None:
            zone_id = after.zone_id
            writes.append(PendingWrite(key, "clear_session", lambda s: s.clear_session(zone_id)))
        return writes

    def _persist(self, queue_key: str, writes: List[PendingWrite]) -> None:
        if not writes:
            return
        with self._guard:
            queue = self._pending.setdefault(queue_key, [])
            seen = {(w.key, w.operation) for w in queue}
            queue.extend(w for w in writes if (w.key, w.operation) not in seen)
        self._flush(queue_key)

    def _flush(self, queue_key: str) -> int:
        """Apply queued writes in order; raise PersistenceFailure at the first failure."""
        with self._guard:
            queue = list(self._pending.get(queue_key, []))
        done = 0
        for write in queue:
            try:
                write.apply(self.store)
            except Exception as e:
                with self._guard:
                    remaining = self._pending[queue_key] = self._pending[queue_key][done:]
                log.warning(f"Persistence failed for {queue_key} ({write!r}): {e}; "
                            f"{len(remaining)} write(s) pending")
                raise PersistenceFailure(write.operation, e, list(remaining)) from e
            done += 1
        with self._guard:
            self._pending[queue_key] = self._pending.get(queue_key, [])[done:]
            if not self._pending[queue_key]:
                del self._pending[queue_key]
        return done

    def _try_flush(self, queue_key: str) -> None:
        if queue_key not in self._pending:
            return
        try:
            self._flush(queue_key)
        except PersistenceFailure:
            pass  # still queued; this call's own writes will retry it

    def flush_pending(self, zone_id: Optional[str] = None) -> int:
        """Replay queued store writes for one zone (or everything).

        Returns the number of writes applied. Raises PersistenceFailure if the
        store is still failing.
        """
        with self._guard:
            keys = [zone_id] if zone_id is not None else list(self._pending)
        applied = 0
        for key in keys:
            if key.startswith("field:"):
                lock = self._field_locks.hold(key[len("field:"):])
            else:
                lock = self._zone_locks.hold(key)
            with lock:
                if key in self._pending:
                    applied += self._flush(key)
        if applied:
            log.info(f"Flushed {applied} pending write(s)")
        return applied

    def pending_writes(self, zone_id: Optional[str] = None) -> List[PendingWrite]:
        with self._guard:
            if zone_id is not None:
                return list(self._pending.get(zone_id, []))
            return [w for queue in self._pending.values() for w in queue]

    def zone_status(self, zone_id: str) -> dict:
        zone = self.registry.zone(zone_id)
        with self._zone_locks.hold(zone_id):
            runtime = self._runtime(zone_id)
        return {
            "zone_id": zone.zone_id,
            "device_id": zone.device_id,
            "zone_number": zone.zone_number,
            "field_id": zone.field_id,
            "state": runtime.state.value,
            "session": runtime.session.to_dict() if runtime.session else None,
            "last_reading_at": runtime.last_timestamp.isoformat() if runtime.last_timestamp else None,
            "dropped_readings": self.dropped_readings(zone_id),
            "pending_writes": len(self.pending_writes(zone_id)),
        }

    def dropped_readings(self, zone_id: str) -> int:
        return self._dropped.get(zone_id, 0)

    def latest_reading(self, device_id: str) -> Optional[Reading]:
        return self._latest.get(device_id)

    # ─────────────────────────────────────────────────────────────────────────
    # WATER BALANCE
    # ─────────────────────────────────────────────────────────────────────────
    def water_balance(self, field_id: str) -> WaterBalanceState:
        self.registry.field(field_id)
        with self._field_locks.hold(field_id):
            return self._balance(field_id)

    def _balance(self, field_id: str) -> WaterBalanceState:
        state = self._balances.get(field_id)
        if state is None:
            try:
                state = self.store.load_water_balance(field_id)
            except Exception as e:
                raise PersistenceFailure("load_water_balance", e) from e
            state = state or self.calculator.initial_state(field_id)
            self._balances[field_id] = state
        return state

    def irrigation_mm(self, field_id: str, day: date) -> float:
        """Depth applied to a field on a day, from its irrigation events."""
        field = self.registry.field(field_id)
        gallons = sum(e.total_gallons for e in self.store.events_on(field_id, day))
        return gallons_to_mm(gallons, field.area_acres)

    def update_water_balance(self, field_id: str, day: date,
                             reference_et_mm: Optional[float] = None,
                             rainfall_mm: Optional[float] = None) -> DailyBalance:
        """Apply one day to a field's balance.

        Reference ET and rainfall come from the climate feed unless given.
        Missing rainfall counts as none; missing reference ET is an error.
        """
        field = self.registry.field(field_id)
        with self._field_locks.hold(field_id):
            state = self._balance(field_id)

            if reference_et_mm is None:
                if self.climate is None:
                    raise ClimateDataUnavailable("no climate feed", field_id, day)
                reference_et_mm = self.climate.reference_et_mm(field, day)
            if rainfall_mm is None:
                rainfall_mm = 0.0
                if self.climate is not None:
                    try:
                        rainfall_mm = self.climate.rainfall_mm(field, day)
                    except ClimateDataUnavailable as e:
                        log.warning(f"{e}; assuming no rain")

            new_state, balance = self.calculator.apply_day(
                state, day, reference_et_mm, rainfall_mm, self.irrigation_mm(field_id, day)
            )
            self._balances[field_id] = new_state
            log.info(f"Field {field_id} {day}: ETc {balance.crop_et_mm:.1f} mm, "
                     f"deficit {balance.cumulative_deficit_mm:.1f} mm")
            self._persist(f"field:{field_id}", [PendingWrite(
                day.isoformat(), "save_water_balance",
                lambda s: s.save_water_balance(new_state),
            )])
        return balance

    # ─────────────────────────────────────────────────────────────────────────
    # RECOMMENDATIONS & VRI
    # ─────────────────────────────────────────────────────────────────────────
    def forecast_crop_et(self, field_id: str, start: Optional[date] = None,
                         days: int = RECOMMENDATION.forecast_window_days) -> float:
        """Crop ET expected over the next ``days`` days (0 without a feed)."""
        if self.climate is None:
            return 0.0
        field = self.registry.field(field_id)
        start = start or (utc_now().date() + timedelta(days=1))
        total = 0.0
        for offset, et0 in enumerate(self.climate.forecast_reference_et(field, start, days)):
            _, kc = self.calculator.kc_table.kc_for(start + timedelta(days=offset))
            total += et0 * kc
        return total

    def get_recommendation(self, field_id: str,
                           forecast_et_mm: Optional[float] = None) -> Recommendation:
        field = self.registry.field(field_id)
        state = self.water_balance(field_id)
        if forecast_et_mm is None:
            forecast_et_mm = self.forecast_crop_et(field_id)
        return self.recommender.recommend(
            field_id=field_id,
            deficit_mm=state.cumulative_deficit_mm,
            flow_rate_gpm=self.registry.field_flow_rate_gpm(field_id),
            area_acres=field.area_acres,
            forecast_et_mm=forecast_et_mm,
            vri_zones=self._vri_zones.get(field_id),
        )

    def build_vri_zones(self, field_id: str, ndvi_raster,
                        band_config: Optional[VigorBandConfig] = None,
                        cell_area_acres: Optional[float] = None) -> List[VRIZone]:
        """Build and remember VRI zones for a field; later recommendations use them."""
        field = self.registry.field(field_id)
        zones = build_zones(ndvi_raster, band_config, field_area_acres=field.area_acres,
                            cell_area_acres=cell_area_acres)
        with self._guard:
            self._vri_zones[field_id] = zones
        return zones

    def vri_zones(self, field_id: str) -> List[VRIZone]:
        return list(self._vri_zones.get(field_id, []))

    def set_vri_multiplier(self, field_id: str, zone_name: str, pct: float) -> VRIZone:
        """Operator edit of one zone's multiplier."""
        with self._guard:
            zones = self._vri_zones.get(field_id, [])
            for i, zone in enumerate(zones):
                if zone.zone_name == zone_name:
                    zones[i] = zone.with_multiplier(pct)
                    return zones[i]
        raise NotFound("VRI zone", f"{field_id}/{zone_name}")

    # ─────────────────────────────────────────────────────────────────────────
    # DEVICE HEALTH
    # ─────────────────────────────────────────────────────────────────────────
    def check_device_health(self, now: Optional[datetime] = None) -> List[str]:
        """Flag devices silent past their offline threshold. Sessions are left as they are."""
        thresholds = {d.device_id: d.offline_threshold_minutes for d in self.registry.devices()}
        return self.health.check(thresholds, now)


def engine_from_env(registry_path: Optional[str] = None,
                    climate_csv: Optional[str] = None) -> IrrigationEngine:
    """Engine wired from config/environment: registry JSON, climate source, alert sink."""
    registry_path = registry_path or API.registry_path
    climate_csv = climate_csv or API.climate_csv

    registry = (InMemoryDeviceRegistry.load_json(registry_path) if registry_path
                else InMemoryDeviceRegistry())

    climate: Optional[ClimateFeed] = None
    if climate_csv:
        table = TableClimateFeed.from_csv(climate_csv)
        climate = CompositeClimateFeed(OpenETClient(), table) if CLIMATE.openet_api_key else table
    elif CLIMATE.openet_api_key:
        climate = OpenETClient()

    notifier = WebhookNotifier(ALERTS.webhook_url) if ALERTS.webhook_url else LoggingNotifier()
    log.info(f"Engine: {len(registry.devices())} device(s), "
             f"climate={climate.name if climate else 'none'}, alerts={type(notifier).__name__}")
    return IrrigationEngine(registry, climate=climate, alerts=AlertCenter(notifier))
