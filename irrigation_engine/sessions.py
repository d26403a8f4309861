"""
Irrigation session detection and aggregation.

Per zone, flow readings drive a debounced hysteresis state machine:

    IDLE --(flow >= start)--> RISING --(N readings >= start)--> ACTIVE
    RISING --(flow < start)--> IDLE                 (provisional session discarded)
    ACTIVE <--> FALLING  while consecutive readings below end threshold < M
    FALLING --(M readings < end)--> IDLE            (session finalized)

The detector is pure: ``SessionDetector.step`` takes the zone's current runtime
and a reading and returns the next runtime plus a ``Transition``. Nothing is
mutated, so a rejected reading (out of order, counter reset) leaves the zone
exactly as it was. The ``SessionAggregator`` turns a closed session into an
immutable ``IrrigationEvent`` or drops it as noise.

Volume is integrated with right rectangles: each reading contributes its flow
times the minutes elapsed since the previous reading of the same session. When
every reading of a session carried the device's cumulative counter, the
counter delta is used instead.
"""

import logging
from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum
from typing import Optional, Tuple

from .config import DETECTOR, NOISE_FILTER, DetectorConfig, NoiseFilterConfig
from .errors import CounterReset, OutOfOrderReading
from .readings import Reading
from .registry import ZoneContext

log = logging.getLogger(__name__)


class ZoneState(Enum):
    IDLE = "idle"
    RISING = "rising"
    ACTIVE = "active"
    FALLING = "falling"

    @property
    def is_open(self) -> bool:
        """A session is open (irrigating) in ACTIVE and FALLING."""
        return self in (ZoneState.ACTIVE, ZoneState.FALLING)


class SessionAction(Enum):
    NONE = "none"          # idle reading, nothing happened
    RISING = "rising"      # provisional session opened or extended
    RESET = "reset"        # provisional session abandoned
    STARTED = "started"    # session became active
    UPDATED = "updated"    # open session accumulated a reading
    ENDED = "ended"        # session finalized into an event
    DROPPED = "dropped"    # session finalized but filtered as noise


@dataclass(frozen=True)
class Session:
    zone_id: str
    state: ZoneState
    start_time: datetime
    last_reading_time: datetime
    last_above_threshold_time: datetime
    last_below_threshold_time: Optional[datetime] = None
    consecutive_above: int = 0
    consecutive_below: int = 0
    accumulated_gallons: float = 0.0
    reading_count: int = 0
    peak_flow_gpm: float = 0.0
    first_cumulative_gallons: Optional[float] = None
    last_cumulative_gallons: Optional[float] = None
    cumulative_complete: bool = True

    @classmethod
    def open(cls, reading: Reading) -> "Session":
        return cls(
            zone_id=reading.zone_id,
            state=ZoneState.RISING,
            start_time=reading.timestamp,
            last_reading_time=reading.timestamp,
            last_above_threshold_time=reading.timestamp,
            consecutive_above=1,
            reading_count=1,
            peak_flow_gpm=reading.flow_rate_gpm,
            first_cumulative_gallons=reading.cumulative_gallons,
            last_cumulative_gallons=reading.cumulative_gallons,
            cumulative_complete=reading.cumulative_gallons is not None,
        )

    @property
    def duration_minutes(self) -> float:
        return (self.last_above_threshold_time - self.start_time).total_seconds() / 60.0

    @property
    def total_gallons(self) -> float:
        """Best volume estimate: counter delta when trustworthy, else integration."""
        if (self.cumulative_complete and self.reading_count > 1
                and self.first_cumulative_gallons is not None
                and self.last_cumulative_gallons is not None):
            return self.last_cumulative_gallons - self.first_cumulative_gallons
        return self.accumulated_gallons

    def accumulate(self, reading: Reading) -> "Session":
        """Fold one more reading into the session (returns a new Session)."""
        cumulative = reading.cumulative_gallons
        if (cumulative is not None and self.last_cumulative_gallons is not None
                and cumulative < self.last_cumulative_gallons):
            raise CounterReset(self.zone_id, reading.timestamp,
                               cumulative, self.last_cumulative_gallons)

        minutes = (reading.timestamp - self.last_reading_time).total_seconds() / 60.0
        return replace(
            self,
            last_reading_time=reading.timestamp,
            accumulated_gallons=self.accumulated_gallons + reading.flow_rate_gpm * minutes,
            reading_count=self.reading_count + 1,
            peak_flow_gpm=max(self.peak_flow_gpm, reading.flow_rate_gpm),
            last_cumulative_gallons=(
                cumulative if cumulative is not None else self.last_cumulative_gallons
            ),
            cumulative_complete=self.cumulative_complete and cumulative is not None,
        )

    def to_dict(self) -> dict:
        return {
            "zone_id": self.zone_id,
            "state": self.state.value,
            "start_time": self.start_time.isoformat(),
            "last_reading_time": self.last_reading_time.isoformat(),
            "last_above_threshold_time": self.last_above_threshold_time.isoformat(),
            "last_below_threshold_time": (
                self.last_below_threshold_time.isoformat()
                if self.last_below_threshold_time else None
            ),
            "consecutive_above": self.consecutive_above,
            "consecutive_below": self.consecutive_below,
            "accumulated_gallons": round(self.accumulated_gallons, 3),
            "reading_count": self.reading_count,
            "peak_flow_gpm": self.peak_flow_gpm,
        }


@dataclass(frozen=True)
class ZoneRuntime:
    """Everything the detector needs to know about one zone."""
    zone_id: str
    session: Optional[Session] = None
    last_timestamp: Optional[datetime] = None

    @property
    def state(self) -> ZoneState:
        return self.session.state if self.session else ZoneState.IDLE


@dataclass(frozen=True)
class IrrigationEvent:
    """A finalized irrigation. Immutable; the only durable detector output."""
    event_id: str
    zone_id: str
    field_id: str
    device_id: str
    start_time: datetime
    end_time: datetime
    total_gallons: float
    avg_flow_gpm: float
    peak_flow_gpm: float
    reading_count: int
    method: str = "drip"
    source: str = "sensor"

    @property
    def duration_minutes(self) -> float:
        return (self.end_time - self.start_time).total_seconds() / 60.0

    def to_dict(self) -> dict:
        return {
            "event_id": self.event_id,
            "zone_id": self.zone_id,
            "field_id": self.field_id,
            "device_id": self.device_id,
            "start_time": self.start_time.isoformat(),
            "end_time": self.end_time.isoformat(),
            "duration_minutes": round(self.duration_minutes, 2),
            "total_gallons": round(self.total_gallons, 2),
            "avg_flow_gpm": round(self.avg_flow_gpm, 3),
            "peak_flow_gpm": self.peak_flow_gpm,
            "reading_count": self.reading_count,
            "method": self.method,
            "source": self.source,
        }


@dataclass(frozen=True)
class SessionOutcome:
    """Result of closing a session: an event, or the reason it was dropped."""
    session: Session
    event: Optional[IrrigationEvent] = None
    dropped_reason: Optional[str] = None


@dataclass(frozen=True)
class Transition:
    zone_id: str
    previous: ZoneState
    state: ZoneState
    action: SessionAction
    timestamp: datetime
    session: Optional[Session] = None
    outcome: Optional[SessionOutcome] = None

    @property
    def event(self) -> Optional[IrrigationEvent]:
        return self.outcome.event if self.outcome else None


class SessionAggregator:
    """Finalizes closed sessions and applies the noise filter."""

    def __init__(self, noise_filter: NoiseFilterConfig = NOISE_FILTER):
        self.noise_filter = noise_filter

    def finalize(self, session: Session, zone: ZoneContext) -> SessionOutcome:
        duration = session.duration_minutes
        total = session.total_gallons
        nf = self.noise_filter

        if duration < nf.min_duration_minutes:
            reason = f"Duration too short: {duration:.1f} min < {nf.min_duration_minutes:g} min"
        elif total < nf.min_gallons:
            reason = f"Volume too small: {total:.1f} gal < {nf.min_gallons:g} gal"
        else:
            reason = None

        if reason:
            log.info(f"Session on zone {session.zone_id} dropped: {reason}")
            return SessionOutcome(session=session, dropped_reason=reason)

        event = IrrigationEvent(
            event_id=f"{session.zone_id}:{session.start_time.isoformat()}",
            zone_id=session.zone_id,
            field_id=zone.field_id,
            device_id=zone.device_id,
            start_time=session.start_time,
            end_time=session.last_above_threshold_time,
            total_gallons=total,
            avg_flow_gpm=total / duration if duration > 0 else 0.0,
            peak_flow_gpm=session.peak_flow_gpm,
            reading_count=session.reading_count,
            method=zone.method,
        )
        log.info(
            f"Session on zone {session.zone_id} ended: "
            f"{duration:.1f} min, {total:.1f} gal"
        )
        return SessionOutcome(session=session, event=event)


class SessionDetector:
    """Debounced hysteresis state machine for one zone's reading stream."""

    def __init__(self, config: DetectorConfig = DETECTOR,
                 aggregator: Optional[SessionAggregator] = None):
        self.config = config
        self.aggregator = aggregator or SessionAggregator()

    def step(self, zone: ZoneContext, runtime: ZoneRuntime,
             reading: Reading) -> Tuple[ZoneRuntime, Transition]:
        """Apply one reading. Raises ``OutOfOrderReading`` without side effects."""
        if runtime.last_timestamp is not None and reading.timestamp <= runtime.last_timestamp:
            raise OutOfOrderReading(runtime.zone_id, reading.timestamp, runtime.last_timestamp)

        cfg = self.config
        flow = reading.flow_rate_gpm
        session = runtime.session
        previous = runtime.state
        outcome = None

        if session is None:
            if flow >= cfg.start_threshold_gpm:
                session = Session.open(reading)
                action = SessionAction.RISING
                if session.consecutive_above >= cfg.start_readings:
                    session = replace(session, state=ZoneState.ACTIVE)
                    action = SessionAction.STARTED
            else:
                action = SessionAction.NONE

        elif session.state is ZoneState.RISING:
            if flow >= cfg.start_threshold_gpm:
                session = session.accumulate(reading)
                session = replace(
                    session,
                    consecutive_above=session.consecutive_above + 1,
                    last_above_threshold_time=reading.timestamp,
                )
                action = SessionAction.RISING
                if session.consecutive_above >= cfg.start_readings:
                    session = replace(session, state=ZoneState.ACTIVE)
                    action = SessionAction.STARTED
            else:
                session = None
                action = SessionAction.RESET

        else:
            session = session.accumulate(reading)
            if flow < cfg.end_threshold_gpm:
                session = replace(
                    session,
                    state=ZoneState.FALLING,
                    consecutive_above=0,
                    consecutive_below=session.consecutive_below + 1,
                    last_below_threshold_time=reading.timestamp,
                )
                action = SessionAction.UPDATED
                if session.consecutive_below >= cfg.end_readings:
                    outcome = self.aggregator.finalize(session, zone)
                    session = None
                    action = SessionAction.ENDED if outcome.event else SessionAction.DROPPED
            else:
                above = session.consecutive_above + 1 if flow >= cfg.start_threshold_gpm else 0
                session = replace(
                    session,
                    state=ZoneState.ACTIVE,
                    consecutive_above=above,
                    consecutive_below=0,
                    last_above_threshold_time=reading.timestamp,
                )
                action = SessionAction.UPDATED

        new_runtime = ZoneRuntime(
            zone_id=runtime.zone_id, session=session, last_timestamp=reading.timestamp
        )
        transition = Transition(
            zone_id=runtime.zone_id,
            previous=previous,
            state=new_runtime.state,
            action=action,
            timestamp=reading.timestamp,
            session=session,
            outcome=outcome,
        )
        if action is not SessionAction.NONE:
            log.debug(f"zone {runtime.zone_id}: {previous.value} -> {transition.state.value} "
                      f"({action.value}, {flow:.2f} gpm)")
        return new_runtime, transition

    def stop(self, zone: ZoneContext, runtime: ZoneRuntime) -> Tuple[ZoneRuntime, Optional[SessionOutcome]]:
        """Operator stop: close an open session with the data collected so far.

        Idempotent: an idle zone comes back unchanged with no outcome. A
        provisional (RISING) session is discarded without an event.
        """
        session = runtime.session
        if session is None:
            return runtime, None

        cleared = replace(runtime, session=None)
        if not session.state.is_open:
            log.info(f"Stop on zone {runtime.zone_id} discarded a provisional session")
            return cleared, SessionOutcome(
                session=session, dropped_reason="Session never became active"
            )
        return cleared, self.aggregator.finalize(session, zone)
