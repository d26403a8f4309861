"""Persistence contract for sessions, events and water-balance state."""
import threading
from abc import ABC, abstractmethod
from datetime import date, datetime
from typing import Dict, List, Optional

from .sessions import IrrigationEvent, Session


class EngineStore(ABC):
    """Storage collaborator. Writes must be idempotent: sessions upsert by
    zone, events are keyed by ``event_id``, balances upsert by field."""

    @abstractmethod
    def load_session(self, zone_id: str) -> Optional[Session]: ...

    @abstractmethod
    def save_session(self, session: Session) -> None: ...

    @abstractmethod
    def clear_session(self, zone_id: str) -> None: ...

    @abstractmethod
    def append_event(self, event: IrrigationEvent) -> None: ...

    @abstractmethod
    def list_events(self, field_id: str, start: Optional[datetime] = None,
                    end: Optional[datetime] = None) -> List[IrrigationEvent]: ...

    @abstractmethod
    def load_water_balance(self, field_id: str): ...

    @abstractmethod
    def save_water_balance(self, state) -> None: ...

    def events_on(self, field_id: str, day: date) -> List[IrrigationEvent]:
        """Events of a field that started on ``day`` (UTC)."""
        return [e for e in self.list_events(field_id) if e.start_time.date() == day]


class InMemoryStore(EngineStore):
    """Thread-safe dictionary store."""

    def __init__(self):
        self._lock = threading.Lock()
        self._sessions: Dict[str, Session] = {}
        self._events: Dict[str, IrrigationEvent] = {}
        self._balances: Dict[str, object] = {}

    def load_session(self, zone_id: str) -> Optional[Session]:
        with self._lock:
            return self._sessions.get(zone_id)

    def save_session(self, session: Session) -> None:
        with self._lock:
            self._sessions[session.zone_id] = session

    def clear_session(self, zone_id: str) -> None:
        with self._lock:
            self._sessions.pop(zone_id, None)

    def append_event(self, event: IrrigationEvent) -> None:
        with self._lock:
            self._events.setdefault(event.event_id, event)

    def list_events(self, field_id: str, start: Optional[datetime] = None,
                    end: Optional[datetime] = None) -> List[IrrigationEvent]:
        with self._lock:
            events = [e for e in self._events.values() if e.field_id == field_id]
        if start is not None:
            events = [e for e in events if e.start_time >= start]
        if end is not None:
            events = [e for e in events if e.start_time < end]
        return sorted(events, key=lambda e: e.start_time)

    def load_water_balance(self, field_id: str):
        with self._lock:
            return self._balances.get(field_id)

    def save_water_balance(self, state) -> None:
        with self._lock:
            self._balances[state.field_id] = state
