"""Error taxonomy for the irrigation engine."""
from datetime import datetime
from typing import Any, List, Optional


class IrrigationEngineError(Exception):
    """Base class for all engine errors."""


class ValidationError(IrrigationEngineError):
    """Malformed or missing reading fields. Rejected, never retried."""

    def __init__(self, field: str, message: str):
        self.field = field
        self.message = message
        super().__init__(f"{field}: {message}")


class NotFound(IrrigationEngineError):
    """Unresolvable device token, zone, or field."""

    def __init__(self, kind: str, key: Any):
        self.kind = kind
        self.key = key
        super().__init__(f"{kind} not found: {key}")


class OutOfOrderReading(IrrigationEngineError):
    """Reading timestamp is not after the last processed one for its zone."""

    def __init__(self, zone_id: str, timestamp: datetime, last_timestamp: Optional[datetime]):
        self.zone_id = zone_id
        self.timestamp = timestamp
        self.last_timestamp = last_timestamp
        super().__init__(
            f"zone {zone_id}: reading at {timestamp.isoformat()} "
            f"is not after {last_timestamp.isoformat() if last_timestamp else 'nothing'}"
        )


class CounterReset(OutOfOrderReading):
    """Device reported a lower cumulative volume than earlier in the session."""

    def __init__(self, zone_id: str, timestamp: datetime,
                 cumulative_gallons: float, previous_gallons: float):
        self.cumulative_gallons = cumulative_gallons
        self.previous_gallons = previous_gallons
        IrrigationEngineError.__init__(
            self,
            f"zone {zone_id}: cumulative volume went backwards "
            f"({previous_gallons:.1f} -> {cumulative_gallons:.1f} gal)"
        )
        self.zone_id = zone_id
        self.timestamp = timestamp
        self.last_timestamp = None


class PersistenceFailure(IrrigationEngineError):
    """A storage write failed after the transition was decided.

    The decision is already applied in memory; ``pending`` holds the writes that
    still have to reach the store. Retry with ``IrrigationEngine.flush_pending``.
    """

    def __init__(self, operation: str, cause: Exception, pending: Optional[List[Any]] = None):
        self.operation = operation
        self.cause = cause
        self.pending = pending or []
        super().__init__(f"{operation} failed: {cause}")


class ClimateDataUnavailable(IrrigationEngineError):
    """A climate feed has no value for the requested field and date."""

    def __init__(self, source: str, field_id: str, day):
        self.source = source
        self.field_id = field_id
        self.day = day
        super().__init__(f"{source} has no data for field {field_id} on {day}")
