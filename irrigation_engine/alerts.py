"""
Device alerts: flow start/stop, low battery, counter resets, offline devices.

``Notifier`` is the outbound collaborator (``Notify(alert)``). ``AlertCenter``
deduplicates alerts that stay open until resolved (battery and offline per
device, counter resets per zone) and
``DeviceHealthMonitor`` is the periodic offline check.
"""

import logging
import threading
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Dict, List, Optional, Tuple

import requests

from .config import ALERTS, AlertConfig

log = logging.getLogger(__name__)


class AlertType(Enum):
    FLOW_STARTED = "flow_started"
    FLOW_STOPPED = "flow_stopped"
    BATTERY_LOW = "battery_low"
    COUNTER_RESET = "counter_reset"
    DEVICE_OFFLINE = "device_offline"


class Severity(Enum):
    INFO = "info"
    WARNING = "warning"
    CRITICAL = "critical"


@dataclass(frozen=True)
class Alert:
    alert_type: AlertType
    severity: Severity
    message: str
    device_id: str
    zone_id: Optional[str] = None
    flow_rate_gpm: Optional[float] = None
    expected_flow_rate_gpm: Optional[float] = None
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> dict:
        return {
            "alert_type": self.alert_type.value,
            "severity": self.severity.value,
            "message": self.message,
            "device_id": self.device_id,
            "zone_id": self.zone_id,
            "flow_rate_gpm": self.flow_rate_gpm,
            "expected_flow_rate_gpm": self.expected_flow_rate_gpm,
            "created_at": self.created_at.isoformat(),
        }


class Notifier(ABC):
    @abstractmethod
    def notify(self, alert: Alert) -> None: ...


class LoggingNotifier(Notifier):
    """Writes alerts to the log."""

    _LEVELS = {
        Severity.INFO: logging.INFO,
        Severity.WARNING: logging.WARNING,
        Severity.CRITICAL: logging.ERROR,
    }

    def notify(self, alert: Alert) -> None:
        log.log(self._LEVELS[alert.severity],
                f"[{alert.alert_type.value}] {alert.message}")


class MemoryNotifier(Notifier):
    """Keeps alerts in a list; used by the API app and tests."""

    def __init__(self):
        self.alerts: List[Alert] = []

    def notify(self, alert: Alert) -> None:
        self.alerts.append(alert)

    def of_type(self, alert_type: AlertType) -> List[Alert]:
        return [a for a in self.alerts if a.alert_type is alert_type]


def exponential_backoff(attempt: int, base: float = 1.0, max_delay: float = 30.0) -> float:
    """Calculate delay with exponential backoff."""
    return min(base * (2 ** attempt), max_delay)


class WebhookNotifier(Notifier):
    """POSTs alerts as JSON to an HTTP endpoint, retrying with backoff."""

    def __init__(self, url: str, max_retries: int = 3, timeout: int = 10,
                 session: Optional[requests.Session] = None):
        self.url = url
        self.max_retries = max_retries
        self.timeout = timeout
        self.http = session or requests.Session()

    def notify(self, alert: Alert) -> None:
        for attempt in range(self.max_retries):
            try:
                resp = self.http.post(self.url, json=alert.to_dict(), timeout=self.timeout)
                if resp.status_code < 300:
                    return
                log.warning(f"Alert webhook HTTP {resp.status_code} (attempt {attempt+1})")
            except requests.exceptions.RequestException as e:
                log.warning(f"Alert webhook failed: {e} (attempt {attempt+1})")
            if attempt + 1 < self.max_retries:
                time.sleep(exponential_backoff(attempt))
        log.error(f"Alert {alert.alert_type.value} for {alert.device_id} not delivered "
                  f"after {self.max_retries} attempts")


class AlertCenter:
    """Raises alerts through a notifier, suppressing duplicates of open alerts."""

    # alert types that stay open until explicitly resolved
    _STICKY = (AlertType.BATTERY_LOW, AlertType.DEVICE_OFFLINE, AlertType.COUNTER_RESET)
    # sticky types tracked per zone rather than per device
    _ZONE_SCOPED = (AlertType.COUNTER_RESET,)

    def __init__(self, notifier: Optional[Notifier] = None, config: AlertConfig = ALERTS):
        self.notifier = notifier or LoggingNotifier()
        self.config = config
        self._lock = threading.Lock()
        self._open: Dict[Tuple[AlertType, str, Optional[str]], Alert] = {}

    def raise_alert(self, alert: Alert) -> bool:
        """Send an alert. Returns False when an identical open alert exists."""
        key = self._key(alert.alert_type, alert.device_id, alert.zone_id)
        if alert.alert_type in self._STICKY:
            with self._lock:
                if key in self._open:
                    return False
                self._open[key] = alert
        try:
            self.notifier.notify(alert)
        except Exception as e:
            log.error(f"Notifier failed for {alert.alert_type.value} on {alert.device_id}: {e}")
        return True

    def _key(self, alert_type: AlertType, device_id: str, zone_id: Optional[str] = None):
        return (alert_type, device_id, zone_id if alert_type in self._ZONE_SCOPED else None)

    def resolve(self, alert_type: AlertType, device_id: str, zone_id: Optional[str] = None) -> bool:
        with self._lock:
            return self._open.pop(self._key(alert_type, device_id, zone_id), None) is not None

    def is_open(self, alert_type: AlertType, device_id: str, zone_id: Optional[str] = None) -> bool:
        return self._key(alert_type, device_id, zone_id) in self._open

    def open_alerts(self) -> List[Alert]:
        with self._lock:
            return list(self._open.values())

    # ── reading-driven checks ───────────────────────────────────────────────
    def check_battery(self, device_id: str, zone_id: str, battery_level: Optional[float],
                      flow_rate_gpm: Optional[float] = None) -> None:
        if battery_level is None:
            return
        if battery_level > self.config.battery_warning_pct:
            self.resolve(AlertType.BATTERY_LOW, device_id)
            return
        severity = (Severity.CRITICAL if battery_level <= self.config.battery_critical_pct
                    else Severity.WARNING)
        self.raise_alert(Alert(
            alert_type=AlertType.BATTERY_LOW,
            severity=severity,
            message=f"Battery low on {device_id}: {battery_level:.0f}%",
            device_id=device_id,
            zone_id=zone_id,
            flow_rate_gpm=flow_rate_gpm,
        ))


class DeviceHealthMonitor:
    """Tracks when each device last reported and flags silent ones.

    An active session on an offline device is left open on purpose: it ends
    on the next low reading or an operator stop.
    """

    def __init__(self, alerts: AlertCenter):
        self.alerts = alerts
        self._lock = threading.Lock()
        self._last_seen: Dict[str, datetime] = {}
        self._offline: Dict[str, datetime] = {}

    def mark_seen(self, device_id: str, seen_at: datetime) -> bool:
        """Record a report. Returns True when the device was offline."""
        with self._lock:
            previous = self._last_seen.get(device_id)
            if previous is None or seen_at > previous:
                self._last_seen[device_id] = seen_at
            came_back = self._offline.pop(device_id, None) is not None
        if came_back:
            self.alerts.resolve(AlertType.DEVICE_OFFLINE, device_id)
            log.info(f"Device {device_id} back online")
        return came_back

    def last_seen(self, device_id: str) -> Optional[datetime]:
        return self._last_seen.get(device_id)

    def is_offline(self, device_id: str) -> bool:
        return device_id in self._offline

    def check(self, thresholds: Dict[str, float], now: Optional[datetime] = None) -> List[str]:
        """Mark devices silent past their threshold (minutes) as offline.

        Returns the ids of devices newly marked offline.
        """
        now = now or datetime.now(timezone.utc)
        newly_offline = []
        for device_id, threshold in thresholds.items():
            last = self._last_seen.get(device_id)
            if last is None or device_id in self._offline:
                continue
            silent = (now - last).total_seconds() / 60.0
            if silent <= threshold:
                continue
            with self._lock:
                self._offline[device_id] = now
            severity = Severity.CRITICAL if silent > threshold * 2 else Severity.WARNING
            self.alerts.raise_alert(Alert(
                alert_type=AlertType.DEVICE_OFFLINE,
                severity=severity,
                message=(f"Device {device_id} has been offline for {silent:.0f} minutes. "
                         f"Last seen at {last.isoformat()}"),
                device_id=device_id,
            ))
            log.warning(f"Device {device_id} offline: {silent:.0f} min since last seen")
            newly_offline.append(device_id)
        return newly_offline
