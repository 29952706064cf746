"""Downstream verification-failure tracking during transition windows."""

from __future__ import annotations

import logging
import threading
from collections import defaultdict, deque
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Deque, Dict, Optional

from .clock import Clock, SystemClock
from .hooks import Alert, AlertSink, LoggingAlertSink, TelemetrySource

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class VerificationEvent:
    """One verification outcome observed by a consumer."""

    service_id: str
    kid: str
    ts: datetime
    ok: bool


class ConsistencyMonitor:
    """Bounded per-service window of verification outcomes.

    Consumers (or a telemetry feed) report outcomes; orchestrators ask for
    the failure ratio over a window. Threshold breaches only ever raise an
    alert; the monitor never takes corrective action.
    """

    def __init__(
        self,
        clock: Optional[Clock] = None,
        alert_sink: Optional[AlertSink] = None,
        max_events: int = 10_000,
    ) -> None:
        self.clock = clock or SystemClock()
        self.alert_sink = alert_sink or LoggingAlertSink()
        self.max_events = max_events
        self._events: Dict[str, Deque[VerificationEvent]] = defaultdict(
            lambda: deque(maxlen=self.max_events)
        )
        self._lock = threading.Lock()

    def record(self, event: VerificationEvent) -> None:
        with self._lock:
            self._events[event.service_id].append(event)

    def record_failure(self, service_id: str, kid: str, ts: Optional[datetime] = None) -> None:
        self.record(VerificationEvent(service_id, kid, ts or self.clock.now(), ok=False))

    def record_success(self, service_id: str, kid: str, ts: Optional[datetime] = None) -> None:
        self.record(VerificationEvent(service_id, kid, ts or self.clock.now(), ok=True))

    def _window(self, service_id: str, window_seconds: float, now: Optional[datetime]) -> list[VerificationEvent]:
        now = now or self.clock.now()
        since = now - timedelta(seconds=window_seconds)
        with self._lock:
            return [e for e in self._events.get(service_id, ()) if since <= e.ts <= now]

    def error_rate(self, service_id: str, window_seconds: float, now: Optional[datetime] = None) -> float:
        """Failures divided by all outcomes in the window (0.0 when there are none)."""
        events = self._window(service_id, window_seconds, now)
        if not events:
            return 0.0
        failures = sum(1 for e in events if not e.ok)
        return failures / len(events)

    def failures(
        self,
        service_id: str,
        window_seconds: float,
        kid: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> int:
        return sum(
            1
            for e in self._window(service_id, window_seconds, now)
            if not e.ok and (kid is None or e.kid == kid)
        )

    async def ingest(self, source: TelemetrySource, service_id: str, since: datetime) -> int:
        """Pull events from a telemetry backend into the window."""
        count = 0
        for event in await source.fetch(service_id, since):
            self.record(event)
            count += 1
        return count

    async def check(
        self,
        service_id: str,
        window_seconds: float,
        threshold: float,
        context: Optional[Dict[str, Any]] = None,
    ) -> Optional[Alert]:
        """Raise an alert if the error rate exceeds ``threshold``."""
        rate = self.error_rate(service_id, window_seconds)
        if rate <= threshold:
            return None
        alert = Alert(
            service_id=service_id,
            message=f"Verification error rate {rate:.1%} exceeds {threshold:.1%}",
            error_rate=rate,
            threshold=threshold,
            context=dict(context or {}),
            raised_at=self.clock.now(),
        )
        logger.warning(f"Error-rate threshold breached for {service_id}: {rate:.3f} > {threshold:.3f}")
        await self.alert_sink.alert(alert)
        return alert
