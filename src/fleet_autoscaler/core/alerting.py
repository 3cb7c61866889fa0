"""Bounded alert queue for operator-facing notifications."""

import uuid
import logging
from collections import deque
from datetime import datetime, timedelta
from typing import Any, Deque, Dict, List, Optional

from .types import Alert, AlertSeverity, AlertType


logger = logging.getLogger(__name__)

_LOG_LEVELS = {
    AlertSeverity.INFO: logging.INFO,
    AlertSeverity.WARNING: logging.WARNING,
    AlertSeverity.HIGH: logging.WARNING,
    AlertSeverity.CRITICAL: logging.ERROR,
}


class AlertQueue:
    """Append-only queue keeping the most recent alerts.

    The control loop only writes here; operators and tests read.
    """

    def __init__(self, max_size: int = 100):
        self.max_size = max_size
        self._alerts: Deque[Alert] = deque(maxlen=max_size)

    def push(
        self,
        alert_type: AlertType,
        severity: AlertSeverity,
        message: str,
        details: Optional[Dict[str, Any]] = None
    ) -> Alert:
        """Record a new alert and log it at a severity-matched level."""
        now = datetime.now()
        alert = Alert(
            alert_id=f"alert_{int(now.timestamp() * 1000)}_{uuid.uuid4().hex[:9]}",
            alert_type=alert_type,
            severity=severity,
            message=message,
            details=details or {},
            timestamp=now
        )
        self._alerts.append(alert)

        logger.log(
            _LOG_LEVELS.get(severity, logging.WARNING),
            f"Autoscaling alert [{severity.value}] {alert_type.value}: {message}"
        )
        return alert

    def recent(self, limit: int = 5) -> List[Alert]:
        """Most recent ``limit`` alerts, oldest first."""
        if limit <= 0:
            return []
        return list(self._alerts)[-limit:]

    def active(self, window: timedelta = timedelta(hours=1)) -> List[Alert]:
        """Alerts raised within ``window`` of now."""
        cutoff = datetime.now() - window
        return [a for a in self._alerts if a.timestamp > cutoff]

    def clear(self, alert_id: str) -> bool:
        """Remove an alert by id; returns whether it existed."""
        for alert in self._alerts:
            if alert.alert_id == alert_id:
                self._alerts.remove(alert)
                logger.info(f"Alert cleared: {alert_id}")
                return True
        return False

    def __len__(self) -> int:
        return len(self._alerts)

    def __iter__(self):
        return iter(list(self._alerts))
