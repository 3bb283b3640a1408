"""
Alert Manager — Multi-Channel Alert Dispatcher

Dispatches listener alerts to both the application log and a secondary sink
(the in-memory store behind GET /alerts). Handles CRITICAL, WARNING, and
INFO events aimed at operator visibility.
"""

import threading
from typing import Callable, Optional

from utils.logger import get_logger

logger = get_logger("alerts.alert_manager")


class AlertManager:
    """
    Manages structured alerts across dual channels:
    A) Application logs
    B) Optional sink callable(severity, payload)
    """
    def __init__(self, sink: Optional[Callable[[str, dict], None]] = None):
        self._sink = sink
        self._lock = threading.Lock()

    def fire(self, severity: str, payload: dict) -> None:
        """
        Fire an alert into the log and sink channels.
        Failures in the sink channel do not suppress the log channel.

        Args:
            severity: "CRITICAL", "WARNING", "INFO"
            payload: Dict containing at least 'event' and 'timestamp'
        """
        event_name = payload.get("event", "UNKNOWN_EVENT")

        details_str = " | ".join(f"{k}={v}" for k, v in payload.items() if k != "event")
        log_msg = f"ALERT | severity={severity} | event={event_name} | {details_str}"

        # Channel A: Logging
        if severity == "CRITICAL":
            logger.critical(log_msg)
        elif severity == "WARNING":
            logger.warning(log_msg)
        else:
            logger.info(log_msg)

        # Channel B: Sink (Protected)
        if self._sink is None:
            return
        try:
            with self._lock:
                self._sink(severity, payload)
        except Exception as e:
            logger.error(f"ALERT_SINK_FAIL | event={event_name} | error={e}")
