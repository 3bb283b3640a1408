"""
Event Store — Bounded In-Memory Event and Alert Buffer

Memory-only: events received while the process runs are kept up to a fixed
cap and lost on restart. All access is protected by a threading.Lock
because the listener thread appends while the HTTP thread reads.
"""

import collections
import json
import threading
from typing import List

from config.settings import MAX_STORED_ALERTS, MAX_STORED_EVENTS
from utils.logger import get_logger

logger = get_logger("store.event_store")


def _bigint_safe(value):
    """json.dumps fallback for values json cannot encode natively."""
    if isinstance(value, (bytes, bytearray)):
        return "0x" + bytes(value).hex()
    return str(value)


def _stringify_big_ints(value):
    if isinstance(value, bool):
        return value
    if isinstance(value, int):
        return str(value)
    if isinstance(value, dict):
        return {k: _stringify_big_ints(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_stringify_big_ints(v) for v in value]
    return value


def safe_stringify(obj) -> str:
    """JSON-encode with integers rendered as strings (uint256 safe)."""
    return json.dumps(_stringify_big_ints(obj), default=_bigint_safe)


def format_event(event) -> str:
    """e.g. 'Event Transfer: {"from": "0x..", "to": "0x..", "value": "1000000"}'"""
    return f"Event {event.name}: {safe_stringify(event.args)}"


class EventStore:
    """Thread-safe ring buffers of formatted events and recent alerts."""

    def __init__(self, max_events: int = MAX_STORED_EVENTS, max_alerts: int = MAX_STORED_ALERTS):
        self._lock = threading.Lock()
        self._events = collections.deque(maxlen=max_events)
        self._alerts = collections.deque(maxlen=max_alerts)
        self._total_received = 0
        self._undecoded = 0

    def handle_event(self, event) -> None:
        """Listener callback: store a decoded event; count undecodable ones."""
        if event is None:
            with self._lock:
                self._undecoded += 1
            return

        line = format_event(event)
        with self._lock:
            self._events.append(line)
            self._total_received += 1
        logger.info(line)

    def record_alert(self, severity: str, payload: dict) -> None:
        with self._lock:
            self._alerts.append({"severity": severity, **payload})

    def events(self) -> List[str]:
        with self._lock:
            return list(self._events)

    def alerts(self) -> List[dict]:
        with self._lock:
            return list(self._alerts)

    def stats(self) -> dict:
        with self._lock:
            return {
                "stored": len(self._events),
                "total_received": self._total_received,
                "undecoded": self._undecoded,
            }
