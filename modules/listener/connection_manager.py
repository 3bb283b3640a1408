"""
Connection Manager — Resilient Subscription Lifecycle

Keeps one eth_subscribe log subscription alive over a WebSocket transport:

    IDLE → CONNECTING → OPEN → SUBSCRIBING → STREAMING
    any non-terminal state → CLOSING → IDLE (reconnect pending)
    any non-terminal state → STOPPED (terminal)

Transport handlers and timer callbacks arrive on different threads
(websocket-client run loop, threading.Timer); all of them are serialised
through one RLock. Handlers fired by a transport that is no longer the
current session's transport are ignored, so close events from abandoned
connections can never schedule a reconnect.

Alerts (via config.alert_callback):
- First failure after a healthy session: WARNING RECONNECT_SCHEDULED
- Sustained failure (>= threshold): CRITICAL RECONNECT_FAILING
- Recovery (subscription confirmed again): INFO RECONNECT_RECOVERED
- Handshake rejection: CRITICAL LISTENER_HALTED
"""

import enum
import threading
from dataclasses import dataclass
from typing import Callable, Optional

from config.settings import RECONNECT_ALERT_THRESHOLD, RECONNECT_BACKOFF_FACTOR
from modules.listener import timers
from modules.listener.backoff import BackoffPolicy
from modules.listener.config import ListenerConfig
from modules.listener.keep_alive import KeepAliveMonitor
from modules.listener.protocol import FrameKind, SubscriptionProtocol
from modules.listener.timers import TimerFactory, TimerSet
from modules.listener.transport import (
    TransportHandlers,
    WebSocketTransport,
    is_handshake_rejection,
)
from utils.logger import get_logger
from utils.time_utils import utc_timestamp

logger = get_logger("listener.connection_manager")


class ListenerState(enum.Enum):
    IDLE = "idle"
    CONNECTING = "connecting"
    OPEN = "open"
    SUBSCRIBING = "subscribing"
    STREAMING = "streaming"
    CLOSING = "closing"
    STOPPED = "stopped"


_NON_TERMINAL = {
    ListenerState.IDLE,
    ListenerState.CONNECTING,
    ListenerState.OPEN,
    ListenerState.SUBSCRIBING,
    ListenerState.STREAMING,
    ListenerState.CLOSING,
}

TRANSITIONS = {
    ListenerState.IDLE: {ListenerState.CONNECTING},
    ListenerState.CONNECTING: {ListenerState.OPEN},
    ListenerState.OPEN: {ListenerState.SUBSCRIBING},
    ListenerState.SUBSCRIBING: {ListenerState.STREAMING},
    ListenerState.STREAMING: set(),
    ListenerState.CLOSING: {ListenerState.IDLE},
    ListenerState.STOPPED: set(),
}
for _state in _NON_TERMINAL:
    TRANSITIONS[_state] = TRANSITIONS[_state] | {ListenerState.STOPPED}
    if _state is not ListenerState.CLOSING:
        TRANSITIONS[_state] = TRANSITIONS[_state] | {ListenerState.CLOSING}


@dataclass
class Session:
    """State of one connection attempt. Replaced on every reconnect."""
    transport: object
    protocol: SubscriptionProtocol
    # Reconnects that preceded this open; cleared once the subscription is confirmed
    failures_before_open: int = 0


class ConnectionManager:
    """
    Owns the transport, the backoff schedule, the keep-alive monitor and
    every timer for a single subscription.
    """

    def __init__(
        self,
        config: ListenerConfig,
        transport_factory: Callable[[str], object] = WebSocketTransport,
        timer_factory: Optional[TimerFactory] = None,
    ):
        self._config = config
        self._transport_factory = transport_factory

        self._lock = threading.RLock()
        self._state = ListenerState.IDLE
        self._stopped = False
        self._session: Optional[Session] = None

        self._backoff = BackoffPolicy(
            base_delay_s=config.reconnect_base_delay_s,
            max_delay_s=config.reconnect_max_delay_s,
            backoff_factor=RECONNECT_BACKOFF_FACTOR,
            jitter=config.reconnect_jitter,
        )
        self._timers = TimerSet(timer_factory)
        self._keep_alive = KeepAliveMonitor(
            self._timers,
            interval_s=config.keep_alive_interval_s,
            pong_timeout_s=config.pong_timeout_s,
            send_ping=self._send_ping,
            on_timeout=self._on_health_check_timeout,
            lock=self._lock,
        )

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    @property
    def state(self) -> ListenerState:
        return self._state

    @property
    def is_stopped(self) -> bool:
        return self._stopped

    @property
    def subscription_id(self) -> Optional[str]:
        session = self._session
        return session.protocol.subscription_id if session else None

    @property
    def backoff(self) -> BackoffPolicy:
        return self._backoff

    def health(self) -> dict:
        """Snapshot for the /health endpoint."""
        with self._lock:
            return {
                "state": self._state.value,
                "stopped": self._stopped,
                "subscription_id": self.subscription_id,
                "reconnect_attempts": self._backoff.attempts,
                "next_reconnect_delay_s": self._backoff.current_delay,
                "keep_alive_enabled": self._keep_alive.enabled,
                "health_check_pending": self._keep_alive.pending,
            }

    def start(self) -> None:
        """Open a new transport. Returns immediately; progress is logged."""
        with self._lock:
            if self._stopped:
                logger.info("LISTENER_STOPPED | not reconnecting")
                return
            if not self._transition(ListenerState.CONNECTING):
                return

            logger.info(f"WEBSOCKET_CONNECTING | url={self._config.rpc_url}")
            logger.debug(f"SUBSCRIBE_TOPIC | topic_hash={self._config.topic_hash}")

            try:
                transport = self._transport_factory(self._config.rpc_url)
            except Exception as e:
                logger.error(f"TRANSPORT_CREATE_FAILED | error={e}")
                self._teardown_and_reschedule()
                return

            self._session = Session(
                transport=transport,
                protocol=SubscriptionProtocol(
                    contract_address=self._config.contract_address,
                    topic_hash=self._config.topic_hash,
                ),
            )
            try:
                transport.open(TransportHandlers(
                    on_open=self._handle_open,
                    on_message=self._handle_message,
                    on_error=self._handle_error,
                    on_close=self._handle_close,
                ))
            except Exception as e:
                logger.error(f"WEBSOCKET_OPEN_FAILED | error={e}")
                self._handle_close(transport, None, str(e))

    def stop(self) -> None:
        """
        Permanently stop the listener.

        Idempotent and safe from any state or thread. Outstanding timers are
        cancelled and in-flight requests abandoned; no transport is opened
        afterwards.
        """
        with self._lock:
            if self._stopped:
                return
            logger.info("LISTENER_STOPPING")
            self._stopped = True
            self._transition(ListenerState.STOPPED)

            self._keep_alive.disarm()
            self._timers.cancel_all()

            session, self._session = self._session, None

        # Outside the lock; the transport's own close event is stale by now
        if session is not None:
            try:
                session.transport.close()
            except Exception as e:
                logger.warning(f"DISCONNECT_ERROR | error={e}")
        logger.info("LISTENER_STOPPED")

    # ------------------------------------------------------------------
    # Transport handlers
    # ------------------------------------------------------------------

    def _handle_open(self, transport) -> None:
        with self._lock:
            if not self._is_current(transport):
                logger.debug("STALE_OPEN_IGNORED")
                return
            if not self._transition(ListenerState.OPEN):
                return
            logger.info("WEBSOCKET_OPENED")
            self._session.failures_before_open = self._backoff.reset()

            try:
                transport.send(self._session.protocol.subscribe_request())
            except Exception as e:
                # The transport's close event follows and drives the reconnect
                logger.error(f"SUBSCRIBE_SEND_FAILED | error={e}")
                return

            self._transition(ListenerState.SUBSCRIBING)
            self._keep_alive.arm()

    def _handle_message(self, transport, message) -> None:
        with self._lock:
            if not self._is_current(transport):
                return

            frame = self._session.protocol.classify(message)

            if frame.kind is FrameKind.SUBSCRIBED:
                logger.info(
                    f"SUBSCRIPTION_ESTABLISHED | event={self._config.event_name} | "
                    f"subscription_id={frame.subscription_id}"
                )
                self._transition(ListenerState.STREAMING)

                failures = self._session.failures_before_open
                self._session.failures_before_open = 0
                if failures > 0:
                    self._alert("INFO", "RECONNECT_RECOVERED", attempts_taken=failures)
            elif frame.kind is FrameKind.SUBSCRIBE_REJECTED:
                logger.error(f"SUBSCRIBE_REJECTED | error={frame.error}")
                # Not a recovery: carry on from the pre-open failure count
                self._backoff.resume(self._session.failures_before_open)
                self._terminate_session("subscribe rejected")
            elif frame.kind is FrameKind.PONG:
                self._keep_alive.pong_received()
            elif frame.kind is FrameKind.EVENT:
                self._deliver(frame.raw_log)
            else:
                logger.debug(f"FRAME_IGNORED | reason={frame.reason}")

    def _handle_error(self, transport, error) -> None:
        with self._lock:
            if not self._is_current(transport):
                return
            if is_handshake_rejection(error):
                status = getattr(error, "status_code", None)
                logger.error(f"UNEXPECTED_SERVER_RESPONSE | status={status} | error={error}")
                self._alert("CRITICAL", "LISTENER_HALTED", status=status, error=str(error))
                self.stop()
                return
            logger.error(f"WEBSOCKET_ERROR | error={error}")

    def _handle_close(self, transport, status=None, reason=None) -> None:
        with self._lock:
            if not self._is_current(transport):
                logger.debug("STALE_CLOSE_IGNORED")
                return
            logger.info(f"WEBSOCKET_CLOSED | status={status} | reason={reason}")
            self._teardown_and_reschedule()

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _teardown_and_reschedule(self) -> None:
        """Drop the current session and arm the next reconnect attempt."""
        self._transition(ListenerState.CLOSING)
        self._keep_alive.disarm()
        self._timers.cancel_all()
        self._session = None

        if self._stopped:
            return

        delay = self._backoff.next_delay()
        attempts = self._backoff.attempts
        logger.info(f"RECONNECT_SCHEDULED | delay_s={delay:.2f} | attempt={attempts}")
        if attempts == 1:
            self._alert("WARNING", "RECONNECT_SCHEDULED", attempt=attempts, delay_s=delay)
        elif attempts >= RECONNECT_ALERT_THRESHOLD:
            self._alert("CRITICAL", "RECONNECT_FAILING", attempt=attempts, delay_s=delay)

        self._timers.arm(timers.RECONNECT, delay, self._reconnect)
        self._transition(ListenerState.IDLE)

    def _reconnect(self) -> None:
        with self._lock:
            self.start()

    def _send_ping(self) -> bool:
        session = self._session
        if session is None or not session.transport.is_open:
            return False
        try:
            session.transport.send(session.protocol.ping_request())
        except Exception as e:
            logger.warning(f"PING_SEND_FAILED | error={e}")
            return False
        return True

    def _on_health_check_timeout(self) -> None:
        with self._lock:
            if self._session is not None:
                self._terminate_session("ping timeout")

    def _terminate_session(self, reason: str) -> None:
        """Drop the current transport and run the close path immediately."""
        transport = self._session.transport
        try:
            transport.terminate()
        except Exception as e:
            logger.warning(f"TRANSPORT_TERMINATE_ERROR | error={e}")
        self._handle_close(transport, None, reason)

    def _deliver(self, raw_log) -> None:
        decoder = self._config.decoder
        if decoder is None:
            event = raw_log
        else:
            try:
                event = decoder(raw_log)
            except Exception as e:
                logger.error(f"EVENT_DECODE_FAILED | error={type(e).__name__}: {e}")
                return

        if event is None:
            logger.warning("EVENT_NOT_DECODED | topic not in ABI")
        else:
            logger.info(f"EVENT_RECEIVED | name={getattr(event, 'name', None)}")

        if self._config.callback is None:
            return
        try:
            self._config.callback(event)
        except Exception as e:
            logger.error(f"CALLBACK_FAILED | error={type(e).__name__}: {e}", exc_info=True)

    def _is_current(self, transport) -> bool:
        return self._session is not None and self._session.transport is transport

    def _transition(self, new_state: ListenerState) -> bool:
        if new_state not in TRANSITIONS[self._state]:
            logger.warning(
                f"INVALID_TRANSITION | from={self._state.value} | to={new_state.value}"
            )
            return False
        logger.debug(f"STATE | {self._state.value} -> {new_state.value}")
        self._state = new_state
        return True

    def _alert(self, severity: str, event: str, **details) -> None:
        if self._config.alert_callback is None:
            return
        payload = {"event": event, "timestamp": utc_timestamp(), **details}
        try:
            self._config.alert_callback(severity, payload)
        except Exception as e:
            logger.error(f"ALERT_DISPATCH_FAILED | event={event} | error={e}")


def resilient_event_listener(
    config: ListenerConfig,
    transport_factory: Callable[[str], object] = WebSocketTransport,
    timer_factory: Optional[TimerFactory] = None,
) -> ConnectionManager:
    """
    Create a listener and immediately attempt its first connection.

    The returned manager's stop() is the only teardown.
    """
    manager = ConnectionManager(config, transport_factory, timer_factory)
    manager.start()
    return manager
