"""
WebSocket Transport — Adapter over websocket-client's WebSocketApp

Owns one WebSocketApp and the daemon thread running its blocking
run_forever() loop. Each instance is single-use: a reconnect creates a new
transport.
"""

import socket
import threading
from dataclasses import dataclass
from typing import Callable, Optional

import websocket

from utils.logger import get_logger

logger = get_logger("listener.transport")


@dataclass
class TransportHandlers:
    """Callbacks installed on a transport. Each receives the transport first."""
    on_open: Callable
    on_message: Callable
    on_error: Callable
    on_close: Callable


def is_handshake_rejection(error) -> bool:
    """True when the endpoint refused the upgrade with a non-101 status."""
    return isinstance(error, websocket.WebSocketBadStatusException)


class WebSocketTransport:
    """A single persistent connection to the RPC endpoint."""

    def __init__(self, url: str):
        self._url = url
        self._app: Optional[websocket.WebSocketApp] = None
        self._thread: Optional[threading.Thread] = None

    @property
    def url(self) -> str:
        return self._url

    @property
    def is_open(self) -> bool:
        sock = self._app.sock if self._app is not None else None
        return bool(sock is not None and sock.connected)

    @property
    def thread(self) -> Optional[threading.Thread]:
        """The thread running run_forever(), once opened."""
        return self._thread

    def open(self, handlers: TransportHandlers) -> None:
        """Start connecting in the background. Returns immediately."""
        self._app = websocket.WebSocketApp(
            self._url,
            on_open=lambda ws: handlers.on_open(self),
            on_message=lambda ws, message: handlers.on_message(self, message),
            on_error=lambda ws, error: handlers.on_error(self, error),
            on_close=lambda ws, status, reason: handlers.on_close(self, status, reason),
        )
        self._thread = threading.Thread(
            target=self._app.run_forever,
            name="ws-transport",
            daemon=True,
        )
        self._thread.start()

    def send(self, text: str) -> None:
        if self._app is None:
            raise RuntimeError("Transport not opened")
        self._app.send(text)

    def close(self) -> None:
        """Send a close frame without waiting for the peer's reply, then drop the socket."""
        if self._app is None:
            return
        raw = self._raw_socket()
        try:
            self._app.close(timeout=0)
        except Exception as e:
            logger.warning(f"TRANSPORT_CLOSE_ERROR | error={e}")
        self._shutdown(raw)

    def terminate(self) -> None:
        """Drop the socket without a closing handshake."""
        if self._app is None:
            return
        self._app.keep_running = False
        self._shutdown(self._raw_socket())

    def join(self, timeout: Optional[float] = None) -> bool:
        """Wait for the run loop to exit. True when it has."""
        thread = self._thread
        if thread is None:
            return True
        if thread is not threading.current_thread():
            thread.join(timeout)
        return not thread.is_alive()

    def _raw_socket(self) -> Optional[socket.socket]:
        ws = self._app.sock if self._app is not None else None
        return ws.sock if ws is not None else None

    @staticmethod
    def _shutdown(raw: Optional[socket.socket]) -> None:
        # SHUT_RDWR wakes the run loop out of select(); close() alone does not
        if raw is None:
            return
        try:
            raw.shutdown(socket.SHUT_RDWR)
        except OSError as e:
            logger.debug(f"TRANSPORT_SHUTDOWN_SKIPPED | error={e}")
        try:
            raw.close()
        except OSError as e:
            logger.warning(f"TRANSPORT_TERMINATE_ERROR | error={e}")
