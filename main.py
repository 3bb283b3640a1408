"""
Resilient Contract Event Listener — Main Orchestrator

Entry point that wires all modules together:
- Listener: WebSocket subscription (transport thread + timer threads)
- Events server: Flask polling endpoint (daemon thread)
- Main thread: waits for SIGINT/SIGTERM

Lifecycle:
1. Load ABI → build decoder → resolve listener config
2. Start the events server
3. Start the listener (first connection attempted immediately)
4. Run until a shutdown signal
5. Stop the listener (terminal, no further reconnects)
"""

import signal
import sys
import threading

from config.settings import (
    ABI_PATH,
    CONTRACT_ADDRESS,
    EVENT_NAME,
    EVENTS_SERVER_HOST,
    EVENTS_SERVER_PORT,
    KEEP_ALIVE_INTERVAL_S,
    PONG_TIMEOUT_S,
    RECONNECT_JITTER,
    RPC_URL,
)
from modules.alerts.alert_manager import AlertManager
from modules.decoder.event_decoder import ContractEventDecoder
from modules.listener.config import ListenerConfig
from modules.listener.connection_manager import ConnectionManager, resilient_event_listener
from modules.server.events_server import create_app
from modules.store.event_store import EventStore
from utils.logger import get_logger

logger = get_logger("main")


class EventListenerService:
    """Owns the listener, the event store and the HTTP endpoint."""

    def __init__(self):
        self._store = EventStore()
        self._alert_manager = AlertManager(sink=self._store.record_alert)
        self._listener: ConnectionManager = None
        self._shutdown = threading.Event()

        signal.signal(signal.SIGINT, self._handle_shutdown)
        signal.signal(signal.SIGTERM, self._handle_shutdown)

    def run(self) -> None:
        """Main entry point — run until a shutdown signal."""
        logger.info("=" * 60)
        logger.info("EVENT LISTENER STARTING")
        logger.info("=" * 60)

        try:
            decoder = ContractEventDecoder.from_file(ABI_PATH, EVENT_NAME)
            config = ListenerConfig.resolve(
                rpc_url=RPC_URL,
                contract_address=CONTRACT_ADDRESS,
                topic_hash=decoder.topic_hash,
                event_name=EVENT_NAME,
                keep_alive_interval_s=KEEP_ALIVE_INTERVAL_S,
                pong_timeout_s=PONG_TIMEOUT_S,
                reconnect_jitter=RECONNECT_JITTER,
                decoder=decoder,
                callback=self._store.handle_event,
                alert_callback=self._alert_manager.fire,
            )
        except (OSError, ValueError) as e:
            logger.error(f"FATAL_CONFIG_ERROR | {e}")
            sys.exit(1)

        self._start_server()
        self._listener = resilient_event_listener(config)

        try:
            while not self._shutdown.wait(timeout=1.0):
                if self._listener.is_stopped:
                    logger.error("LISTENER_HALTED | shutting down")
                    break
        except KeyboardInterrupt:
            logger.info("KEYBOARD_INTERRUPT")
        finally:
            self._cleanup()

    def _start_server(self) -> None:
        app = create_app(self._store, health_fn=self._listener_health)
        thread = threading.Thread(
            target=app.run,
            kwargs={
                "host": EVENTS_SERVER_HOST,
                "port": EVENTS_SERVER_PORT,
                "use_reloader": False,
            },
            name="events-server",
            daemon=True,
        )
        thread.start()
        logger.info(f"EVENTS_SERVER | url=http://{EVENTS_SERVER_HOST}:{EVENTS_SERVER_PORT}")

    def _listener_health(self) -> dict:
        return self._listener.health() if self._listener is not None else {}

    def _handle_shutdown(self, signum, frame) -> None:
        """Graceful shutdown on SIGINT/SIGTERM."""
        logger.info(f"SHUTDOWN_SIGNAL | signal={signum}")
        self._shutdown.set()

    def _cleanup(self) -> None:
        logger.info("CLEANUP_START")
        if self._listener is not None:
            self._listener.stop()
        stats = self._store.stats()
        logger.info(
            f"FINAL_STATS | stored={stats['stored']} | "
            f"total_received={stats['total_received']} | undecoded={stats['undecoded']}"
        )
        logger.info("CLEANUP_COMPLETE")


def main():
    service = EventListenerService()
    service.run()


if __name__ == "__main__":
    main()
