"""
Events Server — Minimal Polling Endpoint

GET /events  → JSON list of formatted events held in memory
GET /alerts  → recent operator alerts
GET /health  → listener state and store counters
/            → static files from ./public when present
"""

from pathlib import Path
from typing import Callable, Optional

from flask import Flask, jsonify

from config.settings import PROJECT_ROOT
from modules.store.event_store import EventStore


def create_app(
    store: EventStore,
    health_fn: Optional[Callable[[], dict]] = None,
    static_dir: Path = PROJECT_ROOT / "public",
) -> Flask:
    app = Flask(__name__, static_folder=str(static_dir), static_url_path="")

    @app.get("/events")
    def get_events():
        return jsonify(store.events())

    @app.get("/alerts")
    def get_alerts():
        return jsonify(store.alerts())

    @app.get("/health")
    def get_health():
        listener = health_fn() if health_fn else {}
        status = 200 if not listener.get("stopped") else 503
        return jsonify({"listener": listener, "store": store.stats()}), status

    @app.get("/")
    def index():
        if (static_dir / "index.html").exists():
            return app.send_static_file("index.html")
        return jsonify({"endpoints": ["/events", "/alerts", "/health"]})

    return app
