"""
Listener Configuration — Resolved Once, Immutable Afterwards

All optional values are filled from DEFAULTS in resolve(); nothing
downstream applies its own fallback.
"""

from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional

from config.settings import (
    DEFAULT_KEEP_ALIVE_INTERVAL_S,
    DEFAULT_PONG_TIMEOUT_S,
    DEFAULT_RECONNECT_BASE_DELAY_S,
    DEFAULT_RECONNECT_MAX_DELAY_S,
)

DEFAULTS: Dict[str, Any] = {
    "keep_alive_interval_s": DEFAULT_KEEP_ALIVE_INTERVAL_S,
    "pong_timeout_s": DEFAULT_PONG_TIMEOUT_S,
    "reconnect_base_delay_s": DEFAULT_RECONNECT_BASE_DELAY_S,
    "reconnect_max_delay_s": DEFAULT_RECONNECT_MAX_DELAY_S,
    "reconnect_jitter": False,
}


@dataclass(frozen=True)
class ListenerConfig:
    rpc_url: str
    contract_address: str
    topic_hash: str
    event_name: str
    keep_alive_interval_s: float
    pong_timeout_s: float
    reconnect_base_delay_s: float
    reconnect_max_delay_s: float
    reconnect_jitter: bool
    decoder: Optional[Callable[[dict], Any]] = None
    callback: Optional[Callable[[Any], None]] = None
    alert_callback: Optional[Callable[[str, dict], None]] = None

    @property
    def keep_alive_enabled(self) -> bool:
        return self.keep_alive_interval_s > 0

    @classmethod
    def resolve(
        cls,
        rpc_url: str,
        contract_address: str,
        topic_hash: str,
        event_name: str = "",
        keep_alive_interval_s: Optional[float] = None,
        pong_timeout_s: Optional[float] = None,
        reconnect_base_delay_s: Optional[float] = None,
        reconnect_max_delay_s: Optional[float] = None,
        reconnect_jitter: Optional[bool] = None,
        decoder: Optional[Callable[[dict], Any]] = None,
        callback: Optional[Callable[[Any], None]] = None,
        alert_callback: Optional[Callable[[str, dict], None]] = None,
    ) -> "ListenerConfig":
        """
        Build a fully-resolved config.

        keep_alive_interval_s=None takes the default; 0 disables keep-alive.
        pong_timeout_s=None or 0 takes the default.

        Raises ValueError on missing endpoint/target identity or on
        out-of-range timings.
        """
        for name, value in (
            ("rpc_url", rpc_url),
            ("contract_address", contract_address),
            ("topic_hash", topic_hash),
        ):
            if not value:
                raise ValueError(f"{name} is required")

        if keep_alive_interval_s is None:
            keep_alive_interval_s = DEFAULTS["keep_alive_interval_s"]
        if not pong_timeout_s:
            pong_timeout_s = DEFAULTS["pong_timeout_s"]
        if reconnect_base_delay_s is None:
            reconnect_base_delay_s = DEFAULTS["reconnect_base_delay_s"]
        if reconnect_max_delay_s is None:
            reconnect_max_delay_s = DEFAULTS["reconnect_max_delay_s"]
        if reconnect_jitter is None:
            reconnect_jitter = DEFAULTS["reconnect_jitter"]

        if keep_alive_interval_s < 0:
            raise ValueError(f"keep_alive_interval_s must be >= 0, got {keep_alive_interval_s}")
        if pong_timeout_s < 0:
            raise ValueError(f"pong_timeout_s must be >= 0, got {pong_timeout_s}")
        if reconnect_base_delay_s <= 0:
            raise ValueError(f"reconnect_base_delay_s must be > 0, got {reconnect_base_delay_s}")
        if reconnect_max_delay_s < reconnect_base_delay_s:
            raise ValueError(
                f"reconnect_max_delay_s ({reconnect_max_delay_s}) must be >= "
                f"reconnect_base_delay_s ({reconnect_base_delay_s})"
            )

        return cls(
            rpc_url=rpc_url,
            contract_address=contract_address,
            topic_hash=topic_hash,
            event_name=event_name,
            keep_alive_interval_s=float(keep_alive_interval_s),
            pong_timeout_s=float(pong_timeout_s),
            reconnect_base_delay_s=float(reconnect_base_delay_s),
            reconnect_max_delay_s=float(reconnect_max_delay_s),
            reconnect_jitter=bool(reconnect_jitter),
            decoder=decoder,
            callback=callback,
            alert_callback=alert_callback,
        )
