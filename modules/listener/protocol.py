"""
Subscription Protocol — JSON-RPC Request Encoding and Frame Classification

Outbound:
    subscribe  {"id": 1, "method": "eth_subscribe", "params": ["logs", {...}]}
    ping       {"id": 2, "method": "net_listening", "params": []}

Inbound frames are classified as subscribe confirmation, subscribe
rejection, keep-alive confirmation, event notification, or ignored.
Correlation is by request id against the requests still pending for the
current session; anything unrecognised is dropped, never raised.
"""

import enum
import json
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

from utils.logger import get_logger

logger = get_logger("listener.protocol")

SUBSCRIBE_REQUEST_ID = 1
KEEP_ALIVE_REQUEST_ID = 2
NOTIFICATION_METHOD = "eth_subscription"


class RequestKind(enum.Enum):
    SUBSCRIBE = "subscribe"
    KEEP_ALIVE = "keep_alive"


class FrameKind(enum.Enum):
    SUBSCRIBED = "subscribed"
    SUBSCRIBE_REJECTED = "subscribe_rejected"
    PONG = "pong"
    EVENT = "event"
    IGNORED = "ignored"


@dataclass(frozen=True)
class PendingRequest:
    """An in-flight request awaiting its correlated response."""
    id: int
    kind: RequestKind


@dataclass
class Frame:
    """Result of classifying one inbound frame."""
    kind: FrameKind
    subscription_id: Optional[str] = None
    raw_log: Optional[dict] = None
    error: Any = None
    reason: str = ""


@dataclass
class SubscriptionProtocol:
    """
    Per-session correlation state.

    A new instance is created for every connection attempt so confirmations
    and notifications from a superseded session never match.
    """
    contract_address: str
    topic_hash: str
    subscription_id: Optional[str] = None
    _pending: Dict[RequestKind, PendingRequest] = field(default_factory=dict)

    # ------------------------------------------------------------------
    # Outbound
    # ------------------------------------------------------------------

    def subscribe_request(self) -> str:
        """Encode the subscribe request and mark it pending."""
        self._pending[RequestKind.SUBSCRIBE] = PendingRequest(
            SUBSCRIBE_REQUEST_ID, RequestKind.SUBSCRIBE
        )
        return json.dumps({
            "id": SUBSCRIBE_REQUEST_ID,
            "method": "eth_subscribe",
            "params": [
                "logs",
                {"topics": [self.topic_hash], "address": self.contract_address},
            ],
        })

    def ping_request(self) -> str:
        """Encode the keep-alive ping and mark it pending."""
        self._pending[RequestKind.KEEP_ALIVE] = PendingRequest(
            KEEP_ALIVE_REQUEST_ID, RequestKind.KEEP_ALIVE
        )
        return json.dumps({
            "id": KEEP_ALIVE_REQUEST_ID,
            "method": "net_listening",
            "params": [],
        })

    def is_pending(self, kind: RequestKind) -> bool:
        return kind in self._pending

    def clear_pending(self, kind: RequestKind) -> None:
        self._pending.pop(kind, None)

    # ------------------------------------------------------------------
    # Inbound
    # ------------------------------------------------------------------

    def classify(self, data) -> Frame:
        """Parse one inbound text or binary frame. Never raises."""
        message = self._parse(data)
        if message is None:
            return Frame(FrameKind.IGNORED, reason="malformed")

        if "id" in message and message.get("method") is None:
            return self._classify_response(message)

        if message.get("method") == NOTIFICATION_METHOD:
            return self._classify_notification(message)

        return Frame(FrameKind.IGNORED, reason="unrecognised")

    def _classify_response(self, message: dict) -> Frame:
        msg_id = message.get("id")

        subscribe = self._pending.get(RequestKind.SUBSCRIBE)
        if subscribe is not None and msg_id == subscribe.id:
            if "error" in message:
                self.clear_pending(RequestKind.SUBSCRIBE)
                return Frame(FrameKind.SUBSCRIBE_REJECTED, error=message["error"])
            result = message.get("result")
            if not isinstance(result, str) or not result:
                # Malformed confirmation; the subscribe stays pending
                logger.warning(f"SUBSCRIBE_RESULT_INVALID | result={result!r}")
                return Frame(FrameKind.IGNORED, reason=f"invalid subscribe result {result!r}")
            self.clear_pending(RequestKind.SUBSCRIBE)
            self.subscription_id = result
            return Frame(FrameKind.SUBSCRIBED, subscription_id=result)

        ping = self._pending.get(RequestKind.KEEP_ALIVE)
        if ping is not None and msg_id == ping.id and message.get("result") is True:
            self.clear_pending(RequestKind.KEEP_ALIVE)
            return Frame(FrameKind.PONG)

        return Frame(FrameKind.IGNORED, reason=f"uncorrelated response id={msg_id!r}")

    def _classify_notification(self, message: dict) -> Frame:
        params = message.get("params")
        if not isinstance(params, dict):
            return Frame(FrameKind.IGNORED, reason="notification without params")

        subscription = params.get("subscription")
        if self.subscription_id is None or subscription != self.subscription_id:
            return Frame(
                FrameKind.IGNORED,
                subscription_id=subscription,
                reason=f"stale subscription {subscription!r}",
            )

        return Frame(
            FrameKind.EVENT,
            subscription_id=subscription,
            raw_log=params.get("result"),
        )

    @staticmethod
    def _parse(data) -> Optional[dict]:
        if isinstance(data, (bytes, bytearray)):
            try:
                data = data.decode("utf-8")
            except UnicodeDecodeError as e:
                logger.warning(f"FRAME_DECODE_FAILED | error={e}")
                return None
        if not isinstance(data, str):
            logger.warning(f"FRAME_UNEXPECTED_TYPE | type={type(data).__name__}")
            return None
        try:
            message = json.loads(data)
        except json.JSONDecodeError as e:
            logger.warning(f"FRAME_PARSE_FAILED | error={e}")
            return None
        if not isinstance(message, dict):
            logger.warning(f"FRAME_NOT_OBJECT | type={type(message).__name__}")
            return None
        return message
