import json
from unittest.mock import MagicMock, patch

import pytest
import websocket

from modules.listener.connection_manager import ListenerState, resilient_event_listener

SUBSCRIBE_REQUEST = {
    "id": 1,
    "method": "eth_subscribe",
    "params": ["logs", {"topics": ["0xmockTopicHash"], "address": "0x12345"}],
}
PING_REQUEST = {"id": 2, "method": "net_listening", "params": []}


def _listen(make_config, transports, clock, **overrides):
    return resilient_event_listener(
        make_config(**overrides), transport_factory=transports, timer_factory=clock.timer_factory
    )


def _stream(manager, transport, subscription_id="0xabc"):
    transport.emit_open()
    transport.emit_message({"id": 1, "result": subscription_id})
    assert manager.state is ListenerState.STREAMING


def _notification(subscription_id, raw_log=None):
    return {
        "method": "eth_subscription",
        "params": {"subscription": subscription_id, "result": raw_log or {"data": "0xeventData"}},
    }


# ---------------------------------------------------------------------------
# Initialization & subscription
# ---------------------------------------------------------------------------

def test_entry_call_connects_immediately(make_config, transports, clock):
    manager = _listen(make_config, transports, clock)

    assert len(transports.created) == 1
    assert transports.latest.url == "ws://test-url.com"
    assert manager.state is ListenerState.CONNECTING


def test_open_sends_subscribe_request(make_config, transports, clock):
    manager = _listen(make_config, transports, clock)
    transports.latest.emit_open()

    assert transports.latest.sent_json() == [SUBSCRIBE_REQUEST]
    assert manager.state is ListenerState.SUBSCRIBING


def test_confirmation_routes_matching_notifications_only(make_config, transports, clock):
    decoded = {"name": "TestEvent"}
    decoder = MagicMock(return_value=decoded)
    callback = MagicMock()
    manager = _listen(make_config, transports, clock, decoder=decoder, callback=callback)
    transport = transports.latest

    _stream(manager, transport, "0xabc")
    assert manager.subscription_id == "0xabc"

    transport.emit_message(_notification("0xabc"))
    decoder.assert_called_once_with({"data": "0xeventData"})
    callback.assert_called_once_with(decoded)

    transport.emit_message(_notification("0xdef"))
    assert decoder.call_count == 1
    assert callback.call_count == 1


def test_notification_before_confirmation_is_dropped(make_config, transports, clock):
    callback = MagicMock()
    _listen(make_config, transports, clock, callback=callback)
    transports.latest.emit_open()

    transports.latest.emit_message(_notification("0xabc"))

    callback.assert_not_called()


def test_duplicate_confirmation_is_ignored(make_config, transports, clock):
    manager = _listen(make_config, transports, clock)
    _stream(manager, transports.latest, "0xabc")

    transports.latest.emit_message({"id": 1, "result": "0xother"})

    assert manager.subscription_id == "0xabc"
    assert manager.state is ListenerState.STREAMING


def test_malformed_frames_never_alter_subscription(make_config, transports, clock):
    callback = MagicMock()
    manager = _listen(make_config, transports, clock, callback=callback)
    transport = transports.latest
    transport.emit_open()

    # A confirmation without a usable result leaves the subscribe pending
    for frame in ['{"id": 1, "result": null}', '{"id": 1}', '{"id": 1, "result": ""}']:
        transport.emit_message(frame)
    assert manager.state is ListenerState.SUBSCRIBING
    assert transport.terminate_calls == 0

    transport.emit_message({"id": 1, "result": "0xabc"})
    assert manager.state is ListenerState.STREAMING

    for frame in ["not json", b"\xff\xfe", "[1, 2]", "{}", '{"id": 99, "result": 1}', 12345,
                  '{"id": 1, "result": null}', '{"id": 1}']:
        transport.emit_message(frame)

    assert manager.subscription_id == "0xabc"
    assert manager.state is ListenerState.STREAMING
    assert transport.close_calls == 0
    assert transport.terminate_calls == 0
    callback.assert_not_called()


# ---------------------------------------------------------------------------
# Decode outcomes
# ---------------------------------------------------------------------------

def test_undecodable_log_passes_none_to_callback(make_config, transports, clock):
    callback = MagicMock()
    manager = _listen(
        make_config, transports, clock, decoder=MagicMock(return_value=None), callback=callback
    )
    _stream(manager, transports.latest)

    transports.latest.emit_message(_notification("0xabc"))

    callback.assert_called_once_with(None)


def test_decoder_failure_skips_callback_and_keeps_session(make_config, transports, clock):
    callback = MagicMock()
    decoder = MagicMock(side_effect=[ValueError("bad log"), {"name": "TestEvent"}])
    manager = _listen(make_config, transports, clock, decoder=decoder, callback=callback)
    _stream(manager, transports.latest)

    transports.latest.emit_message(_notification("0xabc"))
    callback.assert_not_called()

    transports.latest.emit_message(_notification("0xabc"))
    callback.assert_called_once_with({"name": "TestEvent"})
    assert manager.state is ListenerState.STREAMING


def test_callback_failure_is_contained(make_config, transports, clock):
    callback = MagicMock(side_effect=RuntimeError("consumer bug"))
    manager = _listen(make_config, transports, clock, callback=callback)
    _stream(manager, transports.latest)

    transports.latest.emit_message(_notification("0xabc"))
    transports.latest.emit_message(_notification("0xabc"))

    assert callback.call_count == 2
    assert manager.state is ListenerState.STREAMING


def test_without_decoder_raw_log_is_delivered(make_config, transports, clock):
    callback = MagicMock()
    manager = _listen(make_config, transports, clock, callback=callback)
    _stream(manager, transports.latest)

    transports.latest.emit_message(_notification("0xabc", {"data": "0x01"}))

    callback.assert_called_once_with({"data": "0x01"})


# ---------------------------------------------------------------------------
# Reconnection
# ---------------------------------------------------------------------------

def test_reconnect_delay_grows_between_consecutive_failures(make_config, transports, clock):
    _listen(make_config, transports, clock)

    transports.latest.emit_close()
    clock.advance(0.999)
    assert len(transports.created) == 1
    clock.advance(0.001)
    assert len(transports.created) == 2

    # Second failure without a successful open: 2s, not 1s again
    transports.latest.emit_close()
    clock.advance(1.0)
    assert len(transports.created) == 2
    clock.advance(1.0)
    assert len(transports.created) == 3
    assert clock.now == pytest.approx(3.0)


def test_reconnect_delay_is_capped(make_config, transports, clock):
    manager = _listen(
        make_config, transports, clock, reconnect_base_delay_s=1.0, reconnect_max_delay_s=4.0
    )

    delays = []
    for _ in range(5):
        delays.append(manager.backoff.current_delay)
        transports.latest.emit_close()
        clock.advance(manager.backoff.max_delay_s)

    assert delays == [1.0, 2.0, 4.0, 4.0, 4.0]


def test_successful_open_resets_backoff(make_config, transports, clock):
    manager = _listen(make_config, transports, clock)

    transports.latest.emit_close()
    clock.advance(1.0)
    transports.latest.emit_close()
    clock.advance(2.0)
    assert manager.backoff.current_delay == 4.0

    transports.latest.emit_open()
    assert manager.backoff.current_delay == 1.0

    transports.latest.emit_close()
    clock.advance(1.0)
    assert len(transports.created) == 4


def test_reconnect_creates_fresh_session(make_config, transports, clock):
    callback = MagicMock()
    manager = _listen(make_config, transports, clock, callback=callback)
    first = transports.latest
    _stream(manager, first, "0xabc")

    first.emit_close()
    assert manager.subscription_id is None
    assert manager.state is ListenerState.IDLE

    clock.advance(1.0)
    second = transports.latest
    assert second is not first
    _stream(manager, second, "0xdef")

    # Late frames from the superseded transport are ignored
    first.emit_message(_notification("0xabc"))
    second.emit_message(_notification("0xabc"))
    callback.assert_not_called()

    second.emit_message(_notification("0xdef"))
    callback.assert_called_once()


def test_error_event_does_not_reconnect_by_itself(make_config, transports, clock):
    manager = _listen(make_config, transports, clock)

    with patch("modules.listener.connection_manager.logger") as mock_logger:
        transports.latest.emit_error(ConnectionResetError("Test WS Error"))

    mock_logger.error.assert_called_once_with("WEBSOCKET_ERROR | error=Test WS Error")
    clock.advance(60)
    assert len(transports.created) == 1
    assert not manager.is_stopped


def test_subscribe_rejection_terminates_and_reconnects(make_config, transports, clock):
    manager = _listen(make_config, transports, clock)
    transport = transports.latest
    transport.emit_open()

    transport.emit_message({"id": 1, "error": {"code": -32601, "message": "not supported"}})

    assert transport.terminate_calls == 1
    assert manager.state is ListenerState.IDLE
    clock.advance(1.0)
    assert len(transports.created) == 2


def test_repeated_subscribe_rejection_keeps_growing_delay(make_config, transports, clock):
    manager = _listen(make_config, transports, clock)

    delays = []
    for _ in range(4):
        transports.latest.emit_open()
        transports.latest.emit_message({"id": 1, "error": {"code": -32000, "message": "no logs"}})
        delays.append(manager.backoff.current_delay)
        clock.advance(manager.backoff.max_delay_s)

    assert delays == [2.0, 4.0, 8.0, 16.0]
    assert len(transports.created) == 5


def test_transport_factory_failure_schedules_reconnect(make_config, transports, clock):
    calls = []

    def flaky_factory(url):
        calls.append(url)
        if len(calls) == 2:
            raise OSError("resolver unavailable")
        return transports(url)

    manager = resilient_event_listener(
        make_config(), transport_factory=flaky_factory, timer_factory=clock.timer_factory
    )
    transports.latest.emit_close()

    with patch("modules.listener.connection_manager.logger") as mock_logger:
        clock.advance(1.0)

    mock_logger.error.assert_called_once_with("TRANSPORT_CREATE_FAILED | error=resolver unavailable")
    assert manager.state is ListenerState.IDLE
    assert len(transports.created) == 1

    clock.advance(2.0)
    assert len(calls) == 3
    assert len(transports.created) == 2
    _stream(manager, transports.latest, "0xabc")


# ---------------------------------------------------------------------------
# Handshake rejection
# ---------------------------------------------------------------------------

def test_handshake_rejection_stops_listener(make_config, transports, clock):
    alert = MagicMock()
    manager = _listen(make_config, transports, clock, alert_callback=alert)
    transport = transports.latest

    error = websocket.WebSocketBadStatusException(
        "Handshake status %d %s", 401, "Unauthorized"
    )
    transport.emit_error(error)

    assert manager.is_stopped
    assert manager.state is ListenerState.STOPPED
    assert transport.close_calls == 1
    assert alert.call_args[0][0] == "CRITICAL"
    assert alert.call_args[0][1]["event"] == "LISTENER_HALTED"
    assert alert.call_args[0][1]["status"] == 401

    transport.emit_close()
    clock.advance(120)
    assert len(transports.created) == 1


# ---------------------------------------------------------------------------
# Keep-alive
# ---------------------------------------------------------------------------

def test_health_check_sent_at_interval(make_config, transports, clock):
    _listen(make_config, transports, clock)
    transport = transports.latest
    transport.emit_open()

    clock.advance(59.9)
    assert transport.sent_json() == [SUBSCRIBE_REQUEST]

    clock.advance(0.1)
    assert transport.sent_json() == [SUBSCRIBE_REQUEST, PING_REQUEST]


def test_missing_pong_terminates_transport_once(make_config, transports, clock):
    manager = _listen(make_config, transports, clock)
    transport = transports.latest
    _stream(manager, transport)

    clock.advance(60)
    assert len(transport.sent) == 2

    clock.advance(14.9)
    assert transport.terminate_calls == 0

    clock.advance(0.1)
    assert transport.terminate_calls == 1
    assert manager.state is ListenerState.IDLE

    # The terminated transport's own close event is not a second failure
    transport.emit_close()
    assert manager.backoff.attempts == 1

    clock.advance(1.0)
    assert len(transports.created) == 2
    clock.advance(300)
    assert transport.terminate_calls == 1


def test_pong_clears_health_check(make_config, transports, clock):
    manager = _listen(make_config, transports, clock)
    transport = transports.latest
    _stream(manager, transport)

    clock.advance(60)
    transport.emit_message({"id": 2, "result": True})
    clock.advance(30)
    assert transport.terminate_calls == 0

    clock.advance(30)
    assert [m.get("method") for m in transport.sent_json()] == [
        "eth_subscribe", "net_listening", "net_listening",
    ]


def test_custom_keep_alive_timings(make_config, transports, clock):
    _listen(make_config, transports, clock, keep_alive_interval_s=5, pong_timeout_s=2)
    transport = transports.latest
    transport.emit_open()

    clock.advance(5)
    assert len(transport.sent) == 2
    clock.advance(2)
    assert transport.terminate_calls == 1


def test_keep_alive_disabled_with_zero_interval(make_config, transports, clock):
    _listen(make_config, transports, clock, keep_alive_interval_s=0)
    transport = transports.latest
    transport.emit_open()

    assert clock.active() == []
    clock.advance(3600)
    assert transport.sent_json() == [SUBSCRIBE_REQUEST]
    assert transport.terminate_calls == 0


def test_no_ping_when_transport_not_open(make_config, transports, clock):
    _listen(make_config, transports, clock)
    transport = transports.latest
    transport.emit_open()
    transport.is_open = False

    clock.advance(60)

    assert transport.sent_json() == [SUBSCRIBE_REQUEST]


def test_close_cancels_all_session_timers(make_config, transports, clock):
    _listen(make_config, transports, clock)
    transport = transports.latest
    transport.emit_open()
    clock.advance(60)  # ping outstanding, deadline armed

    transport.emit_close()

    pending = clock.active()
    assert len(pending) == 1
    assert pending[0].delay_s == 1.0


# ---------------------------------------------------------------------------
# Stop
# ---------------------------------------------------------------------------

def test_stop_closes_transport_and_prevents_reconnect(make_config, transports, clock):
    manager = _listen(make_config, transports, clock)
    transport = transports.latest

    manager.stop()

    assert transport.close_calls == 1
    assert manager.state is ListenerState.STOPPED

    transport.emit_close()
    clock.advance(5)
    assert len(transports.created) == 1


def test_stop_is_idempotent(make_config, transports, clock):
    manager = _listen(make_config, transports, clock)
    transport = transports.latest

    manager.stop()
    manager.stop()
    manager.stop()

    assert transport.close_calls == 1
    assert manager.state is ListenerState.STOPPED


def test_stop_cancels_pending_reconnect(make_config, transports, clock):
    manager = _listen(make_config, transports, clock)
    transports.latest.emit_close()
    assert len(clock.active()) == 1

    manager.stop()

    assert clock.active() == []
    clock.advance(3600)
    assert len(transports.created) == 1


def test_stop_while_streaming_cancels_keep_alive(make_config, transports, clock):
    manager = _listen(make_config, transports, clock)
    transport = transports.latest
    _stream(manager, transport)
    clock.advance(60)

    manager.stop()

    assert clock.active() == []
    clock.advance(3600)
    assert transport.terminate_calls == 0
    assert len(transport.sent) == 2


def test_start_after_stop_does_nothing(make_config, transports, clock):
    manager = _listen(make_config, transports, clock)
    manager.stop()

    manager.start()

    assert len(transports.created) == 1
    assert manager.state is ListenerState.STOPPED


def test_stale_reconnect_timer_after_stop_is_noop(make_config, transports, clock):
    manager = _listen(make_config, transports, clock)
    transports.latest.emit_close()
    reconnect_timer = clock.active()[0]

    manager.stop()
    reconnect_timer.fn()

    assert len(transports.created) == 1


# ---------------------------------------------------------------------------
# Alerts & health
# ---------------------------------------------------------------------------

def test_reconnect_alert_escalation_and_recovery(make_config, transports, clock):
    alert = MagicMock()
    _listen(make_config, transports, clock, alert_callback=alert)

    for _ in range(3):
        transports.latest.emit_close()
        clock.advance(30)
    transports.latest.emit_open()
    assert alert.call_count == 2

    transports.latest.emit_message({"id": 1, "result": "0xabc"})

    calls = [(c[0][0], c[0][1]["event"]) for c in alert.call_args_list]
    assert calls == [
        ("WARNING", "RECONNECT_SCHEDULED"),
        ("CRITICAL", "RECONNECT_FAILING"),
        ("INFO", "RECONNECT_RECOVERED"),
    ]
    assert alert.call_args_list[-1][0][1]["attempts_taken"] == 3


def test_alert_callback_failure_does_not_break_reconnect(make_config, transports, clock):
    alert = MagicMock(side_effect=RuntimeError("sink down"))
    _listen(make_config, transports, clock, alert_callback=alert)

    transports.latest.emit_close()
    clock.advance(1.0)

    assert len(transports.created) == 2


def test_health_snapshot(make_config, transports, clock):
    manager = _listen(make_config, transports, clock)
    _stream(manager, transports.latest, "0xabc")

    health = manager.health()

    assert health["state"] == "streaming"
    assert health["subscription_id"] == "0xabc"
    assert health["stopped"] is False
    assert health["keep_alive_enabled"] is True
    assert json.loads(json.dumps(health)) == health
