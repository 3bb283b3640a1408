import json

import pytest

from modules.listener.config import ListenerConfig

RPC_URL = "ws://test-url.com"
CONTRACT_ADDRESS = "0x12345"
TOPIC_HASH = "0xmockTopicHash"


class FakeTimer:
    def __init__(self, clock, delay_s, fn):
        self.clock = clock
        self.delay_s = delay_s
        self.fn = fn
        self.due = None
        self.cancelled = False
        self.fired = False

    def start(self):
        self.due = self.clock.now + self.delay_s
        self.clock.timers.append(self)

    def cancel(self):
        self.cancelled = True


class FakeClock:
    """Manual clock; timers fire in due order inside advance()."""

    def __init__(self):
        self.now = 0.0
        self.timers = []

    def timer_factory(self, delay_s, fn):
        return FakeTimer(self, delay_s, fn)

    def active(self):
        return [t for t in self.timers if not t.cancelled and not t.fired]

    def advance(self, seconds):
        target = self.now + seconds
        while True:
            due = [t for t in self.active() if t.due <= target + 1e-9]
            if not due:
                break
            timer = min(due, key=lambda t: t.due)
            self.now = timer.due
            timer.fired = True
            timer.fn()
        self.now = target


class FakeTransport:
    def __init__(self, url):
        self.url = url
        self.handlers = None
        self.sent = []
        self.close_calls = 0
        self.terminate_calls = 0
        self.is_open = False

    def open(self, handlers):
        self.handlers = handlers

    def send(self, text):
        self.sent.append(text)

    def close(self):
        self.close_calls += 1
        self.is_open = False

    def terminate(self):
        self.terminate_calls += 1
        self.is_open = False

    # Simulated remote side
    def emit_open(self):
        self.is_open = True
        self.handlers.on_open(self)

    def emit_message(self, message):
        if isinstance(message, dict):
            message = json.dumps(message)
        self.handlers.on_message(self, message)

    def emit_error(self, error):
        self.handlers.on_error(self, error)

    def emit_close(self, status=None, reason=None):
        self.is_open = False
        self.handlers.on_close(self, status, reason)

    def sent_json(self):
        return [json.loads(s) for s in self.sent]


class TransportFactory:
    def __init__(self):
        self.created = []

    def __call__(self, url):
        transport = FakeTransport(url)
        self.created.append(transport)
        return transport

    @property
    def latest(self):
        return self.created[-1]


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def transports():
    return TransportFactory()


@pytest.fixture
def make_config():
    def _make(**overrides):
        kwargs = dict(
            rpc_url=RPC_URL,
            contract_address=CONTRACT_ADDRESS,
            topic_hash=TOPIC_HASH,
            event_name="TestEvent",
        )
        kwargs.update(overrides)
        return ListenerConfig.resolve(**kwargs)
    return _make
