"""Global conftest"""

import os

import pytest

from dotenv import load_dotenv

from mqttsession.session import Session
from mqttsession.transport import TransportBase, MessageMetadata


# Load .env file (to load broker parameters from development environment)
load_dotenv('.env')


class FakeTransport(TransportBase):
    """In-memory transport recording operations and emitting events."""

    def __init__(self, url, options=None):
        super().__init__(url, options)
        self.calls = []
        self.is_ended = False

    def connect(self):
        self.calls.append(("connect",))

    def publish(self, topic, payload, *, qos=0, retain=False,
                user_properties=None):
        self.calls.append(
            ("publish", topic, payload, qos, retain,
             dict(user_properties or {})))

    def subscribe(self, topics, *, qos=0, no_local=False):
        self.calls.append(("subscribe", list(topics), qos, no_local))

    def unsubscribe(self, topics):
        self.calls.append(("unsubscribe", list(topics)))

    def end(self, force=False):
        self.is_ended = True
        self.calls.append(("end", force))

    def get_calls(self, name):
        return [x[1:] for x in self.calls if x[0] == name]

    def clear_calls(self):
        self.calls = []

    def emit(self, event, *args):
        self._emit(event, *args)

    def deliver(self, topic, payload, *, user_properties=None, qos=0,
                retain=False):
        metadata = MessageMetadata(
            qos=qos, retain=retain, user_properties=user_properties)
        self._emit("message", topic, payload, metadata)

    def echo_last_publish(self, *, keep_tag=True):
        """Send back the last published message, as a broker would."""
        topic, payload, qos, retain, user_properties = (
            self.get_calls("publish")[-1])
        if isinstance(payload, str):
            payload = payload.encode("utf-8")
        self.deliver(
            topic, payload, qos=qos, retain=retain,
            user_properties=user_properties if keep_tag else None)


class FakeClock:
    """Manually driven clock, in seconds."""

    def __init__(self, start=1000.0):
        self.now = start

    def __call__(self):
        return self.now

    def advance(self, ms):
        self.now += ms / 1000


@pytest.fixture
def transport_cls():
    return FakeTransport


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def broker_url():
    return "mqtt://broker.test:1883"


@pytest.fixture
def session(broker_url, transport_cls, clock):
    session = Session(broker_url, transport_cls=transport_cls, clock=clock)
    yield session
    session.close()


@pytest.fixture
def connected_session(session):
    session.connect()
    session._transport.emit("connected")
    return session


@pytest.fixture
def transport(connected_session):
    return connected_session._transport


@pytest.fixture
def live_broker_url():
    url = os.getenv("MQTTSESSION_TEST_BROKER_URL")
    if not url:
        pytest.skip("MQTTSESSION_TEST_BROKER_URL not set")
    return url
