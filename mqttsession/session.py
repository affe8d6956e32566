"""MQTT session

A session owns exactly one broker connection (transport) at a time and
reflects its lifecycle in a status:

    offline -> connecting -> online -> reconnecting -> ...

Retries are done by the transport; the session only follows its events.
"""

import enum
import functools
import logging
import threading
import time

from mqttsession import LOGNAME, serializers
from mqttsession.echo import EchoFilter, generate_publisher_id
from mqttsession.exceptions import NotConnectedError, SessionClosedError
from mqttsession.settings import Config
from mqttsession.subscription import Subscription, SubscriptionRegistry
from mqttsession.transport import PahoTransport


logger = logging.getLogger(LOGNAME)


class ConnectionStatus(enum.Enum):
    offline = "offline"
    connecting = "connecting"
    online = "online"
    reconnecting = "reconnecting"
    error = "error"


_TRANSITIONS = {
    (ConnectionStatus.offline, "connect"): ConnectionStatus.connecting,
    (ConnectionStatus.connecting, "connected"): ConnectionStatus.online,
    (ConnectionStatus.reconnecting, "connected"): ConnectionStatus.online,
    (ConnectionStatus.error, "connected"): ConnectionStatus.online,
    (ConnectionStatus.online, "reconnecting"): ConnectionStatus.reconnecting,
    (ConnectionStatus.connecting, "reconnecting"): ConnectionStatus.connecting,
    (ConnectionStatus.reconnecting, "reconnecting"):
        ConnectionStatus.connecting,
}


def next_status(status, event):
    """Compute the status following a lifecycle event.

    :param ConnectionStatus status: Current status.
    :param str event: "connect", "connected", "reconnecting", "closed" or
        "errored".
    :returns ConnectionStatus: Next status (unchanged if event does not
        apply to current status).
    """
    if event == "closed":
        return ConnectionStatus.offline
    if event == "errored":
        return ConnectionStatus.error
    return _TRANSITIONS.get((status, event), status)


class Session:
    """MQTT client session, sharing one connection between its users.

    :param str url: Broker URL, for example "mqtt://localhost:1883".
    :param dict options: (optional, default None)
        Connection options, see `PahoTransport`.
    :param callable on_error: (optional, default None)
        Called with the exception when transport reports an error.
    :param type transport_cls: (optional, default PahoTransport)
        Transport class, instantiated with URL and options at connection.
    :param callable clock: (optional, default time.monotonic)
        Clock used by self-echo suppression.
    """

    @property
    def _log_header(self):
        return f"[Session {self.publisher_id}]"

    @property
    def status(self):
        return self._status

    @property
    def is_connected(self):
        return self._status == ConnectionStatus.online

    @property
    def is_closed(self):
        return self._is_closed

    @property
    def subscriptions(self):
        """Live subscriptions."""
        return list(self._registry)

    def __init__(
            self, url, options=None, *, on_error=None,
            transport_cls=PahoTransport, clock=time.monotonic):
        self.url = url
        self.options = dict(options or {})
        self.publisher_id = generate_publisher_id()
        self._on_error = on_error
        self._transport_cls = transport_cls
        self._transport = None
        self._transport_handlers = {}
        self._echo_filter = EchoFilter(self.publisher_id, clock=clock)
        self._registry = SubscriptionRegistry()
        self._status = ConnectionStatus.offline
        self._status_lock = threading.Lock()
        self._status_listeners = []
        self._is_closed = False

    def __enter__(self):
        self.connect()
        return self

    def __exit__(self, exc_type, exc_value, traceback):
        self.close()

    def __repr__(self):
        return (
            f"<Session {self.publisher_id} url={self.url}"
            f" status={self._status.value}>")

    def _verify_not_closed(self):
        if self._is_closed:
            raise SessionClosedError("Session is closed!")

    def add_status_listener(self, callback):
        """Register a callback called with the new status on each change."""
        with self._status_lock:
            self._status_listeners.append(callback)

    def remove_status_listener(self, callback):
        with self._status_lock:
            try:
                self._status_listeners.remove(callback)
            except ValueError:
                pass

    def _process_event(self, event):
        with self._status_lock:
            previous_status = self._status
            self._status = next_status(previous_status, event)
            status = self._status
            listeners = list(self._status_listeners)
        if status == previous_status:
            return
        logger.info(
            f"{self._log_header} status: {previous_status.value}"
            f" -> {status.value}")
        for listener in listeners:
            try:
                listener(status)
            except Exception:
                logger.exception(f"{self._log_header} status listener failed")

    def connect(self):
        """Create the transport and start connecting to the broker.

        Does nothing if a transport already exists. Subscriptions are issued
        each time the transport gets connected. If the transport fails to
        start, it is torn down (status back to offline) and the error is
        raised, so that connect can be called again.

        :raises SessionClosedError: When session has been closed.
        """
        self._verify_not_closed()
        if self._transport is not None:
            return
        logger.debug(f"{self._log_header} connecting to {self.url}...")
        transport = self._transport_cls(self.url, self.options)
        self._process_event("connect")
        self._transport_handlers = {
            "connected": functools.partial(self._on_connected, transport),
            "reconnecting": functools.partial(
                self._on_reconnecting, transport),
            "closed": functools.partial(self._on_closed, transport),
            "errored": functools.partial(self._on_errored, transport),
            "message": functools.partial(self._on_message, transport),
        }
        for event, handler in self._transport_handlers.items():
            transport.on(event, handler)
        self._transport = transport
        self._registry.attach(transport)
        try:
            transport.connect()
        except Exception:
            logger.exception(f"{self._log_header} connection failed")
            self._teardown()
            raise

    def _teardown(self):
        """Detach and end the current transport, status goes offline.

        Listeners are removed first, so the offline status set here is the
        last update caused by this transport.
        """
        transport = self._transport
        if transport is None:
            return
        for event, handler in self._transport_handlers.items():
            transport.remove_listener(event, handler)
        self._transport_handlers = {}
        self._registry.attach(None)
        transport.end(force=True)
        self._transport = None
        self._process_event("closed")

    def reconfigure(self, url=None, options=None):
        """Change connection parameters.

        If URL or options differ, the current transport is torn down, recent
        publish records are dropped and, if the session was connected, a new
        transport is created. Publisher ID and subscriptions are kept.

        :param str url: (optional, default None) New broker URL.
        :param dict options: (optional, default None) New connection options.
        :returns bool: True if connection parameters changed.
        :raises SessionClosedError: When session has been closed.
        """
        self._verify_not_closed()
        url = self.url if url is None else url
        options = self.options if options is None else dict(options)
        if url == self.url and options == self.options:
            return False
        logger.info(f"{self._log_header} reconfiguring connection to {url}")
        was_connected = self._transport is not None
        self._teardown()
        self._echo_filter.clear()
        self.url = url
        self.options = options
        if was_connected:
            self.connect()
        return True

    def close(self):
        """Close the connection and every subscription.

        A closed session can not be used anymore.
        """
        if self._is_closed:
            return
        logger.debug(f"{self._log_header} closing...")
        self._teardown()
        self._registry.close_all()
        self._echo_filter.clear()
        self._is_closed = True
        logger.debug(f"{self._log_header} closed")

    def _on_connected(self, transport):
        if transport is not self._transport:
            return
        self._process_event("connected")
        # Broker session may have been lost (clean start, expiry...).
        self._registry.resubscribe()

    def _on_reconnecting(self, transport):
        if transport is not self._transport:
            return
        self._process_event("reconnecting")

    def _on_closed(self, transport):
        if transport is not self._transport:
            return
        self._process_event("closed")

    def _on_errored(self, transport, exc):
        if transport is not self._transport:
            return
        logger.error(f"{self._log_header} transport error: {exc}")
        self._process_event("errored")
        if self._on_error is not None:
            try:
                self._on_error(exc)
            except Exception:
                logger.exception(f"{self._log_header} error callback failed")

    def _on_message(self, transport, topic, payload, metadata):
        if transport is not self._transport:
            return
        self._registry.dispatch(topic, payload, metadata)

    def publish(
            self, topic, value, *, qos=0, retain=False,
            mode=serializers.SerializationMode.auto, user_properties=None):
        """Publish a value.

        The value is encoded with the serialization mode, recorded for
        self-echo suppression and tagged with the session publisher ID.

        :param str topic: Topic name (no wildcards).
        :param value: Value to publish.
        :param int qos: (optional, default 0)
        :param bool retain: (optional, default False)
        :param SerializationMode|str mode: (optional, default auto)
        :param dict user_properties: (optional, default None)
            Additional MQTT v5 user properties.
        :raises NotConnectedError: When no connection exists.
        :raises SessionClosedError: When session has been closed.
        :raises PayloadEncodeError: When value can not be encoded.
        :raises ValueError: When topic or QoS is not valid.
        """
        self._verify_not_closed()
        transport = self._transport
        if transport is None:
            raise NotConnectedError("MQTT client not ready!")
        if not topic or "+" in topic or "#" in topic:
            raise ValueError("Invalid publish topic!")
        if qos not in (0, 1, 2,):
            raise ValueError("Invalid QoS level!")
        payload = serializers.encode(value, mode)
        self._echo_filter.record(topic, payload)
        return transport.publish(
            topic, payload, qos=qos, retain=retain,
            user_properties=self._echo_filter.tag(user_properties))

    def subscribe(
            self, topics, *, qos=0, exclude_self=False,
            self_window_ms=Config.SELF_WINDOW_MS,
            mode=serializers.SerializationMode.auto,
            on_message=None, parser=None):
        """Subscribe to one or more topics.

        Subscription is issued to the broker right away if connected, else
        at connection time.

        :param str|list topics: Topic filter(s).
        :param int qos: (optional, default 0)
        :param bool exclude_self: (optional, default False)
            Do not deliver messages published by this session. Uses MQTTv5
            no-local option and falls back to local suppression.
        :param float self_window_ms: (optional, default 100)
            Local suppression window, in milliseconds.
        :param SerializationMode|str mode: (optional, default auto)
        :param callable on_message: (optional, default None)
            Called as `on_message(value, topic, metadata)`.
        :param callable parser: (optional, default None)
            Custom bytes to value parser, replacing `mode` decoding.
        :returns Subscription: Subscription handle, holding latest value.
        :raises SessionClosedError: When session has been closed.
        """
        self._verify_not_closed()
        subscription = Subscription(
            self._registry, topics, qos=qos, exclude_self=exclude_self,
            self_window_ms=self_window_ms, mode=mode, on_message=on_message,
            parser=parser, echo_filter=self._echo_filter)
        self._registry.add(subscription)
        return subscription
