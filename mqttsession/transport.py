"""MQTT transport

The transport wraps the protocol engine (paho MQTT client) behind a small
event-driven interface. Lifecycle and message events are emitted, in order,
from the engine network loop thread:
    - "connected": connection (or reconnection) accepted by the broker
    - "reconnecting": connection lost or failed, the engine will retry
    - "closed": connection closed on request, no retry
    - "errored": terminal error reported by the broker, with the exception
    - "message": inbound message, with topic, payload and metadata
"""

import abc
import enum
import logging
import threading
import time
import urllib.parse

import paho.mqtt.client as mqttc
import paho.mqtt.properties as mqtt_props
import paho.mqtt.subscribeoptions as mqtt_subopts

from mqttsession import LOGNAME
from mqttsession.exceptions import TransportError
from mqttsession.settings import Config


logger = logging.getLogger(LOGNAME)


class MessageMetadata:
    """Protocol metadata of an inbound message.

    :param int qos: (optional, default 0)
    :param bool retain: (optional, default False)
    :param dict user_properties: (optional, default None)
        MQTT v5 user properties (empty if none or not supported).
    """

    def __init__(self, qos=0, retain=False, user_properties=None):
        self.qos = qos
        self.retain = retain
        self.user_properties = dict(user_properties or {})

    def __repr__(self):
        return (
            f"<MessageMetadata qos={self.qos} retain={self.retain}"
            f" user_properties={self.user_properties}>")


class TransportBase(abc.ABC):
    """Generic transport: listeners registry and protocol operations.

    :param str url: Broker URL.
    :param dict options: (optional, default None) Connection options.
    """

    EVENTS = ("connected", "reconnecting", "closed", "errored", "message")

    def __init__(self, url, options=None):
        self.url = url
        self.options = dict(options or {})
        self._listeners = {x: [] for x in self.EVENTS}
        self._listeners_lock = threading.Lock()

    def on(self, event, handler):
        """Register an event handler.

        :param str event: Event name, one of `EVENTS`.
        :param callable handler: Called with the event arguments.
        :raises ValueError: When event name is unknown.
        """
        if event not in self.EVENTS:
            raise ValueError(f"Unknown transport event: {event}")
        with self._listeners_lock:
            self._listeners[event].append(handler)

    def remove_listener(self, event, handler):
        """Deregister an event handler (ignored if not registered)."""
        with self._listeners_lock:
            try:
                self._listeners[event].remove(handler)
            except (KeyError, ValueError):
                pass

    def listener_count(self, event=None):
        """Count registered handlers, for one event or for all of them."""
        with self._listeners_lock:
            if event is not None:
                return len(self._listeners.get(event, []))
            return sum(len(x) for x in self._listeners.values())

    def _emit(self, event, *args):
        with self._listeners_lock:
            handlers = list(self._listeners[event])
        for handler in handlers:
            handler(*args)

    @abc.abstractmethod
    def connect(self):
        raise NotImplementedError

    @abc.abstractmethod
    def publish(self, topic, payload, *, qos=0, retain=False,
                user_properties=None):
        raise NotImplementedError

    @abc.abstractmethod
    def subscribe(self, topics, *, qos=0, no_local=False):
        raise NotImplementedError

    @abc.abstractmethod
    def unsubscribe(self, topics):
        raise NotImplementedError

    @abc.abstractmethod
    def end(self, force=False):
        raise NotImplementedError


class PahoTransport(TransportBase):
    """Transport based on paho MQTT client.

    Supported URL schemes: mqtt, tcp (port 1883), mqtts, ssl (port 8883),
    ws (port 80) and wss (port 443). Websockets path is taken from URL
    (default "/mqtt").

    :param str url: Broker URL, for example "mqtt://localhost:1883".
    :param dict options: (optional, default None) Connection options:
        - client_id (str): client ID (default: chosen by client or broker)
        - username, password (str): authentication data
        - keepalive (int, default 60): seconds between connection checks
        - protocol_version (int, default MQTTv5)
        - clean_start (bool, default True): start without previous session
        - session_expiry (int): seconds to keep session after disconnection
        - reconnect_min_delay, reconnect_max_delay (int, default 1 and 120)
        - tls (dict): ca_certs, certfile, keyfile, cert_reqs, tls_version
    :raises ValueError: When URL or options are not consistent.
    """

    class Transport(enum.Enum):
        tcp = "tcp"
        websockets = "websockets"

    OPTIONS = (
        "client_id", "username", "password", "keepalive", "protocol_version",
        "clean_start", "session_expiry", "reconnect_min_delay",
        "reconnect_max_delay", "tls",
    )
    TLS_OPTIONS = (
        "ca_certs", "certfile", "keyfile", "cert_reqs", "tls_version",
        "ciphers", "keyfile_password",
    )

    @property
    def _log_header(self):
        return f"[Transport @{self.host}:{self.port}]"

    @property
    def is_connected(self):
        return self._client is not None and self._client.is_connected()

    def __init__(self, url, options=None):
        super().__init__(url, options)
        parsed_url = urllib.parse.urlsplit(url)
        self.scheme = parsed_url.scheme.lower()
        if self.scheme not in Config.DEFAULT_PORTS:
            raise ValueError(f"Invalid broker URL scheme: {self.scheme}")
        self.host = parsed_url.hostname
        if not self.host:
            raise ValueError("Missing broker host!")
        self.port = parsed_url.port or Config.DEFAULT_PORTS[self.scheme]
        self.transport = PahoTransport.Transport.tcp
        if self.scheme in Config.WEBSOCKETS_SCHEMES:
            self.transport = PahoTransport.Transport.websockets
        self.ws_path = parsed_url.path or Config.WEBSOCKETS_PATH
        self.use_tls = (
            self.scheme in Config.TLS_SCHEMES or "tls" in self.options)

        self.client_id = self.options.get("client_id")
        self.username = self.options.get("username", parsed_url.username)
        self.password = self.options.get("password", parsed_url.password)
        self.keepalive = self.options.get("keepalive", Config.KEEP_ALIVE)
        self.protocol_version = self.options.get(
            "protocol_version", Config.PROTOCOL_VERSION)
        self.clean_start = self.options.get("clean_start", Config.CLEAN_START)
        self.session_expiry = self.options.get("session_expiry")
        self.reconnect_min_delay = self.options.get(
            "reconnect_min_delay", Config.RECONNECT_MIN_DELAY)
        self.reconnect_max_delay = self.options.get(
            "reconnect_max_delay", Config.RECONNECT_MAX_DELAY)
        self.tls = dict(self.options.get("tls") or {})

        self._verify_consistency()

        self._client = None
        self._closing = False
        self.session_present = False

    def _verify_consistency(self):
        for option in self.options:
            if option not in self.OPTIONS:
                raise ValueError(f"Unknown connection option: {option}")

        if self.protocol_version not in (
                mqttc.MQTTv31, mqttc.MQTTv311, mqttc.MQTTv5,):
            raise ValueError("Invalid broker protocol version!")

        if self.keepalive <= 0:
            raise ValueError("Invalid keep alive interval!")

        if not 0 < self.reconnect_min_delay <= self.reconnect_max_delay:
            raise ValueError("Invalid reconnect delays!")

        if (self.session_expiry is not None
                and self.protocol_version != mqttc.MQTTv5):
            logger.warning(
                f"{self._log_header} session expiry is only supported by"
                " MQTTv5 and is ignored.")

        if self.password is not None and self.username is None:
            raise ValueError("Password requires a username!")

        for tls_option in self.tls:
            if tls_option not in self.TLS_OPTIONS:
                raise ValueError(f"Unknown TLS option: {tls_option}")

    def _client_create(self):
        # Initialize paho MQTT client.
        logger.debug(f"{self._log_header} creating MQTT client...")
        client_kwargs = {
            "protocol": self.protocol_version,
            "transport": self.transport.value,
        }
        if self.client_id is not None:
            client_kwargs["client_id"] = self.client_id
        if self.protocol_version in (mqttc.MQTTv31, mqttc.MQTTv311,):
            client_kwargs["clean_session"] = self.clean_start
        logger.debug(
            f"{self._log_header} MQTT client parameters: {client_kwargs}")
        client = mqttc.Client(
            mqttc.CallbackAPIVersion.VERSION2, **client_kwargs)
        # Set client callbacks.
        client.on_connect = self._on_connect
        client.on_connect_fail = self._on_connect_fail
        client.on_disconnect = self._on_disconnect
        client.on_message = self._on_message
        return client

    def _client_apply_security(self):
        # Apply MQTT security (authentication, TLS...).
        logger.debug(f"{self._log_header} applying security on MQTT client...")
        if self.username is not None:
            logger.debug(f"{self._log_header} use MQTT client authentication")
            self._client.username_pw_set(self.username, password=self.password)
        if self.use_tls:
            logger.debug(f"{self._log_header} use MQTT client TLS")
            self._client.tls_set(**self.tls)

    def _client_connect(self):
        if self.transport == PahoTransport.Transport.websockets:
            self._client.ws_set_options(path=self.ws_path)
        self._client.reconnect_delay_set(
            min_delay=self.reconnect_min_delay,
            max_delay=self.reconnect_max_delay)
        # Set client connection properties.
        cli_conn_kwargs = {
            "host": self.host,
            "port": self.port,
            "keepalive": self.keepalive,
        }
        if self.protocol_version == mqttc.MQTTv5:
            cli_conn_kwargs["clean_start"] = self.clean_start
            if self.session_expiry is not None:
                conn_props = mqtt_props.Properties(
                    mqtt_props.PacketTypes.CONNECT)
                conn_props.SessionExpiryInterval = self.session_expiry
                cli_conn_kwargs["properties"] = conn_props
        # Connection is done by the network loop, which also reconnects.
        self._client.connect_async(**cli_conn_kwargs)

    def connect(self):
        """Instantiate the MQTT client and start connecting to the broker.

        Does not wait for the connection: "connected" event is emitted later.

        :raises ssl.SSLError: When TLS parameters are not valid.
        """
        self._closing = False
        self._client = self._client_create()
        self._client.enable_logger(logger)
        self._client_apply_security()
        self._client_connect()
        # Run a threaded interface to the network loop in the background.
        #  (events are emitted from this loop)
        self._client.loop_start()
        logger.debug(f"{self._log_header} connecting...")

    def _on_connect(
            self, client, userdata, connect_flags, reason_code, properties):
        if reason_code.is_failure:
            logger.error(
                f"{self._log_header} connection error reason: {reason_code}")
            exc = TransportError(f"Connection refused: {reason_code}")
            self._emit("errored", exc)
            return
        self.session_present = connect_flags.session_present
        logger.info(f"{self._log_header} connected")
        self._emit("connected")

    def _on_connect_fail(self, client, userdata):
        logger.warning(f"{self._log_header} connection failed, retrying...")
        self._emit("reconnecting")

    def _on_disconnect(
            self, client, userdata, disconnect_flags, reason_code, properties):
        if self._closing:
            logger.info(f"{self._log_header} disconnected")
            self._emit("closed")
            return
        logger.warning(
            f"{self._log_header} connection lost ({reason_code}),"
            " reconnecting...")
        self._emit("reconnecting")

    def _on_message(self, client, userdata, message):
        user_properties = {}
        properties = getattr(message, "properties", None)
        if properties is not None and hasattr(properties, "UserProperty"):
            user_properties = dict(properties.UserProperty)
        metadata = MessageMetadata(
            qos=message.qos, retain=message.retain,
            user_properties=user_properties)
        self._emit("message", message.topic, message.payload, metadata)

    def publish(self, topic, payload, *, qos=0, retain=False,
                user_properties=None):
        """Publish a payload (fire-and-forget).

        User properties are only sent with MQTTv5.

        :param str topic: Topic name.
        :param str|bytes payload: Encoded payload.
        :param int qos: (optional, default 0)
        :param bool retain: (optional, default False)
        :param dict user_properties: (optional, default None)
        :returns mqttc.MQTTMessageInfo: Publish information.
        """
        properties = None
        if user_properties and self.protocol_version == mqttc.MQTTv5:
            properties = mqtt_props.Properties(mqtt_props.PacketTypes.PUBLISH)
            properties.UserProperty = [
                (str(k), str(v)) for k, v in user_properties.items()]
        msg_info = self._client.publish(
            topic, payload, qos=qos, retain=retain, properties=properties)
        if msg_info.rc != mqttc.MQTT_ERR_SUCCESS:
            logger.warning(
                f"{self._log_header} message to {topic} not sent yet: "
                f"{mqttc.error_string(msg_info.rc)}")
        return msg_info

    def subscribe(self, topics, *, qos=0, no_local=False):
        """Subscribe to topics (fire-and-forget).

        No-local option (do not receive own publications) requires MQTTv5.

        :param list topics: Topic filters.
        :param int qos: (optional, default 0)
        :param bool no_local: (optional, default False)
        """
        if self.protocol_version == mqttc.MQTTv5:
            subscriptions = [
                (x, mqtt_subopts.SubscribeOptions(qos=qos, noLocal=no_local))
                for x in topics]
        else:
            subscriptions = [(x, qos) for x in topics]
        result, _ = self._client.subscribe(subscriptions)
        if result != mqttc.MQTT_ERR_SUCCESS:
            # Subscriptions are issued again at next connection.
            logger.debug(
                f"{self._log_header} subscription to {topics} not sent: "
                f"{mqttc.error_string(result)}")

    def unsubscribe(self, topics):
        """Unsubscribe from topics (fire-and-forget).

        :param list topics: Topic filters.
        """
        result, _ = self._client.unsubscribe(list(topics))
        if result != mqttc.MQTT_ERR_SUCCESS:
            logger.debug(
                f"{self._log_header} unsubscription from {topics} not sent: "
                f"{mqttc.error_string(result)}")

    def end(self, force=False, *, timeout=5):
        """Disconnect from the broker and stop the network loop.

        :param bool force: (optional, default False)
            Stop the network loop right away, without waiting for the
            disconnection to be effective.
        :param float timeout: (optional, default 5)
            Maximum time, in seconds, to wait for the disconnection.
        """
        if self._client is None:
            return
        self._closing = True
        self._client.disconnect()
        if not force:
            # Wait for the disconnection to be effective.
            deadline = time.monotonic() + timeout
            while (self._client.is_connected()
                    and time.monotonic() < deadline):
                time.sleep(0.1)
        # Kill the network loop that emits events.
        self._client.loop_stop()
        self._client.disable_logger()
        logger.debug(f"{self._log_header} ended")
