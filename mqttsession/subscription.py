"""MQTT subscriptions

A subscription describes which topics are wanted and how their messages are
processed (self-echo suppression, decoding, delivery). Subscriptions of a
session are bookkept by a registry which shares transport-level
subscriptions between overlapping subscriptions: a topic is unsubscribed
from the broker only when no live subscription references it anymore.
"""

import logging
import threading

import paho.mqtt.client as mqttc

from mqttsession import LOGNAME, serializers
from mqttsession.settings import Config


logger = logging.getLogger(LOGNAME)


class _NoMessage:
    """Marker of a subscription that did not receive any message yet."""

    def __bool__(self):
        return False

    def __repr__(self):
        return "NO_MESSAGE"


NO_MESSAGE = _NoMessage()


def _verify_qos(qos):
    if qos not in (0, 1, 2,):
        raise ValueError("Invalid QoS level!")


class Subscription:
    """Subscription to one or more topics, with the latest value received.

    Created by `Session.subscribe`, a subscription lives until `close` is
    called (also when leaving a `with` block or when its session is closed).

    :param SubscriptionRegistry registry: Registry the subscription joins.
    :param str|list topics: Topic filter(s), wildcards (+, #) allowed.
    :param int qos: (optional, default 0)
    :param bool exclude_self: (optional, default False)
        Suppress messages published by the same session.
    :param float self_window_ms: (optional, default 100)
        Time window for self-echo suppression by fingerprint.
    :param SerializationMode|str mode: (optional, default auto)
        Serialization mode used to decode payloads.
    :param callable on_message: (optional, default None)
        Called as `on_message(value, topic, metadata)` for every message.
    :param callable parser: (optional, default None)
        Converts raw payload bytes to a value, replacing `mode` decoding.
    :param EchoFilter echo_filter: (optional, default None)
        Session self-echo filter.
    """

    @property
    def _log_header(self):
        return f"[Subscription {','.join(self.topics)}]"

    @property
    def value(self):
        """Latest decoded value, `NO_MESSAGE` until the first message."""
        return self._value

    @property
    def has_value(self):
        return self._value is not NO_MESSAGE

    def __init__(
            self, registry, topics, *, qos=0, exclude_self=False,
            self_window_ms=Config.SELF_WINDOW_MS,
            mode=serializers.SerializationMode.auto,
            on_message=None, parser=None, echo_filter=None):
        if isinstance(topics, str):
            topics = [topics]
        self.topics = list(dict.fromkeys(topics))
        if len(self.topics) <= 0 or not all(
                isinstance(x, str) and x for x in self.topics):
            raise ValueError("Invalid subscription topics!")
        _verify_qos(qos)
        if self_window_ms < 0:
            raise ValueError("Invalid self window duration!")

        self.qos = qos
        self.exclude_self = exclude_self
        self.self_window_ms = self_window_ms
        self.mode = mode
        self._serializer = serializers.get_payload_serializer_cls(mode)()
        self._on_message = on_message
        self._parser = parser
        self._echo_filter = echo_filter
        self._registry = registry

        self._value = NO_MESSAGE
        self.topic = None
        self.is_active = True

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_value, traceback):
        self.close()

    def __repr__(self):
        return (
            f"<Subscription topics={self.topics} qos={self.qos}"
            f" exclude_self={self.exclude_self} active={self.is_active}>")

    def matches(self, topic):
        """Whether a topic name matches one of the subscription filters."""
        return any(mqttc.topic_matches_sub(x, topic) for x in self.topics)

    def _parse(self, payload):
        if self._parser is not None:
            return self._parser(bytes(payload))
        return self._serializer.decode(payload)

    def handle_message(self, topic, payload, metadata=None):
        """Process an inbound message.

        Message goes through self-echo suppression (if wanted), decoding,
        then updates the latest value and is given to `on_message` callback.
        Parser and callback errors are logged and do not propagate.

        :param str topic: Message topic.
        :param bytes payload: Message raw payload.
        :param MessageMetadata metadata: (optional, default None)
        :returns bool: True if the message has been delivered.
        """
        if not self.is_active or not self.matches(topic):
            return False
        if self.exclude_self and self._echo_filter is not None:
            if self._echo_filter.is_own_echo(
                    topic, payload, metadata, self.self_window_ms):
                logger.debug(f"{self._log_header} own message from {topic}"
                             " suppressed")
                return False
        try:
            value = self._parse(payload)
        except Exception:
            logger.exception(
                f"{self._log_header} failed to parse message from {topic}")
            return False
        self._value = value
        self.topic = topic
        if self._on_message is not None:
            try:
                self._on_message(value, topic, metadata)
            except Exception:
                logger.exception(
                    f"{self._log_header} on_message callback failed")
        return True

    def close(self):
        """Stop the subscription (unsubscribes topics no longer used)."""
        if not self.is_active:
            return
        self.is_active = False
        self._registry.remove(self)


class SubscriptionRegistry:
    """Bookkeeping of the live subscriptions of a session.

    Transport-level options of a topic combine those of all subscriptions
    referencing it: highest QoS, and no-local only if every subscription
    excludes its own messages.
    """

    def __init__(self):
        self._subscriptions = []
        self._transport = None
        self._lock = threading.RLock()

    def __len__(self):
        with self._lock:
            return len(self._subscriptions)

    def __iter__(self):
        with self._lock:
            return iter(list(self._subscriptions))

    @property
    def topics(self):
        """Topic filters referenced by live subscriptions."""
        with self._lock:
            return sorted(self._topic_options())

    def attach(self, transport):
        """Set the transport to subscribe with (None to detach)."""
        with self._lock:
            self._transport = transport

    def _topic_options(self):
        options = {}
        for subscription in self._subscriptions:
            for topic in subscription.topics:
                qos, no_local = options.get(topic, (0, True))
                options[topic] = (
                    max(qos, subscription.qos),
                    no_local and subscription.exclude_self,
                )
        return options

    def _subscribe(self, topic_options):
        # Group topics sharing the same options in a single request.
        groups = {}
        for topic, options in topic_options.items():
            groups.setdefault(options, []).append(topic)
        for (qos, no_local), topics in sorted(groups.items()):
            self._transport.subscribe(topics, qos=qos, no_local=no_local)

    def _apply(self, previous_options):
        if self._transport is None:
            return
        current_options = self._topic_options()
        removed_topics = [
            x for x in previous_options if x not in current_options]
        if len(removed_topics) > 0:
            self._transport.unsubscribe(removed_topics)
        changed_options = {
            topic: options for topic, options in current_options.items()
            if previous_options.get(topic) != options
        }
        if len(changed_options) > 0:
            self._subscribe(changed_options)

    def add(self, subscription):
        """Register a subscription and subscribe its new topics.

        :param Subscription subscription: Subscription to add.
        """
        with self._lock:
            previous_options = self._topic_options()
            self._subscriptions.append(subscription)
            self._apply(previous_options)
        logger.debug(f"{subscription._log_header} registered")

    def remove(self, subscription):
        """Deregister a subscription and unsubscribe unused topics.

        :param Subscription subscription: Subscription to remove.
        """
        with self._lock:
            if subscription not in self._subscriptions:
                return
            previous_options = self._topic_options()
            self._subscriptions.remove(subscription)
            self._apply(previous_options)
        logger.debug(f"{subscription._log_header} removed")

    def resubscribe(self):
        """Issue again all transport subscriptions (after a connection)."""
        with self._lock:
            if self._transport is None:
                return
            topic_options = self._topic_options()
            if len(topic_options) > 0:
                self._subscribe(topic_options)

    def dispatch(self, topic, payload, metadata=None):
        """Deliver an inbound message to every matching subscription.

        :returns int: Number of subscriptions the message was delivered to.
        """
        with self._lock:
            subscriptions = list(self._subscriptions)
        delivered = 0
        for subscription in subscriptions:
            if subscription.handle_message(topic, payload, metadata):
                delivered += 1
        return delivered

    def close_all(self):
        """Close every live subscription."""
        for subscription in self:
            subscription.close()
