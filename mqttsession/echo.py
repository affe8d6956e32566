"""Self-echo filter

Decides whether an inbound message is an echo of a message published by the
same session. Two mechanisms are applied in order:
    - identity tag: every publish carries the session publisher ID as an
      MQTT v5 user property, an inbound message carrying the same ID is an
      echo (exact, no time bound);
    - fingerprint window: every publish is recorded with a fingerprint of its
      payload, an inbound message on the same topic with the same fingerprint
      received shortly after is considered an echo.

The fingerprint window is a heuristic: identical payloads published on the
same topic by another client within the window are suppressed too.
"""

import collections
import hashlib
import logging
import threading
import time
import uuid

from mqttsession import LOGNAME
from mqttsession.settings import Config


logger = logging.getLogger(LOGNAME)


RecentPublish = collections.namedtuple(
    "RecentPublish", ("topic", "fingerprint", "timestamp"))


def generate_publisher_id(prefix=Config.PUBLISHER_ID_PREFIX):
    """Generate a publisher ID from randomness and wall-clock time.

    :param str prefix: (optional, default "self")
    :returns str: Publisher ID, for example "self-4f0c2a9e81b3-1760610000000".
    """
    return f"{prefix}-{uuid.uuid4().hex[:12]}-{int(time.time() * 1000)}"


def fingerprint(payload, prefix_size=Config.FINGERPRINT_PREFIX_SIZE):
    """Compute a payload fingerprint.

    Only the first `prefix_size` bytes are digested, along with the payload
    total length.

    :param bytes|str payload: Encoded payload (text is UTF-8 encoded).
    :param int prefix_size: (optional, default 512)
    :returns str: Hexadecimal digest.
    :raises TypeError: When payload is neither text nor binary.
    :raises UnicodeEncodeError: When text payload is not valid Unicode
        (lone surrogates).
    """
    if isinstance(payload, str):
        payload = payload.encode("utf-8")
    if not isinstance(payload, (bytes, bytearray, memoryview)):
        raise TypeError(
            f"Can not fingerprint {type(payload).__name__} payload!")
    digest = hashlib.blake2b(digest_size=16)
    digest.update(len(payload).to_bytes(8, "big"))
    digest.update(payload[:prefix_size])
    return digest.hexdigest()


class EchoFilter:
    """Tracks this session's publications to recognize their echoes.

    :param str publisher_id: Session publisher ID, used as identity tag.
    :param int max_entries: (optional, default 100)
        Maximum number of recent publish records kept.
    :param int max_age_ms: (optional, default 7000)
        Records older than this age (milliseconds) are dropped.
    :param int prefix_size: (optional, default 512)
        Number of payload bytes digested by fingerprints.
    :param callable clock: (optional, default time.monotonic)
        Returns current time in seconds.
    """

    def __init__(
            self, publisher_id, *,
            max_entries=Config.RECENT_PUBLISH_MAX_ENTRIES,
            max_age_ms=Config.RECENT_PUBLISH_MAX_AGE_MS,
            prefix_size=Config.FINGERPRINT_PREFIX_SIZE,
            clock=time.monotonic):
        self.publisher_id = publisher_id
        self.max_entries = max_entries
        self.max_age_ms = max_age_ms
        self.prefix_size = prefix_size
        self._clock = clock
        self._records = collections.deque()
        self._lock = threading.Lock()

    def __len__(self):
        with self._lock:
            return len(self._records)

    @property
    def records(self):
        """Snapshot of recent publish records, oldest first."""
        with self._lock:
            return list(self._records)

    def _now_ms(self):
        return self._clock() * 1000

    def tag(self, user_properties=None):
        """Add the identity tag to outbound user properties.

        :param dict user_properties: (optional, default None)
        :returns dict: A copy of user properties including the publisher ID.
        """
        tagged = dict(user_properties or {})
        tagged[Config.PUBLISHER_ID_PROPERTY] = self.publisher_id
        return tagged

    def is_tagged(self, metadata):
        """Whether inbound message metadata carries this publisher ID."""
        if metadata is None:
            return False
        user_properties = getattr(metadata, "user_properties", None) or {}
        return (
            user_properties.get(Config.PUBLISHER_ID_PROPERTY)
            == self.publisher_id)

    def record(self, topic, payload):
        """Record an outbound publish, at send time.

        Recording is best effort: a payload that can not be fingerprinted is
        logged and ignored.

        :param str topic: Topic the payload is published to.
        :param bytes|str payload: Encoded payload.
        :returns RecentPublish: The record added, or None.
        """
        try:
            payload_fingerprint = fingerprint(payload, self.prefix_size)
        except (TypeError, ValueError) as exc:
            logger.warning(
                f"[{self.publisher_id}] publish not recorded: {exc}")
            return None
        now = self._now_ms()
        record = RecentPublish(topic, payload_fingerprint, now)
        with self._lock:
            self._records.append(record)
            self._prune(now)
        return record

    def _prune(self, now):
        # Age first, then count (most recent records are kept).
        while (self._records
                and now - self._records[0].timestamp >= self.max_age_ms):
            self._records.popleft()
        while len(self._records) > self.max_entries:
            self._records.popleft()

    def is_recent(self, topic, payload, window_ms=Config.SELF_WINDOW_MS):
        """Whether a payload matches a publish recorded within a time window.

        :param str topic: Inbound message topic.
        :param bytes payload: Inbound message payload.
        :param float window_ms: (optional, default 100)
            Maximum age (milliseconds) of a matching record.
        :returns bool:
        """
        try:
            payload_fingerprint = fingerprint(payload, self.prefix_size)
        except (TypeError, ValueError) as exc:
            logger.warning(f"[{self.publisher_id}] echo not checked: {exc}")
            return False
        now = self._now_ms()
        with self._lock:
            records = tuple(self._records)
        return any(
            x.topic == topic and x.fingerprint == payload_fingerprint
            and now - x.timestamp <= window_ms
            for x in records)

    def is_own_echo(
            self, topic, payload, metadata=None,
            window_ms=Config.SELF_WINDOW_MS):
        """Decide whether an inbound message is an echo of this session.

        :param str topic: Inbound message topic.
        :param bytes payload: Inbound message payload.
        :param MessageMetadata metadata: (optional, default None)
            Inbound message protocol metadata (user properties...).
        :param float window_ms: (optional, default 100)
            Fingerprint window used when no identity tag is present.
        :returns bool: True if the message must be suppressed.
        """
        if self.is_tagged(metadata):
            return True
        return self.is_recent(topic, payload, window_ms)

    def clear(self):
        """Drop all recent publish records."""
        with self._lock:
            self._records.clear()
