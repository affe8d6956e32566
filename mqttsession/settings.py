"""Default configuration"""

import paho.mqtt.client as mqttc


class Config:
    """Default configuration"""

    # Self-echo suppression
    SELF_WINDOW_MS = 100
    RECENT_PUBLISH_MAX_ENTRIES = 100
    RECENT_PUBLISH_MAX_AGE_MS = 7000
    FINGERPRINT_PREFIX_SIZE = 512
    PUBLISHER_ID_PROPERTY = "publisherId"
    PUBLISHER_ID_PREFIX = "self"

    # Connection parameters
    PROTOCOL_VERSION = mqttc.MQTTv5
    KEEP_ALIVE = 60
    CLEAN_START = True
    RECONNECT_MIN_DELAY = 1
    RECONNECT_MAX_DELAY = 120
    WEBSOCKETS_PATH = "/mqtt"
    DEFAULT_PORTS = {
        "mqtt": 1883,
        "tcp": 1883,
        "mqtts": 8883,
        "ssl": 8883,
        "ws": 80,
        "wss": 443,
    }
    TLS_SCHEMES = ("mqtts", "ssl", "wss")
    WEBSOCKETS_SCHEMES = ("ws", "wss")

    # Launcher logging
    LOG_FORMAT = (
        "%(asctime)s %(levelname)-8s [%(name)s]"
        " [%(threadName)s] || %(message)s")
    LOG_LEVEL = "WARNING"
    LOG_HISTORY_DAYS = 7
