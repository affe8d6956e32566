#!/usr/bin/env python3
"""Launch an MQTT session monitoring configured subscriptions."""

import os
import sys
import argparse
import json
import time
import re
import logging
import threading
from logging.handlers import TimedRotatingFileHandler
from pathlib import Path

import mqttsession as pkg
from mqttsession.session import Session
from mqttsession.settings import Config
from mqttsession.transport import PahoTransport


logger = logging.getLogger(pkg.LOGNAME)


def main():
    """Main program."""
    cmd_args = parse_command_line(sys.argv)
    config = load_config(cmd_args.config_filepath)
    if cmd_args.url is not None:
        config["url"] = cmd_args.url
    init_logger(config["logging"], verbose=cmd_args.verbose)
    launch_session(config)
    return 0


def _argtype_readable_file(str_value):
    """Check that a path value is a readable file.

    :param str str_value: Input string argument value.
    :returns Path: Absolute file path.
    :raises argparse.ArgumentTypeError:
        When the path is either not a file or not readable.
    """
    file_path = Path(str_value)
    if not file_path.is_file():
        raise argparse.ArgumentTypeError(f"Not a file: {file_path}")
    file_path = file_path.resolve()
    if not os.access(file_path, os.R_OK):
        raise argparse.ArgumentTypeError(f"File not readable: {file_path}")
    return file_path


def parse_command_line(argv):
    """Parse command line arguments. See -h option

    :param list argv: Command line arguments, starting with program name.
    :returns argparse.Namespace: Argument values.
    """
    parser = argparse.ArgumentParser(
        prog=pkg.__binname__, description=pkg.__description__,
        formatter_class=argparse.RawDescriptionHelpFormatter)
    parser.add_argument(
        "--version", action="version", version=(
            f"{pkg.__binname__}\tversion {pkg.__version__}"
            f"\n{pkg.__description__}\n{pkg.__author__}"),
    )
    parser.add_argument(
        dest="config_filepath", type=_argtype_readable_file,
        help="session configuration file (JSON)",
    )
    parser.add_argument(
        "-u", "--url", dest="url", default=None,
        help="broker URL, overrides configuration file url",
    )
    parser.add_argument(
        "-v", "--verbose", dest="verbose", action="store_true", default=False,
        help="print log messages in console",
    )
    return parser.parse_args(argv[1:])


def load_config(config_filepath, *, verify=True):
    """Load session configuration from JSON file.

    Example::

        {
            "url": "mqtt://localhost:1883",
            "options": {"client_id": "monitor", "keepalive": 30},
            "subscriptions": [
                {"topics": ["sensors/#"], "qos": 1, "mode": "json"}
            ],
            "logging": {"level": "INFO", "dirpath": "/var/log"}
        }

    :param Path config_filepath: Session config file path.
    :param bool verify: (optional, default True)
        Check that required sections are present.
    :returns dict: Session parameters.
    """
    config = {}
    with config_filepath.open("r") as config_file:
        config = json.load(config_file)
    # If wanted, check configuration content.
    if verify:
        assert "url" in config
        assert "logging" in config
        assert isinstance(config.get("subscriptions", []), list)
        for sub_config in config.get("subscriptions", []):
            assert "topics" in sub_config
    return config


def init_logger(log_config, *, verbose=False):
    """Initialize package logger.

    Log configuration keys (all optional):
        - level: logger level name (default "WARNING")
        - format: record format (timestamps are UTC)
        - dirpath: folder of the daily rotated log file
        - history: number of daily log files kept (default 7)
        - enabled: propagate records to parent handlers (default True)

    :param dict log_config: Log configuration.
    :param bool verbose: (optional, default False)
        Print log messages in console output.
    """
    formatter = logging.Formatter(log_config.get("format", Config.LOG_FORMAT))
    formatter.converter = time.gmtime

    logger.setLevel(log_config.get("level", Config.LOG_LEVEL))
    handlers = []
    if verbose:
        handlers.append(logging.StreamHandler())
    if "dirpath" in log_config:
        history = log_config.get("history", Config.LOG_HISTORY_DAYS)
        logfile_handler = TimedRotatingFileHandler(
            Path(log_config["dirpath"]) / f"{pkg.__binname__}.log",
            when="midnight", backupCount=history, utc=True)
        logfile_handler.suffix = "%Y-%m-%d"
        logfile_handler.extMatch = re.compile(r"^\d{4}-\d{2}-\d{2}$")
        handlers.append(logfile_handler)
    for handler in handlers:
        handler.setLevel(logging.NOTSET)  # inherits logger's level
        handler.setFormatter(formatter)
        logger.addHandler(handler)
    logger.propagate = log_config.get("enabled", True)

    logger.info("Logger initialized, [%s] level.",
                logging.getLevelName(logger.level))
    if "dirpath" in log_config:
        logger.info("Log folder path ([%d] days backup): [%s]",
                    history, str(log_config["dirpath"]))


def _log_message(value, topic, metadata):
    logger.info("Message on [%s] (retain=%s): %r",
                topic, metadata.retain if metadata else False, value)


def _log_status(status):
    logger.info("Session status: [%s]", status.value)


def launch_session(config, *, stop_event=None, transport_cls=PahoTransport):
    """Launch an MQTT session and log messages of configured subscriptions.

    Runs until `stop_event` is set or the user interrupts (Ctrl-C).

    :param dict config: Session configuration (see `load_config`).
    :param threading.Event stop_event: (optional, default None)
    :param type transport_cls: (optional, default PahoTransport)
    :returns Session: The closed session.
    """
    logger.info("Launching MQTT session (PID %s)...", os.getpid())
    if stop_event is None:
        stop_event = threading.Event()

    session = Session(
        config["url"], config.get("options"),
        transport_cls=transport_cls)
    session.add_status_listener(_log_status)
    for sub_config in config.get("subscriptions", []):
        session.subscribe(
            sub_config["topics"],
            qos=sub_config.get("qos", 0),
            exclude_self=sub_config.get("exclude_self", False),
            self_window_ms=sub_config.get(
                "self_window_ms", Config.SELF_WINDOW_MS),
            mode=sub_config.get("mode", "auto"),
            on_message=_log_message,
        )

    with session:
        try:
            while not stop_event.wait(0.5):
                pass
        except KeyboardInterrupt:
            logger.info("MQTT session interrupted by user")
    logger.info("MQTT session stopped")
    return session


if __name__ == "__main__":

    sys.exit(main())
