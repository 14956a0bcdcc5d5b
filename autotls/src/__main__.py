from __future__ import annotations

import json
import logging
import os
import signal
import threading

from autotls.src.config import ControllerConfig, load_config
from autotls.src.controller import build_controller
from autotls.src.health import start_health_server
from autotls.src.kube import build_networking_api, load_kube_configuration
from autotls.src.metrics import METRICS

RUNTIME_VERSION = "0.1.0"
_EXTRA_FIELDS = ("ingress", "patcher")


class JSONFormatter(logging.Formatter):
    """Emit logs as single-line JSON objects for structured log aggregation."""

    def format(self, record: logging.LogRecord) -> str:
        log_entry = {
            "ts": self.formatTime(record, self.datefmt),
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
        }
        for name in _EXTRA_FIELDS:
            value = getattr(record, name, None)
            if value is not None:
                log_entry[name] = value
        if record.exc_info and record.exc_info[0] is not None:
            log_entry["error"] = self.formatException(record.exc_info)
        return json.dumps(log_entry)


def configure_logging(config: ControllerConfig) -> None:
    handler = logging.StreamHandler()
    handler.setFormatter(JSONFormatter())
    logging.root.addHandler(handler)
    logging.root.setLevel(getattr(logging, config.log_level, logging.INFO))


def main() -> None:
    """Controller entrypoint: configure logging, wire the controller and run the watch loop."""
    config = load_config()
    configure_logging(config)
    logger = logging.getLogger(__name__)
    logger.info("Starting autotls controller")
    METRICS.build_info.info(
        {
            "version": os.getenv("APP_VERSION", RUNTIME_VERSION),
            "revision": os.getenv("GIT_SHA", "unknown"),
        }
    )

    load_kube_configuration()
    controller = build_controller(build_networking_api(), config)
    health_server = start_health_server(ready=controller.ready, port=config.health_port)

    shutdown_event = threading.Event()

    def _handle_signal(signum: int, frame: object) -> None:
        logger.info("Received signal %d, shutting down", signum)
        shutdown_event.set()
        controller.request_stop()

    signal.signal(signal.SIGTERM, _handle_signal)
    signal.signal(signal.SIGINT, _handle_signal)

    controller.run_forever(shutdown_event=shutdown_event)

    health_server.shutdown()
    logger.info("Controller stopped")


if __name__ == "__main__":
    main()
