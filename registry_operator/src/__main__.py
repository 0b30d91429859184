from __future__ import annotations

import json
import logging
import os
import re
import signal
import threading

from registry_operator.src.applier import Applier
from registry_operator.src.certificates import CertificatesController
from registry_operator.src.client import ClientSet
from registry_operator.src.clusteroperator import ClusterOperatorController
from registry_operator.src.config import OperatorConfig, load_config
from registry_operator.src.controller import Controller
from registry_operator.src.health import start_health_server
from registry_operator.src.imageconfig import ImageConfigController
from registry_operator.src.imagepruner import ImagePrunerController
from registry_operator.src.imageregistry import ImageRegistryController
from registry_operator.src.kube import build_client_set, load_kube_configuration
from registry_operator.src.metrics import METRICS
from registry_operator.src.nodecadaemon import NodeCADaemonController
from registry_operator.src.notifier import InformerFactory
from registry_operator.src.supervisor import Supervisor

_REDACTION_RULES: tuple[tuple[re.Pattern[str], str], ...] = (
    (
        re.compile(r"(?i)(bearer\s+)([A-Za-z0-9._~+/=-]+)"),
        r"\1[REDACTED]",
    ),
    (
        re.compile(
            r"(?i)(\b(?:authorization|token|password|passwd|secret|httpsecret|api[_-]?key)\b\s*[:=]\s*)([^\s,;]+)"
        ),
        r"\1[REDACTED]",
    ),
    (
        re.compile(r"(?i)([?&](?:token|access_token|api_key|password)=)([^&\s]+)"),
        r"\1[REDACTED]",
    ),
)


def redact_sensitive_text(value: str) -> str:
    redacted = value
    for pattern, replacement in _REDACTION_RULES:
        redacted = pattern.sub(replacement, redacted)
    return redacted


class JSONFormatter(logging.Formatter):
    """Emit logs as single-line JSON objects for structured log aggregation."""

    def format(self, record: logging.LogRecord) -> str:
        log_entry = {
            "ts": self.formatTime(record, self.datefmt),
            "level": record.levelname,
            "logger": record.name,
            "msg": redact_sensitive_text(record.getMessage()),
        }
        if record.exc_info and record.exc_info[0] is not None:
            log_entry["error"] = redact_sensitive_text(self.formatException(record.exc_info))
        return json.dumps(log_entry)


def configure_logging(level: str) -> None:
    handler = logging.StreamHandler()
    handler.setFormatter(JSONFormatter())
    logging.root.handlers = [handler]
    logging.root.setLevel(getattr(logging, level, logging.INFO))


def build_controllers(
    config: OperatorConfig, clients: ClientSet, informers: InformerFactory
) -> list[Controller]:
    """Wire every controller onto the shared informers and one applier."""
    applier = Applier(clients, config.checksum_annotation)
    return [
        ImageRegistryController(
            config=config, clients=clients, informers=informers, applier=applier
        ),
        ImagePrunerController(
            config=config, clients=clients, informers=informers, applier=applier
        ),
        ClusterOperatorController(config=config, informers=informers, applier=applier),
        CertificatesController(
            config=config, clients=clients, informers=informers, applier=applier
        ),
        NodeCADaemonController(
            config=config, clients=clients, informers=informers, applier=applier
        ),
        ImageConfigController(config=config, clients=clients, informers=informers),
    ]


def main() -> None:
    """Operator entrypoint: configure logging, wire controllers, and supervise them until signalled."""
    configure_logging(os.getenv("LOG_LEVEL", "INFO").upper())
    config = load_config()
    configure_logging(config.log_level)
    METRICS.build_info.info(
        {
            "version": config.release_version,
            "revision": os.getenv("GIT_SHA", "unknown"),
        }
    )

    load_kube_configuration()
    clients = build_client_set()
    informers = InformerFactory(clients)
    controllers = build_controllers(config, clients, informers)
    supervisor = Supervisor(
        controllers,
        informers.informers(),
        shutdown_timeout=float(config.shutdown_timeout_seconds),
    )
    health_server = start_health_server(
        ready=supervisor.ready, port=config.health_port, live=supervisor.healthy
    )

    shutdown_event = threading.Event()

    def _handle_signal(signum: int, frame: object) -> None:
        logging.getLogger(__name__).info("Received signal %d, shutting down", signum)
        shutdown_event.set()

    signal.signal(signal.SIGTERM, _handle_signal)
    signal.signal(signal.SIGINT, _handle_signal)

    clean = supervisor.run(shutdown_event)
    health_server.shutdown()
    logging.getLogger(__name__).info("Operator stopped")
    if not clean:
        raise SystemExit(1)


if __name__ == "__main__":
    main()
