"""Main entry point for the AppIntent operator.

Startup order:
1. Logging
2. Configuration from the environment (fatal if invalid)
3. Kubernetes client configuration
4. Keycloak admin credentials from the admin secret (fatal if missing)
5. kopf event loop with the AppIntent handlers
"""

from __future__ import annotations

import asyncio
import json
import logging
import sys
from datetime import UTC, datetime

import kopf

from .config import Config, ConfigurationError, load_keycloak_credentials
from .handlers import build_registry
from .platform import KubernetesPlatform, load_client_configuration
from .reconciler import Reconciler

# Standard LogRecord attributes that are not structured context
_RESERVED_LOG_ATTRS = frozenset(
    {
        "name",
        "msg",
        "args",
        "created",
        "filename",
        "funcName",
        "levelname",
        "levelno",
        "lineno",
        "module",
        "msecs",
        "pathname",
        "process",
        "processName",
        "relativeCreated",
        "stack_info",
        "exc_info",
        "exc_text",
        "thread",
        "threadName",
        "taskName",
        "message",
    }
)

_NOISY_LOGGERS = ("kubernetes", "urllib3", "httpx", "httpcore", "kopf")


class JsonFormatter(logging.Formatter):
    """Format logs as JSON for structured logging."""

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": datetime.now(UTC).isoformat().replace("+00:00", "Z"),
            "level": record.levelname,
            "message": record.getMessage(),
            "logger": record.name,
        }

        # Extra fields passed through extra={...}
        for key, value in record.__dict__.items():
            if key not in _RESERVED_LOG_ATTRS:
                log_data[key] = value

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_data, default=str)


def setup_logging(json_output: bool = True) -> None:
    """Configure structured logging with JSON output for production.

    Calling it again replaces the previously installed handler.
    """
    handler = logging.StreamHandler(sys.stdout)
    if json_output:
        handler.setFormatter(JsonFormatter())
    else:
        handler.setFormatter(
            logging.Formatter("%(asctime)s %(levelname)s %(name)s: %(message)s")
        )

    root_logger = logging.getLogger()
    for existing in list(root_logger.handlers):
        root_logger.removeHandler(existing)
    root_logger.addHandler(handler)
    root_logger.setLevel(logging.INFO)

    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


def build_reconciler(config: Config) -> tuple[Config, Reconciler]:
    """Connect to the cluster and build the reconciler.

    Returns:
        The configuration with Keycloak credentials resolved, and the reconciler.

    Raises:
        ConfigurationError: If Keycloak credentials cannot be resolved.
    """
    load_client_configuration()
    platform = KubernetesPlatform()
    config = load_keycloak_credentials(config, platform)
    return config, Reconciler(config, platform)


async def main() -> int:
    """Run the operator.

    Returns:
        Exit code (0 for clean shutdown, 1 for startup failure).
    """
    setup_logging()
    logger = logging.getLogger(__name__)

    try:
        config = Config.from_env()
    except ConfigurationError as e:
        logger.error("Configuration error", extra={"error": str(e)})
        return 1

    if not config.enable_json_logging:
        setup_logging(json_output=False)

    logger.info(
        "Starting AppIntent operator",
        extra={
            "watch_namespace": config.watch_namespace or "*",
            "keycloak_enabled": config.keycloak.enabled,
            "keycloak_realm": config.keycloak.realm,
        },
    )

    try:
        config, reconciler = build_reconciler(config)
    except ConfigurationError as e:
        logger.error("Configuration error", extra={"error": str(e)})
        return 1

    namespaces = [config.watch_namespace] if config.watch_namespace else []
    try:
        await kopf.operator(
            registry=build_registry(config),
            memo=kopf.Memo(reconciler=reconciler),
            clusterwide=not namespaces,
            namespaces=namespaces,
        )
    except Exception as e:
        logger.exception("Operator failed unexpectedly", extra={"error": str(e)})
        return 1

    logger.info("Operator stopped")
    return 0


def run() -> None:
    """Entry point for the operator."""
    sys.exit(asyncio.run(main()))


if __name__ == "__main__":
    run()
