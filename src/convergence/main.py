"""Main entry point for the convergence engine.

The provider client is not part of this package. PROVIDER_CLIENT names a
"module:callable" factory returning an object that satisfies the
ProviderClient protocol; credentials are that factory's concern.
"""

from __future__ import annotations

import asyncio
import importlib
import json
import logging
import signal
import sys
from collections.abc import Callable
from datetime import UTC, datetime

from .adapters import build_controllers
from .allocator import AllocatorRegistry, GlobalAllocationState
from .config import Config, ConfigurationError
from .dependency import CyclicDependencyError
from .provider import ProviderClient
from .scheduler import PollScheduler
from .spec_loader import SpecLoadError, load_specs

# LogRecord attributes that are not structured context
RESERVED_LOG_ATTRIBUTES = frozenset(
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


class JsonFormatter(logging.Formatter):
    """Format logs as JSON for structured logging."""

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": datetime.now(UTC).isoformat().replace("+00:00", "Z"),
            "level": record.levelname,
            "message": record.getMessage(),
            "logger": record.name,
        }

        # Add extra fields from the record
        for key, value in record.__dict__.items():
            if key not in RESERVED_LOG_ATTRIBUTES:
                log_data[key] = value

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_data, default=str)


def setup_logging(level: int = logging.INFO) -> None:
    """Configure structured logging with JSON output for production."""
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(JsonFormatter())

    root_logger = logging.getLogger()
    root_logger.addHandler(handler)
    root_logger.setLevel(level)

    logging.getLogger("urllib3").setLevel(logging.WARNING)


def load_provider_factory(reference: str) -> Callable[[], ProviderClient]:
    """Import the provider client factory named by "module:callable".

    Raises:
        ConfigurationError: If the module or callable cannot be found.
    """
    module_name, _, attribute = reference.partition(":")
    if not module_name or not attribute:
        raise ConfigurationError(f"PROVIDER_CLIENT must be 'module:callable', got {reference!r}")
    try:
        module = importlib.import_module(module_name)
    except ImportError as e:
        raise ConfigurationError(f"cannot import provider module {module_name}: {e}") from e
    factory = getattr(module, attribute, None)
    if not callable(factory):
        raise ConfigurationError(f"{reference} is not a callable provider factory")
    return factory


def build_client(config: Config) -> ProviderClient:
    """Instantiate the configured provider client.

    Raises:
        ConfigurationError: If no factory is configured or it returns a
            non-conforming client.
    """
    if not config.provider_factory:
        raise ConfigurationError("PROVIDER_CLIENT is required")
    client = load_provider_factory(config.provider_factory)()
    if not isinstance(client, ProviderClient):
        raise ConfigurationError(
            f"{config.provider_factory} returned {type(client).__name__}, "
            "which does not implement ProviderClient"
        )
    return client


async def main() -> int:
    """Run the engine until SIGTERM or SIGINT.

    Returns:
        Exit code (0 for success, non-zero for failure).
    """
    setup_logging()
    logger = logging.getLogger(__name__)

    try:
        config = Config.from_env()
    except ConfigurationError as e:
        logger.error("Configuration error", extra={"error": str(e)})
        return 1

    logger.info(
        "Starting convergence engine",
        extra={
            "specs_dir": str(config.specs_dir),
            "poll_interval_seconds": config.poll_interval_seconds,
            "unique_names_enabled": config.unique_names_enabled,
        },
    )

    try:
        store = load_specs(config.specs_dir)
    except SpecLoadError as e:
        logger.error(
            "Spec loading failed",
            extra={"error": str(e), "specs_dir": str(config.specs_dir)},
        )
        return 1

    try:
        client = build_client(config)
    except ConfigurationError as e:
        logger.error("Provider client unavailable", extra={"error": str(e)})
        return 1
    except Exception as e:
        logger.error(
            "Failed to initialize provider client",
            extra={"error": str(e), "error_type": type(e).__name__},
        )
        return 1

    shutdown_event = asyncio.Event()
    controllers = build_controllers(
        client,
        config,
        store,
        allocation_state=GlobalAllocationState(),
        registry=AllocatorRegistry.default(),
        cancel_event=shutdown_event,
    )
    scheduler = PollScheduler(store, controllers, config, shutdown_event=shutdown_event)

    # Set up signal handlers for graceful shutdown
    loop = asyncio.get_running_loop()

    def signal_handler(sig: signal.Signals) -> None:
        logger.info("Received signal", extra={"signal": sig.name})
        scheduler.shutdown()

    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, lambda s=sig: signal_handler(s))

    try:
        await scheduler.run()
    except CyclicDependencyError as e:
        logger.error("Descriptors cannot be ordered", extra={"error": str(e)})
        return 1
    except Exception as e:
        logger.exception("Unhandled exception", extra={"error": str(e)})
        return 1

    logger.info("Engine stopped")
    return 0


def run() -> None:
    """Entry point for the engine process."""
    sys.exit(asyncio.run(main()))


if __name__ == "__main__":
    run()
