"""Process entry for the release promotion engine.

Wires the production capabilities (YAML environment registry, version
stream checkout, GitPython transport, GitHub host) into a PromoteEngine and
runs one promotion request with SIGTERM/SIGINT cancelling the invocation.

EXIT CODES:
- 0: every target environment succeeded (or needed no change)
- 1: at least one environment failed, or infrastructure was unavailable
- 2: configuration or input error, nothing was touched
"""

from __future__ import annotations

import asyncio
import logging
import signal
import sys
from datetime import UTC
from typing import IO, Any

from .cancellation import CancellationToken
from .config import ConfigurationError, PromoteConfig
from .engine import PromoteEngine, PromotionRequest
from .environments import YamlEnvironmentRegistry
from .errors import ErrorCategory, PromotionError
from .gitclient import GitPythonClient
from .scm import GitHubScmProvider
from .versions import DirectoryVersionStream, VersionResolver

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_INVALID = 2

_STANDARD_RECORD_ATTRS = frozenset(
    (
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
    )
)


def setup_logging(level: int = logging.INFO, stream: IO[str] | None = None) -> None:
    """Configure structured logging with JSON output.

    Args:
        level: Root log level.
        stream: Log destination, stdout by default. The CLI logs to stderr
            so that stdout carries only the result document.
    """
    import json
    from datetime import datetime

    class JsonFormatter(logging.Formatter):
        """Format logs as JSON for structured logging."""

        def format(self, record: logging.LogRecord) -> str:
            log_data: dict[str, Any] = {
                "timestamp": datetime.now(UTC).isoformat().replace("+00:00", "Z"),
                "level": record.levelname,
                "message": record.getMessage(),
                "logger": record.name,
            }

            # Add extra fields from the record
            for key, value in record.__dict__.items():
                if key not in _STANDARD_RECORD_ATTRS:
                    log_data[key] = value

            # Add exception info if present
            if record.exc_info:
                log_data["exception"] = self.formatException(record.exc_info)

            return json.dumps(log_data, default=str)

    handler = logging.StreamHandler(stream or sys.stdout)
    handler.setFormatter(JsonFormatter())

    root_logger = logging.getLogger()
    root_logger.addHandler(handler)
    root_logger.setLevel(level)

    # Reduce noise from git transport and host client
    logging.getLogger("git").setLevel(logging.WARNING)
    logging.getLogger("github").setLevel(logging.WARNING)
    logging.getLogger("urllib3").setLevel(logging.WARNING)


def build_engine(
    config: PromoteConfig, github_token: str, github_api_url: str | None = None
) -> PromoteEngine:
    """Build an engine over the production capabilities.

    Raises:
        ConfigurationError: If no environments directory is configured.
    """
    if config.environments_dir is None:
        raise ConfigurationError(
            "Configuration validation failed:\n  - ENVIRONMENTS_DIR is required"
        )
    if not github_token:
        raise ConfigurationError("Configuration validation failed:\n  - GITHUB_TOKEN is required")

    registry = YamlEnvironmentRegistry(config.environments_dir, config.registry_namespace)
    stream = DirectoryVersionStream(config.versions_dir) if config.versions_dir else None
    git = GitPythonClient(
        config.git_author_name,
        config.git_author_email,
        token=github_token,
        timeout_seconds=config.git_timeout_seconds,
    )
    scm = GitHubScmProvider(github_token, base_url=github_api_url)
    return PromoteEngine(registry, VersionResolver(stream), git, scm, config)


async def main(engine: PromoteEngine, request: PromotionRequest) -> tuple[int, dict[str, Any]]:
    """Run one promotion request.

    Returns:
        Tuple of (exit code, result document).
    """
    logger = logging.getLogger(__name__)
    token = CancellationToken()

    # Set up signal handlers for graceful cancellation
    loop = asyncio.get_running_loop()
    signals = (signal.SIGTERM, signal.SIGINT)

    def signal_handler(sig: signal.Signals) -> None:
        logger.info("Received signal", extra={"signal": sig.name})
        token.cancel(f"received {sig.name}")

    for sig in signals:
        loop.add_signal_handler(sig, lambda s=sig: signal_handler(s))

    try:
        result = await engine.promote(request, token)
    except PromotionError as e:
        logger.error(
            "Promotion could not start",
            extra={"error": str(e), "category": e.category.value},
        )
        code = EXIT_INVALID if e.category == ErrorCategory.INPUT else EXIT_FAILED
        return code, {
            "application": request.application,
            "success": False,
            "error": {
                "type": type(e).__name__,
                "message": str(e),
                "category": e.category.value,
                "retryable": e.retryable,
            },
            "results": [],
        }
    finally:
        for sig in signals:
            loop.remove_signal_handler(sig)

    return (EXIT_OK if result.success else EXIT_FAILED), result.to_dict()
