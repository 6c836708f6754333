"""Logging setup for CLI and server entry points."""

from __future__ import annotations

import logging
import sys

from workbench_agent.config import WORKBENCH_LOGS, WorkbenchConfig

LOG_FORMAT = "%(asctime)s [%(name)s] %(levelname)s: %(message)s"

logger = logging.getLogger(__name__)


def configure_logging(config: WorkbenchConfig | None = None) -> None:
    """Route package logs to stderr, plus a file under the logs dir if set."""
    config = config or WorkbenchConfig.load()
    level = getattr(logging, str(config.logging.level).upper(), logging.INFO)

    handlers: list[logging.Handler] = [logging.StreamHandler(sys.stderr)]
    file_error = None
    if config.logging.file:
        log_path = WORKBENCH_LOGS / config.logging.file
        try:
            log_path.parent.mkdir(parents=True, exist_ok=True)
            handlers.append(logging.FileHandler(log_path))
        except OSError as exc:
            file_error = (log_path, exc)

    formatter = logging.Formatter(LOG_FORMAT)
    for handler in handlers:
        handler.setFormatter(formatter)
    logging.basicConfig(level=level, handlers=handlers, force=True)

    # httpx logs every request at INFO
    logging.getLogger("httpx").setLevel(max(level, logging.WARNING))

    if file_error:
        logger.warning("Failed to open log file %s: %s", *file_error)
