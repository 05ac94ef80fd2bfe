from __future__ import annotations

import os
import sys
import time
import uuid
from contextlib import contextmanager
from pathlib import Path
from typing import TYPE_CHECKING, Iterable

if TYPE_CHECKING:
    from loguru import Logger

from loguru import logger

DEFAULT_LOG_DIR = Path(
    os.environ.get(
        "PI_IMAGE_BUILDER_LOG_DIR",
        Path.home() / ".local" / "state" / "pi-image-builder" / "logs",
    )
)


def _should_log_command_output(record) -> bool:
    """Keep raw tool output out of the console unless tracing."""
    tags = record["extra"].get("tags", [])

    if record["level"].no >= logger.level("WARNING").no:
        return True

    if "output" in tags:
        return record["level"].no <= logger.level("TRACE").no

    return True


def _should_log_progress(record) -> bool:
    """Filter rsync/download progress chatter - only show in TRACE mode."""
    message = record["message"].lower()

    if "progress" in record["extra"].get("tags", []) or message.startswith("progress"):
        return record["level"].no <= logger.level("TRACE").no

    return True


def _combined_filter(record) -> bool:
    """Combined filter for all log suppression rules."""
    return _should_log_command_output(record) and _should_log_progress(record)


def setup_logging(
    *,
    debug: bool = False,
    trace: bool = False,
    log_dir: Path | None = None,
) -> Logger:
    """
    Setup multi-tier logging with separate sinks for different log levels.

    Logging Tiers:
    - CRITICAL/ERROR: failed build steps, leaked host resources
    - SUCCESS/INFO: step transitions, downloads, device attach/detach
    - DEBUG: every external command and its exit status
    - TRACE: raw tool output and transfer progress

    Log Files:
    - operations.log: INFO+ events (7 day retention)
    - debug.log: DEBUG+ events when --debug is enabled (3 day retention)
    - trace.log: TRACE+ events when --trace is enabled (1 day retention)
    - structured.jsonl: Structured JSON logs for analysis (7 day retention)

    Args:
        debug: Enable DEBUG level logging
        trace: Enable TRACE level logging (very verbose)
        log_dir: Custom log directory (defaults to ~/.local/state/pi-image-builder/logs)
    """
    logger.remove()
    logger.configure(extra={"job_id": "-", "tags": [], "source": "APP"})

    if trace:
        console_level = "TRACE"
    elif debug:
        console_level = "DEBUG"
    else:
        console_level = "INFO"

    # SINK 1: Console (stderr) - User-facing, filtered
    logger.add(
        sys.stderr,
        level=console_level,
        enqueue=True,
        backtrace=False,
        diagnose=False,
        filter=_combined_filter,
        colorize=True,
        format=(
            "<green>{time:HH:mm:ss}</green> | "
            "<level>{level: <8}</level> | "
            "<cyan>{extra[source]: <12}</cyan> | "
            "<blue>{extra[job_id]: <15}</blue> | "
            "{message}"
        ),
    )

    log_dir = log_dir or DEFAULT_LOG_DIR
    log_dir.mkdir(parents=True, exist_ok=True)

    # SINK 2: Operations Log - Important events only (INFO+)
    logger.add(
        log_dir / "operations.log",
        level="INFO",
        rotation="5 MB",
        retention="7 days",
        compression="zip",
        enqueue=True,
        backtrace=False,
        diagnose=False,
        format=(
            "{time:YYYY-MM-DD HH:mm:ss.SSS} | "
            "{level: <8} | "
            "{extra[source]: <12} | "
            "{extra[job_id]: <15} | "
            "{message}"
        ),
    )

    # SINK 3: Debug Log - every command line and exit code
    if debug or trace:
        logger.add(
            log_dir / "debug.log",
            level="DEBUG",
            rotation="10 MB",
            retention="3 days",
            compression="zip",
            enqueue=True,
            backtrace=True,
            diagnose=True,
            format=(
                "{time:YYYY-MM-DD HH:mm:ss.SSS} | "
                "{level: <8} | "
                "{extra[source]: <12} | "
                "{extra[job_id]: <15} | "
                "{extra[tags]} | "
                "{message}"
            ),
        )

    # SINK 4: Trace Log - raw tool output
    if trace:
        logger.add(
            log_dir / "trace.log",
            level="TRACE",
            rotation="50 MB",
            retention="1 day",
            compression="zip",
            enqueue=True,
            backtrace=False,
            diagnose=False,
            format=(
                "{time:YYYY-MM-DD HH:mm:ss.SSS} | "
                "{extra[source]: <12} | "
                "{extra[job_id]: <15} | "
                "{message}"
            ),
        )

    # SINK 5: Structured JSON Log - For analysis tools (INFO+)
    logger.add(
        log_dir / "structured.jsonl",
        level="INFO",
        rotation="10 MB",
        retention="7 days",
        compression="zip",
        enqueue=True,
        serialize=True,
        format="{message}",
    )

    return logger


def get_logger(
    *,
    job_id: str | None = None,
    tags: Iterable[str] | None = None,
    source: str | None = None,
) -> Logger:
    """
    Get a logger with bound context.

    Args:
        job_id: Build identifier for tracking operations
        tags: Tags for filtering (e.g., ["lvm", "storage"])
        source: Source component (e.g., "media", "loop", "mount")

    Returns:
        Logger with bound context
    """
    extras: dict[str, object] = {}
    if job_id is not None:
        extras["job_id"] = job_id
    if tags is not None:
        extras["tags"] = list(tags)
    if source is not None:
        extras["source"] = source
    return logger.bind(**extras)


def new_job_id(prefix: str = "build") -> str:
    return f"{prefix}-{uuid.uuid4().hex[:8]}"


@contextmanager
def operation_context(operation: str, log: Logger | None = None, **details):
    """
    Context manager for tracking build steps with automatic timing.

    Logs step start, completion, and failure with duration tracking. When a
    bound logger is passed in, its job_id and source are kept.

    Args:
        operation: Step name (e.g., "download media", "expand filesystem")
        log: Optional bound logger to derive from
        **details: Step-specific details to log

    Yields:
        Logger bound with the step name

    Example:
        with operation_context("attach loop device", log, image=path) as step_log:
            step_log.debug("Running losetup")
    """
    base = log if log is not None else logger
    step_log = base.bind(step=operation)

    with logger.contextualize(step=operation, **details):
        start_time = time.time()
        step_log.info(f"{operation.capitalize()} started")

        try:
            yield step_log
            duration = time.time() - start_time
            step_log.success(
                f"{operation.capitalize()} completed",
                duration_seconds=round(duration, 2),
            )
        except Exception as e:
            duration = time.time() - start_time
            step_log.error(
                f"{operation.capitalize()} failed",
                error=str(e),
                error_type=type(e).__name__,
                duration_seconds=round(duration, 2),
            )
            raise


class LoggerFactory:
    """
    Factory for creating domain-specific loggers with automatic context.

    Each factory method returns a logger pre-configured with appropriate
    source and tags for the domain.
    """

    @staticmethod
    def for_build(job_id: str | None = None, **details) -> Logger:
        """Logger for the build/flash orchestrator."""
        if job_id is None:
            job_id = new_job_id()
        return logger.bind(
            job_id=job_id, source="build", tags=["build", "storage"], **details
        )

    @staticmethod
    def for_media() -> Logger:
        """Logger for media download, verification, and compression."""
        return logger.bind(source="media", tags=["media"])

    @staticmethod
    def for_loop() -> Logger:
        """Logger for loop device attach/detach."""
        return logger.bind(source="loop", tags=["loop", "storage"])

    @staticmethod
    def for_partition() -> Logger:
        """Logger for partition table operations."""
        return logger.bind(source="partition", tags=["partition", "storage"])

    @staticmethod
    def for_lvm() -> Logger:
        """Logger for volume group and logical volume operations."""
        return logger.bind(source="lvm", tags=["lvm", "storage"])

    @staticmethod
    def for_mount() -> Logger:
        """Logger for mount session operations."""
        return logger.bind(source="mount", tags=["mount", "storage"])

    @staticmethod
    def for_configure() -> Logger:
        """Logger for guest configuration."""
        return logger.bind(source="configure", tags=["configure"])

    @staticmethod
    def for_system() -> Logger:
        """Logger for system operations (startup, shutdown, config)."""
        return logger.bind(source="system", tags=["system"])


class ThrottledLogger:
    """
    Logger wrapper that throttles high-frequency log events.

    Used for download progress, which would otherwise log once per chunk.
    """

    def __init__(self, log: Logger, interval_seconds: float = 5.0):
        self.log = log
        self.interval = interval_seconds
        self.last_log_time: dict[str, float] = {}

    def debug(self, key: str, message: str, **kwargs) -> None:
        """Log at DEBUG level, throttled by key."""
        self._throttled_log("DEBUG", key, message, **kwargs)

    def info(self, key: str, message: str, **kwargs) -> None:
        """Log at INFO level, throttled by key."""
        self._throttled_log("INFO", key, message, **kwargs)

    def _throttled_log(self, level: str, key: str, message: str, **kwargs) -> None:
        now = time.time()
        last_time = self.last_log_time.get(key, 0)

        if now - last_time >= self.interval:
            log_method = getattr(self.log, level.lower())
            log_method(message, **kwargs)
            self.last_log_time[key] = now
