from __future__ import annotations

import sys
import time
import uuid
from contextlib import contextmanager
from pathlib import Path
from typing import TYPE_CHECKING, Iterable

if TYPE_CHECKING:
    from loguru import Logger

from loguru import logger

from alpine_vm_image.storage.exceptions import BuildInterrupted


def _should_log_command_output(record) -> bool:
    """Keep command output off the console unless it was logged at DEBUG or below.

    Failing commands log their output at DEBUG, successful ones at TRACE.
    """
    tags = record["extra"].get("tags", [])

    # Always log warnings and errors
    if record["level"].no >= logger.level("WARNING").no:
        return True

    if "output" in tags:
        return record["level"].no <= logger.level("DEBUG").no

    return True


def setup_logging(
    *,
    debug: bool = False,
    trace: bool = False,
    log_dir: Path | None = None,
) -> Logger:
    """
    Setup console logging and, optionally, file sinks for a build.

    Logging Tiers:
    - CRITICAL/ERROR: failed steps, leaked resources needing manual cleanup
    - SUCCESS/INFO: build steps and resource acquisition/release
    - DEBUG: every external command, and the output of the ones that fail
    - TRACE: output of every command (package manager progress and the like)

    Log Files (only when log_dir is given):
    - build.log: DEBUG+ events for the whole build (5 day retention)
    - structured.jsonl: Structured JSON logs for analysis (5 day retention)

    Args:
        debug: Enable DEBUG level logging on the console
        trace: Enable TRACE level logging (very verbose)
        log_dir: Directory for the file sinks
    """
    logger.remove()
    logger.configure(extra={"job_id": "-", "tags": [], "source": "APP"})

    if trace:
        console_level = "TRACE"
    elif debug:
        console_level = "DEBUG"
    else:
        console_level = "INFO"

    # SINK 1: Console (stderr)
    logger.add(
        sys.stderr,
        level=console_level,
        backtrace=False,
        diagnose=False,
        filter=None if trace else _should_log_command_output,
        colorize=True,
        format=(
            "<green>{time:HH:mm:ss}</green> | "
            "<level>{level: <8}</level> | "
            "<cyan>{extra[source]: <8}</cyan> | "
            "{message}"
        ),
    )

    if log_dir is None:
        return logger

    log_dir.mkdir(parents=True, exist_ok=True)

    # SINK 2: Build log - everything a post-mortem needs
    logger.add(
        log_dir / "build.log",
        level="TRACE" if trace else "DEBUG",
        rotation="10 MB",
        retention="5 days",
        compression="zip",
        backtrace=True,
        diagnose=False,
        format=(
            "{time:YYYY-MM-DD HH:mm:ss.SSS} | "
            "{level: <8} | "
            "{extra[source]: <8} | "
            "{extra[job_id]: <15} | "
            "{message}"
        ),
    )

    # SINK 3: Structured JSON log (INFO+)
    logger.add(
        log_dir / "structured.jsonl",
        level="INFO",
        rotation="10 MB",
        retention="5 days",
        compression="zip",
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
        job_id: Job identifier for tracking a build
        tags: Tags for filtering (e.g., ["mount", "session"])
        source: Source component (e.g., "nbd", "apk")

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


@contextmanager
def operation_context(operation: str, **details):
    """
    Time a long-running operation and log how it ended.

    The start is logged at INFO, success at SUCCESS. A failure is logged at
    ERROR with the error type and the exit status it maps to; an interrupt
    only at WARNING.
    The exception is always re-raised.

    Args:
        operation: Operation name (e.g., "build")
        **details: Operation-specific details, bound to every record inside

    Yields:
        Logger bound with job_id and operation context

    Example:
        with operation_context("build", image="alpine.qcow2") as log:
            log.debug("Attaching image")
    """
    job_id = f"{operation}-{uuid.uuid4().hex[:8]}"
    title = operation.capitalize()

    with logger.contextualize(job_id=job_id, operation=operation, **details):
        log = logger.bind(source=operation, job_id=job_id, tags=[operation])
        started = time.monotonic()
        log.info(f"{title} started")

        try:
            yield log
        except (BuildInterrupted, KeyboardInterrupt) as error:
            log.warning(
                f"{title} interrupted",
                error=str(error),
                elapsed=round(time.monotonic() - started, 2),
            )
            raise
        except BaseException as error:
            log.error(
                f"{title} failed",
                error=str(error),
                error_type=type(error).__name__,
                exit_code=getattr(error, "exit_code", None),
                elapsed=round(time.monotonic() - started, 2),
            )
            raise

        log.success(f"{title} completed", elapsed=round(time.monotonic() - started, 2))


class LoggerFactory:
    """
    Factory for creating domain-specific loggers with automatic context.

    Each factory method returns a logger pre-configured with appropriate
    source and tags for the domain.
    """

    @staticmethod
    def for_session() -> Logger:
        """Logger for resource acquisition and teardown."""
        return logger.bind(source="session", tags=["session", "resources"])

    @staticmethod
    def for_device() -> Logger:
        """Logger for image files, NBD attachment, partitions and filesystems."""
        return logger.bind(source="device", tags=["device", "storage"])

    @staticmethod
    def for_mount() -> Logger:
        """Logger for mounts and bind mounts."""
        return logger.bind(source="mount", tags=["mount", "storage"])

    @staticmethod
    def for_build() -> Logger:
        """Logger for steps run inside the target root."""
        return logger.bind(source="build", tags=["build"])

    @staticmethod
    def for_host() -> Logger:
        """Logger for host package management."""
        return logger.bind(source="host", tags=["host", "apk"])

    @staticmethod
    def for_command(program: str) -> Logger:
        """Logger for output of an external command."""
        return logger.bind(source=program[:8], tags=["command", "output"])

    @staticmethod
    def for_system() -> Logger:
        """Logger for startup, configuration and shutdown."""
        return logger.bind(source="system", tags=["system"])
