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

LOG_LEVELS = ("TRACE", "DEBUG", "INFO", "SUCCESS", "WARNING", "ERROR", "CRITICAL")


def _is_command_output(record) -> bool:
    return "command" in record["extra"].get("tags", [])


def _console_filter(record) -> bool:
    """Keep raw tool output off the console unless explicitly tracing commands."""
    if _is_command_output(record) and record["message"].startswith(("stdout:", "stderr:")):
        return record["level"].no >= logger.level("WARNING").no or (
            record["extra"].get("verbose_commands", False)
        )
    return True


def setup_logging(
    level: str = "INFO",
    *,
    log_dir: Path | None = None,
    verbose_commands: bool = False,
) -> Logger:
    """
    Configure console and optional file sinks for a build run.

    Sinks:
    - stderr: colorized, user-facing, at ``level``
    - build.log: DEBUG+ events, only when ``log_dir`` is given
    - structured.jsonl: serialized INFO+ events, only when ``log_dir`` is given

    Args:
        level: Minimum console level (TRACE, DEBUG, INFO, ...)
        log_dir: Directory for file sinks; no files are written when None
        verbose_commands: Show external command stdout/stderr on the console
    """
    level = level.upper()
    if level not in LOG_LEVELS:
        raise ValueError(f"Unknown log level: {level}")

    logger.remove()
    logger.configure(
        extra={
            "job_id": "-",
            "tags": [],
            "source": "APP",
            "verbose_commands": verbose_commands,
        }
    )

    logger.add(
        sys.stderr,
        level=level,
        backtrace=False,
        diagnose=False,
        filter=_console_filter,
        colorize=True,
        format=(
            "<green>{time:HH:mm:ss}</green> | "
            "<level>{level: <8}</level> | "
            "<cyan>{extra[source]: <8}</cyan> | "
            "<level>{message}</level>"
        ),
    )

    if log_dir is not None:
        log_dir.mkdir(parents=True, exist_ok=True)

        logger.add(
            log_dir / "build.log",
            level="DEBUG",
            rotation="10 MB",
            retention="7 days",
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

        logger.add(
            log_dir / "structured.jsonl",
            level="INFO",
            rotation="10 MB",
            retention="7 days",
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
        job_id: Build identifier for tracking a run
        tags: Tags for filtering (e.g., ["loop", "device"])
        source: Source component (e.g., "image", "mount")

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
    Context manager for a long-running operation with automatic timing.

    Logs start, completion and failure (with duration) and binds a job id
    to every record emitted inside the block.

    Example:
        with operation_context("build", output="/tmp/pi.img") as log:
            log.info("Creating image")
    """
    job_id = f"{operation}-{uuid.uuid4().hex[:8]}"

    with logger.contextualize(job_id=job_id, operation=operation, **details):
        start_time = time.time()
        log = logger.bind(source=operation, job_id=job_id, tags=[operation])

        log.bind(**details).info(f"{operation.capitalize()} started")

        try:
            yield log
            duration = time.time() - start_time
            log.bind(duration_seconds=round(duration, 2)).success(
                f"{operation.capitalize()} completed"
            )
        except BaseException as e:
            duration = time.time() - start_time
            # messages may contain literal braces, so extras are bound
            log.bind(
                error=str(e),
                error_type=type(e).__name__,
                duration_seconds=round(duration, 2),
            ).error(f"{operation.capitalize()} failed: {e}")
            raise


class LoggerFactory:
    """
    Factory for domain-specific loggers with automatic context.

    Each factory method returns a logger pre-configured with the source and
    tags of one build component.
    """

    @staticmethod
    def for_build(job_id: str | None = None) -> Logger:
        """Logger for the build orchestrator."""
        if job_id is None:
            job_id = f"build-{uuid.uuid4().hex[:8]}"
        return logger.bind(job_id=job_id, source="build", tags=["build"])

    @staticmethod
    def for_image() -> Logger:
        """Logger for image file and partition table operations."""
        return logger.bind(source="image", tags=["image", "storage"])

    @staticmethod
    def for_devices() -> Logger:
        """Logger for loop device attach/detach."""
        return logger.bind(source="loop", tags=["loop", "device"])

    @staticmethod
    def for_mount() -> Logger:
        """Logger for formatting, mounting and copying."""
        return logger.bind(source="mount", tags=["mount", "storage"])

    @staticmethod
    def for_commands() -> Logger:
        """Logger for external command execution."""
        return logger.bind(source="cmd", tags=["command"])

    @staticmethod
    def for_system() -> Logger:
        """Logger for startup, signals and configuration."""
        return logger.bind(source="system", tags=["system"])
