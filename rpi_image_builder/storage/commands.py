"""External command execution helpers."""

from __future__ import annotations

import shutil
import subprocess
from typing import Iterable, Optional, Sequence, Type

from rpi_image_builder.logging import LoggerFactory

from .exceptions import ImageBuilderError, MissingToolError

log = LoggerFactory.for_commands()

REQUIRED_TOOLS = (
    "du",
    "sfdisk",
    "losetup",
    "mkfs.vfat",
    "mkfs.ext4",
    "mount",
    "umount",
    "rsync",
)


def _stringify(command: Sequence) -> list[str]:
    return [str(part) for part in command]


def run_command(command, check=True, input_text=None, log_output=True, log_command=True):
    command = _stringify(command)
    if log_command:
        log.debug(f"Running command: {' '.join(command)}")
    try:
        result = subprocess.run(
            command, check=check, input=input_text, text=True, capture_output=True
        )
    except subprocess.CalledProcessError as error:
        log.debug(f"Command failed: {' '.join(command)}")
        if error.stdout:
            log.debug(f"stdout: {error.stdout.strip()}")
        if error.stderr:
            log.debug(f"stderr: {error.stderr.strip()}")
        raise
    if result.stdout and (log_output or result.returncode != 0):
        log.debug(f"stdout: {result.stdout.strip()}")
    if result.stderr and (log_output or result.returncode != 0):
        log.debug(f"stderr: {result.stderr.strip()}")
    if log_command:
        log.debug(f"Command completed with return code {result.returncode}")
    return result


def run_checked_command(
    command,
    error_type: Type[ImageBuilderError] = ImageBuilderError,
    input_text: Optional[str] = None,
) -> str:
    """Run a command and raise ``error_type`` if it fails.

    The tool's stderr (or stdout when stderr is empty) is carried in the
    error message. A missing executable is reported the same way.
    """
    command = _stringify(command)
    try:
        result = run_command(command, check=False, input_text=input_text)
    except OSError as error:
        raise error_type(f"Command failed ({' '.join(command)}): {error}") from error
    if result.returncode != 0:
        stderr = (result.stderr or "").strip()
        stdout = (result.stdout or "").strip()
        message = stderr or stdout or f"exit code {result.returncode}"
        raise error_type(f"Command failed ({' '.join(command)}): {message}")
    return result.stdout


def missing_tools(names: Iterable[str] = REQUIRED_TOOLS) -> list[str]:
    return [name for name in names if shutil.which(name) is None]


def require_tools(names: Iterable[str] = REQUIRED_TOOLS) -> None:
    """Raise MissingToolError listing every tool not found on PATH."""
    missing = missing_tools(names)
    if missing:
        raise MissingToolError(missing)
