"""Filesystem creation and mounting for attached loop devices.

Functions:
    - format_device(): create a FAT32 or ext4 filesystem on a loop device
    - mount(): mount a loop device, creating the target directory
    - unmount(): unmount a mount point (no-op when not mounted)
    - is_mounted(): /proc/mounts lookup

All commands run through subprocess argument lists; device paths must be
/dev/ nodes.
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import TYPE_CHECKING, Optional

from rpi_image_builder.domain.models import FilesystemKind, LoopDevice, MountPoint
from rpi_image_builder.logging import LoggerFactory

from .commands import run_checked_command
from .exceptions import FormatError, ImageBuilderError, MountError, UnmountFailedError

if TYPE_CHECKING:
    from .state import WorkingState

log = LoggerFactory.for_mount()

PROC_MOUNTS = Path("/proc/mounts")


def _validate_device_path(device_path: str) -> bool:
    """Validate that device path starts with /dev/."""
    return device_path.startswith("/dev/")


def _decode_mount_field(value: str) -> str:
    # /proc/mounts escapes space, tab, newline and backslash as octal
    for escaped, char in (("\\040", " "), ("\\011", "\t"), ("\\012", "\n"), ("\\134", "\\")):
        value = value.replace(escaped, char)
    return value


def is_mounted(path: Path) -> bool:
    """Check if ``path`` is currently an active mount point."""
    target = os.path.realpath(path)
    try:
        with open(PROC_MOUNTS, "r", encoding="utf-8") as mounts_file:
            for line in mounts_file:
                parts = line.split()
                if len(parts) > 1 and _decode_mount_field(parts[1]) == target:
                    return True
    except FileNotFoundError:
        return os.path.ismount(target)
    return False


def _format_command(device_path: str, kind: FilesystemKind, label: Optional[str]) -> list[str]:
    if kind is FilesystemKind.FAT32:
        command = ["mkfs.vfat", "-F", "32"]
        if label:
            command.extend(["-n", label])
    elif kind is FilesystemKind.EXT4:
        command = ["mkfs.ext4", "-F", "-q"]
        if label:
            command.extend(["-L", label])
    else:
        raise FormatError(f"Unsupported filesystem type: {kind}", device_path)
    command.append(device_path)
    return command


def format_device(device: LoopDevice, kind: FilesystemKind, label: Optional[str] = None) -> None:
    """Create a ``kind`` filesystem on ``device``.

    Raises:
        FormatError: On an invalid device path or mkfs failure
    """
    if not _validate_device_path(device.device_path):
        raise FormatError(f"Invalid device path: {device.device_path}", device.device_path)
    command = _format_command(device.device_path, kind, label)
    log.info(f"Formatting {device.device_path} as {kind.value}")
    try:
        run_checked_command(command, error_type=FormatError)
    except FormatError as error:
        error.device = device.device_path
        raise


def mount(
    device: LoopDevice,
    target: Path,
    *,
    state: Optional[WorkingState] = None,
    slot: Optional[str] = None,
) -> MountPoint:
    """Mount ``device`` at ``target``, creating the directory if absent.

    Raises:
        MountError: If the target cannot be created or mount fails
    """
    target = Path(target)
    try:
        target.mkdir(parents=True, exist_ok=True)
    except OSError as error:
        raise MountError(f"Cannot create mount point {target}: {error}") from error

    run_checked_command(["mount", device.device_path, str(target)], error_type=MountError)

    mount_point = MountPoint(path=target, device=device)
    if state is not None and slot is not None:
        state.record(slot, mount_point)
    log.info(f"Mounted {device.device_path} at {target}")
    return mount_point


def unmount(
    mount_point: MountPoint,
    *,
    state: Optional[WorkingState] = None,
    slot: Optional[str] = None,
) -> None:
    """Unmount ``mount_point``; already unmounted is a no-op.

    Raises:
        UnmountFailedError: If umount fails (e.g., target busy)
    """
    if is_mounted(mount_point.path):
        try:
            run_checked_command(["umount", str(mount_point.path)], error_type=ImageBuilderError)
        except ImageBuilderError as error:
            raise UnmountFailedError(str(mount_point.path), str(error)) from error
        log.info(f"Unmounted {mount_point.path}")
    else:
        log.debug(f"{mount_point.path} is not mounted")
    if state is not None and slot is not None:
        state.clear(slot)
