"""Loop block device attach and detach using losetup.

Each partition of the image is exposed as its own loop device bound to the
partition's byte range, so no partition scanning (``losetup -P``) or
partition device nodes are needed.
"""

from __future__ import annotations

from pathlib import Path
from typing import TYPE_CHECKING, Optional

from rpi_image_builder.domain.models import MIB, LoopDevice
from rpi_image_builder.logging import LoggerFactory

from .commands import run_checked_command
from .exceptions import LoopDeviceError

if TYPE_CHECKING:
    from .state import WorkingState

log = LoggerFactory.for_devices()

SYS_BLOCK = Path("/sys/block")


def is_attached(device_path: str) -> bool:
    """Return True if ``device_path`` is a loop device bound to a file."""
    name = Path(device_path).name
    return (SYS_BLOCK / name / "loop" / "backing_file").exists()


def attach(
    image_path: Path,
    offset_mb: int,
    size_limit_mb: Optional[int] = None,
    *,
    state: Optional[WorkingState] = None,
    slot: Optional[str] = None,
) -> LoopDevice:
    """Bind a free loop device to ``[offset, offset + size_limit)`` of the image.

    Args:
        image_path: Backing image file
        offset_mb: Start of the range in MiB
        size_limit_mb: Length of the range in MiB; None extends to end of file
        state: Working state to record the device in
        slot: Slot name in ``state``

    Returns:
        The attached LoopDevice

    Raises:
        LoopDeviceError: If the range exceeds the file, no loop device is
            free, or losetup fails
    """
    image_path = Path(image_path)
    offset_bytes = offset_mb * MIB
    size_limit_bytes = size_limit_mb * MIB if size_limit_mb is not None else None

    try:
        file_size = image_path.stat().st_size
    except OSError as error:
        raise LoopDeviceError(f"Cannot stat backing file {image_path}: {error}") from error
    end = offset_bytes + (size_limit_bytes or 0)
    if offset_bytes >= file_size or end > file_size:
        raise LoopDeviceError(
            f"Range offset={offset_bytes} sizelimit={size_limit_bytes} "
            f"exceeds {image_path} ({file_size} bytes)"
        )

    command = ["losetup", "--find", "--show", "--offset", str(offset_bytes)]
    if size_limit_bytes is not None:
        command.extend(["--sizelimit", str(size_limit_bytes)])
    command.append(str(image_path))

    output = run_checked_command(command, error_type=LoopDeviceError)
    device_path = output.strip()
    if not device_path.startswith("/dev/"):
        raise LoopDeviceError(f"losetup returned no device for {image_path}: {output!r}")

    device = LoopDevice(
        backing_file=image_path,
        offset_bytes=offset_bytes,
        size_limit_bytes=size_limit_bytes,
        device_path=device_path,
    )
    if state is not None and slot is not None:
        state.record(slot, device)
    log.info(f"Attached {device_path} at offset {offset_mb} MiB of {image_path}")
    return device


def detach(
    device: LoopDevice,
    *,
    state: Optional[WorkingState] = None,
    slot: Optional[str] = None,
) -> None:
    """Release ``device``; a device that is no longer attached is a no-op.

    Raises:
        LoopDeviceError: If the device is attached and losetup cannot free it
    """
    if is_attached(device.device_path):
        run_checked_command(
            ["losetup", "--detach", device.device_path], error_type=LoopDeviceError
        )
        log.info(f"Detached {device.device_path}")
    else:
        log.debug(f"{device.device_path} already detached")
    if state is not None and slot is not None:
        state.clear(slot)
