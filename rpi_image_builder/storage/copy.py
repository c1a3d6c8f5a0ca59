"""Copy the prepared root filesystem into the mounted image."""

from __future__ import annotations

from pathlib import Path

from rpi_image_builder.config.settings import DEFAULT_FIRMWARE_MOUNT_SUBDIR
from rpi_image_builder.logging import LoggerFactory

from .commands import run_checked_command
from .exceptions import CopyError

log = LoggerFactory.for_mount()


def copy_tree(
    source: Path,
    root_mount: Path,
    firmware_subdir: str = DEFAULT_FIRMWARE_MOUNT_SUBDIR,
) -> None:
    """Copy ``source`` into the root filesystem mounted at ``root_mount``.

    The root pass preserves hard links, ACLs, xattrs and ownership and stays
    on one filesystem. The firmware directory is excluded from it and copied
    in a second pass that only keeps times, since FAT has no owners or links.

    Raises:
        CopyError: If either rsync pass fails
    """
    source = Path(source)
    root_mount = Path(root_mount)
    firmware_subdir = firmware_subdir.strip("/")

    log.info(f"Copying {source} to {root_mount}")
    run_checked_command(
        [
            "rsync",
            "-aHAXx",
            "--exclude",
            f"/{firmware_subdir}",
            f"{source}/",
            f"{root_mount}/",
        ],
        error_type=CopyError,
    )

    firmware_source = source / firmware_subdir
    if firmware_source.is_dir():
        firmware_target = root_mount / firmware_subdir
        log.info(f"Copying firmware files to {firmware_target}")
        run_checked_command(
            ["rsync", "-rtx", f"{firmware_source}/", f"{firmware_target}/"],
            error_type=CopyError,
        )
    else:
        log.warning(f"{firmware_source} not found; firmware partition left empty")
