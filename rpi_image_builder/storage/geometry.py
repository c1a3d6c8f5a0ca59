"""Image size and partition geometry calculation.

The image holds a fixed table reserve, a fixed-size FAT32 firmware
partition and an ext4 root partition sized from the source content:

    | table reserve | firmware (FAT32) | root (ext4)                  |
    0               table_sectors      root_offset_sectors            image_sectors

The root partition gets the source size plus an overhead margin for
journaling and reserved blocks. The margin is computed on the source size
truncated to whole hundreds of KB, so for 1,000,099 KB it is still 250,000 KB:

    root_kb = kb + (kb // 100) * overhead_percent

Integer arithmetic is used throughout; Python ints never overflow, so very
large root filesystems are sized exactly.
"""

from __future__ import annotations

from pathlib import Path

from rpi_image_builder.config.settings import ImageSettings
from rpi_image_builder.domain.models import MIB, ImagePlan
from rpi_image_builder.logging import LoggerFactory

from .commands import run_checked_command
from .exceptions import InvalidInputError

log = LoggerFactory.for_image()


def _require_positive(name: str, value) -> int:
    if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
        raise InvalidInputError(f"{name} must be a positive integer, got {value!r}")
    return value


def human_size(size_bytes):
    if size_bytes is None:
        return "0B"
    size = float(size_bytes)
    for unit in ["B", "KB", "MB", "GB", "TB"]:
        if size < 1024.0:
            return f"{size:.1f}{unit}"
        size /= 1024.0
    return f"{size:.1f}PB"


def mb_to_sectors(size_mb: int, sector_size: int) -> int:
    return size_mb * MIB // sector_size


def compute_plan(source_size_kb: int, settings: ImageSettings | None = None) -> ImagePlan:
    """Compute the image layout for ``source_size_kb`` KB of root content.

    Raises:
        InvalidInputError: If the source size is not positive, or a sizing
            setting is invalid (sector size must divide 1 MiB).
    """
    settings = settings or ImageSettings()
    _require_positive("source size (KB)", source_size_kb)
    sector_size = _require_positive("sector size", settings.sector_size)
    table_mb = _require_positive("table reserve (MB)", settings.table_reserve_mb)
    firmware_mb = _require_positive("firmware size (MB)", settings.firmware_size_mb)
    overhead = settings.root_overhead_percent
    if isinstance(overhead, bool) or not isinstance(overhead, int) or overhead < 0:
        raise InvalidInputError(
            f"root overhead percent must be a non-negative integer, got {overhead!r}"
        )
    if MIB % sector_size:
        raise InvalidInputError(f"sector size {sector_size} does not divide 1 MiB")

    table_sectors = mb_to_sectors(table_mb, sector_size)
    firmware_sectors = mb_to_sectors(firmware_mb, sector_size)
    root_offset_sectors = table_sectors + firmware_sectors

    root_kb = source_size_kb + (source_size_kb // 100) * overhead
    root_sectors = root_kb * 1024 // sector_size

    image_sectors = table_sectors + firmware_sectors + root_sectors

    plan = ImagePlan(
        source_size_kb=source_size_kb,
        sector_size=sector_size,
        table_sectors=table_sectors,
        firmware_sectors=firmware_sectors,
        root_sectors=root_sectors,
        image_sectors=image_sectors,
        root_offset_sectors=root_offset_sectors,
        firmware_offset_mb=table_mb,
        firmware_size_mb=firmware_mb,
        root_offset_mb=settings.root_offset_mb,
    )
    log.debug(
        f"Plan for {source_size_kb} KB: table={table_sectors} firmware={firmware_sectors} "
        f"root={root_sectors} image={image_sectors} sectors"
    )
    return plan


def disk_usage_kb(path: Path) -> int:
    """Total size of ``path`` in KB as reported by ``du -sk``."""
    output = run_checked_command(["du", "-sk", str(path)], error_type=InvalidInputError)
    first = output.strip().split(maxsplit=1)
    try:
        return int(first[0])
    except (IndexError, ValueError) as error:
        raise InvalidInputError(
            f"Could not parse disk usage for {path}: {output.strip()!r}"
        ) from error
