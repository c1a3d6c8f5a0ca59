"""Domain model for image build operations.

Type-safe value objects passed between the geometry calculator, the image
and device layers, and the orchestrator.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Optional

MIB = 1024 * 1024

# DOS/MBR partition type ids
PARTITION_TYPE_FAT32_LBA = "c"
PARTITION_TYPE_LINUX = "83"


# ==============================================================================
# Geometry
# ==============================================================================


@dataclass(frozen=True)
class PartitionEntry:
    """One entry of the image's partition table, in sectors."""

    start_sectors: int
    size_sectors: int
    type_id: str
    bootable: bool = False

    @property
    def end_sectors(self) -> int:
        """First sector past the end of the partition."""
        return self.start_sectors + self.size_sectors

    def overlaps(self, other: PartitionEntry) -> bool:
        return (
            self.start_sectors < other.end_sectors
            and other.start_sectors < self.end_sectors
        )


@dataclass(frozen=True)
class ImagePlan:
    """Image size and partition layout computed from the source content size.

    All ``*_sectors`` fields use ``sector_size`` byte sectors and all
    ``*_mb`` fields are MiB; convert through the properties, never by hand.
    """

    source_size_kb: int
    sector_size: int
    table_sectors: int
    firmware_sectors: int
    root_sectors: int
    image_sectors: int
    root_offset_sectors: int
    firmware_offset_mb: int
    firmware_size_mb: int
    root_offset_mb: int

    @property
    def image_bytes(self) -> int:
        return self.image_sectors * self.sector_size

    @property
    def table_bytes(self) -> int:
        return self.table_sectors * self.sector_size

    @property
    def root_bytes(self) -> int:
        return self.root_sectors * self.sector_size

    def partition_entries(self) -> list[PartitionEntry]:
        """Firmware and root entries, in table order."""
        return [
            PartitionEntry(
                start_sectors=self.table_sectors,
                size_sectors=self.firmware_sectors,
                type_id=PARTITION_TYPE_FAT32_LBA,
                bootable=True,
            ),
            PartitionEntry(
                start_sectors=self.root_offset_sectors,
                size_sectors=self.root_sectors,
                type_id=PARTITION_TYPE_LINUX,
            ),
        ]


# ==============================================================================
# Resource handles
# ==============================================================================


class FilesystemKind(Enum):
    FAT32 = "vfat"
    EXT4 = "ext4"


@dataclass(frozen=True)
class LoopDevice:
    """A loop block device bound to a byte range of the image file."""

    backing_file: Path
    offset_bytes: int
    size_limit_bytes: Optional[int]  # None binds to the end of the file
    device_path: str

    @property
    def name(self) -> str:
        """Kernel device name (e.g., loop3)."""
        return Path(self.device_path).name


@dataclass(frozen=True)
class MountPoint:
    """A mounted filesystem and the device backing it."""

    path: Path
    device: LoopDevice
