"""Image file creation and partition table handling.

Operations:
    - create_image(): create the sparse backing file with a cleared table area
    - validate_partition_entries(): refuse geometry a DOS table cannot hold
    - write_partition_table(): write the firmware + root entries with sfdisk
    - read_partition_table(): read entries back via ``sfdisk --json``

The table is a DOS (MBR) label so the Raspberry Pi boot ROM can find the
FAT32 firmware partition.
"""

from __future__ import annotations

import json
from pathlib import Path

from rpi_image_builder.domain.models import ImagePlan, PartitionEntry
from rpi_image_builder.logging import LoggerFactory

from .commands import run_checked_command
from .exceptions import ImageIOError, PartitionError

log = LoggerFactory.for_image()

# DOS partition entries store start and size as 32-bit sector counts
MBR_MAX_SECTORS = 2**32 - 1
# Write zeros in bounded chunks when clearing the table area
_ZERO_CHUNK_BYTES = 1024 * 1024


def create_image(path: Path, plan: ImagePlan) -> Path:
    """Create ``path`` as a sparse file of exactly ``plan.image_bytes`` bytes.

    An existing file is overwritten. The table reserve is explicitly zeroed so
    no stale partition table survives; the rest is extended with truncate and
    occupies no blocks until written.

    Raises:
        ImageIOError: If the file cannot be created, written or sized
    """
    path = Path(path)
    log.info(f"Creating {plan.image_bytes} byte image at {path}")
    try:
        with open(path, "wb") as image:
            remaining = plan.table_bytes
            while remaining > 0:
                chunk = min(remaining, _ZERO_CHUNK_BYTES)
                image.write(b"\x00" * chunk)
                remaining -= chunk
            image.truncate(plan.image_bytes)
    except OSError as error:
        raise ImageIOError(f"Failed to create image {path}: {error}", str(path)) from error
    return path


def validate_partition_entries(entries: list[PartitionEntry], plan: ImagePlan) -> None:
    """Check the entries fit a DOS table inside the planned image.

    Raises:
        PartitionError: On empty, overlapping or out-of-range entries
    """
    if not entries:
        raise PartitionError("No partitions to write")
    if len(entries) > 4:
        raise PartitionError(f"DOS table holds at most 4 primary partitions, got {len(entries)}")

    for index, entry in enumerate(entries, start=1):
        if entry.size_sectors <= 0:
            raise PartitionError(f"Partition {index} is empty")
        if entry.start_sectors < plan.table_sectors:
            raise PartitionError(
                f"Partition {index} starts at sector {entry.start_sectors}, "
                f"inside the {plan.table_sectors} sector table reserve"
            )
        if entry.end_sectors > plan.image_sectors:
            raise PartitionError(
                f"Partition {index} ends at sector {entry.end_sectors}, "
                f"past the image end ({plan.image_sectors})"
            )
        if entry.start_sectors > MBR_MAX_SECTORS or entry.size_sectors > MBR_MAX_SECTORS:
            raise PartitionError(f"Partition {index} exceeds the DOS table sector limit")

    for index, entry in enumerate(entries):
        for other_index in range(index + 1, len(entries)):
            other = entries[other_index]
            if entry.overlaps(other):
                raise PartitionError(
                    f"Partitions {index + 1} and {other_index + 1} overlap "
                    f"([{entry.start_sectors}, {entry.end_sectors}) and "
                    f"[{other.start_sectors}, {other.end_sectors}))"
                )


def build_sfdisk_script(entries: list[PartitionEntry], sector_size: int) -> str:
    lines = ["label: dos", "unit: sectors"]
    if sector_size != 512:
        lines.append(f"sector-size: {sector_size}")
    lines.append("")
    for entry in entries:
        fields = [
            f"start={entry.start_sectors}",
            f"size={entry.size_sectors}",
            f"type={entry.type_id}",
        ]
        if entry.bootable:
            fields.append("bootable")
        lines.append(", ".join(fields))
    return "\n".join(lines) + "\n"


def write_partition_table(path: Path, plan: ImagePlan) -> list[PartitionEntry]:
    """Write the firmware and root entries of ``plan`` to the image.

    Geometry is validated first; nothing is written when it is refused.

    Returns:
        The entries written, in table order

    Raises:
        PartitionError: On invalid geometry or sfdisk failure
    """
    entries = plan.partition_entries()
    validate_partition_entries(entries, plan)
    script = build_sfdisk_script(entries, plan.sector_size)
    log.debug(f"Writing partition table to {path}:\n{script}")
    run_checked_command(
        ["sfdisk", "--no-reread", "--no-tell-kernel", str(path)],
        error_type=PartitionError,
        input_text=script,
    )
    log.info(f"Partition table written to {path} ({len(entries)} entries)")
    return entries


def read_partition_table(path: Path) -> list[PartitionEntry]:
    """Read the DOS partition table of ``path``.

    Raises:
        PartitionError: If sfdisk fails or prints unexpected JSON
    """
    output = run_checked_command(["sfdisk", "--json", str(path)], error_type=PartitionError)
    try:
        table = json.loads(output)["partitiontable"]
        partitions = table.get("partitions", [])
        return [
            PartitionEntry(
                start_sectors=int(part["start"]),
                size_sectors=int(part["size"]),
                type_id=str(part["type"]).lower(),
                bootable=bool(part.get("bootable", False)),
            )
            for part in partitions
        ]
    except (ValueError, KeyError, TypeError) as error:
        raise PartitionError(f"Could not parse partition table of {path}: {error}") from error


def verify_partition_table(path: Path, expected: list[PartitionEntry]) -> None:
    """Raise PartitionError unless the table on disk matches ``expected``."""
    actual = read_partition_table(path)
    if actual != expected:
        raise PartitionError(
            f"Partition table of {path} does not match the plan: "
            f"expected {expected}, found {actual}"
        )
    log.debug(f"Partition table of {path} verified")
