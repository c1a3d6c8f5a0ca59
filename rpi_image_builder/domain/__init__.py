"""Domain models for image build operations."""

from __future__ import annotations

from .models import (
    FilesystemKind,
    ImagePlan,
    LoopDevice,
    MountPoint,
    PartitionEntry,
)


__all__ = [
    "FilesystemKind",
    "ImagePlan",
    "LoopDevice",
    "MountPoint",
    "PartitionEntry",
]
