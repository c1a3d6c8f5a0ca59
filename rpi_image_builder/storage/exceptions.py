"""Custom exceptions for image build operations.

Every failure during a build maps onto one of these types so the
orchestrator can tear down acquired resources and report a single,
specific error line.

Exception Hierarchy:
    ImageBuilderError (base)
        ├── InvalidInputError
        │   ├── InsufficientPrivilegeError
        │   └── MissingToolError
        ├── ImageIOError
        ├── PartitionError
        ├── DeviceError
        │   └── LoopDeviceError
        ├── FormatError
        ├── MountError
        │   └── UnmountFailedError
        ├── CopyError
        └── BuildInterruptedError

Usage:
    from rpi_image_builder.storage.exceptions import PartitionError

    if entry.start_sectors < plan.table_sectors:
        raise PartitionError("partition starts inside the table reserve")
"""

from typing import List


class ImageBuilderError(Exception):
    """Base exception for all image build operations."""



class InvalidInputError(ImageBuilderError):
    """Bad or missing arguments, detected before any resource is acquired."""



class InsufficientPrivilegeError(InvalidInputError):
    """The build was started without root privileges."""

    def __init__(self, euid: int):
        self.euid = euid
        super().__init__(f"Root privileges are required (running as uid {euid})")


class MissingToolError(InvalidInputError):
    """One or more required external tools are not on PATH."""

    def __init__(self, tools: List[str]):
        self.tools = tools
        super().__init__(f"Required tools not found: {', '.join(tools)}")


class ImageIOError(ImageBuilderError):
    """Image file could not be created or sized."""

    def __init__(self, message: str, path: str = None):
        self.path = path
        super().__init__(message)


class PartitionError(ImageBuilderError):
    """Partition table geometry is invalid or could not be written."""



class DeviceError(ImageBuilderError):
    """Base exception for block device errors."""



class LoopDeviceError(DeviceError):
    """Loop device could not be attached or released."""

    def __init__(self, message: str, device: str = None):
        self.device = device
        super().__init__(message)


class FormatError(ImageBuilderError):
    """Filesystem creation failed."""

    def __init__(self, message: str, device: str = None):
        self.device = device
        super().__init__(message)


class MountError(ImageBuilderError):
    """Base exception for mount-related errors."""



class UnmountFailedError(MountError):
    """Failed to unmount a mount point."""

    def __init__(self, mountpoint: str, reason: str = ""):
        self.mountpoint = mountpoint
        self.reason = reason
        msg = f"Failed to unmount {mountpoint}"
        if reason:
            msg += f": {reason}"
        super().__init__(msg)


class CopyError(ImageBuilderError):
    """Copying the root filesystem content failed."""



class BuildInterruptedError(ImageBuilderError):
    """The build received a termination or interrupt signal."""

    def __init__(self, signum: int):
        self.signum = signum
        super().__init__(f"Build interrupted by signal {signum}")
