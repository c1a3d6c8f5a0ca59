"""Live resource tracking and reverse-order teardown.

``WorkingState`` records every handle the build currently holds. Acquire
operations store their handle in a slot as soon as they succeed and release
operations clear it as soon as they succeed, so ``teardown`` can be run from
any point (and any number of times) and only touches what is still live.

Teardown order:
    1. unmount firmware (nested inside root)
    2. unmount root
    3. detach root loop device
    4. detach firmware loop device
    5. remove the temporary working directory
    6. delete the output image (failure path only)
"""

from __future__ import annotations

import shutil
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Union

from rpi_image_builder.domain.models import LoopDevice, MountPoint
from rpi_image_builder.logging import LoggerFactory

from . import loop, mount
from .exceptions import ImageBuilderError

log = LoggerFactory.for_build(job_id="teardown")

FIRMWARE_LOOP = "firmware_loop"
ROOT_LOOP = "root_loop"
ROOT_MOUNT = "root_mount"
FIRMWARE_MOUNT = "firmware_mount"

RESOURCE_SLOTS = (FIRMWARE_LOOP, ROOT_LOOP, ROOT_MOUNT, FIRMWARE_MOUNT)

Handle = Union[LoopDevice, MountPoint]


@dataclass
class WorkingState:
    """Resources currently held by a build; ``None`` means unused."""

    firmware_loop: Optional[LoopDevice] = None
    root_loop: Optional[LoopDevice] = None
    root_mount: Optional[MountPoint] = None
    firmware_mount: Optional[MountPoint] = None
    work_dir: Optional[Path] = None
    image_path: Optional[Path] = None

    def record(self, slot: str, handle: Handle) -> None:
        if slot not in RESOURCE_SLOTS:
            raise ValueError(f"Unknown resource slot: {slot}")
        if getattr(self, slot) is not None:
            raise ValueError(f"Resource slot {slot} is already live")
        setattr(self, slot, handle)
        log.trace(f"Acquired {slot}: {handle}")

    def clear(self, slot: str) -> None:
        if slot not in RESOURCE_SLOTS:
            raise ValueError(f"Unknown resource slot: {slot}")
        setattr(self, slot, None)
        log.trace(f"Released {slot}")

    def is_live(self, slot: str) -> bool:
        return getattr(self, slot) is not None

    def live_slots(self) -> list[str]:
        return [slot for slot in RESOURCE_SLOTS if self.is_live(slot)]

    @property
    def has_live_mounts(self) -> bool:
        return self.is_live(ROOT_MOUNT) or self.is_live(FIRMWARE_MOUNT)

    @property
    def has_live_devices(self) -> bool:
        return self.is_live(ROOT_LOOP) or self.is_live(FIRMWARE_LOOP)


def _release(state: WorkingState, slot: str, errors: list[str]) -> None:
    handle = getattr(state, slot)
    if handle is None:
        return
    try:
        if isinstance(handle, MountPoint):
            mount.unmount(handle, state=state, slot=slot)
        else:
            loop.detach(handle, state=state, slot=slot)
    except ImageBuilderError as error:
        log.warning(f"Could not release {slot}: {error}")
        errors.append(str(error))


def teardown(state: WorkingState, *, remove_image: bool = False) -> list[str]:
    """Release everything ``state`` marks live, in reverse acquisition order.

    Best-effort: a failed release is logged and teardown moves on. The work
    directory is kept while a mount is still live and the image while a loop
    device still references it.

    Returns:
        Messages for the releases that failed (empty when all succeeded)
    """
    errors: list[str] = []
    live = state.live_slots()
    if live:
        log.debug(f"Tearing down: {', '.join(live)}")

    for slot in (FIRMWARE_MOUNT, ROOT_MOUNT, ROOT_LOOP, FIRMWARE_LOOP):
        _release(state, slot, errors)

    if state.work_dir is not None:
        if state.has_live_mounts:
            log.warning(f"Keeping {state.work_dir}: a filesystem is still mounted inside it")
        else:
            log.debug(f"Removing working directory {state.work_dir}")
            shutil.rmtree(state.work_dir, ignore_errors=True)
            state.work_dir = None

    if remove_image and state.image_path is not None:
        if state.has_live_devices:
            log.warning(f"Keeping {state.image_path}: a loop device still references it")
        else:
            try:
                state.image_path.unlink()
                log.info(f"Removed incomplete image {state.image_path}")
            except FileNotFoundError:
                pass
            except OSError as error:
                log.warning(f"Could not remove {state.image_path}: {error}")
                errors.append(str(error))
            state.image_path = None

    return errors
