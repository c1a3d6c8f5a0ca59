"""Build orchestration: plan, materialize, mount, copy, tear down.

``ImageBuilder.build()`` walks a fixed sequence of stages, one operation per
stage. Every acquired resource is recorded in a ``WorkingState`` the moment
it is acquired; on any failure (including SIGINT/SIGTERM) the builder moves
to ``FAILED``, releases what is live in reverse order, deletes the partial
image and re-raises the original error. On success the same teardown runs,
keeping the image.
"""

from __future__ import annotations

import contextlib
import signal
import tempfile
import threading
from enum import Enum
from pathlib import Path
from typing import Optional

from rpi_image_builder.config.settings import ImageSettings
from rpi_image_builder.domain.models import FilesystemKind, ImagePlan
from rpi_image_builder.logging import LoggerFactory
from rpi_image_builder.storage import geometry, image, loop, mount
from rpi_image_builder.storage.copy import copy_tree
from rpi_image_builder.storage.exceptions import (
    BuildInterruptedError,
    ImageBuilderError,
    InvalidInputError,
    MountError,
)
from rpi_image_builder.storage.state import (
    FIRMWARE_LOOP,
    FIRMWARE_MOUNT,
    ROOT_LOOP,
    ROOT_MOUNT,
    WorkingState,
    teardown,
)

HANDLED_SIGNALS = (signal.SIGINT, signal.SIGTERM)


class BuildStage(Enum):
    INIT = "init"
    SIZE_COMPUTED = "size-computed"
    IMAGE_CREATED = "image-created"
    TABLE_WRITTEN = "table-written"
    ROOT_ATTACHED = "root-attached"
    ROOT_FORMATTED = "root-formatted"
    ROOT_MOUNTED = "root-mounted"
    FIRMWARE_ATTACHED = "firmware-attached"
    FIRMWARE_FORMATTED = "firmware-formatted"
    FIRMWARE_MOUNTED = "firmware-mounted"
    CONTENT_COPIED = "content-copied"
    CLEANED_UP = "cleaned-up"
    DONE = "done"
    FAILED = "failed"


class ImageBuilder:
    """Build one image from ``source_dir`` into ``output_path``."""

    def __init__(
        self,
        source_dir,
        output_path,
        settings: Optional[ImageSettings] = None,
        work_dir=None,
    ):
        self.source_dir = source_dir
        self.output_path = output_path
        self.settings = settings or ImageSettings()
        self.work_dir = work_dir
        self.state = WorkingState()
        self.stage = BuildStage.INIT
        self.failed_stage: Optional[BuildStage] = None
        self.plan: Optional[ImagePlan] = None
        self.log = LoggerFactory.for_build()
        self._deferring_signals = False
        self._pending_signal: Optional[int] = None

    # ------------------------------------------------------------------
    # Input validation
    # ------------------------------------------------------------------

    def validate_inputs(self) -> None:
        """Check paths before anything is created.

        Raises:
            InvalidInputError: On a missing, empty or conflicting path
        """
        if not self.source_dir or not str(self.source_dir).strip():
            raise InvalidInputError("Source directory path is empty")
        if not self.output_path or not str(self.output_path).strip():
            raise InvalidInputError("Output image path is empty")

        source = Path(self.source_dir)
        output = Path(self.output_path)
        if not source.exists():
            raise InvalidInputError(f"Source directory does not exist: {source}")
        if not source.is_dir():
            raise InvalidInputError(f"Source is not a directory: {source}")
        if output.is_dir():
            raise InvalidInputError(f"Output path is a directory: {output}")
        if not output.parent.resolve().is_dir():
            raise InvalidInputError(f"Output directory does not exist: {output.parent}")

        source_resolved = source.resolve()
        output_resolved = output.resolve()
        if source_resolved in output_resolved.parents:
            raise InvalidInputError(
                f"Output image {output} must not be inside the source tree {source}"
            )
        if self.work_dir is not None and not Path(self.work_dir).is_dir():
            raise InvalidInputError(f"Working directory does not exist: {self.work_dir}")

        self.source_dir = source
        self.output_path = output

    # ------------------------------------------------------------------
    # Signals
    # ------------------------------------------------------------------

    def _on_signal(self, signum, frame) -> None:
        if self._deferring_signals:
            self.log.warning(
                f"Signal {signum} received; deferred until the current step finishes"
            )
            self._pending_signal = signum
            return
        raise BuildInterruptedError(signum)

    @contextlib.contextmanager
    def _signals_deferred(self):
        """Hold SIGINT/SIGTERM while a resource is acquired and recorded, or released."""
        self._deferring_signals = True
        try:
            yield
        finally:
            self._deferring_signals = False

    def _raise_pending_signal(self) -> None:
        if self._pending_signal is not None:
            signum, self._pending_signal = self._pending_signal, None
            raise BuildInterruptedError(signum)

    @contextlib.contextmanager
    def _signal_handlers(self):
        if threading.current_thread() is not threading.main_thread():
            yield
            return
        previous = {signum: signal.getsignal(signum) for signum in HANDLED_SIGNALS}
        for signum in HANDLED_SIGNALS:
            signal.signal(signum, self._on_signal)
        try:
            yield
        finally:
            for signum, handler in previous.items():
                signal.signal(signum, handler)

    # ------------------------------------------------------------------
    # Build
    # ------------------------------------------------------------------

    def _advance(self, stage: BuildStage) -> None:
        self.stage = stage
        self.log.debug(f"Stage: {stage.value}")

    def _teardown(self, *, remove_image: bool) -> list[str]:
        with self._signals_deferred():
            return teardown(self.state, remove_image=remove_image)

    def _fail(self) -> None:
        self.failed_stage = self.stage
        self.stage = BuildStage.FAILED

    def build(self) -> ImagePlan:
        """Run every stage and return the plan the image was built from.

        A signal received while resources are being released is held until
        teardown finishes, then surfaces as ``BuildInterruptedError``.

        Raises:
            BuildInterruptedError: On SIGINT/SIGTERM, after teardown
            ImageBuilderError: The first failing stage's error, after teardown
        """
        try:
            self.validate_inputs()
        except InvalidInputError:
            self._fail()
            raise

        with self._signal_handlers():
            try:
                self._run_stages()
            except BaseException as error:
                self._fail()
                self.log.debug(
                    f"Failed after stage {self.failed_stage.value}: {type(error).__name__}"
                )
                self._teardown(remove_image=True)
                self._raise_pending_signal()
                raise

            errors = self._teardown(remove_image=False)
            if self._pending_signal is not None:
                self._fail()
                self._teardown(remove_image=True)
                self._raise_pending_signal()
            if errors:
                self._fail()
                raise ImageBuilderError(f"Teardown incomplete: {'; '.join(errors)}")
            self._advance(BuildStage.CLEANED_UP)

        self._advance(BuildStage.DONE)
        return self.plan

    def _run_stages(self) -> None:
        settings = self.settings
        source = self.source_dir
        output = self.output_path

        size_kb = geometry.disk_usage_kb(source)
        self.plan = plan = geometry.compute_plan(size_kb, settings)
        self.log.info(
            f"Source {source} is {geometry.human_size(size_kb * 1024)}; "
            f"image will be {geometry.human_size(plan.image_bytes)} "
            f"(root partition {geometry.human_size(plan.root_bytes)})"
        )
        self._advance(BuildStage.SIZE_COMPUTED)

        self.state.image_path = output
        image.create_image(output, plan)
        self._advance(BuildStage.IMAGE_CREATED)

        entries = image.write_partition_table(output, plan)
        image.verify_partition_table(output, entries)
        self._advance(BuildStage.TABLE_WRITTEN)

        with self._signals_deferred():
            root_loop = loop.attach(
                output, plan.root_offset_mb, None, state=self.state, slot=ROOT_LOOP
            )
        self._raise_pending_signal()
        self._advance(BuildStage.ROOT_ATTACHED)

        mount.format_device(root_loop, FilesystemKind.EXT4, settings.root_label)
        self._advance(BuildStage.ROOT_FORMATTED)

        with self._signals_deferred():
            try:
                work_dir = Path(tempfile.mkdtemp(prefix="rpi-image-", dir=self.work_dir))
            except OSError as error:
                raise MountError(f"Cannot create working directory: {error}") from error
            self.state.work_dir = work_dir
            root_mount = mount.mount(root_loop, work_dir, state=self.state, slot=ROOT_MOUNT)
        self._raise_pending_signal()
        self._advance(BuildStage.ROOT_MOUNTED)

        with self._signals_deferred():
            firmware_loop = loop.attach(
                output,
                plan.firmware_offset_mb,
                plan.firmware_size_mb,
                state=self.state,
                slot=FIRMWARE_LOOP,
            )
        self._raise_pending_signal()
        self._advance(BuildStage.FIRMWARE_ATTACHED)

        mount.format_device(firmware_loop, FilesystemKind.FAT32, settings.firmware_label)
        self._advance(BuildStage.FIRMWARE_FORMATTED)

        firmware_target = root_mount.path / settings.firmware_mount_subdir.strip("/")
        with self._signals_deferred():
            mount.mount(firmware_loop, firmware_target, state=self.state, slot=FIRMWARE_MOUNT)
        self._raise_pending_signal()
        self._advance(BuildStage.FIRMWARE_MOUNTED)

        copy_tree(source, root_mount.path, settings.firmware_mount_subdir)
        self._advance(BuildStage.CONTENT_COPIED)
