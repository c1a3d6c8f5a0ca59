"""Tests for storage/loop.py - loop device attach and detach."""

from unittest.mock import patch

import pytest

from rpi_image_builder.storage import loop
from rpi_image_builder.storage.exceptions import DeviceError, LoopDeviceError
from rpi_image_builder.storage.state import FIRMWARE_LOOP, ROOT_LOOP, WorkingState

MIB = 1024 * 1024


class TestAttach:
    """Tests for attach()."""

    def test_firmware_range(self, fake_tools, image_file):
        device = loop.attach(image_file, 1, 128)

        assert device.device_path == "/dev/loop0"
        assert device.offset_bytes == MIB
        assert device.size_limit_bytes == 128 * MIB
        assert device.backing_file == image_file
        assert fake_tools.calls == [
            [
                "losetup",
                "--find",
                "--show",
                "--offset",
                str(MIB),
                "--sizelimit",
                str(128 * MIB),
                str(image_file),
            ]
        ]

    def test_root_range_has_no_size_limit(self, fake_tools, image_file):
        device = loop.attach(image_file, 129)

        assert device.size_limit_bytes is None
        assert "--sizelimit" not in fake_tools.calls[0]
        assert fake_tools.calls[0][4] == str(129 * MIB)

    def test_records_in_state(self, fake_tools, image_file):
        state = WorkingState()

        device = loop.attach(image_file, 129, state=state, slot=ROOT_LOOP)

        assert state.root_loop == device
        assert state.live_slots() == [ROOT_LOOP]

    def test_range_beyond_file_refused(self, fake_tools, image_file, small_plan):
        state = WorkingState()
        past_end = small_plan.image_bytes // MIB + 1

        with pytest.raises(LoopDeviceError, match="exceeds"):
            loop.attach(image_file, past_end, state=state, slot=ROOT_LOOP)

        assert fake_tools.calls == []
        assert state.root_loop is None

    def test_size_limit_beyond_file_refused(self, fake_tools, image_file):
        with pytest.raises(LoopDeviceError, match="exceeds"):
            loop.attach(image_file, 1, 10_000)

    def test_missing_backing_file(self, fake_tools, tmp_path):
        with pytest.raises(LoopDeviceError, match="Cannot stat"):
            loop.attach(tmp_path / "missing.img", 1, 128)

    def test_no_free_device(self, fake_tools, image_file):
        state = WorkingState()
        fake_tools.fail("losetup", stderr="losetup: cannot find an unused loop device")

        with pytest.raises(DeviceError, match="unused loop device"):
            loop.attach(image_file, 1, 128, state=state, slot=FIRMWARE_LOOP)

        assert state.firmware_loop is None

    @patch("rpi_image_builder.storage.loop.run_checked_command", return_value="\n")
    def test_empty_output(self, mock_run, image_file):
        with pytest.raises(LoopDeviceError, match="returned no device"):
            loop.attach(image_file, 1, 128)


class TestDetach:
    """Tests for detach()."""

    def test_detach_attached(self, fake_tools, image_file):
        state = WorkingState()
        device = loop.attach(image_file, 1, 128, state=state, slot=FIRMWARE_LOOP)

        loop.detach(device, state=state, slot=FIRMWARE_LOOP)

        assert fake_tools.commands()[-1] == "losetup --detach /dev/loop0"
        assert state.firmware_loop is None
        assert not fake_tools.is_attached("/dev/loop0")

    def test_detach_is_idempotent(self, fake_tools, loop_device):
        loop.detach(loop_device)
        loop.detach(loop_device)

        assert fake_tools.calls == []

    def test_detach_refused(self, fake_tools, image_file):
        state = WorkingState()
        device = loop.attach(image_file, 129, state=state, slot=ROOT_LOOP)
        fake_tools.fail(
            "losetup",
            when=lambda cmd: "--detach" in cmd,
            stderr="losetup: /dev/loop0: detach failed: Device or resource busy",
        )

        with pytest.raises(LoopDeviceError, match="busy"):
            loop.detach(device, state=state, slot=ROOT_LOOP)

        assert state.root_loop == device


class TestIsAttached:
    def test_reads_sysfs(self, tmp_path, monkeypatch):
        monkeypatch.setattr(loop, "SYS_BLOCK", tmp_path)
        backing = tmp_path / "loop3" / "loop"
        backing.mkdir(parents=True)
        (backing / "backing_file").write_text("/tmp/pi.img\n")

        assert loop.is_attached("/dev/loop3") is True
        assert loop.is_attached("/dev/loop4") is False
