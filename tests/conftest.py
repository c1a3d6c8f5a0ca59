"""
Pytest configuration and shared fixtures for rpi-image-builder tests.

External tools (du, sfdisk, losetup, mkfs.*, mount, umount, rsync) are
replaced by ``FakeTools``, which records every command and simulates the
kernel-side state (attached loop devices, active mounts, partition tables)
so teardown logic can be exercised without root.
"""

import json
import os
import subprocess
from pathlib import Path
from typing import Callable, Dict, List, Optional

import pytest
from loguru import logger

from rpi_image_builder.config import settings as settings_module
from rpi_image_builder.domain.models import LoopDevice, MountPoint
from rpi_image_builder.storage import geometry


# ==============================================================================
# External Tool Fakes
# ==============================================================================


class FakeTools:
    """Stand-in for subprocess.run that simulates the image build tools."""

    def __init__(self) -> None:
        self.calls: List[List[str]] = []
        self.attached: set = set()
        self.mounted: set = set()
        self.tables: Dict[str, list] = {}
        self.du_kb = 1000
        self._next_loop = 0
        self._failures: List[tuple] = []
        self._hooks: List[tuple] = []

    # -- configuration -------------------------------------------------

    def fail(
        self,
        tool: str,
        when: Optional[Callable[[List[str]], bool]] = None,
        stderr: str = "simulated failure",
    ) -> None:
        """Make matching commands exit 1 with ``stderr``."""
        self._failures.append((tool, when, stderr))

    def on(self, tool: str, hook: Callable[[List[str]], None]) -> None:
        """Run ``hook(command)`` before simulating matching commands."""
        self._hooks.append((tool, hook))

    # -- inspection ----------------------------------------------------

    def commands(self) -> List[str]:
        return [" ".join(cmd) for cmd in self.calls]

    def tools(self) -> List[str]:
        """Tool name per call, with losetup/sfdisk split by mode."""
        names = []
        for cmd in self.calls:
            if cmd[0] == "losetup":
                names.append("losetup-detach" if "--detach" in cmd else "losetup-attach")
            elif cmd[0] == "sfdisk":
                names.append("sfdisk-read" if "--json" in cmd else "sfdisk-write")
            else:
                names.append(cmd[0])
        return names

    def is_attached(self, device_path: str) -> bool:
        return device_path in self.attached

    def is_mounted(self, path) -> bool:
        return os.path.realpath(path) in self.mounted

    # -- simulation ----------------------------------------------------

    def __call__(self, command, **kwargs):
        command = [str(part) for part in command]
        self.calls.append(command)
        tool = command[0]

        for hook_tool, hook in self._hooks:
            if hook_tool == tool:
                hook(command)

        for fail_tool, when, stderr in self._failures:
            if fail_tool == tool and (when is None or when(command)):
                return subprocess.CompletedProcess(command, 1, stdout="", stderr=stderr)

        stdout = ""
        if tool == "du":
            stdout = f"{self.du_kb}\t{command[-1]}\n"
        elif tool == "sfdisk" and "--json" in command:
            stdout = self._table_json(command[-1])
        elif tool == "sfdisk":
            self.tables[command[-1]] = self._parse_script(kwargs.get("input") or "")
        elif tool == "losetup" and "--detach" in command:
            self.attached.discard(command[-1])
        elif tool == "losetup":
            device = f"/dev/loop{self._next_loop}"
            self._next_loop += 1
            self.attached.add(device)
            stdout = device + "\n"
        elif tool == "mount":
            self.mounted.add(os.path.realpath(command[2]))
        elif tool == "umount":
            self.mounted.discard(os.path.realpath(command[1]))
        return subprocess.CompletedProcess(command, 0, stdout=stdout, stderr="")

    @staticmethod
    def _parse_script(script: str) -> list:
        partitions = []
        for line in script.splitlines():
            if not line.startswith("start="):
                continue
            fields = [field.strip() for field in line.split(",")]
            entry = {"bootable": "bootable" in fields}
            for field in fields:
                if "=" in field:
                    key, value = field.split("=", 1)
                    entry[key] = value
            partitions.append(
                {
                    "start": int(entry["start"]),
                    "size": int(entry["size"]),
                    "type": entry["type"],
                    **({"bootable": True} if entry["bootable"] else {}),
                }
            )
        return partitions

    def _table_json(self, path: str) -> str:
        partitions = []
        for index, part in enumerate(self.tables.get(path, []), start=1):
            partitions.append({"node": f"{path}{index}", **part})
        return json.dumps(
            {
                "partitiontable": {
                    "label": "dos",
                    "id": "0x00000000",
                    "device": path,
                    "unit": "sectors",
                    "sectorsize": 512,
                    "partitions": partitions,
                }
            }
        )


@pytest.fixture
def fake_tools(mocker) -> FakeTools:
    """
    Fixture routing every external command through a FakeTools instance.

    Returns:
        The FakeTools instance, for configuring failures and inspecting calls.
    """
    fake = FakeTools()
    mocker.patch("subprocess.run", side_effect=fake)
    mocker.patch("rpi_image_builder.storage.loop.is_attached", side_effect=fake.is_attached)
    mocker.patch("rpi_image_builder.storage.mount.is_mounted", side_effect=fake.is_mounted)
    return fake


@pytest.fixture
def capture_subprocess_calls(mocker) -> List[List]:
    """
    Fixture that captures all subprocess.run calls for inspection.

    Returns:
        List that will contain all subprocess command arguments.
    """
    calls = []

    def track_call(cmd, **kwargs):
        calls.append(cmd)
        return subprocess.CompletedProcess(cmd, 0, stdout="", stderr="")

    mocker.patch("subprocess.run", side_effect=track_call)
    return calls


# ==============================================================================
# Domain Fixtures
# ==============================================================================


@pytest.fixture
def plan():
    """Plan for a 1,000,000 KB source tree with default settings."""
    return geometry.compute_plan(1_000_000)


@pytest.fixture
def small_plan():
    """Plan for a 1000 KB source tree; the image is ~130 MB, sparse."""
    return geometry.compute_plan(1000)


@pytest.fixture
def image_file(tmp_path, small_plan) -> Path:
    """A sparse file sized like ``small_plan``'s image."""
    path = tmp_path / "pi.img"
    with open(path, "wb") as image:
        image.truncate(small_plan.image_bytes)
    return path


@pytest.fixture
def loop_device(image_file) -> LoopDevice:
    return LoopDevice(
        backing_file=image_file,
        offset_bytes=129 * 1024 * 1024,
        size_limit_bytes=None,
        device_path="/dev/loop7",
    )


@pytest.fixture
def mount_point(tmp_path, loop_device) -> MountPoint:
    path = tmp_path / "mnt"
    path.mkdir()
    return MountPoint(path=path, device=loop_device)


# ==============================================================================
# File System Fixtures
# ==============================================================================


@pytest.fixture
def source_tree(tmp_path) -> Path:
    """
    Fixture providing a small prepared root filesystem tree.

    Returns:
        Path to a directory with etc/ and boot/firmware/ content.
    """
    root = tmp_path / "rootfs"
    (root / "etc").mkdir(parents=True)
    (root / "etc" / "hostname").write_text("raspberrypi\n")
    (root / "boot" / "firmware").mkdir(parents=True)
    (root / "boot" / "firmware" / "config.txt").write_text("arm_64bit=1\n")
    return root


@pytest.fixture
def temp_settings_file(tmp_path) -> Path:
    """
    Fixture providing a temporary settings file path.

    Returns:
        Path to a temporary settings file.
    """
    settings_dir = tmp_path / ".config" / "rpi-image-builder"
    settings_dir.mkdir(parents=True, exist_ok=True)
    return settings_dir / "settings.json"


@pytest.fixture(autouse=True)
def reset_global_state(tmp_path):
    """
    Auto-use fixture that resets the settings store and log sinks.

    Settings are reloaded from a path that does not exist, so every test
    starts from DEFAULT_SETTINGS regardless of the developer's home config.
    """
    settings_module.load_settings(tmp_path / "no-settings.json")
    yield
    settings_module.load_settings(tmp_path / "no-settings.json")
    logger.remove()
