"""Tests for storage/commands.py - external command helpers."""

import subprocess
from unittest.mock import Mock, patch

import pytest

from rpi_image_builder.storage import commands
from rpi_image_builder.storage.exceptions import (
    ImageBuilderError,
    InvalidInputError,
    MissingToolError,
    PartitionError,
)


class TestRunCommand:
    @patch("subprocess.run")
    def test_stringifies_arguments(self, mock_run, tmp_path):
        mock_run.return_value = Mock(returncode=0, stdout="", stderr="")

        commands.run_command(["du", "-sk", tmp_path])

        mock_run.assert_called_once_with(
            ["du", "-sk", str(tmp_path)],
            check=True,
            input=None,
            text=True,
            capture_output=True,
        )

    @patch("subprocess.run")
    def test_check_raises(self, mock_run):
        mock_run.side_effect = subprocess.CalledProcessError(
            1, ["false"], output="", stderr="boom"
        )

        with pytest.raises(subprocess.CalledProcessError):
            commands.run_command(["false"])


class TestRunCheckedCommand:
    @patch("subprocess.run")
    def test_returns_stdout(self, mock_run):
        mock_run.return_value = Mock(returncode=0, stdout="/dev/loop0\n", stderr="")

        assert commands.run_checked_command(["losetup", "--find"]) == "/dev/loop0\n"

    @patch("subprocess.run")
    def test_passes_input(self, mock_run):
        mock_run.return_value = Mock(returncode=0, stdout="", stderr="")

        commands.run_checked_command(["sfdisk", "pi.img"], input_text="label: dos\n")

        assert mock_run.call_args.kwargs["input"] == "label: dos\n"

    @patch("subprocess.run")
    def test_failure_uses_error_type_and_stderr(self, mock_run):
        mock_run.return_value = Mock(returncode=1, stdout="", stderr="bad table\n")

        with pytest.raises(PartitionError, match=r"Command failed \(sfdisk pi.img\): bad table"):
            commands.run_checked_command(["sfdisk", "pi.img"], error_type=PartitionError)

    @patch("subprocess.run")
    def test_failure_falls_back_to_stdout(self, mock_run):
        mock_run.return_value = Mock(returncode=2, stdout="usage\n", stderr="")

        with pytest.raises(ImageBuilderError, match="usage"):
            commands.run_checked_command(["mount"])

    @patch("subprocess.run")
    def test_failure_without_output(self, mock_run):
        mock_run.return_value = Mock(returncode=32, stdout="", stderr="")

        with pytest.raises(ImageBuilderError, match="exit code 32"):
            commands.run_checked_command(["mount"])

    @patch("subprocess.run", side_effect=FileNotFoundError("No such file: 'rsync'"))
    def test_missing_executable(self, mock_run):
        with pytest.raises(InvalidInputError, match="rsync"):
            commands.run_checked_command(["rsync"], error_type=InvalidInputError)


class TestRequireTools:
    @patch("rpi_image_builder.storage.commands.shutil.which", return_value="/usr/bin/tool")
    def test_all_present(self, mock_which):
        commands.require_tools()
        assert mock_which.call_count == len(commands.REQUIRED_TOOLS)

    @patch("rpi_image_builder.storage.commands.shutil.which")
    def test_lists_missing(self, mock_which):
        mock_which.side_effect = lambda name: None if name in ("rsync", "mkfs.vfat") else "/bin/x"

        with pytest.raises(MissingToolError) as excinfo:
            commands.require_tools()

        assert excinfo.value.tools == ["mkfs.vfat", "rsync"]
        assert isinstance(excinfo.value, InvalidInputError)
