import argparse
import os
import signal
import sys
from pathlib import Path

from rpi_image_builder.__version__ import __version__
from rpi_image_builder.builder import ImageBuilder
from rpi_image_builder.config.settings import ImageSettings, load_settings
from rpi_image_builder.logging import (
    LOG_LEVELS,
    LoggerFactory,
    operation_context,
    setup_logging,
)
from rpi_image_builder.storage.commands import require_tools
from rpi_image_builder.storage.exceptions import (
    BuildInterruptedError,
    ImageBuilderError,
    InsufficientPrivilegeError,
)


class _ArgumentParser(argparse.ArgumentParser):
    def error(self, message):
        self.print_usage(sys.stderr)
        self.exit(1, f"{self.prog}: error: {message}\n")


def build_parser():
    parser = _ArgumentParser(
        prog="rpi-image-builder",
        description="Build a bootable Raspberry Pi disk image from a root filesystem tree",
    )
    parser.add_argument("-s", "--source", required=True, help="Prepared root filesystem directory")
    parser.add_argument("-o", "--output", required=True, help="Output image file")
    parser.add_argument("-w", "--work-dir", help="Parent directory for temporary mount points")
    parser.add_argument(
        "-l",
        "--log-level",
        default="INFO",
        type=str.upper,
        choices=LOG_LEVELS,
        help="Console log level (default: INFO)",
    )
    parser.add_argument("-d", "--debug", action="store_true", help="Enable verbose debug output")
    parser.add_argument("--log-dir", type=Path, help="Also write build logs to this directory")
    parser.add_argument("--settings", type=Path, help="JSON settings file")
    parser.add_argument("--sector-size", type=int, help="Partition table sector size in bytes")
    parser.add_argument("--table-reserve-mb", type=int, help="Space reserved before the first partition")
    parser.add_argument("--firmware-size-mb", type=int, help="Firmware (boot) partition size")
    parser.add_argument(
        "--root-overhead-percent",
        type=int,
        help="Extra root partition space over the source size",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    return parser


def check_privileges():
    euid = os.geteuid()
    if euid != 0:
        raise InsufficientPrivilegeError(euid)


def _reraise_signal(signum):
    signal.signal(signum, signal.SIG_DFL)
    signal.raise_signal(signum)


def main(argv=None):
    parser = build_parser()
    args = parser.parse_args(argv)
    level = "DEBUG" if args.debug and args.log_level != "TRACE" else args.log_level
    setup_logging(level, log_dir=args.log_dir, verbose_commands=level == "TRACE")
    log = LoggerFactory.for_system()

    try:
        with operation_context("build", source_dir=args.source, output=args.output):
            if args.settings is not None:
                load_settings(args.settings, required=True)
                log.debug(f"Loaded settings from {args.settings}")
            settings = ImageSettings.from_store(
                sector_size=args.sector_size,
                table_reserve_mb=args.table_reserve_mb,
                firmware_size_mb=args.firmware_size_mb,
                root_overhead_percent=args.root_overhead_percent,
            )
            check_privileges()
            require_tools()
            builder = ImageBuilder(args.source, args.output, settings, work_dir=args.work_dir)
            plan = builder.build()
    except BuildInterruptedError as error:
        log.complete()
        _reraise_signal(error.signum)
        return 1
    except ImageBuilderError:
        return 1

    log.info(
        f"Image {args.output} ready: {plan.image_sectors} sectors "
        f"(firmware @{plan.table_sectors}, root @{plan.root_offset_sectors})"
    )
    return 0


def run():
    sys.exit(main())


if __name__ == "__main__":
    run()
