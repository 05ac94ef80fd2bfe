"""Command line entry point.

Usage:
    pi-image-builder build [--no-upload]
    pi-image-builder flash --image NAME --device /dev/sdX --yes
    pi-image-builder cleanup
"""

import argparse
from pathlib import Path

from pi_image_builder.__version__ import __version__
from pi_image_builder.build import BuildOrchestrator
from pi_image_builder.config.settings import load_settings
from pi_image_builder.logging import LoggerFactory, setup_logging
from pi_image_builder.storage.exceptions import (
    BuildStepError,
    CommandFailedError,
    ImageBuilderError,
)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="pi-image-builder",
        description="Build and flash Raspberry Pi Kubernetes node images",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument("-d", "--debug", action="store_true", help="Enable verbose debug output")
    parser.add_argument("--trace", action="store_true", help="Log raw tool output")
    parser.add_argument("--settings", type=Path, help="Path to a settings JSON file")
    parser.add_argument("--log-dir", type=Path, help="Directory for log files")

    subparsers = parser.add_subparsers(dest="command", required=True)

    build = subparsers.add_parser("build", help="Build, configure and compress an image")
    build.add_argument(
        "--no-upload", action="store_true", help="Keep the compressed image locally"
    )

    flash = subparsers.add_parser("flash", help="Partition a device and copy an image onto it")
    flash.add_argument("--image", required=True, help="Name of the compressed image")
    flash.add_argument("--device", required=True, help="Target block device, e.g. /dev/sda")
    flash.add_argument(
        "--yes", action="store_true", help="Confirm that the device may be repartitioned"
    )

    subparsers.add_parser("cleanup", help="Release mounts and loop devices left by a failed run")
    return parser


def main(argv=None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    setup_logging(debug=args.debug, trace=args.trace, log_dir=args.log_dir)
    log = LoggerFactory.for_system()
    settings = load_settings(args.settings)
    orchestrator = BuildOrchestrator(settings)

    try:
        if args.command == "build":
            orchestrator.build(upload=not args.no_upload)
        elif args.command == "flash":
            if not args.yes:
                log.error(f"Refusing to repartition {args.device} without --yes")
                return 1
            orchestrator.flash(args.image, args.device)
        elif args.command == "cleanup":
            orchestrator.recover()
    except BuildStepError as error:
        log.error(f"Step '{error.step}' failed: {error.cause}")
        if isinstance(error.cause, CommandFailedError) and error.cause.output:
            log.error(f"Tool output:\n{error.cause.output}")
        for cleanup_error in error.cleanup_errors:
            log.error(f"Cleanup failed: {cleanup_error}")
        return 1
    except ImageBuilderError as error:
        log.error(str(error))
        return 1
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
