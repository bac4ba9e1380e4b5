import argparse
import os
import sys
from pathlib import Path

from landscape_mini.__version__ import __version__
from landscape_mini.build.orchestrator import build
from landscape_mini.config import settings
from landscape_mini.domain import BuildConfig, Phase
from landscape_mini.exceptions import BuildError
from landscape_mini.logging import LoggerFactory, setup_logging


EXIT_SUCCESS = 0
EXIT_FAILURE = 1


def _phase_number(value: str) -> int:
    try:
        number = int(value)
    except ValueError:
        raise argparse.ArgumentTypeError(f"phase must be a number, got {value!r}")
    if not 1 <= number <= len(Phase):
        raise argparse.ArgumentTypeError(f"phase must be between 1 and {len(Phase)}")
    return number


def _positive_int(value: str) -> int:
    try:
        number = int(value)
    except ValueError:
        raise argparse.ArgumentTypeError(f"expected a whole number, got {value!r}")
    if number <= 0:
        raise argparse.ArgumentTypeError("must be positive")
    return number


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="landscape-mini",
        description="Minimal x86 UEFI/BIOS image builder for the Landscape Router",
    )
    parser.add_argument("-d", "--debug", action="store_true", help="Enable verbose debug output")
    parser.add_argument("--trace", action="store_true", help="Also log raw output of every host command")
    parser.add_argument("--log-dir", type=Path, help="Directory for log files (default: work/logs)")
    parser.add_argument("--settings", type=Path, help="JSON settings file (default: ./build.json)")
    parser.add_argument("-V", "--builder-version", action="version", version=f"%(prog)s {__version__}")

    subparsers = parser.add_subparsers(dest="command", required=True)
    build_cmd = subparsers.add_parser("build", help="Build the disk image")
    build_cmd.add_argument("--base", choices=["debian", "alpine"], help="Base system")
    build_cmd.add_argument(
        "--with-docker", action="store_const", const=True, dest="include_docker",
        help="Include the Docker container runtime",
    )
    build_cmd.add_argument("--version", dest="landscape_version", help="Payload release tag or 'latest'")
    build_cmd.add_argument(
        "--skip-to", type=_phase_number, default=0, metavar="PHASE",
        help="Resume at phase 1-8, reusing the existing image for phases 3-7",
    )
    build_cmd.add_argument("--output-format", choices=["raw", "vmdk", "both"], help="Output containers")
    build_cmd.add_argument(
        "--compress", action="store_const", const=True, dest="compress_output",
        help="Also write gzip-compressed copies of the outputs",
    )
    build_cmd.add_argument("--image-size", type=_positive_int, dest="image_size_mb", metavar="MB",
                           help="Size of the image before shrinking")
    build_cmd.add_argument("--work-dir", type=Path, help="Directory holding work/ and output/ (default: cwd)")
    return parser


def main(argv=None):
    parser = build_parser()
    args = parser.parse_args(argv)

    base_dir = args.work_dir or Path.cwd()
    log_dir = args.log_dir or (base_dir / "work" / "logs" if args.work_dir else None)
    setup_logging(debug=args.debug, trace=args.trace, log_dir=log_dir)
    log = LoggerFactory.for_system()

    if args.settings:
        settings.load_settings(args.settings)

    try:
        config = BuildConfig.from_settings(
            settings.all_settings(),
            base_system=args.base,
            include_docker=args.include_docker,
            landscape_version=args.landscape_version,
            output_format=args.output_format,
            compress_output=args.compress_output,
            image_size_mb=args.image_size_mb,
        )
    except BuildError as error:
        log.error(str(error))
        return EXIT_FAILURE

    if os.geteuid() != 0:
        log.error("This tool must be run as root (loop devices, mounts and chroot need it)")
        return EXIT_FAILURE

    try:
        build(config, resume_phase=args.skip_to, base_dir=base_dir)
    except BuildError as error:
        log.error(f"Build failed: {error}")
        return EXIT_FAILURE
    return EXIT_SUCCESS


if __name__ == "__main__":
    sys.exit(main())
