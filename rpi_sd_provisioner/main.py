import argparse
import sys
from pathlib import Path

from rich.console import Console
from rich.table import Table

from rpi_sd_provisioner.config.settings import build_config
from rpi_sd_provisioner.domain import Architecture, Flavor, ImageVariant
from rpi_sd_provisioner.exceptions import (
    EXIT_BOOT_TIMEOUT,
    EXIT_FAILURE,
    EXIT_INTERRUPTED,
    EXIT_OK,
    BootTimeoutError,
    ProvisionError,
)
from rpi_sd_provisioner.logging import LoggerFactory, setup_logging
from rpi_sd_provisioner.pipeline import Provisioner
from rpi_sd_provisioner.services.prompts import OperatorPrompts
from rpi_sd_provisioner.storage.progress import ConsoleProgress


def build_parser():
    parser = argparse.ArgumentParser(
        description="Write Raspberry Pi OS to an SD card and preconfigure first boot"
    )
    parser.add_argument(
        "--flavor",
        choices=[flavor.value for flavor in Flavor],
        default=Flavor.LITE.value,
        help="Image flavour (default: lite)",
    )
    parser.add_argument(
        "--arch",
        choices=["64", "32"],
        default="64",
        help="Userland architecture in bits (default: 64)",
    )
    parser.add_argument("--cache-dir", type=Path, help="Directory for downloaded images")
    parser.add_argument(
        "--image",
        type=Path,
        help="Use a local .img or .img.xz instead of downloading one",
    )
    parser.add_argument(
        "--list-images",
        action="store_true",
        help="Show the image resolved for every variant and exit",
    )
    parser.add_argument(
        "--wait",
        action=argparse.BooleanOptionalAction,
        default=None,
        help="Wait for the Pi to come online after provisioning (default: ask)",
    )
    parser.add_argument("--poll-timeout", type=float, help="Seconds to wait for the Pi")
    parser.add_argument("-d", "--debug", action="store_true", help="Enable verbose debug output")
    parser.add_argument("--trace", action="store_true", help="Also log progress ticks")
    parser.add_argument("--log-dir", type=Path, help="Directory for log files")
    return parser


def print_catalog(console, catalog):
    table = Table(title="Raspberry Pi OS images")
    table.add_column("Variant")
    table.add_column("Image")
    table.add_column("Source")
    for variant, source in catalog.items():
        table.add_row(variant.label, source.image_url, "pinned" if source.pinned else "live")
    console.print(table)


def report_error(console, error):
    console.print(f"[bold red]Error:[/] {error}", highlight=False)
    if getattr(error, "hint", None):
        console.print(f"[yellow]Hint:[/] {error.hint}", highlight=False)


def main(argv=None):
    parser = build_parser()
    args = parser.parse_args(argv)

    setup_logging(debug=args.debug, trace=args.trace, log_dir=args.log_dir)
    log = LoggerFactory.for_system()
    console = Console()

    config = build_config(
        {"cache_dir": args.cache_dir, "poll_timeout_seconds": args.poll_timeout}
    )
    variant = ImageVariant(Flavor(args.flavor), Architecture.from_bits(args.arch))
    provisioner = Provisioner(
        config,
        OperatorPrompts(console),
        progress_factory=lambda title, total: ConsoleProgress(title, total, console=console),
    )

    try:
        if args.list_images:
            print_catalog(console, provisioner.list_images())
            return EXIT_OK
        log.info(f"Provisioning {variant.label} image")
        outcome = provisioner.run(variant, image_path=args.image, wait_for_boot=args.wait)
    except KeyboardInterrupt:
        if provisioner.device_write_started:
            console.print(
                "[bold yellow]Interrupted during the device write: the card's "
                "contents are now undefined. Rewrite it before use.[/]"
            )
        log.warning("Interrupted by operator")
        return EXIT_INTERRUPTED
    except BootTimeoutError as error:
        report_error(console, error)
        console.print("The card itself was provisioned successfully.")
        return EXIT_BOOT_TIMEOUT
    except ProvisionError as error:
        report_error(console, error)
        return EXIT_FAILURE

    console.print(f"[bold green]{outcome.device.device_path} is ready.[/]")
    if outcome.boot_report is not None:
        console.print("Connect with:")
        for command in outcome.boot_report.ssh_commands(outcome.record.username):
            console.print(f"  {command}", highlight=False)
    return EXIT_OK


if __name__ == "__main__":
    sys.exit(main())
