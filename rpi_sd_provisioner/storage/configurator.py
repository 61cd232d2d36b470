"""Mount the freshly written card and inject first-boot configuration.

After the write, the boot (FAT) and root (ext4) partitions are mounted on
the configured mount points, the boot partition's config.txt gets the UART
directives appended, and custom.toml is written next to it.

Known limitation: the config.txt append is unconditional. Configuring the
same card twice without rewriting the image duplicates the directives.
"""

from __future__ import annotations

from pathlib import Path

from rpi_sd_provisioner.domain import ConfigResult, MountSet, ProvisioningRecord, TargetDevice
from rpi_sd_provisioner.exceptions import ConfigWriteError, MountFailedError
from rpi_sd_provisioner.logging import LoggerFactory
from rpi_sd_provisioner.services.firstboot import CUSTOM_TOML_NAME, render_custom_toml

from .capabilities import Mounter
from .cleanup import CleanupLedger

log = LoggerFactory.for_config()

FIRMWARE_CONFIG_NAME = "config.txt"
# Serial console on the GPIO UART; Bluetooth otherwise claims it on Pi 3/4
FIRMWARE_DIRECTIVES = ("dtoverlay=pi3-disable-bt", "enable_uart=1")


def mount_partitions(
    device: TargetDevice,
    mount_set: MountSet,
    mounter: Mounter,
    ledger: CleanupLedger,
) -> None:
    """Mount boot and root, recording each mountpoint in the ledger.

    Raises:
        MountFailedError: If a mountpoint cannot be created or mounted
    """
    for partition, mountpoint in zip(device.partitions, mount_set):
        mountpoint = Path(mountpoint)
        try:
            mountpoint.mkdir(parents=True, exist_ok=True)
        except OSError as error:
            raise MountFailedError(partition, str(mountpoint), str(error)) from error
        if mounter.is_mounted(mountpoint):
            log.info(f"{mountpoint} already mounted")
            ledger.track_mount(mountpoint)
            continue
        try:
            mounter.mount(partition, mountpoint)
        except (RuntimeError, ValueError, OSError) as error:
            raise MountFailedError(partition, str(mountpoint), str(error)) from error
        ledger.track_mount(mountpoint)
        log.info(f"Mounted {partition} on {mountpoint}")


def append_firmware_settings(boot_mount: Path) -> Path:
    """Append the UART directives to config.txt on the boot partition."""
    config_path = Path(boot_mount) / FIRMWARE_CONFIG_NAME
    try:
        needs_newline = (
            config_path.exists()
            and config_path.stat().st_size > 0
            and not config_path.read_bytes().endswith(b"\n")
        )
        with open(config_path, "a", encoding="utf-8") as config_file:
            if needs_newline:
                config_file.write("\n")
            for directive in FIRMWARE_DIRECTIVES:
                config_file.write(f"{directive}\n")
    except OSError as error:
        raise ConfigWriteError(str(config_path), str(error)) from error
    log.info(f"Appended {', '.join(FIRMWARE_DIRECTIVES)} to {config_path}")
    return config_path


def write_custom_toml(boot_mount: Path, record: ProvisioningRecord) -> Path:
    """Write custom.toml, replacing any previous one."""
    toml_path = Path(boot_mount) / CUSTOM_TOML_NAME
    try:
        toml_path.write_text(render_custom_toml(record), encoding="utf-8")
    except OSError as error:
        raise ConfigWriteError(str(toml_path), str(error)) from error
    log.info(f"Wrote {toml_path} for host {record.hostname}")
    return toml_path


def unmount_partitions(mount_set: MountSet, mounter: Mounter, ledger: CleanupLedger) -> None:
    """Unmount root then boot.

    Mountpoints that fail to unmount stay in the ledger for the cleanup
    supervisor to retry.
    """
    for mountpoint in reversed(list(mount_set)):
        mountpoint = Path(mountpoint)
        if not mounter.is_mounted(mountpoint):
            ledger.release_mount(mountpoint)
            continue
        try:
            mounter.unmount(mountpoint)
        except (RuntimeError, ValueError, OSError) as error:
            log.error(f"Failed to unmount {mountpoint}: {error}")
            continue
        ledger.release_mount(mountpoint)
        log.info(f"Unmounted {mountpoint}")


def configure(
    device: TargetDevice,
    record: ProvisioningRecord,
    mount_set: MountSet,
    mounter: Mounter,
    ledger: CleanupLedger,
) -> ConfigResult:
    """Mount the card's partitions and write the first-boot configuration.

    The partitions are left mounted and tracked in the ledger; the caller
    unmounts them with ``unmount_partitions`` (or cleanup does).
    """
    mount_partitions(device, mount_set, mounter, ledger)
    firmware_config = append_firmware_settings(mount_set.boot_mount_path)
    custom_toml = write_custom_toml(mount_set.boot_mount_path, record)
    return ConfigResult(
        custom_toml_path=custom_toml,
        firmware_config_path=firmware_config,
        appended_directives=FIRMWARE_DIRECTIVES,
    )
