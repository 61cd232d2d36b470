"""The provisioning run, end to end.

Stages run strictly in order, each depending on the side effects of the
previous one:

    preflight   root, helper tools, single large-enough card, cache space
    prompts     hostname, user, password, WiFi
    fetch       resolve the image and make it local (cache hit or download)
    write       operator confirmation, unmount, dd
    configure   mount boot/root, config.txt + custom.toml, unmount
    poll        optional: wait for <hostname>.local to answer

Everything up to and including configure runs under the cleanup supervisor,
so mounts and transient cache files are released on any exit path. The poll
only observes the network and runs after cleanup.
"""

from __future__ import annotations

import time
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Iterable, Optional, Protocol

from rpi_sd_provisioner.config.settings import ProvisionerConfig
from rpi_sd_provisioner.domain import (
    BootReport,
    ConfigResult,
    ImageSource,
    ImageVariant,
    MountSet,
    ProvisioningRecord,
    TargetDevice,
    WriteResult,
)
from rpi_sd_provisioner.logging import LoggerFactory, operation_context
from rpi_sd_provisioner.services.catalog import CatalogResolver
from rpi_sd_provisioner.services.http import HttpFetcher
from rpi_sd_provisioner.services.network import Pinger, ping_once, probe_network
from rpi_sd_provisioner.services.reachability import await_boot, mdns_name
from rpi_sd_provisioner.storage.cache import ImageCache
from rpi_sd_provisioner.storage.capabilities import (
    BlockWriter,
    Decompressor,
    Fetcher,
    Mounter,
    Verifier,
)
from rpi_sd_provisioner.storage.checksum import Sha256Verifier
from rpi_sd_provisioner.storage.cleanup import CleanupLedger, CleanupSupervisor
from rpi_sd_provisioner.storage.compression import XzDecompressor
from rpi_sd_provisioner.storage.configurator import configure, unmount_partitions
from rpi_sd_provisioner.storage.devices import list_candidate_devices
from rpi_sd_provisioner.storage.guard import (
    check_cache_space,
    check_root,
    confirm_device,
    ensure_unmounted,
    guard,
    require_tools,
)
from rpi_sd_provisioner.storage.mount import SystemMounter
from rpi_sd_provisioner.storage.progress import ProgressFactory, null_progress
from rpi_sd_provisioner.storage.writer import DdBlockWriter, write_image

log = LoggerFactory.for_system()


class Operator(Protocol):
    """Everything the run needs to ask a human."""

    def collect_record(self, config: ProvisionerConfig) -> ProvisioningRecord: ...

    def ask(self, question: str) -> str: ...

    def ask_wait_for_boot(self) -> bool: ...

    def wait_for_power(self) -> None: ...


@dataclass
class ProvisionOutcome:
    image_path: Path
    device: TargetDevice
    record: ProvisioningRecord
    write_result: WriteResult
    config_result: ConfigResult
    boot_report: Optional[BootReport] = None


class Provisioner:
    """Runs the pipeline with injectable tool capabilities."""

    def __init__(
        self,
        config: ProvisionerConfig,
        operator: Operator,
        *,
        fetcher: Optional[Fetcher] = None,
        verifier: Optional[Verifier] = None,
        decompressor: Optional[Decompressor] = None,
        writer: Optional[BlockWriter] = None,
        mounter: Optional[Mounter] = None,
        list_devices: Callable[[], list[TargetDevice]] = list_candidate_devices,
        preflight_checks: Iterable[Callable[[], None]] = (check_root, require_tools),
        progress_factory: ProgressFactory = null_progress,
        pinger: Pinger = ping_once,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.config = config
        self.operator = operator
        self.fetcher = fetcher or HttpFetcher(config.http_timeout_seconds)
        self.verifier = verifier or Sha256Verifier()
        self.decompressor = decompressor or XzDecompressor()
        self.writer = writer or DdBlockWriter(config.write_block_size)
        self.mounter = mounter or SystemMounter()
        self.list_devices = list_devices
        self.preflight_checks = tuple(preflight_checks)
        self.progress_factory = progress_factory
        self.pinger = pinger
        self.sleep = sleep
        self.stage: Optional[str] = None
        self.ledger = CleanupLedger()
        self.supervisor = CleanupSupervisor(self.ledger, self.mounter)
        self.resolver = CatalogResolver(
            self.fetcher,
            config.catalog_base_url,
            probe=lambda: probe_network(
                config.probe_host, config.probe_timeout_seconds, self.pinger
            ),
        )

    @property
    def mount_set(self) -> MountSet:
        return MountSet(self.config.boot_mount_point, self.config.root_mount_point)

    @property
    def device_write_started(self) -> bool:
        """True once dd may have touched the card."""
        return self.stage in ("write", "configure")

    def list_images(self) -> dict[ImageVariant, ImageSource]:
        return self.resolver.fetch_catalog()

    def preflight(self) -> TargetDevice:
        self.stage = "preflight"
        with operation_context("preflight"):
            for check in self.preflight_checks:
                check()
            device = guard(self.list_devices(), self.config.min_device_bytes)
            check_cache_space(self.config.cache_dir, self.config.min_cache_free_bytes)
        return device

    def fetch(self, variant: ImageVariant, image_path: Optional[Path] = None) -> Path:
        self.stage = "fetch"
        cache = ImageCache(
            self.config.cache_dir,
            self.fetcher,
            self.verifier,
            self.decompressor,
            self.ledger,
            self.progress_factory,
        )
        with operation_context("fetch", variant=variant.label):
            if image_path is not None:
                return cache.prepare_local_file(image_path)
            return cache.ensure_local_image(self.resolver.resolve(variant))

    def write(self, image_path: Path, device: TargetDevice) -> tuple[TargetDevice, WriteResult]:
        device = confirm_device(device, self.operator.ask)
        with operation_context("write", device=device.device_path):
            ensure_unmounted(device, self.mounter)
            self.stage = "write"
            result = write_image(
                image_path, device, self.writer, self.mounter, self.progress_factory
            )
        return device, result

    def configure(self, device: TargetDevice, record: ProvisioningRecord) -> ConfigResult:
        self.stage = "configure"
        with operation_context("configure", device=device.device_path):
            result = configure(device, record, self.mount_set, self.mounter, self.ledger)
            unmount_partitions(self.mount_set, self.mounter, self.ledger)
            # The desktop may have automounted the fresh partitions after the write
            ensure_unmounted(device, self.mounter)
        return result

    def poll(self, hostname: str) -> BootReport:
        self.stage = "poll"
        self.operator.wait_for_power()
        with operation_context("poll", hostname=hostname):
            return await_boot(
                mdns_name(hostname),
                timeout_seconds=self.config.poll_timeout_seconds,
                interval_seconds=self.config.poll_interval_seconds,
                pinger=self.pinger,
                sleep=self.sleep,
            )

    def run(
        self,
        variant: ImageVariant,
        image_path: Optional[Path] = None,
        wait_for_boot: Optional[bool] = None,
    ) -> ProvisionOutcome:
        """Provision one card.

        Args:
            variant: Image flavour and architecture to flash
            image_path: Local image to use instead of the catalog
            wait_for_boot: Poll for the board afterwards; None asks the operator

        Raises:
            ProvisionError: On any fatal failure, after cleanup has run
            BootTimeoutError: If the card was provisioned but the board never answered
        """
        with self.supervisor.supervise():
            device = self.preflight()
            record = self.operator.collect_record(self.config)
            image = self.fetch(variant, image_path)
            device, write_result = self.write(image, device)
            config_result = self.configure(device, record)
        self.stage = "done"
        log.success(f"{device.device_path} provisioned for host {record.hostname}")

        outcome = ProvisionOutcome(
            image_path=image,
            device=device,
            record=record,
            write_result=write_result,
            config_result=config_result,
        )
        if wait_for_boot is None:
            wait_for_boot = self.operator.ask_wait_for_boot()
        if not wait_for_boot:
            log.info("Skipping boot poll")
            return outcome
        outcome.boot_report = self.poll(record.hostname)
        self.stage = "done"
        return outcome
