"""Wait for a freshly provisioned board to show up on the network.

The board announces ``<hostname>.local`` over mDNS once first boot has
applied custom.toml and joined the WLAN. Polling is purely observational:
nothing on the card or in the cache is touched.
"""

from __future__ import annotations

import time
from typing import Callable

from rpi_sd_provisioner.config.settings import (
    DEFAULT_POLL_INTERVAL_SECONDS,
    DEFAULT_POLL_TIMEOUT_SECONDS,
)
from rpi_sd_provisioner.domain import BootReport
from rpi_sd_provisioner.exceptions import BootTimeoutError
from rpi_sd_provisioner.logging import LoggerFactory, ThrottledLogger

from .network import Pinger, extract_ipv4, ping_once

log = LoggerFactory.for_network()

PING_TIMEOUT_SECONDS = 1


def mdns_name(hostname: str) -> str:
    return hostname if hostname.endswith(".local") else f"{hostname}.local"


def await_boot(
    hostname: str,
    timeout_seconds: float = DEFAULT_POLL_TIMEOUT_SECONDS,
    interval_seconds: float = DEFAULT_POLL_INTERVAL_SECONDS,
    pinger: Pinger = ping_once,
    sleep: Callable[[float], None] = time.sleep,
) -> BootReport:
    """Ping ``hostname`` every ``interval_seconds`` until it answers.

    Attempts happen at elapsed 0, interval, 2*interval, ... Elapsed time is
    counted in intervals rather than read from the clock, so the timeout
    boundary is exact.

    Raises:
        BootTimeoutError: If no reply with an address arrives before
            ``timeout_seconds`` have elapsed
    """
    progress = ThrottledLogger(log, interval_seconds=60.0)
    elapsed = 0.0
    attempts = 0
    log.info(f"Waiting for {hostname} to respond (timeout {int(timeout_seconds)}s)")
    while True:
        attempts += 1
        output = pinger(hostname, PING_TIMEOUT_SECONDS)
        if output is not None:
            address = extract_ipv4(output)
            if address:
                log.success(f"{hostname} is up at {address} after {int(elapsed)}s")
                return BootReport(
                    hostname=hostname,
                    address=address,
                    elapsed_seconds=elapsed,
                    attempts=attempts,
                )
            log.debug(f"Reply from {hostname} carried no IPv4 address")
        progress.info("waiting", f"Still waiting for {hostname} ({int(elapsed)}s elapsed)")
        sleep(interval_seconds)
        elapsed += interval_seconds
        if elapsed >= timeout_seconds:
            log.error(f"{hostname} did not respond within {int(timeout_seconds)}s")
            raise BootTimeoutError(hostname, timeout_seconds)
