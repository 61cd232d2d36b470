"""ICMP reachability via ping(8) and reply address extraction."""

from __future__ import annotations

import ipaddress
import re
import subprocess
from typing import Callable, Optional

from rpi_sd_provisioner.logging import LoggerFactory

log = LoggerFactory.for_network()

# ping -c 1 <host> -> output on success, None on failure
Pinger = Callable[[str, float], Optional[str]]

# "64 bytes from 192.168.1.20: ..." or "64 bytes from host.local (192.168.1.20): ..."
_REPLY_PATTERNS = (
    re.compile(r"from [^\s(]+ \((\d{1,3}(?:\.\d{1,3}){3})\)"),
    re.compile(r"from (\d{1,3}(?:\.\d{1,3}){3})"),
    re.compile(r"^PING \S+ \((\d{1,3}(?:\.\d{1,3}){3})\)", re.MULTILINE),
)


def ping_once(host: str, timeout_seconds: float = 1) -> Optional[str]:
    """Send one echo request.

    Returns:
        ping's output when a reply arrived, otherwise None
    """
    wait = str(max(1, int(timeout_seconds)))
    try:
        result = subprocess.run(
            ["ping", "-c", "1", "-W", wait, host],
            capture_output=True,
            text=True,
            timeout=float(wait) + 5,
        )
    except (OSError, subprocess.TimeoutExpired) as error:
        log.debug(f"ping {host} failed to run: {error}")
        return None
    if result.returncode != 0:
        log.trace(f"ping {host}: no reply")
        return None
    return result.stdout


def probe_network(
    host: str = "8.8.8.8",
    timeout_seconds: float = 2,
    pinger: Pinger = ping_once,
) -> bool:
    """Single-packet check that the internet is reachable."""
    available = pinger(host, timeout_seconds) is not None
    if available:
        log.debug(f"Network available (reply from {host})")
    else:
        log.warning(f"No reply from {host}; treating network as unavailable")
    return available


def extract_ipv4(output: str) -> Optional[str]:
    """Return the replying IPv4 address from ping output, if any."""
    for pattern in _REPLY_PATTERNS:
        for match in pattern.finditer(output):
            try:
                return str(ipaddress.IPv4Address(match.group(1)))
            except ipaddress.AddressValueError:
                continue
    return None
