"""Interactive questions asked of the operator.

Collects the first-boot settings and hashes the secrets right away: the
plain password and WiFi passphrase never leave this module.
"""

from __future__ import annotations

import hashlib
import re
from typing import Optional

from rich.console import Console
from rich.prompt import Confirm, Prompt

from rpi_sd_provisioner.config import settings
from rpi_sd_provisioner.config.settings import ProvisionerConfig
from rpi_sd_provisioner.domain import LocaleSettings, ProvisioningRecord
from rpi_sd_provisioner.exceptions import ProvisionError
from rpi_sd_provisioner.logging import get_logger
from rpi_sd_provisioner.storage.command_runners import run_checked_command

log = get_logger(source="prompts", tags=["prompts"])

DEFAULT_PASSWORD = "raspberry"
_HOSTNAME_PATTERN = re.compile(r"^(?!-)[A-Za-z0-9-]{1,63}(?<!-)$")
_USERNAME_PATTERN = re.compile(r"^[a-z_][a-z0-9_-]{0,31}$")


def is_valid_hostname(hostname: str) -> bool:
    return bool(_HOSTNAME_PATTERN.match(hostname))


def is_valid_username(username: str) -> bool:
    return bool(_USERNAME_PATTERN.match(username))


def hash_password(password: str) -> str:
    """SHA-512 crypt hash, as produced by ``openssl passwd -6``."""
    try:
        output = run_checked_command(
            ["openssl", "passwd", "-6", "-stdin"], input_text=f"{password}\n"
        )
    except (RuntimeError, OSError) as error:
        raise ProvisionError(
            f"Password hashing failed: {error}",
            hint="Check that openssl is installed.",
        ) from error
    password_hash = output.strip()
    if not password_hash.startswith("$6$"):
        raise ProvisionError(f"Unexpected openssl output: {password_hash!r}")
    return password_hash


def wpa_psk(ssid: str, passphrase: str) -> str:
    """64 hex digit WPA pre-shared key, identical to wpa_passphrase(8).

    Raises:
        ValueError: If the passphrase is not 8..63 characters
    """
    if not 8 <= len(passphrase) <= 63:
        raise ValueError("WiFi passphrase must be 8 to 63 characters")
    return hashlib.pbkdf2_hmac(
        "sha1", passphrase.encode("utf-8"), ssid.encode("utf-8"), 4096, 32
    ).hex()


class OperatorPrompts:
    """rich-based prompting for one run."""

    def __init__(self, console: Optional[Console] = None):
        self.console = console or Console()

    def ask(self, question: str) -> str:
        """Free-form answer; used for the device confirmation."""
        return Prompt.ask(f"[bold red]{question}[/]", console=self.console, default="")

    def _ask_valid(self, question: str, default: str, validator, error: str) -> str:
        while True:
            answer = Prompt.ask(
                f"[bold]{question}[/]", console=self.console, default=default
            ).strip()
            if validator(answer):
                return answer
            self.console.print(f"[red]{error}[/]")

    def _ask_password(self) -> str:
        while True:
            password = Prompt.ask(
                "[bold]Password[/]",
                console=self.console,
                password=True,
                default=DEFAULT_PASSWORD,
                show_default=False,
            )
            confirmation = Prompt.ask(
                "[bold]Confirm password[/]",
                console=self.console,
                password=True,
                default=DEFAULT_PASSWORD,
                show_default=False,
            )
            if password == confirmation:
                return password
            self.console.print("[red]Passwords do not match.[/]")

    def _ask_passphrase(self) -> str:
        while True:
            passphrase = Prompt.ask(
                "[bold]WiFi passphrase[/]", console=self.console, password=True
            )
            if 8 <= len(passphrase) <= 63:
                return passphrase
            self.console.print("[red]The passphrase must be 8 to 63 characters.[/]")

    def collect_record(self, config: ProvisionerConfig) -> ProvisioningRecord:
        """Ask for hostname, user, password and WiFi, returning hashed values."""
        hostname = self._ask_valid(
            "Hostname",
            config.default_hostname,
            is_valid_hostname,
            "Use letters, digits and hyphens only (max 63 characters).",
        )
        username = self._ask_valid(
            "Username",
            config.default_username,
            is_valid_username,
            "Use lowercase letters, digits, '-' and '_', starting with a letter.",
        )
        password_hash = hash_password(self._ask_password())
        ssid = self._ask_valid(
            "WiFi SSID",
            config.default_ssid,
            lambda value: 0 < len(value.encode("utf-8")) <= 32,
            "The SSID must be 1 to 32 bytes.",
        )
        psk = wpa_psk(ssid, self._ask_passphrase())
        log.debug(f"Collected settings for host {hostname}, user {username}")
        # Offered as the defaults next time
        settings.set_setting("default_hostname", hostname)
        settings.set_setting("default_username", username)
        settings.set_setting("default_ssid", ssid)
        return ProvisioningRecord(
            hostname=hostname,
            username=username,
            password_hash=password_hash,
            wifi_ssid=ssid,
            wifi_psk_hash=psk,
            locale=LocaleSettings(
                wlan_country=config.wlan_country,
                keymap=config.keymap,
                timezone=config.timezone,
            ),
        )

    def ask_wait_for_boot(self) -> bool:
        return Confirm.ask(
            "[bold]Wait for the Pi to come online?[/]", console=self.console, default=True
        )

    def wait_for_power(self) -> None:
        Prompt.ask(
            "[bold]Insert the card into the Pi, power it on and press Enter[/]",
            console=self.console,
            default="",
            show_default=False,
        )
