"""First-boot configuration rendered into the boot partition's custom.toml.

Raspberry Pi OS (Bookworm) reads ``custom.toml`` from the boot partition on
first boot and applies hostname, user, SSH, WLAN and locale settings from it.
Rendering is pure: the same ProvisioningRecord always yields the same bytes.
"""

from __future__ import annotations

from rpi_sd_provisioner.domain import ProvisioningRecord

CUSTOM_TOML_NAME = "custom.toml"


def escape_toml_string(s: str) -> str:
    """Escape a string for use in TOML basic strings."""
    return (
        s.replace("\\", "\\\\")
        .replace('"', '\\"')
        .replace("\n", "\\n")
        .replace("\r", "\\r")
        .replace("\t", "\\t")
    )


def render_custom_toml(record: ProvisioningRecord) -> str:
    hostname = escape_toml_string(record.hostname)
    username = escape_toml_string(record.username)
    password_hash = escape_toml_string(record.password_hash)
    ssid = escape_toml_string(record.wifi_ssid)
    psk = escape_toml_string(record.wifi_psk_hash)
    locale = record.locale
    return f"""# Raspberry Pi OS custom.toml
config_version = 1

[system]
hostname = "{hostname}"

[user]
name = "{username}"
password = "{password_hash}"
password_encrypted = true

[ssh]
enabled = true
password_authentication = true

[wlan]
ssid = "{ssid}"
password = "{psk}"
password_encrypted = true
hidden = false
country = "{escape_toml_string(locale.wlan_country)}"

[locale]
keymap = "{escape_toml_string(locale.keymap)}"
timezone = "{escape_toml_string(locale.timezone)}"
"""
