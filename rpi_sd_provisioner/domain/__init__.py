"""Domain models for SD card provisioning.

Typed records threaded through the pipeline instead of loose dicts and
module-level globals.
"""

from __future__ import annotations

from .models import (
    Architecture,
    BootReport,
    CachedImage,
    CacheState,
    ConfigResult,
    Flavor,
    ImageSource,
    ImageVariant,
    LocaleSettings,
    MountSet,
    ProvisioningRecord,
    TargetDevice,
    WriteResult,
    partition_name,
)


__all__ = [
    "Architecture",
    "BootReport",
    "CachedImage",
    "CacheState",
    "ConfigResult",
    "Flavor",
    "ImageSource",
    "ImageVariant",
    "LocaleSettings",
    "MountSet",
    "ProvisioningRecord",
    "TargetDevice",
    "WriteResult",
    "partition_name",
]
