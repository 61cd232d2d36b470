"""Image verification using SHA256 checksums."""

from __future__ import annotations

import re
import shutil
from pathlib import Path
from typing import Optional

from rpi_sd_provisioner.logging import get_logger

from .capabilities import Verifier
from .command_runners import run_checked_command

log = get_logger(source="verify", tags=["verify", "fetch"])

_SHA256_PATTERN = re.compile(r"\b([0-9a-fA-F]{64})\b")


def parse_checksum_artifact(text: str, filename: Optional[str] = None) -> str:
    """Extract the expected digest from a ``.sha256`` artifact.

    Accepts ``sha256sum`` output (``<hex>  <name>``, optionally several
    lines) or a bare digest. When a filename is given and several entries
    are present, the matching entry wins.

    Raises:
        ValueError: If no digest can be found
    """
    entries: list[tuple[str, str]] = []
    for line in text.splitlines():
        match = _SHA256_PATTERN.search(line)
        if not match:
            continue
        name = line[match.end():].strip().lstrip("*")
        entries.append((match.group(1).lower(), name))
    if not entries:
        raise ValueError("No SHA256 digest found in checksum artifact")
    if filename and len(entries) > 1:
        for digest, name in entries:
            if Path(name).name == filename:
                return digest
    return entries[0][0]


class Sha256Verifier(Verifier):
    """Verifier backed by sha256sum(1)."""

    def checksum(self, path: Path) -> str:
        sha_path = shutil.which("sha256sum")
        if not sha_path:
            raise RuntimeError("sha256sum not found")
        log.debug(f"Computing sha256 for {path}")
        output = run_checked_command([sha_path, str(path)])
        checksum = output.split()[0].lower() if output.strip() else ""
        if not _SHA256_PATTERN.fullmatch(checksum):
            raise RuntimeError(f"Unexpected sha256sum output: {output.strip()!r}")
        log.debug(f"sha256 for {path}: {checksum}")
        return checksum
