"""Image file preparation: extraction, growth and compression.

Decompression and compression shell out to ``xz`` and ``zstd`` so that
multi-gigabyte images are never streamed through Python.
"""

from __future__ import annotations

import os
import shutil
from datetime import datetime
from pathlib import Path
from typing import Optional

from pi_image_builder.domain import GIB, MIB
from pi_image_builder.logging import LoggerFactory
from pi_image_builder.storage.commands import run_checked_command
from pi_image_builder.storage.exceptions import CommandFailedError

log = LoggerFactory.for_media()

COMPRESSED_SUFFIX = ".zstd"
ZSTD_LEVEL = 19


def find_tool(*names: str) -> str:
    """Return the path of the first available tool in ``names``.

    Raises:
        CommandFailedError: If none is installed
    """
    for name in names:
        path = shutil.which(name)
        if path:
            return path
    raise CommandFailedError(list(names), None, f"{' or '.join(names)} not found")


def extract_image(archive: str | Path, extracted: Optional[str | Path] = None) -> Path:
    """Decompress an ``.xz`` image, keeping the archive.

    Skipped when the extracted image already exists.
    """
    archive = Path(archive).resolve()
    extracted = Path(extracted).resolve() if extracted else archive.with_suffix("")
    if extracted.exists():
        log.info(f"{extracted.name} already extracted, skipping")
        return extracted
    if not archive.exists():
        raise FileNotFoundError(f"Image archive not found: {archive}")
    log.info(f"Extracting {archive.name}")
    run_checked_command([find_tool("xz"), "-d", "-k", str(archive)])
    return extracted


def expand_image(
    path: str | Path,
    minimum_size: int = 4 * GIB,
    padding: int = 1000 * MIB,
) -> bool:
    """Grow the image by ``padding`` zero bytes unless it is already large enough.

    Returns:
        True if the file was grown
    """
    path = Path(path)
    size = path.stat().st_size
    if size > minimum_size:
        log.info(f"{path.name} is {size} bytes, no expansion needed")
        return False
    new_size = size + padding
    with open(path, "r+b") as image:
        image.truncate(new_size)
    log.info(f"Expanded {path.name} from {size} to {new_size} bytes")
    return True


def timestamped_name(prefix: str, now: Optional[datetime] = None) -> str:
    """Return ``<prefix>-<MM-DD-YYYY>-<unix ms>.img``."""
    now = now or datetime.now()
    return f"{prefix}-{now.strftime('%m-%d-%Y')}-{int(now.timestamp() * 1000)}.img"


def compress_image(path: str | Path, prefix: str, now: Optional[datetime] = None) -> Path:
    """Rename the built image with a timestamp and compress it with zstd.

    Returns:
        Path of the compressed file
    """
    path = Path(path)
    renamed = path.with_name(timestamped_name(prefix, now))
    os.rename(path, renamed)
    log.info(f"Renamed {path.name} to {renamed.name}")

    compressed = renamed.with_name(renamed.name + COMPRESSED_SUFFIX)
    run_checked_command(
        [find_tool("zstd"), f"-{ZSTD_LEVEL}", "-f", "-q", str(renamed), "-o", str(compressed)]
    )
    log.info(f"Compressed {renamed.name} to {compressed.name}")
    return compressed


def decompress_image(compressed: str | Path, destination: str | Path) -> Path:
    compressed = Path(compressed)
    destination = Path(destination)
    log.info(f"Decompressing {compressed.name} to {destination.name}")
    run_checked_command(
        [find_tool("zstd"), "-d", "-f", "-q", str(compressed), "-o", str(destination)]
    )
    return destination
