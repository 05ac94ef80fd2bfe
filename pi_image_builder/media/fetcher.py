"""Base image acquisition and verification.

The image and its SHA256SUMS manifest are downloaded concurrently, each only
if missing (or always when forced), then the image digest is checked against
the manifest entry for its file name. Nothing is downloaded when both files
are already present.
"""

from __future__ import annotations

import asyncio
import hashlib
from pathlib import Path
from typing import TYPE_CHECKING

import aiohttp

from pi_image_builder.domain import MediaArtifact
from pi_image_builder.logging import LoggerFactory, ThrottledLogger
from pi_image_builder.storage.exceptions import (
    ChecksumMismatchError,
    DownloadError,
    MalformedChecksumFileError,
)

if TYPE_CHECKING:
    from loguru import Logger

CHUNK_SIZE = 1024 * 1024
CHECKSUM_SEPARATORS = (" *", "  ")


def join_url(base_url: str, name: str) -> str:
    return f"{base_url.rstrip('/')}/{name.lstrip('/')}"


def extract_checksums(text: str) -> dict[str, str]:
    """Parse a sha256sum manifest into ``{file name: hex digest}``.

    Lines look like ``<hex> *<name>`` (binary mode) or ``<hex>  <name>``.
    Parsing stops at the first empty line.

    Raises:
        MalformedChecksumFileError: If a line does not split into a digest and
            a file name
    """
    sums: dict[str, str] = {}
    for line_number, line in enumerate(text.split("\n"), start=1):
        if not line:
            break
        fields = [line]
        for separator in CHECKSUM_SEPARATORS:
            fields = line.split(separator)
            if len(fields) > 1:
                break
        if len(fields) != 2 or not fields[0] or not fields[1]:
            raise MalformedChecksumFileError(line_number, line)
        sums[fields[1]] = fields[0].lower()
    return sums


def _compare(file_name: str, actual: str, checksum_text: str) -> str:
    expected = extract_checksums(checksum_text).get(file_name)
    if expected != actual:
        raise ChecksumMismatchError(file_name, expected, actual)
    return actual


def validate_hashes(file_name: str, media_bytes: bytes, checksum_text: str) -> str:
    """Check in-memory media against the manifest entry for ``file_name``.

    Returns:
        The verified hex digest

    Raises:
        ChecksumMismatchError: If the entry is missing or differs
        MalformedChecksumFileError: If the manifest cannot be parsed
    """
    return _compare(file_name, hashlib.sha256(media_bytes).hexdigest(), checksum_text)


def compute_file_sha256(path: str | Path) -> str:
    digest = hashlib.sha256()
    with open(path, "rb") as media:
        for chunk in iter(lambda: media.read(CHUNK_SIZE), b""):
            digest.update(chunk)
    return digest.hexdigest()


def verify_file(path: str | Path, checksum_text: str, file_name: str | None = None) -> str:
    """Streamed variant of validate_hashes for files too large to hold in memory."""
    path = Path(path)
    return _compare(file_name or path.name, compute_file_sha256(path), checksum_text)


async def download_file(
    session: aiohttp.ClientSession,
    url: str,
    destination: Path,
    log: Logger | None = None,
) -> Path:
    """Stream ``url`` into ``destination``.

    A partially written file is left in place when the transfer fails.

    Raises:
        DownloadError: On a non-200 status or a network error
    """
    log = log or LoggerFactory.for_media()
    progress = ThrottledLogger(log.bind(tags=["media", "progress"]))
    written = 0
    try:
        async with session.get(url) as resp:
            if resp.status != 200:
                raise DownloadError(url, f"received non 200 status code: {resp.status}")
            total = resp.content_length
            with open(destination, "wb") as output:
                async for chunk in resp.content.iter_chunked(CHUNK_SIZE):
                    output.write(chunk)
                    written += len(chunk)
                    if total:
                        progress.debug(
                            url, f"Progress {destination.name}: {written * 100 // total}%"
                        )
    except aiohttp.ClientError as e:
        log.error(f"Network error downloading {url}: {e}")
        raise DownloadError(url, f"network error: {e}") from e
    log.info(f"Downloaded {destination.name} ({written} bytes)")
    return destination


class MediaFetcher:
    """Download and verify the base OS image."""

    def __init__(
        self,
        release_url: str,
        work_dir: str | Path = ".",
        *,
        timeout_seconds: float = 1800,
        log: Logger | None = None,
    ):
        self.release_url = release_url
        self.work_dir = Path(work_dir)
        self.timeout = aiohttp.ClientTimeout(total=timeout_seconds)
        self.log = log or LoggerFactory.for_media()

    def url_for(self, name: str) -> str:
        return join_url(self.release_url, name)

    async def download(self, names: list[str]) -> list[Path]:
        """Download ``names`` concurrently. The first failure propagates."""
        self.work_dir.mkdir(parents=True, exist_ok=True)
        async with aiohttp.ClientSession(timeout=self.timeout) as session:
            return await asyncio.gather(
                *(
                    download_file(session, self.url_for(name), self.work_dir / name, self.log)
                    for name in names
                )
            )

    async def acquire_async(
        self, target_name: str, checksum_name: str, force: bool = False
    ) -> MediaArtifact:
        media_path = self.work_dir / target_name
        checksum_path = self.work_dir / checksum_name
        missing = [
            name
            for name, path in ((target_name, media_path), (checksum_name, checksum_path))
            if force or not path.exists()
        ]
        if missing:
            self.log.info(f"Downloading {', '.join(missing)} from {self.release_url}")
            await self.download(missing)
        else:
            self.log.info(f"{target_name} and {checksum_name} already present, skipping download")

        digest = verify_file(
            media_path, checksum_path.read_text(encoding="utf-8"), target_name
        )
        self.log.info(f"Verified {target_name} (sha256 {digest})")
        return MediaArtifact(
            name=target_name,
            url=self.url_for(target_name),
            path=media_path,
            expected_sha256=digest,
        )

    def acquire(self, target_name: str, checksum_name: str, force: bool = False) -> MediaArtifact:
        """Fetch (if needed) and verify the image.

        Raises:
            DownloadError: If a download fails
            ChecksumMismatchError: If the digest is wrong or has no manifest entry
            MalformedChecksumFileError: If the manifest cannot be parsed
        """
        return asyncio.run(self.acquire_async(target_name, checksum_name, force))
