"""HTTP image store client.

Finished images are uploaded with a plain PUT to ``<base_url>/<name>`` and
fetched back with GET when a device is flashed.
"""

from __future__ import annotations

import asyncio
from pathlib import Path
from typing import TYPE_CHECKING

import aiohttp

from pi_image_builder.logging import LoggerFactory
from pi_image_builder.storage.exceptions import UploadError

from .fetcher import download_file, join_url

if TYPE_CHECKING:
    from loguru import Logger

UPLOAD_OK_STATUSES = (200, 201, 204)


class ImageStore:
    """Upload and download images from an HTTP store."""

    def __init__(
        self, base_url: str, *, timeout_seconds: float = 1800, log: Logger | None = None
    ):
        self.base_url = base_url
        self.timeout = aiohttp.ClientTimeout(total=timeout_seconds)
        self.log = log or LoggerFactory.for_media()

    def url_for(self, name: str) -> str:
        return join_url(self.base_url, name)

    async def upload_async(self, path: Path) -> str:
        url = self.url_for(path.name)
        self.log.info(f"Uploading {path.name} to {url}")
        async with aiohttp.ClientSession(timeout=self.timeout) as session:
            try:
                with open(path, "rb") as image:
                    async with session.put(url, data=image) as resp:
                        if resp.status not in UPLOAD_OK_STATUSES:
                            raise UploadError(url, f"received status code {resp.status}")
            except aiohttp.ClientError as e:
                self.log.error(f"Network error uploading {path.name}: {e}")
                raise UploadError(url, f"network error: {e}") from e
        self.log.info(f"Uploaded {path.name}")
        return url

    async def download_async(self, name: str, destination: Path) -> Path:
        async with aiohttp.ClientSession(timeout=self.timeout) as session:
            return await download_file(session, self.url_for(name), destination, self.log)

    def upload(self, path: str | Path) -> str:
        """Upload ``path`` under its file name.

        Raises:
            UploadError: On a non-success status or a network error
        """
        return asyncio.run(self.upload_async(Path(path)))

    def download(self, name: str, destination: str | Path) -> Path:
        """Download the stored image ``name`` to ``destination``.

        Raises:
            DownloadError: On a non-200 status or a network error
        """
        return asyncio.run(self.download_async(name, Path(destination)))
