"""
ZIP page archives: download an archive of page images and encode its members.

Upload clients may bundle scanned pages into one ZIP. Members are ordered by
the first number in their file name (page_2.png before page_10.png).
"""
from __future__ import annotations

from io import BytesIO
import logging
import re
import zipfile

import httpx

from assesslab.evaluation.ports import DocumentAccessError, ImageProcessingOutcome
from assesslab.vision.image_fetch import NO_CACHE_HEADERS, clean_url, encode_images

LOG = logging.getLogger(__name__)

IMAGE_SUFFIXES = (".png", ".jpg", ".jpeg", ".gif", ".webp")
_FIRST_NUMBER = re.compile(r"(\d+)")


def page_sort_key(name: str) -> tuple:
    match = _FIRST_NUMBER.search(name)
    if match:
        return (0, int(match.group(1)), name)
    return (1, 0, name)


def read_page_images(archive: bytes) -> list[tuple[str, bytes]]:
    """Return `(name, bytes)` for every image member, in page order."""
    try:
        with zipfile.ZipFile(BytesIO(archive)) as zf:
            names = [
                info.filename
                for info in zf.infolist()
                if not info.is_dir() and info.filename.lower().endswith(IMAGE_SUFFIXES)
            ]
            if not names:
                raise DocumentAccessError("No image files found in the ZIP file")
            names.sort(key=page_sort_key)
            return [(name, zf.read(name)) for name in names]
    except zipfile.BadZipFile as exc:
        raise DocumentAccessError(f"Invalid ZIP archive: {exc}") from exc


async def fetch_zip_pages(url: str, *, client: httpx.AsyncClient, timeout: float = 30) -> ImageProcessingOutcome:
    target = clean_url(url)
    try:
        response = await client.get(target, headers=NO_CACHE_HEADERS, timeout=timeout)
    except httpx.HTTPError as exc:
        raise DocumentAccessError(f"Failed to download ZIP file: {exc}") from exc
    if not response.is_success:
        raise DocumentAccessError(
            f"Failed to download ZIP file: {response.status_code} {response.reason_phrase}".rstrip()
        )
    if not response.content:
        raise DocumentAccessError("Downloaded ZIP file is empty")
    pages = read_page_images(response.content)
    LOG.info("evaluation.vision.zip action=read url=%s pages=%s", target, len(pages))
    return encode_images(pages)


__all__ = ["IMAGE_SUFFIXES", "fetch_zip_pages", "page_sort_key", "read_page_images"]
