"""
Image batch fetcher: download images and encode them for vision requests.

Intent:
    Turn a list of image URLs into base64 `ImageContent` items while recording
    per-image failures instead of aborting the batch. Downloads run
    concurrently; results are re-ordered by input index afterwards.

Behavior:
    - Query strings are stripped before fetching (signed tokens never reach logs).
    - PDFs are rejected per image; they must be converted to page images first.
    - `application/octet-stream` bodies are accepted when Pillow recognises
      the bytes as an image.
"""
from __future__ import annotations

import asyncio
import base64
from io import BytesIO
import logging
from typing import Iterable, Optional, Sequence

import httpx
from PIL import Image, UnidentifiedImageError

from assesslab.evaluation import telemetry
from assesslab.evaluation.ports import FailedImage, ImageContent, ImageProcessingOutcome

LOG = logging.getLogger(__name__)

NO_CACHE_HEADERS = {"Cache-Control": "no-cache", "Pragma": "no-cache"}
PDF_REJECTION = "PDF detected. PDFs must be converted to images first."
EMPTY_URL = "Empty URL"
DEFAULT_CHUNK_SIZE = 3072

_PIL_FORMAT_TO_MIME = {
    "JPEG": "image/jpeg",
    "PNG": "image/png",
    "GIF": "image/gif",
    "WEBP": "image/webp",
    "BMP": "image/bmp",
    "TIFF": "image/tiff",
}
_EXTENSION_TO_MIME = {
    "jpg": "image/jpeg",
    "jpeg": "image/jpeg",
    "png": "image/png",
    "gif": "image/gif",
    "webp": "image/webp",
}


def clean_url(url: str) -> str:
    """Strip the query string (and fragment) from `url`."""
    base = url.strip()
    for marker in ("?", "#"):
        idx = base.find(marker)
        if idx != -1:
            base = base[:idx]
    return base


def looks_like_pdf_url(url: str) -> bool:
    lowered = url.lower()
    return lowered.endswith(".pdf") or ".pdf?" in lowered


def encode_base64_chunked(data: bytes, chunk_size: int = DEFAULT_CHUNK_SIZE) -> str:
    """Base64-encode `data` in fixed-size chunks.

    The chunk size is rounded down to a multiple of 3 so that concatenated
    chunk encodings equal the one-shot encoding.
    """
    step = max(3, chunk_size - chunk_size % 3)
    parts = [base64.b64encode(data[offset : offset + step]) for offset in range(0, len(data), step)]
    return b"".join(parts).decode("ascii")


def sniff_image_format(data: bytes) -> Optional[str]:
    try:
        with Image.open(BytesIO(data)) as img:
            return _PIL_FORMAT_TO_MIME.get((img.format or "").upper())
    except (UnidentifiedImageError, OSError, ValueError):
        return None


def media_type_for(content_type: str, data: bytes, url: str) -> Optional[str]:
    """Resolve the media type sent to the model, or None if not an image."""
    ctype = (content_type or "").split(";")[0].strip().lower()
    if ctype.startswith("image/"):
        return "image/jpeg" if ctype == "image/jpg" else ctype
    if ctype == "application/octet-stream" or not ctype:
        return sniff_image_format(data)
    return None


async def _fetch_entry(client: httpx.AsyncClient, index: int, url: object, timeout: float) -> ImageContent | FailedImage:
    if not isinstance(url, str) or not url.strip():
        return FailedImage(index, url if isinstance(url, str) else "", EMPTY_URL)
    return await _fetch_one(client, index, clean_url(url), timeout)


async def _fetch_one(client: httpx.AsyncClient, index: int, url: str, timeout: float) -> ImageContent | FailedImage:
    if looks_like_pdf_url(url):
        return FailedImage(index, url, PDF_REJECTION)
    try:
        response = await client.get(url, headers=NO_CACHE_HEADERS, timeout=timeout)
    except httpx.TimeoutException:
        return FailedImage(index, url, f"Timed out after {timeout:g}s")
    except httpx.HTTPError as exc:
        return FailedImage(index, url, str(exc) or type(exc).__name__)

    if not response.is_success:
        return FailedImage(index, url, f"HTTP status {response.status_code} {response.reason_phrase}".rstrip())

    content_type = response.headers.get("content-type", "")
    if "pdf" in content_type.lower():
        return FailedImage(index, url, PDF_REJECTION)
    data = response.content
    if not data:
        return FailedImage(index, url, "Empty response data")
    media_type = media_type_for(content_type, data, url)
    if media_type is None:
        return FailedImage(index, url, f"Invalid content type: {content_type or 'missing'}")
    return ImageContent(index=index, url=url, base64=encode_base64_chunked(data), media_type=media_type)


async def process_batch(
    urls: Sequence[str],
    *,
    client: httpx.AsyncClient,
    timeout: float = 30,
) -> ImageProcessingOutcome:
    """
    Fetch and encode every URL in `urls`.

    Returns:
        ImageProcessingOutcome with `succeeded` and `failed` ordered by input
        index. Callers decide whether zero successes is fatal
        (`outcome.raise_if_empty()`).
    """
    results = await asyncio.gather(*(_fetch_entry(client, idx, url, timeout) for idx, url in enumerate(urls)))

    outcome = ImageProcessingOutcome()
    for item in results:
        if isinstance(item, ImageContent):
            outcome.succeeded.append(item)
        else:
            outcome.failed.append(item)
            LOG.warning("evaluation.vision.fetch action=failed index=%s url=%s error=%s", item.index + 1, item.url, item.error)
    outcome.succeeded.sort(key=lambda item: item.index)
    outcome.failed.sort(key=lambda item: item.index)
    telemetry.increment_counter("vision_images_total", amount=len(outcome.succeeded), status="ok")
    telemetry.increment_counter("vision_images_total", amount=len(outcome.failed), status="failed")
    LOG.info(
        "evaluation.vision.fetch action=batch_done ok=%s failed=%s", len(outcome.succeeded), len(outcome.failed)
    )
    return outcome


def encode_images(items: Iterable[tuple[str, bytes]]) -> ImageProcessingOutcome:
    """Encode already downloaded `(name, bytes)` pairs (e.g. ZIP members)."""
    outcome = ImageProcessingOutcome()
    for idx, (name, data) in enumerate(items):
        media_type = media_type_for("", data, name) if data else None
        if media_type is None:
            ext = name.rsplit(".", 1)[-1].lower() if "." in name else ""
            media_type = _EXTENSION_TO_MIME.get(ext) if data else None
        if media_type is None:
            outcome.failed.append(FailedImage(idx, name, "Empty response data" if not data else "Unrecognised image data"))
            continue
        outcome.succeeded.append(ImageContent(index=idx, url=name, base64=encode_base64_chunked(data), media_type=media_type))
    return outcome


__all__ = [
    "NO_CACHE_HEADERS",
    "PDF_REJECTION",
    "clean_url",
    "encode_base64_chunked",
    "encode_images",
    "looks_like_pdf_url",
    "media_type_for",
    "process_batch",
    "sniff_image_format",
]
