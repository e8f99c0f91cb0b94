"""
Document converter: classify remote documents and resolve PDFs to page images.

Intent:
    The vision model only accepts images. Uploaded PDFs are rendered to JPEG
    pages by the upload client and stored next to the PDF under a fixed naming
    convention; this module finds those pages.

Behavior:
    - `classify` uses the content type first, then the URL extension.
    - `resolve_pages_as_images` HEAD-checks the document, then for PDFs probes
      `{parent}/optimized_pdf_pages/pdf_page_{n}_{id}.jpg` starting at page 1
      and stops at the first missing page.
    - When no pre-rendered page exists the original URL is returned
      unresolved; the vision orchestrator then rejects it as a raw PDF.
"""
from __future__ import annotations

from dataclasses import dataclass
import logging
import re
from typing import Optional

import httpx

from assesslab.evaluation.ports import DocumentAccessError
from assesslab.vision.image_fetch import NO_CACHE_HEADERS, clean_url

LOG = logging.getLogger(__name__)

_IMAGE_EXT_RE = re.compile(r"\.(jpe?g|png|gif|webp|bmp|tiff?)$", re.IGNORECASE)
_PDF_ID_RE = re.compile(r"/([a-f0-9-]+)\.pdf$", re.IGNORECASE)
_ZIP_RE = re.compile(r"\.zip", re.IGNORECASE)


@dataclass(frozen=True)
class RemoteFileStatus:
    exists: bool
    content_type: Optional[str] = None


def classify(url: str, content_type: Optional[str] = None) -> str:
    """Return "pdf", "image" or "unknown" for a document URL."""
    if content_type:
        lowered = content_type.lower()
        if lowered.startswith("application/pdf"):
            return "pdf"
        if lowered.startswith("image/"):
            return "image"
    path = clean_url(url or "").lower()
    if path.endswith(".pdf"):
        return "pdf"
    if _IMAGE_EXT_RE.search(path):
        return "image"
    return "unknown"


def is_pdf_reference(url: str) -> bool:
    if not url:
        return False
    lowered = url.lower()
    if clean_url(lowered).endswith(".pdf") or ".pdf?" in lowered:
        return True
    return "application/pdf" in lowered or "content-type=pdf" in lowered


def is_zip_reference(url: str) -> bool:
    return bool(url) and bool(_ZIP_RE.search(url))


def is_image_reference(url: str) -> bool:
    if not url:
        return False
    return bool(_IMAGE_EXT_RE.search(clean_url(url))) or "image/" in url


async def check_remote_file(url: str, *, client: httpx.AsyncClient, timeout: float = 15) -> RemoteFileStatus:
    """HEAD the query-less URL; any failure means the file does not exist."""
    target = clean_url(url)
    try:
        response = await client.head(target, headers=NO_CACHE_HEADERS, timeout=timeout)
    except httpx.HTTPError as exc:
        LOG.warning("evaluation.documents.head action=error url=%s error=%s", target, type(exc).__name__)
        return RemoteFileStatus(exists=False)
    if not response.is_success:
        LOG.info("evaluation.documents.head action=missing url=%s status=%s", target, response.status_code)
        return RemoteFileStatus(exists=False)
    return RemoteFileStatus(exists=True, content_type=response.headers.get("content-type") or None)


def optimized_page_url(pdf_url: str, page: int) -> Optional[str]:
    """Pre-rendered page URL for `pdf_url`, or None when the name carries no ID."""
    target = clean_url(pdf_url)
    match = _PDF_ID_RE.search(target)
    if not match:
        return None
    pdf_dir = target[: target.rfind("/")]
    parent = pdf_dir[: pdf_dir.rfind("/")]
    return f"{parent}/optimized_pdf_pages/pdf_page_{page}_{match.group(1)}.jpg"


async def resolve_pages_as_images(
    url: str,
    *,
    client: httpx.AsyncClient,
    page_limit: int = 4,
    timeout: float = 15,
) -> list[str]:
    """
    Resolve a document URL into image URLs for the vision orchestrator.

    Raises:
        DocumentAccessError: when the document itself is missing.
    """
    status = await check_remote_file(url, client=client, timeout=timeout)
    if not status.exists:
        raise DocumentAccessError(f"Document not found or inaccessible: {clean_url(url)}")

    kind = classify(url, status.content_type)
    if kind != "pdf":
        if kind == "unknown":
            LOG.warning("evaluation.documents.resolve action=unknown_type url=%s", clean_url(url))
        return [clean_url(url)]

    first = optimized_page_url(url, 1)
    if first is None or not (await check_remote_file(first, client=client, timeout=timeout)).exists:
        LOG.warning("evaluation.documents.resolve action=no_prerendered_pages url=%s", clean_url(url))
        return [url]

    pages = [first]
    for page in range(2, page_limit + 1):
        candidate = optimized_page_url(url, page)
        if candidate is None or not (await check_remote_file(candidate, client=client, timeout=timeout)).exists:
            break
        pages.append(candidate)
    LOG.info("evaluation.documents.resolve action=pdf_pages url=%s pages=%s", clean_url(url), len(pages))
    return pages


__all__ = [
    "RemoteFileStatus",
    "check_remote_file",
    "classify",
    "is_image_reference",
    "is_pdf_reference",
    "is_zip_reference",
    "optimized_page_url",
    "resolve_pages_as_images",
]
