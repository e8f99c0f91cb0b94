"""
Vision orchestrator: batched OCR over many page images.

Intent:
    Vision requests accept at most four images. Split the page list into
    batches, fetch and encode each batch, call the model once per batch and
    join the transcriptions in page order.

Behavior:
    - A single string that looks like a JSON array is parsed into a URL list.
    - Raw PDF references are rejected before any model call.
    - Batches run sequentially; a failing batch contributes an inline error
      marker and never aborts the remaining batches.
    - If no batch produced text the call fails with `DocumentAccessError`.
"""
from __future__ import annotations

from dataclasses import dataclass, field
import json
import logging
from typing import Awaitable, Callable, Optional, Sequence, Union

import httpx

from assesslab.evaluation import telemetry
from assesslab.evaluation.adapters.responses import extract_text
from assesslab.evaluation.ports import (
    DocumentAccessError,
    EvaluationError,
    ImageProcessingOutcome,
    ModelClientProtocol,
)
from assesslab.vision.document_converter import is_pdf_reference
from assesslab.vision.image_fetch import clean_url, process_batch

LOG = logging.getLogger(__name__)

MAX_BATCH_SIZE = 4
BATCH_SEPARATOR = "\n\n--- NEXT PAGE/BATCH ---\n\n"


@dataclass
class BatchReport:
    index: int
    images: int
    ok: bool
    chars: int = 0
    failed_images: int = 0
    error: str = ""


@dataclass
class VisionRunReport:
    """Per-batch outcomes, kept for retry diagnostics."""

    batches: list[BatchReport] = field(default_factory=list)

    @property
    def succeeded(self) -> int:
        return sum(1 for batch in self.batches if batch.ok)

    def to_dict(self) -> dict:
        return {
            "batches": [
                {
                    "batch": batch.index + 1,
                    "images": batch.images,
                    "ok": batch.ok,
                    "chars": batch.chars,
                    "failedImages": batch.failed_images,
                    "error": batch.error or None,
                }
                for batch in self.batches
            ]
        }


def create_image_batches(urls: Sequence[str], batch_size: int = MAX_BATCH_SIZE) -> list[list[str]]:
    """Partition `urls` into ceil(N / batch_size) ordered batches."""
    if batch_size < 1 or batch_size > MAX_BATCH_SIZE:
        raise ValueError(f"batch_size must be within 1..{MAX_BATCH_SIZE}, got: {batch_size}")
    items = list(urls)
    return [items[start : start + batch_size] for start in range(0, len(items), batch_size)]


def clean_image_urls(urls: Sequence[str]) -> list[str]:
    """Strip queries, drop empty entries and duplicates, keep order."""
    seen: set[str] = set()
    cleaned: list[str] = []
    for url in urls:
        if not isinstance(url, str) or not url.strip():
            continue
        base = clean_url(url)
        if base in seen:
            continue
        seen.add(base)
        cleaned.append(base)
    return cleaned


def parse_image_url_input(value: Union[str, Sequence[str]]) -> list[str]:
    """Accept a URL list, a single URL, or a JSON array string of URLs."""
    if isinstance(value, str):
        stripped = value.strip()
        if stripped.startswith("[") and stripped.endswith("]"):
            try:
                parsed = json.loads(stripped)
            except ValueError:
                LOG.info("evaluation.vision.input action=not_json_array")
            else:
                if isinstance(parsed, list) and parsed:
                    return clean_image_urls([item for item in parsed if isinstance(item, str)])
        return [stripped] if stripped else []
    return [url for url in value if isinstance(url, str) and url.strip()]


def default_batch_prompt(batch_len: int) -> str:
    target = "these images" if batch_len > 1 else "this image"
    return f"Extract all the text from {target}, preserving structure and formatting:"


BatchLoader = Callable[[int, list], Awaitable[ImageProcessingOutcome]]


async def _run_batches(
    model: ModelClientProtocol,
    prompt: Optional[str],
    batches: list[list],
    load: BatchLoader,
    *,
    max_tokens: int,
    temperature: float,
    system: Optional[str],
    report: Optional[VisionRunReport],
) -> str:
    report = report if report is not None else VisionRunReport()
    combined = ""
    total = len(batches)
    succeeded = 0
    failures: list[str] = []
    for idx, batch in enumerate(batches):
        base_prompt = prompt or default_batch_prompt(len(batch))
        try:
            outcome = await load(idx, batch)
            outcome.raise_if_empty()
            batch_prompt = base_prompt + outcome.failure_note()
            if total > 1:
                batch_prompt += f"\n\nThis is batch {idx + 1} of {total}."
            raw = await model.invoke_vision(
                batch_prompt, outcome.succeeded, max_tokens=max_tokens, temperature=temperature, system=system
            )
            text = extract_text(raw)
        except EvaluationError as exc:
            LOG.warning("evaluation.vision.batch action=failed batch=%s total=%s error=%s", idx + 1, total, exc)
            telemetry.increment_counter("vision_batches_total", status="failed")
            report.batches.append(BatchReport(index=idx, images=len(batch), ok=False, error=str(exc)))
            failures.append(f"Batch {idx + 1}: {exc}")
            combined += f"\n\n[Error processing batch {idx + 1}: {exc}]\n\n"
            continue
        if combined and total > 1:
            combined += BATCH_SEPARATOR
        combined += text
        succeeded += 1
        telemetry.increment_counter("vision_batches_total", status="ok")
        report.batches.append(
            BatchReport(index=idx, images=len(batch), ok=True, chars=len(text), failed_images=len(outcome.failed))
        )
        LOG.info("evaluation.vision.batch action=completed batch=%s total=%s chars=%s", idx + 1, total, len(text))

    if not combined.strip() or succeeded == 0:
        message = (
            "Failed to extract any text from the provided images. "
            "Please check the document format and accessibility."
        )
        if failures:
            message += "\n" + "\n".join(failures)
        raise DocumentAccessError(message)
    return combined


async def process_images_with_vision(
    model: ModelClientProtocol,
    prompt: Optional[str],
    image_urls: Union[str, Sequence[str]],
    *,
    fetch_client: httpx.AsyncClient,
    max_tokens: int = 4000,
    temperature: float = 0.2,
    system: Optional[str] = None,
    batch_size: int = MAX_BATCH_SIZE,
    fetch_timeout: float = 30,
    report: Optional[VisionRunReport] = None,
) -> str:
    """
    OCR every image URL and return the combined transcription.

    Raises:
        DocumentAccessError: when the input is empty, contains a raw PDF, or
            no batch produced text.
    """
    urls = parse_image_url_input(image_urls)
    if not urls:
        raise DocumentAccessError("No image URLs provided")
    pdfs = [clean_url(url) for url in urls if is_pdf_reference(url)]
    if pdfs:
        raise DocumentAccessError(
            f"PDF detected ({pdfs[0]}). PDFs must be converted to images before vision processing."
        )
    batches = create_image_batches(urls, batch_size)
    LOG.info("evaluation.vision.run action=start images=%s batches=%s", len(urls), len(batches))

    async def load(_: int, batch: list) -> ImageProcessingOutcome:
        return await process_batch(batch, client=fetch_client, timeout=fetch_timeout)

    return await _run_batches(
        model, prompt, batches, load, max_tokens=max_tokens, temperature=temperature, system=system, report=report
    )


async def process_image_contents_with_vision(
    model: ModelClientProtocol,
    prompt: Optional[str],
    outcome: ImageProcessingOutcome,
    *,
    max_tokens: int = 4000,
    temperature: float = 0.2,
    system: Optional[str] = None,
    batch_size: int = MAX_BATCH_SIZE,
    report: Optional[VisionRunReport] = None,
) -> str:
    """Batch already encoded images (e.g. ZIP members) through the vision model."""
    outcome.raise_if_empty()
    batches = create_image_batches(outcome.succeeded, batch_size)

    async def load(_: int, batch: list) -> ImageProcessingOutcome:
        return ImageProcessingOutcome(succeeded=list(batch))

    return await _run_batches(
        model, prompt, batches, load, max_tokens=max_tokens, temperature=temperature, system=system, report=report
    )


__all__ = [
    "BATCH_SEPARATOR",
    "MAX_BATCH_SIZE",
    "BatchReport",
    "VisionRunReport",
    "clean_image_urls",
    "create_image_batches",
    "parse_image_url_input",
    "process_image_contents_with_vision",
    "process_images_with_vision",
]
