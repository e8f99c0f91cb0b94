"""
Ports for the evaluation pipeline: shared data types, protocols, and errors.

Intent:
    Provide framework-agnostic contracts between the web entry point, the
    pipeline and concrete adapters (Bedrock, bearer-token endpoint, stub,
    document store). Keeping these definitions in a dedicated module avoids
    circular imports and clarifies boundaries.

Design:
    - Request types: DocumentRef, StudentInfo, EvaluationRequest
    - Vision types: ImageContent, FailedImage, ImageProcessingOutcome
    - Result types: ExtractedQuestion, AnswerMatch, AnswerRecord,
      EvaluationSummary, EvaluationResult, DocumentText, StageOutcome
    - Protocols: ModelClientProtocol, DocumentStoreProtocol
    - Error taxonomy: EvaluationError and its subclasses, mapped to HTTP status
      codes by the web layer
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Generic, Optional, Protocol, Sequence, TypeVar


T = TypeVar("T")


# ----------------------------- Request types --------------------------------


@dataclass(frozen=True)
class DocumentRef:
    """Reference to a document: inline text, a URL, a ZIP of pages or a topic."""

    url: Optional[str] = None
    zip_url: Optional[str] = None
    text: Optional[str] = None
    topic: Optional[str] = None

    def has_source(self) -> bool:
        return any((self.url, self.zip_url, self.text, self.topic))

    def has_content(self) -> bool:
        """True when the reference points at actual content, not only a topic."""
        return any((self.url, self.zip_url, self.text))


@dataclass(frozen=True)
class StudentInfo:
    name: str = ""
    roll_number: str = ""
    class_name: str = ""
    subject: str = ""


@dataclass(frozen=True)
class EvaluationRequest:
    test_id: str
    student_answer: DocumentRef
    question_paper: Optional[DocumentRef] = None
    answer_key: Optional[DocumentRef] = None
    student_info: StudentInfo = field(default_factory=StudentInfo)
    retry_attempt: int = 0


# ----------------------------- Vision types ---------------------------------


@dataclass(frozen=True)
class ImageContent:
    """One fetched image, base64 encoded, tagged with its input position."""

    index: int
    url: str
    base64: str
    media_type: str


@dataclass(frozen=True)
class FailedImage:
    index: int
    url: str
    error: str


@dataclass
class ImageProcessingOutcome:
    """Result of a batch fetch.

    Invariant: `len(succeeded) + len(failed)` equals the number of input
    URLs; blank entries are recorded as failures. Both lists are ordered by input index.
    """

    succeeded: list[ImageContent] = field(default_factory=list)
    failed: list[FailedImage] = field(default_factory=list)

    @property
    def total(self) -> int:
        return len(self.succeeded) + len(self.failed)

    def failure_note(self) -> str:
        """Prompt suffix telling the model how many images were unavailable."""
        if not self.failed:
            return ""
        return (
            f"\n\nNote: {len(self.failed)} out of {self.total} images could not be processed. "
            f"Analysis is based only on the available {len(self.succeeded)} images."
        )

    def raise_if_empty(self) -> None:
        """Raise `DocumentAccessError` listing every failure when nothing succeeded."""
        if self.succeeded:
            return
        if not self.failed:
            raise DocumentAccessError("No valid image URLs provided")
        lines = "".join(f"- Image {item.index + 1} ({item.url}): {item.error}\n" for item in self.failed)
        raise DocumentAccessError(f"Failed to process any of the provided images:\n{lines}")


# ----------------------------- Result types ---------------------------------


@dataclass(frozen=True)
class ExtractedQuestion:
    number: str
    text: str
    topic: str = ""
    difficulty: str = ""
    marks: Optional[float] = None


@dataclass(frozen=True)
class AnswerMatch:
    question: str
    answer: str
    similarity_score: float = 0.0


@dataclass
class AnswerRecord:
    """One evaluated answer. Invariant: 0 <= score[0] <= score[1]."""

    question_no: str
    question: str
    answer: str
    expected_answer: str
    score: tuple[float, float]
    remarks: str = ""
    confidence: float = 0.0
    match_method: str = ""

    def to_dict(self) -> dict:
        return {
            "question_no": self.question_no,
            "question": self.question,
            "answer": self.answer,
            "expected_answer": self.expected_answer,
            "score": [self.score[0], self.score[1]],
            "remarks": self.remarks,
            "confidence": self.confidence,
            "match_method": self.match_method,
        }


@dataclass
class EvaluationSummary:
    total_assigned: float
    total_max: float
    percentage: int
    declared_total: Optional[list] = None

    def to_dict(self) -> dict:
        body: dict[str, Any] = {
            "totalScore": [self.total_assigned, self.total_max],
            "percentage": self.percentage,
        }
        if self.declared_total is not None:
            body["declaredTotalScore"] = self.declared_total
        return body


@dataclass
class EvaluationResult:
    student_name: str
    roll_no: str
    class_name: str
    subject: str
    answers: list[AnswerRecord]
    summary: EvaluationSummary

    def to_dict(self) -> dict:
        return {
            "student_name": self.student_name,
            "roll_no": self.roll_no,
            "class": self.class_name,
            "subject": self.subject,
            "answers": [answer.to_dict() for answer in self.answers],
            "summary": self.summary.to_dict(),
        }


@dataclass(frozen=True)
class DocumentText:
    """Text of one document and where it came from.

    `source` is one of: provided, cached, ocr, zip, topic, none.
    """

    text: str
    source: str


@dataclass(frozen=True)
class StageOutcome(Generic[T]):
    """Result of a best-effort stage: callers check `ok` instead of catching."""

    value: T
    ok: bool = True
    reason: str = ""


# ----------------------------- Protocols ------------------------------------


class ModelClientProtocol(Protocol):
    """Model client sends text or vision requests and returns the raw JSON body."""

    async def invoke_text(
        self,
        messages: Sequence[dict],
        *,
        max_tokens: int,
        temperature: float,
        system: Optional[str] = None,
    ) -> dict:
        ...

    async def invoke_vision(
        self,
        prompt: str,
        images: Sequence[ImageContent],
        *,
        max_tokens: int,
        temperature: float,
        system: Optional[str] = None,
    ) -> dict:
        ...

    async def aclose(self) -> None:
        ...


class DocumentStoreProtocol(Protocol):
    """Lookup of previously extracted OCR text by document URL."""

    async def lookup(self, document_url: str) -> Optional[str]:
        ...


# ------------------------------ Errors --------------------------------------


class EvaluationError(Exception):
    """Base class for evaluation failures."""


class InputValidationError(EvaluationError):
    """Malformed request (missing testId, missing answer sheet, bad JSON)."""


class ConfigurationError(EvaluationError):
    """Required credentials or settings are missing."""


class ConnectivityError(EvaluationError):
    """The model endpoint cannot be reached or refuses our credentials.

    Parameters:
        kind: one of "auth", "not_found", "timeout", "unknown".
        help: remediation hint shown to the caller.
    """

    def __init__(self, message: str, *, kind: str, help: str) -> None:
        super().__init__(message)
        self.kind = kind
        self.help = help


class DocumentAccessError(EvaluationError):
    """A document could not be fetched or decoded into text."""


class ModelResponseError(EvaluationError):
    """The model endpoint answered with a non-2xx status or failed in transport."""

    def __init__(self, message: str, *, status: Optional[int] = None, body: str = "") -> None:
        super().__init__(message)
        self.status = status
        self.body = body


class ModelTimeoutError(ModelResponseError):
    """A single model call exceeded its transport timeout."""


class ParseError(EvaluationError):
    """Model output could not be turned into the expected structure."""


class EvaluationTimeoutError(EvaluationError):
    """The extract and evaluate stages did not finish before the deadline."""


__all__ = [
    # Requests
    "DocumentRef",
    "StudentInfo",
    "EvaluationRequest",
    # Vision
    "ImageContent",
    "FailedImage",
    "ImageProcessingOutcome",
    # Results
    "ExtractedQuestion",
    "AnswerMatch",
    "AnswerRecord",
    "EvaluationSummary",
    "EvaluationResult",
    "DocumentText",
    "StageOutcome",
    # Protocols
    "ModelClientProtocol",
    "DocumentStoreProtocol",
    # Errors
    "EvaluationError",
    "InputValidationError",
    "ConfigurationError",
    "ConnectivityError",
    "DocumentAccessError",
    "ModelResponseError",
    "ModelTimeoutError",
    "ParseError",
    "EvaluationTimeoutError",
]
