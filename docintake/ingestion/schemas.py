"""
Pydantic models for every artifact that flows through the intake pipeline.

Inputs:
  - SubmittedItem      – one user-submitted file (bytes + declared type)

Per-stage outcomes:
  - RateLimitResult    – admission decision for (subject, action)
  - ValidationOutcome  – content validation verdict + sanitized filename
  - ScanResult         – malware heuristic score
  - ExtractedRecord    – structured fields returned by the extraction backend
  - ConfidenceDecision – accept / needs-review verdict for a record

Aggregates:
  - BatchItemResult    – final state of one item
  - BatchReport        – frozen summary of a whole batch run

Outcome models are frozen: once produced they are never mutated.
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field, model_validator


# ── Enums ────────────────────────────────────────────────────────────────

class ValidationErrorCode(str, Enum):
    FILE_TOO_LARGE = "FILE_TOO_LARGE"
    INVALID_TYPE = "INVALID_TYPE"
    MALWARE_DETECTED = "MALWARE_DETECTED"
    INVALID_CONTENT = "INVALID_CONTENT"
    INVALID_NAME = "INVALID_NAME"


class SecurityErrorCode(str, Enum):
    INVALID_BASE64 = "INVALID_BASE64"
    XSS_DETECTED = "XSS_DETECTED"
    INJECTION_DETECTED = "INJECTION_DETECTED"
    SUSPICIOUS_METADATA = "SUSPICIOUS_METADATA"
    MALICIOUS_CONTENT = "MALICIOUS_CONTENT"


class ItemState(str, Enum):
    PENDING = "pending"
    ADMITTED = "admitted"
    VALIDATED = "validated"
    SUBMITTED = "submitted"
    RETRYING = "retrying"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    GATED = "gated"


class DuplicateMatch(str, Enum):
    EXACT = "exact"
    CONTENT = "content"
    NONE = "none"


# ── Input ────────────────────────────────────────────────────────────────

class SubmittedItem(BaseModel):
    """A file submitted for extraction."""

    content: bytes
    mime_type: str
    name: str
    size: int = Field(default=-1, description="Declared size in bytes; defaults to len(content)")
    ref: str = ""  # caller's source reference, defaults to the name

    model_config = {"frozen": True}

    @model_validator(mode="before")
    @classmethod
    def _fill_defaults(cls, data: Any) -> Any:
        if isinstance(data, dict):
            data = dict(data)
            if data.get("size", -1) in (-1, None):
                data["size"] = len(data.get("content") or b"")
            if not data.get("ref"):
                data["ref"] = data.get("name", "")
        return data

    @property
    def label(self) -> str:
        return self.name or self.ref or "Unknown"

    @property
    def is_image(self) -> bool:
        return self.mime_type.startswith("image/")


# ── Admission ────────────────────────────────────────────────────────────

class RateLimitQuota(BaseModel):
    """``requests`` allowed per sliding ``window_ms``."""

    requests: int
    window_ms: int

    @property
    def window_seconds(self) -> float:
        return self.window_ms / 1000.0


class RateLimitResult(BaseModel):
    allowed: bool
    remaining_requests: float  # math.inf when the action is unlimited
    reset_time: datetime
    retry_after_seconds: int | None = None

    model_config = {"frozen": True}


class RequestRecord(BaseModel):
    timestamp: float
    subject_id: str
    action: str

    model_config = {"frozen": True}


# ── Validation ───────────────────────────────────────────────────────────

class ValidationIssue(BaseModel):
    code: ValidationErrorCode
    message: str
    details: dict[str, Any] = Field(default_factory=dict)

    model_config = {"frozen": True}


class ValidationOutcome(BaseModel):
    """Verdict of ``ContentValidator.validate`` for one item."""

    is_valid: bool
    errors: tuple[ValidationIssue, ...] = ()
    warnings: tuple[str, ...] = ()
    sanitized_name: str | None = None

    model_config = {"frozen": True}

    @property
    def error_codes(self) -> list[ValidationErrorCode]:
        return [e.code for e in self.errors]

    def summary(self) -> str:
        return "; ".join(e.message for e in self.errors)


class ScanResult(BaseModel):
    is_malicious: bool
    threats: tuple[str, ...] = ()
    confidence: float = Field(0.0, ge=0.0, le=1.0)

    model_config = {"frozen": True}


class SignatureCheck(BaseModel):
    is_valid: bool
    detected_type: str | None = None


class SecurityIssue(BaseModel):
    code: SecurityErrorCode
    message: str
    details: dict[str, Any] = Field(default_factory=dict)


class SecurityScanResult(BaseModel):
    """Outcome of a text / base64 / metadata scan."""

    is_valid: bool
    errors: list[SecurityIssue] = Field(default_factory=list)
    warnings: list[str] = Field(default_factory=list)
    sanitized_data: Any = None


# ── Extraction & confidence ──────────────────────────────────────────────

class LineItem(BaseModel):
    name: str = ""
    price: float | None = None
    quantity: float | None = None


class ExtractedRecord(BaseModel):
    """Structured fields returned by the extraction backend.

    ``amount`` and ``date`` are kept loosely typed: the backend may return
    garbage and the confidence gate is responsible for noticing.
    """

    date: str | None = None
    amount: float | str | None = None
    vendor: str | None = None
    category: str | None = None
    confidence: float = 0.0
    description: str = ""
    subcategory: str | None = None
    gst_number: str | None = None
    items: list[LineItem] = Field(default_factory=list)

    model_config = {"frozen": True}


class ExtractedDataCheck(BaseModel):
    is_valid: bool
    errors: list[str] = Field(default_factory=list)
    warnings: list[str] = Field(default_factory=list)
    confidence: float


class ConfidenceDecision(BaseModel):
    is_valid: bool
    errors: tuple[str, ...] = ()
    effective_confidence: float
    threshold: float
    needs_review: bool

    model_config = {"frozen": True}


# ── Pre-extraction checks ────────────────────────────────────────────────

class DuplicateCheckResult(BaseModel):
    is_duplicate: bool
    match_type: DuplicateMatch = DuplicateMatch.NONE
    matched_id: str | None = None
    confidence: float = 0.0


class ProcessingDecision(BaseModel):
    process: bool
    reason: str
    cost_saved: float | None = None


# ── Batch results ────────────────────────────────────────────────────────

class BatchItemResult(BaseModel):
    """Terminal state of one submitted item."""

    index: int
    source_ref: str
    success: bool = False
    attempts: int = 0
    last_error: str | None = None
    record: ExtractedRecord | None = None
    decision: ConfidenceDecision | None = None
    state: ItemState = ItemState.PENDING
    history: tuple[ItemState, ...] = ()
    skipped: bool = False
    skip_reason: str | None = None
    validation: ValidationOutcome | None = None
    cost_saved: float = 0.0

    model_config = {"frozen": True}

    @property
    def needs_review(self) -> bool:
        return self.decision is not None and self.decision.needs_review


class BatchReport(BaseModel):
    """Frozen accounting of a batch run; ``items`` follows input order."""

    total: int
    successful: int
    failed: int
    skipped: int
    needs_review: int = 0
    estimated_cost: float = 0.0
    cost_saved: float = 0.0
    cancelled: bool = False
    elapsed_seconds: float = 0.0
    items: tuple[BatchItemResult, ...] = ()

    model_config = {"frozen": True}

    @classmethod
    def from_items(
        cls,
        items: list[BatchItemResult],
        *,
        estimated_cost: float = 0.0,
        cancelled: bool = False,
        elapsed_seconds: float = 0.0,
    ) -> BatchReport:
        return cls(
            total=len(items),
            successful=sum(1 for r in items if r.success),
            failed=sum(1 for r in items if not r.success and not r.skipped),
            skipped=sum(1 for r in items if r.skipped),
            needs_review=sum(1 for r in items if r.needs_review),
            estimated_cost=estimated_cost,
            cost_saved=sum(r.cost_saved for r in items),
            cancelled=cancelled,
            elapsed_seconds=elapsed_seconds,
            items=tuple(items),
        )
