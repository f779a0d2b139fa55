"""
Duplicate detection for submitted documents.

Two levels:
  - exact   – SHA-256 of the file bytes already seen;
  - content – an extracted record that matches a known one on vendor
              (sequence-matcher similarity), amount (within 5 %) and date.

Only exact duplicates are skipped before extraction; content matches are
informational because they need the extraction result first.
"""

from __future__ import annotations

import hashlib
import json
import logging
import threading
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from difflib import SequenceMatcher

from docintake.ingestion.config import ingest_settings
from docintake.ingestion.confidence import numeric_amount
from docintake.ingestion.schemas import (
    DuplicateCheckResult,
    DuplicateMatch,
    ExtractedRecord,
    SubmittedItem,
)

logger = logging.getLogger(__name__)

_AMOUNT_TOLERANCE = 0.05


def compute_content_hash(content: bytes) -> str:
    """SHA-256 of file contents – used as the exact-duplicate fingerprint."""
    return hashlib.sha256(content).hexdigest()


def record_hash(record: ExtractedRecord) -> str:
    """Stable hash over the fields that identify a receipt."""
    amount = numeric_amount(record.amount)
    payload = {
        "vendor": (record.vendor or "").lower().strip(),
        "amount": round(amount * 100) if amount is not None else None,
        "date": record.date,
        "items": [
            {
                "name": item.name.lower().strip(),
                "price": round(item.price * 100) if item.price is not None else None,
            }
            for item in record.items
        ],
    }
    return hashlib.sha256(json.dumps(payload, sort_keys=True).encode()).hexdigest()


def string_similarity(a: str, b: str) -> float:
    """Similarity ratio in [0, 1]; two empty strings are identical."""
    if not a and not b:
        return 1.0
    return SequenceMatcher(None, a, b).ratio()


def content_similarity(first: ExtractedRecord, second: ExtractedRecord) -> float:
    """Fraction of comparable fields (vendor, amount, date) that match."""
    if record_hash(first) == record_hash(second):
        return 1.0

    matches = 0.0
    total = 0
    if first.vendor and second.vendor:
        matches += string_similarity(first.vendor.lower(), second.vendor.lower())
        total += 1

    a, b = numeric_amount(first.amount), numeric_amount(second.amount)
    if a and b:
        diff = abs(a - b) / max(abs(a), abs(b))
        matches += 1 if diff < _AMOUNT_TOLERANCE else 0
        total += 1

    if first.date and second.date:
        matches += 1 if first.date == second.date else 0
        total += 1

    return matches / total if total else 0.0


@dataclass
class DocumentFingerprint:
    id: str
    file_hash: str
    content_hash: str | None
    file_name: str
    file_size: int
    processed_at: datetime
    record: ExtractedRecord | None = None


@dataclass
class DuplicateRegistry:
    """Fingerprints of documents that were already processed."""

    similarity_threshold: float = field(
        default_factory=lambda: ingest_settings.duplicate_similarity_threshold
    )
    _documents: dict[str, DocumentFingerprint] = field(default_factory=dict, init=False, repr=False)
    _lock: threading.Lock = field(default_factory=threading.Lock, init=False, repr=False)

    def is_known(self, file_hash: str) -> bool:
        with self._lock:
            return any(fp.file_hash == file_hash for fp in self._documents.values())

    def check(
        self,
        item: SubmittedItem,
        record: ExtractedRecord | None = None,
    ) -> DuplicateCheckResult:
        file_hash = compute_content_hash(item.content)
        with self._lock:
            documents = list(self._documents.values())

        for fp in documents:
            if fp.file_hash == file_hash:
                return DuplicateCheckResult(
                    is_duplicate=True,
                    match_type=DuplicateMatch.EXACT,
                    matched_id=fp.id,
                    confidence=1.0,
                )

        if record is not None:
            for fp in documents:
                if fp.record is None:
                    continue
                similarity = content_similarity(record, fp.record)
                if similarity >= self.similarity_threshold:
                    return DuplicateCheckResult(
                        is_duplicate=True,
                        match_type=DuplicateMatch.CONTENT,
                        matched_id=fp.id,
                        confidence=similarity,
                    )

        return DuplicateCheckResult(is_duplicate=False)

    def register(self, item: SubmittedItem, record: ExtractedRecord | None = None) -> str:
        doc_id = f"doc_{uuid.uuid4().hex[:12]}"
        fingerprint = DocumentFingerprint(
            id=doc_id,
            file_hash=compute_content_hash(item.content),
            content_hash=record_hash(record) if record is not None else None,
            file_name=item.name,
            file_size=item.size,
            processed_at=datetime.now(timezone.utc),
            record=record,
        )
        with self._lock:
            self._documents[doc_id] = fingerprint
        logger.debug("Registered %s as %s.", item.label, doc_id)
        return doc_id

    def remove(self, doc_id: str) -> bool:
        with self._lock:
            return self._documents.pop(doc_id, None) is not None

    def documents(self) -> list[DocumentFingerprint]:
        with self._lock:
            return list(self._documents.values())

    def clear(self) -> None:
        with self._lock:
            self._documents.clear()

    def stats(self) -> dict[str, object]:
        docs = self.documents()
        return {
            "total": len(docs),
            "last_processed": max((d.processed_at for d in docs), default=None),
        }
