"""
Confidence gate – decide whether an extracted record can be accepted
automatically or must be routed to manual review.

Each check is a pure function. Penalties are subtracted from a starting
confidence of 1.0; thresholds scale with the record amount so high-value
records need more certainty before they are accepted without a human.
Nothing here raises: malformed records simply score low.
"""

from __future__ import annotations

import logging
from datetime import date, datetime

from docintake.ingestion.config import IngestSettings, ingest_settings
from docintake.ingestion.schemas import ConfidenceDecision, ExtractedDataCheck, ExtractedRecord

logger = logging.getLogger(__name__)

MISSING_DATE_PENALTY = 0.4
INVALID_DATE_PENALTY = 0.3
FUTURE_DATE_PENALTY = 0.2
OLD_DATE_PENALTY = 0.1
INVALID_AMOUNT_PENALTY = 0.4
HIGH_AMOUNT_PENALTY = 0.2
LOW_AMOUNT_PENALTY = 0.1
VENDOR_PENALTY = 0.1
CATEGORY_PENALTY = 0.05

_DATE_FORMATS = ("%Y-%m-%d", "%d/%m/%Y", "%d-%m-%Y", "%Y/%m/%d", "%d.%m.%Y", "%b %d, %Y", "%d %b %Y")


def parse_date(value: object) -> date | None:
    """Parse the date formats receipts commonly come back with."""
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if not isinstance(value, str):
        return None
    text = value.strip()
    try:
        return datetime.fromisoformat(text.replace("Z", "+00:00")).date()
    except ValueError:
        pass
    for fmt in _DATE_FORMATS:
        try:
            return datetime.strptime(text, fmt).date()
        except ValueError:
            continue
    return None


def numeric_amount(value: object) -> float | None:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    return float(value)


def _years_before(day: date, years: int) -> date:
    try:
        return day.replace(year=day.year - years)
    except ValueError:  # 29 February
        return day.replace(year=day.year - years, day=28)


def validate_extracted_data(
    record: ExtractedRecord,
    *,
    today: date | None = None,
    settings: IngestSettings | None = None,
) -> ExtractedDataCheck:
    """Business-rule validation of a record; returns errors and a confidence."""
    cfg = settings or ingest_settings
    today = today or date.today()
    errors: list[str] = []
    warnings: list[str] = []
    confidence = 1.0

    # Date
    if record.date:
        parsed = parse_date(record.date)
        if parsed is None:
            errors.append("Invalid date format")
            confidence -= INVALID_DATE_PENALTY
        elif parsed > today:
            errors.append("Date is in the future")
            confidence -= FUTURE_DATE_PENALTY
        elif parsed < _years_before(today, cfg.max_record_age_years):
            errors.append(f"Date is more than {cfg.max_record_age_years} years old")
            confidence -= OLD_DATE_PENALTY
    else:
        errors.append("Date is required")
        confidence -= MISSING_DATE_PENALTY

    # Amount
    amount = numeric_amount(record.amount)
    if amount is None or amount <= 0:
        errors.append("Amount must be a positive number")
        confidence -= INVALID_AMOUNT_PENALTY
    elif amount > cfg.amount_ceiling:
        errors.append(f"Amount suspiciously high (>{cfg.amount_ceiling:,.0f})")
        confidence -= HIGH_AMOUNT_PENALTY
    elif amount < cfg.amount_floor:
        errors.append(f"Amount suspiciously low (<{cfg.amount_floor:,.0f})")
        confidence -= LOW_AMOUNT_PENALTY

    # Vendor
    if not record.vendor or len(record.vendor.strip()) < 2:
        errors.append("Vendor name too short or missing")
        confidence -= VENDOR_PENALTY

    # Category only lowers confidence
    if record.category and record.category.lower() not in cfg.categories:
        warnings.append(f"Unknown category '{record.category}'")
        confidence -= CATEGORY_PENALTY

    return ExtractedDataCheck(
        is_valid=not errors,
        errors=errors,
        warnings=warnings,
        confidence=max(0.0, round(confidence, 4)),
    )


def get_confidence_threshold(amount: float, settings: IngestSettings | None = None) -> float:
    """Minimum confidence for automatic acceptance, banded by amount."""
    cfg = settings or ingest_settings
    if amount > cfg.high_value_amount:
        return cfg.high_value_threshold
    if amount > cfg.mid_value_amount:
        return cfg.mid_value_threshold
    if amount > cfg.low_value_amount:
        return cfg.low_value_threshold
    return cfg.base_threshold


def needs_review(
    record: ExtractedRecord,
    extraction_confidence: float,
    *,
    today: date | None = None,
    settings: IngestSettings | None = None,
) -> bool:
    return decide(record, extraction_confidence, today=today, settings=settings).needs_review


def decide(
    record: ExtractedRecord,
    extraction_confidence: float | None = None,
    *,
    today: date | None = None,
    settings: IngestSettings | None = None,
) -> ConfidenceDecision:
    """Run the gate for *record*.

    A record needs review when any of these hold:
      - business-rule validation failed,
      - the backend's own confidence is below the amount threshold,
      - the validation confidence is below the amount threshold.
    """
    if extraction_confidence is None:
        extraction_confidence = record.confidence
    check = validate_extracted_data(record, today=today, settings=settings)
    threshold = get_confidence_threshold(numeric_amount(record.amount) or 0.0, settings)

    review = (
        not check.is_valid
        or extraction_confidence < threshold
        or check.confidence < threshold
    )
    if review:
        logger.debug(
            "Record from %s needs review (extraction=%.2f, rules=%.2f, threshold=%.2f).",
            record.vendor,
            extraction_confidence,
            check.confidence,
            threshold,
        )
    return ConfidenceDecision(
        is_valid=check.is_valid,
        errors=tuple(check.errors),
        effective_confidence=min(extraction_confidence, check.confidence),
        threshold=threshold,
        needs_review=review,
    )
