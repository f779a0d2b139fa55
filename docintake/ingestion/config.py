"""
Intake pipeline configuration.

All values can be overridden via environment variables prefixed with
``INGEST_`` (e.g. ``INGEST_CONCURRENT_LIMIT=3``). Nested tables such as
``rate_limits`` are read as JSON.
"""

from __future__ import annotations

from pydantic import Field
from pydantic_settings import BaseSettings

from docintake.ingestion.schemas import RateLimitQuota

_MB = 1024 * 1024


def _default_rate_limits() -> dict[str, RateLimitQuota]:
    return {
        "upload": RateLimitQuota(requests=10, window_ms=60_000),
        "process": RateLimitQuota(requests=20, window_ms=60_000),
        "download": RateLimitQuota(requests=50, window_ms=60_000),
        "api": RateLimitQuota(requests=100, window_ms=60_000),
    }


class IngestSettings(BaseSettings):
    """Tuneable knobs for every pipeline stage."""

    # ── Scheduler ────────────────────────────────────────────────────────
    concurrent_limit: int = 5  # items dispatched together per window
    rate_limit_delay: float = 1.0  # seconds between windows
    max_retries: int = 3  # total extraction attempts per item
    retry_base_delay: float = 1.0  # backoff = base * 2**attempt
    max_backoff: float = 30.0
    extraction_timeout: float = 60.0  # per attempt, seconds
    admission_action: str = "process"
    strict_admission: bool = False  # atomic check-and-record

    # ── Admission control ────────────────────────────────────────────────
    rate_limits: dict[str, RateLimitQuota] = Field(default_factory=_default_rate_limits)

    # ── Content validation ───────────────────────────────────────────────
    allowed_types: list[str] = [
        "image/jpeg",
        "image/jpg",
        "image/png",
        "image/webp",
        "application/pdf",
        "text/plain",
        "text/csv",
    ]
    max_sizes: dict[str, int] = {
        "image/jpeg": 10 * _MB,
        "image/jpg": 10 * _MB,
        "image/png": 10 * _MB,
        "image/webp": 10 * _MB,
        "application/pdf": 25 * _MB,
        "text/plain": 5 * _MB,
        "text/csv": 5 * _MB,
    }
    default_max_size: int = 5 * _MB
    max_filename_length: int = 255
    max_image_dimension: int = 10_000
    max_image_pixels: int = 100_000_000  # 100 MP
    signature_bytes: int = 16
    scan_bytes: int = 64 * 1024
    min_plausible_size: int = 100  # images / PDFs smaller than this are odd
    max_plausible_size: int = 100 * _MB
    malware_threshold: float = 0.5

    # ── Confidence gate ──────────────────────────────────────────────────
    amount_ceiling: float = 1_000_000  # "suspiciously high"
    amount_floor: float = 1.0  # "suspiciously low"
    max_record_age_years: int = 2
    high_value_amount: float = 100_000
    mid_value_amount: float = 50_000
    low_value_amount: float = 10_000
    high_value_threshold: float = 0.90
    mid_value_threshold: float = 0.85
    low_value_threshold: float = 0.75
    base_threshold: float = 0.65
    categories: list[str] = [
        "food",
        "transport",
        "utilities",
        "office",
        "inventory",
        "equipment",
        "marketing",
        "professional",
        "other",
    ]

    # ── Cost pre-check ───────────────────────────────────────────────────
    model_tier: str = "gpt-4o-mini"
    avg_tokens_per_item: int = 1000
    max_extraction_size: int = 10 * _MB
    duplicate_similarity_threshold: float = 0.85

    model_config = {
        "env_prefix": "INGEST_",
        "env_file": ".env",
        "env_file_encoding": "utf-8",
        "extra": "ignore",
    }


ingest_settings = IngestSettings()
