"""Extraction cost estimates and the pre-extraction "worth processing?" check."""

from __future__ import annotations

import logging

from docintake.ingestion.config import IngestSettings, ingest_settings
from docintake.ingestion.schemas import (
    DuplicateCheckResult,
    DuplicateMatch,
    ProcessingDecision,
    SubmittedItem,
)

logger = logging.getLogger(__name__)

DEFAULT_MODEL_TIER = "gpt-4o-mini"

# Cost per 1K tokens
TOKEN_COSTS: dict[str, dict[str, float]] = {
    "gpt-4o": {"input": 0.005, "output": 0.015},
    "gpt-4o-mini": {"input": 0.00015, "output": 0.0006},
}

EXTRACTABLE_TYPES = ("application/pdf",)  # plus every image/* type


def _costs_for(model_tier: str) -> dict[str, float]:
    return TOKEN_COSTS.get(model_tier, TOKEN_COSTS[DEFAULT_MODEL_TIER])


def estimate_processing_cost(
    item_count: int,
    avg_tokens_per_item: int = 1000,
    model_tier: str = DEFAULT_MODEL_TIER,
) -> float:
    """Input-token cost of extracting *item_count* documents."""
    total_tokens = item_count * avg_tokens_per_item
    return (total_tokens / 1000) * _costs_for(model_tier)["input"]


def usage_cost(input_tokens: int, output_tokens: int, model_tier: str = DEFAULT_MODEL_TIER) -> float:
    """Actual cost of one call from the token usage the backend reported."""
    costs = _costs_for(model_tier)
    return (input_tokens / 1000) * costs["input"] + (output_tokens / 1000) * costs["output"]


def should_process(
    item: SubmittedItem,
    duplicate: DuplicateCheckResult,
    settings: IngestSettings | None = None,
) -> ProcessingDecision:
    """Decide before extraction whether *item* is worth sending at all."""
    cfg = settings or ingest_settings

    if duplicate.is_duplicate and duplicate.match_type == DuplicateMatch.EXACT:
        return ProcessingDecision(
            process=False,
            reason="Exact duplicate detected",
            cost_saved=estimate_processing_cost(1, cfg.avg_tokens_per_item, cfg.model_tier),
        )

    if item.size > cfg.max_extraction_size:
        return ProcessingDecision(
            process=False,
            reason=f"File too large (>{cfg.max_extraction_size // (1024 * 1024)}MB)",
        )

    if not item.is_image and item.mime_type not in EXTRACTABLE_TYPES:
        return ProcessingDecision(process=False, reason="Unsupported file type")

    return ProcessingDecision(process=True, reason="Ready for processing")
