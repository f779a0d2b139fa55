"""
End-to-end intake entry points.

Wires together: file loading → ``BatchScheduler`` (admission → validation →
pre-check → extraction → confidence gate) → ``BatchReport``.

Designed for:
- Incremental re-ingestion (exact duplicates skipped via a shared registry).
- Batch processing of a folder of receipts.
- Configurable via ``IngestSettings``.
"""

from __future__ import annotations

import asyncio
import logging
import mimetypes
from pathlib import Path
from typing import Iterable

from docintake.config import settings
from docintake.ingestion.duplicates import DuplicateRegistry
from docintake.ingestion.rate_limiter import RateLimiter, RateLimitStore
from docintake.ingestion.scheduler import BatchScheduler, ExtractFn, ProgressFn
from docintake.ingestion.schemas import BatchReport, SubmittedItem
from docintake.services.identity import TokenProvider

logger = logging.getLogger(__name__)

_SUPPORTED_SUFFIXES = {".jpg", ".jpeg", ".png", ".webp", ".pdf", ".txt", ".csv"}

mimetypes.add_type("image/webp", ".webp")

# Module-level state
_extractor: ExtractFn | None = None
_registry = DuplicateRegistry()
_limiter_store = RateLimitStore()


def get_extractor() -> ExtractFn:
    global _extractor
    if _extractor is None:
        from docintake.services.extraction import VisionExtractor

        _extractor = VisionExtractor()
    return _extractor


def load_item(path: Path) -> SubmittedItem:
    """Read *path* into a ``SubmittedItem`` with a guessed MIME type."""
    path = Path(path)
    mime_type, _ = mimetypes.guess_type(path.name)
    content = path.read_bytes()
    return SubmittedItem(
        content=content,
        mime_type=mime_type or "application/octet-stream",
        name=path.name,
        size=len(content),
        ref=str(path),
    )


async def ingest_items(
    items: list[SubmittedItem],
    *,
    extract: ExtractFn | None = None,
    subject_id: str | None = None,
    token_provider: TokenProvider | None = None,
    on_progress: ProgressFn | None = None,
    scheduler: BatchScheduler | None = None,
) -> BatchReport:
    """Run *items* through a scheduler sharing this module's limiter and registry."""
    if subject_id is None and token_provider is not None:
        subject_id = await token_provider.get_subject_id()
    if extract is None:
        if token_provider is not None:
            from docintake.services.extraction import VisionExtractor

            extract = VisionExtractor(token_provider=token_provider)
        else:
            extract = get_extractor()
    scheduler = scheduler or BatchScheduler(
        rate_limiter=RateLimiter(store=_limiter_store),
        registry=_registry,
    )
    return await scheduler.process_batch(
        items, extract, on_progress, subject_id=subject_id or "anonymous"
    )


async def ingest_files(
    paths: Iterable[Path],
    **kwargs,
) -> BatchReport:
    """Load and process the given files. Keyword arguments as ``ingest_items``."""
    items = [load_item(p) for p in paths]
    return await ingest_items(items, **kwargs)


def ingest_folder(
    inbox_dir: Path | None = None,
    **kwargs,
) -> BatchReport:
    """Process every supported file in *inbox_dir* (blocking).

    Args:
        inbox_dir: Directory of receipts. Defaults to config.

    Returns:
        ``BatchReport`` for the folder; empty when nothing was found.
    """
    inbox_dir = Path(inbox_dir or settings.inbox_dir)
    if not inbox_dir.exists():
        logger.warning("Inbox directory does not exist: %s", inbox_dir)
        return BatchReport.from_items([])

    paths = sorted(p for p in inbox_dir.iterdir() if p.suffix.lower() in _SUPPORTED_SUFFIXES)
    if not paths:
        logger.info("No documents found in %s.", inbox_dir)
        return BatchReport.from_items([])

    logger.info("═══ Ingesting %d documents from %s ═══", len(paths), inbox_dir)
    return asyncio.run(ingest_files(paths, **kwargs))
