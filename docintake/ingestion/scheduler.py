"""
Batch scheduler – drives submitted items through

    admission → validation → duplicate/cost pre-check → extraction → confidence gate

with bounded concurrency, retry/backoff and progress reporting.

Scheduling model
----------------
Items are split into windows of at most ``concurrent_limit``. Windows run
strictly one after another, with ``rate_limit_delay`` seconds of pacing
between them; the items inside a window run concurrently. Async extractors
run as tasks on the event loop, sync extractors in worker threads.

Per-item state machine::

    PENDING → ADMITTED → VALIDATED → SUBMITTED → SUCCEEDED → GATED
                                         ↑  ↓
                                      RETRYING → … → FAILED

Admission, validation and pre-check rejections go straight to FAILED and
are counted as skipped. No per-item error escapes ``process_batch``; the
report always has exactly one result per input item, in input order.

Cancellation is cooperative: ``cancel_event`` is checked between windows
only. Tasks already dispatched in a window always settle, and every
undispatched item is reported as skipped.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
import time
from typing import Any, Awaitable, Callable, Sequence, Union

from pydantic import BaseModel

from docintake.ingestion.confidence import decide
from docintake.ingestion.config import IngestSettings, ingest_settings
from docintake.ingestion.costs import estimate_processing_cost, should_process
from docintake.ingestion.duplicates import DuplicateRegistry, compute_content_hash
from docintake.ingestion.errors import (
    ConfigurationError,
    ExtractionError,
    ExtractionTimeoutError,
    is_authentication_error,
)
from docintake.ingestion.rate_limiter import RateLimiter
from docintake.ingestion.schemas import (
    BatchItemResult,
    BatchReport,
    ConfidenceDecision,
    ExtractedRecord,
    ItemState,
    RateLimitResult,
    SubmittedItem,
    ValidationOutcome,
)
from docintake.ingestion.validation import ContentValidator

logger = logging.getLogger(__name__)

ExtractFn = Callable[[SubmittedItem], Union[Awaitable[Any], Any]]
ProgressFn = Callable[[int, int, str], None]
SleepFn = Callable[[float], Awaitable[None]]

CANCELLED_REASON = "Batch cancelled"


class SchedulerConfig(BaseModel):
    """Knobs of one scheduler instance. Unset fields come from ``IngestSettings``."""

    concurrent_limit: int = 5
    rate_limit_delay: float = 1.0
    max_retries: int = 3
    retry_base_delay: float = 1.0
    max_backoff: float = 30.0
    extraction_timeout: float | None = 60.0
    admission_action: str = "process"
    strict_admission: bool = False
    model_tier: str = "gpt-4o-mini"
    avg_tokens_per_item: int = 1000

    @classmethod
    def from_settings(cls, settings: IngestSettings | None = None, **overrides: Any) -> SchedulerConfig:
        cfg = settings or ingest_settings
        values = {name: getattr(cfg, name) for name in cls.model_fields if hasattr(cfg, name)}
        values.update({k: v for k, v in overrides.items() if v is not None})
        return cls(**values)

    def check(self) -> None:
        """Raise ``ConfigurationError`` for values the scheduler cannot run with."""
        if self.concurrent_limit < 1:
            raise ConfigurationError(f"concurrent_limit must be >= 1, got {self.concurrent_limit}")
        if self.max_retries < 1:
            raise ConfigurationError(f"max_retries must be >= 1, got {self.max_retries}")
        for name in ("rate_limit_delay", "retry_base_delay", "max_backoff"):
            if getattr(self, name) < 0:
                raise ConfigurationError(f"{name} must not be negative")
        if self.extraction_timeout is not None and self.extraction_timeout <= 0:
            raise ConfigurationError("extraction_timeout must be positive or None")


class _ItemRun:
    """Mutable bookkeeping for one item while its pipeline runs."""

    def __init__(self, index: int, item: SubmittedItem) -> None:
        self.index = index
        self.item = item
        self.history: list[ItemState] = [ItemState.PENDING]
        self.attempts = 0
        self.validation: ValidationOutcome | None = None

    @property
    def state(self) -> ItemState:
        return self.history[-1]

    def advance(self, state: ItemState) -> None:
        self.history.append(state)

    def skip(self, reason: str, *, cost_saved: float = 0.0) -> BatchItemResult:
        self.advance(ItemState.FAILED)
        logger.info("Skipping %s: %s", self.item.label, reason)
        return self._result(skipped=True, skip_reason=reason, last_error=reason, cost_saved=cost_saved)

    def fail(self, error: str) -> BatchItemResult:
        self.advance(ItemState.FAILED)
        return self._result(last_error=error)

    def succeed(self, record: ExtractedRecord, decision: ConfidenceDecision) -> BatchItemResult:
        self.advance(ItemState.GATED)
        return self._result(success=True, record=record, decision=decision)

    def _result(self, **fields: Any) -> BatchItemResult:
        return BatchItemResult(
            index=self.index,
            source_ref=self.item.ref,
            attempts=self.attempts,
            state=self.state,
            history=tuple(self.history),
            validation=self.validation,
            **fields,
        )


def _describe(exc: BaseException | None) -> str:
    if exc is None:
        return "Unknown error"
    return f"{type(exc).__name__}: {exc}"


class BatchScheduler:
    """Runs batches of ``SubmittedItem`` through the intake pipeline."""

    def __init__(
        self,
        config: SchedulerConfig | None = None,
        *,
        rate_limiter: RateLimiter | None = None,
        validator: ContentValidator | None = None,
        registry: DuplicateRegistry | None = None,
        settings: IngestSettings | None = None,
        sleep: SleepFn = asyncio.sleep,
    ) -> None:
        self.settings = settings or ingest_settings
        self.config = config or SchedulerConfig.from_settings(self.settings)
        self.config.check()
        self.rate_limiter = rate_limiter or RateLimiter(self.settings.rate_limits)
        self.validator = validator or ContentValidator(self.settings)
        self.registry = registry if registry is not None else DuplicateRegistry()
        self._sleep = sleep

    def backoff_delay(self, attempt: int) -> float:
        """Seconds to wait after failed attempt number *attempt* (0-based)."""
        return min(self.config.retry_base_delay * (2**attempt), self.config.max_backoff)

    async def process_batch(
        self,
        items: Sequence[SubmittedItem],
        extract: ExtractFn,
        on_progress: ProgressFn | None = None,
        *,
        subject_id: str = "anonymous",
        cancel_event: asyncio.Event | None = None,
    ) -> BatchReport:
        """Process *items* and return one frozen ``BatchReport``.

        Args:
            items: Items in submission order.
            extract: ``extract(item) -> ExtractedRecord`` (sync or async).
            on_progress: Called as ``(index, total, label)`` when each item is
                dispatched. Advisory only; exceptions from it are logged.
            subject_id: Key for admission control.
            cancel_event: When set, no further windows are started.
        """
        items = list(items)
        total = len(items)
        limit = self.config.concurrent_limit
        results: list[BatchItemResult | None] = [None] * total
        in_flight: dict[str, asyncio.Event] = {}
        cancelled = False
        t0 = time.monotonic()

        logger.info(
            "═══ Batch: %d items, %d per window, subject=%s ═══", total, limit, subject_id
        )

        for start in range(0, total, limit):
            if cancel_event is not None and cancel_event.is_set():
                cancelled = True
                logger.warning("Batch cancelled before item %d of %d.", start + 1, total)
                for index in range(start, total):
                    run = _ItemRun(index, items[index])
                    results[index] = run.skip(CANCELLED_REASON)
                break

            window = items[start:start + limit]
            tasks = []
            for offset, item in enumerate(window):
                index = start + offset
                self._notify(on_progress, index, total, item.label)
                tasks.append(asyncio.create_task(
                    self._run_item(index, item, extract, subject_id, in_flight)
                ))

            settled = await asyncio.gather(*tasks, return_exceptions=True)
            for offset, outcome in enumerate(settled):
                index = start + offset
                if isinstance(outcome, BaseException):
                    logger.error("Item %d crashed the pipeline: %s", index, _describe(outcome))
                    results[index] = _ItemRun(index, items[index]).fail(_describe(outcome))
                else:
                    results[index] = outcome

            if start + limit < total and self.config.rate_limit_delay > 0:
                await self._sleep(self.config.rate_limit_delay)

        final = [r for r in results if r is not None]
        submitted = sum(1 for r in final if ItemState.SUBMITTED in r.history)
        report = BatchReport.from_items(
            final,
            estimated_cost=estimate_processing_cost(
                submitted, self.config.avg_tokens_per_item, self.config.model_tier
            ),
            cancelled=cancelled,
            elapsed_seconds=time.monotonic() - t0,
        )
        logger.info(
            "Batch complete: %d ok (%d need review), %d failed, %d skipped in %.1fs.",
            report.successful,
            report.needs_review,
            report.failed,
            report.skipped,
            report.elapsed_seconds,
        )
        return report

    # ── Per-item pipeline ────────────────────────────────────────────────

    async def _run_item(
        self,
        index: int,
        item: SubmittedItem,
        extract: ExtractFn,
        subject_id: str,
        in_flight: dict[str, asyncio.Event],
    ) -> BatchItemResult:
        run = _ItemRun(index, item)

        admission = self._admit(subject_id)
        if not admission.allowed:
            return run.skip(
                f"Rate limit exceeded. Try again in {admission.retry_after_seconds or 0} seconds"
            )
        run.advance(ItemState.ADMITTED)

        run.validation = self.validator.validate(item)
        if not run.validation.is_valid:
            return run.skip(f"Validation failed: {run.validation.summary()}")
        run.advance(ItemState.VALIDATED)

        file_hash = compute_content_hash(item.content)
        while file_hash in in_flight:
            # an identical item is being extracted; its outcome decides this one
            await in_flight[file_hash].wait()

        # No await between the duplicate check and the claim.
        decision = should_process(item, self.registry.check(item), self.settings)
        if not decision.process:
            return run.skip(decision.reason, cost_saved=decision.cost_saved or 0.0)
        claim = in_flight[file_hash] = asyncio.Event()

        try:
            record, last_error = await self._extract_with_retries(run, extract)
            if record is None:
                return run.fail(_describe(last_error))

            run.advance(ItemState.SUCCEEDED)
            gate = decide(record, record.confidence, settings=self.settings)
            self.registry.register(item, record)
            logger.debug(
                "%s extracted in %d attempt(s); needs_review=%s",
                item.label,
                run.attempts,
                gate.needs_review,
            )
            return run.succeed(record, gate)
        finally:
            del in_flight[file_hash]
            claim.set()

    async def _extract_with_retries(
        self,
        run: _ItemRun,
        extract: ExtractFn,
    ) -> tuple[ExtractedRecord | None, BaseException | None]:
        item = run.item
        last_error: BaseException | None = None
        max_attempts = self.config.max_retries

        for attempt in range(max_attempts):
            run.advance(ItemState.SUBMITTED)
            run.attempts = attempt + 1
            try:
                return await self._extract_once(extract, item), None
            except Exception as exc:
                last_error = exc
                if is_authentication_error(exc):
                    logger.error("Authentication failed for %s – not retrying.", item.label)
                    break
                if attempt + 1 >= max_attempts:
                    logger.warning(
                        "Extraction failed for %s after %d attempts: %s",
                        item.label,
                        run.attempts,
                        exc,
                    )
                    break
                delay = self.backoff_delay(attempt)
                logger.warning(
                    "Extraction failed for %s (attempt %d/%d): %s – retrying in %.1fs",
                    item.label,
                    run.attempts,
                    max_attempts,
                    exc,
                    delay,
                )
                run.advance(ItemState.RETRYING)
                await self._sleep(delay)
        return None, last_error

    def _admit(self, subject_id: str) -> RateLimitResult:
        action = self.config.admission_action
        if self.config.strict_admission:
            return self.rate_limiter.acquire(subject_id, action)
        result = self.rate_limiter.check_limit(subject_id, action)
        if result.allowed:
            self.rate_limiter.record_request(subject_id, action)
        return result

    async def _extract_once(self, extract: ExtractFn, item: SubmittedItem) -> ExtractedRecord:
        timeout = self.config.extraction_timeout
        try:
            result = await asyncio.wait_for(_invoke(extract, item), timeout=timeout)
        except asyncio.TimeoutError as exc:
            raise ExtractionTimeoutError(
                f"Extraction of {item.label} exceeded {timeout:.1f}s"
            ) from exc

        if isinstance(result, ExtractedRecord):
            return result
        if isinstance(result, dict):
            return ExtractedRecord.model_validate(result)
        raise ExtractionError(f"Extractor returned {type(result).__name__}, expected a record")

    @staticmethod
    def _notify(on_progress: ProgressFn | None, index: int, total: int, label: str) -> None:
        if on_progress is None:
            return
        try:
            on_progress(index, total, label)
        except Exception as exc:
            logger.warning("Progress callback raised %s; ignoring.", _describe(exc))


def _is_async_callable(fn: Any) -> bool:
    return inspect.iscoroutinefunction(fn) or inspect.iscoroutinefunction(
        getattr(fn, "__call__", None)
    )


async def _invoke(extract: ExtractFn, item: SubmittedItem) -> Any:
    if _is_async_callable(extract):
        return await extract(item)
    result = await asyncio.to_thread(extract, item)
    if inspect.isawaitable(result):
        result = await result
    return result
