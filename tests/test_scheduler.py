"""
Tests for the batch scheduler: ordering, windows, retries, gates and skips.

Run: python -m pytest tests/test_scheduler.py -v
"""

from __future__ import annotations

import asyncio
import threading
from unittest.mock import AsyncMock, Mock

import pytest

from conftest import make_item, make_record


def _scheduler(sleep, limiter=None, **config):
    from docintake.ingestion.rate_limiter import RateLimiter
    from docintake.ingestion.scheduler import BatchScheduler, SchedulerConfig

    return BatchScheduler(
        SchedulerConfig(**config),
        rate_limiter=limiter if limiter is not None else RateLimiter({}),
        sleep=sleep,
    )


def _flaky(failures: int, exc_factory=lambda: RuntimeError("Backend API error: 503")):
    """Extractor that fails *failures* times, then succeeds."""
    calls = {"n": 0}

    async def extract(item):
        calls["n"] += 1
        if calls["n"] <= failures:
            raise exc_factory()
        return make_record()

    extract.calls = calls
    return extract


# ═══════════════════════════════════════════════════════════════════════════
# Ordering & windows
# ═══════════════════════════════════════════════════════════════════════════

class TestWindows:
    @pytest.mark.asyncio
    async def test_results_follow_input_order(self, recording_sleep):
        items = [make_item(i) for i in range(7)]
        delays = {item.name: (7 - i) * 0.01 for i, item in enumerate(items)}

        async def extract(item):
            await asyncio.sleep(delays[item.name])
            return make_record(vendor=item.name)

        report = await _scheduler(recording_sleep, concurrent_limit=3).process_batch(items, extract)

        assert report.total == 7
        assert report.successful == 7
        assert [r.source_ref for r in report.items] == [i.ref for i in items]
        assert [r.record.vendor for r in report.items] == [i.name for i in items]
        assert [r.index for r in report.items] == list(range(7))

    @pytest.mark.asyncio
    async def test_window_bounds_concurrency_and_pacing(self, recording_sleep):
        active = {"now": 0, "max": 0}

        async def extract(item):
            active["now"] += 1
            active["max"] = max(active["max"], active["now"])
            await asyncio.sleep(0.01)
            active["now"] -= 1
            return make_record()

        items = [make_item(i) for i in range(5)]
        report = await _scheduler(
            recording_sleep, concurrent_limit=2, rate_limit_delay=0.5
        ).process_batch(items, extract)

        assert report.successful == 5
        assert active["max"] == 2
        assert recording_sleep.delays == [0.5, 0.5]  # between three windows, not after the last

    @pytest.mark.asyncio
    async def test_empty_batch(self, recording_sleep):
        extract = AsyncMock()
        report = await _scheduler(recording_sleep).process_batch([], extract)
        assert report.total == 0
        assert report.items == ()
        extract.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_sync_extractor_runs_in_worker_thread(self, recording_sleep):
        main_thread = threading.get_ident()
        seen = []

        def extract(item):
            seen.append(threading.get_ident())
            return make_record()

        report = await _scheduler(recording_sleep).process_batch([make_item(1), make_item(2)], extract)
        assert report.successful == 2
        assert seen and all(ident != main_thread for ident in seen)

    @pytest.mark.asyncio
    async def test_dict_result_is_accepted(self, recording_sleep):
        async def extract(item):
            return {"date": make_record().date, "amount": 42.0, "vendor": "Staples", "confidence": 0.9}

        report = await _scheduler(recording_sleep).process_batch([make_item()], extract)
        assert report.successful == 1
        assert report.items[0].record.vendor == "Staples"

    @pytest.mark.asyncio
    async def test_wrong_result_type_fails(self, recording_sleep):
        async def extract(item):
            return "not a record"

        report = await _scheduler(recording_sleep, max_retries=1).process_batch([make_item()], extract)
        assert report.failed == 1
        assert "ExtractionError" in report.items[0].last_error


# ═══════════════════════════════════════════════════════════════════════════
# Retries & failures
# ═══════════════════════════════════════════════════════════════════════════

class TestRetries:
    @pytest.mark.asyncio
    async def test_transient_failures_are_retried_with_backoff(self, recording_sleep):
        from docintake.ingestion.schemas import ItemState

        extract = _flaky(2)
        report = await _scheduler(recording_sleep).process_batch([make_item()], extract)

        result = report.items[0]
        assert result.success
        assert result.attempts == 3
        assert recording_sleep.delays == [1.0, 2.0]
        assert result.history.count(ItemState.RETRYING) == 2
        assert result.state == ItemState.GATED

    @pytest.mark.asyncio
    async def test_exhausted_retries_fail_item(self, recording_sleep):
        from docintake.ingestion.schemas import ItemState

        extract = _flaky(10)
        report = await _scheduler(recording_sleep).process_batch([make_item()], extract)

        result = report.items[0]
        assert not result.success and not result.skipped
        assert result.attempts == 3
        assert "503" in result.last_error
        assert result.state == ItemState.FAILED
        assert recording_sleep.delays == [1.0, 2.0]
        assert report.failed == 1

    @pytest.mark.asyncio
    async def test_authentication_error_is_not_retried(self, recording_sleep):
        from docintake.ingestion.errors import AuthenticationError

        extract = _flaky(10, lambda: AuthenticationError("401 Unauthorized"))
        report = await _scheduler(recording_sleep).process_batch([make_item()], extract)

        assert report.items[0].attempts == 1
        assert recording_sleep.delays == []
        assert extract.calls["n"] == 1

    @pytest.mark.asyncio
    async def test_foreign_unauthorized_error_is_not_retried(self, recording_sleep):
        extract = _flaky(10, lambda: RuntimeError("HTTP 401: Unauthorized"))
        report = await _scheduler(recording_sleep).process_batch([make_item()], extract)
        assert report.items[0].attempts == 1

    @pytest.mark.asyncio
    async def test_timeout_on_401_named_file_is_retried(self, recording_sleep):
        calls = {"n": 0}

        async def extract(item):
            calls["n"] += 1
            if calls["n"] <= 2:
                await asyncio.sleep(5)
            return make_record()

        report = await _scheduler(recording_sleep, extraction_timeout=0.05).process_batch(
            [make_item(1, name="invoice_2401.png")], extract
        )

        result = report.items[0]
        assert result.success
        assert result.attempts == 3
        assert recording_sleep.delays == [1.0, 2.0]

    @pytest.mark.asyncio
    async def test_unparseable_reply_mentioning_401_is_retried(self, recording_sleep):
        from docintake.ingestion.errors import ExtractionError

        extract = _flaky(1, lambda: ExtractionError("Model reply is not JSON: 'Total: $401.50'"))
        report = await _scheduler(recording_sleep).process_batch([make_item()], extract)

        assert report.items[0].success
        assert report.items[0].attempts == 2

    @pytest.mark.asyncio
    async def test_backoff_is_capped(self, recording_sleep):
        scheduler = _scheduler(recording_sleep, retry_base_delay=1.0, max_backoff=5.0)
        assert [scheduler.backoff_delay(a) for a in range(5)] == [1.0, 2.0, 4.0, 5.0, 5.0]

    @pytest.mark.asyncio
    async def test_one_failure_does_not_affect_others(self, recording_sleep):
        items = [make_item(i) for i in range(4)]

        async def extract(item):
            if item.name == items[2].name:
                raise RuntimeError("corrupted upload")
            return make_record()

        report = await _scheduler(recording_sleep, max_retries=1).process_batch(items, extract)
        assert report.successful == 3
        assert report.failed == 1
        assert not report.items[2].success
        assert "corrupted upload" in report.items[2].last_error

    @pytest.mark.asyncio
    async def test_timeout_counts_as_failed_attempt(self, recording_sleep):
        async def extract(item):
            await asyncio.sleep(5)

        report = await _scheduler(
            recording_sleep, max_retries=2, extraction_timeout=0.05
        ).process_batch([make_item()], extract)

        result = report.items[0]
        assert result.attempts == 2
        assert "ExtractionTimeoutError" in result.last_error

    @pytest.mark.asyncio
    async def test_pipeline_crash_becomes_failed_result(self, recording_sleep):
        from docintake.ingestion.rate_limiter import RateLimiter
        from docintake.ingestion.scheduler import BatchScheduler, SchedulerConfig

        validator = Mock()
        validator.validate.side_effect = RuntimeError("validator exploded")
        scheduler = BatchScheduler(
            SchedulerConfig(), rate_limiter=RateLimiter({}), validator=validator, sleep=recording_sleep
        )
        report = await scheduler.process_batch([make_item(1), make_item(2)], AsyncMock())

        assert report.total == 2
        assert report.failed == 2
        assert all("validator exploded" in r.last_error for r in report.items)


# ═══════════════════════════════════════════════════════════════════════════
# Admission, validation and pre-check skips
# ═══════════════════════════════════════════════════════════════════════════

class TestSkips:
    def _limited(self, clock, requests=2):
        from docintake.ingestion.rate_limiter import RateLimiter
        from docintake.ingestion.schemas import RateLimitQuota

        return RateLimiter({"process": RateLimitQuota(requests=requests, window_ms=60_000)}, clock=clock)

    @pytest.mark.asyncio
    async def test_admission_denial_is_skipped(self, recording_sleep, clock):
        limiter = self._limited(clock)
        extract = AsyncMock(return_value=make_record())
        items = [make_item(i) for i in range(4)]

        report = await _scheduler(recording_sleep, limiter).process_batch(items, extract, subject_id="user-1")

        assert report.successful == 2
        assert report.skipped == 2
        assert report.failed == 0
        for result in report.items[2:]:
            assert result.skipped
            assert result.skip_reason == "Rate limit exceeded. Try again in 60 seconds"
            assert result.attempts == 0
        assert extract.await_count == 2

    @pytest.mark.asyncio
    async def test_strict_admission_records_atomically(self, recording_sleep, clock):
        limiter = self._limited(clock)
        items = [make_item(i) for i in range(4)]

        report = await _scheduler(
            recording_sleep, limiter, strict_admission=True
        ).process_batch(items, AsyncMock(return_value=make_record()), subject_id="user-1")

        assert report.skipped == 2
        assert len(limiter.request_records("user-1", "process")) == 2

    @pytest.mark.asyncio
    async def test_invalid_item_skipped_without_extraction(self, recording_sleep):
        from docintake.ingestion.schemas import ValidationErrorCode

        bad = make_item(content=b"PK\x03\x04" + b"\x00" * 200, mime_type="application/zip", name="a.zip")
        extract = AsyncMock(return_value=make_record())

        report = await _scheduler(recording_sleep).process_batch([bad, make_item(1)], extract)

        result = report.items[0]
        assert result.skipped
        assert result.skip_reason.startswith("Validation failed:")
        assert ValidationErrorCode.INVALID_TYPE in result.validation.error_codes
        assert report.successful == 1
        extract.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_exact_duplicate_in_batch_skipped(self, recording_sleep):
        extract = AsyncMock(return_value=make_record())
        items = [make_item(1), make_item(1, name="copy.png")]

        report = await _scheduler(recording_sleep).process_batch(items, extract)

        assert report.items[0].success
        dup = report.items[1]
        assert dup.skipped
        assert dup.skip_reason == "Exact duplicate detected"
        assert dup.cost_saved > 0
        assert report.cost_saved == dup.cost_saved
        extract.assert_awaited_once()

    @pytest.mark.asyncio
    @pytest.mark.parametrize("concurrent_limit", [1, 5])
    async def test_copy_of_failed_item_is_still_extracted(self, recording_sleep, concurrent_limit):
        extract = _flaky(1)
        items = [make_item(1), make_item(1, name="copy.png")]

        report = await _scheduler(
            recording_sleep, max_retries=1, concurrent_limit=concurrent_limit
        ).process_batch(items, extract)

        assert not report.items[0].success
        assert report.items[1].success
        assert report.skipped == 0
        assert report.cost_saved == 0
        assert extract.calls["n"] == 2

    @pytest.mark.asyncio
    async def test_registry_remembers_previous_batches(self, recording_sleep):
        scheduler = _scheduler(recording_sleep)
        extract = AsyncMock(return_value=make_record())

        first = await scheduler.process_batch([make_item(5)], extract)
        second = await scheduler.process_batch([make_item(5)], extract)

        assert first.successful == 1
        assert second.skipped == 1
        assert len(scheduler.registry.documents()) == 1

    @pytest.mark.asyncio
    async def test_text_items_are_not_sent_for_extraction(self, recording_sleep):
        text = make_item(content=b"date,amount\n2024-01-01,9.99\n" * 10, mime_type="text/csv", name="a.csv")
        extract = AsyncMock(return_value=make_record())

        report = await _scheduler(recording_sleep).process_batch([text], extract)

        assert report.skipped == 1
        assert report.items[0].skip_reason == "Unsupported file type"
        extract.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_estimated_cost_counts_only_extracted_items(self, recording_sleep):
        from docintake.ingestion.costs import estimate_processing_cost

        items = [make_item(1), make_item(2), make_item(1, name="again.png")]
        report = await _scheduler(recording_sleep).process_batch(items, AsyncMock(return_value=make_record()))

        assert report.estimated_cost == pytest.approx(estimate_processing_cost(2))


# ═══════════════════════════════════════════════════════════════════════════
# Confidence gate, progress, cancellation, configuration
# ═══════════════════════════════════════════════════════════════════════════

class TestGateAndControl:
    @pytest.mark.asyncio
    async def test_high_value_low_confidence_needs_review(self, recording_sleep):
        extract = AsyncMock(return_value=make_record(amount=150_000, confidence=0.80))
        report = await _scheduler(recording_sleep).process_batch([make_item()], extract)

        result = report.items[0]
        assert result.success
        assert result.needs_review
        assert result.decision.threshold == 0.90
        assert report.needs_review == 1

    @pytest.mark.asyncio
    async def test_confident_record_accepted(self, recording_sleep):
        report = await _scheduler(recording_sleep).process_batch(
            [make_item()], AsyncMock(return_value=make_record(confidence=0.9))
        )
        assert not report.items[0].needs_review
        assert report.needs_review == 0

    @pytest.mark.asyncio
    async def test_progress_reported_per_dispatch(self, recording_sleep):
        calls = []
        items = [make_item(i) for i in range(3)]

        await _scheduler(recording_sleep, concurrent_limit=2).process_batch(
            items, AsyncMock(return_value=make_record()), lambda *args: calls.append(args)
        )

        assert calls == [(0, 3, "receipt_0.png"), (1, 3, "receipt_1.png"), (2, 3, "receipt_2.png")]

    @pytest.mark.asyncio
    async def test_failing_progress_callback_is_ignored(self, recording_sleep):
        def on_progress(index, total, label):
            raise ValueError("ui went away")

        report = await _scheduler(recording_sleep).process_batch(
            [make_item(1), make_item(2)], AsyncMock(return_value=make_record()), on_progress
        )
        assert report.successful == 2

    @pytest.mark.asyncio
    async def test_cancel_between_windows(self, recording_sleep):
        cancel = asyncio.Event()
        items = [make_item(i) for i in range(5)]

        async def extract(item):
            cancel.set()
            return make_record()

        report = await _scheduler(recording_sleep, concurrent_limit=2).process_batch(
            items, extract, cancel_event=cancel
        )

        assert report.cancelled
        assert report.successful == 2  # the dispatched window settles
        assert report.skipped == 3
        assert report.total == 5
        assert all(r.skip_reason == "Batch cancelled" for r in report.items[2:])

    @pytest.mark.asyncio
    async def test_cancel_before_start(self, recording_sleep):
        cancel = asyncio.Event()
        cancel.set()
        extract = AsyncMock()

        report = await _scheduler(recording_sleep).process_batch([make_item()], extract, cancel_event=cancel)

        assert report.cancelled
        assert report.skipped == 1
        extract.assert_not_awaited()

    @pytest.mark.parametrize(
        "overrides",
        [
            {"concurrent_limit": 0},
            {"max_retries": 0},
            {"rate_limit_delay": -1},
            {"extraction_timeout": 0},
        ],
    )
    def test_invalid_configuration_rejected(self, overrides):
        from docintake.ingestion.errors import ConfigurationError
        from docintake.ingestion.scheduler import BatchScheduler, SchedulerConfig

        with pytest.raises(ConfigurationError):
            BatchScheduler(SchedulerConfig(**overrides))

    def test_config_from_settings(self):
        from docintake.ingestion.config import IngestSettings
        from docintake.ingestion.scheduler import SchedulerConfig

        config = SchedulerConfig.from_settings(IngestSettings(concurrent_limit=3), max_retries=5)
        assert config.concurrent_limit == 3
        assert config.max_retries == 5
        assert config.extraction_timeout == 60.0
