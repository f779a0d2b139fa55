"""
Tests for the vision extraction client (backend mocked) and the
file-level pipeline entry points.

Run: python -m pytest tests/test_extraction.py -v
"""

from __future__ import annotations

import json
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import httpx
import pytest

from conftest import make_item, make_png, make_record

_REPLY = {
    "date": "2025-03-02",
    "amount": 18.4,
    "vendor": "Blue Bottle",
    "category": "food",
    "confidence": 0.92,
    "items": [{"name": "Latte", "price": 5.2, "quantity": 2}],
}


def _response(content: str, prompt_tokens: int = 900, completion_tokens: int = 80):
    return SimpleNamespace(
        choices=[SimpleNamespace(message=SimpleNamespace(content=content))],
        usage=SimpleNamespace(prompt_tokens=prompt_tokens, completion_tokens=completion_tokens),
    )


def _client(reply=None, side_effect=None):
    client = MagicMock()
    client.chat.completions.create = AsyncMock(
        return_value=_response(reply if reply is not None else json.dumps(_REPLY)),
        side_effect=side_effect,
    )
    return client


# ═══════════════════════════════════════════════════════════════════════════
# Reply parsing
# ═══════════════════════════════════════════════════════════════════════════

class TestParseRecord:
    def test_plain_json(self):
        from docintake.services.extraction import parse_record

        record = parse_record(json.dumps(_REPLY))
        assert record.vendor == "Blue Bottle"
        assert record.amount == 18.4
        assert record.items[0].quantity == 2

    def test_fenced_json(self):
        from docintake.services.extraction import parse_record

        record = parse_record("```json\n" + json.dumps(_REPLY) + "\n```")
        assert record.date == "2025-03-02"

    @pytest.mark.parametrize("raw", ["Sorry, I can't read that.", "[1, 2]", '{"amount": {"value": 1}}'])
    def test_bad_replies_raise(self, raw):
        from docintake.ingestion.errors import ExtractionError
        from docintake.services.extraction import parse_record

        with pytest.raises(ExtractionError):
            parse_record(raw)


# ═══════════════════════════════════════════════════════════════════════════
# VisionExtractor
# ═══════════════════════════════════════════════════════════════════════════

class TestVisionExtractor:
    @pytest.mark.asyncio
    async def test_image_sent_as_data_url(self):
        from docintake.services.extraction import VisionExtractor

        client = _client()
        record = await VisionExtractor(client, model="test-vision")(make_item())

        assert record.vendor == "Blue Bottle"
        kwargs = client.chat.completions.create.await_args.kwargs
        assert kwargs["model"] == "test-vision"
        user_parts = kwargs["messages"][1]["content"]
        assert user_parts[1]["image_url"]["url"].startswith("data:image/png;base64,")
        assert kwargs["extra_headers"] is None

    @pytest.mark.asyncio
    async def test_text_sent_inline(self):
        from docintake.services.extraction import VisionExtractor

        client = _client()
        item = make_item(content=b"Blue Bottle 18.40", mime_type="text/plain", name="r.txt")
        await VisionExtractor(client).extract(item)

        user_parts = client.chat.completions.create.await_args.kwargs["messages"][1]["content"]
        assert user_parts == [{"type": "text", "text": "Document r.txt:\nBlue Bottle 18.40"}]

    @pytest.mark.asyncio
    async def test_bearer_token_forwarded(self):
        from docintake.services.extraction import VisionExtractor
        from docintake.services.identity import StaticTokenProvider

        client = _client()
        extractor = VisionExtractor(client, token_provider=StaticTokenProvider("tok-123", "user-1"))
        await extractor(make_item())

        headers = client.chat.completions.create.await_args.kwargs["extra_headers"]
        assert headers == {"Authorization": "Bearer tok-123"}

    @pytest.mark.asyncio
    async def test_missing_token_is_authentication_error(self):
        from docintake.ingestion.errors import AuthenticationError
        from docintake.services.extraction import VisionExtractor
        from docintake.services.identity import StaticTokenProvider

        client = _client()
        extractor = VisionExtractor(client, token_provider=StaticTokenProvider(None))
        with pytest.raises(AuthenticationError):
            await extractor(make_item())
        client.chat.completions.create.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_backend_errors_are_mapped(self):
        import openai

        from docintake.ingestion.errors import (
            AuthenticationError,
            ExtractionError,
            ExtractionTimeoutError,
            is_authentication_error,
        )
        from docintake.services.extraction import VisionExtractor

        request = httpx.Request("POST", "http://localhost/v1/chat/completions")

        unauthorized = openai.AuthenticationError(
            "bad key", response=httpx.Response(401, request=request), body=None
        )
        with pytest.raises(AuthenticationError) as info:
            await VisionExtractor(_client(side_effect=unauthorized))(make_item())
        assert is_authentication_error(info.value)

        with pytest.raises(ExtractionTimeoutError):
            await VisionExtractor(_client(side_effect=openai.APITimeoutError(request=request)))(make_item())

        server_error = openai.InternalServerError(
            "boom", response=httpx.Response(503, request=request), body=None
        )
        with pytest.raises(ExtractionError) as info:
            await VisionExtractor(_client(side_effect=server_error))(make_item())
        assert not is_authentication_error(info.value)

    @pytest.mark.asyncio
    async def test_extractor_plugs_into_scheduler(self, recording_sleep):
        from docintake.ingestion.rate_limiter import RateLimiter
        from docintake.ingestion.scheduler import BatchScheduler, SchedulerConfig
        from docintake.services.extraction import VisionExtractor

        client = _client(reply=json.dumps(make_record().model_dump()))
        scheduler = BatchScheduler(SchedulerConfig(), rate_limiter=RateLimiter({}), sleep=recording_sleep)

        report = await scheduler.process_batch([make_item(1), make_item(2)], VisionExtractor(client))

        assert report.successful == 2
        assert client.chat.completions.create.await_count == 2


# ═══════════════════════════════════════════════════════════════════════════
# Pipeline entry points
# ═══════════════════════════════════════════════════════════════════════════

def _quiet_scheduler(limiter=None):
    from docintake.ingestion.rate_limiter import RateLimiter
    from docintake.ingestion.scheduler import BatchScheduler, SchedulerConfig

    return BatchScheduler(
        SchedulerConfig(rate_limit_delay=0),
        rate_limiter=limiter if limiter is not None else RateLimiter({}),
    )


class TestPipeline:
    def test_load_item_guesses_type(self, tmp_path):
        from docintake.ingestion.pipeline import load_item

        path = tmp_path / "lunch.png"
        path.write_bytes(make_png(3))
        item = load_item(path)

        assert item.mime_type == "image/png"
        assert item.name == "lunch.png"
        assert item.size == path.stat().st_size
        assert item.ref == str(path)

    def test_ingest_folder(self, tmp_path):
        from docintake.ingestion.pipeline import ingest_folder

        (tmp_path / "a.png").write_bytes(make_png(11))
        (tmp_path / "b.png").write_bytes(make_png(12))
        (tmp_path / "notes.txt").write_bytes(b"lunch with client, 42.00 total" * 5)
        (tmp_path / "ignored.docx").write_bytes(b"PK")

        report = ingest_folder(
            tmp_path,
            extract=AsyncMock(return_value=make_record()),
            scheduler=_quiet_scheduler(),
        )

        assert report.total == 3
        assert report.successful == 2
        assert report.skipped == 1
        assert [r.source_ref.rsplit("/", 1)[-1] for r in report.items] == ["a.png", "b.png", "notes.txt"]

    def test_missing_or_empty_folder(self, tmp_path):
        from docintake.ingestion.pipeline import ingest_folder

        assert ingest_folder(tmp_path / "nope").total == 0
        assert ingest_folder(tmp_path).total == 0

    @pytest.mark.asyncio
    async def test_subject_comes_from_token_provider(self):
        from docintake.ingestion.pipeline import ingest_items
        from docintake.ingestion.rate_limiter import RateLimiter
        from docintake.ingestion.schemas import RateLimitQuota
        from docintake.services.identity import StaticTokenProvider

        limiter = RateLimiter({"process": RateLimitQuota(requests=10, window_ms=60_000)})
        report = await ingest_items(
            [make_item(21)],
            extract=AsyncMock(return_value=make_record()),
            token_provider=StaticTokenProvider("tok", "user-9"),
            scheduler=_quiet_scheduler(limiter),
        )

        assert report.successful == 1
        assert len(limiter.request_records("user-9")) == 1
