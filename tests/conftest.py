"""Shared fixtures: deterministic images, items and records."""

from __future__ import annotations

import asyncio
import io
from datetime import date, timedelta

import pytest
from PIL import Image


def make_png(seed: int = 0, size: int = 64) -> bytes:
    """A deterministic RGB PNG; different seeds give different bytes."""
    img = Image.new("RGB", (size, size))
    img.putdata([
        ((x * 7 + seed * 31) % 256, (y * 13 + seed) % 256, (x * y + seed * 3) % 256)
        for y in range(size)
        for x in range(size)
    ])
    buf = io.BytesIO()
    img.save(buf, format="PNG")
    return buf.getvalue()


def make_jpeg(color: tuple[int, int, int] = (200, 120, 40), size: int = 64) -> bytes:
    buf = io.BytesIO()
    Image.new("RGB", (size, size), color).save(buf, format="JPEG")
    return buf.getvalue()


def make_item(seed: int = 0, **overrides):
    from docintake.ingestion.schemas import SubmittedItem

    fields = {
        "content": make_png(seed),
        "mime_type": "image/png",
        "name": f"receipt_{seed}.png",
    }
    fields.update(overrides)
    return SubmittedItem(**fields)


def make_record(**overrides):
    from docintake.ingestion.schemas import ExtractedRecord

    fields = {
        "date": (date.today() - timedelta(days=10)).isoformat(),
        "amount": 250.0,
        "vendor": "Cafe Roma",
        "category": "food",
        "confidence": 0.95,
    }
    fields.update(overrides)
    return ExtractedRecord(**fields)


class RecordingSleep:
    """Stand-in for ``asyncio.sleep`` that records delays instead of waiting."""

    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)
        await asyncio.sleep(0)


class FakeClock:
    """Manually advanced ``time.time`` replacement (seconds)."""

    def __init__(self, start: float = 1_700_000_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def png_bytes() -> bytes:
    return make_png()


@pytest.fixture
def jpeg_bytes() -> bytes:
    return make_jpeg()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def recording_sleep() -> RecordingSleep:
    return RecordingSleep()
