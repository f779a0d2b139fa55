"""Vision extraction client – turns a receipt image into an ``ExtractedRecord``.

Talks to any OpenAI-compatible chat-completions endpoint that accepts image
inputs (a local Ollama vision model by default). The scheduler treats this
as an opaque ``extract(item)`` coroutine; swap it for any other callable
with the same shape.
"""

from __future__ import annotations

import base64
import json
import logging
import re

import openai
from openai import AsyncOpenAI as _HTTPClient
from pydantic import ValidationError

from docintake.config import settings
from docintake.ingestion.config import ingest_settings
from docintake.ingestion.costs import usage_cost
from docintake.ingestion.errors import (
    AuthenticationError,
    ExtractionError,
    ExtractionTimeoutError,
)
from docintake.ingestion.schemas import ExtractedRecord, SubmittedItem
from docintake.services.identity import TokenProvider

logger = logging.getLogger(__name__)

EXTRACTION_SYSTEM = """\
You extract bookkeeping data from receipts and invoices.

Reply with a single JSON object (no markdown fences) with these keys:
  "date"        – transaction date as YYYY-MM-DD
  "amount"      – total amount paid, as a number
  "vendor"      – merchant / supplier name
  "category"    – one of: food, transport, utilities, office, inventory,
                  equipment, marketing, professional, other
  "description" – short free-text description
  "gst_number"  – tax registration number if printed, else null
  "items"       – list of {"name", "price", "quantity"} line items
  "confidence"  – your confidence in the extraction, 0.0 to 1.0
"""

_FENCE_RE = re.compile(r"^```(?:json)?\s*|\s*```$", re.MULTILINE)

_TEXT_LIMIT = 20_000


def parse_record(raw: str) -> ExtractedRecord:
    """Parse the model reply into a record; raises ``ExtractionError``."""
    cleaned = _FENCE_RE.sub("", raw.strip())
    try:
        payload = json.loads(cleaned)
    except json.JSONDecodeError as exc:
        raise ExtractionError(f"Model reply is not JSON: {raw[:120]!r}") from exc
    if not isinstance(payload, dict):
        raise ExtractionError(f"Expected a JSON object, got {type(payload).__name__}")
    try:
        return ExtractedRecord.model_validate(payload)
    except ValidationError as exc:
        raise ExtractionError(f"Model reply does not match the record shape: {exc}") from exc


def _user_content(item: SubmittedItem) -> list[dict]:
    if item.mime_type.startswith("text/"):
        text = item.content.decode("utf-8", errors="replace")[:_TEXT_LIMIT]
        return [{"type": "text", "text": f"Document {item.name}:\n{text}"}]
    encoded = base64.b64encode(item.content).decode("ascii")
    return [
        {"type": "text", "text": f"Extract the transaction from {item.name}."},
        {"type": "image_url", "image_url": {"url": f"data:{item.mime_type};base64,{encoded}"}},
    ]


class VisionExtractor:
    """Callable extractor: ``await extractor(item)`` → ``ExtractedRecord``."""

    def __init__(
        self,
        client: _HTTPClient | None = None,
        *,
        model: str | None = None,
        token_provider: TokenProvider | None = None,
    ) -> None:
        self._client = client
        self.model = model or settings.vision_model
        self.token_provider = token_provider

    @property
    def client(self) -> _HTTPClient:
        if self._client is None:
            self._client = _HTTPClient(
                base_url=settings.llm_base_url,
                api_key=settings.llm_api_key,
            )
        return self._client

    async def __call__(self, item: SubmittedItem) -> ExtractedRecord:
        return await self.extract(item)

    async def extract(self, item: SubmittedItem) -> ExtractedRecord:
        headers = await self._auth_headers()
        try:
            response = await self.client.chat.completions.create(
                model=self.model,
                messages=[
                    {"role": "system", "content": EXTRACTION_SYSTEM},
                    {"role": "user", "content": _user_content(item)},
                ],
                temperature=settings.llm_temperature,
                max_tokens=settings.llm_max_tokens,
                extra_headers=headers or None,
            )
        except openai.AuthenticationError as exc:
            raise AuthenticationError(f"401 Unauthorized: {exc}") from exc
        except openai.APITimeoutError as exc:
            raise ExtractionTimeoutError(str(exc)) from exc
        except openai.APIError as exc:
            raise ExtractionError(f"Backend API error: {exc}") from exc

        self._log_usage(item, response)
        content = response.choices[0].message.content or ""
        logger.debug("Extraction reply for %s (%d chars).", item.label, len(content))
        return parse_record(content)

    async def _auth_headers(self) -> dict[str, str]:
        if self.token_provider is None:
            return {}
        token = await self.token_provider.get_token()
        if not token:
            raise AuthenticationError("401 Unauthorized: sign in to process documents")
        return {"Authorization": f"Bearer {token}"}

    def _log_usage(self, item: SubmittedItem, response) -> None:
        usage = getattr(response, "usage", None)
        if usage is None:
            return
        prompt = getattr(usage, "prompt_tokens", 0) or 0
        completion = getattr(usage, "completion_tokens", 0) or 0
        logger.info(
            "Token usage for %s: %d in / %d out (≈%.5f).",
            item.label,
            prompt,
            completion,
            usage_cost(prompt, completion, ingest_settings.model_tier),
        )
