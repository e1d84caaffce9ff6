"""
OpenAI GPT-4o client for betting slip extraction.

This module provides:
- Vision-based extraction of a slip photo into an ExtractedRecord
- Confidence scoring from field completeness
- Retry logic around the OpenAI API

It is the alternative to the HTTP extraction service when
``EXTRACTION_BACKEND=openai``; it never reports "not authorized".
"""

import asyncio
import base64
import time
from typing import Any, Dict, Optional

import structlog
from openai import OpenAI, OpenAIError

from betslip_intake.core.config import Config
from betslip_intake.core.errors import ExtractionError
from betslip_intake.domain.records import ExtractedRecord
from betslip_intake.services.field_coercion import parse_flexible_date, parse_money, slugify

logger = structlog.get_logger()

UNKNOWN = "UNKNOWN"


class OpenAIClient:
    """Client for OpenAI GPT-4o vision-based slip extraction."""

    # Model version for GPT-4o vision
    MODEL_VERSION = "gpt-4o-2024-11-20"

    # Retry configuration
    MAX_RETRIES = 1
    RETRY_DELAY_SECONDS = 2

    CRITICAL_FIELDS = ("book", "event", "market", "odd", "stake")
    OPTIONAL_FIELDS = ("sport", "match_date")

    def __init__(self, api_key: Optional[str] = None):
        """
        Initialize OpenAI client.

        Args:
            api_key: OpenAI API key. If None, uses Config.OPENAI_API_KEY.

        Raises:
            ValueError: If API key is not provided.
        """
        self.api_key = api_key or Config.OPENAI_API_KEY
        if not self.api_key:
            raise ValueError("OpenAI API key is required")

        self.client = OpenAI(api_key=self.api_key)
        logger.info("openai_client_initialized", model_version=self.MODEL_VERSION)

    async def extract(
        self,
        image: bytes,
        *,
        owner_id: str,
        book_hint: Optional[str] = None,
        caption: Optional[str] = None,
    ) -> ExtractedRecord:
        """Run the blocking extraction in a worker thread."""
        return await asyncio.to_thread(
            self.extract_slip_from_image, image, book_hint=book_hint, caption=caption
        )

    def extract_slip_from_image(
        self,
        image: bytes,
        *,
        book_hint: Optional[str] = None,
        caption: Optional[str] = None,
    ) -> ExtractedRecord:
        """
        Extract slip data from image bytes using GPT-4o vision.

        Raises:
            ExtractionError: If the image is empty or the API call fails after retries.
        """
        if not image:
            raise ExtractionError("Slip image is empty")

        start_time = time.time()
        for attempt in range(self.MAX_RETRIES + 1):
            try:
                record = self._call_gpt4o_vision(image, book_hint=book_hint, caption=caption)
                duration_ms = int((time.time() - start_time) * 1000)
                record.metadata["extraction_duration_ms"] = duration_ms
                logger.info(
                    "slip_extraction_successful",
                    confidence=record.confidence,
                    duration_ms=duration_ms,
                    attempt=attempt + 1,
                )
                return record

            except OpenAIError as e:
                logger.warning(
                    "openai_api_error",
                    error=str(e),
                    attempt=attempt + 1,
                    max_retries=self.MAX_RETRIES,
                )
                if attempt < self.MAX_RETRIES:
                    time.sleep(self.RETRY_DELAY_SECONDS)
                    continue
                logger.error("slip_extraction_failed", error=str(e), attempts=attempt + 1)
                raise ExtractionError(f"OpenAI extraction failed: {e}") from e

        raise ExtractionError("Unexpected error in extraction retry logic")

    def _call_gpt4o_vision(
        self,
        image: bytes,
        *,
        book_hint: Optional[str],
        caption: Optional[str],
    ) -> ExtractedRecord:
        image_data = base64.b64encode(image).decode("utf-8")
        response = self.client.chat.completions.create(
            model=self.MODEL_VERSION,
            messages=[
                {
                    "role": "user",
                    "content": [
                        {"type": "text", "text": self._build_extraction_prompt(book_hint, caption)},
                        {
                            "type": "image_url",
                            "image_url": {
                                "url": f"data:image/jpeg;base64,{image_data}",
                                "detail": "high",
                            },
                        },
                    ],
                }
            ],
            max_tokens=500,
            temperature=0.0,
        )

        raw_response = response.choices[0].message.content or ""
        logger.debug(
            "gpt4o_raw_response",
            response=raw_response,
            prompt_tokens=response.usage.prompt_tokens if response.usage else None,
            completion_tokens=response.usage.completion_tokens if response.usage else None,
        )

        record = self._parse_extraction_response(raw_response)
        if not record.book and book_hint:
            record.book = slugify(book_hint) or None
        record.confidence = self._calculate_confidence(record)
        record.metadata.update(
            {
                "model_version": self.MODEL_VERSION,
                "total_tokens": response.usage.total_tokens if response.usage else 0,
                "raw_response": raw_response,
            }
        )
        return record

    def _build_extraction_prompt(self, book_hint: Optional[str], caption: Optional[str]) -> str:
        hints = []
        if book_hint:
            hints.append(f"The sender says the bookmaker is: {book_hint}")
        if caption:
            hints.append(f"Sender caption: {caption}")
        hint_block = ("\n".join(hints) + "\n\n") if hints else ""

        return hint_block + """Extract betting slip information from this photo. Return data in this exact format:

BOOKMAKER: <bookmaker / betting house name>
EVENT: <Team A vs Team B or event description>
SPORT: <football, basketball, tennis, etc.>
MARKET: <market and selection as shown, e.g. "Over 2.5 goals">
ODDS: <decimal odds, e.g., 1.91>
STAKE: <stake amount as number only>
DATE: <event date as YYYY-MM-DD if visible>

Important:
1. If a field cannot be determined, write "UNKNOWN"
2. ODDS and STAKE should be numbers only (no currency symbols)
3. Be conservative - mark as UNKNOWN if uncertain
"""

    def _parse_extraction_response(self, raw_response: str) -> ExtractedRecord:
        """Parse the line-oriented GPT-4o answer into a record."""
        data: Dict[str, Any] = {}
        for line in raw_response.strip().split("\n"):
            if ":" not in line:
                continue
            key, value = line.split(":", 1)
            key = key.strip().upper()
            value = value.strip()
            if not value or value.upper() == UNKNOWN:
                continue
            data[key] = value

        return ExtractedRecord(
            book=slugify(data.get("BOOKMAKER")) or None,
            event=data.get("EVENT"),
            market=data.get("MARKET"),
            odd=parse_money(data.get("ODDS")),
            stake=parse_money(data.get("STAKE")),
            sport=data.get("SPORT"),
            match_date=parse_flexible_date(data.get("DATE")),
        )

    def _calculate_confidence(self, record: ExtractedRecord) -> float:
        """
        Confidence from extraction completeness.

        Critical fields contribute up to 0.8, optional fields up to 0.2.
        """
        critical_present = sum(
            1 for name in self.CRITICAL_FIELDS if getattr(record, name) is not None
        )
        optional_present = sum(
            1 for name in self.OPTIONAL_FIELDS if getattr(record, name) is not None
        )
        confidence = (
            0.8 * critical_present / len(self.CRITICAL_FIELDS)
            + 0.2 * optional_present / len(self.OPTIONAL_FIELDS)
        )
        confidence = round(min(confidence, 1.0), 2)

        logger.debug(
            "confidence_calculated",
            critical_present=critical_present,
            optional_present=optional_present,
            confidence=confidence,
        )
        return confidence


__all__ = ["OpenAIClient"]
