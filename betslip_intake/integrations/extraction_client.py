"""
HTTP client for the slip extraction service.

The service receives a slip image plus optional hints and answers with a
candidate record and a confidence score. 401/403 mean the Telegram user
has not linked their account yet.
"""

from typing import Any, Dict, Optional

import httpx
import structlog

from betslip_intake.core.config import Config
from betslip_intake.core.errors import ExtractionError, ExtractionNotAuthorized
from betslip_intake.domain.records import ExtractedRecord
from betslip_intake.services.field_coercion import parse_flexible_date, parse_money, slugify

logger = structlog.get_logger()

_RECORD_KEYS = {
    "book",
    "event",
    "market",
    "odd",
    "odds",
    "stake",
    "sport",
    "date",
    "matchDate",
    "match_date",
    "confidence",
}


def _text(value: Any) -> Optional[str]:
    if value is None:
        return None
    cleaned = " ".join(str(value).split())
    if not cleaned or cleaned.upper() == "UNKNOWN":
        return None
    return cleaned


def _confidence(value: Any) -> Optional[float]:
    if value is None:
        return None
    try:
        confidence = float(value)
    except (TypeError, ValueError):
        return None
    return min(max(confidence, 0.0), 1.0)


def record_from_payload(
    payload: Dict[str, Any],
    *,
    book_hint: Optional[str] = None,
) -> ExtractedRecord:
    """
    Build an ``ExtractedRecord`` from an extraction response.

    Accepts either ``{"record": {...}, "confidence": x}`` or a flat record.
    Unknown keys are kept in ``metadata`` and never reach the ledger.
    """
    raw = payload.get("record") if isinstance(payload.get("record"), dict) else payload

    odd_value = raw.get("odd", raw.get("odds"))
    date_value = raw.get("matchDate", raw.get("match_date", raw.get("date")))
    confidence = payload.get("confidence", raw.get("confidence"))

    book = slugify(_text(raw.get("book"))) or slugify(book_hint) or None
    record = ExtractedRecord(
        book=book,
        event=_text(raw.get("event")),
        market=_text(raw.get("market")),
        odd=parse_money(_text(odd_value)),
        stake=parse_money(_text(raw.get("stake"))),
        sport=_text(raw.get("sport")),
        match_date=parse_flexible_date(_text(date_value)),
        confidence=_confidence(confidence),
    )
    record.metadata = {key: value for key, value in raw.items() if key not in _RECORD_KEYS}
    if raw is not payload:
        record.metadata.update(
            {key: value for key, value in payload.items() if key not in ("record", "confidence")}
        )
    return record


class ExtractionClient:
    """Client for the remote slip extraction service."""

    def __init__(
        self,
        base_url: Optional[str] = None,
        api_key: Optional[str] = None,
        *,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """
        Initialize the extraction client.

        Args:
            base_url: Base URL of the extraction service
            api_key: Bearer token for the service
            timeout: Request timeout in seconds
            transport: Optional httpx transport (tests)
        """
        self.base_url = (base_url or Config.EXTRACTION_API_URL or "").rstrip("/")
        self.api_key = api_key or Config.EXTRACTION_API_KEY
        self.timeout = timeout or Config.HTTP_TIMEOUT_SECONDS
        self._transport = transport

        if not self.base_url:
            raise ValueError("Extraction service URL is required")
        if not self.api_key:
            logger.warning("extraction_api_no_key", message="No extraction API key configured")

    def _headers(self) -> Dict[str, str]:
        if not self.api_key:
            return {}
        return {"Authorization": f"Bearer {self.api_key}"}

    async def extract(
        self,
        image: bytes,
        *,
        owner_id: str,
        book_hint: Optional[str] = None,
        caption: Optional[str] = None,
    ) -> ExtractedRecord:
        """
        Extract a slip record from an image.

        Raises:
            ExtractionNotAuthorized: If the owner has not linked an account.
            ExtractionError: For any other failure.
        """
        data = {"owner_id": str(owner_id)}
        if book_hint:
            data["book"] = book_hint
        if caption:
            data["caption"] = caption
        files = {"image": ("slip.jpg", image, "image/jpeg")}

        async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
            try:
                response = await client.post(
                    f"{self.base_url}/extract",
                    headers=self._headers(),
                    data=data,
                    files=files,
                )
            except httpx.HTTPError as exc:
                logger.error("extraction_request_failed", owner_id=owner_id, error=str(exc))
                raise ExtractionError(f"Extraction request failed: {exc}") from exc

        if response.status_code in (401, 403):
            raise ExtractionNotAuthorized(f"Owner {owner_id} is not authorized")
        if response.is_error:
            logger.error(
                "extraction_http_error",
                owner_id=owner_id,
                status_code=response.status_code,
                body=response.text[:200],
            )
            raise ExtractionError(f"Extraction failed with HTTP {response.status_code}")

        try:
            payload = response.json()
        except ValueError as exc:
            raise ExtractionError("Extraction response was not valid JSON") from exc
        if not isinstance(payload, dict):
            raise ExtractionError("Extraction response must be a JSON object")
        if payload.get("error") == "not_authorized":
            raise ExtractionNotAuthorized(f"Owner {owner_id} is not authorized")
        if payload.get("error"):
            raise ExtractionError(str(payload["error"]))

        record = record_from_payload(payload, book_hint=book_hint)
        logger.info(
            "slip_extracted",
            owner_id=owner_id,
            confidence=record.confidence,
            book=record.book,
        )
        return record


__all__ = ["ExtractionClient", "record_from_payload"]
