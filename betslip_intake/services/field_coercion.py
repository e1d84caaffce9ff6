"""
Field coercion for user- and OCR-supplied slip values.

Provides:
- Money parsing with comma or dot decimal separators
- Book slugs so spelling variants of a bookmaker collapse to one key
- Flexible date parsing into canonical YYYY-MM-DD (raw fallback kept)
- The "today" default for slips without a match date
- A line-oriented ``key: value`` patch grammar for captions and typed slips
"""

from __future__ import annotations

import re
import unicodedata
from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, List, Optional

from betslip_intake.domain.records import EditField, ExtractedRecord
from betslip_intake.utils.datetime_helpers import get_date_string

CLEAR_FIELD_TOKEN = "-"

CURRENCY_MARKERS = ("R$", "US$", "$", "€", "£")
_MONEY_PATTERN = re.compile(r"^\d+(?:\.\d*)?$|^\.\d+$")
_ISO_DATE_PATTERN = re.compile(r"^(\d{4})-(\d{1,2})-(\d{1,2})$")
_DAY_MONTH_PATTERN = re.compile(r"^(\d{1,2})[/.\-](\d{1,2})(?:[/.\-](\d{4}|\d{2}))?$")
_PATCH_LINE_PATTERN = re.compile(r"^\s*([^:=]+?)\s*[:=]\s*(.*?)\s*$")

FIELD_ALIASES: Dict[str, EditField] = {
    "book": EditField.BOOK,
    "bookmaker": EditField.BOOK,
    "bookie": EditField.BOOK,
    "casa": EditField.BOOK,
    "event": EditField.EVENT,
    "evento": EditField.EVENT,
    "descricao": EditField.EVENT,
    "description": EditField.EVENT,
    "jogo": EditField.EVENT,
    "match": EditField.EVENT,
    "market": EditField.MARKET,
    "mercado": EditField.MARKET,
    "selection": EditField.MARKET,
    "odd": EditField.ODD,
    "odds": EditField.ODD,
    "cotacao": EditField.ODD,
    "stake": EditField.STAKE,
    "valor": EditField.STAKE,
    "amount": EditField.STAKE,
    "sport": EditField.SPORT,
    "esporte": EditField.SPORT,
    "date": EditField.DATE,
    "data": EditField.DATE,
    "matchdate": EditField.DATE,
}

MONEY_FIELDS = (EditField.ODD, EditField.STAKE)


def _strip_diacritics(text: str) -> str:
    return unicodedata.normalize("NFKD", text).encode("ascii", "ignore").decode("ascii")


def parse_money(text: Optional[str]) -> Optional[Decimal]:
    """
    Parse a non-negative amount such as ``25``, ``25.5``, ``25,50`` or ``R$ 25,50``.

    Returns:
        Decimal value, or None when the input is not a finite number.
    """
    if text is None:
        return None
    cleaned = str(text).strip()
    for marker in CURRENCY_MARKERS:
        if cleaned.startswith(marker):
            cleaned = cleaned[len(marker):]
        if cleaned.endswith(marker):
            cleaned = cleaned[: -len(marker)]
    cleaned = cleaned.replace(" ", "").replace(",", ".")
    if not _MONEY_PATTERN.match(cleaned):
        return None
    try:
        value = Decimal(cleaned)
    except InvalidOperation:
        return None
    if not value.is_finite():
        return None
    return value


def slugify(text: Optional[str]) -> str:
    """Lowercase, strip diacritics, map ``&`` to ``e`` and keep only ``[a-z0-9]``."""
    if not text:
        return ""
    lowered = _strip_diacritics(str(text)).lower().replace("&", "e")
    return re.sub(r"[^a-z0-9]", "", lowered)


def _expand_year(raw_year: Optional[str], today: date) -> int:
    if raw_year is None:
        return today.year
    if len(raw_year) == 2:
        return 2000 + int(raw_year)
    return int(raw_year)


def parse_flexible_date(text: Optional[str], *, today: Optional[date] = None) -> Optional[str]:
    """
    Parse ``YYYY-MM-DD`` or ``D/M[/YY[YY]]`` into canonical ``YYYY-MM-DD``.

    Unparseable input is returned stripped but otherwise untouched so the
    review can surface it for manual correction. Empty input yields None.
    """
    if text is None:
        return None
    raw = str(text).strip()
    if not raw:
        return None

    today = today or datetime.now().date()
    iso_match = _ISO_DATE_PATTERN.match(raw)
    day_month_match = _DAY_MONTH_PATTERN.match(raw)
    try:
        if iso_match:
            year, month, day = (int(part) for part in iso_match.groups())
            return date(year, month, day).isoformat()
        if day_month_match:
            day, month, raw_year = day_month_match.groups()
            year = _expand_year(raw_year, today)
            return date(year, int(month), int(day)).isoformat()
    except ValueError:
        return raw
    return raw


def ensure_has_date(record: ExtractedRecord, today: Optional[str] = None) -> ExtractedRecord:
    """Default an absent match date to today. Malformed dates are left alone."""
    if record.match_date is None or not str(record.match_date).strip():
        record.match_date = today or get_date_string()
    return record


def _clean_text(value: str) -> Optional[str]:
    cleaned = " ".join(value.split())
    return cleaned or None


def coerce_field_value(edit_field: EditField, raw: Optional[str]) -> Any:
    """
    Convert user input for ``edit_field`` into the stored value.

    ``-`` clears the field. Money that does not parse is cleared rather
    than stored, dates fall back to the raw text, books become slugs.
    """
    if raw is None:
        return None
    text = str(raw).strip()
    if text == CLEAR_FIELD_TOKEN or not text:
        return None

    edit_field = EditField(edit_field)
    if edit_field in MONEY_FIELDS:
        return parse_money(text)
    if edit_field is EditField.BOOK:
        return slugify(text) or None
    if edit_field is EditField.DATE:
        return parse_flexible_date(text)
    return _clean_text(text)


def resolve_field_name(key: str) -> Optional[EditField]:
    """Map a user-typed key (any case, with or without accents) to a field."""
    return FIELD_ALIASES.get(slugify(key))


@dataclass
class RecordPatch:
    """Validated partial update parsed from ``key: value`` lines."""

    values: Dict[EditField, Any] = field(default_factory=dict)
    ignored: List[str] = field(default_factory=list)
    errors: Dict[EditField, str] = field(default_factory=dict)

    @property
    def is_empty(self) -> bool:
        return not self.values

    def apply(self, record: ExtractedRecord) -> ExtractedRecord:
        for edit_field, value in self.values.items():
            record.set(edit_field, value)
        return record

    def to_record(self, confidence: Optional[float] = None) -> ExtractedRecord:
        return self.apply(ExtractedRecord(confidence=confidence))


def parse_patch(text: Optional[str]) -> RecordPatch:
    """
    Parse a multi-line ``key: value`` block into a ``RecordPatch``.

    Example:
        >>> patch = parse_patch("Casa: Bet365\\nstake: 25,50\\nfoo bar")
        >>> patch.values[EditField.BOOK], patch.values[EditField.STAKE]
        ('bet365', Decimal('25.50'))
        >>> patch.ignored
        ['foo bar']
    """
    patch = RecordPatch()
    if not text:
        return patch

    for line in str(text).splitlines():
        if not line.strip():
            continue
        match = _PATCH_LINE_PATTERN.match(line)
        edit_field = resolve_field_name(match.group(1)) if match else None
        if edit_field is None:
            patch.ignored.append(line.strip())
            continue

        raw_value = match.group(2)
        value = coerce_field_value(edit_field, raw_value)
        if (
            edit_field in MONEY_FIELDS
            and value is None
            and raw_value.strip() not in ("", CLEAR_FIELD_TOKEN)
        ):
            patch.errors[edit_field] = raw_value.strip()
            continue
        patch.values[edit_field] = value

    return patch


__all__ = [
    "CLEAR_FIELD_TOKEN",
    "RecordPatch",
    "coerce_field_value",
    "ensure_has_date",
    "parse_flexible_date",
    "parse_money",
    "parse_patch",
    "resolve_field_name",
    "slugify",
]
