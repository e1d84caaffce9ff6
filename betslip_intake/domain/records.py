"""
Domain model for slips moving through coalescing, review and commit.

Records are mutable: edits replace a field wholesale and invalidate the
cached summary line of the owning item. Batches address items by index,
so every removal bumps ``Batch.revision`` and index-addressed references
minted under an older revision are rejected as stale.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional

from betslip_intake.core.errors import StaleReferenceError


class EditField(str, Enum):
    """Fields a user may change through the edit dialogue."""

    BOOK = "book"
    EVENT = "event"
    MARKET = "market"
    ODD = "odd"
    STAKE = "stake"
    SPORT = "sport"
    DATE = "date"

    @property
    def label(self) -> str:
        return FIELD_LABELS[self]


FIELD_LABELS: Dict[EditField, str] = {
    EditField.BOOK: "Book",
    EditField.EVENT: "Event",
    EditField.MARKET: "Market",
    EditField.ODD: "Odds",
    EditField.STAKE: "Stake",
    EditField.SPORT: "Sport",
    EditField.DATE: "Date",
}

# Fields flagged in the review when absent. Date is always defaulted at flush.
REQUIRED_FIELDS = (
    EditField.BOOK,
    EditField.EVENT,
    EditField.MARKET,
    EditField.ODD,
    EditField.STAKE,
    EditField.SPORT,
)

_ATTRIBUTE_BY_FIELD = {
    EditField.BOOK: "book",
    EditField.EVENT: "event",
    EditField.MARKET: "market",
    EditField.ODD: "odd",
    EditField.STAKE: "stake",
    EditField.SPORT: "sport",
    EditField.DATE: "match_date",
}

USER_VERIFIED_CONFIDENCE = 1.0


@dataclass
class ExtractedRecord:
    """Candidate structured data for one slip."""

    book: Optional[str] = None
    event: Optional[str] = None
    market: Optional[str] = None
    odd: Optional[Decimal] = None
    stake: Optional[Decimal] = None
    sport: Optional[str] = None
    match_date: Optional[str] = None
    confidence: Optional[float] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    @property
    def effective_confidence(self) -> float:
        if self.confidence is None:
            return 0.0
        return float(self.confidence)

    def get(self, edit_field: EditField) -> Any:
        return getattr(self, _ATTRIBUTE_BY_FIELD[EditField(edit_field)])

    def set(self, edit_field: EditField, value: Any) -> None:
        setattr(self, _ATTRIBUTE_BY_FIELD[EditField(edit_field)], value)

    def missing_fields(self) -> List[EditField]:
        missing = []
        for required in REQUIRED_FIELDS:
            value = self.get(required)
            if value is None or (isinstance(value, str) and not value.strip()):
                missing.append(required)
        return missing

    def to_ledger_item(self) -> Dict[str, Any]:
        """Allow-listed projection sent to the ledger; metadata never leaves."""
        return {
            "book": self.book,
            "event": self.event,
            "market": self.market,
            "odd": float(self.odd) if self.odd is not None else None,
            "stake": float(self.stake) if self.stake is not None else None,
            "sport": self.sport,
            "date": self.match_date,
        }


def _format_decimal(value: Optional[Decimal]) -> Optional[str]:
    if value is None:
        return None
    return f"{value.quantize(Decimal('0.01'))}"


def build_summary_line(record: ExtractedRecord) -> str:
    """One-line human readable projection of a record."""
    odd = _format_decimal(record.odd)
    stake = _format_decimal(record.stake)
    parts = [
        record.book or "?",
        record.event or "?",
        record.market or "?",
        f"@{odd}" if odd else "@?",
        f"stake {stake}" if stake else "stake ?",
        record.sport or "?",
        record.match_date or "?",
    ]
    return " | ".join(parts)


@dataclass
class BatchItem:
    """A record inside a batch plus its cached summary line."""

    record: ExtractedRecord
    _summary: Optional[str] = field(default=None, repr=False, compare=False)

    @property
    def summary_line(self) -> str:
        if self._summary is None:
            self._summary = build_summary_line(self.record)
        return self._summary

    @property
    def has_summary(self) -> bool:
        return self._summary is not None

    def ensure_summary(self) -> None:
        if self._summary is None:
            self._summary = build_summary_line(self.record)

    def invalidate(self) -> None:
        self._summary = None

    def update(self, edit_field: EditField, value: Any) -> None:
        self.record.set(edit_field, value)
        self.invalidate()


@dataclass
class Batch:
    """Unit of review and commit."""

    token: str
    owner_id: str
    chat_id: str
    items: List[BatchItem] = field(default_factory=list)
    book_hint: Optional[str] = None
    review_message_id: Optional[str] = None
    revision: int = 0

    def __len__(self) -> int:
        return len(self.items)

    @property
    def is_empty(self) -> bool:
        return not self.items

    def check_revision(self, revision: Optional[int]) -> None:
        if revision is not None and revision != self.revision:
            raise StaleReferenceError(
                f"Batch {self.token} changed (revision {revision} != {self.revision})"
            )

    def item_at(self, index: int, revision: Optional[int] = None) -> BatchItem:
        self.check_revision(revision)
        if index < 0 or index >= len(self.items):
            raise StaleReferenceError(f"Batch {self.token} has no item {index}")
        return self.items[index]

    def remove_item(self, index: int, revision: Optional[int] = None) -> BatchItem:
        removed = self.item_at(index, revision)
        del self.items[index]
        self.revision += 1
        for item in self.items:
            item.ensure_summary()
        return removed

    def confidences(self) -> List[float]:
        return [item.record.effective_confidence for item in self.items]


class EntryState(str, Enum):
    PENDING = "pending"
    READY = "ready"
    DISCARDED = "discarded"


@dataclass
class CoalescingEntry:
    """Position reserved in a coalescing session at message arrival."""

    state: EntryState = EntryState.PENDING
    record: Optional[ExtractedRecord] = None


@dataclass
class CoalescingSession:
    """Pre-batch accumulator for one grouping key."""

    key: str
    owner_id: str
    chat_id: str
    entries: List[CoalescingEntry] = field(default_factory=list)
    book_hint: Optional[str] = None

    @property
    def has_pending(self) -> bool:
        return any(entry.state is EntryState.PENDING for entry in self.entries)

    def ready_records(self) -> List[ExtractedRecord]:
        return [
            entry.record
            for entry in self.entries
            if entry.state is EntryState.READY and entry.record is not None
        ]


@dataclass
class EditSession:
    """Reply-correlated prompt asking for a new value of one field."""

    chat_id: str
    user_id: str
    token: str
    item_index: int
    field: EditField
    prompt_message_id: str
    revision: int = 0

    @property
    def key(self) -> str:
        return edit_session_key(self.chat_id, self.user_id)


def edit_session_key(chat_id: str, user_id: str) -> str:
    return f"{chat_id}:{user_id}"


__all__ = [
    "EditField",
    "FIELD_LABELS",
    "REQUIRED_FIELDS",
    "USER_VERIFIED_CONFIDENCE",
    "ExtractedRecord",
    "BatchItem",
    "Batch",
    "EntryState",
    "CoalescingEntry",
    "CoalescingSession",
    "EditSession",
    "build_summary_line",
    "edit_session_key",
]
