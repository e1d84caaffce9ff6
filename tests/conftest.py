"""
Shared fakes for the intake engine tests.

- FakeChatChannel records sent and edited messages
- ManualScheduler runs debounce callbacks on a virtual clock
- FakeExtractor / FakeLedger stand in for the external services
"""

import asyncio
import copy
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Dict, List, Optional

import pytest

from betslip_intake.core.errors import ChatChannelError
from betslip_intake.domain.records import ExtractedRecord
from betslip_intake.services.commit_pipeline import ConfidenceRouter
from betslip_intake.services.intake_engine import IntakeEngine
from betslip_intake.services.session_store import InMemoryTTLStore, SessionStore


@dataclass
class SentMessage:
    message_id: str
    chat_id: str
    text: str
    actions: Optional[list] = None
    request_reply: bool = False
    edits: List[str] = field(default_factory=list)

    def action_list(self) -> list:
        return [button.action for row in (self.actions or []) for button in row]


class FakeChatChannel:
    """In-memory chat channel that remembers every message."""

    def __init__(self) -> None:
        self.sent: List[SentMessage] = []
        self.messages: Dict[str, SentMessage] = {}
        self.edit_calls: List[str] = []
        self.fail_edits = False
        self.send_gate: Optional[asyncio.Event] = None
        self._next_id = 100

    async def send_message(self, chat_id, text, *, actions=None, request_reply=False) -> str:
        if self.send_gate is not None:
            await self.send_gate.wait()
        self._next_id += 1
        message = SentMessage(str(self._next_id), str(chat_id), text, actions, request_reply)
        self.sent.append(message)
        self.messages[message.message_id] = message
        return message.message_id

    async def edit_message(self, chat_id, message_id, text, *, actions=None) -> None:
        if self.fail_edits or message_id not in self.messages:
            raise ChatChannelError("Message can't be edited")
        self.edit_calls.append(message_id)
        message = self.messages[message_id]
        message.edits.append(message.text)
        message.text = text
        message.actions = actions

    def texts(self) -> List[str]:
        return [message.text for message in self.sent]

    def prompts(self) -> List[SentMessage]:
        return [message for message in self.sent if message.request_reply]


class ManualScheduler:
    """Task scheduler driven by a virtual clock."""

    def __init__(self) -> None:
        self.now = 0.0
        self._tasks: Dict[str, tuple] = {}
        self._sequence = 0
        self.cancelled: List[str] = []

    def schedule(self, key, delay_seconds, callback) -> None:
        self._sequence += 1
        self._tasks[key] = (self.now + delay_seconds, self._sequence, callback)

    def cancel(self, key) -> bool:
        if self._tasks.pop(key, None) is None:
            return False
        self.cancelled.append(key)
        return True

    def pending(self, key) -> bool:
        return key in self._tasks

    async def advance(self, seconds: float) -> None:
        target = self.now + seconds
        while True:
            due = [
                (due_at, sequence, key)
                for key, (due_at, sequence, _) in self._tasks.items()
                if due_at <= target
            ]
            if not due:
                break
            due_at, _, key = min(due)
            self.now = due_at
            _, _, callback = self._tasks.pop(key)
            await callback()
        self.now = target


class FakeExtractor:
    """Returns canned records (or raises canned errors) keyed by image bytes."""

    def __init__(self) -> None:
        self.results: Dict[bytes, Any] = {}
        self.gates: Dict[bytes, asyncio.Event] = {}
        self.calls: List[dict] = []

    async def extract(self, image, *, owner_id, book_hint=None, caption=None):
        self.calls.append(
            {"image": image, "owner_id": owner_id, "book_hint": book_hint, "caption": caption}
        )
        gate = self.gates.get(image)
        if gate is not None:
            await gate.wait()
        result = self.results[image]
        if isinstance(result, Exception):
            raise result
        return copy.deepcopy(result)


class FakeLedger:
    """Ledger gateway recording commits."""

    def __init__(self) -> None:
        self.calls: List[tuple] = []
        self.results: Optional[list] = None
        self.error: Optional[Exception] = None
        self.gate: Optional[asyncio.Event] = None

    async def commit_bets(self, owner_id, items):
        self.calls.append((owner_id, items))
        if self.gate is not None:
            await self.gate.wait()
        if self.error is not None:
            raise self.error
        if self.results is not None:
            return self.results
        return [{"ok": True, "id": index} for index, _ in enumerate(items)]


class FakeClock:
    def __init__(self) -> None:
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now


def build_record(confidence: Optional[float] = 0.9, **overrides) -> ExtractedRecord:
    values = {
        "book": "bet365",
        "event": "Flamengo x Palmeiras",
        "market": "Over 2.5",
        "odd": Decimal("1.91"),
        "stake": Decimal("20"),
        "sport": "football",
        "match_date": "2024-03-05",
        "confidence": confidence,
    }
    values.update(overrides)
    return ExtractedRecord(**values)


@pytest.fixture
def channel():
    return FakeChatChannel()


@pytest.fixture
def scheduler():
    return ManualScheduler()


@pytest.fixture
def extractor():
    return FakeExtractor()


@pytest.fixture
def ledger():
    return FakeLedger()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store(clock):
    return SessionStore(
        batches=InMemoryTTLStore(3600, clock=clock),
        edits=InMemoryTTLStore(300, clock=clock),
        prompts=InMemoryTTLStore(3600, clock=clock),
        clock=clock,
    )


@pytest.fixture
def engine(channel, extractor, ledger, scheduler, store):
    return IntakeEngine(
        channel=channel,
        extractor=extractor,
        ledger=ledger,
        scheduler=scheduler,
        store=store,
        router=ConfidenceRouter(low_threshold=0.6, high_threshold=0.85),
        page_size=6,
        idle_seconds=1.2,
    )


@pytest.fixture
def make_batch(engine):
    """Store a batch built from the given confidences (or records) and return it."""

    def factory(*entries, chat_id="500", owner_id="42", book_hint=None):
        records = [
            entry if isinstance(entry, ExtractedRecord) else build_record(confidence=entry, event=f"Event {i}")
            for i, entry in enumerate(entries)
        ]
        return engine.coalescer.build_batch(
            owner_id=owner_id, chat_id=chat_id, records=records, book_hint=book_hint
        )

    return factory


@pytest.fixture
def make_record():
    return build_record
