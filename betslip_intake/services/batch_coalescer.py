"""
Debounce coalescer: turns bursts of slip photos into one reviewable batch.

Every arrival on a grouping key (a chat, or a chat plus a Telegram album
id) re-arms an idle timer for that key; when the timer fires without new
arrivals the accumulated records become a ``Batch``.

Photos reserve their position with ``reserve`` as soon as the message
arrives, before the extraction call is awaited, so the batch keeps the
order in which photos were sent even when extractions finish out of
order. A flush that still finds unresolved reservations re-arms instead.
"""

from __future__ import annotations

import secrets
from typing import Awaitable, Callable, Iterable, Optional

from betslip_intake.core.config import Config
from betslip_intake.domain.records import (
    Batch,
    BatchItem,
    CoalescingEntry,
    CoalescingSession,
    EntryState,
    ExtractedRecord,
)
from betslip_intake.services.field_coercion import ensure_has_date
from betslip_intake.services.scheduler import TaskScheduler
from betslip_intake.services.session_store import SessionStore
from betslip_intake.utils.datetime_helpers import get_date_string
from betslip_intake.utils.logging_config import get_logger

logger = get_logger(__name__)

FlushHandler = Callable[[Batch], Awaitable[None]]


def generate_token() -> str:
    return secrets.token_hex(4)


def grouping_key(chat_id: str, media_group_id: Optional[str] = None) -> str:
    """Key for the coalescing session: per chat, or per album within a chat."""
    if media_group_id:
        return f"{chat_id}:{media_group_id}"
    return str(chat_id)


class CoalescingSlot:
    """Handle for one reserved position in a coalescing session."""

    def __init__(self, coalescer: "DebounceCoalescer", key: str, entry: CoalescingEntry) -> None:
        self._coalescer = coalescer
        self.key = key
        self._entry = entry

    @property
    def state(self) -> EntryState:
        return self._entry.state

    def resolve(self, record: ExtractedRecord, book_hint: Optional[str] = None) -> bool:
        return self._coalescer._settle(self.key, self._entry, EntryState.READY, record, book_hint)

    def discard(self) -> bool:
        return self._coalescer._settle(self.key, self._entry, EntryState.DISCARDED, None, None)


class DebounceCoalescer:
    """Group arrivals per key into batches after an idle window."""

    def __init__(
        self,
        store: SessionStore,
        scheduler: TaskScheduler,
        on_flush: FlushHandler,
        *,
        idle_seconds: Optional[float] = None,
        token_factory: Callable[[], str] = generate_token,
        today_factory: Callable[[], str] = get_date_string,
    ) -> None:
        self._store = store
        self._scheduler = scheduler
        self._on_flush = on_flush
        self.idle_seconds = (
            idle_seconds if idle_seconds is not None else Config.COALESCE_IDLE_MS / 1000.0
        )
        self._token_factory = token_factory
        self._today_factory = today_factory

    def _session_for(self, key: str, owner_id: str, chat_id: str) -> CoalescingSession:
        session = self._store.get_coalescing(key)
        if session is None:
            session = CoalescingSession(key=key, owner_id=str(owner_id), chat_id=str(chat_id))
            self._store.put_coalescing(session)
            logger.debug("coalescing_session_opened", key=key, owner_id=owner_id)
        return session

    def _arm(self, key: str) -> None:
        self._scheduler.schedule(key, self.idle_seconds, lambda: self.flush(key))

    def reserve(self, key: str, *, owner_id: str, chat_id: str) -> CoalescingSlot:
        """Reserve the next position for ``key`` and (re)start its idle timer."""
        session = self._session_for(key, owner_id, chat_id)
        entry = CoalescingEntry()
        session.entries.append(entry)
        self._arm(key)
        return CoalescingSlot(self, key, entry)

    def on_item_arrival(
        self,
        key: str,
        record: ExtractedRecord,
        book_hint: Optional[str] = None,
        *,
        owner_id: str,
        chat_id: str,
    ) -> None:
        """Append an already-extracted record for ``key``."""
        self.reserve(key, owner_id=owner_id, chat_id=chat_id).resolve(record, book_hint)

    def _settle(
        self,
        key: str,
        entry: CoalescingEntry,
        state: EntryState,
        record: Optional[ExtractedRecord],
        book_hint: Optional[str],
    ) -> bool:
        session = self._store.get_coalescing(key)
        if session is None or not any(existing is entry for existing in session.entries):
            logger.info("coalescing_slot_orphaned", key=key, state=state.value)
            return False
        if entry.state is not EntryState.PENDING:
            return False

        entry.state = state
        entry.record = record
        if book_hint and book_hint.strip():
            session.book_hint = book_hint.strip()
        self._arm(key)
        return True

    def abort(self, key: str) -> Optional[CoalescingSession]:
        """Drop the session for ``key`` without producing a batch."""
        self._scheduler.cancel(key)
        session = self._store.pop_coalescing(key)
        if session is not None:
            logger.info("coalescing_session_aborted", key=key, entries=len(session.entries))
        return session

    def build_batch(
        self,
        *,
        owner_id: str,
        chat_id: str,
        records: Iterable[ExtractedRecord],
        book_hint: Optional[str] = None,
    ) -> Batch:
        """Create and store a batch from finished records."""
        token = self._token_factory()
        while self._store.get_batch(token) is not None:
            token = self._token_factory()

        today = self._today_factory()
        batch = Batch(
            token=token,
            owner_id=str(owner_id),
            chat_id=str(chat_id),
            items=[BatchItem(ensure_has_date(record, today)) for record in records],
            book_hint=book_hint,
        )
        self._store.put_batch(batch)
        return batch

    async def flush(self, key: str) -> Optional[Batch]:
        """Convert the session for ``key`` into a batch and hand it to the renderer."""
        session = self._store.get_coalescing(key)
        if session is None:
            return None
        if session.has_pending:
            logger.debug("coalescing_flush_deferred", key=key)
            self._arm(key)
            return None

        self._store.pop_coalescing(key)
        batch = self.build_batch(
            owner_id=session.owner_id,
            chat_id=session.chat_id,
            records=session.ready_records(),
            book_hint=session.book_hint,
        )
        logger.info(
            "batch_flushed",
            key=key,
            token=batch.token,
            items=len(batch),
            discarded=len(session.entries) - len(batch),
        )
        await self._on_flush(batch)
        return batch


__all__ = ["CoalescingSlot", "DebounceCoalescer", "generate_token", "grouping_key"]
