"""
Ephemeral session state for the intake engine.

Four keyed maps live here: coalescing sessions (keyed by grouping key),
finalized batches (keyed by token), pending edit prompts (keyed by
``chat:user``) and every prompt id issued to a user, so a late reply to a
prompt that has since expired can still be recognised. Each map is an
``InMemoryTTLStore``; expired entries are dropped lazily on read and in
bulk by ``purge_expired``. Nothing survives a process restart.
"""

from __future__ import annotations

import time
from typing import Callable, Dict, Generic, Iterator, Optional, Tuple, TypeVar

from betslip_intake.core.config import Config
from betslip_intake.domain.records import Batch, CoalescingSession, EditSession, edit_session_key
from betslip_intake.utils.logging_config import get_logger

logger = get_logger(__name__)

V = TypeVar("V")
Clock = Callable[[], float]


def _prompt_key(chat_id: str, user_id: str, message_id: str) -> str:
    return f"{edit_session_key(chat_id, user_id)}:{message_id}"


class InMemoryTTLStore(Generic[V]):
    """Dict-backed store whose entries expire ``ttl_seconds`` after their last write."""

    def __init__(self, ttl_seconds: Optional[float] = None, *, clock: Clock = time.monotonic) -> None:
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._entries: Dict[str, Tuple[V, Optional[float]]] = {}

    def _expires_at(self) -> Optional[float]:
        if self.ttl_seconds is None or self.ttl_seconds <= 0:
            return None
        return self._clock() + self.ttl_seconds

    def _is_expired(self, expires_at: Optional[float]) -> bool:
        return expires_at is not None and expires_at <= self._clock()

    def get(self, key: str) -> Optional[V]:
        entry = self._entries.get(key)
        if entry is None:
            return None
        value, expires_at = entry
        if self._is_expired(expires_at):
            self._entries.pop(key, None)
            return None
        return value

    def set(self, key: str, value: V) -> None:
        self._entries[key] = (value, self._expires_at())

    def pop(self, key: str) -> Optional[V]:
        entry = self._entries.pop(key, None)
        if entry is None:
            return None
        value, expires_at = entry
        if self._is_expired(expires_at):
            return None
        return value

    def delete(self, key: str) -> bool:
        return self.pop(key) is not None

    def purge_expired(self) -> int:
        expired = [key for key, (_, expires_at) in self._entries.items() if self._is_expired(expires_at)]
        for key in expired:
            self._entries.pop(key, None)
        return len(expired)

    def keys(self) -> Iterator[str]:
        return iter([key for key in list(self._entries) if self.get(key) is not None])

    def __contains__(self, key: str) -> bool:
        return self.get(key) is not None

    def __len__(self) -> int:
        return sum(1 for _ in self.keys())


class SessionStore:
    """Process-wide holder of coalescing sessions, batches and edit sessions."""

    def __init__(
        self,
        *,
        coalescing: Optional[InMemoryTTLStore[CoalescingSession]] = None,
        batches: Optional[InMemoryTTLStore[Batch]] = None,
        edits: Optional[InMemoryTTLStore[EditSession]] = None,
        prompts: Optional[InMemoryTTLStore[str]] = None,
        clock: Clock = time.monotonic,
    ) -> None:
        # Coalescing sessions are bounded by their debounce timer, not a TTL
        if coalescing is None:
            coalescing = InMemoryTTLStore(None, clock=clock)
        if batches is None:
            batches = InMemoryTTLStore(Config.BATCH_TTL_SECONDS, clock=clock)
        if edits is None:
            edits = InMemoryTTLStore(Config.EDIT_SESSION_TTL_SECONDS, clock=clock)
        # Issued prompts outlive their edit session; past the batch TTL they are meaningless
        if prompts is None:
            prompts = InMemoryTTLStore(Config.BATCH_TTL_SECONDS, clock=clock)
        self.coalescing = coalescing
        self.batches = batches
        self.edits = edits
        self.prompts = prompts

    # Batches -----------------------------------------------------------------

    def get_batch(self, token: str) -> Optional[Batch]:
        return self.batches.get(token)

    def put_batch(self, batch: Batch) -> None:
        self.batches.set(batch.token, batch)

    def pop_batch(self, token: str) -> Optional[Batch]:
        return self.batches.pop(token)

    def touch_batch(self, token: str) -> bool:
        """Restart the TTL of a live batch; False if it is gone."""
        batch = self.batches.get(token)
        if batch is None:
            return False
        self.batches.set(token, batch)
        return True

    # Edit sessions -----------------------------------------------------------

    def get_edit(self, chat_id: str, user_id: str) -> Optional[EditSession]:
        return self.edits.get(edit_session_key(chat_id, user_id))

    def put_edit(self, session: EditSession) -> Optional[EditSession]:
        """Store ``session``, returning the session it superseded (if any)."""
        previous = self.edits.pop(session.key)
        self.edits.set(session.key, session)
        self.prompts.set(
            _prompt_key(session.chat_id, session.user_id, session.prompt_message_id), session.token
        )
        return previous

    def pop_edit(self, chat_id: str, user_id: str) -> Optional[EditSession]:
        return self.edits.pop(edit_session_key(chat_id, user_id))

    def issued_prompt(self, chat_id: str, user_id: str, message_id: str) -> Optional[str]:
        """Token of the batch a prompt was issued for, even after its session ended."""
        return self.prompts.get(_prompt_key(chat_id, user_id, message_id))

    # Coalescing sessions -----------------------------------------------------

    def get_coalescing(self, key: str) -> Optional[CoalescingSession]:
        return self.coalescing.get(key)

    def put_coalescing(self, session: CoalescingSession) -> None:
        self.coalescing.set(session.key, session)

    def pop_coalescing(self, key: str) -> Optional[CoalescingSession]:
        return self.coalescing.pop(key)

    def purge_expired(self) -> Dict[str, int]:
        purged = {
            "coalescing": self.coalescing.purge_expired(),
            "batches": self.batches.purge_expired(),
            "edits": self.edits.purge_expired(),
            "prompts": self.prompts.purge_expired(),
        }
        if any(purged.values()):
            logger.info("session_store_purged", **purged)
        return purged


__all__ = ["InMemoryTTLStore", "SessionStore"]
