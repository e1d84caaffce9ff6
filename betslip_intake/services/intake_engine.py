"""
Intake engine: the transport-independent core of the bot.

Wires the session store, debounce coalescer, review renderer, edit flow
and confirm flow together, and exposes the entry points the transport
calls: ``submit_photo``, ``handle_text`` and ``handle_action``. Stale
references raised anywhere below are turned into an "expired" notice
here.
"""

from __future__ import annotations

from typing import Awaitable, Callable, Dict, Optional, Protocol, Union

from betslip_intake.core.errors import (
    ActionDecodeError,
    ExtractionError,
    ExtractionNotAuthorized,
    StaleReferenceError,
)
from betslip_intake.domain.actions import (
    Action,
    Back,
    Cancel,
    Confirm,
    Edit,
    EditFieldAction,
    EditPick,
    ForceConfirm,
    Page,
    Remove,
)
from betslip_intake.domain.records import (
    USER_VERIFIED_CONFIDENCE,
    Batch,
    EditField,
    ExtractedRecord,
)
from betslip_intake.services.batch_coalescer import DebounceCoalescer, grouping_key
from betslip_intake.services.chat_channel import ChatChannel
from betslip_intake.services.commit_pipeline import (
    CommitPipeline,
    ConfidenceRouter,
    ConfirmFlow,
    LedgerGateway,
)
from betslip_intake.services.edit_flow import EXPIRED_TEXT, EditFlow
from betslip_intake.services.field_coercion import parse_patch
from betslip_intake.services.review_renderer import ReviewRenderer
from betslip_intake.services.scheduler import TaskScheduler
from betslip_intake.services.session_store import SessionStore
from betslip_intake.utils.datetime_helpers import utc_now_iso
from betslip_intake.utils.logging_config import get_logger

logger = get_logger(__name__)

NOT_AUTHORIZED_TEXT = (
    "Your account is not linked yet. Link it in the ledger app, then send the slips again."
)
UNREADABLE_SLIP_TEXT = "One of the slips could not be read and was left out of the batch."
CANCELLED_TEXT = "Batch {token} cancelled."

# A typed slip needs at least one of these to be worth reviewing
TEXT_SLIP_ANCHOR_FIELDS = (EditField.EVENT, EditField.MARKET)

ImageLoader = Callable[[], Awaitable[bytes]]


class SlipExtractor(Protocol):
    async def extract(
        self,
        image: bytes,
        *,
        owner_id: str,
        book_hint: Optional[str] = None,
        caption: Optional[str] = None,
    ) -> ExtractedRecord:
        ...


def caption_book_hint(caption: Optional[str]) -> Optional[str]:
    """A one-line caption without ``key: value`` syntax is taken as the book label."""
    if not caption or not caption.strip():
        return None
    patch = parse_patch(caption)
    if EditField.BOOK in patch.values:
        return patch.values[EditField.BOOK]
    lines = [line.strip() for line in caption.splitlines() if line.strip()]
    if patch.is_empty and len(lines) == 1:
        return lines[0]
    return None


class IntakeEngine:
    """Batch aggregation and interactive review engine."""

    def __init__(
        self,
        *,
        channel: ChatChannel,
        extractor: SlipExtractor,
        ledger: LedgerGateway,
        scheduler: TaskScheduler,
        store: Optional[SessionStore] = None,
        router: Optional[ConfidenceRouter] = None,
        page_size: Optional[int] = None,
        idle_seconds: Optional[float] = None,
    ) -> None:
        self.channel = channel
        self.extractor = extractor
        self.store = store if store is not None else SessionStore()
        self.renderer = ReviewRenderer(channel, page_size=page_size)
        self.coalescer = DebounceCoalescer(
            self.store, scheduler, self._present_new_batch, idle_seconds=idle_seconds
        )
        self.edit_flow = EditFlow(self.store, channel, self.renderer)
        self.pipeline = CommitPipeline(self.store, ledger)
        self.confirm_flow = ConfirmFlow(
            self.store, self.renderer, self.edit_flow, self.pipeline, router
        )
        self._handlers: Dict[type, Callable[[Action, str], Awaitable[None]]] = {
            Edit: self._on_edit,
            EditPick: self._on_edit_pick,
            EditFieldAction: self._on_edit_field,
            Remove: self._on_remove,
            Page: self._on_page,
            Confirm: self._on_confirm,
            ForceConfirm: self._on_force_confirm,
            Cancel: self._on_cancel,
            Back: self._on_back,
        }

    async def _present_new_batch(self, batch: Batch) -> None:
        await self.renderer.present(batch, 0)

    def _require_batch(self, token: str) -> Batch:
        batch = self.store.get_batch(token)
        if batch is None:
            raise StaleReferenceError(f"Batch {token} not found")
        return batch

    # Submissions -------------------------------------------------------------

    async def submit_photo(
        self,
        *,
        chat_id: str,
        user_id: str,
        image: Union[bytes, ImageLoader],
        caption: Optional[str] = None,
        media_group_id: Optional[str] = None,
    ) -> None:
        """
        Extract one slip photo and feed it into its coalescing session.

        ``image`` may be the raw bytes or a coroutine function that downloads
        them; the position in the batch is reserved before either is awaited.
        """
        chat_id, user_id = str(chat_id), str(user_id)
        key = grouping_key(chat_id, media_group_id)
        overrides = parse_patch(caption)
        book_hint = caption_book_hint(caption)
        received_at = utc_now_iso()

        slot = self.coalescer.reserve(key, owner_id=user_id, chat_id=chat_id)
        try:
            if callable(image):
                image = await image()
            record = await self.extractor.extract(
                image, owner_id=user_id, book_hint=book_hint, caption=caption
            )
        except ExtractionNotAuthorized:
            if self.coalescer.abort(key) is not None:
                logger.warning("extraction_not_authorized", chat_id=chat_id, user_id=user_id)
                await self.channel.send_message(chat_id, NOT_AUTHORIZED_TEXT)
            return
        except ExtractionError as exc:
            logger.warning("extraction_failed", chat_id=chat_id, key=key, error=str(exc))
            if slot.discard():
                await self.channel.send_message(chat_id, UNREADABLE_SLIP_TEXT)
            return
        except Exception:
            slot.discard()
            raise

        overrides.apply(record)
        record.metadata.setdefault("received_at", received_at)
        slot.resolve(record, book_hint)

    async def submit_text_slip(self, *, chat_id: str, user_id: str, text: str) -> Optional[Batch]:
        """Turn a typed ``key: value`` slip into a single-item batch."""
        patch = parse_patch(text)
        if not any(anchor in patch.values for anchor in TEXT_SLIP_ANCHOR_FIELDS):
            return None

        record = patch.to_record(confidence=USER_VERIFIED_CONFIDENCE)
        record.metadata.update({"source": "text", "received_at": utc_now_iso()})
        batch = self.coalescer.build_batch(
            owner_id=str(user_id), chat_id=str(chat_id), records=[record], book_hint=record.book
        )
        logger.info(
            "text_slip_submitted",
            token=batch.token,
            chat_id=chat_id,
            ignored_lines=len(patch.ignored),
            invalid_fields=[f.value for f in patch.errors],
        )
        await self.renderer.present(batch, 0)
        return batch

    async def handle_text(
        self,
        *,
        chat_id: str,
        user_id: str,
        text: str,
        reply_to_message_id: Optional[str] = None,
    ) -> bool:
        """Route a text message: edit reply first, then typed slip. False if unhandled."""
        if await self.edit_flow.handle_reply(
            chat_id=chat_id,
            user_id=user_id,
            reply_to_message_id=reply_to_message_id,
            text=text,
        ):
            return True
        return await self.submit_text_slip(chat_id=chat_id, user_id=user_id, text=text) is not None

    # Actions -----------------------------------------------------------------

    async def handle_action(self, action: Action, *, chat_id: str, user_id: str) -> None:
        handler = self._handlers.get(type(action))
        if handler is None:
            raise ActionDecodeError(f"No handler for {type(action).__name__}")
        # Any interaction with a batch keeps it alive, not only mutations
        self.store.touch_batch(action.token)
        try:
            await handler(action, str(user_id))
        except StaleReferenceError as exc:
            logger.info(
                "stale_action",
                action=type(action).__name__,
                token=action.token,
                error=str(exc),
            )
            await self.channel.send_message(str(chat_id), EXPIRED_TEXT)

    async def _on_edit(self, action: Edit, user_id: str) -> None:
        await self.edit_flow.show_item_picker(action.token, action.page)

    async def _on_edit_pick(self, action: EditPick, user_id: str) -> None:
        await self.edit_flow.show_field_picker(action.token, action.index, action.revision)

    async def _on_edit_field(self, action: EditFieldAction, user_id: str) -> None:
        await self.edit_flow.start_field_edit(
            action.token,
            action.index,
            action.field,
            user_id=user_id,
            revision=action.revision,
        )

    async def _on_remove(self, action: Remove, user_id: str) -> None:
        batch = self._require_batch(action.token)
        removed = batch.remove_item(action.index, action.revision)
        self.store.put_batch(batch)
        logger.info(
            "batch_item_removed",
            token=batch.token,
            index=action.index,
            remaining=len(batch),
            removed_event=removed.record.event,
        )
        await self.renderer.present(batch, 0)

    async def _on_page(self, action: Page, user_id: str) -> None:
        await self.renderer.present(self._require_batch(action.token), action.page)

    async def _on_confirm(self, action: Confirm, user_id: str) -> None:
        await self.confirm_flow.confirm(action.token)

    async def _on_force_confirm(self, action: ForceConfirm, user_id: str) -> None:
        await self.confirm_flow.confirm(action.token, force=True)

    async def _on_cancel(self, action: Cancel, user_id: str) -> None:
        batch = self.store.pop_batch(action.token)
        if batch is None:
            raise StaleReferenceError(f"Batch {action.token} not found")
        logger.info("batch_cancelled", token=batch.token, items=len(batch))
        await self.renderer.show(batch, CANCELLED_TEXT.format(token=batch.token))

    async def _on_back(self, action: Back, user_id: str) -> None:
        await self.renderer.present(self._require_batch(action.token), 0)

    def sweep(self) -> Dict[str, int]:
        """Drop expired batches and edit sessions."""
        return self.store.purge_expired()


__all__ = [
    "IntakeEngine",
    "SlipExtractor",
    "caption_book_hint",
    "NOT_AUTHORIZED_TEXT",
    "UNREADABLE_SLIP_TEXT",
]
