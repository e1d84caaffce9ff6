"""
Multi-step field editing for batch items.

Flow: item picker -> field picker -> reply-requesting prompt -> value.
The prompt's message id is stored in an ``EditSession`` keyed by
(chat, user); only a text message replying to exactly that prompt is
consumed; a reply to one of the user's earlier prompts gets the
"expired" notice. Anything else falls through to the caller's other text
handling. Every step re-fetches the batch by token and checks the
revision, so removals and cancellations in between surface as
"expired" instead of touching the wrong item.
"""

from __future__ import annotations

from typing import Optional

from betslip_intake.core.errors import StaleReferenceError
from betslip_intake.domain.actions import Back, Edit, EditFieldAction, EditPick
from betslip_intake.domain.records import (
    USER_VERIFIED_CONFIDENCE,
    Batch,
    EditField,
    EditSession,
)
from betslip_intake.services.chat_channel import ActionButton, ActionRows, ChatChannel
from betslip_intake.services.field_coercion import CLEAR_FIELD_TOKEN, coerce_field_value
from betslip_intake.services.review_renderer import ReviewRenderer, clamp_page, count_pages
from betslip_intake.services.session_store import SessionStore
from betslip_intake.utils.logging_config import get_logger

logger = get_logger(__name__)

EXPIRED_TEXT = "This batch has expired. Please resubmit the slips."
FIELDS_PER_ROW = 2


def _display_value(value: object) -> str:
    if value is None or value == "":
        return "—"
    return str(value)


class EditFlow:
    """Drives the edit dialogue and applies replies to batch items."""

    def __init__(self, store: SessionStore, channel: ChatChannel, renderer: ReviewRenderer) -> None:
        self._store = store
        self._channel = channel
        self._renderer = renderer

    def _require_batch(self, token: str) -> Batch:
        batch = self._store.get_batch(token)
        if batch is None:
            raise StaleReferenceError(f"Batch {token} not found")
        return batch

    async def show_item_picker(self, token: str, page: int = 0) -> None:
        """Show one page of item buttons, paged like the review itself."""
        batch = self._require_batch(token)
        if batch.is_empty:
            raise StaleReferenceError(f"Batch {token} has no items to edit")

        page_size = self._renderer.page_size
        total_pages = count_pages(len(batch), page_size)
        page = clamp_page(page, total_pages)
        start = page * page_size

        rows: ActionRows = []
        for index in range(start, min(start + page_size, len(batch))):
            record = batch.items[index].record
            label = record.event or record.book or "slip"
            rows.append(
                [ActionButton(f"#{index + 1} {label}"[:40], EditPick(token, index, batch.revision))]
            )
        if total_pages > 1:
            nav = []
            if page > 0:
                nav.append(ActionButton("◀️ Prev", Edit(token, page - 1)))
            if page < total_pages - 1:
                nav.append(ActionButton("Next ▶️", Edit(token, page + 1)))
            rows.append(nav)
        rows.append([ActionButton("↩️ Back", Back(token))])

        text = "Which slip do you want to edit?"
        if total_pages > 1:
            text += f" (page {page + 1}/{total_pages})"
        await self._renderer.show(batch, text, rows)

    async def show_field_picker(
        self,
        token: str,
        index: int,
        revision: Optional[int] = None,
        *,
        note: Optional[str] = None,
    ) -> None:
        batch = self._require_batch(token)
        item = batch.item_at(index, revision)

        lines = []
        if note:
            lines.extend([note, ""])
        lines.append(f"Slip #{index + 1}: {item.summary_line}")
        lines.append("Choose the field to edit:")

        buttons = [
            ActionButton(edit_field.label, EditFieldAction(token, index, edit_field, batch.revision))
            for edit_field in EditField
        ]
        rows: ActionRows = [
            buttons[start : start + FIELDS_PER_ROW]
            for start in range(0, len(buttons), FIELDS_PER_ROW)
        ]
        rows.append([ActionButton("↩️ Back", Back(token))])
        await self._renderer.show(batch, "\n".join(lines), rows)

    async def start_field_edit(
        self,
        token: str,
        index: int,
        edit_field: EditField,
        *,
        user_id: str,
        revision: Optional[int] = None,
    ) -> EditSession:
        """Send the value prompt and remember which reply will answer it."""
        batch = self._require_batch(token)
        item = batch.item_at(index, revision)
        # The index is only valid for the revision it was checked against
        revision = batch.revision
        edit_field = EditField(edit_field)

        prompt = (
            f"Send the new {edit_field.label.lower()} for slip #{index + 1} "
            f"(current: {_display_value(item.record.get(edit_field))}).\n"
            f"Reply to this message; send {CLEAR_FIELD_TOKEN} to clear it."
        )
        prompt_id = await self._channel.send_message(batch.chat_id, prompt, request_reply=True)

        session = EditSession(
            chat_id=batch.chat_id,
            user_id=str(user_id),
            token=token,
            item_index=index,
            field=edit_field,
            prompt_message_id=str(prompt_id),
            revision=revision,
        )
        previous = self._store.put_edit(session)
        if previous is not None:
            logger.info(
                "edit_session_superseded",
                chat_id=batch.chat_id,
                user_id=user_id,
                previous_token=previous.token,
                previous_prompt=previous.prompt_message_id,
            )
        logger.info(
            "edit_session_started",
            token=token,
            index=index,
            field=edit_field.value,
            prompt_message_id=session.prompt_message_id,
        )
        return session

    async def handle_reply(
        self,
        *,
        chat_id: str,
        user_id: str,
        reply_to_message_id: Optional[str],
        text: str,
    ) -> bool:
        """
        Apply ``text`` if it answers the user's pending prompt.

        Returns:
            True when the message was consumed by the edit flow.
        """
        if reply_to_message_id is None:
            return False
        chat_id, user_id = str(chat_id), str(user_id)
        reply_to = str(reply_to_message_id)
        session = self._store.get_edit(chat_id, user_id)
        if session is None or reply_to != session.prompt_message_id:
            token = self._store.issued_prompt(chat_id, user_id, reply_to)
            if token is None:
                return False
            logger.info("edit_reply_to_closed_prompt", token=token, prompt_message_id=reply_to)
            await self._channel.send_message(chat_id, EXPIRED_TEXT)
            return True

        self._store.pop_edit(chat_id, user_id)
        batch = self._store.get_batch(session.token)
        try:
            if batch is None:
                raise StaleReferenceError(f"Batch {session.token} not found")
            item = batch.item_at(session.item_index, session.revision)
        except StaleReferenceError as exc:
            logger.info("edit_reply_stale", token=session.token, error=str(exc))
            await self._channel.send_message(chat_id, EXPIRED_TEXT)
            return True

        value = coerce_field_value(session.field, text)
        item.update(session.field, value)
        item.record.confidence = USER_VERIFIED_CONFIDENCE
        self._store.put_batch(batch)
        logger.info(
            "edit_applied",
            token=batch.token,
            index=session.item_index,
            field=session.field.value,
            cleared=value is None,
        )

        await self._renderer.present(batch, session.item_index // self._renderer.page_size)
        return True


__all__ = ["EditFlow", "EXPIRED_TEXT"]
