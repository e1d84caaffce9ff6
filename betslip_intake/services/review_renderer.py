"""
Batch review rendering.

``render`` is a pure projection of a batch page into text plus action
rows. ``present`` pushes that view to the chat, editing the batch's
previous review message in place and only falling back to a new message
when there is none or the edit is rejected (deleted, too old, ...).
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from typing import List, Optional

from betslip_intake.core.config import Config
from betslip_intake.core.errors import ChatChannelError
from betslip_intake.domain.actions import Cancel, Confirm, Edit, Page, Remove
from betslip_intake.domain.records import Batch
from betslip_intake.services.chat_channel import ActionButton, ActionRows, ChatChannel
from betslip_intake.utils.logging_config import get_logger

logger = get_logger(__name__)

EMPTY_BATCH_TEXT = "No slips could be read from this submission."


@dataclass(frozen=True)
class ReviewView:
    """Rendered page of a batch."""

    text: str
    actions: ActionRows
    page: int
    total_pages: int
    item_indices: List[int] = field(default_factory=list)


def count_pages(item_count: int, page_size: int) -> int:
    return math.ceil(item_count / page_size) if item_count > 0 else 0


def clamp_page(page: int, total_pages: int) -> int:
    if total_pages <= 0:
        return 0
    return min(max(page, 0), total_pages - 1)


class ReviewRenderer:
    """Projects batches into paginated review messages."""

    def __init__(self, channel: ChatChannel, *, page_size: Optional[int] = None) -> None:
        self._channel = channel
        self.page_size = page_size or Config.REVIEW_PAGE_SIZE

    def render(self, batch: Batch, page: int = 0) -> ReviewView:
        if batch.is_empty:
            return ReviewView(
                text=f"Batch {batch.token}\n{EMPTY_BATCH_TEXT}",
                actions=[[ActionButton("❌ Cancel", Cancel(batch.token))]],
                page=0,
                total_pages=0,
            )

        total_pages = count_pages(len(batch), self.page_size)
        page = clamp_page(page, total_pages)
        start = page * self.page_size
        indices = list(range(start, min(start + self.page_size, len(batch))))

        header = f"Batch {batch.token} · {len(batch)} slip(s)"
        if batch.book_hint:
            header += f" · book: {batch.book_hint}"
        lines = [header]
        if total_pages > 1:
            lines.append(f"Page {page + 1}/{total_pages}")
        lines.append("")

        actions: ActionRows = []
        for index in indices:
            item = batch.items[index]
            lines.append(f"{index + 1}. {item.summary_line}")
            missing = item.record.missing_fields()
            if missing:
                lines.append("   ⚠️ missing: " + ", ".join(f.label.lower() for f in missing))
            actions.append(
                [ActionButton(f"🗑 Remove #{index + 1}", Remove(batch.token, index, batch.revision))]
            )

        actions.append([ActionButton("✏️ Edit", Edit(batch.token))])
        if total_pages > 1:
            nav = []
            if page > 0:
                nav.append(ActionButton("◀️ Prev", Page(batch.token, page - 1)))
            if page < total_pages - 1:
                nav.append(ActionButton("Next ▶️", Page(batch.token, page + 1)))
            actions.append(nav)
        actions.append(
            [
                ActionButton("✅ Confirm", Confirm(batch.token)),
                ActionButton("❌ Cancel", Cancel(batch.token)),
            ]
        )

        return ReviewView(
            text="\n".join(lines),
            actions=actions,
            page=page,
            total_pages=total_pages,
            item_indices=indices,
        )

    async def present(self, batch: Batch, page: int = 0) -> ReviewView:
        """Render ``page`` and show it, converging on a single review message."""
        view = self.render(batch, page)
        await self.show(batch, view.text, view.actions)
        return view

    async def show(self, batch: Batch, text: str, actions: Optional[ActionRows] = None) -> str:
        """Show arbitrary text/actions in the batch's review message slot."""
        if batch.review_message_id:
            try:
                await self._channel.edit_message(
                    batch.chat_id, batch.review_message_id, text, actions=actions
                )
                return batch.review_message_id
            except ChatChannelError as exc:
                logger.info(
                    "review_edit_failed_sending_new",
                    token=batch.token,
                    message_id=batch.review_message_id,
                    error=str(exc),
                )

        message_id = await self._channel.send_message(batch.chat_id, text, actions=actions)
        batch.review_message_id = message_id
        return message_id


__all__ = ["ReviewRenderer", "ReviewView", "count_pages", "clamp_page", "EMPTY_BATCH_TEXT"]
