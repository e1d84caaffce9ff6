"""
python-telegram-bot implementation of the engine's chat channel.

Actions become inline keyboard buttons whose callback data is produced by
``encode_action``; reply-requesting prompts use ``ForceReply`` so the
user's answer arrives as a reply to the prompt message.
"""

from __future__ import annotations

from typing import Optional

from telegram import Bot, ForceReply, InlineKeyboardButton, InlineKeyboardMarkup
from telegram.error import BadRequest, TelegramError

from betslip_intake.core.errors import ChatChannelError
from betslip_intake.domain.actions import encode_action
from betslip_intake.services.chat_channel import ActionRows
from betslip_intake.utils.logging_config import get_logger

logger = get_logger(__name__)


def build_markup(actions: Optional[ActionRows]) -> Optional[InlineKeyboardMarkup]:
    """Convert action rows into an inline keyboard (None when there are no actions)."""
    if not actions:
        return None
    keyboard = [
        [
            InlineKeyboardButton(button.label, callback_data=encode_action(button.action))
            for button in row
        ]
        for row in actions
        if row
    ]
    if not keyboard:
        return None
    return InlineKeyboardMarkup(keyboard)


class TelegramChatChannel:
    """Chat channel over a python-telegram-bot ``Bot``."""

    def __init__(self, bot: Bot) -> None:
        self._bot = bot

    async def send_message(
        self,
        chat_id: str,
        text: str,
        *,
        actions: Optional[ActionRows] = None,
        request_reply: bool = False,
    ) -> str:
        reply_markup = ForceReply(selective=True) if request_reply else build_markup(actions)
        try:
            message = await self._bot.send_message(
                chat_id=chat_id, text=text, reply_markup=reply_markup
            )
        except TelegramError as exc:
            logger.error("telegram_send_failed", chat_id=chat_id, error=str(exc))
            raise ChatChannelError(str(exc)) from exc
        return str(message.message_id)

    async def edit_message(
        self,
        chat_id: str,
        message_id: str,
        text: str,
        *,
        actions: Optional[ActionRows] = None,
    ) -> None:
        try:
            await self._bot.edit_message_text(
                chat_id=chat_id,
                message_id=int(message_id),
                text=text,
                reply_markup=build_markup(actions),
            )
        except BadRequest as exc:
            # Re-rendering an unchanged view is not an error
            if "message is not modified" in str(exc).lower():
                return
            raise ChatChannelError(str(exc)) from exc
        except TelegramError as exc:
            raise ChatChannelError(str(exc)) from exc


__all__ = ["TelegramChatChannel", "build_markup"]
