"""
Telegram Bot implementation for the Betslip Intake bot.

This module handles:
- Receiving slip photos (single, bursts and albums) via Telegram
- Typed ``key: value`` slips and replies to edit prompts
- Inline-button actions on review messages
- Plain text wallet commands (deposit / withdraw)
"""

import inspect
import re
import time
from collections import defaultdict
from decimal import Decimal
from typing import Any, Callable, Dict, Optional, Tuple

from telegram import Update
from telegram.ext import (
    Application,
    CallbackQueryHandler,
    CommandHandler,
    ContextTypes,
    MessageHandler,
    filters,
)

from betslip_intake.core.config import Config
from betslip_intake.core.errors import ActionDecodeError, LedgerError
from betslip_intake.domain.actions import CALLBACK_PATTERN, decode_action
from betslip_intake.integrations.extraction_client import ExtractionClient
from betslip_intake.integrations.ledger_client import LedgerClient
from betslip_intake.integrations.openai_client import OpenAIClient
from betslip_intake.integrations.telegram_channel import TelegramChatChannel
from betslip_intake.services.field_coercion import parse_money
from betslip_intake.services.intake_engine import IntakeEngine, SlipExtractor
from betslip_intake.services.scheduler import AsyncioScheduler, JobQueueScheduler
from betslip_intake.utils.logging_config import get_logger

# Configure structured logging
logger = get_logger(__name__)

MAX_WALLET_AMOUNT = Decimal("1000000")
FUNDING_COMMAND_PATTERN = re.compile(
    r"^\s*(deposit|withdraw)\s+(\S+)\s*$",
    re.IGNORECASE,
)
GENERIC_ERROR_TEXT = "An error occurred while processing your request."
HELP_TEXT = (
    "Send photos of your betting slips. Photos sent together are grouped into one batch "
    "for review.\n\n"
    "Caption a photo with the bookmaker name, or with lines like 'stake: 25'.\n"
    "Type a slip as lines of 'field: value' (book, event, market, odds, stake, sport, date).\n\n"
    "Wallet:\n"
    "- deposit <amount>\n"
    "- withdraw <amount>"
)


def build_extractor() -> SlipExtractor:
    """Create the configured extraction backend."""
    if Config.EXTRACTION_BACKEND == "openai":
        return OpenAIClient()
    return ExtractionClient()


class TelegramBot:
    """Telegram Bot for betting slip intake."""

    def __init__(
        self,
        *,
        extractor: Optional[SlipExtractor] = None,
        ledger: Optional[LedgerClient] = None,
    ):
        """Initialize the Telegram bot."""
        self.bot_token = Config.TELEGRAM_BOT_TOKEN
        if not self.bot_token:
            raise ValueError("TELEGRAM_BOT_TOKEN not configured")

        # Rate limiting for commands: track last command time per user
        self._user_last_command: Dict[int, float] = defaultdict(float)
        self._rate_limit_seconds = 2

        # Photos of one album arrive as separate updates; handle them concurrently
        self.application = (
            Application.builder().token(self.bot_token).concurrent_updates(True).build()
        )

        self.ledger = ledger or LedgerClient()
        scheduler = (
            JobQueueScheduler(self.application.job_queue)
            if self.application.job_queue
            else AsyncioScheduler()
        )
        self.engine = IntakeEngine(
            channel=TelegramChatChannel(self.application.bot),
            extractor=extractor or build_extractor(),
            ledger=self.ledger,
            scheduler=scheduler,
        )

        self._setup_handlers()
        self._schedule_jobs()

    @staticmethod
    async def _invoke(func: Callable[..., Any], *args, **kwargs):
        """Invoke a callable and await the result if it is awaitable."""
        result = func(*args, **kwargs)
        if inspect.isawaitable(result):
            await result
        return result

    @staticmethod
    def _get_effective_message(update: Update):
        """Safely extract the effective message from an update."""
        primary = getattr(update, "message", None)
        if primary is not None and hasattr(primary, "reply_text"):
            return primary
        message = getattr(update, "effective_message", None)
        if message is not None and hasattr(message, "reply_text"):
            return message
        return primary or message

    def _setup_handlers(self) -> None:
        """Set up command and message handlers."""
        self.application.add_handler(
            CommandHandler("start", self._rate_limited(self._start_command))
        )
        self.application.add_handler(CommandHandler("help", self._rate_limited(self._help_command)))

        # Slip photos are not rate limited: albums arrive as bursts
        self.application.add_handler(MessageHandler(filters.PHOTO, self._photo_message))
        self.application.add_handler(
            MessageHandler(filters.Document.IMAGE, self._document_message)
        )

        self.application.add_handler(
            MessageHandler(filters.TEXT & (~filters.COMMAND), self._text_message)
        )

        self.application.add_handler(
            CallbackQueryHandler(self._callback_query, pattern=CALLBACK_PATTERN)
        )

    def _schedule_jobs(self) -> None:
        """Schedule recurring background jobs."""
        if not self.application.job_queue:
            return

        self.application.job_queue.run_repeating(
            self._sweep_sessions_job,
            interval=Config.SESSION_SWEEP_INTERVAL_SECONDS,
            first=Config.SESSION_SWEEP_INTERVAL_SECONDS,
            name="session-sweep",
        )

    def _rate_limited(self, handler):
        """
        Decorator to apply rate limiting to handlers.

        Args:
            handler: The handler function to wrap

        Returns:
            Wrapped handler with rate limiting
        """

        async def wrapped(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
            user = update.effective_user
            user_id = user.id if user else None

            if user_id is not None:
                current_time = time.time()
                delta = current_time - self._user_last_command[user_id]
                if delta < self._rate_limit_seconds:
                    remaining = self._rate_limit_seconds - delta
                    message = self._get_effective_message(update)
                    if message:
                        await self._invoke(
                            message.reply_text,
                            f"Rate limit exceeded. Please wait {remaining:.1f} seconds before trying again.",
                        )
                    logger.warning(
                        "rate_limit_exceeded", user_id=user_id, remaining_seconds=remaining
                    )
                    return

                self._user_last_command[user_id] = current_time

            await handler(update, context)

        return wrapped

    async def _start_command(self, update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
        message = self._get_effective_message(update)
        if message:
            await self._invoke(
                message.reply_text,
                "Hi! Send me photos of your betting slips and I will prepare them for the ledger.\n"
                "Use /help to see everything I understand.",
            )

    async def _help_command(self, update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
        message = self._get_effective_message(update)
        if message:
            await self._invoke(message.reply_text, HELP_TEXT)

    async def _photo_message(self, update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
        """Handle a compressed photo (largest size is used)."""
        message = self._get_effective_message(update)
        if not message or not message.photo:
            return
        await self._process_incoming_media(update, message, message.photo[-1], label="photo")

    async def _document_message(self, update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
        """Handle an image sent as a file."""
        message = self._get_effective_message(update)
        if not message or not message.document:
            return
        await self._process_incoming_media(update, message, message.document, label="document")

    async def _process_incoming_media(self, update: Update, message, media, *, label: str) -> None:
        chat_id = str(update.effective_chat.id)
        user_id = str(update.effective_user.id) if update.effective_user else chat_id

        async def load_image() -> bytes:
            telegram_file = await media.get_file()
            return bytes(await telegram_file.download_as_bytearray())

        try:
            await self.engine.submit_photo(
                chat_id=chat_id,
                user_id=user_id,
                image=load_image,
                caption=message.caption,
                media_group_id=message.media_group_id,
            )
        except Exception as error:
            await self._handle_media_error(error, message, chat_id, label)

    async def _handle_media_error(self, error: Exception, message, chat_id: str, label: str) -> None:
        logger.error(
            "slip_media_error",
            chat_id=chat_id,
            media_type=label,
            error=str(error),
            exc_info=True,
        )
        try:
            await self._invoke(message.reply_text, f"Sorry, I could not process that {label}.")
        except Exception:
            logger.exception("slip_media_error_reply_failed", chat_id=chat_id)

    async def _text_message(self, update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
        """Handle plain text: edit replies, typed slips and wallet commands.

        Supported wallet commands (case-insensitive):
        - deposit <amount>
        - withdraw <amount>
        """
        message = self._get_effective_message(update)
        if not message:
            return
        chat_id = str(update.effective_chat.id)
        user_id = str(update.effective_user.id) if update.effective_user else chat_id
        text = (message.text or "").strip()
        reply_to = message.reply_to_message.message_id if message.reply_to_message else None

        try:
            if await self.engine.handle_text(
                chat_id=chat_id,
                user_id=user_id,
                text=text,
                reply_to_message_id=str(reply_to) if reply_to is not None else None,
            ):
                return

            parsed = self._parse_funding_command(text)
            if not parsed:
                return

            command_type, amount = parsed
            await self.ledger.record_wallet_event(user_id, command_type, amount)
            verb = "Deposit" if command_type == "DEPOSIT" else "Withdrawal"
            await self._invoke(message.reply_text, f"{verb} of {amount} recorded.")

        except ValueError as e:
            await self._invoke(
                message.reply_text,
                f"{e} Usage: 'deposit <amount>' or 'withdraw <amount>'",
            )
        except LedgerError as e:
            logger.error("wallet_event_failed", chat_id=chat_id, user_id=user_id, error=str(e))
            await self._invoke(message.reply_text, "The ledger is unavailable, please try again later.")
        except Exception as e:
            try:
                await self._invoke(message.reply_text, GENERIC_ERROR_TEXT)
            except Exception:
                logger.exception("text_error_reply_failed", chat_id=chat_id)
            logger.error(
                "text_message_error",
                chat_id=chat_id,
                user_id=user_id,
                error=str(e),
                exc_info=True,
            )

    @staticmethod
    def _parse_funding_command(text: str) -> Optional[Tuple[str, Decimal]]:
        """Parse a wallet command from text.

        Returns (command_type, amount) where command_type is 'DEPOSIT' or 'WITHDRAWAL'.
        Returns None if not matched. Raises ValueError for invalid amount.
        """
        m = FUNDING_COMMAND_PATTERN.match(text or "")
        if not m:
            return None
        command_type = "DEPOSIT" if m.group(1).lower() == "deposit" else "WITHDRAWAL"
        amount = parse_money(m.group(2))
        if amount is None:
            raise ValueError("Invalid amount.")
        if amount <= 0:
            raise ValueError("Amounts must be positive.")
        if amount > MAX_WALLET_AMOUNT:
            raise ValueError(f"Amounts cannot exceed {MAX_WALLET_AMOUNT}.")
        return command_type, amount

    async def _callback_query(self, update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
        """Decode an inline-button press and hand it to the engine."""
        query = update.callback_query
        if query is None:
            return
        chat_id = str(query.message.chat_id) if query.message else None
        user_id = str(query.from_user.id) if query.from_user else chat_id

        try:
            action = decode_action(query.data)
        except ActionDecodeError as exc:
            logger.warning("callback_decode_failed", data=query.data, error=str(exc))
            await query.answer("This button is no longer valid.")
            return

        await query.answer()
        if chat_id is None:
            return
        try:
            await self.engine.handle_action(action, chat_id=chat_id, user_id=user_id)
        except Exception as e:
            logger.error(
                "callback_action_error",
                chat_id=chat_id,
                user_id=user_id,
                action=type(action).__name__,
                error=str(e),
                exc_info=True,
            )
            try:
                await self.engine.channel.send_message(chat_id, GENERIC_ERROR_TEXT)
            except Exception:
                logger.exception("callback_error_reply_failed", chat_id=chat_id)

    async def _sweep_sessions_job(self, context: ContextTypes.DEFAULT_TYPE) -> None:
        """Drop expired batches and edit sessions."""
        self.engine.sweep()

    def run(self) -> None:
        """Start the bot with long polling."""
        logger.info("telegram_bot_starting", extraction_backend=Config.EXTRACTION_BACKEND)
        self.application.run_polling(allowed_updates=Update.ALL_TYPES)


def main() -> None:
    """Entry point for running the bot."""
    Config.validate()
    bot = TelegramBot()
    bot.run()


if __name__ == "__main__":
    main()
