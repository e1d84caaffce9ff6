"""
Transport-neutral chat capability consumed by the intake engine.

The engine only needs to send a message (optionally with action buttons
or asking for a reply) and to edit a message it sent before. Failures
surface as ``ChatChannelError``.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import List, Optional, Protocol

from betslip_intake.domain.actions import Action


@dataclass(frozen=True)
class ActionButton:
    """A selectable action rendered as a button."""

    label: str
    action: Action


ActionRows = List[List[ActionButton]]


class ChatChannel(Protocol):
    async def send_message(
        self,
        chat_id: str,
        text: str,
        *,
        actions: Optional[ActionRows] = None,
        request_reply: bool = False,
    ) -> str:
        """Send ``text`` and return the new message id."""
        ...

    async def edit_message(
        self,
        chat_id: str,
        message_id: str,
        text: str,
        *,
        actions: Optional[ActionRows] = None,
    ) -> None:
        """Replace the text and actions of a previously sent message."""
        ...


__all__ = ["ActionButton", "ActionRows", "ChatChannel"]
