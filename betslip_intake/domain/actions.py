"""
User actions on a batch, and their callback-data encoding.

Actions are plain frozen dataclasses. The colon-delimited wire form only
exists at the transport boundary: ``encode_action`` when building
buttons, ``decode_action`` when a callback query arrives. Index-addressed
actions carry the batch revision they were rendered under.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, List, Optional, Union

from betslip_intake.core.errors import ActionDecodeError
from betslip_intake.domain.records import EditField

# Telegram rejects callback_data longer than 64 bytes
MAX_CALLBACK_DATA_BYTES = 64


@dataclass(frozen=True)
class Edit:
    token: str
    page: int = 0


@dataclass(frozen=True)
class EditPick:
    token: str
    index: int
    revision: Optional[int] = None


@dataclass(frozen=True)
class EditFieldAction:
    token: str
    index: int
    field: EditField
    revision: Optional[int] = None


@dataclass(frozen=True)
class Remove:
    token: str
    index: int
    revision: Optional[int] = None


@dataclass(frozen=True)
class Page:
    token: str
    page: int


@dataclass(frozen=True)
class Confirm:
    token: str


@dataclass(frozen=True)
class ForceConfirm:
    token: str


@dataclass(frozen=True)
class Cancel:
    token: str


@dataclass(frozen=True)
class Back:
    token: str


Action = Union[Edit, EditPick, EditFieldAction, Remove, Page, Confirm, ForceConfirm, Cancel, Back]

_PREFIXES: Dict[type, str] = {
    Edit: "ed",
    EditPick: "ep",
    EditFieldAction: "ef",
    Remove: "rm",
    Page: "pg",
    Confirm: "ok",
    ForceConfirm: "fc",
    Cancel: "cx",
    Back: "bk",
}


def _with_revision(parts: List[str], revision: Optional[int]) -> List[str]:
    if revision is not None:
        parts.append(str(revision))
    return parts


def encode_action(action: Action) -> str:
    """Serialize an action into compact callback data."""
    prefix = _PREFIXES.get(type(action))
    if prefix is None:
        raise ActionDecodeError(f"Unknown action type: {type(action).__name__}")

    parts = [prefix, action.token]
    if isinstance(action, (EditPick, Remove)):
        parts = _with_revision(parts + [str(action.index)], action.revision)
    elif isinstance(action, EditFieldAction):
        parts = _with_revision(
            parts + [str(action.index), action.field.value], action.revision
        )
    elif isinstance(action, Page):
        parts.append(str(action.page))
    elif isinstance(action, Edit) and action.page:
        parts.append(str(action.page))

    data = ":".join(parts)
    if len(data.encode("utf-8")) > MAX_CALLBACK_DATA_BYTES:
        raise ActionDecodeError(f"Callback data too long: {data!r}")
    return data


def _parse_int(value: str, data: str) -> int:
    try:
        return int(value)
    except ValueError as exc:
        raise ActionDecodeError(f"Invalid number in callback data: {data!r}") from exc


def _optional_revision(args: List[str], position: int, data: str) -> Optional[int]:
    if len(args) > position:
        return _parse_int(args[position], data)
    return None


def _decode_edit_field(token: str, args: List[str], data: str) -> EditFieldAction:
    try:
        edit_field = EditField(args[1])
    except ValueError as exc:
        raise ActionDecodeError(f"Unknown field in callback data: {data!r}") from exc
    return EditFieldAction(
        token=token,
        index=_parse_int(args[0], data),
        field=edit_field,
        revision=_optional_revision(args, 2, data),
    )


_DECODERS: Dict[str, tuple] = {
    "ed": (
        0,
        lambda token, args, data: Edit(token, _parse_int(args[0], data) if args else 0),
    ),
    "ep": (
        1,
        lambda token, args, data: EditPick(
            token, _parse_int(args[0], data), _optional_revision(args, 1, data)
        ),
    ),
    "ef": (2, _decode_edit_field),
    "rm": (
        1,
        lambda token, args, data: Remove(
            token, _parse_int(args[0], data), _optional_revision(args, 1, data)
        ),
    ),
    "pg": (1, lambda token, args, data: Page(token, _parse_int(args[0], data))),
    "ok": (0, lambda token, args, data: Confirm(token)),
    "fc": (0, lambda token, args, data: ForceConfirm(token)),
    "cx": (0, lambda token, args, data: Cancel(token)),
    "bk": (0, lambda token, args, data: Back(token)),
}


def decode_action(data: Optional[str]) -> Action:
    """
    Parse callback data produced by ``encode_action``.

    Raises:
        ActionDecodeError: If the data is empty, unknown or malformed.
    """
    if not data:
        raise ActionDecodeError("Empty callback data")

    prefix, _, rest = data.partition(":")
    decoder = _DECODERS.get(prefix)
    if decoder is None or not rest:
        raise ActionDecodeError(f"Unrecognized callback data: {data!r}")

    min_args, build = decoder
    token, *args = rest.split(":")
    if not token or len(args) < min_args:
        raise ActionDecodeError(f"Malformed callback data: {data!r}")
    return build(token, args, data)


CALLBACK_PATTERN = r"^(%s):" % "|".join(_PREFIXES.values())

__all__ = [
    "Action",
    "Edit",
    "EditPick",
    "EditFieldAction",
    "Remove",
    "Page",
    "Confirm",
    "ForceConfirm",
    "Cancel",
    "Back",
    "CALLBACK_PATTERN",
    "encode_action",
    "decode_action",
]
