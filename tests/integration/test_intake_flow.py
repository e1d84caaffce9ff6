"""
Integration tests for the intake engine.

Drives the engine the way the Telegram transport does (photos, text,
button actions) against in-memory fakes and a virtual clock, from photo
burst to ledger commit.
"""

import asyncio
from decimal import Decimal

import pytest

from betslip_intake.core.errors import ExtractionError, ExtractionNotAuthorized
from betslip_intake.domain.actions import (
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
from betslip_intake.domain.records import EditField
from betslip_intake.services.edit_flow import EXPIRED_TEXT
from betslip_intake.services.intake_engine import (
    NOT_AUTHORIZED_TEXT,
    UNREADABLE_SLIP_TEXT,
    caption_book_hint,
)

IDLE = 1.2
CHAT = "500"
USER = "42"


async def _send_photos(engine, extractor, make_record, confidences, **kwargs):
    for i, confidence in enumerate(confidences):
        image = f"img-{i}".encode()
        if image not in extractor.results:
            extractor.results[image] = make_record(confidence=confidence, event=f"Event {i}")
        await engine.submit_photo(chat_id=CHAT, user_id=USER, image=image, **kwargs)


def _only_batch(engine):
    tokens = list(engine.store.batches.keys())
    assert len(tokens) == 1
    return engine.store.get_batch(tokens[0])


async def _act(engine, action):
    await engine.handle_action(action, chat_id=CHAT, user_id=USER)


def test_caption_book_hint():
    assert caption_book_hint("Bet365") == "Bet365"
    assert caption_book_hint("casa: Betano\nstake: 10") == "betano"
    assert caption_book_hint("stake: 10") is None
    assert caption_book_hint("two\nlines") is None
    assert caption_book_hint(None) is None


@pytest.mark.asyncio
async def test_burst_becomes_one_review_message(engine, channel, extractor, scheduler, make_record):
    await _send_photos(engine, extractor, make_record, [0.9, 0.9, 0.9])
    assert channel.sent == []

    await scheduler.advance(IDLE)

    batch = _only_batch(engine)
    assert len(batch) == 3
    assert len(channel.sent) == 1
    review = channel.sent[0]
    assert review.message_id == batch.review_message_id
    assert "3 slip(s)" in review.text
    assert "1. " in review.text and "3. " in review.text


@pytest.mark.asyncio
async def test_slow_extraction_keeps_photo_order(engine, channel, extractor, scheduler, make_record):
    extractor.results[b"slow"] = make_record(event="Slow first")
    extractor.results[b"fast"] = make_record(event="Fast second")
    extractor.gates[b"slow"] = asyncio.Event()

    slow = asyncio.ensure_future(engine.submit_photo(chat_id=CHAT, user_id=USER, image=b"slow"))
    await asyncio.sleep(0)
    await engine.submit_photo(chat_id=CHAT, user_id=USER, image=b"fast")
    await scheduler.advance(IDLE * 2)
    assert channel.sent == []

    extractor.gates[b"slow"].set()
    await slow
    await scheduler.advance(IDLE)

    batch = _only_batch(engine)
    assert [item.record.event for item in batch.items] == ["Slow first", "Fast second"]


@pytest.mark.asyncio
async def test_image_loader_is_awaited(engine, extractor, scheduler, make_record):
    extractor.results[b"downloaded"] = make_record()

    async def load():
        return b"downloaded"

    await engine.submit_photo(chat_id=CHAT, user_id=USER, image=load)
    await scheduler.advance(IDLE)

    assert extractor.calls[0]["image"] == b"downloaded"
    assert len(_only_batch(engine)) == 1


@pytest.mark.asyncio
async def test_unreadable_slip_is_left_out(engine, channel, extractor, scheduler, make_record):
    extractor.results[b"img-1"] = ExtractionError("blurry")

    await _send_photos(engine, extractor, make_record, [0.9, 0.9, 0.9])
    await scheduler.advance(IDLE)

    assert channel.texts()[0] == UNREADABLE_SLIP_TEXT
    assert [item.record.event for item in _only_batch(engine).items] == ["Event 0", "Event 2"]


@pytest.mark.asyncio
async def test_not_authorized_aborts_without_batch(engine, channel, extractor, scheduler, make_record):
    for i in range(3):
        extractor.results[f"img-{i}".encode()] = ExtractionNotAuthorized("not linked")

    await _send_photos(engine, extractor, make_record, [0.9, 0.9, 0.9])
    await scheduler.advance(IDLE * 3)

    assert list(engine.store.batches.keys()) == []
    assert channel.texts().count(NOT_AUTHORIZED_TEXT) >= 1
    assert all(text == NOT_AUTHORIZED_TEXT for text in channel.texts())


@pytest.mark.asyncio
async def test_caption_sets_book_hint_and_overrides(engine, extractor, scheduler, make_record):
    extractor.results[b"img-0"] = make_record(stake=Decimal("10"))

    await engine.submit_photo(
        chat_id=CHAT, user_id=USER, image=b"img-0", caption="casa: Betano\nstake: 30"
    )
    await scheduler.advance(IDLE)

    batch = _only_batch(engine)
    record = batch.items[0].record
    assert batch.book_hint == "betano"
    assert record.book == "betano"
    assert record.stake == Decimal("30")
    assert extractor.calls[0]["book_hint"] == "betano"


@pytest.mark.asyncio
async def test_album_photos_share_a_batch(engine, extractor, scheduler, make_record):
    await _send_photos(engine, extractor, make_record, [0.9, 0.9], media_group_id="album-7")
    await scheduler.advance(IDLE)

    assert len(_only_batch(engine)) == 2


@pytest.mark.asyncio
async def test_high_confidence_confirm_commits_once(engine, channel, extractor, ledger, scheduler, make_record):
    await _send_photos(engine, extractor, make_record, [0.9, 0.95])
    await scheduler.advance(IDLE)
    batch = _only_batch(engine)

    await _act(engine, Confirm(batch.token))
    await _act(engine, Confirm(batch.token))

    assert len(ledger.calls) == 1
    assert channel.prompts() == []
    assert "Saved 2 of 2" in channel.messages[batch.review_message_id].text
    assert channel.sent[-1].text == EXPIRED_TEXT


@pytest.mark.asyncio
async def test_low_confidence_item_must_be_edited_before_commit(
    engine, channel, extractor, ledger, scheduler, make_record
):
    await _send_photos(engine, extractor, make_record, [0.9, 0.5])
    await scheduler.advance(IDLE)
    batch = _only_batch(engine)

    await _act(engine, Confirm(batch.token))
    assert ledger.calls == []
    picker = channel.messages[batch.review_message_id]
    assert EditFieldAction(batch.token, 1, EditField.STAKE, 0) in picker.action_list()

    await _act(engine, EditFieldAction(batch.token, 1, EditField.STAKE, 0))
    prompt = channel.prompts()[-1]
    handled = await engine.handle_text(
        chat_id=CHAT, user_id=USER, text="25,50", reply_to_message_id=prompt.message_id
    )
    assert handled is True

    await _act(engine, Confirm(batch.token))

    _, items = ledger.calls[0]
    assert items[1]["stake"] == 25.5


@pytest.mark.asyncio
async def test_medium_confidence_force_confirm(engine, channel, extractor, ledger, scheduler, make_record):
    await _send_photos(engine, extractor, make_record, [0.9, 0.7])
    await scheduler.advance(IDLE)
    batch = _only_batch(engine)

    await _act(engine, Confirm(batch.token))
    assert ledger.calls == []
    assert ForceConfirm(batch.token) in channel.messages[batch.review_message_id].action_list()

    await _act(engine, ForceConfirm(batch.token))

    assert len(ledger.calls) == 1


@pytest.mark.asyncio
async def test_edit_dialogue_round_trip(engine, channel, extractor, scheduler, make_record):
    await _send_photos(engine, extractor, make_record, [0.9, 0.9])
    await scheduler.advance(IDLE)
    batch = _only_batch(engine)

    await _act(engine, Edit(batch.token))
    assert EditPick(batch.token, 1, 0) in channel.messages[batch.review_message_id].action_list()
    await _act(engine, EditPick(batch.token, 1, 0))
    await _act(engine, EditFieldAction(batch.token, 1, EditField.DATE, 0))

    prompt = channel.prompts()[-1]
    await engine.handle_text(
        chat_id=CHAT, user_id=USER, text="07/04/2024", reply_to_message_id=prompt.message_id
    )

    assert batch.items[1].record.match_date == "2024-04-07"
    review = channel.messages[batch.review_message_id]
    assert "2024-04-07" in review.text
    assert Confirm(batch.token) in review.action_list()


@pytest.mark.asyncio
async def test_back_returns_to_review(engine, channel, make_batch):
    batch = make_batch(0.9, 0.9)
    await engine.renderer.present(batch)

    await _act(engine, Edit(batch.token))
    await _act(engine, Back(batch.token))

    assert Confirm(batch.token) in channel.messages[batch.review_message_id].action_list()
    assert len(channel.sent) == 1


@pytest.mark.asyncio
async def test_removal_invalidates_old_references(engine, channel, make_batch):
    batch = make_batch(0.9, 0.9, 0.9)
    await engine.renderer.present(batch)

    await _act(engine, EditFieldAction(batch.token, 2, EditField.STAKE, 0))
    prompt = channel.prompts()[-1]
    await _act(engine, Remove(batch.token, 1, 0))

    assert [item.record.event for item in batch.items] == ["Event 0", "Event 2"]
    assert batch.revision == 1
    assert "2 slip(s)" in channel.messages[batch.review_message_id].text
    assert all(item.has_summary for item in batch.items)

    # A Remove button rendered before the removal is rejected
    await _act(engine, Remove(batch.token, 1, 0))
    assert channel.sent[-1].text == EXPIRED_TEXT
    assert len(batch) == 2

    # So is a reply to a prompt opened before the removal
    await engine.handle_text(
        chat_id=CHAT, user_id=USER, text="99", reply_to_message_id=prompt.message_id
    )
    assert channel.sent[-1].text == EXPIRED_TEXT
    assert [item.record.stake for item in batch.items] == [Decimal("20"), Decimal("20")]


@pytest.mark.asyncio
async def test_removing_last_item_leaves_cancel_only(engine, channel, make_batch):
    batch = make_batch(0.9)
    await engine.renderer.present(batch)

    await _act(engine, Remove(batch.token, 0, 0))

    review = channel.messages[batch.review_message_id]
    assert review.action_list() == [Cancel(batch.token)]


@pytest.mark.asyncio
async def test_pagination_action(engine, channel, make_batch):
    batch = make_batch(*([0.9] * 8))
    await engine.renderer.present(batch)

    await _act(engine, Page(batch.token, 1))

    review = channel.messages[batch.review_message_id]
    assert "Page 2/2" in review.text
    assert Remove(batch.token, 7, 0) in review.action_list()
    assert Remove(batch.token, 0, 0) not in review.action_list()


@pytest.mark.asyncio
async def test_cancel_discards_batch(engine, channel, ledger, make_batch):
    batch = make_batch(0.9)
    await engine.renderer.present(batch)

    await _act(engine, Cancel(batch.token))
    assert f"Batch {batch.token} cancelled." == channel.messages[batch.review_message_id].text
    assert engine.store.get_batch(batch.token) is None

    await _act(engine, Confirm(batch.token))
    assert ledger.calls == []
    assert channel.sent[-1].text == EXPIRED_TEXT


@pytest.mark.asyncio
async def test_expired_batch_is_reported(engine, channel, ledger, clock, make_batch):
    batch = make_batch(0.9)

    clock.now += 3601
    await _act(engine, Confirm(batch.token))

    assert ledger.calls == []
    assert channel.sent[-1].text == EXPIRED_TEXT


@pytest.mark.asyncio
async def test_paging_keeps_batch_alive(engine, channel, clock, make_batch):
    batch = make_batch(*([0.9] * 8))
    await engine.renderer.present(batch)

    clock.now += 3000
    await _act(engine, Page(batch.token, 1))
    clock.now += 3000
    await _act(engine, Page(batch.token, 0))

    assert engine.store.get_batch(batch.token) is batch
    assert EXPIRED_TEXT not in channel.texts()


@pytest.mark.asyncio
async def test_late_reply_to_edit_prompt_is_answered(engine, channel, clock, make_batch):
    batch = make_batch(0.9)
    await engine.renderer.present(batch)
    await _act(engine, EditFieldAction(batch.token, 0, EditField.STAKE, 0))
    prompt = channel.prompts()[-1]

    clock.now += 301
    handled = await engine.handle_text(
        chat_id=CHAT, user_id=USER, text="25", reply_to_message_id=prompt.message_id
    )

    assert handled is True
    assert channel.sent[-1].text == EXPIRED_TEXT
    assert batch.items[0].record.stake == Decimal("20")


@pytest.mark.asyncio
async def test_sweep_purges_expired_sessions(engine, clock, make_batch):
    make_batch(0.9)
    clock.now += 3601

    assert engine.sweep()["batches"] == 1


@pytest.mark.asyncio
async def test_typed_slip_becomes_single_item_batch(engine, channel, ledger):
    handled = await engine.handle_text(
        chat_id=CHAT,
        user_id=USER,
        text="casa: Bet365\nevento: Flamengo x Palmeiras\nmercado: Over 2.5\nodd: 1,91\nstake: 50",
    )
    assert handled is True

    batch = _only_batch(engine)
    record = batch.items[0].record
    assert record.book == "bet365"
    assert record.odd == Decimal("1.91")
    assert record.confidence == 1.0
    assert record.match_date is not None

    await _act(engine, Confirm(batch.token))
    assert len(ledger.calls) == 1


@pytest.mark.asyncio
async def test_plain_text_is_not_handled(engine, channel):
    assert await engine.handle_text(chat_id=CHAT, user_id=USER, text="hello there") is False
    assert await engine.handle_text(chat_id=CHAT, user_id=USER, text="stake: 10") is False
    assert channel.sent == []
