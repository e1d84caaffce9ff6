"""
Unit tests for confidence routing and the commit pipeline.

Tests cover:
- Routing on low / medium / high confidence
- Ledger payload projection
- Partial failures and ledger errors
- At-most-once commit per batch token
"""

import asyncio
from decimal import Decimal

import pytest

from betslip_intake.core.errors import LedgerError, StaleReferenceError
from betslip_intake.domain.actions import Edit, EditFieldAction, ForceConfirm
from betslip_intake.domain.records import Batch, BatchItem
from betslip_intake.services.commit_pipeline import (
    CommitSummary,
    ConfidenceRouter,
    Route,
    summarize_results,
)


def _batch(make_record, *confidences):
    return Batch(
        token="tok1",
        owner_id="42",
        chat_id="500",
        items=[BatchItem(make_record(confidence=c)) for c in confidences],
    )


class TestConfidenceRouter:
    @pytest.fixture
    def router(self):
        return ConfidenceRouter(low_threshold=0.6, high_threshold=0.85)

    def test_all_high_auto_commits(self, router, make_record):
        assert router.route(_batch(make_record, 0.9, 0.95)).route is Route.AUTO_COMMIT

    def test_first_low_item_forces_review(self, router, make_record):
        decision = router.route(_batch(make_record, 0.9, 0.5, 0.1))

        assert decision.route is Route.FORCE_REVIEW
        assert decision.item_index == 1
        assert decision.confidence == 0.5

    def test_medium_offers_override(self, router, make_record):
        assert router.route(_batch(make_record, 0.9, 0.7)).route is Route.OFFER_OVERRIDE

    def test_missing_confidence_counts_as_zero(self, router, make_record):
        assert router.route(_batch(make_record, None)).route is Route.FORCE_REVIEW

    def test_threshold_boundaries(self, router, make_record):
        assert router.route(_batch(make_record, 0.6)).route is Route.OFFER_OVERRIDE
        assert router.route(_batch(make_record, 0.85)).route is Route.AUTO_COMMIT


def test_summarize_results_counts_missing_results_as_failed():
    assert summarize_results([{"ok": True}, {"ok": False}], 3) == CommitSummary(1, 2)
    assert summarize_results([{"ok": True}, "garbage"], 2) == CommitSummary(1, 1)


@pytest.mark.asyncio
async def test_high_confidence_commits_without_prompts(engine, channel, ledger, store, make_batch):
    batch = make_batch(0.9, 0.95)

    summary = await engine.confirm_flow.confirm(batch.token)

    assert summary == CommitSummary(2, 0)
    assert len(ledger.calls) == 1
    assert channel.prompts() == []
    assert store.get_batch(batch.token) is None
    assert "Saved 2 of 2" in channel.messages[batch.review_message_id].text


@pytest.mark.asyncio
async def test_low_confidence_opens_edit_on_that_item(engine, channel, ledger, store, make_batch):
    batch = make_batch(0.9, 0.5)

    assert await engine.confirm_flow.confirm(batch.token) is None

    assert ledger.calls == []
    actions = channel.sent[-1].action_list()
    assert {a.index for a in actions if isinstance(a, EditFieldAction)} == {1}
    assert "low confidence" in channel.sent[-1].text
    assert store.get_batch(batch.token) is batch


@pytest.mark.asyncio
async def test_medium_confidence_offers_force_confirm(engine, channel, ledger, make_batch):
    batch = make_batch(0.9, 0.7)

    await engine.confirm_flow.confirm(batch.token)

    assert ledger.calls == []
    assert channel.sent[-1].action_list() == [ForceConfirm(batch.token), Edit(batch.token)]

    summary = await engine.confirm_flow.confirm(batch.token, force=True)

    assert summary.ok_count == 2
    assert len(ledger.calls) == 1


@pytest.mark.asyncio
async def test_ledger_receives_allow_listed_fields_only(engine, ledger, make_batch, make_record):
    record = make_record(confidence=0.95, stake=Decimal("25.50"))
    record.metadata = {"raw_response": "secret", "model_version": "x"}
    batch = make_batch(record, owner_id="77")

    await engine.pipeline.commit(batch.token)

    owner_id, items = ledger.calls[0]
    assert owner_id == "77"
    assert items == [
        {
            "book": "bet365",
            "event": "Flamengo x Palmeiras",
            "market": "Over 2.5",
            "odd": 1.91,
            "stake": 25.5,
            "sport": "football",
            "date": "2024-03-05",
        }
    ]


@pytest.mark.asyncio
async def test_partial_failure_is_reported(engine, channel, ledger, make_batch):
    ledger.results = [{"ok": True}, {"ok": False, "error": "duplicate"}]
    batch = make_batch(0.9, 0.9)

    summary = await engine.confirm_flow.confirm(batch.token)

    assert summary == CommitSummary(1, 1)
    text = channel.messages[batch.review_message_id].text
    assert "Saved 1 of 2" in text
    assert "1 slip(s) were rejected" in text


@pytest.mark.asyncio
async def test_ledger_error_discards_batch(engine, channel, ledger, store, make_batch):
    ledger.error = LedgerError("Ledger returned HTTP 503", status_code=503)
    batch = make_batch(0.9)

    assert await engine.confirm_flow.confirm(batch.token) is None

    assert store.get_batch(batch.token) is None
    assert "Could not save batch" in channel.messages[batch.review_message_id].text
    with pytest.raises(StaleReferenceError):
        await engine.confirm_flow.confirm(batch.token)


@pytest.mark.asyncio
async def test_commit_of_unknown_token_is_stale(engine):
    with pytest.raises(StaleReferenceError):
        await engine.pipeline.commit("nope")


@pytest.mark.asyncio
async def test_concurrent_confirms_commit_once(engine, ledger, make_batch):
    ledger.gate = asyncio.Event()
    batch = make_batch(0.9, 0.9)

    first = asyncio.ensure_future(engine.confirm_flow.confirm(batch.token))
    await asyncio.sleep(0)
    with pytest.raises(StaleReferenceError):
        await engine.confirm_flow.confirm(batch.token)

    ledger.gate.set()
    summary = await first

    assert summary.ok_count == 2
    assert len(ledger.calls) == 1


@pytest.mark.asyncio
async def test_empty_batch_has_nothing_to_confirm(engine, channel, ledger, make_batch):
    batch = make_batch()

    assert await engine.confirm_flow.confirm(batch.token) is None
    assert ledger.calls == []
    assert "nothing to confirm" in channel.sent[-1].text
