"""
Confidence routing and one-shot commit of reviewed batches.

Routing, in priority order:
1. any item below the low threshold  -> refuse, open the edit flow on the
   first such item
2. every item at or above the high threshold -> commit immediately
3. otherwise -> offer "confirm anyway" / "edit", commit nothing yet

The commit evicts the batch from the store before calling the ledger, so
a second confirm on the same token finds nothing to commit. A ledger
failure after eviction loses the batch; the user is told to resubmit.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, List, Optional, Protocol

from betslip_intake.core.config import Config
from betslip_intake.core.errors import LedgerError, StaleReferenceError
from betslip_intake.domain.actions import Cancel, Edit, ForceConfirm
from betslip_intake.domain.records import Batch
from betslip_intake.services.chat_channel import ActionButton
from betslip_intake.services.edit_flow import EditFlow
from betslip_intake.services.review_renderer import ReviewRenderer
from betslip_intake.services.session_store import SessionStore
from betslip_intake.utils.logging_config import get_logger

logger = get_logger(__name__)


class LedgerGateway(Protocol):
    async def commit_bets(self, owner_id: str, items: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
        ...


class Route(str, Enum):
    FORCE_REVIEW = "force_review"
    AUTO_COMMIT = "auto_commit"
    OFFER_OVERRIDE = "offer_override"


@dataclass(frozen=True)
class RouteDecision:
    route: Route
    item_index: Optional[int] = None
    confidence: Optional[float] = None


@dataclass(frozen=True)
class CommitSummary:
    ok_count: int
    fail_count: int

    @property
    def total(self) -> int:
        return self.ok_count + self.fail_count


class ConfidenceRouter:
    """Decide what a confirm request does based on per-item confidence."""

    def __init__(self, *, low_threshold: Optional[float] = None, high_threshold: Optional[float] = None) -> None:
        self.low_threshold = (
            low_threshold if low_threshold is not None else Config.LOW_CONFIDENCE_THRESHOLD
        )
        self.high_threshold = (
            high_threshold if high_threshold is not None else Config.HIGH_CONFIDENCE_THRESHOLD
        )

    def route(self, batch: Batch) -> RouteDecision:
        confidences = batch.confidences()
        for index, confidence in enumerate(confidences):
            if confidence < self.low_threshold:
                return RouteDecision(Route.FORCE_REVIEW, item_index=index, confidence=confidence)
        if all(confidence >= self.high_threshold for confidence in confidences):
            return RouteDecision(Route.AUTO_COMMIT)
        return RouteDecision(Route.OFFER_OVERRIDE)


def summarize_results(results: List[Any], item_count: int) -> CommitSummary:
    """Count ok vs failed items; items without a result count as failed."""
    ok_count = sum(1 for result in results[:item_count] if isinstance(result, dict) and result.get("ok"))
    return CommitSummary(ok_count=ok_count, fail_count=item_count - ok_count)


class CommitPipeline:
    """Evict-then-commit a batch to the ledger."""

    def __init__(self, store: SessionStore, ledger: LedgerGateway) -> None:
        self._store = store
        self._ledger = ledger

    async def commit(self, token: str) -> CommitSummary:
        """
        Commit the batch for ``token`` exactly once.

        Raises:
            StaleReferenceError: If the batch is gone (cancelled, expired or
                already committed).
            LedgerError: If the ledger call fails. The batch is not restored.
        """
        batch = self._store.pop_batch(token)
        if batch is None:
            raise StaleReferenceError(f"Batch {token} not found")

        items = [item.record.to_ledger_item() for item in batch.items]
        logger.info("batch_commit_started", token=token, owner_id=batch.owner_id, items=len(items))
        try:
            results = await self._ledger.commit_bets(batch.owner_id, items)
        except LedgerError as exc:
            logger.error(
                "batch_commit_failed",
                token=token,
                owner_id=batch.owner_id,
                items=len(items),
                error=str(exc),
            )
            raise

        summary = summarize_results(results, len(items))
        logger.info(
            "batch_committed",
            token=token,
            ok_count=summary.ok_count,
            fail_count=summary.fail_count,
        )
        return summary


class ConfirmFlow:
    """Handles Confirm / ForceConfirm actions end to end."""

    def __init__(
        self,
        store: SessionStore,
        renderer: ReviewRenderer,
        edit_flow: EditFlow,
        pipeline: CommitPipeline,
        router: Optional[ConfidenceRouter] = None,
    ) -> None:
        self._store = store
        self._renderer = renderer
        self._edit_flow = edit_flow
        self._pipeline = pipeline
        self._router = router or ConfidenceRouter()

    async def confirm(self, token: str, *, force: bool = False) -> Optional[CommitSummary]:
        batch = self._store.get_batch(token)
        if batch is None:
            raise StaleReferenceError(f"Batch {token} not found")

        if batch.is_empty:
            await self._renderer.show(
                batch,
                "There is nothing to confirm in this batch.",
                [[ActionButton("❌ Cancel", Cancel(token))]],
            )
            return None

        if not force:
            decision = self._router.route(batch)
            logger.info(
                "batch_confirm_routed",
                token=token,
                route=decision.route.value,
                item_index=decision.item_index,
            )
            if decision.route is Route.FORCE_REVIEW:
                await self._edit_flow.show_field_picker(
                    token,
                    decision.item_index,
                    note=(
                        f"Slip #{decision.item_index + 1} was read with low confidence "
                        f"({decision.confidence:.2f}). Please check it before confirming."
                    ),
                )
                return None
            if decision.route is Route.OFFER_OVERRIDE:
                view = self._renderer.render(batch, 0)
                await self._renderer.show(
                    batch,
                    view.text + "\n\nSome slips were read with medium confidence. Confirm anyway?",
                    [
                        [
                            ActionButton("✅ Confirm anyway", ForceConfirm(token)),
                            ActionButton("✏️ Edit", Edit(token)),
                        ]
                    ],
                )
                return None

        try:
            summary = await self._pipeline.commit(token)
        except LedgerError as exc:
            await self._renderer.show(
                batch,
                f"❌ Could not save batch {token}: {exc}\nThe batch was discarded, please resubmit the slips.",
            )
            return None

        text = f"✅ Saved {summary.ok_count} of {summary.total} slip(s)."
        if summary.fail_count:
            text += f"\n⚠️ {summary.fail_count} slip(s) were rejected by the ledger."
        await self._renderer.show(batch, text)
        return summary


__all__ = [
    "CommitPipeline",
    "CommitSummary",
    "ConfidenceRouter",
    "ConfirmFlow",
    "LedgerGateway",
    "Route",
    "RouteDecision",
    "summarize_results",
]
