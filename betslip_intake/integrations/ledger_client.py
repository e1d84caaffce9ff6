"""
Ledger ingestion client.

Confirmed batches and wallet movements are posted to the ledger's
ingestion endpoint as ``{"kind": ..., "ownerId": ..., ...}`` documents.
"""

from decimal import Decimal
from typing import Any, Dict, List, Optional

import httpx
import structlog

from betslip_intake.core.config import Config
from betslip_intake.core.errors import LedgerError

logger = structlog.get_logger()

WALLET_KINDS = {
    "DEPOSIT": "wallet_deposit",
    "WITHDRAWAL": "wallet_withdraw",
}


class LedgerClient:
    """Client for the ledger ingestion service."""

    def __init__(
        self,
        base_url: Optional[str] = None,
        api_key: Optional[str] = None,
        *,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = (base_url or Config.LEDGER_API_URL or "").rstrip("/")
        self.api_key = api_key or Config.LEDGER_API_KEY
        self.timeout = timeout or Config.HTTP_TIMEOUT_SECONDS
        self._transport = transport

        if not self.base_url:
            raise ValueError("Ledger service URL is required")

    def _headers(self) -> Dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    async def _post(self, payload: Dict[str, Any]) -> Any:
        async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
            try:
                response = await client.post(
                    f"{self.base_url}/ingest", headers=self._headers(), json=payload
                )
                response.raise_for_status()
            except httpx.HTTPStatusError as exc:
                status = exc.response.status_code
                logger.error(
                    "ledger_http_error",
                    kind=payload.get("kind"),
                    status_code=status,
                    body=exc.response.text[:200],
                )
                raise LedgerError(f"Ledger returned HTTP {status}", status_code=status) from exc
            except httpx.HTTPError as exc:
                logger.error("ledger_request_failed", kind=payload.get("kind"), error=str(exc))
                raise LedgerError(f"Ledger request failed: {exc}") from exc

        try:
            return response.json()
        except ValueError as exc:
            raise LedgerError("Ledger response was not valid JSON") from exc

    async def commit_bets(self, owner_id: str, items: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
        """
        Create bets in the ledger.

        Returns:
            Per-item result dictionaries, each with an ``ok`` flag.

        Raises:
            LedgerError: If the request fails or the response is malformed.
        """
        data = await self._post({"kind": "bets_create", "ownerId": str(owner_id), "items": items})
        results = data.get("results") if isinstance(data, dict) else data
        if not isinstance(results, list):
            raise LedgerError("Ledger response did not contain a result list")
        logger.info(
            "ledger_bets_created",
            owner_id=owner_id,
            items=len(items),
            ok=sum(1 for r in results if isinstance(r, dict) and r.get("ok")),
        )
        return results

    async def record_wallet_event(self, owner_id: str, command_type: str, amount: Decimal) -> Dict[str, Any]:
        """Post a deposit or withdrawal for ``owner_id``."""
        kind = WALLET_KINDS.get(command_type)
        if kind is None:
            raise ValueError(f"Unsupported wallet command: {command_type}")
        data = await self._post({"kind": kind, "ownerId": str(owner_id), "amount": float(amount)})
        logger.info("ledger_wallet_event", owner_id=owner_id, kind=kind, amount=str(amount))
        return data if isinstance(data, dict) else {"result": data}


__all__ = ["LedgerClient", "WALLET_KINDS"]
