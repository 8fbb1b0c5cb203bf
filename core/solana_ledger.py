"""
copytrader Core: Solana Ledger Queries

Exact SPL token balances and signature confirmation status over JSON-RPC.
Balances are summed from ``uiAmountString`` as Decimals so rounding in the
RPC's float ``uiAmount`` never leaks into sell sizes.
"""

from decimal import Decimal, InvalidOperation
from typing import Any, Dict, List, Optional
import logging

import requests

from core.exceptions import ExecutionFailed, LedgerUnavailable
from infra.http import request_json

logger = logging.getLogger(__name__)

CONFIRMED_STATUSES = ("confirmed", "finalized")


class SolanaLedger:
    """Read-only Solana RPC client."""

    def __init__(self, rpc_url: str, *, max_retries: int = 3, timeout: float = 20.0,
                 session: Optional[requests.Session] = None):
        self.rpc_url = rpc_url
        self.max_retries = max_retries
        self.timeout = timeout
        self.session = session
        self._request_id = 0

    def _rpc(self, method: str, params: List[Any]) -> Any:
        self._request_id += 1
        payload = {"jsonrpc": "2.0", "id": self._request_id, "method": method, "params": params}
        try:
            data = request_json(
                "POST",
                self.rpc_url,
                body=payload,
                max_retries=self.max_retries,
                timeout=self.timeout,
                session=self.session,
            )
        except (requests.exceptions.RequestException, ValueError) as e:
            raise LedgerUnavailable(method, e) from e

        if not isinstance(data, dict):
            raise LedgerUnavailable(method)
        if data.get("error"):
            logger.error(f"RPC {method} error: {data['error']}")
            raise LedgerUnavailable(method)
        return data.get("result")

    def get_token_balance(self, owner: str, asset: str) -> Decimal:
        """Total ``asset`` held by ``owner`` across all token accounts."""
        result = self._rpc(
            "getTokenAccountsByOwner",
            [owner, {"mint": asset}, {"encoding": "jsonParsed"}],
        )
        accounts = (result or {}).get("value", []) if isinstance(result, dict) else []

        total = Decimal("0")
        for account in accounts:
            info = (
                account.get("account", {})
                .get("data", {})
                .get("parsed", {})
                .get("info", {})
            )
            amount = info.get("tokenAmount", {}).get("uiAmountString")
            if amount is None:
                continue
            try:
                total += Decimal(str(amount))
            except InvalidOperation:
                logger.warning(f"Unparseable token amount {amount!r} for {asset}")
        return total

    def get_signature_status(self, signature: str) -> Optional[str]:
        """
        Confirmation status of ``signature``.

        Returns:
            "processed" | "confirmed" | "finalized", or None if not yet seen

        Raises:
            ExecutionFailed: If the transaction landed with an error
        """
        result = self._rpc(
            "getSignatureStatuses",
            [[signature], {"searchTransactionHistory": True}],
        )
        values = (result or {}).get("value", []) if isinstance(result, dict) else []
        status: Optional[Dict[str, Any]] = values[0] if values else None
        if not status:
            return None
        if status.get("err"):
            raise ExecutionFailed(f"Transaction {signature} failed on-chain: {status['err']}")
        return status.get("confirmationStatus")

    def is_confirmed(self, signature: str) -> bool:
        return self.get_signature_status(signature) in CONFIRMED_STATUSES
