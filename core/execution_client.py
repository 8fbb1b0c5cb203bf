"""
copytrader Core: Execution Service Client

Submits buy/sell intents to the remote trading endpoint, which builds,
signs and broadcasts the transaction and answers with its signature.

Order submission is never retried here: a request that timed out may still
have landed on-chain, and resubmitting a sell risks selling twice.
"""

from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Dict, Optional
import logging

import requests

from core.exceptions import ExecutionFailed, InsufficientBalance
from infra.http import request_json

logger = logging.getLogger(__name__)

INSUFFICIENT_MARKERS = ("insufficient spl token balance", "insufficient balance", "insufficient funds")


@dataclass(frozen=True)
class TradeIntent:
    """Structured buy/sell request"""
    owner: str
    direction: str  # "buy" | "sell"
    venue: str
    asset: str
    amount: Decimal  # SOL for buys, tokens for sells
    slippage_pct: Decimal
    priority_fee: Decimal

    def to_payload(self) -> Dict[str, Any]:
        # Amount goes out as a plain decimal string; a float can round above the held balance.
        return {
            "wallet_address": self.owner,
            "action": self.direction,
            "dex": self.venue,
            "mint": self.asset,
            "amount": format(self.amount, "f"),
            "slippage": float(self.slippage_pct),
            "tip": float(self.priority_fee),
            "type": "jito",
        }


def _is_insufficient(text: str) -> bool:
    lowered = (text or "").lower()
    return any(marker in lowered for marker in INSUFFICIENT_MARKERS)


class ExecutionClient:
    """
    HTTP connector for the execution service.

    Responsibilities:
    - Translate intents into the service's request format
    - Map failures onto ExecutionFailed / InsufficientBalance
    """

    def __init__(
        self,
        url: str,
        owner: str,
        *,
        slippage_pct: Decimal,
        priority_fee: Decimal,
        timeout: float = 30.0,
        session: Optional[requests.Session] = None,
    ):
        self.url = url
        self.owner = owner
        self.slippage_pct = Decimal(str(slippage_pct))
        self.priority_fee = Decimal(str(priority_fee))
        self.timeout = timeout
        self.session = session
        logger.info(f"Initialized ExecutionClient (url={url}, owner={owner[:8]}...)")

    def intent(self, direction: str, asset: str, venue: str, amount: Decimal) -> TradeIntent:
        return TradeIntent(
            owner=self.owner,
            direction=direction,
            venue=venue,
            asset=asset,
            amount=amount,
            slippage_pct=self.slippage_pct,
            priority_fee=self.priority_fee,
        )

    def buy(self, asset: str, amount_sol: Decimal, venue: str) -> str:
        """Spend ``amount_sol`` on ``asset``; returns the transaction signature."""
        return self.submit(self.intent("buy", asset, venue, amount_sol))

    def sell(self, asset: str, amount_tokens: Decimal, venue: str) -> str:
        """Sell ``amount_tokens`` of ``asset``; returns the transaction signature."""
        return self.submit(self.intent("sell", asset, venue, amount_tokens))

    def submit(self, intent: TradeIntent) -> str:
        logger.info(
            f"Placing {intent.direction.upper()} order: mint={intent.asset}, amount={intent.amount}, "
            f"dex={intent.venue}, slippage={intent.slippage_pct}%, tip={intent.priority_fee} SOL"
        )
        try:
            data = request_json(
                "POST",
                self.url,
                body=intent.to_payload(),
                max_retries=1,
                timeout=self.timeout,
                session=self.session,
            )
        except requests.exceptions.HTTPError as e:
            response = e.response
            status = response.status_code if response is not None else None
            text = response.text if response is not None else str(e)
            if _is_insufficient(text):
                raise InsufficientBalance(f"{intent.direction} {intent.asset}: {text}", status_code=status) from e
            raise ExecutionFailed(
                f"Execution service responded {status} for {intent.direction} {intent.asset}: {text}",
                status_code=status,
            ) from e
        except requests.exceptions.RequestException as e:
            raise ExecutionFailed(f"Execution request failed for {intent.direction} {intent.asset}: {e}") from e

        signature = self._extract_signature(data)
        if not signature:
            error_text = str(data.get("error", "")) if isinstance(data, dict) else ""
            if _is_insufficient(error_text):
                raise InsufficientBalance(f"{intent.direction} {intent.asset}: {error_text}")
            raise ExecutionFailed(f"Execution service returned no signature: {data!r}")

        logger.info(f"{intent.direction.upper()} txn sent: https://solscan.io/tx/{signature}")
        return signature

    @staticmethod
    def _extract_signature(data: Any) -> Optional[str]:
        if isinstance(data, str):
            return data or None
        if isinstance(data, dict):
            for key in ("signature", "txRef", "tx_ref", "result"):
                value = data.get(key)
                if isinstance(value, str) and value:
                    return value
        return None
