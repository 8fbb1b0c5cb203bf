"""Price oracle client: current SOL and USD quotes for a mint."""

from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Optional
import logging

import requests

from core.exceptions import OracleUnavailable
from infra.http import request_json

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PriceQuote:
    asset: str
    price_sol: Decimal
    price_usd: Optional[Decimal]
    timestamp: datetime


def _to_decimal(value) -> Optional[Decimal]:
    if value is None:
        return None
    try:
        return Decimal(str(value))
    except (InvalidOperation, ValueError):
        return None


class PriceOracle:
    """HTTP price API keyed by ``x-api-key``; quotes in SOL and USD."""

    def __init__(self, url: str, api_key: str = "", *, max_retries: int = 2,
                 timeout: float = 10.0, session: Optional[requests.Session] = None):
        self.url = url
        self.api_key = api_key
        self.max_retries = max_retries
        self.timeout = timeout
        self.session = session

    def get_price(self, asset: str) -> PriceQuote:
        """
        Fetch a quote for ``asset``.

        Raises:
            OracleUnavailable: On transport errors or an unusable payload
        """
        try:
            data = request_json(
                "GET",
                self.url,
                params={"ca": asset},
                headers={"x-api-key": self.api_key},
                max_retries=self.max_retries,
                timeout=self.timeout,
                session=self.session,
            )
        except (requests.exceptions.RequestException, ValueError) as e:
            logger.error(f"Failed to fetch price for {asset}: {e}")
            raise OracleUnavailable("price", e) from e

        if not isinstance(data, dict):
            raise OracleUnavailable("price")

        price_sol = _to_decimal(data.get("priceInSol"))
        if price_sol is None or price_sol <= 0:
            logger.warning(f"Oracle returned no SOL price for {asset}: {data!r}")
            raise OracleUnavailable("price")

        return PriceQuote(
            asset=asset,
            price_sol=price_sol,
            price_usd=_to_decimal(data.get("priceInUsd")),
            timestamp=datetime.now(timezone.utc),
        )
