"""JSON-over-HTTP helper with retry/backoff shared by the external clients."""

import random
import time
from decimal import Decimal
from typing import Any, Dict, Optional
import logging

import requests

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 20


def request_json(
    method: str,
    url: str,
    *,
    body: Optional[Any] = None,
    params: Optional[Dict[str, Any]] = None,
    headers: Optional[Dict[str, str]] = None,
    max_retries: int = 3,
    timeout: float = DEFAULT_TIMEOUT,
    session: Optional[requests.Session] = None,
) -> Any:
    """
    Make an HTTP request and decode the JSON body with exponential backoff.

    Numbers with a fractional part decode as ``Decimal``.

    Retries on:
    - 429 (rate limit)
    - 5xx (server errors)
    - Network errors (timeout, connection)

    Does NOT retry on:
    - 4xx (except 429) - client errors like 400, 401, 403
    """
    sender = session or requests
    request_headers = {"Content-Type": "application/json", **(headers or {})}
    last_exception: Optional[Exception] = None

    for attempt in range(max_retries):
        try:
            response = sender.request(
                method,
                url,
                headers=request_headers,
                json=body,
                params=params,
                timeout=timeout,
            )
            response.raise_for_status()
            return response.json(parse_float=Decimal)

        except requests.exceptions.HTTPError as e:
            status_code = e.response.status_code if e.response is not None else 0

            if 400 <= status_code < 500 and status_code != 429:
                logger.debug(f"Client error {status_code} from {url}: {_body(e.response)}")
                raise

            if status_code == 429:
                logger.warning(f"Rate limited (429) on {url}, attempt {attempt + 1}/{max_retries}")
            else:
                logger.warning(f"Server error ({status_code}) on {url}, attempt {attempt + 1}/{max_retries}")
            last_exception = e

        except (requests.exceptions.Timeout, requests.exceptions.ConnectionError) as e:
            logger.warning(f"Network error on {url}: {e}, attempt {attempt + 1}/{max_retries}")
            last_exception = e

        if attempt < max_retries - 1:
            backoff = random.uniform(0, min(30.0, 2 ** attempt))
            logger.info(f"Retrying in {backoff:.1f}s...")
            time.sleep(backoff)

    logger.error(f"All {max_retries} attempt(s) exhausted for {url}")
    if last_exception:
        raise last_exception
    raise requests.exceptions.RequestException(f"Request to {url} failed after {max_retries} attempts")


def _body(response: Optional[requests.Response]) -> str:
    return response.text if response is not None else ""
