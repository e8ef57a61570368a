"""
vaultpilot Infrastructure: JSON-over-HTTP with retries

Shared by the vault-data, price-feed and execution clients.

Retries on:
- 429 (rate limit)
- 5xx (server errors)
- Network errors (timeout, connection)

Does NOT retry on:
- 4xx (except 429) - client errors like 400, 401, 403
"""

import logging
import random
import time
from typing import Any, Dict, Optional

import requests

logger = logging.getLogger(__name__)


def post_json(url: str,
              payload: Dict[str, Any],
              timeout: float = 10.0,
              max_retries: int = 3,
              headers: Optional[Dict[str, str]] = None,
              session: Optional[requests.Session] = None,
              sleep=time.sleep) -> Dict[str, Any]:
    """
    POST a JSON body and return the decoded JSON response.

    Raises:
        requests.exceptions.RequestException: when retries are exhausted or
            a non-retryable error occurs
    """
    http = session or requests
    request_headers = {"Content-Type": "application/json"}
    if headers:
        request_headers.update(headers)

    last_exception: Optional[Exception] = None

    for attempt in range(max_retries):
        try:
            response = http.post(url, json=payload, headers=request_headers, timeout=timeout)
            response.raise_for_status()
            return response.json()

        except requests.exceptions.HTTPError as e:
            status_code = e.response.status_code if e.response is not None else 0

            if 400 <= status_code < 500 and status_code != 429:
                logger.error(f"Client error from {url}: {status_code}")
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
            backoff = (2 ** attempt) + random.uniform(0, 1)
            logger.info(f"Retrying in {backoff:.1f}s...")
            sleep(backoff)

    logger.error(f"All {max_retries} attempts failed for {url}")
    raise last_exception
