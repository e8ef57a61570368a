"""
vaultpilot Infrastructure: Settlement-Asset Price Feed

Reads a Chainlink aggregator (e.g. USDC/USD on Base) over JSON-RPC eth_call.
No web3 dependency: the two view calls are ABI-decoded by hand.
"""

import logging
from dataclasses import dataclass
from typing import Optional

import requests

from core.exceptions import PriceFeedUnavailable
from infra.http_client import post_json

logger = logging.getLogger(__name__)

# 4-byte function selectors
LATEST_ROUND_DATA = "0xfeaf968c"
DECIMALS = "0x313ce567"

WORD_HEX = 64


@dataclass(frozen=True)
class PriceReading:
    price: float
    updated_at: int  # epoch seconds
    round_id: int


class PriceFeed:
    def latest(self) -> PriceReading:
        """
        Raises:
            PriceFeedUnavailable: on any transport or decoding failure
        """
        raise NotImplementedError


def _words(result: str, count: int):
    body = result[2:] if result.startswith("0x") else result
    if len(body) < count * WORD_HEX:
        raise ValueError(f"expected {count} ABI words, got {len(body) // WORD_HEX}")
    return [body[i * WORD_HEX:(i + 1) * WORD_HEX] for i in range(count)]


def _int256(word: str) -> int:
    value = int(word, 16)
    if value >= 2 ** 255:
        value -= 2 ** 256
    return value


def decode_latest_round_data(result: str):
    """Return (round_id, answer, started_at, updated_at, answered_in_round)."""
    round_id, answer, started_at, updated_at, answered_in = _words(result, 5)
    return (
        int(round_id, 16),
        _int256(answer),
        int(started_at, 16),
        int(updated_at, 16),
        int(answered_in, 16),
    )


class ChainlinkPriceFeed(PriceFeed):
    """
    Usage:
        feed = ChainlinkPriceFeed(rpc_url, "0x7e86...2bc6B")
        reading = feed.latest()
    """

    def __init__(self,
                 rpc_url: str,
                 feed_address: str,
                 timeout: float = 5.0,
                 session: Optional[requests.Session] = None):
        self.rpc_url = rpc_url
        self.feed_address = feed_address
        self.timeout = timeout
        self._session = session
        self._decimals: Optional[int] = None
        self._request_id = 0

    def _eth_call(self, data: str) -> str:
        self._request_id += 1
        payload = {
            "jsonrpc": "2.0",
            "id": self._request_id,
            "method": "eth_call",
            "params": [{"to": self.feed_address, "data": data}, "latest"],
        }
        # Single attempt: the safety gate has its own short deadline
        response = post_json(self.rpc_url, payload, timeout=self.timeout, max_retries=1,
                             session=self._session)
        if response.get("error"):
            raise PriceFeedUnavailable(f"RPC error: {response['error']}")
        result = response.get("result")
        if not isinstance(result, str):
            raise PriceFeedUnavailable("RPC returned no result")
        return result

    def decimals(self) -> int:
        if self._decimals is None:
            (word,) = _words(self._eth_call(DECIMALS), 1)
            self._decimals = int(word, 16)
        return self._decimals

    def latest(self) -> PriceReading:
        try:
            decimals = self.decimals()
            round_id, answer, _, updated_at, _ = decode_latest_round_data(
                self._eth_call(LATEST_ROUND_DATA)
            )
        except PriceFeedUnavailable:
            raise
        except (requests.exceptions.RequestException, ValueError) as e:
            raise PriceFeedUnavailable(f"Price feed read failed: {e}") from e

        price = answer / (10 ** decimals)
        logger.debug(f"Price feed {self.feed_address}: {price:.6f} (updated_at={updated_at})")
        return PriceReading(price=price, updated_at=updated_at, round_id=round_id)
