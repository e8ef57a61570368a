"""Tests for the Chainlink price feed reader (scripted JSON-RPC, no network)."""
import pytest
import requests

from core.exceptions import PriceFeedUnavailable
from infra.price_feed import DECIMALS, LATEST_ROUND_DATA, ChainlinkPriceFeed, decode_latest_round_data
from tests.helpers import FakeHttpSession, http_response

FEED = "0x7e860098F58bBFC8648a4311b374B1D669a2bc6B"


def word(value):
    if value < 0:
        value += 2 ** 256
    return f"{value:064x}"


def rpc_result(*values):
    return http_response({"jsonrpc": "2.0", "id": 1, "result": "0x" + "".join(word(v) for v in values)})


def round_data(answer, updated_at=1_700_000_000, round_id=42):
    return rpc_result(round_id, answer, updated_at - 10, updated_at, round_id)


def test_decode_negative_answer():
    result = "0x" + "".join(word(v) for v in (7, -5, 1, 2, 7))
    assert decode_latest_round_data(result) == (7, -5, 1, 2, 7)


def test_decode_rejects_short_result():
    with pytest.raises(ValueError):
        decode_latest_round_data("0x" + word(1))


def test_latest_scales_by_decimals():
    session = FakeHttpSession(rpc_result(8), round_data(99_980_000))
    feed = ChainlinkPriceFeed("https://rpc.test", FEED, session=session)

    reading = feed.latest()

    assert reading.price == pytest.approx(0.9998)
    assert reading.updated_at == 1_700_000_000
    assert reading.round_id == 42
    assert [p["json"]["params"][0]["data"] for p in session.posts] == [DECIMALS, LATEST_ROUND_DATA]
    assert session.posts[0]["json"]["params"][0]["to"] == FEED


def test_decimals_are_read_once():
    session = FakeHttpSession(rpc_result(8), round_data(100_000_000), round_data(100_010_000))
    feed = ChainlinkPriceFeed("https://rpc.test", FEED, session=session)

    feed.latest()
    feed.latest()

    assert len(session.posts) == 3


def test_rpc_error_is_unavailable():
    session = FakeHttpSession(http_response({"jsonrpc": "2.0", "id": 1, "error": {"code": -32000, "message": "x"}}))
    with pytest.raises(PriceFeedUnavailable, match="RPC error"):
        ChainlinkPriceFeed("https://rpc.test", FEED, session=session).latest()


def test_missing_result_is_unavailable():
    session = FakeHttpSession(http_response({"jsonrpc": "2.0", "id": 1}))
    with pytest.raises(PriceFeedUnavailable):
        ChainlinkPriceFeed("https://rpc.test", FEED, session=session).latest()


def test_transport_failure_is_unavailable_without_retry():
    session = FakeHttpSession(requests.exceptions.ConnectionError("down"))

    with pytest.raises(PriceFeedUnavailable, match="Price feed read failed"):
        ChainlinkPriceFeed("https://rpc.test", FEED, session=session).latest()
    assert len(session.posts) == 1
