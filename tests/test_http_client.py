"""
Tests for the JSON-over-HTTP helper

Validates which failures are retried (429, 5xx, network) and which are
raised immediately (other 4xx).
"""
import pytest
import requests

from infra.http_client import post_json
from tests.helpers import FakeHttpSession, http_response

URL = "https://api.test/graphql"


def no_sleep(seconds):
    pass


def test_returns_decoded_body():
    session = FakeHttpSession(http_response({"data": {"ok": True}}))

    assert post_json(URL, {"q": 1}, session=session, sleep=no_sleep) == {"data": {"ok": True}}
    assert session.posts[0]["json"] == {"q": 1}
    assert session.posts[0]["headers"]["Content-Type"] == "application/json"


def test_extra_headers_are_merged():
    session = FakeHttpSession(http_response({}))
    post_json(URL, {}, headers={"Idempotency-Key": "abc"}, session=session, sleep=no_sleep)
    assert session.posts[0]["headers"]["Idempotency-Key"] == "abc"


def test_rate_limit_is_retried():
    session = FakeHttpSession(http_response({}, status=429), http_response({"ok": 1}))
    delays = []

    assert post_json(URL, {}, session=session, sleep=delays.append) == {"ok": 1}
    assert len(session.posts) == 2
    assert len(delays) == 1
    assert 1.0 <= delays[0] < 2.0


def test_server_error_is_retried():
    session = FakeHttpSession(http_response({}, status=502), http_response({}, status=503), http_response({"ok": 1}))
    assert post_json(URL, {}, session=session, sleep=no_sleep) == {"ok": 1}


def test_client_error_is_not_retried():
    session = FakeHttpSession(http_response({}, status=400), http_response({"ok": 1}))

    with pytest.raises(requests.exceptions.HTTPError):
        post_json(URL, {}, session=session, sleep=no_sleep)
    assert len(session.posts) == 1


def test_network_errors_exhaust_retries():
    session = FakeHttpSession(*[requests.exceptions.ConnectionError("refused")] * 3)

    with pytest.raises(requests.exceptions.ConnectionError):
        post_json(URL, {}, max_retries=3, session=session, sleep=no_sleep)
    assert len(session.posts) == 3


def test_single_attempt_does_not_sleep():
    session = FakeHttpSession(requests.exceptions.Timeout("slow"))
    delays = []

    with pytest.raises(requests.exceptions.Timeout):
        post_json(URL, {}, max_retries=1, session=session, sleep=delays.append)
    assert delays == []
