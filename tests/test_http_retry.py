"""
Fault-injection tests for the shared JSON-over-HTTP helper.

Verifies exponential backoff with full jitter for:
- 429 rate limit errors
- 5xx server errors
- Network timeouts/connection errors
"""

from decimal import Decimal
from unittest.mock import Mock, patch

import pytest
from requests.exceptions import ConnectionError, HTTPError, Timeout

from infra.http import request_json


def _ok(payload):
    response = Mock()
    response.status_code = 200
    response.json.return_value = payload
    return response


def _error(status, text="error"):
    response = Mock()
    response.status_code = status
    response.text = text
    return HTTPError(response=response)


@pytest.fixture(autouse=True)
def no_sleep():
    with patch("infra.http.time.sleep") as sleep:
        yield sleep


def test_retries_on_429_and_succeeds(no_sleep):
    with patch("infra.http.requests.request") as mock_request:
        mock_request.side_effect = [_error(429), _error(429), _ok({"success": True})]
        assert request_json("GET", "https://api.test", max_retries=3) == {"success": True}
        assert mock_request.call_count == 3
        assert no_sleep.call_count == 2


def test_retries_on_5xx():
    with patch("infra.http.requests.request") as mock_request:
        mock_request.side_effect = [_error(503), _ok({"ok": 1})]
        assert request_json("GET", "https://api.test") == {"ok": 1}


def test_retries_network_errors():
    with patch("infra.http.requests.request") as mock_request:
        mock_request.side_effect = [Timeout("slow"), ConnectionError("reset"), _ok([])]
        assert request_json("POST", "https://api.test", body={"a": 1}) == []


def test_no_retry_on_client_error():
    with patch("infra.http.requests.request") as mock_request:
        mock_request.side_effect = _error(400, "bad request")
        with pytest.raises(HTTPError):
            request_json("POST", "https://api.test", max_retries=3)
        assert mock_request.call_count == 1


def test_exhausted_retries_raise_last_error():
    with patch("infra.http.requests.request") as mock_request:
        mock_request.side_effect = Timeout("slow")
        with pytest.raises(Timeout):
            request_json("GET", "https://api.test", max_retries=2)
        assert mock_request.call_count == 2


def test_backoff_uses_full_jitter(no_sleep):
    with patch("infra.http.requests.request") as mock_request, \
            patch("infra.http.random.uniform", return_value=0.5) as uniform:
        mock_request.side_effect = [_error(500), _error(500), _ok({})]
        request_json("GET", "https://api.test", max_retries=3)
        assert [c.args for c in uniform.call_args_list] == [(0, 1), (0, 2)]
        no_sleep.assert_called_with(0.5)


def test_decimal_parsing_and_session():
    session = Mock()
    response = _ok({"price": Decimal("0.1")})
    session.request.return_value = response
    result = request_json("GET", "https://api.test", params={"ca": "x"}, session=session)

    assert result == {"price": Decimal("0.1")}
    response.json.assert_called_once_with(parse_float=Decimal)
    kwargs = session.request.call_args.kwargs
    assert kwargs["params"] == {"ca": "x"}
    assert kwargs["headers"]["Content-Type"] == "application/json"
