import json
import time
from unittest.mock import MagicMock, patch

import pytest
import requests

from scalper.coinbase_adapter import CoinbaseAdapter
from scalper.errors import (
    AmbiguousWriteOutcome,
    ErrorPolicy,
    FatalExchangeError,
    InsufficientMarketData,
    RateLimitError,
    TransientNetworkError,
)
from scalper.models import OrderSide
from scalper.money import Money
from scalper.secrets import ExchangeCredentials

POLICY = ErrorPolicy.build(codes=[502, 503, 504], messages=["Connection refused", "Connection reset"])


def make_adapter(**kwargs):
    kwargs.setdefault("error_policy", POLICY)
    return CoinbaseAdapter(api_key="test", secret="dGVzdA==", passphrase="test", **kwargs)


def response(status=200, payload=None, text=None, headers=None):
    resp = MagicMock()
    resp.status_code = status
    resp.ok = 200 <= status < 400
    resp.headers = headers or {}
    if text is None:
        text = json.dumps(payload) if payload is not None else ""
    resp.text = text
    resp.json.return_value = payload
    return resp


def test_jittered_backoff_increases_with_attempt():
    """Verify backoff increases exponentially with attempt."""
    backoff_0 = CoinbaseAdapter._jittered_backoff(0, base=1.0, max_backoff=60.0)
    backoff_2 = CoinbaseAdapter._jittered_backoff(2, base=1.0, max_backoff=60.0)
    assert backoff_2 > backoff_0


def test_jittered_backoff_respects_max():
    backoff = CoinbaseAdapter._jittered_backoff(10, base=1.0, max_backoff=5.0)
    assert backoff <= 5.0 * 1.25


def test_get_rate_limit_reset_extracts_header():
    resp = response(429, headers={"CB-RateLimit-Reset": "1234567890.5"})
    assert CoinbaseAdapter._get_rate_limit_reset(resp) == 1234567890.5
    assert CoinbaseAdapter._get_rate_limit_reset(response(429)) is None


def test_from_credentials():
    adapter = CoinbaseAdapter.from_credentials(
        ExchangeCredentials("k", "dGVzdA==", "p"), base_url="https://sandbox.example/"
    )
    assert adapter.api_key == "k"
    assert adapter.passphrase == "p"
    assert adapter.base_url == "https://sandbox.example"
    assert "sandbox.example" in adapter.get_impl_name()


@patch("scalper.coinbase_adapter.requests.Session.request")
def test_requests_are_signed(mock_request):
    mock_request.return_value = response(payload={"price": "100"})

    make_adapter().get_latest_price("BTC-USD")

    headers = mock_request.call_args.kwargs["headers"]
    assert headers["CB-ACCESS-KEY"] == "test"
    assert headers["CB-ACCESS-PASSPHRASE"] == "test"
    assert headers["CB-ACCESS-SIGN"]


@patch("scalper.coinbase_adapter.requests.Session.request")
def test_unauthenticated_adapter_sends_unsigned_requests(mock_request):
    mock_request.return_value = response(payload={"price": "100"})

    CoinbaseAdapter(api_key="", secret="").get_latest_price("BTC-USD")

    assert "CB-ACCESS-KEY" not in mock_request.call_args.kwargs["headers"]


# -- rate limiting -----------------------------------------------------------


@patch("scalper.coinbase_adapter.time.sleep")
@patch("scalper.coinbase_adapter.requests.Session.request")
def test_rate_limit_sleeps_until_reset_header(mock_request, mock_sleep):
    reset_ts = time.time() + 5
    mock_request.side_effect = [
        response(429, text="Rate limited", headers={"CB-RateLimit-Reset": str(reset_ts)}),
        response(payload={"id": "order1"}),
    ]

    result = make_adapter()._request("POST", "/orders", body={"test": "body"})

    assert result == {"id": "order1"}
    delay = mock_sleep.call_args.args[0]
    assert 4.0 < delay <= 5.1


@patch("scalper.coinbase_adapter.time.sleep")
@patch("scalper.coinbase_adapter.requests.Session.request")
def test_rate_limit_without_reset_header_uses_jitter(mock_request, mock_sleep):
    mock_request.side_effect = [response(429, text="Rate limited"), response(payload={"id": "order2"})]

    result = make_adapter(max_backoff_seconds=1.0)._request("POST", "/orders", body={"test": "body"})

    assert result == {"id": "order2"}
    assert 0.75 <= mock_sleep.call_args.args[0] <= 1.25


@patch("scalper.coinbase_adapter.time.sleep")
@patch("scalper.coinbase_adapter.requests.Session.request")
def test_rate_limit_raises_after_max_attempts(mock_request, mock_sleep):
    mock_request.return_value = response(429, text="Rate limited")

    with pytest.raises(RateLimitError):
        make_adapter(max_backoff_seconds=0.01)._request("POST", "/orders", body={"test": "body"})


# -- classification ----------------------------------------------------------


@patch("scalper.coinbase_adapter.requests.Session.request")
def test_unlisted_status_is_fatal(mock_request):
    mock_request.return_value = response(400, text="Insufficient funds")

    with pytest.raises(FatalExchangeError, match="400"):
        make_adapter()._request("POST", "/orders", body={"test": "body"})


@patch("scalper.coinbase_adapter.requests.Session.request")
def test_listed_status_is_transient(mock_request):
    mock_request.return_value = response(503, text="Service Unavailable")

    with pytest.raises(TransientNetworkError) as exc:
        make_adapter()._request("POST", "/orders", body={"test": "body"})
    assert exc.value.status_code == 503


@patch("scalper.coinbase_adapter.requests.Session.request")
def test_listed_transport_message_is_transient(mock_request):
    mock_request.side_effect = requests.exceptions.ConnectionError("Connection refused")

    with pytest.raises(TransientNetworkError):
        make_adapter()._request("DELETE", "/orders/o1")


@patch("scalper.coinbase_adapter.requests.Session.request")
def test_timeout_is_transient(mock_request):
    mock_request.side_effect = requests.exceptions.ReadTimeout("read timed out")

    with pytest.raises(TransientNetworkError):
        make_adapter()._request("GET", "/products/BTC-USD/book")


@patch("scalper.coinbase_adapter.requests.Session.request")
def test_malformed_json_is_fatal(mock_request):
    resp = response(text="<html>")
    resp.json.side_effect = ValueError("no json")
    mock_request.return_value = resp

    with pytest.raises(FatalExchangeError, match="malformed"):
        make_adapter()._request("GET", "/accounts")


# -- reads -------------------------------------------------------------------


@patch("scalper.coinbase_adapter.requests.Session.request")
def test_get_order_book_parses_levels(mock_request):
    mock_request.return_value = response(
        payload={"sequence": 1, "bids": [["100.5", "1.2", 3], ["100", "2", 1]], "asks": [["101", "0.5", 1]]}
    )

    book = make_adapter().get_order_book("BTC-USD")

    assert book.bids[0] == (Money("100.5"), Money("1.2"))
    assert book.snapshot().ask == Money("101")
    url = mock_request.call_args.args[1]
    assert url.endswith("/products/BTC-USD/book?level=2")


@patch("scalper.coinbase_adapter.requests.Session.request")
def test_get_order_book_empty_side_is_insufficient_data(mock_request):
    mock_request.return_value = response(payload={"bids": [], "asks": [["101", "0.5", 1]]})

    with pytest.raises(InsufficientMarketData, match="empty bid side"):
        make_adapter().get_order_book("BTC-USD")


@patch("scalper.coinbase_adapter.time.sleep")
@patch("scalper.coinbase_adapter.requests.Session.request")
def test_reads_retry_transient_failures(mock_request, mock_sleep):
    mock_request.side_effect = [
        response(503, text="unavailable"),
        response(502, text="bad gateway"),
        response(payload={"price": "30000.12"}),
    ]

    assert make_adapter().get_latest_price("BTC-USD") == Money("30000.12")
    assert mock_sleep.call_count == 2


@patch("scalper.coinbase_adapter.time.sleep")
@patch("scalper.coinbase_adapter.requests.Session.request")
def test_reads_give_up_after_max_retries(mock_request, mock_sleep):
    mock_request.return_value = response(503, text="unavailable")

    with pytest.raises(TransientNetworkError):
        make_adapter(max_retries=2).get_latest_price("BTC-USD")
    assert mock_request.call_count == 3


@patch("scalper.coinbase_adapter.requests.Session.request")
def test_unexpected_payload_is_fatal(mock_request):
    mock_request.return_value = response(payload={"trade_id": 1})

    with pytest.raises(FatalExchangeError, match="ticker"):
        make_adapter().get_latest_price("BTC-USD")


@patch("scalper.coinbase_adapter.requests.Session.request")
def test_get_open_orders(mock_request):
    mock_request.return_value = response(
        payload=[{"id": "o1", "product_id": "BTC-USD", "side": "sell", "price": "101.5", "size": "0.2", "status": "open"}]
    )

    orders = make_adapter().get_open_orders("BTC-USD")

    assert len(orders) == 1
    assert orders[0].id == "o1"
    assert orders[0].side is OrderSide.SELL
    assert orders[0].price == Money("101.5")
    url = mock_request.call_args.args[1]
    assert "product_id=BTC-USD" in url and "status=open" in url


@patch("scalper.coinbase_adapter.requests.Session.request")
def test_get_balances(mock_request):
    mock_request.return_value = response(
        payload=[{"id": "a1", "currency": "USD", "balance": "120", "available": "100", "hold": "20"}]
    )

    balances = make_adapter().get_balances()

    assert balances["USD"].available == Money("100")
    assert balances["USD"].total == Money("120")


# -- writes ------------------------------------------------------------------


@patch("scalper.coinbase_adapter.requests.Session.request")
def test_place_order_sends_limit_order(mock_request):
    mock_request.return_value = response(payload={"id": "o123"})

    order_id = make_adapter().place_order("BTC-USD", OrderSide.BUY, Money("0.1"), Money("50000"))

    assert order_id == "o123"
    method, url = mock_request.call_args.args
    body = json.loads(mock_request.call_args.kwargs["data"])
    assert method == "POST"
    assert url.endswith("/orders")
    assert body["side"] == "buy"
    assert body["type"] == "limit"
    assert body["price"] == "50000"
    assert body["size"] == "0.1"
    assert body["client_oid"]


@patch("scalper.coinbase_adapter.time.sleep")
@patch("scalper.coinbase_adapter.requests.Session.request")
def test_place_order_returns_existing_order_after_transient_failure(mock_request, mock_sleep):
    """A write that timed out but reached the exchange is not sent again."""
    mock_request.side_effect = [
        response(504, text="Gateway timeout"),
        response(payload={"id": "o9", "status": "open"}),
    ]

    order_id = make_adapter().place_order("BTC-USD", OrderSide.SELL, Money("0.2"), Money("90"))

    assert order_id == "o9"
    assert mock_request.call_count == 2
    method, url = mock_request.call_args.args
    assert method == "GET"
    assert "/orders/client:" in url


@patch("scalper.coinbase_adapter.time.sleep")
@patch("scalper.coinbase_adapter.requests.Session.request")
def test_place_order_retries_with_same_client_oid_when_not_placed(mock_request, mock_sleep):
    mock_request.side_effect = [
        response(503, text="unavailable"),
        response(404, text='{"message":"NotFound"}'),
        response(payload={"id": "o10"}),
    ]

    order_id = make_adapter().place_order("BTC-USD", OrderSide.BUY, Money("0.2"), Money("100"))

    assert order_id == "o10"
    posts = [c for c in mock_request.call_args_list if c.args[0] == "POST"]
    assert len(posts) == 2
    oids = {json.loads(c.kwargs["data"])["client_oid"] for c in posts}
    assert len(oids) == 1


@patch("scalper.coinbase_adapter.time.sleep")
@patch("scalper.coinbase_adapter.requests.Session.request")
def test_place_order_gives_up_when_confirmed_not_placed(mock_request, mock_sleep):
    mock_request.side_effect = [
        response(503, text="unavailable"),
        response(404, text="NotFound"),
        response(503, text="unavailable"),
        response(404, text="NotFound"),
    ]

    with pytest.raises(TransientNetworkError, match="not placed"):
        make_adapter(max_retries=1).place_order("BTC-USD", OrderSide.BUY, Money("0.2"), Money("100"))


@patch("scalper.coinbase_adapter.time.sleep")
@patch("scalper.coinbase_adapter.requests.Session.request")
def test_place_order_ambiguous_when_lookup_fails(mock_request, mock_sleep):
    mock_request.side_effect = [
        response(503, text="unavailable"),
        response(500, text="Internal server error"),
    ]

    with pytest.raises(AmbiguousWriteOutcome):
        make_adapter().place_order("BTC-USD", OrderSide.BUY, Money("0.2"), Money("100"))


@patch("scalper.coinbase_adapter.requests.Session.request")
def test_place_order_fatal_error_is_not_retried(mock_request):
    mock_request.return_value = response(400, text='{"message":"Insufficient funds"}')

    with pytest.raises(FatalExchangeError, match="Insufficient funds"):
        make_adapter().place_order("BTC-USD", OrderSide.BUY, Money("0.2"), Money("100"))
    assert mock_request.call_count == 1


@patch("scalper.coinbase_adapter.requests.Session.request")
def test_place_order_without_id_is_ambiguous(mock_request):
    mock_request.return_value = response(payload={"status": "pending"})

    with pytest.raises(AmbiguousWriteOutcome):
        make_adapter().place_order("BTC-USD", OrderSide.BUY, Money("0.2"), Money("100"))


@patch("scalper.coinbase_adapter.requests.Session.request")
def test_cancel_order_returns_true_on_success(mock_request):
    mock_request.return_value = response(payload=["o123"])

    assert make_adapter().cancel_order("o123", "BTC-USD") is True
    method, url = mock_request.call_args.args
    assert method == "DELETE"
    assert url.endswith("/orders/o123?product_id=BTC-USD")


@patch("scalper.coinbase_adapter.requests.Session.request")
def test_cancel_order_returns_false_when_not_found(mock_request):
    mock_request.return_value = response(404, text="Not found")

    assert make_adapter().cancel_order("invalid_id", "BTC-USD") is False


@patch("scalper.coinbase_adapter.requests.Session.request")
def test_cancel_order_other_fatal_errors_raise(mock_request):
    mock_request.return_value = response(401, text="Invalid API Key")

    with pytest.raises(FatalExchangeError):
        make_adapter().cancel_order("o1", "BTC-USD")


@pytest.mark.parametrize(
    "lookup, expected",
    [
        (response(404, text="NotFound"), True),
        (response(payload={"id": "o1", "status": "done", "done_reason": "canceled"}), True),
        (response(payload={"id": "o1", "status": "done", "done_reason": "filled"}), False),
    ],
)
@patch("scalper.coinbase_adapter.time.sleep")
@patch("scalper.coinbase_adapter.requests.Session.request")
def test_cancel_order_confirms_after_transient_failure(mock_request, mock_sleep, lookup, expected):
    mock_request.side_effect = [response(503, text="unavailable"), lookup]

    assert make_adapter().cancel_order("o1", "BTC-USD") is expected


@patch("scalper.coinbase_adapter.time.sleep")
@patch("scalper.coinbase_adapter.requests.Session.request")
def test_cancel_order_retries_while_order_still_open(mock_request, mock_sleep):
    mock_request.side_effect = [
        response(503, text="unavailable"),
        response(payload={"id": "o1", "status": "open"}),
        response(payload=["o1"]),
    ]

    assert make_adapter().cancel_order("o1", "BTC-USD") is True
    assert mock_sleep.call_count == 1
