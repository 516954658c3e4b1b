import base64
import hashlib
import hmac
import json
import random
import threading
import time
import uuid
from decimal import InvalidOperation
from typing import Dict, List, Optional
from urllib.parse import urlencode

import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from .errors import (
    AmbiguousWriteOutcome,
    ErrorPolicy,
    ExchangeError,
    FatalExchangeError,
    InsufficientMarketData,
    RateLimitError,
    TransientNetworkError,
    error_from_failure,
)
from .exchange import ExchangeAdapter
from .logging_setup import logger
from .models import Balance, OpenOrder, OrderBook, OrderSide
from .money import Money
from .secrets import ExchangeCredentials

MAX_RATE_LIMIT_ATTEMPTS = 5


class CoinbaseAdapter(ExchangeAdapter):
    """Coinbase Exchange adapter with request signing, error classification and safe retries.

    Features:
    - Request signing (CB-ACCESS-* headers) over timestamp + method + path + body.
    - Failures classified transient/fatal from the configured status codes and
      message substrings (see scalper.errors.classify_failure).
    - Reads (GET) retried with jittered exponential backoff up to ``max_retries``.
    - Writes carry a ``client_oid``; after a transient failure the adapter looks
      the order up before retrying, and raises AmbiguousWriteOutcome when that
      lookup fails.
    - Rate-limit-aware backoff: respects `CB-RateLimit-Reset` and otherwise uses
      jittered exponential backoff for 429 responses.
    - Order submission for a market is serialized with reads of that market's
      open orders.

    Notes:
    - `secret` should be the base64-encoded API secret provided by Coinbase.
    - With an empty `api_key` requests are sent unsigned; enough for the public
      market-data endpoints used by paper trading.
    """

    def __init__(
        self,
        api_key: str,
        secret: str,
        passphrase: str = "",
        *,
        base_url: str = "https://api.exchange.coinbase.com",
        timeout: float = 10,
        max_retries: int = 3,
        max_backoff_seconds: float = 60.0,
        backoff_base: float = 0.5,
        error_policy: Optional[ErrorPolicy] = None,
    ):
        self.api_key = api_key
        self.secret = secret
        self.passphrase = passphrase
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.max_retries = max_retries
        self.max_backoff_seconds = max_backoff_seconds
        self.backoff_base = backoff_base
        self.error_policy = error_policy or ErrorPolicy()

        self.session = requests.Session()
        # Connection-level retries only: a refused connection never reached the
        # exchange, so it is safe for every method. Status and read retries are
        # handled below where writes can be confirmed first.
        retries = Retry(total=max_retries, connect=max_retries, read=False, status=0, backoff_factor=backoff_base, raise_on_status=False)
        self.session.mount("https://", HTTPAdapter(max_retries=retries))
        self.session.mount("http://", HTTPAdapter(max_retries=retries))

        self._market_locks: Dict[str, threading.RLock] = {}
        self._locks_guard = threading.Lock()

    @classmethod
    def from_credentials(cls, credentials: ExchangeCredentials, **kwargs) -> "CoinbaseAdapter":
        """Create CoinbaseAdapter from ExchangeCredentials (loaded via secrets module)."""
        return cls(
            api_key=credentials.api_key,
            secret=credentials.api_secret,
            passphrase=credentials.passphrase,
            **kwargs
        )

    def get_impl_name(self) -> str:
        return f"Coinbase Exchange REST API ({self.base_url})"

    def _market_lock(self, market_id: str) -> threading.RLock:
        with self._locks_guard:
            if market_id not in self._market_locks:
                self._market_locks[market_id] = threading.RLock()
            return self._market_locks[market_id]

    def _sign(self, method: str, request_path: str, body: Optional[str]) -> dict:
        headers = {"Content-Type": "application/json"}
        if not self.api_key:
            return headers
        timestamp = str(time.time())
        body = body or ""
        message = timestamp + method.upper() + request_path + body
        try:
            key = base64.b64decode(self.secret)
        except (ValueError, TypeError):
            raise FatalExchangeError("Secret must be base64-encoded for signing")
        signature = hmac.new(key, message.encode("utf-8"), hashlib.sha256)
        signature_b64 = base64.b64encode(signature.digest()).decode()
        headers.update({
            "CB-ACCESS-KEY": self.api_key,
            "CB-ACCESS-SIGN": signature_b64,
            "CB-ACCESS-TIMESTAMP": timestamp,
            "CB-ACCESS-PASSPHRASE": self.passphrase,
        })
        return headers

    @staticmethod
    def _jittered_backoff(attempt: int, base: float = 1.0, max_backoff: float = 60.0) -> float:
        """Compute jittered exponential backoff.

        Returns delay in seconds.
        """
        delay = min(base * (2 ** attempt), max_backoff)
        # ±25% so that several bots do not retry in lockstep
        jitter = delay * 0.25 * (2 * random.random() - 1)
        return max(0, delay + jitter)

    @staticmethod
    def _get_rate_limit_reset(resp: requests.Response) -> Optional[float]:
        """Extract CB-RateLimit-Reset header (Unix timestamp when rate limit resets)."""
        if "CB-RateLimit-Reset" in resp.headers:
            try:
                return float(resp.headers["CB-RateLimit-Reset"])
            except (ValueError, TypeError):
                return None
        return None

    def _request(self, method: str, path: str, body: Optional[dict] = None, params: Optional[dict] = None, attempt: int = 0):
        """Send one signed request and return the decoded JSON body.

        Only 429 responses are retried here; everything else is classified and
        raised for the caller to decide on.
        """
        request_path = path if path.startswith("/") else f"/{path}"
        if params:
            request_path = f"{request_path}?{urlencode(params)}"
        body_str = json.dumps(body) if body is not None else ""
        headers = self._sign(method, request_path, body_str)
        url = f"{self.base_url}{request_path}"

        try:
            resp = self.session.request(method, url, headers=headers, data=body_str if body else None, timeout=self.timeout)
        except requests.exceptions.Timeout as e:
            raise TransientNetworkError(f"{method} {request_path} timed out: {e}") from e
        except requests.exceptions.RequestException as e:
            raise error_from_failure(None, f"{method} {request_path} failed: {e}", self.error_policy) from e

        if resp.status_code == 429:
            reset_ts = self._get_rate_limit_reset(resp)
            if attempt >= MAX_RATE_LIMIT_ATTEMPTS:
                raise RateLimitError("Rate limited and max backoff attempts exceeded", status_code=429)
            delay = None
            if reset_ts is not None:
                # small epsilon so we do not wake just before the reset
                delay = reset_ts - time.time() + 0.01
            if delay is None or delay <= 0:
                delay = self._jittered_backoff(attempt, base=1.0, max_backoff=self.max_backoff_seconds)
            logger.warning(f"Rate limited | {method} {request_path} sleeping {delay:.2f}s (attempt {attempt + 1})")
            time.sleep(delay)
            return self._request(method, path, body=body, params=params, attempt=attempt + 1)

        if not resp.ok:
            raise error_from_failure(resp.status_code, f"{resp.status_code}: {resp.text}", self.error_policy)

        if resp.text:
            try:
                return resp.json()
            except ValueError as e:
                raise FatalExchangeError(f"{method} {request_path} returned malformed JSON: {e}") from e
        return None

    def _get(self, path: str, params: Optional[dict] = None):
        """GET with silent retries of transient failures."""
        attempt = 0
        while True:
            try:
                return self._request("GET", path, params=params)
            except TransientNetworkError as e:
                if attempt >= self.max_retries:
                    logger.warning(f"Giving up on GET {path} after {attempt + 1} attempts: {e}")
                    raise
                delay = self._jittered_backoff(attempt, base=self.backoff_base, max_backoff=self.max_backoff_seconds)
                logger.warning(f"Transient failure on GET {path}: {e} | retrying in {delay:.2f}s")
                time.sleep(delay)
                attempt += 1

    # -- parsing helpers ---------------------------------------------------

    @staticmethod
    def _parse(what: str, parse):
        try:
            return parse()
        except (KeyError, IndexError, TypeError, ValueError, InvalidOperation) as e:
            raise FatalExchangeError(f"Unexpected {what} payload from Coinbase: {e!r}") from e

    @staticmethod
    def _open_order(raw: dict) -> OpenOrder:
        return OpenOrder(
            id=raw["id"],
            market_id=raw["product_id"],
            side=OrderSide(raw["side"]),
            price=Money(raw["price"]),
            quantity=Money(raw["size"]),
        )

    # -- reads -------------------------------------------------------------

    def get_latest_price(self, market_id: str) -> Money:
        res = self._get(f"/products/{market_id}/ticker")
        return self._parse("ticker", lambda: Money(res["price"]))

    def get_order_book(self, market_id: str) -> OrderBook:
        res = self._get(f"/products/{market_id}/book", params={"level": 2})
        book = self._parse(
            "order book",
            lambda: OrderBook.from_levels(market_id, res.get("bids") or [], res.get("asks") or []),
        )
        if not book.bids:
            raise InsufficientMarketData(f"{market_id}: exchange returned an empty bid side")
        if not book.asks:
            raise InsufficientMarketData(f"{market_id}: exchange returned an empty ask side")
        return book

    def get_open_orders(self, market_id: str) -> List[OpenOrder]:
        with self._market_lock(market_id):
            res = self._get("/orders", params={"product_id": market_id, "status": "open"})
        return self._parse("open orders", lambda: [self._open_order(o) for o in res or []])

    def get_balances(self) -> Dict[str, Balance]:
        res = self._get("/accounts")
        return self._parse(
            "accounts",
            lambda: {
                a["currency"]: Balance(a["currency"], Money(a["available"]), Money(a["hold"]))
                for a in res or []
            },
        )

    def _lookup(self, path: str, cause: ExchangeError) -> Optional[dict]:
        """Read an order after a failed write; None when the exchange does not know it.

        Raises:
            AmbiguousWriteOutcome: If the lookup itself fails
        """
        try:
            return self._get(path)
        except ExchangeError as e:
            if e.status_code == 404:
                return None
            raise AmbiguousWriteOutcome(
                f"Write failed ({cause}) and confirming read {path} failed ({e}); outcome unknown"
            ) from e

    # -- writes ------------------------------------------------------------

    def place_order(self, market_id: str, side: OrderSide, quantity: Money, price: Money) -> str:
        client_oid = str(uuid.uuid4())
        body = {
            "type": "limit",
            "side": side.value,
            "product_id": market_id,
            "price": str(price),
            "size": str(quantity),
            "time_in_force": "GTC",
            "client_oid": client_oid,
        }
        with self._market_lock(market_id):
            attempt = 0
            while True:
                try:
                    res = self._request("POST", "/orders", body=body)
                except TransientNetworkError as e:
                    existing = self._lookup(f"/orders/client:{client_oid}", cause=e)
                    if existing is not None and existing.get("id"):
                        logger.warning(f"Order {client_oid} was placed despite {e} | order_id={existing['id']}")
                        return existing["id"]
                    if attempt >= self.max_retries:
                        raise TransientNetworkError(
                            f"Order {side.name} {quantity}@{price} on {market_id} not placed after "
                            f"{attempt + 1} attempts: {e}",
                            status_code=e.status_code,
                        ) from e
                    delay = self._jittered_backoff(attempt, base=self.backoff_base, max_backoff=self.max_backoff_seconds)
                    logger.warning(f"Order {client_oid} confirmed not placed ({e}) | retrying in {delay:.2f}s")
                    time.sleep(delay)
                    attempt += 1
                    continue
                order_id = res.get("id") if isinstance(res, dict) else None
                if not order_id:
                    raise AmbiguousWriteOutcome(f"Order accepted without an id: {res!r}")
                return order_id

    def cancel_order(self, order_id: str, market_id: str) -> bool:
        path = f"/orders/{order_id}"
        with self._market_lock(market_id):
            attempt = 0
            while True:
                try:
                    self._request("DELETE", path, params={"product_id": market_id})
                    return True
                except TransientNetworkError as e:
                    status = self._lookup(path, cause=e)
                    if status is None:
                        # cancelled orders without fills disappear from the API
                        return True
                    if status.get("status") == "done":
                        return status.get("done_reason") == "canceled"
                    if attempt >= self.max_retries:
                        raise
                    delay = self._jittered_backoff(attempt, base=self.backoff_base, max_backoff=self.max_backoff_seconds)
                    logger.warning(f"Cancel of {order_id} not applied ({e}) | retrying in {delay:.2f}s")
                    time.sleep(delay)
                    attempt += 1
                except FatalExchangeError as e:
                    # 404 / "order not found" / "already done": nothing left to cancel
                    if e.status_code in (400, 404) and ("not found" in str(e).lower() or "done" in str(e).lower()):
                        logger.info(f"Cancel of {order_id} ignored, order no longer open: {e}")
                        return False
                    raise
