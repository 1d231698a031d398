"""
Price Feed module for stable-channels

Price Oracle Aggregator

Queries several independent BTC/USD price sources and combines them
into one robust price using the median. A single broken or lying
feed cannot move the result as long as most feeds agree.

Each source is a PriceFeed: a name, a URL and a parse rule that turns
the decoded JSON body into an optional float. The aggregator iterates
the feeds uniformly, so adding a source is a one-line change to
DEFAULT_PRICE_FEEDS.

Failure semantics:
- A feed that times out, returns an HTTP error, returns invalid JSON
  or a body the parse rule rejects is dropped for this cycle only.
- If every feed fails, get_latest_price() returns PRICE_UNAVAILABLE
  (0.0). Callers must check for it before dividing by the price.
"""

import statistics
from dataclasses import dataclass
from typing import Any, Callable, List, Optional, Sequence

import requests
from pyln.client import Plugin


PRICE_UNAVAILABLE = 0.0

HEADERS = {"User-Agent": "stable-channels/0.3"}

ParseRule = Callable[[Any], Optional[float]]


def _to_price(value: Any) -> Optional[float]:
    """Coerce a JSON scalar to a positive float price."""
    if isinstance(value, bool):
        return None
    try:
        price = float(str(value).replace(",", ""))
    except (TypeError, ValueError):
        return None
    if price != price or price <= 0 or price == float("inf"):
        return None
    return price


def json_path_parser(*keys: str) -> ParseRule:
    """
    Build a parse rule that walks `keys` into a JSON document.

    If the value found is a list, its first element is used (Kraken
    returns [price, volume] pairs). Numeric strings are accepted.

    Returns:
        Function mapping a decoded JSON payload to a price or None
    """
    def parse(payload: Any) -> Optional[float]:
        node = payload
        for key in keys:
            if not isinstance(node, dict) or key not in node:
                return None
            node = node[key]
        if isinstance(node, list):
            if not node:
                return None
            node = node[0]
        return _to_price(node)
    return parse


@dataclass(frozen=True)
class PriceFeed:
    """A single BTC/USD price source."""
    name: str
    url: str
    parse: ParseRule


@dataclass
class PriceSample:
    """
    Result of querying one feed in the current cycle.

    Attributes:
        source: Feed name
        price: USD per BTC, or None if the feed failed
        error: Failure reason when price is None
    """
    source: str
    price: Optional[float] = None
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.price is not None

    def to_dict(self):
        return {
            "source": self.source,
            "price": round(self.price, 2) if self.price is not None else None,
            "error": self.error
        }


DEFAULT_PRICE_FEEDS: List[PriceFeed] = [
    PriceFeed("Bitstamp", "https://www.bitstamp.net/api/v2/ticker/btcusd/",
              json_path_parser("last")),
    PriceFeed("CoinGecko", "https://api.coingecko.com/api/v3/simple/price?ids=bitcoin&vs_currencies=usd",
              json_path_parser("bitcoin", "usd")),
    PriceFeed("Kraken", "https://api.kraken.com/0/public/Ticker?pair=XBTUSD",
              json_path_parser("result", "XXBTZUSD", "c")),
    PriceFeed("Coinbase", "https://api.coinbase.com/v2/prices/spot?currency=USD",
              json_path_parser("data", "amount")),
    PriceFeed("Blockchain.com", "https://blockchain.info/ticker",
              json_path_parser("USD", "last")),
]


def calculate_median_price(samples: Sequence[PriceSample]) -> Optional[float]:
    """
    Median of the successful samples.

    Returns:
        The median price, or None if no sample succeeded
    """
    prices = [s.price for s in samples if s.ok]
    if not prices:
        return None
    return statistics.median(prices)


class PriceFeedAggregator:
    """
    Fetches every configured feed and reduces them to one price.

    Feeds are queried sequentially with a per-request timeout. Nothing
    is cached between calls; each cycle sees fresh prices.
    """

    def __init__(self, plugin: Plugin, feeds: Optional[Sequence[PriceFeed]] = None,
                 timeout: float = 5.0, session: Optional[requests.Session] = None):
        """
        Initialize the aggregator.

        Args:
            plugin: Reference to the pyln Plugin (for logging)
            feeds: Price sources to query (defaults to DEFAULT_PRICE_FEEDS)
            timeout: Per-request timeout in seconds
            session: HTTP session to reuse across requests
        """
        self.plugin = plugin
        self.feeds = list(DEFAULT_PRICE_FEEDS if feeds is None else feeds)
        self.timeout = timeout
        self.session = session or requests.Session()
        self.session.headers.update(HEADERS)

    def fetch_price(self, feed: PriceFeed) -> PriceSample:
        """Query a single feed. Never raises."""
        try:
            resp = self.session.get(feed.url, timeout=self.timeout)
            resp.raise_for_status()
        except requests.RequestException as e:
            self.plugin.log(f"Price feed {feed.name} request failed: {e}", level='debug')
            return PriceSample(feed.name, error=f"request failed: {e}")

        try:
            payload = resp.json()
        except ValueError as e:
            self.plugin.log(f"Price feed {feed.name} returned invalid JSON: {e}", level='debug')
            return PriceSample(feed.name, error="invalid JSON")

        price = feed.parse(payload)
        if price is None:
            self.plugin.log(f"Price feed {feed.name} returned an unparsable body", level='debug')
            return PriceSample(feed.name, error="unparsable response")
        return PriceSample(feed.name, price=price)

    def fetch_prices(self) -> List[PriceSample]:
        """Query every feed once, in order."""
        return [self.fetch_price(feed) for feed in self.feeds]

    def get_latest_price(self) -> float:
        """
        Fetch all feeds and return the median price.

        Returns:
            Median USD/BTC price, or PRICE_UNAVAILABLE (0.0) if every feed failed
        """
        samples = self.fetch_prices()
        median = calculate_median_price(samples)
        failed = [s.source for s in samples if not s.ok]

        if median is None:
            self.plugin.log(
                f"All {len(samples)} price feeds failed: {', '.join(failed) or 'none configured'}",
                level='warn'
            )
            return PRICE_UNAVAILABLE

        if failed:
            self.plugin.log(
                f"Price feeds excluded this cycle: {', '.join(failed)}",
                level='debug'
            )
        self.plugin.log(
            f"BTC/USD median ${median:,.2f} from {len(samples) - len(failed)}/{len(samples)} feeds",
            level='debug'
        )
        return median
