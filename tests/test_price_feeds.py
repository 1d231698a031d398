import itertools
from unittest.mock import MagicMock

import pytest
import requests

from stable_channels.price_feeds import (
    DEFAULT_PRICE_FEEDS,
    PRICE_UNAVAILABLE,
    PriceFeed,
    PriceFeedAggregator,
    PriceSample,
    calculate_median_price,
    json_path_parser,
)


def _response(payload=None, status_error=None, json_error=None):
    resp = MagicMock()
    if status_error:
        resp.raise_for_status.side_effect = status_error
    if json_error:
        resp.json.side_effect = json_error
    else:
        resp.json.return_value = payload
    return resp


def _session(responses_by_url):
    session = MagicMock()
    session.headers = {}

    def get(url, timeout):
        result = responses_by_url[url]
        if isinstance(result, Exception):
            raise result
        return result

    session.get.side_effect = get
    return session


FEEDS = [
    PriceFeed("a", "https://a.example/ticker", json_path_parser("last")),
    PriceFeed("b", "https://b.example/ticker", json_path_parser("data", "amount")),
    PriceFeed("c", "https://c.example/ticker", json_path_parser("result", "XXBTZUSD", "c")),
]


def test_json_path_parser_variants() -> None:
    assert json_path_parser("last")({"last": "50123.45"}) == 50123.45
    assert json_path_parser("bitcoin", "usd")({"bitcoin": {"usd": 50000}}) == 50000.0
    assert json_path_parser("result", "XXBTZUSD", "c")(
        {"result": {"XXBTZUSD": {"c": ["49999.9", "0.01"]}}}
    ) == 49999.9


@pytest.mark.parametrize("payload", [
    {},
    {"last": None},
    {"last": "n/a"},
    {"last": "-1"},
    {"last": 0},
    {"last": []},
    {"last": True},
    ["last"],
])
def test_json_path_parser_rejects_bad_bodies(payload) -> None:
    assert json_path_parser("last")(payload) is None


def test_default_feeds_have_unique_names() -> None:
    names = [f.name for f in DEFAULT_PRICE_FEEDS]
    assert len(names) == len(set(names))
    assert len(names) >= 3


def test_median_independent_of_order() -> None:
    samples = [PriceSample("a", 50_000.0), PriceSample("b", 50_100.0),
               PriceSample("c", 49_900.0), PriceSample("d", 75_000.0),
               PriceSample("e", error="timeout")]
    expected = calculate_median_price(samples)
    for perm in itertools.permutations(samples):
        assert calculate_median_price(list(perm)) == expected
    assert expected == pytest.approx(50_050.0)


def test_median_of_nothing_is_none() -> None:
    assert calculate_median_price([]) is None
    assert calculate_median_price([PriceSample("a", error="boom")]) is None


def test_median_resists_outlier(plugin) -> None:
    session = _session({
        FEEDS[0].url: _response({"last": "50000"}),
        FEEDS[1].url: _response({"data": {"amount": "50010"}}),
        FEEDS[2].url: _response({"result": {"XXBTZUSD": {"c": ["1", "0.1"]}}}),
    })
    aggregator = PriceFeedAggregator(plugin, feeds=FEEDS, session=session)
    assert aggregator.get_latest_price() == 50_000.0


def test_failed_feeds_are_excluded(plugin) -> None:
    session = _session({
        FEEDS[0].url: requests.Timeout("slow"),
        FEEDS[1].url: _response({"data": {"amount": "50010"}}),
        FEEDS[2].url: _response(status_error=requests.HTTPError("503")),
    })
    aggregator = PriceFeedAggregator(plugin, feeds=FEEDS, session=session)

    samples = aggregator.fetch_prices()
    assert [s.ok for s in samples] == [False, True, False]
    assert aggregator.get_latest_price() == 50_010.0


def test_invalid_json_is_excluded(plugin) -> None:
    session = _session({
        FEEDS[0].url: _response(json_error=ValueError("not json")),
        FEEDS[1].url: _response({"data": {"amount": "50010"}}),
        FEEDS[2].url: _response({"unexpected": "shape"}),
    })
    aggregator = PriceFeedAggregator(plugin, feeds=FEEDS, session=session)

    samples = aggregator.fetch_prices()
    assert samples[0].error == "invalid JSON"
    assert samples[2].error == "unparsable response"
    assert aggregator.get_latest_price() == 50_010.0


def test_total_outage_returns_sentinel(plugin) -> None:
    session = _session({feed.url: requests.ConnectionError("down") for feed in FEEDS})
    aggregator = PriceFeedAggregator(plugin, feeds=FEEDS, session=session)

    assert aggregator.get_latest_price() == PRICE_UNAVAILABLE == 0.0
    assert any(call.kwargs.get("level") == "warn" for call in plugin.log.call_args_list)


def test_each_feed_fetched_once_with_timeout(plugin) -> None:
    session = _session({
        FEEDS[0].url: _response({"last": "50000"}),
        FEEDS[1].url: requests.Timeout("slow"),
        FEEDS[2].url: _response({"result": {"XXBTZUSD": {"c": ["50002", "1"]}}}),
    })
    aggregator = PriceFeedAggregator(plugin, feeds=FEEDS, timeout=2.5, session=session)
    aggregator.get_latest_price()

    assert session.get.call_count == len(FEEDS)
    assert all(call.kwargs["timeout"] == 2.5 for call in session.get.call_args_list)
    assert "User-Agent" in session.headers
