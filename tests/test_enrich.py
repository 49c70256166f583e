"""Tests for ticker enrichment (source parsing and the parallel runner)."""

import threading

import httpx
import pytest

from ratingintel.cancel import CancelToken
from ratingintel.errors import OperationCancelled, ProtocolError, RunCancelled, RunFailed, TransientFetchError
from ratingintel.ingest.enrich import normalize_tickers, run_enrichment
from ratingintel.ratings.repository import get_enriched_data
from ratingintel.ratings.schema import EnrichedPayload
from ratingintel.source.enrichment import EnrichmentClient, parse_enrichment


class FakeEnrichmentSource:
    def __init__(self, payloads: dict, failures: dict | None = None):
        self.payloads = payloads
        self.failures = failures or {}
        self.requested: list[str] = []
        self._lock = threading.Lock()

    def fetch(self, ticker, cancel):
        with self._lock:
            self.requested.append(ticker)
        if ticker in self.failures:
            raise self.failures[ticker]
        return self.payloads[ticker]


class TestParseEnrichment:
    def test_flat_shape(self):
        payload = parse_enrichment({"closes": [100, 101.5], "sentiment_score": -0.25})
        assert payload.closes == [100.0, 101.5]
        assert payload.sentiment_score == -0.25

    def test_nested_shape(self):
        payload = parse_enrichment(
            {
                "historical_prices": {"data": [{"close": 10.0}, {"close": 11.0}]},
                "news_sentiment": {"sentiment_score": 0.4},
            }
        )
        assert payload.closes == [10.0, 11.0]
        assert payload.sentiment_score == 0.4

    def test_missing_everything_is_empty(self):
        payload = parse_enrichment({})
        assert payload.closes == []
        assert payload.sentiment_score is None

    @pytest.mark.parametrize(
        "body",
        [
            [],
            {"closes": ["abc"]},
            {"closes": [1.0], "sentiment_score": 3},
            {"historical_prices": "oops"},
            {"historical_prices": {"data": 5}},
            {"historical_prices": {"data": {"close": 1.0}}},
            {"closes": [1.0], "news_sentiment": ["positive"]},
        ],
    )
    def test_invalid_payload(self, body):
        with pytest.raises(ProtocolError):
            parse_enrichment(body)


class TestEnrichmentClient:
    def test_fetches_by_ticker(self):
        seen: list[str] = []

        def handler(request):
            seen.append(request.url.path)
            return httpx.Response(200, json={"closes": [1.0, 2.0], "sentiment_score": 0.1})

        client = EnrichmentClient(
            "https://enrich.test/v1/stocks/",
            "token",
            transport=httpx.MockTransport(handler),
        )

        payload = client.fetch("aapl", CancelToken())

        assert seen == ["/v1/stocks/AAPL"]
        assert payload.closes == [1.0, 2.0]

    def test_server_errors_are_retried(self):
        calls = {"n": 0}

        def handler(request):
            calls["n"] += 1
            if calls["n"] < 3:
                return httpx.Response(502)
            return httpx.Response(200, json={"closes": []})

        client = EnrichmentClient(
            "https://enrich.test/v1/stocks",
            "token",
            backoff_base_seconds=0.001,
            transport=httpx.MockTransport(handler),
        )

        client.fetch("MSFT", CancelToken())
        assert calls["n"] == 3


def test_normalize_tickers():
    assert normalize_tickers([" aapl", "MSFT", "AAPL", "", "msft", "nvda"]) == ["AAPL", "MSFT", "NVDA"]


class TestRunEnrichment:
    def test_stores_each_ticker(self, session_factory, db_session):
        source = FakeEnrichmentSource(
            {
                "AAPL": EnrichedPayload(closes=[100.0, 105.0], sentiment_score=0.5),
                "MSFT": EnrichedPayload(closes=[50.0]),
            }
        )

        summary = run_enrichment(["aapl", "MSFT", "AAPL"], source, max_workers=2)

        assert summary.requested == 2
        assert summary.enriched == 2
        assert summary.failed == 0
        assert sorted(source.requested) == ["AAPL", "MSFT"]
        assert get_enriched_data(db_session, "AAPL").closes == [100.0, 105.0]

    def test_one_failure_does_not_block_others(self, session_factory, db_session):
        source = FakeEnrichmentSource(
            {"AAPL": EnrichedPayload(closes=[1.0]), "NVDA": EnrichedPayload(closes=[2.0])},
            failures={"MSFT": TransientFetchError("HTTP 503")},
        )

        summary = run_enrichment(["AAPL", "MSFT", "NVDA"], source, max_workers=3)

        assert summary.enriched == 2
        assert summary.failed == 1
        assert "MSFT" in summary.errors
        assert summary.status == "succeeded"
        assert get_enriched_data(db_session, "NVDA") is not None
        assert get_enriched_data(db_session, "MSFT") is None

    def test_malformed_payload_does_not_block_others(self, session_factory, db_session):
        bodies = {
            "AAPL": {"closes": [1.0, 2.0]},
            "BAD": {"historical_prices": {"data": 5}},
            "WORSE": {"historical_prices": "oops"},
            "MSFT": {"historical_prices": {"data": [{"close": 3.0}]}},
        }

        def handler(request):
            return httpx.Response(200, json=bodies[request.url.path.rsplit("/", 1)[-1]])

        client = EnrichmentClient("https://enrich.test/v1/stocks", "token", transport=httpx.MockTransport(handler))

        summary = run_enrichment(["AAPL", "BAD", "WORSE", "MSFT"], client, max_workers=1)

        assert summary.enriched == 2
        assert summary.failed == 2
        assert sorted(summary.errors) == ["BAD", "WORSE"]
        assert get_enriched_data(db_session, "MSFT").closes == [3.0]

    def test_all_failing_is_an_error(self, session_factory):
        source = FakeEnrichmentSource(
            {},
            failures={"AAPL": ProtocolError("HTTP 404", 404), "MSFT": TransientFetchError("timeout")},
        )

        with pytest.raises(RunFailed) as exc_info:
            run_enrichment(["AAPL", "MSFT"], source)

        assert exc_info.value.summary.failed == 2
        assert exc_info.value.summary.status == "failed"

    def test_too_many_tickers(self, session_factory):
        with pytest.raises(ValueError):
            run_enrichment(["A", "B", "C"], FakeEnrichmentSource({}), max_tickers=2)

    def test_empty_list_is_a_noop(self, session_factory):
        summary = run_enrichment([], FakeEnrichmentSource({}))
        assert summary.requested == 0
        assert summary.status == "succeeded"

    def test_cancellation(self, session_factory):
        source = FakeEnrichmentSource(
            {"AAPL": EnrichedPayload(closes=[1.0])},
            failures={"MSFT": OperationCancelled("Operation cancelled")},
        )

        cancel = CancelToken()

        with pytest.raises(RunCancelled) as exc_info:
            run_enrichment(["AAPL", "MSFT"], source, max_workers=1, cancel=cancel)

        assert exc_info.value.summary.cancelled is True
        assert cancel.cancelled is False
