"""Tests for the ingestion pipeline."""

import pytest
from sqlalchemy.exc import OperationalError

from ratingintel.cancel import CancelToken
from ratingintel.errors import OperationCancelled, ProtocolError, RunCancelled, RunFailed, TransientFetchError
from ratingintel.ingest import pipeline as pipeline_module
from ratingintel.ingest.pipeline import IngestionPipeline, IngestionSummary, chunked
from ratingintel.ratings.repository import count_ratings
from ratingintel.ratings.schema import RawRating
from ratingintel.source.client import Page, RatingsClient


class FakeSource:
    """Serves prepared pages in order; an exception in the list is raised instead."""

    def __init__(self, pages):
        self.pages = list(pages)
        self.cursors: list[str | None] = []

    def fetch_page(self, cursor=None, cancel=None):
        self.cursors.append(cursor)
        page = self.pages.pop(0)
        if isinstance(page, Exception):
            raise page
        return page


def _page(make_item, tickers, next_cursor=None, **overrides) -> Page:
    return Page(
        records=[RawRating.from_json(make_item(ticker, **overrides)) for ticker in tickers],
        next_cursor=next_cursor,
    )


@pytest.fixture
def two_page_source(make_item, paged_transport):
    """Page one: 5 valid + 1 invalid. Page two: 3 valid, no continuation."""
    page_one = [make_item(t) for t in ("AAPL", "MSFT", "GOOGL", "AMZN", "NVDA")]
    page_one.append(make_item("TSLA", company=""))
    page_two = [make_item(t) for t in ("META", "NFLX", "AMD")]
    transport = paged_transport(
        {
            None: {"items": page_one, "next_page": "page-2"},
            "page-2": {"items": page_two, "next_page": None},
        }
    )
    return RatingsClient("https://ratings.test/v1/ratings", "token", page_delay_seconds=0, transport=transport)


class TestIngestionPipeline:
    def test_two_page_scenario_and_rerun(self, session_factory, db_session, two_page_source):
        summary = IngestionPipeline(two_page_source, batch_size=4).run()

        assert summary.fetched == 9
        assert summary.stored == 8
        assert summary.rejected == 1
        assert summary.duplicates == 0
        assert summary.pages == 2
        assert summary.rejection_reasons == {"missing_company": 1}
        assert summary.status == "succeeded"
        assert count_ratings(db_session) == 8

        rerun = IngestionPipeline(two_page_source, batch_size=4).run()

        assert rerun.stored == 0
        assert rerun.duplicates == 8
        assert rerun.rejected == 1
        assert rerun.describe() == "succeeded: stored 0, rejected 1, duplicates 8"
        assert count_ratings(db_session) == 8

    def test_follows_cursor_until_empty_page(self, session_factory, make_item):
        source = FakeSource(
            [
                _page(make_item, ["AAPL"], next_cursor="c1"),
                _page(make_item, ["MSFT"], next_cursor="c2"),
                Page(records=[], next_cursor="c3"),
            ]
        )

        summary = IngestionPipeline(source).run()

        assert source.cursors == [None, "c1", "c2"]
        assert summary.pages == 3
        assert summary.stored == 2

    def test_nothing_fetched_is_success(self, session_factory):
        summary = IngestionPipeline(FakeSource([Page(records=[], next_cursor=None)])).run()

        assert summary.fetched == 0
        assert summary.status == "succeeded"
        assert summary.describe() == "succeeded: stored 0, rejected 0, duplicates 0"

    def test_only_rejections_is_success(self, session_factory, make_item):
        source = FakeSource([_page(make_item, ["AAPL", "MSFT"], time="")])

        summary = IngestionPipeline(source).run()

        assert summary.rejected == 2
        assert summary.sub_batches == 0
        assert summary.rejection_reasons == {"missing_time": 2}

    @pytest.mark.parametrize("error", [TransientFetchError("503 after retries"), ProtocolError("HTTP 401", 401)])
    def test_fetch_failure_ends_run_with_partial_counts(self, session_factory, make_item, error):
        source = FakeSource([_page(make_item, ["AAPL", "MSFT"], next_cursor="c1"), error])

        with pytest.raises(RunFailed) as exc_info:
            IngestionPipeline(source).run()

        summary = exc_info.value.summary
        assert summary.status == "failed"
        assert summary.stored == 2
        assert summary.pages == 1
        assert "fetch failed" in summary.fatal_error
        assert not isinstance(exc_info.value, RunCancelled)

    def test_cancellation_reports_partial_counts(self, session_factory, make_item):
        source = FakeSource(
            [_page(make_item, ["AAPL"], next_cursor="c1"), OperationCancelled("Operation cancelled")]
        )

        with pytest.raises(RunCancelled) as exc_info:
            IngestionPipeline(source).run()

        summary = exc_info.value.summary
        assert summary.cancelled is True
        assert summary.status == "cancelled"
        assert summary.stored == 1

    def test_cancelled_token_stops_before_next_page(self, session_factory, make_item):
        cancel = CancelToken()
        source = FakeSource([_page(make_item, ["AAPL"], next_cursor="c1"), _page(make_item, ["MSFT"])])
        original_fetch = source.fetch_page

        def fetch_then_cancel(cursor=None, cancel_token=None):
            page = original_fetch(cursor, cancel_token)
            cancel.cancel()
            return page

        source.fetch_page = fetch_then_cancel

        with pytest.raises(RunCancelled):
            IngestionPipeline(source).run(cancel)

        assert source.cursors == [None]


class TestSubBatchIsolation:
    def test_failed_sub_batch_is_rolled_back_and_skipped(self, session_factory, db_session, make_item, monkeypatch):
        real_persist = pipeline_module.persist_ratings
        calls = {"n": 0}

        def flaky_persist(session, batch):
            calls["n"] += 1
            outcome = real_persist(session, batch)
            if calls["n"] == 2:
                raise OperationalError("INSERT", {}, Exception("disk I/O error"))
            return outcome

        monkeypatch.setattr(pipeline_module, "persist_ratings", flaky_persist)
        source = FakeSource([_page(make_item, ["A1", "A2", "B1", "B2", "C1"])])

        summary = IngestionPipeline(source, batch_size=2).run()

        assert summary.sub_batches == 3
        assert summary.failed_sub_batches == 1
        assert summary.stored == 3
        assert len(summary.errors) == 1
        assert summary.status == "succeeded"
        assert count_ratings(db_session) == 3

    def test_every_sub_batch_failing_is_fatal(self, session_factory, make_item, monkeypatch):
        def broken_persist(session, batch):
            raise OperationalError("INSERT", {}, Exception("database is locked"))

        monkeypatch.setattr(pipeline_module, "persist_ratings", broken_persist)
        source = FakeSource([_page(make_item, ["AAPL", "MSFT"], next_cursor="c1"), _page(make_item, ["NVDA"])])

        with pytest.raises(RunFailed) as exc_info:
            IngestionPipeline(source, batch_size=1).run()

        summary = exc_info.value.summary
        assert summary.pages == 2
        assert summary.failed_sub_batches == 3
        assert summary.stored == 0
        assert summary.status == "failed"


def test_chunked():
    assert chunked([1, 2, 3, 4, 5], 2) == [[1, 2], [3, 4], [5]]
    assert chunked([], 3) == []
    with pytest.raises(ValueError):
        chunked([1], 0)


def test_summary_as_dict():
    summary = IngestionSummary(fetched=3, stored=2, rejected=1)
    summary.rejection_reasons["invalid_ticker"] += 1

    data = summary.as_dict()

    assert data["status"] == "succeeded"
    assert data["rejection_reasons"] == {"invalid_ticker": 1}
