"""Trigger and query operations exposed to the CLI (and any other façade)."""

from __future__ import annotations

from collections.abc import Iterable
from datetime import UTC, datetime, timedelta
from typing import Any
from uuid import UUID

import structlog

from ratingintel.cancel import CancelToken
from ratingintel.config import settings
from ratingintel.db import get_db
from ratingintel.errors import RunFailed, RunRefused
from ratingintel.ingest.enrich import EnrichmentSummary, run_enrichment
from ratingintel.ingest.pipeline import IngestionPipeline, IngestionSummary, PageSource
from ratingintel.models import IngestionRun
from ratingintel.ratings.repository import count_ratings, list_unique_tickers, ratings_for_ticker
from ratingintel.ratings.schema import Rating
from ratingintel.recommend.engine import Recommendation, RecommendationCache, RecommendationEngine
from ratingintel.source.client import RatingsClient
from ratingintel.source.enrichment import EnrichmentClient, EnrichmentSource

logger = structlog.get_logger()

RUN_TYPE_INGEST = "ingest"
RUN_TYPE_ENRICH = "enrich"


def _start_run(run_type: str) -> UUID:
    """Record a new run, refusing while a recent run of the same type is active."""
    now = datetime.now(UTC)
    cutoff = now - timedelta(seconds=settings.ingest_timeout_seconds)

    with get_db() as session:
        active = (
            session.query(IngestionRun)
            .filter(
                IngestionRun.run_type == run_type,
                IngestionRun.status == "running",
                IngestionRun.started_at >= cutoff,
            )
            .first()
        )
        if active:
            logger.info("Another run in progress, refusing", run_type=run_type, run_id=str(active.id))
            raise RunRefused(f"A {run_type} run is already in progress (started {active.started_at})")

        run = IngestionRun(run_type=run_type, status="running", started_at=now)
        session.add(run)
        session.flush()
        return run.id


def _finish_run(run_id: UUID, status: str, stats: dict[str, Any], error: dict[str, Any] | None = None) -> None:
    with get_db() as session:
        run = session.get(IngestionRun, run_id)
        if run is None:
            logger.warning("Run record vanished", run_id=str(run_id))
            return
        run.status = status
        run.finished_at = datetime.now(UTC)
        run.stats_json = stats
        run.error_json = error or {}


def run_ingestion_job(
    cancel: CancelToken | None = None,
    *,
    client: PageSource | None = None,
) -> IngestionSummary:
    """Traverse the ratings source once.

    Without an explicit token the run is timeboxed by ``ingest_timeout_seconds``.
    Raises RunRefused, RunFailed or RunCancelled; the run record is always
    closed with the final status and partial counts.
    """
    cancel = cancel or CancelToken(settings.ingest_timeout_seconds)
    run_id = _start_run(RUN_TYPE_INGEST)
    logger.info("Ingestion run started", run_id=str(run_id))

    owned_client = None
    try:
        if client is None:
            client = owned_client = RatingsClient.from_settings()
        pipeline = IngestionPipeline(client, batch_size=settings.ingest_batch_size)
        summary = pipeline.run(cancel)
    except RunFailed as e:
        _finish_run(run_id, e.summary.status, e.summary.as_dict(), {"error": str(e)})
        raise
    except Exception as e:
        logger.exception("Ingestion run crashed", run_id=str(run_id))
        _finish_run(run_id, "failed", {}, {"error": str(e)})
        raise
    finally:
        if owned_client is not None:
            owned_client.close()

    _finish_run(run_id, summary.status, summary.as_dict())
    return summary


def run_enrichment_job(
    tickers: Iterable[str] | None = None,
    cancel: CancelToken | None = None,
    *,
    source: EnrichmentSource | None = None,
) -> EnrichmentSummary:
    """Enrich the given tickers, or every known ticker up to ``enrichment_max_tickers``."""
    cancel = cancel or CancelToken(settings.ingest_timeout_seconds)

    if tickers is None:
        with get_db() as session:
            known = sorted(list_unique_tickers(session))
        tickers = known[: settings.enrichment_max_tickers]
    tickers = list(tickers)

    run_id = _start_run(RUN_TYPE_ENRICH)
    logger.info("Enrichment run started", run_id=str(run_id), tickers=len(tickers))

    owned_source = None
    try:
        if source is None:
            source = owned_source = EnrichmentClient.from_settings()
        summary = run_enrichment(
            tickers,
            source,
            max_tickers=settings.enrichment_max_tickers,
            max_workers=settings.enrichment_max_workers,
            cancel=cancel,
        )
    except RunFailed as e:
        _finish_run(run_id, e.summary.status, e.summary.as_dict(), {"error": str(e)})
        raise
    except Exception as e:
        logger.exception("Enrichment run crashed", run_id=str(run_id))
        _finish_run(run_id, "failed", {}, {"error": str(e)})
        raise
    finally:
        if owned_source is not None:
            owned_source.close()

    _finish_run(run_id, summary.status, summary.as_dict())
    return summary


def list_recommendations(cache: RecommendationCache | None = None) -> list[Recommendation]:
    if cache is not None:
        return cache.get()
    return RecommendationEngine().generate()


def recent_runs(limit: int = 10) -> list[dict[str, Any]]:
    with get_db() as session:
        runs = session.query(IngestionRun).order_by(IngestionRun.started_at.desc()).limit(limit).all()
        return [
            {
                "id": str(run.id),
                "run_type": run.run_type,
                "status": run.status,
                "started_at": run.started_at,
                "finished_at": run.finished_at,
                "stats": dict(run.stats_json or {}),
                "error": (run.error_json or {}).get("error"),
            }
            for run in runs
        ]


def rating_count() -> int:
    with get_db() as session:
        return count_ratings(session)


def ticker_history(ticker: str) -> list[Rating]:
    with get_db() as session:
        return ratings_for_ticker(session, ticker)
