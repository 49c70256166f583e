"""Initial schema.

Revision ID: 001
Revises:
Create Date: 2026-10-19

"""
from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = "001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    # STOCK_RATINGS (immutable analyst events)
    op.create_table(
        "stock_ratings",
        sa.Column("id", postgresql.UUID, primary_key=True, server_default=sa.text("gen_random_uuid()")),
        sa.Column("ticker", sa.String(10), nullable=False),
        sa.Column("company", sa.String(255), nullable=False),
        sa.Column("brokerage", sa.String(255), nullable=False),
        sa.Column("action", sa.String(20), nullable=False),
        sa.Column("rating_from", sa.String(50)),
        sa.Column("rating_to", sa.String(50), nullable=False),
        sa.Column("target_from", sa.Float),
        sa.Column("target_to", sa.Float),
        sa.Column("event_time", sa.DateTime(timezone=True), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("NOW()")),
        sa.CheckConstraint("target_from IS NULL OR target_from > 0", name="ck_stock_ratings_target_from_positive"),
        sa.CheckConstraint("target_to IS NULL OR target_to > 0", name="ck_stock_ratings_target_to_positive"),
        # Natural key: re-ingesting the same event is a no-op
        sa.UniqueConstraint("ticker", "brokerage", "rating_to", "event_time", name="uq_stock_ratings_natural_key"),
    )
    op.create_index("ix_stock_ratings_ticker_time", "stock_ratings", ["ticker", "event_time"])

    # ENRICHED_STOCK_DATA (one row per ticker)
    op.create_table(
        "enriched_stock_data",
        sa.Column("ticker", sa.String(10), primary_key=True),
        sa.Column("historical_closes", postgresql.JSONB, nullable=False, server_default=sa.text("'[]'::jsonb")),
        sa.Column("sentiment_score", sa.Float),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("NOW()")),
        sa.CheckConstraint(
            "sentiment_score IS NULL OR sentiment_score BETWEEN -1 AND 1",
            name="ck_enriched_stock_data_sentiment_range",
        ),
    )

    # INGESTION_RUNS (trigger tracking)
    op.create_table(
        "ingestion_runs",
        sa.Column("id", postgresql.UUID, primary_key=True, server_default=sa.text("gen_random_uuid()")),
        sa.Column("run_type", sa.String(20), nullable=False),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("NOW()")),
        sa.Column("finished_at", sa.DateTime(timezone=True)),
        sa.Column("status", sa.String(20), server_default="running"),
        sa.Column("stats_json", postgresql.JSONB),
        sa.Column("error_json", postgresql.JSONB),
    )
    op.create_index("ix_ingestion_runs_type_started", "ingestion_runs", ["run_type", "started_at"])


def downgrade() -> None:
    op.drop_index("ix_ingestion_runs_type_started")
    op.drop_table("ingestion_runs")
    op.drop_table("enriched_stock_data")
    op.drop_index("ix_stock_ratings_ticker_time")
    op.drop_table("stock_ratings")
