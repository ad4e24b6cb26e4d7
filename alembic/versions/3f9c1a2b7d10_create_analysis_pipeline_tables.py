"""create analysis pipeline tables

Revision ID: 3f9c1a2b7d10
Revises:
Create Date: 2026-10-19 09:00:00.000000

"""

from collections.abc import Sequence

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects.postgresql import JSONB

revision: str = "3f9c1a2b7d10"
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def _report_fk() -> sa.Column:
    return sa.Column(
        "report_id", sa.String(36), sa.ForeignKey("reports.id", ondelete="CASCADE"), nullable=False, index=True
    )


def upgrade() -> None:
    # =========================================================
    # 1. Reports (one analysis job each)
    # =========================================================
    op.create_table(
        "reports",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("entity", sa.String(255), nullable=False, index=True),
        sa.Column("category", sa.String(255), nullable=False, server_default=""),
        sa.Column("competitors", JSONB(), nullable=True),
        sa.Column("status", sa.String(20), nullable=False, server_default="processing", index=True),
        sa.Column("progress", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("total_questions", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("execution_time_seconds", sa.Integer(), nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )
    # Recovery sweeps scan processing reports by age
    op.create_index("ix_reports_status_updated_at", "reports", ["status", "updated_at"])

    # =========================================================
    # 2. Markets and category families
    # =========================================================
    op.create_table(
        "report_markets",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        _report_fk(),
        sa.Column("country", sa.String(100), nullable=False),
        sa.Column("language", sa.String(50), nullable=False),
        sa.Column("market_code", sa.String(20), nullable=False),
        sa.Column("is_primary", sa.Boolean(), nullable=False, server_default="false"),
        sa.Column("display_order", sa.Integer(), nullable=False, server_default="0"),
        sa.UniqueConstraint("report_id", "market_code", name="uq_report_market"),
    )
    op.create_table(
        "category_families",
        sa.Column(
            "report_id", sa.String(36), sa.ForeignKey("reports.id", ondelete="CASCADE"), primary_key=True
        ),
        sa.Column("id", sa.String(50), primary_key=True),
        sa.Column("canonical_name", sa.String(255), nullable=False),
        sa.Column("translations", JSONB(), nullable=True),
        sa.Column("competitors", JSONB(), nullable=True),
        sa.Column("display_order", sa.Integer(), nullable=False, server_default="0"),
    )

    # =========================================================
    # 3. Raw responses (append-only)
    # =========================================================
    op.create_table(
        "raw_responses",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        _report_fk(),
        sa.Column("question_id", sa.String(200), nullable=False),
        sa.Column("question_text", sa.Text(), nullable=False),
        sa.Column("analysis_kind", sa.String(20), nullable=False),
        sa.Column("sequence", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("gemini_data", JSONB(), nullable=True),
        sa.Column("gemini_text", sa.Text(), nullable=True),
        sa.Column("gemini_sources", JSONB(), nullable=True),
        sa.Column("gemini_error", sa.Text(), nullable=True),
        sa.Column("openai_data", JSONB(), nullable=True),
        sa.Column("openai_text", sa.Text(), nullable=True),
        sa.Column("openai_sources", JSONB(), nullable=True),
        sa.Column("openai_error", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.UniqueConstraint("report_id", "question_id", "analysis_kind", name="uq_raw_response"),
    )

    # =========================================================
    # 4. Classified sources
    # =========================================================
    op.create_table(
        "sources",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        _report_fk(),
        sa.Column("url", sa.String(2000), nullable=False),
        sa.Column("title", sa.String(1000), nullable=True),
        sa.Column("domain", sa.String(255), nullable=True, index=True),
        sa.Column("cited_by", JSONB(), nullable=True),
        sa.Column("source_type", sa.String(50), nullable=False, server_default="Other"),
        sa.Column("confidence", sa.String(10), nullable=False, server_default="low"),
        sa.Column("reasoning", sa.Text(), nullable=True),
        sa.Column("competitor_name", sa.String(255), nullable=True),
        sa.Column("authority", sa.Float(), nullable=True),
        sa.Column("youtube_channel", sa.String(255), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.UniqueConstraint("report_id", "url", name="uq_report_source_url"),
    )

    # =========================================================
    # 5. Aggregate results
    # =========================================================
    op.create_table(
        "analysis_results",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        _report_fk(),
        sa.Column("analysis_kind", sa.String(30), nullable=False),
        sa.Column("market_code", sa.String(20), nullable=False, server_default=""),
        sa.Column("category_id", sa.String(50), nullable=False, server_default=""),
        sa.Column("data", JSONB(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.UniqueConstraint(
            "report_id", "analysis_kind", "market_code", "category_id", name="uq_analysis_result"
        ),
    )

    # =========================================================
    # 6. Opportunities and their action log
    # =========================================================
    op.create_table(
        "opportunities",
        sa.Column(
            "report_id", sa.String(36), sa.ForeignKey("reports.id", ondelete="CASCADE"), primary_key=True
        ),
        sa.Column("id", sa.String(20), primary_key=True),
        sa.Column("title", sa.String(500), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("opportunity_type", sa.String(50), nullable=False),
        sa.Column("theme_category", sa.String(50), nullable=False),
        sa.Column("impact_score", sa.Float(), nullable=False),
        sa.Column("impact_label", sa.String(10), nullable=False),
        sa.Column("effort_score", sa.Float(), nullable=False),
        sa.Column("effort_label", sa.String(10), nullable=False),
        sa.Column("priority_tier", sa.String(20), nullable=False, index=True),
        sa.Column("priority_urgency", sa.Integer(), nullable=False),
        sa.Column("evidence", JSONB(), nullable=True),
        sa.Column("sources", JSONB(), nullable=True),
        sa.Column("recommended_actions", JSONB(), nullable=True),
        sa.Column("metadata", JSONB(), nullable=True),
        sa.Column("is_implemented", sa.Boolean(), nullable=False, server_default="false"),
        sa.Column("implemented_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("implementation_notes", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )
    op.create_table(
        "opportunity_actions",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("report_id", sa.String(36), nullable=False, index=True),
        sa.Column("opportunity_id", sa.String(20), nullable=False),
        sa.Column("action_type", sa.String(50), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("outcome", sa.String(50), nullable=True),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.ForeignKeyConstraint(
            ["report_id", "opportunity_id"],
            ["opportunities.report_id", "opportunities.id"],
            ondelete="CASCADE",
        ),
    )


def downgrade() -> None:
    op.drop_table("opportunity_actions")
    op.drop_table("opportunities")
    op.drop_table("analysis_results")
    op.drop_table("sources")
    op.drop_table("raw_responses")
    op.drop_table("category_families")
    op.drop_table("report_markets")
    op.drop_index("ix_reports_status_updated_at", table_name="reports")
    op.drop_table("reports")
