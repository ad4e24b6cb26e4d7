"""Report persistence: jobs, raw responses, sources, results and opportunities.

Write rules:
  - RawResponse rows are insert-or-ignore; a replayed write never changes the first.
  - Sources upsert on (report_id, url) and merge ``cited_by``.
  - AnalysisResult rows are replaced by (report_id, kind, market, category).
  - Opportunities upsert by id in one transaction; ids no longer generated are
    deleted with their action logs, surviving ids keep actions and user fields.
  - Status writes only touch reports that are still processing.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone

from sqlalchemy import delete, select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.ext.asyncio import AsyncSession

from app.analysis.insights import OpportunityDraft
from app.analysis.types import (
    AnalysisConfig,
    CategoryFamilyConfig,
    ClassifiedSource,
    Confidence,
    MarketConfig,
    Question,
    SourceCategory,
)
from app.models.analysis_result import AnalysisResult
from app.models.category_family import CategoryFamily
from app.models.market import Market
from app.models.opportunity import Opportunity, OpportunityAction
from app.models.raw_response import RawResponse
from app.models.report import Report, ReportStatus
from app.models.source import Source
from app.services.errors import OpportunityNotFoundError, ReportNotFoundError

logger = logging.getLogger(__name__)


def _insert(db: AsyncSession, model):
    """Dialect-specific INSERT so ON CONFLICT works on PostgreSQL and SQLite."""
    if db.get_bind().dialect.name == "sqlite":
        return sqlite_insert(model)
    return pg_insert(model)


# ---------------------------------------------------------------------------
# Reports
# ---------------------------------------------------------------------------


async def create_report(
    db: AsyncSession,
    config: AnalysisConfig,
    report_id: str | None = None,
    total_questions: int = 0,
) -> Report:
    """Create a processing report with its markets and category families."""
    report = Report(
        entity=config.entity,
        category=config.category,
        competitors=list(config.competitors),
        status=ReportStatus.PROCESSING.value,
        progress=0,
        total_questions=total_questions,
    )
    if report_id:
        report.id = report_id
    db.add(report)
    await db.flush()

    for order, market in enumerate(config.markets):
        db.add(
            Market(
                report_id=report.id,
                country=market.country,
                language=market.language,
                market_code=market.market_code,
                is_primary=market.is_primary,
                display_order=order,
            )
        )
    for order, family in enumerate(config.category_families):
        db.add(
            CategoryFamily(
                report_id=report.id,
                id=family.id,
                canonical_name=family.canonical_name,
                translations=dict(family.translations),
                competitors={k: list(v) for k, v in family.competitors.items()},
                display_order=order,
            )
        )
    await db.commit()
    logger.info("Created report %s for %s (%d markets)", report.id, config.entity, len(config.markets))
    return report


async def get_report(db: AsyncSession, report_id: str) -> Report:
    report = await db.get(Report, report_id)
    if report is None:
        raise ReportNotFoundError(report_id)
    return report


async def load_config(db: AsyncSession, report_id: str) -> AnalysisConfig:
    """Rebuild the job configuration from persisted rows."""
    report = await get_report(db, report_id)
    markets = (
        await db.execute(select(Market).where(Market.report_id == report_id).order_by(Market.display_order, Market.id))
    ).scalars().all()
    families = (
        await db.execute(
            select(CategoryFamily)
            .where(CategoryFamily.report_id == report_id)
            .order_by(CategoryFamily.display_order, CategoryFamily.id)
        )
    ).scalars().all()

    return AnalysisConfig(
        entity=report.entity,
        category=report.category or "",
        competitors=list(report.competitors or []),
        markets=[
            MarketConfig(country=m.country, language=m.language, market_code=m.market_code, is_primary=m.is_primary)
            for m in markets
        ],
        category_families=[
            CategoryFamilyConfig(
                id=f.id,
                canonical_name=f.canonical_name,
                translations=dict(f.translations or {}),
                competitors={k: list(v) for k, v in (f.competitors or {}).items()},
            )
            for f in families
        ],
    )


async def update_status(
    db: AsyncSession,
    report_id: str,
    status: ReportStatus,
    *,
    progress: int | None = None,
    error_message: str | None = None,
    execution_time_seconds: int | None = None,
) -> bool:
    """Move a processing report to ``status``.

    Returns False (and writes nothing) when the report is already completed
    or failed. Raises ReportNotFoundError for an unknown id.
    """
    values: dict = {"status": status.value, "updated_at": datetime.now(timezone.utc)}
    if progress is not None:
        values["progress"] = progress
    if error_message is not None:
        values["error_message"] = error_message
    if execution_time_seconds is not None:
        values["execution_time_seconds"] = execution_time_seconds

    result = await db.execute(
        update(Report)
        .where(Report.id == report_id, Report.status == ReportStatus.PROCESSING.value)
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    await db.commit()
    if result.rowcount:
        logger.info("Report %s → %s", report_id, status.value)
        return True

    report = await get_report(db, report_id)
    logger.warning("Refused status %s for report %s: already %s", status.value, report_id, report.status)
    return False


async def update_progress(db: AsyncSession, report_id: str, progress: int) -> None:
    """Raise the stored percentage; a lower value from a late writer is ignored."""
    await db.execute(
        update(Report)
        .where(
            Report.id == report_id,
            Report.status == ReportStatus.PROCESSING.value,
            Report.progress <= progress,
        )
        .values(progress=progress, updated_at=datetime.now(timezone.utc))
        .execution_options(synchronize_session=False)
    )
    await db.commit()


async def touch_report(db: AsyncSession, report_id: str, total_questions: int) -> None:
    """Record the question count and bump ``updated_at`` at job start."""
    await db.execute(
        update(Report)
        .where(Report.id == report_id)
        .values(total_questions=total_questions, updated_at=datetime.now(timezone.utc))
        .execution_options(synchronize_session=False)
    )
    await db.commit()


# ---------------------------------------------------------------------------
# Raw responses
# ---------------------------------------------------------------------------


async def save_raw_response(
    db: AsyncSession,
    report_id: str,
    question: Question,
    gemini: dict,
    openai: dict,
) -> bool:
    """Insert-or-ignore one question's answers. Returns True when a row was written.

    ``gemini`` / ``openai`` hold ``data``, ``text``, ``sources`` and ``error``.
    """
    stmt = (
        _insert(db, RawResponse)
        .values(
            report_id=report_id,
            question_id=question.id,
            question_text=question.text,
            analysis_kind=question.kind.value,
            sequence=question.sequence,
            gemini_data=gemini.get("data"),
            gemini_text=gemini.get("text"),
            gemini_sources=gemini.get("sources") or [],
            gemini_error=gemini.get("error"),
            openai_data=openai.get("data"),
            openai_text=openai.get("text"),
            openai_sources=openai.get("sources") or [],
            openai_error=openai.get("error"),
            created_at=datetime.now(timezone.utc),
        )
        .on_conflict_do_nothing(index_elements=["report_id", "question_id", "analysis_kind"])
    )
    result = await db.execute(stmt)
    await db.commit()
    return bool(result.rowcount)


async def load_raw_responses(db: AsyncSession, report_id: str) -> list[RawResponse]:
    """All stored responses of a report in question order."""
    result = await db.execute(
        select(RawResponse).where(RawResponse.report_id == report_id).order_by(RawResponse.sequence, RawResponse.id)
    )
    return list(result.scalars().all())


# ---------------------------------------------------------------------------
# Sources
# ---------------------------------------------------------------------------


async def upsert_sources(db: AsyncSession, report_id: str, sources: list[ClassifiedSource]) -> int:
    """Upsert classified sources on (report_id, url), merging ``cited_by``."""
    if not sources:
        return 0

    existing = {
        row.url: list(row.cited_by or [])
        for row in (
            await db.execute(
                select(Source.url, Source.cited_by).where(
                    Source.report_id == report_id, Source.url.in_([s.url for s in sources])
                )
            )
        ).all()
    }

    for source in sources:
        cited_by = existing.get(source.url, [])
        cited_by += [p for p in source.cited_by if p not in cited_by]
        values = {
            "title": source.title,
            "domain": source.domain,
            "cited_by": cited_by,
            "source_type": source.source_type.value,
            "confidence": source.confidence.value,
            "reasoning": source.reasoning,
            "competitor_name": source.competitor_name,
            "authority": source.authority,
            "youtube_channel": source.youtube_channel,
        }
        stmt = _insert(db, Source).values(report_id=report_id, url=source.url, **values)
        stmt = stmt.on_conflict_do_update(index_elements=["report_id", "url"], set_=values)
        await db.execute(stmt)
    await db.commit()
    return len(sources)


async def load_sources(db: AsyncSession, report_id: str) -> list[ClassifiedSource]:
    result = await db.execute(select(Source).where(Source.report_id == report_id).order_by(Source.id))
    sources = []
    for row in result.scalars().all():
        sources.append(
            ClassifiedSource(
                url=row.url,
                title=row.title or "",
                domain=row.domain or "",
                source_type=SourceCategory.parse(row.source_type) or SourceCategory.OTHER,
                confidence=Confidence(row.confidence),
                reasoning=row.reasoning or "",
                competitor_name=row.competitor_name,
                youtube_channel=row.youtube_channel,
                authority=row.authority,
                cited_by=list(row.cited_by or []),
            )
        )
    return sources


# ---------------------------------------------------------------------------
# Analysis results
# ---------------------------------------------------------------------------


async def save_analysis_result(
    db: AsyncSession,
    report_id: str,
    analysis_kind: str,
    data: dict,
    market_code: str = "",
    category_id: str = "",
) -> None:
    """Replace the result stored under (report, kind, market, category)."""
    now = datetime.now(timezone.utc)
    stmt = _insert(db, AnalysisResult).values(
        report_id=report_id,
        analysis_kind=analysis_kind,
        market_code=market_code or "",
        category_id=category_id or "",
        data=data,
        updated_at=now,
    )
    stmt = stmt.on_conflict_do_update(
        index_elements=["report_id", "analysis_kind", "market_code", "category_id"],
        set_={"data": data, "updated_at": now},
    )
    await db.execute(stmt)
    await db.commit()


async def load_analysis_results(db: AsyncSession, report_id: str) -> list[AnalysisResult]:
    result = await db.execute(
        select(AnalysisResult)
        .where(AnalysisResult.report_id == report_id)
        .order_by(AnalysisResult.analysis_kind, AnalysisResult.market_code, AnalysisResult.category_id)
    )
    return list(result.scalars().all())


# ---------------------------------------------------------------------------
# Opportunities
# ---------------------------------------------------------------------------


def _apply_draft(opportunity: Opportunity, draft: OpportunityDraft) -> None:
    row = draft.to_dict()
    opportunity.title = draft.title
    opportunity.description = draft.description
    opportunity.opportunity_type = draft.opportunity_type
    opportunity.theme_category = draft.theme_category
    opportunity.impact_score = draft.impact_score
    opportunity.impact_label = row["impact_label"]
    opportunity.effort_score = draft.effort_score
    opportunity.effort_label = row["effort_label"]
    opportunity.priority_tier = draft.priority.tier
    opportunity.priority_urgency = draft.priority.urgency
    opportunity.evidence = draft.evidence
    opportunity.sources = draft.sources
    opportunity.recommended_actions = draft.recommended_actions
    opportunity.extra = draft.metadata


async def replace_opportunities(db: AsyncSession, report_id: str, drafts: list[OpportunityDraft]) -> int:
    """Upsert ``drafts`` by id and delete the report's other opportunities.

    A surviving id keeps its action log and user-owned fields; only the
    generated fields are rewritten.
    """
    result = await db.execute(select(Opportunity).where(Opportunity.report_id == report_id))
    existing = {o.id: o for o in result.scalars().all()}
    stale = set(existing) - {d.id for d in drafts}
    if stale:
        await db.execute(
            delete(OpportunityAction).where(
                OpportunityAction.report_id == report_id, OpportunityAction.opportunity_id.in_(stale)
            )
        )
        await db.execute(delete(Opportunity).where(Opportunity.report_id == report_id, Opportunity.id.in_(stale)))

    for draft in drafts:
        opportunity = existing.get(draft.id)
        if opportunity is None:
            opportunity = Opportunity(report_id=report_id, id=draft.id)
            db.add(opportunity)
        _apply_draft(opportunity, draft)
    await db.commit()
    if stale:
        logger.info("Report %s: dropped %d stale opportunities", report_id, len(stale))
    return len(drafts)


async def list_opportunities(db: AsyncSession, report_id: str) -> list[Opportunity]:
    result = await db.execute(
        select(Opportunity)
        .where(Opportunity.report_id == report_id)
        .order_by(Opportunity.priority_urgency, Opportunity.impact_score.desc(), Opportunity.id)
    )
    return list(result.scalars().all())


async def _get_opportunity(db: AsyncSession, report_id: str, opportunity_id: str) -> Opportunity:
    opportunity = await db.get(Opportunity, (report_id, opportunity_id))
    if opportunity is None:
        raise OpportunityNotFoundError(report_id, opportunity_id)
    return opportunity


async def mark_opportunity_implemented(
    db: AsyncSession,
    report_id: str,
    opportunity_id: str,
    implemented: bool = True,
    notes: str | None = None,
) -> Opportunity:
    """Flip the implementation flag. Scores are never touched."""
    opportunity = await _get_opportunity(db, report_id, opportunity_id)
    opportunity.is_implemented = implemented
    opportunity.implemented_at = datetime.now(timezone.utc) if implemented else None
    if notes is not None:
        opportunity.implementation_notes = notes
    await db.commit()
    return opportunity


async def log_opportunity_action(
    db: AsyncSession,
    report_id: str,
    opportunity_id: str,
    action_type: str,
    description: str | None = None,
    outcome: str | None = None,
    notes: str | None = None,
) -> OpportunityAction:
    await _get_opportunity(db, report_id, opportunity_id)
    action = OpportunityAction(
        report_id=report_id,
        opportunity_id=opportunity_id,
        action_type=action_type,
        description=description,
        outcome=outcome,
        notes=notes,
    )
    db.add(action)
    await db.commit()
    return action


async def list_opportunity_actions(db: AsyncSession, report_id: str, opportunity_id: str) -> list[OpportunityAction]:
    result = await db.execute(
        select(OpportunityAction)
        .where(OpportunityAction.report_id == report_id, OpportunityAction.opportunity_id == opportunity_id)
        .order_by(OpportunityAction.created_at, OpportunityAction.id)
    )
    return list(result.scalars().all())
