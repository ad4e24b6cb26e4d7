"""Recovery of reports interrupted mid-run (worker restart, crash, OOM kill).

A report is interrupted when it is still ``processing``, has at least one
stored RawResponse, and has fewer AnalysisResults than analysis kinds it
attempted. Recovery never re-asks questions: it replays the aggregation
phase over whatever responses were persisted.
"""

from __future__ import annotations

import logging
import time
from datetime import datetime, timedelta, timezone

from sqlalchemy import distinct, func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.analysis.source_classifier import SourceClassifier
from app.core.config import settings
from app.core.logging import report_context
from app.core.metrics import JOB_RUNS
from app.gateway.gateway import ModelGateway
from app.models.analysis_result import AnalysisResult
from app.models.raw_response import RawResponse
from app.models.report import Report, ReportStatus
from app.services import report_store
from app.services.aggregation_phase import run_aggregation_phase
from app.services.analysis_orchestrator import JobOutcome, complete_report, fail_report
from app.services.progress import ProgressRegistry, progress_registry

logger = logging.getLogger(__name__)

NO_USABLE_RESPONSES = "No usable responses to resume from"


async def find_interrupted_reports(db: AsyncSession) -> list[str]:
    """Ids of processing reports whose stored responses were never fully aggregated."""
    responses = (
        select(
            RawResponse.report_id.label("report_id"),
            func.count(distinct(RawResponse.analysis_kind)).label("kinds"),
        )
        .group_by(RawResponse.report_id)
        .subquery()
    )
    results = (
        select(
            AnalysisResult.report_id.label("report_id"),
            func.count(AnalysisResult.id).label("results"),
        )
        .group_by(AnalysisResult.report_id)
        .subquery()
    )
    stmt = (
        select(Report.id)
        .join(responses, responses.c.report_id == Report.id)
        .outerjoin(results, results.c.report_id == Report.id)
        .where(
            Report.status == ReportStatus.PROCESSING.value,
            or_(results.c.results.is_(None), results.c.results < responses.c.kinds),
        )
        .order_by(Report.created_at, Report.id)
    )
    rows = await db.execute(stmt)
    return [r[0] for r in rows.all()]


async def find_stuck_reports(db: AsyncSession, threshold_minutes: int | None = None) -> list[str]:
    """Ids of processing reports with no update for ``threshold_minutes``."""
    minutes = threshold_minutes if threshold_minutes is not None else settings.stuck_report_minutes
    cutoff = datetime.now(timezone.utc) - timedelta(minutes=minutes)
    rows = await db.execute(
        select(Report.id)
        .where(Report.status == ReportStatus.PROCESSING.value, Report.updated_at < cutoff)
        .order_by(Report.updated_at, Report.id)
    )
    return [r[0] for r in rows.all()]


async def resume_report(
    session_factory: async_sessionmaker[AsyncSession],
    report_id: str,
    *,
    gateway: ModelGateway | None = None,
    classifier: SourceClassifier | None = None,
    progress: ProgressRegistry | None = progress_registry,
) -> JobOutcome:
    """Replay the aggregation phase for one report from its stored responses."""
    with report_context(report_id):
        return await _resume(session_factory, report_id, gateway, classifier, progress)


async def _resume(
    session_factory: async_sessionmaker[AsyncSession],
    report_id: str,
    gateway: ModelGateway | None,
    classifier: SourceClassifier | None,
    progress: ProgressRegistry | None,
) -> JobOutcome:
    started = time.monotonic()
    outcome = JobOutcome(report_id=report_id, status=ReportStatus.PROCESSING.value, mode="resume")
    try:
        async with session_factory() as db:
            report = await report_store.get_report(db, report_id)
            if report.is_terminal:
                logger.info("Report %s already %s, nothing to resume", report_id, report.status)
                outcome.status = report.status
                return outcome
            rows = await report_store.load_raw_responses(db, report_id)
        outcome.responses_saved = len(rows)

        if not any(row.has_usable_data for row in rows):
            logger.warning("Report %s: %d stored responses, none usable", report_id, len(rows))
            await fail_report(session_factory, progress, report_id, NO_USABLE_RESPONSES)
            outcome.status = ReportStatus.FAILED.value
            outcome.error = NO_USABLE_RESPONSES
        else:
            logger.info("Resuming report %s from %d stored responses", report_id, len(rows))
            summary = await run_aggregation_phase(
                session_factory, report_id, gateway=gateway, classifier=classifier, progress=progress
            )
            outcome.results = len(summary.results)
            outcome.opportunities = summary.opportunities
            outcome.failed_scopes = summary.failed_scopes
            outcome.execution_time_seconds = int(time.monotonic() - started)
            await complete_report(session_factory, progress, report_id, summary, outcome.execution_time_seconds)
            outcome.status = ReportStatus.COMPLETED.value
    except Exception as e:
        logger.exception("Resume failed for report %s", report_id)
        outcome.status = ReportStatus.FAILED.value
        outcome.error = str(e)
        await fail_report(session_factory, progress, report_id, str(e))
    finally:
        if progress is not None:
            progress.close(report_id)

    outcome.execution_time_seconds = outcome.execution_time_seconds or int(time.monotonic() - started)
    JOB_RUNS.labels(mode="resume", status=outcome.status).inc()
    return outcome


async def resume_interrupted_reports(
    session_factory: async_sessionmaker[AsyncSession],
    *,
    gateway: ModelGateway | None = None,
    classifier: SourceClassifier | None = None,
    progress: ProgressRegistry | None = progress_registry,
) -> list[JobOutcome]:
    """Resume every interrupted report, one after another."""
    async with session_factory() as db:
        report_ids = await find_interrupted_reports(db)
    if not report_ids:
        logger.info("No interrupted reports found")
        return []

    logger.info("Found %d interrupted reports: %s", len(report_ids), ", ".join(report_ids))
    outcomes = []
    for report_id in report_ids:
        outcomes.append(
            await resume_report(
                session_factory, report_id, gateway=gateway, classifier=classifier, progress=progress
            )
        )
    return outcomes
