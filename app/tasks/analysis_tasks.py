"""Celery tasks for the brand analysis pipeline.

  run_analysis                 create (if needed) and run one report end to end
  resume_report                replay aggregation for one report
  resume_interrupted_reports   replay every interrupted report
  sweep_stuck_reports          beat task: resume reports with no update for N minutes

Recovery also runs once when a worker comes up, so a report killed together
with the previous worker is finished by the next one.
"""

import asyncio
import logging

from celery.signals import worker_init, worker_ready

from app.tasks.celery_app import celery_app

logger = logging.getLogger(__name__)


def _run_async(coro):
    """Run an async coroutine from sync Celery task context.

    Creates a fresh event loop each time; engines and gateway clients are
    built inside the coroutine so they bind to that loop.
    """
    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)
    try:
        return loop.run_until_complete(coro)
    finally:
        loop.close()


def _make_session_factory():
    """Create a fresh async engine + session factory for Celery worker context."""
    from app.db.postgres import create_session_factory

    return create_session_factory(echo=False, pool_size=10, max_overflow=10, pool_pre_ping=True)


async def _run_analysis_async(report_id: str, questions, config: dict | None) -> dict:
    from app.analysis.types import AnalysisConfig
    from app.gateway.gateway import ModelGateway
    from app.services import report_store
    from app.services.analysis_orchestrator import AnalysisOrchestrator, coerce_questions
    from app.services.errors import ReportNotFoundError

    session_factory, engine = _make_session_factory()
    try:
        analysis_config = AnalysisConfig.from_dict(config) if config else None
        async with session_factory() as db:
            try:
                await report_store.get_report(db, report_id)
            except ReportNotFoundError:
                if analysis_config is None:
                    raise
                await report_store.create_report(db, analysis_config, report_id=report_id)
                logger.info("Created report %s for %s", report_id, analysis_config.entity)

        orchestrator = AnalysisOrchestrator(session_factory, ModelGateway.from_settings())
        outcome = await orchestrator.run(
            report_id,
            coerce_questions(questions) if questions else None,
            analysis_config,
        )
        return outcome.to_dict()
    finally:
        await engine.dispose()


async def _resume_report_async(report_id: str) -> dict:
    from app.gateway.gateway import ModelGateway
    from app.services.recovery_service import resume_report

    session_factory, engine = _make_session_factory()
    try:
        outcome = await resume_report(session_factory, report_id, gateway=ModelGateway.from_settings())
        return outcome.to_dict()
    finally:
        await engine.dispose()


async def _resume_interrupted_async() -> dict:
    from app.gateway.gateway import ModelGateway
    from app.services.recovery_service import resume_interrupted_reports

    session_factory, engine = _make_session_factory()
    try:
        outcomes = await resume_interrupted_reports(session_factory, gateway=ModelGateway.from_settings())
        return {"resumed": len(outcomes), "reports": [o.to_dict() for o in outcomes]}
    finally:
        await engine.dispose()


async def _sweep_stuck_async(threshold_minutes: int | None) -> dict:
    from app.gateway.gateway import ModelGateway
    from app.services.recovery_service import find_stuck_reports, resume_report

    session_factory, engine = _make_session_factory()
    try:
        async with session_factory() as db:
            report_ids = await find_stuck_reports(db, threshold_minutes)
        if not report_ids:
            return {"swept": 0, "reports": []}

        logger.warning("Found %d stuck reports: %s", len(report_ids), ", ".join(report_ids))
        gateway = ModelGateway.from_settings()
        outcomes = [await resume_report(session_factory, rid, gateway=gateway) for rid in report_ids]
        return {"swept": len(outcomes), "reports": [o.to_dict() for o in outcomes]}
    finally:
        await engine.dispose()


@celery_app.task(bind=True, name="run_analysis", max_retries=0)
def run_analysis_task(self, report_id: str, questions=None, config: dict | None = None):
    """Celery task: run one report.

    Provider errors are stored per question and never retried here, so
    Celery-level retries are disabled to avoid asking every question twice.
    """
    logger.info("Starting analysis for report %s", report_id)
    try:
        result = _run_async(_run_analysis_async(report_id, questions, config))
        logger.info("Analysis for report %s finished: %s", report_id, result["status"])
        return result
    except Exception as exc:
        logger.error("Analysis failed for report %s: %s", report_id, exc)
        return {"status": "error", "error": str(exc), "report_id": report_id}


@celery_app.task(name="resume_report", max_retries=0)
def resume_report_task(report_id: str):
    """Celery task: finish one interrupted report from its stored responses."""
    try:
        return _run_async(_resume_report_async(report_id))
    except Exception as exc:
        logger.error("Resume failed for report %s: %s", report_id, exc)
        return {"status": "error", "error": str(exc), "report_id": report_id}


@celery_app.task(name="resume_interrupted_reports", max_retries=0)
def resume_interrupted_reports_task():
    """Celery task: finish every interrupted report."""
    try:
        result = _run_async(_resume_interrupted_async())
        logger.info("Recovery done: %d reports resumed", result["resumed"])
        return result
    except Exception as exc:
        logger.error("Recovery failed: %s", exc)
        return {"status": "error", "error": str(exc)}


@celery_app.task(name="sweep_stuck_reports", max_retries=0)
def sweep_stuck_reports_task(threshold_minutes: int | None = None):
    """Celery Beat task: resume processing reports that stopped updating."""
    try:
        result = _run_async(_sweep_stuck_async(threshold_minutes))
        if result["swept"]:
            logger.info("Stuck-report sweep resumed %d reports", result["swept"])
        return result
    except Exception as exc:
        logger.error("Stuck-report sweep failed: %s", exc)
        return {"status": "error", "error": str(exc)}


# ---------------------------------------------------------------------------
# Worker lifecycle
# ---------------------------------------------------------------------------


@worker_init.connect
def _on_worker_init(**kwargs):
    from app.core.config import settings, validate_settings_for_production
    from app.core.logging import setup_logging
    from app.core.metrics import start_metrics_server
    from app.core.sentry import init_sentry

    setup_logging()
    validate_settings_for_production()
    init_sentry()
    start_metrics_server(settings.metrics_port)


@worker_ready.connect
def _on_worker_ready(sender=None, **kwargs):
    """Queue recovery of reports interrupted by the previous worker."""
    logger.info("Worker ready, queueing recovery of interrupted reports")
    resume_interrupted_reports_task.delay()
