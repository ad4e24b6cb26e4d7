"""Analysis Orchestrator: runs a new report end to end.

  1. Flatten questions (reputation → visibility → competitive → category)
  2. Ask both providers per question, ``settings.question_batch_size`` at a time
  3. Persist each RawResponse, then count it toward progress (0..80)
  4. Run the aggregation phase (85 classifying, 90 aggregating, 95 insights)
  5. Mark the report completed (100)

A provider failure for one question is stored in that provider's error
column and never stops the job. Anything that escapes (unknown report,
database down) marks the report failed.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Mapping
from dataclasses import dataclass, field

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.analysis.json_parser import parse_model_json
from app.analysis.prompts import build_question_prompt
from app.analysis.questions import flatten_questions, generate_all_questions
from app.analysis.source_classifier import SourceClassifier
from app.analysis.types import AnalysisConfig, AnalysisKind, Question
from app.core.config import settings
from app.core.logging import report_context
from app.core.metrics import JOB_RUNS
from app.gateway.gateway import ModelGateway
from app.gateway.types import GatewayResponse
from app.models.report import ReportStatus
from app.services import report_store
from app.services.aggregation_phase import COMPLETE_PROGRESS, AggregationSummary, run_aggregation_phase
from app.services.progress import EventType, ProgressEvent, ProgressRegistry, progress_registry

logger = logging.getLogger(__name__)

QUESTIONS_PROGRESS_SPAN = 80


@dataclass
class JobOutcome:
    report_id: str
    status: str
    mode: str = "live"  # live | resume
    questions: int = 0
    responses_saved: int = 0
    results: int = 0
    opportunities: int = 0
    execution_time_seconds: int = 0
    error: str | None = None
    failed_scopes: list[tuple[str, str, str]] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "report_id": self.report_id,
            "status": self.status,
            "mode": self.mode,
            "questions": self.questions,
            "responses_saved": self.responses_saved,
            "results": self.results,
            "opportunities": self.opportunities,
            "execution_time_seconds": self.execution_time_seconds,
            "error": self.error,
            "failed_scopes": [list(s) for s in self.failed_scopes],
        }


def response_half(response: GatewayResponse) -> dict:
    """What gets stored for one provider: parsed body, raw text, citations, error."""
    return {
        "data": parse_model_json(response.text) if response.text else None,
        "text": response.text or None,
        "sources": list(response.citations),
        "error": response.error,
    }


def coerce_questions(
    questions: Mapping[AnalysisKind | str, list[Question | dict]] | list[Question | dict],
) -> Mapping[AnalysisKind | str, list[Question]] | list[Question]:
    """Accept Question objects or their dict form (as sent through the task queue)."""

    def _one(item: Question | dict, kind: str | None = None) -> Question:
        if isinstance(item, Question):
            return item
        data = dict(item)
        if kind and "kind" not in data:
            data["kind"] = kind
        return Question.from_dict(data)

    if isinstance(questions, Mapping):
        return {
            kind: [_one(q, kind.value if isinstance(kind, AnalysisKind) else kind) for q in items]
            for kind, items in questions.items()
        }
    return [_one(q) for q in questions]


async def complete_report(
    session_factory: async_sessionmaker[AsyncSession],
    progress: ProgressRegistry | None,
    report_id: str,
    summary: AggregationSummary,
    execution_time_seconds: int,
) -> bool:
    async with session_factory() as db:
        updated = await report_store.update_status(
            db,
            report_id,
            ReportStatus.COMPLETED,
            progress=COMPLETE_PROGRESS,
            execution_time_seconds=execution_time_seconds,
        )
    if progress is not None:
        progress.publish(
            ProgressEvent(
                report_id,
                EventType.COMPLETE,
                COMPLETE_PROGRESS,
                "Analysis complete",
                status=ReportStatus.COMPLETED.value,
                data={"results": len(summary.results), "opportunities": summary.opportunities},
            )
        )
    return updated


async def fail_report(
    session_factory: async_sessionmaker[AsyncSession],
    progress: ProgressRegistry | None,
    report_id: str,
    message: str,
) -> None:
    """Mark a report failed and emit an error event. Logs when even that write fails."""
    try:
        async with session_factory() as db:
            await report_store.update_status(db, report_id, ReportStatus.FAILED, error_message=message)
    except Exception:
        logger.exception("Could not mark report %s as failed", report_id)
    if progress is not None:
        progress.publish(
            ProgressEvent(report_id, EventType.ERROR, 0, message, status=ReportStatus.FAILED.value)
        )


class AnalysisOrchestrator:
    """Runs one report at a time; concurrency lives inside a run."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        gateway: ModelGateway,
        *,
        progress: ProgressRegistry | None = progress_registry,
        classifier: SourceClassifier | None = None,
        batch_size: int | None = None,
    ):
        self.session_factory = session_factory
        self.gateway = gateway
        self.progress = progress
        self.classifier = classifier or SourceClassifier(gateway)
        self.batch_size = batch_size or settings.question_batch_size

    def _publish(self, event: ProgressEvent) -> None:
        if self.progress is not None:
            self.progress.publish(event)

    async def run(
        self,
        report_id: str,
        questions: Mapping[AnalysisKind | str, list[Question]] | list[Question] | None = None,
        config: AnalysisConfig | None = None,
    ) -> JobOutcome:
        """Ask every question, aggregate and score. Never raises; failures end in status failed."""
        with report_context(report_id):
            return await self._run(report_id, questions, config)

    async def _run(
        self,
        report_id: str,
        questions: Mapping[AnalysisKind | str, list[Question]] | list[Question] | None,
        config: AnalysisConfig | None,
    ) -> JobOutcome:
        started = time.monotonic()
        outcome = JobOutcome(report_id=report_id, status=ReportStatus.PROCESSING.value)
        try:
            async with self.session_factory() as db:
                stored_config = await report_store.load_config(db, report_id)
            config = config or stored_config
            flat = flatten_questions(questions if questions is not None else generate_all_questions(config))
            outcome.questions = len(flat)

            async with self.session_factory() as db:
                await report_store.touch_report(db, report_id, len(flat))
            self._publish(
                ProgressEvent(
                    report_id,
                    EventType.STATUS,
                    0,
                    f"Asking {len(flat)} questions",
                    status=ReportStatus.PROCESSING.value,
                )
            )
            logger.info("Report %s: %d questions in batches of %d", report_id, len(flat), self.batch_size)

            outcome.responses_saved = await self._ask_all(report_id, flat, config)

            summary = await run_aggregation_phase(
                self.session_factory,
                report_id,
                gateway=self.gateway,
                classifier=self.classifier,
                progress=self.progress,
            )
            outcome.results = len(summary.results)
            outcome.opportunities = summary.opportunities
            outcome.failed_scopes = summary.failed_scopes
            outcome.execution_time_seconds = int(time.monotonic() - started)

            await complete_report(
                self.session_factory, self.progress, report_id, summary, outcome.execution_time_seconds
            )
            outcome.status = ReportStatus.COMPLETED.value
            logger.info(
                "Report %s completed in %ds: %d responses, %d opportunities",
                report_id,
                outcome.execution_time_seconds,
                outcome.responses_saved,
                outcome.opportunities,
            )
        except Exception as e:
            logger.exception("Report %s failed", report_id)
            outcome.status = ReportStatus.FAILED.value
            outcome.error = str(e)
            outcome.execution_time_seconds = int(time.monotonic() - started)
            await fail_report(self.session_factory, self.progress, report_id, str(e))
        finally:
            if self.progress is not None:
                self.progress.close(report_id)

        JOB_RUNS.labels(mode="live", status=outcome.status).inc()
        return outcome

    async def _ask_all(self, report_id: str, questions: list[Question], config: AnalysisConfig) -> int:
        markets = {m.market_code: m for m in config.markets}
        families = {f.id: f for f in config.category_families}
        total = len(questions)
        processed = 0
        saved = 0
        published = 0

        async def ask_one(question: Question) -> None:
            nonlocal processed, saved, published
            prompt = build_question_prompt(
                question, config, markets.get(question.market_code or ""), families.get(question.category_id or "")
            )
            dual = await self.gateway.ask_both(prompt, report_id=report_id, question_id=question.id)
            gemini = response_half(dual.gemini)
            openai = response_half(dual.openai)
            for name, half in (("gemini", gemini), ("openai", openai)):
                if half["error"]:
                    logger.warning("Report %s %s %s: %s", report_id, question.id, name, half["error"])

            async with self.session_factory() as db:
                if await report_store.save_raw_response(db, report_id, question, gemini, openai):
                    saved += 1
                processed += 1
                percent = int(processed / total * QUESTIONS_PROGRESS_SPAN)
                await report_store.update_progress(db, report_id, percent)

            # Tasks finish their writes out of order
            published = max(published, percent)
            self._publish(
                ProgressEvent(
                    report_id,
                    EventType.PROGRESS,
                    published,
                    f"Answered {processed}/{total}: {question.id}",
                    data={"question_id": question.id, "processed": processed, "total": total},
                )
            )

        for start in range(0, total, self.batch_size):
            batch = questions[start : start + self.batch_size]
            await asyncio.gather(*(ask_one(q) for q in batch))
            logger.info("Report %s: batch %d done (%d/%d)", report_id, start // self.batch_size + 1, processed, total)
        return saved
