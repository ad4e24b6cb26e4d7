"""Aggregation phase: everything that happens after the last question.

Shared by the live orchestrator and the recovery path, and driven only by
persisted rows:

  1. collect citations from every stored response (grounded + body sources)
  2. look up channels of YouTube videos, classify and upsert the Source rows
  3. re-bucket responses by (market, category) from their question ids
  4. fold each scope (reputation, categories, visibility, competitive)
  5. score PR insights, add collaboration recommendations to the top
     opportunities and replace the report's opportunities

A failing scope is logged and skipped; a failing insights step leaves the
report without opportunities. A failed channel lookup or recommendation call
only loses that enrichment. None of these stops the phase.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.analysis.category import aggregate_categories
from app.analysis.collaboration import add_collaboration_recommendations
from app.analysis.insights import ScopeAnalysis, generate_pr_insights
from app.analysis.questions import rebucket_responses
from app.analysis.reputation import aggregate_reputation
from app.analysis.response_shapes import ResponseRecord
from app.analysis.source_classifier import SourceClassifier, classify_heuristic, enrich_youtube_citations
from app.analysis.types import (
    CATEGORIES_ASSOCIATED_KIND,
    KIND_ORDER,
    PR_INSIGHTS_KIND,
    AnalysisConfig,
    AnalysisKind,
    Citation,
    ClassifiedSource,
)
from app.analysis.visibility import aggregate_visibility
from app.core.config import settings
from app.core.metrics import OPPORTUNITIES_GENERATED
from app.gateway.normalizer import extract_domain
from app.services import report_store
from app.services.progress import EventType, ProgressEvent, ProgressRegistry

if TYPE_CHECKING:
    from app.gateway.gateway import ModelGateway

logger = logging.getLogger(__name__)

CLASSIFYING_PROGRESS = 85
AGGREGATING_PROGRESS = 90
INSIGHTS_PROGRESS = 95
COMPLETE_PROGRESS = 100


@dataclass
class AggregationSummary:
    responses: int = 0
    sources: int = 0
    results: list[tuple[str, str, str]] = field(default_factory=list)  # (kind, market, category)
    failed_scopes: list[tuple[str, str, str]] = field(default_factory=list)
    opportunities: int = 0
    insights_error: str | None = None


async def report_stage(
    session_factory: async_sessionmaker[AsyncSession],
    progress: ProgressRegistry | None,
    report_id: str,
    percent: int,
    message: str,
) -> None:
    """Persist the progress percentage and publish a progress event."""
    async with session_factory() as db:
        await report_store.update_progress(db, report_id, percent)
    if progress is not None:
        progress.publish(ProgressEvent(report_id, EventType.PROGRESS, percent, message))


def collect_citations(records: list[ResponseRecord]) -> list[Citation]:
    """Unique citations across every response, in question order, with the citing providers."""
    by_url: dict[str, Citation] = {}
    for record in records:
        for provider, answer in record.answers.items():
            for source in answer.citations:
                url = source["url"]
                citation = by_url.get(url)
                if citation is None:
                    citation = Citation(
                        url=url,
                        title=source.get("title") or "",
                        domain=source.get("domain") or extract_domain(url),
                        source_type_hint=source.get("source_type_hint"),
                        youtube_channel=source.get("youtube_channel"),
                    )
                    by_url[url] = citation
                elif not citation.youtube_channel and source.get("youtube_channel"):
                    citation.youtube_channel = source["youtube_channel"]
                if provider not in citation.cited_by:
                    citation.cited_by.append(provider)
    return list(by_url.values())


async def classify_citations(
    citations: list[Citation],
    config: AnalysisConfig,
    classifier: SourceClassifier,
) -> list[ClassifiedSource]:
    try:
        return await classifier.classify(citations, config.entity, config.all_competitors())
    except Exception:
        logger.exception("Source classification failed, using domain heuristics for %d sources", len(citations))
        return [classify_heuristic(c, reason="classification failed") for c in citations]


def _scope_category_name(config: AnalysisConfig, market_code: str, category_id: str) -> str:
    for family in config.category_families:
        if family.id == category_id:
            return family.translations.get(market_code) or family.canonical_name
    return config.category


def _scope_order(config: AnalysisConfig, key: tuple[str, str]) -> tuple[int, int, str, str]:
    market_codes = [m.market_code for m in config.markets]
    family_ids = [f.id for f in config.category_families]
    market, category = key
    return (
        market_codes.index(market) if market in market_codes else len(market_codes),
        family_ids.index(category) if category in family_ids else (-1 if not category else len(family_ids)),
        market,
        category,
    )


async def run_aggregation_phase(
    session_factory: async_sessionmaker[AsyncSession],
    report_id: str,
    *,
    gateway: "ModelGateway | None" = None,
    classifier: SourceClassifier | None = None,
    progress: ProgressRegistry | None = None,
) -> AggregationSummary:
    """Classify, aggregate and score a report from its stored responses."""
    summary = AggregationSummary()
    classifier = classifier or SourceClassifier(gateway)

    async with session_factory() as db:
        config = await report_store.load_config(db, report_id)
        rows = await report_store.load_raw_responses(db, report_id)
    records = [ResponseRecord.from_row(row) for row in rows]
    summary.responses = len(records)

    # --- Sources ---
    await report_stage(session_factory, progress, report_id, CLASSIFYING_PROGRESS, "Classifying sources")
    citations = collect_citations(records)
    if settings.youtube_metadata_enabled:
        try:
            await enrich_youtube_citations(citations)
        except Exception:
            logger.exception("YouTube metadata lookup failed for report %s", report_id)
    sources = await classify_citations(citations, config, classifier)
    async with session_factory() as db:
        summary.sources = await report_store.upsert_sources(db, report_id, sources)
    source_index = {s.url: s for s in sources}

    # --- Aggregation per scope ---
    await report_stage(session_factory, progress, report_id, AGGREGATING_PROGRESS, "Aggregating results")
    if config.is_multi_market:
        buckets = rebucket_responses(records, config.markets, [f.id for f in config.category_families])
    else:
        buckets = {("", ""): records}

    reputation_by_market: dict[str, dict] = {}
    scopes: list[ScopeAnalysis] = []

    for key in sorted(buckets, key=lambda k: _scope_order(config, k)):
        market_code, category_id = key
        by_kind: dict[AnalysisKind, list[ResponseRecord]] = {}
        for record in buckets[key]:
            by_kind.setdefault(AnalysisKind(record.kind), []).append(record)
        category_name = _scope_category_name(config, market_code, category_id)

        for kind in KIND_ORDER:
            kind_records = by_kind.get(kind)
            if not kind_records:
                continue
            result_kind = CATEGORIES_ASSOCIATED_KIND if kind == AnalysisKind.CATEGORY else kind.value
            try:
                if kind == AnalysisKind.REPUTATION:
                    data = await aggregate_reputation(
                        kind_records, config.entity, category_name, source_index, gateway
                    )
                    reputation_by_market.setdefault(market_code, data)
                elif kind == AnalysisKind.CATEGORY:
                    data = aggregate_categories(kind_records, config.entity)
                else:
                    data = await aggregate_visibility(
                        kind_records, config.entity, category_name, source_index, gateway
                    )
                    scopes.append(ScopeAnalysis(market_code, category_id, data))

                async with session_factory() as db:
                    await report_store.save_analysis_result(
                        db, report_id, result_kind, data, market_code=market_code, category_id=category_id
                    )
                summary.results.append((result_kind, market_code, category_id))
            except Exception:
                logger.exception(
                    "Aggregation failed for report %s scope (%s, %s, %s)",
                    report_id,
                    result_kind,
                    market_code or "-",
                    category_id or "-",
                )
                summary.failed_scopes.append((result_kind, market_code, category_id))

    # --- PR insights ---
    await report_stage(session_factory, progress, report_id, INSIGHTS_PROGRESS, "Generating insights")
    primary = config.primary_market
    reputation = reputation_by_market.get(primary.market_code if primary else "")
    try:
        insights = generate_pr_insights(config.entity, reputation, scopes, sources)
        if settings.enable_collaboration_recommendations:
            try:
                await add_collaboration_recommendations(insights.opportunities, config.entity, sources, gateway)
            except Exception:
                logger.exception("Collaboration recommendations failed for report %s", report_id)
        async with session_factory() as db:
            await report_store.save_analysis_result(db, report_id, PR_INSIGHTS_KIND, insights.to_dict())
        async with session_factory() as db:
            summary.opportunities = await report_store.replace_opportunities(db, report_id, insights.opportunities)
        summary.results.append((PR_INSIGHTS_KIND, "", ""))
        for opportunity in insights.opportunities:
            OPPORTUNITIES_GENERATED.labels(tier=opportunity.priority.tier).inc()
    except Exception as e:
        logger.exception("PR insights failed for report %s", report_id)
        summary.insights_error = str(e)

    logger.info(
        "Aggregation for report %s: %d responses, %d sources, %d results, %d opportunities",
        report_id,
        summary.responses,
        summary.sources,
        len(summary.results),
        summary.opportunities,
    )
    return summary
