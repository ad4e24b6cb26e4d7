"""Tests for report persistence: idempotent writes, status guard, upserts."""

from __future__ import annotations

import pytest

from app.analysis.insights import OpportunityDraft
from app.analysis.scoring import CRITICAL, QUICK_WIN, STRATEGIC
from app.analysis.types import AnalysisKind, ClassifiedSource, Confidence, Question, SourceCategory
from app.models.report import ReportStatus
from app.services import report_store
from app.services.errors import OpportunityNotFoundError, ReportNotFoundError


def _half(data=None, error=None, sources=None) -> dict:
    return {"data": data, "text": None if data is None else str(data), "sources": sources or [], "error": error}


def _source(url: str, cited_by: list[str], category=SourceCategory.JOURNALISM) -> ClassifiedSource:
    return ClassifiedSource(
        url=url,
        title="",
        domain="nytimes.com",
        source_type=category,
        confidence=Confidence.HIGH,
        cited_by=cited_by,
    )


def _draft(opportunity_id: str, impact: float = 0.8, priority=CRITICAL) -> OpportunityDraft:
    return OpportunityDraft(
        id=opportunity_id,
        title=f"Opportunity {opportunity_id}",
        description="",
        opportunity_type="Visibility Gap",
        theme_category="visibility",
        impact_score=impact,
        effort_score=0.3,
        priority=priority,
        evidence={"total_citations": 4},
    )


# ==========================================================================
# Test: Reports
# ==========================================================================


class TestReports:
    @pytest.mark.asyncio
    async def test_create_and_get(self, db, legacy_config):
        report = await report_store.create_report(db, legacy_config, total_questions=33)

        loaded = await report_store.get_report(db, report.id)
        assert loaded.entity == "Nike"
        assert loaded.status == ReportStatus.PROCESSING.value
        assert loaded.progress == 0
        assert loaded.total_questions == 33
        assert loaded.competitors == ["Adidas", "Puma"]
        assert not loaded.is_terminal

    @pytest.mark.asyncio
    async def test_explicit_id(self, db, legacy_config):
        report = await report_store.create_report(db, legacy_config, report_id="report-1")
        assert report.id == "report-1"

    @pytest.mark.asyncio
    async def test_unknown_report(self, db):
        with pytest.raises(ReportNotFoundError):
            await report_store.get_report(db, "missing")

    @pytest.mark.asyncio
    async def test_config_round_trip(self, db, multi_market_config):
        report = await report_store.create_report(db, multi_market_config)
        config = await report_store.load_config(db, report.id)

        assert [m.market_code for m in config.markets] == ["us-en", "de-de"]
        assert config.primary_market.market_code == "us-en"
        family = config.category_families[0]
        assert family.id == "cat_1a2b3c4d"
        assert family.translations["de-de"] == "Laufschuhe"
        assert family.competitors["us-en"] == ["Adidas", "Hoka"]


class TestStatusGuard:
    @pytest.mark.asyncio
    async def test_processing_to_completed(self, db, legacy_config):
        report = await report_store.create_report(db, legacy_config)
        updated = await report_store.update_status(
            db, report.id, ReportStatus.COMPLETED, progress=100, execution_time_seconds=12
        )
        assert updated is True

        await db.refresh(report)
        assert report.status == ReportStatus.COMPLETED.value
        assert report.progress == 100
        assert report.execution_time_seconds == 12

    @pytest.mark.asyncio
    async def test_terminal_status_is_final(self, db, legacy_config):
        report = await report_store.create_report(db, legacy_config)
        await report_store.update_status(db, report.id, ReportStatus.COMPLETED, progress=100)

        assert await report_store.update_status(db, report.id, ReportStatus.FAILED, error_message="late") is False
        await report_store.update_progress(db, report.id, 40)

        await db.refresh(report)
        assert report.status == ReportStatus.COMPLETED.value
        assert report.progress == 100
        assert report.error_message is None

    @pytest.mark.asyncio
    async def test_progress_only_moves_forward(self, db, legacy_config):
        report = await report_store.create_report(db, legacy_config)
        await report_store.update_progress(db, report.id, 60)
        await report_store.update_progress(db, report.id, 40)

        await db.refresh(report)
        assert report.progress == 60

    @pytest.mark.asyncio
    async def test_unknown_report_raises(self, db):
        with pytest.raises(ReportNotFoundError):
            await report_store.update_status(db, "missing", ReportStatus.FAILED)


# ==========================================================================
# Test: Raw responses
# ==========================================================================


class TestRawResponses:
    @pytest.mark.asyncio
    async def test_insert_or_ignore(self, db, legacy_config):
        report = await report_store.create_report(db, legacy_config)
        question = Question(id="VIS_Q1", text="Best running shoes?", kind=AnalysisKind.VISIBILITY, sequence=3)

        first = await report_store.save_raw_response(
            db, report.id, question, _half({"entities_ranking": []}), _half(error="timeout")
        )
        second = await report_store.save_raw_response(
            db, report.id, question, _half({"entities_ranking": [{"rank": 1, "name": "Nike"}]}), _half()
        )

        assert first is True
        assert second is False
        rows = await report_store.load_raw_responses(db, report.id)
        assert len(rows) == 1
        assert rows[0].gemini_data == {"entities_ranking": []}
        assert rows[0].openai_error == "timeout"
        assert rows[0].sequence == 3
        assert rows[0].has_usable_data

    @pytest.mark.asyncio
    async def test_same_id_different_kind_is_separate(self, db, legacy_config):
        report = await report_store.create_report(db, legacy_config)
        for kind in (AnalysisKind.VISIBILITY, AnalysisKind.COMPETITIVE):
            question = Question(id="Q1", text="q", kind=kind)
            await report_store.save_raw_response(db, report.id, question, _half(), _half())
        assert len(await report_store.load_raw_responses(db, report.id)) == 2

    @pytest.mark.asyncio
    async def test_loaded_in_question_order(self, db, legacy_config):
        report = await report_store.create_report(db, legacy_config)
        for qid, seq in (("VIS_Q2", 1), ("REP_Q1", 0), ("CAT_Q1", 2)):
            question = Question(id=qid, text=qid, kind=AnalysisKind.VISIBILITY, sequence=seq)
            await report_store.save_raw_response(db, report.id, question, _half(), _half(error="boom"))

        rows = await report_store.load_raw_responses(db, report.id)
        assert [r.question_id for r in rows] == ["REP_Q1", "VIS_Q2", "CAT_Q1"]
        assert not rows[0].has_usable_data


# ==========================================================================
# Test: Sources and results
# ==========================================================================


class TestSources:
    @pytest.mark.asyncio
    async def test_upsert_merges_cited_by(self, db, legacy_config):
        report = await report_store.create_report(db, legacy_config)
        url = "https://www.nytimes.com/a"

        await report_store.upsert_sources(db, report.id, [_source(url, ["gemini"])])
        await report_store.upsert_sources(
            db, report.id, [_source(url, ["openai", "gemini"], SourceCategory.AGGREGATORS)]
        )

        sources = await report_store.load_sources(db, report.id)
        assert len(sources) == 1
        assert sources[0].cited_by == ["gemini", "openai"]
        assert sources[0].source_type == SourceCategory.AGGREGATORS
        assert sources[0].confidence == Confidence.HIGH

    @pytest.mark.asyncio
    async def test_empty_upsert(self, db, legacy_config):
        report = await report_store.create_report(db, legacy_config)
        assert await report_store.upsert_sources(db, report.id, []) == 0


class TestAnalysisResults:
    @pytest.mark.asyncio
    async def test_replaced_per_scope(self, db, legacy_config):
        report = await report_store.create_report(db, legacy_config)

        await report_store.save_analysis_result(db, report.id, "visibility", {"run": 1}, "us-en", "cat_1")
        await report_store.save_analysis_result(db, report.id, "visibility", {"run": 2}, "us-en", "cat_1")
        await report_store.save_analysis_result(db, report.id, "visibility", {"run": 1}, "de-de", "cat_1")
        await report_store.save_analysis_result(db, report.id, "reputation", {"run": 1})

        results = await report_store.load_analysis_results(db, report.id)
        scopes = {(r.analysis_kind, r.market_code, r.category_id): r.data for r in results}
        assert scopes == {
            ("visibility", "us-en", "cat_1"): {"run": 2},
            ("visibility", "de-de", "cat_1"): {"run": 1},
            ("reputation", "", ""): {"run": 1},
        }


# ==========================================================================
# Test: Opportunities
# ==========================================================================


class TestOpportunities:
    @pytest.mark.asyncio
    async def test_replace_and_order(self, session_factory, legacy_config):
        async with session_factory() as db:
            report = await report_store.create_report(db, legacy_config)
        async with session_factory() as db:
            await report_store.replace_opportunities(
                db, report.id, [_draft("SRC_001", 0.5, QUICK_WIN), _draft("CMP_001", 0.9), _draft("CMP_002", 0.75)]
            )
        async with session_factory() as db:
            opportunities = await report_store.list_opportunities(db, report.id)

        assert [o.id for o in opportunities] == ["CMP_001", "CMP_002", "SRC_001"]
        assert opportunities[0].priority_tier == "Critical"
        assert opportunities[0].impact_label == "High"
        assert opportunities[0].effort_label == "Low"
        assert opportunities[0].evidence == {"total_citations": 4}

    @pytest.mark.asyncio
    async def test_replace_drops_stale_ids_and_their_actions(self, session_factory, legacy_config):
        async with session_factory() as db:
            report = await report_store.create_report(db, legacy_config)
        async with session_factory() as db:
            await report_store.replace_opportunities(db, report.id, [_draft("CMP_001")])
        async with session_factory() as db:
            await report_store.log_opportunity_action(db, report.id, "CMP_001", "outreach")
        async with session_factory() as db:
            assert await report_store.replace_opportunities(db, report.id, [_draft("REP_001")]) == 1
        async with session_factory() as db:
            assert [o.id for o in await report_store.list_opportunities(db, report.id)] == ["REP_001"]
            assert await report_store.list_opportunity_actions(db, report.id, "CMP_001") == []

    @pytest.mark.asyncio
    async def test_replace_keeps_user_state_of_surviving_ids(self, session_factory, legacy_config):
        async with session_factory() as db:
            report = await report_store.create_report(db, legacy_config)
        async with session_factory() as db:
            await report_store.replace_opportunities(db, report.id, [_draft("CMP_001"), _draft("SRC_001")])
        async with session_factory() as db:
            await report_store.log_opportunity_action(db, report.id, "CMP_001", "outreach", outcome="replied")
            await report_store.mark_opportunity_implemented(db, report.id, "CMP_001", notes="pitched")

        regenerated = _draft("CMP_001", impact=0.5, priority=STRATEGIC)
        regenerated.metadata = {"ai_collaboration_recommendations": {"collaborations": []}}
        async with session_factory() as db:
            assert await report_store.replace_opportunities(db, report.id, [regenerated, _draft("REP_001")]) == 2

        async with session_factory() as db:
            opportunities = {o.id: o for o in await report_store.list_opportunities(db, report.id)}
            actions = await report_store.list_opportunity_actions(db, report.id, "CMP_001")
            assert await report_store.list_opportunity_actions(db, report.id, "SRC_001") == []

        assert set(opportunities) == {"CMP_001", "REP_001"}
        kept = opportunities["CMP_001"]
        assert kept.is_implemented is True
        assert kept.implemented_at is not None
        assert kept.implementation_notes == "pitched"
        assert kept.impact_score == 0.5
        assert kept.priority_tier == STRATEGIC.tier
        assert kept.extra == {"ai_collaboration_recommendations": {"collaborations": []}}
        assert [(a.action_type, a.outcome) for a in actions] == [("outreach", "replied")]
        assert opportunities["REP_001"].is_implemented is False

    @pytest.mark.asyncio
    async def test_mark_implemented_keeps_scores(self, session_factory, legacy_config):
        async with session_factory() as db:
            report = await report_store.create_report(db, legacy_config)
            await report_store.replace_opportunities(db, report.id, [_draft("CMP_001", 0.9)])
        async with session_factory() as db:
            opportunity = await report_store.mark_opportunity_implemented(db, report.id, "CMP_001", notes="pitched")
            assert opportunity.is_implemented is True
            assert opportunity.implemented_at is not None
            assert opportunity.implementation_notes == "pitched"
            assert opportunity.impact_score == 0.9

        async with session_factory() as db:
            opportunity = await report_store.mark_opportunity_implemented(db, report.id, "CMP_001", implemented=False)
            assert opportunity.is_implemented is False
            assert opportunity.implemented_at is None
            assert opportunity.implementation_notes == "pitched"

    @pytest.mark.asyncio
    async def test_action_log(self, session_factory, legacy_config):
        async with session_factory() as db:
            report = await report_store.create_report(db, legacy_config)
            await report_store.replace_opportunities(db, report.id, [_draft("CMP_001")])
        async with session_factory() as db:
            await report_store.log_opportunity_action(db, report.id, "CMP_001", "outreach", description="emailed")
            await report_store.log_opportunity_action(db, report.id, "CMP_001", "content", outcome="published")
        async with session_factory() as db:
            actions = await report_store.list_opportunity_actions(db, report.id, "CMP_001")
        assert [a.action_type for a in actions] == ["outreach", "content"]
        assert actions[1].outcome == "published"

    @pytest.mark.asyncio
    async def test_unknown_opportunity(self, db, legacy_config):
        report = await report_store.create_report(db, legacy_config)
        with pytest.raises(OpportunityNotFoundError):
            await report_store.mark_opportunity_implemented(db, report.id, "CMP_999")
        with pytest.raises(OpportunityNotFoundError):
            await report_store.log_opportunity_action(db, report.id, "CMP_999", "outreach")
