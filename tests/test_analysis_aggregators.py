"""Tests for the visibility, reputation and category aggregators."""

from __future__ import annotations

import pytest
from conftest import FakeGateway, ok_response, ranking

from app.analysis.brand_matcher import fallback_brand_groups
from app.analysis.category import aggregate_categories
from app.analysis.dimensions import classify_dimension, classify_dimensions
from app.analysis.reputation import aggregate_reputation, extract_keyword_topics, top_domains_used
from app.analysis.visibility import (
    aggregate_visibility,
    brand_family_ranking,
    calculate_sov,
    fold_visibility,
    is_not_ranked_first,
    is_ranked_first,
    sov_status,
)
from app.core.config import settings
from app.gateway.types import ProviderName

NYT = {"url": "https://www.nytimes.com/wirecutter/shoes", "title": "Wirecutter", "domain": "nytimes.com"}


# ==========================================================================
# Test: Visibility formulas
# ==========================================================================


class TestSovFormulas:
    def test_calculate_sov(self):
        assert calculate_sov(0.15, 4 / 3) == pytest.approx(0.128571, rel=1e-4)
        assert calculate_sov(1.0, 1.0) == 1.0

    def test_sov_zero_inputs(self):
        assert calculate_sov(0.0, 1.0) == 0.0
        assert calculate_sov(0.5, 0.0) == 0.0

    def test_sov_status(self):
        assert sov_status(0.51) == "Good"
        assert sov_status(0.5) == "Fair"
        assert sov_status(0.26) == "Fair"
        assert sov_status(0.25) == "Poor"


class TestRankedFirst:
    def test_all_answering_providers_first(self):
        assert is_ranked_first({"gemini": {"rank": 1}})
        assert is_ranked_first({"gemini": {"rank": 1}, "openai": {"rank": 1}})
        assert not is_not_ranked_first({"gemini": {"rank": 1}})

    def test_split_vote_is_only_not_ranked_first(self):
        responses = {"gemini": {"rank": 1}, "openai": {"rank": 2}}
        assert not is_ranked_first(responses)
        assert is_not_ranked_first(responses)

    def test_no_answers_is_neither(self):
        assert not is_ranked_first({})
        assert not is_not_ranked_first({})

    def test_unranked_counts_as_not_first(self):
        assert is_not_ranked_first({"gemini": {"rank": None}})


# ==========================================================================
# Test: fold_visibility
# ==========================================================================


class TestFoldVisibility:
    def _ten_records(self, make_record):
        bodies = [ranking("Nike", "Adidas"), ranking("Adidas", "Nike"), ranking("Nike", "Puma")]
        bodies += [ranking("Adidas", "Puma")] * 7
        return [
            make_record(
                f"VIS_Q{i + 1}", "visibility", sequence=i, gemini=body, gemini_sources=[NYT] if i == 0 else None
            )
            for i, body in enumerate(bodies)
        ]

    def test_target_metrics(self, make_record):
        result = fold_visibility(self._ten_records(make_record), "Nike", "running shoes")
        vis = result["visibility"]

        assert vis["totalQuestions"] == 10
        assert vis["mentions"] == 3
        assert vis["visibility"] == pytest.approx(0.15)
        assert vis["averagePosition"] == pytest.approx(4 / 3)
        assert vis["sov"] == pytest.approx(0.128571, rel=1e-4)
        assert vis["sovStatus"] == "Poor"

    def test_entities_ranking_sorted_by_sov(self, make_record):
        result = fold_visibility(self._ten_records(make_record), "Nike")
        names = [e["name"] for e in result["entities_ranking"]]
        assert names[0] == "Adidas"
        adidas = result["entities_ranking"][0]
        assert adidas["mentions"] == 9
        assert adidas["visibility"] == pytest.approx(0.45)

    def test_ranked_first_lists(self, make_record):
        result = fold_visibility(self._ten_records(make_record), "Nike")
        first = [q["question_id"] for q in result["ranked_first_questions"]]
        not_first = [q["question_id"] for q in result["not_ranked_first_questions"]]

        assert first == ["VIS_Q1", "VIS_Q3"]
        assert len(not_first) == 8
        assert "VIS_Q2" in not_first

    def test_question_detail(self, make_record):
        result = fold_visibility(self._ten_records(make_record), "Nike")
        q2 = next(q for q in result["not_ranked_first_questions"] if q["question_id"] == "VIS_Q2")
        gemini = q2["llm_responses"]["gemini"]

        assert gemini["target_rank"] == 2
        assert gemini["target_comment"] == "Nike comment"
        assert gemini["top_brand"] == "Adidas"
        assert gemini["top_brand_comment"] == "Adidas comment"
        assert [r["name"] for r in gemini["full_ranking"]] == ["Adidas", "Nike"]

        q4 = next(q for q in result["not_ranked_first_questions"] if q["question_id"] == "VIS_Q4")
        assert q4["llm_responses"]["gemini"]["target_rank"] == "Not ranked"

    def test_split_vote_question(self, make_record):
        record = make_record("VIS_Q1", "visibility", gemini=ranking("Nike", "Adidas"), openai=ranking("Adidas", "Nike"))
        result = fold_visibility([record], "Nike")
        assert result["ranked_first_questions"] == []
        assert len(result["not_ranked_first_questions"]) == 1

    def test_multiple_target_matches_use_best_rank(self, make_record):
        record = make_record("VIS_Q1", "visibility", gemini=ranking("Adidas", "Nike Pegasus", "Nike"))
        result = fold_visibility([record], "Nike")
        q = result["not_ranked_first_questions"][0]
        assert q["llm_responses"]["gemini"]["rank"] == 2

    def test_sources_and_provider_performance(self, make_record):
        records = [
            make_record("VIS_Q1", "visibility", gemini=ranking("Nike"), openai=ranking("Adidas", "Nike"),
                        gemini_sources=[NYT], openai_sources=[NYT]),
        ]  # fmt: skip
        result = fold_visibility(records, "Nike")

        assert len(result["full_sources_list"]) == 1
        assert result["full_sources_list"][0]["cited_by"] == ["gemini", "openai"]
        assert result["full_sources_list"][0]["source_type"] == "Journalism"
        assert result["source_analysis"]["total_sources"] == 1

        perf = {p["llm"]: p for p in result["llm_performance"]}
        assert perf["gemini"]["avgPosition"] == 1.0
        assert perf["openai"]["avgPosition"] == 2.0
        assert perf["gemini"]["displayName"] == "Gemini"
        assert perf["openai"]["displayName"] == "ChatGPT"
        assert result["llm_performance"][0]["llm"] == "gemini"
        assert result["llm_performance"][0]["rank"] == 1

    def test_competitive_choices_and_pros_cons(self, make_record):
        def choice(name, pro):
            return {
                "entity_choice": name,
                "raw_response": f"{name} is better",
                "entity_analysis": {name: {"pros": [pro], "cons": ["Price"]}},
            }

        records = [
            make_record(
                "COMP_Q1", "competitive", sequence=0, gemini=choice("Adidas", "Boost"), openai=choice("Nike", "Fit")
            ),
            make_record("COMP_Q2", "competitive", sequence=1, gemini=choice("Adidas", "Boost")),
        ]
        result = fold_visibility(records, "Nike")

        cons = {(c["entity"], c["attribute"]): c["frequency"] for c in result["pros_cons"]["cons"]}
        assert cons == {("Adidas", "Price"): 2, ("Nike", "Price"): 1}
        boost = {"attribute": "Boost", "entity": "Adidas", "frequency": 2, "sources": [], "dimension": "Other"}
        assert result["pros_cons"]["pros"][0] == boost
        assert {c["dimension"] for c in result["pros_cons"]["cons"]} == {"Pricing"}
        assert result["dimension_method"] == "keyword"

        comp = {p["llm"]: p for p in result["competitive_llm_performance"]}
        assert comp["openai"]["brandChoicePercent"] == 1.0
        assert comp["gemini"]["brandChoicePercent"] == 0.0
        assert comp["gemini"]["topChoice"] == "Adidas"
        assert comp["gemini"]["totalQuestions"] == 2

        not_first = {q["question_id"]: q for q in result["not_ranked_first_questions"]}
        assert set(not_first) == {"COMP_Q1", "COMP_Q2"}
        assert not_first["COMP_Q1"]["llm_responses"]["gemini"]["chosen_entity"] == "Adidas"

    def test_no_answers(self, make_record):
        result = fold_visibility([make_record("VIS_Q1", "visibility", gemini_error="timeout")], "Nike")
        assert result["visibility"]["visibility"] == 0.0
        assert result["visibility"]["sov"] == 0.0
        assert result["entities_ranking"] == []


# ==========================================================================
# Test: Brand families
# ==========================================================================


class TestBrandFamilies:
    def test_family_rollup(self):
        entities = [
            {"name": "Nike", "mentions": 2, "average_rank": 1.0, "visibility": 0.1, "sov": 0.1},
            {"name": "Nike Air Max", "mentions": 2, "average_rank": 3.0, "visibility": 0.1, "sov": 0.05},
            {"name": "Adidas", "mentions": 1, "average_rank": 2.0, "visibility": 0.05, "sov": 0.03},
        ]
        groups = fallback_brand_groups([e["name"] for e in entities], "Nike")
        families = brand_family_ranking(entities, groups)

        nike = families[0]
        assert nike["name"] == "Nike"
        assert nike["variant_count"] == 2
        assert nike["mentions"] == 4
        assert nike["average_rank"] == pytest.approx(2.0)
        assert nike["best_rank"] == 1.0
        assert nike["visibility"] == pytest.approx(0.2)
        assert nike["sov"] == pytest.approx(calculate_sov(0.2, 2.0))
        assert nike["is_target_brand"] is True
        assert families[1]["name"] == "Adidas"
        assert families[1]["is_target_brand"] is False

    def test_family_visibility_capped(self):
        entities = [
            {"name": "Nike", "mentions": 10, "average_rank": 1.0, "visibility": 0.8, "sov": 0.8},
            {"name": "Nike Run", "mentions": 10, "average_rank": 1.0, "visibility": 0.8, "sov": 0.8},
        ]
        families = brand_family_ranking(entities, fallback_brand_groups(["Nike", "Nike Run"], "Nike"))
        assert families[0]["visibility"] == 1.0

    @pytest.mark.asyncio
    async def test_aggregate_visibility_adds_families(self, make_record):
        records = [make_record("VIS_Q1", "visibility", gemini=ranking("Nike Air Max", "Adidas", "Nike"))]
        gateway = FakeGateway()
        result = await aggregate_visibility(records, "Nike", "running shoes", gateway=gateway)

        assert gateway.utility_calls == 1
        assert result["brand_grouping_metadata"]["method"] == "fallback"
        assert result["brand_grouping_metadata"]["target_matches"] == ["Nike Air Max", "Nike"]
        assert [f["name"] for f in result["brand_family_ranking"]] == ["Nike", "Adidas"]


# ==========================================================================
# Test: Competitive dimensions
# ==========================================================================


class TestDimensions:
    def test_keyword_dimension(self):
        assert classify_dimension("Too expensive for beginners") == "Pricing"
        assert classify_dimension("Unreliable soles") == "Quality"
        assert classify_dimension("Great customer support") == "Customer Experience"
        assert classify_dimension("Iconic swoosh") == "Other"
        assert classify_dimension(None) == "Other"

    @pytest.mark.asyncio
    async def test_keyword_default_makes_no_model_call(self):
        pros_cons = {"pros": [{"attribute": "Sleek design", "entity": "Nike"}], "cons": []}
        gateway = FakeGateway()
        assert await classify_dimensions(pros_cons, "running shoes", gateway) == "keyword"
        assert gateway.utility_calls == 0
        assert pros_cons["pros"][0]["dimension"] == "Design"

    @pytest.mark.asyncio
    async def test_model_dimensions_with_keyword_gap_fill(self, monkeypatch):
        monkeypatch.setattr(settings, "dimension_llm_classification", True)
        pros_cons = {
            "pros": [{"attribute": "Boost foam", "entity": "Adidas"}],
            "cons": [{"attribute": "Pricey", "entity": "Nike"}, {"attribute": "Narrow fit", "entity": "Nike"}],
        }
        gateway = FakeGateway(
            utility=ok_response(
                ProviderName.GEMINI,
                {
                    "classifications": [
                        {"id": 0, "dimension": "Performance"},
                        {"id": 1, "dimension": "Pricing"},
                        {"id": 2, "dimension": "Made up"},
                    ]
                },
            )
        )
        assert await classify_dimensions(pros_cons, "running shoes", gateway) == "model"
        assert gateway.utility_calls == 1
        assert pros_cons["pros"][0]["dimension"] == "Performance"
        assert [c["dimension"] for c in pros_cons["cons"]] == ["Pricing", "Other"]

    @pytest.mark.asyncio
    async def test_model_failure_keeps_keywords(self, monkeypatch):
        monkeypatch.setattr(settings, "dimension_llm_classification", True)
        pros_cons = {"pros": [{"attribute": "Good value", "entity": "Nike"}], "cons": []}
        assert await classify_dimensions(pros_cons, "running shoes", FakeGateway()) == "keyword"
        assert pros_cons["pros"][0]["dimension"] == "Pricing"


# ==========================================================================
# Test: Reputation
# ==========================================================================

REPUTATION_TEXT = (
    "Nike is a great brand with excellent comfort. "
    "However some say Nike shoes are expensive for beginners. Short one."
)


class TestReputation:
    def test_keyword_topics(self, make_record):
        records = [
            make_record("REP_Q1", "reputation", gemini={"raw_response": REPUTATION_TEXT}, gemini_sources=[NYT]),
        ]
        topics = extract_keyword_topics(records, "Nike")

        positive = {t["topic"]: t for t in topics["positive_topics"]}
        negative = {t["topic"]: t for t in topics["negative_topics"]}
        assert set(positive) == {"Nike - Great", "Nike - Excellent"}
        assert set(negative) == {"Nike - Expensive"}
        assert negative["Nike - Expensive"]["sentiment_score"] == -0.6
        assert negative["Nike - Expensive"]["frequency"] == 1.0
        assert negative["Nike - Expensive"]["cited_by"] == ["gemini"]
        assert negative["Nike - Expensive"]["sources"][0]["domain"] == "nytimes.com"
        assert positive["Nike - Great"]["quotes"] == ["nike is a great brand with excellent comfort"]
        assert topics["neutral_topics"] == []

    def test_frequency_is_share_of_responses(self, make_record):
        records = [
            make_record("REP_Q1", "reputation", sequence=0, gemini={"raw_response": REPUTATION_TEXT}),
            make_record(
                "REP_Q2", "reputation", sequence=1, gemini={"raw_response": "Nothing notable to report here at all."}
            ),
        ]
        topics = extract_keyword_topics(records, "Nike")
        assert topics["negative_topics"][0]["frequency"] == 0.5

    @pytest.mark.asyncio
    async def test_aggregate_keyword_default(self, make_record):
        records = [
            make_record("REP_Q1", "reputation", gemini={"raw_response": REPUTATION_TEXT}, gemini_sources=[NYT],
                        openai={"raw_response": "Nike is popular with runners everywhere."}, openai_sources=[NYT]),
        ]  # fmt: skip
        gateway = FakeGateway()
        result = await aggregate_reputation(records, "Nike", "running shoes", gateway=gateway)

        assert gateway.utility_calls == 0
        assert result["extraction_method"] == "keyword"
        assert result["category_check"] is True
        assert result["questions"] == 1
        assert result["full_sources_list"][0]["cited_by"] == ["gemini", "openai"]
        assert result["top_domains_used"] == [{"domain": "nytimes.com", "count": 1, "frequency": 1.0}]

    @pytest.mark.asyncio
    async def test_model_extraction(self, make_record, monkeypatch):
        monkeypatch.setattr(settings, "reputation_llm_extraction", True)
        gateway = FakeGateway(
            utility=ok_response(
                ProviderName.GEMINI,
                {
                    "topics": [
                        {"topic": "Price", "sentiment": -0.8, "mentions": 2},
                        {"topic": "Comfort", "sentiment": 0.9, "mentions": 1},
                        {"topic": "Logo", "sentiment": 0},
                        {"topic": "Broken", "sentiment": "n/a"},
                    ]
                },
            )
        )
        records = [
            make_record("REP_Q1", "reputation", sequence=0, gemini={"raw_response": REPUTATION_TEXT}),
            make_record("REP_Q2", "reputation", sequence=1, openai={"raw_response": "Nike is fine."}),
        ]
        result = await aggregate_reputation(records, "Nike", gateway=gateway)

        topics = result["sentiment_topics"]
        assert result["extraction_method"] == "model"
        assert topics["negative_topics"][0]["topic"] == "Price"
        assert topics["negative_topics"][0]["frequency"] == 1.0
        assert topics["positive_topics"][0]["frequency"] == 0.5
        assert [t["topic"] for t in topics["neutral_topics"]] == ["Logo"]

    @pytest.mark.asyncio
    async def test_model_extraction_failure_falls_back(self, make_record, monkeypatch):
        monkeypatch.setattr(settings, "reputation_llm_extraction", True)
        records = [make_record("REP_Q1", "reputation", gemini={"raw_response": REPUTATION_TEXT})]
        result = await aggregate_reputation(records, "Nike", gateway=FakeGateway())

        assert result["extraction_method"] == "keyword_fallback"
        assert result["sentiment_topics"]["negative_topics"][0]["topic"] == "Nike - Expensive"

    def test_top_domains_used(self):
        assert top_domains_used([]) == []


# ==========================================================================
# Test: Categories
# ==========================================================================


class TestCategories:
    def test_aggregate_categories(self, make_record):
        gemini = {
            "categories": [
                {
                    "rank": 1,
                    "name": "Running shoes",
                    "comment": "Core business",
                    "top_competitors": [{"rank": 1, "name": "Adidas"}, {"rank": 2, "name": "nike"}],
                },
                {"rank": 2, "name": "Apparel"},
            ]
        }
        openai = {
            "categories": [{"rank": 1, "name": "Running shoes", "top_competitors": [{"rank": 2, "name": "Adidas"}]}]
        }
        result = aggregate_categories([make_record("CAT_Q1", "category", gemini=gemini, openai=openai)], "Nike")

        assert result["total_questions"] == 1
        shoes, apparel = result["categories"]
        assert shoes["name"] == "Running shoes"
        assert shoes["mentions"] == 2
        assert shoes["category_visibility"] == 1.0
        assert shoes["category_sov"] == 1.0
        assert shoes["comment"] == "Core business"
        assert shoes["cited_by"] == ["gemini", "openai"]
        assert shoes["top_competitors"] == [
            {"name": "Adidas", "average_rank": 1.5, "mentions": 2, "frequency": 1.0, "comment": ""}
        ]
        assert apparel["category_sov"] == pytest.approx(0.5 * 2 / 3)
        assert apparel["comment"] == "Associated category"

    def test_empty(self):
        assert aggregate_categories([], "Nike") == {"categories": [], "total_questions": 0}
