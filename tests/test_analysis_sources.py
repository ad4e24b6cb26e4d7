"""Tests for source classification, domain helpers and source analysis."""

from __future__ import annotations

from unittest.mock import AsyncMock, patch

import pytest
from conftest import FakeGateway, failed_response, ok_response, ranking

from app.analysis.source_classifier import (
    SourceClassifier,
    authority_for,
    classify_heuristic,
    enrich_youtube_citations,
    extract_domain_info,
    generate_source_analysis,
    lookup_domain,
    lookup_source,
)
from app.analysis.types import Citation, ClassifiedSource, Confidence, SourceCategory
from app.gateway.types import ProviderName, RequestStatus
from app.services.aggregation_phase import collect_citations


def _classifications(*items: dict):
    return ok_response(ProviderName.GEMINI, {"classifications": list(items)})


class _Sleeps:
    def __init__(self):
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


# ==========================================================================
# Test: Domain helpers
# ==========================================================================


class TestDomainInfo:
    def test_plain_domain(self):
        info = extract_domain_info("https://www.runnersworld.com/gear/a123")
        assert info.domain == "runnersworld.com"
        assert not info.is_youtube

    def test_youtube_handle(self):
        info = extract_domain_info("https://www.youtube.com/@Nike/videos")
        assert info.is_youtube
        assert info.youtube_channel == "@Nike"
        assert info.domain == "youtube.com/@Nike"

    def test_youtube_legacy_paths(self):
        assert extract_domain_info("https://youtube.com/c/RunningChannel").youtube_channel == "RunningChannel"
        assert extract_domain_info("https://youtube.com/channel/UC123").youtube_channel == "UC123"

    def test_youtube_video_ids(self):
        assert extract_domain_info("https://www.youtube.com/watch?v=xyz").video_id == "xyz"
        assert extract_domain_info("https://youtube.com/shorts/abc").video_id == "abc"
        short = extract_domain_info("https://youtu.be/abc123")
        assert short.video_id == "abc123"
        assert short.domain == "youtube.com"

    def test_youtube_channel_hint(self):
        info = extract_domain_info("https://www.youtube.com/watch?v=xyz", youtube_channel="@Reviewer")
        assert info.domain == "youtube.com/@Reviewer"

    def test_lookup_domain_matches_parent(self):
        assert lookup_domain("en.wikipedia.org") == (SourceCategory.AGGREGATORS, 0.65)
        assert lookup_domain("unknown.example") is None


# ==========================================================================
# Test: Heuristics
# ==========================================================================


class TestHeuristic:
    def test_known_domain(self):
        source = classify_heuristic(Citation(url="https://www.nytimes.com/wirecutter"))
        assert source.source_type == SourceCategory.JOURNALISM
        assert source.confidence == Confidence.LOW
        assert source.authority == 0.95

    def test_news_hint(self):
        source = classify_heuristic(Citation(url="https://smallpaper.io/a", source_type_hint="Journalism"))
        assert source.source_type == SourceCategory.JOURNALISM
        assert source.authority is None

    def test_keyword_rule(self):
        assert classify_heuristic(Citation(url="https://blog.example.com/p")).source_type == (
            SourceCategory.CORPORATE_BLOGS
        )
        assert classify_heuristic(Citation(url="https://energy.gov/x")).source_type == SourceCategory.GOVERNMENT_NGO

    def test_unknown_is_other_not_null(self):
        source = classify_heuristic(Citation(url="https://unknownsite.io"))
        assert source.source_type == SourceCategory.OTHER
        assert source.reasoning == "Unknown domain"

    def test_authority_for(self):
        base = {"url": "u", "title": "", "domain": "d"}
        high = ClassifiedSource(**base, source_type=SourceCategory.JOURNALISM, confidence=Confidence.HIGH)
        trusted = ClassifiedSource(
            **base, source_type=SourceCategory.SOCIAL_UGC, confidence=Confidence.LOW, authority=0.45
        )
        untrusted = ClassifiedSource(**base, source_type=SourceCategory.JOURNALISM, confidence=Confidence.LOW)
        assert authority_for(high) == 0.95
        assert authority_for(trusted) == 0.45
        assert authority_for(untrusted) == 0.30

    def test_lookup_source_falls_back_to_heuristic(self):
        index = {}
        source = lookup_source({"url": "https://reddit.com/r/running", "title": "r/running"}, index)
        assert source.source_type == SourceCategory.SOCIAL_UGC
        assert source.title == "r/running"


# ==========================================================================
# Test: SourceClassifier
# ==========================================================================


class TestSourceClassifier:
    @pytest.mark.asyncio
    async def test_ownership_prepass(self):
        gateway = FakeGateway()
        classifier = SourceClassifier(gateway)
        sources = await classifier.classify(
            [
                Citation(url="https://www.nike.com/running"),
                Citation(url="https://adidas.com/ultraboost"),
                Citation(url="https://www.youtube.com/@Nike"),
            ],
            "Nike",
            ["Adidas"],
        )
        assert [s.source_type for s in sources] == [
            SourceCategory.OWNED_MEDIA,
            SourceCategory.COMPETITOR_MEDIA,
            SourceCategory.OWNED_MEDIA,
        ]
        assert all(s.confidence == Confidence.HIGH for s in sources)
        assert sources[1].competitor_name == "Adidas"
        assert gateway.utility_calls == 0

    @pytest.mark.asyncio
    async def test_model_classification_with_gap_fill(self):
        gateway = FakeGateway(
            utility=_classifications(
                {"id": 0, "source_type": "Journalism", "confidence": "High", "reasoning": "news site"},
                {"id": 1, "source_type": "Not a category"},
            )
        )
        classifier = SourceClassifier(gateway)
        sources = await classifier.classify(
            [Citation(url="https://smallpaper.io/a", cited_by=["gemini"]), Citation(url="https://reddit.com/r/x")],
            "Nike",
        )

        assert sources[0].source_type == SourceCategory.JOURNALISM
        assert sources[0].confidence == Confidence.HIGH
        assert sources[0].cited_by == ["gemini"]
        assert sources[1].source_type == SourceCategory.SOCIAL_UGC
        assert sources[1].confidence == Confidence.LOW

    @pytest.mark.asyncio
    async def test_transient_failure_retried(self):
        answers = iter(
            [
                failed_response(ProviderName.GEMINI, status=RequestStatus.TIMEOUT, code=""),
                failed_response(ProviderName.GEMINI, code="503"),
                _classifications({"id": 0, "source_type": "Press Release", "confidence": "medium"}),
            ]
        )
        gateway = FakeGateway(utility=lambda prompt: next(answers))
        sleeps = _Sleeps()
        classifier = SourceClassifier(gateway, max_retries=2, base_retry_delay=1.0, sleep=sleeps)

        sources = await classifier.classify([Citation(url="https://corp.example/pr")], "Nike")

        assert gateway.utility_calls == 3
        assert sources[0].source_type == SourceCategory.PRESS_RELEASE
        assert sources[0].confidence == Confidence.MEDIUM
        assert len(sleeps.delays) == 2
        assert 1.0 <= sleeps.delays[0] <= 1.5
        assert 2.0 <= sleeps.delays[1] <= 2.5

    @pytest.mark.asyncio
    async def test_retries_exhausted_fall_back(self):
        gateway = FakeGateway(utility=failed_response(ProviderName.GEMINI, status=RequestStatus.RATE_LIMITED))
        classifier = SourceClassifier(gateway, max_retries=2, base_retry_delay=0.0, sleep=_Sleeps())

        sources = await classifier.classify([Citation(url="https://www.nytimes.com/a")], "Nike")

        assert gateway.utility_calls == 3
        assert sources[0].source_type == SourceCategory.JOURNALISM
        assert sources[0].confidence == Confidence.LOW
        assert "classification failed" in sources[0].reasoning

    @pytest.mark.asyncio
    async def test_non_retryable_failure_not_retried(self):
        gateway = FakeGateway()
        sleeps = _Sleeps()
        classifier = SourceClassifier(gateway, max_retries=2, sleep=sleeps)

        sources = await classifier.classify([Citation(url="https://unknownsite.io")], "Nike")

        assert gateway.utility_calls == 1
        assert sleeps.delays == []
        assert sources[0].source_type == SourceCategory.OTHER

    @pytest.mark.asyncio
    async def test_unparseable_output_falls_back(self):
        gateway = FakeGateway(utility=ok_response(ProviderName.GEMINI, "I cannot help with that"))
        classifier = SourceClassifier(gateway, sleep=_Sleeps())
        sources = await classifier.classify([Citation(url="https://reddit.com/r/x")], "Nike")
        assert gateway.utility_calls == 1
        assert sources[0].confidence == Confidence.LOW

    @pytest.mark.asyncio
    async def test_batches(self):
        gateway = FakeGateway(utility=_classifications({"id": 0, "source_type": "Other"}))
        classifier = SourceClassifier(gateway, batch_size=2)
        citations = [Citation(url=f"https://site{i}.io") for i in range(3)]

        sources = await classifier.classify(citations, "Nike")

        assert gateway.utility_calls == 2
        assert [s.url for s in sources] == [c.url for c in citations]

    @pytest.mark.asyncio
    async def test_no_gateway_uses_heuristics(self):
        sources = await SourceClassifier(None).classify([Citation(url="https://arxiv.org/abs/1")], "Nike")
        assert sources[0].source_type == SourceCategory.ACADEMIC
        assert sources[0].confidence == Confidence.LOW


# ==========================================================================
# Test: YouTube channel from answer bodies
# ==========================================================================


class TestVideoChannel:
    @pytest.mark.asyncio
    async def test_body_channel_reaches_classified_source(self, make_record):
        video = {"url": "https://www.youtube.com/watch?v=abc", "youtube_channel": "Nike"}
        record = make_record("VIS_Q1", "visibility", gemini={**ranking("Nike"), "sources_cited_other": [video]})

        citations = collect_citations([record])
        assert citations[0].youtube_channel == "Nike"

        sources = await SourceClassifier(None).classify(citations, "Nike", ["Adidas"])
        assert sources[0].youtube_channel == "Nike"
        assert sources[0].domain == "youtube.com/Nike"
        assert sources[0].source_type == SourceCategory.OWNED_MEDIA
        assert sources[0].confidence == Confidence.HIGH

    @pytest.mark.asyncio
    async def test_competitor_channel(self):
        citation = Citation(url="https://youtu.be/xyz", youtube_channel="adidasRunning")
        sources = await SourceClassifier(None).classify([citation], "Nike", ["Adidas"])
        assert sources[0].source_type == SourceCategory.COMPETITOR_MEDIA
        assert sources[0].competitor_name == "Adidas"

    def test_channel_filled_from_later_citation(self, make_record):
        url = "https://www.youtube.com/watch?v=abc"
        record = make_record(
            "VIS_Q1",
            "visibility",
            gemini_sources=[{"url": url, "title": "Review"}],
            openai={**ranking("Nike"), "sources_cited_other": [{"url": url, "youtube_channel": "RunReviews"}]},
        )
        citations = collect_citations([record])
        assert len(citations) == 1
        assert citations[0].youtube_channel == "RunReviews"
        assert citations[0].cited_by == ["gemini", "openai"]

    @pytest.mark.asyncio
    async def test_enrich_from_video_metadata(self):
        citations = [
            Citation(url="https://www.youtube.com/watch?v=abc", title="youtube.com", domain="youtube.com"),
            Citation(url="https://youtu.be/def", title="Model title"),
            Citation(url="https://www.youtube.com/embed/ghi", youtube_channel="Already"),
            Citation(url="https://www.youtube.com/@Nike"),
            Citation(url="https://www.nytimes.com/a"),
        ]
        metadata = {
            "abc": {"title": "Pegasus review", "channel": "Nike"},
            "def": {"title": "Ultraboost review", "channel": "RunReviews"},
        }
        with patch("app.analysis.source_classifier.fetch_youtube_metadata", AsyncMock(return_value=metadata)) as fetch:
            assert await enrich_youtube_citations(citations) == 2

        assert fetch.await_args.args[0] == ["abc", "def"]
        assert citations[0].youtube_channel == "Nike"
        assert citations[0].title == "Pegasus review"
        assert citations[1].youtube_channel == "RunReviews"
        assert citations[1].title == "Model title"
        assert citations[2].youtube_channel == "Already"

        sources = await SourceClassifier(None).classify(citations[:2], "Nike")
        assert sources[0].source_type == SourceCategory.OWNED_MEDIA
        assert sources[1].domain == "youtube.com/RunReviews"

    @pytest.mark.asyncio
    async def test_nothing_to_enrich(self):
        with patch("app.analysis.source_classifier.fetch_youtube_metadata", AsyncMock()) as fetch:
            assert await enrich_youtube_citations([Citation(url="https://www.youtube.com/@Nike")]) == 0
        fetch.assert_not_awaited()

    def test_embed_video_id(self):
        assert extract_domain_info("https://www.youtube.com/embed/ghi").video_id == "ghi"

    def test_heuristic_and_lookup_keep_channel(self):
        source = classify_heuristic(Citation(url="https://www.youtube.com/watch?v=abc", youtube_channel="RunReviews"))
        assert source.domain == "youtube.com/RunReviews"
        assert source.source_type == SourceCategory.SOCIAL_UGC

        looked_up = lookup_source({"url": "https://youtu.be/q", "youtube_channel": "RunReviews"}, {})
        assert looked_up.youtube_channel == "RunReviews"


# ==========================================================================
# Test: Source analysis
# ==========================================================================


class TestSourceAnalysis:
    def test_distribution_and_top_domains(self):
        def src(domain, category, competitor=None):
            return ClassifiedSource(
                url=f"https://{domain}/{category.name}",
                title="",
                domain=domain,
                source_type=category,
                confidence=Confidence.HIGH,
                competitor_name=competitor,
            )

        analysis = generate_source_analysis(
            [
                src("nytimes.com", SourceCategory.JOURNALISM),
                src("nytimes.com", SourceCategory.JOURNALISM),
                src("adidas.com", SourceCategory.COMPETITOR_MEDIA, "Adidas"),
                src("reddit.com", SourceCategory.SOCIAL_UGC),
            ]
        )

        assert analysis["total_sources"] == 4
        assert analysis["unique_domains"] == 3
        assert analysis["source_type_distribution"]["Journalism"] == 2
        assert analysis["source_type_distribution"]["Other"] == 0
        assert analysis["competitor_breakdown"] == {"Adidas": 1}
        assert analysis["top_domains"][0] == {"domain": "nytimes.com", "count": 2, "source_type": "Journalism"}
