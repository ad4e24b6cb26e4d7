"""PR Insights: turns aggregates into a prioritised opportunity list.

Three families are built independently, then merged and sorted by
(urgency, -impact, id):

  REP_nnn  one per negative reputation topic with enough severity
  CMP_nnn  one per competitor that beat the target, above an impact floor
  SRC_nnn  one per cited domain with enough citations and impact

Gaps come from the not-ranked-first questions of every visibility and
competitive scope; same-brand-family "competitors" are never counted.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import dataclass, field

from app.analysis.brand_matcher import brand_matches_entity
from app.analysis.scoring import (
    ImpactInputs,
    PriorityTier,
    calculate_impact,
    effort_label,
    gap_effort,
    impact_label,
    keyword_theme,
    priority_tier,
    reputation_effort,
    source_effort,
)
from app.analysis.source_classifier import authority_for
from app.analysis.types import PR_INSIGHTS_KIND, ClassifiedSource, SourceCategory
from app.core.config import settings
from app.gateway.normalizer import extract_domain

logger = logging.getLogger(__name__)

PROVIDERS = ("gemini", "openai")


@dataclass
class ScopeAnalysis:
    """One visibility or competitive AnalysisResult with its scope."""

    market_code: str
    category_id: str
    data: dict


@dataclass
class Gap:
    question: str
    question_type: str  # "visibility" | "competitive"
    market_code: str
    category_id: str
    current_rank: int | None
    rank_gap: float
    top_competitor: str | None
    top_competitor_comment: str
    sources: list[dict] = field(default_factory=list)
    providers: list[str] = field(default_factory=list)  # providers that did not put the target first


@dataclass
class OpportunityDraft:
    """A scored opportunity before it becomes an Opportunity row."""

    id: str
    title: str
    description: str
    opportunity_type: str
    theme_category: str
    impact_score: float
    effort_score: float
    priority: PriorityTier
    evidence: dict = field(default_factory=dict)
    sources: list[dict] = field(default_factory=list)
    recommended_actions: list[str] = field(default_factory=list)
    metadata: dict = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "title": self.title,
            "description": self.description,
            "opportunity_type": self.opportunity_type,
            "theme_category": self.theme_category,
            "impact_score": self.impact_score,
            "impact_label": impact_label(self.impact_score),
            "effort_score": self.effort_score,
            "effort_label": effort_label(self.effort_score),
            "priority_tier": self.priority.tier,
            "priority_label": self.priority.label,
            "priority_urgency": self.priority.urgency,
            "evidence": self.evidence,
            "sources": self.sources,
            "recommended_actions": self.recommended_actions,
            "metadata": self.metadata,
        }


@dataclass
class PRInsights:
    entity: str
    opportunities: list[OpportunityDraft]
    summary: dict

    def to_dict(self) -> dict:
        payload = {
            "analysis_type": PR_INSIGHTS_KIND,
            "entity": self.entity,
            **self.summary,
            "opportunities": [o.to_dict() for o in self.opportunities],
        }
        if not self.opportunities:
            payload["message"] = "No significant visibility or competitive gaps identified. Current positioning is strong."
        return payload


# ---------------------------------------------------------------------------
# Gap extraction
# ---------------------------------------------------------------------------


def extract_gap(question: dict, entity: str, market_code: str = "", category_id: str = "") -> Gap | None:
    """Gap for one not-ranked-first question, or None when the target was first everywhere."""
    responses = question.get("llm_responses") or {}
    is_competitive = False
    is_ranked_loss = False
    current_rank = None
    top_competitor = None
    top_comment = ""
    sources: list[dict] = []
    providers: list[str] = []

    for provider in PROVIDERS:
        resp = responses.get(provider)
        if not resp:
            continue
        for source in resp.get("sources") or []:
            sources.append({**source, "cited_by": provider})
        if resp.get("rank") == 1:
            continue
        providers.append(provider)
        if resp.get("chosen_entity"):
            is_competitive = True
            if top_competitor is None:
                top_competitor = resp["chosen_entity"]
                top_comment = resp.get("top_brand_comment") or ""
        elif not is_ranked_loss:
            is_ranked_loss = True
            target_rank = resp.get("target_rank")
            current_rank = target_rank if isinstance(target_rank, int) else resp.get("rank")
            if top_competitor is None:
                top_competitor = resp.get("top_brand")
                top_comment = resp.get("top_brand_comment") or ""

    if not providers:
        return None

    if top_competitor and brand_matches_entity(top_competitor, entity):
        top_competitor = None
        top_comment = ""

    if is_competitive:
        rank_gap = settings.competitive_loss_gap_penalty
        current_rank = None
    elif current_rank is None:
        rank_gap = settings.unranked_gap_penalty
    else:
        rank_gap = current_rank - 1

    return Gap(
        question=question.get("question", ""),
        question_type="competitive" if is_competitive else "visibility",
        market_code=market_code,
        category_id=category_id,
        current_rank=current_rank,
        rank_gap=rank_gap,
        top_competitor=top_competitor,
        top_competitor_comment=top_comment,
        sources=sources,
        providers=providers,
    )


def extract_gaps(scopes: Iterable[ScopeAnalysis], entity: str) -> list[Gap]:
    gaps = []
    for scope in scopes:
        for question in scope.data.get("not_ranked_first_questions") or []:
            gap = extract_gap(question, entity, scope.market_code, scope.category_id)
            if gap:
                gaps.append(gap)
    return gaps


def negative_topics(reputation: dict | None) -> list[dict]:
    if not reputation:
        return []
    return list((reputation.get("sentiment_topics") or {}).get("negative_topics") or [])


def topic_severity(topic: dict) -> float:
    return abs(float(topic.get("sentiment_score") or 0.0)) * max(float(topic.get("frequency") or 0.0), 0.1)


# ---------------------------------------------------------------------------
# Families
# ---------------------------------------------------------------------------


def _authority(source: dict, index: dict[str, ClassifiedSource]) -> float:
    classified = index.get(source.get("url", ""))
    if classified is not None:
        return authority_for(classified)
    if source.get("authority") is not None:
        return float(source["authority"])
    return settings.low_confidence_authority


def _finalise(drafts: list[OpportunityDraft], prefix: str) -> list[OpportunityDraft]:
    drafts.sort(key=lambda d: (-d.impact_score, d.title))
    for number, draft in enumerate(drafts, start=1):
        draft.id = f"{prefix}_{number:03d}"
    return drafts


def build_reputation_opportunities(
    topics: list[dict], entity: str, index: dict[str, ClassifiedSource]
) -> list[OpportunityDraft]:
    drafts = []
    for topic in topics:
        severity = topic_severity(topic)
        if severity < settings.min_reputation_severity:
            continue
        topic_sources = list(topic.get("sources") or [])
        cited_by = set(topic.get("cited_by") or [])
        impact = calculate_impact(
            ImpactInputs(
                citations=len(topic_sources),
                reputation_severity=severity,
                authority=max((_authority(s, index) for s in topic_sources), default=0.0),
                cited_by_both=all(p in cited_by for p in PROVIDERS),
            )
        )
        effort = reputation_effort(severity)
        name = topic.get("topic", "")
        drafts.append(
            OpportunityDraft(
                id="",
                title=f"Address negative perception: {name}",
                description=(
                    f"Models associate {entity} with \"{name}\" in {topic.get('frequency', 0):.0%} of reputation answers."
                ),
                opportunity_type="Reputation Management",
                theme_category="Reputation",
                impact_score=impact,
                effort_score=effort,
                priority=priority_tier(impact, effort),
                evidence={
                    "topic": name,
                    "frequency": topic.get("frequency", 0),
                    "sentiment_score": topic.get("sentiment_score", 0),
                    "severity": round(severity, 4),
                    "quotes": list(topic.get("quotes") or []),
                },
                sources=topic_sources,
                recommended_actions=[
                    f"Publish a factual response addressing \"{name}\"",
                    "Brief journalists and review sites on recent improvements",
                    "Track the topic in the next analysis run",
                ],
                metadata={"cited_by": sorted(cited_by)},
            )
        )
    return _finalise(drafts, "REP")


def build_competitive_opportunities(
    gaps: list[Gap], entity: str, index: dict[str, ClassifiedSource]
) -> list[OpportunityDraft]:
    by_competitor: dict[str, list[Gap]] = {}
    for gap in gaps:
        if gap.top_competitor:
            by_competitor.setdefault(gap.top_competitor, []).append(gap)

    drafts = []
    for competitor, competitor_gaps in by_competitor.items():
        visibility_gaps = [g for g in competitor_gaps if g.question_type == "visibility"]
        losses = [g for g in competitor_gaps if g.question_type == "competitive"]
        avg_rank_gap = sum(g.rank_gap for g in competitor_gaps) / len(competitor_gaps)
        providers = {p for g in competitor_gaps for p in g.providers}
        gap_sources = [s for g in competitor_gaps for s in g.sources]
        impact = calculate_impact(
            ImpactInputs(
                citations=len(competitor_gaps),
                visibility_gap_citations=len(visibility_gaps),
                competitive_loss_citations=len(losses),
                avg_rank_gap=avg_rank_gap,
                authority=max((_authority(s, index) for s in gap_sources), default=0.0),
                cited_by_both=all(p in providers for p in PROVIDERS),
            )
        )
        if impact < settings.min_competitive_impact:
            continue

        opportunity_type = "Competitive Positioning" if len(losses) > len(visibility_gaps) else "Visibility Gap"
        comments = " ".join(g.top_competitor_comment for g in competitor_gaps if g.top_competitor_comment)
        effort = gap_effort(opportunity_type, avg_rank_gap, comments)
        theme = keyword_theme(comments)

        actions = [f"Create comparison content vs {competitor}"]
        if theme == "price":
            actions.append(f"Communicate value and pricing advantages over {competitor}")
        elif theme == "feature":
            actions.append(f"Highlight product features where {entity} leads {competitor}")
        elif theme == "service":
            actions.append(f"Showcase service and support strengths against {competitor}")
        actions.append("Secure third-party reviews that rank the brand in this category")

        unique_sources = {s["url"]: s for s in gap_sources}
        drafts.append(
            OpportunityDraft(
                id="",
                title=f"Close the gap with {competitor}",
                description=(
                    f"{competitor} was preferred over {entity} in {len(visibility_gaps)} rankings "
                    f"and {len(losses)} head-to-head comparisons."
                ),
                opportunity_type=opportunity_type,
                theme_category="Competitive Positioning",
                impact_score=impact,
                effort_score=effort,
                priority=priority_tier(impact, effort),
                evidence={
                    "competitor": competitor,
                    "visibility_gaps": len(visibility_gaps),
                    "competitive_losses": len(losses),
                    "avg_rank_gap": round(avg_rank_gap, 2),
                    "theme": theme,
                    "sample_questions": [
                        {"question": g.question, "type": g.question_type, "rank": g.current_rank}
                        for g in competitor_gaps[:5]
                    ],
                },
                sources=list(unique_sources.values())[:10],
                recommended_actions=actions,
                metadata={
                    "providers": sorted(providers),
                    "markets_affected": sorted({g.market_code for g in competitor_gaps}),
                    "categories_affected": sorted({g.category_id for g in competitor_gaps}),
                },
            )
        )
    return _finalise(drafts, "CMP")


@dataclass
class _DomainStats:
    domain: str
    source_type: str
    citations: int = 0
    visibility_gap_citations: int = 0
    competitive_loss_citations: int = 0
    reputation_issue_citations: int = 0
    rank_gaps: list[float] = field(default_factory=list)
    cited_by: set = field(default_factory=set)
    urls: list[str] = field(default_factory=list)
    competitors: list[str] = field(default_factory=list)
    reputation_topics: list[str] = field(default_factory=list)
    authority: float = 0.0
    markets: set = field(default_factory=set)
    categories: set = field(default_factory=set)


_SOURCE_ACTIONS = {
    SourceCategory.JOURNALISM.value: [
        "Pitch an updated story or correction to {domain}",
        "Offer exclusive data or an interview to the journalist",
    ],
    SourceCategory.AGGREGATORS.value: [
        "Submit updated brand information to {domain}",
        "Make sure the brand profile is complete and accurate",
    ],
    SourceCategory.SOCIAL_UGC.value: [
        "Respond to open complaints on {domain}",
        "Encourage satisfied customers to share reviews",
    ],
    SourceCategory.OWNED_MEDIA.value: [
        "Refresh the pages on {domain} that models cite",
        "Add structured comparisons and up-to-date specs",
    ],
}
_DEFAULT_SOURCE_ACTIONS = [
    "Reach out to {domain} for a content update",
    "Create content worth citing for {domain}",
]


def _domain_stats(stats: dict[str, _DomainStats], source: dict, index: dict[str, ClassifiedSource]) -> _DomainStats | None:
    domain = source.get("domain") or extract_domain(source.get("url", ""))
    if not domain:
        return None
    if domain not in stats:
        classified = index.get(source.get("url", ""))
        source_type = classified.source_type.value if classified else source.get("source_type") or "Other"
        stats[domain] = _DomainStats(domain=domain, source_type=source_type)
    data = stats[domain]
    data.citations += 1
    data.authority = max(data.authority, _authority(source, index))
    if source.get("url") and source["url"] not in data.urls:
        data.urls.append(source["url"])
    return data


def build_source_opportunities(
    gaps: list[Gap], topics: list[dict], index: dict[str, ClassifiedSource]
) -> list[OpportunityDraft]:
    stats: dict[str, _DomainStats] = {}

    for gap in gaps:
        for source in gap.sources:
            data = _domain_stats(stats, source, index)
            if data is None:
                continue
            data.cited_by.add(source.get("cited_by"))
            data.markets.add(gap.market_code)
            data.categories.add(gap.category_id)
            if gap.question_type == "competitive":
                data.competitive_loss_citations += 1
            else:
                data.visibility_gap_citations += 1
                data.rank_gaps.append(gap.rank_gap)
            if gap.top_competitor and gap.top_competitor not in data.competitors:
                data.competitors.append(gap.top_competitor)

    for topic in topics:
        if topic_severity(topic) < settings.min_reputation_severity:
            continue
        for source in topic.get("sources") or []:
            data = _domain_stats(stats, source, index)
            if data is None:
                continue
            data.reputation_issue_citations += 1
            data.cited_by.update(topic.get("cited_by") or [])
            if topic.get("topic") not in data.reputation_topics:
                data.reputation_topics.append(topic.get("topic"))

    drafts = []
    for domain, data in stats.items():
        if data.citations < settings.min_source_citations:
            continue
        avg_rank_gap = sum(data.rank_gaps) / len(data.rank_gaps) if data.rank_gaps else 0.0
        cited_by_both = all(p in data.cited_by for p in PROVIDERS)
        impact = calculate_impact(
            ImpactInputs(
                citations=data.citations,
                visibility_gap_citations=data.visibility_gap_citations,
                competitive_loss_citations=data.competitive_loss_citations,
                avg_rank_gap=avg_rank_gap,
                authority=data.authority,
                cited_by_both=cited_by_both,
            )
        )
        if impact < settings.min_source_impact:
            continue

        if data.competitive_loss_citations > data.visibility_gap_citations:
            opportunity_type = "Competitive Positioning"
        elif data.visibility_gap_citations > 0:
            opportunity_type = "Visibility Gap"
        elif data.reputation_issue_citations > 0:
            opportunity_type = "Reputation Management"
        else:
            opportunity_type = "Source Outreach"

        parts = []
        if data.visibility_gap_citations:
            parts.append(f"{data.visibility_gap_citations} visibility gaps")
        if data.competitive_loss_citations:
            parts.append(f"{data.competitive_loss_citations} competitive losses")
        if data.reputation_issue_citations:
            parts.append(f"{data.reputation_issue_citations} reputation issues")
        description = f"Source cited in {', '.join(parts)}."
        if cited_by_both:
            description += " Cited by both Gemini and OpenAI."

        actions = [a.format(domain=domain) for a in _SOURCE_ACTIONS.get(data.source_type, _DEFAULT_SOURCE_ACTIONS)]
        if data.competitors:
            actions.append(f"Create comparison content vs {data.competitors[0]}")

        category = SourceCategory.parse(data.source_type) or SourceCategory.OTHER
        effort = source_effort(category)
        drafts.append(
            OpportunityDraft(
                id="",
                title=f"Update presence on {domain}",
                description=description,
                opportunity_type=opportunity_type,
                theme_category="Source Outreach",
                impact_score=impact,
                effort_score=effort,
                priority=priority_tier(impact, effort),
                evidence={
                    "domain": domain,
                    "source_type": data.source_type,
                    "total_citations": data.citations,
                    "visibility_gap_citations": data.visibility_gap_citations,
                    "competitive_loss_citations": data.competitive_loss_citations,
                    "reputation_issue_citations": data.reputation_issue_citations,
                    "avg_rank_gap": round(avg_rank_gap, 1),
                    "cited_by_both_llms": cited_by_both,
                    "competitors_mentioned": data.competitors[:5],
                    "reputation_topics": data.reputation_topics,
                },
                sources=[{"url": u, "domain": domain} for u in data.urls[:10]],
                recommended_actions=actions,
                metadata={
                    "unique_urls": len(data.urls),
                    "authority": data.authority,
                    "markets_affected": sorted(data.markets),
                    "categories_affected": sorted(data.categories),
                },
            )
        )
    return _finalise(drafts, "SRC")


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------


def summarise(opportunities: list[OpportunityDraft], gaps: list[Gap], topics: list[dict]) -> dict:
    tiers = {"critical": "Critical", "strategic": "Strategic", "quick_win": "Quick Win", "low_priority": "Low Priority"}
    priority_summary = {key: sum(1 for o in opportunities if o.priority.tier == tier) for key, tier in tiers.items()}

    type_distribution: dict[str, int] = {}
    for opportunity in opportunities:
        type_distribution[opportunity.opportunity_type] = type_distribution.get(opportunity.opportunity_type, 0) + 1

    visibility_gaps = [g for g in gaps if g.question_type == "visibility"]
    return {
        "total_opportunities": len(opportunities),
        "priority_summary": priority_summary,
        "opportunity_type_distribution": type_distribution,
        "gap_summary": {
            "total_visibility_gaps": len(visibility_gaps),
            "total_competitive_losses": len(gaps) - len(visibility_gaps),
            "total_reputation_issues": len(topics),
            "avg_rank_gap": round(sum(g.rank_gap for g in visibility_gaps) / len(visibility_gaps), 1)
            if visibility_gaps
            else 0,
        },
    }


def sort_opportunities(opportunities: list[OpportunityDraft]) -> list[OpportunityDraft]:
    return sorted(opportunities, key=lambda o: (o.priority.urgency, -o.impact_score, o.id))


def generate_pr_insights(
    entity: str,
    reputation: dict | None,
    scopes: Iterable[ScopeAnalysis],
    sources: Iterable[ClassifiedSource] = (),
) -> PRInsights:
    """Build every opportunity family and merge them into one sorted list."""
    index = {s.url: s for s in sources}
    gaps = extract_gaps(scopes, entity)
    topics = negative_topics(reputation)

    opportunities = sort_opportunities(
        build_reputation_opportunities(topics, entity, index)
        + build_competitive_opportunities(gaps, entity, index)
        + build_source_opportunities(gaps, topics, index)
    )
    summary = summarise(opportunities, gaps, topics)
    logger.info(
        "PR insights for %s: %d gaps, %d reputation issues → %d opportunities %s",
        entity,
        len(gaps),
        len(topics),
        len(opportunities),
        summary["priority_summary"],
    )
    return PRInsights(entity=entity, opportunities=opportunities, summary=summary)
