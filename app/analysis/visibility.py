"""Visibility & Competitive Aggregator.

Folds the stored responses of one (market, category) scope into:
  - per-entity mentions, average rank, visibility and share of voice
  - the target's own metrics
  - a brand-family rollup (product lines under their parent brand)
  - ranked-first / not-ranked-first question lists
  - pros/cons from competitive answers, tagged with a competitive dimension
  - per-provider performance and source analysis

Formulas:
  visibility = min(mentions / (questions × 2), 1.0)
  SOV        = visibility × 2 / (avg_rank + 1)      (0 when either is 0)

Folding is synchronous and depends only on the records and the source index;
brand grouping is the only awaited step.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from app.analysis.brand_matcher import BrandGroups, brand_matches_entity, group_brand_variations
from app.analysis.dimensions import add_keyword_dimensions, classify_dimensions
from app.analysis.response_shapes import ChoiceAnswer, RankingAnswer, ResponseRecord
from app.analysis.source_classifier import authority_for, generate_source_analysis, lookup_source
from app.analysis.types import ClassifiedSource
from app.core.config import settings

if TYPE_CHECKING:
    from app.gateway.gateway import ModelGateway

logger = logging.getLogger(__name__)

PROVIDER_DISPLAY_NAMES = {"gemini": "Gemini", "openai": "ChatGPT"}
NOT_RANKED = "Not ranked"


def calculate_sov(visibility: float, average_rank: float) -> float:
    if visibility <= 0 or average_rank <= 0:
        return 0.0
    return visibility * (2 / (average_rank + 1))


def sov_status(sov: float) -> str:
    if sov > 0.5:
        return "Good"
    if sov > 0.25:
        return "Fair"
    return "Poor"


@dataclass
class _EntityStats:
    name: str
    ranks: list[int] = field(default_factory=list)

    @property
    def mentions(self) -> int:
        return len(self.ranks)

    @property
    def average_rank(self) -> float:
        return sum(self.ranks) / len(self.ranks) if self.ranks else 0.0


@dataclass
class _ProviderStats:
    ranks: list[int] = field(default_factory=list)
    questions_with_mention: int = 0
    choice_questions: int = 0
    target_chosen: int = 0
    choices: dict[str, int] = field(default_factory=dict)


# ---------------------------------------------------------------------------
# Ranked-first classification
# ---------------------------------------------------------------------------


def is_ranked_first(llm_responses: dict[str, dict]) -> bool:
    """At least one provider answered and every answering provider put the target at #1.

    A provider that did not answer does not count as disagreement.
    """
    return bool(llm_responses) and all(r.get("rank") == 1 for r in llm_responses.values())


def is_not_ranked_first(llm_responses: dict[str, dict]) -> bool:
    return any(r.get("rank") != 1 for r in llm_responses.values())


# ---------------------------------------------------------------------------
# Folding
# ---------------------------------------------------------------------------


def _scope_source(citation: dict, provider: str, index: dict[str, ClassifiedSource]) -> dict:
    source = lookup_source(citation, index)
    return {
        "url": source.url,
        "title": source.title or source.domain,
        "domain": source.domain,
        "source_type": source.source_type.value,
        "confidence": source.confidence.value,
        "authority": authority_for(source),
        "cited_by": provider,
    }


def _add_points(target: dict[str, dict], entity_name: str, points) -> None:
    for point in points:
        key = (entity_name, point.text)
        if key in target:
            target[key]["frequency"] += 1
        else:
            target[key] = {
                "attribute": point.text,
                "entity": entity_name,
                "frequency": 1,
                "sources": [dict(s) for s in point.sources],
            }


def _question_detail(question: dict, entity: str) -> dict:
    """Add target rank/comment, top brand comment and the top-5 ranking per provider."""
    detailed = dict(question)
    detailed["llm_responses"] = {}
    for provider, resp in question["llm_responses"].items():
        ranking = resp.get("ranking") or []
        target = next((r for r in ranking if brand_matches_entity(r["name"], entity)), None)
        top = next((r for r in ranking if r["rank"] == 1), None)
        detailed["llm_responses"][provider] = {
            **resp,
            "target_entity": entity,
            "target_rank": target["rank"] if target else (resp.get("rank") or NOT_RANKED),
            "target_comment": (target or {}).get("comment")
            or resp.get("target_comment")
            or "Brand not mentioned in this response",
            "top_brand_comment": (top or {}).get("comment") or resp.get("top_brand_comment") or "",
            "full_ranking": [{"rank": r["rank"], "name": r["name"], "comment": r["comment"]} for r in ranking[:5]],
        }
    return detailed


def fold_visibility(
    records: Iterable[ResponseRecord],
    entity: str,
    category: str = "",
    source_index: dict[str, ClassifiedSource] | None = None,
) -> dict:
    """Reduce one scope's responses to visibility/competitive statistics (no brand families)."""
    source_index = source_index or {}
    records = sorted(records, key=lambda r: r.sequence)

    entities: dict[str, _EntityStats] = {}
    providers: dict[str, _ProviderStats] = {}
    pros: dict[tuple[str, str], dict] = {}
    cons: dict[tuple[str, str], dict] = {}
    scope_sources: dict[str, tuple[ClassifiedSource, list[str]]] = {}
    questions: list[dict] = []

    for record in records:
        question = {
            "question_id": record.question_id,
            "question": record.question_text,
            "llm_responses": {},
            "entities_mentioned": [],
        }
        for provider, provider_answer in record.answers.items():
            answer = provider_answer.answer
            stats = providers.setdefault(provider, _ProviderStats())
            sources = [_scope_source(c, provider, source_index) for c in provider_answer.citations]

            if isinstance(answer, RankingAnswer):
                entity_rank = None
                top_brand = None
                for ranked in answer.entities:
                    entities.setdefault(ranked.name, _EntityStats(ranked.name)).ranks.append(ranked.rank)
                    if brand_matches_entity(ranked.name, entity) and (entity_rank is None or ranked.rank < entity_rank):
                        entity_rank = ranked.rank
                    if ranked.rank == 1 and top_brand is None:
                        top_brand = ranked.name
                    if ranked.name not in question["entities_mentioned"]:
                        question["entities_mentioned"].append(ranked.name)
                question["llm_responses"][provider] = {
                    "rank": entity_rank,
                    "top_brand": top_brand,
                    "ranking": [{"rank": e.rank, "name": e.name, "comment": e.comment} for e in answer.entities],
                    "sources": sources,
                }
            elif isinstance(answer, ChoiceAnswer):
                choice = answer.choice
                entities.setdefault(choice, _EntityStats(choice)).ranks.append(1)
                entity_rank = 1 if brand_matches_entity(choice, entity) else None
                if choice not in question["entities_mentioned"]:
                    question["entities_mentioned"].append(choice)
                question["llm_responses"][provider] = {
                    "rank": entity_rank,
                    "top_brand": choice,
                    "chosen_entity": choice,
                    "top_brand_comment": answer.explanation,
                    "target_comment": answer.explanation if entity_rank == 1 else "Not selected as top choice",
                    "sources": sources,
                }
                stats.choice_questions += 1
                if entity_rank == 1:
                    stats.target_chosen += 1
                stats.choices[choice] = stats.choices.get(choice, 0) + 1
                for name, assessment in answer.analysis.items():
                    _add_points(pros, name, assessment.pros)
                    _add_points(cons, name, assessment.cons)
            else:
                continue

            if entity_rank is not None:
                stats.ranks.append(entity_rank)
                stats.questions_with_mention += 1

            for citation, source in zip(provider_answer.citations, sources):
                if citation["url"] not in scope_sources:
                    scope_sources[citation["url"]] = (lookup_source(citation, source_index), [])
                cited_by = scope_sources[citation["url"]][1]
                if provider not in cited_by:
                    cited_by.append(provider)

        questions.append(question)

    total_questions = len(questions)
    max_mentions = total_questions * 2

    ranked = sorted(entities.values(), key=lambda e: e.average_rank)
    target = next((e for e in ranked if brand_matches_entity(e.name, entity)), None)
    visibility = min(target.mentions / max_mentions, 1.0) if target and max_mentions else 0.0
    average_position = target.average_rank if target else 0.0
    sov = calculate_sov(visibility, average_position)

    entities_ranking = []
    for stats in ranked:
        entity_visibility = min(stats.mentions / max_mentions, 1.0) if max_mentions else 0.0
        entities_ranking.append(
            {
                "name": stats.name,
                "average_rank": stats.average_rank,
                "mentions": stats.mentions,
                "visibility": entity_visibility,
                "sov": calculate_sov(entity_visibility, stats.average_rank),
            }
        )
    entities_ranking.sort(key=lambda e: -e["sov"])

    llm_performance = []
    competitive_llm_performance = []
    for provider, stats in providers.items():
        avg_position = sum(stats.ranks) / len(stats.ranks) if stats.ranks else 0.0
        provider_visibility = stats.questions_with_mention / total_questions if total_questions else 0.0
        llm_performance.append(
            {
                "llm": provider,
                "displayName": PROVIDER_DISPLAY_NAMES.get(provider, provider),
                "avgPosition": avg_position,
                "visibility": provider_visibility,
                "sov": calculate_sov(provider_visibility, avg_position),
                "mentions": len(stats.ranks),
                "questionsWithMention": stats.questions_with_mention,
            }
        )
        top_choice = None
        top_count = 0
        for brand, count in stats.choices.items():
            if count > top_count:
                top_choice, top_count = brand, count
        competitive_llm_performance.append(
            {
                "llm": provider,
                "displayName": PROVIDER_DISPLAY_NAMES.get(provider, provider),
                "brandChoicePercent": stats.target_chosen / stats.choice_questions if stats.choice_questions else 0.0,
                "topChoice": top_choice,
                "totalQuestions": stats.choice_questions,
                "targetChosen": stats.target_chosen,
            }
        )
    llm_performance.sort(key=lambda p: -p["sov"])
    competitive_llm_performance.sort(key=lambda p: -p["brandChoicePercent"])
    for position, item in enumerate(llm_performance, start=1):
        item["rank"] = position
    for position, item in enumerate(competitive_llm_performance, start=1):
        item["rank"] = position

    full_sources = []
    for source, cited_by in scope_sources.values():
        data = source.to_dict()
        data["cited_by"] = list(cited_by)
        full_sources.append(data)

    return {
        "entity": entity,
        "category": category,
        "visibility": {
            "visibility": visibility,
            "averagePosition": average_position,
            "sov": sov,
            "sovStatus": sov_status(sov),
            "totalQuestions": total_questions,
            "mentions": target.mentions if target else 0,
        },
        "entities_ranking": entities_ranking,
        "brand_family_ranking": None,
        "brand_grouping_metadata": {"enabled": False, "reason": "disabled"},
        "pros_cons": add_keyword_dimensions(
            {
                "pros": sorted(pros.values(), key=lambda p: -p["frequency"]),
                "cons": sorted(cons.values(), key=lambda c: -c["frequency"]),
            }
        ),
        "dimension_method": "keyword",
        "ranked_first_questions": [
            _question_detail(q, entity) for q in questions if is_ranked_first(q["llm_responses"])
        ],
        "not_ranked_first_questions": [
            _question_detail(q, entity) for q in questions if is_not_ranked_first(q["llm_responses"])
        ],
        "source_analysis": generate_source_analysis([s for s, _ in scope_sources.values()]),
        "full_sources_list": full_sources,
        "llm_performance": llm_performance,
        "competitive_llm_performance": competitive_llm_performance,
    }


# ---------------------------------------------------------------------------
# Brand families
# ---------------------------------------------------------------------------


def brand_family_ranking(entities_ranking: list[dict], groups: BrandGroups) -> list[dict]:
    """Roll entity rankings up to parent brands.

    Family avg rank is mention-weighted, visibility is the capped sum of member
    visibilities, SOV uses the same formula as single entities.
    """
    target_matches = {name.lower() for name in groups.target_matches}
    families: dict[str, dict] = {}

    for entity in entities_ranking:
        parent = groups.parent_of(entity["name"])
        family = families.setdefault(
            parent,
            {
                "name": parent,
                "variants": [],
                "mentions": 0,
                "weighted_rank_sum": 0.0,
                "visibility_sum": 0.0,
                "best_rank": None,
                "is_target_brand": False,
            },
        )
        family["variants"].append(
            {
                "name": entity["name"],
                "mentions": entity["mentions"],
                "average_rank": entity["average_rank"],
                "visibility": entity["visibility"],
                "sov": entity["sov"],
            }
        )
        family["mentions"] += entity["mentions"]
        family["visibility_sum"] += entity["visibility"]
        family["weighted_rank_sum"] += entity["average_rank"] * entity["mentions"]
        if family["best_rank"] is None or entity["average_rank"] < family["best_rank"]:
            family["best_rank"] = entity["average_rank"]
        if entity["name"].lower() in target_matches:
            family["is_target_brand"] = True

    result = []
    for family in families.values():
        average_rank = (
            family["weighted_rank_sum"] / family["mentions"] if family["mentions"] else (family["best_rank"] or 0.0)
        )
        visibility = min(family["visibility_sum"], 1.0)
        result.append(
            {
                "name": family["name"],
                "variants": family["variants"],
                "variant_count": len(family["variants"]),
                "mentions": family["mentions"],
                "average_rank": average_rank,
                "best_rank": family["best_rank"],
                "visibility": visibility,
                "sov": calculate_sov(visibility, average_rank),
                "is_target_brand": family["is_target_brand"],
            }
        )
    result.sort(key=lambda f: -f["sov"])
    return result


async def aggregate_visibility(
    records: Iterable[ResponseRecord],
    entity: str,
    category: str = "",
    source_index: dict[str, ClassifiedSource] | None = None,
    gateway: "ModelGateway | None" = None,
) -> dict:
    """Fold a scope and add the brand-family rollup."""
    result = fold_visibility(records, entity, category, source_index)
    if settings.dimension_llm_classification:
        result["dimension_method"] = await classify_dimensions(result["pros_cons"], category, gateway)
    names = [e["name"] for e in result["entities_ranking"]]
    if not settings.enable_brand_grouping or not names:
        return result

    groups = await group_brand_variations(names, entity, gateway)
    result["brand_family_ranking"] = brand_family_ranking(result["entities_ranking"], groups)
    result["brand_grouping_metadata"] = groups.metadata()
    logger.info(
        "Visibility for %s: %d entities in %d brand families (%s)",
        entity,
        len(names),
        len(result["brand_family_ranking"]),
        groups.method,
    )
    return result
