"""Response shapes: the tagged union a parsed model answer is resolved into.

Each provider half of a stored RawResponse is resolved exactly once, here,
into one of:

  RankingAnswer     "entities_ranking": [{rank, name, comment}]
  ChoiceAnswer      "entity_choice" + "entity_analysis" pros/cons
  CategoriesAnswer  "categories": [{rank, name, comment, top_competitors}]
  FreeTextAnswer    "raw_response" text (reputation questions)
  NoAnswer          null, unparseable or unrecognised body

Aggregators pattern-match on the variant instead of probing dict keys.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Union

from app.analysis.json_parser import parse_model_json

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Variant payloads
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class RankedEntity:
    name: str
    rank: int
    comment: str = ""


@dataclass(frozen=True)
class Point:
    """One pro or con, with the sources the model gave for it."""

    text: str
    sources: tuple[dict, ...] = ()


@dataclass(frozen=True)
class EntityAssessment:
    pros: tuple[Point, ...] = ()
    cons: tuple[Point, ...] = ()


@dataclass(frozen=True)
class CategoryMention:
    name: str
    rank: int
    comment: str = ""
    top_competitors: tuple[RankedEntity, ...] = ()


# ---------------------------------------------------------------------------
# The union
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class RankingAnswer:
    entities: tuple[RankedEntity, ...]
    sources: tuple[dict, ...] = ()


@dataclass(frozen=True)
class ChoiceAnswer:
    choice: str
    explanation: str = ""
    analysis: dict[str, EntityAssessment] = field(default_factory=dict)
    sources: tuple[dict, ...] = ()


@dataclass(frozen=True)
class CategoriesAnswer:
    categories: tuple[CategoryMention, ...]
    sources: tuple[dict, ...] = ()


@dataclass(frozen=True)
class FreeTextAnswer:
    text: str
    sources: tuple[dict, ...] = ()


@dataclass(frozen=True)
class NoAnswer:
    reason: str = ""
    sources: tuple[dict, ...] = ()


ModelAnswer = Union[RankingAnswer, ChoiceAnswer, CategoriesAnswer, FreeTextAnswer, NoAnswer]


# ---------------------------------------------------------------------------
# Resolution
# ---------------------------------------------------------------------------


def _as_int(value: Any, default: int) -> int:
    try:
        rank = int(value)
    except (TypeError, ValueError):
        return default
    return rank if rank > 0 else default


def _source_dicts(items: Any, source_type_hint: str | None = None) -> list[dict]:
    """Keep entries that carry a URL; ``source_type_hint`` tags news sources."""
    result = []
    if not isinstance(items, list):
        return result
    for item in items:
        if not isinstance(item, dict) or not item.get("url"):
            continue
        source = {
            "url": str(item["url"]),
            "title": str(item.get("title") or ""),
            "youtube_channel": item.get("youtube_channel"),
        }
        if source_type_hint:
            source["source_type_hint"] = source_type_hint
        result.append(source)
    return result


def body_sources(data: Any) -> list[dict]:
    """Sources the model listed inside its JSON body.

    ``sources_cited_news`` entries are hinted as Journalism; pros/cons sources
    of a competitive answer are included too.
    """
    if not isinstance(data, dict):
        return []
    sources = _source_dicts(data.get("sources_cited_news"), "Journalism")
    sources += _source_dicts(data.get("sources_cited_other"))
    sources += _source_dicts(data.get("sources_cited"))
    analysis = data.get("entity_analysis")
    if isinstance(analysis, dict):
        for assessment in analysis.values():
            if not isinstance(assessment, dict):
                continue
            for key in ("pros", "cons"):
                for point in assessment.get(key) or []:
                    if isinstance(point, dict):
                        sources += _source_dicts(point.get("sources"))
    return sources


def _points(items: Any) -> tuple[Point, ...]:
    points = []
    for item in items or []:
        if isinstance(item, str):
            text, sources = item, []
        elif isinstance(item, dict):
            text = item.get("point") or item.get("attribute") or ""
            sources = _source_dicts(item.get("sources"))
        else:
            continue
        if isinstance(text, str) and text.strip():
            points.append(Point(text=text.strip(), sources=tuple(sources)))
    return tuple(points)


def _ranking(items: list) -> tuple[RankedEntity, ...]:
    entities = []
    for index, item in enumerate(items):
        if not isinstance(item, dict):
            continue
        name = str(item.get("name") or "").strip()
        if not name:
            continue
        entities.append(
            RankedEntity(name=name, rank=_as_int(item.get("rank"), index + 1), comment=str(item.get("comment") or ""))
        )
    return tuple(entities)


def resolve_answer(data: Any) -> ModelAnswer:
    """Resolve a parsed JSON body (or None) into a ModelAnswer variant."""
    if data is None:
        return NoAnswer(reason="no data")
    if not isinstance(data, dict):
        return NoAnswer(reason=f"unexpected JSON type {type(data).__name__}")

    sources = tuple(body_sources(data))

    if isinstance(data.get("entities_ranking"), list):
        return RankingAnswer(entities=_ranking(data["entities_ranking"]), sources=sources)

    choice = data.get("entity_choice")
    if isinstance(choice, str) and choice.strip():
        analysis = {}
        raw_analysis = data.get("entity_analysis")
        if isinstance(raw_analysis, dict):
            for name, assessment in raw_analysis.items():
                if isinstance(assessment, dict):
                    analysis[str(name)] = EntityAssessment(
                        pros=_points(assessment.get("pros")), cons=_points(assessment.get("cons"))
                    )
        return ChoiceAnswer(
            choice=choice.strip(),
            explanation=str(data.get("raw_response") or ""),
            analysis=analysis,
            sources=sources,
        )

    if isinstance(data.get("categories"), list):
        categories = []
        for index, item in enumerate(data["categories"]):
            if not isinstance(item, dict) or not item.get("name"):
                continue
            competitors = item.get("top_competitors")
            categories.append(
                CategoryMention(
                    name=str(item["name"]).strip(),
                    rank=_as_int(item.get("rank"), index + 1),
                    comment=str(item.get("comment") or ""),
                    top_competitors=_ranking(competitors) if isinstance(competitors, list) else (),
                )
            )
        return CategoriesAnswer(categories=tuple(categories), sources=sources)

    text = data.get("raw_response")
    if isinstance(text, str) and text.strip():
        return FreeTextAnswer(text=text, sources=sources)

    return NoAnswer(reason="unrecognised shape", sources=sources)


def resolve_text(text: str | None) -> tuple[Any, ModelAnswer]:
    """Parse raw provider text and resolve it. Returns (parsed JSON or None, answer)."""
    data = parse_model_json(text)
    return data, resolve_answer(data)


# ---------------------------------------------------------------------------
# Stored rows
# ---------------------------------------------------------------------------

PROVIDERS = ("gemini", "openai")


@dataclass(frozen=True)
class ProviderAnswer:
    """One provider half of a stored response, resolved."""

    provider: str
    answer: ModelAnswer
    text: str = ""
    citations: tuple[dict, ...] = ()  # grounded citations + body sources, unique by URL
    error: str | None = None

    @property
    def answered(self) -> bool:
        return not isinstance(self.answer, NoAnswer)


@dataclass(frozen=True)
class ResponseRecord:
    """A stored RawResponse with both halves resolved, ready for folding."""

    question_id: str
    question_text: str
    kind: str
    sequence: int
    answers: dict[str, ProviderAnswer]

    @classmethod
    def from_row(cls, row: Any) -> "ResponseRecord":
        answers = {}
        for provider in PROVIDERS:
            data = getattr(row, f"{provider}_data")
            citations: list[dict] = []
            seen: set[str] = set()
            for source in list(getattr(row, f"{provider}_sources") or []) + body_sources(data):
                url = source.get("url") if isinstance(source, dict) else None
                if url and url not in seen:
                    seen.add(url)
                    citations.append(source)
            answers[provider] = ProviderAnswer(
                provider=provider,
                answer=resolve_answer(data),
                text=getattr(row, f"{provider}_text") or "",
                citations=tuple(citations),
                error=getattr(row, f"{provider}_error"),
            )
        return cls(
            question_id=row.question_id,
            question_text=row.question_text,
            kind=row.analysis_kind,
            sequence=row.sequence or 0,
            answers=answers,
        )

    def answered(self) -> list[ProviderAnswer]:
        return [a for a in self.answers.values() if a.answered]
