"""Question sets: default templates, stable ids, flattening and re-bucketing.

Question ids encode their scope so that stored responses can be put back in
the right (market, category) bucket from persisted data alone:

    VIS__us-en__cat_1a2b3c4d__Q2    multi-market, category-scoped
    REP__de-de__Q1                  multi-market, market-scoped
    VIS_Q2                          legacy single-market
"""

from __future__ import annotations

import logging
import re
from collections.abc import Iterable, Mapping
from typing import Protocol, TypeVar

from app.analysis.types import (
    KIND_ORDER,
    KIND_PREFIX,
    AnalysisConfig,
    AnalysisKind,
    MarketConfig,
    Question,
)

logger = logging.getLogger(__name__)

SEGMENT_SEPARATOR = "__"

_PREFIX_TO_KIND = {prefix: kind for kind, prefix in KIND_PREFIX.items()}
_LEGACY_ID = re.compile(r"^(REP|VIS|COMP|CAT)_Q(\d+)$")


# ---------------------------------------------------------------------------
# Ids
# ---------------------------------------------------------------------------


def build_question_id(
    kind: AnalysisKind,
    number: int,
    market_code: str | None = None,
    category_id: str | None = None,
) -> str:
    """Stable id for the ``number``-th (1-based) question of a scope."""
    prefix = KIND_PREFIX[kind]
    if not market_code and not category_id:
        return f"{prefix}_Q{number}"
    segments = [prefix] + [s for s in (market_code, category_id) if s] + [f"Q{number}"]
    return SEGMENT_SEPARATOR.join(segments)


def kind_from_question_id(question_id: str) -> AnalysisKind | None:
    legacy = _LEGACY_ID.match(question_id)
    if legacy:
        return _PREFIX_TO_KIND[legacy.group(1)]
    prefix = question_id.split(SEGMENT_SEPARATOR, 1)[0]
    return _PREFIX_TO_KIND.get(prefix)


def _country_slug(country: str) -> str:
    return re.sub(r"[^a-z0-9]+", "-", country.lower()).strip("-")


def resolve_scope(
    question_id: str,
    markets: list[MarketConfig],
    family_ids: Iterable[str],
) -> tuple[str, str]:
    """Map a stored question id to its (market_code, category_id) bucket.

    Segments match a market by exact code first, then by country name; a
    segment equal to a known family id sets the category. Without a market
    match the primary market is used. Empty strings mean "no scope", which is
    what legacy single-market ids resolve to.
    """
    if not markets:
        return "", ""

    segments = question_id.split(SEGMENT_SEPARATOR)[1:]
    families = set(family_ids)
    by_code = {m.market_code.lower(): m.market_code for m in markets}
    by_country = {_country_slug(m.country): m.market_code for m in markets}

    market_code = ""
    category_id = ""
    for segment in segments:
        if not market_code and segment.lower() in by_code:
            market_code = by_code[segment.lower()]
        elif segment in families:
            category_id = segment

    if not market_code:
        for segment in segments:
            slug = _country_slug(segment)
            if slug in by_country:
                market_code = by_country[slug]
                break

    if not market_code:
        primary = next((m for m in markets if m.is_primary), markets[0])
        market_code = primary.market_code

    return market_code, category_id


class _HasQuestionId(Protocol):
    question_id: str


T = TypeVar("T", bound=_HasQuestionId)


def rebucket_responses(
    rows: Iterable[T],
    markets: list[MarketConfig],
    family_ids: Iterable[str],
) -> dict[tuple[str, str], list[T]]:
    """Group stored responses by (market_code, category_id), keeping input order."""
    family_ids = list(family_ids)
    buckets: dict[tuple[str, str], list[T]] = {}
    for row in rows:
        buckets.setdefault(resolve_scope(row.question_id, markets, family_ids), []).append(row)
    return buckets


# ---------------------------------------------------------------------------
# Flattening
# ---------------------------------------------------------------------------


def flatten_questions(
    questions: Mapping[AnalysisKind | str, list[Question]] | list[Question],
) -> list[Question]:
    """One ordered sequence: reputation, visibility, competitive, category.

    Order inside a kind is preserved; duplicate ids keep their first
    occurrence. ``sequence`` is assigned from the final position.
    """
    if isinstance(questions, Mapping):
        by_kind = {AnalysisKind(k): list(v) for k, v in questions.items()}
        ordered = [q for kind in KIND_ORDER for q in by_kind.get(kind, [])]
    else:
        rank = {kind: i for i, kind in enumerate(KIND_ORDER)}
        ordered = sorted(questions, key=lambda q: rank[q.kind])

    flat: list[Question] = []
    seen: set[tuple[str, str]] = set()
    for question in ordered:
        key = (question.id, question.kind.value)
        if key in seen:
            logger.warning("Duplicate question id %s (%s) skipped", question.id, question.kind.value)
            continue
        seen.add(key)
        question.sequence = len(flat)
        flat.append(question)
    return flat


# ---------------------------------------------------------------------------
# Default templates
# ---------------------------------------------------------------------------

_REPUTATION_TEMPLATES = [
    "Is {entity} good?",
    "Is {entity} worth it?",
    "Should I buy {entity}?",
    "Is {entity} reliable?",
    "Is {entity} a good value?",
    "Is {entity} popular right now?",
    "Does {entity} have good reviews?",
    "Reviews about {entity}?",
    "{entity} pros and cons?",
    "What do people say about {entity}?",
]

_VISIBILITY_TEMPLATES = [
    "Best {category}?",
    "Top {category} brands?",
    "Top {category} models?",
    "Which {category} should I choose?",
    "What should I look for in {category}?",
    "Most affordable {category}?",
    "Most durable {category}?",
    "Best {category} for beginners?",
    "Best {category} for experts?",
    "Recommend {category}.",
]

_COMPETITIVE_TEMPLATES = [
    "{vs} — which is better{suffix}?",
    "Compare {comma}{suffix}.",
    "{or_}{suffix}?",
    "{vs}{suffix}",
    "Which is better: {comma}{suffix}?",
    "{vs} — which should I buy{suffix}?",
    "What's the difference between {comma}{suffix}?",
    "Which is better value: {comma}{suffix}?",
    "Which is more reliable: {comma}{suffix}?",
    "Should I get: {or_}{suffix}?",
]

_CATEGORY_DETECTION_TEMPLATES = [
    "What is {entity} known for?",
    "What is {entity} good for?",
    "What does {entity} do?",
]


def build_reputation_questions(entity: str, market_code: str | None = None) -> list[Question]:
    kind = AnalysisKind.REPUTATION
    return [
        Question(id=build_question_id(kind, i, market_code), text=t.format(entity=entity), kind=kind, market_code=market_code)
        for i, t in enumerate(_REPUTATION_TEMPLATES, start=1)
    ]


def build_visibility_questions(
    category: str, market_code: str | None = None, category_id: str | None = None
) -> list[Question]:
    kind = AnalysisKind.VISIBILITY
    return [
        Question(
            id=build_question_id(kind, i, market_code, category_id),
            text=t.format(category=category),
            kind=kind,
            market_code=market_code,
            category_id=category_id,
        )
        for i, t in enumerate(_VISIBILITY_TEMPLATES, start=1)
    ]


def build_competitive_questions(
    entity: str,
    competitors: list[str],
    category: str = "",
    market_code: str | None = None,
    category_id: str | None = None,
) -> list[Question]:
    kind = AnalysisKind.COMPETITIVE
    names = [entity, *competitors]
    fmt = {
        "vs": " vs ".join(names),
        "comma": ", ".join(names),
        "or_": " or ".join(names),
        "suffix": f" for {category}" if category else "",
    }
    return [
        Question(
            id=build_question_id(kind, i, market_code, category_id),
            text=t.format(**fmt),
            kind=kind,
            market_code=market_code,
            category_id=category_id,
        )
        for i, t in enumerate(_COMPETITIVE_TEMPLATES, start=1)
    ]


def build_category_detection_questions(entity: str, market_code: str | None = None) -> list[Question]:
    kind = AnalysisKind.CATEGORY
    return [
        Question(id=build_question_id(kind, i, market_code), text=t.format(entity=entity), kind=kind, market_code=market_code)
        for i, t in enumerate(_CATEGORY_DETECTION_TEMPLATES, start=1)
    ]


def generate_all_questions(config: AnalysisConfig) -> dict[AnalysisKind, list[Question]]:
    """Default question set for a job (legacy single-market or multi-market)."""
    questions: dict[AnalysisKind, list[Question]] = {kind: [] for kind in KIND_ORDER}

    if not config.is_multi_market:
        questions[AnalysisKind.REPUTATION] = build_reputation_questions(config.entity)
        if config.category:
            questions[AnalysisKind.VISIBILITY] = build_visibility_questions(config.category)
        if config.competitors:
            questions[AnalysisKind.COMPETITIVE] = build_competitive_questions(
                config.entity, config.competitors, config.category
            )
        questions[AnalysisKind.CATEGORY] = build_category_detection_questions(config.entity)
        return questions

    for market in config.markets:
        code = market.market_code
        questions[AnalysisKind.REPUTATION] += build_reputation_questions(config.entity, code)
        questions[AnalysisKind.CATEGORY] += build_category_detection_questions(config.entity, code)
        for family in config.category_families:
            name = family.translations.get(code) or family.canonical_name
            questions[AnalysisKind.VISIBILITY] += build_visibility_questions(name, code, family.id)
            competitors = family.competitors.get(code) or config.competitors
            if competitors:
                questions[AnalysisKind.COMPETITIVE] += build_competitive_questions(
                    config.entity, competitors, name, code, family.id
                )
    return questions
