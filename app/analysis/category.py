"""Category Aggregator: which categories the models associate with the entity."""

from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import dataclass, field

from app.analysis.response_shapes import CategoriesAnswer, ResponseRecord
from app.analysis.visibility import calculate_sov

logger = logging.getLogger(__name__)

MAX_CATEGORIES = 10
MAX_COMPETITORS = 5


@dataclass
class _Mentions:
    name: str
    mentions: int = 0
    ranks: list[int] = field(default_factory=list)
    comments: list[str] = field(default_factory=list)
    cited_by: list[str] = field(default_factory=list)
    competitors: dict[str, "_Mentions"] = field(default_factory=dict)

    @property
    def average_rank(self) -> float:
        return sum(self.ranks) / len(self.ranks) if self.ranks else 0.0


def aggregate_categories(records: Iterable[ResponseRecord], entity: str) -> dict:
    """Top categories by SOV, each with its top competitors by average rank.

    category visibility = mentions / (questions × 2). The entity itself is
    never listed as a competitor.
    """
    records = sorted(records, key=lambda r: r.sequence)
    if not records:
        return {"categories": [], "total_questions": 0}

    entity_name = entity.lower().strip()
    categories: dict[str, _Mentions] = {}

    for record in records:
        for provider, provider_answer in record.answers.items():
            answer = provider_answer.answer
            if not isinstance(answer, CategoriesAnswer):
                continue
            for mention in answer.categories:
                category = categories.setdefault(mention.name, _Mentions(mention.name))
                category.mentions += 1
                category.ranks.append(mention.rank)
                if mention.comment:
                    category.comments.append(mention.comment)
                if provider not in category.cited_by:
                    category.cited_by.append(provider)
                for competitor in mention.top_competitors:
                    if competitor.name.lower().strip() == entity_name:
                        continue
                    stats = category.competitors.setdefault(competitor.name, _Mentions(competitor.name))
                    stats.mentions += 1
                    stats.ranks.append(competitor.rank)
                    if competitor.comment:
                        stats.comments.append(competitor.comment)

    total_questions = len(records)
    max_mentions = total_questions * 2
    result = []
    for category in categories.values():
        visibility = category.mentions / max_mentions
        competitors = sorted(category.competitors.values(), key=lambda c: c.average_rank)[:MAX_COMPETITORS]
        result.append(
            {
                "name": category.name,
                "category_sov": calculate_sov(visibility, category.average_rank),
                "category_visibility": visibility,
                "average_position": category.average_rank,
                "mentions": category.mentions,
                "frequency": visibility,
                "comment": category.comments[0] if category.comments else "Associated category",
                "top_competitors": [
                    {
                        "name": c.name,
                        "average_rank": c.average_rank,
                        "mentions": c.mentions,
                        "frequency": c.mentions / category.mentions,
                        "comment": c.comments[0] if c.comments else "",
                    }
                    for c in competitors
                ],
                "cited_by": list(category.cited_by),
            }
        )
    result.sort(key=lambda c: -c["category_sov"])
    result = result[:MAX_CATEGORIES]

    logger.info("Categories for %s: %s", entity, ", ".join(c["name"] for c in result) or "none")
    return {"categories": result, "total_questions": total_questions}
