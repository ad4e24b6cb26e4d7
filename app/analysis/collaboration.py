"""Collaboration recommendations for the top opportunities.

The first ``settings.collaboration_limit`` Critical/Strategic opportunities
(in priority order) each get one utility-model call that suggests outreach
targets, a pitch strategy and content ideas, grounded on the report's
high-authority sources. The result is stored on the opportunity under
``metadata["ai_collaboration_recommendations"]``. A failed call leaves that
opportunity without recommendations.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Iterable
from typing import TYPE_CHECKING

from app.analysis.json_parser import parse_model_json
from app.analysis.prompts import build_collaboration_prompt
from app.analysis.scoring import CRITICAL, STRATEGIC
from app.analysis.types import ClassifiedSource, SourceCategory
from app.core.config import settings
from app.gateway.types import ProviderName

if TYPE_CHECKING:
    from app.analysis.insights import OpportunityDraft
    from app.gateway.gateway import ModelGateway

logger = logging.getLogger(__name__)

COLLABORATION_KEY = "ai_collaboration_recommendations"

HIGH_AUTHORITY_TYPES = (SourceCategory.JOURNALISM, SourceCategory.ACADEMIC, SourceCategory.GOVERNMENT_NGO)
MAX_PROMPT_SOURCES = 20


def high_authority_sources(sources: Iterable[ClassifiedSource], limit: int = MAX_PROMPT_SOURCES) -> list[dict]:
    result = [
        {"url": s.url, "domain": s.domain, "title": s.title, "source_type": s.source_type.value}
        for s in sources
        if s.source_type in HIGH_AUTHORITY_TYPES
    ]
    return result[:limit]


def _text(value, limit: int) -> str:
    if not isinstance(value, str) or not value:
        return ""
    return value if len(value) <= limit else value[: limit - 3] + "..."


def _texts(values, count: int, limit: int) -> list[str]:
    if not isinstance(values, list):
        return []
    return [_text(v, limit) for v in values[:count]]


def _plain(values, count: int) -> list[str]:
    if not isinstance(values, list):
        return []
    return [str(v) for v in values[:count]]


def normalise_recommendations(data: dict) -> dict:
    """Clamp the model's answer to the stored shape and field lengths."""
    collaborations = []
    for item in data.get("collaborations") or []:
        if not isinstance(item, dict):
            continue
        collaborations.append(
            {
                "target_type": item.get("target_type") or "Unknown",
                "target_description": _text(item.get("target_description"), 100),
                "domains_to_target": _plain(item.get("domains_to_target"), 5),
                "pitch_angle": _text(item.get("pitch_angle"), 200),
                "talking_points": _texts(item.get("talking_points"), 3, 100),
                "expected_outcome": _text(item.get("expected_outcome"), 100),
                "approach_strategy": _text(item.get("approach_strategy"), 150),
            }
        )
        if len(collaborations) == 5:
            break

    strategy = data.get("pitch_strategy")
    pitch_strategy = None
    if isinstance(strategy, dict):
        pitch_strategy = {
            "primary_narrative": _text(strategy.get("primary_narrative"), 200),
            "key_differentiators": _texts(strategy.get("key_differentiators"), 3, 80),
            "proof_points": _texts(strategy.get("proof_points"), 3, 100),
            "timing_recommendations": _text(strategy.get("timing_recommendations"), 100),
        }

    content_ideas = []
    for idea in (data.get("content_ideas") or [])[:3]:
        if not isinstance(idea, dict):
            continue
        content_ideas.append(
            {
                "type": idea.get("type") or "Article",
                "title_suggestion": _text(idea.get("title_suggestion"), 100),
                "target_publications": _plain(idea.get("target_publications"), 3),
                "key_takeaways": _texts(idea.get("key_takeaways"), 3, 80),
            }
        )

    return {"collaborations": collaborations, "pitch_strategy": pitch_strategy, "content_ideas": content_ideas}


def top_opportunities(opportunities: Iterable["OpportunityDraft"], limit: int) -> list["OpportunityDraft"]:
    return [o for o in opportunities if o.priority in (CRITICAL, STRATEGIC)][:limit]


async def _recommend(
    gateway: "ModelGateway", opportunity: "OpportunityDraft", entity: str, sources: list[dict]
) -> dict | None:
    response = await gateway.ask(
        ProviderName.GEMINI,
        build_collaboration_prompt(opportunity.to_dict(), entity, sources),
        grounding=False,
        json_mode=True,
        model=settings.gemini_utility_model,
        timeout=settings.classifier_timeout_seconds,
    )
    if not response.ok:
        logger.warning("Collaboration recommendations for %s failed: %s", opportunity.id, response.error)
        return None
    data = parse_model_json(response.text)
    if not isinstance(data, dict):
        logger.warning("Collaboration recommendations for %s were unparseable", opportunity.id)
        return None
    return normalise_recommendations(data)


async def add_collaboration_recommendations(
    opportunities: list["OpportunityDraft"],
    entity: str,
    sources: Iterable[ClassifiedSource],
    gateway: "ModelGateway | None",
    limit: int | None = None,
) -> int:
    """Attach recommendations to the top opportunities; returns how many got one."""
    limit = settings.collaboration_limit if limit is None else limit
    targets = top_opportunities(opportunities, limit)
    if gateway is None or not targets:
        return 0

    prompt_sources = high_authority_sources(sources)
    results = await asyncio.gather(*[_recommend(gateway, o, entity, prompt_sources) for o in targets])
    added = 0
    for opportunity, recommendations in zip(targets, results):
        if recommendations is not None:
            opportunity.metadata[COLLABORATION_KEY] = recommendations
            added += 1
    logger.info("Collaboration recommendations for %d/%d top opportunities", added, len(targets))
    return added
