"""Competitive dimensions for pros/cons attributes.

Every pro or con gets exactly one dimension from COMPETITIVE_DIMENSIONS, or
"Other". The keyword table is the default and keeps replays deterministic;
``settings.dimension_llm_classification`` asks the utility model instead, in
batches, with the keyword table filling whatever the model skips.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from app.analysis.json_parser import parse_model_json
from app.analysis.prompts import build_dimension_classification_prompt
from app.core.config import settings
from app.gateway.types import ProviderName

if TYPE_CHECKING:
    from app.gateway.gateway import ModelGateway

logger = logging.getLogger(__name__)

OTHER_DIMENSION = "Other"

# dimension → keywords, checked in this order
DIMENSION_KEYWORDS: dict[str, tuple[str, ...]] = {
    "Quality": (
        "quality", "reliable", "unreliable", "durability", "durable", "defect",
        "repair", "maintenance", "breakdown", "faulty", "craftsmanship",
    ),
    "Innovation": (
        "innovation", "innovative", "technology", "tech", "advanced", "cutting-edge",
        "autopilot", "autonomous", "software", "r&d",
    ),
    "Pricing": (
        "price", "cost", "expensive", "affordable", "cheap", "value", "budget",
        "overpriced", "insurance premium",
    ),
    "Market Position": (
        "market share", "market leader", "dominant", "leading", "popular",
        "best-selling", "sales", "growth",
    ),
    "Brand Reputation": ("brand", "reputation", "trust", "prestige", "heritage", "controversy", "image", "perception"),
    "Sustainability": ("sustainable", "eco", "green", "environment", "emission", "carbon", "ethical", "renewable"),
    "Design": ("design", "aesthetic", "style", "look", "appearance", "sleek", "modern", "interior", "exterior"),
    "Performance": ("performance", "speed", "acceleration", "range", "efficiency", "handling", "comfort", "power"),
    "Customer Experience": ("service", "support", "customer", "warranty", "dealership", "satisfaction"),
}  # fmt: skip

COMPETITIVE_DIMENSIONS: tuple[str, ...] = tuple(DIMENSION_KEYWORDS)

DIMENSION_BATCH_SIZE = 30


def classify_dimension(attribute: str | None) -> str:
    lowered = (attribute or "").lower()
    for dimension, keywords in DIMENSION_KEYWORDS.items():
        if any(k in lowered for k in keywords):
            return dimension
    return OTHER_DIMENSION


def add_keyword_dimensions(pros_cons: dict) -> dict:
    """Tag every pro/con in place with its keyword dimension."""
    for key in ("pros", "cons"):
        for item in pros_cons.get(key) or []:
            item["dimension"] = classify_dimension(item.get("attribute"))
    return pros_cons


async def classify_dimensions(
    pros_cons: dict,
    category: str,
    gateway: "ModelGateway | None" = None,
) -> str:
    """Tag pros/cons with dimensions, model-assisted when enabled.

    Returns the method used: "model" or "keyword".
    """
    items = [item for key in ("pros", "cons") for item in pros_cons.get(key) or []]
    add_keyword_dimensions(pros_cons)
    if not items or gateway is None or not settings.dimension_llm_classification:
        return "keyword"

    labelled = 0
    for start in range(0, len(items), DIMENSION_BATCH_SIZE):
        batch = items[start : start + DIMENSION_BATCH_SIZE]
        attributes = [
            {"id": i, "attribute": item.get("attribute"), "entity": item.get("entity")} for i, item in enumerate(batch)
        ]
        response = await gateway.ask(
            ProviderName.GEMINI,
            build_dimension_classification_prompt(attributes, category),
            grounding=False,
            json_mode=True,
            model=settings.gemini_utility_model,
            timeout=settings.classifier_timeout_seconds,
        )
        if not response.ok:
            logger.warning("Dimension classification failed (%s), keeping keyword dimensions", response.error)
            continue
        data = parse_model_json(response.text)
        classifications = data.get("classifications") if isinstance(data, dict) else None
        for entry in classifications or []:
            if not isinstance(entry, dict):
                continue
            try:
                index = int(entry.get("id"))
            except (TypeError, ValueError):
                continue
            dimension = entry.get("dimension")
            if 0 <= index < len(batch) and dimension in COMPETITIVE_DIMENSIONS:
                batch[index]["dimension"] = dimension
                labelled += 1

    logger.info("Dimension classification: %d/%d attributes labelled by the model", labelled, len(items))
    return "model" if labelled else "keyword"
