"""Brand matching: target detection and brand-family grouping.

Target detection is a case-insensitive substring match in either direction
("Nike" matches "Nike Air Max"). Family grouping asks the utility model to
put product lines and subsidiaries under their parent brand and falls back to
the same substring rule when the model is unavailable or answers garbage.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from app.analysis.json_parser import parse_model_json
from app.analysis.prompts import build_brand_grouping_prompt
from app.core.config import settings
from app.gateway.types import ProviderName

if TYPE_CHECKING:
    from app.gateway.gateway import ModelGateway

logger = logging.getLogger(__name__)


def brand_matches_entity(name: str | None, target: str | None) -> bool:
    if not name or not target:
        return False
    a = name.lower().strip()
    b = target.lower().strip()
    if not a or not b:
        return False
    return a == b or b in a or a in b


@dataclass
class BrandGroups:
    brand_groups: dict[str, list[str]] = field(default_factory=dict)  # parent → members
    target_matches: list[str] = field(default_factory=list)
    confidence: float = 0.3
    method: str = "fallback"  # "model" | "fallback"

    def parent_of(self, name: str) -> str:
        lowered = name.lower()
        for parent, members in self.brand_groups.items():
            if any(m.lower() == lowered for m in members):
                return parent
        return name

    def metadata(self) -> dict:
        return {
            "enabled": True,
            "method": self.method,
            "confidence": self.confidence,
            "total_brands": len(self.brand_groups),
            "total_variants": sum(len(v) for v in self.brand_groups.values()),
            "target_matches": list(self.target_matches),
        }


def fallback_brand_groups(entities: list[str], target: str) -> BrandGroups:
    """Substring grouping: everything matching the target joins the target's family."""
    groups: dict[str, list[str]] = {}
    target_matches: list[str] = []
    for entity in entities:
        parent = entity
        if brand_matches_entity(entity, target):
            parent = target
            target_matches.append(entity)
        groups.setdefault(parent, []).append(entity)
    return BrandGroups(brand_groups=groups, target_matches=target_matches, confidence=0.3, method="fallback")


def _unique(entities: list[str]) -> list[str]:
    seen: set[str] = set()
    result = []
    for entity in entities:
        name = entity.strip()
        if name and name not in seen:
            seen.add(name)
            result.append(name)
    return result


async def group_brand_variations(
    entities: list[str],
    target: str,
    gateway: "ModelGateway | None" = None,
) -> BrandGroups:
    """Group entity names by parent brand, model-assisted when a gateway is given."""
    unique = _unique(entities)
    if not unique:
        return BrandGroups(method="fallback")
    if gateway is None or not settings.enable_brand_grouping:
        return fallback_brand_groups(unique, target)

    response = await gateway.ask(
        ProviderName.GEMINI,
        build_brand_grouping_prompt(unique, target),
        grounding=False,
        json_mode=True,
        model=settings.gemini_utility_model,
        timeout=settings.classifier_timeout_seconds,
    )
    if not response.ok:
        logger.warning("Brand grouping call failed (%s), using substring fallback", response.error)
        return fallback_brand_groups(unique, target)

    data = parse_model_json(response.text)
    groups = data.get("brand_groups") if isinstance(data, dict) else None
    if not isinstance(groups, dict) or not groups:
        logger.warning("Brand grouping returned no groups, using substring fallback")
        return fallback_brand_groups(unique, target)

    # Keep only names we asked about; anything the model forgot stays its own family
    known = {name.lower(): name for name in unique}
    cleaned: dict[str, list[str]] = {}
    placed: set[str] = set()
    for parent, members in groups.items():
        if not isinstance(members, list):
            continue
        for member in members:
            original = known.get(str(member).strip().lower())
            if original and original not in placed:
                cleaned.setdefault(str(parent), []).append(original)
                placed.add(original)
    for name in unique:
        if name not in placed:
            cleaned.setdefault(name, []).append(name)

    raw_matches = data.get("target_matches") or []
    target_matches = [known[m.strip().lower()] for m in raw_matches if isinstance(m, str) and m.strip().lower() in known]
    try:
        confidence = float(data.get("confidence", 0.5))
    except (TypeError, ValueError):
        confidence = 0.5

    return BrandGroups(brand_groups=cleaned, target_matches=target_matches, confidence=confidence, method="model")
