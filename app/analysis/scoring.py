"""Impact / Effort scoring for opportunities.

Impact (points rounded half-up to an integer, capped at 100, stored /100):

  citation frequency    min(citations × 5, 30)
  visibility gap        min(gap citations × 10, 30)
  competitive loss      min(loss citations × 12, 25)
  reputation severity   min(severity × 40, 20)
  average rank gap      min(avg rank gap × 2, 10)
  source authority      authority × 10  (+5 when cited by both providers)

Effort is a lookup table, never a computed value, so equal inputs always give
equal scores. Tier comes from the (impact, effort) quadrant.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass

from app.analysis.types import SourceCategory

logger = logging.getLogger(__name__)

IMPACT_THRESHOLD = 0.70
EFFORT_THRESHOLD = 0.40


# ---------------------------------------------------------------------------
# Impact
# ---------------------------------------------------------------------------


@dataclass
class ImpactInputs:
    citations: int = 0
    visibility_gap_citations: int = 0
    competitive_loss_citations: int = 0
    reputation_severity: float = 0.0
    avg_rank_gap: float = 0.0
    authority: float = 0.0
    cited_by_both: bool = False


def impact_points(inputs: ImpactInputs) -> int:
    """Composite impact in whole points, 0–100.

    The fractional sum is rounded half-up before the cap, so 69.5 points
    count as 70 and reach the high-impact threshold.
    """
    points = (
        min(inputs.citations * 5, 30)
        + min(inputs.visibility_gap_citations * 10, 30)
        + min(inputs.competitive_loss_citations * 12, 25)
        + min(inputs.reputation_severity * 40, 20)
        + min(inputs.avg_rank_gap * 2, 10)
        + inputs.authority * 10
        + (5 if inputs.cited_by_both else 0)
    )
    return min(math.floor(points + 0.5), 100)


def calculate_impact(inputs: ImpactInputs) -> float:
    """Impact normalised to 0–1."""
    return impact_points(inputs) / 100


def impact_label(impact: float) -> str:
    if impact >= IMPACT_THRESHOLD:
        return "High"
    if impact >= 0.40:
        return "Medium"
    return "Low"


def effort_label(effort: float) -> str:
    if effort < EFFORT_THRESHOLD:
        return "Low"
    if effort < 0.70:
        return "Medium"
    return "High"


# ---------------------------------------------------------------------------
# Effort
# ---------------------------------------------------------------------------

THEME_KEYWORDS: dict[str, tuple[str, ...]] = {
    "price": ("price", "cheaper", "affordable", "cost", "value", "budget", "expensive"),
    "feature": ("feature", "technology", "performance", "design", "innovation", "battery", "quality"),
    "service": ("service", "support", "warranty", "delivery", "customer", "return"),
}

# (opportunity type, rank bucket, theme) → effort
GAP_EFFORT: dict[tuple[str, str, str], float] = {
    ("Visibility Gap", "close", "none"): 0.25,
    ("Visibility Gap", "close", "price"): 0.30,
    ("Visibility Gap", "close", "service"): 0.35,
    ("Visibility Gap", "close", "feature"): 0.45,
    ("Visibility Gap", "mid", "none"): 0.35,
    ("Visibility Gap", "mid", "price"): 0.40,
    ("Visibility Gap", "mid", "service"): 0.45,
    ("Visibility Gap", "mid", "feature"): 0.55,
    ("Visibility Gap", "far", "none"): 0.50,
    ("Visibility Gap", "far", "price"): 0.55,
    ("Visibility Gap", "far", "service"): 0.60,
    ("Visibility Gap", "far", "feature"): 0.70,
    ("Competitive Positioning", "close", "none"): 0.30,
    ("Competitive Positioning", "close", "price"): 0.35,
    ("Competitive Positioning", "close", "service"): 0.40,
    ("Competitive Positioning", "close", "feature"): 0.55,
    ("Competitive Positioning", "mid", "none"): 0.40,
    ("Competitive Positioning", "mid", "price"): 0.45,
    ("Competitive Positioning", "mid", "service"): 0.50,
    ("Competitive Positioning", "mid", "feature"): 0.65,
    ("Competitive Positioning", "far", "none"): 0.55,
    ("Competitive Positioning", "far", "price"): 0.60,
    ("Competitive Positioning", "far", "service"): 0.65,
    ("Competitive Positioning", "far", "feature"): 0.80,
}

SOURCE_EFFORT: dict[SourceCategory, float] = {
    SourceCategory.OWNED_MEDIA: 0.15,
    SourceCategory.PRESS_RELEASE: 0.25,
    SourceCategory.AGGREGATORS: 0.30,
    SourceCategory.SOCIAL_UGC: 0.35,
    SourceCategory.CORPORATE_BLOGS: 0.45,
    SourceCategory.PAID: 0.50,
    SourceCategory.OTHER: 0.50,
    SourceCategory.JOURNALISM: 0.60,
    SourceCategory.ACADEMIC: 0.80,
    SourceCategory.GOVERNMENT_NGO: 0.85,
    SourceCategory.COMPETITOR_MEDIA: 0.90,
}

REPUTATION_EFFORT: dict[str, float] = {
    "moderate": 0.45,
    "serious": 0.60,
    "severe": 0.75,
}


def rank_bucket(rank_gap: float) -> str:
    if rank_gap <= 1:
        return "close"
    if rank_gap <= 3:
        return "mid"
    return "far"


def keyword_theme(text: str | None) -> str:
    """First matching theme in price, feature, service order, else "none"."""
    lowered = (text or "").lower()
    for theme, keywords in THEME_KEYWORDS.items():
        if any(k in lowered for k in keywords):
            return theme
    return "none"


def severity_bucket(severity: float) -> str:
    if severity < 0.45:
        return "moderate"
    if severity < 0.60:
        return "serious"
    return "severe"


def gap_effort(opportunity_type: str, rank_gap: float, comment: str | None) -> float:
    return GAP_EFFORT[(opportunity_type, rank_bucket(rank_gap), keyword_theme(comment))]


def source_effort(source_type: SourceCategory) -> float:
    return SOURCE_EFFORT.get(source_type, SOURCE_EFFORT[SourceCategory.OTHER])


def reputation_effort(severity: float) -> float:
    return REPUTATION_EFFORT[severity_bucket(severity)]


# ---------------------------------------------------------------------------
# Priority
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class PriorityTier:
    tier: str
    label: str
    urgency: int


CRITICAL = PriorityTier("Critical", "High impact, low effort", 1)
STRATEGIC = PriorityTier("Strategic", "High impact, high effort", 2)
QUICK_WIN = PriorityTier("Quick Win", "Low impact, low effort", 3)
LOW_PRIORITY = PriorityTier("Low Priority", "Low impact, high effort", 4)


def priority_tier(impact: float, effort: float) -> PriorityTier:
    """Quadrant of the impact/effort matrix.

    impact ≥ 0.70 and effort < 0.40 → Critical
    impact ≥ 0.70 and effort ≥ 0.40 → Strategic
    impact < 0.70 and effort < 0.40 → Quick Win
    otherwise                       → Low Priority
    """
    if impact >= IMPACT_THRESHOLD:
        return CRITICAL if effort < EFFORT_THRESHOLD else STRATEGIC
    return QUICK_WIN if effort < EFFORT_THRESHOLD else LOW_PRIORITY
