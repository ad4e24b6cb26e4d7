"""Core types and DTOs for the analysis pipeline."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------


class AnalysisKind(str, Enum):
    """Question families asked for every job, in execution order."""

    REPUTATION = "reputation"
    VISIBILITY = "visibility"
    COMPETITIVE = "competitive"
    CATEGORY = "category"


KIND_ORDER: tuple[AnalysisKind, ...] = (
    AnalysisKind.REPUTATION,
    AnalysisKind.VISIBILITY,
    AnalysisKind.COMPETITIVE,
    AnalysisKind.CATEGORY,
)

# Question-id prefixes ("VIS__us-en__cat_1a2b3c4d__Q2", legacy "VIS_Q2")
KIND_PREFIX: dict[AnalysisKind, str] = {
    AnalysisKind.REPUTATION: "REP",
    AnalysisKind.VISIBILITY: "VIS",
    AnalysisKind.COMPETITIVE: "COMP",
    AnalysisKind.CATEGORY: "CAT",
}

# Result rows that are not tied to a question kind
CATEGORIES_ASSOCIATED_KIND = "categories_associated"
PR_INSIGHTS_KIND = "pr_insights"


class SourceCategory(str, Enum):
    """Closed set of source types a citation can be classified into."""

    JOURNALISM = "Journalism"
    OWNED_MEDIA = "Owned Media"
    COMPETITOR_MEDIA = "Competitor Media"
    SOCIAL_UGC = "Social / UGC"
    AGGREGATORS = "Aggregators / Encyclopedic"
    GOVERNMENT_NGO = "Government/NGO"
    ACADEMIC = "Academic/Research"
    PAID = "Paid/Advertorial"
    PRESS_RELEASE = "Press Release"
    CORPORATE_BLOGS = "Corporate Blogs & Content"
    OTHER = "Other"

    @classmethod
    def parse(cls, value: str | None) -> "SourceCategory | None":
        """Exact-string lookup; None for anything outside the closed set."""
        if not value:
            return None
        try:
            return cls(value.strip())
        except ValueError:
            return None


class Confidence(str, Enum):
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


# ---------------------------------------------------------------------------
# Job configuration
# ---------------------------------------------------------------------------


@dataclass
class Question:
    """A single question asked to both providers."""

    id: str
    text: str
    kind: AnalysisKind
    market_code: str | None = None
    category_id: str | None = None
    sequence: int = 0  # position in the flattened question list

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "text": self.text,
            "kind": self.kind.value,
            "market_code": self.market_code,
            "category_id": self.category_id,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Question":
        return cls(
            id=data["id"],
            text=data.get("text") or data.get("question") or "",
            kind=AnalysisKind(data["kind"]),
            market_code=data.get("market_code"),
            category_id=data.get("category_id"),
        )


@dataclass
class MarketConfig:
    """Country/language locale."""

    country: str
    language: str
    market_code: str  # "us-en"
    is_primary: bool = False


@dataclass
class CategoryFamilyConfig:
    """Canonical category concept, translated per market."""

    id: str  # "cat_1a2b3c4d"
    canonical_name: str
    translations: dict[str, str] = field(default_factory=dict)  # market_code → name
    competitors: dict[str, list[str]] = field(default_factory=dict)  # market_code → names


@dataclass
class AnalysisConfig:
    """Everything a job needs besides its questions."""

    entity: str
    category: str = ""
    competitors: list[str] = field(default_factory=list)
    markets: list[MarketConfig] = field(default_factory=list)
    category_families: list[CategoryFamilyConfig] = field(default_factory=list)

    @property
    def is_multi_market(self) -> bool:
        return bool(self.markets)

    @property
    def primary_market(self) -> MarketConfig | None:
        for market in self.markets:
            if market.is_primary:
                return market
        return self.markets[0] if self.markets else None

    def all_competitors(self) -> list[str]:
        """Job competitors plus every per-market category competitor, deduplicated."""
        names: list[str] = []
        seen: set[str] = set()
        for name in self.competitors:
            if name.lower() not in seen:
                seen.add(name.lower())
                names.append(name)
        for family in self.category_families:
            for market_names in family.competitors.values():
                for name in market_names:
                    if name.lower() not in seen:
                        seen.add(name.lower())
                        names.append(name)
        return names

    @classmethod
    def from_dict(cls, data: dict) -> "AnalysisConfig":
        return cls(
            entity=data["entity"],
            category=data.get("category") or "",
            competitors=list(data.get("competitors") or []),
            markets=[MarketConfig(**m) for m in data.get("markets") or []],
            category_families=[CategoryFamilyConfig(**f) for f in data.get("category_families") or []],
        )

    def to_dict(self) -> dict:
        return {
            "entity": self.entity,
            "category": self.category,
            "competitors": list(self.competitors),
            "markets": [vars(m).copy() for m in self.markets],
            "category_families": [
                {
                    "id": f.id,
                    "canonical_name": f.canonical_name,
                    "translations": dict(f.translations),
                    "competitors": {k: list(v) for k, v in f.competitors.items()},
                }
                for f in self.category_families
            ],
        }


# ---------------------------------------------------------------------------
# Sources
# ---------------------------------------------------------------------------


@dataclass
class Citation:
    """A unique cited URL with the providers that cited it."""

    url: str
    title: str = ""
    domain: str = ""
    cited_by: list[str] = field(default_factory=list)  # ["gemini", "openai"]
    source_type_hint: str | None = None  # "Journalism" for sources_cited_news
    youtube_channel: str | None = None  # channel named by the model or by the video page


@dataclass
class ClassifiedSource:
    """A citation tagged with exactly one SourceCategory."""

    url: str
    title: str
    domain: str
    source_type: SourceCategory
    confidence: Confidence
    reasoning: str = ""
    competitor_name: str | None = None
    youtube_channel: str | None = None
    authority: float | None = None  # trusted domain-table authority, when known
    cited_by: list[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "url": self.url,
            "title": self.title,
            "domain": self.domain,
            "source_type": self.source_type.value,
            "confidence": self.confidence.value,
            "reasoning": self.reasoning,
            "competitor_name": self.competitor_name,
            "youtube_channel": self.youtube_channel,
            "authority": self.authority,
            "cited_by": list(self.cited_by),
        }


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------


class ClassificationError(Exception):
    """A classification request failed. ``retryable`` marks transient causes."""

    def __init__(self, message: str, retryable: bool = False):
        super().__init__(message)
        self.retryable = retryable
