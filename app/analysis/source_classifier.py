"""Source Classifier: tags every cited URL with one SourceCategory.

Flow per job:
  1. Local pre-pass: the entity's own domains/channels → Owned Media,
     a configured competitor's → Competitor Media (confidence high).
  2. Everything else goes to the utility model in batches of
     ``settings.classifier_batch_size``. Transient failures (timeout, 5xx,
     429) are retried up to ``settings.classifier_max_retries`` times with
     ``base * 2**attempt + jitter`` delay.
  3. A batch that still fails, or an item the model skipped, falls back to
     the domain heuristic table with confidence "low". The category is never
     null.
"""

from __future__ import annotations

import asyncio
import logging
import random
import re
from collections import Counter
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import TYPE_CHECKING
from urllib.parse import parse_qs, urlparse

from app.analysis.json_parser import parse_model_json
from app.analysis.prompts import build_source_classification_prompt
from app.analysis.types import Citation, ClassificationError, ClassifiedSource, Confidence, SourceCategory
from app.core.config import settings
from app.core.metrics import CLASSIFIER_FALLBACKS
from app.gateway.normalizer import extract_domain, fetch_youtube_metadata
from app.gateway.types import TRANSIENT_STATUSES, ProviderName, RequestStatus

if TYPE_CHECKING:
    from app.gateway.gateway import ModelGateway

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Authority
# ---------------------------------------------------------------------------

CATEGORY_AUTHORITY: dict[SourceCategory, float] = {
    SourceCategory.JOURNALISM: 0.95,
    SourceCategory.ACADEMIC: 0.90,
    SourceCategory.GOVERNMENT_NGO: 0.85,
    SourceCategory.PRESS_RELEASE: 0.70,
    SourceCategory.AGGREGATORS: 0.65,
    SourceCategory.CORPORATE_BLOGS: 0.55,
    SourceCategory.SOCIAL_UGC: 0.40,
    SourceCategory.OWNED_MEDIA: 0.30,
    SourceCategory.COMPETITOR_MEDIA: 0.30,
    SourceCategory.PAID: 0.30,
    SourceCategory.OTHER: 0.30,
}


def authority_for(source: ClassifiedSource) -> float:
    """Authority used by scoring.

    high/medium confidence → category authority; low confidence → the domain
    table's trusted authority when it supplied one, else the low-confidence floor.
    """
    if source.confidence in (Confidence.HIGH, Confidence.MEDIUM):
        return CATEGORY_AUTHORITY.get(source.source_type, settings.low_confidence_authority)
    if source.authority is not None:
        return source.authority
    return settings.low_confidence_authority


# ---------------------------------------------------------------------------
# Domain heuristic table
# ---------------------------------------------------------------------------

# domain → (category, trusted authority)
DOMAIN_TABLE: dict[str, tuple[SourceCategory, float]] = {
    # Journalism
    "nytimes.com": (SourceCategory.JOURNALISM, 0.95),
    "bbc.com": (SourceCategory.JOURNALISM, 0.95),
    "bbc.co.uk": (SourceCategory.JOURNALISM, 0.95),
    "reuters.com": (SourceCategory.JOURNALISM, 0.95),
    "apnews.com": (SourceCategory.JOURNALISM, 0.95),
    "theguardian.com": (SourceCategory.JOURNALISM, 0.90),
    "wsj.com": (SourceCategory.JOURNALISM, 0.95),
    "ft.com": (SourceCategory.JOURNALISM, 0.95),
    "bloomberg.com": (SourceCategory.JOURNALISM, 0.95),
    "cnn.com": (SourceCategory.JOURNALISM, 0.85),
    "cnbc.com": (SourceCategory.JOURNALISM, 0.85),
    "forbes.com": (SourceCategory.JOURNALISM, 0.80),
    "businessinsider.com": (SourceCategory.JOURNALISM, 0.75),
    "techcrunch.com": (SourceCategory.JOURNALISM, 0.80),
    "theverge.com": (SourceCategory.JOURNALISM, 0.80),
    "wired.com": (SourceCategory.JOURNALISM, 0.80),
    "lemonde.fr": (SourceCategory.JOURNALISM, 0.90),
    "spiegel.de": (SourceCategory.JOURNALISM, 0.90),
    # Aggregators / Encyclopedic
    "wikipedia.org": (SourceCategory.AGGREGATORS, 0.65),
    "britannica.com": (SourceCategory.AGGREGATORS, 0.70),
    "investopedia.com": (SourceCategory.AGGREGATORS, 0.65),
    "nerdwallet.com": (SourceCategory.AGGREGATORS, 0.60),
    "news.google.com": (SourceCategory.AGGREGATORS, 0.60),
    "rtings.com": (SourceCategory.AGGREGATORS, 0.65),
    # Social / UGC
    "reddit.com": (SourceCategory.SOCIAL_UGC, 0.40),
    "quora.com": (SourceCategory.SOCIAL_UGC, 0.35),
    "trustpilot.com": (SourceCategory.SOCIAL_UGC, 0.45),
    "g2.com": (SourceCategory.SOCIAL_UGC, 0.45),
    "x.com": (SourceCategory.SOCIAL_UGC, 0.35),
    "twitter.com": (SourceCategory.SOCIAL_UGC, 0.35),
    "facebook.com": (SourceCategory.SOCIAL_UGC, 0.35),
    "instagram.com": (SourceCategory.SOCIAL_UGC, 0.35),
    "tiktok.com": (SourceCategory.SOCIAL_UGC, 0.30),
    "youtube.com": (SourceCategory.SOCIAL_UGC, 0.40),
    "medium.com": (SourceCategory.SOCIAL_UGC, 0.40),
    # Press Release
    "prnewswire.com": (SourceCategory.PRESS_RELEASE, 0.70),
    "businesswire.com": (SourceCategory.PRESS_RELEASE, 0.70),
    "globenewswire.com": (SourceCategory.PRESS_RELEASE, 0.70),
    # Academic / Government
    "ncbi.nlm.nih.gov": (SourceCategory.ACADEMIC, 0.90),
    "arxiv.org": (SourceCategory.ACADEMIC, 0.85),
    "scholar.google.com": (SourceCategory.ACADEMIC, 0.85),
    "who.int": (SourceCategory.GOVERNMENT_NGO, 0.85),
    "europa.eu": (SourceCategory.GOVERNMENT_NGO, 0.85),
}

# (substring of domain, category), first match wins; no trusted authority
_KEYWORD_RULES: list[tuple[str, SourceCategory]] = [
    (".gov", SourceCategory.GOVERNMENT_NGO),
    (".edu", SourceCategory.ACADEMIC),
    (".ac.", SourceCategory.ACADEMIC),
    ("university", SourceCategory.ACADEMIC),
    ("newswire", SourceCategory.PRESS_RELEASE),
    ("forum", SourceCategory.SOCIAL_UGC),
    ("review", SourceCategory.SOCIAL_UGC),
    ("wiki", SourceCategory.AGGREGATORS),
    ("news", SourceCategory.JOURNALISM),
    ("times", SourceCategory.JOURNALISM),
    ("blog", SourceCategory.CORPORATE_BLOGS),
]


def lookup_domain(domain: str) -> tuple[SourceCategory, float] | None:
    """Domain-table entry for ``domain`` or any parent domain of it."""
    host = domain.split("/", 1)[0].lower()
    labels = host.split(".")
    for i in range(len(labels) - 1):
        entry = DOMAIN_TABLE.get(".".join(labels[i:]))
        if entry:
            return entry
    return None


# ---------------------------------------------------------------------------
# YouTube / domain helpers
# ---------------------------------------------------------------------------


@dataclass
class DomainInfo:
    domain: str
    is_youtube: bool = False
    youtube_channel: str | None = None
    video_id: str | None = None


_YT_HANDLE = re.compile(r"^/@([^/?#]+)")
_YT_PATHS = (re.compile(r"^/c/([^/?#]+)"), re.compile(r"^/user/([^/?#]+)"))
_YT_CHANNEL_ID = re.compile(r"^/channel/([^/?#]+)")
_YT_VIDEO_PATH = re.compile(r"^/(?:shorts|embed)/([^/?#]+)")


def extract_domain_info(url: str, youtube_channel: str | None = None) -> DomainInfo:
    """Domain of a URL; YouTube channel URLs become ``youtube.com/@channel``."""
    base = extract_domain(url)
    if not base.endswith("youtube.com") and base != "youtu.be":
        return DomainInfo(domain=base)

    parsed = urlparse(url)
    path = parsed.path or ""
    video_id = None
    if base == "youtu.be":
        video_id = path.strip("/").split("/")[0] or None
    else:
        video_id = (parse_qs(parsed.query).get("v") or [None])[0]
        video_path = _YT_VIDEO_PATH.match(path)
        if video_path:
            video_id = video_path.group(1)

    channel = None
    handle = _YT_HANDLE.match(path)
    if handle:
        channel = f"@{handle.group(1)}"
    else:
        for pattern in _YT_PATHS:
            match = pattern.match(path)
            if match:
                channel = match.group(1)
                break
        if channel is None:
            channel_id = _YT_CHANNEL_ID.match(path)
            if channel_id:
                channel = channel_id.group(1)
    channel = channel or youtube_channel

    domain = f"youtube.com/{channel}" if channel else "youtube.com"
    return DomainInfo(domain=domain, is_youtube=True, youtube_channel=channel, video_id=video_id)


async def enrich_youtube_citations(citations: list[Citation]) -> int:
    """Fill the channel (and a missing title) of YouTube video citations in place.

    Only videos whose URL names no channel and whose answer gave none are
    looked up. Returns the number of citations enriched.
    """
    pending: dict[str, list[Citation]] = {}
    for citation in citations:
        if citation.youtube_channel:
            continue
        info = extract_domain_info(citation.url)
        if info.is_youtube and info.video_id and not info.youtube_channel:
            pending.setdefault(info.video_id, []).append(citation)
    if not pending:
        return 0

    metadata = await fetch_youtube_metadata(
        list(pending),
        timeout=settings.youtube_metadata_timeout_seconds,
        concurrency=settings.youtube_metadata_concurrency,
    )
    enriched = 0
    for video_id, data in metadata.items():
        for citation in pending[video_id]:
            if data.get("channel"):
                citation.youtube_channel = data["channel"]
            if data.get("title") and (not citation.title or citation.title == citation.domain):
                citation.title = data["title"]
            enriched += 1
    logger.info("YouTube metadata for %d/%d video citations", enriched, sum(len(v) for v in pending.values()))
    return enriched


def _slug(name: str) -> str:
    return re.sub(r"[^a-z0-9]", "", name.lower())


def domain_belongs_to(info: DomainInfo, brand: str) -> bool:
    """Whether a domain or YouTube channel is the brand's own property."""
    slug = _slug(brand)
    if len(slug) < 3:
        return False
    if info.is_youtube:
        return bool(info.youtube_channel) and _slug(info.youtube_channel).startswith(slug)
    labels = info.domain.split(".")[:-1]
    return any(_slug(label) == slug for label in labels) or _slug("".join(labels)) == slug


# ---------------------------------------------------------------------------
# Heuristic and pre-pass
# ---------------------------------------------------------------------------


def _base(citation: Citation, info: DomainInfo) -> dict:
    return {
        "url": citation.url,
        "title": citation.title,
        "domain": info.domain,
        "youtube_channel": info.youtube_channel,
        "cited_by": list(citation.cited_by),
    }


def classify_by_ownership(
    citation: Citation, info: DomainInfo, entity: str, competitors: list[str]
) -> ClassifiedSource | None:
    if domain_belongs_to(info, entity):
        return ClassifiedSource(
            **_base(citation, info),
            source_type=SourceCategory.OWNED_MEDIA,
            confidence=Confidence.HIGH,
            reasoning=f"Domain belongs to {entity}",
        )
    for competitor in competitors:
        if domain_belongs_to(info, competitor):
            return ClassifiedSource(
                **_base(citation, info),
                source_type=SourceCategory.COMPETITOR_MEDIA,
                confidence=Confidence.HIGH,
                reasoning=f"Domain belongs to competitor {competitor}",
                competitor_name=competitor,
            )
    return None


def classify_heuristic(citation: Citation, info: DomainInfo | None = None, reason: str = "") -> ClassifiedSource:
    """Domain-table classification. Always low confidence, never null."""
    info = info or extract_domain_info(citation.url, citation.youtube_channel)
    entry = lookup_domain(info.domain)
    authority = None
    if entry:
        category, authority = entry
        reasoning = f"Known domain {info.domain}"
    elif citation.source_type_hint and SourceCategory.parse(citation.source_type_hint):
        category = SourceCategory.parse(citation.source_type_hint)
        reasoning = "Listed by the model as a news source"
    else:
        category = next((c for keyword, c in _KEYWORD_RULES if keyword in info.domain), SourceCategory.OTHER)
        reasoning = "Domain keyword rule" if category != SourceCategory.OTHER else "Unknown domain"
    if reason:
        reasoning = f"{reasoning} ({reason})"
    return ClassifiedSource(
        **_base(citation, info),
        source_type=category,
        confidence=Confidence.LOW,
        reasoning=reasoning,
        authority=authority,
    )


# ---------------------------------------------------------------------------
# Classifier
# ---------------------------------------------------------------------------


class SourceClassifier:
    """Batching, retrying model classifier with a heuristic safety net."""

    def __init__(
        self,
        gateway: "ModelGateway | None" = None,
        batch_size: int | None = None,
        max_retries: int | None = None,
        base_retry_delay: float | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.gateway = gateway
        self.batch_size = batch_size or settings.classifier_batch_size
        self.max_retries = settings.classifier_max_retries if max_retries is None else max_retries
        self.base_retry_delay = settings.classifier_base_retry_delay if base_retry_delay is None else base_retry_delay
        self._sleep = sleep

    async def classify(
        self,
        citations: list[Citation],
        entity: str,
        competitors: list[str] | None = None,
    ) -> list[ClassifiedSource]:
        """Classify unique citations; output order follows input order."""
        competitors = competitors or []
        results: dict[str, ClassifiedSource] = {}
        pending: list[tuple[Citation, DomainInfo]] = []

        for citation in citations:
            info = extract_domain_info(citation.url, citation.youtube_channel)
            owned = classify_by_ownership(citation, info, entity, competitors)
            if owned:
                results[citation.url] = owned
            else:
                pending.append((citation, info))

        for start in range(0, len(pending), self.batch_size):
            batch = pending[start : start + self.batch_size]
            for source in await self._classify_batch(batch, entity, competitors):
                results[source.url] = source

        classified = [results[c.url] for c in citations if c.url in results]
        distribution = Counter(s.source_type.value for s in classified)
        logger.info("Classified %d sources: %s", len(classified), dict(distribution))
        return classified

    async def _classify_batch(
        self, batch: list[tuple[Citation, DomainInfo]], entity: str, competitors: list[str]
    ) -> list[ClassifiedSource]:
        if self.gateway is None:
            CLASSIFIER_FALLBACKS.inc(len(batch))
            return [classify_heuristic(c, info, "no classifier model") for c, info in batch]

        items = [
            {
                "id": i,
                "url": c.url,
                "title": c.title,
                "domain": info.domain,
                "is_youtube": info.is_youtube,
                "youtube_channel": info.youtube_channel,
            }
            for i, (c, info) in enumerate(batch)
        ]
        prompt = build_source_classification_prompt(items, entity, competitors)

        try:
            classifications = await self._call_with_retry(prompt)
        except ClassificationError as e:
            logger.warning("Classification batch of %d failed, using domain heuristics: %s", len(batch), e)
            CLASSIFIER_FALLBACKS.inc(len(batch))
            return [classify_heuristic(c, info, "classification failed") for c, info in batch]

        by_id = {}
        for item in classifications:
            if isinstance(item, dict):
                try:
                    by_id[int(item.get("id"))] = item
                except (TypeError, ValueError):
                    continue

        results = []
        for i, (citation, info) in enumerate(batch):
            item = by_id.get(i)
            category = SourceCategory.parse(item.get("source_type")) if item else None
            if category is None:
                CLASSIFIER_FALLBACKS.inc()
                results.append(classify_heuristic(citation, info, "no classification returned"))
                continue
            try:
                confidence = Confidence(str(item.get("confidence") or "low").lower())
            except ValueError:
                confidence = Confidence.LOW
            entry = lookup_domain(info.domain)
            results.append(
                ClassifiedSource(
                    **_base(citation, info),
                    source_type=category,
                    confidence=confidence,
                    reasoning=str(item.get("reasoning") or ""),
                    competitor_name=(item.get("competitor_name") or None)
                    if category == SourceCategory.COMPETITOR_MEDIA
                    else None,
                    authority=entry[1] if entry and entry[0] == category else None,
                )
            )
        return results

    async def _call_with_retry(self, prompt: str) -> list:
        attempt = 0
        while True:
            try:
                return await self._call_model(prompt)
            except ClassificationError as e:
                if not e.retryable or attempt >= self.max_retries:
                    raise
                delay = self.base_retry_delay * (2**attempt) + random.uniform(0, self.base_retry_delay / 2)
                logger.info(
                    "Retrying classification in %.1fs (attempt %d/%d): %s", delay, attempt + 1, self.max_retries, e
                )
                await self._sleep(delay)
                attempt += 1

    async def _call_model(self, prompt: str) -> list:
        response = await self.gateway.ask(
            ProviderName.GEMINI,
            prompt,
            grounding=False,
            json_mode=True,
            model=settings.gemini_utility_model,
            timeout=settings.classifier_timeout_seconds,
        )
        if response.status != RequestStatus.SUCCESS:
            retryable = response.status in TRANSIENT_STATUSES or response.error_code.startswith("5")
            raise ClassificationError(response.error or response.status.value, retryable=retryable)

        data = parse_model_json(response.text)
        if not isinstance(data, dict) or not isinstance(data.get("classifications"), list):
            raise ClassificationError("Unparseable classification output", retryable=False)
        return data["classifications"]


# ---------------------------------------------------------------------------
# Source analysis
# ---------------------------------------------------------------------------


def generate_source_analysis(sources: list[ClassifiedSource], top_n: int = 10) -> dict:
    """Distribution by type, competitor breakdown and most cited domains."""
    distribution = {category.value: 0 for category in SourceCategory}
    competitor_breakdown: Counter[str] = Counter()
    domain_counts: Counter[str] = Counter()
    domain_types: dict[str, str] = {}

    for source in sources:
        distribution[source.source_type.value] += 1
        if source.source_type == SourceCategory.COMPETITOR_MEDIA and source.competitor_name:
            competitor_breakdown[source.competitor_name] += 1
        domain = source.domain or "unknown"
        domain_counts[domain] += 1
        domain_types.setdefault(domain, source.source_type.value)

    top_domains = sorted(domain_counts.items(), key=lambda kv: (-kv[1], kv[0]))[:top_n]
    return {
        "total_sources": len(sources),
        "source_type_distribution": distribution,
        "competitor_breakdown": dict(competitor_breakdown),
        "unique_domains": len(domain_counts),
        "top_domains": [{"domain": d, "count": n, "source_type": domain_types[d]} for d, n in top_domains],
    }


def lookup_source(citation: dict, index: dict[str, ClassifiedSource]) -> ClassifiedSource:
    """Classified record for a raw citation dict; unknown URLs get the heuristic."""
    source = index.get(citation["url"])
    if source is None:
        source = classify_heuristic(
            Citation(
                url=citation["url"],
                title=citation.get("title") or "",
                source_type_hint=citation.get("source_type_hint"),
                youtube_channel=citation.get("youtube_channel"),
            )
        )
    return source
