"""Reputation Aggregator: sentiment topics from free-text reputation answers.

Default extraction is keyword based so that a replay over the same stored
responses gives the same topics. Model-assisted extraction is available behind
``settings.reputation_llm_extraction`` and falls back to keywords on failure.
"""

from __future__ import annotations

import logging
import re
from collections import Counter
from collections.abc import Iterable
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from app.analysis.json_parser import parse_model_json
from app.analysis.prompts import build_reputation_extraction_prompt
from app.analysis.response_shapes import FreeTextAnswer, NoAnswer, ProviderAnswer, ResponseRecord
from app.analysis.source_classifier import generate_source_analysis, lookup_source
from app.analysis.types import ClassifiedSource
from app.core.config import settings
from app.gateway.types import ProviderName

if TYPE_CHECKING:
    from app.gateway.gateway import ModelGateway

logger = logging.getLogger(__name__)

POSITIVE_KEYWORDS = [
    "excellent", "great", "best", "good", "quality", "reliable", "popular",
    "trusted", "innovative", "comfortable", "durable", "stylish", "premium",
    "recommended", "favorite", "leading", "outstanding", "superior",
    "value", "worth", "love", "amazing", "impressive", "renowned",
]  # fmt: skip

NEGATIVE_KEYWORDS = [
    "expensive", "overpriced", "poor", "bad", "issue", "problem", "complaint",
    "disappointing", "concern", "criticism", "controversy", "inconsistent",
    "cheap", "flimsy", "uncomfortable", "narrow", "limited", "declining",
    "struggle", "fail", "worse", "lacking", "avoid",
]  # fmt: skip

POSITIVE_SENTIMENT = 0.7
NEGATIVE_SENTIMENT = -0.6
MAX_TOPICS = 5
MAX_QUOTES = 3
MAX_TOPIC_SOURCES = 5

_SENTENCE_SPLIT = re.compile(r"[.!?]+")
_KEYWORD_PATTERNS = {k: re.compile(rf"\b{re.escape(k)}") for k in POSITIVE_KEYWORDS + NEGATIVE_KEYWORDS}


@dataclass
class _Topic:
    topic: str
    sentiment_score: float
    count: int = 0
    quotes: list[str] = field(default_factory=list)
    sources: list[dict] = field(default_factory=list)
    cited_by: list[str] = field(default_factory=list)


def _answer_text(provider_answer: ProviderAnswer) -> str:
    answer = provider_answer.answer
    if isinstance(answer, FreeTextAnswer):
        return answer.text
    if isinstance(answer, NoAnswer) and not provider_answer.error:
        return provider_answer.text
    return ""


def _topic_source(citation: dict, index: dict[str, ClassifiedSource]) -> dict:
    source = lookup_source(citation, index)
    return {
        "url": source.url,
        "title": source.title or source.domain,
        "domain": source.domain,
        "source_type": source.source_type.value,
    }


def _format_topics(topics: dict[str, _Topic], responses: int) -> list[dict]:
    formatted = [
        {
            "topic": t.topic,
            "frequency": min(t.count / responses, 1.0),
            "sentiment_score": t.sentiment_score,
            "quotes": t.quotes[:MAX_QUOTES],
            "sources": t.sources[:MAX_TOPIC_SOURCES],
            "cited_by": list(t.cited_by),
        }
        for t in topics.values()
    ]
    formatted.sort(key=lambda t: -t["frequency"])
    return formatted[:MAX_TOPICS]


def extract_keyword_topics(
    records: list[ResponseRecord],
    entity: str,
    source_index: dict[str, ClassifiedSource] | None = None,
) -> dict:
    """Sentence-level keyword matching, one "Entity - Keyword" topic per keyword hit."""
    source_index = source_index or {}
    positive: dict[str, _Topic] = {}
    negative: dict[str, _Topic] = {}

    for record in records:
        for provider, provider_answer in record.answers.items():
            text = _answer_text(provider_answer).lower()
            if not text:
                continue
            sources = [_topic_source(c, source_index) for c in provider_answer.citations]
            for sentence in _SENTENCE_SPLIT.split(text):
                sentence = sentence.strip()
                if len(sentence) <= 20:
                    continue
                for keywords, bucket, score in (
                    (POSITIVE_KEYWORDS, positive, POSITIVE_SENTIMENT),
                    (NEGATIVE_KEYWORDS, negative, NEGATIVE_SENTIMENT),
                ):
                    for keyword in keywords:
                        if not _KEYWORD_PATTERNS[keyword].search(sentence):
                            continue
                        topic = bucket.setdefault(keyword, _Topic(f"{entity} - {keyword.capitalize()}", score))
                        topic.count += 1
                        if provider not in topic.cited_by:
                            topic.cited_by.append(provider)
                        if len(topic.quotes) < MAX_QUOTES and len(sentence) < 100:
                            topic.quotes.append(sentence[:80])
                        known = {s["url"] for s in topic.sources}
                        topic.sources.extend(s for s in sources if s["url"] not in known)

    responses = len(records) or 1
    return {
        "positive_topics": _format_topics(positive, responses),
        "negative_topics": _format_topics(negative, responses),
        "neutral_topics": [],
    }


async def extract_model_topics(
    records: list[ResponseRecord],
    entity: str,
    gateway: "ModelGateway",
) -> dict | None:
    """Ask the utility model for sentiment topics. None when the call or parse fails."""
    answers = []
    for record in records:
        for provider_answer in record.answers.values():
            text = _answer_text(provider_answer)
            if text:
                answers.append(text)
    if not answers:
        return None

    response = await gateway.ask(
        ProviderName.GEMINI,
        build_reputation_extraction_prompt(entity, answers),
        grounding=False,
        json_mode=True,
        model=settings.gemini_utility_model,
        timeout=settings.classifier_timeout_seconds,
    )
    if not response.ok:
        logger.warning("Reputation extraction call failed: %s", response.error)
        return None

    data = parse_model_json(response.text)
    items = data.get("topics") if isinstance(data, dict) else None
    if not isinstance(items, list):
        logger.warning("Reputation extraction returned no topics list")
        return None

    responses = len(records) or 1
    buckets: dict[str, list[dict]] = {"positive_topics": [], "negative_topics": [], "neutral_topics": []}
    for item in items:
        if not isinstance(item, dict) or not item.get("topic"):
            continue
        try:
            sentiment = max(-1.0, min(1.0, float(item.get("sentiment", 0))))
            mentions = int(item.get("mentions", 1))
        except (TypeError, ValueError):
            continue
        key = "positive_topics" if sentiment > 0.2 else "negative_topics" if sentiment < -0.2 else "neutral_topics"
        buckets[key].append(
            {
                "topic": str(item["topic"]),
                "frequency": min(mentions / responses, 1.0),
                "sentiment_score": sentiment,
                "quotes": [],
                "sources": [],
                "cited_by": [],
            }
        )
    for key, topics in buckets.items():
        topics.sort(key=lambda t: -t["frequency"])
        buckets[key] = topics[:MAX_TOPICS]
    return buckets


def top_domains_used(sources: list[ClassifiedSource], limit: int = 10) -> list[dict]:
    counts = Counter(s.domain for s in sources if s.domain)
    total = sum(counts.values())
    ordered = sorted(counts.items(), key=lambda kv: (-kv[1], kv[0]))[:limit]
    return [{"domain": d, "count": n, "frequency": n / total if total else 0.0} for d, n in ordered]


async def aggregate_reputation(
    records: Iterable[ResponseRecord],
    entity: str,
    category: str = "",
    source_index: dict[str, ClassifiedSource] | None = None,
    gateway: "ModelGateway | None" = None,
) -> dict:
    source_index = source_index or {}
    records = sorted(records, key=lambda r: r.sequence)

    sources: dict[str, tuple[ClassifiedSource, list[str]]] = {}
    for record in records:
        for provider, provider_answer in record.answers.items():
            for citation in provider_answer.citations:
                if citation["url"] not in sources:
                    sources[citation["url"]] = (lookup_source(citation, source_index), [])
                if provider not in sources[citation["url"]][1]:
                    sources[citation["url"]][1].append(provider)
    classified = [s for s, _ in sources.values()]
    full_sources = []
    for source, cited_by in sources.values():
        data = source.to_dict()
        data["cited_by"] = list(cited_by)
        full_sources.append(data)

    method = "keyword"
    sentiment_topics = None
    if settings.reputation_llm_extraction and gateway is not None:
        sentiment_topics = await extract_model_topics(records, entity, gateway)
        method = "model" if sentiment_topics is not None else "keyword_fallback"
    if sentiment_topics is None:
        sentiment_topics = extract_keyword_topics(records, entity, source_index)

    logger.info(
        "Reputation for %s: %d positive, %d negative topics (%s)",
        entity,
        len(sentiment_topics["positive_topics"]),
        len(sentiment_topics["negative_topics"]),
        method,
    )
    return {
        "entity": entity,
        "category": category,
        "category_check": bool(category),
        "sentiment_topics": sentiment_topics,
        "extraction_method": method,
        "top_domains_used": top_domains_used(classified),
        "full_sources_list": full_sources,
        "source_analysis": generate_source_analysis(classified),
        "questions": len(records),
    }
