"""Response Normalizer: post-processes GatewayResponses.

Applies final normalization steps after the provider adapter returns:
  - Cleans and deduplicates citations, fills in their domain
  - Resolves Gemini grounding redirect URLs to the cited page
  - Looks up channel and title of cited YouTube videos
  - Ensures all timestamps are set
"""

from __future__ import annotations

import asyncio
import logging
import re
from datetime import datetime, timezone
from urllib.parse import urlparse

import httpx

from app.gateway.types import GatewayResponse, RequestStatus

logger = logging.getLogger(__name__)

GROUNDING_REDIRECT_MARKER = "vertexaisearch.cloud.google.com/grounding-api-redirect/"

_DOMAIN_IN_TITLE = re.compile(
    r"([a-z0-9][-a-z0-9]*\.(?:com|org|net|io|co|gov|edu|fr|de|uk|ca|au|jp)[a-z.]*)", re.IGNORECASE
)


def extract_domain(url: str) -> str:
    """Host without the ``www.`` prefix; empty string for unparseable input."""
    if not url:
        return ""
    try:
        host = urlparse(url if "://" in url else f"https://{url}").hostname or ""
    except ValueError:
        return ""
    return host.lower().removeprefix("www.")


def is_grounding_redirect(url: str) -> bool:
    return GROUNDING_REDIRECT_MARKER in (url or "")


def url_from_title(title: str) -> str | None:
    """Guess the cited site from a grounding chunk title ("Powerwall | tesla.com")."""
    if not title:
        return None
    title = title.strip()
    if title.startswith("http"):
        return title
    if "." in title and " " not in title:
        return f"https://{title.removeprefix('www.')}"
    match = _DOMAIN_IN_TITLE.search(title)
    if match:
        return f"https://{match.group(1).lower()}"
    return None


def clean_citations(citations: list[dict]) -> list[dict]:
    """Strip trailing punctuation, drop empties, dedupe by URL and add ``domain``."""
    seen: set[str] = set()
    result: list[dict] = []
    for cite in citations:
        url = (cite.get("url") or "").strip().rstrip(".,;:!?)")
        if not url or url in seen:
            continue
        seen.add(url)
        title = (cite.get("title") or "").strip()
        domain = cite.get("domain") or extract_domain(url)
        result.append({"url": url, "title": title or domain, "domain": domain})
    return result


def normalize_response(response: GatewayResponse) -> GatewayResponse:
    """Apply normalization to a gateway response.

    This is idempotent and can be called multiple times safely.
    """
    if response.completed_at is None and response.status in (
        RequestStatus.SUCCESS,
        RequestStatus.CENSORED,
    ):
        response.completed_at = datetime.now(timezone.utc)

    if response.total_tokens == 0 and (response.input_tokens or response.output_tokens):
        response.total_tokens = response.input_tokens + response.output_tokens

    if response.citations:
        response.citations = clean_citations(response.citations)

    return response


async def _resolve_one(client: httpx.AsyncClient, url: str, title: str) -> str | None:
    try:
        resp = await client.head(url)
        final_url = str(resp.url)
    except httpx.HTTPError as e:
        logger.debug("Redirect resolution failed for %s: %s", url[:60], e)
        final_url = ""

    if final_url and not is_grounding_redirect(final_url) and "google.com/search" not in final_url:
        return final_url
    return url_from_title(title)


async def resolve_grounding_redirects(citations: list[dict], timeout: float = 8.0) -> list[dict]:
    """Replace grounding redirect URLs by the page they point to.

    Falls back to a URL guessed from the chunk title; citations that cannot
    be resolved either way are dropped.
    """
    pending = [c for c in citations if is_grounding_redirect(c.get("url", ""))]
    if not pending:
        return citations

    async with httpx.AsyncClient(timeout=timeout, follow_redirects=True, max_redirects=10) as client:
        resolved = await asyncio.gather(*[_resolve_one(client, c["url"], c.get("title", "")) for c in pending])
    redirect_map = {c["url"]: final for c, final in zip(pending, resolved)}

    result = []
    for cite in citations:
        url = cite.get("url", "")
        if url in redirect_map:
            if redirect_map[url] is None:
                continue
            cite = {**cite, "url": redirect_map[url], "domain": extract_domain(redirect_map[url])}
        result.append(cite)

    logger.debug("Resolved %d/%d grounding redirects", sum(1 for v in resolved if v), len(pending))
    return clean_citations(result)


YOUTUBE_OEMBED_URL = "https://www.youtube.com/oembed"


async def _oembed_one(client: httpx.AsyncClient, video_id: str) -> dict | None:
    params = {"url": f"https://www.youtube.com/watch?v={video_id}", "format": "json"}
    try:
        resp = await client.get(YOUTUBE_OEMBED_URL, params=params)
    except httpx.HTTPError as e:
        logger.debug("oEmbed lookup failed for %s: %s", video_id, e)
        return None
    if resp.status_code != 200:
        return None
    try:
        data = resp.json()
    except ValueError:
        return None
    if not isinstance(data, dict):
        return None
    return {"title": data.get("title") or None, "channel": data.get("author_name") or None}


async def fetch_youtube_metadata(video_ids: list[str], timeout: float = 5.0, concurrency: int = 5) -> dict[str, dict]:
    """Video title and channel name by video id, from YouTube's keyless oEmbed endpoint.

    Videos whose lookup fails are left out of the result.
    """
    unique = list(dict.fromkeys(v for v in video_ids if v))
    if not unique:
        return {}

    metadata: dict[str, dict] = {}
    async with httpx.AsyncClient(timeout=timeout, follow_redirects=True) as client:
        for start in range(0, len(unique), concurrency):
            batch = unique[start : start + concurrency]
            fetched = await asyncio.gather(*[_oembed_one(client, video_id) for video_id in batch])
            for video_id, data in zip(batch, fetched):
                if data:
                    metadata[video_id] = data

    logger.debug("Fetched YouTube metadata for %d/%d videos", len(metadata), len(unique))
    return metadata
