"""Default prompt builders.

Every answer prompt asks for a bare JSON body; the shapes requested here are
the ones ``response_shapes.resolve_answer`` understands.
"""

from __future__ import annotations

import json

from app.analysis.types import AnalysisConfig, AnalysisKind, CategoryFamilyConfig, MarketConfig, Question

_JSON_RULES = """CRITICAL OUTPUT RULES:
- Return ONLY raw JSON, starting with { and ending with }
- Do NOT wrap your response in markdown code blocks
- Do NOT add any explanatory text before or after the JSON"""

_SOURCE_FIELDS = """  "sources_cited_news": [
    {"url": "https://www.example-news.com/article", "title": "Article title", "youtube_channel": null}
  ],
  "sources_cited_other": [
    {"url": "https://www.example-review.com/page", "title": "Page title", "youtube_channel": null}
  ]"""

_SOURCE_RULES = """- Use "sources_cited_news" for news outlets and magazines, "sources_cited_other" for everything else.
- "youtube_channel" is REQUIRED for YouTube sources (the channel name), null otherwise.
- Use REAL, EXISTING sources. Use [] when you have none."""


def market_instructions(market: MarketConfig | None) -> str:
    if market is None:
        return ""
    parts = [f"Focus on {market.country}", f"in {market.language} language"]
    if market.language.lower() != "english":
        parts.append(f"Search for and cite {market.language}-language sources when available")
    return " " + ". ".join(parts) + "."


def build_reputation_prompt(question: str, entity: str, market: MarketConfig | None = None) -> str:
    return f"""Question: {question}

Provide a detailed response about {entity}.{market_instructions(market)}

{_JSON_RULES}

Output ONLY valid JSON in this exact format:
{{
  "raw_response": "Your detailed response (2-3 sentences of clear, factual information)",
  "sources_cited": [
    {{"url": "https://www.example-source.com/article", "title": "Article title", "youtube_channel": null}}
  ]
}}

- "youtube_channel" is REQUIRED for YouTube sources (the channel name), null otherwise.
- Include 3-5 REAL, VERIFIABLE sources."""


def build_visibility_prompt(question: str, category: str, market: MarketConfig | None = None) -> str:
    return f"""Question: {question}

{_JSON_RULES}

Given the category "{category}",{market_instructions(market)} return a ranking of entities for this
category with a brief explanation for each, then the sources that support the overall analysis.

Output ONLY valid JSON in this exact format:
{{
  "entities_ranking": [
    {{"rank": 1, "name": "Brand Name", "comment": "Why this brand is notable for {category}"}},
    {{"rank": 2, "name": "Another Brand", "comment": "Why this brand is notable for {category}"}}
  ],
{_SOURCE_FIELDS}
}}

{_SOURCE_RULES}"""


def build_competitive_prompt(
    question: str, entities: list[str], category: str = "", market: MarketConfig | None = None
) -> str:
    entity_list = ", ".join(entities)
    context = f" for {category}" if category else ""
    analysis_template = {
        name: {
            "pros": [{"point": "Positive aspect", "sources": [{"url": "https://example.com/source", "title": "Title"}]}],
            "cons": [{"point": "Negative aspect", "sources": [{"url": "https://example.com/source", "title": "Title"}]}],
        }
        for name in entities
    }
    return f"""Question: {question}

Compare these entities{context}: {entity_list}.{market_instructions(market)}

{_JSON_RULES}

Choose exactly ONE entity from the list that best fits{context}. Return your choice, a short
pros/cons analysis of every entity and the sources that support your choice.

Output ONLY valid JSON in this exact format:
{{
  "entity_choice": "Brand Name",
  "entity_analysis": {json.dumps(analysis_template, ensure_ascii=False)},
{_SOURCE_FIELDS},
  "raw_response": "Why this entity was chosen (max 150 characters)"
}}

- "entity_choice" MUST be exactly one of: {entity_list}
- "entity_analysis": exactly 2 pros and 2 cons per entity
{_SOURCE_RULES}"""


def build_category_detection_prompt(question: str, entity: str, market: MarketConfig | None = None) -> str:
    return f"""Question: {question}

{_JSON_RULES}

Analyze what core product/service categories {entity} is associated with.{market_instructions(market)}

- Category names are 1-3 words with no marketing qualifiers ("Running Shoes", not "Premium Running Shoes").
- Rank categories by strength of association (1 = strongest), 3-7 categories in total.
- For each category list the top 3-5 competitor brands. NEVER include {entity} among the competitors.

Output ONLY valid JSON in this exact format:
{{
  "categories": [
    {{
      "rank": 1,
      "name": "Running Shoes",
      "comment": "10-20 words about {entity} in this category",
      "top_competitors": [
        {{"rank": 1, "name": "Competitor", "comment": "Position in the category"}}
      ]
    }}
  ]
}}"""


def build_question_prompt(
    question: Question,
    config: AnalysisConfig,
    market: MarketConfig | None = None,
    family: CategoryFamilyConfig | None = None,
) -> str:
    """Prompt for one question, in the scope its ids say it belongs to."""
    code = market.market_code if market else None
    category = (family.translations.get(code or "") or family.canonical_name) if family else config.category

    if question.kind == AnalysisKind.REPUTATION:
        return build_reputation_prompt(question.text, config.entity, market)
    if question.kind == AnalysisKind.VISIBILITY:
        return build_visibility_prompt(question.text, category, market)
    if question.kind == AnalysisKind.COMPETITIVE:
        competitors = (family.competitors.get(code or "") if family else None) or config.competitors
        return build_competitive_prompt(question.text, [config.entity, *competitors], category, market)
    return build_category_detection_prompt(question.text, config.entity, market)


# ---------------------------------------------------------------------------
# Utility prompts (utility model, no grounding)
# ---------------------------------------------------------------------------


def build_source_classification_prompt(items: list[dict], entity: str, competitors: list[str]) -> str:
    competitor_list = ", ".join(competitors) if competitors else "other major players in the category"
    return f"""You are classifying source types for brand reputation monitoring.

Brand being monitored: "{entity}"
Competitors: {competitor_list}

Sources to classify:
{json.dumps(items, indent=2, ensure_ascii=False)}

Classify each source into EXACTLY ONE of these categories (use the exact string):
"Journalism", "Owned Media", "Competitor Media", "Social / UGC", "Aggregators / Encyclopedic",
"Government/NGO", "Academic/Research", "Paid/Advertorial", "Press Release",
"Corporate Blogs & Content", "Other"

Priority rules:
- A source on {entity}'s own domain or channel is "Owned Media".
- A source on a competitor's domain or channel ({competitor_list}) is "Competitor Media"; set "competitor_name".
- "Owned Media" and "Competitor Media" take priority over "Corporate Blogs & Content".
- Review platforms and forums are "Social / UGC"; wikis and news aggregators are "Aggregators / Encyclopedic".
- YouTube channels are classified by WHO RUNS THE CHANNEL.

Confidence: "high" when the domain clearly matches, "medium" when the pattern matches,
"low" when inferred from the title only.

Return ONLY:
{{"classifications": [{{"id": 0, "source_type": "Journalism", "competitor_name": null, "confidence": "high", "reasoning": "Major news outlet"}}]}}"""


def build_brand_grouping_prompt(entities: list[str], target: str) -> str:
    return f"""Group these entities by their parent brand or company.

INPUT ENTITIES:
{json.dumps(entities, indent=2, ensure_ascii=False)}

TARGET BRAND: "{target}"

- Group product names, subsidiaries, abbreviations and variations under the parent brand.
- List every entity that is, or belongs to, "{target}" in "target_matches".

Return ONLY:
{{
  "brand_groups": {{"ParentBrand": ["entity1", "entity2"]}},
  "target_matches": ["entity1"],
  "confidence": 0.9
}}"""


def build_reputation_extraction_prompt(entity: str, answers: list[str]) -> str:
    numbered = "\n".join(f"{i}. {text}" for i, text in enumerate(answers, start=1))
    return f"""These are answers about "{entity}":

{numbered}

Extract the recurring sentiment topics about {entity}. For each topic give a short name,
a sentiment score between -1 and 1 and how many answers mention it.

Return ONLY:
{{"topics": [{{"topic": "Product quality", "sentiment": 0.7, "mentions": 3}}]}}"""


def build_dimension_classification_prompt(attributes: list[dict], category: str) -> str:
    return f"""You are classifying brand attributes into competitive dimensions for a "{category}" analysis.

Attributes to classify:
{json.dumps(attributes, indent=2, ensure_ascii=False)}

Classify each attribute into EXACTLY ONE of these dimensions (use the exact string):
"Quality", "Innovation", "Pricing", "Market Position", "Brand Reputation",
"Sustainability", "Design", "Performance", "Customer Experience"

- Choose the dimension that best captures the dominant theme of the attribute.
- Repair and maintenance costs are "Quality", insurance premiums are "Pricing".
- Market share or sales leadership is "Market Position"; trust and image are "Brand Reputation".

Return ONLY:
{{"classifications": [{{"id": 0, "dimension": "Quality"}}]}}"""


def build_collaboration_prompt(opportunity: dict, entity: str, sources: list[dict]) -> str:
    source_lines = (
        "\n".join(f"- {s['domain']} ({s['source_type']}): {s.get('title') or 'No title'}" for s in sources)
        or "No high-authority sources identified"
    )
    return f"""You are a PR strategist. Suggest collaborations that improve how AI assistants present "{entity}".

OPPORTUNITY:
- Title: {opportunity.get('title')}
- Description: {opportunity.get('description') or 'No description'}
- Type: {opportunity.get('opportunity_type')}
- Theme: {opportunity.get('theme_category')}
- Impact: {opportunity.get('impact_score')} ({opportunity.get('impact_label')})
- Effort: {opportunity.get('effort_score')} ({opportunity.get('effort_label')})
- Priority: {opportunity.get('priority_tier')}
- Recommended actions: {json.dumps(opportunity.get('recommended_actions') or [], ensure_ascii=False)}

HIGH-AUTHORITY SOURCES IN THIS SPACE:
{source_lines}

- Give 3 to 5 collaborations with specific pitch angles, preferring the domains above.
- Keep every description under 100 characters.
{_JSON_RULES}

Return ONLY:
{{
  "collaborations": [
    {{
      "target_type": "Journalist|Academic|Industry Analyst|Influencer|Partner",
      "target_description": "Ideal collaboration target",
      "domains_to_target": ["example.com"],
      "pitch_angle": "Angle for approaching this target",
      "talking_points": ["Point 1", "Point 2"],
      "expected_outcome": "What this could achieve",
      "approach_strategy": "How to initiate contact"
    }}
  ],
  "pitch_strategy": {{
    "primary_narrative": "Main story to push",
    "key_differentiators": ["Differentiator"],
    "proof_points": ["Evidence to cite"],
    "timing_recommendations": "Best timing for outreach"
  }},
  "content_ideas": [
    {{
      "type": "Guest Article|Research Report|Case Study|Interview|Webinar",
      "title_suggestion": "Potential title",
      "target_publications": ["publication"],
      "key_takeaways": ["Takeaway"]
    }}
  ]
}}"""
