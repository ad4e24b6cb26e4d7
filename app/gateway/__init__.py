"""Model Gateway Layer.

Async infrastructure for asking the two providers (Gemini, OpenAI) the same
question with:
  - Adaptive Rate Limiter (RPM window + concurrency cap per provider)
  - Provider Adapters (protocol differences, citation extraction)
  - Response Normalizer (unified DTO, grounding redirect resolution)
"""
