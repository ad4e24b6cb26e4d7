"""Provider adapters: protocol-level handling for each model provider.

Each adapter translates a GatewayRequest into the provider's HTTP protocol,
sends it, and returns a GatewayResponse with normalized fields.

Provider-specific behaviors:
  - Gemini: generateContent with the google_search tool; citations come from
    candidates[0].groundingMetadata.groundingChunks; finishReason SAFETY → CENSORED
  - OpenAI: Chat Completions; citations come from message.annotations (url_citation)

Adapters never retry and never raise for HTTP-level failures: the outcome is
reported through RequestStatus.
"""

from __future__ import annotations

import logging
import time
from abc import ABC, abstractmethod
from datetime import datetime, timezone

import httpx

from app.gateway.types import (
    GatewayRequest,
    GatewayResponse,
    ProviderName,
    RequestStatus,
)

logger = logging.getLogger(__name__)


class BaseProviderAdapter(ABC):
    """Base class for all provider adapters."""

    provider: ProviderName

    def __init__(self, api_key: str):
        self.api_key = api_key

    @abstractmethod
    async def send(self, request: GatewayRequest, timeout: float = 300.0) -> GatewayResponse:
        """Send a request to the provider and return a normalized response."""
        ...

    def _base_response(self, request: GatewayRequest) -> GatewayResponse:
        """Create a base response with context from the request."""
        return GatewayResponse(
            request_id=request.request_id,
            provider=self.provider,
            report_id=request.report_id,
            question_id=request.question_id,
            started_at=datetime.now(timezone.utc),
        )

    @staticmethod
    def _mark_http_error(response: GatewayResponse, exc: httpx.HTTPStatusError) -> None:
        response.status = RequestStatus.VENDOR_ERROR
        response.error_code = str(exc.response.status_code)
        response.error_message = str(exc)


# ---------------------------------------------------------------------------
# Gemini Adapter (Google AI)
# ---------------------------------------------------------------------------


class GeminiAdapter(BaseProviderAdapter):
    """Google Gemini adapter with search grounding and SAFETY filter detection."""

    provider = ProviderName.GEMINI
    default_model = "gemini-2.5-flash"
    api_url_template = "https://generativelanguage.googleapis.com/v1beta/models/{model}:generateContent"

    def build_payload(self, request: GatewayRequest) -> dict:
        payload: dict = {
            "contents": [{"role": "user", "parts": [{"text": request.user_prompt}]}],
            "generationConfig": {
                "temperature": request.temperature,
                "maxOutputTokens": request.max_tokens,
            },
        }
        if request.grounding:
            payload["tools"] = [{"google_search": {}}]
        elif request.json_mode:
            # responseMimeType cannot be combined with the search tool
            payload["generationConfig"]["responseMimeType"] = "application/json"

        # System instruction (separate from contents in Gemini API)
        if request.system_prompt:
            payload["systemInstruction"] = {"parts": [{"text": request.system_prompt}]}
        return payload

    async def send(self, request: GatewayRequest, timeout: float = 300.0) -> GatewayResponse:
        response = self._base_response(request)
        model = request.model or self.default_model
        start = time.monotonic()

        url = self.api_url_template.format(model=model)
        payload = self.build_payload(request)

        try:
            async with httpx.AsyncClient(timeout=timeout) as client:
                resp = await client.post(
                    url,
                    json=payload,
                    headers={"x-goog-api-key": self.api_key, "Content-Type": "application/json"},
                )

            response.latency_ms = int((time.monotonic() - start) * 1000)

            if resp.status_code == 429:
                response.status = RequestStatus.RATE_LIMITED
                response.error_code = "429"
                response.error_message = "Rate limited by Google AI"
                return response

            resp.raise_for_status()
            data = resp.json()

            candidates = data.get("candidates", [])
            if not candidates:
                # No candidates, check prompt feedback
                block_reason = data.get("promptFeedback", {}).get("blockReason", "")
                response.status = RequestStatus.CENSORED if block_reason else RequestStatus.VENDOR_ERROR
                response.error_code = f"BLOCKED_{block_reason}" if block_reason else "NO_CANDIDATES"
                response.error_message = (
                    f"Prompt blocked: {block_reason}" if block_reason else "Gemini returned no candidates"
                )
                response.completed_at = datetime.now(timezone.utc)
                return response

            candidate = candidates[0]
            if candidate.get("finishReason") == "SAFETY":
                response.status = RequestStatus.CENSORED
                response.error_code = "SAFETY"
                response.error_message = "Gemini safety filter triggered"
                response.completed_at = datetime.now(timezone.utc)
                return response

            # Gemini may split the answer into several parts
            parts = candidate.get("content", {}).get("parts", [])
            response.text = "".join(p.get("text", "") for p in parts if "text" in p)
            response.citations = self.extract_citations(candidate)
            response.model_version = data.get("modelVersion", model)

            usage = data.get("usageMetadata", {})
            response.input_tokens = usage.get("promptTokenCount", 0)
            response.output_tokens = usage.get("candidatesTokenCount", 0)
            response.total_tokens = usage.get("totalTokenCount", 0)

            response.status = RequestStatus.SUCCESS
            response.completed_at = datetime.now(timezone.utc)

        except httpx.TimeoutException:
            response.status = RequestStatus.TIMEOUT
            response.error_message = f"Gemini timeout after {timeout}s"
            response.latency_ms = int((time.monotonic() - start) * 1000)
        except httpx.HTTPStatusError as e:
            self._mark_http_error(response, e)
            response.latency_ms = int((time.monotonic() - start) * 1000)

        return response

    @staticmethod
    def extract_citations(candidate: dict) -> list[dict]:
        chunks = (candidate.get("groundingMetadata") or {}).get("groundingChunks") or []
        citations = []
        for chunk in chunks:
            web = chunk.get("web") or {}
            if web.get("uri"):
                citations.append({"url": web["uri"], "title": web.get("title") or ""})
        return citations


# ---------------------------------------------------------------------------
# OpenAI Adapter
# ---------------------------------------------------------------------------


_OPENAI_JSON_SYSTEM_PROMPT = (
    "You are a JSON-only assistant. You MUST return ONLY valid JSON with no additional text, "
    "explanations, or markdown formatting."
)


class OpenAIAdapter(BaseProviderAdapter):
    """OpenAI Chat Completions adapter."""

    provider = ProviderName.OPENAI
    default_model = "gpt-4o-2024-11-20"
    api_url = "https://api.openai.com/v1/chat/completions"

    def build_payload(self, request: GatewayRequest) -> dict:
        model = request.model or self.default_model
        system_prompt = request.system_prompt or (_OPENAI_JSON_SYSTEM_PROMPT if request.json_mode else "")

        payload: dict = {
            "model": model,
            "messages": [],
            "max_tokens": request.max_tokens,
        }
        if system_prompt:
            payload["messages"].append({"role": "system", "content": system_prompt})
        payload["messages"].append({"role": "user", "content": request.user_prompt})

        if request.grounding and "search" in model:
            # Search-preview models reject temperature
            payload["web_search_options"] = {}
        else:
            payload["temperature"] = request.temperature
            if request.json_mode:
                payload["response_format"] = {"type": "json_object"}
        return payload

    async def send(self, request: GatewayRequest, timeout: float = 300.0) -> GatewayResponse:
        response = self._base_response(request)
        payload = self.build_payload(request)
        start = time.monotonic()

        try:
            async with httpx.AsyncClient(timeout=timeout) as client:
                resp = await client.post(
                    self.api_url,
                    json=payload,
                    headers={
                        "Authorization": f"Bearer {self.api_key}",
                        "Content-Type": "application/json",
                    },
                )

            response.latency_ms = int((time.monotonic() - start) * 1000)

            if resp.status_code == 429:
                response.status = RequestStatus.RATE_LIMITED
                response.error_code = "429"
                response.error_message = "Rate limited by OpenAI"
                return response

            resp.raise_for_status()
            data = resp.json()

            message = data["choices"][0]["message"]
            response.text = message.get("content") or ""
            response.citations = self.extract_citations(message)
            response.model_version = data.get("model", payload["model"])

            usage = data.get("usage", {})
            response.input_tokens = usage.get("prompt_tokens", 0)
            response.output_tokens = usage.get("completion_tokens", 0)
            response.total_tokens = response.input_tokens + response.output_tokens

            response.status = RequestStatus.SUCCESS
            response.completed_at = datetime.now(timezone.utc)

        except httpx.TimeoutException:
            response.status = RequestStatus.TIMEOUT
            response.error_message = f"OpenAI timeout after {timeout}s"
            response.latency_ms = int((time.monotonic() - start) * 1000)
        except httpx.HTTPStatusError as e:
            self._mark_http_error(response, e)
            response.latency_ms = int((time.monotonic() - start) * 1000)

        return response

    @staticmethod
    def extract_citations(message: dict) -> list[dict]:
        citations = []
        for annotation in message.get("annotations") or []:
            if annotation.get("type") != "url_citation":
                continue
            cite = annotation.get("url_citation") or {}
            if cite.get("url"):
                citations.append({"url": cite["url"], "title": cite.get("title") or ""})
        return citations


# ---------------------------------------------------------------------------
# Factory
# ---------------------------------------------------------------------------

_ADAPTERS: dict[ProviderName, type[BaseProviderAdapter]] = {
    ProviderName.GEMINI: GeminiAdapter,
    ProviderName.OPENAI: OpenAIAdapter,
}


def get_adapter(provider: ProviderName, api_key: str) -> BaseProviderAdapter:
    """Create an adapter instance for the given provider."""
    adapter_cls = _ADAPTERS.get(provider)
    if adapter_cls is None:
        raise ValueError(f"Unsupported provider: {provider}")
    return adapter_cls(api_key=api_key)
