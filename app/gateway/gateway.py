"""Model Gateway: orchestrator integrating all gateway components.

Main entry point for asking the providers a question:
  1. Waits for a rate limit slot (RPM window + concurrency cap per provider)
  2. Dispatches via the provider adapter, bounded by the provider timeout
  3. Normalizes the response and resolves grounding redirects
  4. Records metrics

The gateway never retries and never raises for provider failures: the
outcome of every call is a GatewayResponse status.

Usage:
    gateway = ModelGateway.from_settings()
    dual = await gateway.ask_both(prompt, question_id="VIS__us-en__Q1")
"""

from __future__ import annotations

import asyncio
import logging

from app.core.config import settings
from app.core.metrics import GATEWAY_CALLS, GATEWAY_LATENCY
from app.gateway.normalizer import normalize_response, resolve_grounding_redirects
from app.gateway.rate_limiter import AdaptiveRateLimiter
from app.gateway.types import (
    DualResponse,
    GatewayRequest,
    GatewayResponse,
    ProviderConfig,
    ProviderName,
    RequestStatus,
    default_provider_configs,
)
from app.gateway.vendor_adapters import BaseProviderAdapter, get_adapter

logger = logging.getLogger(__name__)


class ModelGateway:
    """Calls Gemini and OpenAI for one prompt and returns both raw answers."""

    def __init__(
        self,
        api_keys: dict[str, str] | None = None,
        provider_configs: dict[ProviderName, ProviderConfig] | None = None,
        models: dict[str, str] | None = None,
        resolve_redirects: bool = True,
    ):
        """
        Args:
            api_keys: Mapping of provider name → API key
            provider_configs: Override default provider configurations
            models: Mapping of provider name → default model
            resolve_redirects: Follow Gemini grounding redirects to the cited page
        """
        self.api_keys = api_keys or {}
        self.configs = provider_configs or default_provider_configs()
        self.models = models or {}
        self.resolve_redirects = resolve_redirects

        self.rate_limiter = AdaptiveRateLimiter(self.configs)
        self._adapters: dict[ProviderName, BaseProviderAdapter] = {}

    @classmethod
    def from_settings(cls) -> "ModelGateway":
        return cls(
            api_keys={
                ProviderName.GEMINI.value: settings.gemini_api_key,
                ProviderName.OPENAI.value: settings.openai_api_key,
            },
            provider_configs=default_provider_configs(settings.provider_timeout_seconds),
            models={
                ProviderName.GEMINI.value: settings.gemini_model,
                ProviderName.OPENAI.value: settings.openai_model,
            },
        )

    def _get_adapter(self, provider: ProviderName) -> BaseProviderAdapter | None:
        """Get or create adapter for a provider."""
        if provider not in self._adapters:
            api_key = self.api_keys.get(provider.value, "")
            if not api_key:
                return None
            self._adapters[provider] = get_adapter(provider, api_key)
        return self._adapters[provider]

    async def execute(self, request: GatewayRequest, timeout: float | None = None) -> GatewayResponse:
        """Execute one request. Always returns a response, never raises."""
        provider = request.provider
        config = self.configs.get(provider, ProviderConfig(provider=provider))
        timeout = timeout or config.timeout_seconds

        adapter = self._get_adapter(provider)
        if adapter is None:
            response = GatewayResponse(
                request_id=request.request_id,
                provider=provider,
                status=RequestStatus.NOT_CONFIGURED,
                error_message=f"No API key configured for {provider.value}",
                report_id=request.report_id,
                question_id=request.question_id,
            )
            GATEWAY_CALLS.labels(provider=provider.value, status=response.status.value).inc()
            return response

        if not request.model:
            request.model = self.models.get(provider.value, "")

        acquired = await self.rate_limiter.acquire_blocking(provider, timeout=timeout)
        if not acquired:
            response = GatewayResponse(
                request_id=request.request_id,
                provider=provider,
                status=RequestStatus.RATE_LIMITED,
                error_message="Rate limit acquisition timeout",
                report_id=request.report_id,
                question_id=request.question_id,
            )
            GATEWAY_CALLS.labels(provider=provider.value, status=response.status.value).inc()
            return response

        try:
            with GATEWAY_LATENCY.labels(provider=provider.value).time():
                response = await asyncio.wait_for(adapter.send(request, timeout=timeout), timeout=timeout)
        except asyncio.TimeoutError:
            response = GatewayResponse(
                request_id=request.request_id,
                provider=provider,
                status=RequestStatus.TIMEOUT,
                error_message=f"No answer within {timeout}s",
                report_id=request.report_id,
                question_id=request.question_id,
            )
        except Exception as e:
            # Connection resets, malformed bodies: still a per-call failure
            logger.warning("%s call for %s failed: %s", provider.value, request.question_id or request.request_id, e)
            response = GatewayResponse(
                request_id=request.request_id,
                provider=provider,
                status=RequestStatus.VENDOR_ERROR,
                error_message=str(e) or type(e).__name__,
                report_id=request.report_id,
                question_id=request.question_id,
            )
        finally:
            self.rate_limiter.release(provider)

        if response.status == RequestStatus.SUCCESS and self.resolve_redirects and response.citations:
            response.citations = await resolve_grounding_redirects(response.citations)

        GATEWAY_CALLS.labels(provider=provider.value, status=response.status.value).inc()
        if response.status != RequestStatus.SUCCESS:
            logger.info(
                "%s %s for %s: %s",
                provider.value,
                response.status.value,
                request.question_id or request.request_id,
                response.error_message,
            )
        return normalize_response(response)

    async def ask(
        self,
        provider: ProviderName,
        prompt: str,
        *,
        system_prompt: str = "",
        grounding: bool = True,
        json_mode: bool = False,
        model: str = "",
        timeout: float | None = None,
        report_id: str = "",
        question_id: str = "",
    ) -> GatewayResponse:
        request = GatewayRequest(
            provider=provider,
            model=model,
            system_prompt=system_prompt,
            user_prompt=prompt,
            temperature=settings.model_temperature,
            max_tokens=settings.model_max_output_tokens,
            grounding=grounding,
            json_mode=json_mode,
            report_id=report_id,
            question_id=question_id,
        )
        return await self.execute(request, timeout=timeout)

    async def ask_both(self, prompt: str, *, report_id: str = "", question_id: str = "") -> DualResponse:
        """Ask both providers concurrently with search grounding on."""
        gemini, openai = await asyncio.gather(
            self.ask(ProviderName.GEMINI, prompt, report_id=report_id, question_id=question_id),
            self.ask(ProviderName.OPENAI, prompt, report_id=report_id, question_id=question_id),
        )
        return DualResponse(gemini=gemini, openai=openai)

    def get_status(self) -> dict:
        return {
            "rate_limits": self.rate_limiter.get_all_stats(),
            "configured_providers": [name for name, key in self.api_keys.items() if key],
        }
