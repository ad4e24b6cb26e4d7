"""Core types and DTOs for the model gateway."""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------


class ProviderName(str, Enum):
    """Model providers every question is asked to."""

    GEMINI = "gemini"
    OPENAI = "openai"


class RequestStatus(str, Enum):
    """Outcome of a single provider call."""

    SUCCESS = "success"
    RATE_LIMITED = "rate_limited"
    VENDOR_ERROR = "vendor_error"
    TIMEOUT = "timeout"
    CENSORED = "censored"  # Gemini SAFETY filter or similar
    NOT_CONFIGURED = "not_configured"  # No API key for the provider


# Statuses a caller may retry (the gateway itself never does)
TRANSIENT_STATUSES = frozenset({RequestStatus.RATE_LIMITED, RequestStatus.TIMEOUT})


# ---------------------------------------------------------------------------
# Gateway Request: input to the gateway
# ---------------------------------------------------------------------------


@dataclass
class GatewayRequest:
    """A single prompt to send to one provider."""

    request_id: str = field(default_factory=lambda: uuid.uuid4().hex[:16])
    provider: ProviderName = ProviderName.GEMINI
    model: str = ""  # e.g. "gemini-2.5-flash", "gpt-4o-2024-11-20"
    system_prompt: str = ""
    user_prompt: str = ""
    temperature: float = 0.1
    max_tokens: int = 16000

    grounding: bool = True  # google_search tool / web search options
    json_mode: bool = False  # ask the provider for a bare JSON body

    # Context metadata (passed through to response)
    report_id: str = ""
    question_id: str = ""


# ---------------------------------------------------------------------------
# Gateway Response: unified DTO (output of the gateway)
# ---------------------------------------------------------------------------


@dataclass
class GatewayResponse:
    """Unified response DTO from either provider.

    Citations are dicts with ``url``, ``title`` and ``domain`` keys,
    already deduplicated by the normalizer.
    """

    request_id: str = ""
    provider: ProviderName = ProviderName.GEMINI
    model_version: str = ""
    status: RequestStatus = RequestStatus.SUCCESS

    # Content
    text: str = ""
    citations: list[dict[str, Any]] = field(default_factory=list)

    # Performance
    latency_ms: int = 0

    # Tokens
    input_tokens: int = 0
    output_tokens: int = 0
    total_tokens: int = 0

    # Timestamps
    started_at: datetime | None = None
    completed_at: datetime | None = None

    # Error details (if status != SUCCESS)
    error_code: str = ""  # e.g. "429", "503", "SAFETY"
    error_message: str = ""

    # Context (passed through from request)
    report_id: str = ""
    question_id: str = ""

    @property
    def ok(self) -> bool:
        return self.status == RequestStatus.SUCCESS and bool(self.text)

    @property
    def error(self) -> str | None:
        """Error string persisted next to the answer, or None on success."""
        if self.status == RequestStatus.SUCCESS:
            return None if self.text else "Empty response"
        detail = self.error_message or self.error_code
        return f"{self.status.value}: {detail}" if detail else self.status.value

    def to_dict(self) -> dict:
        """Serialize to JSON-compatible dict for storage/logging."""
        return {
            "request_id": self.request_id,
            "provider": self.provider.value,
            "model_version": self.model_version,
            "status": self.status.value,
            "text": self.text,
            "citations": self.citations,
            "latency_ms": self.latency_ms,
            "input_tokens": self.input_tokens,
            "output_tokens": self.output_tokens,
            "total_tokens": self.total_tokens,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "error_code": self.error_code,
            "error_message": self.error_message,
            "question_id": self.question_id,
        }


@dataclass
class DualResponse:
    """Both providers' answers to the same prompt."""

    gemini: GatewayResponse
    openai: GatewayResponse

    def by_provider(self) -> dict[ProviderName, GatewayResponse]:
        return {ProviderName.GEMINI: self.gemini, ProviderName.OPENAI: self.openai}


# ---------------------------------------------------------------------------
# Provider config
# ---------------------------------------------------------------------------


@dataclass
class ProviderConfig:
    """Rate limit and connection configuration for a provider."""

    provider: ProviderName
    rpm_limit: int = 60  # Requests per minute
    max_concurrent: int = 10  # Max concurrent requests
    timeout_seconds: float = 300.0  # Wall-clock bound for one call


def default_provider_configs(timeout_seconds: float = 300.0) -> dict[ProviderName, ProviderConfig]:
    return {
        ProviderName.GEMINI: ProviderConfig(
            provider=ProviderName.GEMINI,
            rpm_limit=150,
            max_concurrent=15,
            timeout_seconds=timeout_seconds,
        ),
        ProviderName.OPENAI: ProviderConfig(
            provider=ProviderName.OPENAI,
            rpm_limit=100,
            max_concurrent=15,
            timeout_seconds=timeout_seconds,
        ),
    }
