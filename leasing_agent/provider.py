from __future__ import annotations

import os

from .clock import Clock
from .config import AgentConfig
from .llm_client import FakeLLMClient, GeminiLLMClient, LLMClient, OpenAILLMClient
from .tools import AcceptAllBookingService, BookingService, LLMListingProvider, ListingProvider, StaticListingProvider


def build_llm_client(cfg: AgentConfig) -> LLMClient:
    if cfg.llm_provider == "gemini":
        return GeminiLLMClient(
            api_key=cfg.gemini_api_key or os.getenv("GEMINI_API_KEY", ""),
            model=cfg.gemini_model,
        )
    if cfg.llm_provider == "openai":
        return OpenAILLMClient(
            api_key=cfg.openai_api_key or os.getenv("OPENAI_API_KEY", ""),
            model=cfg.openai_model,
            timeout_ms=cfg.openai_timeout_ms,
        )
    return FakeLLMClient()


def build_listing_provider(cfg: AgentConfig, *, llm: LLMClient, clock: Clock) -> ListingProvider:
    if cfg.listing_provider == "llm":
        return LLMListingProvider(llm)
    return StaticListingProvider(clock)


def build_booking_service(cfg: AgentConfig) -> BookingService:
    return AcceptAllBookingService()
