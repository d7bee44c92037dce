"""Routing helpers for selecting the model provider behind the tutor.

The router does not couple directly to concrete SDK clients; it selects a
provider configuration that the generator uses to build an OpenAI-compatible
chat client. This keeps the selection policy unit-testable without network
access or API keys.
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Dict, Iterable, Mapping, Optional, Set


@dataclass(frozen=True)
class ProviderSelection:
    """Returned details about the provider that should handle a task."""

    name: str
    model: str
    api_key_env: str
    base_url: str


class ModelRouter:
    """Simple policy-based router over OpenAI-compatible providers."""

    PROVIDER_CONFIG: Dict[str, Dict[str, str]] = {
        "gemini": {
            "api_key_env": "GEMINI_API_KEY",
            "base_url_env": "GEMINI_BASE_URL",
            "model_env": "GEMINI_MODEL",
            "default_model": "gemini-1.5-flash",
            "default_base_url": "https://generativelanguage.googleapis.com/v1beta/openai/",
        },
        "openai": {
            "api_key_env": "OPENAI_API_KEY",
            "base_url_env": "OPENAI_BASE_URL",
            "model_env": "OPENAI_MODEL",
            "default_model": "gpt-4o-mini",
            "default_base_url": "https://api.openai.com/v1",
        },
        "xai": {
            "api_key_env": "XAI_API_KEY",
            "base_url_env": "XAI_BASE_URL",
            "model_env": "XAI_MODEL",
            "default_model": "grok-2-latest",
            "default_base_url": "https://api.x.ai/v1",
        },
    }

    ROUTING_POLICY: Dict[str, tuple[str, ...]] = {
        # Tutoring replies favour the cheapest fast model first.
        "tutoring": ("gemini", "openai", "xai"),
        # Session rollups are rarer and benefit from the stronger model.
        "summary": ("openai", "gemini", "xai"),
    }

    def __init__(
        self,
        env: Optional[Mapping[str, str]] = None,
        allowed_providers: Optional[Iterable[str]] = None,
    ) -> None:
        self._env = env if env is not None else os.environ
        self._allowed: Optional[Set[str]] = set(allowed_providers) if allowed_providers else None
        preferred = (self._env.get("TUTORCHAT_MODEL_PROVIDER") or "").strip().lower()
        self._preferred_provider = preferred if preferred in self.PROVIDER_CONFIG else None

    def provider_available(self, provider: str) -> bool:
        cfg = self.PROVIDER_CONFIG.get(provider)
        if not cfg:
            return False
        if self._allowed is not None and provider not in self._allowed:
            return False
        return bool(self._env.get(cfg["api_key_env"]))

    def resolve_provider(self, provider: str) -> ProviderSelection:
        cfg = self.PROVIDER_CONFIG[provider]
        return ProviderSelection(
            name=provider,
            model=self._env.get(cfg["model_env"]) or cfg["default_model"],
            api_key_env=cfg["api_key_env"],
            base_url=self._env.get(cfg["base_url_env"]) or cfg["default_base_url"],
        )

    def select_provider(self, purpose: str) -> ProviderSelection:
        """Return the provider selected for the supplied purpose.

        Raises
        ------
        RuntimeError
            If no providers configured for the requested purpose are
            currently available.
        """

        priority = list(self.ROUTING_POLICY.get(purpose, self.ROUTING_POLICY["tutoring"]))
        if self._preferred_provider:
            priority = [self._preferred_provider] + [p for p in priority if p != self._preferred_provider]
        for provider in priority:
            if self.provider_available(provider):
                return self.resolve_provider(provider)
        raise RuntimeError("No active model provider available for this task.")

    def maybe_select_provider(self, purpose: str) -> Optional[ProviderSelection]:
        """Like :meth:`select_provider` but returns ``None`` on failure."""

        try:
            return self.select_provider(purpose)
        except RuntimeError:
            return None
