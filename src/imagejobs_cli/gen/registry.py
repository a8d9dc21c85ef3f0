from __future__ import annotations

import os
from pathlib import Path
from typing import Mapping, Optional

from ..config import ConfigError, IJConfig, configured_providers, find_config, load_config
from .provider import ImageProvider
from .providers.openai import OpenAIProvider
from .providers.placeholder import PlaceholderProvider


class ProviderRegistry:
    def __init__(self, config: IJConfig, environ: Optional[Mapping[str, str]] = None):
        self._config = config
        self._environ = os.environ if environ is None else environ
        self._providers: dict[str, ImageProvider] = {}

    @classmethod
    def from_config_file(cls, config_path: Optional[Path] = None) -> "ProviderRegistry":
        if config_path is None:
            config_path = find_config()
        config = load_config(config_path)
        return cls(config)

    @property
    def config(self) -> IJConfig:
        return self._config

    def get_provider(self, name: str) -> ImageProvider:
        if name in self._providers:
            return self._providers[name]

        provider = self._instantiate_provider(name)
        self._providers[name] = provider
        return provider

    def get_default_provider(self) -> ImageProvider:
        return self.get_provider(self._config.default_provider)

    def default_model(self, name: str) -> Optional[str]:
        """Model configured for provider ``name``, if it has one."""
        if name == "openai" and self._config.providers.openai is not None:
            return self._config.providers.openai.model
        return None

    async def aclose(self) -> None:
        for provider in self._providers.values():
            await provider.aclose()
        self._providers.clear()

    def _instantiate_provider(self, name: str) -> ImageProvider:
        if name == "placeholder":
            return PlaceholderProvider(self._config.providers.placeholder)

        if name == "openai":
            settings = self._config.providers.openai
            if settings is None:
                raise ConfigError(
                    "Provider 'openai' is not configured in imagejobs.toml. "
                    "Add [providers.openai] section."
                )
            api_key = self._environ.get(settings.api_key_env)
            if not api_key:
                raise ConfigError(
                    f"Provider 'openai' needs an API key in ${settings.api_key_env}"
                )
            return OpenAIProvider(
                api_key,
                organization=self._environ.get(settings.organization_env),
                base_url=settings.base_url,
                timeout_sec=settings.timeout_sec,
            )

        available = configured_providers(self._config.providers)
        raise ConfigError(
            f"Unknown provider: '{name}'. Available providers: {sorted(available)}"
        )
