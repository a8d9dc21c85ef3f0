from __future__ import annotations

from abc import ABC, abstractmethod

from .types import ImageGenRequest, ProviderResult


class ImageProvider(ABC):
    @property
    @abstractmethod
    def provider_id(self) -> str: ...

    @abstractmethod
    async def generate(self, req: ImageGenRequest) -> ProviderResult:
        """Generate ``req.sample_count`` images from the prompt."""
        raise NotImplementedError

    @abstractmethod
    async def edit(self, req: ImageGenRequest) -> ProviderResult:
        """Produce images from ``req.reference_image`` (and optional mask)."""
        raise NotImplementedError

    async def aclose(self) -> None:
        return None
