from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Optional


class ToolName(str, Enum):
    GENERATE = "generate_image"
    EDIT = "edit_image"
    TRANSFORM = "transform_image"


@dataclass(frozen=True)
class ImageGenRequest:
    prompt: str
    model: str
    size: str
    quality: str
    output_format: str
    sample_count: int = 1
    moderation: Optional[str] = None
    background: Optional[str] = None
    reference_image: Optional[bytes] = None
    mask_image: Optional[bytes] = None
    input_fidelity: Optional[str] = None

    @property
    def is_edit(self) -> bool:
        return self.reference_image is not None


@dataclass(frozen=True)
class TokenUsage:
    input_tokens: int
    output_tokens: int

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens


@dataclass(frozen=True)
class ProviderResult:
    images: list[bytes] = field(default_factory=list)
    usage: Optional[TokenUsage] = None
    model_id: Optional[str] = None
