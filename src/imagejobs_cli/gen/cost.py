from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

TEXT_TOKEN_PRICE = 0.00001
DEFAULT_IMAGE_PRICE = 0.05

# per image: (square, non-square)
IMAGE_PRICES = {
    "low": (0.015, 0.020),
    "medium": (0.05, 0.065),
    "high": (0.18, 0.20),
}


@dataclass(frozen=True)
class CostBreakdown:
    input_tokens: int
    output_tokens: int
    text_input_cost: float
    text_output_cost: float
    image_cost: float

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens

    @property
    def total_cost(self) -> float:
        return self.text_input_cost + self.text_output_cost + self.image_cost


def image_price(quality: Optional[str], size: Optional[str]) -> float:
    prices = IMAGE_PRICES.get(quality or "")
    if prices is None:
        return DEFAULT_IMAGE_PRICE
    square, non_square = prices
    return square if size in (None, "1024x1024") else non_square


def calculate_cost(
    input_tokens: int,
    output_tokens: int,
    *,
    size: Optional[str] = None,
    quality: Optional[str] = None,
    sample_count: int = 1,
) -> CostBreakdown:
    return CostBreakdown(
        input_tokens=input_tokens,
        output_tokens=output_tokens,
        text_input_cost=input_tokens * TEXT_TOKEN_PRICE,
        text_output_cost=output_tokens * TEXT_TOKEN_PRICE,
        image_cost=image_price(quality, size) * sample_count,
    )


def format_cost(cost: CostBreakdown) -> str:
    return (
        f"Estimated cost: ${cost.total_cost:.4f} "
        f"({cost.total_tokens} tokens, image ${cost.image_cost:.4f})"
    )
