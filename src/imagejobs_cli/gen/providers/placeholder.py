from __future__ import annotations

import io
import textwrap
from typing import TYPE_CHECKING

from PIL import Image, ImageDraw

from ..provider import ImageProvider
from ..types import ImageGenRequest, ProviderResult

if TYPE_CHECKING:
    from ...config import PlaceholderProviderConfig


QUALITY_COLORS = {
    "low": (235, 235, 235, 255),
    "medium": (200, 220, 255, 255),
    "high": (220, 255, 220, 255),
}

PIL_FORMATS = {"png": "PNG", "jpeg": "JPEG", "webp": "WEBP"}


def parse_size(size: str) -> tuple[int, int]:
    if size == "auto":
        return 1024, 1024
    width, _, height = size.partition("x")
    return int(width), int(height)


def encode_image(img: Image.Image, output_format: str) -> bytes:
    fmt = PIL_FORMATS.get(output_format, "PNG")
    if fmt == "JPEG" and img.mode != "RGB":
        img = img.convert("RGB")
    buf = io.BytesIO()
    img.save(buf, format=fmt)
    return buf.getvalue()


class PlaceholderProvider(ImageProvider):
    """Offline provider that renders labelled images with Pillow."""

    def __init__(self, config: "PlaceholderProviderConfig | None" = None):
        self._config = config

    @property
    def provider_id(self) -> str:
        return "placeholder"

    async def generate(self, req: ImageGenRequest) -> ProviderResult:
        width, height = parse_size(req.size)
        images = []
        for index in range(req.sample_count):
            if req.background == "transparent":
                img = Image.new("RGBA", (width, height), (0, 0, 0, 0))
                d = ImageDraw.Draw(img)
                margin = min(width, height) // 16
                d.rectangle(
                    [margin, margin, width - margin, height - margin],
                    fill=QUALITY_COLORS.get(req.quality, (230, 230, 230, 255)),
                    outline=(0, 0, 0, 255),
                    width=4,
                )
            else:
                img = Image.new("RGBA", (width, height), QUALITY_COLORS.get(req.quality, (230, 230, 230, 255)))
            self._label(img, req, index)
            images.append(encode_image(img, req.output_format))
        return ProviderResult(images=images, usage=None, model_id=req.model)

    async def edit(self, req: ImageGenRequest) -> ProviderResult:
        if req.reference_image is None:
            raise ValueError("edit requires a reference image")
        base = Image.open(io.BytesIO(req.reference_image)).convert("RGBA")
        if req.size != "auto":
            base = base.resize(parse_size(req.size))
        images = []
        for index in range(req.sample_count):
            img = base.copy()
            self._label(img, req, index)
            images.append(encode_image(img, req.output_format))
        return ProviderResult(images=images, usage=None, model_id=req.model)

    def _label(self, img: Image.Image, req: ImageGenRequest, index: int) -> None:
        d = ImageDraw.Draw(img)
        label_lines = [
            f"Model: {req.model}",
            f"Size: {img.width}x{img.height}",
            f"Quality: {req.quality}",
            f"Sample: {index + 1}/{req.sample_count}",
            *textwrap.wrap(req.prompt, width=60)[:6],
        ]
        d.text((24, 24), "\n".join(label_lines), fill=(0, 0, 0, 255))
