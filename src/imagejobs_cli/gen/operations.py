from __future__ import annotations

import base64
import binascii
import logging
import math
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Awaitable, Callable, Literal, Mapping, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from ..errors import InvalidInputError, ProviderAPIError
from ..provenance.codec import embed
from ..provenance.record import MetadataLevel, build_record, hash_parameters
from ..store import Store
from .cost import CostBreakdown, calculate_cost
from .paths import numbered_path, resolve_input_path, resolve_output_path, unique_path
from .provider import ImageProvider
from .types import ImageGenRequest, ToolName

logger = logging.getLogger(__name__)

ImageModel = Literal["gpt-image-1", "gpt-image-1.5"]
ImageSize = Literal["1024x1024", "1024x1536", "1536x1024", "auto"]
ImageQuality = Literal["low", "medium", "high", "auto"]
ImageFormat = Literal["png", "jpeg", "webp"]

OUTPUT_TOKENS_PER_IMAGE = 4096


class _BaseParams(BaseModel):
    model_config = ConfigDict(extra="forbid")
    prompt: str
    output_path: Optional[str] = None
    model: ImageModel = "gpt-image-1"
    size: ImageSize = "auto"
    quality: ImageQuality = "auto"
    output_format: ImageFormat = "png"
    moderation: Literal["auto", "low"] = "auto"
    sample_count: int = Field(1, ge=1, le=10)

    @field_validator("prompt")
    @classmethod
    def validate_prompt(cls, v: str) -> str:
        if not v or not v.strip():
            raise ValueError("Prompt is required and cannot be empty")
        return v

    @property
    def actual_size(self) -> str:
        return "1024x1024" if self.size == "auto" else self.size

    @property
    def actual_quality(self) -> str:
        return "medium" if self.quality == "auto" else self.quality


class GenerateParams(_BaseParams):
    transparent_background: bool = False

    @model_validator(mode="after")
    def check_transparency(self) -> "GenerateParams":
        if self.transparent_background and self.output_format != "png":
            raise ValueError("Transparent background is only supported with PNG format")
        return self


class TransformParams(_BaseParams):
    reference_image_path: Optional[str] = None
    reference_image_base64: Optional[str] = None
    input_fidelity: Optional[Literal["low", "high"]] = None

    @model_validator(mode="after")
    def check_reference(self):
        if not self.reference_image_path and not self.reference_image_base64:
            raise ValueError(
                "Either reference_image_base64 or reference_image_path must be provided"
            )
        return self


class EditParams(TransformParams):
    mask_image_path: Optional[str] = None
    mask_image_base64: Optional[str] = None


def parse_params(model_cls: type[BaseModel], params: Mapping[str, Any]) -> Any:
    try:
        return model_cls.model_validate(dict(params))
    except ValidationError as e:
        messages = "; ".join(
            f"{'.'.join(str(p) for p in err['loc']) or 'params'}: {err['msg']}" for err in e.errors()
        )
        raise InvalidInputError(f"Invalid parameters: {messages}") from e


def _load_image(path: Optional[str], b64: Optional[str], what: str) -> Optional[bytes]:
    if path:
        return resolve_input_path(path).read_bytes()
    if b64:
        try:
            return base64.b64decode(b64, validate=True)
        except (binascii.Error, ValueError) as e:
            raise InvalidInputError(f"Invalid base64 data for {what}") from e
    return None


@dataclass(frozen=True)
class GenerationOutcome:
    history_id: str
    output_paths: list[Path]
    params_hash: str
    cost: CostBreakdown


Operation = Callable[[Mapping[str, Any]], Awaitable[GenerationOutcome]]


class GenerationService:
    """Runs the three generation operations against one provider.

    Each successful call writes the images (with provenance embedded when
    enabled) and creates exactly one history record whose id is the id
    embedded in the images.
    """

    def __init__(
        self,
        provider: ImageProvider,
        store: Store,
        output_dir: Path,
        *,
        embed_metadata: bool = True,
        metadata_level: MetadataLevel = MetadataLevel.STANDARD,
        default_model: Optional[str] = None,
    ):
        self.provider = provider
        self.store = store
        self.output_dir = Path(output_dir)
        self.embed_metadata = embed_metadata
        self.metadata_level = MetadataLevel(metadata_level)
        self.default_model = default_model

    def operations(self) -> dict[ToolName, Operation]:
        return {
            ToolName.GENERATE: self.generate,
            ToolName.EDIT: self.edit,
            ToolName.TRANSFORM: self.transform,
        }

    async def generate(self, params: Mapping[str, Any]) -> GenerationOutcome:
        p: GenerateParams = self._parse(GenerateParams, params)
        hashed = {
            "model": p.model,
            "prompt": p.prompt,
            "size": p.size,
            "quality": p.quality,
            "output_format": p.output_format,
            "transparent_background": p.transparent_background,
            "moderation": p.moderation,
            "sample_count": p.sample_count,
        }
        req = self._request(p, background="transparent" if p.transparent_background else None)
        return await self._run(ToolName.GENERATE, p, hashed, req, "generated_image")

    async def edit(self, params: Mapping[str, Any]) -> GenerationOutcome:
        p: EditParams = self._parse(EditParams, params)
        hashed = self._edit_hash_params(p)
        req = self._request(
            p,
            reference_image=_load_image(p.reference_image_path, p.reference_image_base64, "reference image"),
            mask_image=_load_image(p.mask_image_path, p.mask_image_base64, "mask image"),
            input_fidelity=p.input_fidelity,
        )
        return await self._run(ToolName.EDIT, p, hashed, req, "edited_image")

    async def transform(self, params: Mapping[str, Any]) -> GenerationOutcome:
        p: TransformParams = self._parse(TransformParams, params)
        hashed = self._edit_hash_params(p)
        req = self._request(
            p,
            reference_image=_load_image(p.reference_image_path, p.reference_image_base64, "reference image"),
            input_fidelity=p.input_fidelity,
        )
        return await self._run(ToolName.TRANSFORM, p, hashed, req, "transformed_image")

    def _parse(self, model_cls: type[BaseModel], params: Mapping[str, Any]) -> Any:
        if self.default_model and params.get("model") is None:
            params = {**params, "model": self.default_model}
        return parse_params(model_cls, params)

    @staticmethod
    def _edit_hash_params(p: TransformParams) -> dict[str, Any]:
        return {
            "model": p.model,
            "prompt": p.prompt,
            "size": p.size,
            "quality": p.quality,
            "output_format": p.output_format,
            "moderation": p.moderation,
            "sample_count": p.sample_count,
            "input_fidelity": p.input_fidelity,
        }

    @staticmethod
    def _request(p: _BaseParams, **extra: Any) -> ImageGenRequest:
        return ImageGenRequest(
            prompt=p.prompt,
            model=p.model,
            size=p.size,
            quality=p.quality,
            output_format=p.output_format,
            sample_count=p.sample_count,
            moderation=p.moderation,
            **extra,
        )

    async def _run(
        self,
        tool: ToolName,
        p: _BaseParams,
        hashed: dict[str, Any],
        req: ImageGenRequest,
        default_stem: str,
    ) -> GenerationOutcome:
        output_path = resolve_output_path(
            p.output_path or f"{default_stem}.{p.output_format}", self.output_dir
        )
        output_path = unique_path(output_path, p.sample_count)

        image_id = str(uuid.uuid4())
        stored_params = {k: v for k, v in hashed.items() if v is not None}
        params_hash = hash_parameters(stored_params)
        logger.debug("Generation %s (%s) params hash %s", image_id, tool.value, params_hash[:16])

        if req.is_edit:
            result = await self.provider.edit(req)
        else:
            result = await self.provider.generate(req)
        if not result.images:
            raise ProviderAPIError("No image data returned from API")

        record = build_record(
            image_id,
            params_hash,
            tool_name=tool.value,
            model=result.model_id or p.model,
            size=p.actual_size,
            quality=p.actual_quality,
            prompt=p.prompt,
            parameters=stored_params,
            level=self.metadata_level,
        )

        saved: list[Path] = []
        for i, data in enumerate(result.images, start=1):
            path = numbered_path(output_path, i) if len(result.images) > 1 else output_path
            if self.embed_metadata:
                data = embed(data, record, p.output_format)
            path.write_bytes(data)
            saved.append(path)
            logger.debug("Image %d saved to %s", i, path)

        if result.usage is not None:
            input_tokens = result.usage.input_tokens
            output_tokens = result.usage.output_tokens
        else:
            input_tokens = math.ceil(len(p.prompt) / 4)
            output_tokens = OUTPUT_TOKENS_PER_IMAGE * p.sample_count
        cost = calculate_cost(
            input_tokens,
            output_tokens,
            size=p.actual_size,
            quality=p.actual_quality,
            sample_count=len(saved),
        )

        self.store.create_history(
            history_id=image_id,
            tool_name=tool.value,
            prompt=p.prompt,
            parameters=stored_params,
            output_paths=[str(s) for s in saved],
            sample_count=p.sample_count,
            size=p.actual_size,
            quality=p.actual_quality,
            output_format=p.output_format,
            params_hash=params_hash,
            input_tokens=cost.input_tokens,
            output_tokens=cost.output_tokens,
            total_tokens=cost.total_tokens,
            estimated_cost=cost.total_cost,
        )
        logger.info("%s produced %d image(s), history %s", tool.value, len(saved), image_id)
        return GenerationOutcome(
            history_id=image_id,
            output_paths=saved,
            params_hash=params_hash,
            cost=cost,
        )
