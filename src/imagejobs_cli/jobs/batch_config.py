from __future__ import annotations

from pathlib import Path
from typing import Any, Literal, Optional

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from ..errors import InvalidInputError
from ..gen.types import ToolName
from ..io import read_yaml


class BatchConfigError(InvalidInputError):
    pass


class RetryPolicy(BaseModel):
    model_config = ConfigDict(extra="forbid")
    max_retries: int = Field(2, ge=0, le=5)
    retry_delay_ms: int = Field(5000, ge=100, le=60000)
    retry_on_errors: list[str] = Field(default_factory=lambda: ["rate_limit", "timeout"])

    def should_retry(self, error_message: str) -> bool:
        message = error_message.lower()
        return any(pattern.lower() in message for pattern in self.retry_on_errors)


class BatchJobSpec(BaseModel):
    model_config = ConfigDict(extra="forbid")
    prompt: str
    tool_name: ToolName = ToolName.GENERATE
    output_path: Optional[str] = None
    model: Optional[Literal["gpt-image-1", "gpt-image-1.5"]] = None
    size: Optional[Literal["1024x1024", "1024x1536", "1536x1024", "auto"]] = None
    quality: Optional[Literal["low", "medium", "high", "auto"]] = None
    output_format: Optional[Literal["png", "jpeg", "webp"]] = None
    transparent_background: Optional[bool] = None
    moderation: Optional[Literal["auto", "low"]] = None
    sample_count: int = Field(1, ge=1, le=10)
    reference_image_path: Optional[str] = None
    mask_image_path: Optional[str] = None
    input_fidelity: Optional[Literal["low", "high"]] = None

    @field_validator("prompt")
    @classmethod
    def validate_prompt(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("prompt is required and must be a non-empty string")
        return v

    @model_validator(mode="after")
    def check_reference_image(self) -> "BatchJobSpec":
        if self.tool_name is not ToolName.GENERATE and not self.reference_image_path:
            raise ValueError(f"{self.tool_name.value} requires reference_image_path")
        return self

    def to_parameters(self, index: int, output_dir: Optional[Path] = None) -> dict[str, Any]:
        """Operation parameters for this spec; ``index`` is zero-based."""
        params = self.model_dump(exclude_none=True, exclude={"tool_name"})
        fmt = self.output_format or "png"
        output_path = Path(self.output_path or f"batch_{index + 1}.{fmt}")
        if output_dir is not None and not output_path.is_absolute():
            output_path = output_dir / output_path
        params["output_path"] = str(output_path)
        return params


class BatchConfig(BaseModel):
    model_config = ConfigDict(extra="forbid", populate_by_name=True)
    jobs: list[BatchJobSpec] = Field(min_length=1, max_length=100)
    output_dir: Optional[Path] = None
    max_concurrent: int = Field(2, ge=1, le=10)
    timeout_ms: int = Field(600_000, ge=1000, le=3_600_000, alias="timeout")
    retry_policy: Optional[RetryPolicy] = None


def parse_batch_config(data: Any) -> BatchConfig:
    if not isinstance(data, dict):
        raise BatchConfigError("Configuration must be a mapping with a 'jobs' list")
    try:
        return BatchConfig.model_validate(data)
    except ValidationError as e:
        raise BatchConfigError(f"Invalid batch configuration: {e}") from e


def load_batch_config(path: Path, defaults: Optional[dict[str, Any]] = None) -> BatchConfig:
    """Load a JSON or YAML batch file; keys missing from the file fall back
    to ``defaults`` (the ``[batch]`` section of the app config)."""
    try:
        data = read_yaml(path)
    except (OSError, ValueError, yaml.YAMLError) as e:
        raise BatchConfigError(f"Failed to load config file {path}: {e}") from e
    if "timeout" in data:
        data["timeout_ms"] = data.pop("timeout")
    merged = dict(defaults or {})
    merged.update(data)
    return parse_batch_config(merged)
