from __future__ import annotations

import os
from pathlib import Path
from typing import Literal, Mapping, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from .jobs.batch_config import RetryPolicy
from .provenance.record import MetadataLevel

CONFIG_FILENAME = "imagejobs.toml"


class PlaceholderProviderConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")


class OpenAIProviderConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")
    api_key_env: str = "OPENAI_API_KEY"
    organization_env: str = "OPENAI_ORGANIZATION"
    model: Literal["gpt-image-1", "gpt-image-1.5"] = "gpt-image-1"
    base_url: str = "https://api.openai.com/v1"
    timeout_sec: float = Field(300.0, gt=0)


class ProvidersConfig(BaseModel):
    model_config = ConfigDict(extra="allow")
    placeholder: Optional[PlaceholderProviderConfig] = None
    openai: Optional[OpenAIProviderConfig] = None


class StorageConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")
    db_path: Path = Path("~/.imagejobs/history.db")
    output_dir: Path = Path("~/Downloads/imagejobs")

    @field_validator("db_path", "output_dir")
    @classmethod
    def expand_home(cls, v: Path) -> Path:
        return v.expanduser()


class MetadataConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")
    embed: bool = True
    level: MetadataLevel = MetadataLevel.STANDARD


class BatchDefaults(BaseModel):
    model_config = ConfigDict(extra="forbid")
    max_concurrent: int = Field(2, ge=1, le=10)
    timeout_ms: int = Field(600_000, ge=1000, le=3_600_000)
    retry_policy: Optional[RetryPolicy] = None


class IJConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")
    default_provider: str = "placeholder"
    providers: ProvidersConfig = ProvidersConfig()
    storage: StorageConfig = StorageConfig()
    metadata: MetadataConfig = MetadataConfig()
    batch: BatchDefaults = BatchDefaults()

    @field_validator("default_provider")
    @classmethod
    def validate_default_provider(cls, v: str) -> str:
        if not v:
            raise ValueError("default_provider cannot be empty")
        return v

    @model_validator(mode="after")
    def check_default_provider_exists(self) -> "IJConfig":
        provider_names = configured_providers(self.providers)
        if self.default_provider not in provider_names:
            raise ValueError(
                f"default_provider '{self.default_provider}' is not configured. "
                f"Available providers: {sorted(provider_names)}"
            )
        return self


def configured_providers(providers: ProvidersConfig) -> set[str]:
    # placeholder needs no settings and is always available
    names = {"placeholder"}
    if providers.openai is not None:
        names.add("openai")
    for name in providers.model_extra or {}:
        names.add(name)
    return names


class ConfigError(Exception):
    def __init__(self, message: str, path: Optional[Path] = None, line: Optional[int] = None):
        self.path = path
        self.line = line
        if path:
            loc = f"{path}"
            if line:
                loc += f":{line}"
            message = f"{loc}: {message}"
        super().__init__(message)


def load_config(config_path: Path) -> IJConfig:
    if not config_path.exists():
        raise ConfigError(
            f"Config file not found: {config_path}\n"
            f"Copy {CONFIG_FILENAME}.example to {CONFIG_FILENAME}",
            path=config_path,
        )

    try:
        import tomllib
    except ImportError:
        import tomli as tomllib  # type: ignore

    try:
        text = config_path.read_text()
        data = tomllib.loads(text)
    except tomllib.TOMLDecodeError as e:
        raise ConfigError(f"Failed to parse TOML: {e}", path=config_path, line=getattr(e, "lineno", None)) from e
    except OSError as e:
        raise ConfigError(f"Failed to read config: {e}", path=config_path) from e

    try:
        return IJConfig.model_validate(data)
    except ValidationError as e:
        raise ConfigError(f"Invalid configuration: {e}", path=config_path) from e


def find_config(start_dir: Optional[Path] = None) -> Path:
    if start_dir is None:
        start_dir = Path.cwd()

    current = start_dir.resolve()
    while current != current.parent:
        candidate = current / CONFIG_FILENAME
        if candidate.exists():
            return candidate
        current = current.parent

    return start_dir / CONFIG_FILENAME


def _parse_bool(value: str) -> bool:
    return value.strip().lower() not in ("false", "0", "no", "off")


def apply_env_overrides(config: IJConfig, environ: Optional[Mapping[str, str]] = None) -> IJConfig:
    """Return a copy of ``config`` with environment overrides applied."""
    env = os.environ if environ is None else environ

    storage = config.storage.model_dump()
    metadata = config.metadata.model_dump()
    batch = config.batch.model_dump()

    if env.get("OPENAI_IMAGE_OUTPUT_DIR"):
        storage["output_dir"] = env["OPENAI_IMAGE_OUTPUT_DIR"]
    if env.get("HISTORY_DB_PATH"):
        storage["db_path"] = env["HISTORY_DB_PATH"]
    if env.get("OPENAI_IMAGE_EMBED_METADATA"):
        metadata["embed"] = _parse_bool(env["OPENAI_IMAGE_EMBED_METADATA"])
    if env.get("OPENAI_IMAGE_METADATA_LEVEL"):
        metadata["level"] = env["OPENAI_IMAGE_METADATA_LEVEL"].strip().lower()
    if env.get("OPENAI_BATCH_MAX_CONCURRENT"):
        batch["max_concurrent"] = env["OPENAI_BATCH_MAX_CONCURRENT"]
    if env.get("OPENAI_BATCH_TIMEOUT"):
        batch["timeout_ms"] = env["OPENAI_BATCH_TIMEOUT"]

    try:
        return config.model_copy(
            update={
                "storage": StorageConfig.model_validate(storage),
                "metadata": MetadataConfig.model_validate(metadata),
                "batch": BatchDefaults.model_validate(batch),
            }
        )
    except ValidationError as e:
        raise ConfigError(f"Invalid environment override: {e}") from e


def load_settings(config_path: Optional[Path] = None, environ: Optional[Mapping[str, str]] = None) -> IJConfig:
    """Load the app config.

    An explicit ``config_path`` must exist. Without one, the nearest
    ``imagejobs.toml`` above the working directory is used, or defaults when
    there is none. Environment overrides are applied last.
    """
    if config_path is not None:
        config = load_config(config_path)
    else:
        found = find_config()
        config = load_config(found) if found.exists() else IJConfig()
    return apply_env_overrides(config, environ)
