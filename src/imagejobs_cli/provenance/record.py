from __future__ import annotations

import datetime as _dt
import hashlib
import json
from dataclasses import asdict, dataclass
from enum import Enum
from typing import Any, Optional


class MetadataLevel(str, Enum):
    MINIMAL = "minimal"
    STANDARD = "standard"
    FULL = "full"


def stable_json(obj: Any) -> str:
    return json.dumps(obj, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


def hash_parameters(params: dict[str, Any]) -> str:
    """SHA-256 over the canonical JSON form of ``params``.

    Keys are sorted at every level, so two mappings that are equal as
    unordered key/value sets always produce the same digest.
    """
    return hashlib.sha256(stable_json(params).encode("utf-8")).hexdigest()


def now_utc_iso() -> str:
    return _dt.datetime.now(tz=_dt.timezone.utc).isoformat().replace("+00:00", "Z")


@dataclass(frozen=True)
class ProvenanceRecord:
    id: str
    params_hash: str
    tool_name: Optional[str] = None
    model: Optional[str] = None
    created_at: Optional[str] = None
    size: Optional[str] = None
    quality: Optional[str] = None
    prompt: Optional[str] = None
    parameters: Optional[dict[str, Any]] = None

    def to_dict(self) -> dict[str, Any]:
        return {k: v for k, v in asdict(self).items() if v is not None}

    def to_json(self) -> str:
        # ASCII-only so the payload is valid Latin-1 for PNG tEXt and
        # plain ASCII for the EXIF ImageDescription tag.
        return json.dumps(self.to_dict(), separators=(",", ":"), ensure_ascii=True)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ProvenanceRecord":
        if not isinstance(data, dict):
            raise ValueError("provenance record must be a JSON object")
        if not isinstance(data.get("id"), str) or not isinstance(data.get("params_hash"), str):
            raise ValueError("provenance record requires string 'id' and 'params_hash'")
        parameters = data.get("parameters")
        return cls(
            id=data["id"],
            params_hash=data["params_hash"],
            tool_name=data.get("tool_name"),
            model=data.get("model"),
            created_at=data.get("created_at"),
            size=data.get("size"),
            quality=data.get("quality"),
            prompt=data.get("prompt"),
            parameters=parameters if isinstance(parameters, dict) else None,
        )


def build_record(
    image_id: str,
    params_hash: str,
    tool_name: str,
    model: str,
    size: str,
    quality: str,
    prompt: Optional[str] = None,
    parameters: Optional[dict[str, Any]] = None,
    level: MetadataLevel = MetadataLevel.STANDARD,
    created_at: Optional[str] = None,
) -> ProvenanceRecord:
    level = MetadataLevel(level)
    if level is MetadataLevel.MINIMAL:
        return ProvenanceRecord(id=image_id, params_hash=params_hash)

    include_full = level is MetadataLevel.FULL and prompt is not None and parameters is not None
    return ProvenanceRecord(
        id=image_id,
        params_hash=params_hash,
        tool_name=tool_name,
        model=model,
        created_at=created_at or now_utc_iso(),
        size=size,
        quality=quality,
        prompt=prompt if include_full else None,
        parameters=dict(parameters) if include_full else None,
    )
