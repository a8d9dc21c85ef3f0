"""Embed and read provenance records inside PNG and JPEG byte streams.

Metadata is an enhancement: embedding never fails the surrounding
operation and extraction never raises. Malformed input degrades to "no
metadata" with a logged warning.
"""
from __future__ import annotations

import json
import logging
import struct
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Optional

from ..errors import CodecError, IntegrityError
from . import jpeg, png
from .record import ProvenanceRecord, hash_parameters

logger = logging.getLogger(__name__)

_PARSE_ERRORS = (CodecError, ValueError, struct.error)


def detect_format(data: bytes) -> Optional[str]:
    if data.startswith(png.PNG_SIGNATURE):
        return "png"
    if data.startswith(b"\xff\xd8\xff"):
        return "jpeg"
    if data[:4] == b"RIFF" and data[8:12] == b"WEBP":
        return "webp"
    return None


def _normalize_format(fmt: str) -> str:
    fmt = fmt.lower().lstrip(".")
    return "jpeg" if fmt == "jpg" else fmt


def embed(data: bytes, record: ProvenanceRecord, fmt: str) -> bytes:
    fmt = _normalize_format(fmt)
    if fmt not in ("png", "jpeg"):
        logger.debug("Format %s does not carry provenance metadata; leaving bytes unchanged", fmt)
        return data

    try:
        if fmt == "png":
            return png.embed_text(data, record.to_json())
        return jpeg.embed_text(data, record.to_json())
    except _PARSE_ERRORS as e:
        logger.warning("Failed to embed %s provenance metadata: %s", fmt.upper(), e)
        return data


def extract(data: bytes) -> Optional[ProvenanceRecord]:
    fmt = detect_format(data)
    try:
        if fmt == "png":
            text = png.extract_text(data)
        elif fmt == "jpeg":
            text = jpeg.extract_text(data)
        else:
            logger.debug("Unsupported image format for provenance extraction: %s", fmt)
            return None
        if text is None:
            return None
        return ProvenanceRecord.from_dict(json.loads(text))
    except _PARSE_ERRORS as e:
        logger.warning("Could not read %s provenance metadata: %s", fmt, e)
        return None


def extract_from_file(path: Path) -> Optional[ProvenanceRecord]:
    try:
        data = Path(path).read_bytes()
    except OSError as e:
        logger.warning("Could not read image file %s: %s", path, e)
        return None
    return extract(data)


@dataclass(frozen=True)
class VerificationResult:
    valid: bool
    message: str


def verify(record: ProvenanceRecord, stored_params: dict[str, Any]) -> VerificationResult:
    expected = hash_parameters(stored_params)
    if expected == record.params_hash:
        return VerificationResult(True, "Image integrity verified: parameter hashes match")
    return VerificationResult(
        False,
        "Image integrity check failed: hash mismatch "
        f"(stored: {expected[:16]}..., image: {record.params_hash[:16]}...)",
    )


def assert_authentic(record: ProvenanceRecord, stored_params: dict[str, Any]) -> None:
    result = verify(record, stored_params)
    if not result.valid:
        raise IntegrityError(result.message)
