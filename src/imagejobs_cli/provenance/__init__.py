from __future__ import annotations

from .codec import (
    VerificationResult,
    assert_authentic,
    detect_format,
    embed,
    extract,
    extract_from_file,
    verify,
)
from .inspect import ImageInspection, inspect_image
from .record import MetadataLevel, ProvenanceRecord, build_record, hash_parameters

__all__ = [
    "MetadataLevel",
    "ProvenanceRecord",
    "build_record",
    "hash_parameters",
    "detect_format",
    "embed",
    "extract",
    "extract_from_file",
    "verify",
    "assert_authentic",
    "VerificationResult",
    "ImageInspection",
    "inspect_image",
]
