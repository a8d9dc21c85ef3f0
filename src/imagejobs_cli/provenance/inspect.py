from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Optional

from .codec import VerificationResult, extract_from_file, verify
from .record import ProvenanceRecord

if TYPE_CHECKING:
    from ..store import HistoryRecord, Store


@dataclass(frozen=True)
class ImageInspection:
    path: Path
    record: Optional[ProvenanceRecord]
    history: Optional["HistoryRecord"] = None
    verification: Optional[VerificationResult] = None


def inspect_image(path: Path, store: "Store") -> ImageInspection:
    """Read an image's provenance record and check it against its history."""
    record = extract_from_file(path)
    if record is None:
        return ImageInspection(path=path, record=None)

    history = store.get_history(record.id)
    if history is None:
        return ImageInspection(path=path, record=record)

    return ImageInspection(
        path=path,
        record=record,
        history=history,
        verification=verify(record, history.parameters),
    )
