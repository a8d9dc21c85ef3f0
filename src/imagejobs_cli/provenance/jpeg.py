from __future__ import annotations

import json
import struct
from dataclasses import dataclass
from typing import Iterator, Optional

from ..errors import CodecError

SOI = b"\xff\xd8"
APP1 = 0xE1
SOS = 0xDA
EOI = 0xD9
EXIF_HEADER = b"Exif\x00\x00"
IMAGE_DESCRIPTION = 0x010E
TIFF_ASCII = 2
TIFF_UNDEFINED = 7
MAX_SEGMENT_LENGTH = 0xFFFF


@dataclass(frozen=True)
class JpegSegment:
    marker: int
    payload: bytes
    start: int
    end: int


def _is_app(marker: int) -> bool:
    return 0xE0 <= marker <= 0xEF


def _is_standalone(marker: int) -> bool:
    return marker == 0x01 or 0xD0 <= marker <= 0xD7


def iter_segments(data: bytes) -> Iterator[JpegSegment]:
    """Yield header segments in order; the last one yielded is the empty
    SOS (or EOI) marker where entropy-coded data starts."""
    if not data.startswith(SOI):
        raise CodecError("missing JPEG start-of-image marker")

    pos = len(SOI)
    while pos + 1 < len(data):
        if data[pos] != 0xFF:
            raise CodecError(f"expected marker at offset {pos}")
        marker = data[pos + 1]
        if marker == 0xFF:
            pos += 1
            continue
        if marker in (SOS, EOI):
            yield JpegSegment(marker, b"", pos, pos)
            return
        if _is_standalone(marker):
            yield JpegSegment(marker, b"", pos, pos + 2)
            pos += 2
            continue
        if pos + 4 > len(data):
            raise CodecError(f"truncated segment header at offset {pos}")
        (length,) = struct.unpack(">H", data[pos + 2:pos + 4])
        end = pos + 2 + length
        if length < 2 or end > len(data):
            raise CodecError(f"segment 0x{marker:02X} at offset {pos} has bad length {length}")
        yield JpegSegment(marker, data[pos + 4:end], pos, end)
        pos = end

    raise CodecError("no start-of-scan marker found")


def build_exif_segment(text: str) -> bytes:
    value = text.encode("ascii") + b"\x00"
    value_offset = 8 + 2 + 12 + 4
    tiff = b"MM\x00\x2a" + struct.pack(">I", 8)
    ifd = (
        struct.pack(">H", 1)
        + struct.pack(">HHII", IMAGE_DESCRIPTION, TIFF_ASCII, len(value), value_offset)
        + struct.pack(">I", 0)
    )
    payload = EXIF_HEADER + tiff + ifd + value
    if len(payload) + 2 > MAX_SEGMENT_LENGTH:
        raise CodecError(f"provenance payload of {len(payload)} bytes does not fit in one APP1 segment")
    return b"\xff" + bytes([APP1]) + struct.pack(">H", len(payload) + 2) + payload


def _read_image_description(tiff: bytes) -> Optional[str]:
    if len(tiff) < 8:
        return None
    if tiff[:2] == b"MM":
        endian = ">"
    elif tiff[:2] == b"II":
        endian = "<"
    else:
        return None
    magic, ifd_offset = struct.unpack(endian + "HI", tiff[2:8])
    if magic != 42 or ifd_offset + 2 > len(tiff):
        return None

    (count,) = struct.unpack(endian + "H", tiff[ifd_offset:ifd_offset + 2])
    for i in range(count):
        entry_at = ifd_offset + 2 + 12 * i
        if entry_at + 12 > len(tiff):
            return None
        tag, typ, n, value_offset = struct.unpack(endian + "HHII", tiff[entry_at:entry_at + 12])
        if tag != IMAGE_DESCRIPTION or typ not in (TIFF_ASCII, TIFF_UNDEFINED):
            continue
        if n <= 4:
            raw = tiff[entry_at + 8:entry_at + 8 + n]
        elif value_offset + n <= len(tiff):
            raw = tiff[value_offset:value_offset + n]
        else:
            return None
        return raw.rstrip(b"\x00").decode("utf-8", errors="replace")
    return None


def _looks_like_record(obj: object) -> bool:
    return isinstance(obj, dict) and "id" in obj and "params_hash" in obj


def _scan_for_record(text: str) -> Optional[str]:
    decoder = json.JSONDecoder()
    idx = text.find("{")
    while idx != -1:
        try:
            obj, end = decoder.raw_decode(text, idx)
        except ValueError:
            obj, end = None, idx
        if _looks_like_record(obj):
            return text[idx:end]
        idx = text.find("{", idx + 1)
    return None


def _record_text(segment: JpegSegment) -> Optional[str]:
    if segment.marker != APP1 or not segment.payload.startswith(EXIF_HEADER):
        return None
    description = _read_image_description(segment.payload[len(EXIF_HEADER):])
    if description is not None:
        try:
            if _looks_like_record(json.loads(description)):
                return description
        except ValueError:
            pass
    return _scan_for_record(segment.payload.decode("latin-1"))


def embed_text(data: bytes, text: str) -> bytes:
    """Splice a provenance APP1 segment in after the leading application
    segments. A previous provenance segment is replaced; all other
    segments and the scan data are copied unchanged."""
    segments = list(iter_segments(data))
    insert_at = next(seg.start for seg in segments if not _is_app(seg.marker))

    out = [SOI]
    for seg in segments:
        if seg.start >= insert_at:
            break
        if _record_text(seg) is not None:
            continue
        out.append(data[seg.start:seg.end])
    out.append(build_exif_segment(text))
    out.append(data[insert_at:])
    return b"".join(out)


def extract_text(data: bytes) -> Optional[str]:
    for seg in iter_segments(data):
        text = _record_text(seg)
        if text is not None:
            return text
    return None
