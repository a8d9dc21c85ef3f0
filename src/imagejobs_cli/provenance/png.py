from __future__ import annotations

import struct
import zlib
from dataclasses import dataclass
from typing import Iterator, Optional

from ..errors import CodecError

PNG_SIGNATURE = b"\x89PNG\r\n\x1a\n"
TEXT_KEYWORD = b"imagejobs_provenance"


@dataclass(frozen=True)
class PngChunk:
    type: bytes
    data: bytes
    start: int
    end: int


def iter_chunks(data: bytes) -> Iterator[PngChunk]:
    """Walk the chunk stream up to and including IEND."""
    if not data.startswith(PNG_SIGNATURE):
        raise CodecError("missing PNG signature")

    pos = len(PNG_SIGNATURE)
    while pos < len(data):
        if pos + 8 > len(data):
            raise CodecError(f"truncated chunk header at offset {pos}")
        length, ctype = struct.unpack(">I4s", data[pos:pos + 8])
        end = pos + 12 + length
        if end > len(data):
            raise CodecError(f"chunk {ctype!r} at offset {pos} runs past end of data")
        yield PngChunk(ctype, data[pos + 8:pos + 8 + length], pos, end)
        if ctype == b"IEND":
            return
        pos = end

    raise CodecError("IEND chunk not found")


def make_chunk(ctype: bytes, payload: bytes) -> bytes:
    crc = zlib.crc32(ctype + payload) & 0xFFFFFFFF
    return struct.pack(">I", len(payload)) + ctype + payload + struct.pack(">I", crc)


def _text_keyword(chunk: PngChunk) -> Optional[bytes]:
    if chunk.type != b"tEXt":
        return None
    keyword, sep, _ = chunk.data.partition(b"\x00")
    return keyword if sep else None


def embed_text(data: bytes, text: str) -> bytes:
    """Return ``data`` with one provenance tEXt chunk placed before IEND.

    Earlier provenance chunks are dropped; every other chunk, and any bytes
    trailing IEND, are copied byte-for-byte.
    """
    payload = TEXT_KEYWORD + b"\x00" + text.encode("latin-1")
    out = [PNG_SIGNATURE]
    for chunk in iter_chunks(data):
        if chunk.type == b"IEND":
            out.append(make_chunk(b"tEXt", payload))
            out.append(data[chunk.start:])
            break
        elif _text_keyword(chunk) == TEXT_KEYWORD:
            continue
        out.append(data[chunk.start:chunk.end])
    return b"".join(out)


def extract_text(data: bytes) -> Optional[str]:
    for chunk in iter_chunks(data):
        if _text_keyword(chunk) == TEXT_KEYWORD:
            return chunk.data[len(TEXT_KEYWORD) + 1:].decode("latin-1")
    return None
