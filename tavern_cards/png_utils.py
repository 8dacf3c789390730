from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Iterator, Optional, Tuple

from .errors import MissingIendError, NotAPngError, TruncatedChunkError

PNG_SIGNATURE = b"\x89PNG\r\n\x1a\n"
CHUNK_HEADER_SIZE = 8
CHUNK_CRC_SIZE = 4
IEND = b"IEND"
logger = logging.getLogger(__name__)


def _make_crc_table() -> Tuple[int, ...]:
    table = []
    for n in range(256):
        c = n
        for _ in range(8):
            c = 0xEDB88320 ^ (c >> 1) if c & 1 else c >> 1
        table.append(c)
    return tuple(table)


CRC_TABLE = _make_crc_table()


def crc32(data: bytes) -> int:
    """PNG 規格的 CRC-32（reflected 0xEDB88320，初始與結尾皆 XOR 0xFFFFFFFF）。"""
    crc = 0xFFFFFFFF
    for byte in data:
        crc = CRC_TABLE[(crc ^ byte) & 0xFF] ^ (crc >> 8)
    return crc ^ 0xFFFFFFFF


def is_png_data(data: bytes) -> bool:
    return len(data) >= len(PNG_SIGNATURE) and data.startswith(PNG_SIGNATURE)


@dataclass(frozen=True)
class Chunk:
    offset: int
    chunk_type: bytes
    data: bytes
    crc: int

    @property
    def end(self) -> int:
        return self.offset + CHUNK_HEADER_SIZE + len(self.data) + CHUNK_CRC_SIZE

    @property
    def type_name(self) -> str:
        return self.chunk_type.decode("latin1")


def _read_chunk(data: bytes, pos: int) -> Chunk:
    length = int.from_bytes(data[pos : pos + 4], "big")
    chunk_type = data[pos + 4 : pos + 8]
    data_start = pos + CHUNK_HEADER_SIZE
    data_end = data_start + length
    if data_end > len(data):
        raise TruncatedChunkError(pos, length, len(data) - data_start)
    crc = int.from_bytes(data[data_end : data_end + CHUNK_CRC_SIZE], "big")
    return Chunk(offset=pos, chunk_type=chunk_type, data=data[data_start:data_end], crc=crc)


def iter_chunks(data: bytes) -> Iterator[Chunk]:
    """依位元組順序逐一產出 chunk；遇到截斷的 chunk 就當作檔案結尾。"""
    if not is_png_data(data):
        raise NotAPngError()

    pos = len(PNG_SIGNATURE)
    total = len(data)
    while pos + CHUNK_HEADER_SIZE <= total:
        try:
            chunk = _read_chunk(data, pos)
        except TruncatedChunkError as exc:
            logger.debug("PNG 掃描提前結束：%s", exc)
            return
        yield chunk
        if chunk.chunk_type == IEND:
            return
        pos = chunk.end


def build_chunk(chunk_type: bytes, chunk_data: bytes) -> bytes:
    length = len(chunk_data).to_bytes(4, "big")
    crc = crc32(chunk_type + chunk_data)
    return length + chunk_type + chunk_data + crc.to_bytes(4, "big")


def build_text_chunk(keyword: str, text: str) -> bytes:
    return build_chunk(b"tEXt", keyword.encode("latin1") + b"\x00" + text.encode("utf-8"))


def find_iend_offset(data: bytes) -> Optional[int]:
    """回傳 IEND chunk 長度欄位的位置，找不到則為 None。"""
    for chunk in iter_chunks(data):
        if chunk.chunk_type == IEND:
            return chunk.offset
    return None


def insert_chunk_before_iend(data: bytes, chunk_bytes: bytes) -> bytes:
    iend_offset = find_iend_offset(data)
    if iend_offset is None:
        raise MissingIendError()
    return data[:iend_offset] + chunk_bytes + data[iend_offset:]
