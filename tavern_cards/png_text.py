from __future__ import annotations

import logging
import zlib
from dataclasses import dataclass
from typing import Callable, Dict, Iterator, Optional, Tuple

from .png_utils import Chunk, iter_chunks

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TextChunk:
    kind: str
    keyword: str
    text: str
    offset: int


def _inflate_zlib(body: bytes) -> bytes:
    return zlib.decompress(body)


def _inflate_raw(body: bytes) -> bytes:
    return zlib.decompress(body, -zlib.MAX_WBITS)


def _inflate_stripped(body: bytes) -> bytes:
    # 有些工具寫入的 zlib 標頭/校驗碼不正確，去掉 2 bytes 標頭與 4 bytes adler32 後直接 raw inflate
    if len(body) <= 6:
        raise ValueError("壓縮內容過短")
    return zlib.decompress(body[2:-4], -zlib.MAX_WBITS)


INFLATE_STRATEGIES: Tuple[Callable[[bytes], bytes], ...] = (
    _inflate_zlib,
    _inflate_raw,
    _inflate_stripped,
)


def inflate(body: bytes) -> Optional[bytes]:
    for strategy in INFLATE_STRATEGIES:
        try:
            return strategy(body)
        except (zlib.error, ValueError) as exc:
            logger.debug("%s 解壓失敗：%s", strategy.__name__, exc)
    return None


def _decode(raw: bytes) -> str:
    return raw.decode("utf-8", errors="replace")


def _split_keyword(data: bytes) -> Optional[Tuple[str, int]]:
    sep = data.find(b"\x00")
    if sep == -1:
        return None
    return data[:sep].decode("latin1"), sep


def _decode_text(chunk: Chunk) -> Optional[TextChunk]:
    split = _split_keyword(chunk.data)
    if split is None:
        return None
    keyword, sep = split
    return TextChunk("tEXt", keyword, _decode(chunk.data[sep + 1 :]), chunk.offset)


def _decode_ztxt(chunk: Chunk) -> Optional[TextChunk]:
    split = _split_keyword(chunk.data)
    if split is None:
        return None
    keyword, sep = split
    # sep + 1 是壓縮方法
    inflated = inflate(chunk.data[sep + 2 :])
    if not inflated:
        return None
    return TextChunk("zTXt", keyword, _decode(inflated), chunk.offset)


def _decode_itxt(chunk: Chunk) -> Optional[TextChunk]:
    split = _split_keyword(chunk.data)
    if split is None:
        return None
    keyword, sep = split
    data = chunk.data
    if len(data) < sep + 3:
        return None
    compressed = data[sep + 1] == 1
    lang_end = data.find(b"\x00", sep + 3)
    if lang_end == -1:
        return None
    translated_end = data.find(b"\x00", lang_end + 1)
    if translated_end == -1 or translated_end + 1 >= len(data):
        return None
    raw = data[translated_end + 1 :]
    if compressed:
        inflated = inflate(raw)
        if not inflated:
            return None
        raw = inflated
    return TextChunk("iTXt", keyword, _decode(raw), chunk.offset)


TEXT_CHUNK_DECODERS: Dict[bytes, Callable[[Chunk], Optional[TextChunk]]] = {
    b"tEXt": _decode_text,
    b"zTXt": _decode_ztxt,
    b"iTXt": _decode_itxt,
}


def iter_text_chunks(data: bytes) -> Iterator[TextChunk]:
    """依出現順序產出可解碼的文字 chunk，解不開的 chunk 直接略過。"""
    for chunk in iter_chunks(data):
        decoder = TEXT_CHUNK_DECODERS.get(chunk.chunk_type)
        if decoder is None:
            continue
        text_chunk = decoder(chunk)
        if text_chunk is None:
            logger.debug("略過無法解碼的 %s chunk offset=%s", chunk.type_name, chunk.offset)
            continue
        yield text_chunk
