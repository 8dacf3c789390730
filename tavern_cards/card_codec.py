from __future__ import annotations

import base64
import json
import logging
import re
from typing import Any, Callable, Dict, List, Optional, Tuple

from .errors import NoCardDataError, NotAPngError
from .png_text import TextChunk, iter_text_chunks
from .png_utils import build_text_chunk, insert_chunk_before_iend, is_png_data

CARD_CHUNK_KEYWORDS = frozenset({"chara", "character", "tavern", "sillytavern", "ccv3"})
EXPORT_KEYWORD = "chara"
WHITESPACE_PATTERN = re.compile(r"\s")
logger = logging.getLogger(__name__)


def _parse_base64_json(text: str) -> Any:
    clean = WHITESPACE_PATTERN.sub("", text)
    clean += "=" * (-len(clean) % 4)
    decoded = base64.b64decode(clean, validate=True)
    return json.loads(decoded.decode("utf-8"))


def _parse_raw_json(text: str) -> Any:
    return json.loads(text)


# 各家工具不一定會做 base64，先試 base64 再試原始 JSON
PAYLOAD_STRATEGIES: Tuple[Callable[[str], Any], ...] = (_parse_base64_json, _parse_raw_json)


def interpret_payload(text: str) -> Optional[Dict[str, Any]]:
    for strategy in PAYLOAD_STRATEGIES:
        try:
            value = strategy(text)
        except ValueError:
            continue
        if isinstance(value, dict):
            return value
    return None


def _is_card_chunk(chunk: TextChunk) -> bool:
    keyword = chunk.keyword.lower()
    if keyword in CARD_CHUNK_KEYWORDS:
        return True
    return chunk.kind == "iTXt" and keyword == ""


def _looks_like_json(text: str) -> bool:
    stripped = text.strip()
    return stripped.startswith("{") or stripped.startswith("ey")


def _has_name(payload: Dict[str, Any]) -> bool:
    if payload.get("name"):
        return True
    nested = payload.get("data")
    return isinstance(nested, dict) and bool(nested.get("name"))


def decode_card_png(data: bytes) -> Dict[str, Any]:
    """
    從 PNG 取出角色卡 JSON（尚未拆開 spec/data 外層）。

    先找已知關鍵字（chara/ccv3 等）的文字 chunk，第一個解析成功者勝出；
    都沒有的話，再從任何看起來像 JSON 的 chunk 中找出帶有 name 的物件。
    """
    if not is_png_data(data):
        raise NotAPngError()

    fallback_chunks: List[TextChunk] = []
    for chunk in iter_text_chunks(data):
        if _looks_like_json(chunk.text):
            fallback_chunks.append(chunk)
        if not _is_card_chunk(chunk):
            continue
        payload = interpret_payload(chunk.text)
        if payload is not None:
            logger.debug("角色資料來自 %s chunk keyword=%r", chunk.kind, chunk.keyword)
            return payload
        logger.debug("%s chunk keyword=%r 無法解析為 JSON", chunk.kind, chunk.keyword)

    for chunk in fallback_chunks:
        payload = interpret_payload(chunk.text)
        if payload is not None and _has_name(payload):
            logger.info("使用未知關鍵字 %r 的 chunk 作為角色資料", chunk.keyword)
            return payload

    raise NoCardDataError()


def encode_card_text(card_payload: Dict[str, Any]) -> str:
    json_bytes = json.dumps(card_payload, ensure_ascii=False, separators=(",", ":")).encode("utf-8")
    return base64.b64encode(json_bytes).decode("ascii")


def embed_card_json(
    base_image: bytes,
    card_payload: Dict[str, Any],
    keyword: str = EXPORT_KEYWORD,
) -> bytes:
    """把角色卡 JSON 以 base64 tEXt chunk 插在 IEND 前，其餘位元組不動。"""
    if not is_png_data(base_image):
        raise NotAPngError("提供的頭像不是有效的 PNG")
    new_chunk = build_text_chunk(keyword, encode_card_text(card_payload))
    return insert_chunk_before_iend(base_image, new_chunk)
