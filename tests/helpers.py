import base64
import json
import zlib
from io import BytesIO
from typing import Any, Dict, Optional, Tuple

from PIL import Image

from tavern_cards.png_utils import PNG_SIGNATURE, build_chunk


def ihdr_chunk(width: int = 1, height: int = 1) -> bytes:
    header = width.to_bytes(4, "big") + height.to_bytes(4, "big") + bytes([8, 2, 0, 0, 0])
    return build_chunk(b"IHDR", header)


def make_png(*extra_chunks: bytes) -> bytes:
    """1x1 RGB PNG，額外的 chunk 放在 IHDR 與 IDAT 之間。"""
    idat = build_chunk(b"IDAT", zlib.compress(b"\x00\xff\x00\x00"))
    return PNG_SIGNATURE + ihdr_chunk() + b"".join(extra_chunks) + idat + build_chunk(b"IEND", b"")


def b64_json(payload: Dict[str, Any]) -> str:
    return base64.b64encode(json.dumps(payload, ensure_ascii=False).encode("utf-8")).decode("ascii")


def text_chunk(keyword: str, text: str) -> bytes:
    return build_chunk(b"tEXt", keyword.encode("latin1") + b"\x00" + text.encode("utf-8"))


def ztxt_chunk(keyword: str, text: str, body: Optional[bytes] = None) -> bytes:
    compressed = body if body is not None else zlib.compress(text.encode("utf-8"))
    return build_chunk(b"zTXt", keyword.encode("latin1") + b"\x00\x00" + compressed)


def itxt_chunk(keyword: str, text: str, compressed: bool = False) -> bytes:
    raw = text.encode("utf-8")
    if compressed:
        raw = zlib.compress(raw)
    header = keyword.encode("latin1") + b"\x00" + bytes([1 if compressed else 0, 0])
    return build_chunk(b"iTXt", header + b"en\x00" + b"\x00" + raw)


def raw_deflate(data: bytes) -> bytes:
    compressor = zlib.compressobj(wbits=-zlib.MAX_WBITS)
    return compressor.compress(data) + compressor.flush()


def make_avatar(size: Tuple[int, int] = (4, 3), fmt: str = "PNG", color=(200, 30, 60)) -> bytes:
    output = BytesIO()
    Image.new("RGB", size, color).save(output, format=fmt)
    return output.getvalue()
