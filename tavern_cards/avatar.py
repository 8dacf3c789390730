from __future__ import annotations

import base64
import logging
from io import BytesIO
from pathlib import Path
from typing import Optional
from urllib.parse import unquote_to_bytes

import httpx
from PIL import Image

from .config import Settings
from .errors import ImageLoadError

logger = logging.getLogger(__name__)


def normalize_avatar(data: bytes) -> bytes:
    """把任意格式的頭像重新繪製成乾淨的 RGBA PNG（不帶任何文字 chunk）。"""
    try:
        with Image.open(BytesIO(data)) as image:
            image.load()
            canvas = Image.new("RGBA", image.size)
            canvas.paste(image.convert("RGBA"))
        output = BytesIO()
        canvas.save(output, format="PNG")
    except (OSError, ValueError, Image.DecompressionBombError) as exc:
        raise ImageLoadError(f"無法讀取頭像圖片：{exc}") from exc
    return output.getvalue()


def _decode_data_url(url: str) -> bytes:
    header, _, payload = url.partition(",")
    try:
        if header.endswith(";base64"):
            return base64.b64decode(payload)
        return unquote_to_bytes(payload)
    except ValueError as exc:
        raise ImageLoadError(f"無法解析 data URL：{exc}") from exc


class AvatarLoader:
    def __init__(self, settings: Settings, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.settings = settings
        self.transport = transport

    async def load(self, url: str) -> bytes:
        if not url:
            raise ImageLoadError("角色沒有設定頭像")
        if url.startswith("data:"):
            return _decode_data_url(url)
        if url.startswith(("http://", "https://")):
            return await self._fetch(url)
        try:
            return Path(url).read_bytes()
        except OSError as exc:
            raise ImageLoadError(f"無法讀取頭像檔案 {url}：{exc}") from exc

    async def _fetch(self, url: str) -> bytes:
        logger.info("下載頭像 url=%s", url)
        async with httpx.AsyncClient(
            timeout=self.settings.avatar_timeout,
            follow_redirects=True,
            transport=self.transport,
        ) as client:
            try:
                response = await client.get(url)
                response.raise_for_status()
            except httpx.HTTPError as exc:
                logger.warning("頭像下載失敗 url=%s error=%s", url, exc)
                raise ImageLoadError(f"無法下載頭像，可能是跨域或網路問題：{exc}") from exc
        return response.content
