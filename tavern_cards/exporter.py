from __future__ import annotations

import json
import logging
import re
import zipfile
from datetime import datetime, timezone
from enum import Enum
from io import BytesIO
from pathlib import PureWindowsPath
from typing import Iterable, Optional, Tuple, Union

from .avatar import AvatarLoader, normalize_avatar
from .card_codec import embed_card_json
from .cards import build_export_data, export_card_json
from .config import Settings
from .library import AvatarStore
from .models import CharacterRecord, ImportFormat
from .quick_replies import build_qr_bundle

UNSAFE_NAME_PATTERN = re.compile(r"[^a-z0-9\u4e00-\u9fa5]", re.IGNORECASE)
EXTENSION_PATTERN = re.compile(r"\.[^/.]+$")
logger = logging.getLogger(__name__)


class ExportFormat(str, Enum):
    PNG = "png"
    JSON = "json"


def _upload_name(name: Optional[str]) -> str:
    # 上傳檔名可能帶有目錄，只取最後一段
    filename = PureWindowsPath(name or "").name
    return "" if filename in (".", "..") else filename


def export_filename_base(record: CharacterRecord) -> str:
    base = EXTENSION_PATTERN.sub("", _upload_name(record.original_filename))
    if base:
        return base
    return UNSAFE_NAME_PATTERN.sub("_", record.name).lower()


def _qr_bundle_bytes(record: CharacterRecord) -> bytes:
    return json.dumps(build_qr_bundle(record), ensure_ascii=False, indent=2).encode("utf-8")


def _zip_path(*parts: str) -> str:
    return "/".join(part for part in parts if part)


class CardExporter:
    def __init__(
        self,
        settings: Settings,
        store: Optional[AvatarStore] = None,
        avatar_loader: Optional[AvatarLoader] = None,
    ):
        self.settings = settings
        self.store = store
        self.avatar_loader = avatar_loader or AvatarLoader(settings)

    async def _resolve_avatar(self, record: CharacterRecord) -> bytes:
        if self.store is not None:
            stored = self.store.fetch(record.id)
            if stored is not None:
                return stored
        return await self.avatar_loader.load(record.avatar_url)

    async def create_tavern_png(
        self, record: CharacterRecord, avatar: Optional[bytes] = None
    ) -> bytes:
        """重新繪製頭像後嵌入 chara tEXt chunk。"""
        source = avatar if avatar is not None else await self._resolve_avatar(record)
        base_image = normalize_avatar(source)
        return embed_card_json(
            base_image, build_export_data(record), keyword=self.settings.export_keyword
        )

    async def _card_file(
        self, record: CharacterRecord, base: str, fmt: ExportFormat
    ) -> Tuple[str, Union[bytes, str]]:
        if fmt is ExportFormat.PNG:
            try:
                return f"{base}.png", await self.create_tavern_png(record)
            except Exception as exc:  # noqa: BLE001
                logger.warning("角色 %s 匯出 PNG 失敗，改用 JSON：%s", record.name, exc)
        return f"{base}.json", export_card_json(record)

    async def export_character(
        self,
        record: CharacterRecord,
        fmt: ExportFormat = ExportFormat.PNG,
        bundle: bool = False,
    ) -> Tuple[str, bytes]:
        """
        匯出單一角色，回傳 (檔名, 內容)。

        bundle=True 時打包成 zip：角色卡（PNG 失敗時改為 JSON）加上 QR 檔。
        單檔 PNG 匯出失敗會直接拋出錯誤，由呼叫端決定如何提示。
        """
        base = export_filename_base(record)
        if not bundle:
            if fmt is ExportFormat.PNG:
                return f"{base}.png", await self.create_tavern_png(record)
            return f"{base}.json", export_card_json(record).encode("utf-8")

        buffer = BytesIO()
        with zipfile.ZipFile(buffer, "w", zipfile.ZIP_DEFLATED) as archive:
            card_name, card_data = await self._card_file(record, base, fmt)
            archive.writestr(card_name, card_data)
            if record.qr_list:
                qr_name = _upload_name(record.qr_file_name) or f"{base}_qr.json"
                archive.writestr(qr_name, _qr_bundle_bytes(record))
        return f"{base}.zip", buffer.getvalue()

    async def export_bulk(
        self,
        records: Iterable[CharacterRecord],
        collections: Iterable[str] = (),
    ) -> Tuple[str, bytes]:
        """
        批次匯出成 zip。JSON 匯入的角色維持 JSON，其餘輸出 PNG（失敗時改為 JSON）。
        標籤符合收藏名稱的角色放進該資料夾；有 QR 的角色另外包一層自己的資料夾。
        """
        collection_names = list(collections)
        timestamp = datetime.now(timezone.utc).strftime("%Y-%m-%d")
        buffer = BytesIO()
        exported = 0

        with zipfile.ZipFile(buffer, "w", zipfile.ZIP_DEFLATED) as archive:
            for record in records:
                base = export_filename_base(record)
                fmt = ExportFormat.JSON if record.import_format is ImportFormat.JSON else ExportFormat.PNG
                card_name, card_data = await self._card_file(record, base, fmt)

                folder = next((tag for tag in record.tags if tag in collection_names), "")
                if record.qr_list:
                    archive.writestr(_zip_path(folder, base, card_name), card_data)
                    qr_name = _upload_name(record.qr_file_name) or f"{base}_qr.json"
                    archive.writestr(_zip_path(folder, base, qr_name), _qr_bundle_bytes(record))
                else:
                    archive.writestr(_zip_path(folder, card_name), card_data)
                exported += 1

        logger.info("批次匯出完成 count=%s", exported)
        return f"tavern_export_{timestamp}.zip", buffer.getvalue()
