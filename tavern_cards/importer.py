from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import PurePath
from typing import Dict, Iterable, List, Optional, Tuple, Union

from .card_codec import decode_card_png
from .cards import build_character, load_card_json
from .config import get_settings
from .errors import CardError
from .library import AvatarStore
from .models import CharacterRecord, ImportFormat, new_character_id

logger = logging.getLogger(__name__)


@dataclass
class ImportSummary:
    characters: List[CharacterRecord] = field(default_factory=list)
    success: int = 0
    failed: int = 0
    skipped: int = 0
    failed_files: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, object]:
        return {
            "characters": [record.to_storage() for record in self.characters],
            "success": self.success,
            "failed": self.failed,
            "skipped": self.skipped,
            "failed_files": self.failed_files,
            "warnings": self.warnings,
        }


def parse_character_card(
    data: bytes,
    filename: Optional[str] = None,
    store: Optional[AvatarStore] = None,
) -> CharacterRecord:
    root = decode_card_png(data)
    character_id = new_character_id()
    record = build_character(
        root,
        import_format=ImportFormat.PNG,
        filename=filename,
        character_id=character_id,
    )
    if store is not None:
        store.store(character_id, data)
    return record


def parse_character_json(data: Union[bytes, str], filename: Optional[str] = None) -> CharacterRecord:
    root = load_card_json(data)
    character_id = new_character_id()
    return build_character(
        root,
        import_format=ImportFormat.JSON,
        filename=filename,
        avatar_url=get_settings().default_avatar_url.format(id=character_id),
        character_id=character_id,
    )


def import_file(
    filename: str,
    data: bytes,
    store: Optional[AvatarStore] = None,
) -> Optional[CharacterRecord]:
    """依副檔名匯入單一檔案；不支援的副檔名回傳 None。"""
    suffix = PurePath(filename).suffix.lower()
    if suffix == ".png":
        return parse_character_card(data, filename, store=store)
    if suffix == ".json":
        return parse_character_json(data, filename)
    return None


def import_files(
    files: Iterable[Tuple[str, bytes]],
    existing_names: Iterable[str] = (),
    store: Optional[AvatarStore] = None,
) -> ImportSummary:
    """逐一匯入檔案，單一檔案失敗不影響其他檔案。"""
    file_list = list(files)
    known_names = set(existing_names)
    summary = ImportSummary()

    for filename, data in file_list:
        try:
            record = import_file(filename, data, store=store)
        except CardError as exc:
            logger.warning("匯入失敗 file=%s error=%s", filename, exc)
            summary.failed += 1
            summary.failed_files.append(f"{filename}: {exc}")
            continue
        except Exception as exc:  # noqa: BLE001
            logger.exception("匯入時發生未預期錯誤 file=%s", filename)
            summary.failed += 1
            summary.failed_files.append(f"{filename}: {exc}")
            continue

        if record is None:
            summary.skipped += 1
            continue
        if len(file_list) == 1 and record.name in known_names:
            summary.warnings.append(f'注意：檢測到可能重複的角色 "{record.name}"')
        summary.characters.append(record)
        summary.success += 1

    logger.info(
        "批次匯入完成 success=%s failed=%s skipped=%s",
        summary.success,
        summary.failed,
        summary.skipped,
    )
    return summary
