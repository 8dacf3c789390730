from __future__ import annotations

import json
import logging
import re
import shutil
from pathlib import Path
from typing import Iterable, List, Optional, Protocol

from .models import CharacterRecord

CHARACTER_ID_PATTERN = re.compile(r"[A-Za-z0-9_-]+")
RECORD_FILENAME = "character.json"
AVATAR_FILENAME = "avatar.png"
logger = logging.getLogger(__name__)


class AvatarStore(Protocol):
    def store(self, character_id: str, blob: bytes) -> None:
        ...

    def fetch(self, character_id: str) -> Optional[bytes]:
        ...

    def delete(self, character_id: str) -> None:
        ...


class CharacterLibrary:
    """每個角色一個資料夾：character.json 與 avatar.png。"""

    def __init__(self, root: Path):
        self.root = root
        self.root.mkdir(parents=True, exist_ok=True)

    # ---------- File helpers ----------
    def _character_dir(self, character_id: str) -> Path:
        if not CHARACTER_ID_PATTERN.fullmatch(character_id or ""):
            raise FileNotFoundError(f"無效的角色 id：{character_id!r}")
        return self.root / character_id

    def _record_path(self, character_id: str) -> Path:
        return self._character_dir(character_id) / RECORD_FILENAME

    def _avatar_path(self, character_id: str) -> Path:
        return self._character_dir(character_id) / AVATAR_FILENAME

    # ---------- Avatar blobs ----------
    def store(self, character_id: str, blob: bytes) -> None:
        path = self._avatar_path(character_id)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(blob)

    def fetch(self, character_id: str) -> Optional[bytes]:
        path = self._avatar_path(character_id)
        if not path.exists():
            return None
        return path.read_bytes()

    def delete(self, character_id: str) -> None:
        path = self._avatar_path(character_id)
        if path.exists():
            path.unlink()

    # ---------- Records ----------
    def save(self, record: CharacterRecord) -> CharacterRecord:
        path = self._record_path(record.id)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(
            json.dumps(record.to_storage(), ensure_ascii=False, indent=2), encoding="utf-8"
        )
        return record

    def get(self, character_id: str) -> CharacterRecord:
        path = self._record_path(character_id)
        data = json.loads(path.read_text(encoding="utf-8"))
        return CharacterRecord.model_validate(data)

    def list(self) -> List[CharacterRecord]:
        records: List[CharacterRecord] = []
        for item in sorted(self.root.iterdir(), key=lambda p: p.name):
            if not (item / RECORD_FILENAME).exists():
                continue
            try:
                records.append(self.get(item.name))
            except Exception:  # noqa: BLE001
                logger.warning("略過無法讀取的角色資料夾：%s", item.name)
                continue
        records.sort(key=lambda r: r.imported_at or "")
        return records

    def remove(self, character_id: str) -> None:
        target = self._character_dir(character_id)
        if not target.exists():
            raise FileNotFoundError(character_id)
        self.delete(character_id)
        shutil.rmtree(target)
        logger.info("已刪除角色 %s", character_id)

    def remove_many(self, character_ids: Iterable[str]) -> int:
        removed = 0
        for character_id in character_ids:
            try:
                self.remove(character_id)
            except FileNotFoundError:
                continue
            removed += 1
        return removed
