import copy
import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field


def new_character_id() -> str:
    return uuid.uuid4().hex


def utc_timestamp() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


def _without_keys_input(entry: Any) -> Any:
    if isinstance(entry, dict):
        return {key: copy.deepcopy(value) for key, value in entry.items() if key != "keys_input"}
    return copy.deepcopy(entry)


def _dump_preserving_extra(model: BaseModel, **kwargs: Any) -> Dict[str, Any]:
    data = model.model_dump(exclude_unset=True, **kwargs)
    for key, value in (model.model_extra or {}).items():
        data.setdefault(key, value)
    return data


class ImportFormat(str, Enum):
    PNG = "png"
    JSON = "json"
    UNKNOWN = "unknown"


class LorebookEntry(BaseModel):
    """編輯時用來檢查單一條目被修改的欄位；匯入的條目以原始 dict 保存。"""

    model_config = ConfigDict(extra="allow")

    keys: List[str] = Field(default_factory=list)
    content: str = ""
    enabled: Optional[bool] = None
    insertion_order: Optional[Union[int, float]] = None
    case_sensitive: Optional[bool] = None
    constant: Optional[bool] = None
    name: Optional[str] = None
    priority: Optional[Union[int, float]] = None
    id: Optional[Union[int, str]] = None
    comment: Optional[str] = None
    selective: Optional[bool] = None
    secondary_keys: Optional[List[str]] = None
    position: Optional[Union[int, str]] = None
    # 編輯器用的逗號分隔關鍵字，匯出時移除
    keys_input: Optional[str] = None


class Lorebook(BaseModel):
    model_config = ConfigDict(extra="allow")

    name: Optional[str] = None
    description: Optional[str] = None
    # 條目維持匯入時的原始值（dict 另加 keys_input），非 dict 的條目也保留在原位置
    entries: List[Any] = Field(default_factory=list)

    def to_storage(self) -> Dict[str, Any]:
        data = _dump_preserving_extra(self, exclude={"entries"})
        data["entries"] = copy.deepcopy(self.entries)
        return data

    def to_export(self) -> Dict[str, Any]:
        data = _dump_preserving_extra(self, exclude={"entries"})
        data["entries"] = [_without_keys_input(entry) for entry in self.entries]
        return data


class QuickReplyAction(BaseModel):
    """檢查編輯過的 QR 動作欄位；匯入的動作以原始 dict 保存。"""

    model_config = ConfigDict(extra="allow", populate_by_name=True)

    id: Union[int, str] = 0
    label: str = ""
    message: str = ""
    prevent_auto_execute: Optional[bool] = Field(default=None, alias="preventAutoExecute")


class CharacterRecord(BaseModel):
    model_config = ConfigDict(validate_assignment=True)

    id: str = Field(default_factory=new_character_id)
    name: str = ""
    description: str = ""
    personality: str = ""
    first_message: str = ""
    alternate_greetings: List[str] = Field(default_factory=list)
    scenario: str = ""
    character_book: Optional[Lorebook] = None
    tags: List[str] = Field(default_factory=list)
    # QR 動作以 SillyTavern 格式的原始 dict 保存
    qr_list: List[Any] = Field(default_factory=list)
    avatar_url: str = ""
    source_url: str = ""
    creator_notes: str = ""
    mes_example: str = ""
    system_prompt: str = ""
    post_history_instructions: str = ""
    creator: str = ""
    character_version: str = ""
    extensions: Dict[str, Any] = Field(default_factory=dict)
    # 匯入時拆開外層後的完整原始物件，匯出時作為合併基底
    raw_original: Optional[Dict[str, Any]] = None

    # 以下為應用程式內部欄位，不會寫回匯出的角色卡
    import_format: ImportFormat = ImportFormat.UNKNOWN
    original_filename: Optional[str] = None
    imported_at: Optional[str] = None
    updated_at: Optional[str] = None
    is_favorite: bool = False
    folder: Optional[str] = None
    extra_qr_data: Optional[Dict[str, Any]] = None
    qr_file_name: Optional[str] = None

    def to_storage(self) -> Dict[str, Any]:
        data = self.model_dump(mode="json", exclude={"character_book"})
        data["character_book"] = self.character_book.to_storage() if self.character_book else None
        return data
