from __future__ import annotations

import copy
import json
import logging
from typing import Any, Dict, Iterable, List, Optional, Type, Union

from pydantic import BaseModel, ValidationError

from .config import get_settings
from .errors import InvalidJsonError
from .models import (
    CharacterRecord,
    ImportFormat,
    Lorebook,
    LorebookEntry,
    QuickReplyAction,
    new_character_id,
    utc_timestamp,
)

DEFAULT_SPEC = "chara_card_v2"
DEFAULT_SPEC_VERSION = "2.0"
UNKNOWN_NAME = "Unknown"
# 歷來不同工具用過的鍵名，依序取第一個非空值
FIRST_MESSAGE_KEYS = ("first_mes", "firstMessage", "intro", "greeting")
ALTERNATE_GREETING_KEYS = ("alternate_greetings", "alternate_greeting")
CREATOR_NOTES_KEYS = ("creator_notes", "creatorcomment")
# 編輯時不可更動的欄位
PROTECTED_FIELDS = frozenset({"id", "raw_original", "import_format", "imported_at"})
logger = logging.getLogger(__name__)


def unwrap_card(root: Dict[str, Any]) -> Dict[str, Any]:
    """回傳真正帶有角色欄位的物件（V2 外層的 data，或原物件本身）。"""
    nested = root.get("data")
    if root.get("spec") == DEFAULT_SPEC and isinstance(nested, dict):
        return nested
    if not root.get("name") and isinstance(nested, dict) and nested.get("name"):
        return nested
    return root


def _first_present(body: Dict[str, Any], keys: Iterable[str]) -> Any:
    for key in keys:
        value = body.get(key)
        if value:
            return value
    return None


def _text(value: Any) -> str:
    if not value:
        return ""
    return value if isinstance(value, str) else str(value)


def _string_list(value: Any) -> List[str]:
    if isinstance(value, str):
        return [value]
    if not isinstance(value, list):
        return []
    return [_text(item) for item in value if item is not None]


def parse_tags(value: Any) -> List[str]:
    if isinstance(value, list):
        candidates = [str(tag).strip() for tag in value if tag is not None]
    elif isinstance(value, str):
        candidates = [tag.strip() for tag in value.split(",")]
    else:
        return []
    return [tag for tag in candidates if tag]


def _prepare_entry(entry: Any) -> Any:
    if not isinstance(entry, dict):
        return entry
    prepared = dict(entry)
    keys = entry.get("keys")
    prepared["keys_input"] = ", ".join(str(key) for key in keys) if isinstance(keys, list) else ""
    return prepared


def build_lorebook(value: Any) -> Optional[Lorebook]:
    """
    條目以原始值保存（dict 條目另加 keys_input），不做任何型別轉換。

    外層欄位不符合型別時回傳 None，匯出時沿用 raw_original 裡的原始世界書。
    """
    if not isinstance(value, dict):
        return None
    data = dict(value)
    entries = value.get("entries", [])
    if not isinstance(entries, list):
        logger.warning("世界書 entries 不是陣列，保留原始資料")
        return None
    data["entries"] = [_prepare_entry(entry) for entry in entries]
    try:
        return Lorebook.model_validate(data)
    except ValidationError as exc:
        logger.warning("世界書欄位格式不符，保留原始資料：%s", exc)
        return None


def build_quick_replies(value: Any) -> List[Any]:
    if not isinstance(value, list):
        return []
    return copy.deepcopy(value)


def _validate_changed(model: Type[BaseModel], current: Any, edited: Any) -> Any:
    """只檢查與目前值不同的欄位；沒改動的欄位維持原本的值與型別。"""
    if not isinstance(edited, dict):
        return edited
    before = current if isinstance(current, dict) else {}
    changed = {
        key: value for key, value in edited.items() if key not in before or before[key] != value
    }
    validated = model.model_validate(changed).model_dump(by_alias=True, exclude_unset=True)
    return {
        key: validated.get(key, value) if key in changed else before[key]
        for key, value in edited.items()
    }


def _edit_entry(current: Any, edited: Any) -> Any:
    entry = _validate_changed(LorebookEntry, current, edited)
    if not isinstance(entry, dict):
        return entry
    before = current if isinstance(current, dict) else {}
    keys_input = entry.get("keys_input")
    keys_unchanged = entry.get("keys") == before.get("keys")
    # 編輯器只改了 keys_input 時，由它重新產生 keys
    if isinstance(keys_input, str) and keys_input != before.get("keys_input") and keys_unchanged:
        entry["keys"] = parse_tags(keys_input)
    return entry


def _match_existing(old_items: List[Any], index: int, item: Any) -> Any:
    """原封不動的項目（可能被移動過位置）直接沿用舊值，否則與同位置的舊值比較。"""
    for old in old_items:
        if old == item:
            return old
    return old_items[index] if index < len(old_items) else None


def _edit_lorebook(current: Optional[Lorebook], edited: Dict[str, Any]) -> Dict[str, Any]:
    book = dict(edited)
    entries = edited.get("entries")
    if isinstance(entries, list):
        old_entries = current.entries if current is not None else []
        book["entries"] = [
            _edit_entry(_match_existing(old_entries, index, entry), entry)
            for index, entry in enumerate(entries)
        ]
    return book


def _edit_quick_replies(current: List[Any], edited: List[Any]) -> List[Any]:
    return [
        _validate_changed(QuickReplyAction, _match_existing(current, index, action), action)
        for index, action in enumerate(edited)
    ]


def build_character(
    root: Dict[str, Any],
    *,
    import_format: ImportFormat,
    filename: Optional[str] = None,
    avatar_url: str = "",
    character_id: Optional[str] = None,
) -> CharacterRecord:
    """
    由解析後的 JSON 建立角色紀錄。

    拆開外層後的物件會完整深拷貝到 raw_original，匯出時以它為基底再覆蓋編輯欄位，
    未知欄位因此不會遺失。型別欄位另外深拷貝，編輯時不會改到原始快照。
    """
    body = unwrap_card(root)
    fields = copy.deepcopy(body)
    now = utc_timestamp()
    extensions = fields.get("extensions")
    extra_qr_data = fields.get("extra_qr_data")

    record = CharacterRecord(
        id=character_id or new_character_id(),
        name=_text(fields.get("name")) or UNKNOWN_NAME,
        description=_text(fields.get("description")),
        personality=_text(fields.get("personality")),
        first_message=_text(_first_present(fields, FIRST_MESSAGE_KEYS)),
        alternate_greetings=_string_list(_first_present(fields, ALTERNATE_GREETING_KEYS)),
        scenario=_text(fields.get("scenario")),
        character_book=build_lorebook(fields.get("character_book")),
        tags=parse_tags(fields.get("tags")),
        qr_list=build_quick_replies(fields.get("qrList")),
        avatar_url=avatar_url,
        source_url=_text(fields.get("sourceUrl")),
        creator_notes=_text(_first_present(fields, CREATOR_NOTES_KEYS)),
        mes_example=_text(fields.get("mes_example")),
        system_prompt=_text(fields.get("system_prompt")),
        post_history_instructions=_text(fields.get("post_history_instructions")),
        creator=_text(fields.get("creator")),
        character_version=_text(fields.get("character_version")),
        extensions=extensions if isinstance(extensions, dict) else {},
        raw_original=copy.deepcopy(body),
        import_format=import_format,
        original_filename=filename,
        imported_at=now,
        updated_at=now,
        extra_qr_data=extra_qr_data if isinstance(extra_qr_data, dict) else None,
    )
    logger.info("建立角色紀錄 name=%s format=%s", record.name, import_format.value)
    return record


def blank_character(avatar_url: Optional[str] = None) -> CharacterRecord:
    character_id = new_character_id()
    now = utc_timestamp()
    return CharacterRecord(
        id=character_id,
        avatar_url=avatar_url or get_settings().default_avatar_url.format(id=character_id),
        character_book=Lorebook(),
        import_format=ImportFormat.PNG,
        imported_at=now,
        updated_at=now,
        extra_qr_data={},
    )


def apply_edits(record: CharacterRecord, changes: Dict[str, Any]) -> CharacterRecord:
    """
    套用編輯內容並回傳新紀錄；id 與 raw_original 等欄位維持不變。

    世界書條目與 QR 動作只驗證有改動的欄位，其餘值保留匯入時的原樣。
    """
    ignored = sorted(
        key for key in changes if key in PROTECTED_FIELDS or key not in CharacterRecord.model_fields
    )
    if ignored:
        logger.debug("忽略不可編輯欄位：%s", ignored)
    updated = record.model_copy(deep=True)
    for key, value in changes.items():
        if key in ignored:
            continue
        if key == "character_book" and isinstance(value, dict):
            value = _edit_lorebook(record.character_book, value)
        elif key == "qr_list" and isinstance(value, list):
            value = _edit_quick_replies(record.qr_list, value)
        setattr(updated, key, value)
    updated.updated_at = utc_timestamp()
    return updated


def merge_fields(base: Dict[str, Any], overrides: Dict[str, Any]) -> Dict[str, Any]:
    """
    base 的鍵維持原本順序並被 overrides 覆寫，overrides 中新的鍵依序附加在後。
    """
    merged = dict(base)
    for key, value in overrides.items():
        merged[key] = value
    return merged


def editable_fields(record: CharacterRecord) -> Dict[str, Any]:
    fields: Dict[str, Any] = {
        "name": record.name,
        "description": record.description,
        "personality": record.personality,
        "first_mes": record.first_message,
        "alternate_greetings": list(record.alternate_greetings),
        "scenario": record.scenario,
        "mes_example": record.mes_example,
        "system_prompt": record.system_prompt,
        "post_history_instructions": record.post_history_instructions,
        "creator_notes": record.creator_notes,
        "creator": record.creator,
        "character_version": record.character_version,
        "tags": list(record.tags),
        "extensions": copy.deepcopy(record.extensions),
    }
    # 沒有世界書時沿用原始資料中的值
    if record.character_book is not None:
        fields["character_book"] = record.character_book.to_export()
    return fields


def build_export_data(record: CharacterRecord) -> Dict[str, Any]:
    base = copy.deepcopy(record.raw_original) if record.raw_original else {}
    return {
        "spec": DEFAULT_SPEC,
        "spec_version": DEFAULT_SPEC_VERSION,
        "data": merge_fields(base, editable_fields(record)),
    }


def export_card_json(record: CharacterRecord) -> str:
    return json.dumps(build_export_data(record), ensure_ascii=False, indent=2)


def load_card_json(data: Union[bytes, str]) -> Dict[str, Any]:
    if isinstance(data, bytes):
        try:
            data = data.decode("utf-8-sig")
        except UnicodeDecodeError as exc:
            raise InvalidJsonError("decode", str(exc)) from exc
    try:
        parsed = json.loads(data)
    except json.JSONDecodeError as exc:
        raise InvalidJsonError("parse", str(exc)) from exc
    if not isinstance(parsed, dict):
        raise InvalidJsonError("structure", "最外層必須是 JSON 物件")
    return parsed
