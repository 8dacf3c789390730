from __future__ import annotations

import copy
import json
import logging
import time
from typing import Any, Dict, List, Optional, Tuple, Union

from .cards import build_quick_replies
from .errors import InvalidJsonError, QrConfigFormatError
from .models import CharacterRecord, utc_timestamp

QR_LIST_KEYS = ("qrList", "quickReplySlots")
QR_EXPORT_SCAFFOLD: Dict[str, Any] = {
    "version": 2,
    "name": "QR Export",
    "disableSend": False,
    "placeBeforeInput": False,
    "injectInput": False,
    "color": "rgba(0, 0, 0, 0)",
    "onlyBorderColor": False,
}
logger = logging.getLogger(__name__)


def parse_qr_file(data: Union[bytes, str]) -> Tuple[List[Any], Dict[str, Any]]:
    """解析 QR 設定檔，回傳 (動作列表, 原始物件)。"""
    if isinstance(data, bytes):
        data = data.decode("utf-8-sig", errors="replace")
    try:
        parsed = json.loads(data)
    except json.JSONDecodeError as exc:
        raise InvalidJsonError("quick_reply", str(exc)) from exc

    if isinstance(parsed, list):
        return build_quick_replies(parsed), {"qrList": parsed}
    if isinstance(parsed, dict):
        for key in QR_LIST_KEYS:
            if isinstance(parsed.get(key), list):
                return build_quick_replies(parsed[key]), parsed
    raise QrConfigFormatError()


def _dump_actions(actions: List[Any]) -> List[Any]:
    return copy.deepcopy(actions)


def build_qr_export(
    actions: List[Any], extra: Optional[Dict[str, Any]] = None
) -> Dict[str, Any]:
    payload = dict(QR_EXPORT_SCAFFOLD)
    payload.update(extra or {})
    payload["qrList"] = _dump_actions(actions)
    return payload


def export_qr_file(
    actions: List[Any], extra: Optional[Dict[str, Any]] = None
) -> Tuple[str, bytes]:
    filename = f"qr_export_{int(time.time() * 1000)}.json"
    content = json.dumps(build_qr_export(actions, extra), ensure_ascii=False, indent=2)
    return filename, content.encode("utf-8")


def build_qr_bundle(record: CharacterRecord) -> Dict[str, Any]:
    """打包時附在角色卡旁的 QR 檔內容。"""
    payload: Dict[str, Any] = {"version": 2, "name": f"{record.name} QR"}
    payload.update(record.extra_qr_data or {})
    payload["qrList"] = _dump_actions(record.qr_list)
    return payload


def attach_quick_replies(
    record: CharacterRecord, data: Union[bytes, str], filename: Optional[str] = None
) -> CharacterRecord:
    actions, raw = parse_qr_file(data)
    record.qr_list = actions
    record.extra_qr_data = raw
    record.qr_file_name = filename
    record.updated_at = utc_timestamp()
    logger.info("角色 %s 綁定 %s 個 QR 動作", record.name, len(actions))
    return record


def clear_quick_replies(record: CharacterRecord) -> CharacterRecord:
    record.qr_list = []
    record.extra_qr_data = {}
    record.qr_file_name = None
    record.updated_at = utc_timestamp()
    return record
