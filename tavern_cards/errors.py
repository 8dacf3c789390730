from __future__ import annotations

from typing import Optional


class CardError(ValueError):
    """角色卡處理失敗的共同基底，訊息可直接顯示給使用者。"""


class NotAPngError(CardError):
    def __init__(self, message: str = "提供的檔案不是有效的 PNG") -> None:
        super().__init__(message)


class TruncatedChunkError(CardError):
    """chunk 宣告長度超出緩衝區；掃描器視為檔案結尾，不會拋給呼叫端。"""

    def __init__(self, offset: int, length: int, available: int) -> None:
        super().__init__(f"offset {offset} 的 chunk 宣告長度 {length}，但僅剩 {available} bytes")
        self.offset = offset
        self.length = length
        self.available = available


class NoCardDataError(CardError):
    def __init__(
        self,
        message: str = "此 PNG 內找不到角色資料，請確認是否為標準的 Tavern PNG 角色卡",
    ) -> None:
        super().__init__(message)


class InvalidJsonError(CardError):
    def __init__(self, stage: str, detail: Optional[str] = None) -> None:
        message = f"無效的 JSON（{stage}）"
        if detail:
            message = f"{message}：{detail}"
        super().__init__(message)
        self.stage = stage


class MissingIendError(CardError):
    def __init__(self) -> None:
        super().__init__("無效的 PNG：找不到 IEND chunk")


class ImageLoadError(CardError):
    def __init__(self, message: str = "無法載入頭像圖片，請先上傳一張本地圖片作為頭像") -> None:
        super().__init__(message)


class QrConfigFormatError(CardError):
    def __init__(self, detail: str = "未找到 qrList/quickReplySlots 陣列") -> None:
        super().__init__(f"無效的 QR 設定檔：{detail}")
