import time
from typing import Any, Dict, Optional, Tuple

from app.config import settings


class SummaryCache:
    """
    儀表板摘要等讀取結果的程序內快取

    以使用者ID或器材ID為鍵，寫入操作後由呼叫端清除受影響的鍵
    """

    def __init__(self, ttl_seconds: int):
        self.ttl_seconds = ttl_seconds
        self._entries: Dict[str, Tuple[float, Any]] = {}

    @staticmethod
    def user_key(user_id: str) -> str:
        return f"user:{user_id}"

    @staticmethod
    def equipment_key(equipment_id: str) -> str:
        return f"equipment:{equipment_id}"

    def get(self, key: str) -> Optional[Any]:
        entry = self._entries.get(key)
        if entry is None:
            return None
        expires_at, value = entry
        if time.monotonic() >= expires_at:
            self._entries.pop(key, None)
            return None
        return value

    def set(self, key: str, value: Any) -> None:
        self._entries[key] = (time.monotonic() + self.ttl_seconds, value)

    def invalidate(self, *, user_ids=(), equipment_ids=()) -> None:
        for user_id in user_ids:
            if user_id:
                self._entries.pop(self.user_key(user_id), None)
        for equipment_id in equipment_ids:
            if equipment_id:
                self._entries.pop(self.equipment_key(equipment_id), None)

    def clear(self) -> None:
        self._entries.clear()


summary_cache = SummaryCache(settings.SUMMARY_CACHE_TTL_SECONDS)
