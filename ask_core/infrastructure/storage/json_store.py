import json
import logging
import os
from dataclasses import asdict
from pathlib import Path
from typing import List, Sequence
from uuid import uuid4

from ask_core.config.settings import settings
from ask_core.domain.exceptions import BusinessError
from ask_core.domain.models import ConversationMessage
from ask_core.infrastructure.logging.logger import log_event


class JsonHistoryStore:
    """把最近一次对话保存为 last_chat.json，启动时恢复。

    只保存已经结束且不是错误的消息；生成中的消息和错误消息不落盘。
    """

    FILE_NAME = "last_chat.json"

    def __init__(self, root: str | Path | None = None):
        self._root = Path(root or settings.storage_root).resolve()
        self._root.mkdir(parents=True, exist_ok=True)
        self._path = self._root / self.FILE_NAME

    @property
    def path(self) -> Path:
        return self._path

    def save(self, timeline: Sequence[ConversationMessage]) -> bool:
        """保存可恢复的消息；没有可保存的消息时保留旧文件并返回 False。"""
        items = [asdict(m) for m in timeline if not m.is_error and not m.is_thinking]
        if not items:
            return False
        tmp_path = self._root / f"last_chat.{uuid4().hex}.json.tmp"
        try:
            tmp_path.write_text(json.dumps(items, ensure_ascii=False), encoding="utf-8")
            os.replace(tmp_path, self._path)
        except OSError as e:
            raise BusinessError(code="STORE_WRITE_ERROR", message=str(e))
        return True

    def load(self) -> List[ConversationMessage]:
        if not self._path.exists():
            return []
        try:
            data = json.loads(self._path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as e:
            log_event(logging.WARNING, "Failed to read chat history", {"path": str(self._path)}, error=str(e))
            return []
        items: List[ConversationMessage] = []
        for raw in data if isinstance(data, list) else []:
            try:
                items.append(self._to_message(raw))
            except (KeyError, TypeError):
                continue
        return items

    def clear(self) -> None:
        try:
            self._path.unlink(missing_ok=True)
        except OSError as e:
            raise BusinessError(code="STORE_DELETE_ERROR", message=str(e))

    @staticmethod
    def _to_message(data: dict) -> ConversationMessage:
        return ConversationMessage(
            id=data["id"],
            role=data["role"],
            content=data.get("content") or "",
            is_thinking=False,
            is_error=False,
            is_canceled=bool(data.get("is_canceled", False)),
            response_time_ms=data.get("response_time_ms"),
        )
