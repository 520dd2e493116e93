"""
coderoom.db.document_repository
~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~

房间文档持久化仓库 —— 每个房间一个 JSON 文件。

文件名取房间 ID 的 sha1，避免任意房间 ID 变成路径。写入先落到临时文件再
``os.replace``，读到的永远是完整的旧版本或新版本。
"""
from __future__ import annotations

import hashlib
import json
import os
import tempfile
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, TypedDict

from coderoom.core.logging import get_logger

logger = get_logger(__name__)


class StoredDocument(TypedDict):
    """磁盘上的单个房间文档记录"""
    roomId: str
    content: str
    language: str
    updatedAt: str


class DocumentRepository:
    """房间文档仓库。

    Attributes:
        root: 存放文档文件的目录，首次写入时自动创建。
    """

    def __init__(self, root: str | Path) -> None:
        self.root = Path(root)

    def _path_for(self, room_id: str) -> Path:
        digest = hashlib.sha1(room_id.encode("utf-8")).hexdigest()
        return self.root / f"{digest}.json"

    def load(self, room_id: str) -> dict[str, Any] | None:
        """读取房间文档，不存在或文件损坏时返回 None。"""
        path = self._path_for(room_id)
        if not path.exists():
            return None
        try:
            with path.open("r", encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            logger.warning("房间文档读取失败，忽略 | room=%s | %s", room_id, e)
            return None
        if not isinstance(data, dict) or data.get("roomId") != room_id:
            return None
        return data

    def save(self, room_id: str, content: str, language: str) -> StoredDocument:
        """原子地写入房间文档。

        Raises:
            OSError: 目录不可写等磁盘错误。
        """
        self.root.mkdir(parents=True, exist_ok=True)
        record: StoredDocument = {
            "roomId": room_id,
            "content": content,
            "language": language,
            "updatedAt": datetime.now(timezone.utc).isoformat(),
        }
        fd, tmp_name = tempfile.mkstemp(dir=self.root, suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(record, f, ensure_ascii=False)
            os.replace(tmp_name, self._path_for(room_id))
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise
        logger.info("房间文档已保存 | room=%s | %d chars", room_id, len(content))
        return record
