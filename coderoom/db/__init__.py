"""
coderoom.db
~~~~~~~~~~~

可选的房间文档持久化。只有配置了 ``DOCUMENT_STORE_DIR`` 时才会启用。
"""
from __future__ import annotations

from coderoom.core.logging import get_logger
from coderoom.core.settings import settings
from coderoom.db.document_repository import DocumentRepository

logger = get_logger(__name__)


def create_document_repository() -> DocumentRepository | None:
    """按配置创建文档仓库，未配置目录时返回 None。"""
    if not settings.DOCUMENT_STORE_DIR:
        logger.info("未配置 DOCUMENT_STORE_DIR，房间文档只保存在内存中")
        return None
    repo = DocumentRepository(settings.DOCUMENT_STORE_DIR)
    logger.info("房间文档持久化已启用 | dir=%s", repo.root)
    return repo
