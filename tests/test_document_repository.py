"""
tests.test_document_repository
~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~

房间文档持久化仓库测试。
"""
from __future__ import annotations

from pathlib import Path

from coderoom.db.document_repository import DocumentRepository


class TestDocumentRepository:
    def test_save_then_load(self, tmp_path: Path) -> None:
        repo = DocumentRepository(tmp_path / "docs")

        repo.save("room/../1", "print('hi')", "python")
        loaded = repo.load("room/../1")

        assert loaded["content"] == "print('hi')"
        assert loaded["language"] == "python"
        assert "updatedAt" in loaded

    def test_file_name_is_hashed(self, tmp_path: Path) -> None:
        repo = DocumentRepository(tmp_path)

        repo.save("../escape", "x", "python")

        files = list(tmp_path.iterdir())
        assert len(files) == 1
        assert files[0].suffix == ".json"
        assert len(files[0].stem) == 40

    def test_overwrite(self, tmp_path: Path) -> None:
        repo = DocumentRepository(tmp_path)

        repo.save("r1", "a", "python")
        repo.save("r1", "b", "cpp")

        assert repo.load("r1")["content"] == "b"
        assert not list(tmp_path.glob("*.tmp"))

    def test_missing_and_corrupt(self, tmp_path: Path) -> None:
        repo = DocumentRepository(tmp_path)
        assert repo.load("nobody") is None

        repo.save("r1", "a", "python")
        next(tmp_path.glob("*.json")).write_text("{not json", encoding="utf-8")

        assert repo.load("r1") is None
