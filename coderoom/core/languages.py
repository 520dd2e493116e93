"""
coderoom.core.languages
~~~~~~~~~~~~~~~~~~~~~~~

代码执行语言目录的解析与管理。

每种语言对应一份执行配方（源文件名、远程沙箱语言名、可选的编译命令、运行命令），
统一维护在 ``data/languages.yaml`` 中，新增语言无需修改代码。
"""
from __future__ import annotations

from pathlib import Path

import yaml
from pydantic import BaseModel, Field

from coderoom.core.logging import get_logger

logger = get_logger(__name__)


class LanguageSpec(BaseModel):
    """单个语言的执行配方。"""

    name: str = Field(..., description="语言标识，如 python / cpp")
    display_name: str = Field(default="", description="展示名称")
    filename: str = Field(..., description="写入临时目录的源文件名")
    sandbox_language: str = Field(..., description="远程沙箱使用的语言名")
    compile: list[str] | None = Field(default=None, description="编译命令（解释型语言为空）")
    run: list[str] = Field(..., min_length=1, description="运行命令")

    @property
    def compiled(self) -> bool:
        """是否需要先编译。"""
        return bool(self.compile)

    def render(self, command: list[str], workdir: Path) -> list[str]:
        """把命令中的占位符替换为本次运行的实际路径。"""
        values = {
            "source": str(workdir / self.filename),
            "artifact": str(workdir / "main.out"),
            "workdir": str(workdir),
        }
        return [part.format(**values) for part in command]


class LanguageRegistry:
    """语言目录，按语言标识查找执行配方。"""

    def __init__(self, languages: dict[str, LanguageSpec] | None = None) -> None:
        self._languages: dict[str, LanguageSpec] = dict(languages or {})

    @classmethod
    def from_yaml(cls, path: Path) -> LanguageRegistry:
        """从 YAML 文件加载语言目录。文件不存在时返回空目录。"""
        if not path.exists():
            logger.warning("语言目录文件不存在: %s", path)
            return cls()

        with open(path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}

        languages: dict[str, LanguageSpec] = {}
        for name, raw in (data.get("languages") or {}).items():
            languages[name] = LanguageSpec(name=name, **raw)
        logger.info("语言目录已加载 | %s", ", ".join(languages) or "<empty>")
        return cls(languages)

    def get(self, name: str) -> LanguageSpec | None:
        """查找语言配方，不支持的语言返回 None。"""
        return self._languages.get(name)

    def names(self) -> list[str]:
        """所有已支持的语言标识。"""
        return list(self._languages)

    def __contains__(self, name: object) -> bool:
        return name in self._languages
