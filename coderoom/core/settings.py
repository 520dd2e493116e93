"""
coderoom.core.settings
~~~~~~~~~~~~~~~~~~~~~~

集中式配置管理，基于 pydantic-settings 自动从 ``.env`` 文件加载。

支持多环境配置（dev / test / prod），加载顺序为:
  1. 环境变量（最高优先级）
  2. ``.env.{ENVIRONMENT}`` 环境专属文件
  3. ``.env`` 基础文件
  4. 字段默认值（最低优先级）
"""
from __future__ import annotations

import os
from functools import lru_cache
from pathlib import Path
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

# 项目根目录（coderoom/core/settings.py 向上三级）
PROJECT_ROOT: Path = Path(__file__).resolve().parent.parent.parent

# 读取当前环境标识（在 Settings 类定义之前，用于决定加载哪个 .env 文件）
_CURRENT_ENV: str = os.getenv("ENVIRONMENT", "dev")


class Settings(BaseSettings):
    """全局配置对象，字段值按如下优先级加载：环境变量 > .env.{env} > .env > 默认值。"""

    # ── 基础 ──────────────────────────────────────────────────────────
    PROJECT_NAME: str = Field(default="Code Room Server", description="项目名称")
    VERSION: str = Field(default="0.1.0", description="版本号")
    ENVIRONMENT: Literal["dev", "test", "prod"] = Field(
        default="dev",
        description="运行环境：dev / test / prod",
    )

    # ── API Keys ──────────────────────────────────────────────────────
    GEMINI_API_KEY: str = Field(..., description="Google Gemini API Key")

    # ── LLM ───────────────────────────────────────────────────────────
    GEMINI_MODEL: str = Field(
        default="gemini-2.5-flash",
        description="Gemini 聊天模型名称",
    )
    LLM_TIMEOUT: float = Field(default=30.0, description="单次 LLM 调用超时（秒）")
    ASSISTANT_AUTO_REPLY: bool = Field(
        default=True,
        description="AI 面板收到用户提问时是否由服务端自动生成回复",
    )

    # ── 代码执行 ──────────────────────────────────────────────────────
    EXECUTION_MODE: Literal["local", "remote"] = Field(
        default="remote",
        description="执行模式：local（本地子进程流式）/ remote（远程沙箱一次性请求）",
    )
    SANDBOX_URL: str = Field(
        default="https://emkc.org/api/v2/piston/execute",
        description="远程执行沙箱地址（Piston 兼容接口）",
    )
    SANDBOX_TIMEOUT: float = Field(default=20.0, description="远程沙箱请求超时（秒）")
    LANGUAGES_FILE: str = Field(
        default="data/languages.yaml",
        description="语言目录文件的相对路径（相对项目根目录）",
    )
    DEFAULT_LANGUAGE: str = Field(default="javascript", description="新房间的默认语言")

    # ── 房间状态 ──────────────────────────────────────────────────────
    CHAT_HISTORY_LIMIT: int = Field(default=50, description="每个房间保留的聊天消息条数")
    AI_HISTORY_LIMIT: int = Field(default=50, description="每个房间保留的 AI 对话条数")
    MAX_DOCUMENT_CHARS: int = Field(default=1_000_000, description="单个文档的最大字符数")
    MAX_OUTPUT_CHARS: int = Field(default=100_000, description="保留的运行输出最大字符数")
    DOCUMENT_STORE_DIR: str | None = Field(
        default=None,
        description="文档持久化目录（为空时不启用文件存储）",
    )

    # ── WebSocket ─────────────────────────────────────────────────────
    WS_QUEUE_SIZE: int = Field(default=100, description="单连接待处理事件队列长度")
    WS_RATE_LIMIT_INTERVAL: float = Field(
        default=2.0,
        description="单连接触发 AI 请求的最小间隔（秒）",
    )

    # ── 服务 ──────────────────────────────────────────────────────────
    HOST: str = Field(default="0.0.0.0", description="服务监听地址")
    PORT: int = Field(default=5000, description="服务监听端口")
    LOG_LEVEL: str = Field(default="INFO", description="日志级别（可被环境属性覆盖）")

    # ── Pydantic Settings ─────────────────────────────────────────────
    # 先加载 .env.{env} 再加载 .env，前者优先级更高
    model_config = SettingsConfigDict(
        env_file=(f".env.{_CURRENT_ENV}", ".env"),
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ── 环境判断 ──────────────────────────────────────────────────────

    @property
    def is_prod(self) -> bool:
        """当前是否为生产环境。"""
        return self.ENVIRONMENT == "prod"

    @property
    def is_test(self) -> bool:
        """当前是否为测试环境。"""
        return self.ENVIRONMENT == "test"

    @property
    def is_dev(self) -> bool:
        """当前是否为开发环境。"""
        return self.ENVIRONMENT == "dev"

    # ── 环境差异化行为 ────────────────────────────────────────────────

    @property
    def debug(self) -> bool:
        """是否开启 debug 模式。仅 dev 环境开启。"""
        return self.is_dev

    @property
    def reload(self) -> bool:
        """是否开启热重载。仅 dev 环境开启。"""
        return self.is_dev

    @property
    def effective_log_level(self) -> str:
        """根据环境自动推断日志级别。

        - dev  → INFO
        - test → DEBUG（方便排查测试失败）
        - prod → WARNING（减少噪音）

        如果环境变量中显式设置了 LOG_LEVEL，会覆盖此默认推断。
        """
        env_log = os.getenv("LOG_LEVEL")
        if env_log:
            return env_log
        return {
            "dev": "INFO",
            "test": "DEBUG",
            "prod": "WARNING",
        }.get(self.ENVIRONMENT, "INFO")

    @property
    def allow_cors_all_origins(self) -> bool:
        """是否允许所有 CORS 来源。非 prod 环境允许，方便本地调试。"""
        return not self.is_prod

    @property
    def languages_path(self) -> Path:
        """语言目录文件的绝对路径。"""
        path = Path(self.LANGUAGES_FILE)
        return path if path.is_absolute() else PROJECT_ROOT / path


@lru_cache
def get_settings() -> Settings:
    """获取全局 Settings 单例（带缓存，避免重复解析 .env）。"""
    return Settings()


settings: Settings = get_settings()
