"""
coderoom.llm.gemini_provider
~~~~~~~~~~~~~~~~~~~~~~~~~~~~

纯 LLM 客户端封装 —— 只负责与 Google Gemini API 的连接和调用。

对外契约是 ``complete(system_prompt, user_content) -> str``：
任何失败（鉴权、网络、超时）都会被转换成一段可读的错误文本返回，
调用方永远不需要处理异常。
"""
from __future__ import annotations

import asyncio

from google import genai
from google.genai import types

from coderoom.core.logging import get_logger
from coderoom.core.settings import settings
from coderoom.llm.client import create_gemini_client

logger = get_logger(__name__)

ERROR_PREFIX = "⚠️ AI assistant is unavailable right now"


class GeminiProvider:
    """Gemini 文本补全客户端。

    Attributes:
        model_name: 使用的 Gemini 模型名称。
        timeout: 单次调用超时（秒）。
    """

    def __init__(
        self,
        model_name: str | None = None,
        client: genai.Client | None = None,
        timeout: float | None = None,
    ) -> None:
        """初始化客户端。

        Args:
            model_name: Gemini 模型名称，默认读取 ``settings.GEMINI_MODEL``。
            client: 可选的 ``genai.Client`` 实例（用于测试注入 mock）。
            timeout: 调用超时，默认读取 ``settings.LLM_TIMEOUT``。
        """
        self.model_name: str = model_name or settings.GEMINI_MODEL
        self.timeout: float = timeout if timeout is not None else settings.LLM_TIMEOUT
        self._client: genai.Client = client or create_gemini_client()
        logger.info("LLM 客户端已初始化 | model=%s", self.model_name)

    async def complete(self, system_prompt: str, user_content: str) -> str:
        """发送一次性请求并返回完整回复文本。

        Args:
            system_prompt: 系统指令，定义助手的角色和输出要求。
            user_content: 用户内容（已由上层组装好）。

        Returns:
            模型回复文本。发生异常时返回用户可读的错误提示。
        """
        try:
            response = await asyncio.wait_for(
                self._client.aio.models.generate_content(
                    model=self.model_name,
                    contents=user_content,
                    config=types.GenerateContentConfig(
                        system_instruction=system_prompt,
                    ),
                ),
                timeout=self.timeout,
            )
        except asyncio.TimeoutError:
            logger.error("LLM 调用超时 | timeout=%.1fs", self.timeout)
            return f"{ERROR_PREFIX} (request timed out after {self.timeout:.0f}s). Please try again!"
        except Exception as e:
            logger.error("LLM 调用异常: %s", e, exc_info=True)
            return f"{ERROR_PREFIX} ({e!s}). Please try again!"

        text = response.text
        if not text or not text.strip():
            logger.warning("LLM 返回空内容 | model=%s", self.model_name)
            return f"{ERROR_PREFIX} (empty response). Please try again!"
        return text


def is_error_reply(text: str) -> bool:
    """判断 ``complete()`` 的返回值是否为错误提示。"""
    return text.startswith(ERROR_PREFIX)
