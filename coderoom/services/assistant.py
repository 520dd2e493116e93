"""
coderoom.services.assistant
~~~~~~~~~~~~~~~~~~~~~~~~~~~

编程助手业务层 —— 串联 Prompt 组装与 LLM 调用。

房间的 AI 面板、自动文档、代码解释和调试都经由这里访问 LLM。
LLM 的失败已在 ``GeminiProvider`` 边界被转换成可读文本，这里不会抛出异常。
"""
from __future__ import annotations

from typing import Protocol

from coderoom.core.logging import get_logger
from coderoom.prompts.assistant import (
    ASSISTANT_SYSTEM_PROMPT,
    DEBUG_SYSTEM_PROMPT,
    DOCUMENTATION_SYSTEM_PROMPT,
    EXPLAIN_SYSTEM_PROMPT,
    build_chat_prompt,
    build_debug_prompt,
    build_documentation_prompt,
    build_explain_prompt,
)

logger = get_logger(__name__)

ASSISTANT_NAME = "AI Assistant"


class CompletionProvider(Protocol):
    async def complete(self, system_prompt: str, user_content: str) -> str: ...


class AssistantService:
    """编程助手。

    Attributes:
        bot: LLM 补全客户端。
    """

    def __init__(self, bot: CompletionProvider) -> None:
        self.bot = bot

    async def answer(self, question: str, code: str = "", language: str = "") -> str:
        """回答 AI 面板中的提问，附带房间当前代码作为上下文。"""
        prompt = build_chat_prompt(question, code, language)
        logger.debug("AI 提问 | %d chars | code=%d chars", len(question), len(code))
        return await self.bot.complete(ASSISTANT_SYSTEM_PROMPT, prompt)

    async def document(self, code: str, language: str = "") -> str:
        """为代码生成 Markdown 文档。"""
        return await self.bot.complete(
            DOCUMENTATION_SYSTEM_PROMPT, build_documentation_prompt(code, language),
        )

    async def explain(self, code: str, language: str = "") -> str:
        return await self.bot.complete(EXPLAIN_SYSTEM_PROMPT, build_explain_prompt(code, language))

    async def debug(self, code: str, language: str = "", output: str = "", question: str = "") -> str:
        """结合终端输出定位错误并给出修复。"""
        return await self.bot.complete(
            DEBUG_SYSTEM_PROMPT, build_debug_prompt(code, language, output, question),
        )
