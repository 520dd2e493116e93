"""
coderoom.prompts.assistant
~~~~~~~~~~~~~~~~~~~~~~~~~~

编程助手的系统 Prompt 与 Prompt 构建工具。

将 Prompt 独立管理，调整助手行为时无需修改 LLM 连接代码或房间逻辑。
"""

# ---------------------------------------------------------------------------
# 系统 Prompt
# ---------------------------------------------------------------------------
ASSISTANT_SYSTEM_PROMPT: str = """\
You are an AI pair-programming assistant inside a shared, real-time code room.
Several developers see your answers at the same time.
Rules:
1. Answer the question directly; keep it short unless a longer explanation is asked for.
2. When the shared code is provided, ground your answer in it and reference lines or names.
3. Put code in fenced Markdown blocks tagged with the language.
4. If the question is unrelated to programming, answer briefly and politely.\
"""

DOCUMENTATION_SYSTEM_PROMPT: str = """\
You are a senior engineer writing developer documentation.
Produce Markdown documentation for the given code with these sections:
## Overview, ## Functions / Classes (signature, parameters, return value), ## Usage Example, ## Notes.
Be accurate; do not invent behavior that is not in the code.\
"""

EXPLAIN_SYSTEM_PROMPT: str = """\
You are a patient programming tutor.
Explain what the given code does, step by step, in plain language.
Point out anything surprising or error-prone. Keep it under 200 words.\
"""

DEBUG_SYSTEM_PROMPT: str = """\
You are a code debugger. Be extremely concise.
Only identify errors and provide direct fixes. No explanations, no fluff.
Maximum 3-4 sentences.\
"""

# 共享代码过长时只截取前面部分，避免 Prompt 过大
MAX_CONTEXT_CHARS: int = 12_000


def _code_block(code: str, language: str) -> str:
    snippet = code[:MAX_CONTEXT_CHARS]
    if len(code) > MAX_CONTEXT_CHARS:
        snippet += "\n... (truncated)"
    return f"```{language}\n{snippet}\n```"


def build_chat_prompt(question: str, code: str = "", language: str = "") -> str:
    """将用户提问与房间当前代码组装为最终发送给 LLM 的 Prompt。

    Args:
        question: 用户在 AI 面板中的提问。
        code: 房间当前共享的代码。
        language: 房间当前语言。

    Returns:
        组装后的 Prompt。代码为空时直接返回原始提问。
    """
    if not code.strip():
        return question

    return (
        f"Question: {question}\n\n"
        f"[Shared code in the room, language: {language or 'unknown'}]\n"
        f"{_code_block(code, language)}"
    )


def build_documentation_prompt(code: str, language: str) -> str:
    return f"Write documentation for this {language or 'source'} code:\n\n{_code_block(code, language)}"


def build_explain_prompt(code: str, language: str) -> str:
    return f"Explain this {language or 'source'} code:\n\n{_code_block(code, language)}"


def build_debug_prompt(code: str, language: str, output: str = "", question: str = "") -> str:
    """组装调试请求：代码 + 终端输出 + 用户问题。"""
    parts = [f"Code ({language or 'unknown'}):\n{_code_block(code, language)}"]
    if output.strip():
        parts.append(f"Terminal output:\n```\n{output[-MAX_CONTEXT_CHARS:]}\n```")
    parts.append(f"Question: {question.strip() or 'Find and fix the exact error shown in terminal'}")
    return "\n\n".join(parts)
