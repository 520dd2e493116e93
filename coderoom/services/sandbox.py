"""
coderoom.services.sandbox
~~~~~~~~~~~~~~~~~~~~~~~~~

远程代码执行沙箱客户端（Piston 兼容接口）。

一次请求/响应往返：提交 ``{language, source, stdin}``，返回 ``{output, status}``。
没有流式输出，也没有持久会话。所有失败都会被转换成一段可读的输出文本。
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Any

import httpx

from coderoom.core.languages import LanguageSpec
from coderoom.core.logging import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True)
class SandboxResult:
    """一次远程执行的结果。"""

    output: str
    status: str
    success: bool


class PistonSandbox:
    """Piston 执行沙箱客户端。

    Attributes:
        url: 执行接口地址。
        timeout: 请求超时（秒）。
    """

    def __init__(
        self,
        url: str,
        timeout: float = 20.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.url = url
        self.timeout = timeout
        self._client = client

    def _build_request(self, spec: LanguageSpec, source: str, stdin: str) -> dict[str, Any]:
        return {
            "language": spec.sandbox_language,
            "version": "*",
            "files": [{"name": spec.filename, "content": source}],
            "stdin": stdin or "",
        }

    async def _post(self, payload: dict[str, Any]) -> httpx.Response:
        if self._client is not None:
            return await self._client.post(self.url, json=payload, timeout=self.timeout)
        async with httpx.AsyncClient(timeout=self.timeout) as client:
            return await client.post(self.url, json=payload)

    async def execute(self, spec: LanguageSpec, source: str, stdin: str = "") -> SandboxResult:
        """提交代码并等待执行结果。

        Args:
            spec: 语言配方。
            source: 源代码。
            stdin: 标准输入。

        Returns:
            ``SandboxResult``。沙箱不可达、超时或返回错误时 ``success`` 为 False，
            ``output`` 中是给用户看的错误描述。
        """
        logger.info("远程执行 | language=%s | %d chars", spec.name, len(source))
        try:
            response = await self._post(self._build_request(spec, source, stdin))
            response.raise_for_status()
            result = self._parse_result(response.json())
        except httpx.TimeoutException:
            logger.error("远程沙箱超时 | timeout=%.1fs", self.timeout)
            return SandboxResult(
                output=f"Error: code execution timed out after {self.timeout:.0f}s.",
                status="timeout",
                success=False,
            )
        except httpx.HTTPStatusError as e:
            logger.error("远程沙箱返回错误状态: %s", e.response.status_code)
            return SandboxResult(
                output=f"Error: execution service responded with HTTP {e.response.status_code}.",
                status="error",
                success=False,
            )
        except (httpx.HTTPError, ValueError) as e:
            logger.error("远程沙箱调用异常: %s", e, exc_info=True)
            return SandboxResult(
                output="Error: unable to connect to code execution service. Please try again.",
                status="unavailable",
                success=False,
            )

        return result

    @staticmethod
    def _parse_result(body: Any) -> SandboxResult:
        """按 stdout → stderr → message 的优先级取输出。

        Raises:
            ValueError: 响应体或其中的 compile / run 段不是对象。
        """
        if not isinstance(body, dict):
            raise ValueError("unexpected response body")
        compile_stage = body.get("compile") or {}
        run_stage = body.get("run") or {}
        if not isinstance(compile_stage, dict) or not isinstance(run_stage, dict):
            raise ValueError("unexpected stage in response body")

        if compile_stage.get("code") not in (None, 0):
            output = compile_stage.get("stderr") or compile_stage.get("output") or "Compilation failed."
            return SandboxResult(output=str(output), status="compile_error", success=False)

        output = (
            run_stage.get("stdout")
            or run_stage.get("stderr")
            or body.get("message")
            or "No output"
        )
        code = run_stage.get("code")
        if run_stage.get("signal"):
            status = f"signal:{run_stage['signal']}"
        elif code is None and body.get("message"):
            status = "error"
        else:
            status = f"exit:{code if code is not None else 0}"
        return SandboxResult(output=str(output), status=status, success=status == "exit:0")
