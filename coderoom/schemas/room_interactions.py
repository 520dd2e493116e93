"""
coderoom.schemas.room_interactions
~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~

REST 接口的 Pydantic 请求/响应模型。

请求体同时接受 snake_case 与前端使用的 camelCase 字段名。
"""
from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class RunRequest(_CamelModel):
    """一次性代码执行请求。"""

    code: str = Field(..., min_length=1, description="源代码")
    language: str = Field(..., min_length=1, description="语言标识")
    input: str = Field(default="", description="标准输入")


class RunResponseData(_CamelModel):
    output: str = Field(..., description="程序输出或错误信息")
    status: str = Field(..., description="退出状态，如 exit:0 / timeout / unavailable")
    success: bool = Field(..., description="是否正常退出")


class AiChatRequest(_CamelModel):
    """编程助手提问。带上房间 ID 时，缺省的代码和语言取自房间当前状态。"""

    message: str = Field(..., min_length=1, max_length=4000, description="用户问题")
    code: str = Field(default="", description="当前编辑器中的代码")
    language: str = Field(default="", description="代码语言")
    room_id: str | None = Field(default=None, description="房间 ID")


class AiChatResponseData(_CamelModel):
    response: str = Field(..., description="助手回复")


class ExplainRequest(_CamelModel):
    code: str = Field(..., min_length=1, description="需要解释的代码")
    language: str = Field(default="", description="代码语言")


class ExplainResponseData(_CamelModel):
    explanation: str = Field(..., description="代码解释")


class DebugRequest(_CamelModel):
    """调试请求：代码加上终端里的报错。"""

    code: str = Field(..., min_length=1, description="出错的代码")
    language: str = Field(default="", description="代码语言")
    output: str = Field(default="", description="终端输出 / 报错信息")
    question: str = Field(default="", description="附加问题")


class DebugResponseData(_CamelModel):
    analysis: str = Field(..., description="错误分析与修复建议")


class DocumentData(_CamelModel):
    room_id: str = Field(..., description="房间 ID")
    content: str = Field(..., description="文档内容")
    language: str = Field(..., description="文档语言")


class SaveDocumentRequest(_CamelModel):
    content: str = Field(..., description="文档内容")
    language: str | None = Field(default=None, description="文档语言，缺省时沿用房间当前语言")


class RoomInfoData(_CamelModel):
    """房间摘要信息。"""

    room_id: str = Field(..., description="房间唯一标识")
    online_count: int = Field(..., description="当前在线人数")
    language: str = Field(..., description="当前语言")
    running: bool = Field(..., description="是否有程序正在运行")
