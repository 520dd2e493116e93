"""
coderoom.api.room_endpoints
~~~~~~~~~~~~~~~~~~~~~~~~~~~

房间与编程助手 REST 接口。

端点:
  - ``GET  /rooms``                       → 活跃房间列表
  - ``GET  /rooms/{room_id}``             → 房间详情
  - ``GET  /rooms/{room_id}/document``    → 读取房间文档
  - ``PUT  /rooms/{room_id}/document``    → 保存房间文档
  - ``POST /run``                         → 一次性执行代码
  - ``POST /ai-chat``                     → 编程助手问答
  - ``POST /explain-code``                → 解释代码
  - ``POST /debug``                       → 分析报错
"""
from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse

from coderoom.api.deps import (
    get_assistant,
    get_coordinator,
    get_document_repository,
    get_languages,
    get_sandbox,
)
from coderoom.core.languages import LanguageRegistry
from coderoom.core.logging import get_logger
from coderoom.core.rate_limit import limiter
from coderoom.db.document_repository import DocumentRepository
from coderoom.schemas.api_response import ApiResponse
from coderoom.schemas.room_interactions import (
    AiChatRequest,
    AiChatResponseData,
    DebugRequest,
    DebugResponseData,
    DocumentData,
    ExplainRequest,
    ExplainResponseData,
    RoomInfoData,
    RunRequest,
    RunResponseData,
    SaveDocumentRequest,
)
from coderoom.services.assistant import AssistantService
from coderoom.services.coordinator import SessionCoordinator
from coderoom.services.sandbox import PistonSandbox

logger = get_logger(__name__)

router: APIRouter = APIRouter()


def _fail(status_code: int, msg: str) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content=ApiResponse.fail(msg=msg, code=status_code).model_dump(),
    )


# ── 房间 ──────────────────────────────────────────────────────────────


@router.get("/rooms", summary="获取活跃房间列表", response_model=ApiResponse[list[RoomInfoData]])
@limiter.limit("10/second")
async def list_rooms(request: Request, coordinator: SessionCoordinator = Depends(get_coordinator)):
    """返回所有有人在线的房间。"""
    return ApiResponse.ok(data=coordinator.list_rooms())


@router.get("/rooms/{room_id}", summary="获取房间详情", response_model=ApiResponse[RoomInfoData])
@limiter.limit("5/second")
async def room_info(request: Request, room_id: str, coordinator: SessionCoordinator = Depends(get_coordinator)):
    """返回指定房间的摘要信息。查询不会创建房间。"""
    info = coordinator.room_info(room_id)
    if info is None:
        return _fail(404, f"room not found: {room_id}")
    return ApiResponse.ok(data=info)


@router.get("/rooms/{room_id}/document", summary="读取房间文档", response_model=ApiResponse[DocumentData])
@limiter.limit("5/second")
async def get_document(
    request: Request,
    room_id: str,
    coordinator: SessionCoordinator = Depends(get_coordinator),
    repo: DocumentRepository | None = Depends(get_document_repository),
):
    """依次从在线房间、文档仓库读取，都没有时返回默认空文档。"""
    state = coordinator.store.get(room_id)
    if state is not None:
        return ApiResponse.ok(data=DocumentData(room_id=room_id, content=state.document, language=state.language))

    saved = repo.load(room_id) if repo is not None else None
    if saved:
        return ApiResponse.ok(data=DocumentData(
            room_id=room_id,
            content=saved.get("content", ""),
            language=saved.get("language") or coordinator.store.default_language,
        ))
    return ApiResponse.ok(data=DocumentData(room_id=room_id, content="", language=coordinator.store.default_language))


@router.put("/rooms/{room_id}/document", summary="保存房间文档", response_model=ApiResponse[DocumentData])
@limiter.limit("1/second")
async def save_document(
    request: Request,
    room_id: str,
    body: SaveDocumentRequest,
    coordinator: SessionCoordinator = Depends(get_coordinator),
    repo: DocumentRepository | None = Depends(get_document_repository),
):
    """把文档写入文档仓库。未配置持久化目录时返回 503。"""
    if repo is None:
        return _fail(503, "document persistence is disabled")
    if len(body.content) > coordinator.store.max_document_chars:
        return _fail(413, "document is too large")

    state = coordinator.store.get(room_id)
    language = body.language or (state.language if state else coordinator.store.default_language)
    repo.save(room_id, body.content, language)
    return ApiResponse.ok(data=DocumentData(room_id=room_id, content=body.content, language=language))


# ── 执行 ──────────────────────────────────────────────────────────────


@router.post("/run", summary="执行代码", response_model=ApiResponse[RunResponseData])
@limiter.limit("2/second")
async def run_code(
    request: Request,
    body: RunRequest,
    sandbox: PistonSandbox = Depends(get_sandbox),
    languages: LanguageRegistry = Depends(get_languages),
):
    """通过远程沙箱一次性执行代码，返回完整输出。"""
    spec = languages.get(body.language)
    if spec is None:
        return _fail(400, f"Unsupported language: {body.language}")
    result = await sandbox.execute(spec, body.code, body.input)
    return ApiResponse.ok(data=RunResponseData(output=result.output, status=result.status, success=result.success))


# ── 编程助手 ──────────────────────────────────────────────────────────


@router.post("/ai-chat", summary="编程助手问答", response_model=ApiResponse[AiChatResponseData])
@limiter.limit("1/second")
async def ai_chat(
    request: Request,
    body: AiChatRequest,
    assistant: AssistantService = Depends(get_assistant),
    coordinator: SessionCoordinator = Depends(get_coordinator),
):
    """回答编程问题。带上 ``roomId`` 时以房间当前代码为上下文。"""
    code, language = body.code, body.language
    state = coordinator.store.get(body.room_id) if body.room_id else None
    if state is not None:
        code = code or state.document
        language = language or state.language

    reply = await assistant.answer(body.message, code, language)
    return ApiResponse.ok(data=AiChatResponseData(response=reply))


@router.post("/explain-code", summary="解释代码", response_model=ApiResponse[ExplainResponseData])
@limiter.limit("1/second")
async def explain_code(
    request: Request,
    body: ExplainRequest,
    assistant: AssistantService = Depends(get_assistant),
):
    explanation = await assistant.explain(body.code, body.language)
    return ApiResponse.ok(data=ExplainResponseData(explanation=explanation))


@router.post("/debug", summary="分析报错", response_model=ApiResponse[DebugResponseData])
@limiter.limit("1/second")
async def debug_code(
    request: Request,
    body: DebugRequest,
    assistant: AssistantService = Depends(get_assistant),
):
    """结合终端输出定位错误并给出修复后的代码。"""
    analysis = await assistant.debug(body.code, body.language, body.output, body.question)
    return ApiResponse.ok(data=DebugResponseData(analysis=analysis))
