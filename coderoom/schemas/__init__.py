"""
coderoom.schemas
~~~~~~~~~~~~~~~~
Pydantic schemas and models for the API.
"""
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

# Call model_rebuild to resolve forward references in generic Pydantic models.
ApiResponse.model_rebuild()
