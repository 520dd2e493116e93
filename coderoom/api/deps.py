from fastapi import Request

from coderoom.core.languages import LanguageRegistry
from coderoom.db.document_repository import DocumentRepository
from coderoom.services.assistant import AssistantService
from coderoom.services.coordinator import SessionCoordinator
from coderoom.services.sandbox import PistonSandbox


def get_coordinator(request: Request) -> SessionCoordinator:
    return request.app.state.coordinator


def get_assistant(request: Request) -> AssistantService:
    return request.app.state.assistant


def get_sandbox(request: Request) -> PistonSandbox:
    return request.app.state.sandbox


def get_languages(request: Request) -> LanguageRegistry:
    return request.app.state.languages


def get_document_repository(request: Request) -> DocumentRepository | None:
    return request.app.state.document_repository
