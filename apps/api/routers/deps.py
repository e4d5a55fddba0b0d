"""FastAPI dependencies that hand injected application state to handlers."""

from typing import Any, AsyncIterator, Dict

from fastapi import Depends, Request

from services.credits import CreditsManager
from services.generation import ImageProvider
from services.storage import StorageProvider, WorkflowStorage
from services.ttl_store import TTLStore
from services.vision import VisionAnalyzer
from services.workflow import ProgressiveGenerationWorkflow


def success(data: Any) -> Dict[str, Any]:
    return {"success": True, "data": data}


def get_credits_manager(request: Request) -> CreditsManager:
    return request.app.state.credits_manager


def get_storage_provider(request: Request) -> StorageProvider:
    return request.app.state.storage_provider


def get_ttl_store(request: Request) -> TTLStore:
    return request.app.state.ttl_store


def get_image_provider(request: Request) -> ImageProvider:
    return request.app.state.image_provider


def get_vision_analyzer(request: Request) -> VisionAnalyzer:
    return request.app.state.vision_analyzer


async def get_workflow_storage(
    provider: StorageProvider = Depends(get_storage_provider),
) -> AsyncIterator[WorkflowStorage]:
    async with provider.open() as storage:
        yield storage


def get_workflow(
    storage: WorkflowStorage = Depends(get_workflow_storage),
    credits: CreditsManager = Depends(get_credits_manager),
    provider: ImageProvider = Depends(get_image_provider),
    analyzer: VisionAnalyzer = Depends(get_vision_analyzer),
) -> ProgressiveGenerationWorkflow:
    return ProgressiveGenerationWorkflow(storage, credits, provider, analyzer)
