"""Progressive generation endpoints: front view, approval, remaining views, revisions."""

from __future__ import annotations

from typing import Literal, Optional

from fastapi import APIRouter, BackgroundTasks, Depends
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from config import settings
from routers.auth_scope import AuthContext, ensure_user_scope, get_auth_context
from routers.deps import (
    get_storage_provider,
    get_ttl_store,
    get_vision_analyzer,
    get_workflow,
    success,
)
from routers.products import revisions_cache_key
from routers.rate_limit import rate_limit
from services.storage import ApprovalRecord, StorageProvider
from services.ttl_store import TTLStore
from services.vision import VisionAnalyzer, analyze_front_view_in_background
from services.workflow import ProgressiveGenerationWorkflow

router = APIRouter()


class WorkflowRequest(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    user_id: Optional[str] = None


class FrontViewRequest(WorkflowRequest):
    product_id: str = Field(min_length=1)
    prompt: str = Field(min_length=1, max_length=4000)
    is_edit: bool = False
    previous_front_view_url: Optional[str] = None
    session_id: Optional[str] = None


class FrontViewDecisionRequest(WorkflowRequest):
    approval_id: str = Field(min_length=1)
    action: Literal["approve", "edit"]
    feedback: Optional[str] = Field(default=None, max_length=4000)


class RemainingViewsRequest(WorkflowRequest):
    approval_id: str = Field(min_length=1)
    front_view_url: Optional[str] = None


class FinalizeRevisionRequest(WorkflowRequest):
    product_id: str = Field(min_length=1)
    approval_id: str = Field(min_length=1)


class RegenerateViewRequest(WorkflowRequest):
    approval_id: str = Field(min_length=1)
    view_type: str = Field(min_length=1)
    feedback: str = Field(min_length=1, max_length=4000)


def _schedule_analysis(
    background_tasks: BackgroundTasks,
    storage_provider: StorageProvider,
    analyzer: VisionAnalyzer,
    approval: ApprovalRecord,
) -> None:
    if not settings.BACKGROUND_ANALYSIS_ENABLED or not approval.front_view_url:
        return
    background_tasks.add_task(
        analyze_front_view_in_background,
        storage_provider,
        analyzer,
        approval_id=approval.id,
        user_id=approval.user_id,
        front_view_url=approval.front_view_url,
    )


@router.post("/front-view")
async def generate_front_view(
    request: FrontViewRequest,
    background_tasks: BackgroundTasks,
    _rate_limit: None = Depends(rate_limit("workflow_front_view", limit=30, window_seconds=3600)),
    auth: AuthContext = Depends(get_auth_context),
    workflow: ProgressiveGenerationWorkflow = Depends(get_workflow),
    storage_provider: StorageProvider = Depends(get_storage_provider),
    analyzer: VisionAnalyzer = Depends(get_vision_analyzer),
):
    user_id = ensure_user_scope(auth.user_id, request.user_id)
    approval = await workflow.generate_front_view(
        user_id,
        request.product_id,
        request.prompt,
        is_edit=request.is_edit,
        previous_front_view_url=request.previous_front_view_url,
        session_id=request.session_id,
    )
    _schedule_analysis(background_tasks, storage_provider, analyzer, approval)
    return success(approval.to_dict())


@router.post("/front-view/decision")
async def decide_front_view(
    request: FrontViewDecisionRequest,
    background_tasks: BackgroundTasks,
    _rate_limit: None = Depends(rate_limit("workflow_decision", limit=60, window_seconds=3600)),
    auth: AuthContext = Depends(get_auth_context),
    workflow: ProgressiveGenerationWorkflow = Depends(get_workflow),
    storage_provider: StorageProvider = Depends(get_storage_provider),
    analyzer: VisionAnalyzer = Depends(get_vision_analyzer),
):
    user_id = ensure_user_scope(auth.user_id, request.user_id)
    approval = await workflow.decide_front_view(user_id, request.approval_id, request.action, request.feedback)
    if request.action == "edit":
        _schedule_analysis(background_tasks, storage_provider, analyzer, approval)
    return success(approval.to_dict())


@router.post("/remaining-views")
async def generate_remaining_views(
    request: RemainingViewsRequest,
    _rate_limit: None = Depends(rate_limit("workflow_remaining_views", limit=30, window_seconds=3600)),
    auth: AuthContext = Depends(get_auth_context),
    workflow: ProgressiveGenerationWorkflow = Depends(get_workflow),
):
    user_id = ensure_user_scope(auth.user_id, request.user_id)
    approval = await workflow.generate_remaining_views(user_id, request.approval_id, request.front_view_url)
    return success(approval.to_dict())


@router.post("/revisions")
async def finalize_revision(
    request: FinalizeRevisionRequest,
    auth: AuthContext = Depends(get_auth_context),
    workflow: ProgressiveGenerationWorkflow = Depends(get_workflow),
    cache: TTLStore = Depends(get_ttl_store),
):
    user_id = ensure_user_scope(auth.user_id, request.user_id)
    revisions = await workflow.finalize_revision(user_id, request.product_id, request.approval_id)
    await cache.delete(revisions_cache_key(user_id, request.product_id))
    return success(
        {
            "revision_number": revisions[0].revision_number if revisions else None,
            "revisions": [revision.to_dict() for revision in revisions],
        }
    )


@router.post("/views/regenerate")
async def regenerate_view(
    request: RegenerateViewRequest,
    _rate_limit: None = Depends(rate_limit("workflow_single_view", limit=60, window_seconds=3600)),
    auth: AuthContext = Depends(get_auth_context),
    workflow: ProgressiveGenerationWorkflow = Depends(get_workflow),
    cache: TTLStore = Depends(get_ttl_store),
):
    user_id = ensure_user_scope(auth.user_id, request.user_id)
    approval, revisions = await workflow.regenerate_view(user_id, request.approval_id, request.view_type, request.feedback)
    if revisions:
        await cache.delete(revisions_cache_key(user_id, approval.product_id))
    return success(
        {
            "approval": approval.to_dict(),
            "revision_number": revisions[0].revision_number if revisions else None,
            "revisions": [revision.to_dict() for revision in revisions],
        }
    )
