"""Tech pack enrichment: close-ups, components and technical sketches."""

from __future__ import annotations

from typing import List, Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from routers.auth_scope import AuthContext, ensure_user_scope, get_auth_context
from routers.deps import get_workflow, success
from routers.rate_limit import rate_limit
from services.storage import AssetRecord
from services.workflow import ProgressiveGenerationWorkflow

router = APIRouter()


class TechPackRequest(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    user_id: Optional[str] = None
    product_id: str = Field(min_length=1)


class ComponentsRequest(TechPackRequest):
    components: Optional[List[str]] = None


def _stage_payload(workflow: ProgressiveGenerationWorkflow, stage: str, assets: List[AssetRecord]):
    return success(
        {
            "stage": stage,
            "credits_used": workflow.costs[stage],
            "assets": [asset.to_dict() for asset in assets],
        }
    )


@router.post("/close-ups")
async def generate_closeups(
    request: TechPackRequest,
    _rate_limit: None = Depends(rate_limit("tech_pack_closeups", limit=20, window_seconds=3600)),
    auth: AuthContext = Depends(get_auth_context),
    workflow: ProgressiveGenerationWorkflow = Depends(get_workflow),
):
    user_id = ensure_user_scope(auth.user_id, request.user_id)
    assets = await workflow.generate_closeups(user_id, request.product_id)
    return _stage_payload(workflow, "closeups", assets)


@router.post("/components")
async def generate_components(
    request: ComponentsRequest,
    _rate_limit: None = Depends(rate_limit("tech_pack_components", limit=20, window_seconds=3600)),
    auth: AuthContext = Depends(get_auth_context),
    workflow: ProgressiveGenerationWorkflow = Depends(get_workflow),
):
    user_id = ensure_user_scope(auth.user_id, request.user_id)
    assets = await workflow.generate_components(user_id, request.product_id, request.components)
    return _stage_payload(workflow, "components", assets)


@router.post("/sketches")
async def generate_sketches(
    request: TechPackRequest,
    _rate_limit: None = Depends(rate_limit("tech_pack_sketches", limit=20, window_seconds=3600)),
    auth: AuthContext = Depends(get_auth_context),
    workflow: ProgressiveGenerationWorkflow = Depends(get_workflow),
):
    user_id = ensure_user_scope(auth.user_id, request.user_id)
    assets = await workflow.generate_sketches(user_id, request.product_id)
    return _stage_payload(workflow, "sketches", assets)
