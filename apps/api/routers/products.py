"""Product creation and lookup."""

from __future__ import annotations

from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from config import settings
from routers.auth_scope import AuthContext, ensure_user_scope, get_auth_context
from routers.deps import get_ttl_store, get_workflow, get_workflow_storage, success
from services.errors import NotFoundError
from services.storage import WorkflowStorage
from services.ttl_store import TTLStore
from services.workflow import ProgressiveGenerationWorkflow

router = APIRouter()


class CreateProductRequest(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    user_id: Optional[str] = None
    name: str = Field(min_length=1, max_length=255)
    prompt: Optional[str] = Field(default=None, max_length=4000)
    generation_mode: str = "regular"
    logo_url: Optional[str] = None
    design_file_url: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)


def revisions_cache_key(user_id: str, product_id: str) -> str:
    return f"genpire:revisions:{user_id}:{product_id}"


@router.post("")
async def create_product(
    request: CreateProductRequest,
    auth: AuthContext = Depends(get_auth_context),
    workflow: ProgressiveGenerationWorkflow = Depends(get_workflow),
):
    user_id = ensure_user_scope(auth.user_id, request.user_id)
    product = await workflow.create_product(
        user_id,
        request.name,
        prompt=request.prompt,
        generation_mode=request.generation_mode,
        logo_url=request.logo_url,
        design_file_url=request.design_file_url,
        metadata=request.metadata,
    )
    return success(product.to_dict())


@router.get("/{product_id}")
async def get_product(
    product_id: str,
    auth: AuthContext = Depends(get_auth_context),
    workflow: ProgressiveGenerationWorkflow = Depends(get_workflow),
):
    return success(await workflow.describe_product(product_id, auth.user_id))


@router.get("/{product_id}/revisions")
async def list_product_revisions(
    product_id: str,
    auth: AuthContext = Depends(get_auth_context),
    storage: WorkflowStorage = Depends(get_workflow_storage),
    cache: TTLStore = Depends(get_ttl_store),
):
    key = revisions_cache_key(auth.user_id, product_id)
    cached = await cache.get(key)
    if cached is not None:
        return success({"revisions": cached, "cached": True})

    product = await storage.get_product(product_id, auth.user_id)
    if product is None:
        raise NotFoundError("Product not found")
    revisions = [revision.to_dict() for revision in await storage.list_revisions(product_id, auth.user_id)]
    await cache.set(key, revisions, settings.REVISIONS_CACHE_TTL_SECONDS)
    return success({"revisions": revisions, "cached": False})


@router.get("/{product_id}/front-views")
async def list_front_view_versions(
    product_id: str,
    auth: AuthContext = Depends(get_auth_context),
    workflow: ProgressiveGenerationWorkflow = Depends(get_workflow),
):
    return success({"versions": await workflow.list_front_view_versions(auth.user_id, product_id)})
