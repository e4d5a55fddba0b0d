"""Progressive generation workflow.

Front view -> approval -> remaining views -> optional close-ups, components
and sketches. Every metered stage runs inside ``CreditsManager.hold`` so a
failed, timed-out or cancelled generation is refunded in full, and a stage
only commits its reservation once the results are persisted.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Sequence, Tuple

from config import settings, stage_costs
from services.credits import CreditsManager
from services.errors import ConflictError, GenerationFailure, NotFoundError, ValidationError
from services.generation import GeneratedImage, ImageProvider
from services.prompts import (
    build_closeup_prompt,
    build_component_prompt,
    build_front_view_prompt,
    build_single_view_prompt,
    build_sketch_prompt,
    build_view_prompt,
    closeup_shots,
    mentions_logo,
)
from services.storage import (
    IN_FLIGHT_STATUSES,
    READY_STATUSES,
    REMAINING_VIEW_TYPES,
    ApprovalRecord,
    AssetRecord,
    ProductRecord,
    RevisionRecord,
    WorkflowStorage,
)
from services.vision import VisionAnalyzer, default_features, normalize_features

logger = logging.getLogger(__name__)

GENERATION_MODES = ("regular", "black_and_white", "minimalist", "detailed")
SINGLE_VIEW_TYPES = ("front",) + REMAINING_VIEW_TYPES


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _new_id() -> str:
    return str(uuid.uuid4())


def _raise_first_failure(results: Sequence[Any]) -> None:
    for result in results:
        if isinstance(result, BaseException):
            raise result


class ProgressiveGenerationWorkflow:
    def __init__(
        self,
        storage: WorkflowStorage,
        credits: CreditsManager,
        provider: ImageProvider,
        analyzer: VisionAnalyzer,
        *,
        costs: Optional[Dict[str, int]] = None,
        timeout_seconds: Optional[float] = None,
        closeup_count: Optional[int] = None,
        sketch_views: Optional[Sequence[str]] = None,
    ):
        self.storage = storage
        self.credits = credits
        self.provider = provider
        self.analyzer = analyzer
        self.costs = costs or stage_costs()
        self.timeout_seconds = timeout_seconds or settings.GENERATION_TIMEOUT_SECONDS
        self.closeup_count = settings.CLOSEUP_SHOT_COUNT if closeup_count is None else closeup_count
        self.sketch_views = list(sketch_views or settings.SKETCH_VIEWS)

    # Lookups and guards

    async def _load_product(self, product_id: str, user_id: str) -> ProductRecord:
        if not product_id:
            raise ValidationError("productId is required")
        product = await self.storage.get_product(product_id, user_id)
        if product is None:
            raise NotFoundError("Product not found")
        return product

    async def _load_approval(self, approval_id: str, user_id: str) -> ApprovalRecord:
        if not approval_id:
            raise ValidationError("approvalId is required")
        approval = await self.storage.get_approval(approval_id, user_id)
        if approval is None:
            raise NotFoundError("Front view approval not found")
        return approval

    async def _load_ready_approval(self, product_id: str, user_id: str) -> Tuple[ProductRecord, ApprovalRecord]:
        product = await self._load_product(product_id, user_id)
        approval = await self.storage.find_ready_approval(product.id, user_id)
        if approval is None:
            raise ValidationError("All base views must be generated before creating tech pack assets")
        return product, approval

    async def _generate(self, prompt: str, references: Sequence[Optional[str]]) -> GeneratedImage:
        """One provider call bounded by the generation timeout."""
        try:
            image = await asyncio.wait_for(
                self.provider.generate_image(prompt, [url for url in references if url]),
                timeout=self.timeout_seconds,
            )
        except asyncio.TimeoutError as exc:
            raise GenerationFailure(f"Image generation timed out after {self.timeout_seconds:g}s") from exc
        except GenerationFailure:
            raise
        except Exception as exc:
            raise GenerationFailure(f"Image generation failed: {exc}") from exc
        if image is None or not image.url:
            raise GenerationFailure("Image generation returned no image URL")
        return image

    async def _generate_all(self, jobs: Sequence[Tuple[str, Sequence[Optional[str]]]]) -> List[GeneratedImage]:
        results = await asyncio.gather(
            *(self._generate(prompt, references) for prompt, references in jobs),
            return_exceptions=True,
        )
        # A partial batch is worthless to the caller; the whole stage fails.
        _raise_first_failure(results)
        return list(results)

    # Products

    async def create_product(
        self,
        user_id: str,
        name: str,
        *,
        prompt: Optional[str] = None,
        generation_mode: str = "regular",
        logo_url: Optional[str] = None,
        design_file_url: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> ProductRecord:
        if not name or not name.strip():
            raise ValidationError("Product name is required")
        mode = (generation_mode or "regular").strip().lower()
        if mode not in GENERATION_MODES:
            raise ValidationError(f"Unknown generation mode: {generation_mode}")
        return await self.storage.create_product(
            user_id,
            name.strip(),
            prompt=prompt,
            generation_mode=mode,
            logo_url=logo_url,
            design_file_url=design_file_url,
            metadata=metadata,
        )

    async def describe_product(self, product_id: str, user_id: str) -> Dict[str, Any]:
        product = await self._load_product(product_id, user_id)
        approval = await self.storage.find_in_flight_approval(product.id, user_id)
        if approval is None:
            approval = await self.storage.find_ready_approval(product.id, user_id)
        assets = await self.storage.list_assets(product.id, user_id)
        return {
            "product": product.to_dict(),
            "approval": approval.to_dict() if approval else None,
            "assets": [asset.to_dict() for asset in assets],
        }

    # Front view

    async def generate_front_view(
        self,
        user_id: str,
        product_id: str,
        prompt: str,
        *,
        is_edit: bool = False,
        previous_front_view_url: Optional[str] = None,
        session_id: Optional[str] = None,
    ) -> ApprovalRecord:
        if not prompt or not prompt.strip():
            raise ValidationError("prompt is required")
        if is_edit and not previous_front_view_url:
            raise ValidationError("previousFrontViewUrl is required when editing a front view")

        product = await self._load_product(product_id, user_id)
        approval = await self.storage.find_in_flight_approval(product.id, user_id)
        return await self._render_front_view(
            user_id,
            product,
            approval,
            prompt.strip(),
            reference_url=previous_front_view_url if is_edit else None,
            session_id=session_id,
        )

    async def _render_front_view(
        self,
        user_id: str,
        product: ProductRecord,
        approval: Optional[ApprovalRecord],
        prompt: str,
        *,
        feedback: Optional[str] = None,
        reference_url: Optional[str] = None,
        session_id: Optional[str] = None,
    ) -> ApprovalRecord:
        full_prompt = build_front_view_prompt(product, prompt, feedback=feedback, has_reference=bool(reference_url))
        references = [reference_url, product.design_file_url, product.logo_url]

        async with self.credits.hold(
            user_id,
            self.costs["front_view"],
            reason=f"front_view generation for product {product.id}",
            reference_type="product",
            reference_id=product.id,
        ) as lease:
            image = await self._generate(full_prompt, references)

            record: Optional[ApprovalRecord] = None
            if approval is None:
                try:
                    record = await self.storage.create_approval(
                        ApprovalRecord(
                            id=_new_id(),
                            user_id=user_id,
                            product_id=product.id,
                            status="pending",
                            iteration_number=1,
                            session_id=session_id,
                            front_view_url=image.url,
                            front_view_prompt=prompt,
                            feedback=feedback,
                            credits_consumed=lease.amount,
                        )
                    )
                except ConflictError:
                    # A concurrent request opened the approval first; continue on it.
                    approval = await self.storage.find_in_flight_approval(product.id, user_id)
                    if approval is None:
                        raise

            if record is None:
                # Edits and retries stay on the in-flight approval.
                record = await self.storage.update_approval(
                    approval.id,
                    increment={"iteration_number": 1, "credits_consumed": lease.amount},
                    status="pending",
                    session_id=session_id or approval.session_id,
                    front_view_url=image.url,
                    front_view_prompt=prompt,
                    feedback=feedback,
                    extracted_features=None,
                    views={},
                )

            await self.storage.add_assets(
                [
                    AssetRecord(
                        id=_new_id(),
                        user_id=user_id,
                        product_id=product.id,
                        approval_id=record.id,
                        stage="front_view",
                        label="front",
                        image_url=image.url,
                        prompt=full_prompt,
                        reservation_id=lease.reservation_id,
                    )
                ]
            )
            await lease.commit()

        logger.info(
            "[Workflow] Front view ready for product %s (approval %s, iteration %s)",
            product.id,
            record.id,
            record.iteration_number,
        )
        return record

    async def decide_front_view(
        self,
        user_id: str,
        approval_id: str,
        action: str,
        feedback: Optional[str] = None,
    ) -> ApprovalRecord:
        approval = await self._load_approval(approval_id, user_id)

        if action == "approve":
            if approval.status in READY_STATUSES:
                return approval
            if not approval.front_view_url:
                raise ValidationError("Front view has not been generated yet")
            features = await self._extract_features(approval)
            return await self.storage.update_approval(
                approval.id,
                status="approved",
                extracted_features=features,
                approved_at=_utcnow(),
            )

        if action == "edit":
            if not feedback or not feedback.strip():
                raise ValidationError("feedback is required to edit the front view")
            if approval.status not in IN_FLIGHT_STATUSES:
                raise ValidationError("Only a front view awaiting approval can be edited")
            product = await self._load_product(approval.product_id, user_id)
            approval = await self.storage.update_approval(
                approval.id,
                status="revision_requested",
                feedback=feedback.strip(),
            )
            return await self._render_front_view(
                user_id,
                product,
                approval,
                approval.front_view_prompt or product.prompt or product.name,
                feedback=feedback.strip(),
                reference_url=approval.front_view_url,
                session_id=approval.session_id,
            )

        raise ValidationError("action must be 'approve' or 'edit'")

    async def _extract_features(self, approval: ApprovalRecord) -> Dict[str, Any]:
        try:
            return await asyncio.wait_for(
                self.analyzer.extract_features(approval.front_view_url),
                timeout=self.timeout_seconds,
            )
        except Exception as exc:
            logger.warning("[Workflow] Feature extraction failed for approval %s: %s", approval.id, exc)
            if approval.extracted_features:
                return normalize_features(approval.extracted_features)
            return default_features()

    # Remaining views

    async def generate_remaining_views(self, user_id: str, approval_id: str, front_view_url: Optional[str]) -> ApprovalRecord:
        if not front_view_url or not front_view_url.strip():
            raise ValidationError("frontViewUrl is required to generate the remaining views")
        approval = await self._load_approval(approval_id, user_id)
        if approval.status != "approved":
            raise ValidationError("The front view must be approved before generating the remaining views")
        product = await self._load_product(approval.product_id, user_id)
        features = approval.extracted_features

        async with self.credits.hold(
            user_id,
            self.costs["remaining_views"],
            reason=f"remaining_views generation for approval {approval.id}",
            reference_type="approval",
            reference_id=approval.id,
        ) as lease:
            back = await self._generate(build_view_prompt("back", product, features), [front_view_url, product.logo_url])
            side_views = [view for view in REMAINING_VIEW_TYPES if view != "back"]
            images = await self._generate_all(
                [(build_view_prompt(view, product, features), [front_view_url, back.url]) for view in side_views]
            )
            views = {"back": back.url}
            views.update({view: image.url for view, image in zip(side_views, images)})

            record = await self.storage.update_approval(
                approval.id,
                increment={"credits_consumed": lease.amount},
                views=views,
            )
            await self.storage.add_assets(
                [
                    AssetRecord(
                        id=_new_id(),
                        user_id=user_id,
                        product_id=product.id,
                        approval_id=approval.id,
                        stage="remaining_views",
                        label=view,
                        image_url=url,
                        reservation_id=lease.reservation_id,
                    )
                    for view, url in views.items()
                ]
            )
            await lease.commit()

        logger.info("[Workflow] Remaining views ready for approval %s", approval.id)
        return record

    # Revisions

    async def _store_revision_batch(self, user_id: str, approval: ApprovalRecord) -> List[RevisionRecord]:
        latest = await self.storage.latest_revision_number(approval.product_id, user_id)
        revision_number = 0 if latest is None else latest + 1
        batch_id = _new_id()
        images = {"front": approval.front_view_url}
        images.update({view: approval.views[view] for view in REMAINING_VIEW_TYPES})

        stored = await self.storage.add_revisions(
            [
                RevisionRecord(
                    id=_new_id(),
                    user_id=user_id,
                    product_id=approval.product_id,
                    approval_id=approval.id,
                    revision_number=revision_number,
                    batch_id=batch_id,
                    view_type=view,
                    image_url=url,
                )
                for view, url in images.items()
            ]
        )
        logger.info("[Workflow] Created revision %s for product %s", revision_number, approval.product_id)
        return stored

    async def finalize_revision(self, user_id: str, product_id: str, approval_id: str) -> List[RevisionRecord]:
        approval = await self._load_approval(approval_id, user_id)
        if approval.product_id != product_id:
            raise ValidationError("Approval does not belong to this product")
        if not approval.views_ready:
            raise ValidationError("All five views must be generated before creating a revision")

        if approval.status == "completed":
            existing = await self.storage.list_revisions(product_id, user_id)
            return [revision for revision in existing if revision.approval_id == approval.id]

        stored = await self._store_revision_batch(user_id, approval)
        await self.storage.update_approval(approval.id, status="completed", completed_at=_utcnow())
        return stored

    async def regenerate_view(
        self,
        user_id: str,
        approval_id: str,
        view_type: str,
        instructions: str,
    ) -> Tuple[ApprovalRecord, List[RevisionRecord]]:
        """Re-render one view of a finished set from edit instructions.

        The current image of that view is the reference, so only the requested
        change should differ. On a completed approval the new set is stored as
        the next revision batch; otherwise the caller finalizes it later.
        """
        if view_type not in SINGLE_VIEW_TYPES:
            raise ValidationError(f"viewType must be one of: {', '.join(SINGLE_VIEW_TYPES)}")
        if not instructions or not instructions.strip():
            raise ValidationError("feedback is required to regenerate a view")
        approval = await self._load_approval(approval_id, user_id)
        if approval.status not in READY_STATUSES or not approval.views_ready:
            raise ValidationError("All five views must be generated before regenerating one of them")
        product = await self._load_product(approval.product_id, user_id)

        current_url = approval.front_view_url if view_type == "front" else approval.views[view_type]
        prompt = build_single_view_prompt(view_type, product, instructions)
        references = [current_url, product.logo_url if mentions_logo(instructions) else None]

        async with self.credits.hold(
            user_id,
            self.costs["single_view"],
            reason=f"single_view regeneration ({view_type}) for approval {approval.id}",
            reference_type="approval",
            reference_id=approval.id,
        ) as lease:
            image = await self._generate(prompt, references)
            record = await self.storage.replace_approval_view(approval.id, view_type, image.url, credits=lease.amount)
            await self.storage.add_assets(
                [
                    AssetRecord(
                        id=_new_id(),
                        user_id=user_id,
                        product_id=product.id,
                        approval_id=approval.id,
                        stage="single_view",
                        label=view_type,
                        image_url=image.url,
                        prompt=prompt,
                        reservation_id=lease.reservation_id,
                    )
                ]
            )
            revisions: List[RevisionRecord] = []
            if record.status == "completed":
                revisions = await self._store_revision_batch(user_id, record)
            await lease.commit()

        logger.info("[Workflow] Regenerated %s view for approval %s", view_type, approval.id)
        return record, revisions

    async def list_front_view_versions(self, user_id: str, product_id: str) -> List[Dict[str, Any]]:
        """Every front view rendered for a product, newest first."""
        product = await self._load_product(product_id, user_id)
        assets = await self.storage.list_assets(product.id, user_id, stage="front_view")
        current = await self.storage.find_in_flight_approval(product.id, user_id)
        if current is None:
            current = await self.storage.find_ready_approval(product.id, user_id)

        iterations: Dict[Optional[str], int] = {}
        versions = []
        for asset in assets:
            iterations[asset.approval_id] = iterations.get(asset.approval_id, 0) + 1
            version = asset.to_dict()
            version["iteration_number"] = iterations[asset.approval_id]
            version["is_current"] = bool(current and current.front_view_url == asset.image_url)
            versions.append(version)
        versions.reverse()
        return versions

    # Tech pack enrichment

    async def _generate_assets(
        self,
        user_id: str,
        product: ProductRecord,
        approval: ApprovalRecord,
        stage: str,
        jobs: Sequence[Tuple[str, str]],
    ) -> List[AssetRecord]:
        references = [approval.front_view_url, approval.views.get("back"), approval.views.get("side")]

        async with self.credits.hold(
            user_id,
            self.costs[stage],
            reason=f"{stage} generation for product {product.id}",
            reference_type="product",
            reference_id=product.id,
        ) as lease:
            images = await self._generate_all([(prompt, references) for _, prompt in jobs])
            stored = await self.storage.add_assets(
                [
                    AssetRecord(
                        id=_new_id(),
                        user_id=user_id,
                        product_id=product.id,
                        approval_id=approval.id,
                        stage=stage,
                        label=label,
                        image_url=image.url,
                        prompt=prompt,
                        reservation_id=lease.reservation_id,
                    )
                    for (label, prompt), image in zip(jobs, images)
                ]
            )
            await lease.commit()

        logger.info("[Workflow] Generated %s %s asset(s) for product %s", len(stored), stage, product.id)
        return stored

    async def generate_closeups(self, user_id: str, product_id: str) -> List[AssetRecord]:
        product, approval = await self._load_ready_approval(product_id, user_id)
        features = approval.extracted_features
        jobs = [(shot, build_closeup_prompt(shot, product, features)) for shot in closeup_shots(self.closeup_count)]
        return await self._generate_assets(user_id, product, approval, "closeups", jobs)

    async def generate_components(self, user_id: str, product_id: str, components: Optional[Sequence[str]]) -> List[AssetRecord]:
        names = [str(name).strip() for name in (components or []) if str(name).strip()]
        if not names:
            raise ValidationError("components must list at least one component name")
        product, approval = await self._load_ready_approval(product_id, user_id)
        features = approval.extracted_features
        jobs = [(name, build_component_prompt(name, product, features)) for name in names]
        return await self._generate_assets(user_id, product, approval, "components", jobs)

    async def generate_sketches(self, user_id: str, product_id: str) -> List[AssetRecord]:
        product, approval = await self._load_ready_approval(product_id, user_id)
        features = approval.extracted_features
        jobs = [(view, build_sketch_prompt(view, product, features)) for view in self.sketch_views]
        return await self._generate_assets(user_id, product, approval, "sketches", jobs)
