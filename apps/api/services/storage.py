"""Persistence for products, front-view approvals, generated assets and revisions.

Two interchangeable backends sit behind ``WorkflowStorage``: the durable
SQLAlchemy one and an in-process one used when the service runs in degraded
mode without a database. ``StorageProvider`` picks one from configuration.
Credit bookkeeping never goes through here; it is always durable.
"""

from __future__ import annotations

import dataclasses
import uuid
from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, AsyncIterator, Dict, List, Optional

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.future import select

from config import settings
from database import async_session_maker
from models.front_view_approval import FrontViewApproval
from models.generated_asset import GeneratedAsset
from models.product import Product
from models.product_revision import ProductRevision
from services.accounts import ensure_user
from services.errors import ConflictError, NotFoundError

IN_FLIGHT_STATUSES = ("pending", "revision_requested")
READY_STATUSES = ("approved", "completed")
REMAINING_VIEW_TYPES = ("back", "side", "top", "bottom")
VIEW_SWAP_ATTEMPTS = 5


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _iso(value: Any) -> Any:
    return value.isoformat() if isinstance(value, datetime) else value


@dataclass
class ProductRecord:
    id: str
    user_id: str
    name: str
    prompt: Optional[str] = None
    generation_mode: str = "regular"
    logo_url: Optional[str] = None
    design_file_url: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    created_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {key: _iso(value) for key, value in dataclasses.asdict(self).items()}


@dataclass
class ApprovalRecord:
    id: str
    user_id: str
    product_id: str
    status: str = "pending"
    iteration_number: int = 1
    session_id: Optional[str] = None
    front_view_url: Optional[str] = None
    front_view_prompt: Optional[str] = None
    feedback: Optional[str] = None
    extracted_features: Optional[Dict[str, Any]] = None
    views: Dict[str, str] = field(default_factory=dict)
    credits_consumed: int = 0
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    approved_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    @property
    def views_ready(self) -> bool:
        return bool(self.front_view_url) and all(self.views.get(view) for view in REMAINING_VIEW_TYPES)

    def to_dict(self) -> Dict[str, Any]:
        payload = {key: _iso(value) for key, value in dataclasses.asdict(self).items()}
        payload["views_ready"] = self.views_ready
        return payload


@dataclass
class AssetRecord:
    id: str
    user_id: str
    product_id: str
    stage: str
    label: str
    image_url: str
    approval_id: Optional[str] = None
    prompt: Optional[str] = None
    reservation_id: Optional[str] = None
    created_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {key: _iso(value) for key, value in dataclasses.asdict(self).items()}


@dataclass
class RevisionRecord:
    id: str
    user_id: str
    product_id: str
    revision_number: int
    batch_id: str
    view_type: str
    image_url: str
    approval_id: Optional[str] = None
    is_active: bool = True
    created_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {key: _iso(value) for key, value in dataclasses.asdict(self).items()}


class WorkflowStorage(ABC):
    """Create/read/update operations the progressive workflow relies on."""

    @abstractmethod
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
        ...

    @abstractmethod
    async def get_product(self, product_id: str, user_id: str) -> Optional[ProductRecord]:
        ...

    @abstractmethod
    async def create_approval(self, record: ApprovalRecord) -> ApprovalRecord:
        """Insert an approval; raises ``ConflictError`` if the product already has one in flight."""

    @abstractmethod
    async def get_approval(self, approval_id: str, user_id: str) -> Optional[ApprovalRecord]:
        ...

    @abstractmethod
    async def find_in_flight_approval(self, product_id: str, user_id: str) -> Optional[ApprovalRecord]:
        """Latest approval still awaiting a decision or a regenerated front view."""

    @abstractmethod
    async def find_ready_approval(self, product_id: str, user_id: str) -> Optional[ApprovalRecord]:
        """Latest approved approval whose base views are all generated."""

    @abstractmethod
    async def update_approval(
        self,
        approval_id: str,
        *,
        increment: Optional[Dict[str, int]] = None,
        **changes: Any,
    ) -> ApprovalRecord:
        """Apply ``changes`` and add ``increment`` to counters relative to the stored values."""

    @abstractmethod
    async def replace_approval_view(
        self,
        approval_id: str,
        view_type: str,
        image_url: str,
        *,
        credits: int = 0,
    ) -> ApprovalRecord:
        """Swap one view URL ("front" or a remaining view) without losing concurrent view changes."""

    @abstractmethod
    async def add_assets(self, assets: List[AssetRecord]) -> List[AssetRecord]:
        ...

    @abstractmethod
    async def list_assets(self, product_id: str, user_id: str, stage: Optional[str] = None) -> List[AssetRecord]:
        ...

    @abstractmethod
    async def add_revisions(self, revisions: List[RevisionRecord]) -> List[RevisionRecord]:
        """Store a revision batch and deactivate older revisions of the product."""

    @abstractmethod
    async def latest_revision_number(self, product_id: str, user_id: str) -> Optional[int]:
        ...

    @abstractmethod
    async def list_revisions(self, product_id: str, user_id: str) -> List[RevisionRecord]:
        ...


def _product_record(row: Product) -> ProductRecord:
    return ProductRecord(
        id=row.id,
        user_id=row.user_id,
        name=row.name,
        prompt=row.prompt,
        generation_mode=row.generation_mode or "regular",
        logo_url=row.logo_url,
        design_file_url=row.design_file_url,
        metadata=dict(row.metadata_json or {}),
        created_at=row.created_at,
    )


def _approval_record(row: FrontViewApproval) -> ApprovalRecord:
    return ApprovalRecord(
        id=row.id,
        user_id=row.user_id,
        product_id=row.product_id,
        status=row.status,
        iteration_number=row.iteration_number or 1,
        session_id=row.session_id,
        front_view_url=row.front_view_url,
        front_view_prompt=row.front_view_prompt,
        feedback=row.feedback,
        extracted_features=row.extracted_features,
        views=dict(row.views_json or {}),
        credits_consumed=row.credits_consumed or 0,
        created_at=row.created_at,
        updated_at=row.updated_at,
        approved_at=row.approved_at,
        completed_at=row.completed_at,
    )


def _asset_record(row: GeneratedAsset) -> AssetRecord:
    return AssetRecord(
        id=row.id,
        user_id=row.user_id,
        product_id=row.product_id,
        stage=row.stage,
        label=row.label,
        image_url=row.image_url,
        approval_id=row.approval_id,
        prompt=row.prompt,
        reservation_id=row.reservation_id,
        created_at=row.created_at,
    )


def _revision_record(row: ProductRevision) -> RevisionRecord:
    return RevisionRecord(
        id=row.id,
        user_id=row.user_id,
        product_id=row.product_id,
        revision_number=row.revision_number,
        batch_id=row.batch_id,
        view_type=row.view_type,
        image_url=row.image_url,
        approval_id=row.approval_id,
        is_active=bool(row.is_active),
        created_at=row.created_at,
    )


# Column names differ from record field names only for JSON payloads.
_APPROVAL_COLUMNS = {"views": "views_json"}


class DatabaseWorkflowStorage(WorkflowStorage):
    """Durable backend on the application database."""

    def __init__(self, db: AsyncSession):
        self.db = db

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
        await ensure_user(self.db, user_id)
        row = Product(
            id=str(uuid.uuid4()),
            user_id=user_id,
            name=name,
            prompt=prompt,
            generation_mode=generation_mode or "regular",
            logo_url=logo_url,
            design_file_url=design_file_url,
            metadata_json=metadata or {},
            created_at=_utcnow(),
        )
        self.db.add(row)
        await self.db.commit()
        return _product_record(row)

    async def get_product(self, product_id: str, user_id: str) -> Optional[ProductRecord]:
        result = await self.db.execute(
            select(Product).where(Product.id == product_id, Product.user_id == user_id)
        )
        row = result.scalar_one_or_none()
        return _product_record(row) if row else None

    async def create_approval(self, record: ApprovalRecord) -> ApprovalRecord:
        row = FrontViewApproval(
            id=record.id,
            user_id=record.user_id,
            product_id=record.product_id,
            session_id=record.session_id,
            status=record.status,
            iteration_number=record.iteration_number,
            front_view_url=record.front_view_url,
            front_view_prompt=record.front_view_prompt,
            feedback=record.feedback,
            extracted_features=record.extracted_features,
            views_json=dict(record.views),
            credits_consumed=record.credits_consumed,
            created_at=record.created_at or _utcnow(),
            updated_at=record.updated_at,
            approved_at=record.approved_at,
            completed_at=record.completed_at,
        )
        self.db.add(row)
        try:
            await self.db.commit()
        except IntegrityError as exc:
            await self.db.rollback()
            raise ConflictError("Another front view for this product is already in flight") from exc
        return _approval_record(row)

    async def get_approval(self, approval_id: str, user_id: str) -> Optional[ApprovalRecord]:
        result = await self.db.execute(
            select(FrontViewApproval).where(
                FrontViewApproval.id == approval_id,
                FrontViewApproval.user_id == user_id,
            )
        )
        row = result.scalar_one_or_none()
        return _approval_record(row) if row else None

    async def find_in_flight_approval(self, product_id: str, user_id: str) -> Optional[ApprovalRecord]:
        result = await self.db.execute(
            select(FrontViewApproval)
            .where(
                FrontViewApproval.product_id == product_id,
                FrontViewApproval.user_id == user_id,
                FrontViewApproval.status.in_(IN_FLIGHT_STATUSES),
            )
            .order_by(FrontViewApproval.created_at.desc())
            .limit(1)
        )
        row = result.scalar_one_or_none()
        return _approval_record(row) if row else None

    async def find_ready_approval(self, product_id: str, user_id: str) -> Optional[ApprovalRecord]:
        result = await self.db.execute(
            select(FrontViewApproval)
            .where(
                FrontViewApproval.product_id == product_id,
                FrontViewApproval.user_id == user_id,
                FrontViewApproval.status.in_(READY_STATUSES),
            )
            .order_by(FrontViewApproval.created_at.desc())
        )
        for row in result.scalars().all():
            record = _approval_record(row)
            if record.views_ready:
                return record
        return None

    async def _load_approval_row(self, approval_id: str) -> FrontViewApproval:
        result = await self.db.execute(
            select(FrontViewApproval)
            .where(FrontViewApproval.id == approval_id)
            .execution_options(populate_existing=True)
        )
        row = result.scalar_one_or_none()
        if row is None:
            raise NotFoundError(f"Approval {approval_id} not found")
        return row

    async def update_approval(
        self,
        approval_id: str,
        *,
        increment: Optional[Dict[str, int]] = None,
        **changes: Any,
    ) -> ApprovalRecord:
        values = {_APPROVAL_COLUMNS.get(key, key): value for key, value in changes.items()}
        for key, amount in (increment or {}).items():
            # Evaluated by the database so overlapping requests both count.
            values[key] = getattr(FrontViewApproval, key) + int(amount)
        values["updated_at"] = _utcnow()
        await self.db.execute(
            update(FrontViewApproval)
            .where(FrontViewApproval.id == approval_id)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        await self.db.commit()
        return _approval_record(await self._load_approval_row(approval_id))

    async def replace_approval_view(
        self,
        approval_id: str,
        view_type: str,
        image_url: str,
        *,
        credits: int = 0,
    ) -> ApprovalRecord:
        for _ in range(VIEW_SWAP_ATTEMPTS):
            row = await self._load_approval_row(approval_id)
            seen_at = row.updated_at
            values: Dict[str, Any] = {
                "updated_at": _utcnow(),
                "credits_consumed": FrontViewApproval.credits_consumed + int(credits),
            }
            if view_type == "front":
                values["front_view_url"] = image_url
            else:
                views = dict(row.views_json or {})
                views[view_type] = image_url
                values["views_json"] = views

            # Compare-and-swap on updated_at: the views JSON is rewritten whole.
            unchanged = (
                FrontViewApproval.updated_at.is_(None) if seen_at is None else FrontViewApproval.updated_at == seen_at
            )
            result = await self.db.execute(
                update(FrontViewApproval)
                .where(FrontViewApproval.id == approval_id, unchanged)
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            await self.db.commit()
            if result.rowcount == 1:
                return _approval_record(await self._load_approval_row(approval_id))

        raise ConflictError(f"Approval {approval_id} kept changing; try the regeneration again")

    async def add_assets(self, assets: List[AssetRecord]) -> List[AssetRecord]:
        rows = [
            GeneratedAsset(
                id=asset.id,
                user_id=asset.user_id,
                product_id=asset.product_id,
                approval_id=asset.approval_id,
                stage=asset.stage,
                label=asset.label,
                image_url=asset.image_url,
                prompt=asset.prompt,
                reservation_id=asset.reservation_id,
                created_at=asset.created_at or _utcnow(),
            )
            for asset in assets
        ]
        self.db.add_all(rows)
        await self.db.commit()
        return [_asset_record(row) for row in rows]

    async def list_assets(self, product_id: str, user_id: str, stage: Optional[str] = None) -> List[AssetRecord]:
        query = select(GeneratedAsset).where(
            GeneratedAsset.product_id == product_id,
            GeneratedAsset.user_id == user_id,
        )
        if stage:
            query = query.where(GeneratedAsset.stage == stage)
        result = await self.db.execute(query.order_by(GeneratedAsset.created_at.asc()))
        return [_asset_record(row) for row in result.scalars().all()]

    async def add_revisions(self, revisions: List[RevisionRecord]) -> List[RevisionRecord]:
        if not revisions:
            return []
        first = revisions[0]
        await self.db.execute(
            update(ProductRevision)
            .where(
                ProductRevision.product_id == first.product_id,
                ProductRevision.user_id == first.user_id,
            )
            .values(is_active=False)
            .execution_options(synchronize_session=False)
        )
        rows = [
            ProductRevision(
                id=revision.id,
                user_id=revision.user_id,
                product_id=revision.product_id,
                approval_id=revision.approval_id,
                revision_number=revision.revision_number,
                batch_id=revision.batch_id,
                view_type=revision.view_type,
                image_url=revision.image_url,
                is_active=True,
                created_at=revision.created_at or _utcnow(),
            )
            for revision in revisions
        ]
        self.db.add_all(rows)
        await self.db.commit()
        return [_revision_record(row) for row in rows]

    async def latest_revision_number(self, product_id: str, user_id: str) -> Optional[int]:
        result = await self.db.execute(
            select(ProductRevision.revision_number)
            .where(ProductRevision.product_id == product_id, ProductRevision.user_id == user_id)
            .order_by(ProductRevision.revision_number.desc())
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def list_revisions(self, product_id: str, user_id: str) -> List[RevisionRecord]:
        result = await self.db.execute(
            select(ProductRevision)
            .where(ProductRevision.product_id == product_id, ProductRevision.user_id == user_id)
            .order_by(ProductRevision.revision_number.desc(), ProductRevision.view_type.asc())
            .execution_options(populate_existing=True)
        )
        return [_revision_record(row) for row in result.scalars().all()]


@dataclass
class MemoryWorkflowState:
    """Process-local tables for the degraded-mode backend."""

    products: Dict[str, ProductRecord] = field(default_factory=dict)
    approvals: Dict[str, ApprovalRecord] = field(default_factory=dict)
    assets: List[AssetRecord] = field(default_factory=list)
    revisions: List[RevisionRecord] = field(default_factory=list)


class MemoryWorkflowStorage(WorkflowStorage):
    """Degraded-mode backend; contents vanish with the process."""

    def __init__(self, state: MemoryWorkflowState):
        self.state = state

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
        record = ProductRecord(
            id=str(uuid.uuid4()),
            user_id=user_id,
            name=name,
            prompt=prompt,
            generation_mode=generation_mode or "regular",
            logo_url=logo_url,
            design_file_url=design_file_url,
            metadata=dict(metadata or {}),
            created_at=_utcnow(),
        )
        self.state.products[record.id] = record
        return record

    async def get_product(self, product_id: str, user_id: str) -> Optional[ProductRecord]:
        record = self.state.products.get(product_id)
        if record is None or record.user_id != user_id:
            return None
        return record

    async def create_approval(self, record: ApprovalRecord) -> ApprovalRecord:
        if record.status in IN_FLIGHT_STATUSES and any(
            existing.product_id == record.product_id and existing.status in IN_FLIGHT_STATUSES
            for existing in self.state.approvals.values()
        ):
            raise ConflictError("Another front view for this product is already in flight")
        stored = dataclasses.replace(record, created_at=record.created_at or _utcnow())
        self.state.approvals[stored.id] = stored
        return stored

    async def get_approval(self, approval_id: str, user_id: str) -> Optional[ApprovalRecord]:
        record = self.state.approvals.get(approval_id)
        if record is None or record.user_id != user_id:
            return None
        return record

    def _latest(self, product_id: str, user_id: str, statuses) -> List[ApprovalRecord]:
        matches = [
            record
            for record in self.state.approvals.values()
            if record.product_id == product_id and record.user_id == user_id and record.status in statuses
        ]
        return sorted(matches, key=lambda record: record.created_at, reverse=True)

    async def find_in_flight_approval(self, product_id: str, user_id: str) -> Optional[ApprovalRecord]:
        matches = self._latest(product_id, user_id, IN_FLIGHT_STATUSES)
        return matches[0] if matches else None

    async def find_ready_approval(self, product_id: str, user_id: str) -> Optional[ApprovalRecord]:
        for record in self._latest(product_id, user_id, READY_STATUSES):
            if record.views_ready:
                return record
        return None

    def _current(self, approval_id: str) -> ApprovalRecord:
        record = self.state.approvals.get(approval_id)
        if record is None:
            raise NotFoundError(f"Approval {approval_id} not found")
        return record

    async def update_approval(
        self,
        approval_id: str,
        *,
        increment: Optional[Dict[str, int]] = None,
        **changes: Any,
    ) -> ApprovalRecord:
        record = self._current(approval_id)
        for key, amount in (increment or {}).items():
            changes[key] = getattr(record, key) + int(amount)
        updated = dataclasses.replace(record, updated_at=_utcnow(), **changes)
        self.state.approvals[approval_id] = updated
        return updated

    async def replace_approval_view(
        self,
        approval_id: str,
        view_type: str,
        image_url: str,
        *,
        credits: int = 0,
    ) -> ApprovalRecord:
        record = self._current(approval_id)
        changes: Dict[str, Any] = {"credits_consumed": record.credits_consumed + int(credits)}
        if view_type == "front":
            changes["front_view_url"] = image_url
        else:
            changes["views"] = {**record.views, view_type: image_url}
        updated = dataclasses.replace(record, updated_at=_utcnow(), **changes)
        self.state.approvals[approval_id] = updated
        return updated

    async def add_assets(self, assets: List[AssetRecord]) -> List[AssetRecord]:
        stored = [dataclasses.replace(asset, created_at=asset.created_at or _utcnow()) for asset in assets]
        self.state.assets.extend(stored)
        return stored

    async def list_assets(self, product_id: str, user_id: str, stage: Optional[str] = None) -> List[AssetRecord]:
        return [
            asset
            for asset in self.state.assets
            if asset.product_id == product_id
            and asset.user_id == user_id
            and (stage is None or asset.stage == stage)
        ]

    async def add_revisions(self, revisions: List[RevisionRecord]) -> List[RevisionRecord]:
        if not revisions:
            return []
        first = revisions[0]
        self.state.revisions = [
            dataclasses.replace(revision, is_active=False)
            if revision.product_id == first.product_id and revision.user_id == first.user_id
            else revision
            for revision in self.state.revisions
        ]
        stored = [
            dataclasses.replace(revision, is_active=True, created_at=revision.created_at or _utcnow())
            for revision in revisions
        ]
        self.state.revisions.extend(stored)
        return stored

    async def latest_revision_number(self, product_id: str, user_id: str) -> Optional[int]:
        numbers = [
            revision.revision_number
            for revision in self.state.revisions
            if revision.product_id == product_id and revision.user_id == user_id
        ]
        return max(numbers) if numbers else None

    async def list_revisions(self, product_id: str, user_id: str) -> List[RevisionRecord]:
        matches = [
            revision
            for revision in self.state.revisions
            if revision.product_id == product_id and revision.user_id == user_id
        ]
        return sorted(matches, key=lambda revision: (-revision.revision_number, revision.view_type))


class StorageProvider:
    """Hands out a ``WorkflowStorage`` for the configured backend."""

    def __init__(
        self,
        backend: str,
        *,
        session_maker: Optional[async_sessionmaker] = None,
        memory_state: Optional[MemoryWorkflowState] = None,
    ):
        self.backend = (backend or "database").strip().lower()
        if self.backend not in ("database", "memory"):
            raise ValueError(f"Unknown WORKFLOW_STORAGE_BACKEND: {backend}")
        if self.backend == "database" and session_maker is None:
            raise ValueError("The database storage backend needs a session maker")
        self.session_maker = session_maker
        self.memory_state = memory_state or MemoryWorkflowState()

    @asynccontextmanager
    async def open(self) -> AsyncIterator[WorkflowStorage]:
        if self.backend == "memory":
            yield MemoryWorkflowStorage(self.memory_state)
            return
        async with self.session_maker() as db:
            yield DatabaseWorkflowStorage(db)


def build_storage_provider(backend: Optional[str] = None) -> StorageProvider:
    return StorageProvider(backend or settings.WORKFLOW_STORAGE_BACKEND, session_maker=async_session_maker)
