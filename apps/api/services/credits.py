"""Credit reservation, refund and usage accounting.

Reservations deduct eagerly: ``reserve_credits`` removes the amount from the
user's spendable sources straight away and records which sources paid for it.
``commit`` marks the reservation final; ``refund_reserved_credits`` puts the
recorded allocations back. Both are conditional transitions out of the
``reserved`` status, so each can happen at most once per reservation.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, AsyncIterator, Dict, List, Optional

from sqlalchemy import case, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.future import select

from config import settings, stage_costs
from database import async_session_maker
from models.credit_ledger import CreditLedger
from models.credit_reservation import CreditReservation
from models.credit_source import UserCredit
from services.accounts import ensure_user
from services.errors import (
    CreditReservationError,
    InsufficientCreditsError,
    NotFoundError,
    RefundFailure,
    ValidationError,
)

logger = logging.getLogger(__name__)

# Subscription credits are spent before one-time top-ups.
PLAN_PRIORITY = {"subscription": 0, "one_time": 1}
STORE_ERRORS = (SQLAlchemyError, OSError)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _is_spendable(source: UserCredit, now: datetime) -> bool:
    if source.status != "active":
        return False
    expires_at = _as_utc(source.expires_at)
    return expires_at is None or expires_at > now


def _spend_order(source: UserCredit):
    created_at = _as_utc(source.created_at) or datetime.min.replace(tzinfo=timezone.utc)
    return (PLAN_PRIORITY.get(source.plan_type, len(PLAN_PRIORITY)), created_at, source.id)


@dataclass
class CreditReservationResult:
    success: bool
    user_id: Optional[str] = None
    reservation_id: Optional[str] = None
    amount: int = 0
    reserved_from: List[Dict[str, Any]] = field(default_factory=list)
    current_credits: Optional[int] = None
    created_at: Optional[datetime] = None
    message: Optional[str] = None
    failure_code: Optional[str] = None  # insufficient_credits, store_unavailable, conflict


class _ReservationConflict(Exception):
    """A conditional decrement lost a race with a concurrent reservation."""


class CreditLease:
    """Handle on a reservation held open by ``CreditsManager.hold``."""

    def __init__(self, manager: "CreditsManager", reservation: CreditReservationResult):
        self._manager = manager
        self.reservation = reservation
        self.settled = False
        self.committed = False
        self.refunded = False

    @property
    def reservation_id(self) -> Optional[str]:
        return self.reservation.reservation_id

    @property
    def amount(self) -> int:
        return self.reservation.amount

    async def commit(self) -> bool:
        if self.settled:
            return self.committed
        # Settled even when the commit write fails: the credits stay deducted and
        # the reservation surfaces in the stale list instead of being refunded.
        self.settled = True
        self.committed = await self._manager.commit(self.reservation_id)
        return self.committed

    async def release(self, reason: str) -> bool:
        if self.settled:
            return self.refunded
        self.settled = True
        self.refunded = await self._manager.refund_reserved_credits(
            self.amount, self.reservation_id, reason, user_id=self.reservation.user_id
        )
        return self.refunded


class CreditsManager:
    """Admission control for metered generation stages."""

    def __init__(self, session_maker: async_sessionmaker, *, max_attempts: Optional[int] = None):
        self._session_maker = session_maker
        self._max_attempts = max(int(max_attempts or settings.CREDIT_RESERVE_MAX_ATTEMPTS), 1)

    async def _spendable_sources(self, db: AsyncSession, user_id: str) -> List[UserCredit]:
        result = await db.execute(
            select(UserCredit).where(UserCredit.user_id == user_id, UserCredit.status == "active")
        )
        now = _utcnow()
        sources = [source for source in result.scalars().all() if _is_spendable(source, now)]
        return sorted(sources, key=_spend_order)

    async def _balance(self, db: AsyncSession, user_id: str) -> int:
        return sum(int(source.credits or 0) for source in await self._spendable_sources(db, user_id))

    async def get_balance(self, user_id: str) -> int:
        async with self._session_maker() as db:
            return await self._balance(db, user_id)

    async def add_credits(
        self,
        user_id: str,
        credits: int,
        *,
        plan_type: str = "one_time",
        membership: Optional[str] = None,
        expires_at: Optional[datetime] = None,
        provider: str = "manual",
        billing_reference: Optional[str] = None,
        reason: str = "Credit purchase",
    ) -> Dict[str, Any]:
        grant = int(credits)
        if grant <= 0:
            raise ValidationError("credits must be greater than 0")
        if plan_type not in PLAN_PRIORITY:
            raise ValidationError(f"Unknown plan_type: {plan_type}")

        async with self._session_maker() as db:
            await ensure_user(db, user_id)
            source = UserCredit(
                id=str(uuid.uuid4()),
                user_id=user_id,
                credits=grant,
                plan_type=plan_type,
                status="active",
                membership=membership,
                billing_provider=provider,
                billing_reference=billing_reference,
                expires_at=expires_at,
                created_at=_utcnow(),
            )
            db.add(source)
            await db.flush()
            balance_after = await self._balance(db, user_id)
            db.add(
                CreditLedger(
                    id=str(uuid.uuid4()),
                    user_id=user_id,
                    entry_type="purchase",
                    delta_credits=grant,
                    balance_after=balance_after,
                    reason=reason,
                    billing_provider=provider,
                    billing_reference=billing_reference,
                )
            )
            await db.commit()

        logger.info("Added %s %s credits for user %s (balance %s)", grant, plan_type, user_id, balance_after)
        return {"source_id": source.id, "credits_added": grant, "balance_after": balance_after}

    async def reserve_credits(
        self,
        user_id: str,
        amount: int,
        *,
        reason: Optional[str] = None,
        reference_type: Optional[str] = None,
        reference_id: Optional[str] = None,
    ) -> CreditReservationResult:
        """Deduct ``amount`` now, or report why the user cannot afford it.

        Never raises for store errors: any failure to talk to the database is
        returned as an unsuccessful reservation so generation does not start.
        """
        required = int(amount)
        if required < 0:
            raise ValueError("amount must not be negative")
        if required == 0:
            return CreditReservationResult(success=True, amount=0, message="Nothing to reserve")

        for attempt in range(1, self._max_attempts + 1):
            try:
                return await self._try_reserve(
                    user_id,
                    required,
                    reason=reason,
                    reference_type=reference_type,
                    reference_id=reference_id,
                )
            except _ReservationConflict:
                logger.info(
                    "Credit reservation for user %s lost a concurrent update (attempt %s/%s)",
                    user_id,
                    attempt,
                    self._max_attempts,
                )
            except STORE_ERRORS:
                logger.exception("Credit store error while reserving %s credits for user %s", required, user_id)
                return CreditReservationResult(
                    success=False,
                    amount=required,
                    failure_code="store_unavailable",
                    message="Failed to reserve credits",
                )

        return CreditReservationResult(
            success=False,
            amount=required,
            failure_code="conflict",
            message="Credits changed while reserving. Try again.",
        )

    async def _try_reserve(
        self,
        user_id: str,
        required: int,
        *,
        reason: Optional[str],
        reference_type: Optional[str],
        reference_id: Optional[str],
    ) -> CreditReservationResult:
        async with self._session_maker() as db:
            sources = await self._spendable_sources(db, user_id)
            available = sum(int(source.credits or 0) for source in sources)
            if available < required:
                return CreditReservationResult(
                    success=False,
                    amount=required,
                    current_credits=available,
                    failure_code="insufficient_credits",
                    message=f"Insufficient credits. Required: {required}, available: {available}.",
                )

            allocations: List[Dict[str, Any]] = []
            remaining = required
            for source in sources:
                if remaining <= 0:
                    break
                deducted = min(int(source.credits or 0), remaining)
                if deducted <= 0:
                    continue
                allocations.append({"source_id": source.id, "deducted": deducted})
                remaining -= deducted

            now = _utcnow()
            for allocation in allocations:
                result = await db.execute(
                    update(UserCredit)
                    .where(
                        UserCredit.id == allocation["source_id"],
                        UserCredit.status == "active",
                        UserCredit.credits >= allocation["deducted"],
                    )
                    .values(credits=UserCredit.credits - allocation["deducted"], updated_at=now)
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount != 1:
                    await db.rollback()
                    raise _ReservationConflict()

            await db.execute(
                update(UserCredit)
                .where(
                    UserCredit.id.in_([allocation["source_id"] for allocation in allocations]),
                    UserCredit.plan_type == "one_time",
                    UserCredit.credits == 0,
                )
                .values(status="expired", updated_at=now)
                .execution_options(synchronize_session=False)
            )

            reservation_id = f"res_{uuid.uuid4().hex}"
            db.add(
                CreditReservation(
                    id=reservation_id,
                    user_id=user_id,
                    amount=required,
                    status="reserved",
                    allocations_json=allocations,
                    reason=reason,
                    reference_type=reference_type,
                    reference_id=reference_id,
                    created_at=now,
                )
            )
            db.add(
                CreditLedger(
                    id=str(uuid.uuid4()),
                    user_id=user_id,
                    entry_type="reserve",
                    delta_credits=-required,
                    balance_after=available - required,
                    reason=reason,
                    reservation_id=reservation_id,
                    reference_type=reference_type,
                    reference_id=reference_id,
                )
            )
            await db.commit()

        logger.info("[Credits] Reserved %s credits for user %s (reservation: %s)", required, user_id, reservation_id)
        return CreditReservationResult(
            success=True,
            user_id=user_id,
            reservation_id=reservation_id,
            amount=required,
            reserved_from=allocations,
            current_credits=available - required,
            created_at=now,
        )

    async def commit(self, reservation_id: Optional[str]) -> bool:
        """Finalize a reservation. The credits were already deducted at reserve time."""
        if not reservation_id:
            return True
        try:
            async with self._session_maker() as db:
                result = await db.execute(
                    update(CreditReservation)
                    .where(CreditReservation.id == reservation_id, CreditReservation.status == "reserved")
                    .values(status="committed", resolved_at=_utcnow())
                    .execution_options(synchronize_session=False)
                )
                await db.commit()
        except STORE_ERRORS:
            logger.exception("Could not commit reservation %s; it stays reserved for reconciliation", reservation_id)
            return False

        if result.rowcount != 1:
            logger.warning("Reservation %s is no longer reserved; commit skipped", reservation_id)
            return False
        logger.info("[Credits] Committed reservation %s", reservation_id)
        return True

    async def refund_reserved_credits(
        self,
        amount: int,
        reservation_id: Optional[str],
        reason: str,
        *,
        user_id: Optional[str] = None,
    ) -> bool:
        """Give back a reservation's credits. Returns True only when this call restored them.

        Safe to call any number of times; only the first call against a
        still-reserved reservation moves credits. Store errors are logged as a
        financial-integrity incident and reported as False, never raised.
        """
        if not reservation_id:
            if int(amount or 0) == 0:
                return True
            logger.error("Cannot refund %s credits without a reservation id (reason: %s)", amount, reason)
            return False

        logger.info("[Credits] Refunding %s credits. Reason: %s", amount, reason)
        try:
            return await self._apply_refund(int(amount), reservation_id, reason)
        except STORE_ERRORS as exc:
            failure = RefundFailure(
                f"Refund of {amount} credits for reservation {reservation_id} failed: {exc}",
                reservation_id=reservation_id,
                amount=int(amount),
                user_id=user_id,
            )
            logger.critical(
                "FINANCIAL INTEGRITY: %s (user: %s, reason: %s). Reconcile via /billing/reservations.",
                failure.message,
                user_id or "unknown",
                reason,
                exc_info=True,
            )
            return False

    async def _apply_refund(self, amount: int, reservation_id: str, reason: str) -> bool:
        now = _utcnow()
        async with self._session_maker() as db:
            result = await db.execute(select(CreditReservation).where(CreditReservation.id == reservation_id))
            reservation = result.scalar_one_or_none()
            if reservation is None:
                logger.error("Refund requested for unknown reservation %s", reservation_id)
                return False

            user_id = reservation.user_id
            reserved_amount = int(reservation.amount)
            allocations = list(reservation.allocations_json or [])
            previous_status = reservation.status
            if amount != reserved_amount:
                logger.warning(
                    "Refund amount %s differs from reserved amount %s for %s; restoring the recorded allocations",
                    amount,
                    reserved_amount,
                    reservation_id,
                )

            claimed = await db.execute(
                update(CreditReservation)
                .where(CreditReservation.id == reservation_id, CreditReservation.status == "reserved")
                .values(status="refunded", resolved_at=now, refund_reason=(reason or "")[:500])
                .execution_options(synchronize_session=False)
            )
            if claimed.rowcount != 1:
                await db.rollback()
                logger.info("Reservation %s already %s; refund skipped", reservation_id, previous_status)
                return False

            for allocation in allocations:
                await db.execute(
                    update(UserCredit)
                    .where(UserCredit.id == allocation["source_id"])
                    .values(
                        credits=UserCredit.credits + int(allocation["deducted"]),
                        status=case((UserCredit.plan_type == "one_time", "active"), else_=UserCredit.status),
                        updated_at=now,
                    )
                    .execution_options(synchronize_session=False)
                )

            balance_after = await self._balance(db, user_id)
            db.add(
                CreditLedger(
                    id=str(uuid.uuid4()),
                    user_id=user_id,
                    entry_type="refund",
                    delta_credits=reserved_amount,
                    balance_after=balance_after,
                    reason=reason,
                    reservation_id=reservation_id,
                )
            )
            await db.commit()

        logger.info("[Credits] Successfully refunded %s credits (reservation: %s)", reserved_amount, reservation_id)
        return True

    @asynccontextmanager
    async def hold(
        self,
        user_id: str,
        amount: int,
        *,
        reason: str,
        reference_type: Optional[str] = None,
        reference_id: Optional[str] = None,
    ) -> AsyncIterator[CreditLease]:
        """Reserve for the duration of a block.

        The block must call ``lease.commit()`` once its work is persisted. An
        exception, a cancellation, or leaving the block without committing
        refunds the reservation.
        """
        reservation = await self.reserve_credits(
            user_id,
            amount,
            reason=reason,
            reference_type=reference_type,
            reference_id=reference_id,
        )
        if not reservation.success:
            if reservation.failure_code == "insufficient_credits":
                raise InsufficientCreditsError(
                    reservation.message or f"Insufficient credits. Need {amount} credits.",
                    required=int(amount),
                    available=reservation.current_credits,
                )
            raise CreditReservationError(reservation.message or "Failed to reserve credits")

        lease = CreditLease(self, reservation)
        try:
            yield lease
        except (Exception, asyncio.CancelledError) as exc:
            await lease.release(f"{reason} failed: {exc}"[:500])
            raise
        if not lease.settled:
            await lease.release(f"{reason} ended without commit")

    async def get_credit_summary(self, user_id: str) -> Dict[str, Any]:
        async with self._session_maker() as db:
            sources = await self._spendable_sources(db, user_id)
            result = await db.execute(
                select(CreditLedger)
                .where(CreditLedger.user_id == user_id)
                .order_by(CreditLedger.created_at.desc())
                .limit(30)
            )
            entries = result.scalars().all()
            pending = await db.execute(
                select(CreditReservation).where(
                    CreditReservation.user_id == user_id,
                    CreditReservation.status == "reserved",
                )
            )
            pending_reservations = pending.scalars().all()

        return {
            "balance": sum(int(source.credits or 0) for source in sources),
            "sources": [
                {
                    "id": source.id,
                    "credits": source.credits,
                    "plan_type": source.plan_type,
                    "status": source.status,
                    "membership": source.membership,
                    "expires_at": source.expires_at.isoformat() if source.expires_at else None,
                }
                for source in sources
            ],
            "costs": stage_costs(),
            "pending_reservations": len(pending_reservations),
            "recent_entries": [
                {
                    "id": entry.id,
                    "entry_type": entry.entry_type,
                    "delta_credits": entry.delta_credits,
                    "balance_after": entry.balance_after,
                    "reason": entry.reason,
                    "reservation_id": entry.reservation_id,
                    "created_at": entry.created_at.isoformat() if entry.created_at else None,
                }
                for entry in entries
            ],
        }

    async def list_stale_reservations(self, older_than_minutes: Optional[int] = None) -> List[Dict[str, Any]]:
        """Reservations still held after the cutoff, for manual reconciliation."""
        minutes = settings.STALE_RESERVATION_MINUTES if older_than_minutes is None else older_than_minutes
        cutoff = _utcnow() - timedelta(minutes=max(int(minutes), 0))
        async with self._session_maker() as db:
            result = await db.execute(
                select(CreditReservation)
                .where(CreditReservation.status == "reserved")
                .order_by(CreditReservation.created_at.asc())
            )
            reservations = result.scalars().all()

        return [
            _serialize_reservation(reservation)
            for reservation in reservations
            if (_as_utc(reservation.created_at) or cutoff) <= cutoff
        ]

    async def reconcile_reservation(self, reservation_id: str, reason: str) -> Dict[str, Any]:
        """Refund a stuck reservation on an operator's behalf."""
        async with self._session_maker() as db:
            result = await db.execute(select(CreditReservation).where(CreditReservation.id == reservation_id))
            reservation = result.scalar_one_or_none()
            if reservation is None:
                raise NotFoundError(f"Reservation {reservation_id} not found")
            amount = int(reservation.amount)
            owner_id = reservation.user_id

        refunded = await self.refund_reserved_credits(amount, reservation_id, reason, user_id=owner_id)
        async with self._session_maker() as db:
            result = await db.execute(select(CreditReservation).where(CreditReservation.id == reservation_id))
            reservation = result.scalar_one()
            payload = _serialize_reservation(reservation)
        payload["refunded_now"] = refunded
        return payload


def _serialize_reservation(reservation: CreditReservation) -> Dict[str, Any]:
    return {
        "id": reservation.id,
        "user_id": reservation.user_id,
        "amount": reservation.amount,
        "status": reservation.status,
        "reason": reservation.reason,
        "reference_type": reservation.reference_type,
        "reference_id": reservation.reference_id,
        "refund_reason": reservation.refund_reason,
        "created_at": reservation.created_at.isoformat() if reservation.created_at else None,
        "resolved_at": reservation.resolved_at.isoformat() if reservation.resolved_at else None,
    }


def build_credits_manager() -> CreditsManager:
    return CreditsManager(async_session_maker)
