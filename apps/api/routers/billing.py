"""Billing and credits router."""

from __future__ import annotations

import logging
from typing import Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field

from routers.auth_scope import AuthContext, ensure_user_scope, get_auth_context, require_admin
from routers.deps import get_credits_manager, success
from routers.rate_limit import rate_limit
from services.credits import CreditsManager

router = APIRouter()
logger = logging.getLogger(__name__)


class CreditTopUpRequest(BaseModel):
    user_id: Optional[str] = None
    credits: int = Field(ge=1, le=10000)
    billing_reference: Optional[str] = None


class ReservationRefundRequest(BaseModel):
    reason: str = Field(default="Manual reconciliation", max_length=500)


@router.get("/credits")
async def credits_summary(
    user_id: Optional[str] = Query(default=None),
    auth: AuthContext = Depends(get_auth_context),
    credits: CreditsManager = Depends(get_credits_manager),
):
    scoped_user_id = ensure_user_scope(auth.user_id, user_id)
    return success(await credits.get_credit_summary(scoped_user_id))


@router.post("/topup")
async def manual_topup(
    request: CreditTopUpRequest,
    _rate_limit: None = Depends(rate_limit("billing_topup", limit=30, window_seconds=3600)),
    admin: AuthContext = Depends(require_admin),
    credits: CreditsManager = Depends(get_credits_manager),
):
    target_user_id = request.user_id or admin.user_id
    billing_reference = request.billing_reference or f"manual:{request.credits}"
    result = await credits.add_credits(
        target_user_id,
        request.credits,
        plan_type="one_time",
        provider="manual",
        billing_reference=billing_reference,
        reason=f"Manual top-up by {admin.user_id}",
    )
    return success({"user_id": target_user_id, **result})


@router.get("/reservations/stale")
async def stale_reservations(
    older_than_minutes: Optional[int] = Query(default=None, ge=0),
    _admin: AuthContext = Depends(require_admin),
    credits: CreditsManager = Depends(get_credits_manager),
):
    reservations = await credits.list_stale_reservations(older_than_minutes)
    return success({"count": len(reservations), "reservations": reservations})


@router.post("/reservations/{reservation_id}/refund")
async def refund_reservation(
    reservation_id: str,
    request: Optional[ReservationRefundRequest] = None,
    admin: AuthContext = Depends(require_admin),
    credits: CreditsManager = Depends(get_credits_manager),
):
    reason = (request.reason if request else None) or "Manual reconciliation"
    logger.warning("Admin %s reconciling reservation %s: %s", admin.user_id, reservation_id, reason)
    return success(await credits.reconcile_reservation(reservation_id, f"{reason} (by {admin.user_id})"))
