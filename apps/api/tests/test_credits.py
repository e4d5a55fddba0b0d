import asyncio
import logging
from datetime import datetime, timedelta, timezone
from unittest.mock import patch

import pytest
from sqlalchemy.exc import OperationalError

from services.errors import CreditReservationError, InsufficientCreditsError, ValidationError


USER_ID = "credits-user"


def _db_down():
    return OperationalError("SELECT 1", {}, Exception("database is unavailable"))


@pytest.mark.asyncio
async def test_reservation_deducts_and_commit_keeps_the_deduction(credits):
    await credits.add_credits(USER_ID, 10)

    reservation = await credits.reserve_credits(USER_ID, 4, reason="close-ups")
    assert reservation.success is True
    assert reservation.reservation_id.startswith("res_")
    assert reservation.current_credits == 6
    assert await credits.get_balance(USER_ID) == 6

    assert await credits.commit(reservation.reservation_id) is True
    assert await credits.get_balance(USER_ID) == 6

    # Refunding a committed reservation must not hand the credits back.
    assert await credits.refund_reserved_credits(4, reservation.reservation_id, "late failure") is False
    assert await credits.get_balance(USER_ID) == 6


@pytest.mark.asyncio
async def test_insufficient_balance_fails_without_state_change(credits):
    await credits.add_credits(USER_ID, 1)

    reservation = await credits.reserve_credits(USER_ID, 2, reason="close-ups")
    assert reservation.success is False
    assert reservation.failure_code == "insufficient_credits"
    assert reservation.reservation_id is None
    assert reservation.current_credits == 1
    assert await credits.get_balance(USER_ID) == 1

    summary = await credits.get_credit_summary(USER_ID)
    assert summary["pending_reservations"] == 0
    assert [entry["entry_type"] for entry in summary["recent_entries"]] == ["purchase"]


@pytest.mark.asyncio
async def test_refund_restores_balance_exactly_once(credits):
    await credits.add_credits(USER_ID, 5)
    reservation = await credits.reserve_credits(USER_ID, 3, reason="components")
    assert await credits.get_balance(USER_ID) == 2

    assert await credits.refund_reserved_credits(3, reservation.reservation_id, "generation failed") is True
    assert await credits.get_balance(USER_ID) == 5

    assert await credits.refund_reserved_credits(3, reservation.reservation_id, "generation failed") is False
    assert await credits.get_balance(USER_ID) == 5


@pytest.mark.asyncio
async def test_zero_cost_reservation_skips_bookkeeping(credits):
    reservation = await credits.reserve_credits(USER_ID, 0, reason="free stage")
    assert reservation.success is True
    assert reservation.reservation_id is None
    assert await credits.commit(None) is True
    assert await credits.refund_reserved_credits(0, None, "nothing to do") is True
    assert await credits.get_balance(USER_ID) == 0


@pytest.mark.asyncio
async def test_negative_amount_is_rejected(credits):
    with pytest.raises(ValueError):
        await credits.reserve_credits(USER_ID, -1)


@pytest.mark.asyncio
async def test_add_credits_validates_input(credits):
    with pytest.raises(ValidationError):
        await credits.add_credits(USER_ID, 0)
    with pytest.raises(ValidationError):
        await credits.add_credits(USER_ID, 5, plan_type="lifetime")


@pytest.mark.asyncio
async def test_subscription_credits_are_spent_before_one_time(credits):
    one_time = await credits.add_credits(USER_ID, 5, plan_type="one_time")
    subscription = await credits.add_credits(USER_ID, 3, plan_type="subscription", membership="pro")

    reservation = await credits.reserve_credits(USER_ID, 4, reason="sketches")
    assert reservation.reserved_from == [
        {"source_id": subscription["source_id"], "deducted": 3},
        {"source_id": one_time["source_id"], "deducted": 1},
    ]

    summary = await credits.get_credit_summary(USER_ID)
    remaining = {source["id"]: source["credits"] for source in summary["sources"]}
    assert remaining == {subscription["source_id"]: 0, one_time["source_id"]: 4}


@pytest.mark.asyncio
async def test_expired_sources_are_not_spendable(credits):
    await credits.add_credits(
        USER_ID,
        10,
        plan_type="subscription",
        expires_at=datetime.now(timezone.utc) - timedelta(days=1),
    )
    await credits.add_credits(USER_ID, 2)
    assert await credits.get_balance(USER_ID) == 2


@pytest.mark.asyncio
async def test_one_time_source_expires_when_drained_and_reactivates_on_refund(credits):
    topup = await credits.add_credits(USER_ID, 2)

    reservation = await credits.reserve_credits(USER_ID, 2, reason="front view")
    summary = await credits.get_credit_summary(USER_ID)
    assert summary["balance"] == 0
    assert summary["sources"] == []

    assert await credits.refund_reserved_credits(2, reservation.reservation_id, "timeout") is True
    summary = await credits.get_credit_summary(USER_ID)
    assert summary["balance"] == 2
    assert summary["sources"][0]["id"] == topup["source_id"]
    assert summary["sources"][0]["status"] == "active"


@pytest.mark.asyncio
async def test_concurrent_reservations_never_overspend(credits):
    await credits.add_credits(USER_ID, 3)

    results = await asyncio.gather(
        credits.reserve_credits(USER_ID, 2, reason="first"),
        credits.reserve_credits(USER_ID, 2, reason="second"),
    )

    assert sorted(result.success for result in results) == [False, True]
    assert await credits.get_balance(USER_ID) == 1


@pytest.mark.asyncio
async def test_ledger_records_reserve_and_refund(credits):
    await credits.add_credits(USER_ID, 6)
    reservation = await credits.reserve_credits(USER_ID, 6, reason="sketches")
    await credits.refund_reserved_credits(6, reservation.reservation_id, "provider error")

    summary = await credits.get_credit_summary(USER_ID)
    entries = {entry["entry_type"]: entry for entry in summary["recent_entries"]}
    assert entries["reserve"]["delta_credits"] == -6
    assert entries["reserve"]["balance_after"] == 0
    assert entries["refund"]["delta_credits"] == 6
    assert entries["refund"]["balance_after"] == 6
    assert entries["refund"]["reservation_id"] == reservation.reservation_id


@pytest.mark.asyncio
async def test_hold_commits_on_success(credits):
    await credits.add_credits(USER_ID, 10)

    async with credits.hold(USER_ID, 2, reason="components") as lease:
        assert await credits.get_balance(USER_ID) == 8
        assert await lease.commit() is True

    assert lease.committed is True
    assert lease.refunded is False
    assert await credits.get_balance(USER_ID) == 8


@pytest.mark.asyncio
async def test_hold_refunds_when_block_raises(credits):
    await credits.add_credits(USER_ID, 10)

    with pytest.raises(RuntimeError):
        async with credits.hold(USER_ID, 2, reason="components") as lease:
            raise RuntimeError("provider exploded")

    assert lease.refunded is True
    assert await credits.get_balance(USER_ID) == 10


@pytest.mark.asyncio
async def test_hold_refunds_when_block_exits_without_commit(credits):
    await credits.add_credits(USER_ID, 10)

    async with credits.hold(USER_ID, 6, reason="sketches") as lease:
        pass

    assert lease.refunded is True
    assert await credits.get_balance(USER_ID) == 10


@pytest.mark.asyncio
async def test_hold_refunds_on_cancellation(credits):
    await credits.add_credits(USER_ID, 10)
    entered = asyncio.Event()

    async def _stage():
        async with credits.hold(USER_ID, 3, reason="remaining views"):
            entered.set()
            await asyncio.sleep(30)

    task = asyncio.create_task(_stage())
    await entered.wait()
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task

    assert await credits.get_balance(USER_ID) == 10


@pytest.mark.asyncio
async def test_hold_raises_payment_required_without_reserving(credits):
    await credits.add_credits(USER_ID, 1)

    with pytest.raises(InsufficientCreditsError) as exc_info:
        async with credits.hold(USER_ID, 2, reason="close-ups"):
            pytest.fail("block must not run without credits")

    assert exc_info.value.status_code == 402
    assert exc_info.value.required == 2
    assert exc_info.value.available == 1
    assert await credits.get_balance(USER_ID) == 1


@pytest.mark.asyncio
async def test_store_error_during_reserve_fails_closed(credits):
    await credits.add_credits(USER_ID, 10)

    with patch.object(credits, "_try_reserve", side_effect=_db_down()):
        reservation = await credits.reserve_credits(USER_ID, 2, reason="close-ups")
        assert reservation.success is False
        assert reservation.failure_code == "store_unavailable"

        with pytest.raises(CreditReservationError):
            async with credits.hold(USER_ID, 2, reason="close-ups"):
                pytest.fail("block must not run when the store is down")

    assert await credits.get_balance(USER_ID) == 10


@pytest.mark.asyncio
async def test_refund_failure_is_logged_and_reconcilable(credits, caplog):
    await credits.add_credits(USER_ID, 5)
    reservation = await credits.reserve_credits(USER_ID, 2, reason="components")

    with caplog.at_level(logging.CRITICAL, logger="services.credits"):
        with patch.object(credits, "_apply_refund", side_effect=_db_down()):
            refunded = await credits.refund_reserved_credits(
                2, reservation.reservation_id, "provider error", user_id=USER_ID
            )

    assert refunded is False
    critical = [record.getMessage() for record in caplog.records if record.levelno == logging.CRITICAL]
    assert any(reservation.reservation_id in message and USER_ID in message for message in critical)
    assert await credits.get_balance(USER_ID) == 3

    stale = await credits.list_stale_reservations(older_than_minutes=0)
    assert [item["id"] for item in stale] == [reservation.reservation_id]

    reconciled = await credits.reconcile_reservation(reservation.reservation_id, "manual fix")
    assert reconciled["refunded_now"] is True
    assert reconciled["status"] == "refunded"
    assert await credits.get_balance(USER_ID) == 5
    assert await credits.list_stale_reservations(older_than_minutes=0) == []


@pytest.mark.asyncio
async def test_recent_reservations_are_not_stale(credits):
    await credits.add_credits(USER_ID, 5)
    await credits.reserve_credits(USER_ID, 2, reason="components")

    assert await credits.list_stale_reservations(older_than_minutes=30) == []


@pytest.mark.asyncio
async def test_failed_refund_inside_hold_names_the_user(credits, caplog):
    await credits.add_credits(USER_ID, 5)

    with caplog.at_level(logging.CRITICAL, logger="services.credits"):
        with patch.object(credits, "_apply_refund", side_effect=_db_down()):
            with pytest.raises(RuntimeError):
                async with credits.hold(USER_ID, 2, reason="sketches") as lease:
                    raise RuntimeError("provider exploded")

    critical = [record.getMessage() for record in caplog.records if record.levelno == logging.CRITICAL]
    assert len(critical) == 1
    assert USER_ID in critical[0]
    assert lease.reservation_id in critical[0]
    assert lease.refunded is False
