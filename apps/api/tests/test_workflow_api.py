from unittest.mock import AsyncMock, patch

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy import func, select
from sqlalchemy.exc import OperationalError

from conftest import ADMIN_USER_ID, TEST_USER_ID, auth_header
from main import app
from models.front_view_approval import FrontViewApproval


async def _create_product(client, **overrides):
    payload = {"name": "Trail Backpack", "prompt": "navy canvas hiking backpack"}
    payload.update(overrides)
    resp = await client.post("/products", json=payload, headers=auth_header())
    assert resp.status_code == 200
    body = resp.json()
    assert body["success"] is True
    return body["data"]


async def _base_views_ready(client):
    """Drive a product through front view, approval and remaining views (5 credits)."""
    product = await _create_product(client)

    front = await client.post(
        "/workflow/front-view",
        json={"productId": product["id"], "prompt": "navy canvas hiking backpack"},
        headers=auth_header(),
    )
    assert front.status_code == 200
    approval = front.json()["data"]

    decision = await client.post(
        "/workflow/front-view/decision",
        json={"approvalId": approval["id"], "action": "approve"},
        headers=auth_header(),
    )
    assert decision.status_code == 200
    assert decision.json()["data"]["status"] == "approved"

    views = await client.post(
        "/workflow/remaining-views",
        json={"approvalId": approval["id"], "frontViewUrl": approval["front_view_url"]},
        headers=auth_header(),
    )
    assert views.status_code == 200
    assert views.json()["data"]["views_ready"] is True
    return product, views.json()["data"]


@pytest.mark.asyncio
async def test_sketches_with_exact_balance_settle_at_zero(integration_client, credits):
    await credits.add_credits(TEST_USER_ID, 5)
    product, _ = await _base_views_ready(integration_client)
    assert await credits.get_balance(TEST_USER_ID) == 0

    await credits.add_credits(TEST_USER_ID, 6)
    resp = await integration_client.post(
        "/tech-pack/sketches",
        json={"productId": product["id"]},
        headers=auth_header(),
    )

    assert resp.status_code == 200
    data = resp.json()["data"]
    assert data["stage"] == "sketches"
    assert data["credits_used"] == 6
    assert [asset["label"] for asset in data["assets"]] == ["front", "back", "side"]
    assert await credits.get_balance(TEST_USER_ID) == 0

    summary = await credits.get_credit_summary(TEST_USER_ID)
    assert summary["pending_reservations"] == 0
    assert "refund" not in {entry["entry_type"] for entry in summary["recent_entries"]}


@pytest.mark.asyncio
async def test_closeups_without_enough_credits_return_402(integration_client, credits, image_provider):
    await credits.add_credits(TEST_USER_ID, 5)
    product, _ = await _base_views_ready(integration_client)
    await credits.add_credits(TEST_USER_ID, 1)
    calls_before = len(image_provider.calls)

    resp = await integration_client.post(
        "/tech-pack/close-ups",
        json={"productId": product["id"]},
        headers=auth_header(),
    )

    assert resp.status_code == 402
    body = resp.json()
    assert body["success"] is False
    assert "Insufficient credits" in body["error"]
    assert len(image_provider.calls) == calls_before
    assert await credits.get_balance(TEST_USER_ID) == 1


@pytest.mark.asyncio
async def test_failed_component_generation_is_refunded(integration_client, credits, image_provider):
    await credits.add_credits(TEST_USER_ID, 5)
    product, _ = await _base_views_ready(integration_client)
    await credits.add_credits(TEST_USER_ID, 10)
    image_provider.error = RuntimeError("upstream provider unavailable")

    resp = await integration_client.post(
        "/tech-pack/components",
        json={"productId": product["id"], "components": ["zipper pull"]},
        headers=auth_header(),
    )

    assert resp.status_code == 500
    body = resp.json()
    assert body["success"] is False
    assert "upstream provider unavailable" in body["error"]
    assert await credits.get_balance(TEST_USER_ID) == 10


@pytest.mark.asyncio
async def test_workflow_requires_session_token(integration_client):
    resp = await integration_client.post(
        "/workflow/front-view",
        json={"productId": "p-1", "prompt": "backpack"},
    )
    assert resp.status_code == 401
    assert resp.json() == {"success": False, "error": "Missing Bearer session token."}

    resp = await integration_client.post(
        "/workflow/front-view",
        json={"productId": "p-1", "prompt": "backpack"},
        headers={"Authorization": "Bearer not-a-token"},
    )
    assert resp.status_code == 401


@pytest.mark.asyncio
async def test_malformed_body_is_a_400(integration_client, credits):
    await credits.add_credits(TEST_USER_ID, 10)

    resp = await integration_client.post(
        "/workflow/front-view",
        json={"prompt": "backpack"},
        headers=auth_header(),
    )
    assert resp.status_code == 400
    body = resp.json()
    assert body["success"] is False
    assert "productId" in body["error"]

    resp = await integration_client.post(
        "/workflow/front-view/decision",
        json={"approvalId": "a-1", "action": "reject"},
        headers=auth_header(),
    )
    assert resp.status_code == 400
    assert await credits.get_balance(TEST_USER_ID) == 10


@pytest.mark.asyncio
async def test_cross_user_body_is_rejected(integration_client):
    resp = await integration_client.post(
        "/products",
        json={"name": "Backpack", "userId": "another-user"},
        headers=auth_header(),
    )
    assert resp.status_code == 403
    assert resp.json()["success"] is False


@pytest.mark.asyncio
async def test_front_view_for_unknown_product_is_404(integration_client, credits):
    await credits.add_credits(TEST_USER_ID, 10)

    resp = await integration_client.post(
        "/workflow/front-view",
        json={"productId": "missing-product", "prompt": "backpack"},
        headers=auth_header(),
    )
    assert resp.status_code == 404
    assert await credits.get_balance(TEST_USER_ID) == 10


@pytest.mark.asyncio
async def test_remaining_views_without_front_view_url_costs_nothing(integration_client, credits, image_provider):
    await credits.add_credits(TEST_USER_ID, 10)
    product = await _create_product(integration_client)
    front = await integration_client.post(
        "/workflow/front-view",
        json={"productId": product["id"], "prompt": "backpack"},
        headers=auth_header(),
    )
    approval_id = front.json()["data"]["id"]
    await integration_client.post(
        "/workflow/front-view/decision",
        json={"approvalId": approval_id, "action": "approve"},
        headers=auth_header(),
    )
    calls_before = len(image_provider.calls)

    resp = await integration_client.post(
        "/workflow/remaining-views",
        json={"approvalId": approval_id},
        headers=auth_header(),
    )

    assert resp.status_code == 400
    assert "frontViewUrl" in resp.json()["error"]
    assert len(image_provider.calls) == calls_before
    assert await credits.get_balance(TEST_USER_ID) == 8


@pytest.mark.asyncio
async def test_edit_loop_keeps_one_pending_approval(integration_client, credits, session_maker):
    await credits.add_credits(TEST_USER_ID, 10)
    product = await _create_product(integration_client)
    front = await integration_client.post(
        "/workflow/front-view",
        json={"productId": product["id"], "prompt": "backpack"},
        headers=auth_header(),
    )
    approval = front.json()["data"]

    for feedback in ("orange straps", "add a bottle pocket"):
        resp = await integration_client.post(
            "/workflow/front-view/decision",
            json={"approvalId": approval["id"], "action": "edit", "feedback": feedback},
            headers=auth_header(),
        )
        assert resp.status_code == 200
        assert resp.json()["data"]["id"] == approval["id"]
        assert resp.json()["data"]["status"] == "pending"

    overview = await integration_client.get(f"/products/{product['id']}", headers=auth_header())
    assert overview.status_code == 200
    assert overview.json()["data"]["approval"]["iteration_number"] == 3
    assert overview.json()["data"]["approval"]["feedback"] == "add a bottle pocket"

    async with session_maker() as db:
        count = await db.scalar(
            select(func.count()).select_from(FrontViewApproval).where(FrontViewApproval.product_id == product["id"])
        )
    assert count == 1
    assert await credits.get_balance(TEST_USER_ID) == 4


@pytest.mark.asyncio
async def test_front_view_analysis_runs_in_background(integration_client, credits, vision_analyzer):
    await credits.add_credits(TEST_USER_ID, 10)
    product = await _create_product(integration_client)

    front = await integration_client.post(
        "/workflow/front-view",
        json={"productId": product["id"], "prompt": "backpack"},
        headers=auth_header(),
    )
    assert front.status_code == 200

    overview = await integration_client.get(f"/products/{product['id']}", headers=auth_header())
    approval = overview.json()["data"]["approval"]
    assert approval["extracted_features"]["description"] == "Navy canvas backpack"
    assert vision_analyzer.calls == [approval["front_view_url"]]


@pytest.mark.asyncio
async def test_background_analysis_failure_does_not_touch_credits(integration_client, credits, vision_analyzer):
    await credits.add_credits(TEST_USER_ID, 10)
    product = await _create_product(integration_client)
    vision_analyzer.error = RuntimeError("vision offline")

    front = await integration_client.post(
        "/workflow/front-view",
        json={"productId": product["id"], "prompt": "backpack"},
        headers=auth_header(),
    )

    assert front.status_code == 200
    assert await credits.get_balance(TEST_USER_ID) == 8
    summary = await credits.get_credit_summary(TEST_USER_ID)
    assert summary["pending_reservations"] == 0


@pytest.mark.asyncio
async def test_finalized_revisions_are_listed_through_the_cache(integration_client, credits):
    await credits.add_credits(TEST_USER_ID, 5)
    product, approval = await _base_views_ready(integration_client)

    empty = await integration_client.get(f"/products/{product['id']}/revisions", headers=auth_header())
    assert empty.json()["data"] == {"revisions": [], "cached": False}

    finalize = await integration_client.post(
        "/workflow/revisions",
        json={"productId": product["id"], "approvalId": approval["id"]},
        headers=auth_header(),
    )
    assert finalize.status_code == 200
    assert finalize.json()["data"]["revision_number"] == 0

    first = await integration_client.get(f"/products/{product['id']}/revisions", headers=auth_header())
    assert first.json()["data"]["cached"] is False
    assert {item["view_type"] for item in first.json()["data"]["revisions"]} == {"front", "back", "side", "top", "bottom"}

    second = await integration_client.get(f"/products/{product['id']}/revisions", headers=auth_header())
    assert second.json()["data"]["cached"] is True
    assert second.json()["data"]["revisions"] == first.json()["data"]["revisions"]


@pytest.mark.asyncio
async def test_credit_summary_is_wrapped_in_envelope(integration_client, credits):
    await credits.add_credits(TEST_USER_ID, 7)

    resp = await integration_client.get("/billing/credits", headers=auth_header())

    assert resp.status_code == 200
    data = resp.json()["data"]
    assert data["balance"] == 7
    assert data["costs"]["sketches"] == 6


@pytest.mark.asyncio
async def test_reconciliation_endpoints_are_admin_only(integration_client, credits):
    await credits.add_credits(TEST_USER_ID, 5)
    reservation = await credits.reserve_credits(TEST_USER_ID, 2, reason="stuck stage")

    denied = await integration_client.get("/billing/reservations/stale", headers=auth_header())
    assert denied.status_code == 403

    with patch("routers.auth_scope.settings.ADMIN_USER_IDS", [ADMIN_USER_ID]):
        stale = await integration_client.get(
            "/billing/reservations/stale?older_than_minutes=0",
            headers=auth_header(ADMIN_USER_ID),
        )
        assert stale.status_code == 200
        assert [item["id"] for item in stale.json()["data"]["reservations"]] == [reservation.reservation_id]

        refund = await integration_client.post(
            f"/billing/reservations/{reservation.reservation_id}/refund",
            json={"reason": "provider outage"},
            headers=auth_header(ADMIN_USER_ID),
        )
        assert refund.status_code == 200
        assert refund.json()["data"]["refunded_now"] is True

        repeat = await integration_client.post(
            f"/billing/reservations/{reservation.reservation_id}/refund",
            headers=auth_header(ADMIN_USER_ID),
        )
        assert repeat.status_code == 200
        assert repeat.json()["data"]["refunded_now"] is False

        missing = await integration_client.post(
            "/billing/reservations/res_missing/refund",
            headers=auth_header(ADMIN_USER_ID),
        )
        assert missing.status_code == 404

        topup = await integration_client.post(
            "/billing/topup",
            json={"user_id": TEST_USER_ID, "credits": 4},
            headers=auth_header(ADMIN_USER_ID),
        )
        assert topup.status_code == 200
        assert topup.json()["data"]["balance_after"] == 9

    assert await credits.get_balance(TEST_USER_ID) == 9


@pytest.mark.asyncio
async def test_rate_limit_uses_injected_store(integration_client, credits, ttl_store):
    from main import app

    app.state.disable_rate_limits = False
    for _ in range(30):
        await ttl_store.incr("genpire:rate:billing_topup:127.0.0.1", 3600)

    with patch("routers.auth_scope.settings.ADMIN_USER_IDS", [ADMIN_USER_ID]):
        resp = await integration_client.post(
            "/billing/topup",
            json={"credits": 4},
            headers=auth_header(ADMIN_USER_ID),
        )

    assert resp.status_code == 429
    assert resp.json()["success"] is False


@pytest.mark.asyncio
async def test_health_live(integration_client):
    resp = await integration_client.get("/health/live")
    assert resp.status_code == 200
    assert resp.json() == {"alive": True}


@pytest.mark.asyncio
async def test_single_view_regeneration_revises_a_finalized_set(integration_client, credits):
    await credits.add_credits(TEST_USER_ID, 6)
    product, approval = await _base_views_ready(integration_client)
    finalize = await integration_client.post(
        "/workflow/revisions",
        json={"productId": product["id"], "approvalId": approval["id"]},
        headers=auth_header(),
    )
    assert finalize.status_code == 200
    cached = await integration_client.get(f"/products/{product['id']}/revisions", headers=auth_header())
    assert cached.json()["data"]["cached"] is False

    resp = await integration_client.post(
        "/workflow/views/regenerate",
        json={"approvalId": approval["id"], "viewType": "top", "feedback": "add a grab handle"},
        headers=auth_header(),
    )

    assert resp.status_code == 200
    data = resp.json()["data"]
    assert data["revision_number"] == 1
    assert data["approval"]["views"]["top"] != approval["views"]["top"]
    assert data["approval"]["views"]["back"] == approval["views"]["back"]
    assert await credits.get_balance(TEST_USER_ID) == 0

    revisions = await integration_client.get(f"/products/{product['id']}/revisions", headers=auth_header())
    assert revisions.json()["data"]["cached"] is False
    assert {item["revision_number"] for item in revisions.json()["data"]["revisions"]} == {0, 1}


@pytest.mark.asyncio
async def test_single_view_regeneration_without_credits_is_402(integration_client, credits, image_provider):
    await credits.add_credits(TEST_USER_ID, 5)
    _, approval = await _base_views_ready(integration_client)
    calls_before = len(image_provider.calls)

    resp = await integration_client.post(
        "/workflow/views/regenerate",
        json={"approvalId": approval["id"], "viewType": "side", "feedback": "green pocket"},
        headers=auth_header(),
    )

    assert resp.status_code == 402
    assert resp.json()["success"] is False
    assert len(image_provider.calls) == calls_before


@pytest.mark.asyncio
async def test_front_view_versions_endpoint(integration_client, credits):
    await credits.add_credits(TEST_USER_ID, 4)
    product = await _create_product(integration_client)
    front = await integration_client.post(
        "/workflow/front-view",
        json={"productId": product["id"], "prompt": "navy canvas hiking backpack"},
        headers=auth_header(),
    )
    approval = front.json()["data"]
    edit = await integration_client.post(
        "/workflow/front-view/decision",
        json={"approvalId": approval["id"], "action": "edit", "feedback": "orange straps"},
        headers=auth_header(),
    )
    assert edit.status_code == 200

    resp = await integration_client.get(f"/products/{product['id']}/front-views", headers=auth_header())

    assert resp.status_code == 200
    versions = resp.json()["data"]["versions"]
    assert [version["iteration_number"] for version in versions] == [2, 1]
    assert versions[0]["image_url"] == edit.json()["data"]["front_view_url"]
    assert versions[0]["is_current"] is True

    missing = await integration_client.get("/products/no-such-product/front-views", headers=auth_header())
    assert missing.status_code == 404
    assert missing.json() == {"success": False, "error": "Product not found"}


@pytest.mark.asyncio
async def test_unexpected_errors_use_the_error_envelope(integration_client):
    failure = OperationalError("SELECT products", {}, Exception("database is gone"))
    transport = ASGITransport(app=app, raise_app_exceptions=False)

    with patch("services.storage.DatabaseWorkflowStorage.get_product", new=AsyncMock(side_effect=failure)):
        async with AsyncClient(transport=transport, base_url="http://test") as client:
            resp = await client.get("/products/some-product", headers=auth_header())

    assert resp.status_code == 500
    assert resp.json() == {"success": False, "error": "Internal server error"}
