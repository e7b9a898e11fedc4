from __future__ import annotations

import base64

import pytest
from httpx import ASGITransport, AsyncClient

from roomrender.apps.api.main import create_app
from roomrender.providers.imagegen.fake import fake_png
from roomrender.tests.utils.seed import create_ready_asset, create_room, create_shop


SHOP_DOMAIN = "demo-store.myshopify.com"
CRON_HEADERS = {"Authorization": "Bearer test-cron-secret"}


def _client(container) -> AsyncClient:
    app = create_app(container)
    return AsyncClient(transport=ASGITransport(app=app), base_url="http://test")


@pytest.mark.asyncio
async def test_health_reports_database_and_request_id(container) -> None:
    async with _client(container) as client:
        response = await client.get("/v1/health", headers={"X-Request-Id": "req-health"})

    assert response.status_code == 200
    body = response.json()
    assert body["data"]["status"] == "ok"
    assert body["data"]["database"] == "ok"
    assert body["data"]["execution_mode"] == "inline"
    assert body["meta"] == {"request_id": "req-health", "api_version": "v1"}
    assert response.headers["X-Request-Id"] == "req-health"


@pytest.mark.asyncio
async def test_unknown_or_missing_shop_is_not_found(container) -> None:
    async with _client(container) as client:
        missing = await client.get("/v1/runs")
        unknown = await client.get("/v1/runs", headers={"X-Shop-Domain": "ghost.myshopify.com"})

    for response in (missing, unknown):
        assert response.status_code == 404
        assert response.json()["error"]["code"] == "NOT_FOUND"


@pytest.mark.asyncio
async def test_prepare_and_read_asset(container, shop) -> None:
    container.catalog.add_product("101", title="Oak Side Table")
    headers = {"X-Shop-Domain": SHOP_DOMAIN}

    async with _client(container) as client:
        prepared = await client.post("/v1/assets/101/prepare", headers=headers)
        fetched = await client.get("/v1/assets/101", headers=headers)
        enabled = await client.post("/v1/assets/101/enabled", headers=headers, json={"enabled": True})

    assert prepared.status_code == 202
    assert prepared.json()["data"]["status"] == "pending"
    assert fetched.status_code == 200
    assert fetched.json()["data"]["status"] == "ready"
    assert enabled.json()["data"]["status"] == "live"


@pytest.mark.asyncio
async def test_batch_prepare_envelope(container, shop) -> None:
    container.catalog.add_product("1")
    container.catalog.add_product("3")

    async with _client(container) as client:
        response = await client.post(
            "/v1/assets/batch-prepare",
            headers={"X-Shop-Domain": SHOP_DOMAIN},
            json={"product_ids": ["1", "2", "3"]},
        )

    assert response.status_code == 202
    data = response.json()["data"]
    assert data["queued"] == 2
    assert data["errors"] == [{"product_id": "2", "error": "Product not found"}]


@pytest.mark.asyncio
async def test_run_lifecycle_over_http(container, shop) -> None:
    await create_ready_asset(container, shop, "101")
    room = await create_room(container, shop)
    headers = {"X-Shop-Domain": SHOP_DOMAIN}

    async with _client(container) as client:
        created = await client.post(
            "/v1/runs",
            headers=headers,
            json={
                "product_id": "101",
                "room_session_id": room.id,
                "variants": [{"variant_id": "a"}, {"variant_id": "b", "style_hint": "dusk"}],
            },
        )
        run_id = created.json()["data"]["run_id"]
        detail = await client.get(f"/v1/runs/{run_id}", headers=headers)
        listing = await client.get("/v1/runs", headers=headers, params={"limit": 5})

    assert created.status_code == 202
    assert created.json()["data"]["variant_ids"] == ["a", "b"]
    assert detail.status_code == 200
    assert detail.json()["data"]["status"] == "complete"
    assert [item["run_id"] for item in listing.json()["data"]] == [run_id]


@pytest.mark.asyncio
async def test_run_events_feed_over_http(container, shop) -> None:
    await create_ready_asset(container, shop, "101")
    room = await create_room(container, shop)
    other = await create_shop(container, "other-store.myshopify.com")

    async with _client(container) as client:
        created = await client.post(
            "/v1/runs",
            headers={"X-Shop-Domain": SHOP_DOMAIN, "X-Request-Id": "req-events"},
            json={"product_id": "101", "room_session_id": room.id, "variants": [{"variant_id": "a"}]},
        )
        run_id = created.json()["data"]["run_id"]
        await container.drain()
        feed = await client.get(f"/v1/runs/{run_id}/events", headers={"X-Shop-Domain": SHOP_DOMAIN})
        foreign = await client.get(f"/v1/runs/{run_id}/events", headers={"X-Shop-Domain": other.shop_domain})
        too_many = await client.get(
            f"/v1/runs/{run_id}/events", headers={"X-Shop-Domain": SHOP_DOMAIN}, params={"limit": 501}
        )

    assert feed.status_code == 200
    events = feed.json()["data"]
    assert events[0]["type"] == "render.run.created"
    assert events[0]["request_id"] == "req-events"
    assert events[-1]["type"] == "render.run.completed"
    assert foreign.status_code == 404
    assert too_many.status_code == 422


@pytest.mark.asyncio
async def test_empty_variant_list_is_a_validation_error(container, shop) -> None:
    await create_ready_asset(container, shop, "101")
    room = await create_room(container, shop)

    async with _client(container) as client:
        response = await client.post(
            "/v1/runs",
            headers={"X-Shop-Domain": SHOP_DOMAIN},
            json={"product_id": "101", "room_session_id": room.id, "variants": []},
        )

    assert response.status_code == 422
    assert response.json()["error"]["code"] == "VALIDATION_ERROR"


@pytest.mark.asyncio
async def test_quota_exceeded_returns_429_with_headers(container) -> None:
    shop = await create_shop(container, limits={"render": (1, None)})
    await create_ready_asset(container, shop, "101")
    room = await create_room(container, shop)

    async with _client(container) as client:
        response = await client.post(
            "/v1/runs",
            headers={"X-Shop-Domain": SHOP_DOMAIN},
            json={
                "product_id": "101",
                "room_session_id": room.id,
                "variants": [{"variant_id": "a"}, {"variant_id": "b"}],
            },
        )

    assert response.status_code == 429
    error = response.json()["error"]
    assert error["code"] == "QUOTA_EXCEEDED"
    assert error["details"]["period"] == "day"
    assert error["details"]["limit"] == 1
    assert response.headers["X-Quota-Operation"] == "render"
    assert response.headers["X-Quota-Day-Limit"] == "1"
    assert response.headers["X-Quota-Month-Limit"] == "unlimited"


@pytest.mark.asyncio
async def test_room_cleanup_and_job_poll(container, shop) -> None:
    room = await create_room(container, shop)
    headers = {"X-Shop-Domain": SHOP_DOMAIN}
    mask = base64.b64encode(fake_png("mask")).decode("ascii")

    async with _client(container) as client:
        bad = await client.post(f"/v1/rooms/{room.id}/cleanup", headers=headers, json={"mask_base64": "%%%"})
        queued = await client.post(f"/v1/rooms/{room.id}/cleanup", headers=headers, json={"mask_base64": mask})
        job_id = queued.json()["data"]["job_id"]
        polled = await client.get(f"/v1/jobs/{job_id}", headers=headers)

    assert bad.status_code == 422
    assert queued.status_code == 202
    assert polled.json()["data"]["status"] == "completed"
    assert polled.json()["data"]["kind"] == "cleanup"


@pytest.mark.asyncio
async def test_maintenance_requires_cron_secret(container) -> None:
    async with _client(container) as client:
        rejected = await client.post("/v1/maintenance/prune-telemetry")
        wrong = await client.post(
            "/v1/maintenance/prune-telemetry", headers={"Authorization": "Bearer nope"}
        )
        accepted = await client.post("/v1/maintenance/prune-telemetry", headers=CRON_HEADERS)
        sessions = await client.post("/v1/maintenance/cleanup-sessions", headers=CRON_HEADERS)

    assert rejected.status_code == 401
    assert rejected.json()["error"]["code"] == "AUTH_UNAUTHORIZED"
    assert wrong.status_code == 401
    assert accepted.status_code == 200
    assert accepted.json()["data"]["errors"] == []
    assert sessions.json()["data"]["sessions_deleted"] == 0


@pytest.mark.asyncio
async def test_shop_lifecycle_over_http(container) -> None:
    async with _client(container) as client:
        installed = await client.post(
            "/v1/shops/install",
            headers=CRON_HEADERS,
            json={"shop_domain": "fresh-store.myshopify.com", "access_token": "shpat_x"},
        )
        visible = await client.get("/v1/runs", headers={"X-Shop-Domain": "fresh-store.myshopify.com"})
        await client.post("/v1/shops/uninstall", headers=CRON_HEADERS, json={"shop_domain": "fresh-store.myshopify.com"})
        hidden = await client.get("/v1/runs", headers={"X-Shop-Domain": "fresh-store.myshopify.com"})
        redacted = await client.post("/v1/shops/redact", headers=CRON_HEADERS, json={"shop_domain": "fresh-store.myshopify.com"})

    assert installed.status_code == 200
    assert installed.json()["data"]["shop_domain"] == "fresh-store.myshopify.com"
    assert visible.status_code == 200
    assert visible.json()["data"] == []
    assert hidden.status_code == 404
    assert redacted.json()["data"]["existed"] is True
