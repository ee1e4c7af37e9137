import asyncio
import json
from datetime import datetime, timezone
from unittest.mock import AsyncMock, patch

from httpx import ASGITransport, AsyncClient

from common.models import AccountLink

AUTH = {"Authorization": "Bearer test_token"}
LINK_CODE_URL = "/v1/integrations/whatsapp/link_code"


def _request(asgi_app, method, url, **kwargs):
    async def _call():
        transport = ASGITransport(app=asgi_app)
        async with AsyncClient(transport=transport, base_url="http://test") as client:
            return await client.request(method, url, **kwargs)
    return asyncio.run(_call())


def test_health_endpoints(app_no_db, mock_redis):
    assert _request(app_no_db, "GET", "/health/live").json() == {"status": "ok"}
    ready = _request(app_no_db, "GET", "/health/ready")
    assert ready.status_code == 200
    assert ready.json() == {"status": "ready"}

    mock_redis.ping = AsyncMock(side_effect=ConnectionError("redis down"))
    assert _request(app_no_db, "GET", "/health/ready").status_code == 503


def test_link_code_requires_bearer_auth(app_no_db):
    response = _request(app_no_db, "POST", LINK_CODE_URL, json={"phone": "+54 9 11 1234-5678"})
    assert response.status_code == 401

    response = _request(
        app_no_db,
        "POST",
        LINK_CODE_URL,
        json={"phone": "+54 9 11 1234-5678"},
        headers={"Authorization": "Bearer nope"},
    )
    assert response.status_code == 401


def test_link_code_issued_for_authenticated_user(app_no_db, mock_db):
    expiry = datetime(2026, 10, 14, 12, 15, tzinfo=timezone.utc)
    link = AccountLink(
        id="wal_1",
        user_id="usr_dev",
        normalized_address="5491112345678",
        link_code="482913",
        link_code_expiry=expiry,
        is_active=False,
    )
    issue = AsyncMock(return_value=(link, "482913"))
    with patch("api.main.issue_link_code", new=issue):
        response = _request(app_no_db, "POST", LINK_CODE_URL, json={"phone": "+54 9 11 1234-5678"}, headers=AUTH)

    assert response.status_code == 200
    body = response.json()
    assert body["link_code"] == "482913"
    assert body["normalized_address"] == "5491112345678"
    assert body["expires_at"].startswith("2026-10-14T12:15:00")
    assert issue.await_args.args == (mock_db, "usr_dev", "+54 9 11 1234-5678")


def test_link_code_rejects_unusable_phone(app_no_db):
    with patch("api.main.issue_link_code", new=AsyncMock(side_effect=ValueError("Phone number has no digits"))):
        response = _request(app_no_db, "POST", LINK_CODE_URL, json={"phone": "no phone"}, headers=AUTH)
    assert response.status_code == 422


def test_link_code_rate_limited(app_no_db, mock_redis):
    mock_redis.incr = AsyncMock(return_value=6)
    with patch("api.main.issue_link_code", new=AsyncMock()) as issue:
        response = _request(app_no_db, "POST", LINK_CODE_URL, json={"phone": "+54 9 11 1234-5678"}, headers=AUTH)
    assert response.status_code == 429
    issue.assert_not_awaited()


def test_unlink_deactivates_links(app_no_db):
    with patch("api.main.deactivate_links", new=AsyncMock(return_value=2)) as deactivate:
        response = _request(app_no_db, "DELETE", "/v1/integrations/whatsapp/link", headers=AUTH)
    assert response.status_code == 200
    assert response.json() == {"status": "ok", "deactivated": 2}
    assert deactivate.await_args.args[1] == "usr_dev"


def test_maintenance_enqueues_cleanup_jobs(app_no_db, mock_redis):
    assert _request(app_no_db, "POST", "/v1/maintenance/cleanup").status_code == 401

    response = _request(app_no_db, "POST", "/v1/maintenance/cleanup", headers=AUTH)
    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "queued"
    assert len(body["job_ids"]) == 2

    assert mock_redis.rpush.await_count == 2
    topics = []
    for call in mock_redis.rpush.await_args_list:
        queue, raw = call.args
        assert queue == "default_queue"
        topics.append(json.loads(raw)["topic"])
    assert topics == ["conversation.cleanup", "link_codes.expire"]
