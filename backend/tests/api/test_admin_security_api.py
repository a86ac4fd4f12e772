import uuid
from datetime import UTC, datetime, timedelta

import pytest

from trustgate.db.stores import SecurityRecord

from support import BERLIN, SAN_FRANCISCO, make_login

API_PREFIX = "/api/v1/admin/security"


# --- Access control ---


@pytest.mark.asyncio
async def test_admin_endpoints_require_token(test_client):
    response = await test_client.get(f"{API_PREFIX}/blacklist")
    assert response.status_code == 401


@pytest.mark.asyncio
async def test_admin_endpoints_reject_regular_users(test_client, auth_headers):
    response = await test_client.get(f"{API_PREFIX}/blacklist", headers=auth_headers)
    assert response.status_code == 403
    assert response.json()["detail"] == "Administrator privileges required"


# --- Blacklist management ---


@pytest.mark.asyncio
async def test_add_list_and_remove_blacklist_entry(test_client, admin_headers, services):
    created = await test_client.post(
        f"{API_PREFIX}/blacklist",
        json={"ip_address": "203.0.113.5", "reason": "Credential stuffing", "duration_minutes": 60},
        headers=admin_headers,
    )
    assert created.status_code == 201
    assert created.json()["total"] == 1
    assert created.json()["cache_size"] == 1
    assert services.blacklist.is_blacklisted("203.0.113.5")

    listing = await test_client.get(f"{API_PREFIX}/blacklist", headers=admin_headers)
    assert listing.status_code == 200
    page = listing.json()
    assert page["total"] == 1
    item = page["items"][0]
    assert item["ip_address"] == "203.0.113.5"
    assert item["source"] == "MANUAL"
    assert item["expires_at"] is not None
    assert "added_by" in item["details"]

    removed = await test_client.delete(f"{API_PREFIX}/blacklist/203.0.113.5", headers=admin_headers)
    assert removed.status_code == 204
    assert not services.blacklist.is_blacklisted("203.0.113.5")


@pytest.mark.asyncio
async def test_permanent_blacklist_entry(test_client, admin_headers):
    response = await test_client.post(
        f"{API_PREFIX}/blacklist",
        json={"ip_address": "2001:db8::dead", "reason": "Known bad actor"},
        headers=admin_headers,
    )
    assert response.status_code == 201
    assert response.json()["permanent"] == 1


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "body",
    [
        {"ip_address": "not-an-ip", "reason": "x"},
        {"ip_address": "203.0.113.5", "reason": ""},
        {"ip_address": "203.0.113.5", "reason": "x", "duration_minutes": 0},
    ],
)
async def test_add_blacklist_entry_validation(test_client, admin_headers, body):
    response = await test_client.post(f"{API_PREFIX}/blacklist", json=body, headers=admin_headers)
    assert response.status_code == 422


@pytest.mark.asyncio
async def test_remove_invalid_ip_is_rejected(test_client, admin_headers):
    response = await test_client.delete(f"{API_PREFIX}/blacklist/garbage", headers=admin_headers)
    assert response.status_code == 400
    assert "Invalid IP address" in response.json()["detail"]


@pytest.mark.asyncio
async def test_blacklist_stats(test_client, admin_headers, services):
    await services.blacklist.add("203.0.113.7", "temp", duration_minutes=10)
    await services.blacklist.add("203.0.113.8", "perm")

    response = await test_client.get(f"{API_PREFIX}/blacklist/stats", headers=admin_headers)

    assert response.status_code == 200
    assert response.json() == {
        "total": 2,
        "permanent": 1,
        "temporary": 1,
        "recent_24h": 2,
        "cache_size": 2,
    }


# --- Logs & stats ---


@pytest.mark.asyncio
async def test_security_logs_filter_by_severity(test_client, admin_headers, audit_store):
    now = datetime.now(UTC)
    audit_store.security.extend(
        [
            SecurityRecord(action="SUSPICIOUS_ACTIVITY", severity="HIGH", timestamp=now),
            SecurityRecord(action="UNAUTHORIZED_ACCESS", severity="MEDIUM", timestamp=now),
        ]
    )

    response = await test_client.get(f"{API_PREFIX}/logs?severity=HIGH", headers=admin_headers)
    assert response.status_code == 200
    assert [entry["action"] for entry in response.json()] == ["SUSPICIOUS_ACTIVITY"]

    invalid = await test_client.get(f"{API_PREFIX}/logs?severity=SEVERE", headers=admin_headers)
    assert invalid.status_code == 422


@pytest.mark.asyncio
async def test_audit_stats(test_client, admin_headers, services):
    services.audit.log_user_action("u-1", "2FA_ENABLED", "USER_SECURITY")
    services.audit.log_user_action("u-1", "2FA_VERIFICATION_FAILED", "USER_SECURITY", success=False)
    await services.audit.flush()

    response = await test_client.get(f"{API_PREFIX}/audit/stats?window_days=7", headers=admin_headers)

    assert response.status_code == 200
    assert response.json() == {
        "window_days": 7,
        "total_actions": 2,
        "failed_actions": 1,
        "security_events": 0,
        "success_rate": 50.0,
    }


# --- Geolocation cache ---


@pytest.mark.asyncio
async def test_geo_cache_stats_and_clear(test_client, admin_headers, services, audit_store):
    services.geo_cache.set(SAN_FRANCISCO.ip, SAN_FRANCISCO)
    services.geo_cache.set(BERLIN.ip, BERLIN)

    stats = await test_client.get(f"{API_PREFIX}/geo-cache", headers=admin_headers)
    assert stats.status_code == 200
    assert stats.json()["size"] == 2
    assert set(stats.json()["keys"]) == {SAN_FRANCISCO.ip, BERLIN.ip}

    cleared = await test_client.delete(f"{API_PREFIX}/geo-cache", headers=admin_headers)
    assert cleared.status_code == 204
    assert services.geo_cache.stats() == {"size": 0, "keys": []}

    await services.audit.flush()
    entry = [r for r in audit_store.audit if r.action == "GEO_CACHE_CLEARED"][0]
    assert entry.details == {"entries": 2}


@pytest.mark.asyncio
async def test_geo_cache_requires_admin(test_client, auth_headers):
    response = await test_client.delete(f"{API_PREFIX}/geo-cache", headers=auth_headers)
    assert response.status_code == 403


# --- Login hook ---


@pytest.mark.asyncio
async def test_successful_login_from_new_country_reports_anomaly(
    test_client, admin_headers, services, audit_store, user
):
    audit_store.audit.append(
        make_login(str(user.id), SAN_FRANCISCO.ip, datetime.now(UTC) - timedelta(hours=2))
    )

    response = await test_client.post(
        f"{API_PREFIX}/login-events",
        json={"user_id": str(user.id), "ip_address": BERLIN.ip, "success": True},
        headers=admin_headers,
    )

    assert response.status_code == 200
    data = response.json()
    types = [a["type"] for a in data["anomalies"]]
    assert "COUNTRY_CHANGE" in types
    assert data["blacklisted"] is False

    await services.audit.flush()
    logins = [r for r in audit_store.audit if r.action == "LOGIN" and r.ip_address == BERLIN.ip]
    assert len(logins) == 1
    assert logins[0].user_id == str(user.id)
    assert any(
        r.details and r.details.get("anomaly_type") == "COUNTRY_CHANGE" for r in audit_store.security
    )


@pytest.mark.asyncio
async def test_first_login_has_no_anomalies(test_client, admin_headers, user):
    response = await test_client.post(
        f"{API_PREFIX}/login-events",
        json={"user_id": str(user.id), "ip_address": BERLIN.ip, "success": True},
        headers=admin_headers,
    )
    assert response.json() == {"anomalies": [], "blacklisted": False}


@pytest.mark.asyncio
async def test_failed_logins_escalate_ip(test_client, admin_headers, services, audit_store):
    body = {"ip_address": "203.0.113.99", "success": False, "error_message": "bad password"}

    results = []
    for _ in range(5):
        response = await test_client.post(
            f"{API_PREFIX}/login-events", json=body, headers=admin_headers
        )
        results.append(response.json()["blacklisted"])

    assert results == [False, False, False, False, True]
    assert services.blacklist.is_blacklisted("203.0.113.99")

    await services.audit.flush()
    failures = [r for r in audit_store.audit if r.action == "LOGIN" and not r.success]
    assert len(failures) == 5
    assert all(r.user_id == "anonymous" for r in failures)


@pytest.mark.asyncio
async def test_login_from_blacklisted_ip_skips_anomaly_detection(
    test_client, admin_headers, services, audit_store, geo_provider, user
):
    audit_store.audit.append(
        make_login(str(user.id), SAN_FRANCISCO.ip, datetime.now(UTC) - timedelta(hours=2))
    )
    await services.blacklist.add(BERLIN.ip, "Manual block")

    response = await test_client.post(
        f"{API_PREFIX}/login-events",
        json={"user_id": str(user.id), "ip_address": BERLIN.ip, "success": True},
        headers=admin_headers,
    )

    assert response.status_code == 200
    assert response.json() == {"anomalies": [], "blacklisted": True}
    assert geo_provider.calls == []

    await services.audit.flush()
    attempts = [r for r in audit_store.audit if r.action == "LOGIN" and r.ip_address == BERLIN.ip]
    assert len(attempts) == 1
    assert attempts[0].success is False
    assert attempts[0].error_message == "IP address is blacklisted"
    denied = audit_store.security[-1]
    assert denied.action == "UNAUTHORIZED_ACCESS"
    assert denied.details["blacklist_reason"] == "Manual block"
    assert not any(
        r.details and r.details.get("anomaly_type") for r in audit_store.security
    )


@pytest.mark.asyncio
async def test_failed_logins_from_blacklisted_ip_keep_permanent_block(
    test_client, admin_headers, services
):
    await services.blacklist.add("203.0.113.77", "Known bad actor")
    body = {"ip_address": "203.0.113.77", "success": False}

    for _ in range(6):
        response = await test_client.post(
            f"{API_PREFIX}/login-events", json=body, headers=admin_headers
        )
        assert response.json()["blacklisted"] is True

    entry = services.blacklist._entries["203.0.113.77"]
    assert entry.expires_at is None
    assert entry.reason == "Known bad actor"


@pytest.mark.asyncio
async def test_login_event_validation(test_client, admin_headers):
    response = await test_client.post(
        f"{API_PREFIX}/login-events",
        json={"user_id": str(uuid.uuid4()), "ip_address": "nope", "success": True},
        headers=admin_headers,
    )
    assert response.status_code == 422
