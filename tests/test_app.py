"""HTTP tests against the Flask app with an isolated store."""

import pytest

from app import create_app
from config import Settings
from conftest import NOW

API_KEY = "test-secret"
AUTH = {"X-API-Key": API_KEY}


def _payload(license_key="LIC-0001", max_guilds=1, **overrides):
    payload = {
        "license_key": license_key,
        "product": {"id": "prod-1", "name": "Music Bot"},
        "owner": {"discord_id": "1234", "username": "owner"},
        "validity": {"issued_at": "2026-01-01T00:00:00Z", "expires_at": None, "lifetime": True},
        "activation": {"max_guilds": max_guilds},
        "metadata": {"reseller": "acme", "notes": "vip"},
        "security": {"read_only": True, "checksum": "abc"},
    }
    payload.update(overrides)
    return payload


def _settings(tmp_path, **overrides):
    values = dict(
        API_KEY=API_KEY,
        DATABASE_URL=f"sqlite:///{tmp_path / 'unused.db'}",
        RATE_LIMIT_PER_MINUTE=1000,
        LOG_LEVEL="WARNING",
    )
    values.update(overrides)
    return Settings(**values)


@pytest.fixture
def client(tmp_path, store, clock):
    app = create_app(_settings(tmp_path), store=store, clock=clock)
    return app.test_client()


@pytest.fixture
def seeded(client):
    resp = client.post("/api/licenses", json=_payload(), headers=AUTH)
    assert resp.status_code == 201
    return client


class TestAuth:
    def test_health_is_open(self, client) -> None:
        assert client.get("/api/health").get_json()["status"] == "ok"
        assert client.get("/healthz").get_json() == {"ok": True}

    def test_missing_key(self, client) -> None:
        resp = client.get("/api/licenses")
        assert resp.status_code == 401
        assert resp.get_json()["valid"] is False

    def test_wrong_key(self, client) -> None:
        assert client.get("/api/licenses", headers={"X-API-Key": "nope"}).status_code == 403

    def test_bearer_token(self, client) -> None:
        resp = client.get("/api/licenses", headers={"Authorization": f"Bearer {API_KEY}"})
        assert resp.status_code == 200

    def test_unset_api_key_refuses_everything(self, tmp_path, store) -> None:
        app = create_app(_settings(tmp_path, API_KEY=""), store=store)
        resp = app.test_client().get("/api/licenses", headers={"X-API-Key": "anything"})
        assert resp.status_code == 403


class TestRateLimit:
    def test_ceiling_per_origin(self, tmp_path, store) -> None:
        app = create_app(_settings(tmp_path, RATE_LIMIT_PER_MINUTE=2), store=store)
        c = app.test_client()
        assert c.get("/api/licenses", headers=AUTH).status_code == 200
        assert c.get("/api/licenses", headers=AUTH).status_code == 200
        resp = c.get("/api/licenses", headers=AUTH)
        assert resp.status_code == 429
        assert int(resp.headers["Retry-After"]) >= 1
        other = c.get("/api/licenses", headers=AUTH, environ_base={"REMOTE_ADDR": "10.9.9.9"})
        assert other.status_code == 200


class TestCrud:
    def test_create_get_list(self, seeded) -> None:
        body = seeded.get("/api/licenses/LIC-0001", headers=AUTH).get_json()["license"]
        assert body["activation"] == {"max_guilds": 1, "active_guilds": 0, "allowed_guilds": []}
        assert body["metadata"] == {"reseller": "acme", "notes": "vip"}
        listing = seeded.get("/api/licenses", headers=AUTH).get_json()
        assert listing["count"] == 1

    def test_duplicate(self, seeded) -> None:
        resp = seeded.post("/api/licenses", json=_payload(), headers=AUTH)
        assert resp.status_code == 409

    def test_invalid_create(self, client) -> None:
        resp = client.post("/api/licenses", json={"license_key": "x"}, headers=AUTH)
        assert resp.status_code == 400
        assert resp.get_json()["details"]

    def test_malformed_json(self, client) -> None:
        resp = client.post("/api/licenses", data="{not json", headers=AUTH, content_type="application/json")
        assert resp.status_code == 400

    def test_get_missing(self, client) -> None:
        assert client.get("/api/licenses/nope", headers=AUTH).status_code == 404

    def test_partial_update(self, seeded) -> None:
        before = seeded.get("/api/licenses/LIC-0001", headers=AUTH).get_json()["license"]
        resp = seeded.put("/api/licenses/LIC-0001", json={"status": "inactive"}, headers=AUTH)
        assert resp.status_code == 200
        after = resp.get_json()["license"]
        assert after["status"] == "inactive"
        for group in ("activation", "validity", "metadata", "security", "product", "owner"):
            assert after[group] == before[group]

    def test_update_missing_and_empty(self, seeded) -> None:
        assert seeded.put("/api/licenses/nope", json={"status": "inactive"}, headers=AUTH).status_code == 404
        assert seeded.put("/api/licenses/LIC-0001", json={}, headers=AUTH).status_code == 400

    def test_delete(self, seeded) -> None:
        assert seeded.delete("/api/licenses/LIC-0001", headers=AUTH).status_code == 200
        assert seeded.delete("/api/licenses/LIC-0001", headers=AUTH).status_code == 404


class TestVerification:
    def _verify(self, client, guild_id, **extra):
        body = {"license_key": "LIC-0001", "guild_id": guild_id, **extra}
        return client.post("/api/verify-license", json=body, headers=AUTH)

    def test_flow(self, seeded) -> None:
        first = self._verify(seeded, "A", device_id="shard-0")
        assert first.status_code == 200
        body = first.get_json()
        assert body["valid"] is True
        assert body["message"] == "License is valid (guild activated)"
        assert body["license"]["activation"]["allowed_guilds"] == ["A"]

        denied = self._verify(seeded, "B").get_json()
        assert denied == {
            "valid": False,
            "code": "capacity_exceeded",
            "message": "Maximum number of guilds reached for this license",
            "max_guilds": 1,
            "active_guilds": 1,
        }

        resp = seeded.post("/api/licenses/LIC-0001/deactivate", json={"guild_id": "A"}, headers=AUTH)
        assert resp.status_code == 200
        assert resp.get_json()["removed"] is True

        assert self._verify(seeded, "B").get_json()["valid"] is True

    def test_not_found_is_a_verdict(self, client) -> None:
        resp = client.post("/api/verify-license", json={"license_key": "nope", "guild_id": "A"}, headers=AUTH)
        assert resp.status_code == 200
        assert resp.get_json()["code"] == "not_found"

    def test_missing_guild(self, seeded) -> None:
        resp = seeded.post("/api/verify-license", json={"license_key": "LIC-0001"}, headers=AUTH)
        assert resp.status_code == 400
        assert resp.get_json()["valid"] is False
        logs = seeded.get("/api/analytics/logs", headers=AUTH).get_json()
        assert logs["count"] == 0

    def test_deactivate_distinct_outcomes(self, seeded) -> None:
        not_member = seeded.post("/api/licenses/LIC-0001/deactivate", json={"guild_id": "Z"}, headers=AUTH)
        missing = seeded.post("/api/licenses/nope/deactivate", json={"guild_id": "Z"}, headers=AUTH)
        assert not_member.status_code == 400
        assert not_member.get_json()["code"] == "not_member"
        assert not_member.get_json()["allowed_guilds"] == []
        assert missing.status_code == 404
        assert missing.get_json()["code"] == "not_found"

    def test_deactivate_requires_guild(self, seeded) -> None:
        resp = seeded.post("/api/licenses/LIC-0001/deactivate", json={}, headers=AUTH)
        assert resp.status_code == 400
        body = resp.get_json()
        assert body["removed"] is False
        assert body["error"] == "Guild ID is required"

    def test_store_outage_is_503(self, seeded, store) -> None:
        store.close()
        resp = self._verify(seeded, "A")
        assert resp.status_code == 503
        assert resp.get_json() == {"valid": False, "error": "License store unavailable"}


class TestAnalytics:
    def test_logs(self, seeded) -> None:
        seeded.post("/api/verify-license", json={"license_key": "LIC-0001", "guild_id": "A"}, headers=AUTH)
        seeded.post("/api/verify-license", json={"license_key": "other", "guild_id": "A"}, headers=AUTH)

        everything = seeded.get("/api/analytics/logs", headers=AUTH).get_json()
        assert everything["count"] == 2

        scoped = seeded.get("/api/analytics/logs?license_key=LIC-0001&limit=5", headers=AUTH).get_json()
        assert scoped["count"] == 1
        [entry] = scoped["logs"]
        assert entry["success"] is True
        assert entry["reason"] == "Valid license"
        assert entry["ip_address"] == "127.0.0.1"
        assert entry["timestamp"] == NOW.isoformat().replace("+00:00", "Z")

    def test_bad_limit(self, client) -> None:
        assert client.get("/api/analytics/logs?limit=abc", headers=AUTH).status_code == 400
