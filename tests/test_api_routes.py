"""Tests for the delegated scrape API (Flask test client)."""
from __future__ import annotations

import logging

import pytest
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa

from conftest import make_raw_batch
from scrapevault.api.envelope import decrypt_envelope
from scrapevault.api.request_utils import parse_limit
from scrapevault.api.server import create_app
from scrapevault.errors import TransientStoreError
from scrapevault.pipeline import ScrapePipeline, StaticRecordProducer


@pytest.fixture
def pipeline(local_store, staging):
    producer = StaticRecordProducer(
        make_raw_batch([str(i) for i in range(1, 26)]),
        batch_size=10,
        profile={"handle": "alice", "name": "Alice", "followers": "1.5K"},
    )
    return ScrapePipeline(local_store, staging, producer)


@pytest.fixture
def make_client(pipeline, tmp_path):
    def _make(**overrides):
        config = {"TESTING": True, "API_LOG_DIR": tmp_path / "logs"}
        config.update(overrides)
        return create_app(pipeline, config).test_client()

    yield _make

    root = logging.getLogger()
    for handler in root.handlers[:]:
        if str(tmp_path) in getattr(handler, "baseFilename", ""):
            root.removeHandler(handler)
            handler.close()


@pytest.fixture
def client(make_client):
    return make_client(DELEGATION_ENABLED=True)


@pytest.fixture(scope="module")
def key_pair():
    private_key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
    pem = private_key.public_key().public_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PublicFormat.SubjectPublicKeyInfo,
    ).decode("ascii")
    return private_key, pem


@pytest.mark.integration
class TestCoreRoutes:
    def test_health_and_docs(self, client):
        assert client.get("/health").get_json()["status"] == "ok"
        assert client.get("/api/health").status_code == 200
        assert "/api/scrape/tweets" in client.get("/api/docs").get_json()["endpoints"]

    def test_status_reports_readiness_and_delegation(self, client):
        body = client.get("/api/status").get_json()
        assert body["status"] == "ready"
        assert body["delegation"]["enabled"] is True

    def test_request_id_is_echoed(self, client):
        response = client.get("/api/health", headers={"X-Request-ID": "abc-123"})
        assert response.headers["X-Request-ID"] == "abc-123"

    def test_unsafe_request_id_is_replaced(self, client):
        response = client.get("/api/health", headers={"X-Request-ID": "bad id with spaces"})
        assert response.headers["X-Request-ID"] != "bad id with spaces"
        assert len(response.headers["X-Request-ID"]) == 12


@pytest.mark.integration
class TestDelegation:
    def test_delegation_is_disabled_by_default(self, pipeline, make_client):
        client = make_client()

        response = client.post("/api/scrape/tweets", json={"query": "python"})

        assert response.status_code == 403
        assert response.get_json()["error"] == "API delegation is not enabled"
        assert pipeline.list_sessions() == []

    def test_toggle_delegation(self, make_client):
        client = make_client(DELEGATION_ENABLED=False)

        assert client.post("/api/delegation/enable").status_code == 200
        assert client.get("/api/delegation/status").get_json()["enabled"] is True
        client.post("/api/delegation/disable")
        assert client.get("/api/delegation/status").get_json()["enabled"] is False

    def test_scrape_tweets_returns_committed_records(self, client, pipeline):
        response = client.post("/api/scrape/tweets", json={"query": "python", "limit": 12})

        assert response.status_code == 200
        body = response.get_json()
        assert body["status"] == "success"
        assert body["session"]["origin"] == "api"
        assert len(body["tweets"]) == 12
        header = pipeline.load_session(body["session"]["session_id"], "api")
        assert header.committed_count == 12

    def test_missing_query_is_rejected(self, client):
        response = client.post("/api/scrape/tweets", json={"limit": 5})
        assert response.status_code == 400
        assert "query" in response.get_json()["error"]

    def test_non_object_body_is_rejected(self, client):
        response = client.post("/api/scrape/tweets", json=["python"])
        assert response.status_code == 400

    def test_profile_scrape_includes_profile(self, client):
        response = client.post("/api/scrape/profile", json={"username": "@alice", "limit": 3})

        body = response.get_json()
        assert response.status_code == 200
        assert "tweets" not in body
        assert body["data"]["profile"]["handle"] == "alice"
        assert body["data"]["profile"]["followers_count"] == 1500
        assert len(body["data"]["tweets"]) == 3

    def test_home_scrape_uses_default_limit(self, client):
        body = client.post("/api/scrape/home").get_json()
        assert len(body["tweets"]) == 10

    def test_encrypted_response_decrypts_to_records(self, client, key_pair):
        private_key, pem = key_pair

        response = client.post(
            "/api/scrape/tweets", json={"query": "python", "limit": 2, "publicKey": pem}
        )

        body = response.get_json()
        assert body["encrypted"] is True
        assert "tweets" not in body
        decrypted = decrypt_envelope(body["data"], private_key)
        assert isinstance(decrypted, list)
        assert [t["record_id"] for t in decrypted] == ["1", "2"]

        session_id = body["session"]["session_id"]
        detail = client.get(f"/api/sessions/{session_id}?origin=api").get_json()
        assert detail["session"]["encrypted"] is True
        assert detail["records"] is None

    def test_encrypted_home_timeline_is_a_record_list(self, client, key_pair):
        private_key, pem = key_pair

        body = client.post("/api/scrape/home", json={"limit": 3, "publicKey": pem}).get_json()

        decrypted = decrypt_envelope(body["data"], private_key)
        assert isinstance(decrypted, list)
        assert len(decrypted) == 3

    def test_encrypted_profile_holds_profile_and_tweets(self, client, key_pair):
        private_key, pem = key_pair

        body = client.post(
            "/api/scrape/profile", json={"username": "alice", "limit": 2, "publicKey": pem}
        ).get_json()

        assert body["encrypted"] is True
        assert "profile" not in body["session"]
        decrypted = decrypt_envelope(body["data"], private_key)
        assert isinstance(decrypted, dict)
        assert set(decrypted) == {"profile", "tweets"}
        assert decrypted["profile"]["handle"] == "alice"
        assert len(decrypted["tweets"]) == 2

    def test_invalid_public_key_is_rejected(self, client, pipeline):
        response = client.post(
            "/api/scrape/tweets", json={"query": "python", "publicKey": "not a key"}
        )
        assert response.status_code == 400
        assert response.get_json()["error"] == "Invalid public key or encryption error"
        assert pipeline.list_sessions() == []

    def test_transient_store_error_is_503(self, client, pipeline, monkeypatch):
        def unavailable(*args, **kwargs):
            raise TransientStoreError("database is locked")

        monkeypatch.setattr(pipeline, "run_session", unavailable)
        response = client.post("/api/scrape/tweets", json={"query": "python"})
        assert response.status_code == 503


@pytest.mark.integration
class TestSessionRoutes:
    def test_list_get_and_delete(self, client):
        created = client.post("/api/scrape/tweets", json={"query": "python", "limit": 2}).get_json()
        session_id = created["session"]["session_id"]

        listed = client.get("/api/sessions").get_json()
        assert listed["count"] == 1

        detail = client.get(f"/api/sessions/{session_id}?origin=api")
        assert detail.status_code == 200
        assert [r["record_id"] for r in detail.get_json()["records"]] == ["1", "2"]

        # Stored under the api origin, so the default origin does not see it.
        assert client.get(f"/api/sessions/{session_id}").status_code == 404

        deleted = client.delete(f"/api/sessions/{session_id}?origin=api")
        assert deleted.get_json() == {"status": "success", "deleted": session_id}
        assert client.delete(f"/api/sessions/{session_id}?origin=api").status_code == 404

    def test_bad_origin_is_rejected(self, client):
        assert client.get("/api/sessions/abc?origin=mobile").status_code == 400


@pytest.mark.unit
@pytest.mark.parametrize(
    "raw, expected",
    [(None, 10), ("", 10), ("abc", 10), (0, 10), (-5, 10), (True, 10), ("25", 25), (10_000, 500), (7.9, 7)],
)
def test_parse_limit(raw, expected):
    assert parse_limit(raw) == expected
