"""
Unit tests for the content service HTTP API.
"""

import json

import pytest
from fastapi.testclient import TestClient

from service_content.app.caching.cache_store import CacheStore
from service_content.app.caching.content_cache import ContentCache
from service_content.app.main import ContentService
from shared.config import get_config
from shared.errors import QuotaExhaustedError
from shared.test_helpers import ContentDataFactory, FakeContentSource

ROOTS = ["Character Cards", "World Books", "Chat Completion"]
ADMIN = {"Authorization": "Bearer admin-secret"}


def build_source() -> FakeContentSource:
    item = ContentDataFactory.item
    return FakeContentSource(
        directories={
            "Character Cards": [item("Character Cards/Foo", type="dir")],
            "Character Cards/Foo": [
                item("Character Cards/Foo/Foo.json", sha="s1"),
                item("Character Cards/Foo/Foo.png", sha="p1"),
            ],
            "World Books": [],
            "Chat Completion": [item("Chat Completion/a.json")],
        },
        files={"Character Cards/Foo/Foo.json": {"name": "Foo"}},
        commits={
            "Character Cards/Foo": ContentDataFactory.commit("f1", "2024-02-01T00:00:00Z"),
            "Chat Completion/a.json": ContentDataFactory.commit("a1", "2024-01-01T00:00:00Z"),
        },
    )


def make_config(**overrides):
    settings = {
        "admin_token": "admin-secret",
        "webhook_secret": "hook-secret",
        "warmup_on_startup": False,
        "refresh_interval_seconds": 0,
        "persistent_backend": "none",
    }
    settings.update(overrides)
    return get_config("content", 8000, **settings)


class TestContentService:
    """Test cases for ContentService routes."""

    @pytest.fixture
    def source(self):
        return build_source()

    @pytest.fixture
    def content_cache(self, source):
        return ContentCache(source, CacheStore(), roots=ROOTS, use_batched_warmup=False)

    @pytest.fixture
    def client(self, content_cache):
        service = ContentService(config=make_config(), content_cache=content_cache)
        with TestClient(service.app) as test_client:
            yield test_client

    def test_health(self, client, source):
        response = client.get("/health")

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "ok"
        assert data["dependencies"] == {"remote_rest": "ok", "remote_batched": "ok"}
        assert source.started is True

    def test_health_degraded_when_quota_spent(self, client, content_cache):
        content_cache.quota.record_exhausted("rest", reset_at=None)

        data = client.get("/health").json()

        assert data["status"] == "degraded"
        assert data["dependencies"]["remote_rest"] == "throttled"
        assert data["dependencies"]["remote_batched"] == "ok"

    def test_request_id_echoed(self, client):
        response = client.get("/", headers={"X-Request-ID": "req-42"})
        assert response.headers["X-Request-ID"] == "req-42"

    def test_root(self, client):
        data = client.get("/").json()
        assert data["service"] == "content"
        assert data["roots"] == ROOTS

    def test_cache_status(self, client):
        response = client.get("/api/cache/status")

        assert response.status_code == 200
        assert response.headers["Cache-Control"] == "no-cache"
        body = response.json()
        assert body["success"] is True
        assert set(body["data"]) >= {"warmup", "periodic_refresh", "rate_limits", "store"}

    def test_cache_action_requires_token(self, client):
        assert client.post("/api/cache/status", json={"action": "clear"}).status_code == 401

        response = client.post("/api/cache/status", json={"action": "clear"},
                               headers={"Authorization": "Bearer wrong"})
        assert response.status_code == 401
        assert response.json()["code"] == "AUTHENTICATION_ERROR"

    def test_cache_clear(self, client, source):
        client.get("/api/content/directory", params={"path": "World Books"})

        response = client.post("/api/cache/status", json={"action": "clear"}, headers=ADMIN)

        assert response.status_code == 200
        assert response.json()["success"] is True
        status = client.get("/api/cache/status").json()["data"]
        assert status["warmup"]["started"] is False

    def test_cache_warmup_action(self, client):
        response = client.post("/api/cache/status", json={"action": "warmup"}, headers=ADMIN)

        assert response.status_code == 200
        warmup = response.json()["warmup"]
        assert warmup["completed"] is True
        assert warmup["roots_warmed"] == 3

    def test_unknown_cache_action(self, client):
        response = client.post("/api/cache/status", json={"action": "explode"}, headers=ADMIN)
        assert response.status_code == 400

    def test_invalidate_path(self, client, source):
        client.get("/api/content/directory", params={"path": "Character Cards/Foo"})

        response = client.post("/api/cache/invalidate", json={"path": "Character Cards/Foo"}, headers=ADMIN)
        client.get("/api/content/directory", params={"path": "Character Cards/Foo"})

        assert response.json() == {"success": True, "path": "Character Cards/Foo", "invalidated": True}
        assert source.calls[("directory", "Character Cards/Foo")] == 2

    def test_invalidate_pattern(self, client):
        client.get("/api/content/directory", params={"path": "Character Cards/Foo"})

        response = client.post("/api/cache/invalidate", json={"pattern": "Character Cards/*"}, headers=ADMIN)

        assert response.status_code == 200
        assert response.json()["invalidated"] >= 1

    def test_invalidate_requires_target(self, client):
        assert client.post("/api/cache/invalidate", json={}, headers=ADMIN).status_code == 400

    def test_invalidate_rejects_unknown_kind(self, client):
        response = client.post("/api/cache/invalidate", json={"path": "A", "kind": "bogus"}, headers=ADMIN)
        assert response.status_code == 422

    def test_directory(self, client):
        response = client.get("/api/content/directory", params={"path": "Character Cards"})

        assert response.status_code == 200
        assert response.json()["items"][0]["slug"] == "foo"

    def test_missing_directory_is_empty(self, client):
        assert client.get("/api/content/directory", params={"path": "Nope"}).json()["items"] == []

    def test_file(self, client):
        response = client.get("/api/content/file", params={"path": "Character Cards/Foo/Foo.json"})
        assert response.json()["data"] == {"name": "Foo"}

    def test_missing_file(self, client):
        response = client.get("/api/content/file", params={"path": "Character Cards/Foo/missing.json"})

        assert response.status_code == 404
        assert response.json()["code"] == "NOT_FOUND"

    def test_commit_and_versions(self, client):
        commit = client.get("/api/content/commit", params={"path": "Character Cards/Foo"}).json()["commit"]
        versions = client.get("/api/content/versions", params={"path": "Chat Completion"}).json()["versions"]

        assert commit["sha"] == "f1"
        assert versions[0]["commit"]["sha"] == "a1"

    def test_thumbnail(self, client):
        response = client.get("/api/content/thumbnail", params={"path": "Character Cards/Foo"})
        assert response.json()["url"].endswith("Foo.png")

        assert client.get("/api/content/thumbnail", params={"path": "World Books"}).status_code == 404

    def test_slug_routes(self, client):
        slug = client.get("/api/content/slug", params={"name": "Bunny Girl V2", "path": "Character Cards/Bunny Girl V2"})
        assert slug.json()["slug"] == "bunny-girl-v2"

        found = client.get("/api/content/by-slug", params={"dir": "Character Cards", "slug": "foo"})
        assert found.json()["item"]["path"] == "Character Cards/Foo"

        missing = client.get("/api/content/by-slug", params={"dir": "Character Cards", "slug": "nope"})
        assert missing.status_code == 404

    def test_quota_exhaustion_maps_to_503(self, client, source):
        source.failures["Character Cards/Foo/Foo.json"] = QuotaExhaustedError("rest", retry_after=120)

        response = client.get("/api/content/file", params={"path": "Character Cards/Foo/Foo.json"})

        assert response.status_code == 503
        assert response.headers["Retry-After"] == "120"
        assert response.json()["code"] == "QUOTA_EXHAUSTED"


class TestWebhookRoutes:
    """Test cases for the push notification receiver."""

    @pytest.fixture
    def content_cache(self):
        return ContentCache(build_source(), CacheStore(), roots=ROOTS, use_batched_warmup=False)

    @pytest.fixture
    def client(self, content_cache):
        service = ContentService(config=make_config(), content_cache=content_cache)
        with TestClient(service.app) as test_client:
            yield test_client

    def post_event(self, client, payload, event="push", secret="hook-secret"):
        body = json.dumps(payload).encode("utf-8")
        headers = {
            "X-GitHub-Event": event,
            "X-Hub-Signature-256": ContentDataFactory.sign(body, secret),
            "Content-Type": "application/json",
        }
        return client.post("/api/webhooks/github", content=body, headers=headers)

    def test_push_invalidates_changed_paths(self, client, content_cache):
        client.get("/api/content/directory", params={"path": "Character Cards/Foo"})
        payload = ContentDataFactory.push_payload(modified=["Character Cards/Foo/Foo.json"])

        response = self.post_event(client, payload)

        assert response.status_code == 200
        data = response.json()
        assert data["processed"] is True
        assert data["commits"] == 1
        assert data["ref"] == "refs/heads/main"
        assert data["directories"] == ["Character Cards", "Character Cards/Foo"]
        assert data["invalidated"] >= 1

    def test_bad_signature(self, client):
        response = self.post_event(client, ContentDataFactory.push_payload(), secret="wrong")
        assert response.status_code == 401

    def test_missing_signature(self, client):
        response = client.post("/api/webhooks/github", content=b"{}", headers={"X-GitHub-Event": "push"})
        assert response.status_code == 401

    def test_other_events_are_ignored(self, client):
        response = self.post_event(client, {"zen": "Keep it logically awesome."}, event="ping")

        assert response.status_code == 200
        assert response.json()["processed"] is False

    def test_invalid_json(self, client):
        body = b"not json"
        response = client.post("/api/webhooks/github", content=body, headers={
            "X-GitHub-Event": "push",
            "X-Hub-Signature-256": ContentDataFactory.sign(body, "hook-secret"),
        })
        assert response.status_code == 400

    def test_webhook_status(self, client):
        data = client.get("/api/webhooks/github").json()
        assert data["configured"] is True

    def test_unconfigured_secret(self, content_cache):
        service = ContentService(config=make_config(webhook_secret=None), content_cache=content_cache)
        with TestClient(service.app) as client:
            response = self.post_event(client, ContentDataFactory.push_payload())

        assert response.status_code == 500
        assert response.json()["code"] == "WEBHOOK_NOT_CONFIGURED"
