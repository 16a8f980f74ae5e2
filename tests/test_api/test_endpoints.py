import base64

import pytest
from fastapi import status
from unittest.mock import AsyncMock, patch


def register(client, name, dark_mode=False):
    response = client.post(
        "/api/register",
        json={"name": name, "display_name": name.title(), "description": "", "theme": {"dark_mode": dark_mode}},
    )
    assert response.status_code == status.HTTP_201_CREATED
    return response.json()


def as_user(user):
    return {"X-User-ID": str(user["id"])}


@pytest.fixture
def streamer(test_client):
    """A registered streamer "alice" with one livestream, and a viewer "bob"."""
    alice = register(test_client, "alice", dark_mode=True)
    bob = register(test_client, "bob")
    response = test_client.post(
        "/api/livestream",
        json={"title": "alice live", "start_at": 100, "end_at": 200},
        headers=as_user(alice),
    )
    assert response.status_code == status.HTTP_201_CREATED
    return alice, bob, response.json()


class TestHealthEndpoints:
    """Test health check endpoints."""

    def test_health_endpoint(self, test_client):
        response = test_client.get("/healthcheck")

        assert response.status_code == status.HTTP_200_OK
        data = response.json()
        assert data["status"] == "healthy"
        assert "timestamp" in data
        assert "version" in data

    def test_ping_endpoint(self, test_client):
        response = test_client.get("/monitoring/ping")

        assert response.status_code == status.HTTP_200_OK
        assert response.json()["message"] == "pong"

    def test_detailed_health(self, test_client):
        response = test_client.get("/monitoring/detailed")

        assert response.status_code == status.HTTP_200_OK
        data = response.json()
        assert data["status"] == "healthy"
        assert data["components"]["database"]["status"] == "healthy"
        assert data["components"]["database"]["tables_accessible"] is True
        assert "cache" in data["components"]

    def test_detailed_health_degraded_without_tables(self, test_client):
        unhealthy = AsyncMock(return_value={"status": "unhealthy", "error": "no such table", "database_type": "sqlite"})

        with patch("api.health_router.database_health_check", unhealthy):
            response = test_client.get("/monitoring/detailed")

        data = response.json()
        assert data["status"] == "degraded"
        assert data["components"]["database"]["status"] == "unhealthy"
        assert data["components"]["database"]["tables_accessible"] is False

    def test_cache_stats_endpoint(self, test_client):
        response = test_client.get("/monitoring/cache/stats")

        assert response.status_code == status.HTTP_200_OK
        assert "cache_stats" in response.json()

    def test_correlation_header(self, test_client):
        response = test_client.get("/healthcheck", headers={"X-Correlation-ID": "corr-42"})
        assert response.headers["X-Correlation-ID"] == "corr-42"
        assert "X-Process-Time" in response.headers


class TestCallerIdentity:
    """Test the X-User-ID requirement on protected routes."""

    def test_missing_header(self, test_client):
        response = test_client.get("/api/user/alice")

        assert response.status_code == status.HTTP_401_UNAUTHORIZED
        assert response.json()["error"]["code"] == "AUTHENTICATION_ERROR"

    def test_non_integer_header(self, test_client):
        response = test_client.get("/api/user/alice", headers={"X-User-ID": "abc"})
        assert response.status_code == status.HTTP_401_UNAUTHORIZED

    def test_public_routes_need_no_identity(self, test_client):
        assert test_client.get("/api/payment").status_code == status.HTTP_200_OK


class TestUserEndpoints:
    def test_register_and_get_user(self, test_client):
        alice = register(test_client, "alice", dark_mode=True)

        assert alice["name"] == "alice"
        assert alice["theme"] == {"id": alice["id"], "dark_mode": True}
        assert len(alice["icon_hash"]) == 64

        response = test_client.get("/api/user/alice", headers=as_user(alice))
        assert response.status_code == status.HTTP_200_OK
        assert response.json() == alice

    def test_register_duplicate(self, test_client):
        register(test_client, "alice")

        response = test_client.post("/api/register", json={"name": "alice"})

        assert response.status_code == status.HTTP_400_BAD_REQUEST
        assert response.json()["error"]["code"] == "VALIDATION_ERROR"

    def test_register_reserved_name(self, test_client):
        response = test_client.post("/api/register", json={"name": "pipe"})
        assert response.status_code == status.HTTP_400_BAD_REQUEST

    def test_unknown_user(self, test_client, streamer):
        alice, _, _ = streamer
        response = test_client.get("/api/user/nobody", headers=as_user(alice))

        assert response.status_code == status.HTTP_404_NOT_FOUND
        assert response.json()["error"]["code"] == "NOT_FOUND"

    def test_theme_of_named_user(self, test_client, streamer):
        alice, bob, _ = streamer

        response = test_client.get("/api/user/alice/theme", headers=as_user(bob))

        assert response.status_code == status.HTTP_200_OK
        assert response.json() == {"id": alice["id"], "dark_mode": True}


class TestIconEndpoints:
    def test_fallback_icon_with_etag(self, test_client, streamer):
        response = test_client.get("/api/user/bob/icon")

        assert response.status_code == status.HTTP_200_OK
        assert response.content == b"<svg fallback/>"
        assert response.headers["content-type"].startswith("image/svg+xml")
        assert response.headers["ETag"] == f'"{streamer[1]["icon_hash"]}"'

    def test_matching_etag_is_not_modified(self, test_client, streamer):
        etag = test_client.get("/api/user/bob/icon").headers["ETag"]

        response = test_client.get("/api/user/bob/icon", headers={"If-None-Match": etag})

        assert response.status_code == status.HTTP_304_NOT_MODIFIED
        assert response.content == b""

    def test_upload_icon(self, test_client, streamer):
        alice, _, _ = streamer
        image = b"\xff\xd8\xff\xe0jpeg-bytes"

        response = test_client.post(
            "/api/icon",
            json={"image": base64.b64encode(image).decode()},
            headers=as_user(alice),
        )
        assert response.status_code == status.HTTP_201_CREATED
        assert response.json()["id"] > 0

        icon = test_client.get("/api/user/alice/icon")
        assert icon.content == image
        assert icon.headers["content-type"] == "image/jpeg"

        user = test_client.get("/api/user/alice", headers=as_user(alice)).json()
        assert f'"{user["icon_hash"]}"' == icon.headers["ETag"]

    def test_icon_of_unknown_user(self, test_client):
        assert test_client.get("/api/user/nobody/icon").status_code == status.HTTP_404_NOT_FOUND


class TestLivestreamEndpoints:
    def test_create_livestream(self, streamer):
        alice, _, livestream = streamer

        assert livestream["owner"]["id"] == alice["id"]
        assert livestream["title"] == "alice live"

    def test_create_with_end_before_start(self, test_client, streamer):
        alice, _, _ = streamer
        response = test_client.post(
            "/api/livestream",
            json={"title": "bad", "start_at": 10, "end_at": 5},
            headers=as_user(alice),
        )
        assert response.status_code == status.HTTP_400_BAD_REQUEST

    def test_malformed_livestream_id(self, test_client, streamer):
        alice, _, _ = streamer

        response = test_client.get("/api/livestream/abc/livecomment", headers=as_user(alice))

        assert response.status_code == status.HTTP_400_BAD_REQUEST
        assert response.json()["error"]["code"] == "VALIDATION_ERROR"

    def test_enter_and_exit(self, test_client, streamer):
        alice, bob, livestream = streamer
        url = f"/api/livestream/{livestream['id']}"

        assert test_client.post(f"{url}/enter", headers=as_user(bob)).status_code == status.HTTP_200_OK
        stats = test_client.get(f"{url}/statistics", headers=as_user(alice)).json()
        assert stats["viewers_count"] == 1

        assert test_client.delete(f"{url}/exit", headers=as_user(bob)).status_code == status.HTTP_200_OK
        stats = test_client.get(f"{url}/statistics", headers=as_user(alice)).json()
        assert stats["viewers_count"] == 0

    def test_statistics_of_unknown_livestream(self, test_client, streamer):
        alice, _, _ = streamer
        response = test_client.get("/api/livestream/999/statistics", headers=as_user(alice))
        assert response.status_code == status.HTTP_404_NOT_FOUND


class TestEngagementFlow:
    def test_livecomments_newest_first(self, test_client, streamer):
        _, bob, livestream = streamer
        url = f"/api/livestream/{livestream['id']}/livecomment"

        for text in ("first", "second"):
            response = test_client.post(url, json={"comment": text, "tip": 10}, headers=as_user(bob))
            assert response.status_code == status.HTTP_201_CREATED

        comments = test_client.get(url, headers=as_user(bob)).json()
        assert [c["comment"] for c in comments] == ["second", "first"]
        assert comments[0]["user"]["name"] == "bob"
        assert comments[0]["livestream"]["id"] == livestream["id"]

        limited = test_client.get(url, params={"limit": 1}, headers=as_user(bob)).json()
        assert len(limited) == 1

    def test_negative_limit_rejected(self, test_client, streamer):
        _, bob, livestream = streamer
        response = test_client.get(
            f"/api/livestream/{livestream['id']}/livecomment", params={"limit": -1}, headers=as_user(bob)
        )
        assert response.status_code == status.HTTP_400_BAD_REQUEST

    def test_negative_tip_rejected(self, test_client, streamer):
        _, bob, livestream = streamer
        response = test_client.post(
            f"/api/livestream/{livestream['id']}/livecomment",
            json={"comment": "hi", "tip": -5},
            headers=as_user(bob),
        )
        assert response.status_code == status.HTTP_400_BAD_REQUEST

    def test_reactions(self, test_client, streamer):
        _, bob, livestream = streamer
        url = f"/api/livestream/{livestream['id']}/reaction"

        response = test_client.post(url, json={"emoji_name": "👍"}, headers=as_user(bob))
        assert response.status_code == status.HTTP_201_CREATED
        assert response.json()["emoji_name"] == "👍"

        reactions = test_client.get(url, headers=as_user(bob)).json()
        assert [r["emoji_name"] for r in reactions] == ["👍"]

    def test_reports_owner_only(self, test_client, streamer):
        alice, bob, livestream = streamer
        base = f"/api/livestream/{livestream['id']}"
        comment = test_client.post(f"{base}/livecomment", json={"comment": "rude"}, headers=as_user(bob)).json()

        response = test_client.post(f"{base}/livecomment/{comment['id']}/report", headers=as_user(alice))
        assert response.status_code == status.HTTP_201_CREATED
        assert response.json()["livecomment"]["id"] == comment["id"]

        assert test_client.get(f"{base}/report", headers=as_user(bob)).status_code == status.HTTP_403_FORBIDDEN
        reports = test_client.get(f"{base}/report", headers=as_user(alice)).json()
        assert [r["reporter"]["name"] for r in reports] == ["alice"]


class TestModerationFlow:
    def test_moderate_hides_existing_and_rejects_new(self, test_client, streamer):
        alice, bob, livestream = streamer
        base = f"/api/livestream/{livestream['id']}"
        for text in ("hello world", "spam here", "clean"):
            test_client.post(f"{base}/livecomment", json={"comment": text, "tip": 1}, headers=as_user(bob))

        response = test_client.post(f"{base}/moderate", json={"ng_word": "spam"}, headers=as_user(alice))
        assert response.status_code == status.HTTP_201_CREATED
        assert response.json()["word_id"] > 0

        comments = test_client.get(f"{base}/livecomment", headers=as_user(bob)).json()
        assert sorted(c["comment"] for c in comments) == ["clean", "hello world"]

        rejected = test_client.post(f"{base}/livecomment", json={"comment": "more spam"}, headers=as_user(bob))
        assert rejected.status_code == status.HTTP_400_BAD_REQUEST
        assert rejected.json()["error"]["code"] == "SPAM_REJECTED"

        words = test_client.get(f"{base}/ngwords", headers=as_user(alice)).json()
        assert [w["word"] for w in words] == ["spam"]

    def test_moderate_by_non_owner(self, test_client, streamer):
        _, bob, livestream = streamer
        response = test_client.post(
            f"/api/livestream/{livestream['id']}/moderate", json={"ng_word": "spam"}, headers=as_user(bob)
        )

        assert response.status_code == status.HTTP_403_FORBIDDEN
        assert response.json()["error"]["code"] == "PERMISSION_DENIED"

    def test_moderate_unknown_livestream(self, test_client, streamer):
        alice, _, _ = streamer
        response = test_client.post("/api/livestream/999/moderate", json={"ng_word": "x"}, headers=as_user(alice))
        assert response.status_code == status.HTTP_404_NOT_FOUND


class TestStatisticsEndpoints:
    def test_user_statistics_and_payment(self, test_client, streamer):
        alice, bob, livestream = streamer
        base = f"/api/livestream/{livestream['id']}"
        test_client.post(f"{base}/reaction", json={"emoji_name": "🔥"}, headers=as_user(bob))
        test_client.post(f"{base}/livecomment", json={"comment": "gg", "tip": 40}, headers=as_user(bob))

        stats = test_client.get("/api/user/alice/statistics", headers=as_user(bob)).json()
        assert stats == {
            "rank": 1,
            "viewers_count": 0,
            "total_reactions": 1,
            "total_livecomments": 1,
            "total_tip": 40,
            "favorite_emoji": "🔥",
        }

        assert test_client.get("/api/user/bob/statistics", headers=as_user(bob)).json()["rank"] == 2
        assert test_client.get("/api/payment").json() == {"total_tip": 40}
