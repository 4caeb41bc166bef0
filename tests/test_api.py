import pytest
from fastapi.testclient import TestClient
from starlette.websockets import WebSocketDisconnect

from cliphub.clients import minio_client
from cliphub.main import create_app


@pytest.fixture
def client(settings, s3, monkeypatch):
    monkeypatch.setattr(minio_client, "create_s3_client", lambda _settings: s3)
    with TestClient(create_app(settings)) as c:
        yield c


def as_user(user_id: str) -> dict:
    return {"X-User-Id": user_id}


def signup(client, user_id: str) -> None:
    resp = client.post("/users", json={"handle": f"h_{user_id}"}, headers=as_user(user_id))
    assert resp.status_code == 201, resp.text


def upload(client, user_id: str, kind: str = "video", content_type: str = "video/mp4") -> str:
    resp = client.post(
        "/media/uploads",
        json={"kind": kind, "content_type": content_type, "size_bytes": 1024},
        headers=as_user(user_id),
    )
    assert resp.status_code == 201, resp.text
    media_id = resp.json()["media_id"]
    resp = client.post(f"/media/{media_id}/finalize", headers=as_user(user_id))
    assert resp.status_code == 200, resp.text
    return media_id


def publish(client, user_id: str, title: str = "clip", **extra) -> dict:
    body = {"media_id": upload(client, user_id), "title": title, **extra}
    resp = client.post("/posts", json=body, headers=as_user(user_id))
    assert resp.status_code == 201, resp.text
    return resp.json()


def test_health_and_auth(client):
    assert client.get("/health").json()["status"] == "ok"

    resp = client.get("/feed")
    assert resp.status_code == 401
    assert resp.json()["error"]["kind"] == "unauthenticated"


def test_profile_lifecycle(client):
    signup(client, "alice")

    dup = client.post("/users", json={"handle": "h_alice"}, headers=as_user("bob"))
    assert dup.status_code == 409
    assert dup.json()["error"]["kind"] == "conflict"

    resp = client.patch("/users/me", json={"display_name": "Alice"}, headers=as_user("alice"))
    assert resp.json()["display_name"] == "Alice"
    resp = client.patch("/users/me", json={"handle": "other"}, headers=as_user("alice"))
    assert resp.status_code == 422

    assert client.get("/users/nobody", headers=as_user("alice")).status_code == 404


def test_post_like_comment_flow(client):
    signup(client, "alice")
    signup(client, "bob")
    post = publish(client, "alice", "Take 1", new_collection_title="Demos")
    assert post["author"]["handle"] == "h_alice"
    assert post["media_url"].startswith("https://minio.test/")
    post_id = post["post_id"]

    first = client.post(f"/posts/{post_id}/like/toggle", headers=as_user("bob")).json()
    assert first == {"target_kind": "post", "target_id": post_id, "liked": True, "like_count": 1}
    second = client.post(f"/posts/{post_id}/like/toggle", headers=as_user("bob")).json()
    assert (second["liked"], second["like_count"]) == (False, 0)

    empty = client.post(f"/posts/{post_id}/comments", json={"text": ""}, headers=as_user("bob"))
    assert empty.status_code == 422
    assert empty.json()["error"]["kind"] == "validation_error"

    created = client.post(f"/posts/{post_id}/comments", json={"text": "nice"}, headers=as_user("bob"))
    assert created.status_code == 201
    body = created.json()
    assert body["comment_count"] == 1
    assert body["comment"]["author"]["handle"] == "h_bob"
    comment_id = body["comment"]["comment_id"]

    assert client.delete(f"/comments/{comment_id}", headers=as_user("alice")).status_code == 403
    deleted = client.delete(f"/comments/{comment_id}", headers=as_user("bob"))
    assert deleted.json() == {"comment_id": comment_id, "comment_count": 0}

    collections = client.get("/users/alice/collections", headers=as_user("bob")).json()
    assert [(c["title"], c["item_count"]) for c in collections["items"]] == [("Demos", 1)]


def test_idempotency_key_replays_toggle(client):
    signup(client, "alice")
    post_id = publish(client, "alice")["post_id"]
    headers = {**as_user("alice"), "Idempotency-Key": "retry-1"}

    client.post(f"/posts/{post_id}/like/toggle", headers=headers)
    replay = client.post(f"/posts/{post_id}/like/toggle", headers=headers).json()

    assert replay["liked"] and replay["like_count"] == 1


def test_feed_pagination_and_bad_cursor(client):
    signup(client, "alice")
    ids = [publish(client, "alice", f"p{i}")["post_id"] for i in range(3)]

    page = client.get("/feed", params={"page_size": 2}, headers=as_user("alice")).json()
    rest = client.get(
        "/feed", params={"page_size": 2, "cursor": page["next_cursor"]}, headers=as_user("alice")
    ).json()
    assert [p["post_id"] for p in page["items"] + rest["items"]] == ids[::-1]
    assert rest["next_cursor"] is None

    bad = client.get("/feed", params={"cursor": "garbage"}, headers=as_user("alice"))
    assert bad.status_code == 400
    assert bad.json()["error"]["kind"] == "invalid_cursor"


def test_upload_limits_over_http(client):
    resp = client.post(
        "/media/uploads",
        json={"kind": "image", "content_type": "image/gif", "size_bytes": 10},
        headers=as_user("alice"),
    )
    assert resp.status_code == 415
    resp = client.post(
        "/media/uploads",
        json={"kind": "video", "content_type": "video/mp4", "size_bytes": 60 * 1024 * 1024},
        headers=as_user("alice"),
    )
    assert resp.status_code == 413


def test_follow_and_collection_move(client):
    signup(client, "alice")
    signup(client, "bob")
    assert client.post("/users/alice/follow", headers=as_user("bob")).json()["following"]
    assert client.get("/users/alice", headers=as_user("bob")).json()["follower_count"] == 1
    assert client.post("/users/bob/follow", headers=as_user("bob")).status_code == 422

    target = client.post("/collections", json={"title": "Best of"}, headers=as_user("alice")).json()
    post_id = publish(client, "alice")["post_id"]
    moved = client.patch(
        f"/posts/{post_id}/collection",
        json={"collection_id": target["collection_id"]},
        headers=as_user("alice"),
    ).json()
    assert moved["collection_id"] == target["collection_id"]
    listing = client.get(f"/collections/{target['collection_id']}/posts", headers=as_user("bob")).json()
    assert [p["post_id"] for p in listing["items"]] == [post_id]


def test_admin_reconcile_requires_admin(client):
    assert client.post("/admin/reconcile", json={}, headers=as_user("alice")).status_code == 403
    resp = client.post("/admin/reconcile", json={}, headers=as_user("admin"))
    assert resp.status_code == 200
    assert resp.json()["corrected"] == {}
    half = client.post("/admin/reconcile", json={"entity": "post"}, headers=as_user("admin"))
    assert half.status_code == 422


def test_realtime_pushes_like_counts(client):
    signup(client, "alice")
    post_id = publish(client, "alice")["post_id"]

    with client.websocket_connect("/realtime", headers=as_user("bob")) as ws:
        ws.send_json({"action": "subscribe", "resource": f"post:{post_id}"})
        assert ws.receive_json()["type"] == "subscribed"

        client.post(f"/posts/{post_id}/like/toggle", headers=as_user("bob"))
        event = ws.receive_json()
        assert event["type"] == "like_count_changed"
        assert event["resource"] == f"post:{post_id}"
        assert event["seq"] == 1
        assert event["payload"]["like_count"] == 1

        ws.send_json({"action": "subscribe", "resource": "media:x"})
        assert ws.receive_json()["type"] == "error"


def test_realtime_disconnect_releases_subscriptions(client):
    signup(client, "alice")
    name = f"post:{publish(client, 'alice')['post_id']}"
    notifier = client.app.state.services.notifier

    with client.websocket_connect("/realtime", headers=as_user("bob")) as ws:
        ws.send_json({"action": "subscribe", "resource": name})
        assert ws.receive_json()["type"] == "subscribed"
        assert notifier.subscriber_count(name) == 1

    assert notifier.subscriber_count(name) == 0


def test_realtime_rejects_anonymous(client):
    with pytest.raises(WebSocketDisconnect) as info:
        with client.websocket_connect("/realtime") as ws:
            ws.receive_json()
    assert info.value.code == 4401
