from __future__ import annotations

import json
from datetime import datetime, timedelta, timezone
from typing import Any

import pytest
from fastapi import HTTPException
from fastapi.testclient import TestClient
from starlette.websockets import WebSocketDisconnect

import jobchat.core.security as security
from jobchat.core.config import Settings, get_settings
from jobchat.main import app
from jobchat.schemas.messages import Message, Profile
from jobchat.services.inbox import Inbox, get_inbox
from jobchat.services.repository import RepositoryUnavailableError, RepositoryValidationError
from jobchat.services.store import InMemoryStore

ALICE = "11111111-1111-4111-8111-111111111111"
BOB = "22222222-2222-4222-8222-222222222222"
CAROL = "33333333-3333-4333-8333-333333333333"

USERS_BY_TOKEN = {
    "alice-token": {"id": ALICE, "email": "alice@example.com", "user_metadata": {"user_type": "student"}},
    "bob-token": {"id": BOB, "email": "bob@example.com", "app_metadata": {"role": "company"}},
}


def _auth(token: str) -> dict[str, str]:
    return {"Authorization": f"Bearer {token}"}


def _store() -> InMemoryStore:
    store = InMemoryStore()
    store.add_profile(Profile(id=ALICE, full_name="Alice"))
    store.add_profile(Profile(id=BOB, full_name="Bob"))
    store.add_profile(Profile(id=CAROL, full_name="Carol", is_private=True, accept_dm=False))
    return store


@pytest.fixture
def store() -> InMemoryStore:
    return _store()


@pytest.fixture
def authz_client(monkeypatch: pytest.MonkeyPatch, store: InMemoryStore) -> TestClient:
    monkeypatch.setenv("JC_SUPABASE_URL", "https://example.supabase.co")
    monkeypatch.setenv("JC_SUPABASE_ANON_KEY", "anon-key")
    get_settings.cache_clear()

    async def _fake_fetch(_: Settings, token: str) -> dict[str, Any]:
        user = USERS_BY_TOKEN.get(token)
        if user is None:
            raise HTTPException(status_code=401, detail="invalid bearer token")
        return user

    monkeypatch.setattr(security, "_fetch_supabase_user", _fake_fetch)

    inbox = Inbox(store, store.feed, settings=Settings(reconcile_debounce_seconds=0.0))
    app.dependency_overrides[get_inbox] = lambda: inbox

    with TestClient(app) as client:
        yield client

    app.dependency_overrides.clear()
    get_settings.cache_clear()


def test_requests_without_bearer_token_are_rejected(authz_client: TestClient) -> None:
    assert authz_client.get("/conversations").status_code == 401
    assert authz_client.get("/notifications", headers={"Authorization": "Basic abc"}).status_code == 401
    assert authz_client.get("/messages/recent", headers=_auth("unknown-token")).status_code == 401


def test_send_and_read_conversation(authz_client: TestClient, store: InMemoryStore) -> None:
    response = authz_client.post(
        f"/conversations/{BOB}/messages",
        json={"content": "  Hello Bob  "},
        headers=_auth("alice-token"),
    )
    assert response.status_code == 201
    sent = response.json()
    assert sent["content"] == "Hello Bob"
    assert sent["sender_id"] == ALICE
    assert sent["receiver_id"] == BOB

    response = authz_client.get(f"/conversations/{ALICE}/messages", headers=_auth("bob-token"))
    assert response.status_code == 200
    body = response.json()
    assert body["counterpart_id"] == ALICE
    assert [row["id"] for row in body["messages"]] == [sent["id"]]
    assert body["messages"][0]["read"] is True
    assert store.messages[0].read is True


def test_send_rejects_contact_details(authz_client: TestClient, store: InMemoryStore) -> None:
    response = authz_client.post(
        f"/conversations/{BOB}/messages",
        json={"content": "text me on 0470 12 34 56"},
        headers=_auth("alice-token"),
    )

    assert response.status_code == 422
    assert response.json()["detail"]["kind"] == "phone"
    assert store.messages == []


def test_send_to_closed_profile_is_forbidden(authz_client: TestClient, store: InMemoryStore) -> None:
    response = authz_client.post(
        f"/conversations/{CAROL}/messages",
        json={"content": "Hello Carol"},
        headers=_auth("alice-token"),
    )

    assert response.status_code == 403
    assert store.messages == []


def test_send_with_unknown_application_is_forbidden(authz_client: TestClient) -> None:
    response = authz_client.post(
        f"/conversations/{BOB}/messages",
        json={"content": "Hello Bob", "application_id": "missing"},
        headers=_auth("alice-token"),
    )

    # An unknown application is denied before the store is asked to link it.
    assert response.status_code == 403


def test_conversation_list_and_recent_messages(authz_client: TestClient) -> None:
    for content in ("first", "second"):
        response = authz_client.post(
            f"/conversations/{ALICE}/messages",
            json={"content": content},
            headers=_auth("bob-token"),
        )
        assert response.status_code == 201

    response = authz_client.get("/conversations", headers=_auth("alice-token"))
    assert response.status_code == 200
    [conversation] = response.json()
    assert conversation["counterpart_id"] == BOB
    assert conversation["counterpart"]["full_name"] == "Bob"
    assert conversation["unread_count"] == 2

    response = authz_client.get("/messages/recent", headers=_auth("alice-token"))
    assert response.status_code == 200
    body = response.json()
    assert len(body["messages"]) == 2
    assert body["unread_count"] == 2


def test_notification_routes(authz_client: TestClient, store: InMemoryStore) -> None:
    first = store.add_notification(user_id=ALICE, type="application_status_changed", message="Accepted")
    store.add_notification(user_id=ALICE, type="job_created", message="New job nearby")
    store.add_notification(user_id=BOB, type="job_viewed", message="Not for Alice")

    response = authz_client.get("/notifications", headers=_auth("alice-token"))
    assert response.status_code == 200
    assert response.json()["unread_count"] == 2
    assert len(response.json()["notifications"]) == 2

    response = authz_client.post(f"/notifications/{first.id}/read", headers=_auth("alice-token"))
    assert response.status_code == 200
    assert response.json() == {"updated": 1, "unread_count": 1}

    response = authz_client.post("/notifications/missing/read", headers=_auth("alice-token"))
    assert response.status_code == 404

    response = authz_client.post("/notifications/read-all", headers=_auth("alice-token"))
    assert response.status_code == 200
    assert response.json() == {"updated": 1, "unread_count": 0}

    response = authz_client.post("/notifications/read-all", headers=_auth("alice-token"))
    assert response.json() == {"updated": 0, "unread_count": 0}
    assert [row.read for row in store.notifications if row.user_id == BOB] == [False]


def test_mark_read_reaches_notifications_beyond_the_listed_page(authz_client: TestClient, store: InMemoryStore) -> None:
    base = datetime(2026, 3, 1, 9, 0, tzinfo=timezone.utc)
    created = [
        store.add_notification(
            user_id=ALICE,
            type="job_viewed",
            message=f"view {minute}",
            created_at=base + timedelta(minutes=minute),
        )
        for minute in range(26)
    ]
    oldest = created[0]
    foreign = store.add_notification(user_id=BOB, type="job_viewed", message="Not for Alice")

    listed = authz_client.get("/notifications", headers=_auth("alice-token")).json()["notifications"]
    assert oldest.id not in {row["id"] for row in listed}

    response = authz_client.post(f"/notifications/{oldest.id}/read", headers=_auth("alice-token"))
    assert response.status_code == 200
    assert response.json()["updated"] == 1
    assert next(row for row in store.notifications if row.id == oldest.id).read is True

    response = authz_client.post(f"/notifications/{oldest.id}/read", headers=_auth("alice-token"))
    assert response.status_code == 200
    assert response.json()["updated"] == 0

    response = authz_client.post(f"/notifications/{foreign.id}/read", headers=_auth("alice-token"))
    assert response.status_code == 404
    assert [row.read for row in store.notifications if row.user_id == BOB] == [False]


def test_store_outage_maps_to_service_unavailable(monkeypatch: pytest.MonkeyPatch, authz_client: TestClient) -> None:
    broken = _store()

    async def _unavailable(*_: Any, **__: Any) -> list[Message]:
        raise RepositoryUnavailableError("database unavailable")

    monkeypatch.setattr(broken, "list_user_messages", _unavailable)
    broken_inbox = Inbox(broken, broken.feed, settings=Settings(reconcile_debounce_seconds=0.0))
    app.dependency_overrides[get_inbox] = lambda: broken_inbox

    response = authz_client.get("/conversations", headers=_auth("alice-token"))

    assert response.status_code == 503
    assert broken.feed.subscription_count == 0


def test_rejected_store_request_maps_to_bad_request(monkeypatch: pytest.MonkeyPatch, authz_client: TestClient) -> None:
    rejecting = _store()

    async def _invalid(*_: Any, **__: Any) -> list[Message]:
        raise RepositoryValidationError("invalid query argument: invalid UUID 'not-a-uuid'")

    monkeypatch.setattr(rejecting, "list_conversation_messages", _invalid)
    rejecting_inbox = Inbox(rejecting, rejecting.feed, settings=Settings(reconcile_debounce_seconds=0.0))
    app.dependency_overrides[get_inbox] = lambda: rejecting_inbox

    response = authz_client.get("/conversations/not-a-uuid/messages", headers=_auth("alice-token"))

    assert response.status_code == 400
    assert "not-a-uuid" in response.json()["detail"]


def test_conversation_stream_pushes_sent_and_received_messages(authz_client: TestClient) -> None:
    with authz_client.websocket_connect(f"/conversations/{BOB}/stream", headers=_auth("alice-token")) as websocket:
        initial = websocket.receive_json()
        assert initial == {"type": "messages", "state": "ready", "messages": []}

        websocket.send_text(json.dumps({"content": "Hi Bob"}))
        sent = websocket.receive_json()
        assert sent["type"] == "sent"
        assert sent["message"]["content"] == "Hi Bob"
        snapshot = websocket.receive_json()
        assert [row["content"] for row in snapshot["messages"]] == ["Hi Bob"]

        response = authz_client.post(
            f"/conversations/{ALICE}/messages",
            json={"content": "Hi Alice"},
            headers=_auth("bob-token"),
        )
        assert response.status_code == 201
        pushed = websocket.receive_json()
        assert pushed["type"] == "messages"
        assert [row["content"] for row in pushed["messages"]] == ["Hi Bob", "Hi Alice"]
        assert pushed["messages"][1]["read"] is True


def test_conversation_stream_reports_rejected_frames(authz_client: TestClient, store: InMemoryStore) -> None:
    with authz_client.websocket_connect(f"/conversations/{CAROL}/stream", headers=_auth("alice-token")) as websocket:
        websocket.receive_json()

        websocket.send_text(json.dumps({"content": "see www.example.com"}))
        violation = websocket.receive_json()
        assert violation["error"] == "policy_violation"
        assert violation["kind"] == "url"

        websocket.send_text(json.dumps({"content": "Hello Carol"}))
        denied = websocket.receive_json()
        assert denied["error"] == "permission_denied"

        websocket.send_text("not json")
        invalid = websocket.receive_json()
        assert invalid["error"] == "invalid_frame"

    assert store.messages == []


def test_conversation_stream_requires_authentication(authz_client: TestClient) -> None:
    with pytest.raises(WebSocketDisconnect) as exc_info:
        with authz_client.websocket_connect(f"/conversations/{BOB}/stream") as websocket:
            websocket.receive_json()

    assert exc_info.value.code == 1008


def test_conversation_stream_accepts_token_in_query(authz_client: TestClient) -> None:
    with authz_client.websocket_connect(f"/conversations/{ALICE}/stream?access_token=bob-token") as websocket:
        initial = websocket.receive_json()

    assert initial["type"] == "messages"
    assert initial["messages"] == []
