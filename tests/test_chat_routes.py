from __future__ import annotations

import asyncio

import httpx
import pytest
from fastapi.testclient import TestClient
from sqlalchemy import select

from aichat.models import ChatMessage, ChatSession
from aichat.provider.generation import GenerationTransportError
from tests.utils import OTHER_USER_ID, USER_ID, user_headers, wait_until


def test_chat_creates_session_and_returns_reply(client: TestClient, fake_generation_client):
    resp = client.post("/api/v1/chat", json={"message": "你好"}, headers=user_headers())

    assert resp.status_code == 200, resp.text
    body = resp.json()
    assert body["code"] == 200
    data = body["data"]
    assert data["sessionId"]
    assert data["messageId"]
    assert data["message"] == fake_generation_client.reply
    assert data["model"]
    assert data["usage"]["totalTokens"] == (
        data["usage"]["promptTokens"] + data["usage"]["completionTokens"]
    )

    resp = client.get(f"/api/v1/chat/sessions/{data['sessionId']}", headers=user_headers())
    session = resp.json()["data"]
    assert session["title"] == "你好"
    assert session["messageCount"] == 2
    assert session["lastMessageId"] == data["messageId"]


def test_chat_continues_an_existing_session(client: TestClient, fake_generation_client):
    first = client.post("/api/v1/chat", json={"message": "one"}, headers=user_headers())
    session_id = first.json()["data"]["sessionId"]

    resp = client.post(
        "/api/v1/chat",
        json={"message": "two", "sessionId": session_id, "model": "gemini-2.5-pro"},
        headers=user_headers(),
    )
    assert resp.status_code == 200
    assert resp.json()["data"]["sessionId"] == session_id
    assert resp.json()["data"]["model"] == "gemini-2.5-pro"
    assert fake_generation_client.calls[-1][0] == "two"

    resp = client.get(f"/api/v1/chat/sessions/{session_id}/messages", headers=user_headers())
    assert [m["sequence"] for m in resp.json()["data"]["items"]] == [1, 2, 3, 4]


def test_chat_with_unknown_session_id_starts_a_new_session(client: TestClient):
    resp = client.post(
        "/api/v1/chat",
        json={"message": "hi", "sessionId": "does-not-exist"},
        headers=user_headers(),
    )
    assert resp.status_code == 200
    assert resp.json()["data"]["sessionId"] != "does-not-exist"


def test_chat_with_foreign_session_is_forbidden(client: TestClient):
    other = client.post("/api/v1/chat", json={"message": "mine"}, headers=user_headers(OTHER_USER_ID))
    session_id = other.json()["data"]["sessionId"]

    resp = client.post(
        "/api/v1/chat",
        json={"message": "let me in", "sessionId": session_id},
        headers=user_headers(),
    )
    assert resp.status_code == 403
    assert resp.json() == {"code": 571, "message": "无权访问会话", "data": None}


def test_chat_rejects_blank_message(client: TestClient, fake_generation_client):
    for payload in ({"message": ""}, {"message": "   "}, {}):
        resp = client.post("/api/v1/chat", json=payload, headers=user_headers())
        assert resp.status_code == 422
        assert resp.json()["code"] == 422
    assert fake_generation_client.calls == []


def test_chat_generation_failure_returns_550_without_assistant_message(
    client: TestClient, fake_generation_client, db_session
):
    fake_generation_client.error = GenerationTransportError("connection refused")

    resp = client.post("/api/v1/chat", json={"message": "hi"}, headers=user_headers())

    assert resp.status_code == 502
    assert resp.json() == {"code": 550, "message": "AI 服务错误", "data": None}
    assert "connection refused" not in resp.text
    assert db_session.execute(select(ChatMessage)).first() is None
    sessions = db_session.execute(select(ChatSession)).scalars().all()
    assert [s.message_count for s in sessions] == [0]


def test_chat_without_generation_client_is_unavailable(client: TestClient):
    client.app.state.generation_client = None

    resp = client.post("/api/v1/chat", json={"message": "hi"}, headers=user_headers())
    assert resp.status_code == 503
    assert resp.json()["code"] == 503


def test_abort_without_running_generation_succeeds(client: TestClient):
    created = client.post("/api/v1/chat/sessions", json={}, headers=user_headers())
    session_id = created.json()["data"]["id"]

    for _ in range(2):
        resp = client.post(
            "/api/v1/chat/abort", json={"sessionId": session_id}, headers=user_headers()
        )
        assert resp.status_code == 200
        assert resp.json()["code"] == 200


def test_abort_foreign_or_unknown_session_is_forbidden(client: TestClient):
    created = client.post("/api/v1/chat/sessions", json={}, headers=user_headers(OTHER_USER_ID))
    session_id = created.json()["data"]["id"]

    for target in (session_id, "does-not-exist"):
        resp = client.post("/api/v1/chat/abort", json={"sessionId": target}, headers=user_headers())
        assert resp.status_code == 403
        assert resp.json()["code"] == 571


def test_message_routes_check_ownership(client: TestClient):
    chat = client.post("/api/v1/chat", json={"message": "hi"}, headers=user_headers())
    message_id = chat.json()["data"]["messageId"]

    resp = client.get(f"/api/v1/chat/messages/{message_id}", headers=user_headers())
    assert resp.status_code == 200
    assert resp.json()["data"]["role"] == "assistant"
    assert resp.json()["data"]["sequence"] == 2

    resp = client.get(f"/api/v1/chat/messages/{message_id}", headers=user_headers(OTHER_USER_ID))
    assert resp.status_code == 404
    assert resp.json()["code"] == 580

    resp = client.post(
        f"/api/v1/chat/messages/{message_id}/abort", headers=user_headers(OTHER_USER_ID)
    )
    assert resp.status_code == 403
    assert resp.json()["code"] == 581

    resp = client.post("/api/v1/chat/messages/unknown/abort", headers=user_headers())
    assert resp.status_code == 200


@pytest.mark.asyncio
async def test_abort_endpoint_cancels_in_flight_chat(app_with_test_db, fake_generation_client):
    app, session_factory = app_with_test_db
    fake_generation_client.delay = 10
    registry = app.state.session_registry

    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://testserver") as ac:
        created = await ac.post("/api/v1/chat/sessions", json={}, headers=user_headers())
        session_id = created.json()["data"]["id"]

        chat_task = asyncio.create_task(
            ac.post(
                "/api/v1/chat",
                json={"message": "写一篇很长的文章", "sessionId": session_id},
                headers=user_headers(),
            )
        )
        await wait_until(lambda: session_id in registry)

        abort_resp = await ac.post(
            "/api/v1/chat/abort", json={"sessionId": session_id}, headers=user_headers()
        )
        chat_resp = await asyncio.wait_for(chat_task, timeout=5)

    assert abort_resp.status_code == 200
    assert chat_resp.status_code == 499
    assert chat_resp.json()["code"] == 551

    with session_factory() as db:
        assert db.execute(select(ChatMessage)).first() is None
        session = db.get(ChatSession, session_id)
        assert session is not None
        assert session.message_count == 0
        assert session.user_id == USER_ID
