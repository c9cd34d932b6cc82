from __future__ import annotations

import json
import re
from pathlib import Path
from typing import Any

import httpx
import pytest

from chatwoot_bridge.config import ChatwootSettings, get_settings
from chatwoot_bridge.db import reset_database_state

BASE_URL = "https://desk.example.test"
ACCOUNT_PREFIX = "/api/v1/accounts/1"


@pytest.fixture
def isolated_env(tmp_path, monkeypatch):
    """Provide isolated database settings for tests and reset caches."""
    db_path: Path = tmp_path / "test.sqlite3"
    monkeypatch.setenv("DATABASE_URL", f"sqlite+aiosqlite:///{db_path}")
    monkeypatch.setenv("HTTP_HOST", "127.0.0.1")
    monkeypatch.setenv("HTTP_PORT", "8765")
    monkeypatch.setenv("APP_ENVIRONMENT", "test")
    monkeypatch.setenv("CHATWOOT_URL", BASE_URL)
    monkeypatch.setenv("CHATWOOT_API_KEY", "desk-key")
    monkeypatch.setenv("CHATWOOT_ACCOUNT_ID", "1")
    monkeypatch.setenv("CHATWOOT_INBOX_ID", "1")
    for name in ("API_BEARER_TOKEN", "CHATWOOT_WEBHOOK_TOKEN", "TG_API_ID", "TG_API_HASH", "TG_SESSION"):
        monkeypatch.delenv(name, raising=False)
    get_settings.cache_clear()
    reset_database_state()
    try:
        yield
    finally:
        get_settings.cache_clear()
        reset_database_state()
        if db_path.exists():
            db_path.unlink()


def chatwoot_settings(**overrides: Any) -> ChatwootSettings:
    values: dict[str, Any] = {
        "base_url": BASE_URL,
        "api_key": "desk-key",
        "account_id": "1",
        "inbox_id": "1",
        "timeout_seconds": 5.0,
        "page_cap": 5,
        "webhook_token": None,
        "ignore_groups": False,
    }
    values.update(overrides)
    return ChatwootSettings(**values)


class FakeChatwoot:
    """In-memory Chatwoot account served through ``httpx.MockTransport``.

    Conversation listings are wrapped as ``{"data": {"meta": ..., "payload": [...]}}``
    like recent Chatwoot releases. With ``expose_tags_in_list=False`` listing
    entries omit every source tag field so callers must fetch detail.
    """

    def __init__(
        self,
        *,
        page_size: int = 25,
        expose_tags_in_list: bool = True,
        ignore_page: bool = False,
        reject_source_id: bool = False,
    ) -> None:
        self.page_size = page_size
        self.expose_tags_in_list = expose_tags_in_list
        self.ignore_page = ignore_page
        self.reject_source_id = reject_source_id
        self.contacts: dict[int, dict[str, Any]] = {}
        self.conversations: dict[int, dict[str, Any]] = {}
        self.messages: list[dict[str, Any]] = []
        self.calls: list[tuple[str, str, dict[str, str], Any]] = []
        self.failures: dict[tuple[str, str], tuple[int, Any]] = {}
        self._next_id = 100

    # -- seeding helpers -------------------------------------------------
    def _new_id(self) -> int:
        self._next_id += 1
        return self._next_id

    def add_contact(self, identifier: str, name: str = "", phone_number: str | None = None) -> dict[str, Any]:
        contact = {"id": self._new_id(), "identifier": identifier, "name": name, "phone_number": phone_number}
        self.contacts[contact["id"]] = contact
        return contact

    def add_conversation(
        self,
        *,
        contact_id: int,
        inbox_id: int = 1,
        source_id: str | None = None,
        tag_attribute: str | None = None,
        status: str = "open",
    ) -> dict[str, Any]:
        conversation: dict[str, Any] = {
            "id": self._new_id(),
            "inbox_id": inbox_id,
            "status": status,
            "contact_id": contact_id,
            "source_id": source_id,
            "additional_attributes": {"source_id": tag_attribute} if tag_attribute else {},
        }
        self.conversations[conversation["id"]] = conversation
        return conversation

    def fail(self, method: str, path: str, status_code: int, payload: Any = None) -> None:
        self.failures[(method, path)] = (status_code, payload if payload is not None else {"error": "boom"})

    # -- inspection helpers ----------------------------------------------
    def requests(self, method: str, path_pattern: str) -> list[tuple[str, str, dict[str, str], Any]]:
        pattern = re.compile(path_pattern)
        return [call for call in self.calls if call[0] == method and pattern.fullmatch(call[1])]

    # -- wire views ------------------------------------------------------
    def _listing_view(self, conversation: dict[str, Any]) -> dict[str, Any]:
        view: dict[str, Any] = {
            "id": conversation["id"],
            "inbox_id": conversation["inbox_id"],
            "status": conversation["status"],
            "meta": {"sender": {"id": conversation["contact_id"]}},
        }
        if self.expose_tags_in_list and conversation["source_id"]:
            view["contact_inbox"] = {"source_id": conversation["source_id"]}
        return view

    def _detail_view(self, conversation: dict[str, Any]) -> dict[str, Any]:
        view = self._listing_view(conversation)
        view["additional_attributes"] = dict(conversation["additional_attributes"])
        if conversation["source_id"]:
            view["contact_inbox"] = {"source_id": conversation["source_id"]}
        return view

    # -- transport -------------------------------------------------------
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handle)

    def client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=self.transport())

    def handle(self, request: httpx.Request) -> httpx.Response:
        path = request.url.path
        assert path.startswith(ACCOUNT_PREFIX), path
        assert request.headers.get("api_access_token") == "desk-key"
        endpoint = path[len(ACCOUNT_PREFIX):]
        params = dict(request.url.params)
        body = json.loads(request.content) if request.content else None
        self.calls.append((request.method, endpoint, params, body))

        failure = self.failures.get((request.method, endpoint))
        if failure is not None:
            return httpx.Response(failure[0], json=failure[1])

        if request.method == "GET" and endpoint == "/inboxes":
            return httpx.Response(200, json={"payload": [{"id": 1, "name": "Telegram", "channel_type": "Channel::Api"}]})
        if request.method == "GET" and endpoint == "/contacts/search":
            query = params.get("q", "")
            hits = [c for c in self.contacts.values() if query in (c["identifier"] or "") or query in (c["name"] or "")]
            return httpx.Response(200, json={"meta": {"count": len(hits)}, "payload": hits})
        if request.method == "GET" and endpoint == "/contacts":
            return httpx.Response(200, json={"payload": list(self.contacts.values())})
        if request.method == "POST" and endpoint == "/contacts":
            return self._create_contact(body)
        match = re.fullmatch(r"/contacts/(\d+)", endpoint)
        if request.method == "PUT" and match:
            contact = self.contacts.get(int(match.group(1)))
            if contact is None:
                return httpx.Response(404, json={"error": "Resource could not be found"})
            contact.update(body)
            return httpx.Response(200, json={"payload": contact})
        if request.method == "GET" and endpoint == "/conversations":
            return self._list_conversations(params)
        if request.method == "POST" and endpoint == "/conversations":
            return self._create_conversation(body)
        match = re.fullmatch(r"/conversations/(\d+)", endpoint)
        if request.method == "GET" and match:
            conversation = self.conversations.get(int(match.group(1)))
            if conversation is None:
                return httpx.Response(404, json={"error": "Resource could not be found"})
            return httpx.Response(200, json=self._detail_view(conversation))
        match = re.fullmatch(r"/conversations/(\d+)/messages", endpoint)
        if request.method == "POST" and match:
            message = {"id": self._new_id(), "conversation_id": int(match.group(1)), **body}
            self.messages.append(message)
            return httpx.Response(200, json=message)
        return httpx.Response(404, json={"error": f"no route for {request.method} {endpoint}"})

    def _create_contact(self, body: dict[str, Any]) -> httpx.Response:
        identifier = body.get("identifier")
        if any(c["identifier"] == identifier for c in self.contacts.values()):
            return httpx.Response(422, json={"message": "Identifier has already been taken"})
        contact = self.add_contact(identifier, body.get("name", ""), body.get("phone_number"))
        return httpx.Response(200, json={"payload": {"contact": contact}})

    def _list_conversations(self, params: dict[str, str]) -> httpx.Response:
        items = sorted(self.conversations.values(), key=lambda c: c["id"])
        if "inbox_id" in params:
            items = [c for c in items if c["inbox_id"] == int(params["inbox_id"])]
        if "contact_id" in params:
            items = [c for c in items if c["contact_id"] == int(params["contact_id"])]
        if params.get("status", "open") != "all":
            items = [c for c in items if c["status"] == params.get("status", "open")]
        page = 1 if self.ignore_page else int(params.get("page", "1"))
        start = (page - 1) * self.page_size
        chunk = items[start:start + self.page_size]
        return httpx.Response(
            200,
            json={"data": {"meta": {"all_count": len(items)}, "payload": [self._listing_view(c) for c in chunk]}},
        )

    def _create_conversation(self, body: dict[str, Any]) -> httpx.Response:
        source_id = body.get("source_id")
        if source_id is not None:
            taken = any(c["source_id"] == source_id for c in self.conversations.values())
            if taken or self.reject_source_id:
                return httpx.Response(422, json={"message": "Source has already been taken"})
        conversation = self.add_conversation(
            contact_id=int(body["contact_id"]),
            inbox_id=int(body["inbox_id"]),
            source_id=source_id,
            tag_attribute=(body.get("additional_attributes") or {}).get("source_id"),
        )
        return httpx.Response(200, json=self._detail_view(conversation))


class FakeTransport:
    """Chat transport double recording deliveries."""

    def __init__(self, *, fail_with: Exception | None = None, known_handles: dict[str, Any] | None = None) -> None:
        self.sent: list[tuple[Any, str]] = []
        self.fail_with = fail_with
        self.known_handles = known_handles or {}

    async def send_text(self, target: Any, text: str) -> None:
        if self.fail_with is not None:
            raise self.fail_with
        self.sent.append((target, text))

    async def resolve_peer(self, channel: str) -> Any:
        handle = channel.lstrip("@")
        if handle in self.known_handles:
            return self.known_handles[handle]
        return int(channel) if channel.lstrip("-").isdigit() else channel


@pytest.fixture
def fake_chatwoot() -> FakeChatwoot:
    return FakeChatwoot()
