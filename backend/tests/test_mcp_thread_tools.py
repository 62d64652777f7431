import json

import pytest

import mcp_server


@pytest.fixture
def service(make_service, monkeypatch):
    built = make_service()
    monkeypatch.setattr(mcp_server, "get_thread_service", lambda: built)
    return built


@pytest.mark.asyncio
async def test_create_thread_returns_tool_response_json(service) -> None:
    created = json.loads(await mcp_server.create_thread("Fix auth timeout", session_id="sess-1"))
    duplicate = json.loads(await mcp_server.create_thread("fix the auth timeout."))

    assert created["ok"] is True
    assert created["deduplicated"] is False
    assert created["message"].startswith("Created thread t-")
    assert created["thread"]["source_session"] == "sess-1"

    assert duplicate["ok"] is True
    assert duplicate["deduplicated"] is True
    assert duplicate["dedup_method"] == "text_normalization"
    assert "text_normalization" in duplicate["message"]


@pytest.mark.asyncio
async def test_create_thread_rejects_blank_text(service) -> None:
    payload = json.loads(await mcp_server.create_thread("   "))
    assert payload["ok"] is False
    assert payload["message"].startswith("Error:")


@pytest.mark.asyncio
async def test_list_threads_payload_and_validation(service) -> None:
    await mcp_server.create_thread("Write release notes")

    listing = json.loads(await mcp_server.list_threads())
    invalid = json.loads(await mcp_server.list_threads(status="dormant"))

    assert listing["ok"] is True
    assert listing["total_open"] == 1
    assert listing["source"] == "local"
    assert listing["threads"][0]["lifecycle_status"] == "emerging"
    assert invalid["ok"] is False


@pytest.mark.asyncio
async def test_resolve_thread_contract(service) -> None:
    created = json.loads(await mcp_server.create_thread("Rotate API keys"))
    thread_id = created["thread"]["id"]

    missing = json.loads(await mcp_server.resolve_thread(text_match="deploy"))
    resolved = json.loads(await mcp_server.resolve_thread(thread_id=thread_id, resolution_note="done"))
    repeated = json.loads(await mcp_server.resolve_thread(thread_id=thread_id))
    no_target = json.loads(await mcp_server.resolve_thread())

    assert missing["ok"] is True
    assert missing["thread"] is None
    assert missing["message"] == "No matching thread found"
    assert resolved["ok"] is True
    assert resolved["thread"]["resolution_note"] == "done"
    assert repeated["ok"] is True
    assert "already resolved" in repeated["message"]
    assert no_target["ok"] is False


@pytest.mark.asyncio
async def test_cleanup_threads_contract(service) -> None:
    await mcp_server.create_thread("Plan roadmap review")
    payload = json.loads(await mcp_server.cleanup_threads(auto_archive=True))

    assert payload["ok"] is True
    assert payload["archived_count"] == 0
    assert payload["summary"]["emerging"] == 1
    assert payload["message"] == "1 open, 0 archived"
