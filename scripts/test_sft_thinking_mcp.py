import asyncio
import json
import sys
from pathlib import Path

import pytest

# Add parent directory to path
sys.path.insert(0, str(Path(__file__).parent))

import sft_thinking
from sft_thinking import ThinkingEngine

fastmcp = pytest.importorskip("fastmcp")
from fastmcp.exceptions import ToolError  # noqa: E402


@pytest.fixture(autouse=True)
def _tmp_log(tmp_path, monkeypatch):
    monkeypatch.setattr(sft_thinking, "_LOG", tmp_path / "sft_thinking_log.tsv")


@pytest.fixture
def server():
    engine = ThinkingEngine()
    return engine, sft_thinking._build_mcp(engine)


def call(mcp, name, args=None):
    async def run():
        async with fastmcp.Client(mcp) as client:
            result = await client.call_tool(name, args or {})
            return result.content[0].text

    return asyncio.run(run())


def test_exposed_tools_are_registered(server):
    _, mcp = server

    async def run():
        async with fastmcp.Client(mcp) as client:
            return await client.list_tools()

    names = {tool.name for tool in asyncio.run(run())}
    assert names == set(sft_thinking.EXPOSED)


def test_thought_type_schema_lists_every_type(server):
    _, mcp = server

    async def run():
        async with fastmcp.Client(mcp) as client:
            return await client.list_tools()

    tool = next(t for t in asyncio.run(run()) if t.name == "sequential_thinking")
    schema = json.dumps(tool.inputSchema)
    for thought_type in sft_thinking.ThoughtType:
        assert f"\"{thought_type.value}\"" in schema


def test_sequential_thinking_round_trip(server):
    engine, mcp = server
    text = call(
        mcp,
        "sequential_thinking",
        {"thought": "How should we design the cache?", "next_thought_needed": True},
    )
    assert text.startswith("## Thought Recorded")
    assert "**Type:** question" in text

    session_id = engine.list_sessions()[0]["id"]
    text = call(
        mcp,
        "sequential_thinking",
        {
            "thought": "Maybe we should use LRU",
            "next_thought_needed": True,
            "session_id": session_id,
            "new_branch_name": "alt",
            "branch_from_step": 1,
        },
    )
    assert "**Step:** 1 on `alt`" in text

    summary = json.loads(call(mcp, "get_thinking_summary", {"session_id": session_id}))
    assert summary["total_steps"] == 2
    assert [b["name"] for b in summary["branches"]] == ["main", "alt"]


def test_sequential_thinking_reports_validation_errors(server):
    engine, mcp = server
    with pytest.raises(ToolError, match="Invalid thought request"):
        call(
            mcp,
            "sequential_thinking",
            {"thought": "x", "next_thought_needed": True, "confidence": 2.0},
        )
    assert engine.list_sessions() == []


def test_switch_complete_and_list(server):
    engine, mcp = server
    call(mcp, "sequential_thinking", {"thought": "root", "next_thought_needed": True, "session_id": "s1"})
    call(
        mcp,
        "sequential_thinking",
        {"thought": "side", "next_thought_needed": True, "session_id": "s1", "new_branch_name": "alt"},
    )

    switched = json.loads(call(mcp, "switch_thinking_branch", {"session_id": "s1", "branch_name": "main"}))
    assert switched["success"] is True
    with pytest.raises(ToolError, match="Available branches: main, alt"):
        call(mcp, "switch_thinking_branch", {"session_id": "s1", "branch_name": "ghost"})
    with pytest.raises(ToolError, match="Session ghost not found"):
        call(mcp, "complete_thinking_session", {"session_id": "ghost"})

    done = json.loads(
        call(mcp, "complete_thinking_session", {"session_id": "s1", "final_conclusion": "Use LRU"})
    )
    assert done["status"] == "completed"
    assert done["conclusions"] == ["Use LRU"]

    listing = json.loads(call(mcp, "list_thinking_sessions"))
    assert listing == [{"id": "s1", "title": "root", "status": "completed", "step_count": 3}]


def test_set_status_and_export(server):
    _, mcp = server
    call(mcp, "sequential_thinking", {"thought": "root", "next_thought_needed": True, "session_id": "s1"})

    paused = json.loads(call(mcp, "set_thinking_status", {"session_id": "s1", "status": "paused"}))
    assert paused == {"success": True, "session_id": "s1", "status": "paused"}
    with pytest.raises(ToolError, match="Invalid status request"):
        call(mcp, "set_thinking_status", {"session_id": "s1", "status": "sleeping"})

    md = call(mcp, "export_thinking_session", {"session_id": "s1"})
    assert "**Status:** paused" in md
    exported = json.loads(call(mcp, "export_thinking_session", {"session_id": "s1", "fmt": "json"}))
    assert exported["status"] == "paused"
    with pytest.raises(ToolError, match="Session nope not found"):
        call(mcp, "export_thinking_session", {"session_id": "nope"})
    with pytest.raises(ToolError, match="Session nope not found"):
        call(mcp, "get_thinking_summary", {"session_id": "nope"})


def test_health_and_info_routes(server):
    from starlette.testclient import TestClient

    _, mcp = server
    client = TestClient(mcp.http_app())
    health = client.get("/health").json()
    assert health["status"] == "healthy"
    assert health["version"] == sft_thinking.CONFIG["version"]
    assert client.get("/info").json()["tools"] == sft_thinking.EXPOSED
