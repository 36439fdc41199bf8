"""Tests for SQLite database layer."""

import sqlite3

import anyio
import pytest

from maestro.db import Database
from maestro.models import (
    ArtifactEntry,
    Fact,
    HistoryEntry,
    HistoryKind,
    Task,
    TaskContext,
    TaskStatus,
)
from maestro.parser import parse_report

from handoffs import auth_fix_report


# --- Workflows ---

@pytest.mark.asyncio
async def test_create_and_get_workflow(memory_db):
    """Create workflow → read back with matching fields."""
    await memory_db.create_workflow("wf-1", "Fix login", "debug", ["no new deps"])
    wf = await memory_db.get_workflow("wf-1")
    assert wf["objective"] == "Fix login"
    assert wf["category"] == "debug"
    assert wf["constraints"] == ["no new deps"]
    assert wf["state"] == "idle"
    assert wf["version"] == 0


@pytest.mark.asyncio
async def test_get_nonexistent_returns_none(memory_db):
    """Query non-existent ID → None."""
    assert await memory_db.get_workflow("nope") is None
    assert await memory_db.get_task("nope") is None


@pytest.mark.asyncio
async def test_update_workflow(memory_db):
    await memory_db.create_workflow("wf-1", "Fix login")
    created = await memory_db.get_workflow("wf-1")
    await memory_db.update_workflow("wf-1", "blocked", "debugger", "Which IdP?", "")
    wf = await memory_db.get_workflow("wf-1")
    assert wf["state"] == "blocked"
    assert wf["current_mode"] == "debugger"
    assert wf["reason"] == "Which IdP?"
    assert wf["updated_at"] >= created["updated_at"]


@pytest.mark.asyncio
async def test_list_workflows(memory_db):
    await memory_db.create_workflow("wf-a", "one")
    await memory_db.create_workflow("wf-b", "two")
    assert [w["id"] for w in await memory_db.list_workflows()] == ["wf-a", "wf-b"]


# --- Tasks ---

@pytest.mark.asyncio
async def test_upsert_task_roundtrip_and_update(memory_db):
    """Repeated upsert of same ID → update, not error."""
    await memory_db.create_workflow("wf-1", "Fix login")
    task = Task(
        id="wf-1-t001", workflow_id="wf-1", target_mode="debugger",
        objective="Fix login", instruction="Find the race",
        context=TaskContext(category="debug", artifacts=["src/a.py"],
                            corrective_notes=["Attempt 1: bad"]),
    )
    await memory_db.upsert_task(task)
    task.status = TaskStatus.FAILED
    task.attempt = 2
    task.failure_reason = "ParseError: no task_id"
    await memory_db.upsert_task(task)

    loaded = await memory_db.get_task("wf-1-t001")
    assert loaded.status == TaskStatus.FAILED
    assert loaded.attempt == 2
    assert loaded.failure_reason == "ParseError: no task_id"
    assert loaded.context.category == "debug"
    assert loaded.context.artifacts == ["src/a.py"]
    assert loaded.context.corrective_notes == ["Attempt 1: bad"]
    assert len(await memory_db.get_tasks("wf-1")) == 1


# --- State deltas ---

@pytest.mark.asyncio
async def test_apply_and_load_state(memory_db):
    await memory_db.create_workflow("wf-1", "Fix login")
    report = parse_report(auth_fix_report(), task_id="wf-1-t001", mode="debugger")
    await memory_db.apply_state_delta(
        "wf-1", 1,
        facts=[Fact("bug_status", "Fixed", "wf-1-t001", "debugger", ("debug", "fix"))],
        artifacts=[ArtifactEntry("src/auth/session.py", "wf-1-t001")],
        history=[HistoryEntry(1, HistoryKind.REPORT, "wf-1-t001", "debugger",
                              report.summary, report=report)],
        raised=[("Which IdP?", "wf-1-t001")],
    )
    state = await memory_db.load_state("wf-1")
    assert state["version"] == 1
    assert state["facts"] == [
        Fact("bug_status", "Fixed", "wf-1-t001", "debugger", ("debug", "fix")),
    ]
    assert state["artifacts"] == [ArtifactEntry("src/auth/session.py", "wf-1-t001")]
    assert state["open_issues"] == ["Which IdP?"]
    entry = state["history"][0]
    assert entry.kind == HistoryKind.REPORT
    assert entry.report == report


@pytest.mark.asyncio
async def test_fact_upsert_and_issue_resolution(memory_db):
    await memory_db.create_workflow("wf-1", "x")
    await memory_db.apply_state_delta("wf-1", 1, facts=[Fact("k", "old")],
                                      raised=[("q?", "t1")])
    await memory_db.apply_state_delta("wf-1", 2, facts=[Fact("k", "new")],
                                      resolved=["q?"])
    state = await memory_db.load_state("wf-1")
    assert [f.value for f in state["facts"]] == ["new"]
    assert state["open_issues"] == []


@pytest.mark.asyncio
async def test_duplicate_artifact_ignored(memory_db):
    await memory_db.create_workflow("wf-1", "x")
    entry = ArtifactEntry("src/a.py", "t1")
    await memory_db.apply_state_delta("wf-1", 1, artifacts=[entry])
    await memory_db.apply_state_delta("wf-1", 2, artifacts=[entry])
    assert (await memory_db.load_state("wf-1"))["artifacts"] == [entry]


@pytest.mark.asyncio
async def test_failed_delta_rolls_back(memory_db):
    """A delta that fails part-way leaves no trace."""
    await memory_db.create_workflow("wf-1", "x")
    await memory_db.apply_state_delta(
        "wf-1", 1, history=[HistoryEntry(1, HistoryKind.DECISION, summary="first")],
    )
    with pytest.raises(sqlite3.IntegrityError):
        await memory_db.apply_state_delta(
            "wf-1", 2,
            facts=[Fact("k", "v")],
            history=[HistoryEntry(1, HistoryKind.DECISION, summary="duplicate seq")],
        )
    state = await memory_db.load_state("wf-1")
    assert state["version"] == 1
    assert state["facts"] == []
    assert [h.summary for h in state["history"]] == ["first"]


@pytest.mark.asyncio
async def test_concurrent_deltas_serialised(db):
    """Concurrent writers on one connection each commit whole."""
    await db.create_workflow("wf-1", "x")

    async def write(i):
        await db.apply_state_delta(
            "wf-1", i,
            facts=[Fact(f"k{i}", str(i))],
            history=[HistoryEntry(i, HistoryKind.DECISION, summary=f"d{i}")],
        )

    async with anyio.create_task_group() as tg:
        for i in range(1, 6):
            tg.start_soon(write, i)

    state = await db.load_state("wf-1")
    assert len(state["facts"]) == 5
    assert [h.seq for h in state["history"]] == [1, 2, 3, 4, 5]


@pytest.mark.asyncio
async def test_load_state_unknown_workflow(memory_db):
    state = await memory_db.load_state("nope")
    assert state == {"version": 0, "facts": [], "artifacts": [], "history": [],
                     "open_issues": []}


# --- Run log ---

@pytest.mark.asyncio
async def test_log_events(memory_db):
    await memory_db.log_event("wf-1", "dispatch", {"task_id": "t1", "mode": "debugger"})
    await memory_db.log_event("wf-1", "report")
    await memory_db.log_event("wf-2", "other")
    logs = await memory_db.get_logs("wf-1")
    assert [entry["event"] for entry in logs] == ["dispatch", "report"]
    assert logs[0]["detail"] == {"task_id": "t1", "mode": "debugger"}
    assert logs[1]["detail"] is None


@pytest.mark.asyncio
async def test_wal_mode(tmp_path):
    """File databases run in WAL mode."""
    db = Database(str(tmp_path / "wal.db"))
    await db.init()
    cursor = await db._conn.execute("PRAGMA journal_mode")
    row = await cursor.fetchone()
    assert row[0] == "wal"
    await db.close()
