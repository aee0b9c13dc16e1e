"""Tests for the session store, its durable record and the catalog."""

from __future__ import annotations

import asyncio
import json
import sys
from pathlib import Path

import pytest

_ROOT = Path(__file__).resolve().parent.parent
if str(_ROOT) not in sys.path:
    sys.path.insert(0, str(_ROOT))

from shared.errors import PreconditionError
from shared.schemas import (
    AgentRole,
    CycleHistoryItem,
    SessionSnapshot,
    Task,
    TaskStatus,
    WorkflowStep,
)
from workflow.persistence import DebouncedWriter, FileKeyValueStore, MemoryKeyValueStore
from workflow.session_store import SessionStore, normalize_snapshot, report_line


def _store(kv=None, debounce_s: float = 0.0, max_cycles: int = 3) -> SessionStore:
    return SessionStore(kv or MemoryKeyValueStore(), debounce_s=debounce_s, max_cycles=max_cycles)


def _record(kv: MemoryKeyValueStore, key: str = "QA_APP_STATE_V1") -> dict:
    return json.loads(kv.load(key).decode("utf-8"))


class TestDurableRecord:

    def test_cycle_tasks_never_reach_the_record(self):
        kv = MemoryKeyValueStore()
        store = _store(kv)
        task = Task(id="t1", description="d", status=TaskStatus.FAILED)
        store.state.record_cycle(
            CycleHistoryItem(cycle_number=0, defect_count=1, storage_url=None, tasks=(task,))
        )
        store.touch()

        history = _record(kv)["session"]["cycleHistory"]
        assert history == [
            {"cycleNumber": 0, "defectCount": 1, "timestamp": history[0]["timestamp"], "storageUrl": None}
        ]
        # The live pointer keeps its tasks for in-session viewing.
        assert store.state.cycle_history[0].tasks == (task,)

    def test_record_cycle_replaces_same_number(self):
        store = _store()
        store.state.record_cycle(CycleHistoryItem(cycle_number=1, defect_count=2))
        store.state.record_cycle(CycleHistoryItem(cycle_number=0, defect_count=3))
        store.state.record_cycle(CycleHistoryItem(cycle_number=1, defect_count=0))
        assert [(h.cycle_number, h.defect_count) for h in store.state.cycle_history] == [(0, 3), (1, 0)]

    def test_load_restores_session_and_normalizes_in_flight_step(self):
        kv = MemoryKeyValueStore()
        store = _store(kv)
        store.set_source("// === FILE: a.ts ===\nx\n", "octo/app")
        store.state.function_summary = "# App"
        store.state.pipeline.plan([Task(id="t1", description="d")])
        store.state.pipeline.transition("t1", status=TaskStatus.RUNNING)
        store.state.step = WorkflowStep.TESTING
        store.set_provider_config(cloudName="demo", uploadPreset="unsigned")

        restored = _store(kv)
        assert restored.load()
        assert restored.state.session_id == store.state.session_id
        assert restored.state.repo_name == "octo/app"
        assert restored.state.step == WorkflowStep.IDLE
        assert restored.state.pipeline.get("t1").status == TaskStatus.PENDING
        assert restored.provider_config == {"cloudName": "demo", "uploadPreset": "unsigned"}

    def test_load_without_record(self):
        assert not _store().load()

    def test_load_ignores_garbage(self):
        kv = MemoryKeyValueStore()
        kv.save("QA_APP_STATE_V1", b"{not json")
        store = _store(kv)
        assert not store.load()
        assert store.state.step == WorkflowStep.IDLE

    def test_current_cycle_clamped_to_max(self):
        kv = MemoryKeyValueStore()
        store = _store(kv, max_cycles=5)
        store.state.current_cycle = 5
        store.touch()

        restored = _store(kv, max_cycles=2)
        restored.load()
        assert restored.state.current_cycle == 2

    def test_file_store_round_trip(self, tmp_path):
        kv = FileKeyValueStore(tmp_path)
        store = _store(kv)
        store.set_source("code", "octo/app")

        assert (tmp_path / "QA_APP_STATE_V1.json").is_file()
        restored = _store(FileKeyValueStore(tmp_path))
        assert restored.load()
        assert restored.state.code_context == "code"


class TestDebounce:

    def test_writes_coalesce_inside_the_loop(self):
        kv = MemoryKeyValueStore()

        async def run():
            store = _store(kv, debounce_s=0.05)
            for i in range(5):
                store.set_source(f"v{i}")
            assert kv.write_count == 0
            await asyncio.sleep(0.15)
            return store

        store = asyncio.run(run())
        assert kv.write_count == 1
        assert _record(kv)["session"]["codeContext"] == "v4"
        store.flush()
        assert kv.write_count == 1

    def test_flush_writes_pending_record(self):
        kv = MemoryKeyValueStore()
        writer = DebouncedWriter(kv, "k", delay_s=10.0)

        async def run():
            writer.schedule(lambda: b"payload")
            assert writer.pending
            writer.flush()

        asyncio.run(run())
        assert kv.load("k") == b"payload"
        assert not writer.pending

    def test_listeners_are_notified(self):
        store = _store()
        seen = []
        listener = lambda state: seen.append(state.code_context)
        store.add_listener(listener)
        store.set_source("a")
        store.remove_listener(listener)
        store.set_source("b")
        assert seen == ["a"]


class TestCatalog:

    def test_upsert_keeps_one_entry_and_front_inserts(self):
        store = _store()
        store.save("octo/one", name="One", summary_snippet="first")
        store.save("octo/two", name="Two")
        store.save("octo/one", description="Analyzed again")

        assert [c.id for c in store.catalog] == ["octo/two", "octo/one"]
        one = store.get_entry("octo/one")
        assert one.name == "One"
        assert one.summary_snippet == "first"
        assert one.description == "Analyzed again"

    def test_snapshot_resume_round_trip(self):
        store = _store()
        store.set_source("src", "octo/app")
        store.state.function_summary = "# App"
        store.state.pipeline.plan([Task(id="t1", description="d")])
        store.state.add_log(AgentRole.SYSTEM, "hello")
        assert store.snapshot_current() is not None

        store.clear()
        assert store.state.repo_name == ""
        assert store.get_entry("octo/app") is not None

        state = store.install(store.resume("octo/app"))
        assert state.repo_name == "octo/app"
        assert state.function_summary == "# App"
        assert [t.id for t in state.pipeline] == ["t1"]
        assert state.logs[0].message == "hello"

    def test_snapshot_without_repo_name(self):
        assert _store().snapshot_current() is None

    def test_resume_unknown_or_unsaved(self):
        store = _store()
        with pytest.raises(PreconditionError):
            store.resume("nope")
        store.save("octo/app", name="App")
        with pytest.raises(PreconditionError):
            store.resume("octo/app")

    def test_no_switching_while_processing(self):
        store = _store()
        store.state.step = WorkflowStep.TESTING
        with pytest.raises(PreconditionError):
            store.clear()
        with pytest.raises(PreconditionError):
            store.install(SessionSnapshot(repo_name="x"))

    def test_clear_keeps_catalog_and_provider_config(self):
        store = _store()
        store.save("octo/app")
        store.set_provider_config(cloudName="demo")
        store.state.repo_name = "octo/app"

        state = store.clear()
        assert state.repo_name == ""
        assert store.catalog and store.provider_config == {"cloudName": "demo"}
        assert state.session_id.startswith("qa_session_")


class TestHelpers:

    def test_normalize_snapshot(self):
        snap = SessionSnapshot(
            repo_name="x",
            tasks=(Task(id="t1", description="d", status=TaskStatus.RUNNING),),
            workflow_step=WorkflowStep.FIXING,
            cycle_history=(
                CycleHistoryItem(cycle_number=0, defect_count=0, tasks=(Task(id="t1", description="d"),)),
            ),
        )
        normalized = normalize_snapshot(snap)
        assert normalized.workflow_step == WorkflowStep.IDLE
        assert normalized.tasks[0].status == TaskStatus.PENDING
        assert normalized.cycle_history[0].tasks is None

    def test_report_line(self):
        line = report_line("TEST_PASS", "Task t1: ok")
        assert line.endswith("] [TEST_PASS] Task t1: ok\n")
        assert line.startswith("[")
