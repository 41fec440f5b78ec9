"""
Tests for seqflow/checkpointing.py and SQLite checkpointer integration
======================================================================
Tests cover checkpointing at three levels:

  Level 1 — Unit: checkpointing module itself
    - sqlite_checkpointer() context manager opens, setups, and closes cleanly
    - memory_checkpointer() returns a fresh MemorySaver
    - get_db_path() reads FLOW_CHECKPOINT_DB_PATH
    - thread_config() builds the configurable block the nodes read

  Level 2 — Integration: checkpointer + compiled flow (scripted model, no MCP)
    - State written to SQLite is readable after the run
    - A second compiled flow on the same file sees prior turns
    - Unknown thread ids have empty state

  Level 3 — FlowSession lifecycle
    - in_memory=True uses MemorySaver, leaves no file on disk
    - Custom db_path is honoured
    - stop() closes the checkpointer connection

All tests use ":memory:" or tmp_path SQLite files — no file system pollution.
"""
import os

from langchain_core.messages import AIMessage, HumanMessage
from langgraph.checkpoint.memory import MemorySaver
from langgraph.checkpoint.sqlite.aio import AsyncSqliteSaver

from seqflow.agent_node import AgentConfig
from seqflow.checkpointing import (
    DEFAULT_DB_PATH,
    get_db_path,
    memory_checkpointer,
    sqlite_checkpointer,
    thread_config,
)
from seqflow.graph import FlowGraph
from seqflow.session import FlowSession


def _build_flow(tools, model) -> FlowGraph:
    flow = FlowGraph(default_model=model)
    flow.add_start()
    flow.add_agent(AgentConfig(node_id="agent", name="Agent", tools=tools))
    flow.add_end()
    flow.add_edge("start", "agent").add_edge("agent", "end")
    return flow


# ── Level 1: checkpointing module ───────────────────────────────────────────

class TestGetDbPath:
    def test_returns_default_when_env_not_set(self, monkeypatch):
        monkeypatch.delenv("FLOW_CHECKPOINT_DB_PATH", raising=False)
        assert get_db_path() == DEFAULT_DB_PATH == "flow_checkpoints.db"

    def test_reads_env_var(self, monkeypatch):
        monkeypatch.setenv("FLOW_CHECKPOINT_DB_PATH", "/tmp/custom.db")
        assert get_db_path() == "/tmp/custom.db"


class TestMemoryCheckpointer:
    def test_returns_memory_saver(self):
        assert isinstance(memory_checkpointer(), MemorySaver)

    def test_each_call_returns_fresh_instance(self):
        assert memory_checkpointer() is not memory_checkpointer()


class TestThreadConfig:
    def test_defaults(self):
        assert thread_config("t-1") == {
            "configurable": {"thread_id": "t-1", "chat_id": "t-1", "should_stream": False},
        }

    def test_extras_and_abort_signal(self):
        signal = object()
        config = thread_config("t-1", chat_id="c-9", should_stream=True, abort_signal=signal, input="hi")
        configurable = config["configurable"]
        assert configurable["chat_id"] == "c-9"
        assert configurable["should_stream"] is True
        assert configurable["abort_signal"] is signal
        assert configurable["input"] == "hi"

    def test_no_abort_signal_key_when_absent(self):
        assert "abort_signal" not in thread_config("t-1")["configurable"]


class TestSqliteCheckpointer:
    async def test_context_manager_yields_async_sqlite_saver(self):
        async with sqlite_checkpointer(":memory:") as cp:
            assert isinstance(cp, AsyncSqliteSaver)

    async def test_setup_creates_checkpoint_tables(self):
        """Tables should exist after setup() — verified by a successful alist()."""
        async with sqlite_checkpointer(":memory:") as cp:
            checkpoints = [c async for c in cp.alist({"configurable": {"thread_id": "x"}})]
            assert checkpoints == []

    async def test_uses_get_db_path_when_no_path_given(self, monkeypatch):
        monkeypatch.setenv("FLOW_CHECKPOINT_DB_PATH", ":memory:")
        async with sqlite_checkpointer() as cp:
            assert isinstance(cp, AsyncSqliteSaver)

    async def test_file_created_at_given_path(self, tmp_path):
        db_file = str(tmp_path / "test_checkpoints.db")
        async with sqlite_checkpointer(db_file):
            pass
        assert os.path.exists(db_file)


# ── Level 2: checkpointer + compiled flow ────────────────────────────────────

class TestStatePersistedToSqlite:
    async def test_state_is_readable_after_invocation(self, scripted, session_id):
        async with sqlite_checkpointer(":memory:") as cp:
            graph = _build_flow([], scripted("Ticket found!")).compile(checkpointer=cp)
            config = thread_config(session_id)

            await graph.ainvoke({"messages": [HumanMessage(content="Where is TCK-1?")]}, config=config)

            state = await graph.aget_state(config)
            messages = list(state.values["messages"])
            assert isinstance(messages[0], HumanMessage)
            assert [m.content for m in messages if isinstance(m, AIMessage)] == ["Ticket found!"]
            assert state.values["flow"]["sessionId"] == session_id

    async def test_second_flow_sees_prior_turns(self, scripted, session_id, tmp_path):
        db_file = str(tmp_path / "restart.db")
        config = thread_config(session_id)

        async with sqlite_checkpointer(db_file) as cp:
            graph = _build_flow([], scripted("First answer.")).compile(checkpointer=cp)
            await graph.ainvoke({"messages": [HumanMessage(content="first")]}, config=config)

        model = scripted("Second answer.")
        async with sqlite_checkpointer(db_file) as cp:
            graph = _build_flow([], model).compile(checkpointer=cp)
            result = await graph.ainvoke({"messages": [HumanMessage(content="second")]}, config=config)

        assert [m.content for m in result["messages"]] == ["first", "First answer.", "second", "Second answer."]
        assert [m.content for m in model.received[0]] == ["first", "First answer.", "second"]

    async def test_unknown_thread_is_empty(self, scripted):
        async with sqlite_checkpointer(":memory:") as cp:
            graph = _build_flow([], scripted()).compile(checkpointer=cp)
            state = await graph.aget_state(thread_config("never-used"))
            assert state.values == {}
            assert state.next == ()


# ── Level 3: FlowSession lifecycle ───────────────────────────────────────────

class TestFlowSessionCheckpointer:
    async def test_in_memory_leaves_no_file(self, scripted, tmp_path, monkeypatch):
        monkeypatch.chdir(tmp_path)
        session = FlowSession(_build_flow, model=scripted("hi"), in_memory=True)
        await session.start()
        try:
            assert isinstance(session.graph.checkpointer, MemorySaver)
            await session.chat("t-1", "hello")
        finally:
            await session.stop()
        assert not os.path.exists(tmp_path / DEFAULT_DB_PATH)

    async def test_custom_db_path_is_honoured(self, scripted, tmp_path):
        db_file = tmp_path / "session.db"
        session = FlowSession(_build_flow, model=scripted("hi"), db_path=str(db_file))
        await session.start()
        try:
            assert isinstance(session.graph.checkpointer, AsyncSqliteSaver)
            response = await session.chat("t-1", "hello")
            assert response["content"] == "hi"
        finally:
            await session.stop()
        assert db_file.exists()

    async def test_history_survives_session_restart(self, scripted, tmp_path):
        db_file = str(tmp_path / "session.db")

        first = FlowSession(_build_flow, model=scripted("Noted."), db_path=db_file)
        await first.start()
        await first.chat("t-1", "remember TCK-2")
        await first.stop()

        second = FlowSession(_build_flow, model=scripted(), db_path=db_file)
        await second.start()
        try:
            history = await second.get_history("t-1")
        finally:
            await second.stop()
        assert history == [
            {"role": "user", "content": "remember TCK-2"},
            {"role": "assistant", "content": "Noted."},
        ]
