"""
Checkpointing
=============
Manages the LangGraph checkpoint backend that makes approval pauses and
multi-turn flows durable.

Two backends:

  SQLite (default)
  ─────────────────
  AsyncSqliteSaver from langgraph-checkpoint-sqlite. A thread paused for
  approval survives a process restart: the proposed tool calls, the tool
  node name and the button labels all live in the checkpointed FlowState.
  The DB file path comes from FLOW_CHECKPOINT_DB_PATH, defaulting to
  "flow_checkpoints.db" in the current working directory.

  Memory (in-process only)
  ────────────────────────
  MemorySaver. Lost on process exit. Appropriate for tests and one-shot
  CLI sessions.

Usage pattern — SQLite:

    async with sqlite_checkpointer() as cp:
        graph = flow.compile(checkpointer=cp)

Usage pattern — memory (tests / dev):

    graph = flow.compile(checkpointer=memory_checkpointer())

FlowSession enters the SQLite context through an AsyncExitStack on start()
and exits it on stop(), tying the connection lifetime to the session.
"""
import logging
import os
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator

from langgraph.checkpoint.memory import MemorySaver
from langgraph.checkpoint.sqlite.aio import AsyncSqliteSaver

logger = logging.getLogger(__name__)

DEFAULT_DB_PATH = "flow_checkpoints.db"


def get_db_path() -> str:
    """
    Return the SQLite database file path.

    Resolution order:
      1. FLOW_CHECKPOINT_DB_PATH environment variable
      2. DEFAULT_DB_PATH ("flow_checkpoints.db" in the cwd)
    """
    return os.getenv("FLOW_CHECKPOINT_DB_PATH", DEFAULT_DB_PATH)


@asynccontextmanager
async def sqlite_checkpointer(
    db_path: str | None = None,
) -> AsyncIterator[AsyncSqliteSaver]:
    """
    Open an AsyncSqliteSaver and run setup() (idempotent table creation).

    Args:
        db_path: Path to the SQLite file. Defaults to get_db_path().
                 ":memory:" gives SQL semantics with no file on disk.
    """
    path = db_path if db_path is not None else get_db_path()
    logger.info("[checkpointing] Opening SQLite checkpointer at: %s", path)

    async with AsyncSqliteSaver.from_conn_string(path) as checkpointer:
        await checkpointer.setup()
        logger.info("[checkpointing] SQLite checkpointer ready")
        yield checkpointer


def memory_checkpointer() -> MemorySaver:
    return MemorySaver()


def thread_config(
    thread_id: str,
    chat_id: str | None = None,
    should_stream: bool = False,
    abort_signal: Any = None,
    **configurable: Any,
) -> dict:
    """
    Build the RunnableConfig for one run of a thread.

    The thread id keys the checkpoint; the remaining entries are read by the
    nodes (chat id for events, streaming flag, abort signal, input, uploads).
    """
    values = {
        "thread_id":     thread_id,
        "chat_id":       chat_id or thread_id,
        "should_stream": should_stream,
        **configurable,
    }
    if abort_signal is not None:
        values["abort_signal"] = abort_signal
    return {"configurable": values}
