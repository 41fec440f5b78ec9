"""
FastAPI HTTP Interface
======================
Exposes the helpdesk flow (flows.py) over HTTP.

Endpoints:
  POST /session              → create a new session, returns session_id
  POST /chat                 → send a message, returns response + approval state
  POST /approval             → approve or reject the pending tool calls
  GET  /history/{session_id} → conversation history for a session
  GET  /health               → liveness check

Run:
    uvicorn api:app --reload --port 8000

Example cURL flow:

    # 1. Create session
    curl -X POST http://localhost:8000/session

    # 2. Chat (support agent answers, operator pauses for approval)
    curl -X POST http://localhost:8000/chat \\
         -H "Content-Type: application/json" \\
         -d '{"session_id": "<id>", "message": "Escalate TCK-2 please"}'

    # 3. Approve the pending action
    curl -X POST http://localhost:8000/approval \\
         -H "Content-Type: application/json" \\
         -d '{"session_id": "<id>", "approved": true}'
"""
import uuid
from contextlib import asynccontextmanager

from fastapi import FastAPI, HTTPException
from pydantic import BaseModel

from flows import build_demo_flow
from seqflow import FlowError, FlowSession
from seqflow.session import default_mcp_servers

_session: FlowSession | None = None


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Start the MCP server subprocess and open the SQLite checkpointer on startup.
    Both are cleanly closed on shutdown via FlowSession.stop().

    SQLite path is read from the FLOW_CHECKPOINT_DB_PATH env var (default:
    "flow_checkpoints.db"). Threads paused for approval can be resumed even
    after a restart.
    """
    global _session
    _session = FlowSession(build_demo_flow, mcp_servers=default_mcp_servers())
    await _session.start()
    yield
    await _session.stop()


app = FastAPI(
    title="Sequential Agent Flow",
    description="Sequential agents with human approval of tool calls.",
    lifespan=lifespan,
)


# ── Request / Response models ──────────────────────────────────────────────────

class ChatRequest(BaseModel):
    session_id: str
    message: str
    uploads: list[dict] = []


class ApprovalRequest(BaseModel):
    session_id: str
    approved: bool


class PendingAction(BaseModel):
    nodeId: str
    toolNode: str
    toolCalls: list[dict]
    prompt: str
    approveText: str
    rejectText: str


class ChatResponse(BaseModel):
    session_id: str
    content: str
    interrupted: bool = False
    pending_action: PendingAction | None = None


class SessionResponse(BaseModel):
    session_id: str


class HistoryMessage(BaseModel):
    role: str    # "user" | "assistant"
    content: str


class HistoryResponse(BaseModel):
    session_id: str
    messages: list[HistoryMessage]


def _require_session() -> FlowSession:
    if not _session:
        raise HTTPException(status_code=503, detail="Flow not initialized.")
    return _session


def _to_response(session_id: str, result: dict) -> ChatResponse:
    pending = None
    if result.get("pending_action"):
        action = result["pending_action"]
        pending = PendingAction(**{field: action.get(field) for field in PendingAction.model_fields})
    return ChatResponse(
        session_id=session_id,
        content=result["content"],
        interrupted=result.get("interrupted", False),
        pending_action=pending,
    )


# ── Endpoints ──────────────────────────────────────────────────────────────────

@app.post("/session", response_model=SessionResponse)
async def create_session():
    """
    Create a new conversation session.
    Returns a session_id that must be passed with every /chat request.
    """
    return SessionResponse(session_id=str(uuid.uuid4()))


@app.post("/chat", response_model=ChatResponse)
async def chat(request: ChatRequest):
    """
    Send a message to the flow.

    Normal flow:
      Response: { content: "...", interrupted: false }

    Approval flow (an agent wants to call a gated tool):
      Response: { content: "I'm about to run ... Shall I proceed?",
                  interrupted: true,
                  pending_action: { nodeId, toolCalls: [...], approveText, rejectText, ... } }
      → POST /approval, or send the approve/reject text as the next message.
    """
    session = _require_session()
    try:
        result = await session.chat(request.session_id, request.message, uploads=request.uploads)
    except FlowError as exc:
        raise HTTPException(status_code=422, detail=str(exc)) from exc
    return _to_response(request.session_id, result)


@app.post("/approval", response_model=ChatResponse)
async def approval(request: ApprovalRequest):
    """Approve or reject the tool calls a paused session is waiting on."""
    session = _require_session()
    if not await session.is_interrupted(request.session_id):
        raise HTTPException(status_code=409, detail="No pending action for this session.")
    try:
        result = await session.decide(request.session_id, request.approved)
    except FlowError as exc:
        raise HTTPException(status_code=422, detail=str(exc)) from exc
    return _to_response(request.session_id, result)


@app.get("/history/{session_id}", response_model=HistoryResponse)
async def get_history(session_id: str):
    """
    Retrieve conversation history for a session.
    Tool messages are excluded (internal implementation detail).
    """
    session = _require_session()
    messages = [HistoryMessage(**m) for m in await session.get_history(session_id)]
    return HistoryResponse(session_id=session_id, messages=messages)


@app.get("/health")
async def health():
    return {"status": "ok", "flow_ready": _session is not None}
