"""
Tests for seqflow/session.py
============================
Pure helpers first, then FlowSession over an in-memory checkpointer with a
scripted model (no MCP server, no network).

Covers:
  - is_confirmation: yes/no words, ambiguous input, mixed case
  - decision_for: exact button labels beat keyword matching
  - pending_tool_calls / build_denial_messages: one denial per pending call
  - FlowSession: plain turn, approve, reject, ambiguous reply, history,
    pending action, decide() with nothing pending
"""
import pytest
from langchain_core.messages import AIMessage, HumanMessage, ToolMessage

from conftest import calls, tool_call
from seqflow.agent_node import AgentConfig
from seqflow.graph import FlowGraph
from seqflow.interrupts import DENIED_KEY
from seqflow.session import (
    FlowSession,
    build_denial_messages,
    decision_for,
    default_mcp_servers,
    is_confirmation,
    pending_tool_calls,
)
from seqflow.tool_node import TOOL_RESPONSE_TYPE


# ---------------------------------------------------------------------------
# is_confirmation
# ---------------------------------------------------------------------------

class TestIsConfirmation:
    @pytest.mark.parametrize("msg", ["yes", "Yes", "YES", "confirm", "proceed",
                                      "ok", "sure", "go", "yep", "do it", "approve"])
    def test_affirmative_words_return_true(self, msg):
        assert is_confirmation(msg) is True

    @pytest.mark.parametrize("msg", ["no", "No", "cancel", "stop", "abort",
                                      "nope", "don't", "reject", "deny"])
    def test_negative_words_return_false(self, msg):
        assert is_confirmation(msg) is False

    @pytest.mark.parametrize("msg", ["maybe", "hmm", "what?", "tell me more", ""])
    def test_ambiguous_returns_none(self, msg):
        assert is_confirmation(msg) is None

    def test_words_inside_sentences(self):
        assert is_confirmation("please proceed") is True
        assert is_confirmation("please cancel") is False

    @pytest.mark.parametrize("msg", ["yes, go ahead now", "ok do it now", "sure, I know",
                                      "Go, nothing else to check", "okay, notify them"])
    def test_no_inside_other_words_is_not_a_rejection(self, msg):
        assert is_confirmation(msg) is True

    @pytest.mark.parametrize("msg", ["no, not now", "stop, I didn't know that", "nope. cannot"])
    def test_yes_inside_other_words_is_not_a_confirmation(self, msg):
        assert is_confirmation(msg) is False

    @pytest.mark.parametrize("msg", ["yes... no, wait", "no, go ahead", "don't do it"])
    def test_both_yes_and_no_is_ambiguous(self, msg):
        assert is_confirmation(msg) is None


class TestDecisionFor:
    APPROVAL = {"approveText": "Ship it", "rejectText": "Hold on"}

    def test_button_labels(self):
        assert decision_for("Ship it", self.APPROVAL) is True
        # "Hold on" contains no keyword at all.
        assert decision_for("Hold on", self.APPROVAL) is False

    def test_falls_back_to_keywords(self):
        assert decision_for("yes please", self.APPROVAL) is True
        assert decision_for("why?", self.APPROVAL) is None
        assert decision_for("no", None) is False


# ---------------------------------------------------------------------------
# denials
# ---------------------------------------------------------------------------

def _values(*tool_calls, node_id="operator") -> dict:
    return {
        "messages": [HumanMessage(content="q"), calls(*tool_calls)],
        "uiState": {"approval": {"nodeId": node_id, "toolCalls": list(tool_calls)}},
    }


class TestDenials:
    def test_pending_from_ui_state(self):
        values = _values(tool_call("close_ticket", "c1"))
        assert [tc["id"] for tc in pending_tool_calls(values)] == ["c1"]

    def test_pending_falls_back_to_last_ai_message(self):
        values = {"messages": [calls(tool_call("a", "c1")), AIMessage(content="x")]}
        assert [tc["id"] for tc in pending_tool_calls(values)] == ["c1"]
        assert pending_tool_calls({"messages": []}) == []

    def test_one_denial_per_call(self):
        values = _values(tool_call("close_ticket", "c1"), tool_call("escalate_ticket", "c2"))
        denials = build_denial_messages(values)

        assert [d.tool_call_id for d in denials] == ["c1", "c2"]
        assert all(isinstance(d, ToolMessage) for d in denials)
        first = denials[0]
        assert first.name == "close_ticket"
        assert first.content.startswith("Tool close_ticket call denied by user.")
        assert first.additional_kwargs == {"nodeId": "operator", DENIED_KEY: True, "type": TOOL_RESPONSE_TYPE}

    def test_nothing_pending(self):
        assert build_denial_messages({"messages": []}) == []

    def test_default_mcp_servers(self):
        server = default_mcp_servers()["seqflow-demo"]
        assert server["transport"] == "stdio"
        assert server["args"] == ["mcp_server.py"]


# ---------------------------------------------------------------------------
# FlowSession
# ---------------------------------------------------------------------------

def _approval_flow(tools, model) -> FlowGraph:
    flow = FlowGraph(default_model=model)
    flow.add_start()
    flow.add_agent(AgentConfig(
        node_id="operator", name="Operator", tools=tools, interrupt=True,
        approval_prompt="Run {tools}?", approve_text="Ship it", reject_text="Hold on",
    ))
    flow.add_end()
    flow.add_edge("start", "operator").add_edge("operator", "end")
    return flow


@pytest.fixture
async def make_session(stub_tools):
    sessions = []

    async def factory(model):
        session = FlowSession(lambda tools, m: _approval_flow(stub_tools, m), model=model, in_memory=True)
        await session.start()
        sessions.append(session)
        return session

    yield factory
    for session in sessions:
        await session.stop()


class TestFlowSession:
    async def test_plain_turn(self, make_session, scripted, session_id):
        session = await make_session(scripted("Hello!"))
        response = await session.chat(session_id, "hi")
        assert response == {"content": "Hello!", "interrupted": False, "pending_action": None}
        assert await session.is_interrupted(session_id) is False
        assert await session.get_pending_action(session_id) is None

    async def test_tool_call_pauses(self, make_session, scripted, session_id):
        session = await make_session(scripted(calls(tool_call("echo", "c1", text="x"))))
        response = await session.chat(session_id, "echo x")

        assert response["interrupted"] is True
        assert response["content"].startswith("Run [")
        assert response["pending_action"]["toolNode"] == "tool_operator"
        assert await session.is_interrupted(session_id) is True
        pending = await session.get_pending_action(session_id)
        assert pending["toolCalls"][0]["id"] == "c1"

    async def test_approve_by_button_label(self, make_session, scripted, session_id):
        session = await make_session(scripted(calls(tool_call("echo", "c1", text="x")), "Echoed x."))
        await session.chat(session_id, "echo x")

        response = await session.chat(session_id, "Ship it")

        assert response == {"content": "Echoed x.", "interrupted": False, "pending_action": None}
        state = await session.get_state(session_id)
        assert [m.content for m in state.values["messages"] if isinstance(m, ToolMessage)] == ["echo: x"]

    async def test_reject(self, make_session, scripted, session_id):
        model = scripted(calls(tool_call("echo", "c1", text="x")), "Okay, cancelled.")
        session = await make_session(model)
        await session.chat(session_id, "echo x")

        response = await session.decide(session_id, approved=False)

        assert response["content"] == "Okay, cancelled."
        assert response["interrupted"] is False
        denial = model.received[1][-1]
        assert isinstance(denial, ToolMessage)
        assert denial.additional_kwargs[DENIED_KEY] is True
        assert denial.tool_call_id == "c1"

    async def test_ambiguous_reply_starts_new_run(self, make_session, scripted, session_id):
        model = scripted(calls(tool_call("echo", "c1", text="x")), "It repeats your text.")
        session = await make_session(model)
        await session.chat(session_id, "echo x")

        response = await session.chat(session_id, "what does echo do?")

        # The agent still wants the tool, so the thread pauses again.
        assert response["interrupted"] is True
        assert response["pending_action"]["toolCalls"][0]["id"] != "c1"
        assert model.received[1][-1].content == "what does echo do?"

    async def test_history_hides_tool_traffic(self, make_session, scripted, session_id):
        session = await make_session(scripted(calls(tool_call("echo", "c1", text="x")), "Echoed x."))
        await session.chat(session_id, "echo x")
        await session.chat(session_id, "yes")

        assert await session.get_history(session_id) == [
            {"role": "user", "content": "echo x"},
            {"role": "assistant", "content": "Echoed x."},
        ]

    async def test_decide_without_pending(self, make_session, scripted, session_id):
        session = await make_session(scripted("Hello!"))
        await session.chat(session_id, "hi")
        response = await session.decide(session_id, approved=True)
        assert response == {"content": "There is no pending action.", "interrupted": False, "pending_action": None}
