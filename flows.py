"""
Demo Flow: Helpdesk Assistant
=============================
A sequential flow over the tools in mcp_server.py.

    START
      │
      ▼
    start ──► support ──► triage ──┬─ "Ticket" ─► operator ──► end
              (ReAct,              │              (approval)
               read-only tools)    └─ "End" ────────────────► end

  support   answers from the knowledge base and ticket lookups, running its
            own ReAct loop; it records its answer in state.lastAnswer
  triage    routes to the operator when the answer mentions a ticket id
  operator  may escalate or close the ticket — every call pauses the thread
            until the user approves or rejects it

Either agent degrades to a plain model call when no MCP tools are loaded.
"""
from seqflow import AgentConfig, FlowGraph, StateField, StateUpdateConfig, StateUpdateRow
from seqflow.approval import ApprovalComposer

READ_ONLY_TOOLS = frozenset({"search_articles", "get_ticket", "ticket_chart"})
WRITE_TOOLS     = frozenset({"escalate_ticket", "close_ticket"})

SUPPORT_PROMPT = """You are the helpdesk support assistant for {product}.

Answer from the knowledge base (search_articles) and ticket records (get_ticket).
Use ticket_chart when asked about ticket volumes.
Always mention the ticket id (e.g. TCK-1) when the user's request concerns a ticket.
Keep answers short and cite article ids."""

OPERATOR_PROMPT = """You are the helpdesk operator.

If the conversation shows the user wants a ticket escalated or closed, call
escalate_ticket or close_ticket with a one-sentence reason or resolution.
Otherwise confirm there is nothing to do.
Previous answer: {previous}"""


def build_demo_flow(tools: list, model, composer: ApprovalComposer | None = None) -> FlowGraph:
    """Build (not compile) the helpdesk flow; FlowSession compiles it."""
    flow = FlowGraph(
        state_fields=[
            StateField("lastAnswer", ""),
            StateField("actions", [], "append"),
        ],
        approval_composer=composer,
        default_model=model,
        chatflow_id="helpdesk-demo",
    )

    flow.add_start("start")
    flow.add_agent(AgentConfig(
        node_id="support",
        name="Support",
        system_prompt=SUPPORT_PROMPT,
        prompt_values={"product": "ShopEasy"},
        tools=[t for t in tools if t.name in READ_ONLY_TOOLS],
        update_state=StateUpdateConfig(
            rows=[StateUpdateRow(key="lastAnswer", value="$flow.output.content")],
        ),
    ))
    flow.add_condition(
        "triage",
        rules=[{"variable": "$flow.output", "operation": "Contains", "value": "TCK-", "output": "Ticket"}],
        default_output="End",
    )
    flow.add_agent(AgentConfig(
        node_id="operator",
        name="Operator",
        system_prompt=OPERATOR_PROMPT,
        prompt_values={"previous": "$flow.state.lastAnswer"},
        tools=[t for t in tools if t.name in WRITE_TOOLS],
        interrupt=True,
        approval_prompt="I'm about to run: {tools}. Shall I proceed?",
        update_state=StateUpdateConfig(
            mode="code",
            code="""
used = $flow.output.get("usedTools", [])
return {"actions": [u["tool"] for u in used]}
""",
        ),
    ))
    flow.add_end("end")

    flow.add_edge("start", "support")
    flow.add_edge("support", "triage")
    flow.add_branches("triage", {"Ticket": "operator", "End": "end"})
    flow.add_edge("operator", "end")
    return flow
