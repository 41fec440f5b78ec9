"""
Interactive CLI Demo
=====================
Try the sequential helpdesk flow (flows.py) in your terminal.

Usage:
    python demo.py

Suggested conversations to test each pattern:

  ReAct loop (support agent calls read-only tools on its own):
    "How do I reset my password?"
    "How many tickets are open right now?"

  Condition routing (answer mentions a ticket → operator agent):
    "What's going on with ticket TCK-2?"

  Approval (interrupt + resume):
    "Please escalate TCK-2, the customer was double charged"   ← operator pauses
    "yes"                                                       ← resumes and runs the tool
    (or "no" to deny — the operator acknowledges the denial)

Set FLOW_DSPY_APPROVALS=1 to have DSPy phrase the approval questions.
"""
import asyncio
import logging
import os
import uuid

from flows import build_demo_flow
from seqflow import FlowSession
from seqflow.approval import DspyApprovalComposer
from seqflow.providers import configure_dspy
from seqflow.session import default_mcp_servers


def _flow_builder():
    composer = None
    if os.getenv("FLOW_DSPY_APPROVALS"):
        configure_dspy()
        composer = DspyApprovalComposer()
    return lambda tools, model: build_demo_flow(tools, model, composer=composer)


async def main():
    logging.basicConfig(level=os.getenv("LOG_LEVEL", "WARNING"))

    print("\n" + "=" * 60)
    print("  Helpdesk Assistant")
    print("  Sequential agents + approval + MCP demo")
    print("=" * 60)
    print("\nTickets:  TCK-1 (open)  TCK-2 (pending, high)  TCK-3 (closed)")
    print("Articles: KB-100 passwords  KB-101 refunds  KB-102 exports")
    print("\nType 'quit' to exit, 'new' to start a fresh session.\n")

    # in_memory=True: demo sessions leave no checkpoint file behind.
    # Remove this flag (or set in_memory=False) to persist conversations to SQLite.
    session    = FlowSession(_flow_builder(), in_memory=True, mcp_servers=default_mcp_servers())
    await session.start()
    session_id = str(uuid.uuid4())

    print(f"Session: {session_id[:8]}...\n")
    print("Assistant: Hi! Ask me about an article or a ticket.\n")

    try:
        while True:
            try:
                user_input = input("You: ").strip()
            except (EOFError, KeyboardInterrupt):
                print("\n\nGoodbye!")
                break

            if not user_input:
                continue

            if user_input.lower() == "quit":
                print("\nAssistant: Goodbye!")
                break

            if user_input.lower() == "new":
                session_id = str(uuid.uuid4())
                print(f"\n[New session: {session_id[:8]}...]\n")
                continue

            print("\nAssistant: ", end="", flush=True)
            response = await session.chat(session_id, user_input)

            for line in response["content"].split("\n"):
                print(line)

            if response.get("interrupted"):
                pending = response.get("pending_action") or {}
                calls = ", ".join(tc["name"] for tc in pending.get("toolCalls", []))
                print("\n  [⚡ Paused — waiting for your approval]")
                print(f"  [Pending: {calls or '?'} — reply "
                      f"'{pending.get('approveText', 'Yes')}' or '{pending.get('rejectText', 'No')}']")

            print()

    finally:
        await session.stop()


if __name__ == "__main__":
    asyncio.run(main())
