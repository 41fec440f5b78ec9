"""
Approval Prompt (DSPy)
======================
Writes the question shown to a human before an agent's tool calls run.

Two ways to get the text:
  - format_approval_prompt() — fills `{tools}` in the configured prompt with
    the JSON tool calls. No model call. This is the default.
  - DspyApprovalComposer — asks the configured DSPy LM to phrase the
    request, using the configured prompt as instructions. Useful when the
    raw tool-call JSON would be meaningless to an end user.

dspy.Predict (not ChainOfThought): the composer sits between the model's
tool call and the UI event, so latency matters more than reasoning depth.
If the composer fails, the caller falls back to format_approval_prompt().
"""
import asyncio
import json
from typing import Protocol, runtime_checkable

import dspy

DEFAULT_APPROVAL_PROMPT = "You are about to execute tool: {tools}. Ask if user want to proceed"
DEFAULT_APPROVE_TEXT = "Yes"
DEFAULT_REJECT_TEXT = "No"


def tool_calls_json(tool_calls: list[dict]) -> str:
    return json.dumps(
        [{"name": tc.get("name"), "args": tc.get("args", {}), "id": tc.get("id")} for tc in tool_calls],
        default=str,
    )


def format_approval_prompt(template: str | None, tool_calls: list[dict]) -> str:
    return (template or DEFAULT_APPROVAL_PROMPT).replace("{tools}", tool_calls_json(tool_calls))


@runtime_checkable
class ApprovalComposer(Protocol):
    async def compose(self, instructions: str, tool_calls: list[dict]) -> str: ...


class ComposeApprovalRequest(dspy.Signature):
    """
    Write a short message asking the user to approve the tool calls an
    assistant wants to make. Describe in plain words what each call will do
    with its arguments. Do not invent details. End with a yes/no question.
    """
    guidance:     str = dspy.InputField(desc="Operator guidance for the approval request")
    tool_calls:   str = dspy.InputField(desc="JSON list of {name, args, id} tool calls awaiting approval")

    message: str = dspy.OutputField(desc="The approval request shown to the user")


class DspyApprovalComposer:
    """Lazy dspy.Predict wrapper; the Predict instance is created on first use."""

    def __init__(self):
        self._predict: dspy.Predict | None = None

    def _get_predict(self) -> dspy.Predict:
        if self._predict is None:
            self._predict = dspy.Predict(ComposeApprovalRequest)
        return self._predict

    def forward(self, instructions: str, tool_calls: list[dict]) -> str:
        result = self._get_predict()(
            guidance=format_approval_prompt(instructions, tool_calls),
            tool_calls=tool_calls_json(tool_calls),
        )
        return result.message.strip()

    async def compose(self, instructions: str, tool_calls: list[dict]) -> str:
        return await asyncio.to_thread(self.forward, instructions, tool_calls)
