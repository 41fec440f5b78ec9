"""
Errors
======
Every failure the engine raises derives from FlowError so the graph runtime
can surface it to the run as a whole.

  ConfigurationError  — the flow is wired or configured wrongly. Raised at
                        build time or node entry; never silently defaulted.
  ExecutionError      — something failed while the run was in progress
                        (model call, tool, iteration cap, cancellation).

Nothing here is retried inside the engine. Retry policy, if any, belongs to
the model or tool provider.
"""


class FlowError(Exception):
    """Base class for all errors raised by seqflow."""


# ── Configuration errors ────────────────────────────────────────────────────

class ConfigurationError(FlowError):
    pass


class ToolNotFoundError(ConfigurationError):
    def __init__(self, tool_name: str):
        super().__init__(f"Tool {tool_name} not found.")
        self.tool_name = tool_name


class MissingKeyError(ConfigurationError):
    pass


class InvalidReturnTypeError(ConfigurationError):
    pass


class ScriptError(ConfigurationError):
    pass


# ── Execution errors ────────────────────────────────────────────────────────

class ExecutionError(FlowError):
    pass


class ToolExecutionError(ExecutionError):
    pass


class IterationLimitError(ExecutionError):
    def __init__(self, max_iterations: int):
        super().__init__(f"Agent stopped due to max iterations ({max_iterations}).")
        self.max_iterations = max_iterations


class FlowCancelledError(ExecutionError):
    def __init__(self, message: str = "Aborted!"):
        super().__init__(message)


class NodeExecutionError(ExecutionError):
    """Wraps an unexpected exception raised inside a node."""

    def __init__(self, node_id: str, cause: BaseException):
        super().__init__(f"Agent node error: {cause}")
        self.node_id = node_id
