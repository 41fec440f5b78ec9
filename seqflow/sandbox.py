"""
Script Sandbox
==============
Runs the user-written "update state" snippets without handing them a real
Python interpreter.

A script is a function body:

    summary = $flow.output.content[:200]
    if $vars.verbose:
        return {"summary": $flow.output.content}
    return {"summary": summary, "turns": len($flow.state.history)}

`$flow` and `$vars` are accepted as spellings of the `flow` / `vars`
bindings. The body is parsed with `ast`, and only a small statement set is
walked:

    name = <expr>         single-name assignment
    if / else             test evaluated, branch walked
    return <expr>         ends the script
    <expr>                evaluated for its value, discarded
    pass

Every expression is handed to simpleeval's EvalWithCompoundTypes with an
explicit function allow-list. There is no import, no attribute access to
dunder names, and no filesystem or network access. Anything outside the
statement set raises ScriptError before a single line runs.
"""
import ast
import logging
import re
import textwrap
from typing import Any, Mapping, Protocol, runtime_checkable

from simpleeval import EvalWithCompoundTypes, InvalidExpression

from .errors import ScriptError

logger = logging.getLogger(__name__)

_DOLLAR_BINDING = re.compile(r"\$(flow|vars)\b")

_WRAPPER_NAME = "__update_state__"

SAFE_FUNCTIONS = {
    "len": len, "str": str, "int": int, "float": float, "bool": bool,
    "abs": abs, "min": min, "max": max, "sum": sum, "round": round,
    "any": any, "all": all, "sorted": sorted, "list": list, "dict": dict,
    "set": set, "tuple": tuple, "range": range, "enumerate": enumerate,
    "zip": zip,
}

SAFE_NAMES = {
    "True": True, "False": False, "None": None,
    "true": True, "false": False, "null": None,
}

_ALLOWED_STATEMENTS = (ast.Assign, ast.Return, ast.Expr, ast.If, ast.Pass)


@runtime_checkable
class ScriptRunner(Protocol):
    async def run(self, script: str, bindings: Mapping[str, Any]) -> Any: ...


class _Return(Exception):
    def __init__(self, value: Any):
        self.value = value


def _check(statements: list[ast.stmt]) -> None:
    for stmt in statements:
        if not isinstance(stmt, _ALLOWED_STATEMENTS):
            raise ScriptError(
                f"Unsupported statement on line {stmt.lineno - 1}: {type(stmt).__name__}"
            )
        if isinstance(stmt, ast.Assign):
            if len(stmt.targets) != 1 or not isinstance(stmt.targets[0], ast.Name):
                raise ScriptError(f"Only single-name assignment is allowed (line {stmt.lineno - 1})")
        if isinstance(stmt, ast.If):
            _check(stmt.body)
            _check(stmt.orelse)


def parse_script(script: str) -> tuple[str, list[ast.stmt]]:
    """Return the wrapped source and the validated body statements."""
    body = _DOLLAR_BINDING.sub(r"\1", textwrap.dedent(script or "")).strip("\n")
    if not body.strip():
        body = "pass"
    source = f"def {_WRAPPER_NAME}():\n" + textwrap.indent(body, "    ")

    try:
        module = ast.parse(source)
    except SyntaxError as exc:
        raise ScriptError(f"Invalid script: {exc.msg} (line {(exc.lineno or 1) - 1})") from exc

    statements = module.body[0].body
    _check(statements)
    return source, statements


class SimpleEvalScriptRunner:
    """
    ScriptRunner backed by simpleeval.

    Args:
        functions: extra callables exposed to scripts, merged over
                   SAFE_FUNCTIONS.
    """

    def __init__(self, functions: Mapping[str, Any] | None = None):
        self._functions = {**SAFE_FUNCTIONS, **(functions or {})}

    async def run(self, script: str, bindings: Mapping[str, Any]) -> Any:
        source, statements = parse_script(script)
        evaluator = EvalWithCompoundTypes(
            names={**SAFE_NAMES, **bindings},
            functions=self._functions,
        )
        try:
            self._walk(statements, source, evaluator)
        except _Return as ret:
            return ret.value
        return None

    def _eval(self, node: ast.expr, source: str, evaluator: EvalWithCompoundTypes) -> Any:
        segment = ast.get_source_segment(source, node)
        try:
            return evaluator.eval(segment)
        except InvalidExpression as exc:
            raise ScriptError(f"Script error on line {node.lineno - 1}: {exc}") from exc
        except Exception as exc:
            raise ScriptError(
                f"Script error on line {node.lineno - 1}: {type(exc).__name__}: {exc}"
            ) from exc

    def _walk(self, statements: list[ast.stmt], source: str, evaluator: EvalWithCompoundTypes) -> None:
        for stmt in statements:
            if isinstance(stmt, ast.Assign):
                evaluator.names[stmt.targets[0].id] = self._eval(stmt.value, source, evaluator)
            elif isinstance(stmt, ast.Return):
                value = None if stmt.value is None else self._eval(stmt.value, source, evaluator)
                raise _Return(value)
            elif isinstance(stmt, ast.Expr):
                self._eval(stmt.value, source, evaluator)
            elif isinstance(stmt, ast.If):
                branch = stmt.body if self._eval(stmt.test, source, evaluator) else stmt.orelse
                self._walk(branch, source, evaluator)
