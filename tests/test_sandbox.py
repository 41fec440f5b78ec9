"""
Tests for seqflow/sandbox.py
============================
The update-state script runner: what it evaluates, and what it refuses.
"""
import pytest

from seqflow.errors import ScriptError
from seqflow.sandbox import SAFE_FUNCTIONS, SimpleEvalScriptRunner, parse_script


@pytest.fixture
def runner() -> SimpleEvalScriptRunner:
    return SimpleEvalScriptRunner()


@pytest.fixture
def bindings() -> dict:
    flow = {
        "input": "refund please",
        "output": {"content": "Refund issued", "usedTools": [{"tool": "refund"}]},
        "state": {"count": 2},
        "vars": {"tier": "gold"},
    }
    return {"flow": flow, "vars": flow["vars"]}


class TestEvaluation:
    async def test_return_dict(self, runner, bindings):
        assert await runner.run('return {"summary": $flow.output.content}', bindings) == {"summary": "Refund issued"}

    async def test_assignments_and_names(self, runner, bindings):
        script = """
n = $flow.state.count + 1
label = $vars.tier.upper()
return {"count": n, "label": label}
"""
        assert await runner.run(script, bindings) == {"count": 3, "label": "GOLD"}

    async def test_if_else(self, runner, bindings):
        script = """
if "refund" in $flow.input:
    return {"intent": "refund"}
else:
    return {"intent": "other"}
"""
        assert await runner.run(script, bindings) == {"intent": "refund"}

    async def test_comprehension_and_safe_functions(self, runner, bindings):
        script = 'return {"tools": [u["tool"] for u in $flow.output.usedTools], "n": len($flow.output.usedTools)}'
        assert await runner.run(script, bindings) == {"tools": ["refund"], "n": 1}

    async def test_no_return_gives_none(self, runner, bindings):
        assert await runner.run("x = 1", bindings) is None

    async def test_empty_script_gives_none(self, runner, bindings):
        assert await runner.run("", bindings) is None

    async def test_extra_functions(self, bindings):
        runner = SimpleEvalScriptRunner(functions={"double": lambda x: x * 2})
        assert await runner.run('return {"v": double($flow.state.count)}', bindings) == {"v": 4}

    async def test_every_safe_function_runs(self, runner, bindings):
        script = """
return {
    "sorted": sorted([2, 1]),
    "pairs": list(zip([1], ["a"])),
    "indexed": list(enumerate(["x"])),
    "span": list(range(2)),
    "numbers": [abs(-1), min(3, 4), max(3, 4), sum([1, 2]), round(2.4)],
    "checks": [any([0, 1]), all([1, 1]), bool(0)],
    "kinds": [str(1), int("2"), float("1.5"), tuple([1]), set([1]), dict(a=1)],
}
"""
        result = await runner.run(script, bindings)
        assert result["sorted"] == [1, 2]
        assert result["pairs"] == [(1, "a")]
        assert result["indexed"] == [(0, "x")]
        assert result["span"] == [0, 1]
        assert result["numbers"] == [1, 3, 4, 3, 2]
        assert result["checks"] == [True, True, False]
        assert result["kinds"] == ["1", 2, 1.5, (1,), {1}, {"a": 1}]

    async def test_json_style_literals(self, runner, bindings):
        assert await runner.run('return {"a": true, "b": null}', bindings) == {"a": True, "b": None}


class TestRestrictions:
    @pytest.mark.parametrize("script", [
        "import os",
        "for x in [1]:\n    pass",
        "while True:\n    pass",
        "def f():\n    return 1",
        "a.b = 1",
        "x += 1",
        "with open('f') as fh:\n    pass",
    ])
    def test_statement_not_allowed(self, script):
        with pytest.raises(ScriptError):
            parse_script(script)

    async def test_dunder_access_refused(self, runner, bindings):
        with pytest.raises(ScriptError):
            await runner.run("return $flow.__class__", bindings)

    async def test_unknown_function_refused(self, runner, bindings):
        with pytest.raises(ScriptError):
            await runner.run('return open("/etc/passwd")', bindings)

    @pytest.mark.parametrize("name", ["isinstance", "type", "getattr", "eval"])
    async def test_introspection_builtins_not_exposed(self, runner, bindings, name):
        assert name not in SAFE_FUNCTIONS
        with pytest.raises(ScriptError):
            await runner.run(f"return {name}($flow.input)", bindings)

    async def test_syntax_error_reports_line(self, runner, bindings):
        with pytest.raises(ScriptError, match="line"):
            await runner.run("x = = 1", bindings)

    async def test_runtime_error_reports_line(self, runner, bindings):
        with pytest.raises(ScriptError, match="line 2"):
            await runner.run("x = 1\ny = 1 / 0", bindings)
