import pytest

from icrepl.repl_runtime import ScriptRunner
from icrepl.repl_interpreter import Evaluator
from icrepl.repl_parser import ScriptParser
from icrepl.repl_datatypes import (
    Label, Field, Bool, Null, Text, Number, Integer, Record, AssertionFailure,
)


async def run_script(src: str, **kw):
    runner = ScriptRunner()
    return await runner.handle_script(src, **kw)


def assert_ok(res, expected=None):
    assert res.status == 'success', res.error_message
    if expected is not None:
        assert res.value == expected


def assert_error(res, contains: str | None = None):
    assert res.status == 'error', f"expected error, got success: {res.value!r}"
    if contains is not None:
        assert contains in (res.error_message or ""), f"error did not contain {contains!r}: {res.error_message!r}"


# --- bindings and scope ---

@pytest.mark.asyncio
async def test_let_rebinding_and_show():
    assert_ok(await run_script("let a = 1; let a = add(a, 1); a"), Number.of(2))


@pytest.mark.asyncio
async def test_functions_see_caller_bindings():
    src = """
    function get_y() { let _ = y };
    function outer() { let y = "from outer"; let _ = get_y() };
    outer()
    """
    assert_ok(await run_script(src), Text("from outer"))


@pytest.mark.asyncio
async def test_function_bindings_do_not_leak():
    src = """
    function f(x) { let inner = x; let _ = x };
    f(1);
    inner
    """
    assert_error(await run_script(src), "UndefinedName: Undefined variable inner")


@pytest.mark.asyncio
async def test_failed_call_under_exist_pops_its_frame():
    runner = ScriptRunner()
    src = """
    let a = 1;
    5;
    function f() { let local = 2; let a = 3; let _ = div(1, 0) };
    let ok = exist(f());
    record { ok; a; _ }
    """
    res = await runner.handle_script(src)
    assert_ok(res, Record.tuple_of([Bool(False), Number.of(1), Number.of(5)]))
    assert runner.evaluator.call_stack == []
    assert len(runner.evaluator.env.frames) == 1
    assert_error(await runner.handle_script("local"), "UndefinedName: Undefined variable local")


@pytest.mark.asyncio
async def test_function_without_result_returns_null():
    src = """
    function f(x) { let y = x };
    f(1)
    """
    assert_ok(await run_script(src), Null())


@pytest.mark.asyncio
async def test_last_underscore_wins_and_shows_bind_it():
    src = """
    function f() { let _ = 1; 2 };
    f()
    """
    assert_ok(await run_script(src), Number.of(2))


@pytest.mark.asyncio
async def test_shows_inside_functions_do_not_print():
    runner = ScriptRunner()
    res = await runner.handle_script("function f() { 42 }; f()")
    assert_ok(res, Number.of(42))
    assert res.side_effects == [{'topics': ['stdout'], 'message': '42'}]


@pytest.mark.asyncio
async def test_function_arity_mismatch():
    assert_error(await run_script("function f(a, b) { let _ = a }; f(1)"), "f expects 2 argument(s), got 1")


@pytest.mark.asyncio
async def test_undefined_function():
    assert_error(await run_script("nope(1)"), "UndefinedName: Undefined function nope")


# --- control flow ---

@pytest.mark.asyncio
async def test_if_else_if_chain():
    src = """
    function sign(n) {
      if lt(n, 0) { let _ = "neg" } else if eq(n, 0) { let _ = "zero" } else { let _ = "pos" }
    };
    record { sign(-3); sign(0); sign(9) }
    """
    assert_ok(await run_script(src), Record.tuple_of([Text("neg"), Text("zero"), Text("pos")]))


@pytest.mark.asyncio
async def test_if_requires_a_boolean():
    assert_error(await run_script("if 1 { 2 }"), "if condition is not a boolean expression, got number")


@pytest.mark.asyncio
async def test_while_loop():
    src = """
    let i = 0;
    let total = 0;
    while lt(i, 5) { let total = add(total, i); let i = add(i, 1) };
    total
    """
    assert_ok(await run_script(src), Number.of(10))


@pytest.mark.asyncio
async def test_while_iteration_cap(monkeypatch):
    monkeypatch.setenv("ICREPL_MAX_LOOP_ITERS", "5")
    res = await run_script("let i = 0; while true { let i = add(i, 1) }")
    assert_error(res, "InternalError: while: iteration limit exceeded")


@pytest.mark.asyncio
async def test_deep_recursion_within_the_call_depth():
    src = """
    function count(n) { let _ = ite(eq(n, 0), 0, add(count(sub(n, 1)), 1)) };
    function fac(n) { if eq(n, 0) { let _ = 1 } else { let _ = mul(n, fac(sub(n, 1))) } };
    assert count(500) == 500;
    assert gt(fac(500), 0) == true;
    count(500)
    """
    assert_ok(await run_script(src), Number.of(500))


@pytest.mark.asyncio
async def test_call_depth_limit(monkeypatch):
    monkeypatch.setenv("ICREPL_MAX_CALL_DEPTH", "5")
    runner = ScriptRunner()
    assert_ok(await runner.handle_script(
        "function deep(n) { let _ = ite(eq(n, 0), 0, deep(sub(n, 1))) }; deep(4)"), Number.of(0))
    res = await runner.handle_script("deep(10)")
    assert_error(res, "CallDepthExceeded: deep: call depth exceeds 5")
    assert_ok(await runner.handle_script("exist(deep(10))"), Bool(False))
    assert runner.evaluator.call_stack == []


# --- assertions ---

@pytest.mark.asyncio
async def test_assert_operators():
    src = """
    assert record { a = 1; b = "hello" } ~= record { b = "ell" };
    assert (5 : nat8) ~= 5;
    assert 1 != 2;
    assert vec {1} == vec {1};
    """
    assert_ok(await run_script(src))


@pytest.mark.asyncio
async def test_assert_is_kind_strict():
    assert_error(await run_script("assert (5 : nat8) == 5"), "assertion failed: (5 : nat8) == 5")


@pytest.mark.asyncio
async def test_assertion_failure_keeps_both_sides():
    ev = Evaluator()
    commands = ScriptParser().parse('assert record { a = 1 } == record { a = 2 }')
    with pytest.raises(AssertionFailure) as ei:
        await ev.execute(commands)
    assert ei.value.op == "=="
    assert ei.value.left == Record((Field(Label.named("a"), Number.of(1)),))
    assert ei.value.right == Record((Field(Label.named("a"), Number.of(2)),))


# --- error reporting ---

@pytest.mark.asyncio
async def test_stacktrace_lists_active_calls():
    src = """
    function bad(r) { let _ = r.missing };
    function outer(x) { let _ = bad(record { a = x }) };
    outer(1)
    """
    res = await run_script(src)
    assert_error(res, "NoSuchField: record field missing not found")
    assert "stacktrace: (outer 1) (bad record { a = 1 })" in res.error_message


@pytest.mark.asyncio
async def test_runtime_error_token_points_at_the_command():
    res = await run_script("let a = 1;\nlet b = a.x;")
    assert_error(res, "cannot be applied to number")
    assert res.error_token['line'] == 2
    assert res.format_error().startswith("Error on line 2")


@pytest.mark.asyncio
async def test_parse_error_reports_position():
    res = await run_script("let a = 1;\nlet = 2")
    assert_error(res, "ParseError")
    assert res.error_token['line'] == 2
    assert "> 2 | let = 2" in res.error_message


@pytest.mark.asyncio
async def test_errors_are_also_side_effects():
    res = await run_script("1; nope")
    assert res.side_effects[0] == {'topics': ['stdout'], 'message': '1'}
    assert res.side_effects[-1]['topics'] == ['stderr']
    assert "Undefined variable nope" in res.side_effects[-1]['message']


# --- sessions ---

@pytest.mark.asyncio
async def test_state_persists_across_handle_script_calls():
    runner = ScriptRunner()
    assert_ok(await runner.handle_script("let a = 41"))
    assert_ok(await runner.handle_script("function inc(x) { let _ = add(x, 1) }"))
    res = await runner.handle_script("inc(a)")
    assert_ok(res, Number.of(42))
    assert res.side_effects == [{'topics': ['stdout'], 'message': '42'}]


@pytest.mark.asyncio
async def test_value_is_none_without_a_show():
    res = await run_script("let a = 1")
    assert_ok(res)
    assert res.value is None


@pytest.mark.asyncio
async def test_run_main():
    src = """
    let base = 10;
    function __main() { let _ = add(base, 1) };
    """
    assert_ok(await run_script(src, run_main=True), Number.of(11))
    res = await run_script(src)
    assert_ok(res)
    assert res.value is None


@pytest.mark.asyncio
async def test_typed_literal_chain():
    assert_ok(await run_script("((300 : nat16) : int64)"), Integer(300, "int64"))
    assert_error(await run_script("(300 : nat8)"), "RangeError: 300 does not fit in nat8")
    assert_ok(await run_script('("a" : text)'), Text("a"))


@pytest.mark.asyncio
async def test_unsupported_cast_is_reported_as_not_implemented():
    assert_error(await run_script("(record { a = 1 } : record { a : nat })"), "NotImplemented: casting to record")
