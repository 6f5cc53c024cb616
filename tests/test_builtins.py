import pytest

from icrepl.repl_runtime import ScriptRunner, render_primitive
from icrepl.repl_datatypes import (
    Bool, Null, Text, Blob, Number, Integer, Float, Vec, Principal, KindError,
)


async def run_script(src: str, **kw):
    runner = ScriptRunner(**kw)
    return await runner.handle_script(src)


def assert_ok(res, expected=None):
    assert res.status == 'success', res.error_message
    if expected is not None:
        assert res.value == expected


def assert_error(res, contains: str | None = None):
    assert res.status == 'error', f"expected error, got success: {res.value!r}"
    if contains is not None:
        assert contains in (res.error_message or ""), f"error did not contain {contains!r}: {res.error_message!r}"


# --- arithmetic ---

@pytest.mark.asyncio
@pytest.mark.parametrize("src, expected", [
    ("add(1, 2)", Number.of(3)),
    ("sub(1, 5)", Number.of(-4)),
    ("mul(-3, 4)", Number.of(-12)),
    ("div(7, 2)", Number.of(3)),
    ("div(-7, 2)", Number.of(-3)),
    ("div(7, -2)", Number.of(-3)),
    ("add((1 : nat8), 2)", Number.of(3)),
    ("add(1, 0.5)", Float(1.5)),
    ("div(1, 4.0)", Float(0.25)),
])
async def test_arithmetic(src, expected):
    assert_ok(await run_script(src), expected)


@pytest.mark.asyncio
async def test_arithmetic_errors():
    assert_error(await run_script("div(1, 0)"), "RangeError: division by zero")
    assert_error(await run_script("div(1.0, 0)"), "RangeError: division by zero")
    assert_error(await run_script('add(1, "2")'), "add expects numbers, got text")
    assert_error(await run_script("add(1)"), "TypeError: add:")


# --- logic and comparison ---

@pytest.mark.asyncio
async def test_logic():
    assert_ok(await run_script("and(true, false)"), Bool(False))
    assert_ok(await run_script("or(true, false)"), Bool(True))
    assert_ok(await run_script("not(false)"), Bool(True))
    assert_error(await run_script("and(true, 1)"), "and expects booleans, got number")


@pytest.mark.asyncio
async def test_ite_only_evaluates_the_chosen_branch():
    assert_ok(await run_script("ite(true, 1, div(1, 0))"), Number.of(1))
    assert_ok(await run_script("ite(false, undefined_name, 2)"), Number.of(2))
    assert_error(await run_script("ite(1, 2, 3)"), "ite condition is not a boolean")


@pytest.mark.asyncio
async def test_eq_is_kind_strict():
    assert_ok(await run_script("eq(1, 1)"), Bool(True))
    assert_ok(await run_script("neq((1 : nat), (2 : nat))"), Bool(True))
    assert_error(await run_script("eq(1, (1 : nat))"), "eq expects operands of the same kind, got number and nat")


@pytest.mark.asyncio
async def test_ordering():
    assert_ok(await run_script("lt((1 : nat8), 2)"), Bool(True))
    assert_ok(await run_script("gte(2.5, 2)"), Bool(True))
    assert_error(await run_script('lt("a", "b")'), "cannot compare text")


# --- exist / fail ---

@pytest.mark.asyncio
async def test_exist():
    assert_ok(await run_script("let r = record { a = 1 }; exist(r.a)"), Bool(True))
    assert_ok(await run_script("let r = record { a = 1 }; exist(r.b)"), Bool(False))
    assert_ok(await run_script("exist(nothing_bound_here)"), Bool(False))
    # unsupported casts are absorbed too
    assert_ok(await run_script("exist((record {} : record {}))"), Bool(False))


@pytest.mark.asyncio
async def test_fail():
    assert_ok(await run_script("fail(div(1, 0))"), Text("division by zero"))
    assert_error(await run_script("fail(add(1, 1))"), "UnexpectedSuccess: expected failure, got 2")


# --- text and collections ---

@pytest.mark.asyncio
async def test_stringify():
    src = 'stringify("n=", 3, " f=", 0.5, " ", true, " ", (7 : nat8), " ", principal "aaaaa-aa")'
    assert_ok(await run_script(src), Text("n=3 f=0.5 true 7 aaaaa-aa"))
    assert_ok(await run_script("stringify()"), Text(""))
    assert_error(await run_script("stringify(vec {})"), "cannot stringify vec")


def test_render_primitive_rejects_containers():
    assert render_primitive(Float(1.0)) == "1.0"
    assert render_primitive(Integer(3, "int8")) == "3"
    with pytest.raises(KindError):
        render_primitive(Null())


@pytest.mark.asyncio
async def test_concat():
    assert_ok(await run_script("concat(vec {1}, vec {2})"), Vec((Number.of(1), Number.of(2))))
    assert_ok(await run_script('concat("ab", "cd")'), Text("abcd"))
    assert_ok(await run_script('concat(blob "a", blob "\\00")'), Blob(b"a\x00"))
    assert_error(await run_script('concat("a", vec {})'), "cannot concat text and vec")


@pytest.mark.asyncio
async def test_file_reads_relative_to_source_dir(tmp_path):
    (tmp_path / "data.bin").write_bytes(b"\x00\x01hi")
    res = await run_script('file("data.bin")', source_dir=str(tmp_path))
    assert_ok(res, Blob(b"\x00\x01hi"))
    res = await run_script('file("missing.bin")', source_dir=str(tmp_path))
    assert_error(res, "cannot read")
    assert_error(await run_script("file(1)"), "file expects a text path")


@pytest.mark.asyncio
async def test_builtins_shadow_user_functions():
    src = """
    function add(a, b) { let _ = 0 };
    add(1, 2)
    """
    assert_ok(await run_script(src), Number.of(3))


@pytest.mark.asyncio
async def test_builtin_arity_is_reported():
    assert_error(await run_script("not(true, false)"), "not:")
