import os

import pytest

from icrepl.repl_file import resolve_path, read_blob, read_script, load_interface, export_bindings
from icrepl.repl_datatypes import (
    Text, Number, Integer, FuncType, PrimType, ReplError, ParseError,
)


def test_resolve_path(tmp_path):
    base = str(tmp_path)
    assert resolve_path("a/../b.sh", base) == os.path.join(base, "b.sh")
    assert resolve_path("/etc/./hosts", base) == "/etc/hosts"
    assert resolve_path("~/x", base) == os.path.expanduser("~/x")
    assert resolve_path("c.sh", None) == os.path.join(os.getcwd(), "c.sh")


def test_read_blob_and_missing_files(tmp_path):
    p = tmp_path / "f.bin"
    p.write_bytes(b"\x01\x02")
    assert read_blob(str(p)) == b"\x01\x02"
    with pytest.raises(ReplError, match="cannot read"):
        read_blob(str(tmp_path / "nope"))


def test_read_script_strips_shebang_but_keeps_line_numbers(tmp_path):
    p = tmp_path / "s.sh"
    p.write_text("#!/usr/bin/env icrepl\nlet a = 1;\n")
    assert read_script(str(p)) == "\nlet a = 1;\n"
    p.write_text("#!/usr/bin/env icrepl")
    assert read_script(str(p)) == ""


def test_load_interface_accepts_strings_and_mappings(tmp_path):
    p = tmp_path / "svc.json"
    p.write_text('{"methods": {"get": "(text) -> (opt nat) query", "put": {"args": ["text", "nat"]}}}')
    svc = load_interface(str(p))
    assert svc.method("get").modes == ("query",)
    assert svc.method("get").args == (PrimType("text"),)
    assert svc.method("put") == FuncType((PrimType("text"), PrimType("nat")), (), ())


@pytest.mark.parametrize("content", [
    "methods: 3",
    "[]",
    "methods:\n  m: 5",
    "methods:\n  m: \"nat\"",
])
def test_load_interface_rejects_bad_files(tmp_path, content):
    p = tmp_path / "bad.yaml"
    p.write_text(content)
    with pytest.raises(ParseError):
        load_interface(str(p))


def test_export_bindings_as_script(tmp_path):
    path = tmp_path / "out.sh"
    export_bindings(str(path), {"a": Number.of(1), "s": Text("x")})
    assert path.read_text() == 'let a = 1;\nlet s = "x";\n'


def test_export_bindings_as_yaml(tmp_path):
    path = tmp_path / "out.yaml"
    export_bindings(str(path), {"n": Integer(3, "nat16")})
    assert path.read_text() == "n:\n  nat16: '3'\n"
