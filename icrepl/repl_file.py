from __future__ import annotations
import os
from typing import Optional, Dict, Any

from icrepl.repl_datatypes import Value, ServiceType, FuncType, ReplError, ParseError
from icrepl.repl_serialize import deserialize, serialize, detect_format, to_tagged
# NOTE: the parser and Printer are imported lazily in functions
# to avoid circular import during module load.


def resolve_path(path: str, base_dir: Optional[str]) -> str:
    """Absolute and `~` paths stand alone; anything else is relative to the script directory."""
    if path.startswith("~"):
        return os.path.expanduser(path)
    if os.path.isabs(path):
        return os.path.normpath(path)
    base = base_dir or os.getcwd()
    return os.path.normpath(os.path.join(base, path))


def read_blob(path: str) -> bytes:
    try:
        with open(path, "rb") as f:
            return f.read()
    except OSError as e:
        raise ReplError(f"cannot read {path}: {e.strerror}") from None


def read_script(path: str) -> str:
    try:
        with open(path, "r", encoding="utf-8") as f:
            src = f.read()
    except OSError as e:
        raise ReplError(f"cannot read {path}: {e.strerror}") from None
    # Drop a shebang line but keep its newline so line numbers still match.
    if src.startswith("#!"):
        src = src[src.find("\n"):] if "\n" in src else ""
    return src


def _method_type(name: str, spec: Any) -> FuncType:
    from icrepl.repl_parser import parse_type
    match spec:
        case str():
            ty = parse_type(spec if spec.lstrip().startswith("func") else f"func {spec}")
            if not isinstance(ty, FuncType):
                raise ParseError(f"method {name}: expected a function type, got {ty}")
            return ty
        case dict():
            args = tuple(parse_type(t) for t in spec.get("args") or [])
            rets = tuple(parse_type(t) for t in spec.get("rets") or [])
            modes = tuple(spec.get("modes") or [])
            return FuncType(args, rets, modes)
    raise ParseError(f"method {name}: expected a signature string or mapping")


def load_interface(path: str) -> ServiceType:
    """Read an interface file.

    ```yaml
    methods:
      greet: {args: [text], rets: [text], modes: [query]}
      inc: "(nat) -> (nat)"
    ```
    """
    data = deserialize(read_blob(path), fmt=detect_format(path) or 'yaml')
    if not isinstance(data, dict) or not isinstance(data.get("methods"), dict):
        raise ParseError(f"{path}: interface must have a 'methods' mapping")
    return ServiceType(tuple((str(n), _method_type(n, s)) for n, s in data["methods"].items()))


def export_bindings(path: str, bindings: Dict[str, Value]):
    """Write bindings as `let` commands, or in tagged form for .json/.yaml targets."""
    os.makedirs(os.path.dirname(path) or ".", exist_ok=True)
    fmt = detect_format(path)
    if fmt is not None:
        text = serialize({name: to_tagged(v) for name, v in bindings.items()}, fmt=fmt)
    else:
        from icrepl.repl_printer import Printer
        p = Printer()
        text = "".join(f"let {name} = {p.pformat(v)};\n" for name, v in bindings.items())
    with open(path, "w", encoding="utf-8") as f:
        f.write(text)
