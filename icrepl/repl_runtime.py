# repl_runtime.py

import os
import inspect
import traceback
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, List, Optional, Literal, Dict

from icrepl.repl_datatypes import (
    Value, Bool, Text, Blob, Number, Integer, Float, Vec, Principal,
    FuncType, NUMERIC, ReplError, ParseError, KindError, RangeError, UnexpectedSuccess,
    as_int, as_float,
)
from icrepl.repl_compare import equal, same_kind, compare
from icrepl.repl_interpreter import Evaluator

# ===================================================================
# 1. Collaborator protocols
# ===================================================================

class Invoker(ABC):
    """Transport for outbound calls. Implementations raise CallError on failure."""
    @abstractmethod
    async def invoke(self, canister_id: str, method: str, payload: bytes) -> bytes:
        raise NotImplementedError


class SchemaProvider(ABC):
    """Resolves method signatures; None means "encode untyped"."""
    @abstractmethod
    async def resolve(self, canister_id: str, method: str) -> Optional[FuncType]:
        raise NotImplementedError


class Codec(ABC):
    @abstractmethod
    def encode(self, values: List[Value], types=None) -> bytes:
        raise NotImplementedError

    @abstractmethod
    def decode(self, payload: bytes, types=None) -> List[Value]:
        raise NotImplementedError


# ===================================================================
# 2. The Standard Library
# ===================================================================

def lazy_builtin(func):
    """Mark a builtin as receiving its arguments unevaluated."""
    func._takes_exps = True
    return func


def render_primitive(v: Value) -> str:
    match v:
        case Text(value=s):
            return s
        case Number(text=t):
            return t
        case Integer(value=n):
            return str(n)
        case Float(value=x):
            return repr(x)
        case Bool(value=b):
            return "true" if b else "false"
        case Principal(id=pid):
            return pid
    raise KindError(f"cannot stringify {v.kind}")


class StdLib:
    """Contains Python implementations for all icrepl built-ins.

    Every method whose name starts with a single underscore is registered
    into `evaluator.builtins` under the name without the underscore.
    """
    def __init__(self, evaluator: Evaluator):
        self.evaluator = evaluator
        for name, member in inspect.getmembers(self):
            if name.startswith('_') and not name.startswith('__') and callable(member):
                evaluator.builtins[name[1:]] = member

    # --- Arithmetic ---
    def arith(self, op: str, a: Value, b: Value) -> Value:
        for v in (a, b):
            if not isinstance(v, NUMERIC):
                raise KindError(f"{op} expects numbers, got {v.kind}")
        if isinstance(a, Float) or isinstance(b, Float):
            x, y = as_float(a), as_float(b)
            match op:
                case "add":
                    return Float(x + y)
                case "sub":
                    return Float(x - y)
                case "mul":
                    return Float(x * y)
                case "div":
                    if y == 0:
                        raise RangeError("division by zero")
                    return Float(x / y)
        x, y = as_int(a), as_int(b)
        match op:
            case "add":
                return Number.of(x + y)
            case "sub":
                return Number.of(x - y)
            case "mul":
                return Number.of(x * y)
            case "div":
                if y == 0:
                    raise RangeError("division by zero")
                q = abs(x) // abs(y)
                return Number.of(q if (x < 0) == (y < 0) else -q)
        raise KindError(f"unknown operator {op}")

    def _add(self, a, b): return self.arith("add", a, b)
    def _sub(self, a, b): return self.arith("sub", a, b)
    def _mul(self, a, b): return self.arith("mul", a, b)
    def _div(self, a, b): return self.arith("div", a, b)

    # --- Logic ---
    def bool_args(self, op, *args) -> List[bool]:
        for v in args:
            if not isinstance(v, Bool):
                raise KindError(f"{op} expects booleans, got {v.kind}")
        return [v.value for v in args]

    def _and(self, a, b):
        x, y = self.bool_args("and", a, b)
        return Bool(x and y)

    def _or(self, a, b):
        x, y = self.bool_args("or", a, b)
        return Bool(x or y)

    def _not(self, a):
        (x,) = self.bool_args("not", a)
        return Bool(not x)

    @lazy_builtin
    async def _ite(self, cond, then, else_):
        c = await self.evaluator.eval(cond)
        if not isinstance(c, Bool):
            raise KindError(f"ite condition is not a boolean expression, got {c.kind}")
        return await self.evaluator.eval(then if c.value else else_)

    @lazy_builtin
    async def _exist(self, exp):
        try:
            await self.evaluator.eval(exp)
        except (ReplError, NotImplementedError) as e:
            self.evaluator._dbg("exist: absorbed", type(e).__name__, e)
            return Bool(False)
        return Bool(True)

    @lazy_builtin
    async def _fail(self, exp):
        try:
            v = await self.evaluator.eval(exp)
        except (ReplError, NotImplementedError) as e:
            return Text(str(e))
        raise UnexpectedSuccess(f"expected failure, got {self.evaluator.printer.pformat(v)}")

    # --- Comparison ---
    def _eq(self, a, b):
        same_kind(a, b, "eq")
        return Bool(equal(a, b))

    def _neq(self, a, b):
        same_kind(a, b, "neq")
        return Bool(not equal(a, b))

    def _lt(self, a, b): return Bool(compare(a, b) < 0)
    def _lte(self, a, b): return Bool(compare(a, b) <= 0)
    def _gt(self, a, b): return Bool(compare(a, b) > 0)
    def _gte(self, a, b): return Bool(compare(a, b) >= 0)

    # --- Text and collections ---
    def _stringify(self, *args):
        return Text("".join(render_primitive(v) for v in args))

    def _concat(self, a, b):
        match a, b:
            case Vec(), Vec():
                return Vec(a.items + b.items)
            case Text(), Text():
                return Text(a.value + b.value)
            case Blob(), Blob():
                return Blob(a.value + b.value)
        raise KindError(f"cannot concat {a.kind} and {b.kind}")

    def _file(self, path):
        if not isinstance(path, Text):
            raise KindError(f"file expects a text path, got {path.kind}")
        from icrepl.repl_file import resolve_path, read_blob
        return Blob(read_blob(resolve_path(path.value, self.evaluator.source_dir)))


# ===================================================================
# 3. Script Execution
# ===================================================================

Token = Dict[str, Any]

@dataclass
class ExecutionResult:
    """The structured result of a script execution."""
    status: Literal['success', 'error']
    value: Any = None
    error_message: Optional[str] = None
    error_token: Optional[Token] = None
    side_effects: List[Dict] = field(default_factory=list)

    def format_error(self) -> str:
        """Formats an error message with line and column if available."""
        if self.status != 'error':
            return ""
        msg = str(self.error_message or "Unknown error")
        if self.error_token and self.error_token.get('line') is not None:
            line = self.error_token.get('line')
            col = self.error_token.get('col')
            col_info = f", col {col}" if col is not None else ""
            return f"Error on line {line}{col_info}: {msg}"
        return msg


class ScriptRunner:
    """Parses and executes icrepl scripts against the configured collaborators."""

    def __init__(self, invoker: Optional[Invoker] = None, schema: Optional[SchemaProvider] = None,
                 codec: Optional[Codec] = None, source_dir: Optional[str] = None):
        from icrepl.repl_parser import ScriptParser
        from icrepl.repl_serialize import JsonCodec, InterfaceRegistry
        self.parser = ScriptParser()
        self.evaluator = Evaluator(
            invoker=invoker,
            schema=schema if schema is not None else InterfaceRegistry(),
            codec=codec if codec is not None else JsonCodec(),
        )
        self.evaluator.parser = self.parser
        self.source_dir = source_dir

    def _format_parse_error(self, e: ParseError, source: str) -> str:
        if e.line is not None and e.col is not None:
            return f"ParseError: {e.message} (line {e.line}, col {e.col})\n{self._source_context(source, e.line, e.col)}"
        return f"ParseError: {e.message}"

    def _format_runtime_error(self, e: BaseException) -> str:
        match e:
            case ReplError():
                msg = f"{e.kind}: {e.message}"
            case NotImplementedError():
                msg = f"NotImplemented: {e}"
            case _:
                self.evaluator._dbg(traceback.format_exc())
                msg = f"InternalError: {e}"
        st = self._format_stacktrace(getattr(e, "trace", None) or [])
        if st:
            msg += "\n" + st
        return msg

    def _source_context(self, source: str, line: int, col: Optional[int], radius: int = 2) -> str:
        lines = source.splitlines()
        if not line or line < 1 or line > len(lines):
            return ""
        start = max(1, line - radius)
        end = min(len(lines), line + radius)
        width = len(str(end))
        out = []
        for i in range(start, end + 1):
            prefix = ">" if i == line else " "
            out.append(f"{prefix} {str(i).rjust(width)} | {lines[i - 1]}")
            if i == line and col is not None:
                out.append(f"  {' ' * width} | {' ' * max(col - 1, 0)}^")
        return "\n".join(out)

    def _format_stacktrace(self, stack: List[Dict[str, Any]]) -> str:
        if not stack:
            return ""
        pf = self.evaluator.printer.pformat
        frames = []
        for frame in stack:
            args = " ".join(pf(a) for a in frame.get('args') or [])
            frames.append(f"({frame.get('name')}{' ' + args if args else ''})")
        return "stacktrace: " + " ".join(frames)

    def _error(self, msg: str, token: Optional[Token] = None) -> ExecutionResult:
        self.evaluator.side_effects.append({'topics': ['stderr'], 'message': msg})
        return ExecutionResult(
            status='error',
            error_message=msg,
            error_token=token,
            side_effects=list(self.evaluator.side_effects),
        )

    async def handle_script(self, source_code: str, *, run_main: bool = False) -> ExecutionResult:
        """The main entry point to execute a script.

        Bindings and function definitions persist across calls, so a REPL can
        feed one line at a time. With `run_main`, a defined `__main` function
        is invoked after the script body.
        """
        ev = self.evaluator
        ev.side_effects.clear()
        ev.call_stack.clear()
        ev.last_value = None
        ev.source_dir = self.source_dir or os.getcwd()

        # 1. Parse
        try:
            commands = self.parser.parse(source_code)
        except ParseError as e:
            return self._error(self._format_parse_error(e, source_code), {'line': e.line, 'col': e.col})

        # 2. Evaluate
        try:
            await ev.execute(commands)
            if run_main and "__main" in ev.env.functions:
                ev.last_value = await ev.call_function("__main", [])
        except Exception as e:
            node = ev.current_node
            loc = getattr(node, 'loc', None)
            return self._error(self._format_runtime_error(e), dict(loc) if loc else None)

        return ExecutionResult(
            status='success',
            value=ev.last_value,
            side_effects=list(ev.side_effects),
        )
