"""
The core icrepl interpreter, containing the Environment and the Evaluator.
"""
import asyncio
import inspect
import os
import sys
from contextlib import contextmanager
from typing import Any, Callable, Dict, List, Optional

from icrepl.repl_datatypes import (
    Value, Bool, Null, Text, Blob, Number, Opt, Vec, Record, Variant, Field, Label, Principal,
    FuncType, ReplError, KindError, UndefinedName, CallError, AssertionFailure, CallDepthExceeded,
    principal_id, args_to_value,
)
from icrepl.repl_syntax import (
    Var, Select, Annotated, Apply, OptExp, VecExp, RecordExp, VariantExp, Call, ParCall, Decode,
    Method, Command, Let, Show, Assert, FuncDef, If, While, Import, Load, Export,
)
from icrepl.repl_casting import cast
from icrepl.repl_compare import equal, sub_equal
from icrepl.repl_selectors import SelectorEngine
from icrepl.repl_printer import Printer


# Python frames consumed per script-level call (apply, execute, run, eval, builtins).
FRAMES_PER_CALL = 25


def _ensure_recursion_limit(max_call_depth: int):
    """Raise the interpreter recursion limit so `max_call_depth` nested calls fit."""
    needed = max_call_depth * FRAMES_PER_CALL + 1000
    if sys.getrecursionlimit() < needed:
        sys.setrecursionlimit(needed)


class Frame:
    """One scope level: variable bindings plus the last value bound to `_` here."""
    def __init__(self, bindings: Optional[Dict[str, Value]] = None):
        self.bindings: Dict[str, Value] = dict(bindings or {})
        self.result: Optional[Value] = None

    def __repr__(self) -> str:
        return f"<Frame bindings=[{', '.join(self.bindings)}]>"


class Environment:
    """A stack of frames plus the process-wide function table.

    Scoping is dynamic: a new frame starts from a copy of the caller's
    visible bindings, not from the function's definition site.
    """
    def __init__(self):
        self.frames: List[Frame] = [Frame()]
        self.functions: Dict[str, FuncDef] = {}

    @property
    def current(self) -> Frame:
        return self.frames[-1]

    def lookup(self, name: str) -> Value:
        try:
            return self.current.bindings[name]
        except KeyError:
            raise UndefinedName(f"Undefined variable {name}") from None

    def bind(self, name: str, value: Value):
        frame = self.current
        frame.bindings[name] = value
        if name == "_":
            frame.result = value

    @contextmanager
    def push(self, params: Dict[str, Value]):
        frame = Frame(self.current.bindings)
        frame.bindings.update(params)
        self.frames.append(frame)
        try:
            yield frame
        finally:
            self.frames.pop()


class Evaluator:
    """The icrepl execution engine."""
    def __init__(self, invoker=None, schema=None, codec=None):
        self.env = Environment()
        self.selectors = SelectorEngine(self)
        self.printer = Printer()
        self.invoker = invoker
        self.schema = schema
        self.codec = codec
        # Set by ScriptRunner; needed only by `load`.
        self.parser = None
        self.side_effects: List[Dict[str, Any]] = []
        self.call_stack: List[Dict[str, Any]] = []
        self.current_node = None
        self.last_value: Optional[Value] = None
        self.source_dir: Optional[str] = None
        self.builtins: Dict[str, Callable] = {}
        self.max_call_depth = int(os.environ.get("ICREPL_MAX_CALL_DEPTH", "1000"))
        _ensure_recursion_limit(self.max_call_depth)
        from icrepl.repl_runtime import StdLib
        StdLib(self)

    def _dbg(self, *parts):
        if os.environ.get("ICREPL_DEBUG"):
            print("[DBG]", *parts, file=sys.stderr)

    def emit(self, topic: str, message: str):
        self.side_effects.append({'topics': [topic], 'message': message})

    def _push_frame(self, name, args):
        self.call_stack.append({'name': name, 'args': args})

    def _pop_frame(self):
        if self.call_stack:
            self.call_stack.pop()

    # ------------------------------------------------------------------
    # Expressions
    # ------------------------------------------------------------------

    async def eval(self, node: Any) -> Value:
        """Recursive dispatcher for evaluating any expression node."""
        # literals carry no position; keep the innermost node that does
        if getattr(node, 'loc', None) is not None:
            self.current_node = node
        match node:
            case Value():
                return node
            case Var(name=name):
                return self.env.lookup(name)
            case Select(base=base, selectors=sels):
                return await self.selectors.project(await self.eval(base), sels)
            case Annotated(exp=exp, type=ty):
                return cast(await self.eval(exp), ty)
            case Apply(func=func, args=args):
                return await self.apply(func, args)
            case OptExp(exp=exp):
                return Opt(await self.eval(exp))
            case VecExp(items=items):
                return Vec(tuple([await self.eval(item) for item in items]))
            case RecordExp(fields=fields):
                out = []
                next_id = 0
                for f in fields:
                    label = f.label if f.label is not None else Label.numbered(next_id)
                    next_id = label.id + 1
                    out.append(Field(label, await self.eval(f.exp)))
                return Record(tuple(out))
            case VariantExp(field=f):
                label = f.label if f.label is not None else Label.numbered(0)
                return Variant(Field(label, await self.eval(f.exp)))
            case Call():
                return await self.call(node)
            case ParCall():
                return await self.par_call(node)
            case Decode():
                return await self.decode(node)
        raise TypeError(f"cannot evaluate {node!r}")

    async def apply(self, name: str, arg_nodes: List[Any]) -> Value:
        """`name(args)`: builtins first, then user functions."""
        builtin = self.builtins.get(name)
        if builtin is not None and getattr(builtin, "_takes_exps", False):
            return await self._call_builtin(name, builtin, arg_nodes)
        args = [await self.eval(a) for a in arg_nodes]
        if builtin is not None:
            return await self._call_builtin(name, builtin, args)
        return await self.call_function(name, args)

    async def apply_function(self, name: str, args: List[Value]) -> Value:
        """Apply a function by name to already evaluated values (used by map/filter/fold)."""
        builtin = self.builtins.get(name)
        if builtin is not None:
            # Values are self-evaluating, so lazy builtins accept them too.
            return await self._call_builtin(name, builtin, args)
        return await self.call_function(name, args)

    async def _call_builtin(self, name: str, builtin: Callable, args: List[Any]) -> Value:
        try:
            inspect.signature(builtin).bind(*args)
        except TypeError as e:
            raise KindError(f"{name}: {e}") from None
        result = builtin(*args)
        if inspect.isawaitable(result):
            result = await result
        return result

    async def call_function(self, name: str, args: List[Value]) -> Value:
        fn = self.env.functions.get(name)
        if fn is None:
            raise UndefinedName(f"Undefined function {name}")
        if len(self.call_stack) >= self.max_call_depth:
            raise CallDepthExceeded(f"{name}: call depth exceeds {self.max_call_depth}")
        if len(args) != len(fn.params):
            raise KindError(f"{name} expects {len(fn.params)} argument(s), got {len(args)}")
        self._dbg("call", name, [self.printer.pformat(a) for a in args])
        self._push_frame(name, args)
        try:
            with self.env.push(dict(zip(fn.params, args))) as frame:
                await self.execute(fn.body)
                return frame.result if frame.result is not None else Null()
        except ReplError as e:
            if getattr(e, "trace", None) is None:
                e.trace = list(self.call_stack)
            raise
        finally:
            self._pop_frame()

    # ------------------------------------------------------------------
    # Commands
    # ------------------------------------------------------------------

    async def execute(self, commands: List[Command]):
        for cmd in commands:
            await self.run(cmd)

    async def run(self, cmd: Command):
        self.current_node = cmd
        match cmd:
            case Let(name=name, exp=exp):
                self.env.bind(name, await self.eval(exp))
            case Show(exp=exp):
                v = await self.eval(exp)
                self.env.bind("_", v)
                if len(self.env.frames) == 1:
                    self.last_value = v
                    self.emit('stdout', self.printer.pformat(v))
            case Assert(op=op, left=left, right=right):
                lv = await self.eval(left)
                rv = await self.eval(right)
                match op:
                    case "==":
                        ok = equal(lv, rv)
                    case "~=":
                        ok = sub_equal(lv, rv)
                    case "!=":
                        ok = not equal(lv, rv)
                    case _:
                        raise KindError(f"unknown assertion operator {op}")
                if not ok:
                    raise AssertionFailure(op, lv, rv)
            case FuncDef(name=name):
                self.env.functions[name] = cmd
            case If(cond=cond, then=then, else_=else_):
                if self._condition(await self.eval(cond), "if"):
                    await self.execute(then)
                else:
                    await self.execute(else_)
            case While(cond=cond, body=body):
                await self._while(cond, body)
            case Import(name=name, principal=pid, interface=iface):
                if iface is not None:
                    await self._import_interface(pid, iface)
                self.env.bind(name, Principal(pid))
            case Load(path=path):
                await self._load(path)
            case Export(path=path):
                from icrepl.repl_file import export_bindings
                export_bindings(self._resolve(path), self.env.current.bindings)
            case _:
                raise TypeError(f"cannot run {cmd!r}")

    def _condition(self, v: Value, what: str) -> bool:
        if not isinstance(v, Bool):
            raise KindError(f"{what} condition is not a boolean expression, got {v.kind}")
        return v.value

    async def _while(self, cond, body):
        max_iters = int(os.environ.get("ICREPL_MAX_LOOP_ITERS", "1000000"))
        iter_count = 0
        while self._condition(await self.eval(cond), "while"):
            await self.execute(body)
            iter_count += 1
            # Cooperative yield so concurrent scripts on the same loop make progress.
            if iter_count % 100 == 0:
                await asyncio.sleep(0)
            if iter_count >= max_iters:
                raise RuntimeError("while: iteration limit exceeded")

    def _resolve(self, path: str) -> str:
        from icrepl.repl_file import resolve_path
        return resolve_path(path, self.source_dir)

    async def _import_interface(self, pid: str, iface: str):
        register = getattr(self.schema, "register", None)
        if register is None:
            raise KindError("the configured schema provider does not accept interface files")
        from icrepl.repl_file import load_interface
        register(pid, load_interface(self._resolve(iface)))

    async def _load(self, path: str):
        from icrepl.repl_file import read_script
        if self.parser is None:
            raise KindError("load requires a parser")
        full = self._resolve(path)
        commands = self.parser.parse(read_script(full))
        old_base = self.source_dir
        self.source_dir = os.path.dirname(full)
        try:
            await self.execute(commands)
        finally:
            self.source_dir = old_base

    # ------------------------------------------------------------------
    # Outbound calls
    # ------------------------------------------------------------------

    def _target_id(self, target: str, quoted: bool) -> str:
        if quoted:
            return target
        v = self.env.lookup(target)
        try:
            return principal_id(v)
        except KindError:
            raise KindError(f"{target} is not a canister id") from None

    async def _signature(self, canister: str, method: str) -> Optional[FuncType]:
        if self.schema is None:
            return None
        return await self.schema.resolve(canister, method)

    def _encode(self, args: List[Value], sig: Optional[FuncType]) -> bytes:
        if self.codec is None:
            raise KindError("no codec configured")
        return self.codec.encode(args, sig.args if sig is not None else None)

    def _decode(self, payload: bytes, sig: Optional[FuncType]) -> Value:
        if self.codec is None:
            raise KindError("no codec configured")
        return args_to_value(self.codec.decode(payload, sig.rets if sig is not None else None))

    async def _transport(self, canister: str, method: str, payload: bytes) -> bytes:
        if self.invoker is None:
            raise CallError(f"cannot call {canister}.{method}: no invoker configured")
        self._dbg("invoke", canister, method, f"{len(payload)} bytes")
        try:
            return await self.invoker.invoke(canister, method, payload)
        except ReplError:
            raise
        except Exception as e:
            raise CallError(f"{canister}.{method}: {e}") from e

    async def _prepare(self, node: Call):
        """Evaluate arguments and encode them; the only phase that reads frames."""
        args = [await self.eval(a) for a in node.args]
        method: Method = node.method
        canister = self._target_id(method.target, method.quoted)
        sig = await self._signature(canister, method.method)
        return canister, method.method, sig, self._encode(args, sig)

    async def call(self, node: Call) -> Value:
        if node.mode == "encode":
            args = [await self.eval(a) for a in node.args]
            sig = None
            if node.method is not None:
                canister = self._target_id(node.method.target, node.method.quoted)
                sig = await self._signature(canister, node.method.method)
            return Blob(self._encode(args, sig))
        canister, method, sig, payload = await self._prepare(node)
        if node.mode == "proxy":
            return await self._proxy_call(node, canister, method, sig, payload)
        reply = await self._transport(canister, method, payload)
        return self._decode(reply, sig)

    async def _proxy_call(self, node: Call, canister: str, method: str, sig, payload: bytes) -> Value:
        """Forward through the proxy's wallet_call and unwrap `Ok.return`."""
        proxy = self._target_id(node.proxy, node.proxy_quoted)
        outer = Record((
            Field(Label.named("args"), Blob(payload)),
            Field(Label.named("cycles"), Number.of(0)),
            Field(Label.named("method_name"), Text(method)),
            Field(Label.named("canister"), Principal(canister)),
        ))
        outer_sig = await self._signature(proxy, "wallet_call")
        reply = await self._transport(proxy, "wallet_call", self._encode([outer], outer_sig))
        res = self._decode(reply, outer_sig)
        if isinstance(res, Variant) and res.field.label == Label.named("Ok"):
            ret = res.field.value
            if isinstance(ret, Record):
                ret = ret.get(Label.named("return"))
            if isinstance(ret, Blob):
                return self._decode(ret.value, sig)
        raise CallError(f"proxy {proxy} failed to forward {canister}.{method}: {self.printer.pformat(res)}")

    async def par_call(self, node: ParCall) -> Value:
        prepared = [await self._prepare(c) for c in node.calls]
        replies = await asyncio.gather(
            *(self._transport(canister, method, payload) for canister, method, _, payload in prepared),
            return_exceptions=True,
        )
        # Every call has been drained by now; surface the first failure in list order.
        for r in replies:
            if isinstance(r, BaseException):
                raise r
        return Record.tuple_of([self._decode(r, sig) for r, (_, _, sig, _) in zip(replies, prepared)])

    async def decode(self, node: Decode) -> Value:
        blob = await self.eval(node.blob)
        if not isinstance(blob, Blob):
            raise KindError(f"decode expects a blob, got {blob.kind}")
        sig = None
        if node.method is not None:
            canister = self._target_id(node.method.target, node.method.quoted)
            sig = await self._signature(canister, node.method.method)
        return self._decode(blob.value, sig)
