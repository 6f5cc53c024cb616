from __future__ import annotations

import json
from typing import Any, Dict, List, Optional, Sequence

import yaml

from icrepl.repl_datatypes import (
    Value, Bool, Null, Text, Blob, Number, Integer, Float, Opt, Vec, Record, Variant, Field, Label,
    Principal, Service, Func, INT_RANGES, FLOAT_KINDS,
    IdlType, PrimType, OptType, VecType, RecordType, VariantType, FuncType, ServiceType,
    KindError, DecodeError, UndefinedName,
)
from icrepl.repl_casting import cast
from icrepl.repl_runtime import Codec, SchemaProvider


# --------------------------
# Helpers
# --------------------------

def _norm_text(data: bytes | bytearray | str) -> str:
    if isinstance(data, (bytes, bytearray)):
        try:
            return data.decode('utf-8')
        except UnicodeDecodeError as e:
            raise DecodeError(f"payload is not valid utf-8: {e.reason}") from None
    return data


def detect_format(path: str) -> Optional[str]:
    """
    Returns 'json' or 'yaml' from a file extension.
    """
    p = path.lower()
    if p.endswith('.json'):
        return 'json'
    if p.endswith(('.yaml', '.yml')):
        return 'yaml'
    return None


# --------------------------
# Tagged form
# --------------------------
#
# Every value becomes a single-key mapping naming its kind, e.g.
#   {"nat8": "5"}, {"text": "hi"}, {"opt": null},
#   {"record": [[0, null, {"number": "1"}], [5097222, "id", {"text": "a"}]]}
# Integers travel as decimal strings so they survive JSON unharmed.

def to_tagged(v: Value) -> Any:
    match v:
        case Bool(value=b):
            return {"bool": b}
        case Null():
            return {"null": None}
        case Text(value=s):
            return {"text": s}
        case Blob(value=b):
            return {"blob": b.hex()}
        case Number(text=t):
            return {"number": t}
        case Integer(value=n, type_name=t):
            return {t: str(n)}
        case Float(value=x, type_name=t):
            return {t: x}
        case Opt():
            return {"opt": None if v.is_empty else to_tagged(v.value)}
        case Vec(items=items):
            return {"vec": [to_tagged(i) for i in items]}
        case Record(fields=fields):
            return {"record": [[f.label.id, f.label.name, to_tagged(f.value)] for f in fields]}
        case Variant(field=f, index=idx):
            return {"variant": [f.label.id, f.label.name, to_tagged(f.value), idx]}
        case Principal(id=pid):
            return {"principal": pid}
        case Service(id=pid):
            return {"service": pid}
        case Func(id=pid, method=m):
            return {"func": [pid, m]}
    raise KindError(f"cannot serialize {v!r}")


def _label(id_: Any, name: Any) -> Label:
    if name is not None:
        return Label.named(str(name))
    return Label.numbered(int(id_))


def from_tagged(obj: Any) -> Value:
    if not isinstance(obj, dict) or len(obj) != 1:
        raise DecodeError(f"malformed tagged value: {obj!r}")
    ((tag, body),) = obj.items()
    try:
        match tag:
            case "bool":
                return Bool(bool(body))
            case "null":
                return Null()
            case "text":
                return Text(str(body))
            case "blob":
                return Blob(bytes.fromhex(body))
            case "number":
                return Number(str(body))
            case t if t in INT_RANGES:
                return Integer(int(body), t)
            case t if t in FLOAT_KINDS:
                return Float(float(body), t)
            case "opt":
                return Opt() if body is None else Opt(from_tagged(body))
            case "vec":
                return Vec(tuple(from_tagged(i) for i in body))
            case "record":
                return Record(tuple(Field(_label(i, n), from_tagged(b)) for i, n, b in body))
            case "variant":
                i, n, b, idx = body
                return Variant(Field(_label(i, n), from_tagged(b)), int(idx))
            case "principal":
                return Principal(str(body))
            case "service":
                return Service(str(body))
            case "func":
                pid, m = body
                return Func(str(pid), str(m))
    except (TypeError, ValueError) as e:
        raise DecodeError(f"malformed {tag} value: {e}") from None
    raise DecodeError(f"unknown value tag {tag!r}")


# --------------------------
# Type conformance
# --------------------------

def conform(v: Value, ty: IdlType) -> Value:
    """Shape `v` to `ty`: size numbers, attach label names, fill absent opt fields."""
    match ty:
        case PrimType(name="reserved"):
            return v
        case PrimType(name="empty"):
            raise KindError("no value inhabits empty")
        case OptType(inner=inner):
            if isinstance(v, Null) or (isinstance(v, Opt) and v.is_empty):
                return Opt()
            if isinstance(v, Opt):
                return Opt(conform(v.value, inner))
            return Opt(conform(v, inner))
        case VecType() if ty.is_blob:
            return cast(v, ty)
        case VecType(inner=inner):
            if not isinstance(v, Vec):
                raise KindError(f"expected {ty}, got {v.kind}")
            return Vec(tuple(conform(i, inner) for i in v.items))
        case RecordType(fields=fts):
            if not isinstance(v, Record):
                raise KindError(f"expected {ty}, got {v.kind}")
            out = []
            for ft in fts:
                found = v.get(ft.label)
                if found is None:
                    if not (isinstance(ft.type, OptType) or ft.type in (PrimType("null"), PrimType("reserved"))):
                        raise KindError(f"record field {ft.label} is missing")
                    found = Null()
                out.append(Field(ft.label, conform(found, ft.type)))
            return Record(tuple(out))
        case VariantType(fields=fts):
            if not isinstance(v, Variant):
                raise KindError(f"expected {ty}, got {v.kind}")
            for i, ft in enumerate(fts):
                if ft.label == v.field.label:
                    return Variant(Field(ft.label, conform(v.field.value, ft.type)), i)
            raise KindError(f"variant {v.field.label} is not a case of {ty}")
    return cast(v, ty)


def conform_all(values: Sequence[Value], types: Sequence[IdlType]) -> List[Value]:
    values = list(values)
    if len(values) > len(types):
        raise KindError(f"expected {len(types)} argument(s), got {len(values)}")
    # Trailing opt arguments may be omitted.
    for ty in types[len(values):]:
        if not isinstance(ty, OptType):
            raise KindError(f"expected {len(types)} argument(s), got {len(values)}")
        values.append(Opt())
    return [conform(v, t) for v, t in zip(values, types)]


# --------------------------
# Codec and schema
# --------------------------

class JsonCodec(Codec):
    """Self-describing JSON payloads: `{"args": [tagged, ...]}`."""

    def encode(self, values, types=None) -> bytes:
        if types is not None:
            values = conform_all(values, types)
        return json.dumps({"args": [to_tagged(v) for v in values]}).encode('utf-8')

    def decode(self, payload: bytes, types=None) -> List[Value]:
        try:
            obj = json.loads(_norm_text(payload))
        except json.JSONDecodeError as e:
            raise DecodeError(f"payload is not JSON: {e.msg}") from None
        if isinstance(obj, dict) and "args" in obj:
            obj = obj["args"]
        if not isinstance(obj, list):
            raise DecodeError("payload must hold an argument list")
        values = [from_tagged(o) for o in obj]
        if types is None:
            return values
        try:
            return conform_all(values, types)
        except KindError as e:
            raise DecodeError(f"reply does not match ({', '.join(map(str, types))}): {e}") from None


class InterfaceRegistry(SchemaProvider):
    """Canister id to service type; unknown canisters are called untyped."""

    def __init__(self, services: Optional[Dict[str, ServiceType]] = None):
        self.services: Dict[str, ServiceType] = dict(services or {})

    def register(self, canister_id: str, service: ServiceType):
        self.services[canister_id] = service

    async def resolve(self, canister_id: str, method: str) -> Optional[FuncType]:
        service = self.services.get(canister_id)
        if service is None:
            return None
        sig = service.method(method)
        if sig is None:
            raise UndefinedName(f"method {method} not found in {canister_id}")
        return sig


# --------------------------
# Public API
# --------------------------

def deserialize(data: bytes | bytearray | str,
                *,
                fmt: Optional[str] = None) -> Any:
    """
    Convert JSON or YAML text to native Python structures.
    Without fmt the text is read as YAML, which also accepts JSON.
    """
    text = _norm_text(data)
    f = fmt or 'yaml'
    try:
        if f == 'json':
            return json.loads(text)
        return yaml.safe_load(text)
    except (json.JSONDecodeError, yaml.YAMLError) as e:
        raise DecodeError(f"invalid {f}: {e}") from None


def serialize(value: Any, *, fmt: str, pretty: bool = True) -> str:
    """
    Convert native Python structures into JSON or YAML text.
    """
    f = (fmt or '').lower()
    if f == 'json':
        return json.dumps(value, ensure_ascii=False, indent=2 if pretty else None)
    if f == 'yaml':
        return yaml.safe_dump(value, sort_keys=False, allow_unicode=True)
    raise ValueError(f"Unsupported serialization format: {fmt!r}")


__all__ = [
    "deserialize",
    "serialize",
    "detect_format",
    "to_tagged",
    "from_tagged",
    "conform",
    "JsonCodec",
    "InterfaceRegistry",
]
