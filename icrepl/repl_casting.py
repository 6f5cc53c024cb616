"""
Annotation-driven casts: `(value : type)`.

A cast reinterprets one value under one target type. It deliberately does
not implement full subtyping; it covers the reinterpretations scripts need
to pipe heterogeneous call results into each other (numeric sizing, text and
blob, the principal family).
"""

import math
import struct

from icrepl.repl_datatypes import (
    Value, Bool, Null, Text, Blob, Number, Integer, Float, Opt, Vec,
    Principal, Service, Func, REFERENCES, INT_RANGES, FLOAT_KINDS,
    IdlType, PrimType, OptType, VecType, RecordType, VariantType, FuncType, ServiceType,
    KindError, RangeError, DecodeError,
)


def to_float32(x: float) -> float:
    """Round a Python float to single precision."""
    if math.isnan(x) or math.isinf(x):
        return x
    try:
        return struct.unpack("<f", struct.pack("<f", x))[0]
    except OverflowError:
        raise RangeError(f"{x} does not fit in float32") from None


def _to_integer(v: Value, kind: str) -> Integer:
    match v:
        case Number():
            n = int(v)
        case Integer():
            n = v.value
        case Float():
            if math.isnan(v.value) or math.isinf(v.value):
                raise RangeError(f"{v.value} cannot be cast to {kind}")
            # truncation toward zero, not rounding
            n = math.trunc(v.value)
        case _:
            raise KindError(f"cannot cast {v.kind} to {kind}")
    return Integer(n, kind)


def _to_float(v: Value, kind: str) -> Float:
    match v:
        case Number() | Integer():
            try:
                x = float(int(v) if isinstance(v, Number) else v.value)
            except OverflowError:
                raise RangeError(f"{v} does not fit in {kind}") from None
        case Float():
            x = v.value
        case _:
            raise KindError(f"cannot cast {v.kind} to {kind}")
    if kind == "float32":
        x = to_float32(x)
    return Float(x, kind)


def _to_blob(v: Value) -> Blob:
    match v:
        case Blob():
            return v
        case Text():
            return Blob(v.value.encode("utf-8"))
        case Vec():
            out = bytearray()
            for item in v.items:
                if not isinstance(item, (Number, Integer)):
                    raise KindError(f"cannot cast vec of {item.kind} to blob")
                n = int(item) if isinstance(item, Number) else item.value
                if not 0 <= n <= 255:
                    raise RangeError(f"{n} does not fit in nat8")
                out.append(n)
            return Blob(bytes(out))
    raise KindError(f"cannot cast {v.kind} to blob")


def _to_text(v: Value) -> Text:
    match v:
        case Text():
            return v
        case Blob():
            try:
                return Text(v.value.decode("utf-8"))
            except UnicodeDecodeError as e:
                raise DecodeError(f"blob is not valid UTF-8: {e.reason} at byte {e.start}") from None
    raise KindError(f"cannot cast {v.kind} to text")


def _to_reference(v: Value, ty: IdlType) -> Value:
    if not isinstance(v, REFERENCES):
        raise KindError(f"cannot cast {v.kind} to {ty}")
    match ty:
        case PrimType(name="principal"):
            return Principal(v.id)
        case ServiceType():
            return Service(v.id)
        case FuncType():
            if isinstance(v, Func):
                return v
            raise KindError(f"cannot cast {v.kind} to func: no method name to attach")
    raise KindError(f"cannot cast {v.kind} to {ty}")


def cast(v: Value, ty: IdlType) -> Value:
    """Reinterpret `v` under `ty`, or raise."""
    match ty:
        case RecordType() | VariantType():
            raise NotImplementedError(f"casting to {ty} is not supported; calls carry the remote schema")
        case PrimType(name=name) if name in INT_RANGES:
            return _to_integer(v, name)
        case PrimType(name=name) if name in FLOAT_KINDS:
            return _to_float(v, name)
        case PrimType(name="text"):
            return _to_text(v)
        case PrimType(name="bool"):
            if isinstance(v, Bool):
                return v
        case PrimType(name="null"):
            if isinstance(v, Null):
                return v
        case PrimType(name="principal") | ServiceType() | FuncType():
            return _to_reference(v, ty)
        case VecType() if ty.is_blob:
            return _to_blob(v)
        case VecType(inner=inner):
            if isinstance(v, Vec):
                return Vec(tuple(cast(item, inner) for item in v.items))
        case OptType(inner=inner):
            if isinstance(v, Null):
                return Opt()
            if isinstance(v, Opt):
                return v if v.is_empty else Opt(cast(v.value, inner))
            return Opt(cast(v, inner))
    raise KindError(f"cannot cast {v.kind} to {ty}")
