"""
Defines the core data types for the icrepl runtime.

This module provides the immutable value algebra that scripts compute with
(records, variants, options, vectors, primitives and typed references), the
IDL type terms used by casts and method signatures, and the error kinds the
evaluator raises.
"""

from dataclasses import dataclass, field as dataclass_field
from typing import Optional, Tuple, Iterable

# =================================================================
# Errors
# =================================================================

class ReplError(Exception):
    """Base class for every error a script can observe (and `exist`/`fail` can absorb)."""
    kind = "Error"

    def __init__(self, message: str = ""):
        super().__init__(message)
        self.message = message

    def __str__(self) -> str:
        return self.message


class ParseError(ReplError, SyntaxError):
    kind = "ParseError"

    def __init__(self, message: str, line: Optional[int] = None, col: Optional[int] = None):
        ReplError.__init__(self, message)
        self.line = line
        self.col = col


class KindError(ReplError, TypeError):
    """A value of the wrong kind reached an operation."""
    kind = "TypeError"


class RangeError(ReplError, ValueError):
    kind = "RangeError"


class DecodeError(ReplError, ValueError):
    kind = "DecodeError"


class SelectorError(ReplError):
    kind = "SelectorError"


class NoSuchField(SelectorError, KeyError):
    kind = "NoSuchField"


class WrongVariant(SelectorError):
    kind = "WrongVariant"


class IndexOutOfRange(SelectorError, IndexError):
    kind = "IndexOutOfRange"


class EmptyOption(SelectorError):
    kind = "EmptyOption"


class UndefinedName(ReplError, NameError):
    kind = "UndefinedName"


class CallError(ReplError):
    """Transport or remote failure reported by an invoker."""
    kind = "CallError"


class CallDepthExceeded(ReplError, RecursionError):
    kind = "CallDepthExceeded"


class UnexpectedSuccess(ReplError):
    kind = "UnexpectedSuccess"


class AssertionFailure(ReplError, AssertionError):
    """A failed `assert`; keeps both evaluated sides for display."""
    kind = "AssertionFailure"

    def __init__(self, op: str, left: 'Value', right: 'Value'):
        from icrepl.repl_printer import Printer
        p = Printer()
        super().__init__(f"assertion failed: {p.pformat(left)} {op} {p.pformat(right)}")
        self.op = op
        self.left = left
        self.right = right


# =================================================================
# Labels and fields
# =================================================================

def idl_hash(name: str) -> int:
    """Content-derived field id for a named label."""
    h = 0
    for b in name.encode("utf-8"):
        h = (h * 223 + b) % (1 << 32)
    return h


@dataclass(frozen=True, eq=False)
class Label:
    """A record/variant field label: a name, or a bare numeric id.

    Labels compare by id only, so `record { 0 = x }` and a positional first
    field select the same slot, and names compare through their hash.
    """
    id: int
    name: Optional[str] = None

    @classmethod
    def named(cls, name: str) -> 'Label':
        return cls(idl_hash(name), name)

    @classmethod
    def numbered(cls, id: int) -> 'Label':
        if id < 0 or id >= (1 << 32):
            raise RangeError(f"field id {id} out of range")
        return cls(id)

    def __eq__(self, other):
        return isinstance(other, Label) and self.id == other.id

    def __hash__(self):
        return hash(self.id)

    def __str__(self) -> str:
        return self.name if self.name is not None else str(self.id)

    def __repr__(self) -> str:
        return f"Label({self})"


@dataclass(frozen=True)
class Field:
    label: Label
    value: 'Value'


# =================================================================
# Values
# =================================================================

class Value:
    """Abstract base class for all runtime values."""
    __slots__ = ()

    @property
    def kind(self) -> str:
        """The value kind used by kind-strict builtins such as `eq`."""
        return type(self).__name__.lower()


@dataclass(frozen=True)
class Bool(Value):
    value: bool


@dataclass(frozen=True)
class Null(Value):
    pass


@dataclass(frozen=True)
class Text(Value):
    value: str


@dataclass(frozen=True)
class Blob(Value):
    value: bytes


@dataclass(frozen=True)
class Number(Value):
    """An integer literal that has not been given a size yet.

    The decimal text is normalized on construction so that equal integers
    compare equal regardless of how they were written (`+1_000`, `0x3e8`).
    """
    text: str

    def __post_init__(self):
        raw = self.text.replace("_", "")
        try:
            n = int(raw, 16 if raw.lower().lstrip("+-").startswith("0x") else 10)
        except ValueError:
            raise ParseError(f"invalid number {self.text!r}") from None
        object.__setattr__(self, "text", str(n))

    @classmethod
    def of(cls, n: int) -> 'Number':
        return cls(str(n))

    def __int__(self):
        return int(self.text)


INT_RANGES = {
    "nat": (0, None),
    "int": (None, None),
    "nat8": (0, 2**8 - 1),
    "nat16": (0, 2**16 - 1),
    "nat32": (0, 2**32 - 1),
    "nat64": (0, 2**64 - 1),
    "int8": (-2**7, 2**7 - 1),
    "int16": (-2**15, 2**15 - 1),
    "int32": (-2**31, 2**31 - 1),
    "int64": (-2**63, 2**63 - 1),
}

FLOAT_KINDS = ("float32", "float64")


@dataclass(frozen=True)
class Integer(Value):
    """An integer materialized into one of the INT_RANGES kinds."""
    value: int
    type_name: str = "nat"

    def __post_init__(self):
        lo, hi = INT_RANGES[self.type_name]
        if (lo is not None and self.value < lo) or (hi is not None and self.value > hi):
            raise RangeError(f"{self.value} does not fit in {self.type_name}")

    @property
    def kind(self) -> str:
        return self.type_name


@dataclass(frozen=True)
class Float(Value):
    value: float
    type_name: str = "float64"

    @property
    def kind(self) -> str:
        return self.type_name


@dataclass(frozen=True)
class Opt(Value):
    """`opt v`, or the empty option when value is None."""
    value: Optional[Value] = None

    @property
    def is_empty(self) -> bool:
        return self.value is None


@dataclass(frozen=True)
class Vec(Value):
    items: Tuple[Value, ...] = ()

    def __post_init__(self):
        object.__setattr__(self, "items", tuple(self.items))


@dataclass(frozen=True)
class Record(Value):
    """Fields sorted ascending by label id, labels unique."""
    fields: Tuple[Field, ...] = ()

    def __post_init__(self):
        fs = tuple(sorted(self.fields, key=lambda f: f.label.id))
        for a, b in zip(fs, fs[1:]):
            if a.label == b.label:
                raise KindError(f"duplicate record field {b.label} (id {b.label.id})")
        object.__setattr__(self, "fields", fs)

    @classmethod
    def tuple_of(cls, values: Iterable[Value]) -> 'Record':
        return cls(tuple(Field(Label.numbered(i), v) for i, v in enumerate(values)))

    def get(self, label: Label) -> Optional[Value]:
        for f in self.fields:
            if f.label == label:
                return f.value
        return None

    def is_tuple(self) -> bool:
        return all(f.label.name is None and f.label.id == i for i, f in enumerate(self.fields))


@dataclass(frozen=True)
class Variant(Value):
    field: Field
    # position of the active field in the variant type; not part of equality
    index: int = dataclass_field(default=0, compare=False)


@dataclass(frozen=True)
class Principal(Value):
    id: str


@dataclass(frozen=True)
class Service(Value):
    id: str


@dataclass(frozen=True)
class Func(Value):
    id: str
    method: str


NUMERIC = (Number, Integer, Float)
REFERENCES = (Principal, Service, Func)


def principal_id(v: Value) -> str:
    if isinstance(v, REFERENCES):
        return v.id
    raise KindError(f"expected a principal, service or func, got {v.kind}")


def as_int(v: Value) -> int:
    """Integer payload of a Number/Integer (floats must be cast explicitly)."""
    if isinstance(v, Number):
        return int(v)
    if isinstance(v, Integer):
        return v.value
    raise KindError(f"expected an integer, got {v.kind}")


def as_float(v: Value) -> float:
    if isinstance(v, Float):
        return v.value
    if isinstance(v, (Number, Integer)):
        return float(as_int(v))
    raise KindError(f"expected a number, got {v.kind}")


def args_to_value(values) -> Value:
    """Collapse a decoded argument list: () -> null, (v) -> v, (a, b..) -> tuple record."""
    values = list(values)
    if not values:
        return Null()
    if len(values) == 1:
        return values[0]
    return Record.tuple_of(values)


# =================================================================
# IDL types
# =================================================================

class IdlType:
    """Abstract base class for type terms (annotations and signatures)."""
    __slots__ = ()


PRIMITIVE_TYPES = (
    "null", "bool", "text", "principal", "reserved", "empty",
    *INT_RANGES.keys(), *FLOAT_KINDS,
)


@dataclass(frozen=True)
class PrimType(IdlType):
    name: str

    def __post_init__(self):
        if self.name not in PRIMITIVE_TYPES:
            raise ParseError(f"unknown type {self.name}")

    def __str__(self):
        return self.name


@dataclass(frozen=True)
class OptType(IdlType):
    inner: IdlType

    def __str__(self):
        return f"opt {self.inner}"


@dataclass(frozen=True)
class VecType(IdlType):
    inner: IdlType

    @property
    def is_blob(self) -> bool:
        return self.inner == PrimType("nat8")

    def __str__(self):
        return "blob" if self.is_blob else f"vec {self.inner}"


BLOB = VecType(PrimType("nat8"))


@dataclass(frozen=True)
class FieldType:
    label: Label
    type: IdlType


@dataclass(frozen=True)
class RecordType(IdlType):
    fields: Tuple[FieldType, ...] = ()

    def __str__(self):
        return "record { " + "; ".join(f"{f.label} : {f.type}" for f in self.fields) + " }"


@dataclass(frozen=True)
class VariantType(IdlType):
    fields: Tuple[FieldType, ...] = ()

    def __str__(self):
        return "variant { " + "; ".join(f"{f.label} : {f.type}" for f in self.fields) + " }"


@dataclass(frozen=True)
class FuncType(IdlType):
    """A method signature; also the result of schema resolution."""
    args: Tuple[IdlType, ...] = ()
    rets: Tuple[IdlType, ...] = ()
    modes: Tuple[str, ...] = ()

    def __str__(self):
        args = ", ".join(map(str, self.args))
        rets = ", ".join(map(str, self.rets))
        modes = "".join(f" {m}" for m in self.modes)
        return f"({args}) -> ({rets}){modes}"


@dataclass(frozen=True)
class ServiceType(IdlType):
    methods: Tuple[Tuple[str, FuncType], ...] = dataclass_field(default_factory=tuple)

    def method(self, name: str) -> Optional[FuncType]:
        for n, t in self.methods:
            if n == name:
                return t
        return None

    def __str__(self):
        return "service { " + "; ".join(f"{n} : {t}" for n, t in self.methods) + " }"
