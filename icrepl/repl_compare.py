"""
Structural equality, subtyping-equality and numeric comparison.
"""

from icrepl.repl_datatypes import (
    Value, Text, Number, Integer, Float, Opt, Vec, Record, Variant,
    NUMERIC, REFERENCES, PrimType, KindError, RangeError, as_int, as_float,
)
from icrepl.repl_casting import cast


def equal(left: Value, right: Value) -> bool:
    """`==`: same tag, same kind, recursively equal payloads."""
    return left == right


def sub_equal(left: Value, right: Value) -> bool:
    """`~=`: the right side is a partial expectation of the left side."""
    match left, right:
        case Record(), Record():
            for f in right.fields:
                mine = left.get(f.label)
                if mine is None or not sub_equal(mine, f.value):
                    return False
            return True
        case Text(), Text():
            return right.value in left.value
        case (l, r) if isinstance(l, REFERENCES) and isinstance(r, REFERENCES):
            return l.id == r.id
        case Opt(), Opt():
            if left.is_empty or right.is_empty:
                return left.is_empty and right.is_empty
            return sub_equal(left.value, right.value)
        case Vec(), Vec():
            return len(left.items) == len(right.items) and all(
                sub_equal(l, r) for l, r in zip(left.items, right.items))
        case Variant(), Variant():
            return left.field.label == right.field.label and sub_equal(left.field.value, right.field.value)
        case Integer() | Float(), Number():
            # An untyped literal on the right is read at the left side's size.
            try:
                return left == cast(right, PrimType(left.kind))
            except (KindError, RangeError):
                return False
    return left == right


def same_kind(left: Value, right: Value, op: str):
    if left.kind != right.kind:
        raise KindError(f"{op} expects operands of the same kind, got {left.kind} and {right.kind}")


def compare(left: Value, right: Value) -> int:
    """Three-way numeric comparison; mixed integer/float operands compare as floats."""
    if not isinstance(left, NUMERIC) or not isinstance(right, NUMERIC):
        bad = right if isinstance(left, NUMERIC) else left
        raise KindError(f"cannot compare {bad.kind}; expected a number")
    if isinstance(left, Float) or isinstance(right, Float):
        a, b = as_float(left), as_float(right)
    else:
        a, b = as_int(left), as_int(right)
    return (a > b) - (a < b)
