"""
The postfix selector pipeline: `?`, `.name`, `[n]`, `.map(f)`, `.filter(f)`,
`.fold(init, f)` and `.size()`.

map/filter/fold/size share one code path over an "items" view of the
receiver. Vecs, records and text each provide an adapter that explodes the
receiver into a list of item values and reassembles a list of results into a
value of the receiver's kind.
"""

from abc import ABC, abstractmethod
from typing import List, TYPE_CHECKING

from icrepl.repl_datatypes import (
    Value, Bool, Text, Blob, Number, Integer, Opt, Vec, Record, Variant, Field, Label,
    ReplError, KindError, NoSuchField, WrongVariant, IndexOutOfRange, EmptyOption, as_int,
)
from icrepl.repl_syntax import (
    Selector, OptionSel, FieldSel, IndexSel, MapSel, FilterSel, FoldSel, SizeSel,
)

if TYPE_CHECKING:
    from icrepl.repl_interpreter import Evaluator


# =================================================================
# Item adapters
# =================================================================

class Items(ABC):
    """A receiver viewed as an ordered sequence of item values."""
    def __init__(self, receiver: Value):
        self.receiver = receiver

    @abstractmethod
    def explode(self) -> List[Value]:
        raise NotImplementedError

    @abstractmethod
    def rebuild(self, values: List[Value]) -> Value:
        raise NotImplementedError


class VecItems(Items):
    def explode(self):
        return list(self.receiver.items)

    def rebuild(self, values):
        return Vec(tuple(values))


class RecordItems(Items):
    """Fields are exposed as `record { key; value }` tuples, key rendered as text."""
    def explode(self):
        return [Record.tuple_of([Text(str(f.label)), f.value]) for f in self.receiver.fields]

    def rebuild(self, values):
        fields = []
        for v in values:
            if not (isinstance(v, Record) and len(v.fields) == 2 and v.is_tuple()):
                raise KindError("expect function to return record { key; value }")
            key, val = v.fields[0].value, v.fields[1].value
            fields.append(Field(_key_to_label(key), val))
        return Record(tuple(fields))


class TextItems(Items):
    def explode(self):
        return [Text(c) for c in self.receiver.value]

    def rebuild(self, values):
        out = []
        for v in values:
            if not isinstance(v, Text):
                raise KindError(f"expect function to return text, got {v.kind}")
            out.append(v.value)
        return Text("".join(out))


def _key_to_label(key: Value) -> Label:
    match key:
        case Text(value=s):
            if s.isascii() and s.isdigit():
                return Label.numbered(int(s))
            return Label.named(s)
        case Number() | Integer():
            return Label.numbered(as_int(key))
    raise KindError(f"record key must be text or a number, got {key.kind}")


def items_of(value: Value) -> Items:
    match value:
        case Vec():
            return VecItems(value)
        case Record():
            return RecordItems(value)
        case Text():
            return TextItems(value)
    raise KindError(f"{value.kind} is not a vec, record or text")


# =================================================================
# Projection
# =================================================================

def option(value: Value) -> Value:
    if not isinstance(value, Opt):
        raise KindError(f"? expects an opt, got {value.kind}")
    if value.is_empty:
        raise EmptyOption("option is empty (null)")
    return value.value


def field(value: Value, name: str) -> Value:
    label = Label.named(name)
    match value:
        case Record():
            found = value.get(label)
            if found is None:
                raise NoSuchField(f"record field {name} not found")
            return found
        case Variant():
            if value.field.label != label:
                raise WrongVariant(f"variant is {value.field.label}, not {name}")
            return value.field.value
    raise KindError(f"field .{name} cannot be applied to {value.kind}")


def index(value: Value, idx: Value) -> Value:
    try:
        n = as_int(idx)
    except KindError:
        raise KindError(f"index must be an integer, got {idx.kind}") from None
    if n < 0:
        raise IndexOutOfRange(f"index {n} is negative")
    match value:
        case Vec(items=items):
            if n >= len(items):
                raise IndexOutOfRange(f"{n} out of bound {len(items)}")
            return items[n]
        case Text(value=s):
            if n >= len(s):
                raise IndexOutOfRange(f"{n} out of bound {len(s)}")
            return Text(s[n])
        case Blob(value=b):
            if n >= len(b):
                raise IndexOutOfRange(f"{n} out of bound {len(b)}")
            return Integer(b[n], "nat8")
        case Record():
            found = value.get(Label.numbered(n))
            if found is None:
                raise NoSuchField(f"record field {n} not found")
            return found
        case Variant():
            if value.field.label != Label.numbered(n):
                raise WrongVariant(f"variant is {value.field.label}, not {n}")
            return value.field.value
    raise KindError(f"index [{n}] cannot be applied to {value.kind}")


# =================================================================
# Pipeline
# =================================================================

class SelectorEngine:
    """Applies selector pipelines; calls back into the evaluator for user functions."""
    def __init__(self, evaluator: 'Evaluator'):
        self.evaluator = evaluator

    async def project(self, value: Value, selectors: List[Selector]) -> Value:
        result = value
        for sel in selectors:
            result = await self.apply(result, sel)
        return result

    async def apply(self, value: Value, sel: Selector) -> Value:
        match sel:
            case OptionSel():
                return option(value)
            case FieldSel(name=name):
                return field(value, name)
            case IndexSel(index=exp):
                return index(value, await self.evaluator.eval(exp))
            case MapSel(func=f):
                return await self.map(value, f)
            case FilterSel(func=f):
                return await self.filter(value, f)
            case FoldSel(init=init, func=f):
                return await self.fold(value, await self.evaluator.eval(init), f)
            case SizeSel():
                return Integer(len(items_of(value).explode()), "nat")
        raise KindError(f"unknown selector {sel!r}")

    async def map(self, value: Value, func: str) -> Value:
        view = items_of(value)
        results = []
        for item in view.explode():
            results.append(await self.evaluator.apply_function(func, [item]))
        return view.rebuild(results)

    async def filter(self, value: Value, func: str) -> Value:
        view = items_of(value)
        kept = []
        for item in view.explode():
            try:
                keep = await self.evaluator.apply_function(func, [item])
            except (ReplError, NotImplementedError) as e:
                self.evaluator._dbg("filter: predicate failed, dropping item:", e)
                continue
            if keep == Bool(True):
                kept.append(item)
        return view.rebuild(kept)

    async def fold(self, value: Value, init: Value, func: str) -> Value:
        acc = init
        for item in items_of(value).explode():
            acc = await self.evaluator.apply_function(func, [acc, item])
        return acc
