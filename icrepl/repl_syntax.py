"""
Syntax tree nodes produced by the parser and consumed by the evaluator.

Literal atoms (numbers, text, principals, ...) are represented directly by
their `Value`; the evaluator treats any `Value` found in the tree as
self-evaluating. Everything else is one of the node classes below.
"""

from dataclasses import dataclass, field
from typing import List, Optional

from icrepl.repl_datatypes import Label, IdlType


class Node:
    """Base class for expression, selector and command nodes."""
    loc: Optional[dict] = None


# =================================================================
# Expressions
# =================================================================

@dataclass
class Var(Node):
    name: str


@dataclass
class Select(Node):
    """A primary expression followed by a postfix selector pipeline."""
    base: object
    selectors: List['Selector']


@dataclass
class Annotated(Node):
    """`(exp : type)`"""
    exp: object
    type: IdlType


@dataclass
class Apply(Node):
    """`name(args...)`, a builtin or user function application."""
    func: str
    args: List[object]


@dataclass
class FieldExp:
    """A record/variant literal field; label is None for positional fields."""
    label: Optional[Label]
    exp: object


@dataclass
class OptExp(Node):
    exp: object


@dataclass
class VecExp(Node):
    items: List[object]


@dataclass
class RecordExp(Node):
    fields: List[FieldExp]


@dataclass
class VariantExp(Node):
    field: FieldExp


@dataclass
class Method:
    """`target.method`, where target names a variable or is a principal text."""
    target: str
    method: str
    quoted: bool = False

    def __str__(self):
        t = f'"{self.target}"' if self.quoted else self.target
        return f"{t}.{self.method}"


@dataclass
class Call(Node):
    """`call m(args)` / `call as proxy m(args)` / `encode m(args)` / `encode (args)`."""
    method: Optional[Method]
    args: List[object]
    mode: str = "call"  # 'call' | 'encode' | 'proxy'
    proxy: Optional[str] = None
    proxy_quoted: bool = False


@dataclass
class ParCall(Node):
    calls: List[Call]


@dataclass
class Decode(Node):
    method: Optional[Method]
    blob: object


# =================================================================
# Selectors
# =================================================================

class Selector(Node):
    pass


@dataclass
class OptionSel(Selector):
    pass


@dataclass
class FieldSel(Selector):
    name: str


@dataclass
class IndexSel(Selector):
    index: object


@dataclass
class MapSel(Selector):
    func: str


@dataclass
class FilterSel(Selector):
    func: str


@dataclass
class FoldSel(Selector):
    init: object
    func: str


@dataclass
class SizeSel(Selector):
    pass


# =================================================================
# Commands
# =================================================================

class Command(Node):
    pass


@dataclass
class Let(Command):
    name: str
    exp: object


@dataclass
class Show(Command):
    """A bare expression statement; its value is bound to `_`."""
    exp: object


@dataclass
class Assert(Command):
    op: str  # '==' | '~=' | '!='
    left: object
    right: object


@dataclass
class FuncDef(Command):
    name: str
    params: List[str]
    body: List[Command]


@dataclass
class If(Command):
    cond: object
    then: List[Command]
    else_: List[Command] = field(default_factory=list)


@dataclass
class While(Command):
    cond: object
    body: List[Command]


@dataclass
class Import(Command):
    name: str
    principal: str
    interface: Optional[str] = None


@dataclass
class Load(Command):
    path: str


@dataclass
class Export(Command):
    path: str
