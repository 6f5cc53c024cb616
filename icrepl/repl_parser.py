"""
Parser for icrepl scripts: surface syntax to the nodes of `repl_syntax`.

The grammar is built once with pyparsing and cached on the class. Parse
actions construct syntax nodes directly, so `parse` returns a ready-to-run
list of commands.
"""

import re
from typing import List, Optional

import pyparsing as pp

from icrepl.repl_datatypes import (
    Bool, Null, Text, Blob, Number, Float, Principal, Service, Func, Label,
    IdlType, PrimType, OptType, VecType, BLOB, FieldType, RecordType, VariantType, FuncType,
    ServiceType, PRIMITIVE_TYPES, ReplError, ParseError,
)
from icrepl.repl_syntax import (
    Var, Select, Annotated, Apply, FieldExp, OptExp, VecExp, RecordExp, VariantExp, Method,
    Call, ParCall, Decode, OptionSel, FieldSel, IndexSel, MapSel, FilterSel, FoldSel, SizeSel,
    Command, Let, Show, Assert, FuncDef, If, While, Import, Load, Export,
)

pp.ParserElement.enable_packrat()

KEYWORDS = (
    "let", "assert", "function", "if", "else", "while", "import", "load", "export", "as",
    "call", "par_call", "encode", "decode",
    "true", "false", "null", "opt", "vec", "record", "variant", "blob",
    "principal", "service", "func",
)

FUNC_MODES = ("query", "composite_query", "oneway")

_ESCAPE = re.compile(r'\\(u\{[0-9a-fA-F_]+\}|[0-9a-fA-F]{2}|.)', re.S)
_SIMPLE_ESCAPES = {"n": b"\n", "t": b"\t", "r": b"\r", '"': b'"', "'": b"'", "\\": b"\\"}


def unescape(body: str) -> bytes:
    """Resolve `\\n \\t \\r \\" \\' \\\\ \\u{..} \\hh` escapes into raw bytes."""
    out = bytearray()
    pos = 0
    for m in _ESCAPE.finditer(body):
        out += body[pos:m.start()].encode("utf-8")
        esc = m.group(1)
        if esc.startswith("u{"):
            try:
                out += chr(int(esc[2:-1].replace("_", ""), 16)).encode("utf-8")
            except (ValueError, OverflowError):
                raise ParseError(f"invalid unicode escape \\{esc}") from None
        elif len(esc) == 2:
            out.append(int(esc, 16))
        elif esc in _SIMPLE_ESCAPES:
            out += _SIMPLE_ESCAPES[esc]
        else:
            raise ParseError(f"unknown escape \\{esc}")
        pos = m.end()
    out += body[pos:].encode("utf-8")
    return bytes(out)


def _text(t) -> str:
    raw = unescape(t[0][1:-1])
    try:
        return raw.decode("utf-8")
    except UnicodeDecodeError:
        raise ParseError(f"text literal {t[0]} is not valid UTF-8") from None


def _located(build):
    """Wrap a node builder so the node remembers where it started."""
    def action(s, loc, t):
        node = build(t)
        node.loc = {'line': pp.lineno(loc, s), 'col': pp.col(loc, s), 'text': pp.line(loc, s).strip()}
        return node
    return action


def _record_fields(fields) -> List[FieldType]:
    """Positional fields take the id after the previous field's id."""
    out = []
    next_id = 0
    for label, ty in fields:
        if label is None:
            label = Label.numbered(next_id)
        next_id = label.id + 1
        out.append(FieldType(label, ty))
    return out


def _field_id(s, loc, t):
    if t[0] >= 1 << 32:
        raise pp.ParseException(s, loc, f"field id {t[0]} out of range")
    return Label.numbered(t[0])


def _select(t):
    base, *sels = list(t)
    return Select(base, sels) if sels else base


def _if(t):
    cond, then = t[0], list(t[1])
    else_ = []
    if len(t) > 2:
        rest = t[2]
        else_ = [rest] if isinstance(rest, If) else list(rest)
    return If(cond, then, else_)


def _build_grammar():
    S = pp.Suppress
    LBRACE, RBRACE, LPAR, RPAR, LBRACK, RBRACK = map(S, "{}()[]")
    SEMI, COMMA, DOT, EQ, COLON = map(S, ";,.=:")
    kw = {k: pp.Keyword(k) for k in KEYWORDS}
    K = lambda k: S(kw[k])
    any_keyword = pp.MatchFirst(list(kw.values()))

    ident = (~any_keyword + pp.Regex(r"[A-Za-z_][A-Za-z0-9_]*")).set_name("identifier")
    text_tok = pp.Regex(r'"(?:[^"\\]|\\.)*"', flags=re.S).set_name("text")
    text = text_tok.copy().set_parse_action(_text)
    nat = pp.Regex(r"[0-9][0-9_]*").set_parse_action(lambda t: int(t[0].replace("_", "")))

    label = (
        ident.copy().set_parse_action(lambda t: Label.named(t[0]))
        | text.copy().add_parse_action(lambda t: Label.named(t[0]))
        | nat.copy().add_parse_action(_field_id)
    )

    # --- Types ---
    type_ = pp.Forward().set_name("type")
    prim = pp.MatchFirst([pp.Keyword(n) for n in PRIMITIVE_TYPES]).set_parse_action(lambda t: PrimType(t[0]))
    blob_t = pp.Keyword("blob").set_parse_action(lambda: BLOB)
    opt_t = (S(pp.Keyword("opt")) + type_).set_parse_action(lambda t: OptType(t[0]))
    vec_t = (S(pp.Keyword("vec")) + type_).set_parse_action(lambda t: VecType(t[0]))
    record_field_t = pp.Group(label + COLON + type_) | pp.Group(type_)
    record_t = (S(pp.Keyword("record")) + LBRACE
                + pp.Group(pp.Opt(pp.DelimitedList(record_field_t, delim=";", allow_trailing_delim=True)))
                + RBRACE).set_parse_action(
        lambda t: RecordType(tuple(_record_fields(
            [(f[0], f[1]) if len(f) == 2 else (None, f[0]) for f in t[0]]))))
    variant_field_t = pp.Group(label + pp.Opt(COLON + type_, default=PrimType("null")))
    variant_t = (S(pp.Keyword("variant")) + LBRACE
                 + pp.Group(pp.Opt(pp.DelimitedList(variant_field_t, delim=";", allow_trailing_delim=True)))
                 + RBRACE).set_parse_action(
        lambda t: VariantType(tuple(FieldType(f[0], f[1]) for f in t[0])))
    type_list = pp.Group(LPAR + pp.Opt(pp.DelimitedList(type_, delim=",", allow_trailing_delim=True)) + RPAR)
    mode = pp.MatchFirst([pp.Keyword(m) for m in FUNC_MODES])
    signature = (type_list + S("->") + type_list + pp.Group(pp.ZeroOrMore(mode))).set_parse_action(
        lambda t: FuncType(tuple(t[0]), tuple(t[1]), tuple(t[2])))
    func_t = S(pp.Keyword("func")) + signature
    method_t = pp.Group((ident | text) + COLON + (func_t | signature))
    service_t = (S(pp.Keyword("service")) + LBRACE
                 + pp.Group(pp.Opt(pp.DelimitedList(method_t, delim=";", allow_trailing_delim=True)))
                 + RBRACE).set_parse_action(
        lambda t: ServiceType(tuple((m[0], m[1]) for m in t[0])))
    type_ <<= blob_t | opt_t | vec_t | record_t | variant_t | func_t | service_t | prim

    # --- Expressions ---
    exp = pp.Forward().set_name("expression")

    float_lit = pp.Regex(r"[+-]?[0-9][0-9_]*(\.[0-9][0-9_]*([eE][+-]?[0-9]+)?|[eE][+-]?[0-9]+)").set_parse_action(
        lambda t: Float(float(t[0].replace("_", ""))))
    int_lit = pp.Regex(r"[+-]?(0[xX][0-9a-fA-F_]+|[0-9][0-9_]*)").set_parse_action(lambda t: Number(t[0]))
    bool_lit = (kw["true"] | kw["false"]).copy().set_parse_action(lambda t: Bool(t[0] == "true"))
    null_lit = kw["null"].copy().set_parse_action(lambda: Null())
    text_lit = text.copy().add_parse_action(lambda t: Text(t[0]))
    blob_lit = (K("blob") + text_tok).set_parse_action(lambda t: Blob(unescape(t[0][1:-1])))
    principal_lit = (K("principal") + text).set_parse_action(lambda t: Principal(t[0]))
    service_lit = (K("service") + text).set_parse_action(lambda t: Service(t[0]))
    func_lit = (K("func") + text + DOT + ident).set_parse_action(lambda t: Func(t[0], t[1]))

    opt_exp = (K("opt") + exp).set_parse_action(lambda t: OptExp(t[0]))
    vec_exp = (K("vec") + LBRACE
               + pp.Group(pp.Opt(pp.DelimitedList(exp, delim=";", allow_trailing_delim=True)))
               + RBRACE).set_parse_action(lambda t: VecExp(list(t[0])))
    field_exp = (label + EQ + exp).set_parse_action(lambda t: FieldExp(t[0], t[1])) \
        | exp.copy().set_parse_action(lambda t: FieldExp(None, t[0]))
    record_exp = (K("record") + LBRACE
                  + pp.Group(pp.Opt(pp.DelimitedList(field_exp, delim=";", allow_trailing_delim=True)))
                  + RBRACE).set_parse_action(lambda t: RecordExp(list(t[0])))
    variant_field = (label + pp.Opt(EQ + exp, default=Null())).set_parse_action(lambda t: FieldExp(t[0], t[1]))
    variant_exp = (K("variant") + LBRACE + variant_field + pp.Opt(SEMI) + RBRACE).set_parse_action(
        lambda t: VariantExp(t[0]))

    args = pp.Group(LPAR + pp.Opt(pp.DelimitedList(exp, delim=",", allow_trailing_delim=True)) + RPAR)
    target = (text_tok.copy().set_parse_action(lambda t: (_text(t), True))
              | ident.copy().set_parse_action(lambda t: (t[0], False)))
    method_ref = (target + DOT + ident).set_parse_action(lambda t: Method(t[0][0], t[1], t[0][1]))

    call_exp = (K("call") + pp.Opt(K("as") + target, default=None) + method_ref + args).set_parse_action(_located(
        lambda t: Call(t[1], list(t[2]), "call") if t[0] is None
        else Call(t[1], list(t[2]), "proxy", t[0][0], t[0][1])))
    par_item = (method_ref + args).set_parse_action(_located(lambda t: Call(t[0], list(t[1]), "call")))
    par_call_exp = (K("par_call") + LBRACK
                    + pp.Group(pp.Opt(pp.DelimitedList(par_item, delim=",", allow_trailing_delim=True)))
                    + RBRACK).set_parse_action(_located(lambda t: ParCall(list(t[0]))))
    encode_exp = (K("encode") + pp.Opt(method_ref, default=None) + args).set_parse_action(_located(
        lambda t: Call(t[0], list(t[1]), "encode")))
    decode_exp = (K("decode") + pp.Opt(K("as") + method_ref, default=None) + exp).set_parse_action(_located(
        lambda t: Decode(t[0], t[1])))

    apply_exp = (ident + args).set_parse_action(_located(lambda t: Apply(t[0], list(t[1]))))
    var_exp = ident.copy().set_parse_action(_located(lambda t: Var(t[0])))
    paren_exp = (LPAR + exp + pp.Opt(COLON + type_) + RPAR).set_parse_action(
        lambda t: Annotated(t[0], t[1]) if len(t) > 1 else t[0])

    primary = (
        call_exp | par_call_exp | encode_exp | decode_exp
        | float_lit | int_lit | bool_lit | null_lit | text_lit | blob_lit
        | principal_lit | service_lit | func_lit
        | opt_exp | vec_exp | record_exp | variant_exp
        | paren_exp | apply_exp | var_exp
    )

    func_name = ident.copy()
    selector = (
        S("?").set_parse_action(lambda: OptionSel())
        | (DOT + S(pp.Keyword("map")) + LPAR + func_name + RPAR).set_parse_action(lambda t: MapSel(t[0]))
        | (DOT + S(pp.Keyword("filter")) + LPAR + func_name + RPAR).set_parse_action(lambda t: FilterSel(t[0]))
        | (DOT + S(pp.Keyword("fold")) + LPAR + exp + COMMA + func_name + RPAR).set_parse_action(
            lambda t: FoldSel(t[0], t[1]))
        | (DOT + S(pp.Keyword("size")) + LPAR + RPAR).set_parse_action(lambda: SizeSel())
        | (DOT + (ident | text)).set_parse_action(lambda t: FieldSel(t[0]))
        | (LBRACK + exp + RBRACK).set_parse_action(lambda t: IndexSel(t[0]))
    )
    exp <<= (primary + pp.ZeroOrMore(selector)).set_parse_action(_select)

    # --- Commands ---
    command = pp.Forward().set_name("command")
    block = pp.Group(LBRACE + pp.ZeroOrMore(command | SEMI) + RBRACE)

    let_cmd = (K("let") + ident + EQ + exp).set_parse_action(_located(lambda t: Let(t[0], t[1])))
    assert_cmd = (K("assert") + exp + pp.one_of("== ~= !=") + exp).set_parse_action(_located(
        lambda t: Assert(t[1], t[0], t[2])))
    params = pp.Group(LPAR + pp.Opt(pp.DelimitedList(ident, delim=",")) + RPAR)
    func_cmd = (K("function") + ident + params + block).set_parse_action(_located(
        lambda t: FuncDef(t[0], list(t[1]), list(t[2]))))
    if_cmd = pp.Forward()
    if_cmd <<= (K("if") + exp + block + pp.Opt(K("else") + (if_cmd | block))).set_parse_action(_located(_if))
    while_cmd = (K("while") + exp + block).set_parse_action(_located(lambda t: While(t[0], list(t[1]))))
    import_cmd = (K("import") + ident + EQ + text + pp.Opt(K("as") + text, default=None)).set_parse_action(
        _located(lambda t: Import(t[0], t[1], t[2])))
    load_cmd = (K("load") + text).set_parse_action(_located(lambda t: Load(t[0])))
    export_cmd = (K("export") + text).set_parse_action(_located(lambda t: Export(t[0])))
    show_cmd = exp.copy().set_parse_action(_located(lambda t: Show(t[0])))

    command <<= let_cmd | assert_cmd | func_cmd | if_cmd | while_cmd | import_cmd | load_cmd | export_cmd | show_cmd

    comment = pp.c_style_comment | pp.dbl_slash_comment
    script = pp.ZeroOrMore(command | SEMI) + pp.StringEnd()
    script.ignore(comment)
    type_only = type_ + pp.StringEnd()
    type_only.ignore(comment)
    return script, type_only


class ScriptParser:
    """Parses icrepl source into a list of commands."""

    _script: Optional[pp.ParserElement] = None
    _type: Optional[pp.ParserElement] = None

    def __init__(self):
        if ScriptParser._script is None:
            ScriptParser._script, ScriptParser._type = _build_grammar()

    def parse(self, source: str) -> List[Command]:
        try:
            return list(self._script.parse_string(source, parse_all=True))
        except pp.ParseBaseException as e:
            raise ParseError(e.msg, e.lineno, e.col) from None
        except ParseError:
            raise
        except ReplError as e:
            # literal validation inside parse actions, e.g. an out of range field id
            raise ParseError(e.message) from None

    def parse_type(self, source: str) -> IdlType:
        try:
            return self._type.parse_string(source, parse_all=True)[0]
        except pp.ParseBaseException as e:
            raise ParseError(f"invalid type {source!r}: {e.msg}", e.lineno, e.col) from None


def parse_type(source: str) -> IdlType:
    return ScriptParser().parse_type(source)
