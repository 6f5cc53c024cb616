"""
A pretty-printer for icrepl values.

The output is valid literal syntax: feeding it back to the parser yields an
equal value (up to the variant discriminant index).
"""
import re

from icrepl.repl_datatypes import (
    Value, Bool, Null, Text, Blob, Number, Integer, Float, Opt, Vec, Record, Variant,
    Principal, Service, Func, Label,
)

_IDENT = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


def quote_text(s: str) -> str:
    out = []
    for ch in s:
        match ch:
            case '"':
                out.append('\\"')
            case '\\':
                out.append('\\\\')
            case '\n':
                out.append('\\n')
            case '\t':
                out.append('\\t')
            case '\r':
                out.append('\\r')
            case _ if not ch.isprintable():
                out.append(f"\\u{{{ord(ch):x}}}")
            case _:
                out.append(ch)
    return '"' + "".join(out) + '"'


def quote_bytes(b: bytes) -> str:
    out = []
    for byte in b:
        if byte in (0x22, 0x5c):
            out.append("\\" + chr(byte))
        elif 0x20 <= byte < 0x7f:
            out.append(chr(byte))
        else:
            out.append(f"\\{byte:02x}")
    return '"' + "".join(out) + '"'


class Printer:
    """Formats icrepl values into readable, valid literal strings."""

    def __init__(self, indent_width=2):
        self._indent_char = " " * indent_width
        self._handlers = self._create_handlers()

    def pformat(self, obj, level=0):
        """Public entry point to format an object."""
        handler = self._handlers.get(type(obj))
        if handler is None:
            return repr(obj)
        return handler(obj, level)

    def _create_handlers(self):
        return {
            Bool: self._pformat_bool,
            Null: self._pformat_null,
            Text: self._pformat_text,
            Blob: self._pformat_blob,
            Number: self._pformat_number,
            Integer: self._pformat_integer,
            Float: self._pformat_float,
            Opt: self._pformat_opt,
            Vec: self._pformat_vec,
            Record: self._pformat_record,
            Variant: self._pformat_variant,
            Principal: self._pformat_principal,
            Service: self._pformat_service,
            Func: self._pformat_func,
        }

    def _pformat_bool(self, obj, level):
        return 'true' if obj.value else 'false'

    def _pformat_null(self, obj, level):
        return 'null'

    def _pformat_text(self, obj, level):
        return quote_text(obj.value)

    def _pformat_blob(self, obj, level):
        return f"blob {quote_bytes(obj.value)}"

    def _pformat_number(self, obj, level):
        return obj.text

    def _pformat_integer(self, obj, level):
        return f"({obj.value} : {obj.type_name})"

    def _pformat_float(self, obj, level):
        text = repr(obj.value)
        if obj.type_name == "float32":
            return f"({text} : float32)"
        return text

    def _pformat_opt(self, obj, level):
        if obj.is_empty:
            return '(null : opt reserved)'
        return f"opt {self.pformat(obj.value, level)}"

    def _pformat_vec(self, obj, level):
        if not obj.items:
            return "vec {}"
        return "vec { " + "; ".join(self.pformat(v, level + 1) for v in obj.items) + " }"

    def _pformat_label(self, label: Label) -> str:
        if label.name is None:
            return str(label.id)
        if _IDENT.match(label.name):
            return label.name
        return quote_text(label.name)

    def _pformat_record(self, obj, level):
        if not obj.fields:
            return "record {}"
        if obj.is_tuple():
            body = "; ".join(self.pformat(f.value, level + 1) for f in obj.fields)
        else:
            body = "; ".join(
                f"{self._pformat_label(f.label)} = {self.pformat(f.value, level + 1)}" for f in obj.fields)
        return "record { " + body + " }"

    def _pformat_variant(self, obj, level):
        label = self._pformat_label(obj.field.label)
        if isinstance(obj.field.value, Null):
            return f"variant {{ {label} }}"
        return f"variant {{ {label} = {self.pformat(obj.field.value, level + 1)} }}"

    def _pformat_principal(self, obj, level):
        return f'principal "{obj.id}"'

    def _pformat_service(self, obj, level):
        return f'service "{obj.id}"'

    def _pformat_func(self, obj, level):
        return f'func "{obj.id}".{obj.method}'
