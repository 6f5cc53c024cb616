import pytest

from icrepl.repl_casting import cast, to_float32
from icrepl.repl_datatypes import (
    Bool, Null, Text, Blob, Number, Integer, Float, Opt, Vec, Record, Principal, Service, Func,
    PrimType, OptType, VecType, BLOB, RecordType, VariantType, FuncType, ServiceType,
    KindError, RangeError, DecodeError,
)

NAT = PrimType("nat")


def test_text_and_blob():
    assert cast(Text("hi"), BLOB) == Blob(b"hi")
    assert cast(Blob("héllo".encode("utf-8")), PrimType("text")) == Text("héllo")
    with pytest.raises(DecodeError):
        cast(Blob(b"\xff\xfe"), PrimType("text"))


def test_vec_of_bytes_to_blob():
    assert cast(Vec((Number.of(1), Integer(2, "nat8"))), BLOB) == Blob(b"\x01\x02")
    with pytest.raises(RangeError):
        cast(Vec((Number.of(256),)), BLOB)
    with pytest.raises(KindError):
        cast(Vec((Text("a"),)), BLOB)


def test_number_to_sized_integers():
    assert cast(Number.of(255), PrimType("nat8")) == Integer(255, "nat8")
    assert cast(Number.of(-128), PrimType("int8")) == Integer(-128, "int8")
    with pytest.raises(RangeError):
        cast(Number.of(256), PrimType("nat8"))
    with pytest.raises(RangeError):
        cast(Number.of(-1), NAT)
    assert cast(Integer(7, "nat8"), PrimType("int64")) == Integer(7, "int64")


def test_float_to_integer_truncates_toward_zero():
    assert cast(Float(3.9), NAT) == Integer(3, "nat")
    assert cast(Float(-2.7), PrimType("int8")) == Integer(-2, "int8")
    with pytest.raises(RangeError):
        cast(Float(-2.7), NAT)
    with pytest.raises(RangeError):
        cast(Float(float("inf")), PrimType("int"))


def test_to_float_kinds():
    assert cast(Number.of(1), PrimType("float32")) == Float(1.0, "float32")
    assert cast(Float(0.1), PrimType("float32")).value == to_float32(0.1)
    assert cast(Float(0.1), PrimType("float32")).value != 0.1
    assert cast(Integer(3, "nat8"), PrimType("float64")) == Float(3.0, "float64")
    with pytest.raises(RangeError):
        cast(Float(1e40), PrimType("float32"))


def test_identity_casts():
    assert cast(Bool(True), PrimType("bool")) == Bool(True)
    assert cast(Null(), PrimType("null")) == Null()
    assert cast(Text("x"), PrimType("text")) == Text("x")


def test_reference_family_keeps_the_id():
    assert cast(Service("aaaaa-aa"), PrimType("principal")) == Principal("aaaaa-aa")
    assert cast(Func("aaaaa-aa", "m"), ServiceType()) == Service("aaaaa-aa")
    assert cast(Func("aaaaa-aa", "m"), FuncType()) == Func("aaaaa-aa", "m")
    with pytest.raises(KindError):
        cast(Principal("aaaaa-aa"), FuncType())
    with pytest.raises(KindError):
        cast(Text("aaaaa-aa"), PrimType("principal"))


def test_opt_targets():
    opt_nat = OptType(NAT)
    assert cast(Null(), opt_nat) == Opt()
    assert cast(Number.of(1), opt_nat) == Opt(Integer(1, "nat"))
    assert cast(Opt(Number.of(1)), opt_nat) == Opt(Integer(1, "nat"))
    assert cast(Opt(), opt_nat) == Opt()


def test_vec_casts_item_by_item():
    assert cast(Vec((Number.of(1), Number.of(-1))), VecType(PrimType("int"))) == \
        Vec((Integer(1, "int"), Integer(-1, "int")))
    with pytest.raises(RangeError):
        cast(Vec((Number.of(-1),)), VecType(NAT))


def test_record_and_variant_targets_are_unsupported():
    with pytest.raises(NotImplementedError):
        cast(Record(), RecordType())
    with pytest.raises(NotImplementedError):
        cast(Record(), VariantType())


def test_other_combinations_are_kind_errors():
    with pytest.raises(KindError):
        cast(Bool(True), NAT)
    with pytest.raises(KindError):
        cast(Text("1"), NAT)
    with pytest.raises(KindError):
        cast(Text("x"), PrimType("bool"))
    with pytest.raises(KindError):
        cast(Number.of(1), VecType(NAT))
