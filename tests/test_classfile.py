"""Tests for the class file writer and bytecode builder."""

import struct

import pytest

from teenyjvm.classfile import (
    AccessFlags, ArrayType, BytecodeBuilder, ClassFile, ConstantPool, ConstantPoolTag, Opcode,
)
from teenyjvm.classreader import read_class_bytes


@pytest.fixture
def builder():
    return BytecodeBuilder(ConstantPool())


class TestConstantPool:
    def test_indices_start_at_one(self):
        cp = ConstantPool()
        assert cp.add_utf8("a") == 1
        assert cp.add_integer(70000) == 2

    def test_entries_are_deduplicated(self):
        cp = ConstantPool()
        first = cp.add_methodref("Foo", "bar", "(I)I")
        size = len(cp)
        assert cp.add_methodref("Foo", "bar", "(I)I") == first
        assert len(cp) == size

    def test_methodref_pulls_in_dependencies(self):
        cp = ConstantPool()
        cp.add_methodref("Foo", "bar", "()V")
        # utf8 Foo, class, utf8 bar, utf8 ()V, name_and_type, methodref
        assert len(cp) == 7

    def test_write_integer(self):
        cp = ConstantPool()
        cp.add_integer(-2)
        out = bytearray()
        cp.write(out)
        assert bytes(out) == struct.pack(">HBi", 2, ConstantPoolTag.INTEGER, -2)


class TestBytecodeBuilder:
    @pytest.mark.parametrize("value, expected", [
        (-1, [Opcode.ICONST_M1]),
        (5, [Opcode.ICONST_5]),
        (6, [Opcode.BIPUSH, 6]),
        (-128, [Opcode.BIPUSH, 0x80]),
        (128, [Opcode.SIPUSH, 0x00, 0x80]),
        (-32768, [Opcode.SIPUSH, 0x80, 0x00]),
        (32768, [Opcode.LDC, 1]),
    ])
    def test_iconst_picks_shortest_encoding(self, builder, value, expected):
        builder.iconst(value)
        assert list(builder.code) == expected
        assert builder.build().max_stack == 1

    def test_short_forms_for_low_slots(self, builder):
        builder.iload(3)
        builder.iload(4)
        builder.astore(0)
        builder.istore(200)
        assert list(builder.code) == [Opcode.ILOAD_3, Opcode.ILOAD, 4, Opcode.ASTORE_0,
                                      Opcode.ISTORE, 200]
        assert builder.max_locals == 201

    def test_max_locals_starts_at_parameter_count(self):
        class_file = ClassFile("Foo")
        builder = class_file.new_method("f", "(III)V")
        assert builder.max_locals == 3

    @pytest.mark.parametrize("emit", [
        lambda b: b.bipush(128),
        lambda b: b.sipush(-32769),
        lambda b: b.ldc(2**31),
        lambda b: b.iload(256),
        lambda b: b.iinc(0, 200),
    ])
    def test_operand_range_checks(self, builder, emit):
        with pytest.raises(ValueError):
            emit(builder)

    def test_forward_goto_offset(self, builder):
        builder.goto("Skip")
        builder.iconst(0)
        builder.label("Skip")
        builder.iconst(5)
        builder.ireturn()
        code = builder.build().code
        assert struct.unpack_from(">h", code, 1)[0] == 4

    def test_backward_branch_offset(self, builder):
        builder.label("Top")
        builder.iconst(1)
        builder.ifne("Top")
        code = builder.build().code
        # ifne sits at pc 1 and jumps back to pc 0
        assert code[1] == Opcode.IFNE
        assert struct.unpack_from(">h", code, 2)[0] == -1

    def test_undefined_label(self, builder):
        builder.goto("Nowhere")
        with pytest.raises(ValueError, match="Undefined label"):
            builder.build()

    def test_duplicate_label(self, builder):
        builder.label("L")
        with pytest.raises(ValueError, match="Duplicate label"):
            builder.label("L")

    def test_stack_tracking(self, builder):
        builder.getstatic("java/lang/System", "out", "Ljava/io/PrintStream;")
        builder.iconst(1)
        builder.iconst(2)
        builder.invokestatic("Foo", "add", "(II)I")
        builder.invokevirtual("java/io/PrintStream", "println", "(I)V")
        builder.return_()
        assert builder.build().max_stack == 3

    def test_max_stack_follows_backward_jump_into_block(self, builder):
        # Block A is only reached from B, with two values on the stack
        builder.iconst(1)
        builder.goto("B")
        builder.label("A")
        builder.iadd()
        builder.ireturn()
        builder.label("B")
        builder.iconst(2)
        builder.goto("A")
        assert builder.build().max_stack == 2

    def test_max_stack_takes_deepest_path(self, builder):
        builder.iconst(0)
        builder.ifeq("Deep")
        builder.iconst(1)
        builder.ireturn()
        builder.label("Deep")
        builder.iconst(1)
        builder.iconst(2)
        builder.iconst(3)
        builder.iadd()
        builder.iadd()
        builder.ireturn()
        assert builder.build().max_stack == 3

    def test_unreachable_code_is_ignored(self, builder):
        builder.iconst(0)
        builder.ireturn()
        builder.iadd()
        assert builder.build().max_stack == 1

    def test_stack_underflow(self, builder):
        builder.iconst(1)
        builder.iadd()
        builder.ireturn()
        with pytest.raises(ValueError, match="underflow at offset 1"):
            builder.build()

    def test_inconsistent_depth_at_merge(self, builder):
        builder.iconst(0)
        builder.ifeq("Join")
        builder.iconst(7)
        builder.label("Join")
        builder.iconst(1)
        builder.ireturn()
        with pytest.raises(ValueError, match="Inconsistent stack depth"):
            builder.build()

    def test_array_instructions(self, builder):
        builder.iconst(2)
        builder.newarray(ArrayType.INT)
        builder.dup()
        builder.arraylength()
        assert list(builder.code) == [Opcode.ICONST_2, Opcode.NEWARRAY, 10,
                                      Opcode.DUP, Opcode.ARRAYLENGTH]
        assert builder.build().max_stack == 2


class TestClassFile:
    def test_header(self):
        data = ClassFile("Empty").to_bytes()
        magic, minor, major = struct.unpack_from(">IHH", data)
        assert magic == 0xCAFEBABE
        assert (major, minor) == (50, 0)

    def test_round_trip_through_reader(self):
        class_file = ClassFile("Adder")
        builder = class_file.new_method("add", "(II)I")
        builder.iload(0)
        builder.iload(1)
        builder.iadd()
        builder.ireturn()
        class_file.finish_method(builder)

        model = read_class_bytes(class_file.to_bytes())
        assert model.name == "Adder"
        assert model.super_class == "java/lang/Object"
        assert model.version == (50, 0)
        method = model.find_method("add", "(II)I")
        assert method.code == bytes([Opcode.ILOAD_0, Opcode.ILOAD_1, Opcode.IADD, Opcode.IRETURN])
        assert method.max_stack == 2
        assert method.max_locals == 2
        assert method.parameter_count == 2
        assert method.access_flags == AccessFlags.PUBLIC | AccessFlags.STATIC

    def test_write(self, tmp_path):
        class_file = ClassFile("Out")
        builder = class_file.new_method("main", "([Ljava/lang/String;)V")
        builder.return_()
        class_file.finish_method(builder)
        path = tmp_path / "Out.class"
        class_file.write(str(path))
        assert path.read_bytes() == class_file.to_bytes()
