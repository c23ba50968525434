"""
Java class file writer for the integer subset executed by teenyjvm.

Writes Java 6 class files (version 50.0), which do not need a StackMapTable,
so the output also loads on a stock JVM.
"""

import struct
from dataclasses import dataclass, field
from enum import IntEnum, IntFlag
from typing import Optional

from .descriptors import parse_method_descriptor


class ClassFileVersion:
    JAVA_6 = (50, 0)


class AccessFlags(IntFlag):
    PUBLIC = 0x0001
    PRIVATE = 0x0002
    PROTECTED = 0x0004
    STATIC = 0x0008
    FINAL = 0x0010
    SUPER = 0x0020  # For classes (invokespecial semantics)


class Opcode(IntEnum):
    """Opcodes understood by the interpreter.

    Anything missing from this table is rejected at dispatch time.
    """
    NOP = 0x00
    ICONST_M1 = 0x02
    ICONST_0 = 0x03
    ICONST_1 = 0x04
    ICONST_2 = 0x05
    ICONST_3 = 0x06
    ICONST_4 = 0x07
    ICONST_5 = 0x08
    BIPUSH = 0x10
    SIPUSH = 0x11
    LDC = 0x12
    ILOAD = 0x15
    ALOAD = 0x19
    ILOAD_0 = 0x1A
    ILOAD_1 = 0x1B
    ILOAD_2 = 0x1C
    ILOAD_3 = 0x1D
    ALOAD_0 = 0x2A
    ALOAD_1 = 0x2B
    ALOAD_2 = 0x2C
    ALOAD_3 = 0x2D
    IALOAD = 0x2E
    ISTORE = 0x36
    ASTORE = 0x3A
    ISTORE_0 = 0x3B
    ISTORE_1 = 0x3C
    ISTORE_2 = 0x3D
    ISTORE_3 = 0x3E
    ASTORE_0 = 0x4B
    ASTORE_1 = 0x4C
    ASTORE_2 = 0x4D
    ASTORE_3 = 0x4E
    IASTORE = 0x4F
    DUP = 0x59
    IADD = 0x60
    ISUB = 0x64
    IMUL = 0x68
    IDIV = 0x6C
    IREM = 0x70
    INEG = 0x74
    ISHL = 0x78
    ISHR = 0x7A
    IUSHR = 0x7C
    IAND = 0x7E
    IOR = 0x80
    IXOR = 0x82
    IINC = 0x84
    IFEQ = 0x99
    IFNE = 0x9A
    IFLT = 0x9B
    IFGE = 0x9C
    IFGT = 0x9D
    IFLE = 0x9E
    IF_ICMPEQ = 0x9F
    IF_ICMPNE = 0xA0
    IF_ICMPLT = 0xA1
    IF_ICMPGE = 0xA2
    IF_ICMPGT = 0xA3
    IF_ICMPLE = 0xA4
    GOTO = 0xA7
    IRETURN = 0xAC
    ARETURN = 0xB0
    RETURN = 0xB1
    GETSTATIC = 0xB2
    INVOKEVIRTUAL = 0xB6
    INVOKESTATIC = 0xB8
    NEWARRAY = 0xBC
    ARRAYLENGTH = 0xBE


class ArrayType(IntEnum):
    """``atype`` operand of ``newarray``."""
    BOOLEAN = 4
    CHAR = 5
    FLOAT = 6
    DOUBLE = 7
    BYTE = 8
    SHORT = 9
    INT = 10
    LONG = 11


class ConstantPoolTag(IntEnum):
    UTF8 = 1
    INTEGER = 3
    FLOAT = 4
    LONG = 5
    DOUBLE = 6
    CLASS = 7
    STRING = 8
    FIELDREF = 9
    METHODREF = 10
    INTERFACE_METHODREF = 11
    NAME_AND_TYPE = 12
    METHOD_HANDLE = 15
    METHOD_TYPE = 16
    INVOKE_DYNAMIC = 18


class ConstantPool:
    """Manages the constant pool for a class file."""

    def __init__(self):
        self._entries: list[tuple] = [None]  # 1-indexed
        self._cache: dict = {}

    def __len__(self) -> int:
        return len(self._entries)

    def _add(self, entry: tuple) -> int:
        if entry in self._cache:
            return self._cache[entry]
        idx = len(self._entries)
        self._entries.append(entry)
        self._cache[entry] = idx
        return idx

    def add_utf8(self, value: str) -> int:
        return self._add((ConstantPoolTag.UTF8, value))

    def add_integer(self, value: int) -> int:
        return self._add((ConstantPoolTag.INTEGER, value))

    def add_class(self, internal_name: str) -> int:
        name_idx = self.add_utf8(internal_name)
        return self._add((ConstantPoolTag.CLASS, name_idx))

    def add_name_and_type(self, name: str, descriptor: str) -> int:
        name_idx = self.add_utf8(name)
        desc_idx = self.add_utf8(descriptor)
        return self._add((ConstantPoolTag.NAME_AND_TYPE, name_idx, desc_idx))

    def add_fieldref(self, class_name: str, field_name: str, descriptor: str) -> int:
        class_idx = self.add_class(class_name)
        nat_idx = self.add_name_and_type(field_name, descriptor)
        return self._add((ConstantPoolTag.FIELDREF, class_idx, nat_idx))

    def add_methodref(self, class_name: str, method_name: str, descriptor: str) -> int:
        class_idx = self.add_class(class_name)
        nat_idx = self.add_name_and_type(method_name, descriptor)
        return self._add((ConstantPoolTag.METHODREF, class_idx, nat_idx))

    def write(self, out: bytearray):
        out.extend(struct.pack(">H", len(self._entries)))
        for entry in self._entries[1:]:
            tag = entry[0]
            out.append(tag)
            if tag == ConstantPoolTag.UTF8:
                data = entry[1].encode("utf-8")
                out.extend(struct.pack(">H", len(data)))
                out.extend(data)
            elif tag == ConstantPoolTag.INTEGER:
                out.extend(struct.pack(">i", entry[1]))
            elif tag == ConstantPoolTag.CLASS:
                out.extend(struct.pack(">H", entry[1]))
            elif tag in (ConstantPoolTag.NAME_AND_TYPE, ConstantPoolTag.FIELDREF,
                         ConstantPoolTag.METHODREF):
                out.extend(struct.pack(">HH", entry[1], entry[2]))


@dataclass
class CodeAttribute:
    """Code attribute for a method."""
    max_stack: int = 0
    max_locals: int = 0
    code: bytearray = field(default_factory=bytearray)

    def write(self, cp: ConstantPool, out: bytearray):
        attr_name_idx = cp.add_utf8("Code")
        data = bytearray()
        data.extend(struct.pack(">H", self.max_stack))
        data.extend(struct.pack(">H", self.max_locals))
        data.extend(struct.pack(">I", len(self.code)))
        data.extend(self.code)
        data.extend(struct.pack(">H", 0))  # exception_table_length
        data.extend(struct.pack(">H", 0))  # attributes_count

        out.extend(struct.pack(">H", attr_name_idx))
        out.extend(struct.pack(">I", len(data)))
        out.extend(data)


@dataclass
class MethodInfo:
    """Method in a class file."""
    access_flags: int
    name: str
    descriptor: str
    code: Optional[CodeAttribute] = None

    def write(self, cp: ConstantPool, out: bytearray):
        name_idx = cp.add_utf8(self.name)
        desc_idx = cp.add_utf8(self.descriptor)
        out.extend(struct.pack(">H", self.access_flags))
        out.extend(struct.pack(">H", name_idx))
        out.extend(struct.pack(">H", desc_idx))
        out.extend(struct.pack(">H", 1 if self.code else 0))
        if self.code:
            self.code.write(cp, out)


class ClassFile:
    """Represents a Java class file."""

    MAGIC = 0xCAFEBABE

    def __init__(self, name: str, super_class: str = "java/lang/Object",
                 version: tuple[int, int] = ClassFileVersion.JAVA_6):
        self.version = version
        self.access_flags = AccessFlags.PUBLIC | AccessFlags.SUPER
        self.name = name
        self.super_class = super_class
        self.methods: list[MethodInfo] = []
        self.cp = ConstantPool()

    def add_method(self, method: MethodInfo):
        self.methods.append(method)

    def new_method(self, name: str, descriptor: str,
                   access_flags: int = AccessFlags.PUBLIC | AccessFlags.STATIC) -> "BytecodeBuilder":
        """Start a method body; call ``finish_method`` with the builder when done."""
        builder = BytecodeBuilder(self.cp, parse_method_descriptor(descriptor).parameter_count)
        builder.method_name = name
        builder.method_descriptor = descriptor
        builder.access_flags = access_flags
        return builder

    def finish_method(self, builder: "BytecodeBuilder") -> MethodInfo:
        method = MethodInfo(
            access_flags=builder.access_flags,
            name=builder.method_name,
            descriptor=builder.method_descriptor,
            code=builder.build(),
        )
        self.add_method(method)
        return method

    def to_bytes(self) -> bytes:
        # Methods are serialized first: they intern their names and
        # attribute names, and the pool has to be complete before it is written.
        this_class_idx = self.cp.add_class(self.name)
        super_class_idx = self.cp.add_class(self.super_class)
        body = bytearray()
        body.extend(struct.pack(">H", len(self.methods)))
        for method in self.methods:
            method.write(self.cp, body)
        body.extend(struct.pack(">H", 0))  # class attributes

        out = bytearray()
        out.extend(struct.pack(">I", self.MAGIC))
        major, minor = self.version
        out.extend(struct.pack(">HH", minor, major))
        self.cp.write(out)
        out.extend(struct.pack(">H", self.access_flags))
        out.extend(struct.pack(">H", this_class_idx))
        out.extend(struct.pack(">H", super_class_idx))
        out.extend(struct.pack(">H", 0))  # interfaces
        out.extend(struct.pack(">H", 0))  # fields
        out.extend(body)
        return bytes(out)

    def write(self, path: str):
        with open(path, "wb") as f:
            f.write(self.to_bytes())


@dataclass
class StackEffect:
    """Operand stack effect of one emitted instruction."""
    offset: int
    pops: int = 0
    pushes: int = 0
    target: Optional[str] = None  # branch label
    falls_through: bool = True


class BytecodeBuilder:
    """Helper for building bytecode.

    ``max_stack`` is worked out by ``build`` from the control flow of the
    finished method: every instruction reachable from offset 0 is visited
    once, following both branch targets and fall-through.
    """

    def __init__(self, cp: ConstantPool, max_locals: int = 0):
        self.cp = cp
        self.code = bytearray()
        self.max_stack = 0
        self.max_locals = max_locals
        self.method_name = ""
        self.method_descriptor = "()V"
        self.access_flags = AccessFlags.PUBLIC | AccessFlags.STATIC
        self._effects: list[StackEffect] = []
        self._labels: dict[str, int] = {}
        self._forward_refs: list[tuple[str, int]] = []  # (label, offset)

    def _push(self, count: int = 1):
        self._effects[-1].pushes += count

    def _pop(self, count: int = 1):
        self._effects[-1].pops += count

    def _end_block(self):
        self._effects[-1].falls_through = False

    def _use_local(self, slot: int):
        if not 0 <= slot <= 255:
            raise ValueError(f"Local slot out of range: {slot}")
        self.max_locals = max(self.max_locals, slot + 1)

    def position(self) -> int:
        return len(self.code)

    def label(self, name: str):
        if name in self._labels:
            raise ValueError(f"Duplicate label: {name}")
        self._labels[name] = self.position()

    def _emit(self, *data):
        self._effects.append(StackEffect(self.position()))
        for b in data:
            if isinstance(b, Opcode):
                self.code.append(b.value)
            else:
                self.code.append(b & 0xFF)

    def nop(self):
        self._emit(Opcode.NOP)

    def iconst(self, value: int):
        """Push an int constant using the shortest encoding."""
        if -1 <= value <= 5:
            self._emit(Opcode.ICONST_0 + value)
            self._push()
        elif -128 <= value <= 127:
            self.bipush(value)
        elif -32768 <= value <= 32767:
            self.sipush(value)
        else:
            self.ldc(value)

    def bipush(self, value: int):
        if not -128 <= value <= 127:
            raise ValueError(f"bipush operand out of range: {value}")
        self._emit(Opcode.BIPUSH, value)
        self._push()

    def sipush(self, value: int):
        if not -32768 <= value <= 32767:
            raise ValueError(f"sipush operand out of range: {value}")
        self._emit(Opcode.SIPUSH)
        self.code.extend(struct.pack(">h", value))
        self._push()

    def ldc(self, value: int):
        if not -2**31 <= value < 2**31:
            raise ValueError(f"ldc operand is not a 32-bit int: {value}")
        idx = self.cp.add_integer(value)
        if idx > 255:
            raise ValueError("Constant pool too large for ldc")
        self._emit(Opcode.LDC, idx)
        self._push()

    def _load(self, short_base: Opcode, long_op: Opcode, slot: int):
        self._use_local(slot)
        if slot <= 3:
            self._emit(short_base + slot)
        else:
            self._emit(long_op, slot)
        self._push()

    def _store(self, short_base: Opcode, long_op: Opcode, slot: int):
        self._use_local(slot)
        if slot <= 3:
            self._emit(short_base + slot)
        else:
            self._emit(long_op, slot)
        self._pop()

    def iload(self, slot: int):
        self._load(Opcode.ILOAD_0, Opcode.ILOAD, slot)

    def aload(self, slot: int):
        self._load(Opcode.ALOAD_0, Opcode.ALOAD, slot)

    def istore(self, slot: int):
        self._store(Opcode.ISTORE_0, Opcode.ISTORE, slot)

    def astore(self, slot: int):
        self._store(Opcode.ASTORE_0, Opcode.ASTORE, slot)

    def iinc(self, slot: int, value: int):
        self._use_local(slot)
        if not -128 <= value <= 127:
            raise ValueError(f"iinc increment out of range: {value}")
        self._emit(Opcode.IINC, slot, value)

    def _binary(self, op: Opcode):
        self._emit(op)
        self._pop(2)
        self._push()

    def iadd(self):
        self._binary(Opcode.IADD)

    def isub(self):
        self._binary(Opcode.ISUB)

    def imul(self):
        self._binary(Opcode.IMUL)

    def idiv(self):
        self._binary(Opcode.IDIV)

    def irem(self):
        self._binary(Opcode.IREM)

    def ineg(self):
        self._emit(Opcode.INEG)
        self._pop()
        self._push()

    def ishl(self):
        self._binary(Opcode.ISHL)

    def ishr(self):
        self._binary(Opcode.ISHR)

    def iushr(self):
        self._binary(Opcode.IUSHR)

    def iand(self):
        self._binary(Opcode.IAND)

    def ior(self):
        self._binary(Opcode.IOR)

    def ixor(self):
        self._binary(Opcode.IXOR)

    def _branch(self, op: Opcode, label: str, pops: int):
        self._emit(op)
        self._effects[-1].target = label
        self._forward_refs.append((label, len(self.code)))
        self.code.extend(b"\x00\x00")
        self._pop(pops)

    def ifeq(self, label: str):
        self._branch(Opcode.IFEQ, label, 1)

    def ifne(self, label: str):
        self._branch(Opcode.IFNE, label, 1)

    def iflt(self, label: str):
        self._branch(Opcode.IFLT, label, 1)

    def ifge(self, label: str):
        self._branch(Opcode.IFGE, label, 1)

    def ifgt(self, label: str):
        self._branch(Opcode.IFGT, label, 1)

    def ifle(self, label: str):
        self._branch(Opcode.IFLE, label, 1)

    def if_icmpeq(self, label: str):
        self._branch(Opcode.IF_ICMPEQ, label, 2)

    def if_icmpne(self, label: str):
        self._branch(Opcode.IF_ICMPNE, label, 2)

    def if_icmplt(self, label: str):
        self._branch(Opcode.IF_ICMPLT, label, 2)

    def if_icmpge(self, label: str):
        self._branch(Opcode.IF_ICMPGE, label, 2)

    def if_icmpgt(self, label: str):
        self._branch(Opcode.IF_ICMPGT, label, 2)

    def if_icmple(self, label: str):
        self._branch(Opcode.IF_ICMPLE, label, 2)

    def goto(self, label: str):
        self._branch(Opcode.GOTO, label, 0)
        self._end_block()

    def newarray(self, atype: int = ArrayType.INT):
        self._emit(Opcode.NEWARRAY, atype)
        self._pop()  # count
        self._push()  # arrayref

    def arraylength(self):
        self._emit(Opcode.ARRAYLENGTH)
        self._pop()
        self._push()

    def iaload(self):
        self._emit(Opcode.IALOAD)
        self._pop(2)  # arrayref, index
        self._push()

    def iastore(self):
        self._emit(Opcode.IASTORE)
        self._pop(3)

    def dup(self):
        self._emit(Opcode.DUP)
        self._pop()
        self._push(2)

    def ireturn(self):
        self._emit(Opcode.IRETURN)
        self._pop()
        self._end_block()

    def areturn(self):
        self._emit(Opcode.ARETURN)
        self._pop()
        self._end_block()

    def return_(self):
        self._emit(Opcode.RETURN)
        self._end_block()

    def getstatic(self, class_name: str, field_name: str, descriptor: str):
        idx = self.cp.add_fieldref(class_name, field_name, descriptor)
        self._emit(Opcode.GETSTATIC)
        self.code.extend(struct.pack(">H", idx))
        self._push()

    def invokevirtual(self, class_name: str, method_name: str, descriptor: str):
        desc = parse_method_descriptor(descriptor)
        idx = self.cp.add_methodref(class_name, method_name, descriptor)
        self._emit(Opcode.INVOKEVIRTUAL)
        self.code.extend(struct.pack(">H", idx))
        self._pop(desc.parameter_count + 1)
        if desc.returns_value:
            self._push()

    def invokestatic(self, class_name: str, method_name: str, descriptor: str):
        desc = parse_method_descriptor(descriptor)
        idx = self.cp.add_methodref(class_name, method_name, descriptor)
        self._emit(Opcode.INVOKESTATIC)
        self.code.extend(struct.pack(">H", idx))
        self._pop(desc.parameter_count)
        if desc.returns_value:
            self._push()

    def resolve_labels(self):
        for label, offset in self._forward_refs:
            if label not in self._labels:
                raise ValueError(f"Undefined label: {label}")
            instr_start = offset - 1  # The byte before the offset is the opcode
            relative = self._labels[label] - instr_start
            if not -32768 <= relative <= 32767:
                raise ValueError(f"Branch to {label} out of range")
            struct.pack_into(">h", self.code, offset, relative)

    def compute_max_stack(self) -> int:
        """Deepest operand stack over all paths through the method.

        Raises ValueError when a path pops an empty stack, or when two paths
        reach the same instruction with different depths.
        """
        if not self._effects:
            return 0
        index = {effect.offset: i for i, effect in enumerate(self._effects)}
        depth_at = {0: 0}
        pending = [0]
        max_stack = 0
        while pending:
            offset = pending.pop()
            i = index.get(offset)
            if i is None:
                # Label at the very end; running into it is caught at run time
                continue
            effect = self._effects[i]
            depth = depth_at[offset] - effect.pops
            if depth < 0:
                raise ValueError(f"Operand stack underflow at offset {offset}")
            depth += effect.pushes
            max_stack = max(max_stack, depth)

            successors = []
            if effect.target is not None:
                successors.append(self._labels[effect.target])
            if effect.falls_through:
                successors.append(self._effects[i + 1].offset
                                  if i + 1 < len(self._effects) else len(self.code))
            for successor in successors:
                if successor not in depth_at:
                    depth_at[successor] = depth
                    pending.append(successor)
                elif depth_at[successor] != depth:
                    raise ValueError(
                        f"Inconsistent stack depth at offset {successor}: "
                        f"{depth_at[successor]} vs {depth}")
        return max_stack

    def build(self) -> CodeAttribute:
        self.resolve_labels()
        self.max_stack = self.compute_max_stack()
        return CodeAttribute(
            max_stack=self.max_stack,
            max_locals=self.max_locals,
            code=self.code,
        )
