"""
Java class file reader.

Parses a class file into a ClassModel: the method table, each method's Code
attribute, and the constant pool entries the interpreter resolves at run time.
"""

import logging
import struct
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from .classfile import ConstantPoolTag
from .descriptors import parse_method_descriptor
from .errors import ClassFormatError, LinkError

logger = logging.getLogger(__name__)


@dataclass
class ConstantPoolEntry:
    """A constant pool entry."""
    tag: int
    value: object


@dataclass(frozen=True)
class Method:
    """A method and its bytecode."""
    access_flags: int
    name: str
    descriptor: str
    code: bytes = b""
    max_stack: int = 0
    max_locals: int = 0
    parameter_count: int = 0

    def __str__(self):
        return f"{self.name}{self.descriptor}"


class ClassModel:
    """Read-only view of a parsed class: methods and constant pool."""

    def __init__(self, name: str, super_class: Optional[str], version: tuple[int, int],
                 constant_pool: list, methods: tuple[Method, ...]):
        self.name = name
        self.super_class = super_class
        self.version = version
        self.constant_pool = constant_pool
        self.methods = methods
        self._by_signature = {(m.name, m.descriptor): m for m in methods}

    def find_method(self, name: str, descriptor: str) -> Optional[Method]:
        """Look up a method by name and descriptor."""
        return self._by_signature.get((name, descriptor))

    def _entry(self, index: int, tag: ConstantPoolTag) -> ConstantPoolEntry:
        if not 0 < index < len(self.constant_pool) or self.constant_pool[index] is None:
            raise LinkError(f"Constant pool index {index} out of range")
        entry = self.constant_pool[index]
        if entry.tag != tag:
            raise LinkError(f"Expected {tag.name} at constant pool index {index}, got tag {entry.tag}")
        return entry

    def _utf8(self, index: int) -> str:
        return self._entry(index, ConstantPoolTag.UTF8).value

    def method_ref(self, index: int) -> tuple[str, str, str]:
        """Resolve a Methodref entry to (class name, method name, descriptor)."""
        class_idx, nat_idx = self._entry(index, ConstantPoolTag.METHODREF).value
        class_name = self._utf8(self._entry(class_idx, ConstantPoolTag.CLASS).value)
        name_idx, desc_idx = self._entry(nat_idx, ConstantPoolTag.NAME_AND_TYPE).value
        return class_name, self._utf8(name_idx), self._utf8(desc_idx)

    def find_method_by_index(self, index: int) -> Method:
        """Resolve the method a Methodref constant refers to."""
        class_name, name, descriptor = self.method_ref(index)
        if class_name != self.name:
            raise LinkError(f"Cannot call {class_name}.{name}{descriptor}: only methods of "
                            f"{self.name} can be invoked")
        method = self.find_method(name, descriptor)
        if method is None:
            raise LinkError(f"Method not found: {class_name}.{name}{descriptor}")
        return method

    def resolve_integer_constant(self, index: int) -> int:
        """Value of the Integer constant at a 1-based pool index."""
        return self._entry(index, ConstantPoolTag.INTEGER).value


class ClassReader:
    """Reads Java class files."""

    def __init__(self, data: bytes):
        self.data = data
        self.pos = 0
        self.constant_pool: list[Optional[ConstantPoolEntry]] = [None]  # 1-indexed

    def _unpack(self, fmt: str, size: int):
        try:
            val = struct.unpack_from(fmt, self.data, self.pos)[0]
        except struct.error:
            raise ClassFormatError(f"Truncated class file at offset {self.pos}") from None
        self.pos += size
        return val

    def _read_u1(self) -> int:
        return self._unpack(">B", 1)

    def _read_u2(self) -> int:
        return self._unpack(">H", 2)

    def _read_u4(self) -> int:
        return self._unpack(">I", 4)

    def _read_i4(self) -> int:
        return self._unpack(">i", 4)

    def _read_i8(self) -> int:
        return self._unpack(">q", 8)

    def _read_f4(self) -> float:
        return self._unpack(">f", 4)

    def _read_f8(self) -> float:
        return self._unpack(">d", 8)

    def _read_bytes(self, length: int) -> bytes:
        if self.pos + length > len(self.data):
            raise ClassFormatError(f"Truncated class file at offset {self.pos}")
        val = self.data[self.pos:self.pos + length]
        self.pos += length
        return val

    def _get_utf8(self, index: int) -> str:
        """Get UTF8 string from constant pool."""
        if not 0 < index < len(self.constant_pool) or self.constant_pool[index] is None:
            raise ClassFormatError(f"Constant pool index {index} out of range")
        entry = self.constant_pool[index]
        if entry.tag == ConstantPoolTag.UTF8:
            return entry.value
        raise ClassFormatError(f"Expected UTF8 at index {index}, got tag {entry.tag}")

    def _get_class_name(self, index: int) -> Optional[str]:
        """Get class name from constant pool."""
        if index == 0:
            return None
        if not 0 < index < len(self.constant_pool) or self.constant_pool[index] is None:
            raise ClassFormatError(f"Constant pool index {index} out of range")
        entry = self.constant_pool[index]
        if entry.tag == ConstantPoolTag.CLASS:
            return self._get_utf8(entry.value)
        raise ClassFormatError(f"Expected CLASS at index {index}, got tag {entry.tag}")

    def _read_constant_pool(self):
        """Read the constant pool."""
        count = self._read_u2()
        i = 1
        while i < count:
            tag = self._read_u1()

            if tag == ConstantPoolTag.UTF8:
                length = self._read_u2()
                value = self._read_bytes(length).decode("utf-8", errors="replace")
                entry = ConstantPoolEntry(tag, value)

            elif tag == ConstantPoolTag.INTEGER:
                entry = ConstantPoolEntry(tag, self._read_i4())

            elif tag == ConstantPoolTag.FLOAT:
                entry = ConstantPoolEntry(tag, self._read_f4())

            elif tag in (ConstantPoolTag.LONG, ConstantPoolTag.DOUBLE):
                value = self._read_i8() if tag == ConstantPoolTag.LONG else self._read_f8()
                self.constant_pool.append(ConstantPoolEntry(tag, value))
                self.constant_pool.append(None)  # Takes 2 slots
                i += 2
                continue

            elif tag in (ConstantPoolTag.CLASS, ConstantPoolTag.STRING,
                         ConstantPoolTag.METHOD_TYPE):
                entry = ConstantPoolEntry(tag, self._read_u2())

            elif tag in (ConstantPoolTag.FIELDREF, ConstantPoolTag.METHODREF,
                         ConstantPoolTag.INTERFACE_METHODREF, ConstantPoolTag.NAME_AND_TYPE,
                         ConstantPoolTag.INVOKE_DYNAMIC):
                first = self._read_u2()
                second = self._read_u2()
                entry = ConstantPoolEntry(tag, (first, second))

            elif tag == ConstantPoolTag.METHOD_HANDLE:
                kind = self._read_u1()
                ref_idx = self._read_u2()
                entry = ConstantPoolEntry(tag, (kind, ref_idx))

            else:
                raise ClassFormatError(f"Unknown constant pool tag: {tag}")

            self.constant_pool.append(entry)
            i += 1

    def _skip_attributes(self):
        count = self._read_u2()
        for _ in range(count):
            self._read_u2()
            length = self._read_u4()
            self._read_bytes(length)

    def _read_code(self) -> tuple[int, int, bytes]:
        """Read the body of a Code attribute."""
        max_stack = self._read_u2()
        max_locals = self._read_u2()
        code_length = self._read_u4()
        code = self._read_bytes(code_length)
        exception_table_length = self._read_u2()
        self._read_bytes(exception_table_length * 8)
        self._skip_attributes()
        return max_stack, max_locals, code

    def _read_method(self) -> Method:
        """Read a method."""
        access = self._read_u2()
        name = self._get_utf8(self._read_u2())
        descriptor = self._get_utf8(self._read_u2())
        try:
            param_count = parse_method_descriptor(descriptor).parameter_count
        except ValueError as e:
            raise ClassFormatError(f"Bad descriptor for method {name}: {e}") from None

        max_stack, max_locals, code = 0, 0, b""
        attr_count = self._read_u2()
        for _ in range(attr_count):
            attr_name = self._get_utf8(self._read_u2())
            length = self._read_u4()
            start = self.pos
            if attr_name == "Code":
                max_stack, max_locals, code = self._read_code()
            # Skip other attributes
            self.pos = start + length

        logger.debug("Read method %s%s: %d bytes of code, max_stack=%d, max_locals=%d",
                     name, descriptor, len(code), max_stack, max_locals)
        return Method(
            access_flags=access,
            name=name,
            descriptor=descriptor,
            code=bytes(code),
            max_stack=max_stack,
            max_locals=max_locals,
            parameter_count=param_count,
        )

    def _skip_field(self):
        self._read_u2()  # access
        self._read_u2()  # name
        self._read_u2()  # descriptor
        self._skip_attributes()

    def read(self) -> ClassModel:
        """Read the class file and return its ClassModel."""
        magic = self._read_u4()
        if magic != 0xCAFEBABE:
            raise ClassFormatError(f"Invalid class file magic: {hex(magic)}")

        minor = self._read_u2()
        major = self._read_u2()

        self._read_constant_pool()

        self._read_u2()  # access flags

        this_class = self._get_class_name(self._read_u2())
        super_class = self._get_class_name(self._read_u2())

        interfaces_count = self._read_u2()
        self._read_bytes(interfaces_count * 2)

        fields_count = self._read_u2()
        for _ in range(fields_count):
            self._skip_field()

        methods_count = self._read_u2()
        methods = tuple(self._read_method() for _ in range(methods_count))

        self._skip_attributes()

        logger.debug("Loaded class %s (version %d.%d, %d methods)",
                     this_class, major, minor, len(methods))
        return ClassModel(
            name=this_class,
            super_class=super_class,
            version=(major, minor),
            constant_pool=self.constant_pool,
            methods=methods,
        )


def read_class_bytes(data: bytes) -> ClassModel:
    """Parse class file bytes."""
    return ClassReader(data).read()


def read_class_file(path: str | Path) -> ClassModel:
    """Read a single class file."""
    data = Path(path).read_bytes()
    return read_class_bytes(data)
