"""
Assembler for a Jasmin-style text format, using Lark.

Source is parsed with the grammar in ``jasm.lark`` and each method body is
emitted through a BytecodeBuilder into a ClassFile.
"""

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

from lark import Lark, Transformer, v_args
from lark.exceptions import UnexpectedInput

from .classfile import AccessFlags, ArrayType, BytecodeBuilder, ClassFile
from .descriptors import parse_field_descriptor, parse_method_descriptor
from .errors import AssemblyError

logger = logging.getLogger(__name__)

GRAMMAR_FILE = Path(__file__).parent / "jasm.lark"


@dataclass
class Label:
    name: str
    line: int


@dataclass
class Limit:
    kind: str
    value: int
    line: int


@dataclass
class Instruction:
    mnemonic: str
    operands: tuple
    line: int


@dataclass
class MethodSource:
    access: tuple[str, ...]
    name: str
    descriptor: str
    line: int
    statements: list = field(default_factory=list)


@dataclass
class ClassSource:
    access: tuple[str, ...]
    name: str
    methods: list[MethodSource] = field(default_factory=list)


# Mnemonics with the operand baked into the opcode: mnemonic -> (emitter, operand)
IMPLICIT_OPERAND = {
    "iconst_m1": ("iconst", -1),
    **{f"iconst_{n}": ("iconst", n) for n in range(6)},
    **{f"{base}_{n}": (base, n)
       for base in ("iload", "aload", "istore", "astore") for n in range(4)},
}

# mnemonic -> operand kinds
OPERAND_KINDS = {
    "nop": (), "dup": (),
    "iadd": (), "isub": (), "imul": (), "idiv": (), "irem": (), "ineg": (),
    "ishl": (), "ishr": (), "iushr": (), "iand": (), "ior": (), "ixor": (),
    "iaload": (), "iastore": (), "arraylength": (),
    "ireturn": (), "areturn": (), "return": (),
    "bipush": ("int",), "sipush": ("int",), "ldc": ("int",),
    "iload": ("int",), "aload": ("int",), "istore": ("int",), "astore": ("int",),
    "iinc": ("int", "int"),
    "ifeq": ("label",), "ifne": ("label",), "iflt": ("label",),
    "ifge": ("label",), "ifgt": ("label",), "ifle": ("label",),
    "if_icmpeq": ("label",), "if_icmpne": ("label",), "if_icmplt": ("label",),
    "if_icmpge": ("label",), "if_icmpgt": ("label",), "if_icmple": ("label",),
    "goto": ("label",),
    "invokestatic": ("method",), "invokevirtual": ("method",),
    "getstatic": ("field",),
    "newarray": ("atype",),
}

# Operand kinds as produced by the transformer
TOKEN_KINDS = {"int": "int", "label": "name", "atype": "name", "method": "method", "field": "field"}


def _split_member(ref: str) -> tuple[str, str]:
    """'java/io/PrintStream/println' -> ('java/io/PrintStream', 'println')"""
    owner, _, name = ref.rpartition("/")
    return owner, name


class JasmTransformer(Transformer):
    """Transforms the Lark parse tree into ClassSource."""

    def start(self, items):
        cls = items[0]
        cls.methods = list(items[1:])
        return cls

    def class_directive(self, items):
        *access, name = items
        return ClassSource(access=tuple(str(a) for a in access), name=str(name))

    def method(self, items):
        access = []
        i = 0
        while items[i].type == "ACCESS":
            access.append(str(items[i]))
            i += 1
        name, descriptor = items[i], items[i + 1]
        statements = []
        for stmt in items[i + 2:]:
            statements.extend(stmt)
        return MethodSource(access=tuple(access), name=str(name), descriptor=str(descriptor),
                            line=name.line, statements=statements)

    def label_line(self, items):
        return items

    def instruction_line(self, items):
        return items

    def limit_line(self, items):
        return items

    @v_args(inline=True)
    def label(self, name):
        return Label(str(name), name.line)

    @v_args(inline=True)
    def limit(self, kind, value):
        return Limit(str(kind), int(value), kind.line)

    def instruction(self, items):
        mnemonic = items[0]
        return Instruction(str(mnemonic), tuple(items[1:]), mnemonic.line)

    @v_args(inline=True)
    def int_operand(self, token):
        return ("int", int(token))

    @v_args(inline=True)
    def name_operand(self, token):
        return ("name", str(token))

    @v_args(inline=True)
    def method_operand(self, token):
        paren = token.index("(")
        owner, name = _split_member(token[:paren])
        return ("method", (owner, name, str(token[paren:])))

    @v_args(inline=True)
    def field_operand(self, token):
        ref, descriptor = str(token).split()
        owner, name = _split_member(ref)
        return ("field", (owner, name, descriptor))


class Assembler:
    """Parses assembly source and emits class files."""

    def __init__(self):
        with open(GRAMMAR_FILE, "r") as f:
            grammar = f.read()

        self._parser = Lark(
            grammar,
            parser="lalr",
            propagate_positions=True,
            maybe_placeholders=False,
        )
        self._transformer = JasmTransformer()

    def parse(self, source: str) -> ClassSource:
        """Parse assembly source into a ClassSource."""
        try:
            tree = self._parser.parse(source)
        except UnexpectedInput as e:
            raise AssemblyError(f"syntax error at column {e.column}", e.line) from None
        return self._transformer.transform(tree)

    def assemble(self, source: str) -> ClassFile:
        """Assemble source text into a ClassFile."""
        cls = self.parse(source)
        class_file = ClassFile(cls.name)
        seen = set()
        for method in cls.methods:
            key = (method.name, method.descriptor)
            if key in seen:
                raise AssemblyError(f"Duplicate method {method.name}{method.descriptor}", method.line)
            seen.add(key)
            self._assemble_method(class_file, method)
        logger.debug("Assembled class %s with %d method(s)", cls.name, len(cls.methods))
        return class_file

    def _method_flags(self, method: MethodSource) -> int:
        if not method.access:
            return AccessFlags.PUBLIC | AccessFlags.STATIC
        flags = 0
        for name in method.access:
            flags |= AccessFlags[name.upper()]
        if not flags & AccessFlags.STATIC:
            raise AssemblyError(f"Method {method.name} must be static", method.line)
        return flags

    def _assemble_method(self, class_file: ClassFile, method: MethodSource):
        try:
            parse_method_descriptor(method.descriptor)
        except ValueError as e:
            raise AssemblyError(str(e), method.line) from None

        builder = class_file.new_method(method.name, method.descriptor, self._method_flags(method))
        limits: dict[str, int] = {}
        for stmt in method.statements:
            try:
                if isinstance(stmt, Label):
                    builder.label(stmt.name)
                elif isinstance(stmt, Limit):
                    limits[stmt.kind] = stmt.value
                else:
                    self._emit(builder, stmt)
            except ValueError as e:
                raise AssemblyError(str(e), stmt.line) from None

        try:
            code = class_file.finish_method(builder).code
        except ValueError as e:
            raise AssemblyError(f"{e} in method {method.name}", method.line) from None
        # .limit directives win over the computed values
        if "stack" in limits:
            code.max_stack = limits["stack"]
        if "locals" in limits:
            code.max_locals = limits["locals"]
        logger.debug("Assembled %s%s: %d bytes, max_stack=%d, max_locals=%d", method.name,
                     method.descriptor, len(code.code), code.max_stack, code.max_locals)

    def _emit(self, builder: BytecodeBuilder, insn: Instruction):
        mnemonic = insn.mnemonic
        if mnemonic in IMPLICIT_OPERAND:
            if insn.operands:
                raise AssemblyError(f"{mnemonic} takes no operands", insn.line)
            emitter, operand = IMPLICIT_OPERAND[mnemonic]
            getattr(builder, emitter)(operand)
            return

        kinds = OPERAND_KINDS.get(mnemonic)
        if kinds is None:
            raise AssemblyError(f"Unknown or unsupported instruction: {mnemonic}", insn.line)
        if len(insn.operands) != len(kinds):
            raise AssemblyError(
                f"{mnemonic} expects {len(kinds)} operand(s), got {len(insn.operands)}", insn.line)

        args = []
        for kind, (token_kind, value) in zip(kinds, insn.operands):
            if TOKEN_KINDS[kind] != token_kind:
                raise AssemblyError(f"{mnemonic}: expected {kind} operand, got {value!r}", insn.line)
            if kind == "atype":
                try:
                    value = ArrayType[value.upper()]
                except KeyError:
                    raise AssemblyError(f"Unknown array type: {value}", insn.line) from None
            elif kind == "field":
                parse_field_descriptor(value[2])
                args.extend(value)
                continue
            elif kind == "method":
                parse_method_descriptor(value[2])
                args.extend(value)
                continue
            args.append(value)

        emitter = "return_" if mnemonic == "return" else mnemonic
        getattr(builder, emitter)(*args)


_default_assembler: Optional[Assembler] = None


def _get_assembler() -> Assembler:
    global _default_assembler
    if _default_assembler is None:
        _default_assembler = Assembler()
    return _default_assembler


def assemble(source: str) -> ClassFile:
    """Assemble source text into a ClassFile."""
    return _get_assembler().assemble(source)


def assemble_file(path: str | Path) -> ClassFile:
    """Assemble a ``.j`` file."""
    source = Path(path).read_text(encoding="utf-8")
    return assemble(source)
