"""
Bytecode interpreter.

Executes one method at a time against a ClassModel and a shared Heap.
``invokestatic`` is realized as a nested, synchronous call of the
interpreter loop on a fresh Frame; the callee's return value, if any, is
pushed onto the caller's stack.
"""

import logging
import struct
import sys
from typing import Optional, Sequence, TextIO

from .classfile import ArrayType, Opcode
from .classreader import ClassModel, Method
from .errors import ArithmeticTrap, ExecutionError, LinkError, StackDepthExceeded
from .frame import Frame, ReturnValue
from .heap import Heap

logger = logging.getLogger(__name__)

MAIN_METHOD = "main"
# main() takes a String[] and returns void
MAIN_DESCRIPTOR = "([Ljava/lang/String;)V"


def to_int32(value: int) -> int:
    """Wrap an arbitrary Python int to 32-bit two's complement."""
    return ((value + 0x80000000) & 0xFFFFFFFF) - 0x80000000


def int_div(a: int, b: int) -> int:
    """32-bit division truncating toward zero."""
    if b == 0:
        raise ArithmeticTrap("/ by zero")
    q = abs(a) // abs(b)
    if (a < 0) != (b < 0):
        q = -q
    return to_int32(q)


def int_rem(a: int, b: int) -> int:
    """Remainder matching ``int_div``; takes the sign of the dividend."""
    if b == 0:
        raise ArithmeticTrap("% by zero")
    r = abs(a) % abs(b)
    return -r if a < 0 else r


BINARY_OPS = {
    Opcode.IADD: lambda a, b: to_int32(a + b),
    Opcode.ISUB: lambda a, b: to_int32(a - b),
    Opcode.IMUL: lambda a, b: to_int32(a * b),
    Opcode.IDIV: int_div,
    Opcode.IREM: int_rem,
    Opcode.ISHL: lambda a, b: to_int32(a << (b & 0x1F)),
    Opcode.ISHR: lambda a, b: a >> (b & 0x1F),
    Opcode.IUSHR: lambda a, b: to_int32((a & 0xFFFFFFFF) >> (b & 0x1F)),
    Opcode.IAND: lambda a, b: a & b,
    Opcode.IOR: lambda a, b: a | b,
    Opcode.IXOR: lambda a, b: a ^ b,
}

# if<cond>: compare one value against zero
ZERO_CONDITIONS = {
    Opcode.IFEQ: lambda a: a == 0,
    Opcode.IFNE: lambda a: a != 0,
    Opcode.IFLT: lambda a: a < 0,
    Opcode.IFGE: lambda a: a >= 0,
    Opcode.IFGT: lambda a: a > 0,
    Opcode.IFLE: lambda a: a <= 0,
}

# if_icmp<cond>: compare two values
COMPARE_CONDITIONS = {
    Opcode.IF_ICMPEQ: lambda a, b: a == b,
    Opcode.IF_ICMPNE: lambda a, b: a != b,
    Opcode.IF_ICMPLT: lambda a, b: a < b,
    Opcode.IF_ICMPGE: lambda a, b: a >= b,
    Opcode.IF_ICMPGT: lambda a, b: a > b,
    Opcode.IF_ICMPLE: lambda a, b: a <= b,
}


class Interpreter:
    """Runs methods of one class."""

    def __init__(self, class_model: ClassModel, heap: Optional[Heap] = None,
                 out: Optional[TextIO] = None):
        self.class_model = class_model
        self.heap = heap if heap is not None else Heap()
        self.out = out if out is not None else sys.stdout
        self.depth = 0

    def execute(self, method: Method, locals_: Optional[Sequence[int]] = None) -> ReturnValue:
        """Run ``method`` to completion with the given initial locals.

        Locals not supplied start at zero.
        """
        return self.run(Frame(method, locals_))

    def _operand(self, frame: Frame, fmt: str, offset: int = 1) -> int:
        try:
            return struct.unpack_from(fmt, frame.method.code, frame.pc + offset)[0]
        except struct.error:
            raise ExecutionError(
                f"{frame.method} pc={frame.pc}: truncated instruction") from None

    def _branch_target(self, frame: Frame) -> int:
        # Offsets are relative to the branch instruction itself, not the next one
        target = frame.pc + self._operand(frame, ">h")
        if not 0 <= target < len(frame.method.code):
            raise ExecutionError(
                f"{frame.method} pc={frame.pc}: branch target {target} outside method")
        return target

    def _invoke(self, frame: Frame, index: int):
        method = self.class_model.find_method_by_index(index)
        callee = Frame.for_call(method, frame.stack)
        self.depth += 1
        try:
            result = self.run(callee)
        except RecursionError:
            raise StackDepthExceeded(
                f"Call depth exhausted at depth {self.depth} "
                f"calling {method.name}{method.descriptor}") from None
        finally:
            self.depth -= 1
        if result.has_value:
            frame.stack.push(result.value)

    def run(self, frame: Frame) -> ReturnValue:
        """The dispatch loop: step ``frame`` until a return instruction."""
        method = frame.method
        code = method.code
        stack = frame.stack
        trace = logger.isEnabledFor(logging.DEBUG)
        if trace:
            logger.debug("%sEnter %s locals=%s", "  " * self.depth, method, frame.locals)

        while True:
            pc = frame.pc
            if not 0 <= pc < len(code):
                raise ExecutionError(f"{method}: pc {pc} ran past the end of the code")
            try:
                op = Opcode(code[pc])
            except ValueError:
                raise ExecutionError(
                    f"{method} pc={pc}: unsupported opcode 0x{code[pc]:02X}") from None
            if trace:
                logger.debug("%s%4d: %-14s %s", "  " * self.depth, pc, op.name.lower(),
                             list(stack.snapshot()))

            match op:
                case Opcode.NOP:
                    frame.pc += 1

                case (Opcode.ICONST_M1 | Opcode.ICONST_0 | Opcode.ICONST_1 | Opcode.ICONST_2
                      | Opcode.ICONST_3 | Opcode.ICONST_4 | Opcode.ICONST_5):
                    stack.push(op - Opcode.ICONST_0)
                    frame.pc += 1

                case Opcode.BIPUSH:
                    stack.push(self._operand(frame, ">b"))
                    frame.pc += 2

                case Opcode.SIPUSH:
                    stack.push(self._operand(frame, ">h"))
                    frame.pc += 3

                case Opcode.LDC:
                    index = self._operand(frame, ">B")
                    stack.push(self.class_model.resolve_integer_constant(index))
                    frame.pc += 2

                case Opcode.ILOAD | Opcode.ALOAD:
                    stack.push(frame.load(self._operand(frame, ">B")))
                    frame.pc += 2

                case Opcode.ILOAD_0 | Opcode.ILOAD_1 | Opcode.ILOAD_2 | Opcode.ILOAD_3:
                    stack.push(frame.load(op - Opcode.ILOAD_0))
                    frame.pc += 1

                case Opcode.ALOAD_0 | Opcode.ALOAD_1 | Opcode.ALOAD_2 | Opcode.ALOAD_3:
                    stack.push(frame.load(op - Opcode.ALOAD_0))
                    frame.pc += 1

                case Opcode.ISTORE | Opcode.ASTORE:
                    frame.store(self._operand(frame, ">B"), stack.pop())
                    frame.pc += 2

                case Opcode.ISTORE_0 | Opcode.ISTORE_1 | Opcode.ISTORE_2 | Opcode.ISTORE_3:
                    frame.store(op - Opcode.ISTORE_0, stack.pop())
                    frame.pc += 1

                case Opcode.ASTORE_0 | Opcode.ASTORE_1 | Opcode.ASTORE_2 | Opcode.ASTORE_3:
                    frame.store(op - Opcode.ASTORE_0, stack.pop())
                    frame.pc += 1

                case Opcode.IINC:
                    slot = self._operand(frame, ">B")
                    delta = self._operand(frame, ">b", 2)
                    frame.store(slot, to_int32(frame.load(slot) + delta))
                    frame.pc += 3

                case (Opcode.IADD | Opcode.ISUB | Opcode.IMUL | Opcode.IDIV | Opcode.IREM
                      | Opcode.ISHL | Opcode.ISHR | Opcode.IUSHR
                      | Opcode.IAND | Opcode.IOR | Opcode.IXOR):
                    b = stack.pop()
                    a = stack.pop()
                    try:
                        result = BINARY_OPS[op](a, b)
                    except ArithmeticTrap as e:
                        raise ArithmeticTrap(f"{method} pc={pc}: {e}") from None
                    stack.push(result)
                    frame.pc += 1

                case Opcode.INEG:
                    stack.push(to_int32(-stack.pop()))
                    frame.pc += 1

                case (Opcode.IFEQ | Opcode.IFNE | Opcode.IFLT
                      | Opcode.IFGE | Opcode.IFGT | Opcode.IFLE):
                    a = stack.pop()
                    if ZERO_CONDITIONS[op](a):
                        frame.pc = self._branch_target(frame)
                    else:
                        frame.pc += 3

                case (Opcode.IF_ICMPEQ | Opcode.IF_ICMPNE | Opcode.IF_ICMPLT
                      | Opcode.IF_ICMPGE | Opcode.IF_ICMPGT | Opcode.IF_ICMPLE):
                    b = stack.pop()
                    a = stack.pop()
                    if COMPARE_CONDITIONS[op](a, b):
                        frame.pc = self._branch_target(frame)
                    else:
                        frame.pc += 3

                case Opcode.GOTO:
                    frame.pc = self._branch_target(frame)

                case Opcode.IRETURN | Opcode.ARETURN:
                    result = ReturnValue.of(stack.pop())
                    if trace:
                        logger.debug("%sReturn %d from %s", "  " * self.depth, result.value, method)
                    return result

                case Opcode.RETURN:
                    if trace:
                        logger.debug("%sReturn from %s", "  " * self.depth, method)
                    return ReturnValue.void()

                case Opcode.GETSTATIC:
                    # Only System.out is ever fetched; the print is done by invokevirtual
                    frame.pc += 3

                case Opcode.INVOKEVIRTUAL:
                    print(stack.pop(), file=self.out)
                    frame.pc += 3

                case Opcode.INVOKESTATIC:
                    self._invoke(frame, self._operand(frame, ">H"))
                    frame.pc += 3

                case Opcode.NEWARRAY:
                    atype = self._operand(frame, ">B")
                    if atype != ArrayType.INT:
                        raise ExecutionError(
                            f"{method} pc={pc}: unsupported array type {atype}")
                    stack.push(self.heap.allocate(stack.pop()))
                    frame.pc += 2

                case Opcode.ARRAYLENGTH:
                    stack.push(self.heap.length(stack.pop()))
                    frame.pc += 1

                case Opcode.IALOAD:
                    index = stack.pop()
                    ref = stack.pop()
                    stack.push(self.heap.load(ref, index))
                    frame.pc += 1

                case Opcode.IASTORE:
                    value = stack.pop()
                    index = stack.pop()
                    ref = stack.pop()
                    self.heap.store(ref, index, value)
                    frame.pc += 1

                case Opcode.DUP:
                    value = stack.pop()
                    stack.push(value)
                    stack.push(value)
                    frame.pc += 1

                case _:
                    raise ExecutionError(f"{method} pc={pc}: unsupported opcode {op.name}")


def run_main(class_model: ClassModel, heap: Optional[Heap] = None,
             out: Optional[TextIO] = None) -> Interpreter:
    """Run ``main(String[])`` of a class; the run must end without a value."""
    method = class_model.find_method(MAIN_METHOD, MAIN_DESCRIPTOR)
    if method is None:
        others = [str(m) for m in class_model.methods if m.name == MAIN_METHOD]
        if others:
            raise LinkError(f"main() has the wrong descriptor: {', '.join(others)}")
        raise LinkError(f"Missing main() method in {class_model.name}")

    interpreter = Interpreter(class_model, heap, out)
    try:
        result = interpreter.execute(method)
    except RecursionError:
        raise StackDepthExceeded("Call depth exhausted") from None
    if result.has_value:
        raise LinkError("main() should return void")
    return interpreter
