"""
Activation records: operand stack, locals and program counter.
"""

from dataclasses import dataclass
from typing import Optional, Sequence

from .classreader import Method
from .errors import ExecutionError


class OperandStack:
    """Bounded LIFO of 32-bit ints."""

    def __init__(self, capacity: int):
        self.capacity = capacity
        self._items: list[int] = []

    def __len__(self) -> int:
        return len(self._items)

    def __repr__(self):
        return f"OperandStack({self._items!r})"

    def push(self, value: int):
        if len(self._items) >= self.capacity:
            raise ExecutionError(f"Operand stack overflow (max_stack={self.capacity})")
        self._items.append(value)

    def pop(self) -> int:
        if not self._items:
            raise ExecutionError("Operand stack underflow")
        return self._items.pop()

    def snapshot(self) -> tuple[int, ...]:
        return tuple(self._items)


class Frame:
    """One method activation."""

    def __init__(self, method: Method, locals_: Optional[Sequence[int]] = None):
        self.method = method
        self.pc = 0
        self.locals = [0] * method.max_locals
        if locals_ is not None:
            if len(locals_) > method.max_locals:
                raise ExecutionError(
                    f"{method}: {len(locals_)} initial locals exceed max_locals={method.max_locals}")
            self.locals[:len(locals_)] = locals_
        self.stack = OperandStack(method.max_stack)

    @classmethod
    def for_call(cls, method: Method, caller_stack: OperandStack) -> "Frame":
        """Build a callee frame, popping its arguments off the caller's stack.

        The first value popped is the last parameter, so ``f(x, y)`` gets
        ``locals[0] = x`` and ``locals[1] = y``.
        """
        count = method.parameter_count
        if count > method.max_locals:
            raise ExecutionError(
                f"{method}: {count} parameters exceed max_locals={method.max_locals}")
        frame = cls(method)
        for k in range(count):
            frame.locals[count - 1 - k] = caller_stack.pop()
        return frame

    def _check_slot(self, slot: int):
        if not 0 <= slot < len(self.locals):
            raise ExecutionError(
                f"{self.method} pc={self.pc}: local slot {slot} out of range "
                f"(max_locals={len(self.locals)})")

    def load(self, slot: int) -> int:
        self._check_slot(slot)
        return self.locals[slot]

    def store(self, slot: int, value: int):
        self._check_slot(slot)
        self.locals[slot] = value

    def __repr__(self):
        return f"<Frame {self.method} pc={self.pc} locals={self.locals} stack={self.stack.snapshot()}>"


@dataclass(frozen=True)
class ReturnValue:
    """Result of a completed invocation: void, or one int."""
    has_value: bool = False
    value: int = 0

    @classmethod
    def void(cls) -> "ReturnValue":
        return cls()

    @classmethod
    def of(cls, value: int) -> "ReturnValue":
        return cls(True, value)
