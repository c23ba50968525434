"""Tests for frames and the operand stack."""

import pytest

from teenyjvm.errors import ExecutionError
from teenyjvm.frame import Frame, OperandStack, ReturnValue

from helpers import raw_method


class TestOperandStack:
    def test_lifo_order(self):
        stack = OperandStack(3)
        stack.push(1)
        stack.push(2)
        stack.push(3)
        assert stack.snapshot() == (1, 2, 3)
        assert stack.pop() == 3
        assert stack.pop() == 2
        assert len(stack) == 1

    def test_overflow(self):
        stack = OperandStack(1)
        stack.push(1)
        with pytest.raises(ExecutionError, match="overflow"):
            stack.push(2)

    def test_underflow(self):
        with pytest.raises(ExecutionError, match="underflow"):
            OperandStack(2).pop()


class TestFrame:
    def test_fresh_frame(self):
        frame = Frame(raw_method(b"", max_stack=2, max_locals=3))
        assert frame.pc == 0
        assert frame.locals == [0, 0, 0]
        assert len(frame.stack) == 0

    def test_initial_locals_fill_the_prefix(self):
        frame = Frame(raw_method(b"", max_locals=4), [7, 8])
        assert frame.locals == [7, 8, 0, 0]

    def test_too_many_initial_locals(self):
        with pytest.raises(ExecutionError, match="exceed max_locals"):
            Frame(raw_method(b"", max_locals=1), [1, 2])

    def test_load_and_store(self):
        frame = Frame(raw_method(b"", max_locals=2))
        frame.store(1, 42)
        assert frame.load(1) == 42

    @pytest.mark.parametrize("slot", [-1, 2])
    def test_slot_out_of_range(self, slot):
        frame = Frame(raw_method(b"", max_locals=2))
        with pytest.raises(ExecutionError, match="out of range"):
            frame.load(slot)
        with pytest.raises(ExecutionError, match="out of range"):
            frame.store(slot, 0)


class TestForCall:
    def test_arguments_land_in_declaration_order(self):
        caller = OperandStack(4)
        for value in (99, 1, 2, 3):
            caller.push(value)
        callee = Frame.for_call(raw_method(b"", descriptor="(III)I", max_locals=5), caller)
        assert callee.locals == [1, 2, 3, 0, 0]
        assert caller.snapshot() == (99,)

    def test_no_parameters_leaves_caller_stack(self):
        caller = OperandStack(2)
        caller.push(5)
        Frame.for_call(raw_method(b"", descriptor="()V"), caller)
        assert caller.snapshot() == (5,)

    def test_array_parameter_counts_as_one(self):
        caller = OperandStack(2)
        caller.push(0)
        caller.push(6)
        callee = Frame.for_call(raw_method(b"", descriptor="([II)V", max_locals=2), caller)
        assert callee.locals == [0, 6]

    def test_missing_arguments_underflow(self):
        caller = OperandStack(2)
        caller.push(1)
        with pytest.raises(ExecutionError, match="underflow"):
            Frame.for_call(raw_method(b"", descriptor="(II)I"), caller)

    def test_parameters_exceed_locals(self):
        caller = OperandStack(2)
        caller.push(1)
        caller.push(2)
        with pytest.raises(ExecutionError, match="exceed max_locals"):
            Frame.for_call(raw_method(b"", descriptor="(II)I", max_locals=1), caller)


class TestReturnValue:
    def test_void(self):
        assert not ReturnValue.void().has_value

    def test_value(self):
        result = ReturnValue.of(-3)
        assert result.has_value
        assert result.value == -3
