"""
Error types raised by the class reader, assembler and interpreter.

Every failure in this machine is fatal: there is no instruction-level
exception mechanism, so errors propagate to the caller of the run.
"""


class JVMError(Exception):
    """Base class for all teenyjvm errors."""
    pass


class ClassFormatError(JVMError):
    """Malformed or truncated class file."""
    pass


class AssemblyError(JVMError):
    """Error in assembly source."""

    def __init__(self, message: str, line: int | None = None):
        if line is not None:
            message = f"line {line}: {message}"
        super().__init__(message)
        self.line = line


class LinkError(JVMError):
    """A method or constant could not be resolved."""
    pass


class ExecutionError(JVMError):
    """Bytecode violated the frame or decoding contract."""
    pass


class ArithmeticTrap(ExecutionError):
    """Integer division or remainder by zero."""
    pass


class HeapAccessError(ExecutionError):
    """Bad heap handle or array index."""
    pass


class StackDepthExceeded(ExecutionError):
    """Method recursion exhausted the host call stack."""
    pass
