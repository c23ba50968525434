"""teenyjvm - a tiny JVM for integer arithmetic, int arrays and static calls."""

from .classreader import ClassModel, Method, read_class_bytes, read_class_file
from .errors import JVMError
from .heap import Heap
from .interpreter import Interpreter, run_main

__version__ = "0.1.0"
__all__ = [
    "ClassModel",
    "Heap",
    "Interpreter",
    "JVMError",
    "Method",
    "read_class_bytes",
    "read_class_file",
    "run_main",
]
