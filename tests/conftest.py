"""Shared fixtures: assemble snippets and run them."""

import io
import sys
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).parent.parent))

from teenyjvm.assembler import Assembler
from teenyjvm.classreader import ClassModel, read_class_bytes
from teenyjvm.interpreter import Interpreter


@pytest.fixture(scope="session")
def assembler():
    return Assembler()


@pytest.fixture
def load(assembler):
    """Assemble source and read it back as a ClassModel."""
    def _load(source: str) -> ClassModel:
        return read_class_bytes(assembler.assemble(source).to_bytes())
    return _load


@pytest.fixture
def call(load):
    """Wrap a method body in a class, run it with args, return the ReturnValue."""
    def _call(body: str, descriptor: str = "()I", args=(), out=None):
        source = f".class Test\n.method static f{descriptor}\n{body}\n.end method\n"
        model = load(source)
        interpreter = Interpreter(model, out=out if out is not None else io.StringIO())
        return interpreter.execute(model.find_method("f", descriptor), list(args))
    return _call
