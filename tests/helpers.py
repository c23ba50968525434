"""Build methods and classes straight from bytes, bypassing the assembler."""

from teenyjvm.classreader import ClassModel, Method
from teenyjvm.descriptors import parameter_count


def raw_method(code: bytes, max_stack: int = 4, max_locals: int = 4,
               descriptor: str = "()I", name: str = "f") -> Method:
    return Method(
        access_flags=0x0009,
        name=name,
        descriptor=descriptor,
        code=bytes(code),
        max_stack=max_stack,
        max_locals=max_locals,
        parameter_count=parameter_count(descriptor),
    )


def raw_class(*methods: Method, constant_pool=None) -> ClassModel:
    return ClassModel(name="Raw", super_class="java/lang/Object", version=(50, 0),
                      constant_pool=constant_pool or [None], methods=tuple(methods))
