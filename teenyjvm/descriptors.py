"""
JVM method and field descriptor parser.

Parses descriptor strings such as ``(I[I)V`` into parameter and return types.
See JVM Spec 4.3 for the descriptor grammar.
"""

from dataclasses import dataclass


BASE_TYPES = {
    "B": "byte", "C": "char", "D": "double", "F": "float",
    "I": "int", "J": "long", "S": "short", "Z": "boolean",
}


@dataclass(frozen=True)
class MethodDescriptor:
    """A parsed method descriptor."""
    parameter_types: tuple[str, ...]
    return_type: str  # field descriptor, or "V" for void

    @property
    def parameter_count(self) -> int:
        return len(self.parameter_types)

    @property
    def returns_value(self) -> bool:
        return self.return_type != "V"


class DescriptorParser:
    """Parses JVM descriptors."""

    def __init__(self, descriptor: str):
        self.desc = descriptor
        self.pos = 0

    def _peek(self) -> str:
        if self.pos >= len(self.desc):
            return ""
        return self.desc[self.pos]

    def _read(self) -> str:
        ch = self._peek()
        self.pos += 1
        return ch

    def _expect(self, expected: str):
        ch = self._read()
        if ch != expected:
            raise ValueError(f"Expected '{expected}' at pos {self.pos-1}, got '{ch}' in '{self.desc}'")

    def parse_method_descriptor(self) -> MethodDescriptor:
        self._expect("(")
        params = []
        while self._peek() != ")":
            if not self._peek():
                raise ValueError(f"Unterminated parameter list in '{self.desc}'")
            params.append(self._parse_field_type())
        self._expect(")")
        if self._peek() == "V":
            self._read()
            return_type = "V"
        else:
            return_type = self._parse_field_type()
        if self.pos != len(self.desc):
            raise ValueError(f"Trailing characters in descriptor '{self.desc}'")
        return MethodDescriptor(parameter_types=tuple(params), return_type=return_type)

    def parse_field_descriptor(self) -> str:
        result = self._parse_field_type()
        if self.pos != len(self.desc):
            raise ValueError(f"Trailing characters in descriptor '{self.desc}'")
        return result

    def _parse_field_type(self) -> str:
        start = self.pos
        ch = self._read()
        if ch in BASE_TYPES:
            return ch
        if ch == "[":
            self._parse_field_type()
            return self.desc[start:self.pos]
        if ch == "L":
            end = self.desc.find(";", self.pos)
            if end <= self.pos:
                raise ValueError(f"Unterminated class type at pos {start} in '{self.desc}'")
            self.pos = end + 1
            return self.desc[start:self.pos]
        raise ValueError(f"Unexpected char '{ch}' at pos {start} in descriptor '{self.desc}'")


def parse_method_descriptor(descriptor: str) -> MethodDescriptor:
    """Parse a method descriptor string."""
    return DescriptorParser(descriptor).parse_method_descriptor()


def parse_field_descriptor(descriptor: str) -> str:
    """Validate a field descriptor and return it."""
    return DescriptorParser(descriptor).parse_field_descriptor()


def parameter_count(descriptor: str) -> int:
    """Number of declared parameters in a method descriptor."""
    return parse_method_descriptor(descriptor).parameter_count
