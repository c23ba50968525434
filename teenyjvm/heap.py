"""
Heap of integer arrays.

Arrays live in an arena and are addressed by their position in it. Element 0
of every array holds its length, elements 1..length the payload. Nothing is
ever freed: handles stay valid for the lifetime of the Heap and are never
reused.
"""

import logging

from .errors import HeapAccessError

logger = logging.getLogger(__name__)


class Heap:
    """Arena of length-prefixed int arrays addressed by integer handles."""

    def __init__(self):
        self._objects: list[list[int]] = []

    def __len__(self) -> int:
        return len(self._objects)

    def allocate(self, length: int) -> int:
        """Create a zeroed array of ``length`` elements and return its handle."""
        if length < 0:
            raise HeapAccessError(f"Negative array size: {length}")
        handle = len(self._objects)
        self._objects.append([length] + [0] * length)
        logger.debug("Allocated int[%d] as handle %d", length, handle)
        return handle

    def dereference(self, handle: int) -> list[int]:
        """The backing list of an array, including the length prefix."""
        if not 0 <= handle < len(self._objects):
            raise HeapAccessError(f"Invalid heap handle: {handle}")
        return self._objects[handle]

    def length(self, handle: int) -> int:
        return self.dereference(handle)[0]

    def _check_index(self, array: list[int], handle: int, index: int):
        if not 0 <= index < array[0]:
            raise HeapAccessError(
                f"Array index {index} out of bounds for length {array[0]} (handle {handle})")

    def load(self, handle: int, index: int) -> int:
        array = self.dereference(handle)
        self._check_index(array, handle, index)
        return array[index + 1]

    def store(self, handle: int, index: int, value: int):
        array = self.dereference(handle)
        self._check_index(array, handle, index)
        array[index + 1] = value
