"""
streams.py
~~~~~~~~~~

Pull-based sample streams that feed training examples to the network.

A stream knows how many samples it will deliver, hands them out one at a
time through ``has_next``/``next`` and can be capped to a shorter length
before it has been drained.
"""

from abc import ABC, abstractmethod
from typing import Iterator, Sequence

from digitnet.matrix import Matrix


class SampleStream(ABC):
    """
    Base class for finite, length-capped streams of matrices.

    Subclasses set ``length`` and implement ``_read``.
    """

    def __init__(self, length: int):
        self.length = length
        self.position = 0

    @abstractmethod
    def _read(self, index: int) -> Matrix:
        """Return the sample stored at ``index``."""

    def has_next(self) -> bool:
        return self.position < self.length

    def next(self) -> Matrix:
        """
        Return the next sample.

        Raises:
            StopIteration: If the stream is exhausted
        """
        if not self.has_next():
            raise StopIteration
        value = self._read(self.position)
        self.position += 1
        return value

    def limit(self, lim: int) -> None:
        """Cap the stream at ``lim`` samples. Never extends it."""
        if lim < self.length:
            self.length = max(lim, 0)

    def __len__(self) -> int:
        return self.length

    def __iter__(self) -> Iterator[Matrix]:
        while self.has_next():
            yield self.next()


class ArrayStream(SampleStream):
    """Stream over an in-memory sequence of matrices."""

    def __init__(self, items: Sequence[Matrix]):
        super().__init__(len(items))
        self._items = items

    def _read(self, index: int) -> Matrix:
        return self._items[index]
