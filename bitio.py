"""Bit sources and sinks used by READ and PRINT.

The interpreter only ever pulls one bit at a time from an input provider and
pushes one bit at a time into an output sink. How those bits map onto a
terminal is decided here: either every bit is written as a ``0``/``1``
character, or bits are packed eight at a time into a byte.
"""

from __future__ import annotations
import sys
from typing import Callable, Iterable, Iterator, List, Optional, TextIO, Union

import numpy as np


OUTPUT_BITS = "bits"
OUTPUT_ASCII = "ascii"
OUTPUT_MODES = (OUTPUT_BITS, OUTPUT_ASCII)


class StreamBitSource:
    """Reads bits character by character from a text stream.

    Whitespace is skipped, so ``101`` and ``1 0 1`` supply the same three
    bits. Any other character is handed back unchanged so that the caller
    can reject it.
    """

    def __init__(self, stream: Optional[TextIO] = None) -> None:
        self.stream = stream

    def read_bit(self) -> Union[int, str]:
        stream = self.stream if self.stream is not None else sys.stdin
        while True:
            ch = stream.read(1)
            if ch == "":
                raise EOFError("input stream exhausted")
            if ch.isspace():
                continue
            if ch in "01":
                return int(ch)
            return ch


class IterableBitSource:
    def __init__(self, bits: Iterable[Union[int, str]]) -> None:
        self._bits: Iterator[Union[int, str]] = iter(bits)

    def read_bit(self) -> Union[int, str]:
        try:
            bit = next(self._bits)
        except StopIteration:
            raise EOFError("input bits exhausted") from None
        if isinstance(bit, str) and bit in ("0", "1"):
            return int(bit)
        return bit


def bits_from_text(text: str) -> IterableBitSource:
    return IterableBitSource(ch for ch in text if not ch.isspace())


class BitSink:
    def __init__(self, write: Callable[[str], None]) -> None:
        self.write = write

    def emit(self, bit: int) -> None:
        raise NotImplementedError

    def flush(self) -> None:
        pass


class RawBitSink(BitSink):
    def emit(self, bit: int) -> None:
        self.write("1" if bit else "0")


class AsciiBitSink(BitSink):
    """Packs every eight emitted bits into one character.

    The first bit received becomes the most significant bit of the byte.
    Bytes are decoded as latin-1 so every value maps to exactly one
    character.
    """

    def __init__(self, write: Callable[[str], None]) -> None:
        super().__init__(write)
        self.buffer: List[int] = []

    def emit(self, bit: int) -> None:
        self.buffer.append(bit)
        if len(self.buffer) == 8:
            packed = np.packbits(np.array(self.buffer, dtype=np.uint8), bitorder="big")
            self.buffer.clear()
            self.write(packed.tobytes().decode("latin-1"))

    @property
    def pending(self) -> int:
        return len(self.buffer)

    def flush(self) -> None:
        # An incomplete trailing byte is never written.
        self.buffer.clear()


def make_output_sink(mode: str, write: Callable[[str], None]) -> BitSink:
    if mode == OUTPUT_BITS:
        return RawBitSink(write)
    if mode == OUTPUT_ASCII:
        return AsciiBitSink(write)
    raise ValueError(f"Unknown output mode '{mode}' (expected one of: {', '.join(OUTPUT_MODES)})")
