"""
Little-endian binary archive used for model checkpoints.

Counts, indices and cache steps are stored as int32, floating-point values
as float64, so restored values are bit-identical to the stored ones.
"""

import struct
from typing import BinaryIO

import numpy as np

_INT = struct.Struct("<i")
_DOUBLE = struct.Struct("<d")


class Archive:
    """Sequential reader/writer over a binary stream."""

    def __init__(self, stream: BinaryIO):
        self.stream = stream

    def _read(self, size: int) -> bytes:
        data = self.stream.read(size)
        if len(data) != size:
            raise EOFError(f"Archive truncated: expected {size} bytes, got {len(data)}")
        return data

    def write_int(self, value: int) -> None:
        self.stream.write(_INT.pack(int(value)))

    def read_int(self) -> int:
        return _INT.unpack(self._read(_INT.size))[0]

    def write_double(self, value: float) -> None:
        self.stream.write(_DOUBLE.pack(float(value)))

    def read_double(self) -> float:
        return _DOUBLE.unpack(self._read(_DOUBLE.size))[0]

    def write_int_array(self, values: np.ndarray) -> None:
        values = np.asarray(values).ravel()
        self.write_int(values.size)
        self.stream.write(values.astype("<i4").tobytes())

    def read_int_array(self) -> np.ndarray:
        size = self.read_int()
        return np.frombuffer(self._read(4 * size), dtype="<i4").astype(np.int64)

    def write_double_array(self, values: np.ndarray) -> None:
        values = np.asarray(values).ravel()
        self.write_int(values.size)
        self.stream.write(values.astype("<f8").tobytes())

    def read_double_array(self) -> np.ndarray:
        size = self.read_int()
        return np.frombuffer(self._read(8 * size), dtype="<f8").astype(np.float64)
