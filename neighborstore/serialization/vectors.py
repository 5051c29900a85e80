"""
Binary encoding of single vectors for BLOB storage.

Every payload is self-describing so that rows can be decoded independently:

    offset 0, 4 bytes: element count (int32, little-endian)
    offset 4, 1 byte:  dtype tag (0 = float32, 1 = float64)
    offset 5, N bytes: elements, little-endian, 4 or 8 bytes each

Decoding always returns float64 values regardless of the stored width.
"""

import struct
from typing import Iterable

import numpy as np

from neighborstore.errors import (
    MalformedPayloadError,
    StoreCorruptionError,
    UnknownPrecisionTagError,
)
from neighborstore.serialization.dtypes import dtype_to_tag, tag_to_dtype

_HEADER = struct.Struct("<iB")
HEADER_SIZE = _HEADER.size


def encode_vector(vector, dtype=np.float32) -> bytes:
    """
    Encode a 1D vector as a payload of the given width.

    Args:
        vector: 1D array-like of real numbers.
        dtype: numpy.float32 or numpy.float64.

    Returns:
        The encoded payload.
    """
    dtype = np.dtype(dtype)
    tag = dtype_to_tag(dtype)
    values = np.asarray(vector, dtype=dtype.newbyteorder("<"))
    if values.ndim != 1:
        raise ValueError(f"Vector must be 1D, got shape {values.shape}")
    return _HEADER.pack(values.shape[0], tag) + values.tobytes()


def decode_vector(payload: bytes) -> tuple[np.ndarray, np.dtype]:
    """
    Decode a payload produced by encode_vector().

    Returns:
        A (values, dtype) pair where values is a float64 array and dtype is
        the width the payload was stored with.

    Raises:
        MalformedPayloadError: If the buffer is truncated or its header is invalid.
    """
    payload = bytes(payload)
    if len(payload) < HEADER_SIZE:
        raise MalformedPayloadError(
            f"Payload of {len(payload)} bytes is shorter than the {HEADER_SIZE}-byte header"
        )

    count, tag = _HEADER.unpack_from(payload)
    if count < 0:
        raise MalformedPayloadError(f"Negative element count: {count}")
    try:
        dtype = tag_to_dtype(tag)
    except UnknownPrecisionTagError as exc:
        raise MalformedPayloadError(str(exc)) from exc

    expected = HEADER_SIZE + count * dtype.itemsize
    if len(payload) < expected:
        raise MalformedPayloadError(
            f"Payload declares {count} elements ({expected} bytes) "
            f"but only {len(payload)} bytes are present"
        )

    if count == 0:
        return np.empty(0, dtype=np.float64), dtype

    values = np.frombuffer(
        payload, dtype=dtype.newbyteorder("<"), count=count, offset=HEADER_SIZE
    )
    return values.astype(np.float64), dtype


def encode_matrix(matrix, dtype=np.float32) -> list[bytes]:
    """Encode each row of a 2D matrix as its own payload."""
    matrix = np.asarray(matrix)
    if matrix.ndim != 2:
        raise ValueError(f"Matrix must be 2D, got shape {matrix.shape}")
    return [encode_vector(row, dtype) for row in matrix]


def decode_matrix(payloads: Iterable[bytes], column_count: int) -> np.ndarray:
    """
    Decode row payloads into a float64 matrix of shape (n_rows, column_count).

    Raises:
        MalformedPayloadError: If a row cannot be decoded.
        StoreCorruptionError: If a row's element count differs from column_count.
    """
    rows = []
    for i, payload in enumerate(payloads):
        values, _ = decode_vector(payload)
        if values.shape[0] != column_count:
            raise StoreCorruptionError(
                f"Row {i} has {values.shape[0]} columns, expected {column_count}"
            )
        rows.append(values)

    if not rows:
        return np.empty((0, column_count), dtype=np.float64)
    return np.vstack(rows)
