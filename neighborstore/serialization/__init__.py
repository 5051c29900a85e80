"""
Serialization helpers for persisting searchers in SQLite.
"""

from neighborstore.serialization.bins import flatten_bins, reconstruct_bins, validate_bins
from neighborstore.serialization.dtypes import (
    dtype_to_string,
    dtype_to_tag,
    string_to_dtype,
    tag_to_dtype,
)
from neighborstore.serialization.vectors import (
    decode_matrix,
    decode_vector,
    encode_matrix,
    encode_vector,
)

__all__ = [
    "decode_matrix",
    "decode_vector",
    "dtype_to_string",
    "dtype_to_tag",
    "encode_matrix",
    "encode_vector",
    "flatten_bins",
    "reconstruct_bins",
    "string_to_dtype",
    "tag_to_dtype",
    "validate_bins",
]
