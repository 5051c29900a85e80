"""
Mapping between numpy float dtypes and their persisted forms.

Two forms exist: the label stored in the searcher metadata row
("float32"/"float64") and the one-byte tag embedded in every vector payload
(0/1).
"""

import numpy as np

from neighborstore.errors import UnknownPrecisionTagError

_DTYPE_NAMES = {
    np.dtype(np.float32): "float32",
    np.dtype(np.float64): "float64",
}
_NAME_DTYPES = {name: dtype for dtype, name in _DTYPE_NAMES.items()}

_DTYPE_TAGS = {
    np.dtype(np.float32): 0,
    np.dtype(np.float64): 1,
}
_TAG_DTYPES = {tag: dtype for dtype, tag in _DTYPE_TAGS.items()}


def _normalize(dtype) -> np.dtype:
    try:
        normalized = np.dtype(dtype)
    except TypeError as exc:
        raise UnknownPrecisionTagError(f"Unknown dtype: {dtype!r}") from exc
    if normalized not in _DTYPE_NAMES:
        raise UnknownPrecisionTagError(f"Unsupported dtype: {normalized}")
    return normalized


def dtype_to_string(dtype) -> str:
    """Return the metadata label for a float32/float64 dtype."""
    return _DTYPE_NAMES[_normalize(dtype)]


def string_to_dtype(name: str) -> np.dtype:
    """
    Return the dtype for a metadata label.

    Raises:
        UnknownPrecisionTagError: If the label is not "float32" or "float64".
    """
    try:
        return _NAME_DTYPES[name]
    except (KeyError, TypeError):
        raise UnknownPrecisionTagError(f"Unknown dtype: {name!r}") from None


def dtype_to_tag(dtype) -> int:
    return _DTYPE_TAGS[_normalize(dtype)]


def tag_to_dtype(tag: int) -> np.dtype:
    try:
        return _TAG_DTYPES[tag]
    except KeyError:
        raise UnknownPrecisionTagError(f"Unknown dtype tag: {tag}") from None
