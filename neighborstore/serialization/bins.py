"""
Flattening of the bin map into (bin_id, point_index) rows and back.

A bin map is dict[int, list[int]]: bin ID -> indices of the points hashed
into that bin.
"""

from typing import Iterable

from neighborstore.errors import StoreCorruptionError


def flatten_bins(bins: dict[int, list[int]]) -> list[tuple[int, int]]:
    """
    Flatten a bin map into (bin_id, point_index) pairs sorted by both fields.

    Keys and values are converted to plain ints so numpy integers can be bound
    as SQLite parameters.
    """
    pairs = [
        (int(bin_id), int(point_index))
        for bin_id, point_indices in bins.items()
        for point_index in point_indices
    ]
    pairs.sort()
    return pairs


def reconstruct_bins(pairs: Iterable[tuple[int, int]]) -> dict[int, list[int]]:
    """
    Group (bin_id, point_index) pairs into a bin map.

    Within a bin, point indices keep their first-seen order; duplicates collapse.
    """
    bins: dict[int, list[int]] = {}
    seen: dict[int, set[int]] = {}
    for bin_id, point_index in pairs:
        members = seen.setdefault(bin_id, set())
        if point_index in members:
            continue
        members.add(point_index)
        bins.setdefault(bin_id, []).append(point_index)
    return bins


def validate_bins(bins: dict[int, list[int]], point_count: int) -> None:
    """
    Check that the bins partition the point indices 0..point_count-1.

    Raises:
        StoreCorruptionError: If a point is missing, repeated or out of range.
    """
    assigned = [0] * point_count
    for bin_id, point_indices in bins.items():
        for point_index in point_indices:
            if not 0 <= point_index < point_count:
                raise StoreCorruptionError(
                    f"Bin {bin_id} references point {point_index}, "
                    f"but only {point_count} points exist"
                )
            assigned[point_index] += 1

    missing = [i for i, n in enumerate(assigned) if n == 0]
    if missing:
        raise StoreCorruptionError(
            f"{len(missing)} points are not assigned to any bin (first: {missing[0]})"
        )
    repeated = [i for i, n in enumerate(assigned) if n > 1]
    if repeated:
        raise StoreCorruptionError(
            f"{len(repeated)} points are assigned to more than one bin (first: {repeated[0]})"
        )
