"""
Utility functions for labels, field identifiers and buffer encoding.
"""

import base64
import itertools
import time
import zlib
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

import numpy as np
import pandas as pd

from ..config import MAX_RLE_RUN


# =============================================================================
# Labels
# =============================================================================

def normalize_for_compare(value: Any) -> str:
    """Normalize a label for case-insensitive comparisons."""
    if value is None:
        return ""
    return str(value).strip().lower()


def make_unique_label(
    base_label: Any,
    existing_labels: Iterable[Any],
    start_index: int = 2,
    separator: str = " ",
) -> str:
    """Return ``base_label`` or ``base_label + " N"`` so that it is unique.

    Uniqueness is case-insensitive, so "Unassigned" collides with
    "unassigned".

    Args:
        base_label: Preferred label
        existing_labels: Labels already in use
        start_index: First numeric suffix to try (never below 2)
        separator: Text placed between the base and the suffix

    Returns:
        A label not present in ``existing_labels``, or "" for an empty base
    """
    base = "" if base_label is None else str(base_label).strip()
    if not base:
        return ""

    existing = {normalize_for_compare(label) for label in existing_labels or []}
    if normalize_for_compare(base) not in existing:
        return base

    suffix = max(2, int(start_index))
    while normalize_for_compare(f"{base}{separator}{suffix}") in existing:
        suffix += 1
    return f"{base}{separator}{suffix}"


# =============================================================================
# Field identifiers
# =============================================================================

_id_counter = itertools.count(1)


def make_field_id(source: str, key: str) -> str:
    """Registry key for a field: ``"source:originalKey"``."""
    return f"{source}:{key}"


def parse_field_id(field_id: str) -> Tuple[str, str]:
    """Split ``"source:key"``; the key itself may not contain a colon."""
    source, sep, key = str(field_id).partition(":")
    if not sep:
        raise ValueError(f"Malformed field id: {field_id!r}")
    return source, key


def generate_id(prefix: str = "id") -> str:
    """Process-unique identifier such as ``udf_1718000000000_3``."""
    return f"{prefix}_{int(time.time() * 1000)}_{next(_id_counter)}"


# =============================================================================
# Run-length encoding
# =============================================================================

def rle_encode(values: Sequence[int]) -> List[List[int]]:
    """Encode a code buffer as ``[[value, count], ...]`` runs.

    Runs are split at 65535 so every count fits in a uint16.
    """
    arr = np.asarray(values)
    if arr.size == 0:
        return []

    change = np.flatnonzero(arr[1:] != arr[:-1]) + 1
    starts = np.concatenate(([0], change))
    lengths = np.diff(np.concatenate((starts, [arr.size])))

    runs: List[List[int]] = []
    for start, length in zip(starts.tolist(), lengths.tolist()):
        value = int(arr[start])
        while length > MAX_RLE_RUN:
            runs.append([value, MAX_RLE_RUN])
            length -= MAX_RLE_RUN
        runs.append([value, length])
    return runs


def rle_decode(runs: Sequence[Sequence[int]], length: Optional[int] = None, dtype=np.uint8) -> np.ndarray:
    """Expand ``[[value, count], ...]`` back into a flat array.

    Args:
        runs: Output of :func:`rle_encode`
        length: Expected total length; output is truncated or zero-padded to it
        dtype: numpy dtype of the decoded buffer

    Returns:
        Decoded array
    """
    if not runs:
        return np.zeros(length or 0, dtype=dtype)

    values = np.fromiter((int(r[0]) for r in runs), dtype=np.int64, count=len(runs))
    counts = np.fromiter((int(r[1]) for r in runs), dtype=np.int64, count=len(runs))
    out = np.repeat(values, counts).astype(dtype)

    if length is not None and out.size != length:
        fixed = np.zeros(length, dtype=dtype)
        n = min(length, out.size)
        fixed[:n] = out[:n]
        out = fixed
    return out


# =============================================================================
# Buffer packing
# =============================================================================

def pack_buffer(array: np.ndarray, compress: bool = False) -> str:
    """Pack a numeric buffer as base64, optionally with zlib compression.

    Args:
        array: Any contiguous numpy array
        compress: Whether to apply zlib compression (level 6)

    Returns:
        Base64-encoded string of the binary data
    """
    raw_bytes = np.ascontiguousarray(array).tobytes()
    if compress:
        raw_bytes = zlib.compress(raw_bytes, level=6)
    return base64.b64encode(raw_bytes).decode("ascii")


def unpack_buffer(payload: str, dtype, compressed: bool = False) -> np.ndarray:
    """Inverse of :func:`pack_buffer`."""
    raw_bytes = base64.b64decode(payload.encode("ascii"))
    if compressed:
        raw_bytes = zlib.decompress(raw_bytes)
    return np.frombuffer(raw_bytes, dtype=dtype).copy()


def serialize_result(result: Any) -> Any:
    """Convert results to a JSON-compatible structure.

    Handles numpy arrays, pandas objects, sets and sparse matrices.
    """
    if isinstance(result, dict):
        return {str(k): serialize_result(v) for k, v in result.items()}
    elif isinstance(result, (list, tuple, set, frozenset)):
        return [serialize_result(item) for item in result]
    elif isinstance(result, np.ndarray):
        return result.tolist()
    elif isinstance(result, (np.integer, np.floating, np.bool_)):
        return result.item()
    elif isinstance(result, pd.Series):
        return result.tolist()
    elif isinstance(result, pd.DataFrame):
        return result.to_dict("records")
    elif hasattr(result, "toarray"):
        # Sparse matrix
        return result.toarray().tolist()
    elif isinstance(result, (str, int, float, bool, type(None))):
        return result
    else:
        return str(result)


def rgb_to_hex(rgb: Sequence[int]) -> str:
    return "#{:02x}{:02x}{:02x}".format(*[int(c) for c in rgb[:3]])


def error_result(message: str, **extra) -> Dict[str, Any]:
    result = {"type": "error", "message": message}
    result.update(extra)
    return result


def success_result(**extra) -> Dict[str, Any]:
    result: Dict[str, Any] = {"type": "success"}
    result.update(extra)
    return result
