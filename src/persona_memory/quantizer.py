"""Symmetric int8 quantization for embedding vectors.

Each vector gets its own scale, ``max(|v|) / 127``, so every component is
reconstructed to within ``scale / 2`` (``max(|v|) / 254``). Similarity is
computed with integer dot products directly on the int8 codes.
"""

from __future__ import annotations

from typing import Sequence

import numpy as np

from .models import QuantizedVector

QMAX = 127


def max_round_trip_error(vector: Sequence[float] | np.ndarray) -> float:
    """Upper bound on the per-component dequantization error for ``vector``."""
    arr = np.asarray(vector, dtype=np.float32)
    if arr.size == 0:
        return 0.0
    return float(np.max(np.abs(arr))) / (2 * QMAX)


def quantize(vector: Sequence[float] | np.ndarray) -> QuantizedVector:
    """Quantize a float vector to int8 codes plus a scale factor.

    Raises:
        ValueError: If the vector is not one-dimensional or holds NaN/inf.
    """
    arr = np.asarray(vector, dtype=np.float32)
    if arr.ndim != 1:
        raise ValueError(f"expected a 1-D vector, got shape {arr.shape}")
    if arr.size == 0:
        return QuantizedVector(data=b"", scale=1.0)
    if not np.all(np.isfinite(arr)):
        raise ValueError("vector contains non-finite values")

    scale = np.max(np.abs(arr)) / np.float32(QMAX)
    if scale == 0.0:
        # Zero vector, or magnitudes so small the float32 scale underflows
        return QuantizedVector(data=bytes(arr.size), scale=1.0)
    codes = np.clip(np.rint(arr / scale), -QMAX, QMAX).astype(np.int8)
    return QuantizedVector(data=codes.tobytes(), scale=float(scale))


def dequantize(data: bytes, scale: float) -> np.ndarray:
    """Reconstruct an approximate float32 vector."""
    codes = np.frombuffer(data, dtype=np.int8)
    return codes.astype(np.float32) * np.float32(scale)


def _codes(data: bytes) -> np.ndarray:
    return np.frombuffer(data, dtype=np.int8).astype(np.int32)


def cosine_similarity(
    query_data: bytes,
    query_scale: float,
    stored_data: bytes,
    stored_scale: float,
) -> float:
    """Cosine similarity of two quantized vectors, in [-1, 1].

    Returns 0.0 for mismatched dimensions or a zero vector.
    """
    if len(query_data) != len(stored_data) or not query_data:
        return 0.0

    a = _codes(query_data)
    b = _codes(stored_data)
    dot = int(np.dot(a, b))
    norm_a = int(np.dot(a, a))
    norm_b = int(np.dot(b, b))
    if norm_a == 0 or norm_b == 0:
        return 0.0

    scaled_dot = dot * query_scale * stored_scale
    scaled_norms = (
        np.sqrt(norm_a) * query_scale * np.sqrt(norm_b) * stored_scale
    )
    return float(np.clip(scaled_dot / scaled_norms, -1.0, 1.0))


def dot_product(
    query_data: bytes,
    query_scale: float,
    stored_data: bytes,
    stored_scale: float,
) -> float:
    """Approximate float dot product of two quantized vectors."""
    if len(query_data) != len(stored_data):
        return 0.0
    dot = int(np.dot(_codes(query_data), _codes(stored_data)))
    return dot * query_scale * stored_scale


def cosine_matrix(query: QuantizedVector, stored: Sequence[bytes]) -> np.ndarray:
    """Cosine similarity of ``query`` against many equal-length stored codes.

    Scales cancel out of the cosine, so only the int8 codes are needed.
    """
    if not stored:
        return np.zeros(0, dtype=np.float64)

    matrix = np.frombuffer(b"".join(stored), dtype=np.int8).reshape(
        len(stored), query.dim
    ).astype(np.int32)
    q = _codes(query.data)

    dots = matrix @ q
    norms = np.sqrt((matrix * matrix).sum(axis=1).astype(np.float64))
    q_norm = float(np.sqrt(np.dot(q, q)))
    denom = norms * q_norm

    sims = np.zeros(len(stored), dtype=np.float64)
    nonzero = denom > 0
    sims[nonzero] = dots[nonzero] / denom[nonzero]
    return np.clip(sims, -1.0, 1.0)
