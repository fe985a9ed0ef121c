"""Tests for int8 vector quantization and quantized-domain similarity."""

from __future__ import annotations

import numpy as np
import pytest

from persona_memory.models import QuantizedVector
from persona_memory.quantizer import (
    QMAX,
    cosine_matrix,
    cosine_similarity,
    dequantize,
    dot_product,
    max_round_trip_error,
    quantize,
)


def _float_cosine(a: np.ndarray, b: np.ndarray) -> float:
    return float(np.dot(a, b) / (np.linalg.norm(a) * np.linalg.norm(b)))


# ---------------------------------------------------------------------------
# Round trip
# ---------------------------------------------------------------------------


class TestRoundTrip:
    @pytest.mark.parametrize("magnitude", [1e-3, 1.0, 50.0])
    def test_error_within_documented_bound(self, magnitude):
        rng = np.random.default_rng(7)
        for _ in range(20):
            v = rng.normal(size=128) * magnitude
            q = quantize(v)
            restored = dequantize(q.data, q.scale)
            error = np.max(np.abs(restored - v))
            assert error <= max_round_trip_error(v) * (1 + 1e-3)

    def test_scale_from_max_abs_component(self):
        q = quantize([0.5, -2.54, 1.0])
        assert q.scale == pytest.approx(2.54 / QMAX)
        codes = np.frombuffer(q.data, dtype=np.int8)
        assert codes[1] == -QMAX

    def test_codes_stay_in_symmetric_range(self):
        rng = np.random.default_rng(1)
        q = quantize(rng.normal(size=512) * 10)
        codes = np.frombuffer(q.data, dtype=np.int8)
        assert codes.min() >= -QMAX
        assert codes.max() <= QMAX

    def test_zero_vector(self):
        q = quantize(np.zeros(8))
        assert q.scale == 1.0
        assert q.data == bytes(8)
        assert np.all(dequantize(q.data, q.scale) == 0.0)

    def test_subnormal_vector_treated_as_zero(self):
        q = quantize([1e-44, -1e-44, 0.0])
        assert q.scale == 1.0
        assert q.data == bytes(3)
        assert np.all(np.isfinite(dequantize(q.data, q.scale)))

    def test_empty_vector(self):
        q = quantize([])
        assert q.data == b""
        assert q.dim == 0

    def test_dim_matches_length(self):
        assert quantize(np.ones(33)).dim == 33

    def test_rejects_non_finite(self):
        with pytest.raises(ValueError):
            quantize([1.0, float("nan")])
        with pytest.raises(ValueError):
            quantize([float("inf"), 0.0])

    def test_rejects_matrix(self):
        with pytest.raises(ValueError):
            quantize(np.ones((2, 2)))


# ---------------------------------------------------------------------------
# Similarity
# ---------------------------------------------------------------------------


class TestSimilarity:
    def test_ordering_preserved_for_separated_pairs(self):
        rng = np.random.default_rng(42)
        base = rng.normal(size=256)
        near = base + 0.1 * rng.normal(size=256)

        a = rng.normal(size=256)
        b = rng.normal(size=256)
        b = b - (np.dot(a, b) / np.dot(a, a)) * a  # orthogonal to a

        assert _float_cosine(base, near) > 0.9
        assert abs(_float_cosine(a, b)) < 0.1

        qb, qn, qa, qo = quantize(base), quantize(near), quantize(a), quantize(b)
        high = cosine_similarity(qb.data, qb.scale, qn.data, qn.scale)
        low = cosine_similarity(qa.data, qa.scale, qo.data, qo.scale)
        assert high > low

    def test_close_to_float_cosine(self):
        rng = np.random.default_rng(3)
        for _ in range(10):
            a, b = rng.normal(size=128), rng.normal(size=128)
            qa, qb = quantize(a), quantize(b)
            quantized = cosine_similarity(qa.data, qa.scale, qb.data, qb.scale)
            assert quantized == pytest.approx(_float_cosine(a, b), abs=0.02)

    def test_identical_vectors(self):
        q = quantize([0.3, -0.2, 0.9, 0.1])
        assert cosine_similarity(q.data, q.scale, q.data, q.scale) == pytest.approx(1.0)

    def test_opposite_vectors(self):
        a = quantize([1.0, 2.0, 3.0])
        b = quantize([-1.0, -2.0, -3.0])
        assert cosine_similarity(a.data, a.scale, b.data, b.scale) == pytest.approx(-1.0)

    def test_result_in_range(self):
        rng = np.random.default_rng(11)
        for _ in range(25):
            a, b = quantize(rng.normal(size=16)), quantize(rng.normal(size=16))
            assert -1.0 <= cosine_similarity(a.data, a.scale, b.data, b.scale) <= 1.0

    def test_mismatched_dimension_is_zero(self):
        a, b = quantize(np.ones(4)), quantize(np.ones(5))
        assert cosine_similarity(a.data, a.scale, b.data, b.scale) == 0.0

    def test_zero_vector_is_zero(self):
        a, b = quantize(np.zeros(4)), quantize(np.ones(4))
        assert cosine_similarity(a.data, a.scale, b.data, b.scale) == 0.0

    def test_dot_product_approximates_float_dot(self):
        a = np.array([0.5, -1.0, 2.0, 0.25])
        b = np.array([1.5, 0.5, -0.5, 2.0])
        qa, qb = quantize(a), quantize(b)
        assert dot_product(qa.data, qa.scale, qb.data, qb.scale) == pytest.approx(
            float(np.dot(a, b)), abs=0.1
        )

    def test_cosine_matrix_matches_pairwise(self):
        rng = np.random.default_rng(5)
        query = quantize(rng.normal(size=32))
        stored = [quantize(rng.normal(size=32)) for _ in range(6)]
        sims = cosine_matrix(query, [s.data for s in stored])
        expected = [
            cosine_similarity(query.data, query.scale, s.data, s.scale) for s in stored
        ]
        assert np.allclose(sims, expected)

    def test_cosine_matrix_empty(self):
        assert cosine_matrix(QuantizedVector(data=b"\x01", scale=1.0), []).size == 0
