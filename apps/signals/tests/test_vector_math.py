"""Tests for vector helpers."""
import math

import pytest

from errors import DimensionMismatch, ValidationError
from vector_math import cosine_similarity, magnitude, normalize, subtract_scaled, weighted_average


def test_normalize_yields_unit_length():
    for vec in ([3.0, 4.0], [0.1, -2.0, 7.5], [1e-6, 0.0]):
        assert magnitude(normalize(vec)) == pytest.approx(1.0)


def test_normalize_leaves_zero_vector_alone():
    assert normalize([0.0, 0.0, 0.0]) == [0.0, 0.0, 0.0]


def test_weighted_average_of_single_vector_is_the_vector():
    assert weighted_average([[1.0, -2.0, 3.0]], [0.7]) == pytest.approx([1.0, -2.0, 3.0])


def test_weighted_average_with_zero_weights_is_zero_not_nan():
    result = weighted_average([[1.0, 2.0], [3.0, 4.0]], [0.0, 0.0])
    assert result == [0.0, 0.0]
    assert not any(math.isnan(v) for v in result)


def test_weighted_average_weights_components():
    assert weighted_average([[1.0, 0.0], [0.0, 1.0]], [3.0, 1.0]) == pytest.approx([0.75, 0.25])


def test_weighted_average_rejects_mixed_dimensions():
    with pytest.raises(DimensionMismatch):
        weighted_average([[1.0, 0.0], [1.0, 0.0, 0.0]], [1.0, 1.0])


def test_weighted_average_rejects_weight_count_mismatch():
    with pytest.raises(DimensionMismatch):
        weighted_average([[1.0, 0.0]], [1.0, 2.0])


def test_cosine_similarity_basics():
    assert cosine_similarity([1.0, 0.0], [2.0, 0.0]) == pytest.approx(1.0)
    assert cosine_similarity([1.0, 0.0], [0.0, 5.0]) == pytest.approx(0.0)
    assert cosine_similarity([0.0, 0.0], [1.0, 1.0]) == 0.0


def test_dimension_mismatch_is_a_validation_error():
    with pytest.raises(ValidationError):
        cosine_similarity([1.0], [1.0, 2.0])
    with pytest.raises(ValueError):
        subtract_scaled([1.0, 2.0], [1.0], 0.3)


def test_subtract_scaled():
    assert subtract_scaled([1.0, 1.0], [1.0, 0.0], 0.3) == pytest.approx([0.7, 1.0])
