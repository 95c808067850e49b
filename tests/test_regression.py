import math

import numpy as np
import pytest

from oxalicstats_config import RegressionUndefined
from oxalicstats_regression import (
    chunk_length,
    find_transition_index,
    linear_regression,
    round_half_up,
    scale_array_index,
    smoothed_derivative,
)


def test_points_on_a_line_are_fitted_exactly():
    x = np.array([0.0, 1.0, 2.0, 3.0, 4.0])
    result = linear_regression(x, 2 * x + 3)
    assert result.slope == pytest.approx(2, abs=1e-9)
    assert result.y_intercept == pytest.approx(3, abs=1e-9)
    assert result.r_squared == pytest.approx(1, abs=1e-9)


def test_log_concentrations():
    x = np.log10([8, 12, 14, 16])
    y = -1.5 * x + 0.25
    result = linear_regression(x, y)
    assert result.slope == pytest.approx(-1.5, abs=1e-9)
    assert result.y_intercept == pytest.approx(0.25, abs=1e-9)
    np.testing.assert_allclose(result.predict(x), y)


def test_r_squared_never_exceeds_one():
    anti = linear_regression([1, 2, 3, 4], [4, 3, 2, 1])
    assert anti.slope < 0
    assert anti.r_squared <= 1 + 1e-12

    zigzag = linear_regression([1, 2, 3, 4, 5, 6], [1, -1, 1, -1, 1, -1])
    assert zigzag.r_squared <= 1
    assert zigzag.r_squared < 0.2


def test_constant_y_gives_flat_exact_fit():
    result = linear_regression([1, 2, 3], [5, 5, 5])
    assert result.slope == 0
    assert result.y_intercept == 5
    assert result.r_squared == 1


@pytest.mark.parametrize('x, y', [
    ([], []),
    ([1.0], [2.0]),
    ([2.0, 2.0, 2.0], [1.0, 2.0, 3.0]),
    ([0.1] * 3, [1.0, 2.0, 3.0]),
    ([math.log10(6)] * 3, [0.0, 1.0, 2.0]),
    ([1.0, np.nan], [1.0, 2.0]),
])
def test_undefined_regressions_raise(x, y):
    with pytest.raises(RegressionUndefined):
        linear_regression(x, y)


def test_regression_undefined_is_a_value_error():
    with pytest.raises(ValueError):
        linear_regression([1, 1], [1, 2])


def test_chunk_length_and_index_scaling():
    assert chunk_length(1000, 0.05) == 50
    assert chunk_length(10, 0.01) == 2
    assert chunk_length(50, 0.05) == 3
    assert chunk_length(7850, 0.05) == 393
    assert scale_array_index(0, 1000, 0.05) == 24.5
    assert scale_array_index(10, 1000, 0.05, step=2) == 44.5


def test_smoothed_derivative_of_a_line_is_constant():
    data = 3 * np.arange(100)
    slopes = smoothed_derivative(data, 0.05)
    assert len(slopes) == 96
    np.testing.assert_allclose(slopes, 3)


def test_smoothed_derivative_with_fractional_step():
    data = np.arange(200, dtype=float)
    slopes = smoothed_derivative(data, 0.05, step=0.4)
    assert len(slopes) > 200
    np.testing.assert_allclose(slopes, 1)


def test_transition_between_two_plateaus():
    data = np.concatenate([np.full(600, 190), np.full(400, 230)])
    idx = find_transition_index(data)
    assert abs(idx - 600) <= 25


def test_transition_of_tiny_input_marks_nothing():
    assert find_transition_index([1, 2]) == 2


def test_halves_round_up():
    np.testing.assert_array_equal(round_half_up([0.5, 1.5, 2.5, -0.5, 2.4]), [1, 2, 3, 0, 2])
