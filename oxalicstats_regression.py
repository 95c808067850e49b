#%% ################################################################################
# Least-squares line fits, used both for the dose-response curve and for the
# smoothed derivatives that locate the healthy/necrotic brightness transition.

from dataclasses import dataclass

import numpy as np
from numpy.lib.stride_tricks import sliding_window_view

from oxalicstats_config import (
    RegressionUndefined,
    TRANSITION_MAX_POINTS,
    TRANSITION_PEAK_SMOOTHING,
    TRANSITION_SMOOTHING,
)


@dataclass(frozen=True)
class RegressionResult:
    slope: float
    y_intercept: float
    r_squared: float

    def predict(self, x):
        return self.slope * np.asarray(x, dtype=float) + self.y_intercept


def linear_regression(x, y):
    """
    Ordinary least-squares fit of y = slope*x + y_intercept.

    Raises RegressionUndefined when there are fewer than two points, the x
    values have no spread, or any value is not finite. When all y are equal
    the horizontal line fits exactly and r_squared is 1.
    """

    x = np.asarray(x, dtype=float)
    y = np.asarray(y, dtype=float)

    if x.shape != y.shape or x.ndim != 1:
        raise ValueError(f"x and y must be 1D arrays of equal length, got {x.shape} and {y.shape}")
    if len(x) < 2:
        raise RegressionUndefined(f"Need at least 2 points to fit a line, got {len(x)}.")
    if not (np.all(np.isfinite(x)) and np.all(np.isfinite(y))):
        raise RegressionUndefined("Cannot fit a line through non-finite values.")

    # checked on the raw values, the mean of equal floats can be off by an ulp
    if np.ptp(x) == 0:
        raise RegressionUndefined("All x values are equal (insufficient concentration spread).")

    x_mean = x.mean()
    y_mean = y.mean()
    dx = x - x_mean
    ss_xx = np.sum(dx * dx)

    slope = np.sum(dx * (y - y_mean)) / ss_xx
    y_intercept = y_mean - slope * x_mean

    y_predicted = slope * x + y_intercept
    ss_res = np.sum((y - y_predicted) ** 2)
    ss_tot = np.sum((y - y_mean) ** 2)
    r_squared = 1.0 if ss_tot == 0 else 1 - ss_res / ss_tot

    return RegressionResult(float(slope), float(y_intercept), float(r_squared))


#%% ################################################################################
# Smoothed derivatives

def round_half_up(values):
    # .5 goes up, not to the nearest even number as round() does
    return np.floor(np.asarray(values, dtype=float) + 0.5).astype(int)


def chunk_length(data_length, smoothing_factor):
    # Needs to be at least 2 to calculate a slope
    return max(int(round_half_up(data_length * smoothing_factor)), 2)


def scale_array_index(i, original_length, smoothing_factor, step=1):
    """Map an index of a smoothed_derivative() output back to the centre of its window."""
    chunk_size = chunk_length(original_length, smoothing_factor)
    return i * step + (chunk_size - 1) / 2


def window_starts(data_length, smoothing_factor, step=1):
    end = data_length * (1 - smoothing_factor)
    n_windows = int(np.floor(end / step + 1e-9)) + 1
    return np.floor(np.arange(n_windows) * step).astype(int)


def smoothed_derivative(data, smoothing_factor, step=1):
    """
    Slope of a linear fit through every window of chunk_length() points,
    windows starting every `step` points (step may be fractional, starts are
    truncated). Windows running past the end are shortened; windows shorter
    than 2 points are dropped.
    """

    data = np.asarray(data, dtype=float)
    n = len(data)
    chunk_size = chunk_length(n, smoothing_factor)
    if n < 2:
        return np.zeros(0)

    starts = window_starts(n, smoothing_factor, step)
    starts = starts[starts <= n - 2]

    slopes = np.empty(len(starts))

    # Full windows, vectorised
    full = starts <= n - chunk_size
    if np.any(full):
        windows = sliding_window_view(data, chunk_size)[starts[full]]
        xs = np.arange(chunk_size) - (chunk_size - 1) / 2
        slopes[full] = windows @ xs / np.sum(xs * xs)

    # Shortened windows at the tail
    for idx in np.where(~full)[0]:
        chunk = data[starts[idx]:]
        xs = np.arange(len(chunk)) - (len(chunk) - 1) / 2
        slopes[idx] = chunk @ xs / np.sum(xs * xs)

    return slopes


def find_peak(data, smoothing=TRANSITION_SMOOTHING, peak_smoothing=TRANSITION_PEAK_SMOOTHING):
    """
    Index of the spike in data (where its slope goes from rising to falling),
    which is not necessarily the global maximum.
    """

    slopes = smoothed_derivative(data, smoothing)
    # the local maximum of data becomes the minimum of its second derivative
    slope_derivative = smoothed_derivative(slopes, peak_smoothing)
    if len(slope_derivative) == 0:
        return (len(data) - 1) / 2

    min_i = int(np.argmin(slope_derivative))
    x_intercept_i = scale_array_index(min_i, len(slopes), peak_smoothing)

    return scale_array_index(x_intercept_i, len(data), smoothing)


def find_transition_index(data, smoothing=TRANSITION_SMOOTHING,
                          peak_smoothing=TRANSITION_PEAK_SMOOTHING,
                          max_points=TRANSITION_MAX_POINTS):
    """
    Index in sorted brightness data where the dark (healthy) plateau turns
    into the bright (necrotic) plateau.

    Assumes exactly two plateaus. With one plateau, or more than two, the
    minimum found below is still returned but does not mean anything.
    """

    n = len(data)
    if n < 3:
        return n

    step = n / max_points
    slopes = smoothed_derivative(data, smoothing, step)
    peak_i = find_peak(slopes, smoothing, peak_smoothing)
    transition_i = int(round_half_up(scale_array_index(peak_i, n, smoothing, step)))

    return int(np.clip(transition_i, 0, n - 1))
