"""
This module provides the blood data containers and the time-grid resampling used by the in-scan intervention (ISI)
displacement models.

The forward simulators in :mod:`petisi.kinetic_modeling.displacement_models` integrate (or convolve) on a uniform,
fine time grid starting at :math:`t=0`. Arterial blood samples are rarely collected that way, so before any fitting
we:

    1. Make sure the blood data starts at :math:`t=0` by prepending a zero sample when needed
       (:func:`sanitize_blood_data`).
    2. Generate the uniform grid :math:`t_k = k h` covering the whole scan (:func:`generate_resample_times`).
    3. Interpolate the input function and whole-blood curve onto the grid with a shape-preserving piecewise cubic
       Hermite interpolant (PCHIP). Beyond the last blood sample, we fill with the mean of the last few samples
       (:func:`resample_blood_data`).

The same PCHIP interpolation (:func:`pchip_resample`) is used to put simulated curves back onto PET frame times.

Requires:
    The module relies on :doc:`numpy <numpy:index>` and :mod:`scipy.interpolate`.

"""
import warnings
from dataclasses import dataclass
import numpy as np
from scipy.interpolate import PchipInterpolator


@dataclass(frozen=True)
class BloodData:
    """Class to store arterial blood data.

    Attributes:
        times (np.ndarray): Blood sample times, in minutes. Must be strictly increasing.
        input_function (np.ndarray): Arterial input function values at ``times``.
        whole_blood (np.ndarray): Whole-blood activity values at ``times``.
    """
    times: np.ndarray
    input_function: np.ndarray
    whole_blood: np.ndarray

    def __post_init__(self):
        for name in ('times', 'input_function', 'whole_blood'):
            object.__setattr__(self, name, np.asarray(getattr(self, name), dtype=float).ravel())
        if not (len(self.times) == len(self.input_function) == len(self.whole_blood)):
            raise ValueError("Blood `times`, `input_function` and `whole_blood` must have the same length. Got "
                             f"{len(self.times)}, {len(self.input_function)} and {len(self.whole_blood)}.")
        if len(self.times) == 0:
            raise ValueError("Blood data must contain at least one sample.")
        if not np.all(np.isfinite(self.times)):
            raise ValueError("Blood `times` must be finite.")
        if np.any(np.diff(self.times) <= 0.0):
            raise ValueError("Blood `times` must be strictly increasing.")
        if self.times[0] < 0.0:
            raise ValueError(f"Blood `times` must be non-negative. Got first time {self.times[0]}.")


@dataclass(frozen=True)
class ResampledBloodData:
    """Class to store blood data on a uniform time grid starting at :math:`t=0`.

    Attributes:
        times (np.ndarray): Uniform times, :math:`t_k = k h`, in minutes.
        input_function (np.ndarray): Resampled arterial input function.
        whole_blood (np.ndarray): Resampled whole-blood curve.
        step_size (float): The grid step, :math:`h`, in minutes.
    """
    times: np.ndarray
    input_function: np.ndarray
    whole_blood: np.ndarray
    step_size: float


def sanitize_blood_data(blood_data: BloodData) -> BloodData:
    r"""
    Makes sure that the blood data starts from time zero.

    If the first sample time is larger than zero, a sample with :math:`t=0` and zero concentration (for both the input
    function and the whole-blood curve) is prepended. Otherwise, the data is returned as is.

    Args:
        blood_data (BloodData): The raw blood data.

    Returns:
        BloodData: Blood data whose first time is zero.
    """
    if blood_data.times[0] > 0.0:
        return BloodData(times=np.append(0.0, blood_data.times),
                         input_function=np.append(0.0, blood_data.input_function),
                         whole_blood=np.append(0.0, blood_data.whole_blood))
    return blood_data


def generate_resample_times(step_size: float, scan_duration: float) -> np.ndarray:
    r"""
    Generates the uniform time grid :math:`t_k = k h` for :math:`k=0,\ldots,N` with :math:`N=\lceil D/h \rceil`.

    The last grid point is the first multiple of the step size that is not smaller than the scan duration, :math:`D`.
    This way, interpolating a simulated curve back onto frame times inside the scan never extrapolates. A small
    relative tolerance keeps exact multiples (e.g. :math:`D=60, h=1/120`) from gaining an extra step due to rounding.

    Args:
        step_size (float): The step, :math:`h`, in minutes.
        scan_duration (float): The scan duration, :math:`D`, in minutes.

    Returns:
        np.ndarray: The uniform times.

    Raises:
        ValueError: If the step size or the scan duration are not positive.
    """
    if step_size <= 0.0:
        raise ValueError(f"`step_size` must be positive. Got {step_size}.")
    if scan_duration <= 0.0:
        raise ValueError(f"`scan_duration` must be positive. Got {scan_duration}.")
    num_steps = int(np.ceil(scan_duration / step_size * (1.0 - 1.0e-9)))
    new_times = np.arange(num_steps + 1, dtype=float) * step_size
    new_times[-1] = max(new_times[-1], scan_duration)
    return new_times


def calc_tail_fill_value(vals: np.ndarray, tail_window: int = 60) -> float:
    """
    Calculates the value used for times after the last blood sample: the mean of the last ``tail_window`` samples.

    If there are fewer samples than ``tail_window``, all samples are averaged and a warning is raised.

    Args:
        vals (np.ndarray): Sampled values.
        tail_window (int): Number of trailing samples to average. Defaults to 60.

    Returns:
        float: The mean of the trailing samples.

    Raises:
        ValueError: If the tail window is empty.
    """
    if tail_window < 1 or len(vals) == 0:
        raise ValueError(f"Cannot extrapolate blood data with an empty tail window (tail_window={tail_window}, "
                         f"number of samples={len(vals)}).")
    if len(vals) < tail_window:
        warnings.warn(f"Only {len(vals)} blood samples are available to extrapolate past the last sample; averaging "
                      f"all of them instead of the last {tail_window}.", RuntimeWarning, stacklevel=2)
    return float(np.mean(vals[-tail_window:]))


def pchip_resample(times: np.ndarray,
                   vals: np.ndarray,
                   new_times: np.ndarray,
                   fill_value: float = np.nan) -> np.ndarray:
    """
    Resamples values onto new times with a shape-preserving piecewise cubic Hermite interpolant.

    Args:
        times (np.ndarray): Strictly increasing sample times.
        vals (np.ndarray): Values at ``times``.
        new_times (np.ndarray): Times at which to evaluate the interpolant.
        fill_value (float): Value used for ``new_times`` outside ``[times[0], times[-1]]``. Defaults to ``nan``.

    Returns:
        np.ndarray: Interpolated values at ``new_times``.

    See Also:
        :class:`scipy.interpolate.PchipInterpolator`
    """
    new_vals = PchipInterpolator(x=times, y=vals, extrapolate=False)(new_times)
    new_vals[np.isnan(new_vals)] = fill_value
    return new_vals


def resample_blood_data(blood_data: BloodData,
                        step_size: float,
                        scan_duration: float,
                        tail_window: int = 60) -> ResampledBloodData:
    r"""
    Resamples the input function and whole-blood curve onto a uniform grid spanning the scan.

    The blood data is first sanitized (see :func:`sanitize_blood_data`), then both curves are interpolated with
    :func:`pchip_resample`. Grid times beyond the last blood sample take the mean of the last ``tail_window`` samples
    of each curve. The provided ``blood_data`` is not modified.

    Args:
        blood_data (BloodData): The raw blood data.
        step_size (float): The grid step, :math:`h`, in minutes.
        scan_duration (float): The end of the scan, in minutes.
        tail_window (int): Number of trailing samples averaged for extrapolation. Defaults to 60.

    Returns:
        ResampledBloodData: The blood data on the uniform grid.

    Raises:
        ValueError: If there are fewer than two samples after sanitizing, or the tail window is empty.

    See Also:
        * :func:`generate_resample_times`
        * :func:`calc_tail_fill_value`
    """
    sanitized = sanitize_blood_data(blood_data)
    if len(sanitized.times) < 2:
        raise ValueError("At least two blood samples (including t=0) are needed for interpolation.")
    new_times = generate_resample_times(step_size=step_size, scan_duration=scan_duration)

    input_fill = calc_tail_fill_value(sanitized.input_function, tail_window)
    wb_fill = calc_tail_fill_value(sanitized.whole_blood, tail_window)

    return ResampledBloodData(times=new_times,
                              input_function=pchip_resample(sanitized.times, sanitized.input_function, new_times,
                                                            fill_value=input_fill),
                              whole_blood=pchip_resample(sanitized.times, sanitized.whole_blood, new_times,
                                                         fill_value=wb_fill),
                              step_size=step_size)
