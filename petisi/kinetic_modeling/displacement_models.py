r"""
This module contains the forward simulators for the one-tissue compartment (1TCM) displacement model used for in-scan
intervention (ISI) studies, where a drug administered at :math:`t_b` during the scan blocks a fraction of the specific
binding sites.

In the 1TCM, the tissue concentration obeys

.. math::

    \frac{\mathrm{d}C_\mathrm{T}}{\mathrm{d}t} = K_1 C_\mathrm{P}(t) - \frac{K_1}{V_\mathrm{ND} + V_\mathrm{S}(t)}
    C_\mathrm{T}(t),

with :math:`V_\mathrm{S}(t) = V_\mathrm{S} (1 - o(t))` and :math:`o(t)` the occupancy. The measured signal also has
a blood-volume contribution, :math:`C_\mathrm{PET} = (1 - v_\mathrm{B}) C_\mathrm{T} + v_\mathrm{B} C_\mathrm{WB}`.

Two solvers are provided, both working on a uniform time grid (see
:func:`petisi.input_function.blood_input.resample_blood_data`):

    * :class:`NumericalDisplacementSolver`: explicit (forward) Euler integration with a smooth occupancy growth
      between :math:`t_b` and :math:`t_e`.
    * :class:`SingleStepDisplacementSolver`: piecewise analytical solution, as causal convolutions, where the
      occupancy jumps from 0 to :math:`o` at :math:`t_s`.

All solvers share the parameter vector ``[k1, vs, vb, occupancy, vnd, event_time_offset]``, where the event time
(:math:`t_e` or :math:`t_s`) is ``intervention_time + event_time_offset``.

Note:
    The Euler step is fixed, not adaptive. The integration is only stable and accurate when
    :math:`h K_1 / (V_\mathrm{ND} + V_\mathrm{S}) \ll 1`; the default :math:`h=1/120` min is chosen empirically.

Requires:
    The module relies on the :doc:`numpy <numpy:index>` and :doc:`numba <numba:index>` modules.

"""
from abc import ABC, abstractmethod
import numba
import numpy as np
from ..input_function.blood_input import ResampledBloodData

NUM_PARAMS = 6


def calc_convolution_with_check(f: np.ndarray, g: np.ndarray, dt: float) -> np.ndarray:
    r"""Performs a discrete causal convolution of two arrays, assumed to represent time-series data. Checks if the
    arrays are of the same shape.

    Let ``f``:math:`=f(t)` and ``g``:math:`=g(t)` where both functions are 0 for :math:`t\leq0`. Then,
    the output, :math:`h(t)`, is

    .. math::

        h(t) = \int_{0}^{t}f(s)g(t-s)\mathrm{d}s

    Args:
        f (np.ndarray): Array containing the values for the input function.
        g (np.ndarray): Array containing values for the response function.
        dt (float): The step-size, in the time-domain, between samples for ``f`` and ``g``.

    Returns:
        (np.ndarray): Convolution of the two arrays scaled by ``dt``.

    """
    assert len(f) == len(g), f"The provided arrays must have the same lengths! f:{len(f):<6} and g:{len(g):<6}."
    vals = np.convolve(f, g, mode='full')
    return vals[:len(f)] * dt


def calc_occupancy_growth_curve(t: np.ndarray, tb: float, tm: float, te: float, occupancy: float) -> np.ndarray:
    r"""Calculates the occupancy as a function of time, growing from 0 at :math:`t_b` to ``occupancy`` at :math:`t_e`.

    The growth follows the sigmoidal curve

    .. math::

        o(t) = o \left(1 + \frac{t_e - t}{t_e - t_m}\right)
        \left(\frac{t - t_b}{t_e - t_b}\right)^{\frac{t_e - t_b}{t_e - t_m}}

    for :math:`t_b \leq t < t_e`, with :math:`o(t)=0` before :math:`t_b` and :math:`o(t)=o` from :math:`t_e` onwards.
    :math:`t_m` is the time of the steepest growth. If :math:`t_e \leq t_b`, the growth is an instantaneous step at
    :math:`t_b`.

    Args:
        t (np.ndarray): Times, in minutes.
        tb (float): Time at which the growth begins.
        tm (float): Time of maximal growth rate, :math:`t_b < t_m < t_e`.
        te (float): Time at which ``occupancy`` is reached.
        occupancy (float): The maximal occupancy.

    Returns:
        np.ndarray: Occupancy at each time.
    """
    t = np.asarray(t, dtype=float)
    growth = np.zeros_like(t)
    if te <= tb:
        growth[t >= tb] = 1.0
        return occupancy * growth
    in_growth = (t >= tb) & (t < te)
    exponent = (te - tb) / (te - tm)
    t_growth = t[in_growth]
    growth[in_growth] = (1.0 + (te - t_growth) / (te - tm)) * ((t_growth - tb) / (te - tb)) ** exponent
    growth[t >= te] = 1.0
    return occupancy * growth


@numba.njit(error_model='numpy')
def _integrate_1tcm_with_euler_forward(input_vals: np.ndarray,
                                       vs_vals: np.ndarray,
                                       k1: float,
                                       vnd: float,
                                       step_size: float) -> np.ndarray:
    r"""Explicit Euler integration of the 1TCM with a time-varying specific distribution volume.

    .. math::

        C_\mathrm{T}[i] = h K_1 C_\mathrm{P}[i-1] + \left(1 - \frac{h K_1}{V_\mathrm{ND} + V_\mathrm{S}[i-1]}\right)
        C_\mathrm{T}[i-1]

    with :math:`C_\mathrm{T}[0]=0`.
    """
    ct = np.zeros_like(input_vals)
    for i in range(1, len(input_vals)):
        ct[i] = step_size * k1 * input_vals[i - 1] + (1.0 - step_size * k1 / (vnd + vs_vals[i - 1])) * ct[i - 1]
    return ct


def apply_blood_volume_correction(tissue_vals: np.ndarray, whole_blood_vals: np.ndarray, vb: float) -> np.ndarray:
    r"""Adds the blood contribution to a tissue curve: :math:`(1-v_\mathrm{B})C_\mathrm{T} + v_\mathrm{B}C_\mathrm{WB}`.

    Args:
        tissue_vals (np.ndarray): Tissue curve.
        whole_blood_vals (np.ndarray): Whole-blood curve, on the same times as ``tissue_vals``.
        vb (float): Fractional blood volume.

    Returns:
        np.ndarray: The blood-volume corrected curve.
    """
    return (1.0 - vb) * tissue_vals + vb * whole_blood_vals


def generate_tac_1tcm_numerical_displacement(tac_times: np.ndarray,
                                             input_vals: np.ndarray,
                                             k1: float,
                                             vs: float,
                                             occupancy: float,
                                             vnd: float,
                                             tb: float,
                                             te: float) -> np.ndarray:
    r"""Calculate the tissue TAC for the 1TCM displacement model with smooth occupancy growth, using Euler forward.

    Args:
        tac_times (np.ndarray): Uniformly spaced times, starting at :math:`t=0`.
        input_vals (np.ndarray): Arterial input function at ``tac_times``.
        k1 (float): Rate constant for transport from plasma to tissue.
        vs (float): Specific distribution volume at baseline (zero occupancy).
        occupancy (float): Maximal occupancy reached during the scan.
        vnd (float): Non-displaceable distribution volume.
        tb (float): Intervention time, where occupancy starts to grow.
        te (float): Time where the occupancy is reached.

    Returns:
        np.ndarray: ``[tac_times, tissue_vals]``.

    See Also:
        :func:`calc_occupancy_growth_curve`
    """
    step_size = tac_times[1] - tac_times[0]
    tm = 0.5 * (tb + te)
    occupancy_vals = calc_occupancy_growth_curve(t=tac_times, tb=tb, tm=tm, te=te, occupancy=occupancy)
    vs_vals = vs * (1.0 - occupancy_vals)
    tissue_vals = _integrate_1tcm_with_euler_forward(np.ascontiguousarray(input_vals, dtype=np.float64),
                                                     np.ascontiguousarray(vs_vals, dtype=np.float64),
                                                     float(k1), float(vnd), float(step_size))
    return np.asarray([tac_times, tissue_vals])


def generate_tac_1tcm_singlestep_displacement(tac_times: np.ndarray,
                                              input_vals: np.ndarray,
                                              k1: float,
                                              vs: float,
                                              occupancy: float,
                                              vnd: float,
                                              ts: float) -> np.ndarray:
    r"""Calculate the tissue TAC for the 1TCM displacement model where the occupancy jumps from 0 to ``occupancy`` at
    :math:`t_s`.

    With :math:`k_2=K_1/V_\mathrm{ND}` and :math:`BP=V_\mathrm{S}/V_\mathrm{ND}`, the grid is split at the sample
    nearest to :math:`t_s`. Before the step,

    .. math::

        C_\mathrm{T}(t) = C_\mathrm{P}(t) \otimes K_1 e^{-\frac{k_2}{1 + BP}t}.

    After the step, with :math:`a = 1 + (1-o)BP` and :math:`\tau = t - t_s`,

    .. math::

        C_\mathrm{T}(t) = C_\mathrm{P}(t) \otimes K_1 e^{-\frac{k_2}{a}\tau} + C_\mathrm{T}(t_s)e^{-\frac{k_2}{a}\tau}.

    If :math:`t_s` lies beyond the grid, the whole curve is pre-step. If :math:`t_s\leq 0`, only the :math:`t=0`
    sample is pre-step.

    Args:
        tac_times (np.ndarray): Uniformly spaced times, starting at :math:`t=0`.
        input_vals (np.ndarray): Arterial input function at ``tac_times``.
        k1 (float): Rate constant for transport from plasma to tissue.
        vs (float): Specific distribution volume at baseline (zero occupancy).
        occupancy (float): Occupancy after the step.
        vnd (float): Non-displaceable distribution volume.
        ts (float): Time of the step.

    Returns:
        np.ndarray: ``[tac_times, tissue_vals]``.

    """
    step_size = tac_times[1] - tac_times[0]
    k2 = np.divide(k1, vnd)
    bp = np.divide(vs, vnd)

    step_id = int(np.argmin(np.abs(tac_times - ts)))
    t_pre = tac_times[:step_id + 1]
    t_post = tac_times[step_id + 1:]

    irf_pre = k1 * np.exp(-k2 * t_pre / (1.0 + bp))
    ct_pre = calc_convolution_with_check(f=input_vals[:step_id + 1], g=irf_pre, dt=step_size)
    if len(t_post) == 0:
        return np.asarray([tac_times, ct_pre])

    tau = t_post - ts
    post_decay = np.exp(-k2 * tau / (1.0 + (1.0 - occupancy) * bp))
    ct_post = calc_convolution_with_check(f=input_vals[step_id + 1:], g=k1 * post_decay, dt=step_size)
    ct_post += ct_pre[-1] * post_decay
    return np.asarray([tac_times, np.concatenate([ct_pre, ct_post])])


class DisplacementSolver(ABC):
    """
    Common interface for the forward simulators of the ISI displacement models.

    A solver turns the parameter vector ``[k1, vs, vb, occupancy, vnd, event_time_offset]`` and blood data resampled
    on the solver's step size into a model curve on the same grid. The fitters in
    :mod:`petisi.kinetic_modeling.isi_fitting` only use this interface, so new model variants can be added without
    touching them.

    Attributes:
        step_size (float): The grid step, in minutes, that the blood data must be resampled on.
    """
    name: str = None
    event_time_label: str = None
    default_step_size: float = None

    def __init__(self, step_size: float = None):
        self.step_size: float = self.default_step_size if step_size is None else float(step_size)
        if self.step_size <= 0.0:
            raise ValueError(f"The solver step size must be positive. Got {self.step_size}.")

    def __repr__(self):
        return f"{self.__class__.__name__}(step_size={self.step_size})"

    @abstractmethod
    def calc_tissue_curve(self,
                          params: np.ndarray,
                          blood_data: ResampledBloodData,
                          intervention_time: float) -> np.ndarray:
        """Calculates the tissue curve, without blood contribution, on the resampled blood times."""
        raise NotImplementedError

    def calc_model_curve(self,
                         params: np.ndarray,
                         blood_data: ResampledBloodData,
                         intervention_time: float) -> np.ndarray:
        """
        Calculates the model curve, including the blood-volume contribution, on the resampled blood times.

        Args:
            params (np.ndarray): ``[k1, vs, vb, occupancy, vnd, event_time_offset]``.
            blood_data (ResampledBloodData): Blood data resampled with this solver's step size.
            intervention_time (float): Time of the intervention, in minutes.

        Returns:
            np.ndarray: The model curve at ``blood_data.times``.
        """
        params = np.asarray(params, dtype=float)
        assert len(params) == NUM_PARAMS, f"Expected {NUM_PARAMS} parameters. Got {len(params)}."
        assert np.isclose(blood_data.step_size, self.step_size), (
            f"Blood data step size ({blood_data.step_size}) does not match the solver step size ({self.step_size}).")
        with np.errstate(divide='ignore', invalid='ignore', over='ignore'):
            tissue_vals = self.calc_tissue_curve(params, blood_data, intervention_time)
            return apply_blood_volume_correction(tissue_vals, blood_data.whole_blood, params[2])

    @staticmethod
    def calc_event_time(params: np.ndarray, intervention_time: float) -> float:
        """The absolute event time: ``intervention_time + event_time_offset``."""
        return intervention_time + params[5]

    def event_time_diff_step(self, min_diff_step: float) -> float:
        """Smallest finite-difference step for the event time offset that changes the model curve reliably."""
        return min_diff_step


class NumericalDisplacementSolver(DisplacementSolver):
    """
    Euler-forward solver with a smooth occupancy growth between the intervention time and the time-of-effect,
    :math:`t_e`.

    See Also:
        :func:`generate_tac_1tcm_numerical_displacement`
    """
    name = 'numerical'
    event_time_label = 'TimeOfEffect'
    default_step_size = 1.0 / 120.0

    def calc_tissue_curve(self,
                          params: np.ndarray,
                          blood_data: ResampledBloodData,
                          intervention_time: float) -> np.ndarray:
        k1, vs, _, occupancy, vnd, _ = params
        te = self.calc_event_time(params, intervention_time)
        return generate_tac_1tcm_numerical_displacement(tac_times=blood_data.times,
                                                        input_vals=blood_data.input_function,
                                                        k1=k1, vs=vs, occupancy=occupancy, vnd=vnd,
                                                        tb=intervention_time, te=te)[1]


class SingleStepDisplacementSolver(DisplacementSolver):
    """
    Analytical solver where the occupancy changes instantaneously at the time-of-step, :math:`t_s`.

    See Also:
        :func:`generate_tac_1tcm_singlestep_displacement`
    """
    name = 'singlestep'
    event_time_label = 'TimeOfStep'
    default_step_size = 1.0 / 60.0

    def calc_tissue_curve(self,
                          params: np.ndarray,
                          blood_data: ResampledBloodData,
                          intervention_time: float) -> np.ndarray:
        k1, vs, _, occupancy, vnd, _ = params
        ts = self.calc_event_time(params, intervention_time)
        return generate_tac_1tcm_singlestep_displacement(tac_times=blood_data.times,
                                                         input_vals=blood_data.input_function,
                                                         k1=k1, vs=vs, occupancy=occupancy, vnd=vnd, ts=ts)[1]

    def event_time_diff_step(self, min_diff_step: float) -> float:
        """
        The curve is split at the grid sample nearest to :math:`t_s`, so a step within one grid cell can leave the
        split unchanged. The offset step spans at least two grid cells.
        """
        return max(min_diff_step, 2.0 * self.step_size)


_SOLVERS = {NumericalDisplacementSolver.name: NumericalDisplacementSolver,
            SingleStepDisplacementSolver.name: SingleStepDisplacementSolver}

_MODELS = {'1tcm': _SOLVERS}


def validated_model(model: str) -> str:
    """Normalizes and validates the compartment model name. Only ``'1tcm'`` is implemented."""
    model_name = model.lower().replace(' ', '')
    if model_name not in _MODELS:
        raise ValueError(f"model must be one of {', '.join(repr(m) for m in _MODELS)}. Got {model!r}.")
    return model_name


def validated_solver(solver: str) -> str:
    """Normalizes and validates the solver name: ``'numerical'`` or ``'singlestep'``."""
    solver_name = solver.lower().replace(' ', '').replace('-', '')
    if solver_name not in _SOLVERS:
        raise ValueError(f"solver must be one of {', '.join(repr(s) for s in _SOLVERS)}. Got {solver!r}.")
    return solver_name


def get_displacement_solver(solver: str, model: str = '1tcm', step_size: float = None) -> DisplacementSolver:
    """
    Returns an instance of the solver for the given model.

    Args:
        solver (str): ``'numerical'`` or ``'singlestep'``.
        model (str): The compartment model. Only ``'1tcm'`` is implemented. Defaults to ``'1tcm'``.
        step_size (float): Grid step in minutes. If None, the solver's default is used.

    Returns:
        DisplacementSolver: The solver.

    Raises:
        ValueError: If the model or solver are not supported.
    """
    solvers = _MODELS[validated_model(model)]
    return solvers[validated_solver(solver)](step_size=step_size)
