r"""
This module provides the nested (two-layer) least-squares fitting of the in-scan intervention (ISI) displacement
models to regional PET time-activity curves (TACs).

The parameters of the displacement models are split in two layers:

    * Global (outer) parameters, shared across all regions: ``[occupancy, vnd, event_time_offset]``.
    * Regional (inner) parameters, one set per region: ``[k1, vs, vb]``.

For every trial value of the global parameters, the regional parameters of each region are fit to that region's TAC
(:func:`fit_region_parameters`). The outer residuals are the concatenation of the best regional residuals
(:func:`calc_global_residuals`). Once the outer fit has converged, the regional fits are run one final time to report
the regional parameters and model curves.

Both layers use :func:`scipy.optimize.least_squares` (trust-region reflective) with bounds. The Jacobians are forward
differences with a minimum absolute step (:func:`petisi.math_lib.forward_difference_jacobian`), since the outer
residuals are themselves the output of optimizations and are only smooth on scales larger than the inner tolerance.

The main class is :class:`NestedISIFitter`, which takes the blood data, the regional TACs and a solver from
:mod:`petisi.kinetic_modeling.displacement_models`.

See Also:
    * :mod:`petisi.kinetic_modeling.displacement_models`
    * :mod:`petisi.kinetic_modeling.isi_analysis`

"""
import functools
import warnings
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, List, Union
import numpy as np
from scipy.optimize import least_squares
from ..input_function.blood_input import BloodData, ResampledBloodData, pchip_resample, resample_blood_data
from ..math_lib import LastEvaluationCache
from .displacement_models import DisplacementSolver

GLOBAL_PARAM_NAMES = ('occupancy', 'vnd', 'event_time_offset')
REGION_PARAM_NAMES = ('k1', 'vs', 'vb')


class NumericDegeneracyError(RuntimeError):
    """Raised when a model evaluation gives non-finite residuals, e.g. when :math:`V_\\mathrm{ND}` is close to 0."""
    pass


class FitExitStatus(Enum):
    """Termination status of a least-squares fit."""
    CONVERGED = 'Converged'
    MAX_ITERATIONS_REACHED = 'MaxIterationsReached'
    OTHER = 'Other'
    FAILED = 'Failed'

    @classmethod
    def from_least_squares_status(cls, status: int) -> 'FitExitStatus':
        """
        Maps the ``status`` of :func:`scipy.optimize.least_squares`: a positive status means one of the tolerances was
        satisfied, 0 means the evaluation cap was reached.
        """
        if status > 0:
            return cls.CONVERGED
        if status == 0:
            return cls.MAX_ITERATIONS_REACHED
        return cls.OTHER


def _default_global_bounds() -> np.ndarray:
    return np.asarray([[0.5, 0.0, 1.0],
                       [2.0, 0.0, np.inf],
                       [5.0, 0.0, np.inf]], dtype=float)


def _default_region_bounds() -> np.ndarray:
    return np.asarray([[0.4, 0.0, np.inf],
                       [10.0, 0.0, np.inf],
                       [0.05, 0.0, 1.0]], dtype=float)


def _validate_bounds(bounds: np.ndarray, param_names: tuple, layer: str) -> np.ndarray:
    bounds = np.array(bounds, dtype=float)
    if bounds.shape != (len(param_names), 3):
        raise ValueError(f"The {layer} bounds have the wrong shape {bounds.shape}. For each of the parameters "
                         f"{', '.join(param_names)} we require the tuple: `(initial, lower, upper)`.")
    initial, lower, upper = bounds.T
    if np.any(np.isnan(bounds)) or np.any(lower >= upper):
        raise ValueError(f"The {layer} bounds must satisfy lower < upper. Got lower={lower} and upper={upper}.")
    if np.any(initial < lower) or np.any(initial > upper) or not np.all(np.isfinite(initial)):
        raise ValueError(f"The {layer} initial guesses {initial} must be finite and lie within the bounds.")
    bounds.setflags(write=False)
    return bounds


@dataclass(frozen=True)
class ISIFitParameters:
    """Fitting options for both layers of the nested fit.

    The bounds follow the ``[n_params, (initial, lower, upper)]`` layout.

    Attributes:
        global_bounds (np.ndarray): Bounds for ``[occupancy, vnd, event_time_offset]``. Defaults to initial guesses
            ``[0.5, 2, 5]``, lower bounds ``[0, 0, 0]`` and upper bounds ``[1, inf, inf]``.
        region_bounds (np.ndarray): Bounds for ``[k1, vs, vb]``. Defaults to initial guesses ``[0.4, 10, 0.05]``, lower
            bounds ``[0, 0, 0]`` and upper bounds ``[inf, inf, 1]``.
        func_tol (float): Tolerance on the change of the cost function. Defaults to 1e-6.
        param_tol (float): Tolerance on the change of the parameters. Defaults to 1e-6.
        max_iterations (int): Maximum number of iterations. Defaults to 10000.
        max_func_evals (int): Maximum number of function evaluations. Defaults to 10000.
        min_diff_step (float): Smallest absolute step for the finite-difference Jacobians. Defaults to 1e-2.
        numerical_step_size (float): Grid step for the numerical solver, in minutes. Defaults to 1/120.
        singlestep_step_size (float): Grid step for the single-step solver, in minutes. Defaults to 1/60.
        tail_window (int): Number of trailing blood samples averaged to extrapolate the blood data. Defaults to 60.
    """
    global_bounds: np.ndarray = field(default_factory=_default_global_bounds)
    region_bounds: np.ndarray = field(default_factory=_default_region_bounds)
    func_tol: float = 1.0e-6
    param_tol: float = 1.0e-6
    max_iterations: int = 10000
    max_func_evals: int = 10000
    min_diff_step: float = 1.0e-2
    numerical_step_size: float = 1.0 / 120.0
    singlestep_step_size: float = 1.0 / 60.0
    tail_window: int = 60

    def __post_init__(self):
        object.__setattr__(self, 'global_bounds', _validate_bounds(self.global_bounds, GLOBAL_PARAM_NAMES, 'global'))
        object.__setattr__(self, 'region_bounds', _validate_bounds(self.region_bounds, REGION_PARAM_NAMES, 'region'))
        if self.func_tol <= 0.0 or self.param_tol <= 0.0:
            raise ValueError("`func_tol` and `param_tol` must be positive.")
        if self.max_iterations < 1 or self.max_func_evals < 1:
            raise ValueError("`max_iterations` and `max_func_evals` must be at least 1.")
        if self.min_diff_step <= 0.0:
            raise ValueError("`min_diff_step` must be positive.")
        if self.tail_window < 1:
            raise ValueError("`tail_window` must be at least 1.")

    def step_size_for(self, solver_name: str) -> float:
        """The configured grid step for the named solver."""
        return {'numerical': self.numerical_step_size, 'singlestep': self.singlestep_step_size}[solver_name]

    @property
    def max_nfev(self) -> int:
        """
        The evaluation cap passed to :func:`scipy.optimize.least_squares`. Every trust-region iteration costs at least
        one residual evaluation, so this caps both the iterations and the evaluations.
        """
        return int(min(self.max_iterations, self.max_func_evals))


@dataclass(frozen=True)
class TissueObservation:
    """Class to store regional TACs on the PET frame times.

    Attributes:
        frame_mid_times (np.ndarray): PET frame mid-times, in minutes.
        tacs (np.ndarray): Regional TACs with shape ``[num_frames, num_regions]``.
        weights (np.ndarray): Non-negative per-frame weights multiplying the residuals.
    """
    frame_mid_times: np.ndarray
    tacs: np.ndarray
    weights: np.ndarray

    def __post_init__(self):
        frame_times = np.asarray(self.frame_mid_times, dtype=float).ravel()
        tacs = np.asarray(self.tacs, dtype=float)
        if tacs.ndim == 1:
            tacs = tacs[:, np.newaxis]
        weights = np.asarray(self.weights, dtype=float).ravel()
        if tacs.ndim != 2 or tacs.shape[0] != len(frame_times):
            raise ValueError(f"`tacs` must have shape [num_frames, num_regions] with num_frames={len(frame_times)}. "
                             f"Got {tacs.shape}.")
        if len(weights) != len(frame_times):
            raise ValueError(f"`weights` must have one value per frame. Got {len(weights)} for {len(frame_times)} "
                             f"frames.")
        if np.any(weights < 0.0) or not np.all(np.isfinite(weights)):
            raise ValueError("`weights` must be finite and non-negative.")
        if np.any(np.diff(frame_times) <= 0.0) or np.any(frame_times < 0.0):
            raise ValueError("`frame_mid_times` must be non-negative and strictly increasing.")
        if not np.all(np.isfinite(tacs)):
            raise ValueError("`tacs` must be finite.")
        object.__setattr__(self, 'frame_mid_times', frame_times)
        object.__setattr__(self, 'tacs', tacs)
        object.__setattr__(self, 'weights', weights)

    @property
    def num_regions(self) -> int:
        return self.tacs.shape[1]


@dataclass(frozen=True)
class GlobalParameters:
    """Parameters shared across regions."""
    occupancy: float
    vnd: float
    event_time_offset: float

    @classmethod
    def from_array(cls, vals: np.ndarray) -> 'GlobalParameters':
        return cls(*(float(val) for val in vals))

    def to_array(self) -> np.ndarray:
        return np.asarray([self.occupancy, self.vnd, self.event_time_offset], dtype=float)


@dataclass(frozen=True)
class RegionParameters:
    """Parameters specific to one region."""
    k1: float
    vs: float
    vb: float

    @classmethod
    def from_array(cls, vals: np.ndarray) -> 'RegionParameters':
        return cls(*(float(val) for val in vals))

    def to_array(self) -> np.ndarray:
        return np.asarray([self.k1, self.vs, self.vb], dtype=float)


@dataclass(frozen=True)
class RegionFitResult:
    """Result of the inner fit for a single region.

    Attributes:
        params (np.ndarray): Fitted ``[k1, vs, vb]``; ``nan`` if the fit failed.
        residuals (np.ndarray): Weighted residuals at the fitted parameters. For a failed fit, these are the residuals
            of a zero model curve, ``-tac * weights``.
        status (FitExitStatus): Termination status.
        message (str): Description of the termination.
    """
    params: np.ndarray
    residuals: np.ndarray
    status: FitExitStatus
    message: str


@dataclass(frozen=True)
class NestedFitResult:
    """Result of the nested fit.

    Attributes:
        model_curves (np.ndarray): Fitted curves on the frame times, ``[num_frames, num_regions]``.
        global_params (GlobalParameters): Fitted global parameters.
        region_params (List[RegionParameters]): Fitted regional parameters, one per region.
        event_time (float): Absolute event time, ``intervention_time + event_time_offset``.
        exit_status (FitExitStatus): Termination status of the outer fit.
        region_statuses (List[FitExitStatus]): Termination statuses of the final inner fits.
        message (str): Termination message of the outer fit.
        num_func_evals (int): Number of outer residual evaluations.
    """
    model_curves: np.ndarray
    global_params: GlobalParameters
    region_params: List[RegionParameters]
    event_time: float
    exit_status: FitExitStatus
    region_statuses: List[FitExitStatus]
    message: str = ''
    num_func_evals: int = 0

    @property
    def region_params_matrix(self) -> np.ndarray:
        """Regional parameters as a ``[num_regions, 3]`` array: columns ``k1, vs, vb``."""
        return np.asarray([params.to_array() for params in self.region_params])


def calc_model_tac_on_frames(params: np.ndarray,
                             solver: DisplacementSolver,
                             blood_data: ResampledBloodData,
                             frame_times: np.ndarray,
                             intervention_time: float) -> np.ndarray:
    """
    Simulates the model curve on the resampled blood times and resamples it onto the frame times.

    Args:
        params (np.ndarray): ``[k1, vs, vb, occupancy, vnd, event_time_offset]``.
        solver (DisplacementSolver): The forward simulator.
        blood_data (ResampledBloodData): Blood data on the solver grid.
        frame_times (np.ndarray): PET frame mid-times.
        intervention_time (float): Time of the intervention.

    Returns:
        np.ndarray: Model values at the frame times.

    Raises:
        NumericDegeneracyError: If the simulated curve is not finite.
    """
    model_vals = solver.calc_model_curve(params, blood_data, intervention_time)
    if not np.all(np.isfinite(model_vals)):
        raise NumericDegeneracyError(f"Non-finite model curve for parameters {np.round(params, 6)}.")
    return pchip_resample(blood_data.times, model_vals, frame_times)


def calc_region_residuals(region_params: np.ndarray,
                          global_params: np.ndarray,
                          region_tac: np.ndarray,
                          weights: np.ndarray,
                          solver: DisplacementSolver,
                          blood_data: ResampledBloodData,
                          frame_times: np.ndarray,
                          intervention_time: float) -> np.ndarray:
    """
    Weighted residuals, ``(model - tac) * weights``, for one region.

    Args:
        region_params (np.ndarray): ``[k1, vs, vb]``.
        global_params (np.ndarray): ``[occupancy, vnd, event_time_offset]``.
        region_tac (np.ndarray): Measured TAC of the region at the frame times.
        weights (np.ndarray): Per-frame weights.
        solver (DisplacementSolver): The forward simulator.
        blood_data (ResampledBloodData): Blood data on the solver grid.
        frame_times (np.ndarray): PET frame mid-times.
        intervention_time (float): Time of the intervention.

    Returns:
        np.ndarray: The weighted residuals.

    Raises:
        NumericDegeneracyError: If any residual is not finite.
    """
    params = np.concatenate([region_params, global_params])
    model_tac = calc_model_tac_on_frames(params, solver, blood_data, frame_times, intervention_time)
    residuals = (model_tac - region_tac) * weights
    if not np.all(np.isfinite(residuals)):
        raise NumericDegeneracyError(f"Non-finite residuals for parameters {np.round(params, 6)}.")
    return residuals


def run_bounded_least_squares(residual_func: Callable,
                              bounds: np.ndarray,
                              fit_params: ISIFitParameters,
                              min_diff_steps: Union[np.ndarray, None] = None):
    """
    Runs :func:`scipy.optimize.least_squares` on ``residual_func`` with the initial guesses and bounds in ``bounds``,
    and the tolerances, evaluation cap and minimum finite-difference step in ``fit_params``.

    Args:
        residual_func (Callable): Function of the parameter array returning the residuals.
        bounds (np.ndarray): ``[n_params, (initial, lower, upper)]``.
        fit_params (ISIFitParameters): Fitting options.
        min_diff_steps (np.ndarray, optional): Minimum finite-difference step for each parameter. Defaults to
            ``fit_params.min_diff_step`` for all parameters.

    Returns:
        scipy.optimize.OptimizeResult: The result of :func:`scipy.optimize.least_squares`.
    """
    cached_func = LastEvaluationCache(residual_func)
    initial, lower, upper = np.array(bounds, dtype=float).T
    if min_diff_steps is None:
        min_diff_steps = np.full(len(initial), fit_params.min_diff_step)
    return least_squares(fun=cached_func,
                         x0=initial,
                         jac=cached_func.bounded_jacobian(lower, upper, np.asarray(min_diff_steps, dtype=float)),
                         bounds=(lower, upper),
                         method='trf',
                         ftol=fit_params.func_tol,
                         xtol=fit_params.param_tol,
                         max_nfev=fit_params.max_nfev)


def fit_region_parameters(global_params: np.ndarray,
                          region_tac: np.ndarray,
                          weights: np.ndarray,
                          solver: DisplacementSolver,
                          blood_data: ResampledBloodData,
                          frame_times: np.ndarray,
                          intervention_time: float,
                          fit_params: ISIFitParameters) -> RegionFitResult:
    """
    Inner layer: fits ``[k1, vs, vb]`` of a single region with the global parameters held fixed.

    Every call starts from the configured initial guesses, so the result only depends on the global parameters.
    Numerically degenerate fits do not raise; they return a :class:`RegionFitResult` with
    :attr:`FitExitStatus.FAILED`, ``nan`` parameters and the residuals of a zero model curve.

    Args:
        global_params (np.ndarray): ``[occupancy, vnd, event_time_offset]``.
        region_tac (np.ndarray): Measured TAC of the region at the frame times.
        weights (np.ndarray): Per-frame weights.
        solver (DisplacementSolver): The forward simulator.
        blood_data (ResampledBloodData): Blood data on the solver grid.
        frame_times (np.ndarray): PET frame mid-times.
        intervention_time (float): Time of the intervention.
        fit_params (ISIFitParameters): Fitting options.

    Returns:
        RegionFitResult: The fitted regional parameters, residuals and status.
    """
    residual_func = functools.partial(calc_region_residuals,
                                      global_params=np.asarray(global_params, dtype=float),
                                      region_tac=region_tac,
                                      weights=weights,
                                      solver=solver,
                                      blood_data=blood_data,
                                      frame_times=frame_times,
                                      intervention_time=intervention_time)
    try:
        fit = run_bounded_least_squares(residual_func, fit_params.region_bounds, fit_params)
    except NumericDegeneracyError as err:
        return RegionFitResult(params=np.full(len(REGION_PARAM_NAMES), np.nan),
                               residuals=-region_tac * weights,
                               status=FitExitStatus.FAILED,
                               message=str(err))
    return RegionFitResult(params=fit.x,
                           residuals=fit.fun,
                           status=FitExitStatus.from_least_squares_status(fit.status),
                           message=fit.message)


def calc_global_residuals(global_params: np.ndarray,
                          region_fitter: Callable,
                          tacs: np.ndarray) -> np.ndarray:
    """
    Outer layer residuals: for the trial global parameters, fits every region and concatenates the regional residuals
    at their optima.

    Args:
        global_params (np.ndarray): ``[occupancy, vnd, event_time_offset]``.
        region_fitter (Callable): ``region_fitter(global_params, region_tac) -> RegionFitResult``, typically
            :func:`fit_region_parameters` with the remaining arguments bound.
        tacs (np.ndarray): Measured TACs, ``[num_frames, num_regions]``.

    Returns:
        np.ndarray: Residuals of all regions, region after region.
    """
    residuals = [region_fitter(global_params, tacs[:, region_id]).residuals for region_id in range(tacs.shape[1])]
    return np.concatenate(residuals)


class NestedISIFitter(object):
    r"""
    A class used for fitting the ISI displacement models to regional TACs with the nested least-squares scheme.

    At initialization, the blood data is resampled (see :func:`petisi.input_function.blood_input.resample_blood_data`)
    on the grid of the provided solver. The resampled data belongs to this fitter only and the provided
    :class:`BloodData` is never modified.

    Attributes:
        blood_data (BloodData): The raw blood data.
        observation (TissueObservation): Frame times, regional TACs and weights.
        intervention_time (float): Time of the intervention, :math:`t_b`, in minutes.
        scan_duration (float): End time of the scan, in minutes.
        solver (DisplacementSolver): The forward simulator.
        fit_params (ISIFitParameters): Fitting options.
        resampled_blood (ResampledBloodData): Blood data on the solver grid.
        fit_results (NestedFitResult): Result of :meth:`run_fit`; None until then.
        verbose (bool): Whether to print progress information.

    Example:

        .. code-block:: python

            import petisi.kinetic_modeling.displacement_models as isi_models
            import petisi.kinetic_modeling.isi_fitting as isi_fit

            solver = isi_models.get_displacement_solver('singlestep')
            fitter = isi_fit.NestedISIFitter(blood_data=blood, observation=observation,
                                             intervention_time=20.0, scan_duration=60.0, solver=solver)
            fitter.run_fit()
            print(fitter.fit_results.global_params)

    """
    def __init__(self,
                 blood_data: BloodData,
                 observation: TissueObservation,
                 intervention_time: float,
                 scan_duration: float,
                 solver: DisplacementSolver,
                 fit_params: ISIFitParameters = None,
                 verbose: bool = False):
        if intervention_time < 0.0:
            raise ValueError(f"`intervention_time` must be non-negative. Got {intervention_time}.")
        if observation.frame_mid_times[-1] > scan_duration:
            raise ValueError(f"The last frame mid-time ({observation.frame_mid_times[-1]}) is after the end of the "
                             f"scan ({scan_duration}).")
        self.blood_data: BloodData = blood_data
        self.observation: TissueObservation = observation
        self.intervention_time: float = float(intervention_time)
        self.scan_duration: float = float(scan_duration)
        self.solver: DisplacementSolver = solver
        self.fit_params: ISIFitParameters = ISIFitParameters() if fit_params is None else fit_params
        self.verbose: bool = verbose
        self.resampled_blood: ResampledBloodData = resample_blood_data(blood_data=blood_data,
                                                                       step_size=solver.step_size,
                                                                       scan_duration=self.scan_duration,
                                                                       tail_window=self.fit_params.tail_window)
        self.fit_results: NestedFitResult = None

    def fit_region(self, global_params: np.ndarray, region_tac: np.ndarray) -> RegionFitResult:
        """Runs the inner fit of one region for the given global parameters. See :func:`fit_region_parameters`."""
        return fit_region_parameters(global_params=global_params,
                                     region_tac=region_tac,
                                     weights=self.observation.weights,
                                     solver=self.solver,
                                     blood_data=self.resampled_blood,
                                     frame_times=self.observation.frame_mid_times,
                                     intervention_time=self.intervention_time,
                                     fit_params=self.fit_params)

    def global_residuals(self, global_params: np.ndarray) -> np.ndarray:
        """Outer residuals for the given global parameters. See :func:`calc_global_residuals`."""
        return calc_global_residuals(global_params=global_params,
                                     region_fitter=self.fit_region,
                                     tacs=self.observation.tacs)

    def model_tac_on_frames(self, region_params: np.ndarray, global_params: np.ndarray) -> np.ndarray:
        """Model curve on the frame times for one region. See :func:`calc_model_tac_on_frames`."""
        return calc_model_tac_on_frames(params=np.concatenate([region_params, global_params]),
                                        solver=self.solver,
                                        blood_data=self.resampled_blood,
                                        frame_times=self.observation.frame_mid_times,
                                        intervention_time=self.intervention_time)

    @property
    def global_min_diff_steps(self) -> np.ndarray:
        """Minimum finite-difference steps for ``[occupancy, vnd, event_time_offset]``."""
        min_diff_step = self.fit_params.min_diff_step
        return np.asarray([min_diff_step, min_diff_step, self.solver.event_time_diff_step(min_diff_step)])

    def run_fit(self) -> None:
        """
        Runs the outer fit, then the final inner fits at the converged global parameters.

        Degenerate regions never abort the fit. If every region fails at the final global parameters, the
        ``exit_status`` is :attr:`FitExitStatus.FAILED`.

        Side Effects:
            - fit_results (NestedFitResult): The fitted parameters, model curves and statuses.
        """
        if self.verbose:
            print(f"(Info): Fitting {self.observation.num_regions} region(s) with the {self.solver.name} solver.")
        outer_fit = run_bounded_least_squares(self.global_residuals, self.fit_params.global_bounds, self.fit_params,
                                              min_diff_steps=self.global_min_diff_steps)
        exit_status = FitExitStatus.from_least_squares_status(outer_fit.status)
        message = outer_fit.message
        if exit_status is not FitExitStatus.CONVERGED:
            warnings.warn(f"The global parameter fit did not converge: {outer_fit.message}", RuntimeWarning,
                          stacklevel=2)
        if self.verbose:
            print(f"(Info): Global fit finished after {outer_fit.nfev} evaluations: {outer_fit.message}")

        global_params = outer_fit.x
        num_frames, num_regions = self.observation.tacs.shape
        model_curves = np.full((num_frames, num_regions), np.nan)
        region_params = []
        region_statuses = []
        for region_id in range(num_regions):
            region_fit = self.fit_region(global_params, self.observation.tacs[:, region_id])
            if region_fit.status is FitExitStatus.FAILED:
                warnings.warn(f"The fit of region {region_id} failed: {region_fit.message}", RuntimeWarning,
                              stacklevel=2)
            else:
                if region_fit.status is not FitExitStatus.CONVERGED:
                    warnings.warn(f"The fit of region {region_id} did not converge: {region_fit.message}",
                                  RuntimeWarning, stacklevel=2)
                model_curves[:, region_id] = self.model_tac_on_frames(region_fit.params, global_params)
            region_params.append(RegionParameters.from_array(region_fit.params))
            region_statuses.append(region_fit.status)

        if all(status is FitExitStatus.FAILED for status in region_statuses):
            exit_status = FitExitStatus.FAILED
            message = f"All region fits failed at the global parameters {np.round(global_params, 6)}."
            warnings.warn(message, RuntimeWarning, stacklevel=2)

        self.fit_results = NestedFitResult(model_curves=model_curves,
                                           global_params=GlobalParameters.from_array(global_params),
                                           region_params=region_params,
                                           event_time=self.intervention_time + float(global_params[2]),
                                           exit_status=exit_status,
                                           region_statuses=region_statuses,
                                           message=message,
                                           num_func_evals=outer_fit.nfev)
