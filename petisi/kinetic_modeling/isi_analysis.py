r"""
This module contains the entry points for fitting the in-scan intervention (ISI) displacement models to a subject's
data.

    - :func:`fit_in_scan_intervention`: takes a :class:`SubjectData` and :class:`ISISettings` and returns a copy of the
      subject data with the frame ``weights`` and the fit results (:class:`ISIResult`) filled in.
    - :class:`FitISIToTACs`: file based analysis, used by the command-line interface. It reads the blood data and the
      regional TACs from files, runs the fit and saves the results as a JSON file and a table of regional parameters.

Example:

    .. code-block:: python

        import petisi.kinetic_modeling.isi_analysis as isi

        subject = isi.SubjectData(subject_id='sub-001',
                                  blood_times=blood_times, input_function=aif, whole_blood=wb,
                                  frame_mid_times=frame_times, tacs=tacs, roi_names=['Putamen', 'Caudate'],
                                  intervention_time=60.0, scan_duration=150.0)
        settings = isi.ISISettings(solver='singlestep', weighting='framedur')
        subject = isi.fit_in_scan_intervention(subject, settings)
        print(subject.isi.occupancy, subject.isi.vnd)

See Also:
    * :mod:`petisi.kinetic_modeling.isi_fitting`
    * :mod:`petisi.kinetic_modeling.displacement_models`

"""
import dataclasses
import os
from dataclasses import dataclass, field
from typing import List, Union
from matplotlib import pyplot as plt
import numpy as np
from ..input_function.blood_input import BloodData
from ..utils.tac_io import (safe_load_blood_data, safe_load_region_tacs, write_dict_to_json,
                            write_region_params_table)
from ..utils.time_activity_curve import WEIGHTING_SCHEMES, calc_frame_weights
from ..visualizations.isi_plots import generate_isi_fit_title, plot_isi_fit
from .displacement_models import get_displacement_solver, validated_model, validated_solver
from .isi_fitting import (FitExitStatus, ISIFitParameters, NestedFitResult, NestedISIFitter, TissueObservation)


@dataclass(frozen=True)
class ISISettings:
    """Settings for an ISI fit.

    Attributes:
        model (str): The compartment model. Only ``'1tcm'`` is implemented. Defaults to ``'1tcm'``.
        solver (str): ``'numerical'`` (Euler forward, smooth occupancy growth) or ``'singlestep'`` (analytical, step
            change of occupancy). Defaults to ``'numerical'``.
        do_plot (bool): Whether to plot the fits. Defaults to False.
        weighting (str): ``'ones'`` or ``'framedur'`` (square root of the frame durations). Defaults to ``'ones'``.
        fit_params (ISIFitParameters): Initial guesses, bounds, tolerances and step sizes.
        verbose (bool): Whether to print progress information. Defaults to False.
    """
    model: str = '1tcm'
    solver: str = 'numerical'
    do_plot: bool = False
    weighting: str = 'ones'
    fit_params: ISIFitParameters = field(default_factory=ISIFitParameters)
    verbose: bool = False

    def __post_init__(self):
        object.__setattr__(self, 'model', validated_model(self.model))
        object.__setattr__(self, 'solver', validated_solver(self.solver))
        weighting = self.weighting.lower()
        if weighting not in WEIGHTING_SCHEMES:
            raise ValueError(f"weighting must be one of {', '.join(repr(w) for w in WEIGHTING_SCHEMES)}. "
                             f"Got {self.weighting!r}.")
        object.__setattr__(self, 'weighting', weighting)


@dataclass(frozen=True)
class ISIResult:
    """Results of an ISI fit.

    Attributes:
        model (str): The compartment model.
        solver (str): The solver.
        weighting (str): The weighting scheme.
        roi_names (List[str]): Region names.
        model_curves (np.ndarray): Fitted curves on the frame times, ``[num_frames, num_regions]``.
        occupancy (float): Maximal occupancy reached during the scan.
        vnd (float): Non-displaceable distribution volume.
        k1 (np.ndarray): Per-region :math:`K_1`.
        vs (np.ndarray): Per-region specific distribution volume at baseline.
        vt (np.ndarray): Per-region total distribution volume, :math:`V_\\mathrm{ND} + V_\\mathrm{S}`.
        vb (np.ndarray): Per-region fractional blood volume.
        event_time (float): Time-of-effect (numerical solver) or time-of-step (single-step solver), in minutes.
        event_time_label (str): ``'TimeOfEffect'`` or ``'TimeOfStep'``.
        exit_status (FitExitStatus): Termination status of the global fit.
        region_statuses (List[FitExitStatus]): Termination status of each region's fit.
    """
    model: str
    solver: str
    weighting: str
    roi_names: List[str]
    model_curves: np.ndarray
    occupancy: float
    vnd: float
    k1: np.ndarray
    vs: np.ndarray
    vt: np.ndarray
    vb: np.ndarray
    event_time: float
    event_time_label: str
    exit_status: FitExitStatus
    region_statuses: List[FitExitStatus]

    @property
    def te(self) -> Union[float, None]:
        """Time-of-effect; only defined for the numerical solver."""
        return self.event_time if self.event_time_label == 'TimeOfEffect' else None

    @property
    def ts(self) -> Union[float, None]:
        """Time-of-step; only defined for the single-step solver."""
        return self.event_time if self.event_time_label == 'TimeOfStep' else None

    def region_params_dict(self) -> dict:
        """Regional parameters as ``{param: {roi: value}}``."""
        return {name: {roi: float(val) for roi, val in zip(self.roi_names, vals)}
                for name, vals in (('K1', self.k1), ('VS', self.vs), ('VT', self.vt), ('vB', self.vb))}

    def to_dict(self) -> dict:
        """The results as a JSON-serializable dictionary."""
        props = {
            'Model': self.model,
            'Solver': self.solver,
            'Weighting': self.weighting,
            'Occupancy': self.occupancy,
            'VND': self.vnd,
            **self.region_params_dict(),
            self.event_time_label: self.event_time,
            'ExitStatus': self.exit_status.value,
            'RegionExitStatus': {roi: status.value for roi, status in zip(self.roi_names, self.region_statuses)},
            'ModelCurves': {roi: self.model_curves[:, region_id].tolist()
                            for region_id, roi in enumerate(self.roi_names)},
            }
        return props


@dataclass(frozen=True)
class SubjectData:
    """A subject's blood data and regional TACs.

    Attributes:
        subject_id (str): Subject identifier.
        blood_times (np.ndarray): Blood sample times, in minutes.
        input_function (np.ndarray): Arterial input function at ``blood_times``.
        whole_blood (np.ndarray): Whole-blood activity at ``blood_times``.
        frame_mid_times (np.ndarray): PET frame mid-times, in minutes.
        tacs (np.ndarray): Regional TACs, ``[num_frames, num_regions]``.
        roi_names (List[str]): Region names, one per column of ``tacs``.
        intervention_time (float): Time of the drug intervention, in minutes.
        scan_duration (float): End time of the scan, in minutes.
        frame_durations (np.ndarray, optional): Frame durations, in minutes.
        frame_start_end_times (np.ndarray, optional): ``num_frames + 1`` frame boundaries, in minutes.
        weights (np.ndarray, optional): Per-frame weights. Set by :func:`fit_in_scan_intervention`.
        isi (ISIResult, optional): Fit results. Set by :func:`fit_in_scan_intervention`.
    """
    subject_id: str
    blood_times: np.ndarray
    input_function: np.ndarray
    whole_blood: np.ndarray
    frame_mid_times: np.ndarray
    tacs: np.ndarray
    roi_names: List[str]
    intervention_time: float
    scan_duration: float
    frame_durations: Union[np.ndarray, None] = None
    frame_start_end_times: Union[np.ndarray, None] = None
    weights: Union[np.ndarray, None] = None
    isi: Union[ISIResult, None] = None

    def __post_init__(self):
        tacs = np.asarray(self.tacs, dtype=float)
        if tacs.ndim == 1:
            tacs = tacs[:, np.newaxis]
        object.__setattr__(self, 'tacs', tacs)
        object.__setattr__(self, 'frame_mid_times', np.asarray(self.frame_mid_times, dtype=float).ravel())
        object.__setattr__(self, 'roi_names', [str(name) for name in self.roi_names])
        if len(self.roi_names) != tacs.shape[1]:
            raise ValueError(f"Got {len(self.roi_names)} region names for {tacs.shape[1]} TACs.")
        if self.scan_duration <= 0.0:
            raise ValueError(f"`scan_duration` must be positive. Got {self.scan_duration}.")
        if not 0.0 <= self.intervention_time <= self.scan_duration:
            raise ValueError(f"`intervention_time` must lie within the scan, [0, {self.scan_duration}]. "
                             f"Got {self.intervention_time}.")

    @property
    def blood_data(self) -> BloodData:
        """The blood arrays as :class:`BloodData`. Raises ``ValueError`` for invalid arrays."""
        return BloodData(times=self.blood_times, input_function=self.input_function, whole_blood=self.whole_blood)


def assemble_isi_result(fit_results: NestedFitResult,
                        settings: ISISettings,
                        roi_names: List[str],
                        event_time_label: str) -> ISIResult:
    """
    Maps the nested fit results to the reported quantities: :math:`V_\\mathrm{T}=V_\\mathrm{ND}+V_\\mathrm{S}` per
    region and the event time.

    Args:
        fit_results (NestedFitResult): Results of :meth:`NestedISIFitter.run_fit`.
        settings (ISISettings): The fit settings.
        roi_names (List[str]): Region names.
        event_time_label (str): ``'TimeOfEffect'`` or ``'TimeOfStep'``.

    Returns:
        ISIResult: The results.
    """
    region_params = fit_results.region_params_matrix
    vnd = fit_results.global_params.vnd
    return ISIResult(model=settings.model,
                     solver=settings.solver,
                     weighting=settings.weighting,
                     roi_names=list(roi_names),
                     model_curves=fit_results.model_curves,
                     occupancy=fit_results.global_params.occupancy,
                     vnd=vnd,
                     k1=region_params[:, 0],
                     vs=region_params[:, 1],
                     vt=vnd + region_params[:, 1],
                     vb=region_params[:, 2],
                     event_time=fit_results.event_time,
                     event_time_label=event_time_label,
                     exit_status=fit_results.exit_status,
                     region_statuses=list(fit_results.region_statuses))


def fit_in_scan_intervention(subject_data: SubjectData, settings: ISISettings = None) -> SubjectData:
    """
    Fits the ISI displacement model to a subject's regional TACs.

    All inputs are validated before any fitting. The returned :class:`SubjectData` is a copy of ``subject_data`` with
    ``weights`` and ``isi`` set; the blood data is returned exactly as provided.
    Degenerate regions do not raise; if every region fails, the exit status is ``FAILED``.

    Args:
        subject_data (SubjectData): The subject's data.
        settings (ISISettings, optional): Fit settings. Defaults to :class:`ISISettings` defaults.

    Returns:
        SubjectData: The subject's data with the weights and fit results.

    Raises:
        ValueError: If any of the inputs is invalid.
    """
    settings = ISISettings() if settings is None else settings
    weights = calc_frame_weights(weighting=settings.weighting,
                                 frame_mid_times=subject_data.frame_mid_times,
                                 scan_duration=subject_data.scan_duration,
                                 frame_durations=subject_data.frame_durations,
                                 frame_start_end_times=subject_data.frame_start_end_times)
    observation = TissueObservation(frame_mid_times=subject_data.frame_mid_times,
                                    tacs=subject_data.tacs,
                                    weights=weights)
    solver = get_displacement_solver(solver=settings.solver,
                                     model=settings.model,
                                     step_size=settings.fit_params.step_size_for(settings.solver))
    fitter = NestedISIFitter(blood_data=subject_data.blood_data,
                             observation=observation,
                             intervention_time=subject_data.intervention_time,
                             scan_duration=subject_data.scan_duration,
                             solver=solver,
                             fit_params=settings.fit_params,
                             verbose=settings.verbose)
    fitter.run_fit()
    isi_result = assemble_isi_result(fit_results=fitter.fit_results,
                                     settings=settings,
                                     roi_names=subject_data.roi_names,
                                     event_time_label=solver.event_time_label)
    fitted_subject = dataclasses.replace(subject_data, weights=weights, isi=isi_result)

    if settings.do_plot:
        plot_isi_fit(frame_mid_times=fitted_subject.frame_mid_times,
                     tacs=fitted_subject.tacs,
                     model_curves=isi_result.model_curves,
                     roi_names=fitted_subject.roi_names,
                     title=generate_isi_fit_title(model=settings.model, solver=settings.solver,
                                                  subject_id=fitted_subject.subject_id,
                                                  occupancy=isi_result.occupancy))
    return fitted_subject


class FitISIToTACs(object):
    """
    File based ISI analysis: reads the blood data and regional TACs, fits the displacement model and saves the results.

    Attributes:
        blood_data_path (str): Path to the blood file. See :func:`petisi.utils.tac_io.safe_load_blood_data`.
        tacs_path (str): Path to the regional TACs table. See :func:`petisi.utils.tac_io.safe_load_region_tacs`.
        output_directory (str): Directory where the results are saved.
        output_filename_prefix (str): Prefix for the output files.
        intervention_time (float): Time of the intervention, in minutes.
        scan_duration (float): End time of the scan, in minutes.
        settings (ISISettings): Fit settings.
        analysis_props (dict): Analysis properties and results, saved as JSON.
        fitted_subject (SubjectData): The subject data with the fit results, after :meth:`run_analysis`.
    """
    def __init__(self,
                 blood_data_path: str,
                 tacs_path: str,
                 output_directory: str,
                 output_filename_prefix: str,
                 intervention_time: float,
                 scan_duration: float,
                 settings: ISISettings = None,
                 subject_id: str = None):
        self.blood_data_path: str = os.path.abspath(blood_data_path)
        self.tacs_path: str = os.path.abspath(tacs_path)
        self.output_directory: str = os.path.abspath(output_directory)
        self.output_filename_prefix: str = output_filename_prefix
        self.intervention_time: float = intervention_time
        self.scan_duration: float = scan_duration
        self.settings: ISISettings = ISISettings() if settings is None else settings
        self.subject_id: str = output_filename_prefix if subject_id is None else subject_id
        self.analysis_props: dict = self.init_analysis_props()
        self.fitted_subject: Union[SubjectData, None] = None
        self._has_analysis_been_run: bool = False

    def init_analysis_props(self) -> dict:
        fit_params = self.settings.fit_params
        props = {
            'FilePathBlood': self.blood_data_path,
            'FilePathTACs': self.tacs_path,
            'SubjectID': self.subject_id,
            'InterventionTime': self.intervention_time,
            'ScanDuration': self.scan_duration,
            'FitProperties': {
                'GlobalBounds': self._generate_pretty_bounds(fit_params.global_bounds,
                                                             ('Occupancy', 'VND', 'EventTimeOffset')),
                'RegionBounds': self._generate_pretty_bounds(fit_params.region_bounds, ('K1', 'VS', 'vB')),
                'FunctionTolerance': fit_params.func_tol,
                'ParameterTolerance': fit_params.param_tol,
                'MaxIterations': fit_params.max_iterations,
                'MaxFunctionEvaluations': fit_params.max_func_evals,
                'MinDiffStep': fit_params.min_diff_step,
                'StepSize': fit_params.step_size_for(self.settings.solver),
                },
            'Results': {},
            }
        return props

    @staticmethod
    def _generate_pretty_bounds(bounds: np.ndarray, param_names: tuple) -> dict:
        return {param: {'initial': float(val[0]), 'lo': float(val[1]), 'hi': float(val[2])}
                for param, val in zip(param_names, bounds)}

    def load_subject_data(self) -> SubjectData:
        blood_times, input_function, whole_blood = safe_load_blood_data(self.blood_data_path)
        frame_mid_times, tacs, roi_names = safe_load_region_tacs(self.tacs_path)
        return SubjectData(subject_id=self.subject_id,
                           blood_times=blood_times,
                           input_function=input_function,
                           whole_blood=whole_blood,
                           frame_mid_times=frame_mid_times,
                           tacs=tacs,
                           roi_names=roi_names,
                           intervention_time=self.intervention_time,
                           scan_duration=self.scan_duration)

    def run_analysis(self):
        self.fitted_subject = fit_in_scan_intervention(self.load_subject_data(), self.settings)
        self.analysis_props['Weights'] = self.fitted_subject.weights.tolist()
        self.analysis_props['Results'] = self.fitted_subject.isi.to_dict()
        self._has_analysis_been_run = True

    def save_analysis(self):
        if not self._has_analysis_been_run:
            raise RuntimeError("'run_analysis' method must be run before running this method.")
        os.makedirs(self.output_directory, exist_ok=True)
        file_name_prefix = os.path.join(self.output_directory,
                                        f"{self.output_filename_prefix}_analysis-isi-{self.settings.solver}")
        write_dict_to_json(meta_data_dict=self.analysis_props, out_path=f"{file_name_prefix}_props.json")
        write_region_params_table(region_params=self.fitted_subject.isi.region_params_dict(),
                                  out_path=f"{file_name_prefix}_region-params.tsv")

    def save_fit_plot(self, file_format: str = 'png'):
        """Saves a plot of the measured TACs and the fitted curves next to the other outputs."""
        if not self._has_analysis_been_run:
            raise RuntimeError("'run_analysis' method must be run before running this method.")
        isi_result = self.fitted_subject.isi
        fig = plot_isi_fit(frame_mid_times=self.fitted_subject.frame_mid_times,
                           tacs=self.fitted_subject.tacs,
                           model_curves=isi_result.model_curves,
                           roi_names=self.fitted_subject.roi_names,
                           title=generate_isi_fit_title(model=self.settings.model, solver=self.settings.solver,
                                                        subject_id=self.subject_id,
                                                        occupancy=isi_result.occupancy))
        os.makedirs(self.output_directory, exist_ok=True)
        out_path = os.path.join(self.output_directory,
                                f"{self.output_filename_prefix}_analysis-isi-{self.settings.solver}_fit.{file_format}")
        fig.savefig(out_path, bbox_inches='tight')
        plt.close(fig)
        return out_path
