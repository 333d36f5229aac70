import matplotlib
matplotlib.use('Agg')

import numpy as np
import pytest
from petisi.input_function.blood_input import BloodData, resample_blood_data
from petisi.kinetic_modeling.displacement_models import get_displacement_solver
from petisi.kinetic_modeling.isi_fitting import calc_model_tac_on_frames

SCAN_DURATION = 60.0
INTERVENTION_TIME = 20.0
TRUE_GLOBAL_PARAMS = np.asarray([0.6, 2.0, 4.0])
TRUE_REGION_PARAMS = np.asarray([[0.3, 8.0, 0.03],
                                 [0.5, 4.0, 0.05],
                                 [0.2, 2.0, 0.04]])


def biexponential_input_function(times: np.ndarray) -> np.ndarray:
    return 20.0 * (np.exp(-0.05 * times) - np.exp(-1.5 * times))


@pytest.fixture
def blood_data() -> BloodData:
    times = np.arange(0.0, SCAN_DURATION + 1.0, 1.0)
    input_function = biexponential_input_function(times)
    return BloodData(times=times, input_function=input_function, whole_blood=0.1 * input_function)


@pytest.fixture
def frame_mid_times() -> np.ndarray:
    return np.arange(0.5, SCAN_DURATION, 1.0)


def simulate_region_tacs(solver_name: str,
                         blood_data: BloodData,
                         frame_mid_times: np.ndarray,
                         region_params: np.ndarray = TRUE_REGION_PARAMS,
                         global_params: np.ndarray = TRUE_GLOBAL_PARAMS,
                         intervention_time: float = INTERVENTION_TIME,
                         scan_duration: float = SCAN_DURATION) -> np.ndarray:
    """Noise-free TACs, ``[num_frames, num_regions]``, generated with the same pipeline the fitter uses."""
    solver = get_displacement_solver(solver_name)
    resampled = resample_blood_data(blood_data, step_size=solver.step_size, scan_duration=scan_duration)
    region_params = np.atleast_2d(region_params)
    tacs = [calc_model_tac_on_frames(np.concatenate([params, global_params]), solver, resampled, frame_mid_times,
                                     intervention_time)
            for params in region_params]
    return np.stack(tacs, axis=1)
