import numpy as np
import pytest
from petisi.input_function.blood_input import resample_blood_data
from petisi.kinetic_modeling.displacement_models import (NumericalDisplacementSolver, SingleStepDisplacementSolver,
                                                         calc_convolution_with_check, calc_occupancy_growth_curve,
                                                         generate_tac_1tcm_numerical_displacement,
                                                         generate_tac_1tcm_singlestep_displacement,
                                                         get_displacement_solver)

K1, VS, VB, OCCUPANCY, VND = 0.3, 8.0, 0.03, 0.6, 2.0


@pytest.fixture
def resampled_singlestep_blood(blood_data):
    return resample_blood_data(blood_data, step_size=1.0 / 60.0, scan_duration=60.0)


@pytest.fixture
def resampled_numerical_blood(blood_data):
    return resample_blood_data(blood_data, step_size=1.0 / 120.0, scan_duration=60.0)


class TestOccupancyGrowthCurve:
    times = np.linspace(0.0, 60.0, 6001)

    @pytest.mark.parametrize("tm_fraction", [0.5, 0.25, 0.8])
    def test_monotone_and_bounded(self, tm_fraction):
        tb, te = 20.0, 30.0
        tm = tb + tm_fraction * (te - tb)
        occ = calc_occupancy_growth_curve(self.times, tb=tb, tm=tm, te=te, occupancy=OCCUPANCY)
        assert np.all(np.diff(occ) >= -1e-12)
        np.testing.assert_array_equal(occ[self.times < tb], 0.0)
        np.testing.assert_allclose(occ[self.times >= te], OCCUPANCY)
        assert np.all((occ >= 0.0) & (occ <= OCCUPANCY + 1e-12))

    def test_midpoint_is_half_occupancy(self):
        occ = calc_occupancy_growth_curve(np.asarray([25.0]), tb=20.0, tm=25.0, te=30.0, occupancy=OCCUPANCY)
        assert occ[0] == pytest.approx(0.5 * OCCUPANCY)

    def test_step_when_effect_coincides_with_intervention(self):
        occ = calc_occupancy_growth_curve(self.times, tb=20.0, tm=20.0, te=20.0, occupancy=OCCUPANCY)
        np.testing.assert_array_equal(occ[self.times < 20.0], 0.0)
        np.testing.assert_array_equal(occ[self.times >= 20.0], OCCUPANCY)


class TestNumericalSimulator:
    def test_zero_occupancy_matches_1tcm_convolution(self, resampled_numerical_blood):
        times = resampled_numerical_blood.times
        step_size = resampled_numerical_blood.step_size
        aif = resampled_numerical_blood.input_function
        tac = generate_tac_1tcm_numerical_displacement(times, aif, k1=K1, vs=VS, occupancy=0.0, vnd=VND,
                                                       tb=20.0, te=24.0)[1]
        expected = calc_convolution_with_check(aif, K1 * np.exp(-K1 / (VND + VS) * times), step_size)
        np.testing.assert_allclose(tac, expected, rtol=0.0, atol=0.01 * np.max(expected))

    def test_occupancy_lowers_late_tissue_curve(self, resampled_numerical_blood):
        times = resampled_numerical_blood.times
        aif = resampled_numerical_blood.input_function
        baseline = generate_tac_1tcm_numerical_displacement(times, aif, K1, VS, 0.0, VND, 20.0, 24.0)[1]
        displaced = generate_tac_1tcm_numerical_displacement(times, aif, K1, VS, OCCUPANCY, VND, 20.0, 24.0)[1]
        np.testing.assert_array_equal(displaced[times <= 20.0], baseline[times <= 20.0])
        assert np.all(displaced[times > 30.0] < baseline[times > 30.0])


class TestSingleStepSimulator:
    def test_continuous_at_step(self, resampled_singlestep_blood):
        times = resampled_singlestep_blood.times
        aif = resampled_singlestep_blood.input_function
        tac = generate_tac_1tcm_singlestep_displacement(times, aif, K1, VS, OCCUPANCY, VND, ts=24.0)[1]
        step_id = int(np.argmin(np.abs(times - 24.0)))
        assert tac[step_id + 1] == pytest.approx(tac[step_id], rel=5e-3)
        assert tac[step_id - 1] == pytest.approx(tac[step_id], rel=5e-3)

    def test_step_past_scan_is_all_pre_step(self, resampled_singlestep_blood):
        times = resampled_singlestep_blood.times
        aif = resampled_singlestep_blood.input_function
        tac = generate_tac_1tcm_singlestep_displacement(times, aif, K1, VS, OCCUPANCY, VND, ts=100.0)[1]
        expected = calc_convolution_with_check(aif, K1 * np.exp(-K1 / (VND + VS) * times),
                                               resampled_singlestep_blood.step_size)
        assert len(tac) == len(times)
        np.testing.assert_allclose(tac, expected, rtol=1e-10, atol=1e-12)

    def test_step_at_zero_is_all_post_step(self, resampled_singlestep_blood):
        times = resampled_singlestep_blood.times
        aif = resampled_singlestep_blood.input_function
        tac = generate_tac_1tcm_singlestep_displacement(times, aif, K1, VS, OCCUPANCY, VND, ts=0.0)[1]
        vt_blocked = VND + (1.0 - OCCUPANCY) * VS
        expected = calc_convolution_with_check(aif, K1 * np.exp(-K1 / vt_blocked * times),
                                               resampled_singlestep_blood.step_size)
        assert tac[0] == pytest.approx(K1 * aif[0] * resampled_singlestep_blood.step_size)
        np.testing.assert_allclose(tac, expected, rtol=0.0, atol=0.01 * np.max(expected))

    def test_agrees_with_euler_for_zero_occupancy(self, blood_data):
        resampled = resample_blood_data(blood_data, step_size=1.0 / 120.0, scan_duration=60.0)
        times = resampled.times
        aif = resampled.input_function
        analytic = generate_tac_1tcm_singlestep_displacement(times, aif, K1, VS, 0.0, VND, ts=24.0)[1]
        euler = generate_tac_1tcm_numerical_displacement(times, aif, K1, VS, 0.0, VND, tb=20.0, te=24.0)[1]
        np.testing.assert_allclose(analytic, euler, rtol=0.0, atol=0.01 * np.max(euler))


@pytest.mark.parametrize("solver_name", ['numerical', 'singlestep'])
class TestBloodVolumeLimits:
    def test_full_blood_volume_gives_whole_blood(self, solver_name, blood_data):
        solver = get_displacement_solver(solver_name)
        resampled = resample_blood_data(blood_data, step_size=solver.step_size, scan_duration=60.0)
        model = solver.calc_model_curve([K1, VS, 1.0, OCCUPANCY, VND, 4.0], resampled, 20.0)
        np.testing.assert_array_equal(model, resampled.whole_blood)

    def test_zero_blood_volume_gives_tissue_curve(self, solver_name, blood_data):
        solver = get_displacement_solver(solver_name)
        resampled = resample_blood_data(blood_data, step_size=solver.step_size, scan_duration=60.0)
        params = np.asarray([K1, VS, 0.0, OCCUPANCY, VND, 4.0])
        model = solver.calc_model_curve(params, resampled, 20.0)
        np.testing.assert_array_equal(model, solver.calc_tissue_curve(params, resampled, 20.0))


class TestSolverDispatch:
    def test_solver_classes_and_defaults(self):
        numerical = get_displacement_solver('numerical')
        singlestep = get_displacement_solver('SingleStep')
        assert isinstance(numerical, NumericalDisplacementSolver)
        assert isinstance(singlestep, SingleStepDisplacementSolver)
        assert numerical.step_size == pytest.approx(1.0 / 120.0)
        assert singlestep.step_size == pytest.approx(1.0 / 60.0)
        assert numerical.event_time_label == 'TimeOfEffect'
        assert singlestep.event_time_label == 'TimeOfStep'

    def test_step_size_override(self):
        assert get_displacement_solver('numerical', step_size=0.01).step_size == 0.01
        with pytest.raises(ValueError):
            get_displacement_solver('numerical', step_size=0.0)

    @pytest.mark.parametrize("solver,model", [('euler', '1tcm'), ('numerical', '2tcm')])
    def test_unknown_names_raise(self, solver, model):
        with pytest.raises(ValueError):
            get_displacement_solver(solver, model=model)

    def test_mismatched_grid_is_rejected(self, blood_data):
        solver = get_displacement_solver('numerical')
        resampled = resample_blood_data(blood_data, step_size=1.0 / 60.0, scan_duration=60.0)
        with pytest.raises(AssertionError):
            solver.calc_model_curve([K1, VS, VB, OCCUPANCY, VND, 4.0], resampled, 20.0)

    def test_event_time(self):
        assert SingleStepDisplacementSolver.calc_event_time([K1, VS, VB, OCCUPANCY, VND, 4.0], 20.0) == 24.0

    def test_event_time_diff_step(self):
        assert NumericalDisplacementSolver().event_time_diff_step(1e-2) == 1e-2
        assert SingleStepDisplacementSolver().event_time_diff_step(1e-2) == pytest.approx(2.0 / 60.0)
        assert SingleStepDisplacementSolver(step_size=1e-3).event_time_diff_step(1e-2) == 1e-2
        assert SingleStepDisplacementSolver().event_time_diff_step(0.1) == 0.1
