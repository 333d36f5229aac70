import json
import numpy as np
import pytest
from conftest import simulate_region_tacs
from petisi.cli.cli_isi_fitting import _generate_args, _generate_bounds, _generate_fit_params, main
from petisi.kinetic_modeling.isi_fitting import ISIFitParameters

REQUIRED_ARGS = ['-b', 'blood.txt', '-r', 'tacs.tsv', '-o', 'out', '-p', 'sub-001', '-t', '20', '-d', '60']


class TestGenerateBounds:
    def test_missing_columns_keep_defaults(self):
        defaults = ISIFitParameters().global_bounds
        bounds = _generate_bounds(initial=[0.3, 1.0, 2.0], lower=None, upper=[1.0, 10.0, 30.0],
                                  default_bounds=defaults)
        np.testing.assert_array_equal(bounds[:, 0], [0.3, 1.0, 2.0])
        np.testing.assert_array_equal(bounds[:, 1], defaults[:, 1])
        np.testing.assert_array_equal(bounds[:, 2], [1.0, 10.0, 30.0])

    def test_nothing_provided_returns_defaults(self):
        defaults = ISIFitParameters().region_bounds
        np.testing.assert_array_equal(_generate_bounds(None, None, None, defaults), defaults)

    def test_wrong_length_raises(self):
        with pytest.raises(ValueError):
            _generate_bounds(initial=[0.3, 1.0], lower=None, upper=None, default_bounds=ISIFitParameters().global_bounds)


class TestArguments:
    def test_defaults(self):
        args = _generate_args(REQUIRED_ARGS)
        assert args.solver == 'numerical'
        assert args.weighting == 'ones'
        assert args.intervention_time == 20.0
        assert args.scan_duration == 60.0
        fit_params = _generate_fit_params(args)
        np.testing.assert_array_equal(fit_params.global_bounds, ISIFitParameters().global_bounds)
        assert fit_params.max_nfev == 10000

    def test_bounds_and_caps(self):
        args = _generate_args(REQUIRED_ARGS + ['--region-initial-guesses', '0.2', '5.0', '0.1',
                                               '--global-upper-bounds', '1.0', '8.0', '20.0',
                                               '-f', '50', '-n', '100', '--tolerance', '1e-4'])
        fit_params = _generate_fit_params(args)
        np.testing.assert_array_equal(fit_params.region_bounds[:, 0], [0.2, 5.0, 0.1])
        np.testing.assert_array_equal(fit_params.global_bounds[:, 2], [1.0, 8.0, 20.0])
        assert fit_params.max_nfev == 50
        assert fit_params.func_tol == fit_params.param_tol == 1e-4

    def test_unknown_solver_is_rejected(self):
        with pytest.raises(SystemExit):
            _generate_args(REQUIRED_ARGS + ['-s', 'euler'])


@pytest.mark.filterwarnings("ignore::RuntimeWarning")
def test_main_writes_results(tmp_path, capsys, blood_data, frame_mid_times):
    blood_path = tmp_path / 'blood.txt'
    np.savetxt(blood_path, np.stack([blood_data.times, blood_data.input_function, blood_data.whole_blood], axis=1),
               header='time aif wb', comments='')
    tacs = simulate_region_tacs('singlestep', blood_data, frame_mid_times)
    tacs_path = tmp_path / 'tacs.tsv'
    np.savetxt(tacs_path, np.column_stack([frame_mid_times, tacs]), delimiter='\t',
               header='time\tPutamen\tCaudate\tThalamus', comments='')

    main(['-b', str(blood_path), '-r', str(tacs_path), '-o', str(tmp_path / 'out'), '-p', 'sub-001',
          '-t', '20', '-d', '60', '-s', 'singlestep', '-w', 'framedur', '-f', '3', '-n', '3', '--print', '--plot'])

    props = json.loads((tmp_path / 'out' / 'sub-001_analysis-isi-singlestep_props.json').read_text())
    assert props['Results']['Weighting'] == 'framedur'
    assert 'TimeOfStep' in props['Results']
    assert (tmp_path / 'out' / 'sub-001_analysis-isi-singlestep_fit.png').exists()
    printed = capsys.readouterr().out
    assert 'Occupancy' in printed and 'Thalamus' in printed
