import numpy as np
import pytest
from petisi.input_function.blood_input import (BloodData, calc_tail_fill_value, generate_resample_times,
                                               pchip_resample, resample_blood_data, sanitize_blood_data)


class TestBloodData:
    def test_mismatched_lengths_raise(self):
        with pytest.raises(ValueError, match="same length"):
            BloodData(times=[0.0, 1.0, 2.0], input_function=[0.0, 1.0], whole_blood=[0.0, 1.0, 2.0])

    def test_non_increasing_times_raise(self):
        with pytest.raises(ValueError, match="strictly increasing"):
            BloodData(times=[0.0, 2.0, 1.0], input_function=[0.0, 1.0, 2.0], whole_blood=[0.0, 1.0, 2.0])

    def test_negative_times_raise(self):
        with pytest.raises(ValueError, match="non-negative"):
            BloodData(times=[-1.0, 2.0], input_function=[0.0, 1.0], whole_blood=[0.0, 1.0])

    def test_empty_raises(self):
        with pytest.raises(ValueError):
            BloodData(times=[], input_function=[], whole_blood=[])


class TestResampleTimes:
    def test_exact_multiple_ends_at_scan_duration(self):
        new_times = generate_resample_times(step_size=1.0 / 120.0, scan_duration=60.0)
        assert len(new_times) == 7201
        assert new_times[0] == 0.0
        assert new_times[-1] == pytest.approx(60.0)

    def test_last_point_covers_scan_duration(self):
        new_times = generate_resample_times(step_size=0.7, scan_duration=10.0)
        assert new_times[-1] >= 10.0
        assert new_times[-2] < 10.0
        np.testing.assert_allclose(np.diff(new_times), 0.7)

    @pytest.mark.parametrize("step_size,scan_duration", [(0.0, 60.0), (-1.0, 60.0), (1.0, 0.0)])
    def test_non_positive_arguments_raise(self, step_size, scan_duration):
        with pytest.raises(ValueError):
            generate_resample_times(step_size=step_size, scan_duration=scan_duration)


class TestTailFill:
    def test_mean_of_last_samples(self):
        vals = np.arange(100.0)
        assert calc_tail_fill_value(vals, tail_window=60) == pytest.approx(np.mean(vals[40:]))

    def test_short_window_uses_all_samples_with_warning(self):
        vals = np.arange(10.0)
        with pytest.warns(RuntimeWarning, match="averaging all"):
            assert calc_tail_fill_value(vals, tail_window=60) == pytest.approx(4.5)

    @pytest.mark.parametrize("vals,tail_window", [(np.asarray([]), 60), (np.arange(5.0), 0)])
    def test_empty_window_raises(self, vals, tail_window):
        with pytest.raises(ValueError, match="empty tail window"):
            calc_tail_fill_value(vals, tail_window=tail_window)


class TestResampleBloodData:
    def test_resampling_on_target_grid_is_identity(self):
        step_size = 1.0 / 60.0
        times = generate_resample_times(step_size=step_size, scan_duration=60.0)
        vals = 10.0 * times * np.exp(-0.2 * times)
        blood = BloodData(times=times, input_function=vals, whole_blood=0.5 * vals)
        resampled = resample_blood_data(blood, step_size=step_size, scan_duration=60.0)
        np.testing.assert_allclose(resampled.times, times)
        np.testing.assert_allclose(resampled.input_function, vals, rtol=1e-12, atol=1e-12)
        np.testing.assert_allclose(resampled.whole_blood, 0.5 * vals, rtol=1e-12, atol=1e-12)

    def test_values_past_last_sample_are_tail_mean(self):
        times = np.arange(0.0, 30.0)
        vals = np.linspace(5.0, 1.0, len(times))
        blood = BloodData(times=times, input_function=vals, whole_blood=2.0 * vals)
        resampled = resample_blood_data(blood, step_size=0.5, scan_duration=60.0, tail_window=5)
        past_last = resampled.times > times[-1]
        assert np.any(past_last)
        np.testing.assert_allclose(resampled.input_function[past_last], np.mean(vals[-5:]))
        np.testing.assert_allclose(resampled.whole_blood[past_last], np.mean(2.0 * vals[-5:]))

    def test_zero_sample_is_prepended(self):
        blood = BloodData(times=[1.0, 2.0, 3.0], input_function=[4.0, 3.0, 2.0], whole_blood=[4.0, 3.0, 2.0])
        sanitized = sanitize_blood_data(blood)
        np.testing.assert_array_equal(sanitized.times, [0.0, 1.0, 2.0, 3.0])
        np.testing.assert_array_equal(sanitized.input_function, [0.0, 4.0, 3.0, 2.0])
        with pytest.warns(RuntimeWarning):
            resampled = resample_blood_data(blood, step_size=0.5, scan_duration=3.0)
        assert resampled.input_function[0] == 0.0
        assert resampled.input_function[2] == pytest.approx(4.0)

    def test_input_is_not_modified(self, blood_data):
        times = blood_data.times.copy()
        vals = blood_data.input_function.copy()
        resample_blood_data(blood_data, step_size=1.0 / 120.0, scan_duration=60.0)
        np.testing.assert_array_equal(blood_data.times, times)
        np.testing.assert_array_equal(blood_data.input_function, vals)

    def test_single_sample_at_zero_raises(self):
        blood = BloodData(times=[0.0], input_function=[1.0], whole_blood=[1.0])
        with pytest.raises(ValueError, match="two blood samples"):
            resample_blood_data(blood, step_size=0.5, scan_duration=3.0)


def test_pchip_resample_fills_outside_range():
    new_vals = pchip_resample(np.asarray([0.0, 1.0, 2.0]), np.asarray([0.0, 1.0, 4.0]),
                              np.asarray([-1.0, 1.0, 3.0]), fill_value=-7.0)
    np.testing.assert_allclose(new_vals, [-7.0, 1.0, -7.0])
