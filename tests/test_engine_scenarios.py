import logging

import numpy as np
import pytest

from core.collectors import FaradayCollector, IonCounterCollector
from core.intensity_model import RawIntensityModel
from core.variance import ZERO_BACKGROUND_VARIANCE_FLOOR
from fit import lm_solver
from fit.functions import FitFunctionType
from fit.orchestrator import FitState, normalized_background_times, normalized_on_peak_times
from infra.config import options_from_config
from tests.conftest import make_model, make_series

ON_PEAK = [110.0, 120.0, 130.0, 140.0]


def test_normalized_times():
    np.testing.assert_array_equal(
        normalized_background_times([0.0, 1000.0, 2000.0, 3000.0], 1000.0), [-4.0, -3.0, -2.0, -1.0]
    )
    np.testing.assert_array_equal(normalized_on_peak_times([5000.0, 6000.0], 1000.0), [5.0, 6.0])
    assert normalized_background_times([], 1000.0).size == 0


@pytest.mark.parametrize("mean_solver", ["lm", "closed_form"])
@pytest.mark.parametrize("full", [True, False])
def test_scenario_flat_background(mean_solver, full):
    model = make_model([10.0] * 4, ON_PEAK, full_propagation=full, mean_solver=mean_solver)
    result = model.generate()

    assert model.state is FitState.READY
    assert model.calculated_initial_fit_functions
    assert result.fit_type is FitFunctionType.MEAN
    assert model.selected_fit_function.short_name == "MEAN"
    np.testing.assert_allclose(model.on_peak.fitted_background, 10.0, rtol=1e-6)
    np.testing.assert_allclose(model.background.fitted_background, 10.0, rtol=1e-6)
    np.testing.assert_allclose(model.on_peak.corrected, [100.0, 110.0, 120.0, 130.0], rtol=1e-6)
    np.testing.assert_allclose(model.on_peak.log_corrected, np.log(model.on_peak.corrected))


def test_scenario_zero_background_forces_constant(caplog):
    model = make_model([0.0] * 4, ON_PEAK)
    with caplog.at_level(logging.WARNING):
        result = model.generate()

    assert result.degenerate_background
    assert model.selected_fit_type is FitFunctionType.CONSTANT
    np.testing.assert_array_equal(result.background_variance, np.full(4, ZERO_BACKGROUND_VARIANCE_FLOOR))
    np.testing.assert_array_equal(model.on_peak.fitted_background, 0.0)
    np.testing.assert_array_equal(model.on_peak.corrected, ON_PEAK)
    assert "Pb206" in caplog.text


def test_scenario_masked_on_peak_sample():
    model = make_model([10.0] * 4, ON_PEAK, on_active=[True, False, True, True])
    model.generate()
    res = model.propagate()

    assert res is not None
    assert res.j21.shape == (3, 1)
    assert res.j22.shape == (3, 3)
    assert res.sopbc.shape == (3, 3)
    assert model.sopbclr.shape == (3, 3)
    np.testing.assert_array_equal(res.indices, [0, 1, 2, 3, 4, 6, 7])


def test_masking_array_applied_on_generate():
    model = make_model([10.0] * 4, ON_PEAK)
    model.masking_array = np.array([True, True, False, True])
    model.toggle_one_data_acquisition(0, False)
    model.generate(apply_masking=True)
    np.testing.assert_array_equal(model.data_active_map, [False, True, False, True])
    assert model.propagate().sopbc.shape == (2, 2)


def test_fallback_uses_forced_mean(caplog):
    model = make_model([0.0, 10.0, 0.0, 10.0], ON_PEAK, full_propagation=False, forced_mean_value=7.5)
    with caplog.at_level(logging.WARNING):
        result = model.generate()

    assert result.degraded and model.degraded_fit
    assert model.state is FitState.READY
    fn = model.selected_fit_function
    assert fn.short_name == "MEAN"
    assert fn.parameters[0] == 7.5
    np.testing.assert_array_equal(fn.covariance_seed, [7.5, 7.5])
    np.testing.assert_allclose(model.on_peak.fitted_background, 7.5)
    assert "fallback" in caplog.text

    model.background.intensities = [10.0, 11.0, 9.0, 10.0]
    model.generate()
    assert not model.degraded_fit
    assert model.selected_fit_function.parameters[0] != 7.5
    assert model.selected_fit_function.covariance_seed is None


def test_fallback_when_solver_result_is_rejected(monkeypatch):
    monkeypatch.setattr(lm_solver, "solve_mean", lambda *a, **k: (None, None))
    model = make_model([10.0, 11.0, 9.0, 10.0], ON_PEAK, forced_mean_value=3.0)
    model.generate()
    assert model.degraded_fit
    assert model.selected_fit_function.parameters[0] == 3.0
    assert model.registry.selected("MEAN", False).parameters[0] == 3.0


def test_overdispersion_map_selection(rng):
    bg = rng.normal(1000.0, 200.0, 40)
    model = make_model(bg, np.asarray(ON_PEAK * 10) + 5000.0)
    model.generate()
    assert model.does_fit_function_type_have_od(FitFunctionType.MEAN)
    assert model.xi_for_fit_function("MEAN") > 0.0

    with_od = model.selected_fit_function
    model.overdispersion_selected = False
    no_od = model.selected_fit_function
    assert with_od is not no_od
    assert not no_od.is_overdispersion_variant
    assert model.xi_for_fit_function("LINE") == 0.0


def test_line_fit_on_drifting_background():
    model = make_model([12.0, 14.0, 16.0, 18.0], ON_PEAK, fit_type="LINE")
    model.generate()
    fn = model.selected_fit_function
    np.testing.assert_allclose(fn.parameters, [20.0, 2.0], rtol=1e-9)
    t_on = model.normalized_on_peak_times()
    np.testing.assert_allclose(model.on_peak.fitted_background, 20.0 + 2.0 * t_on)

    res = model.propagate()
    expected = -np.column_stack([np.ones(4), ON_PEAK])
    np.testing.assert_array_equal(res.j21, expected)


def test_none_fit_leaves_intensities_uncorrected():
    model = make_model([10.0] * 4, ON_PEAK, fit_type=FitFunctionType.NONE)
    model.generate()
    assert model.selected_fit_function is None
    np.testing.assert_array_equal(model.on_peak.corrected, ON_PEAK)
    assert model.propagate() is None
    assert model.sopbclr is None


def test_generate_overrides_propagation_mode():
    model = make_model([10.0] * 4, ON_PEAK, full_propagation=True)
    result = model.generate(full_propagation=False)
    assert not result.full_propagation
    assert not model.variance_model.full


@pytest.mark.parametrize(
    "collector",
    [FaradayCollector(), IonCounterCollector(dark_noise_cps=5.0)],
    ids=["faraday", "ion_counter_dark_noise"],
)
def test_zero_background_with_noise_floor_forces_constant(collector):
    model = make_model([0.0] * 4, ON_PEAK, collector=collector)
    result = model.generate()
    assert result.degenerate_background
    assert model.selected_fit_type is FitFunctionType.CONSTANT
    np.testing.assert_array_equal(result.background_variance, np.full(4, ZERO_BACKGROUND_VARIANCE_FLOOR))
    np.testing.assert_array_equal(model.on_peak.corrected, ON_PEAK)


def test_zero_background_with_default_options():
    bg, on = make_series([0.0] * 4), make_series(ON_PEAK, 5000.0)
    model = RawIntensityModel.from_options("Pb204", bg, on, options_from_config({}))
    assert isinstance(model.collector, FaradayCollector)
    result = model.generate()
    assert result.degenerate_background
    assert model.selected_fit_type is FitFunctionType.CONSTANT
    assert model.propagate() is not None


def test_small_background_is_not_degenerate():
    model = make_model([0.0, 0.0, 1.0, 0.0], ON_PEAK, collector=FaradayCollector(), mean_solver="closed_form")
    result = model.generate()
    assert not result.degenerate_background
    assert model.selected_fit_type is FitFunctionType.MEAN


@pytest.mark.parametrize("background, fit_type", [([0.0] * 4, "MEAN"), ([10.0] * 4, "CONSTANT")])
def test_constant_fit_without_active_background_falls_back(background, fit_type, caplog):
    model = make_model(
        background, ON_PEAK, bg_active=[False] * 4, fit_type=fit_type, forced_mean_value=2.0
    )
    with caplog.at_level(logging.WARNING):
        model.generate()
    assert model.state is FitState.READY
    assert model.degraded_fit
    assert model.selected_fit_type is FitFunctionType.MEAN
    assert model.selected_fit_function.parameters[0] == 2.0
    np.testing.assert_array_equal(model.on_peak.fitted_background, 2.0)
    assert "fallback" in caplog.text
