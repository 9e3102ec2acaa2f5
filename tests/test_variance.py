import numpy as np
import pytest

from core.collectors import IonCounterCollector
from core.errors import DimensionMismatch, InvalidVarianceModel
from core.variance import (
    ZERO_BACKGROUND_VARIANCE_FLOOR,
    DiagonalVariance,
    FullCovariance,
    active_indices,
    apply_degenerate_background_guard,
    as_variance_model,
    background_block,
    expand,
    prepare,
)
from tests.conftest import make_series


def _spd(rng, n):
    a = rng.normal(size=(n, n))
    return a @ a.T + n * np.eye(n)


def test_prepare_full_and_fast_share_the_diagonal():
    bg = make_series([10.0, 12.0, 11.0])
    on = make_series([100.0, 120.0], start_ms=4000.0)
    ic = IonCounterCollector(gain_uncertainty=0.02)
    full = prepare(bg, on, ic, True, 1.0)
    fast = prepare(bg, on, ic, False, 1.0)
    assert isinstance(full, FullCovariance)
    assert isinstance(fast, DiagonalVariance)
    assert full.size == fast.size == 5
    np.testing.assert_allclose(full.diagonal(), fast.diagonal())
    assert full.dense()[0, 4] == pytest.approx(0.02 ** 2 * 10.0 * 120.0)


def test_prepare_adds_correction_and_checks_diagonal_override():
    bg = make_series([10.0, 10.0])
    on = make_series([50.0, 60.0], start_ms=3000.0)
    ic = IonCounterCollector()
    corr = np.full((4, 4), 0.5)
    model = prepare(bg, on, ic, True, 1.0, correction=corr)
    np.testing.assert_allclose(model.dense(), np.diag([10.0, 10.0, 50.0, 60.0]) + 0.5)

    fast = prepare(bg, on, ic, False, 1.0, correction=corr)
    np.testing.assert_allclose(fast.diagonal(), [10.5, 10.5, 50.5, 60.5])

    with pytest.raises(InvalidVarianceModel):
        prepare(bg, on, ic, True, 1.0, diagonal=[1.0, 2.0])
    with pytest.raises(DimensionMismatch):
        prepare(bg, on, ic, True, 1.0, correction=np.ones((3, 3)))


def test_background_block_is_leading_principal_minor(rng):
    m = _spd(rng, 6)
    block = background_block(FullCovariance(m), 4)
    np.testing.assert_array_equal(block.dense(), m[:4, :4])
    with pytest.raises(DimensionMismatch):
        background_block(FullCovariance(m), 7)


@pytest.mark.parametrize("make", [FullCovariance, lambda m: DiagonalVariance(np.diag(m))])
def test_degenerate_guard_floors_zero_background(make):
    block = make(np.zeros((3, 3)))
    guarded, degenerate = apply_degenerate_background_guard(block)
    assert degenerate
    np.testing.assert_array_equal(guarded.diagonal(), np.full(3, ZERO_BACKGROUND_VARIANCE_FLOOR))

    untouched, degenerate = apply_degenerate_background_guard(make(np.diag([0.0, 1.0, 0.0])))
    assert not degenerate
    np.testing.assert_array_equal(untouched.diagonal(), [0.0, 1.0, 0.0])


@pytest.mark.parametrize("make", [FullCovariance, lambda m: DiagonalVariance(np.diag(m))])
def test_degenerate_guard_ignores_constant_noise_floor(make):
    floored = make(np.diag([7.0, 7.0, 7.0]))
    guarded, degenerate = apply_degenerate_background_guard(floored, np.zeros(3))
    assert degenerate
    np.testing.assert_array_equal(guarded.diagonal(), np.full(3, ZERO_BACKGROUND_VARIANCE_FLOOR))

    kept, degenerate = apply_degenerate_background_guard(floored, [0.0, 0.5, 0.0])
    assert not degenerate
    np.testing.assert_array_equal(kept.diagonal(), 7.0)


def test_masking_uses_one_index_set_for_rows_and_columns(rng):
    n_bg, mask = 3, np.array([True, False, True, False, True])
    m = _spd(rng, n_bg + mask.size)
    idx = active_indices(n_bg, mask)
    np.testing.assert_array_equal(idx, [0, 1, 2, 3, 5, 7])

    sub = FullCovariance(m).extract(idx)
    np.testing.assert_array_equal(sub.dense(), m[idx][:, idx])

    back = expand(sub, idx, m.shape[0])
    np.testing.assert_array_equal(back[np.ix_(idx, idx)], sub.dense())
    dropped = np.setdiff1d(np.arange(m.shape[0]), idx)
    assert not back[dropped].any()
    assert not back[:, dropped].any()


def test_masking_symmetry_for_every_subset(rng):
    n_bg, n_on = 2, 4
    m = _spd(rng, n_bg + n_on)
    for bits in range(2 ** n_on):
        mask = np.array([(bits >> k) & 1 for k in range(n_on)], dtype=bool)
        idx = active_indices(n_bg, mask)
        sub = FullCovariance(m).extract(idx).dense()
        np.testing.assert_array_equal(sub, sub.T)
        np.testing.assert_array_equal(expand(sub, idx, n_bg + n_on)[np.ix_(idx, idx)], sub)


def test_sandwich_and_solve_agree_between_models(rng):
    v = rng.uniform(1.0, 3.0, 5)
    full, fast = FullCovariance(np.diag(v)), DiagonalVariance(v)
    J = rng.normal(size=(2, 5))
    np.testing.assert_allclose(full.sandwich(J), fast.sandwich(J))
    np.testing.assert_allclose(full.solve(np.ones(5)), fast.solve(np.ones(5)))
    assert full.is_positive_definite() and fast.is_positive_definite()
    assert not DiagonalVariance([1.0, 0.0]).is_positive_definite()


def test_as_variance_model():
    assert isinstance(as_variance_model([1.0, 2.0], True), FullCovariance)
    fast = as_variance_model(np.diag([1.0, 2.0]), False)
    assert isinstance(fast, DiagonalVariance)
    np.testing.assert_array_equal(fast.diagonal(), [1.0, 2.0])
