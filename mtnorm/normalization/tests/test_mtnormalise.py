"""Tests for mtnorm.normalization.mtnormalise."""

import numpy as np
import pytest

import mtnorm.normalization.mtnormalise as mtn
from mtnorm.normalization.mtnormalise import (
    DEFAULT_REFERENCE,
    DegenerateMaskError,
    InputShapeError,
    MTNormalise,
    MTNormaliseError,
    NonPositiveBalanceFactorError,
    NormalisationConfig,
    NormalisationState,
    apply_normalisation,
    cholesky_solve,
    estimate_balance_factors,
    evaluate_field,
    fit_normalisation_field,
    lognorm_scale,
    mtnormalise,
    n_basis_functions,
    polynomial_basis,
    quartile_thresholds,
    refine_mask,
    reject_outliers,
    voxel_to_world,
)


def _make_synthetic_tissues(
    *, shape=(16, 16, 12), reference=DEFAULT_REFERENCE, noise=0.02, rng=None
):
    """Create three tissue compartments sharing a smooth multiplicative field.

    Parameters
    ----------
    shape : tuple of int, optional
        Spatial dimensions of the volumes.
    reference : float, optional
        Value the balanced, field-corrected tissue sum equals.
    noise : float, optional
        Standard deviation of the log-normal multiplicative noise.
    rng : numpy.random.Generator, optional
        Random number generator for reproducibility.

    Returns
    -------
    tissues : list of ndarray
        WM-like 4D tissue with 6 volumes, then 3D GM-like and CSF-like
        tissues.
    mask : ndarray
        Ellipsoidal mask, boolean.
    field : ndarray
        Ground-truth multiplicative field.
    balance : ndarray
        Ground-truth balance factors, geometric mean of 1.
    """
    if rng is None:
        rng = np.random.default_rng(42)

    xx, yy, zz = np.mgrid[: shape[0], : shape[1], : shape[2]].astype(float)
    cx, cy, cz = (np.array(shape) - 1) / 2.0
    xn = (xx - cx) / shape[0]
    yn = (yy - cy) / shape[1]
    zn = (zz - cz) / shape[2]
    field = np.exp(0.3 * xn - 0.4 * yn**2 + 0.2 * zn + 0.1 * xn * zn)

    balance = np.array([1.4, 0.8, 1.0 / (1.4 * 0.8)])
    fractions = rng.dirichlet((4.0, 3.0, 2.0), size=shape)
    first = reference * field[..., None] * fractions / balance
    if noise:
        first = first * np.exp(rng.normal(0, noise, first.shape))

    wm = np.concatenate(
        [first[..., :1], first[..., :1] * rng.normal(0, 0.1, (*shape, 5))], axis=-1
    )
    tissues = [wm, first[..., 1], first[..., 2]]

    mask = (
        (xx - cx) ** 2 / (shape[0] / 2) ** 2
        + (yy - cy) ** 2 / (shape[1] / 2) ** 2
        + (zz - cz) ** 2 / (shape[2] / 2) ** 2
    ) < 1.0
    return tissues, mask, field, balance


# ---------------------------------------------------------------------------
# --- Basis functions ---
# ---------------------------------------------------------------------------


def test_n_basis_functions():
    assert [n_basis_functions(o) for o in range(4)] == [1, 4, 10, 20]
    with pytest.raises(ValueError):
        n_basis_functions(4)


def test_polynomial_basis_values():
    x, y, z = 2.0, 3.0, 5.0
    expected = [1, x, y, z, x * x, y * y, z * z, x * y, x * z, y * z]
    expected += [x**3, y**3, z**3, x * x * y, x * x * z, y * y * x, y * y * z]
    expected += [z * z * x, z * z * y, x * y * z]
    for order, K in zip(range(4), (1, 4, 10, 20)):
        basis = polynomial_basis(np.array([[x, y, z]]), order=order)
        assert basis.shape == (1, K)
        np.testing.assert_array_equal(basis[0], expected[:K])


def test_polynomial_basis_bad_shape():
    with pytest.raises(ValueError):
        polynomial_basis(np.zeros((5, 2)), order=1)


def test_voxel_to_world():
    ijk = np.array([[0, 0, 0], [1, 2, 3]])
    np.testing.assert_array_equal(voxel_to_world(ijk, None), ijk)
    affine = np.diag([2.0, 2.0, 2.0, 1.0])
    affine[:3, 3] = [-10, 5, 1]
    np.testing.assert_allclose(
        voxel_to_world(ijk, affine), [[-10, 5, 1], [-8, 9, 7]]
    )


# ---------------------------------------------------------------------------
# --- Mask refinement and outlier rejection ---
# ---------------------------------------------------------------------------


def test_refine_mask():
    summed = np.array([1.0, np.nan, np.inf, 0.0, -2.0, 3.0]).reshape(6, 1, 1)
    mask = np.array([True, True, True, True, True, False]).reshape(6, 1, 1)
    refined = refine_mask(mask, summed, num_threads=2)
    np.testing.assert_array_equal(
        refined.ravel(), [True, False, False, False, False, False]
    )


def test_refine_mask_shape_mismatch():
    with pytest.raises(InputShapeError):
        refine_mask(np.ones((3, 3, 3), bool), np.ones((3, 3, 2)))


def test_quartile_thresholds_scenario():
    values = np.arange(1, 11, dtype=float)
    low, high = quartile_thresholds(values, outlier_range=1.5)
    assert low == pytest.approx(4 - 1.5 * (9 - 4))
    assert high == pytest.approx(9 + 1.5 * 5)
    assert low == pytest.approx(-3.5)
    assert high == pytest.approx(16.5)
    assert np.all((values >= low) & (values <= high))

    # selection does not depend on the sample order
    rng = np.random.default_rng(0)
    shuffled = rng.permutation(values)
    assert quartile_thresholds(shuffled, outlier_range=1.5) == (low, high)


def test_quartile_thresholds_rounds_half_up():
    # N = 2: round(0.5) = 1, round(1.5) = 2 clipped to the last index
    low, high = quartile_thresholds(np.array([1.0, 3.0]), outlier_range=0.0)
    assert (low, high) == (3.0, 3.0)


def test_quartile_thresholds_empty():
    with pytest.raises(DegenerateMaskError):
        quartile_thresholds(np.array([]), outlier_range=1.5)


def test_reject_outliers_removes_extreme_voxel():
    values = np.array([1, 2, 3, 4, 5, 6, 7, 8, 9, 100], dtype=float)
    combined = np.exp(values).reshape(10, 1, 1, 1)
    initial_mask = np.ones((10, 1, 1), dtype=bool)
    mask = reject_outliers(
        initial_mask=initial_mask,
        combined=combined,
        field=np.ones((10, 1, 1)),
        balance_factors=np.ones(1),
        outlier_range=1.5,
        num_threads=3,
    )
    expected = np.ones(10, dtype=bool)
    expected[-1] = False
    np.testing.assert_array_equal(mask.ravel(), expected)


def test_reject_outliers_subset_of_initial():
    tissues, mask, _, _ = _make_synthetic_tissues(noise=0.3)
    combined = np.stack([t if t.ndim == 3 else t[..., 0] for t in tissues], -1)
    for k in (3.0, 1.5, 0.0):
        new_mask = reject_outliers(
            initial_mask=mask,
            combined=combined,
            field=np.ones(mask.shape),
            balance_factors=np.ones(3),
            outlier_range=k,
        )
        assert not np.any(new_mask & ~mask)
        assert new_mask.sum() > 0
    # no range at all keeps only the inter-quartile voxels
    assert new_mask.sum() < mask.sum()


# ---------------------------------------------------------------------------
# --- Balance factors ---
# ---------------------------------------------------------------------------


def test_cholesky_solve_matches_lstsq():
    rng = np.random.default_rng(1)
    X = rng.normal(size=(50, 4))
    y = rng.normal(size=50)
    expected, *_ = np.linalg.lstsq(X, y, rcond=None)
    np.testing.assert_allclose(cholesky_solve(X, y), expected, rtol=1e-8)


def test_cholesky_solve_rank_deficient():
    X = np.ones((10, 2))
    with pytest.raises(MTNormaliseError):
        cholesky_solve(X, np.ones(10))
    X[:, 1] = 0
    with pytest.raises(MTNormaliseError):
        cholesky_solve(X, np.ones(10))


def test_balance_factors_log_sum_zero():
    tissues, mask, _, _ = _make_synthetic_tissues()
    combined = np.stack([t if t.ndim == 3 else t[..., 0] for t in tissues], -1)
    b = estimate_balance_factors(
        mask=mask, combined=combined, field=np.ones(mask.shape)
    )
    assert b.shape == (3,)
    assert np.all(b > 0)
    assert abs(np.sum(np.log(b))) < 1e-6


def test_package_exposes_engine_module():
    import mtnorm.normalization

    assert mtnorm.normalization.mtnormalise is mtn
    assert hasattr(mtn, "cholesky_solve")


def test_single_tissue_skips_solve(monkeypatch):
    def _fail(*args, **kwargs):
        raise AssertionError("no solve expected for a single tissue")

    monkeypatch.setattr(mtn, "cholesky_solve", _fail)
    combined = np.random.default_rng(0).uniform(1, 2, (4, 4, 4, 1))
    b = estimate_balance_factors(
        mask=np.ones((4, 4, 4), bool), combined=combined, field=np.ones((4, 4, 4))
    )
    np.testing.assert_array_equal(b, [1.0])


def test_non_positive_balance_factor():
    # Least squares solution of 2 b1 + 3 b2 = 1, b1 + b2 = 1 is (2, -1)
    combined = np.array([[2.0, 3.0], [2.0, 3.0], [1.0, 1.0], [1.0, 1.0]])
    combined = combined.reshape(4, 1, 1, 2)
    with pytest.raises(NonPositiveBalanceFactorError, match="Tissue index: 2") as e:
        estimate_balance_factors(
            mask=np.ones((4, 1, 1), bool), combined=combined, field=np.ones((4, 1, 1))
        )
    assert e.value.tissue_index == 2
    assert e.value.value == pytest.approx(-1.0)


def test_balance_factors_empty_mask():
    combined = np.ones((3, 3, 3, 2))
    with pytest.raises(DegenerateMaskError):
        estimate_balance_factors(
            mask=np.zeros((3, 3, 3), bool), combined=combined, field=np.ones((3, 3, 3))
        )


# ---------------------------------------------------------------------------
# --- Field estimation ---
# ---------------------------------------------------------------------------


def test_field_consistency():
    tissues, mask, _, _ = _make_synthetic_tissues()
    combined = np.stack([t if t.ndim == 3 else t[..., 0] for t in tissues], -1)
    weights, field_log, field = fit_normalisation_field(
        mask=mask, combined=combined, balance_factors=np.ones(3), order=3
    )
    assert weights.shape == (20,)
    assert field.shape == mask.shape
    # defined everywhere, including outside the mask
    assert np.all(np.isfinite(field_log))
    np.testing.assert_array_equal(field, np.exp(field_log))


def test_order0_field_is_constant():
    tissues, mask, _, _ = _make_synthetic_tissues()
    combined = np.stack([t if t.ndim == 3 else t[..., 0] for t in tissues], -1)
    weights, field_log, field = fit_normalisation_field(
        mask=mask, combined=combined, balance_factors=np.ones(3), order=0
    )
    assert weights.shape == (1,)
    assert np.all(field_log == field_log.flat[0])
    assert np.all(field == field.flat[0])

    # the constant is the log-mean of the target
    target = np.log(combined[mask].sum(-1)) - np.log(DEFAULT_REFERENCE)
    assert weights[0] == pytest.approx(target.mean())


def test_evaluate_field_with_affine():
    affine = np.diag([2.0, 2.0, 2.0, 1.0])
    affine[:3, 3] = [-8, -8, -6]
    weights = np.array([0.1, 0.01, -0.02, 0.03])
    field_log = evaluate_field(
        weights, shape=(8, 8, 6), order=1, affine=affine, num_threads=3
    )
    i, j, k = 3, 5, 2
    x, y, z = 2 * i - 8, 2 * j - 8, 2 * k - 6
    assert field_log[i, j, k] == pytest.approx(0.1 + 0.01 * x - 0.02 * y + 0.03 * z)


def test_fit_field_recovers_polynomial():
    shape = (10, 12, 8)
    xx, yy, zz = np.mgrid[: shape[0], : shape[1], : shape[2]].astype(float)
    true_log = 0.05 * xx - 0.002 * yy**2 + 0.001 * xx * zz
    combined = (DEFAULT_REFERENCE * np.exp(true_log))[..., None]
    mask = np.ones(shape, bool)
    mask[:, :, :2] = False
    _, field_log, _ = fit_normalisation_field(
        mask=mask, combined=combined, balance_factors=np.ones(1), order=2
    )
    # extrapolated outside the mask as well
    np.testing.assert_allclose(field_log, true_log, atol=1e-6)


# ---------------------------------------------------------------------------
# --- Output composition ---
# ---------------------------------------------------------------------------


def test_lognorm_scale():
    field_log = np.zeros((4, 4, 4))
    field_log[:2] = np.log(4.0)
    mask = np.zeros((4, 4, 4), bool)
    mask[1:3] = True
    # half the masked voxels at log(4), half at 0: geometric mean 2
    assert lognorm_scale(field_log, mask, num_threads=2) == pytest.approx(2.0)
    assert lognorm_scale(field_log, np.zeros_like(mask)) == 0.0


def test_apply_normalisation():
    data = np.arange(1, 25, dtype=np.float32).reshape(2, 2, 2, 3)
    data[0, 0, 0, 0] = -1.0
    field = np.full((2, 2, 2), 2.0)
    out = apply_normalisation(data, field, multiplier=3.0)
    assert out.dtype == np.float32
    np.testing.assert_array_equal(out[0, 0, 0], 0)
    np.testing.assert_allclose(out[1, 1, 1], data[1, 1, 1] * 1.5)

    out3d = apply_normalisation(data[..., 1], field)
    assert out3d.shape == (2, 2, 2)
    np.testing.assert_allclose(out3d, data[..., 1] / 2.0)


# ---------------------------------------------------------------------------
# --- Full normalisation ---
# ---------------------------------------------------------------------------


def test_config_validation():
    with pytest.raises(ValueError):
        NormalisationConfig(order=4)
    with pytest.raises(ValueError):
        NormalisationConfig(max_iter=0)
    with pytest.raises(ValueError):
        NormalisationConfig(max_balance_iter=0)
    with pytest.raises(ValueError):
        NormalisationConfig(reference=0.0)
    with pytest.raises(ValueError):
        NormalisationConfig(reference=np.nan)


def test_input_validation():
    tissues, mask, _, _ = _make_synthetic_tissues()
    with pytest.raises(InputShapeError):
        mtnormalise([], mask)
    with pytest.raises(InputShapeError):
        mtnormalise([tissues[1], tissues[2][:-1]], mask)
    with pytest.raises(InputShapeError):
        mtnormalise([tissues[1][..., None, None]], mask)
    with pytest.raises(InputShapeError):
        mtnormalise(tissues, mask[:-1])


def test_degenerate_mask():
    tissues, mask, _, _ = _make_synthetic_tissues()
    with pytest.raises(DegenerateMaskError, match="no valid voxels"):
        mtnormalise(tissues, np.zeros_like(mask))
    zeros = [np.zeros_like(t) for t in tissues]
    with pytest.raises(DegenerateMaskError):
        mtnormalise(zeros, mask)


def test_recovers_field_and_balance():
    tissues, mask, true_field, true_balance = _make_synthetic_tissues()
    result = mtnormalise(tissues, mask, order=3, niter=15, return_result=True)

    np.testing.assert_allclose(result.balance_factors, true_balance, rtol=0.05)
    assert abs(np.sum(np.log(result.balance_factors))) < 1e-6
    np.testing.assert_allclose(result.field[mask], true_field[mask], rtol=0.05)
    np.testing.assert_array_equal(result.field, np.exp(result.field_log))
    assert not np.any(result.mask & ~mask)
    assert result.n_iter == 15
    assert len(result.converged) == 15
    assert all(1 <= n <= 7 for n in result.balance_iterations)

    # balanced sum of the outputs is close to the reference in the mask
    first = [t if t.ndim == 3 else t[..., 0] for t in result.normalised]
    balanced_sum = sum(b * t for b, t in zip(result.balance_factors, first))
    np.testing.assert_allclose(
        np.median(balanced_sum[result.mask]), DEFAULT_REFERENCE, rtol=0.02
    )


def test_output_shapes_and_balanced_flag():
    tissues, mask, _, _ = _make_synthetic_tissues()
    plain = mtnormalise(tissues, mask, niter=2, return_result=True)
    balanced = mtnormalise(tissues, mask, niter=2, balanced=True, return_result=True)

    for data, out in zip(tissues, plain.normalised):
        assert out.shape == data.shape
        assert out.dtype == np.float32
    for j, (a, b) in enumerate(zip(plain.normalised, balanced.normalised)):
        np.testing.assert_allclose(
            b, a * plain.balance_factors[j], rtol=1e-5, atol=1e-7
        )


def test_negative_first_volume_zeroed():
    tissues, mask, _, _ = _make_synthetic_tissues()
    tissues[0] = tissues[0].copy()
    tissues[0][0, 0, 0, 0] = -1.0
    normalised = mtnormalise(tissues, mask, niter=1)
    np.testing.assert_array_equal(normalised[0][0, 0, 0], 0)


def test_idempotence_single_tissue():
    shape = (8, 8, 6)
    tissue = np.full(shape, DEFAULT_REFERENCE)
    mask = np.ones(shape, bool)
    result = mtnormalise([tissue], mask, niter=3, return_result=True)
    assert result.converged[0]
    assert result.balance_iterations[0] == 1
    np.testing.assert_array_equal(result.balance_factors, [1.0])
    np.testing.assert_allclose(result.field[mask], 1.0, atol=1e-12)
    np.testing.assert_array_equal(result.mask, mask)
    assert result.lognorm_scale == pytest.approx(1.0)


def test_idempotence_multi_tissue():
    rng = np.random.default_rng(3)
    shape = (10, 10, 8)
    fraction = rng.uniform(0.2, 0.8, shape)
    tissues = [fraction * DEFAULT_REFERENCE, (1 - fraction) * DEFAULT_REFERENCE]
    mask = np.ones(shape, bool)
    result = mtnormalise(tissues, mask, niter=2, return_result=True)
    np.testing.assert_allclose(result.balance_factors, 1.0, atol=1e-6)
    np.testing.assert_allclose(result.field[result.mask], 1.0, atol=1e-6)
    assert result.converged[0]
    np.testing.assert_array_equal(result.mask, mask)


def test_inner_masks_stay_within_initial_mask(monkeypatch):
    tissues, mask, _, _ = _make_synthetic_tissues(noise=0.1)
    normaliser = MTNormalise(NormalisationConfig(max_iter=3))
    normaliser.initialize(tissues, mask)
    initial_mask = normaliser.initial_mask.copy()
    assert not np.any(normaliser.mask & ~initial_mask)

    inner_masks = []
    original_reject = mtn.reject_outliers

    def _recording_reject(**kwargs):
        new_mask = original_reject(**kwargs)
        inner_masks.append(new_mask.copy())
        return new_mask

    monkeypatch.setattr(mtn, "reject_outliers", _recording_reject)
    while normaliser.step() is not NormalisationState.DONE:
        assert not np.any(normaliser.mask & ~initial_mask)
        np.testing.assert_array_equal(normaliser.initial_mask, initial_mask)

    assert len(inner_masks) == sum(normaliser.balance_iterations)
    for inner_mask in inner_masks:
        assert not np.any(inner_mask & ~initial_mask)
        assert inner_mask.sum() > 0


def test_state_machine_steps():
    tissues, mask, _, _ = _make_synthetic_tissues()
    normaliser = MTNormalise(NormalisationConfig(max_iter=2))
    with pytest.raises(RuntimeError):
        normaliser.step()

    normaliser.initialize(tissues, mask)
    assert normaliser.state is NormalisationState.BALANCING_AND_REJECTING
    assert not np.any(normaliser.mask & ~normaliser.initial_mask)

    assert normaliser.step() is NormalisationState.FIELD_FITTING
    assert normaliser.n_iter == 1
    np.testing.assert_array_equal(normaliser.mask, normaliser.previous_mask)
    assert normaliser.step() is NormalisationState.BALANCING_AND_REJECTING
    assert normaliser.step() is NormalisationState.FIELD_FITTING
    assert normaliser.step() is NormalisationState.DONE
    with pytest.raises(RuntimeError):
        normaliser.step()

    result = normaliser.result()
    assert result.n_iter == 2


def test_thread_count_does_not_change_result():
    tissues, mask, _, _ = _make_synthetic_tissues()
    r1 = mtnormalise(tissues, mask, niter=3, num_threads=1, return_result=True)
    r4 = mtnormalise(tissues, mask, niter=3, num_threads=4, return_result=True)
    np.testing.assert_allclose(r1.balance_factors, r4.balance_factors, rtol=1e-10)
    np.testing.assert_allclose(r1.field, r4.field, rtol=1e-10)
    np.testing.assert_array_equal(r1.mask, r4.mask)


def test_affine_positions_basis():
    tissues, mask, _, _ = _make_synthetic_tissues()
    affine = np.diag([2.0, 2.0, 2.5, 1.0])
    affine[:3, 3] = [-16, -16, -15]
    result = mtnormalise(tissues, mask, affine=affine, niter=3, return_result=True)
    assert np.all(np.isfinite(result.field))
    assert abs(np.sum(np.log(result.balance_factors))) < 1e-6
