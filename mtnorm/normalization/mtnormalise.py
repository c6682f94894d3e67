"""Multi-tissue informed log-domain intensity normalisation.

Tissue compartments (e.g. the WM FOD, GM and CSF outputs of multi-tissue CSD)
are normalised jointly: a smooth multiplicative field, modelled as a 3D
polynomial in the log domain, drives the balance-weighted sum of the
compartments towards a reference value, while one balance factor per tissue
absorbs global scale differences between compartments. Voxels whose combined
signal is exceptionally low or high are treated as outliers and re-evaluated
at every pass as the field estimate improves.

See :footcite:p:`Raffelt2017` for the method.

References
----------
.. footbibliography::
"""

from dataclasses import dataclass, field as dataclass_field
import enum
from typing import Optional

from nibabel.affines import apply_affine
import numpy as np
from scipy import linalg as scipy_linalg

from mtnorm.utils.logging import logger
from mtnorm.utils.parallel import parallel_for_each, parallel_reduce

# SH DC term for a unit angular integral: 1 / (2 * sqrt(pi))
DEFAULT_REFERENCE = 0.28209479177
DEFAULT_ORDER = 3
DEFAULT_MAX_ITER = 15
DEFAULT_MAX_BALANCE_ITER = 7
COARSE_OUTLIER_RANGE = 3.0
FINE_OUTLIER_RANGE = 1.5

_N_BASIS = {0: 1, 1: 4, 2: 10, 3: 20}


class MTNormaliseError(ValueError):
    """Base class of the errors raised by the normalisation."""


class InputShapeError(MTNormaliseError):
    """Tissue volumes or mask have unusable or inconsistent shapes."""


class DegenerateMaskError(MTNormaliseError):
    """No voxel is left to estimate the normalisation from."""


class NonPositiveBalanceFactorError(MTNormaliseError):
    """A tissue balance factor came out zero, negative or non-finite.

    Parameters
    ----------
    tissue_index : int
        1-based index of the offending tissue.
    value : float
        Computed balance factor.
    """

    def __init__(self, tissue_index, value):
        self.tissue_index = tissue_index
        self.value = value
        super().__init__(
            "Non-positive tissue balance factor was computed. "
            f"Tissue index: {tissue_index} Balance factor: {value} "
            "Needs to be strictly positive!"
        )


@dataclass(frozen=True)
class NormalisationConfig:
    """Settings of a normalisation run.

    Attributes
    ----------
    order : int
        Maximum order (0 to 3) of the polynomial modelling the log-domain
        field. Order 0 gives a spatially constant normalisation factor.
    max_iter : int
        Number of field refinement (outer) iterations.
    max_balance_iter : int
        Maximum number of balance / outlier rejection (inner) iterations per
        outer iteration.
    reference : float
        Strictly positive value the summed tissue compartments are normalised
        to.
    balanced : bool
        Fold the tissue balance factors into the scaling of the outputs.
    num_threads : int or None
        Threads used by the voxel-wise passes. None uses all cores.
    """

    order: int = DEFAULT_ORDER
    max_iter: int = DEFAULT_MAX_ITER
    max_balance_iter: int = DEFAULT_MAX_BALANCE_ITER
    reference: float = DEFAULT_REFERENCE
    balanced: bool = False
    num_threads: Optional[int] = None

    def __post_init__(self):
        if self.order not in _N_BASIS:
            raise ValueError(f"order must be 0, 1, 2 or 3, got {self.order}")
        if self.max_iter < 1:
            raise ValueError(f"max_iter must be at least 1, got {self.max_iter}")
        if self.max_balance_iter < 1:
            raise ValueError(
                f"max_balance_iter must be at least 1, got {self.max_balance_iter}"
            )
        if not (np.isfinite(self.reference) and self.reference > 0):
            raise ValueError(
                f"reference must be a strictly positive number, got {self.reference}"
            )


@dataclass
class NormalisationResult:
    """Outcome of :meth:`MTNormalise.fit`.

    Attributes
    ----------
    normalised : list of ndarray
        Normalised tissue volumes, float32, one per input tissue.
    balance_factors : ndarray
        Final tissue balance factors, shape (T,).
    field : ndarray
        Normalisation field in the intensity domain, shape (X, Y, Z).
    field_log : ndarray
        Normalisation field in the log domain, shape (X, Y, Z).
    mask : ndarray
        Final mask, outliers excluded.
    weights : ndarray
        Polynomial weights of the last field fit.
    lognorm_scale : float
        Geometric mean of the field within the final mask.
    balance_iterations : list of int
        Number of inner iterations run in each outer iteration.
    converged : list of bool
        Whether the inner loop reached a stable mask, per outer iteration.
    """

    normalised: list
    balance_factors: np.ndarray
    field: np.ndarray
    field_log: np.ndarray
    mask: np.ndarray
    weights: np.ndarray
    lognorm_scale: float
    balance_iterations: list = dataclass_field(default_factory=list)
    converged: list = dataclass_field(default_factory=list)

    @property
    def n_iter(self):
        return len(self.balance_iterations)


def n_basis_functions(order):
    """Return the number of polynomial basis functions of a given order.

    Parameters
    ----------
    order : int
        Polynomial order, 0 to 3.

    Returns
    -------
    n : int
        1, 4, 10 or 20.
    """
    if order not in _N_BASIS:
        raise ValueError(f"order must be 0, 1, 2 or 3, got {order}")
    return _N_BASIS[order]


def polynomial_basis(positions, *, order):
    """Build the polynomial design matrix at the given positions.

    Parameters
    ----------
    positions : ndarray
        Physical positions, shape (N, 3).
    order : int
        Maximum total polynomial degree, 0 to 3.

    Returns
    -------
    basis : ndarray
        Design matrix, shape (N, K) with K = ``n_basis_functions(order)``.
        Columns are 1, x, y, z, x², y², z², xy, xz, yz, x³, y³, z³, x²y, x²z,
        xy², y²z, xz², yz², xyz, truncated to K.
    """
    positions = np.asarray(positions, dtype=np.float64)
    if positions.ndim != 2 or positions.shape[1] != 3:
        raise ValueError(f"positions must have shape (N, 3), got {positions.shape}")
    K = n_basis_functions(order)
    x, y, z = positions[:, 0], positions[:, 1], positions[:, 2]

    basis = np.empty((positions.shape[0], K), dtype=np.float64)
    basis[:, 0] = 1.0
    if K < 4:
        return basis

    basis[:, 1] = x
    basis[:, 2] = y
    basis[:, 3] = z
    if K < 10:
        return basis

    basis[:, 4] = x * x
    basis[:, 5] = y * y
    basis[:, 6] = z * z
    basis[:, 7] = x * y
    basis[:, 8] = x * z
    basis[:, 9] = y * z
    if K < 20:
        return basis

    basis[:, 10] = x * x * x
    basis[:, 11] = y * y * y
    basis[:, 12] = z * z * z
    basis[:, 13] = x * x * y
    basis[:, 14] = x * x * z
    basis[:, 15] = y * y * x
    basis[:, 16] = y * y * z
    basis[:, 17] = z * z * x
    basis[:, 18] = z * z * y
    basis[:, 19] = x * y * z
    return basis


def voxel_to_world(ijk, affine):
    """Map voxel indices to physical positions.

    Parameters
    ----------
    ijk : ndarray
        Voxel indices, shape (N, 3).
    affine : ndarray or None
        4x4 voxel-to-world affine. None keeps voxel coordinates.

    Returns
    -------
    positions : ndarray
        Float64 positions, shape (N, 3).
    """
    ijk = np.asarray(ijk, dtype=np.float64)
    if affine is None:
        return ijk
    return apply_affine(np.asarray(affine, dtype=np.float64), ijk)


def refine_mask(mask, summed, *, num_threads=None):
    """Restrict a mask to voxels with a finite, positive summed signal.

    Parameters
    ----------
    mask : ndarray
        3D input mask.
    summed : ndarray
        3D sum of the tissue compartments.
    num_threads : int, optional
        Threads used for the voxel-wise pass.

    Returns
    -------
    refined : ndarray
        3D boolean mask.
    """
    mask = np.asarray(mask, dtype=bool)
    summed = np.asarray(summed)
    if mask.shape != summed.shape:
        raise InputShapeError(
            f"Mask shape {mask.shape} does not match tissue shape {summed.shape}"
        )

    def _refine(_, m, s):
        with np.errstate(invalid="ignore"):
            return m & np.isfinite(s) & (s > 0)

    return parallel_for_each(
        _refine, mask, summed, out=np.zeros(mask.shape, dtype=bool),
        num_threads=num_threads,
    )


def _round_half_up(value):
    # std::round semantics for the non-negative values used here
    return int(np.floor(value + 0.5))


def quartile_thresholds(values, *, outlier_range):
    """Outlier thresholds from the lower and upper quartiles of a sample.

    The quartiles are the order statistics at indices ``round(0.25 * N)`` and
    ``round(0.75 * N)`` (halves rounded up), found by partial selection.

    Parameters
    ----------
    values : ndarray
        1D sample.
    outlier_range : float
        Multiplier k of the inter-quartile range.

    Returns
    -------
    low, high : float
        ``Q1 - k * IQR`` and ``Q3 + k * IQR``.
    """
    values = np.asarray(values, dtype=np.float64).ravel()
    n = values.size
    if n == 0:
        raise DegenerateMaskError("Cannot compute quartiles of an empty sample.")
    lower_idx = min(_round_half_up(0.25 * n), n - 1)
    upper_idx = min(_round_half_up(0.75 * n), n - 1)
    selected = np.partition(values, (lower_idx, upper_idx))
    lower, upper = selected[lower_idx], selected[upper_idx]
    iqr = upper - lower
    return lower - outlier_range * iqr, upper + outlier_range * iqr


def balanced_log_sum(*, combined, field, balance_factors, num_threads=None):
    """Voxel-wise log of the balanced, field-corrected tissue sum.

    Parameters
    ----------
    combined : ndarray
        Clamped tissue compartments, shape (X, Y, Z, T).
    field : ndarray
        Intensity-domain normalisation field, shape (X, Y, Z).
    balance_factors : ndarray
        Shape (T,).
    num_threads : int, optional
        Threads used for the voxel-wise pass.

    Returns
    -------
    summed_log : ndarray
        Shape (X, Y, Z). Voxels with a zero sum hold -inf.
    """
    balance_factors = np.asarray(balance_factors, dtype=np.float64)

    def _log_sum(_, comb, fld):
        with np.errstate(divide="ignore", invalid="ignore"):
            return np.log((comb @ balance_factors) / fld)

    return parallel_for_each(
        _log_sum, combined, field, out=np.empty(field.shape, dtype=np.float64),
        num_threads=num_threads,
    )


def reject_outliers(
    *,
    initial_mask,
    combined,
    field,
    balance_factors,
    outlier_range=FINE_OUTLIER_RANGE,
    num_threads=None,
):
    """Remove voxels with an extreme combined signal from the initial mask.

    Parameters
    ----------
    initial_mask : ndarray
        3D boolean mask the rejection starts from.
    combined : ndarray
        Clamped tissue compartments, shape (X, Y, Z, T).
    field : ndarray
        Intensity-domain normalisation field, shape (X, Y, Z).
    balance_factors : ndarray
        Shape (T,).
    outlier_range : float, optional
        Multiplier of the inter-quartile range.
    num_threads : int, optional
        Threads used for the voxel-wise pass.

    Returns
    -------
    mask : ndarray
        New 3D boolean mask, a subset of ``initial_mask``.
    """
    summed_log = balanced_log_sum(
        combined=combined,
        field=field,
        balance_factors=balance_factors,
        num_threads=num_threads,
    )
    values = summed_log[initial_mask]
    low, high = quartile_thresholds(values, outlier_range=outlier_range)
    logger.debug(
        "Outlier thresholds (k=%.1f): [%.6g, %.6g]", outlier_range, low, high
    )

    mask = initial_mask.copy()
    mask[initial_mask] = (values >= low) & (values <= high)
    return mask


def cholesky_solve(X, y):
    """Least squares solution of ``X b = y`` through the normal equations.

    Parameters
    ----------
    X : ndarray
        Design matrix, shape (N, K).
    y : ndarray
        Target values, shape (N,).

    Returns
    -------
    b : ndarray
        Coefficient vector, shape (K,).

    Notes
    -----
    The Gram matrix is symmetrically scaled to a unit diagonal before the
    Cholesky factorisation; this leaves the solution unchanged but keeps
    high order monomials of scanner coordinates (in mm) factorisable.
    """
    gram = X.T @ X
    rhs = X.T @ y
    scale = np.sqrt(np.diag(gram))
    if not np.all(scale > 0):
        raise MTNormaliseError(
            f"Design matrix of shape {X.shape} has an all-zero column."
        )
    try:
        factor = scipy_linalg.cho_factor(gram / np.outer(scale, scale))
    except scipy_linalg.LinAlgError as e:
        raise MTNormaliseError(
            "Normal equations are not positive definite; the design matrix "
            f"of shape {X.shape} is rank deficient."
        ) from e
    return scipy_linalg.cho_solve(factor, rhs / scale) / scale


def estimate_balance_factors(*, mask, combined, field):
    """Estimate the tissue balance factors.

    Solves ``min ||X b - 1||²`` with ``X[i, j] = t_j / field`` over the masked
    voxels, then rescales ``b`` to a geometric mean of 1.

    Parameters
    ----------
    mask : ndarray
        3D boolean mask.
    combined : ndarray
        Clamped tissue compartments, shape (X, Y, Z, T).
    field : ndarray
        Intensity-domain normalisation field, shape (X, Y, Z).

    Returns
    -------
    balance_factors : ndarray
        Strictly positive factors with ``sum(log(b)) == 0``, shape (T,).
    """
    n_tissues = combined.shape[-1]
    if n_tissues == 1:
        return np.ones(1, dtype=np.float64)

    X = combined[mask] / field[mask][:, None]
    if X.shape[0] == 0:
        raise DegenerateMaskError("Mask contains no valid voxels.")
    balance_factors = cholesky_solve(X, np.ones(X.shape[0], dtype=np.float64))

    for j, value in enumerate(balance_factors):
        if not value > 0:
            raise NonPositiveBalanceFactorError(tissue_index=j + 1, value=value)

    return balance_factors / np.exp(np.mean(np.log(balance_factors)))


def evaluate_field(weights, *, shape, order, affine=None, num_threads=None):
    """Evaluate the log-domain polynomial field on a full voxel grid.

    Parameters
    ----------
    weights : ndarray
        Polynomial weights, shape (K,).
    shape : tuple of int
        Spatial shape (X, Y, Z).
    order : int
        Polynomial order matching ``weights``.
    affine : ndarray, optional
        4x4 voxel-to-world affine.
    num_threads : int, optional
        Threads used for the voxel-wise pass.

    Returns
    -------
    field_log : ndarray
        Log-domain field, shape ``shape``.
    """
    shape = tuple(shape[:3])
    weights = np.asarray(weights, dtype=np.float64)

    def _evaluate(slab):
        ii, jj, kk = np.meshgrid(
            np.arange(slab.start, slab.stop),
            np.arange(shape[1]),
            np.arange(shape[2]),
            indexing="ij",
        )
        ijk = np.column_stack([ii.ravel(), jj.ravel(), kk.ravel()])
        basis = polynomial_basis(voxel_to_world(ijk, affine), order=order)
        return (basis @ weights).reshape(ii.shape)

    return parallel_for_each(
        _evaluate, out=np.empty(shape, dtype=np.float64), num_threads=num_threads
    )


def fit_normalisation_field(
    *,
    mask,
    combined,
    balance_factors,
    order,
    affine=None,
    reference=DEFAULT_REFERENCE,
    num_threads=None,
):
    """Fit the polynomial normalisation field in the log domain.

    Parameters
    ----------
    mask : ndarray
        3D boolean mask of the voxels used for the fit.
    combined : ndarray
        Clamped tissue compartments, shape (X, Y, Z, T).
    balance_factors : ndarray
        Shape (T,).
    order : int
        Polynomial order, 0 to 3.
    affine : ndarray, optional
        4x4 voxel-to-world affine used to position the basis functions.
    reference : float, optional
        Target value of the balanced tissue sum.
    num_threads : int, optional
        Threads used for the voxel-wise passes.

    Returns
    -------
    weights : ndarray
        Polynomial weights, shape (K,).
    field_log : ndarray
        Log-domain field on the full grid.
    field : ndarray
        ``np.exp(field_log)``.
    """
    ijk = np.argwhere(mask)
    if ijk.shape[0] == 0:
        raise DegenerateMaskError("Mask contains no valid voxels.")

    basis = polynomial_basis(voxel_to_world(ijk, affine), order=order)
    y = np.log(combined[mask] @ np.asarray(balance_factors)) - np.log(reference)
    weights = cholesky_solve(basis, y)

    field_log = evaluate_field(
        weights, shape=mask.shape, order=order, affine=affine, num_threads=num_threads
    )
    field = parallel_for_each(
        lambda _, f: np.exp(f),
        field_log,
        out=np.empty_like(field_log),
        num_threads=num_threads,
    )
    return weights, field_log, field


def lognorm_scale(field_log, mask, *, num_threads=None):
    """Geometric mean of the normalisation field within a mask.

    Parameters
    ----------
    field_log : ndarray
        Log-domain field.
    mask : ndarray
        3D boolean mask.
    num_threads : int, optional
        Threads used for the reduction.

    Returns
    -------
    scale : float
        ``exp(mean(field_log[mask]))``, or 0.0 for an empty mask.
    """
    total, count = parallel_reduce(
        lambda f, m: np.array([f[m].sum(), np.count_nonzero(m)], dtype=np.float64),
        field_log,
        mask,
        initial=np.zeros(2, dtype=np.float64),
        num_threads=num_threads,
    )
    if count == 0:
        return 0.0
    return float(np.exp(total / count))


def apply_normalisation(data, field, *, multiplier=1.0, num_threads=None):
    """Divide a tissue volume by the normalisation field.

    Voxels whose first volume is negative are set to zero in all volumes.

    Parameters
    ----------
    data : ndarray
        Raw tissue volume, shape (X, Y, Z) or (X, Y, Z, V).
    field : ndarray
        Intensity-domain normalisation field, shape (X, Y, Z).
    multiplier : float, optional
        Extra scaling, the tissue balance factor for balanced outputs.
    num_threads : int, optional
        Threads used for the voxel-wise pass.

    Returns
    -------
    normalised : ndarray
        Float32 array with the shape of ``data``.
    """
    data = np.asarray(data)
    squeeze = data.ndim == 3
    data4d = data[..., None] if squeeze else data

    def _normalise(_, d, f):
        out = d * multiplier / f[..., None]
        out[d[..., 0] < 0] = 0
        return out

    normalised = parallel_for_each(
        _normalise,
        data4d,
        field,
        out=np.empty(data4d.shape, dtype=np.float32),
        num_threads=num_threads,
    )
    return normalised[..., 0] if squeeze else normalised


def compose_outputs(tissues, field, balance_factors, *, balanced=False, num_threads=None):
    """Normalise every tissue volume.

    Parameters
    ----------
    tissues : list of ndarray
        Raw tissue volumes.
    field : ndarray
        Intensity-domain normalisation field.
    balance_factors : ndarray
        Shape (T,).
    balanced : bool, optional
        Multiply each tissue by its balance factor.
    num_threads : int, optional
        Threads used for the voxel-wise passes.

    Returns
    -------
    normalised : list of ndarray
    """
    return [
        apply_normalisation(
            data,
            field,
            multiplier=float(balance_factors[j]) if balanced else 1.0,
            num_threads=num_threads,
        )
        for j, data in enumerate(tissues)
    ]


def _check_inputs(tissues, mask):
    """Validate shapes; return the tissues as a list and the mask as 3D bool."""
    tissues = [np.asarray(t) for t in tissues]
    if not tissues:
        raise InputShapeError("At least one tissue volume is required.")
    for j, data in enumerate(tissues):
        if data.ndim not in (3, 4):
            raise InputShapeError(
                f"Tissue {j + 1} has {data.ndim} dimensions; expected 3 or 4."
            )
        if data.shape[:3] != tissues[0].shape[:3]:
            raise InputShapeError(
                f"Tissue {j + 1} has spatial shape {data.shape[:3]}, "
                f"expected {tissues[0].shape[:3]}."
            )
        if data.ndim == 4 and data.shape[3] == 0:
            raise InputShapeError(f"Tissue {j + 1} has no volumes.")

    mask = np.asarray(mask)
    if mask.ndim == 4 and mask.shape[3] == 1:
        mask = mask[..., 0]
    if mask.shape != tissues[0].shape[:3]:
        raise InputShapeError(
            f"Mask shape {mask.shape} does not match tissue shape "
            f"{tissues[0].shape[:3]}."
        )
    return tissues, mask.astype(bool)


def _first_volume(data):
    return data if data.ndim == 3 else data[..., 0]


class NormalisationState(enum.Enum):
    BALANCING_AND_REJECTING = "balancing_and_rejecting"
    FIELD_FITTING = "field_fitting"
    DONE = "done"


class MTNormalise:
    """Iterative estimation of tissue balance factors and normalisation field.

    The estimation alternates between two states. In
    ``BALANCING_AND_REJECTING`` the balance factors are re-estimated and
    outliers rejected until the mask no longer changes or
    ``max_balance_iter`` passes were made. In ``FIELD_FITTING`` the
    log-domain field is refitted on the current mask. After ``max_iter``
    field fits the state becomes ``DONE``, whether or not the last balancing
    pass reached a stable mask.

    Parameters
    ----------
    config : NormalisationConfig, optional
        Run settings. Defaults to ``NormalisationConfig()``.
    """

    def __init__(self, config=None):
        self.config = config if config is not None else NormalisationConfig()
        self.state = None

    def initialize(self, tissues, mask, *, affine=None):
        """Validate the inputs and set up the state before the first pass.

        Parameters
        ----------
        tissues : list of ndarray
            Tissue volumes, each (X, Y, Z) or (X, Y, Z, V). Only the first
            volume of each tissue drives the estimation.
        mask : ndarray
            3D mask of the voxels to estimate the normalisation from.
        affine : ndarray, optional
            4x4 voxel-to-world affine positioning the polynomial basis.
        """
        cfg = self.config
        tissues, mask = _check_inputs(tissues, mask)
        first = np.stack([_first_volume(t) for t in tissues], axis=-1).astype(
            np.float64
        )

        summed = parallel_for_each(
            lambda _, f: f.sum(axis=-1),
            first,
            out=np.empty(mask.shape, dtype=np.float64),
            num_threads=cfg.num_threads,
        )
        self.initial_mask = refine_mask(mask, summed, num_threads=cfg.num_threads)
        n_voxels = parallel_reduce(
            np.count_nonzero, self.initial_mask, num_threads=cfg.num_threads
        )
        if not n_voxels:
            raise DegenerateMaskError("Mask contains no valid voxels.")
        logger.info(f"Number of valid voxels in the mask: {n_voxels}")

        self.tissues = tissues
        self.affine = affine
        self.combined = np.clip(first, 0, None)
        self.balance_factors = np.ones(len(tissues), dtype=np.float64)
        self.weights = np.zeros(n_basis_functions(cfg.order), dtype=np.float64)
        self.field_log = np.zeros(mask.shape, dtype=np.float64)
        self.field = np.ones(mask.shape, dtype=np.float64)
        self.balance_iterations = []
        self.converged = []
        self.n_iter = 0

        self.mask = reject_outliers(
            initial_mask=self.initial_mask,
            combined=self.combined,
            field=self.field,
            balance_factors=self.balance_factors,
            outlier_range=COARSE_OUTLIER_RANGE,
            num_threads=cfg.num_threads,
        )
        self.previous_mask = self.mask.copy()
        self.state = NormalisationState.BALANCING_AND_REJECTING

    def _balance_and_reject(self):
        cfg = self.config
        self.n_iter += 1
        logger.info(f"Iteration: {self.n_iter}")

        converged = False
        balance_iter = 0
        while not converged and balance_iter < cfg.max_balance_iter:
            balance_iter += 1
            logger.debug(
                f"Balance and outlier rejection iteration {balance_iter} starts."
            )
            self.balance_factors = estimate_balance_factors(
                mask=self.mask, combined=self.combined, field=self.field
            )
            logger.info(f"Balance factors ({balance_iter}): {self.balance_factors}")

            self.mask = reject_outliers(
                initial_mask=self.initial_mask,
                combined=self.combined,
                field=self.field,
                balance_factors=self.balance_factors,
                outlier_range=FINE_OUTLIER_RANGE,
                num_threads=cfg.num_threads,
            )
            converged = np.array_equal(self.mask, self.previous_mask)
            self.previous_mask = self.mask.copy()

        self.balance_iterations.append(balance_iter)
        self.converged.append(converged)
        if not converged:
            logger.debug(
                f"Outlier mask did not stabilise within {balance_iter} iterations."
            )
        return NormalisationState.FIELD_FITTING

    def _fit_field(self):
        cfg = self.config
        self.weights, self.field_log, self.field = fit_normalisation_field(
            mask=self.mask,
            combined=self.combined,
            balance_factors=self.balance_factors,
            order=cfg.order,
            affine=self.affine,
            reference=cfg.reference,
            num_threads=cfg.num_threads,
        )
        if self.n_iter >= cfg.max_iter:
            return NormalisationState.DONE
        return NormalisationState.BALANCING_AND_REJECTING

    def step(self):
        """Run the work of the current state and move to the next one.

        Returns
        -------
        state : NormalisationState
            The new state.
        """
        if self.state is NormalisationState.BALANCING_AND_REJECTING:
            self.state = self._balance_and_reject()
        elif self.state is NormalisationState.FIELD_FITTING:
            self.state = self._fit_field()
        elif self.state is NormalisationState.DONE:
            raise RuntimeError("Normalisation already finished.")
        else:
            raise RuntimeError("initialize() must be called before step().")
        return self.state

    def result(self):
        """Compose the normalised outputs from the current estimates.

        Returns
        -------
        result : NormalisationResult
        """
        cfg = self.config
        normalised = compose_outputs(
            self.tissues,
            self.field,
            self.balance_factors,
            balanced=cfg.balanced,
            num_threads=cfg.num_threads,
        )
        return NormalisationResult(
            normalised=normalised,
            balance_factors=self.balance_factors.copy(),
            field=self.field,
            field_log=self.field_log,
            mask=self.mask,
            weights=self.weights,
            lognorm_scale=lognorm_scale(
                self.field_log, self.mask, num_threads=cfg.num_threads
            ),
            balance_iterations=list(self.balance_iterations),
            converged=list(self.converged),
        )

    def fit(self, tissues, mask, *, affine=None):
        """Run the full normalisation.

        Parameters
        ----------
        tissues : list of ndarray
            Tissue volumes, each (X, Y, Z) or (X, Y, Z, V).
        mask : ndarray
            3D mask of the voxels to estimate the normalisation from.
        affine : ndarray, optional
            4x4 voxel-to-world affine positioning the polynomial basis.

        Returns
        -------
        result : NormalisationResult
        """
        self.initialize(tissues, mask, affine=affine)
        while self.state is not NormalisationState.DONE:
            self.step()
        result = self.result()
        logger.info(
            f"Final balance factors: {result.balance_factors}, "
            f"lognorm_scale: {result.lognorm_scale:.6g}"
        )
        return result


def mtnormalise(
    tissues,
    mask,
    *,
    affine=None,
    order=DEFAULT_ORDER,
    niter=DEFAULT_MAX_ITER,
    reference=DEFAULT_REFERENCE,
    balanced=False,
    num_threads=None,
    return_result=False,
):
    """Multi-tissue informed log-domain intensity normalisation.

    Parameters
    ----------
    tissues : list of ndarray
        Co-registered tissue compartments, each (X, Y, Z) or (X, Y, Z, V),
        e.g. WM FOD, GM and CSF from multi-tissue CSD.
    mask : ndarray
        3D mask, optimally a brain mask.
    affine : ndarray, optional
        4x4 voxel-to-world affine of the mask.
    order : int, optional
        Maximum order of the log-domain polynomial field (0 to 3).
    niter : int, optional
        Number of field refinement iterations.
    reference : float, optional
        Value the summed tissue compartments are normalised to.
    balanced : bool, optional
        Incorporate the tissue balance factors into the outputs.
    num_threads : int, optional
        Threads used by the voxel-wise passes. None uses all cores.
    return_result : bool, optional
        If True, return the full :class:`NormalisationResult`.

    Returns
    -------
    normalised : list of ndarray
        Normalised tissue volumes (only if ``return_result`` is False).
    result : NormalisationResult
        Only if ``return_result`` is True.
    """
    config = NormalisationConfig(
        order=order,
        max_iter=niter,
        reference=reference,
        balanced=balanced,
        num_threads=num_threads,
    )
    result = MTNormalise(config).fit(tissues, mask, affine=affine)
    if return_result:
        return result
    return result.normalised
