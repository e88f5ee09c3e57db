"""
Row dispersions and row-wise weight calibration.

The dispersion of a row is its weighted residual variance relative to a
fitted decomposition: for each observation, dispersion divided by weight
gives the observation's variance.
"""

import numpy as np
import warnings
from numba import njit

from .classes import Components
from .components import weitrix_components
from .parallel import run_by_rows
from .weitrix import as_weitrix, observed_x


@njit(cache=True)
def _row_dispersion_kernel(x, w, row, col, out):
    """Weighted residual variance of each row over its observed cells."""
    n, m = x.shape
    q = col.shape[1]
    for i in range(n):
        count = 0
        total = 0.0
        for j in range(m):
            wij = w[i, j]
            if wij > 0:
                count += 1
                pred = 0.0
                for c in range(q):
                    pred += row[i, c] * col[j, c]
                e = x[i, j] - pred
                total += wij * e * e
        df = count - q
        if df > 0:
            out[i] = total / df
        else:
            out[i] = np.nan


def _row_dispersion_block(x, w, row, col):
    out = np.empty(x.shape[0])
    _row_dispersion_kernel(
        np.ascontiguousarray(x, dtype=np.float64),
        np.ascontiguousarray(w, dtype=np.float64),
        np.ascontiguousarray(row, dtype=np.float64),
        np.ascontiguousarray(col, dtype=np.float64),
        out)
    return out


def calc_row_dispersion(x, w, row, col, executor=None):
    """Row dispersions from matrices, partitioned over blocks of rows.

    Parameters
    ----------
    x : ndarray (n, m)
        Measurements, zero where weight is zero.
    w : ndarray (n, m)
        Weights.
    row : ndarray (n, q)
    col : ndarray (m, q)
    executor : callable, optional
        Parallel executor, see ``weitrix.parallel``.

    Returns
    -------
    ndarray (n,), NaN where a row has no residual degrees of freedom.
    """
    return run_by_rows(_row_dispersion_block, (x, w, row), shared=(col,),
                       executor=executor)


def as_components(design, weitrix, executor=None):
    """Use an existing Components fit, or fit the design with no components."""
    if isinstance(design, Components):
        if design['row'].shape[0] != weitrix.nrow or design['col'].shape[0] != weitrix.ncol:
            raise ValueError("Components do not match the weitrix dimensions")
        return design
    return weitrix_components(weitrix, p=0, design=design, executor=executor,
                              verbose=False)


def row_degrees_of_freedom(weitrix, comp):
    """Observed cells in each row minus the number of fitted coefficients."""
    return np.sum(weitrix['weights'] > 0, axis=1) - comp['col'].shape[1]


def weitrix_dispersions(weitrix, design="~1", executor=None):
    """Calculate row dispersions.

    Parameters
    ----------
    weitrix : Weitrix
    design : str, ndarray or Components
        A formula over the column covariates or a design matrix, fitted to
        each row, or an existing Components fit whose ``row`` is used.
    executor : callable, optional
        Parallel executor.

    Returns
    -------
    ndarray
        One dispersion per row, NaN where unavailable.

    Examples
    --------
    >>> comp = weitrix_components(wei, p=1)
    >>> weitrix_dispersions(wei, comp)
    """
    weitrix = as_weitrix(weitrix)
    comp = as_components(design, weitrix, executor=executor)
    return calc_row_dispersion(
        observed_x(weitrix), weitrix['weights'], comp['row'], comp['col'],
        executor=executor)


def weitrix_calibrate(weitrix, dispersions):
    """Adjust weights row-wise based on given row dispersions.

    Weights in each row are divided by the row's dispersion. Rows whose
    dispersion is unavailable (NaN) or zero get weight zero.

    Parameters
    ----------
    weitrix : Weitrix
    dispersions : array-like
        A dispersion for each row.

    Returns
    -------
    Weitrix
        New object; measurements, names and covariates are shared with the
        input.
    """
    weitrix = as_weitrix(weitrix)
    dispersions = np.asarray(dispersions, dtype=np.float64)
    if dispersions.shape != (weitrix.nrow,):
        raise ValueError("dispersions must have one entry per row")
    if np.any(dispersions < 0):
        raise ValueError("Negative dispersions not allowed")

    with np.errstate(divide='ignore'):
        mul = 1.0 / dispersions
    bad = ~np.isfinite(mul)
    n_zero = int(np.sum(dispersions == 0))
    if n_zero > 0:
        warnings.warn(
            f"{n_zero} rows have zero dispersion and were given weight zero",
            stacklevel=2)
    mul[bad] = 0.0

    out = weitrix.with_weights(weitrix['weights'] * mul[:, None])
    out['metadata']['calibrated'] = True
    return out
