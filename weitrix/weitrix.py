"""
Weitrix construction, validation, and accessors.
"""

import numpy as np
import pandas as pd
import warnings
from .classes import Weitrix


def _side_table(table, n, names, what):
    """Build a row or column covariate table indexed by names."""
    if table is None:
        return pd.DataFrame(index=pd.Index(names))
    table = pd.DataFrame(table).copy()
    if len(table) != n:
        raise ValueError(f"Number of rows in '{what}' must equal {n}")
    table.index = pd.Index(names)
    return table


def _names_from(obj, axis, n, default_prefix):
    if isinstance(obj, pd.DataFrame):
        idx = obj.index if axis == 0 else obj.columns
        return [str(v) for v in idx]
    if default_prefix == "row":
        return [str(i + 1) for i in range(n)]
    return [f"Col{i + 1}" for i in range(n)]


def make_weitrix(x, weights=None, rows=None, cols=None, row_names=None,
                 col_names=None, trend_formula=None):
    """Construct a Weitrix from a measurement matrix and a weight matrix.

    Parameters
    ----------
    x : array-like or DataFrame
        Measurements (rows x columns). Row and column names are taken from
        a DataFrame's index and columns.
    weights : array-like or DataFrame, optional
        Weights of the same shape as ``x``. Defaults to 1 where ``x`` is
        finite and 0 elsewhere.
    rows : DataFrame, optional
        Row covariates, one row per row of ``x``.
    cols : DataFrame, optional
        Column covariates, one row per column of ``x``.
    row_names, col_names : list, optional
        Override names. Must be unique.
    trend_formula : str, optional
        Default formula for ``weitrix_calibrate_trend``.

    Returns
    -------
    Weitrix
    """
    if row_names is None:
        row_names = _names_from(x, 0, np.shape(x)[0], "row")
    if col_names is None:
        col_names = _names_from(x, 1, np.shape(x)[1] if np.ndim(x) == 2 else 1, "col")

    x = np.array(x, dtype=np.float64)
    if x.ndim == 1:
        x = x.reshape(-1, 1)
    if x.ndim != 2:
        raise ValueError("'x' must be a matrix")
    nrow, ncol = x.shape

    if weights is None:
        weights = np.isfinite(x).astype(np.float64)
    else:
        weights = np.array(weights, dtype=np.float64)
        if weights.ndim == 1:
            weights = weights.reshape(-1, 1)
    if weights.shape != x.shape:
        raise ValueError(
            f"'weights' has shape {weights.shape} but 'x' has shape {x.shape}")
    if not np.all(np.isfinite(weights)):
        raise ValueError("Non-finite weights not allowed")
    if np.any(weights < 0):
        raise ValueError("Negative weights not allowed")

    row_names = [str(v) for v in row_names]
    col_names = [str(v) for v in col_names]
    if len(row_names) != nrow:
        raise ValueError("Length of 'row_names' must equal number of rows in 'x'")
    if len(col_names) != ncol:
        raise ValueError("Length of 'col_names' must equal number of columns in 'x'")
    if len(set(row_names)) != nrow:
        raise ValueError("Row names must be unique")
    if len(set(col_names)) != ncol:
        raise ValueError("Column names must be unique")

    bad = (weights > 0) & ~np.isfinite(x)
    if np.any(bad):
        warnings.warn(
            f"{int(np.sum(bad))} non-finite measurements with positive weight "
            f"were given weight zero.",
            stacklevel=2,
        )
        weights = np.where(bad, 0.0, weights)

    metadata = {'calibrated': False}
    if trend_formula is not None:
        metadata['trend_formula'] = trend_formula

    w = Weitrix()
    w['x'] = x
    w['weights'] = weights
    w['rows'] = _side_table(rows, nrow, row_names, "rows")
    w['cols'] = _side_table(cols, ncol, col_names, "cols")
    w['metadata'] = metadata
    return w


def valid_weitrix(w):
    """Check the invariants of a Weitrix, raising ValueError if violated."""
    if not isinstance(w, Weitrix):
        raise TypeError("Not a Weitrix")
    for key in ('x', 'weights', 'rows', 'cols', 'metadata'):
        if key not in w:
            raise ValueError(f"Weitrix has no '{key}'")
    if w['x'].shape != w['weights'].shape:
        raise ValueError("'x' and 'weights' have different shapes")
    if not np.all(np.isfinite(w['weights'])) or np.any(w['weights'] < 0):
        raise ValueError("weights must be finite and non-negative")
    if len(w['rows']) != w.nrow or len(w['cols']) != w.ncol:
        raise ValueError("Side tables do not match the matrix dimensions")
    if not w['rows'].index.is_unique or not w['cols'].index.is_unique:
        raise ValueError("Row and column names must be unique")
    return w


def as_weitrix(obj, weights=None):
    """Convert an object to a Weitrix.

    A Weitrix is validated and returned as is. Anything else is treated as
    a measurement matrix and passed to ``make_weitrix``.
    """
    if isinstance(obj, Weitrix):
        if weights is not None:
            return valid_weitrix(obj).with_weights(weights)
        return valid_weitrix(obj)
    return make_weitrix(obj, weights=weights)


def weitrix_x(w):
    """Extract the measurement matrix."""
    return np.asarray(w['x'])


def weitrix_weights(w):
    """Extract the weight matrix."""
    return np.asarray(w['weights'])


def observed_x(w):
    """Measurements with every zero-weight cell set to 0.

    Algorithms work on this copy so that values in missing cells, NaN or
    otherwise, can never leak into a result.
    """
    return np.where(w['weights'] > 0, w['x'], 0.0)
