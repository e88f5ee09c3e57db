"""
Core data classes for weitrix.

Weitrix (a measurement matrix paired with a weight matrix), Components
(a fitted row/column decomposition) and ComponentsSeq, as dict subclasses
with attribute access, subsetting, and display.
"""

import numpy as np
import pandas as pd


class ConvergenceWarning(UserWarning):
    """An iterative fit stopped before reaching its tolerance."""


class TrendFitError(ValueError):
    """A dispersion trend could not be fitted."""


class _WeitrixBase(dict):
    """Base class providing dict-like access and display."""

    def __getattr__(self, name):
        try:
            return self[name]
        except KeyError:
            raise AttributeError(f"'{type(self).__name__}' has no attribute '{name}'")

    def __setattr__(self, name, value):
        self[name] = value

    def __delattr__(self, name):
        try:
            del self[name]
        except KeyError:
            raise AttributeError(f"'{type(self).__name__}' has no attribute '{name}'")

    def __repr__(self):
        cls = type(self).__name__
        components = list(self.keys())
        s = self.shape
        if s is not None:
            return f"{cls} with {s[0]} rows and {s[1]} columns\nComponents: {', '.join(components)}"
        return f"{cls}\nComponents: {', '.join(components)}"

    @property
    def shape(self):
        return None

    def _replace(self, **changes):
        """Shallow copy with some entries replaced.

        Arrays and frames that are not replaced are shared with the
        original, which is never modified afterwards.
        """
        out = type(self)()
        dict.update(out, self)
        dict.update(out, changes)
        return out


def _resolve_index(idx, names):
    """Resolve index to integer array. Supports bool, int, str, slice."""
    if idx is None:
        return None
    if isinstance(idx, slice):
        return np.arange(len(names))[idx]
    idx = np.atleast_1d(idx)
    if idx.dtype == bool:
        if len(idx) != len(names):
            raise IndexError("Boolean index has wrong length")
        return np.where(idx)[0]
    if idx.dtype.kind in ('U', 'S', 'O'):
        lookup = pd.Index(names)
        pos = lookup.get_indexer(idx)
        if np.any(pos < 0):
            missing = idx[pos < 0][0]
            raise KeyError(f"Name '{missing}' not found")
        return pos
    return idx.astype(int)


class Weitrix(_WeitrixBase):
    """A matrix of measurements with a matching matrix of weights.

    Attributes
    ----------
    x : ndarray
        Measurements (rows x columns). Values where the weight is zero
        are ignored, and may be NaN.
    weights : ndarray
        Non-negative weights, same shape as ``x``. A weight of zero marks
        a missing measurement.
    rows : DataFrame
        Row covariates, indexed by row name.
    cols : DataFrame
        Column covariates, indexed by column name.
    metadata : dict
        Calibration artifacts and defaults such as ``trend_formula``.
    """

    @property
    def shape(self):
        if 'x' in self:
            return self['x'].shape
        return None

    @property
    def nrow(self):
        if 'x' in self:
            return self['x'].shape[0]
        return 0

    @property
    def ncol(self):
        if 'x' in self:
            return self['x'].shape[1]
        return 0

    def __len__(self):
        return self.nrow

    @property
    def row_names(self):
        return list(self['rows'].index)

    @property
    def col_names(self):
        return list(self['cols'].index)

    def __getitem__(self, key):
        if isinstance(key, str):
            return super().__getitem__(key)
        if isinstance(key, tuple) and len(key) == 2:
            i, j = key
        else:
            raise IndexError("Two subscripts required")

        i_idx = _resolve_index(i, self.row_names)
        j_idx = _resolve_index(j, self.col_names)
        if i_idx is None:
            i_idx = np.arange(self.nrow)
        if j_idx is None:
            j_idx = np.arange(self.ncol)

        ix = np.ix_(i_idx, j_idx)
        return self._replace(
            x=self['x'][ix],
            weights=self['weights'][ix],
            rows=self['rows'].iloc[i_idx].copy(),
            cols=self['cols'].iloc[j_idx].copy(),
            metadata=dict(self['metadata']),
        )

    def with_weights(self, weights):
        """New Weitrix with the weights replaced."""
        weights = np.asarray(weights, dtype=np.float64)
        if weights.shape != self.shape:
            raise ValueError(
                f"weights have shape {weights.shape}, expected {self.shape}")
        if not np.all(np.isfinite(weights)) or np.any(weights < 0):
            raise ValueError("weights must be finite and non-negative")
        return self._replace(weights=weights, metadata=dict(self['metadata']))

    def with_rows(self, rows):
        """New Weitrix with the row covariate table replaced."""
        rows = pd.DataFrame(rows)
        if len(rows) != self.nrow:
            raise ValueError("rows must have one entry per row")
        rows.index = self['rows'].index
        return self._replace(rows=rows)

    def with_metadata(self, **items):
        """New Weitrix with metadata entries added or replaced."""
        metadata = dict(self['metadata'])
        metadata.update(items)
        return self._replace(metadata=metadata)

    def head(self, n=5):
        """Show first n rows of the measurements."""
        return self.to_dataframe().head(n)

    def to_dataframe(self, masked=True):
        """Measurements as a DataFrame, NaN where the weight is zero."""
        x = self['x']
        if masked:
            x = np.where(self['weights'] > 0, x, np.nan)
        return pd.DataFrame(x, index=self.row_names, columns=self.col_names)


class Components(_WeitrixBase):
    """A row/column decomposition of a Weitrix.

    Attributes
    ----------
    row : ndarray
        Row coefficients/loadings (rows x k+p).
    col : ndarray
        Column design and scores (columns x k+p). The first k columns are
        the design matrix.
    design : ndarray
        Design matrix (columns x k).
    ind_design, ind_components : ndarray
        Positions of the design and discovered components in ``row``/``col``.
    rss : float
        Weighted residual sum of squares.
    converged : bool
    iterations : int
    """

    @property
    def shape(self):
        if 'row' in self and 'col' in self:
            return (self['row'].shape[0], self['col'].shape[0])
        return None

    @property
    def p(self):
        return len(self['ind_components'])

    @property
    def k(self):
        return len(self['ind_design'])

    def fitted(self):
        """Reconstructed matrix ``row @ col.T``."""
        return self['row'] @ self['col'].T

    def row_frame(self):
        names = list(self['design_names']) + list(self['component_names'])
        return pd.DataFrame(self['row'], index=self.get('row_names'), columns=names)

    def col_frame(self):
        names = list(self['design_names']) + list(self['component_names'])
        return pd.DataFrame(self['col'], index=self.get('col_names'), columns=names)


class ComponentsSeq(_WeitrixBase):
    """Components fitted for p = 0, 1, ..., P.

    Attributes
    ----------
    fits : list of Components
    rss : ndarray
        Weighted residual sum of squares for each p.
    rss_null : float
        Weighted sum of squares of the measurements.
    r2 : ndarray
        Weighted R-squared for each p, relative to the p = 0 fit.
    """

    def __len__(self):
        return len(self['fits'])

    def __getitem__(self, key):
        if isinstance(key, str):
            return super().__getitem__(key)
        return self['fits'][key]

    def __iter__(self):
        return iter(self['fits'])

    @property
    def shape(self):
        fits = self.get('fits')
        if fits:
            return fits[0].shape
        return None


def cbind_weitrix(*objs):
    """Combine Weitrix objects by columns."""
    if len(objs) == 0:
        raise ValueError("Nothing to combine")
    first = objs[0]
    for o in objs[1:]:
        if o.row_names != first.row_names:
            raise ValueError("Row names must match to combine by columns")
    cols = pd.concat([o['cols'] for o in objs])
    if not cols.index.is_unique:
        raise ValueError("Column names are not unique after combining")
    return first._replace(
        x=np.hstack([o['x'] for o in objs]),
        weights=np.hstack([o['weights'] for o in objs]),
        rows=first['rows'].copy(),
        cols=cols,
        metadata=dict(first['metadata']),
    )


def rbind_weitrix(*objs):
    """Combine Weitrix objects by rows."""
    if len(objs) == 0:
        raise ValueError("Nothing to combine")
    first = objs[0]
    for o in objs[1:]:
        if o.col_names != first.col_names:
            raise ValueError("Column names must match to combine by rows")
    rows = pd.concat([o['rows'] for o in objs])
    if not rows.index.is_unique:
        raise ValueError("Row names are not unique after combining")
    return first._replace(
        x=np.vstack([o['x'] for o in objs]),
        weights=np.vstack([o['weights'] for o in objs]),
        rows=rows,
        cols=first['cols'].copy(),
        metadata=dict(first["metadata"]),
    )
