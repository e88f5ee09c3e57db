"""
Export to the inputs of a downstream linear-model testing package.
"""

import numpy as np
import pandas as pd

from .dispersion import as_components, calc_row_dispersion, row_degrees_of_freedom
from .formula import resolve_design
from .limma_port import squeeze_var
from .weitrix import as_weitrix, observed_x


def weitrix_elist(weitrix, design=None, squeeze=False, executor=None):
    """Expression-list style export of a weitrix.

    Measurements and weights are passed through unchanged, so a
    downstream package fitting weighted linear models sees exactly the
    calibrated weights.

    Parameters
    ----------
    weitrix : Weitrix
    design : str, DataFrame or ndarray, optional
        Design to include, resolved against the column covariates.
    squeeze : bool
        Also estimate a prior for the row dispersions by empirical Bayes
        moderation, giving ``df_prior`` and ``var_prior``. Uses ``design``,
        or an intercept if none is given.
    executor : callable, optional

    Returns
    -------
    dict
        ``E`` (DataFrame of measurements), ``weights`` (DataFrame),
        ``genes`` (row covariates), ``targets`` (column covariates), and
        ``design``, ``df_prior``, ``var_prior`` where requested.

    Raises
    ------
    ValueError
        If any element with positive weight has a non-finite measurement.
    """
    weitrix = as_weitrix(weitrix)
    x, w = weitrix['x'], weitrix['weights']
    bad = (w > 0) & ~np.isfinite(x)
    if np.any(bad):
        raise ValueError(
            f"{int(np.sum(bad))} elements with positive weight have non-finite "
            f"measurements")

    rows, cols = weitrix.row_names, weitrix.col_names
    out = {
        'E': pd.DataFrame(x.copy(), index=rows, columns=cols),
        'weights': pd.DataFrame(w.copy(), index=rows, columns=cols),
        'genes': weitrix['rows'].copy(),
        'targets': weitrix['cols'].copy(),
    }

    if design is not None:
        design_mat, names = resolve_design(design, weitrix)
        out['design'] = pd.DataFrame(design_mat, index=cols, columns=names)

    if squeeze:
        comp = as_components("~1" if design is None else design, weitrix,
                             executor=executor)
        disp = calc_row_dispersion(observed_x(weitrix), w, comp['row'], comp['col'],
                                   executor=executor)
        df = row_degrees_of_freedom(weitrix, comp)
        sv = squeeze_var(disp, df)
        out['df_prior'] = sv['df_prior']
        out['var_prior'] = sv['var_prior']

    return out
