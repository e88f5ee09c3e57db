"""
Weight calibration by fitting trends to dispersions or squared residuals.

Two approaches:

- ``weitrix_calibrate_trend`` fits a trend to row dispersions as a function
  of row covariates and divides each row's weights by the fitted trend.
- ``weitrix_calibrate_all`` fits a trend to the squared residual of every
  observed element as a function of row covariates, column covariates,
  row and column identity and the existing weight, and sets each weight to
  the inverse of the fitted value.

Both fit a GLM with log link and variance proportional to the squared mean
(see ``weitrix.glm``). Measurements are never modified.
"""

import numpy as np
import pandas as pd
import patsy

from .classes import TrendFitError, _WeitrixBase
from .dispersion import as_components, calc_row_dispersion, row_degrees_of_freedom, \
    weitrix_calibrate
from .formula import SPECIAL_VARIABLES, TrendFormula
from .glm import glm_log_quasi
from .weitrix import as_weitrix, observed_x

GLM_TOL = 1e-8
GLM_MAXIT = 100


class TrendFit(_WeitrixBase):
    """A fitted trend model.

    Attributes
    ----------
    formula : TrendFormula
        The resolved formula, holding the transforms fitted to the data
        (spline knots, polynomial bases) so predictions reuse them.
    coefficients : Series
    deviance, dispersion : float
    df_residual : int
    iter : int
    converged : bool
    n_obs : int
    """

    def predict(self, data):
        """Predicted mean (response scale) for new data."""
        try:
            X, off = self['formula'].rebuild(data)
        except patsy.PatsyError as e:
            raise TrendFitError(f"Could not evaluate trend formula: {e}") from e
        eta = X @ self['coefficients'].to_numpy() + off
        return np.exp(eta)

    def __repr__(self):
        lines = [f"TrendFit {self['formula'].formula}"]
        for name, value in self['coefficients'].items():
            lines.append(f"  {name:<30} {value: .6g}")
        lines.append(f"  dispersion {self['dispersion']:.6g} on {self['df_residual']} df"
                     f"{'' if self['converged'] else ' (not converged)'}")
        return "\n".join(lines)


def _fit_trend(tf, data, y, prior_weights, mustart, tol=GLM_TOL, maxit=GLM_MAXIT):
    """Build the model matrix, fit the GLM and wrap the result."""
    try:
        X, off = tf.build(data)
        fit = glm_log_quasi(y, X, prior_weights=prior_weights, offset=off,
                            mustart=mustart, tol=tol, maxit=maxit)
    except (patsy.PatsyError, ValueError) as e:
        raise TrendFitError(f"Trend fit failed: {e}") from e

    result = TrendFit()
    result['formula'] = tf
    result['coefficients'] = pd.Series(fit['coefficients'], index=tf.column_names,
                                       dtype=np.float64)
    result['deviance'] = fit['deviance']
    result['dispersion'] = fit['dispersion']
    result['df_residual'] = fit['df.residual']
    result['iter'] = fit['iter']
    result['converged'] = fit['converged']
    result['n_obs'] = len(y)
    return result, fit['fitted.values']


def weitrix_calibrate_trend(weitrix, design="~1", trend_formula=None, executor=None,
                            glm_tol=GLM_TOL, glm_maxit=GLM_MAXIT):
    """Adjust weights row-wise by fitting a trend to estimated dispersions.

    Dispersions are estimated with ``weitrix_dispersions``. A trend is
    fitted to them with a gamma-variance GLM with log link, using degrees of
    freedom as prior weights, and the weights of each row are divided by
    the row's fitted trend value. Rows without an available dispersion (no
    residual degrees of freedom) get weight zero.

    Parameters
    ----------
    weitrix : Weitrix
    design : str, ndarray or Components
        Formula over column covariates, design matrix, or an existing
        Components fit used to compute residuals.
    trend_formula : str, optional
        Formula over row covariates (and ``degrees_of_freedom``) predicting
        dispersion, e.g. ``'~log(total_weight)'`` or
        ``'~bs(log(total_weight), df=3)'``. Defaults to
        ``metadata['trend_formula']``.
    executor : callable, optional
        Parallel executor.
    glm_tol, glm_maxit : float, int
        Convergence tolerance and iteration limit of the trend GLM.

    Returns
    -------
    Weitrix
        New object. Its ``rows`` gain columns ``degrees_of_freedom``,
        ``dispersion_before``, ``dispersion_trend`` and
        ``dispersion_after``; ``metadata['trend_fit']`` holds the TrendFit.

    Raises
    ------
    TrendFitError
        If no row has an available dispersion, or the trend cannot be
        fitted.
    """
    weitrix = as_weitrix(weitrix)
    if trend_formula is None:
        trend_formula = weitrix['metadata'].get('trend_formula')
    if trend_formula is None:
        raise ValueError("No trend_formula given and none set in metadata")

    rows = weitrix['rows']
    available = list(rows.columns) + ['degrees_of_freedom']
    tf = TrendFormula(trend_formula, available=available, allow_offset=True)

    comp = as_components(design, weitrix, executor=executor)
    deg_free = row_degrees_of_freedom(weitrix, comp)
    dispersion = calc_row_dispersion(observed_x(weitrix), weitrix['weights'],
                                     comp['row'], comp['col'], executor=executor)

    data = rows.copy()
    data['degrees_of_freedom'] = deg_free

    usable = np.isfinite(dispersion) & (deg_free > 0)
    if not np.any(usable):
        raise TrendFitError("No rows have an available dispersion to fit a trend to")
    # Small starting values cause numerical trouble, so start from the mean
    mustart = float(np.mean(dispersion[usable]))
    if not mustart > 0:
        raise TrendFitError("All dispersions are zero")

    fit, _ = _fit_trend(tf, data.loc[usable], dispersion[usable],
                        deg_free[usable].astype(np.float64), mustart,
                        tol=glm_tol, maxit=glm_maxit)
    trend = fit.predict(data)

    new_rows = rows.copy()
    new_rows['degrees_of_freedom'] = deg_free
    new_rows['dispersion_before'] = dispersion
    new_rows['dispersion_trend'] = trend
    new_rows['dispersion_after'] = dispersion / trend

    # Rows left out of the fit are predicted for display only
    out = weitrix_calibrate(weitrix, np.where(usable, trend, np.nan))
    return out.with_rows(new_rows).with_metadata(trend_fit=fit)


def _long_frame(weitrix, comp, variables):
    """One row per matrix element, in column-major order.

    Includes the requested row and column covariates, the special
    variables ``row`` and ``col`` if requested, and always ``weight`` and
    ``mu`` (the fitted value).
    """
    nrow, ncol = weitrix.shape
    rows, cols = weitrix['rows'], weitrix['cols']
    row_idx = np.tile(np.arange(nrow), ncol)
    col_idx = np.repeat(np.arange(ncol), nrow)

    data = {}
    for name in sorted(variables):
        if name in SPECIAL_VARIABLES:
            continue
        if name in rows.columns and name in cols.columns:
            raise ValueError(f"'{name}' is both a row and a column covariate")
        if name in rows.columns:
            data[name] = rows[name].to_numpy()[row_idx]
        elif name in cols.columns:
            data[name] = cols[name].to_numpy()[col_idx]
    if 'row' in variables:
        data['row'] = pd.Categorical.from_codes(row_idx, categories=weitrix.row_names)
    if 'col' in variables:
        data['col'] = pd.Categorical.from_codes(col_idx, categories=weitrix.col_names)
    data['weight'] = weitrix['weights'].ravel(order='F')
    data['mu'] = comp.fitted().ravel(order='F')
    return pd.DataFrame(data)


def weitrix_calibrate_all(weitrix, design="~1", trend_formula="~log(weight)",
                          keep_fit=False, executor=None, glm_tol=GLM_TOL,
                          glm_maxit=GLM_MAXIT):
    """Adjust weights element-wise by fitting a trend to squared residuals.

    Residuals are found relative to a fitted model. A trend model is fitted
    to the squared residuals of all observed elements using a gamma-variance
    GLM with log link. New weights are the inverse of the fitted trend.

    ``trend_formula`` may refer to any row or column covariate, to the
    special factors ``row`` and ``col``, or to ``weight`` for the existing
    weights. Existing weights are only retained if the formula includes
    them. Examples:

    - ``'~1 + offset(-log(weight))'``: a global scaling of the weights.
    - ``'~log(weight)'``: raise weights to a power with an overall scale,
      allowing for variation beyond that the weights describe.
    - ``'~poly(log(weight), 2)'``: quadratic moderation of weights.
    - ``'~col + offset(-log(weight))'``: a scaling factor per column.
    - ``'~col*poly(log(weight), 2)'``: quadratic moderation per column.

    The training frame has one entry per matrix element, so memory use is
    proportional to rows times columns. This is fine for bulk data but not
    for very large single-cell scale matrices. Only covariates the formula
    refers to are included.

    Parameters
    ----------
    weitrix : Weitrix
    design : str, ndarray or Components
    trend_formula : str
    keep_fit : bool
        Keep the TrendFit and the training frame in
        ``metadata['all_fit']`` and ``metadata['all_data']``. This can be
        large.
    executor : callable, optional
    glm_tol, glm_maxit : float, int
        Convergence tolerance and iteration limit of the trend GLM.

    Returns
    -------
    Weitrix
        New object; ``metadata['all_coef']`` holds the trend coefficients.
    """
    weitrix = as_weitrix(weitrix)
    rows, cols = weitrix['rows'], weitrix['cols']
    available = set(rows.columns) | set(cols.columns) | set(SPECIAL_VARIABLES)
    tf = TrendFormula(trend_formula, available=available, allow_offset=True)

    comp = as_components(design, weitrix, executor=executor)
    data = _long_frame(weitrix, comp, tf.referenced)
    x = observed_x(weitrix).ravel(order='F')
    data['.y'] = (x - data['mu'].to_numpy()) ** 2

    # Zero weights are dropped so that e.g. log(weight) is usable
    good = data['weight'].to_numpy() > 0
    if not np.any(good):
        raise TrendFitError("No observed elements to fit a trend to")
    good_data = data.loc[good].reset_index(drop=True)
    y = good_data['.y'].to_numpy()

    mustart = float(np.mean(y))
    if not mustart > 0:
        raise TrendFitError("All residuals are zero")

    fit, pred = _fit_trend(tf, good_data, y, None, mustart, tol=glm_tol,
                           maxit=glm_maxit)

    with np.errstate(divide='ignore'):
        inv = 1.0 / pred
    inv[~np.isfinite(inv) | ~(pred > 0)] = 0.0
    flat = np.zeros(weitrix.nrow * weitrix.ncol)
    flat[good] = inv
    new_weights = flat.reshape(weitrix.shape, order='F')

    out = weitrix.with_weights(new_weights)
    meta = {'all_coef': fit['coefficients'], 'calibrated': True}
    if keep_fit:
        data['new_weight'] = flat
        meta['all_fit'] = fit
        meta['all_data'] = data
    return out.with_metadata(**meta)


def weitrix_calplot_data(weitrix, design="~1", variables=(), executor=None):
    """Weighted squared residuals of every element, for calibration plots.

    ``weight * residual^2`` is the Pearson residual of the gamma GLM used
    by ``weitrix_calibrate_all``, plus one. A well calibrated weitrix has
    these centred on 1, with quartiles near those of a chi-squared
    distribution on one degree of freedom.

    Parameters
    ----------
    weitrix : Weitrix
    design : str, ndarray or Components
    variables : iterable of str
        Row or column covariates to include.

    Returns
    -------
    DataFrame
        One entry per element with ``row``, ``col``, the requested
        variables, ``weight``, ``mu`` and ``weighted_squared_residual``
        (NaN where weight is zero).
    """
    weitrix = as_weitrix(weitrix)
    variables = set(variables)
    available = set(weitrix['rows'].columns) | set(weitrix['cols'].columns) \
        | set(SPECIAL_VARIABLES)
    unknown = sorted(variables - available)
    if unknown:
        raise ValueError(f"Unknown variable(s): {', '.join(unknown)}")

    comp = as_components(design, weitrix, executor=executor)
    data = _long_frame(weitrix, comp, variables | {'row', 'col'})
    x = observed_x(weitrix).ravel(order='F')
    weight = data['weight'].to_numpy()
    data['weighted_squared_residual'] = np.where(
        weight > 0, weight * (x - data['mu'].to_numpy()) ** 2, np.nan)
    return data
