"""
Formula resolution for designs and trend models.

Formulas are R-style strings parsed with patsy. Before anything is
evaluated, every variable a formula refers to is checked against a known
set: the columns of a covariate table plus, for element-wise trend
models, the special variables ``row``, ``col`` and ``weight``. Formulas
may use ``offset(expr)`` terms, which are summed into a fixed offset
rather than given a coefficient.
"""

import ast

import numpy as np
import pandas as pd
import patsy


class Poly:
    """Orthogonal polynomials, as a patsy stateful transform.

    ``poly(x, degree)`` gives columns orthogonal over the data the model is
    fitted to. The recurrence coefficients are remembered so that
    predictions on new data use the same basis.
    """

    def __init__(self):
        self._chunks = []
        self._alpha = None
        self._norm2 = None

    def memorize_chunk(self, x, degree=1):
        self._chunks.append(np.asarray(x, dtype=np.float64).ravel())

    def memorize_finish(self):
        x = np.concatenate(self._chunks)
        x = x[np.isfinite(x)]
        self._chunks = None
        self._x = x

    def _fit(self, degree):
        x = self._x
        if degree < 1:
            raise ValueError("'degree' must be at least 1")
        if degree >= len(np.unique(x)):
            raise ValueError("'degree' must be less than number of unique points")
        alpha = np.zeros(degree)
        norm2 = np.zeros(degree + 2)
        norm2[0] = 1.0
        z_prev = np.zeros_like(x)
        z = np.ones_like(x)
        norm2[1] = np.sum(z * z)
        for i in range(degree):
            alpha[i] = np.sum(x * z * z) / norm2[i + 1]
            z_next = (x - alpha[i]) * z - (norm2[i + 1] / norm2[i]) * z_prev
            z_prev, z = z, z_next
            norm2[i + 2] = np.sum(z * z)
        self._alpha = alpha
        self._norm2 = norm2

    def transform(self, x, degree=1):
        if self._alpha is None or len(self._alpha) != degree:
            self._fit(degree)
        x = np.asarray(x, dtype=np.float64).ravel()
        alpha, norm2 = self._alpha, self._norm2
        out = np.empty((len(x), degree))
        z_prev = np.zeros_like(x)
        z = np.ones_like(x)
        for i in range(degree):
            z_next = (x - alpha[i]) * z - (norm2[i + 1] / norm2[i]) * z_prev
            z_prev, z = z, z_next
            out[:, i] = z / np.sqrt(norm2[i + 2])
        return out


poly = patsy.stateful_transform(Poly)


def offset(x):
    """Marks a term as an offset. Evaluates to its argument."""
    return x


# Functions a formula may call, in addition to patsy's own builtins
FORMULA_FUNCTIONS = {
    'np': np,
    'log': np.log,
    'log2': np.log2,
    'log10': np.log10,
    'log1p': np.log1p,
    'exp': np.exp,
    'sqrt': np.sqrt,
    'poly': poly,
    'offset': offset,
}

_PATSY_BUILTINS = {
    'I', 'Q', 'C', 'center', 'standardize', 'scale', 'bs', 'cr', 'cc', 'te',
    'Treatment', 'Poly', 'Sum', 'Helmert', 'Diff', 'ContrastMatrix',
    'abs', 'min', 'max', 'round', 'pow', 'float', 'int', 'str',
    'True', 'False', 'None',
}

# Special variables available to element-wise trend formulas
SPECIAL_VARIABLES = ('row', 'col', 'weight')

_NO_NA_ACTION = patsy.NAAction(NA_types=[])


def _eval_env():
    return patsy.EvalEnvironment([FORMULA_FUNCTIONS])


def _code_names(code):
    """Variable names referred to by a Python expression."""
    tree = ast.parse(code.strip(), mode='eval')
    names = set()
    for node in ast.walk(tree):
        if isinstance(node, ast.Name):
            names.add(node.id)
    return names - set(FORMULA_FUNCTIONS) - _PATSY_BUILTINS


def _normalize(formula):
    if not isinstance(formula, str):
        raise TypeError("formula must be a string such as '~1' or '~log(total_weight)'")
    formula = formula.strip()
    if not formula.startswith('~'):
        if '~' in formula:
            raise ValueError(
                f"Formula '{formula}' must not have a left hand side")
        formula = '~' + formula
    return formula


def referenced_names(formula):
    """Variable names a formula refers to."""
    desc = patsy.ModelDesc.from_formula(_normalize(formula))
    names = set()
    for term in desc.rhs_termlist:
        for factor in term.factors:
            names |= _code_names(factor.code)
    return names


class TrendFormula:
    """A formula resolved against a fixed set of available variables.

    Parameters
    ----------
    formula : str
        R-style formula with no left hand side, e.g. ``'~log(total_weight)'``,
        ``'~col + offset(-log(weight))'``, ``'~poly(log(weight), 2)'``.
    available : iterable of str, optional
        Variables the formula may use. Unknown references raise ValueError
        here, before any data is touched.
    allow_offset : bool
        Whether ``offset(...)`` terms are permitted.
    """

    def __init__(self, formula, available=None, allow_offset=True):
        self.formula = _normalize(formula)
        desc = patsy.ModelDesc.from_formula(self.formula)
        if desc.lhs_termlist:
            raise ValueError(
                f"Formula '{self.formula}' must not have a left hand side")

        terms = []
        offsets = []
        for term in desc.rhs_termlist:
            if (len(term.factors) == 1
                    and isinstance(term.factors[0], patsy.EvalFactor)
                    and term.factors[0].code.replace(' ', '').startswith('offset(')):
                offsets.append(_offset_argument(term.factors[0].code))
            else:
                terms.append(term)
        if offsets and not allow_offset:
            raise ValueError("offset() terms are not allowed in this formula")

        self.referenced = referenced_names(self.formula)
        if available is not None:
            unknown = sorted(self.referenced - set(available))
            if unknown:
                raise ValueError(
                    f"Formula '{self.formula}' refers to unknown variable(s): "
                    f"{', '.join(unknown)}. Available: {', '.join(sorted(available))}")

        self._desc = patsy.ModelDesc([], terms)
        self._offset_descs = [
            patsy.ModelDesc([], [patsy.Term([patsy.EvalFactor(code)])])
            for code in offsets
        ]
        self.design_info = None
        self._offset_infos = None

    @property
    def has_offset(self):
        return len(self._offset_descs) > 0

    @property
    def column_names(self):
        if self.design_info is None:
            return None
        return list(self.design_info.column_names)

    def build(self, data):
        """Evaluate against ``data``, remembering the fitted transforms.

        Returns
        -------
        (X, offset) : ndarray (n, ncoef), ndarray (n,)
        """
        data = _as_frame(data)
        n = len(data)
        env = _eval_env()
        if len(self._desc.rhs_termlist) == 0:
            X = np.zeros((n, 0))
            self.design_info = patsy.DesignInfo([])
        else:
            dm = patsy.dmatrix(self._desc, data, eval_env=env,
                               NA_action=_NO_NA_ACTION, return_type='matrix')
            self.design_info = dm.design_info
            X = np.asarray(dm, dtype=np.float64)

        off = np.zeros(n)
        self._offset_infos = []
        for od in self._offset_descs:
            om = patsy.dmatrix(od, data, eval_env=env,
                               NA_action=_NO_NA_ACTION, return_type='matrix')
            if om.shape[1] != 1:
                raise ValueError("offset() must evaluate to a single numeric column")
            self._offset_infos.append(om.design_info)
            off = off + np.asarray(om, dtype=np.float64)[:, 0]
        return X, off

    def rebuild(self, data):
        """Evaluate against new data using the transforms from ``build``."""
        if self.design_info is None:
            raise ValueError("build() must be called before rebuild()")
        data = _as_frame(data)
        n = len(data)
        if len(self.design_info.column_names) == 0:
            X = np.zeros((n, 0))
        else:
            (dm,) = patsy.build_design_matrices(
                [self.design_info], data, NA_action=_NO_NA_ACTION,
                return_type='matrix')
            X = np.asarray(dm, dtype=np.float64)
        off = np.zeros(n)
        for info in self._offset_infos:
            (om,) = patsy.build_design_matrices(
                [info], data, NA_action=_NO_NA_ACTION, return_type='matrix')
            off = off + np.asarray(om, dtype=np.float64)[:, 0]
        return X, off

    def __repr__(self):
        return f"TrendFormula('{self.formula}')"


def _offset_argument(code):
    tree = ast.parse(code.strip(), mode='eval')
    call = tree.body
    if not (isinstance(call, ast.Call) and len(call.args) == 1 and not call.keywords):
        raise ValueError(f"offset() takes exactly one argument: {code}")
    return ast.unparse(call.args[0])


def _as_frame(data):
    if isinstance(data, pd.DataFrame):
        return data
    # patsy needs a DataFrame to size formulas with no variables, e.g. '~1'
    return pd.DataFrame(dict(data))


def model_matrix(formula, data=None):
    """Create a design matrix from an R-style formula.

    Parameters
    ----------
    formula : str
        R-style formula, e.g. ``'~ group'``, ``'~ batch + condition'``,
        ``'~ 0 + group'`` (no intercept), ``'~0'`` (empty design).
    data : DataFrame or dict
        Variables used in the formula, one entry per matrix column.

    Returns
    -------
    (ndarray, list of str)
        Design matrix (columns x coefficients) and coefficient names.

    Examples
    --------
    >>> import pandas as pd
    >>> df = pd.DataFrame({'group': ['A','A','B','B']})
    >>> model_matrix('~ group', df)[0]
    array([[1., 0.],
           [1., 0.],
           [1., 1.],
           [1., 1.]])
    """
    if data is None:
        raise ValueError("data must be provided for formula-based design")
    if isinstance(data, dict):
        data = pd.DataFrame(data)
    tf = TrendFormula(formula, available=list(data.columns), allow_offset=False)
    X, _ = tf.build(data)
    return X, tf.column_names


def resolve_design(design, weitrix):
    """Resolve a design argument to a numeric matrix.

    ``design`` may be a formula string evaluated against the weitrix's
    column covariates, a DataFrame, or an array with one row per column of
    the weitrix.

    Returns
    -------
    (ndarray, list of str)
    """
    ncol = weitrix.ncol
    if isinstance(design, str):
        X, names = model_matrix(design, weitrix['cols'])
    elif isinstance(design, pd.DataFrame):
        X = design.to_numpy(dtype=np.float64)
        names = [str(c) for c in design.columns]
    else:
        X = np.asarray(design, dtype=np.float64)
        if X.ndim == 1:
            X = X.reshape(-1, 1)
        if X.ndim != 2:
            raise ValueError("design must be a matrix")
        names = [f"X{i + 1}" for i in range(X.shape[1])]

    if X.shape[0] != ncol:
        raise ValueError(
            f"design has {X.shape[0]} rows but the weitrix has {ncol} columns")
    if not np.all(np.isfinite(X)):
        raise ValueError("design must contain only finite values")
    return X, names
