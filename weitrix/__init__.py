"""
weitrix: weighted matrices of measurements.

Components of variation and weight calibration for matrices of
measurements with per-element weights, where a weight of zero marks a
missing measurement.
"""

__version__ = "0.1.0"

# --- Classes ---
from .classes import Weitrix, Components, ComponentsSeq
from .classes import ConvergenceWarning, TrendFitError
from .classes import cbind_weitrix, rbind_weitrix

# --- Weitrix construction & accessors ---
from .weitrix import (
    make_weitrix,
    valid_weitrix,
    as_weitrix,
    weitrix_x,
    weitrix_weights,
)

# --- Parallel execution ---
from .parallel import serial_executor, pool_executor, PoolExecutor, partitions

# --- Formulas ---
from .formula import model_matrix, referenced_names, TrendFormula, poly

# --- Components of variation ---
from .components import weitrix_components, varimax, fit_rows, fit_cols
from .components_seq import (
    weitrix_components_seq,
    components_seq_r2,
    components_seq_screeplot_data,
)

# --- Dispersion & calibration ---
from .dispersion import weitrix_dispersions, weitrix_calibrate, row_degrees_of_freedom
from .calibrate import (
    TrendFit,
    weitrix_calibrate_trend,
    weitrix_calibrate_all,
    weitrix_calplot_data,
)
from .glm import glm_log_quasi

# --- Randomization ---
from .simulate import weitrix_randomize, simulate_weitrix

# --- Export ---
from .export import weitrix_elist

# --- limma utilities ---
from .limma_port import squeeze_var, is_fullrank, non_estimable
