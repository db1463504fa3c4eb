"""predictors.py
=================

Out-of-sample predictions from fitted OLS and lag models.

Cross-validation in ``diagnostics.py`` refits on a training fold and then
scores held-out cells with these functions; nothing here estimates anything.

Notation
--------
N  : number of hexagon cells
k  : number of predictors (bus stops, trips)
W  : N×N row‑standardised contiguity matrix
ρ  : spatial autoregressive coefficient
"""

from __future__ import annotations

import numpy as np
import scipy.sparse as sp
from scipy.sparse.linalg import spsolve


def _split_beta(beta_vec: np.ndarray, n_slopes: int):
    """Separate intercept and slopes, dropping a trailing ρ if present."""
    b = np.ravel(beta_vec)
    if len(b) == n_slopes + 2:      # intercept + slopes + ρ
        b = b[:-1]
    return b[0], b[1:]


# ---------------------------------------------------------------------
# OLS
# ---------------------------------------------------------------------

def predict_ols(model, X: np.ndarray) -> np.ndarray:
    """
    Fitted crime counts ``β₀ + Xβ`` for the rows of `X`.

    `X` holds the predictor columns only (bus stops, trips), without the
    constant; `model` is a fitted ``spreg.OLS``.
    """
    intercept, slopes = _split_beta(model.betas, X.shape[1])
    return intercept + X @ slopes


# ---------------------------------------------------------------------
# Spatial lag (reduced form over the full lattice)
# ---------------------------------------------------------------------

def predict_lag_full(model, X_all: np.ndarray, w) -> np.ndarray:
    """
    Reduced-form prediction for every cell of the lattice:

        ŷ = (I – ρW)⁻¹ (β₀ + Xβ)

    The spill-over term couples all cells, so the system is solved on the
    whole grid even when only a held-out subset will be scored.

    Parameters
    ----------
    model : fitters.MLLagResults
        Needs ``rho`` and ``betas`` (ρ last).
    X_all : ndarray, shape (N, k)
        Predictors of all N cells, in weights order.
    w : libpysal.weights.W
        Full-lattice weights.

    Returns
    -------
    ndarray, shape (N,)
    """
    b0, b = _split_beta(model.betas, X_all.shape[1])
    rho = float(model.rho)

    eta = b0 + X_all @ b
    A = sp.eye(w.n, format="csc") - rho * sp.csc_matrix(w.sparse)
    return np.asarray(spsolve(A, eta))
