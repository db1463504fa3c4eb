"""
fitters.py
===========

Functions for fitting the two regression models of the study.

* :func:`fit_ols` – plain OLS of crime count on bus stops and trips
* :func:`fit_lag` – Spatial **Lag** (autoregressive) Model, ``y = ρWy + Xβ + ε``,
  by concentrated maximum likelihood
* :func:`fit_all` – Convenience wrapper that fits both from a settings object

None of the functions touch the DataFrame they are given; residuals live on
the returned model objects (``model.u``).

The lag fitter returns :class:`MLLagResults`, which uses the attribute names of
``spreg.ML_Lag`` (``betas`` with ρ last, ``z_stat``, ``logll``, ``pr2`` …), so
downstream code can treat the two fits alike. It is estimated here rather than
through ``spreg.ML_Lag`` so that the search for ρ runs under an explicit
iteration cap, ρ can be pinned (``rho=0`` reproduces OLS), and the log-Jacobian
can be approximated by traces for large grids.

---------------------------------------------------------------------------
Dependencies
---------------------------------------------------------------------------
`spreg`      – OLS estimation and its summary statistics
`scipy`      – bounded scalar search for ρ, sparse algebra, normal tails
`utilities`  – design checks, weights checks and the log-Jacobian
"""

from __future__ import annotations

import logging

import numpy as np
import numpy.linalg as npl
import scipy.sparse as sp
from scipy.optimize import minimize_scalar
from scipy.sparse.linalg import splu
from scipy.stats import norm

from spreg import OLS as spOLS

from errors import NonConvergenceError
from utilities import (
    check_design,
    check_dimensions,
    log_det_full,
    log_det_trace,
    rho_bounds,
    to_xy,
)

logger = logging.getLogger(__name__)

_LN2PI = np.log(2.0 * np.pi)


# ------------------------------------------------------------------------
# 1.  Ordinary Least Squares
# ------------------------------------------------------------------------
def fit_ols(df, response, predictors, *, w=None, name_ds=None):
    """
    Fit a *non‑spatial* OLS model to the cell table.

    Parameters
    ----------
    df : pandas.DataFrame
        Must contain `response` and the `predictors` columns.
    response : str
    predictors : list of str
    w : libpysal.weights.W, optional
        Not used in the fit; when given, its size is checked against the
        table so that later diagnostics cannot be fed mismatched data.
    name_ds : str, optional
        Dataset name shown in the spreg summary.

    Returns
    -------
    spreg.OLS
        The fitted *spreg* OLS object (intercept added by spreg).
    """
    predictors = list(predictors)
    y_vec, X_mat = to_xy(df, response, predictors)          # (n,1), (n,k)
    check_design(X_mat, predictors)
    if w is not None:
        check_dimensions(y_vec.shape[0], w, "design matrix")

    model = spOLS(y_vec, X_mat, name_y=response, name_x=predictors,
                  name_ds=name_ds or "cells")
    logger.info(f"OLS fitted on {model.n} cells: R2={model.r2:.4f}")
    return model


# ------------------------------------------------------------------------
# 2.  Spatial Lag (Autoregressive) Model
# ------------------------------------------------------------------------
class MLLagResults:
    """
    Spatial lag model estimated by maximum likelihood.

    Attributes
    ----------
    betas : ndarray, shape (k+1, 1)
        Constant, slopes, and ρ last (spreg layout).
    rho : float
    std_err : ndarray, shape (k+1,)
    z_stat : list of (z, p) tuples, same order as `betas`
    vm : ndarray
        Variance matrix of `betas`.
    sig2 : float
        ML error variance ``uᵀu / n``.
    u : ndarray, shape (n, 1)
        Residuals ``y - ρWy - Xβ``.
    predy : ndarray
        Structural fit ``ρWy + Xβ``.
    predy_e : ndarray
        Reduced-form fit ``(I - ρW)⁻¹ Xβ``.
    logll, aic, schwarz : float
    pr2, pr2_e : float
        Squared correlation of y with `predy` / `predy_e`.
    iterations : int
        Likelihood evaluations used by the search (0 if ρ was fixed).

    With ``method="full"`` the traces of the information matrix come from a
    dense inverse of ``I - ρW`` (exact, O(n³)). With ``method="trace"`` they
    are estimated from sparse LU solves on random probe vectors, so nothing
    n × n is ever formed.
    """

    def __init__(self, *, y, x, w, rho, betas, log_det, method, iterations,
                 name_y, name_x, name_ds, trace_samples=50, seed=None):
        n, k = x.shape
        Wm = sp.csc_matrix(w.sparse)

        self.n, self.k = n, k + 1               # + rho
        self.y, self.x = y, x
        self.method = method
        self.iterations = iterations
        self.name_y = name_y
        self.name_x = ["CONSTANT", *name_x, f"W_{name_y}"]
        self.name_ds = name_ds

        self.rho = float(rho)
        wy = Wm @ y
        xb = x @ betas
        self.u = y - self.rho * wy - xb
        self.predy = y - self.u
        self.utu = float(np.vdot(self.u, self.u))
        self.sig2 = self.utu / n

        # concentrated log-likelihood at the optimum, constants included
        self.logll = float(-n / 2.0 * _LN2PI - n / 2.0 * np.log(self.sig2) - n / 2.0
                           + log_det(self.rho))
        self.aic = -2.0 * self.logll + 2.0 * self.k
        self.schwarz = -2.0 * self.logll + self.k * np.log(n)

        # reduced form: (I - ρW) ŷ = Xβ
        lu = splu(sp.identity(n, format="csc") - self.rho * Wm)
        self.predy_e = lu.solve(xb)
        self.e_pred = y - self.predy_e

        self.pr2 = float(np.corrcoef(y.ravel(), self.predy.ravel())[0, 1] ** 2)
        self.pr2_e = float(np.corrcoef(y.ravel(), self.predy_e.ravel())[0, 1] ** 2)

        if method == "trace":
            traces = _stochastic_traces(Wm, lu, samples=trace_samples, seed=seed)
        else:
            traces = _exact_traces(Wm, self.rho)

        self.betas = np.vstack([betas, [[self.rho]]])
        self.vm = self._variance(Wm @ self.predy_e, traces)
        self.std_err = np.sqrt(np.diag(self.vm))
        z = self.betas.ravel() / self.std_err
        self.z_stat = [(float(zi), float(2.0 * norm.sf(abs(zi)))) for zi in z]

    def _variance(self, wpredy, traces):
        """
        Asymptotic variance of (β, ρ) from the information matrix of
        (ρ, β, σ²), in the layout used by spreg.ML_Lag.

        `traces` are tr(B), tr(B²) and tr(BᵀB) with B = W (I - ρW)⁻¹.
        """
        n, k = self.x.shape
        sig2 = self.sig2
        tr1, tr2, tr3 = traces

        wpyl = float(np.vdot(wpredy, wpredy))
        xtwpy = self.x.T @ wpredy
        xtx = self.x.T @ self.x

        v1 = np.vstack(([[tr2 + tr3 + wpyl / sig2]], xtwpy / sig2, [[tr1 / sig2]]))
        v2 = np.vstack((xtwpy.T / sig2, xtx / sig2, np.zeros((1, k))))
        v3 = np.vstack(([[tr1 / sig2]], np.zeros((k, 1)), [[n / (2.0 * sig2 ** 2)]]))
        vm1 = npl.inv(np.hstack((v1, v2, v3)))  # order: rho, betas, sigma2

        order = list(range(1, k + 1)) + [0]    # betas first, rho last
        return vm1[np.ix_(order, order)]

    @property
    def rho_z_stat(self):
        """(z, p) of the test of ρ = 0."""
        return self.z_stat[-1]


def _exact_traces(Wm, rho):
    """tr(B), tr(B²), tr(BᵀB) for B = W (I - ρW)⁻¹, from a dense inverse."""
    Wd = Wm.toarray()
    B = Wd @ npl.inv(np.eye(Wd.shape[0]) - rho * Wd)
    return np.trace(B), np.trace(B @ B), float(np.sum(B * B))


def _stochastic_traces(Wm, lu, *, samples=50, seed=None):
    """
    Hutchinson estimates of tr(B), tr(B²), tr(BᵀB) for B = W (I - ρW)⁻¹.

    `lu` is the sparse LU factor of ``I - ρW``; each estimate is the mean of
    ``zᵀMz`` over standard normal probe vectors z.
    """
    rng = np.random.default_rng(seed)
    Z = rng.standard_normal((Wm.shape[0], samples))
    BZ = Wm @ lu.solve(Z)
    BBZ = Wm @ lu.solve(BZ)
    tr1 = np.mean(np.sum(Z * BZ, axis=0))
    tr2 = np.mean(np.sum(Z * BBZ, axis=0))
    tr3 = np.mean(np.sum(BZ * BZ, axis=0))
    return float(tr1), float(tr2), float(tr3)


def _concentrated_neg_loglik(rho, n, e0, e1, log_det):
    """Minus the concentrated log-likelihood of ρ, without constants."""
    e = e0 - rho * e1
    sig2 = float(np.vdot(e, e)) / n
    return n / 2.0 * np.log(sig2) - log_det(rho)


def fit_lag(df, response, predictors, w, *,
            method: str = "full",
            rho: float | None = None,
            max_iter: int = 500,
            tolerance: float = 1e-7,
            trace_order: int = 30,
            trace_samples: int = 50,
            seed: int | None = None,
            name_ds=None) -> MLLagResults:
    """
    Fit the Spatial Lag Model ``y = ρWy + Xβ + ε`` by maximum likelihood.

    ρ is found by maximising the concentrated log-likelihood
    ``-(n/2)·ln σ²(ρ) + ln|I - ρW|`` over the stationary interval given by
    :func:`utilities.rho_bounds`; β and σ² follow in closed form.

    Parameters
    ----------
    df : pandas.DataFrame
    response, predictors :
        Same design as :func:`fit_ols`.
    w : libpysal.weights.W
        Row‑standardised weights, one row per row of `df`.
    method : {"full", "trace"}
        Log-Jacobian: exact eigenvalues or the trace power series.
    rho : float, optional
        Fix ρ instead of estimating it (``rho=0`` reproduces OLS).
    max_iter : int
        Cap on the bounded search; hitting it raises NonConvergenceError.
    tolerance : float
        Absolute tolerance on ρ.
    trace_order, trace_samples, seed :
        Settings of :func:`utilities.log_det_trace`.

    Returns
    -------
    MLLagResults
    """
    predictors = list(predictors)
    y, X0 = to_xy(df, response, predictors)
    check_design(X0, predictors)
    check_dimensions(y.shape[0], w, "design matrix")

    n = y.shape[0]
    x = np.hstack([np.ones((n, 1)), X0])
    wy = sp.csr_matrix(w.sparse) @ y

    if method == "full":
        log_det = log_det_full(w)
    elif method == "trace":
        log_det = log_det_trace(w, order=trace_order, samples=trace_samples, seed=seed)
    else:
        raise ValueError(f"method must be 'full' or 'trace', got {method!r}")

    # OLS of y and of Wy on X: β(ρ) = b0 - ρ b1
    b0 = npl.lstsq(x, y, rcond=None)[0]
    b1 = npl.lstsq(x, wy, rcond=None)[0]
    e0 = y - x @ b0
    e1 = wy - x @ b1

    lower, upper = rho_bounds(w)
    if rho is None:
        res = minimize_scalar(
            _concentrated_neg_loglik,
            bounds=(lower, upper),
            args=(n, e0, e1, log_det),
            method="bounded",
            options={"xatol": tolerance, "maxiter": max_iter},
        )
        if not res.success:
            raise NonConvergenceError(
                f"rho search did not converge in {max_iter} iterations "
                f"(last rho={float(res.x):.6f}): {res.message}",
                iterations=int(res.nfev),
            )
        rho_hat, iterations = float(res.x), int(res.nfev)
    else:
        rho_hat, iterations = float(rho), 0
        if not lower <= rho_hat <= upper:
            raise ValueError(f"rho={rho_hat} outside the stationary interval ({lower:.4f}, {upper:.4f})")

    betas = b0 - rho_hat * b1
    model = MLLagResults(y=y, x=x, w=w, rho=rho_hat, betas=betas, log_det=log_det,
                         method=method, iterations=iterations, name_y=response,
                         name_x=predictors, name_ds=name_ds or "cells",
                         trace_samples=trace_samples, seed=seed)
    logger.info(
        f"Lag model ({method}) fitted on {n} cells: rho={model.rho:.4f}, "
        f"logL={model.logll:.3f}, {iterations} evaluations"
    )
    return model


# ------------------------------------------------------------------------
# 3.  Convenience wrapper: fit both models of the study
# ------------------------------------------------------------------------
def fit_all(df, w, settings):
    """
    Fit OLS and the lag model on the same table and weights.

    Parameters
    ----------
    df : pandas.DataFrame
    w  : libpysal.weights.W
    settings : config.Settings
        Supplies the design (``settings.model``) and the lag options
        (``settings.lag``).

    Returns
    -------
    dict
        ``{"OLS": spreg.OLS, "LAG": MLLagResults}``
    """
    design = settings.model
    lag = settings.lag
    return {
        "OLS": fit_ols(df, design.response, design.predictors, w=w),
        "LAG": fit_lag(
            df, design.response, design.predictors, w,
            method=lag.method,
            max_iter=lag.max_iter,
            tolerance=lag.tolerance,
            trace_order=lag.trace_order,
            trace_samples=lag.trace_samples,
            seed=lag.seed,
        ),
    }
