"""diagnostics.py
=================

Spatial autocorrelation diagnostics and model summaries.

* :func:`moran_test`       – global Moran's I of any cell-level vector
* :func:`moran_residuals`  – Moran's I of OLS residuals with the
  regression-adjusted moments
* :func:`lm_tests`         – Lagrange-Multiplier tests (error, lag, robust forms)
* :func:`choose_specification` – reads the LM table and names the model to fit
* :func:`coefficient_table`, :func:`fit_statistics`, :func:`compare_models`
  – tables for reporting OLS and lag fits side by side
* :func:`cv_mse_random`    – k-fold out-of-sample MSE of either model

Neighbourless cells (allowed when the zero policy is on) keep their place in
the statistic: they count in n and in Σ zᵢ² and only drop out of the
cross-product sum, as in esda. This is not the same as first removing them
from the data, which would shrink n.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

import numpy as np
import pandas as pd

from esda.moran import Moran
from sklearn.model_selection import KFold
from spreg.diagnostics_sp import LMtests, MoranRes

from fitters import fit_lag, fit_ols
from predictors import predict_lag_full, predict_ols
from utilities import check_dimensions, check_islands, w_subset

logger = logging.getLogger(__name__)

LM_ROWS = {
    "lme": ("LM-error", 1),
    "lml": ("LM-lag", 1),
    "rlme": ("Robust LM-error", 1),
    "rlml": ("Robust LM-lag", 1),
    "sarma": ("LM-SARMA", 2),
}


@dataclass(frozen=True)
class MoranSummary:
    """Global Moran's I with its moments under the chosen null."""

    statistic: float
    expected: float
    variance: float
    z_score: float
    p_value: float
    assumption: str
    n: int
    p_sim: Optional[float] = None

    def as_series(self, name=None) -> pd.Series:
        return pd.Series({
            "I": self.statistic,
            "E[I]": self.expected,
            "Var[I]": self.variance,
            "z": self.z_score,
            "p_value": self.p_value,
        }, name=name)


# ------------------------------------------------------------
# =====  Moran's I  ==========================================
# ------------------------------------------------------------
def moran_test(values, w, *, assumption: str = "randomization",
               permutations: int = 999, two_tailed: bool = True,
               zero_policy: bool = True) -> MoranSummary:
    """
    Global Moran's I of `values` under the weights `w`.

        I = (n / S0) · Σᵢ Σⱼ wᵢⱼ zᵢ zⱼ / Σᵢ zᵢ²,   z = x − x̄

    Neighbourless cells have zero weight rows, so they add nothing to the
    cross-product sum (they still count in n and in Σ zᵢ²).

    Parameters
    ----------
    values : array-like, shape (n,)
        One value per cell, in the weights' id order.
    w : libpysal.weights.W
    assumption : {"randomization", "normality"}
        Null used for Var[I], the z-score and its p-value.
    permutations : int
        Conditional permutations for the pseudo p-value (0 to skip).
    zero_policy : bool
        If False, islands raise :class:`errors.IslandError`.
    """
    if assumption not in ("randomization", "normality"):
        raise ValueError(f"assumption must be 'randomization' or 'normality', got {assumption!r}")

    y = np.asarray(values, dtype=float).ravel()
    check_dimensions(y.shape[0], w, "Moran vector")
    check_islands(w, zero_policy)

    mi = Moran(y, w, transformation=w.transform, permutations=permutations,
               two_tailed=two_tailed)

    if assumption == "normality":
        variance, z, p = mi.VI_norm, mi.z_norm, mi.p_norm
    else:
        variance, z, p = mi.VI_rand, mi.z_rand, mi.p_rand

    p_sim = float(mi.p_sim) if permutations else None
    return MoranSummary(float(mi.I), float(mi.EI), float(variance), float(z), float(p),
                        assumption, int(mi.n), p_sim)


def moran_residuals(ols, w, *, zero_policy: bool = True) -> MoranSummary:
    """
    Moran's I of OLS residuals.

    E[I] and Var[I] account for the residuals being orthogonal to the design
    matrix (they are not the raw-variable moments), so the z-test is the
    regression version.
    """
    check_dimensions(ols.n, w, "OLS residual vector")
    check_islands(w, zero_policy)

    mr = MoranRes(ols, w, z=True)
    stats = [np.asarray(v).item() for v in (mr.I, mr.eI, mr.vI, mr.zI, mr.p_norm)]
    return MoranSummary(*stats, "regression", int(ols.n))


# ------------------------------------------------------------
# =====  Lagrange multiplier tests  ==========================
# ------------------------------------------------------------
def lm_tests(ols, w) -> pd.DataFrame:
    """
    LM-error, LM-lag, their robust forms and the joint SARMA test.

    Returns
    -------
    DataFrame indexed by test name with columns ``statistic``, ``df`` and
    ``p_value`` (chi-squared reference).
    """
    check_dimensions(ols.n, w, "OLS residual vector")
    lm = LMtests(ols, w, tests=list(LM_ROWS))

    rows = []
    for attr, (label, dof) in LM_ROWS.items():
        stat, pval = getattr(lm, attr)
        rows.append(dict(test=label, statistic=np.asarray(stat).item(), df=dof,
                         p_value=np.asarray(pval).item()))
    return pd.DataFrame(rows).set_index("test")


def choose_specification(table: pd.DataFrame, alpha: float = 0.05) -> str:
    """
    Pick the model suggested by the LM tests.

    * neither LM-error nor LM-lag significant -> ``"OLS"``
    * exactly one of them significant          -> that one
    * both significant -> look at the robust tests: if only one is
      significant take it; otherwise take the larger robust statistic
      (ties go to ``"LAG"``).

    Returns one of ``"OLS"``, ``"LAG"``, ``"ERROR"``.
    """
    p = table["p_value"]
    stat = table["statistic"]
    err, lag = p["LM-error"] < alpha, p["LM-lag"] < alpha

    if not (err or lag):
        return "OLS"
    if lag and not err:
        return "LAG"
    if err and not lag:
        return "ERROR"

    r_err, r_lag = p["Robust LM-error"] < alpha, p["Robust LM-lag"] < alpha
    if r_lag and not r_err:
        return "LAG"
    if r_err and not r_lag:
        return "ERROR"
    return "ERROR" if stat["Robust LM-error"] > stat["Robust LM-lag"] else "LAG"


# ------------------------------------------------------------
# =====  Summary tables  =====================================
# ------------------------------------------------------------
def coefficient_table(model) -> pd.DataFrame:
    """
    Estimates, standard errors, test statistics and p-values.

    Works for ``spreg.OLS`` (t statistics) and ``MLLagResults`` / spreg ML
    models (z statistics, ρ as the last row).
    """
    stats = getattr(model, "z_stat", None)
    if stats is None:
        stats = model.t_stat
    table = pd.DataFrame({
        "estimate": np.ravel(model.betas),
        "std_error": np.ravel(model.std_err),
        "statistic": [s[0] for s in stats],
        "p_value": [s[1] for s in stats],
    }, index=pd.Index(model.name_x, name="term"))
    return table


def fit_statistics(model) -> pd.Series:
    """Goodness-of-fit numbers; pseudo-R² stands in for R² on the lag model."""
    is_lag = hasattr(model, "rho")
    return pd.Series({
        "n": model.n,
        "k": model.k,
        "r2": model.pr2 if is_lag else model.r2,
        "adj_r2": np.nan if is_lag else model.ar2,
        "log_likelihood": model.logll,
        "aic": model.aic,
        "schwarz": model.schwarz,
        "sigma2": model.sig2,
        "rho": float(model.rho) if is_lag else np.nan,
        "rho_p_value": model.z_stat[-1][1] if is_lag else np.nan,
    })


def compare_models(models: dict) -> pd.DataFrame:
    """Fit statistics of several models, one column per model."""
    return pd.DataFrame({name: fit_statistics(m) for name, m in models.items()})


# ------------------------------------------------------------
# =====  random k‑fold CV  ===================================
# ------------------------------------------------------------
def cv_mse_random(df, w, model_name, *, response, predictors, n_splits=5, seed=0,
                  lag_options=None):
    """
    Random k-fold cross validation, refitting the model on each training fold.

    The lag model is refitted with the weights restricted to the training
    cells, then predicted on the full lattice (the reduced form needs every
    cell) and scored on the held-out cells.

    Parameters
    ----------
    model_name : {"OLS", "LAG"}
    seed : int
        Shuffling seed of the folds.
    lag_options : dict, optional
        Keyword arguments for :func:`fitters.fit_lag` (``method``,
        ``max_iter``, ``seed`` of the trace probes, ...).

    Returns
    -------
    float
        Mean of the per-fold MSEs.
    """
    if model_name not in ("OLS", "LAG"):
        raise ValueError(f"model_name must be 'OLS' or 'LAG', got {model_name!r}")

    predictors = list(predictors)
    y = df[response].to_numpy(dtype=float)
    X = df[predictors].to_numpy(dtype=float)
    check_dimensions(len(y), w, "cell table")
    kf = KFold(n_splits=n_splits, shuffle=True, random_state=seed)
    mse = []

    for train, test in kf.split(X):
        sub_df = df.iloc[train]

        if model_name == "OLS":
            model = fit_ols(sub_df, response, predictors)
            yhat = predict_ols(model, X[test])
        else:
            sub_w = w_subset(w, train.tolist())
            model = fit_lag(sub_df, response, predictors, sub_w, **(lag_options or {}))
            yhat = predict_lag_full(model, X, w)[test]   # slice test rows

        mse.append(((y[test] - yhat) ** 2).mean())

    logger.info(f"{model_name} {n_splits}-fold CV MSE: {np.mean(mse):.4f}")
    return float(np.mean(mse))
