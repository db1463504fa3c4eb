"""utilities.py
================

Helpers shared by the fitters and diagnostics:

* turning the cell table into ``(y, X)`` arrays and checking the design;
* building the contiguity weights and checking them against a table;
* the log-Jacobian ``ln|I - rho W|`` of the spatial lag likelihood, exactly
  (eigenvalues) or by a truncated power series of traces.
"""

from __future__ import annotations

import logging
from typing import Callable, Sequence

import numpy as np
import scipy.linalg as sla
import scipy.sparse as sp
from libpysal.weights import Queen, Rook, W, WSP

from errors import DimensionMismatchError, IslandError, MalformedRecordError, SingularDesignError

logger = logging.getLogger(__name__)


# ------------------------------------------------------------------------
# Design matrix
# ------------------------------------------------------------------------
def to_xy(df, response: str, predictors: Sequence[str]):
    """
    Split the cell table into `(y, X)` numpy arrays.

    Intercept not included – `spreg` adds the constant column itself and
    :func:`fitters.fit_lag` prepends one.

    Parameters
    ----------
    df : pandas.DataFrame
        Must contain `response` and every name in `predictors`.

    Returns
    -------
    y : ndarray, shape (N, 1)
    X : ndarray, shape (N, k)
    """
    predictors = list(predictors)
    for name in [response, *predictors]:
        if name not in df.columns:
            raise MalformedRecordError(f"design column '{name}' not found", column=name)

    y = df[response].to_numpy(dtype=float).reshape(-1, 1)
    X = df[predictors].to_numpy(dtype=float).reshape(len(df), len(predictors))

    for name, values in zip([response, *predictors], np.hstack([y, X]).T):
        if not np.all(np.isfinite(values)):
            row = int(np.flatnonzero(~np.isfinite(values))[0])
            raise MalformedRecordError(f"row {row} of '{name}' is not finite", row=row, column=name)
    return y, X


def check_design(X: np.ndarray, names: Sequence[str] = ()) -> None:
    """
    Raise :class:`SingularDesignError` unless ``[1, X]`` has full column rank.

    Catches collinear or constant predictors and n < k.
    """
    n = X.shape[0]
    design = np.hstack([np.ones((n, 1)), X])
    n_params = design.shape[1]
    rank = int(np.linalg.matrix_rank(design)) if n else 0
    if n < n_params or rank < n_params:
        raise SingularDesignError(
            f"design matrix with columns {['CONSTANT', *names]} has rank {rank} "
            f"< {n_params} parameters ({n} observations)",
            rank=rank,
            n_params=n_params,
            n_obs=n,
        )


def check_dimensions(n_obs: int, w: W, what: str = "vector") -> None:
    """The weights must have exactly one row per observation."""
    if n_obs != w.n:
        raise DimensionMismatchError(
            f"{what} has {n_obs} rows but the weights cover {w.n} cells",
            expected=w.n,
            actual=n_obs,
        )


# ------------------------------------------------------------------------
# Spatial weights
# ------------------------------------------------------------------------
def build_contiguity_weights(cells, *, contiguity: str = "queen", transform: str = "r") -> W:
    """
    Contiguity weights for the cell table.

    Ids are the row positions ``0..n-1``, so ``w.sparse`` rows line up with
    the rows of the design matrix. Neighbourless cells are kept as zero rows.

    Parameters
    ----------
    cells : GeoDataFrame
    contiguity : {"queen", "rook"}
        Queen: any shared boundary point. Rook: a shared edge.
    transform : str
        libpysal transform, ``"r"`` for row standardisation.
    """
    builders = {"queen": Queen, "rook": Rook}
    if contiguity not in builders:
        raise ValueError(f"contiguity must be 'queen' or 'rook', got {contiguity!r}")

    w = builders[contiguity].from_dataframe(cells.reset_index(drop=True), use_index=True)
    w.transform = transform
    logger.info(
        f"{contiguity} weights: {w.n} cells, mean {w.mean_neighbors:.2f} neighbours, "
        f"{len(w.islands)} islands"
    )
    return w


def check_islands(w: W, zero_policy: bool = True) -> list:
    """
    Return the ids of neighbourless cells.

    With `zero_policy` off, any island is an :class:`IslandError`.
    """
    islands = list(w.islands)
    if islands and not zero_policy:
        raise IslandError(
            f"{len(islands)} cells have no neighbours (first: {islands[:5]}); "
            "enable zero_policy to keep them as zero rows",
            islands=islands,
        )
    return islands


def w_subset(parent_w: W, keep: list[int]) -> W:
    """
    Extract the sub‑matrix of `parent_w` induced by the nodes in keep.

    Keeps the original transform (rows are re-standardised on the subset).
    """
    id2pos = {node_id: pos for pos, node_id in enumerate(parent_w.id_order)}
    pos = [id2pos[i] for i in keep]
    sub_sparse = parent_w.sparse[pos][:, pos]
    sub_w = WSP(sub_sparse, id_order=keep).to_W()
    sub_w.transform = parent_w.transform
    return sub_w


# ------------------------------------------------------------------------
# Log-Jacobian of the lag model
# ------------------------------------------------------------------------
def rho_bounds(w: W, margin: float = 1e-6) -> tuple[float, float]:
    """
    Search interval for rho, ``(-1/r, 1/r)`` shrunk by `margin`.

    r is the largest absolute row sum of W, which bounds its spectral
    radius from above, so every rho inside keeps ``I - rho W`` invertible.
    Row‑standardised weights give (-1, 1).
    """
    r = float(abs(w.sparse).sum(axis=1).max())
    if r == 0.0:
        raise IslandError("weights have no links at all", islands=w.id_order)
    bound = 1.0 / r
    return -bound + margin, bound - margin


def log_det_full(w: W) -> Callable[[float], float]:
    """
    Exact ``ln|I - rho W|`` from the eigenvalues of W.

    The eigen‑decomposition is done once (dense, O(n³)); each evaluation is
    then a sum over n terms.
    """
    eig = sla.eigvals(w.sparse.toarray())

    def log_det(rho: float) -> float:
        return float(np.sum(np.log(1.0 - rho * eig)).real)

    return log_det


def log_det_trace(w: W, *, order: int = 30, samples: int = 50,
                  seed: int | None = None) -> Callable[[float], float]:
    """
    Approximate ``ln|I - rho W| = -sum_k rho^k tr(W^k) / k``.

    tr(W) and tr(W²) are computed exactly from the sparse matrix; higher
    traces are estimated as ``n · mean(zᵀWᵏz / zᵀz)`` over `samples` random
    probe vectors, using repeated sparse matrix–vector products. The series
    is truncated after `order` terms, so accuracy drops as |rho| -> 1.
    """
    Wm = sp.csr_matrix(w.sparse)
    n = Wm.shape[0]
    rng = np.random.default_rng(seed)

    Z = rng.standard_normal((n, samples))
    zz = np.sum(Z * Z, axis=0)

    traces = np.empty(order)
    V = Z
    for k in range(order):
        V = Wm @ V
        traces[k] = n * np.mean(np.sum(Z * V, axis=0) / zz)
    traces[0] = Wm.diagonal().sum()
    traces[1] = Wm.multiply(Wm.T).sum()

    powers = np.arange(1, order + 1)

    def log_det(rho: float) -> float:
        return float(-np.sum(rho ** powers * traces / powers))

    return log_det
