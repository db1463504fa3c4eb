"""
Run the crime / bus-stop spatial regression end to end:

    ingestion -> aggregation -> OLS -> Moran's I + LM tests -> spatial lag

Usage:
    python main.py --config config.yaml
    python main.py --demo            # synthetic study area, no input files
"""
from __future__ import annotations

import argparse
import logging
import sys
import warnings
from typing import NamedTuple, Optional

import numpy as np
import pandas as pd

from aggregation import aggregate
from config import Settings, load_config
from data_generating_process import synthetic_study_area
from diagnostics import (
    MoranSummary,
    choose_specification,
    coefficient_table,
    compare_models,
    cv_mse_random,
    lm_tests,
    moran_residuals,
    moran_test,
)
from errors import SpatialPipelineError
from fitters import fit_all
from ingestion import StudyInputs, load_inputs
from utilities import build_contiguity_weights, check_islands

logger = logging.getLogger(__name__)


class PipelineResult(NamedTuple):
    cells: pd.DataFrame
    weights: object
    ols: object
    lag: object
    moran_response: MoranSummary
    moran_ols_residuals: MoranSummary
    moran_lag_residuals: MoranSummary
    lm: pd.DataFrame
    specification: str
    comparison: pd.DataFrame
    cv_mse: Optional[pd.Series] = None


def run_pipeline(settings: Settings, inputs: Optional[StudyInputs] = None) -> PipelineResult:
    """
    Run every stage in order; any stage error aborts the run.

    Parameters
    ----------
    settings : config.Settings
    inputs : ingestion.StudyInputs, optional
        Pre-loaded layers. When None they are read from the paths in
        `settings`.
    """
    if inputs is None:
        inputs = load_inputs(settings)

    agg = settings.aggregation
    cells = aggregate(inputs.cells.reset_index(drop=True), inputs.incidents, inputs.stops,
                      boundary=agg.boundary,
                      incident_column=agg.incident_column,
                      stop_column=agg.stop_column)

    w = build_contiguity_weights(cells, contiguity=settings.weights.contiguity,
                                 transform=settings.weights.transform)
    check_islands(w, settings.weights.zero_policy)

    design = settings.model
    mor = settings.moran
    moran_kwargs = dict(assumption=mor.assumption, permutations=mor.permutations,
                        two_tailed=mor.two_tailed, zero_policy=settings.weights.zero_policy)

    moran_y = moran_test(cells[design.response], w, **moran_kwargs)

    models = fit_all(cells, w, settings)
    ols, lag = models["OLS"], models["LAG"]

    moran_u = moran_residuals(ols, w, zero_policy=settings.weights.zero_policy)
    lm = lm_tests(ols, w)
    spec = choose_specification(lm, design.alpha)
    logger.info(f"LM tests suggest the {spec} specification")

    moran_lag = moran_test(lag.u, w, **moran_kwargs)

    cv = None
    if settings.validation.enabled:
        val = settings.validation
        lag_options = settings.lag.model_dump()
        cv = pd.Series({
            name: cv_mse_random(cells, w, name, response=design.response,
                                predictors=design.predictors, n_splits=val.n_splits,
                                seed=val.seed, lag_options=lag_options)
            for name in ("OLS", "LAG")
        }, name="cv_mse")

    out = cells.assign(resid_OLS=np.ravel(ols.u), resid_LAG=np.ravel(lag.u))
    return PipelineResult(
        cells=out,
        weights=w,
        ols=ols,
        lag=lag,
        moran_response=moran_y,
        moran_ols_residuals=moran_u,
        moran_lag_residuals=moran_lag,
        lm=lm,
        specification=spec,
        comparison=compare_models(models),
        cv_mse=cv,
    )


def format_report(result: PipelineResult) -> str:
    """Plain-text summary of both fits and the diagnostics between them."""
    moran = pd.DataFrame({
        "response": result.moran_response.as_series(),
        "OLS residuals": result.moran_ols_residuals.as_series(),
        "lag residuals": result.moran_lag_residuals.as_series(),
    }).T

    sections = [
        ("OLS coefficients", coefficient_table(result.ols)),
        ("Moran's I", moran),
        ("Lagrange multiplier tests", result.lm),
        ("Spatial lag coefficients", coefficient_table(result.lag)),
        ("Model comparison", result.comparison),
    ]
    if result.cv_mse is not None:
        sections.append(("Cross-validated MSE", result.cv_mse.to_frame()))

    lines = []
    for title, table in sections:
        lines += [f"=== {title} ===", table.round(4).to_string(), ""]
    lines.append(f"LM tests suggest: {result.specification}")
    return "\n".join(lines)


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(description="Crime / bus-stop spatial regression")
    parser.add_argument("--config", help="YAML settings file")
    parser.add_argument("--demo", action="store_true", help="run on a synthetic study area")
    parser.add_argument("--seed", type=int, default=121, help="seed for --demo data")
    parser.add_argument("--log-level", help="override logging.level")
    args = parser.parse_args(argv)

    settings = load_config(args.config)
    if args.log_level:
        settings.logging.level = args.log_level
    logging.basicConfig(level=settings.logging.level.upper(), format=settings.logging.format)

    warnings.filterwarnings("ignore", message=".*is an island.*|.*not fully connected.*")

    inputs = synthetic_study_area(rng=np.random.default_rng(args.seed)) if args.demo else None
    try:
        result = run_pipeline(settings, inputs)
    except SpatialPipelineError as e:
        logger.error(f"Pipeline failed: {e}")
        return 1

    print(format_report(result))
    return 0


if __name__ == "__main__":
    sys.exit(main())
