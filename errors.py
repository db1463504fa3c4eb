"""errors.py
=============

Exception types raised by the pipeline. Every stage fails fast; the
attributes carry enough context (file, row, dimensions) to find the culprit.
"""

from __future__ import annotations


class SpatialPipelineError(Exception):
    """Base class for every error raised by the pipeline."""


class MissingFileError(SpatialPipelineError, FileNotFoundError):
    """No source file matched, or a named layer does not exist."""

    def __init__(self, message: str, *, path=None, pattern: str | None = None):
        super().__init__(message)
        self.path = path
        self.pattern = pattern


class MalformedRecordError(SpatialPipelineError, ValueError):
    """A record lacks a required column or carries an uncoercible value."""

    def __init__(self, message: str, *, source=None, row=None, column: str | None = None):
        super().__init__(message)
        self.source = source
        self.row = row
        self.column = column


class SingularDesignError(SpatialPipelineError, ValueError):
    """The design matrix (intercept + predictors) is not of full column rank."""

    def __init__(self, message: str, *, rank: int, n_params: int, n_obs: int):
        super().__init__(message)
        self.rank = rank
        self.n_params = n_params
        self.n_obs = n_obs


class DimensionMismatchError(SpatialPipelineError, ValueError):
    """A vector or design matrix does not match the weights' cell count."""

    def __init__(self, message: str, *, expected: int, actual: int):
        super().__init__(message)
        self.expected = expected
        self.actual = actual


class NonConvergenceError(SpatialPipelineError, RuntimeError):
    """The likelihood search for rho stopped before converging."""

    def __init__(self, message: str, *, iterations: int):
        super().__init__(message)
        self.iterations = iterations


class IslandError(SpatialPipelineError, ValueError):
    """Neighbourless cells were found while the zero policy is off."""

    def __init__(self, message: str, *, islands):
        super().__init__(message)
        self.islands = list(islands)
