"""
Pipeline Errors Module
Exception hierarchy shared by the validator, stage runner, stager and orchestrator.
"""

from typing import Iterable, Optional, Sequence, Tuple


class PipelineError(Exception):
    """Base class for every error raised by the pipeline."""


class ConfigurationError(PipelineError):
    """Invalid arguments or configuration (detected before any I/O)."""


class ValidationError(PipelineError):
    """Base class for fatal precondition failures."""


class MissingInputError(ValidationError):
    """One or more dataset companion files do not exist."""

    def __init__(self, missing: Iterable[str]):
        self.missing = list(missing)
        super().__init__(
            f"Missing input file(s): {', '.join(self.missing)}"
        )


class InsufficientDataError(ValidationError):
    """
    Input files exist but are too small to analyze.

    Each violation is a tuple of (check, measured, threshold).
    """

    def __init__(self, violations: Sequence[Tuple[str, object, object]]):
        self.violations = list(violations)
        details = '; '.join(
            f"{check}: measured {measured}, required {threshold}"
            for check, measured, threshold in self.violations
        )
        super().__init__(f"Insufficient input data ({details})")


class MissingDependencyError(ValidationError):
    """Required external executables or helper scripts could not be resolved."""

    def __init__(self, missing: Iterable[str]):
        self.missing = list(missing)
        super().__init__(
            f"Missing required software: {', '.join(self.missing)}"
        )


class TrialExecutionError(PipelineError):
    """A single trial failed. Recorded on the trial result, never raised across stages."""

    def __init__(self, stage: str, k: int, run: int, reason: str):
        self.stage = stage
        self.k = k
        self.run = run
        self.reason = reason
        super().__init__(f"{stage} K={k} run={run}: {reason}")


class StageFailedError(PipelineError):
    """A required stage left one or more K values without a successful trial."""

    def __init__(self, stage: str, unsatisfied_k: Optional[Iterable[int]] = None,
                 reason: Optional[str] = None):
        self.stage = stage
        self.unsatisfied_k = sorted(unsatisfied_k or [])
        self.reason = reason
        message = f"Stage '{stage}' failed"
        if self.unsatisfied_k:
            message += f": no successful trial for K={self.unsatisfied_k}"
        if reason:
            message += f": {reason}"
        super().__init__(message)


class StagingError(PipelineError):
    """An artifact could not be staged. Logged as a warning."""

    def __init__(self, stage: str, k: int, run: int, reason: str):
        self.stage = stage
        self.k = k
        self.run = run
        self.reason = reason
        super().__init__(f"Could not stage {stage} K={k} run={run}: {reason}")


class PipelineCancelledError(PipelineError):
    """The run was cancelled by the operator."""
