"""
Runtime Estimator Module
Advisory runtime estimates. Purely informational, never used to gate a run.
"""

from typing import NamedTuple

# Fixed overhead for alignment, plotting and reporting (minutes)
OVERHEAD_MINUTES = 10


class RuntimeEstimate(NamedTuple):
    admixture_minutes: int
    structure_minutes: int
    total_minutes: int


ZERO_ESTIMATE = RuntimeEstimate(0, 0, 0)


def estimate_runtime(k_range_size: int, n_samples: int, n_loci: int,
                     runs_per_k: int) -> RuntimeEstimate:
    """
    Rough runtime estimate in minutes.

    Args:
        k_range_size: Number of K values analyzed
        n_samples: Number of individuals
        n_loci: Number of variants
        runs_per_k: Independent STRUCTURE runs per K

    Returns:
        RuntimeEstimate; all zeros when any input is non-positive
    """
    try:
        k_range_size, n_samples, n_loci, runs_per_k = (
            int(v) for v in (k_range_size, n_samples, n_loci, runs_per_k)
        )
    except (TypeError, ValueError):
        return ZERO_ESTIMATE

    if min(k_range_size, n_samples, n_loci, runs_per_k) <= 0:
        return ZERO_ESTIMATE

    admixture = k_range_size * n_samples * n_loci // 1_000_000
    structure = k_range_size * runs_per_k * n_samples // 100
    return RuntimeEstimate(admixture, structure, admixture + structure + OVERHEAD_MINUTES)
