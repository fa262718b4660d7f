"""
Method Comparison Module
Model selection and ADMIXTURE/STRUCTURE concordance from staged results.

Cluster labels are arbitrary in every run, so matrices are aligned with
the Hungarian algorithm before being compared.
"""

import glob
import logging
import os
from datetime import datetime
from typing import List, Optional, Tuple

import numpy as np
import pandas as pd
from scipy.optimize import linear_sum_assignment
from scipy.spatial.distance import cdist

from .staging import canonical_name, read_q_matrix

logger = logging.getLogger(__name__)


def best_k(table: Optional[pd.DataFrame], metric: str, minimize: bool = True) -> Optional[int]:
    """K with the lowest (or highest) metric value, ignoring NA."""
    if table is None or metric not in table.columns:
        return None
    values = table.dropna(subset=[metric])
    if values.empty:
        return None
    idx = values[metric].idxmin() if minimize else values[metric].idxmax()
    return int(values.loc[idx, 'K'])


def summarize_runs(run_table: Optional[pd.DataFrame], metric: str) -> pd.DataFrame:
    """
    Mean, standard deviation and best run of a repeated-run metric per K.

    Returns:
        DataFrame with columns K, runs, mean, sd, best_run
    """
    columns = ['K', 'runs', 'mean', 'sd', 'best_run']
    if run_table is None or run_table.empty or metric not in run_table.columns:
        return pd.DataFrame(columns=columns)

    rows = []
    for k, group in run_table.groupby('K'):
        values = group.dropna(subset=[metric])
        if values.empty:
            rows.append({'K': k, 'runs': 0, 'mean': np.nan, 'sd': np.nan, 'best_run': np.nan})
            continue
        best = values.loc[values[metric].idxmax(), 'run']
        rows.append({
            'K': k,
            'runs': len(values),
            'mean': values[metric].mean(),
            'sd': values[metric].std(ddof=1) if len(values) > 1 else 0.0,
            'best_run': int(best),
        })
    return pd.DataFrame(rows, columns=columns)


def align_clusters(reference: np.ndarray, other: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
    """
    Permute the columns of `other` to best match `reference`.

    Returns:
        Tuple of (aligned matrix, column permutation)
    """
    cost = cdist(reference.T, other.T, metric='sqeuclidean')
    _, permutation = linear_sum_assignment(cost)
    return other[:, permutation], permutation


def similarity(q1: np.ndarray, q2: np.ndarray) -> float:
    """
    Similarity of two aligned membership matrices, 1 - ||Q1 - Q2||_F / sqrt(2N).

    1.0 means identical matrices, 0.0 maximally different ones.
    """
    n = q1.shape[0]
    return float(1.0 - np.linalg.norm(q1 - q2) / np.sqrt(2.0 * n))


def method_concordance(admixture_dir: str, structure_dir: str,
                       k_values: List[int]) -> pd.DataFrame:
    """
    Per-K similarity between the ADMIXTURE matrix and each STRUCTURE run.

    Returns:
        DataFrame with columns K, structure_runs, mean_similarity (NaN when
        either side is missing or the shapes disagree)
    """
    rows = []
    for k in k_values:
        reference_path = os.path.join(admixture_dir, canonical_name(k, 1))
        structure_paths = sorted(glob.glob(os.path.join(structure_dir, f"K{k}_run*.Q")))

        scores = []
        if os.path.isfile(reference_path):
            reference = read_q_matrix(reference_path).values
            for path in structure_paths:
                other = read_q_matrix(path).values
                if other.shape != reference.shape:
                    logger.warning(f"Shape mismatch for K={k}: {path} {other.shape} "
                                   f"vs {reference.shape}")
                    continue
                aligned, _ = align_clusters(reference, other)
                scores.append(similarity(reference, aligned))

        rows.append({
            'K': k,
            'structure_runs': len(scores),
            'mean_similarity': np.mean(scores) if scores else np.nan,
        })
    return pd.DataFrame(rows, columns=['K', 'structure_runs', 'mean_similarity'])


def _format(value, fmt: str = '{}') -> str:
    if value is None or (isinstance(value, float) and np.isnan(value)):
        return 'NA'
    return fmt.format(value)


def write_method_comparison(filepath: str,
                            admixture_dir: str,
                            structure_dir: str,
                            k_values: List[int],
                            cv_table: Optional[pd.DataFrame],
                            lnp_table: Optional[pd.DataFrame],
                            threshold: float,
                            aligned_k: List[int]) -> pd.DataFrame:
    """
    Write the method comparison summary.

    Returns:
        The concordance table
    """
    lnp_summary = summarize_runs(lnp_table, 'LnP(D)')
    concordance = method_concordance(admixture_dir, structure_dir, k_values)

    best_cv = best_k(cv_table, 'CV_Error', minimize=True)
    best_lnp = best_k(lnp_summary.rename(columns={'mean': 'LnP(D)'}), 'LnP(D)', minimize=False)

    lines = [
        "# Population Structure Analysis - Method Comparison Summary",
        f"# Generated on {datetime.now().strftime('%Y-%m-%d %H:%M:%S')}",
        "",
        "## Input Data",
        f"ADMIXTURE results: {admixture_dir}",
        f"STRUCTURE results: {structure_dir}",
        f"K range: {min(k_values)} to {max(k_values)}",
        f"Similarity threshold: {threshold}",
        "",
        "## CLUMPAK Alignment Results",
        f"Aligned K values: {', '.join(str(k) for k in aligned_k) or 'none'}",
        "",
        "## Optimal K Selection",
        f"ADMIXTURE (cross-validation, lowest CV error): K={_format(best_cv)}",
        f"STRUCTURE (highest mean Ln P(D)): K={_format(best_lnp)}",
        "",
    ]

    if not lnp_summary.empty:
        lines.append("## STRUCTURE Ln P(D) per K")
        lines.append(lnp_summary.to_string(index=False, na_rep='NA'))
        lines.append("")

    lines.append("## Method Concordance (ADMIXTURE vs STRUCTURE)")
    lines.append(concordance.to_string(index=False, na_rep='NA'))
    low = concordance[concordance['mean_similarity'] < threshold]
    if not low.empty:
        lines.append("")
        lines.append(f"K values below the similarity threshold: "
                     f"{', '.join(str(k) for k in low['K'])}")

    with open(filepath, 'w') as f:
        f.write('\n'.join(lines) + '\n')

    logger.info(f"Method comparison saved: {filepath}")
    return concordance
