"""
Result Staging Module
Copies or extracts trial outputs into the canonical K{K}_run{run}.{ext} layout
expected by the next stage.
"""

import glob
import logging
import os
import shutil
from dataclasses import dataclass
from typing import Callable, Iterable, List, Optional

import numpy as np
import pandas as pd

from .errors import StagingError
from .runner import StageResults

logger = logging.getLogger(__name__)

STRUCTURE_Q_HEADER = 'Inferred ancestry of individuals'

Extractor = Callable[[str, str, int], None]


@dataclass(frozen=True)
class StagedArtifact:
    stage: str
    k: int
    run: int
    path: str
    source: str


def canonical_name(k: int, run: int, ext: str = 'Q') -> str:
    """Canonical artifact file name; depends only on (K, run, ext)."""
    return f"K{k}_run{run}.{ext}"


def read_q_matrix(filepath: str) -> pd.DataFrame:
    """
    Load a Q matrix: one row per individual, one column per ancestral component.
    """
    q_data = pd.read_csv(filepath, sep=r'\s+', header=None)
    q_data.columns = [f'K{i+1}' for i in range(q_data.shape[1])]
    return q_data


def write_q_matrix(matrix, filepath: str):
    pd.DataFrame(np.asarray(matrix, dtype=float)).to_csv(
        filepath, sep=' ', header=False, index=False, float_format='%.6f'
    )


def _check_shape(matrix: np.ndarray, k: int, source: str):
    if matrix.ndim != 2 or matrix.shape[0] == 0:
        raise ValueError(f"no membership rows found in {source}")
    if matrix.shape[1] != k:
        raise ValueError(f"expected {k} columns, found {matrix.shape[1]} in {source}")
    if not np.all(np.isfinite(matrix)):
        raise ValueError(f"non-numeric membership values in {source}")


def _membership_row(line: str, k: int) -> List[float]:
    """Parse the cluster proportions to the right of the ':' separator."""
    values = []
    for token in line.split(':', 1)[1].split():
        try:
            values.append(float(token))
        except ValueError:
            # Probability intervals and other annotations follow the proportions
            break
        if len(values) == k:
            break
    return values


def copy_artifact(source: str, dest: str, k: int):
    """Copy a Q file unchanged after checking it has K columns."""
    _check_shape(read_q_matrix(source).values, k, source)
    shutil.copyfile(source, dest)


def extract_structure_q(source: str, dest: str, k: int):
    """
    Extract the individual ancestry section of a STRUCTURE _f file.

    The section starts at 'Inferred ancestry of individuals:', has one
    header line and ends at the first blank line.
    """
    with open(source, 'r') as f:
        lines = f.read().splitlines()

    start = next((i for i, line in enumerate(lines) if STRUCTURE_Q_HEADER in line), None)
    if start is None:
        raise ValueError(f"'{STRUCTURE_Q_HEADER}' section not found in {source}")

    rows = []
    for line in lines[start + 1:]:
        if not line.strip():
            if rows:
                break
            continue
        if ':' not in line or 'Label' in line:
            continue
        rows.append(_membership_row(line, k))

    matrix = np.array(rows, dtype=float) if rows else np.empty((0, k))
    _check_shape(matrix, k, source)
    write_q_matrix(matrix, dest)


def extract_clumpp_q(source: str, dest: str, k: int):
    """Extract the aligned membership matrix of a CLUMPP individual file."""
    with open(source, 'r') as f:
        rows = [_membership_row(line, k) for line in f if ':' in line]

    matrix = np.array(rows, dtype=float) if rows else np.empty((0, k))
    _check_shape(matrix, k, source)
    write_q_matrix(matrix, dest)


class ResultStager:
    """
    Stages successful trial results into a target directory.

    Problems with individual artifacts are recorded as warnings and never
    stop the remaining artifacts from being staged.
    """

    def __init__(self):
        self.warnings: List[StagingError] = []

    def _warn(self, error: StagingError):
        logger.warning(str(error))
        self.warnings.append(error)

    def clear(self, target_dir: str, ext: str = 'Q') -> int:
        """Remove canonical artifacts an earlier run left in target_dir."""
        removed = 0
        for path in glob.glob(os.path.join(target_dir, f"K*_run*.{ext}")):
            os.remove(path)
            removed += 1
        if removed:
            logger.info(f"Removed {removed} stale artifact(s) from {target_dir}")
        return removed

    def stage(self, results: StageResults, target_dir: str,
              extractor: Optional[Extractor] = None,
              ext: str = 'Q') -> List[StagedArtifact]:
        """
        Stage trial outputs under canonical names.

        Args:
            results: Trial results of one stage, keyed by (K, run)
            target_dir: Prepared directory (created if absent)
            extractor: Function(source, dest, k) writing the canonical artifact;
                defaults to a checked copy
            ext: Extension of the canonical artifact

        Returns:
            List of StagedArtifact, ordered by (K, run)
        """
        extractor = extractor or copy_artifact
        os.makedirs(target_dir, exist_ok=True)

        staged = []
        for (k, run), result in sorted(results.items()):
            if not result.succeeded:
                continue

            stage = result.trial.stage
            source = result.primary_artifact
            if source is None or not os.path.isfile(source):
                self._warn(StagingError(stage, k, run,
                                        f"primary artifact missing despite success: {source}"))
                continue

            dest = os.path.join(target_dir, canonical_name(k, run, ext))
            try:
                extractor(source, dest, k)
            except (OSError, ValueError, pd.errors.ParserError, pd.errors.EmptyDataError) as e:
                self._warn(StagingError(stage, k, run, str(e)))
                if os.path.exists(dest):
                    os.remove(dest)
                continue

            staged.append(StagedArtifact(stage=stage, k=k, run=run, path=dest, source=source))
            logger.info(f"  Prepared K={k} run={run}: {dest}")

        return staged


def first_metric_per_k(results: StageResults, k_values: Iterable[int]) -> List[Optional[float]]:
    """Metric of the first successful run of each K (None when unavailable)."""
    values = []
    for k in k_values:
        runs = sorted((key[1], r) for key, r in results.items() if key[0] == k and r.succeeded)
        values.append(runs[0][1].metric if runs else None)
    return values


def write_metric_table(results: StageResults, k_values: Iterable[int],
                       filepath: str, metric_name: str) -> pd.DataFrame:
    """
    Write a per-K metric table ('K <metric_name>' header, NA for missing values).
    """
    k_values = list(k_values)
    table = pd.DataFrame({
        'K': k_values,
        metric_name: pd.Series(first_metric_per_k(results, k_values), dtype=float),
    })
    table.to_csv(filepath, sep=' ', index=False, na_rep='NA')
    return table


def write_run_metric_table(results: StageResults, filepath: str,
                           metric_name: str) -> pd.DataFrame:
    """Write one row per trial: K, run and metric."""
    rows = [
        {'K': k, 'run': run, metric_name: result.metric}
        for (k, run), result in sorted(results.items())
    ]
    table = pd.DataFrame(rows, columns=['K', 'run', metric_name])
    table[metric_name] = table[metric_name].astype(float)
    table.to_csv(filepath, sep=' ', index=False, na_rep='NA')
    return table


def read_metric_table(filepath: str) -> Optional[pd.DataFrame]:
    """Load a table written by write_metric_table / write_run_metric_table."""
    if not os.path.isfile(filepath):
        return None
    try:
        return pd.read_csv(filepath, sep=r'\s+', na_values=['NA'])
    except (pd.errors.EmptyDataError, pd.errors.ParserError) as e:
        logger.warning(f"Could not read metric table {filepath}: {e}")
        return None
