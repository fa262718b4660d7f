"""
Reporting Module
Invokes the external visualization program and writes the final analysis summary.
"""

import logging
import os
import subprocess
from datetime import datetime
from typing import TYPE_CHECKING, List, Optional

import pandas as pd

from . import __version__
from .config import STAGE_ADMIXTURE, STAGE_ORDER, STAGE_STRUCTURE
from .comparison import summarize_runs
from .staging import first_metric_per_k

if TYPE_CHECKING:
    from .pipeline import PipelineRun

logger = logging.getLogger(__name__)


class RScriptReporter:
    """
    Renders plots by running an R script on a directory of prepared results.

    Any object with a compatible ``render(input_dir, output_dir)`` method
    returning True on success can be used instead.
    """

    def __init__(self, rscript: str = 'Rscript',
                 script: str = os.path.join('scripts', 'visualize_results.R'),
                 timeout: Optional[float] = None):
        self.rscript = rscript
        self.script = script
        self.timeout = timeout

    def command(self, input_dir: str, output_dir: str) -> List[str]:
        return [self.rscript, self.script, input_dir, '--output-dir', output_dir]

    def render(self, input_dir: str, output_dir: str) -> bool:
        """
        Run the visualization script.

        Args:
            input_dir: Directory of canonical Q files
            output_dir: Directory receiving the plots

        Returns:
            True if the script exited successfully
        """
        os.makedirs(output_dir, exist_ok=True)
        cmd = self.command(input_dir, output_dir)
        logger.info(f"Running: {' '.join(cmd)}")

        try:
            result = subprocess.run(
                cmd,
                capture_output=True,
                text=True,
                encoding='utf-8',
                errors='replace',
                check=True,
                timeout=self.timeout,
            )
            logger.debug(result.stdout)
            return True
        except subprocess.CalledProcessError as e:
            logger.error(f"Visualization failed: {e.stderr or e.stdout}")
            return False
        except subprocess.TimeoutExpired:
            logger.error(f"Visualization timed out after {self.timeout}s")
            return False
        except FileNotFoundError:
            logger.error(f"{self.rscript} not found. Please ensure R is installed and in PATH.")
            return False


def metrics_table(run: 'PipelineRun') -> pd.DataFrame:
    """Per-K metrics collected from every executed stage."""
    k_values = run.config.k_values
    table = pd.DataFrame({'K': k_values})

    admixture = run.outcomes.get(STAGE_ADMIXTURE)
    if admixture is not None and not admixture.skipped:
        table['CV_Error'] = pd.Series(first_metric_per_k(admixture.results, k_values),
                                      dtype=float)

    structure = run.outcomes.get(STAGE_STRUCTURE)
    if structure is not None and not structure.skipped:
        run_table = pd.DataFrame(
            [{'K': k, 'run': r, 'LnP(D)': result.metric}
             for (k, r), result in structure.results.items()],
            columns=['K', 'run', 'LnP(D)'],
        )
        run_table['LnP(D)'] = run_table['LnP(D)'].astype(float)
        summary = summarize_runs(run_table, 'LnP(D)')
        summary = summary.rename(columns={'mean': 'mean_LnP(D)', 'sd': 'sd_LnP(D)',
                                          'runs': 'structure_runs'})
        table = table.merge(summary[['K', 'structure_runs', 'mean_LnP(D)', 'sd_LnP(D)']],
                            on='K', how='left')

    return table


def stage_status(run: 'PipelineRun', stage: str) -> str:
    if not run.config.is_enabled(stage):
        return "✗ (skipped)"
    outcome = run.outcomes.get(stage)
    if outcome is None:
        return "- (not reached)"
    n_failed = sum(1 for r in outcome.results.values() if not r.succeeded)
    if n_failed:
        return f"✓ ({n_failed} failed trial(s))"
    return "✓"


def write_summary(run: 'PipelineRun', filepath: str) -> str:
    """
    Write the human-readable analysis summary.

    Returns:
        Path of the summary file
    """
    config = run.config
    dataset = run.dataset

    lines = [
        "Population Structure Clustering Analysis Summary",
        "===============================================",
        f"Generated on: {datetime.now().strftime('%Y-%m-%d %H:%M:%S')}",
        f"Pipeline version: {__version__}",
        "",
        "Input Data:",
        f"  File prefix: {config.input_prefix}",
        f"  Individuals: {dataset.n_samples}",
        f"  Variants: {dataset.n_variants}",
        f"  BED size: {dataset.bed_size} bytes",
        "",
        "Analysis Parameters:",
        f"  K range: {config.min_k} to {config.max_k}",
        f"  Threads: {config.threads}",
        f"  Workers: {run.workers}",
        f"  Base seed: {config.seed}",
        f"  ADMIXTURE CV folds: {config.admixture_cv}",
        f"  STRUCTURE runs per K: {config.structure_runs}",
        "",
        "Steps Completed:",
    ]
    labels = {'admixture': 'ADMIXTURE', 'structure': 'STRUCTURE',
              'clumpak': 'CLUMPAK', 'visualization': 'Visualization'}
    for stage in STAGE_ORDER:
        lines.append(f"  {labels[stage]}: {stage_status(run, stage)}")

    lines += ["", "Metrics per K:"]
    lines.append(metrics_table(run).to_string(index=False, na_rep='NA'))

    failed = [r for outcome in run.outcomes.values() for r in outcome.results.values()
              if not r.succeeded]
    if failed:
        lines += ["", "Failed Trials:"]
        lines += [f"  {r.error}" for r in sorted(failed, key=lambda r: (r.trial.stage, r.k, r.run))]

    if run.warnings:
        lines += ["", "Warnings:"]
        lines += [f"  {w}" for w in run.warnings]

    lines += [
        "",
        "Output Structure:",
        f"  Base directory: {config.output_base}/",
        "  ├── admixture/     - ADMIXTURE results and CV errors",
        "  ├── structure/     - STRUCTURE results by K value",
        "  ├── clumpak/       - Aligned and compared results",
        "  ├── visualization/ - Plots",
        "  └── logs/          - Analysis logs",
    ]

    with open(filepath, 'w', encoding='utf-8') as f:
        f.write('\n'.join(lines) + '\n')

    logger.info(f"Summary report saved: {filepath}")
    return filepath
