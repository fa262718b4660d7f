"""
Pipeline Configuration Module
Holds every parameter of a pipeline run and the output directory layout.
"""

import os
from typing import Dict, List, Optional

from .errors import ConfigurationError

# Upper bound on the number of ancestral populations
MAX_K = 20

STAGE_ADMIXTURE = 'admixture'
STAGE_STRUCTURE = 'structure'
STAGE_CLUMPAK = 'clumpak'
STAGE_VISUALIZATION = 'visualization'

STAGE_ORDER = [STAGE_ADMIXTURE, STAGE_STRUCTURE, STAGE_CLUMPAK, STAGE_VISUALIZATION]

DEFAULT_EXECUTABLES = {
    'admixture': 'admixture',
    'structure': 'structure',
    'perl': 'perl',
    'rscript': 'Rscript',
}


class PipelineConfig:
    """
    Configuration for one pipeline run.

    Passed explicitly to every component; nothing reads ambient state.
    """

    def __init__(self,
                 input_prefix: str,
                 min_k: int,
                 max_k: int,
                 threads: int = 4,
                 workers: int = 1,
                 structure_runs: int = 10,
                 admixture_cv: int = 10,
                 seed: int = 12345,
                 timeout: Optional[float] = None,
                 output_base: str = 'output',
                 skip_admixture: bool = False,
                 skip_structure: bool = False,
                 skip_clumpak: bool = False,
                 skip_visualization: bool = False,
                 cleanup: bool = True,
                 resume: bool = False,
                 burnin: int = 10000,
                 numreps: int = 20000,
                 admixalpha: float = 1.0,
                 freqscorr: int = 1,
                 popflag: int = 0,
                 supervised: bool = False,
                 clumpak_dir: Optional[str] = None,
                 clumpak_threshold: float = 0.8,
                 viz_script: str = os.path.join('scripts', 'visualize_results.R'),
                 executables: Optional[Dict[str, str]] = None):
        """
        Initialize pipeline configuration.

        Args:
            input_prefix: Path to PLINK files without extension
            min_k: Smallest K to analyze
            max_k: Largest K to analyze
            threads: Threads handed to each external tool invocation
            workers: Maximum number of trials run concurrently within a stage
            structure_runs: Independent STRUCTURE runs per K
            admixture_cv: ADMIXTURE cross-validation folds
            seed: Base random seed; per-trial seeds are derived from it
            timeout: Per-trial wall-clock limit in seconds (None = unlimited)
            output_base: Base output directory
            cleanup: Remove temporary files when the run completes
            resume: Reuse trial outputs left by an earlier run
            admixalpha: Initial Dirichlet alpha of the STRUCTURE admixture model
            freqscorr: 1 for correlated allele frequencies, 0 for independent
            popflag: 1 to use the population data column in STRUCTURE input
            clumpak_dir: Directory of a local CLUMPAK installation
            viz_script: R script run by the reporting collaborator
            executables: Overrides for external executable names or paths
        """
        self.input_prefix = input_prefix
        self.min_k = min_k
        self.max_k = max_k
        self.threads = threads
        self.workers = workers
        self.structure_runs = structure_runs
        self.admixture_cv = admixture_cv
        self.seed = seed
        self.timeout = timeout
        self.output_base = output_base
        self.skip = {
            STAGE_ADMIXTURE: skip_admixture,
            STAGE_STRUCTURE: skip_structure,
            STAGE_CLUMPAK: skip_clumpak,
            STAGE_VISUALIZATION: skip_visualization,
        }
        self.cleanup = cleanup
        self.resume = resume
        self.burnin = burnin
        self.numreps = numreps
        self.admixalpha = admixalpha
        self.freqscorr = freqscorr
        self.popflag = popflag
        self.supervised = supervised
        self.clumpak_dir = clumpak_dir
        self.clumpak_threshold = clumpak_threshold
        self.viz_script = viz_script
        self.executables = dict(DEFAULT_EXECUTABLES)
        if executables:
            self.executables.update(executables)

    def validate(self):
        """
        Check argument sanity without touching the filesystem.

        Raises:
            ConfigurationError: describing every invalid argument
        """
        problems = []

        if self.min_k < 1:
            problems.append(f"min_k must be >= 1 (got {self.min_k})")
        if self.max_k > MAX_K:
            problems.append(f"max_k must be <= {MAX_K} (got {self.max_k})")
        if self.min_k >= self.max_k:
            problems.append(f"min_k must be < max_k (got {self.min_k} to {self.max_k})")

        for name in ('threads', 'workers', 'structure_runs', 'admixture_cv',
                     'burnin', 'numreps'):
            if getattr(self, name) < 1:
                problems.append(f"{name} must be positive (got {getattr(self, name)})")

        if self.timeout is not None and self.timeout <= 0:
            problems.append(f"timeout must be positive (got {self.timeout})")
        if self.admixalpha <= 0:
            problems.append(f"admixalpha must be positive (got {self.admixalpha})")
        if self.freqscorr not in (0, 1):
            problems.append(f"freqscorr must be 0 or 1 (got {self.freqscorr})")
        if self.popflag not in (0, 1):
            problems.append(f"popflag must be 0 or 1 (got {self.popflag})")

        if problems:
            raise ConfigurationError(f"Invalid K range or arguments: {'; '.join(problems)}")

    @property
    def k_values(self) -> List[int]:
        return list(range(self.min_k, self.max_k + 1))

    def is_enabled(self, stage: str) -> bool:
        return not self.skip.get(stage, False)

    def effective_workers(self, cpu_count: Optional[int] = None) -> int:
        """Worker bound keeping workers * threads within the available cores."""
        cores = cpu_count or os.cpu_count() or 1
        return max(1, min(self.workers, cores // max(self.threads, 1)))

    def executable(self, name: str) -> str:
        return self.executables.get(name, name)

    @property
    def clumpak_script(self) -> Optional[str]:
        if not self.clumpak_dir:
            return None
        return os.path.join(self.clumpak_dir, 'CLUMPAK.pl')

    # Output layout

    def stage_dir(self, stage: str) -> str:
        return os.path.join(self.output_base, stage)

    def prepared_dir(self, stage: str) -> str:
        """Directory holding canonical K{K}_run{run} artifacts of a stage."""
        if stage == STAGE_CLUMPAK:
            return os.path.join(self.stage_dir(stage), 'aligned')
        return os.path.join(self.stage_dir(stage), 'prepared')

    @property
    def logs_dir(self) -> str:
        return os.path.join(self.output_base, 'logs')

    @property
    def summary_path(self) -> str:
        return os.path.join(self.output_base, 'analysis_summary.txt')

    def output_dirs(self) -> List[str]:
        return [self.stage_dir(stage) for stage in STAGE_ORDER] + [self.logs_dir]
