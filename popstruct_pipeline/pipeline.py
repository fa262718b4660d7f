"""
Pipeline Orchestration Module
Runs ADMIXTURE, STRUCTURE and CLUMPAK in order, stages each stage's output
for the next one, delegates plotting and writes the final summary.
"""

import fnmatch
import logging
import os
import sys
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Dict, List, Optional

from .comparison import write_method_comparison
from .config import (
    PipelineConfig,
    STAGE_ADMIXTURE,
    STAGE_CLUMPAK,
    STAGE_STRUCTURE,
    STAGE_VISUALIZATION,
)
from .converter import PlinkStructureConverter
from .dataset import Dataset
from .errors import PipelineCancelledError, PipelineError, StageFailedError
from .estimator import RuntimeEstimate, estimate_runtime
from .report import RScriptReporter, write_summary
from .runner import StageResults, StageRunner, unsatisfied_configs
from .stages import AdmixtureStage, AnalysisStage, ClumpakStage, StructureStage
from .staging import (
    Extractor,
    ResultStager,
    StagedArtifact,
    copy_artifact,
    extract_clumpp_q,
    extract_structure_q,
    read_metric_table,
    write_metric_table,
    write_run_metric_table,
)
from .validator import PreconditionValidator

logger = logging.getLogger(__name__)

# Transient files removed after a successful run
TEMP_PATTERNS = ('*.tmp', 'core.*')

CV_ERRORS_FILE = 'cv_errors.txt'
LNP_FILE = 'ln_prob.txt'
METHOD_COMPARISON_FILE = 'method_comparison.txt'


class PipelineState(Enum):
    VALIDATING = 'validating'
    STAGING1 = 'admixture'
    STAGING2 = 'structure'
    STAGING3 = 'clumpak'
    REPORTING = 'reporting'
    DONE = 'done'
    ABORTED = 'aborted'


@dataclass
class StageOutcome:
    stage: str
    skipped: bool = False
    results: StageResults = field(default_factory=dict)
    staged: List[StagedArtifact] = field(default_factory=list)


class PipelineRun:
    """
    One invocation of the pipeline.

    Owns the configuration, the trial results of every stage and the
    warnings collected along the way. A stage only starts when the previous
    enabled stage is satisfied (every K has a successful trial).
    """

    def __init__(self, config: PipelineConfig,
                 runner: Optional[StageRunner] = None,
                 stager: Optional[ResultStager] = None,
                 reporter=None,
                 converter=None,
                 validator=None):
        """
        Initialize a pipeline run.

        Args:
            config: Run configuration
            runner: Stage runner (built from config if omitted)
            stager: Result stager
            reporter: Visualization collaborator with a render(input_dir, output_dir) method
            converter: PLINK to STRUCTURE format converter
            validator: Precondition validator
        """
        self.config = config
        self.dataset = Dataset(config.input_prefix)
        self.workers = config.effective_workers()
        self.runner = runner or StageRunner(timeout=config.timeout,
                                            workers=self.workers,
                                            resume=config.resume)
        self.stager = stager or ResultStager()
        self.reporter = reporter or RScriptReporter(rscript=config.executable('rscript'),
                                                    script=config.viz_script,
                                                    timeout=config.timeout)
        self.converter = converter or PlinkStructureConverter()
        self.validator = validator or PreconditionValidator()

        self.state = PipelineState.VALIDATING
        self.history: List[PipelineState] = [self.state]
        self.outcomes: Dict[str, StageOutcome] = {}
        self.warnings: List[str] = []
        self.estimate: Optional[RuntimeEstimate] = None
        self.log_file: Optional[str] = None
        self.summary_path: Optional[str] = None
        self._log_handler: Optional[logging.Handler] = None

    def _transition(self, state: PipelineState):
        logger.debug(f"Pipeline state: {self.state.value} -> {state.value}")
        self.state = state
        self.history.append(state)

    def cancel(self):
        """Operator abort: stop scheduling trials and kill running ones."""
        logger.warning("Cancellation requested")
        self.runner.cancel()

    def setup_output_directories(self) -> str:
        """
        Create the output tree and the timestamped run log.

        Returns:
            Path of the log file
        """
        logger.info("Setting up output directories...")
        for path in self.config.output_dirs():
            os.makedirs(path, exist_ok=True)

        timestamp = datetime.now().strftime('%Y%m%d_%H%M%S')
        log_file = os.path.join(self.config.logs_dir, f"pipeline_{timestamp}.log")
        with open(log_file, 'w') as f:
            f.write(f"Pipeline started: {datetime.now()}\n")
            f.write(f"Command: {' '.join(sys.argv)}\n")
            f.write(f"Working directory: {os.getcwd()}\n\n")

        handler = logging.FileHandler(log_file, encoding='utf-8')
        handler.setFormatter(logging.Formatter('%(asctime)s - %(levelname)s - %(message)s'))
        logging.getLogger('popstruct_pipeline').addHandler(handler)
        self._log_handler = handler
        self.log_file = log_file

        logger.info(f"Pipeline log: {log_file}")
        return log_file

    def _close_log(self):
        if self._log_handler is not None:
            logging.getLogger('popstruct_pipeline').removeHandler(self._log_handler)
            self._log_handler.close()
            self._log_handler = None

    def _warn(self, message: str):
        logger.warning(message)
        self.warnings.append(message)

    def preflight(self) -> RuntimeEstimate:
        """
        Validate inputs and software, then estimate the runtime.

        Raises:
            ValidationError: on any failed precondition
        """
        logger.info("Performing pre-flight checks...")
        self.validator.validate(self.dataset, self.config)

        self.estimate = estimate_runtime(len(self.config.k_values),
                                         self.dataset.n_samples,
                                         self.dataset.n_variants,
                                         self.config.structure_runs)
        logger.info("Estimated runtime:")
        logger.info(f"  ADMIXTURE: ~{self.estimate.admixture_minutes} minutes")
        logger.info(f"  STRUCTURE: ~{self.estimate.structure_minutes} minutes")
        logger.info(f"  Total: ~{self.estimate.total_minutes} minutes")
        logger.info("Note: These are rough estimates and actual time may vary significantly")
        return self.estimate

    def run(self) -> str:
        """
        Run every enabled stage.

        Returns:
            Path of the analysis summary

        Raises:
            ConfigurationError: invalid arguments (before any I/O)
            ValidationError: failed preconditions (before any stage)
            StageFailedError: a required stage was not satisfied
            PipelineCancelledError: the run was cancelled
        """
        self.config.validate()

        try:
            self.setup_output_directories()
            self.preflight()

            self._transition(PipelineState.STAGING1)
            self.run_admixture()

            self._transition(PipelineState.STAGING2)
            self.run_structure()

            self._transition(PipelineState.STAGING3)
            self.run_clumpak()

            self._transition(PipelineState.REPORTING)
            self.run_visualization()
            if self.config.cleanup:
                self.cleanup()
            self.summary_path = write_summary(self, self.config.summary_path)

            self._transition(PipelineState.DONE)
            return self.summary_path

        except KeyboardInterrupt:
            self.runner.cancel()
            self._transition(PipelineState.ABORTED)
            logger.error("Analysis cancelled by user")
            raise PipelineCancelledError("Analysis cancelled by user") from None
        except PipelineError as e:
            self._transition(PipelineState.ABORTED)
            logger.error(str(e))
            raise
        finally:
            self._close_log()

    # Stages

    def execute_stage(self, stage: AnalysisStage, extractor: Extractor) -> StageOutcome:
        """
        Run, stage and check one K-parameterized stage.

        Skipped stages are recorded and trivially satisfied.

        Raises:
            StageFailedError: if some K has no successful trial
        """
        if not self.config.is_enabled(stage.name):
            logger.info(f"Skipping {stage.label} analysis")
            outcome = StageOutcome(stage=stage.name, skipped=True)
            self.outcomes[stage.name] = outcome
            return outcome

        logger.info("==========================================")
        logger.info(f"Running {stage.label} Analysis")
        logger.info("==========================================")

        try:
            stage.prepare()
        except (OSError, ValueError) as e:
            raise StageFailedError(stage.name, reason=f"could not prepare inputs: {e}")

        prepared_dir = self.config.prepared_dir(stage.name)
        try:
            self.stager.clear(prepared_dir)
        except OSError as e:
            raise StageFailedError(stage.name, reason=f"could not clear {prepared_dir}: {e}")

        results = self.runner.run_stage(stage, self.config.k_values)
        outcome = StageOutcome(stage=stage.name, results=results)
        self.outcomes[stage.name] = outcome

        n_warnings = len(self.stager.warnings)
        logger.info(f"Preparing {stage.label} results...")
        outcome.staged = self.stager.stage(results, prepared_dir, extractor=extractor)
        self.warnings.extend(str(w) for w in self.stager.warnings[n_warnings:])

        unsatisfied = unsatisfied_configs(results, self.config.k_values)
        if unsatisfied:
            raise StageFailedError(stage.name, unsatisfied)

        logger.info(f"✓ {stage.label} analysis completed successfully")
        return outcome

    def run_admixture(self) -> StageOutcome:
        stage = AdmixtureStage(self.config, self.dataset)
        outcome = self.execute_stage(stage, copy_artifact)
        if outcome.skipped:
            return outcome

        cv_file = os.path.join(self.config.stage_dir(STAGE_ADMIXTURE), CV_ERRORS_FILE)
        table = write_metric_table(outcome.results, self.config.k_values, cv_file,
                                   stage.metric_name)
        logger.info(f"CV errors saved in: {cv_file}")
        logger.info("Cross-validation results:")
        for _, row in table.dropna().sort_values(stage.metric_name).head(5).iterrows():
            logger.info(f"  K={int(row['K'])}  {row[stage.metric_name]}")
        return outcome

    def run_structure(self) -> StageOutcome:
        stage = StructureStage(self.config, self.dataset, converter=self.converter)
        outcome = self.execute_stage(stage, extract_structure_q)
        if outcome.skipped:
            return outcome

        lnp_file = os.path.join(self.config.stage_dir(STAGE_STRUCTURE), LNP_FILE)
        write_run_metric_table(outcome.results, lnp_file, stage.metric_name)
        logger.info(f"Ln P(D) values saved in: {lnp_file}")
        return outcome

    def run_clumpak(self) -> StageOutcome:
        stage = ClumpakStage(self.config, self.dataset)
        outcome = self.execute_stage(stage, extract_clumpp_q)
        if outcome.skipped:
            return outcome

        admixture_dir = self.config.stage_dir(STAGE_ADMIXTURE)
        structure_dir = self.config.stage_dir(STAGE_STRUCTURE)
        write_method_comparison(
            os.path.join(self.config.stage_dir(STAGE_CLUMPAK), METHOD_COMPARISON_FILE),
            admixture_dir=self.config.prepared_dir(STAGE_ADMIXTURE),
            structure_dir=self.config.prepared_dir(STAGE_STRUCTURE),
            k_values=self.config.k_values,
            cv_table=read_metric_table(os.path.join(admixture_dir, CV_ERRORS_FILE)),
            lnp_table=read_metric_table(os.path.join(structure_dir, LNP_FILE)),
            threshold=self.config.clumpak_threshold,
            aligned_k=sorted({a.k for a in outcome.staged}),
        )
        return outcome

    def run_visualization(self) -> StageOutcome:
        """
        Hand prepared results to the reporting collaborator.

        Aligned CLUMPAK output is preferred; without it the prepared
        ADMIXTURE matrices are plotted.
        """
        if not self.config.is_enabled(STAGE_VISUALIZATION):
            logger.info("Skipping visualization")
            outcome = StageOutcome(stage=STAGE_VISUALIZATION, skipped=True)
            self.outcomes[STAGE_VISUALIZATION] = outcome
            return outcome

        logger.info("==========================================")
        logger.info("Creating Visualizations")
        logger.info("==========================================")

        if self.config.is_enabled(STAGE_CLUMPAK):
            input_dir = self.config.prepared_dir(STAGE_CLUMPAK)
        else:
            input_dir = self.config.prepared_dir(STAGE_ADMIXTURE)

        outcome = StageOutcome(stage=STAGE_VISUALIZATION)
        self.outcomes[STAGE_VISUALIZATION] = outcome
        if not self.reporter.render(input_dir, self.config.stage_dir(STAGE_VISUALIZATION)):
            raise StageFailedError(STAGE_VISUALIZATION, reason="visualization program failed")

        logger.info("✓ Visualization completed successfully")
        return outcome

    def cleanup(self) -> int:
        """
        Best-effort removal of transient files under the output directory.

        Returns:
            Number of files removed
        """
        logger.info("Cleaning up temporary files...")
        removed = 0
        for root, _, files in os.walk(self.config.output_base):
            for name in files:
                if not any(fnmatch.fnmatch(name, pattern) for pattern in TEMP_PATTERNS):
                    continue
                path = os.path.join(root, name)
                try:
                    os.remove(path)
                    removed += 1
                except OSError as e:
                    self._warn(f"Could not remove temporary file {path}: {e}")
        logger.info(f"Removed {removed} temporary file(s)")
        return removed
